"""Prometheus metrics exposed by the relay."""

from prometheus_client import Counter, Gauge, CollectorRegistry, generate_latest

class RelayMetrics:
    """Wrapper around the Prometheus registry used by the relay."""

    def __init__(self, registry: CollectorRegistry | None = None):
        """Create counters and gauges inside the provided registry."""
        self.registry = registry or CollectorRegistry()
        self.spf_results = Counter("alr_spf_results_total", "SPF evaluations by outcome", ["result"], registry=self.registry)
        self.routes = Counter("alr_routes_total", "Accepted messages by forwarding direction", ["direction"], registry=self.registry)
        self.rejected = Counter("alr_rejected_total", "SMTP rejections by reason", ["reason"], registry=self.registry)
        self.forwards = Counter("alr_forwards_total", "Forwarding attempts", ["status"], registry=self.registry)
        self.notifications = Counter("alr_notifications_total", "Notification sink calls", ["sink", "status"], registry=self.registry)
        self.tasks = Counter("alr_tasks_total", "Background task pool activity", ["status"], registry=self.registry)
        self.queue_depth = Gauge("alr_task_queue_depth", "Jobs waiting in the background task pool", registry=self.registry)

    def inc_spf(self, result: str):
        """Increase the SPF counter for the given outcome."""
        self.spf_results.labels(result=result or "unknown").inc()

    def inc_route(self, direction: str):
        self.routes.labels(direction=direction).inc()

    def inc_rejected(self, reason: str):
        self.rejected.labels(reason=reason).inc()

    def inc_forward(self, status: str):
        self.forwards.labels(status=status).inc()

    def inc_notification(self, sink: str, status: str):
        self.notifications.labels(sink=sink, status=status).inc()

    def inc_task(self, status: str):
        self.tasks.labels(status=status).inc()

    def set_queue_depth(self, value: int):
        """Update the gauge tracking queued background jobs."""
        self.queue_depth.set(value)

    def generate_latest(self) -> bytes:
        """Return the latest metrics snapshot in Prometheus text format."""
        return generate_latest(self.registry)
