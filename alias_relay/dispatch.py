"""Bounded pool that runs forwarding and notification jobs in the background.

The SMTP session hands work to :class:`TaskPool` and returns its reply
without waiting. Jobs run on a fixed set of worker tasks; a failing job is
logged and counted, never propagated. When the queue is full the job is
dropped rather than blocking mail acceptance.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, List, Optional

from .logger import get_logger

JobFactory = Callable[[], Awaitable[Any]]


@dataclass
class Job:
    name: str
    factory: JobFactory
    session_id: str = "-"
    submitted_at: float = field(default_factory=time.monotonic)


class TaskPool:
    """Fixed-size asyncio worker pool consuming a bounded job queue."""

    def __init__(self, workers: int = 4, queue_size: int = 1000, logger=None, metrics=None):
        self.workers = max(1, int(workers))
        self.queue_size = max(1, int(queue_size))
        self.logger = logger or get_logger()
        self.metrics = metrics
        self._queue: Optional[asyncio.Queue[Job]] = None
        self._tasks: List[asyncio.Task] = []
        self._running = False
        self.completed = 0
        self.failed = 0
        self.dropped = 0

    # ----------------------------------------------------------------- lifecycle
    @property
    def running(self) -> bool:
        return self._running

    @property
    def pending(self) -> int:
        return self._queue.qsize() if self._queue is not None else 0

    async def start(self) -> None:
        """Spawn the worker tasks on the running loop."""
        if self._running:
            return
        self._queue = asyncio.Queue(maxsize=self.queue_size)
        self._tasks = [
            asyncio.create_task(self._worker(self._queue), name=f"relay-worker-{idx}")
            for idx in range(self.workers)
        ]
        self._running = True
        self.logger.debug("Task pool started with %d workers (queue_size=%d)", self.workers, self.queue_size)

    async def stop(self, drain_timeout: float = 10.0) -> None:
        """Wait up to ``drain_timeout`` seconds for queued jobs, then cancel workers."""
        if not self._running or self._queue is None:
            return
        self._running = False
        try:
            await asyncio.wait_for(self._queue.join(), timeout=drain_timeout)
        except asyncio.TimeoutError:
            self.logger.warning("Task pool drain timed out with %d job(s) pending", self._queue.qsize())
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        self.logger.debug(
            "Task pool stopped (completed=%d, failed=%d, dropped=%d)", self.completed, self.failed, self.dropped
        )

    async def join(self) -> None:
        """Wait until every queued job has been processed."""
        if self._queue is not None:
            await self._queue.join()

    # ---------------------------------------------------------------- submission
    def submit(self, name: str, factory: JobFactory, session_id: str = "-") -> bool:
        """Queue ``factory`` for execution; never blocks.

        ``factory`` is called by a worker and must return an awaitable. Returns
        ``False`` when the job was dropped (pool stopped or queue full).
        """
        if not self._running or self._queue is None:
            self.logger.error("Task pool not running, dropping job %s - UUID: %s", name, session_id)
            self._count("dropped")
            self.dropped += 1
            return False
        try:
            self._queue.put_nowait(Job(name=name, factory=factory, session_id=session_id))
        except asyncio.QueueFull:
            self.logger.error(
                "Task queue full (%d), dropping job %s - UUID: %s", self.queue_size, name, session_id
            )
            self._count("dropped")
            self.dropped += 1
            return False
        self._count("submitted")
        self._refresh_gauge()
        return True

    # ------------------------------------------------------------------- workers
    async def _worker(self, queue: asyncio.Queue[Job]) -> None:
        while True:
            job = await queue.get()
            try:
                await self._run(job)
            finally:
                queue.task_done()
                self._refresh_gauge()

    async def _run(self, job: Job) -> None:
        started = time.monotonic()
        try:
            await job.factory()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self.failed += 1
            self._count("failed")
            self.logger.exception("Background job %s failed: %s - UUID: %s", job.name, exc, job.session_id)
            return
        self.completed += 1
        self._count("completed")
        self.logger.debug(
            "Background job %s done in %.3fs (queued %.3fs) - UUID: %s",
            job.name,
            time.monotonic() - started,
            started - job.submitted_at,
            job.session_id,
        )

    def _count(self, status: str) -> None:
        if self.metrics is not None:
            self.metrics.inc_task(status)

    def _refresh_gauge(self) -> None:
        if self.metrics is not None:
            self.metrics.set_queue_depth(self.pending)
