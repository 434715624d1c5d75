"""Wiring of listeners, background pool and collaborators for one process."""

from __future__ import annotations

import asyncio
import ssl
from typing import List, Optional

from aiosmtpd.smtp import SMTP

from .config_loader import RelayConfig, split_listen_address
from .dispatch import TaskPool
from .forwarder import Forwarder
from .handler import RelayHandler
from .logger import get_logger
from .notifier import Notifier
from .prometheus import RelayMetrics
from .session import RelayServices
from .smtp_pool import SMTPPool
from .spf_policy import SPFEvaluator


def load_tls_context(cert_file: str | None, key_file: str | None, logger=None) -> Optional[ssl.SSLContext]:
    """Return a server TLS context, or ``None`` when the material is unusable."""
    logger = logger or get_logger()
    if not cert_file or not key_file:
        logger.warning("TLS certificate not configured")
        return None
    context = ssl.create_default_context(ssl.Purpose.CLIENT_AUTH)
    try:
        context.load_cert_chain(cert_file, key_file)
    except (OSError, ssl.SSLError) as exc:
        logger.warning("Loading TLS certificate failed: %s", exc)
        return None
    return context


class RelayServer:
    """Own the SMTP listeners and the shared relay services."""

    def __init__(
        self,
        config: RelayConfig,
        *,
        metrics: RelayMetrics | None = None,
        logger=None,
        spf: SPFEvaluator | None = None,
        forwarder: Forwarder | None = None,
        smtp_pool: SMTPPool | None = None,
        cleanup_interval: float = 150.0,
    ):
        self.config = config
        self.logger = logger or get_logger()
        self.metrics = metrics or RelayMetrics()
        self.pool = TaskPool(
            workers=config.dispatch.workers,
            queue_size=config.dispatch.queue_size,
            logger=self.logger,
            metrics=self.metrics,
        )
        self.smtp_pool = smtp_pool or SMTPPool(timeout=config.forward.timeout)
        self.services = RelayServices(
            config=config,
            spf=spf or SPFEvaluator(logger=self.logger, metrics=self.metrics),
            pool=self.pool,
            forwarder=forwarder or Forwarder(config, pool=self.smtp_pool, logger=self.logger, metrics=self.metrics),
            notifier=Notifier(config, self.pool, logger=self.logger, metrics=self.metrics),
            metrics=self.metrics,
            logger=self.logger,
        )
        self.handler = RelayHandler(self.services)
        self.tls_context: Optional[ssl.SSLContext] = None
        self.servers: List[asyncio.AbstractServer] = []
        self.listeners: List[str] = []
        self._cleanup_interval = cleanup_interval
        self._task_cleanup: Optional[asyncio.Task] = None

    def smtp_factory(self, tls_context: Optional[ssl.SSLContext] = None) -> SMTP:
        smtp = self.config.smtp
        return SMTP(
            self.handler,
            hostname=smtp.hostname,
            data_size_limit=smtp.max_message_bytes,
            tls_context=tls_context,
            require_starttls=False,
            timeout=smtp.timeout,
        )

    # ----------------------------------------------------------------- lifecycle
    async def start(self) -> None:
        """Open the plain (STARTTLS) listener and, with TLS material, the SMTPS one."""
        smtp = self.config.smtp
        loop = asyncio.get_running_loop()
        await self.pool.start()
        self.tls_context = load_tls_context(smtp.cert_file, smtp.key_file, self.logger)

        host, port = split_listen_address(smtp.listen_address, 25)
        starttls = self.tls_context
        plain = await loop.create_server(lambda: self.smtp_factory(starttls), host=host, port=port)
        self.servers.append(plain)
        self.listeners.append(f"smtp://{host}:{self._bound_port(plain, port)}")

        if self.tls_context is not None:
            tls_host, tls_port = split_listen_address(smtp.listen_address_tls, 465)
            secure = await loop.create_server(
                lambda: self.smtp_factory(), host=tls_host, port=tls_port, ssl=self.tls_context
            )
            self.servers.append(secure)
            self.listeners.append(f"smtps://{tls_host}:{self._bound_port(secure, tls_port)}")
        else:
            self.logger.info("Starting plain listener only at %s", smtp.listen_address)

        self._task_cleanup = asyncio.create_task(self._cleanup_loop(), name="smtp-pool-cleanup")
        for listener in self.listeners:
            self.logger.info("Listening on %s", listener)

    async def stop(self) -> None:
        """Close listeners, drain background jobs, then close outbound connections."""
        for server in self.servers:
            server.close()
        for server in self.servers:
            await server.wait_closed()
        self.servers = []
        if self._task_cleanup is not None:
            self._task_cleanup.cancel()
            await asyncio.gather(self._task_cleanup, return_exceptions=True)
            self._task_cleanup = None
        await self.pool.stop(self.config.dispatch.drain_timeout)
        await self.smtp_pool.close_all()

    async def _cleanup_loop(self) -> None:
        """Background coroutine that keeps pooled outbound connections healthy."""
        while True:
            await asyncio.sleep(self._cleanup_interval)
            try:
                await self.smtp_pool.cleanup()
            except Exception as exc:  # pragma: no cover
                self.logger.exception("SMTP pool cleanup failed: %s", exc)

    @staticmethod
    def _bound_port(server: asyncio.AbstractServer, default: int) -> int:
        sockets = server.sockets or []
        if sockets:
            return sockets[0].getsockname()[1]
        return default

    @property
    def port(self) -> int:
        """Port of the plain listener (useful when bound to port 0)."""
        if not self.servers:
            raise RuntimeError("server not started")
        return self._bound_port(self.servers[0], 0)
