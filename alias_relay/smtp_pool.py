"""Outbound SMTP connections reused per worker task and destination."""

import asyncio
import time
import aiosmtplib
from dataclasses import dataclass
from typing import Optional, Tuple, Dict

PoolKey = Tuple[int, str, int]


@dataclass(frozen=True)
class Endpoint:
    """Where and how to connect for one delivery."""

    host: str
    port: int = 25
    user: Optional[str] = None
    password: Optional[str] = None
    use_tls: bool = False
    local_hostname: Optional[str] = None


class SMTPPool:
    """Keep one live connection per (worker task, host, port)."""

    def __init__(self, ttl: int = 300, timeout: float = 30.0):
        """Create a pool with the given time-to-live, in seconds."""
        self.ttl = ttl
        self.timeout = timeout
        self.pool: Dict[PoolKey, Tuple[aiosmtplib.SMTP, float, Endpoint]] = {}
        self.lock = asyncio.Lock()

    async def _connect(self, endpoint: Endpoint) -> aiosmtplib.SMTP:
        """Open a new SMTP connection and authenticate if needed."""
        # Implicit TLS when requested, otherwise opportunistic STARTTLS without
        # certificate validation (MX hosts rarely present matching names).
        smtp = aiosmtplib.SMTP(
            hostname=endpoint.host,
            port=endpoint.port,
            use_tls=endpoint.use_tls,
            start_tls=False if endpoint.use_tls else None,
            validate_certs=endpoint.use_tls,
            local_hostname=endpoint.local_hostname,
            timeout=self.timeout,
        )

        async def _do_connect():
            await smtp.connect()
            if endpoint.user and endpoint.password:
                await smtp.login(endpoint.user, endpoint.password)

        await asyncio.wait_for(_do_connect(), timeout=self.timeout + 5.0)
        return smtp

    async def _is_alive(self, smtp: aiosmtplib.SMTP) -> bool:
        """Return ``True`` when the connection responds correctly to NOOP."""
        try:
            code, _ = await asyncio.wait_for(smtp.noop(), timeout=5.0)
            return code == 250
        except (aiosmtplib.SMTPException, asyncio.TimeoutError, OSError):
            return False

    async def _close(self, smtp: aiosmtplib.SMTP) -> None:
        try:
            await smtp.quit()
        except (aiosmtplib.SMTPException, asyncio.TimeoutError, OSError):
            smtp.close()

    async def get_connection(self, endpoint: Endpoint) -> aiosmtplib.SMTP:
        """Return a pooled connection bound to the calling task."""
        key = (id(asyncio.current_task()), endpoint.host, endpoint.port)

        async with self.lock:
            entry = self.pool.get(key)

        if entry:
            smtp, last_used, params = entry
            fresh_enough = (time.time() - last_used) < self.ttl
            if params == endpoint and fresh_enough and await self._is_alive(smtp):
                async with self.lock:
                    self.pool[key] = (smtp, time.time(), endpoint)
                return smtp
            async with self.lock:
                self.pool.pop(key, None)
            await self._close(smtp)

        smtp = await self._connect(endpoint)
        async with self.lock:
            self.pool[key] = (smtp, time.time(), endpoint)
        return smtp

    async def discard(self, endpoint: Endpoint) -> None:
        """Drop the calling task's connection after a failed transaction."""
        key = (id(asyncio.current_task()), endpoint.host, endpoint.port)
        async with self.lock:
            entry = self.pool.pop(key, None)
        if entry:
            await self._close(entry[0])

    async def cleanup(self) -> None:
        """Close idle or broken connections still registered in the pool."""
        now = time.time()
        async with self.lock:
            items = list(self.pool.items())

        expired: list[Tuple[PoolKey, aiosmtplib.SMTP]] = []
        for key, (smtp, last_used, _endpoint) in items:
            if (now - last_used) > self.ttl or not await self._is_alive(smtp):
                expired.append((key, smtp))

        for key, smtp in expired:
            async with self.lock:
                entry = self.pool.pop(key, None)
            if entry:
                await self._close(entry[0])

    async def close_all(self) -> None:
        async with self.lock:
            items = list(self.pool.values())
            self.pool.clear()
        for smtp, _, _ in items:
            await self._close(smtp)
