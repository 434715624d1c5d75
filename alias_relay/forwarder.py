"""Re-injection of received messages toward their rewritten destination."""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, List, Optional

import aiosmtplib
import dkim
import dns.asyncresolver
import dns.exception
import dns.resolver

from .codec import split_address
from .config_loader import RelayConfig
from .logger import get_logger
from .smtp_pool import Endpoint, SMTPPool

MXResolver = Callable[[str], Awaitable[List[str]]]


async def resolve_mx(domain: str) -> List[str]:
    """Return MX hosts for ``domain`` ordered by preference.

    Falls back to the domain itself (implicit MX) when no MX record exists.
    """
    try:
        answers = await dns.asyncresolver.resolve(domain, "MX")
    except (dns.resolver.NoAnswer, dns.resolver.NXDOMAIN):
        return [domain]
    mx = sorted((r.preference, str(r.exchange).rstrip(".")) for r in answers)
    hosts = [host for _, host in mx if host]
    return hosts or [domain]


class Forwarder:
    """Deliver the unmodified message bytes with a new envelope pair.

    Delivery goes through ``[forward] relay_host`` when configured, otherwise
    straight to the destination's MX hosts. A single attempt is made; errors
    are logged and counted, never raised.
    """

    def __init__(
        self,
        config: RelayConfig,
        *,
        pool: SMTPPool | None = None,
        mx_resolver: MXResolver | None = None,
        logger=None,
        metrics=None,
    ):
        self.config = config
        self.pool = pool or SMTPPool(timeout=config.forward.timeout)
        self.mx_resolver = mx_resolver or resolve_mx
        self.logger = logger or get_logger()
        self.metrics = metrics

    async def _endpoints(self, to_address: str) -> List[Endpoint]:
        fwd = self.config.forward
        helo = fwd.helo_hostname or self.config.smtp.hostname
        if fwd.relay_host:
            return [
                Endpoint(
                    host=fwd.relay_host,
                    port=fwd.relay_port,
                    user=fwd.relay_user,
                    password=fwd.relay_password,
                    use_tls=fwd.relay_use_tls,
                    local_hostname=helo,
                )
            ]
        _, domain = split_address(to_address)
        if not domain:
            raise ValueError(f"destination address has no domain: {to_address!r}")
        hosts = await self.mx_resolver(domain)
        return [Endpoint(host=host, port=25, local_hostname=helo) for host in hosts]

    def sign(self, raw: bytes, from_address: str, session_id: str = "-") -> bytes:
        """Prepend a DKIM-Signature when DMARC is enabled for the sending domain."""
        smtp = self.config.smtp
        if not smtp.enable_dmarc or not smtp.dkim_private_key:
            return raw
        _, domain = split_address(from_address)
        if not domain or not smtp.is_allowed_domain(domain):
            return raw
        try:
            signature = dkim.sign(
                raw,
                smtp.dkim_selector.encode(),
                domain.encode(),
                smtp.dkim_private_key.encode(),
            )
        except dkim.DKIMException as exc:
            self.logger.warning("DKIM signing failed for %s: %s - UUID: %s", domain, exc, session_id)
            return raw
        return signature + raw

    async def forward(self, raw: bytes, from_address: str, to_address: str, session_id: str = "-") -> bool:
        """Send ``raw`` from ``from_address`` to ``to_address``; return success."""
        payload = self.sign(raw, from_address, session_id)
        try:
            endpoints = await self._endpoints(to_address)
        except (dns.exception.DNSException, ValueError) as exc:
            self.logger.warning("Cannot route %s: %s - UUID: %s", to_address, exc, session_id)
            self._count("error")
            return False

        last_error: Optional[BaseException] = None
        for endpoint in endpoints:
            try:
                smtp = await self.pool.get_connection(endpoint)
                errors, response = await smtp.sendmail(from_address, [to_address], payload)
            except (aiosmtplib.SMTPException, asyncio.TimeoutError, OSError) as exc:
                last_error = exc
                self.logger.warning(
                    "Forward via %s:%d failed: %s - UUID: %s", endpoint.host, endpoint.port, exc, session_id
                )
                await self.pool.discard(endpoint)
                continue
            if errors:
                last_error = RuntimeError(f"recipient refused: {errors}")
                self.logger.warning("Forward via %s refused %s - UUID: %s", endpoint.host, errors, session_id)
                continue
            self.logger.info(
                "Forwarded [%s] → [%s] via %s (%s) - UUID: %s",
                from_address,
                to_address,
                endpoint.host,
                response,
                session_id,
            )
            self._count("sent")
            return True

        self.logger.error("Forward to %s failed: %s - UUID: %s", to_address, last_error, session_id)
        self._count("error")
        return False

    def _count(self, status: str) -> None:
        if self.metrics is not None:
            self.metrics.inc_forward(status)
