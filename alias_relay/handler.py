"""aiosmtpd handler that drives one :class:`RelaySession` per connection."""

from __future__ import annotations

import weakref

from .codec import split_address
from .errors import SMTPError
from .logger import get_logger
from .session import RelayServices, RelaySession


class RelayHandler:
    """Translate aiosmtpd hooks into session commands and SMTP reply lines."""

    def __init__(self, services: RelayServices):
        self.services = services
        self.config = services.config
        self.logger = services.logger or get_logger()
        self._sessions: "weakref.WeakKeyDictionary[object, RelaySession]" = weakref.WeakKeyDictionary()

    def relay_session(self, session) -> RelaySession:
        relay = self._sessions.get(session)
        if relay is None:
            relay = self.services.new_session(remote_addr=session.peer, helo=session.host_name or "")
            self._sessions[session] = relay
            self.logger.debug("New connection from %s (helo=%s)", session.peer, session.host_name)
        elif session.host_name:
            relay.helo = session.host_name
        return relay

    async def handle_MAIL(self, server, session, envelope, address, mail_options):
        relay = self.relay_session(session)
        try:
            await relay.mail_from_received(address)
        except SMTPError as exc:
            return str(exc)
        envelope.mail_from = address
        envelope.mail_options.extend(mail_options)
        return "250 OK"

    async def handle_RCPT(self, server, session, envelope, address, rcpt_options):
        relay = self.relay_session(session)
        smtp = self.config.smtp
        _, domain = split_address(address)
        if smtp.allowed_domains and not smtp.is_allowed_domain(domain):
            self.logger.info("Recipient domain %s not accepted - UUID: %s", domain or "-", relay.session_id)
            return "550 5.1.1 Recipient domain not accepted"
        if len(envelope.rcpt_tos) >= smtp.max_recipients:
            return "452 4.5.3 Too many recipients"
        try:
            relay.rcpt_to_received(address)
        except SMTPError as exc:
            return str(exc)
        envelope.rcpt_tos.append(address)
        envelope.rcpt_options.extend(rcpt_options)
        return "250 OK"

    async def handle_RSET(self, server, session, envelope):
        self.relay_session(session).reset()
        return "250 OK"

    async def handle_DATA(self, server, session, envelope):
        relay = self.relay_session(session)
        raw = envelope.original_content or envelope.content
        if isinstance(raw, str):
            raw = raw.encode("utf-8", errors="surrogateescape")
        try:
            await relay.data_received(raw)
        except SMTPError as exc:
            return str(exc)
        return f"250 2.0.0 OK: queued as {relay.session_id}"

    async def handle_exception(self, error):
        self.logger.exception("Unhandled error in SMTP session: %s", error)
        return "451 4.3.0 Internal server error"
