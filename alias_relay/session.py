"""Per-connection session state machine and forwarding direction resolution."""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, List, Optional

from .codec import decode_address, encode_address, is_lossless, split_address
from .config_loader import RelayConfig
from .dispatch import TaskPool
from .errors import SMTPError, message_rejected
from .forwarder import Forwarder
from .logger import get_logger
from .mime import ParsedMessage, parse_message
from .notifier import NotificationEvent, Notifier
from .recipient import is_private, validate_recipient
from .spf_policy import SPFEvaluator, SPFResult


class Direction(str, Enum):
    PRIVATE_TO_OUTSIDE = "private2outside"
    OUTSIDE_TO_PRIVATE = "outside2private"
    DROPPED = "dropped"


class State(str, Enum):
    CONNECTED = "connected"
    MAIL_FROM = "mail_from"
    RECIPIENTS = "recipients"
    DATA = "data"
    FORWARDED = "forwarded"
    REJECTED = "rejected"
    DROPPED = "dropped"


@dataclass(frozen=True)
class Route:
    direction: Direction
    from_address: str = ""
    to_address: str = ""

    @property
    def outside_to_private(self) -> bool:
        return self.direction is Direction.OUTSIDE_TO_PRIVATE


def resolve_route(sender: str, recipient: str, private_email: str) -> Route:
    """Decide where a message goes and which envelope pair it gets.

    * private mailbox writing to an alias → deliver to the decoded external
      address, from the private side's original handle;
    * private mailbox writing to anything else → dropped (acknowledged, not sent);
    * anybody else → deliver to the private mailbox, from the encoded alias.
    """
    if not private_email:
        return Route(Direction.DROPPED)
    if is_private(sender, private_email):
        decoded = decode_address(recipient)
        if decoded is None:
            return Route(Direction.DROPPED)
        return Route(Direction.PRIVATE_TO_OUTSIDE, from_address=decoded.handle, to_address=decoded.external)
    return Route(Direction.OUTSIDE_TO_PRIVATE, from_address=encode_address(sender, recipient), to_address=private_email)


@dataclass
class RelayServices:
    """Collaborators shared by every session of the process."""

    config: RelayConfig
    spf: SPFEvaluator
    pool: TaskPool
    forwarder: Forwarder
    notifier: Notifier
    metrics: Any = None
    logger: Any = None

    def new_session(self, remote_addr: Any = None, helo: str = "") -> "RelaySession":
        return RelaySession(self, remote_addr=remote_addr, helo=helo)


class RelaySession:
    """State of one SMTP connection; one transaction at a time."""

    def __init__(self, services: RelayServices, remote_addr: Any = None, helo: str = ""):
        self.services = services
        self.config = services.config
        self.logger = services.logger or get_logger()
        self.remote_addr = remote_addr
        self.helo = helo or ""
        self.state = State.CONNECTED
        self.session_id = ""
        self.mail_from = ""
        self.recipients: List[str] = []
        self.spf_result: Optional[SPFResult] = None
        self.message_id = ""

    # ---------------------------------------------------------------- helpers
    @property
    def spf_status(self) -> str:
        if self.spf_result is None:
            return "disabled"
        return self.spf_result.outcome.value

    def reset(self) -> None:
        """Forget the current transaction (RSET or end of DATA)."""
        self.state = State.CONNECTED
        self.mail_from = ""
        self.recipients = []
        self.spf_result = None
        self.message_id = ""

    def _count_reject(self, reason: str) -> None:
        if self.services.metrics is not None:
            self.services.metrics.inc_rejected(reason)

    def first_matching_recipient(self) -> str:
        """First recipient in one of our domains, else the first recipient."""
        for rcpt in self.recipients:
            _, domain = split_address(rcpt)
            if self.config.smtp.is_allowed_domain(domain):
                return rcpt
        return self.recipients[0] if self.recipients else ""

    # --------------------------------------------------------------- commands
    async def mail_from_received(self, address: str) -> SPFResult | None:
        """Start a transaction; raise :class:`SMTPError` when SPF rejects it."""
        self.reset()
        self.session_id = str(uuid.uuid4())
        self.mail_from = address or ""
        if not self.config.smtp.enable_spf:
            self.state = State.MAIL_FROM
            return None
        result = await self.services.spf.evaluate(self.remote_addr, self.helo, self.mail_from, self.session_id)
        self.spf_result = result
        if not result.accepted:
            self._count_reject(f"spf-{result.outcome.value}")
            self.state = State.CONNECTED
            raise result.decision.to_error()
        self.state = State.MAIL_FROM
        return result

    def rcpt_to_received(self, address: str) -> None:
        if self.state not in (State.MAIL_FROM, State.RECIPIENTS):
            raise SMTPError(503, (5, 5, 1), "Error: need MAIL command")
        self.recipients.append(address)
        self.state = State.RECIPIENTS

    async def data_received(self, raw: bytes) -> Route:
        """Route the message and launch forwarding/notifications without awaiting them."""
        if self.state is not State.RECIPIENTS:
            raise SMTPError(503, (5, 5, 1), "Error: need RCPT command")
        self.state = State.DATA
        sid = self.session_id
        try:
            parsed = parse_message(raw)
        except ValueError as exc:
            self.logger.error("Failed to parse email: %s - UUID: %s", exc, sid)
            self.state = State.REJECTED
            self._count_reject("parse-error")
            raise message_rejected()

        self.message_id = parsed.message_id
        self.logger.info(
            "Received email: From=%s HeaderTo=%s ParsedTo=%s Subject=%s MessageID=%s - UUID: %s",
            parsed.get_header("From"),
            parsed.get_header("To"),
            self.recipients,
            parsed.subject,
            self.message_id or "-",
            sid,
        )

        sender = self.mail_from or parsed.from_address
        recipient = self.first_matching_recipient()
        private_email = self.config.private_email
        try:
            validate_recipient(sender, recipient, private_email)
        except SMTPError:
            self.logger.warning(
                "Invalid recipient %s (expected random@domain or ran-dom@domain) - UUID: %s", recipient, sid
            )
            self.state = State.REJECTED
            self._count_reject("invalid-recipient")
            raise

        route = resolve_route(sender, recipient, private_email)
        if self.services.metrics is not None:
            self.services.metrics.inc_route(route.direction.value)
        if route.direction is Direction.DROPPED:
            if not private_email:
                self.logger.info("Email forwarder is disabled - UUID: %s", sid)
            else:
                self.logger.info("not need forward, from %s to %s - UUID: %s", sender, recipient, sid)
            self.state = State.DROPPED
            return route

        self.logger.info(
            "%s, ([%s] → [%s]) changed to ([%s] → [%s]) - UUID: %s",
            "Outside 2 private" if route.outside_to_private else "Private 2 outside",
            sender,
            recipient,
            route.from_address,
            route.to_address,
            sid,
        )
        if route.outside_to_private and not is_lossless(sender, recipient):
            self.logger.warning("Alias %s does not decode back to %s - UUID: %s", route.from_address, sender, sid)

        payload = bytes(raw)
        forwarder = self.services.forwarder

        def forward_job():
            return forwarder.forward(payload, route.from_address, route.to_address, sid)

        self.services.pool.submit("forward", forward_job, sid)
        if route.outside_to_private:
            self.services.notifier.fan_out(self.build_event(parsed), payload)
        self.state = State.FORWARDED
        return route

    def build_event(self, parsed: ParsedMessage) -> NotificationEvent:
        return NotificationEvent(
            session_id=self.session_id,
            mail_from=self.mail_from,
            recipients=tuple(self.recipients),
            spf_status=self.spf_status,
            subject=parsed.subject,
            date=parsed.get_header("Date"),
            content_type=parsed.content_type,
            body=parsed.text,
            attachments=parsed.attachments,
        )
