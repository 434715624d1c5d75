"""SPF evaluation and the outcome → SMTP reply decision table."""

from __future__ import annotations

import asyncio
import ipaddress
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional, Tuple

import spf

from .codec import split_address
from .errors import EnhancedCode, SMTPError
from .logger import get_logger

SPFChecker = Callable[[str, str, str], Tuple[str, str]]


class SPFOutcome(str, Enum):
    NONE = "none"
    NEUTRAL = "neutral"
    PASS = "pass"
    FAIL = "fail"
    SOFTFAIL = "softfail"
    TEMPERROR = "temperror"
    PERMERROR = "permerror"
    LOOKUP_ERROR = "lookup-error"


@dataclass(frozen=True)
class SPFDecision:
    """What the relay answers to MAIL FROM for a given SPF outcome."""

    accept: bool
    code: int
    enhanced_code: EnhancedCode
    message: str
    log_level: int = logging.INFO

    def to_error(self) -> SMTPError:
        return SMTPError(self.code, self.enhanced_code, self.message)


SPF_DECISIONS: Dict[SPFOutcome, SPFDecision] = {
    # No published record: temporary rejection.
    SPFOutcome.NONE: SPFDecision(False, 451, (4, 7, 0), "SPF check softfail (no SPF record)", logging.WARNING),
    SPFOutcome.NEUTRAL: SPFDecision(True, 250, (2, 0, 0), "SPF neutral"),
    SPFOutcome.PASS: SPFDecision(True, 250, (2, 0, 0), "SPF pass"),
    SPFOutcome.FAIL: SPFDecision(False, 550, (5, 7, 0), "SPF check failed", logging.WARNING),
    SPFOutcome.SOFTFAIL: SPFDecision(False, 450, (4, 7, 1), "SPF check softfail", logging.WARNING),
    SPFOutcome.TEMPERROR: SPFDecision(False, 451, (4, 4, 3), "Temporary SPF check error", logging.WARNING),
    SPFOutcome.PERMERROR: SPFDecision(False, 550, (5, 5, 2), "SPF check permanent error", logging.WARNING),
    SPFOutcome.LOOKUP_ERROR: SPFDecision(False, 550, (5, 1, 0), "Invalid remote address", logging.WARNING),
}

_missing = set(SPFOutcome) - set(SPF_DECISIONS)
if _missing:  # pragma: no cover - guarded by tests
    raise RuntimeError(f"SPF decision table is missing outcomes: {sorted(o.value for o in _missing)}")


def decide(outcome: SPFOutcome) -> SPFDecision:
    """Return the decision for ``outcome``; total over :class:`SPFOutcome`."""
    return SPF_DECISIONS[outcome]


@dataclass(frozen=True)
class SPFResult:
    outcome: SPFOutcome
    decision: SPFDecision
    remote_ip: Optional[str] = None
    explanation: str = ""

    @property
    def accepted(self) -> bool:
        return self.decision.accept


def parse_remote_ip(peer: Any) -> Optional[str]:
    """Extract the client IP from an aiosmtpd peer tuple or a ``host:port`` string."""
    if isinstance(peer, (tuple, list)) and peer:
        host = str(peer[0])
    elif isinstance(peer, str):
        host = peer
        if host.startswith("["):
            host = host[1:].split("]", 1)[0]
        elif host.count(":") == 1:
            host = host.split(":", 1)[0]
    else:
        return None
    try:
        return str(ipaddress.ip_address(host))
    except ValueError:
        return None


def _pyspf_check(ip: str, sender: str, helo: str) -> Tuple[str, str]:
    return spf.check2(i=ip, s=sender, h=helo)


class SPFEvaluator:
    """Run the SPF lookup and map its outcome through :data:`SPF_DECISIONS`."""

    def __init__(self, checker: SPFChecker | None = None, logger=None, metrics=None):
        self.checker = checker or _pyspf_check
        self.logger = logger or get_logger()
        self.metrics = metrics

    async def evaluate(self, remote_addr: Any, helo: str, mail_from: str, session_id: str = "-") -> SPFResult:
        remote_ip = parse_remote_ip(remote_addr)
        if remote_ip is None:
            self.logger.warning("parse remote addr failed (%r) - UUID: %s", remote_addr, session_id)
            return self._finish(SPFOutcome.LOOKUP_ERROR, None, mail_from, "", session_id)

        try:
            raw, explanation = await asyncio.to_thread(self.checker, remote_ip, mail_from, helo or "")
        except Exception as exc:
            self.logger.warning("SPF check raised %s: %s - UUID: %s", type(exc).__name__, exc, session_id)
            raw, explanation = SPFOutcome.TEMPERROR.value, str(exc)

        try:
            outcome = SPFOutcome(str(raw).lower())
        except ValueError:
            self.logger.warning("Unknown SPF result %r, treating as temperror - UUID: %s", raw, session_id)
            outcome = SPFOutcome.TEMPERROR
        return self._finish(outcome, remote_ip, mail_from, explanation, session_id)

    def _finish(self, outcome: SPFOutcome, remote_ip: Optional[str], mail_from: str, explanation: str, session_id: str) -> SPFResult:
        decision = decide(outcome)
        _, domain = split_address(mail_from)
        self.logger.log(
            decision.log_level,
            "SPF Result: %s - Domain: %s, Remote IP: %s, Sender: %s, accept=%s - UUID: %s",
            outcome.value.upper(),
            domain or "-",
            remote_ip or "-",
            mail_from or "<>",
            decision.accept,
            session_id,
        )
        if self.metrics is not None:
            self.metrics.inc_spf(outcome.value)
        return SPFResult(outcome=outcome, decision=decision, remote_ip=remote_ip, explanation=explanation or "")
