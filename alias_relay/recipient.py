"""Recipient gate that keeps the relay from becoming an open relay."""

from __future__ import annotations

import re

from .codec import MARKER
from .errors import invalid_recipient

OUTSIDE_MAILBOX_RE = re.compile(r"^[\w-]+@.+$")


def is_private(sender: str, private_email: str) -> bool:
    return bool(private_email) and sender.strip().lower() == private_email.strip().lower()


def validate_recipient(sender: str, recipient: str, private_email: str) -> None:
    """Raise :class:`SMTPError` 550 unless ``recipient`` may be relayed.

    Accepted: aliases written by the private mailbox (they carry the
    ``_at_`` marker), or plain ``word-or-hyphen@anything`` gateway addresses.
    """
    if is_private(sender, private_email) and MARKER in recipient:
        return
    if OUTSIDE_MAILBOX_RE.match(recipient):
        return
    raise invalid_recipient()
