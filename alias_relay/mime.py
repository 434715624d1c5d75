"""Extraction of the message metadata used for routing and notifications."""

from __future__ import annotations

from dataclasses import dataclass, field
from email.errors import HeaderParseError
from email.header import decode_header, make_header
from email.message import Message
from email.parser import BytesParser
from email.policy import compat32
from email.utils import parseaddr
from typing import List, Optional, Tuple


@dataclass(frozen=True)
class ParsedMessage:
    """Read-only view over a received message."""

    headers: Tuple[Tuple[str, str], ...]
    text: str = ""
    attachments: Tuple[str, ...] = field(default_factory=tuple)

    def get_header(self, name: str) -> str:
        """Return the first header named ``name`` (case-insensitive), or ``""``."""
        wanted = name.lower()
        for key, value in self.headers:
            if key.lower() == wanted:
                return value
        return ""

    @property
    def subject(self) -> str:
        return self.get_header("Subject")

    @property
    def message_id(self) -> str:
        return self.get_header("Message-ID")

    @property
    def from_address(self) -> str:
        return parseaddr(self.get_header("From"))[1]

    @property
    def content_type(self) -> str:
        return primary_content_type(self.get_header("Content-Type"))


def primary_content_type(value: str) -> str:
    """``text/plain; charset=utf-8`` → ``text/plain``."""
    return value.split(";", 1)[0].strip()


def decode_header_value(value: str) -> str:
    """Unfold and decode RFC 2047 words; undecodable values are returned as-is."""
    value = " ".join(value.split())
    try:
        return str(make_header(decode_header(value)))
    except (HeaderParseError, LookupError, UnicodeError, ValueError):
        return value.encode("utf-8", "surrogateescape").decode("utf-8", "replace")


def _decode_part(part: Message) -> str:
    payload = part.get_payload(decode=True)
    if not isinstance(payload, bytes):
        return ""
    charset = part.get_content_charset() or "utf-8"
    try:
        return payload.decode(charset, errors="replace")
    except LookupError:
        return payload.decode("utf-8", errors="replace")


def _is_attachment(part: Message) -> bool:
    if not part.get("Content-Disposition"):
        return False
    return part.get_content_disposition() == "attachment" or bool(part.get_filename())


def _text_body(msg: Message) -> str:
    fallback: Optional[Message] = None
    for part in msg.walk():
        if part.is_multipart() or _is_attachment(part):
            continue
        content_type = part.get_content_type()
        if content_type == "text/plain":
            return _decode_part(part)
        if content_type == "text/html" and fallback is None:
            fallback = part
    return _decode_part(fallback) if fallback is not None else ""


def _attachment_filenames(msg: Message) -> List[str]:
    names: List[str] = []
    for part in msg.walk():
        if part.is_multipart() or not part.get("Content-Disposition"):
            continue
        filename = part.get_filename()
        if filename:
            names.append(decode_header_value(filename))
    return names


def parse_message(raw: bytes) -> ParsedMessage:
    """Decode ``raw`` into a :class:`ParsedMessage`.

    Header values and text parts are decoded leniently: unknown charsets and
    odd header syntax never fail the parse. Raises :class:`ValueError` only
    when ``raw`` is empty or carries no header block.
    """
    if not raw or not raw.strip():
        raise ValueError("empty message")
    msg = BytesParser(policy=compat32).parsebytes(raw)
    headers = tuple((key, decode_header_value(str(value))) for key, value in msg.raw_items())
    if not headers:
        raise ValueError("message has no headers")
    return ParsedMessage(
        headers=headers,
        text=_text_body(msg),
        attachments=tuple(_attachment_filenames(msg)),
    )
