"""Errors surfaced to the SMTP client."""

from __future__ import annotations

from typing import Tuple

EnhancedCode = Tuple[int, int, int]


class SMTPError(Exception):
    """Structured SMTP rejection rendered by the transport as a reply line."""

    def __init__(self, code: int, enhanced_code: EnhancedCode, message: str):
        super().__init__(message)
        self.code = code
        self.enhanced_code = enhanced_code
        self.message = message

    @property
    def temporary(self) -> bool:
        return 400 <= self.code < 500

    def __str__(self) -> str:
        enhanced = ".".join(str(part) for part in self.enhanced_code)
        return f"{self.code} {enhanced} {self.message}"

    def __repr__(self) -> str:
        return f"SMTPError({self.code}, {self.enhanced_code!r}, {self.message!r})"


def invalid_recipient() -> SMTPError:
    return SMTPError(550, (5, 1, 0), "Invalid recipient")


def message_rejected() -> SMTPError:
    return SMTPError(550, (5, 6, 0), "Message rejected")
