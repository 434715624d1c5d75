"""Anonymizing inbound SMTP relay for a single private mailbox."""

__version__ = "0.3.0"
