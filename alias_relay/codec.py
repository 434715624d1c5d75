"""Reversible alias codec used to hide the private mailbox.

An external sender ``carol@external.org`` writing to ``bob@private.example``
is presented to the private mailbox as::

    carol_at_external_org_bob@private.example

The real counterpart is embedded in the alias itself, so no mapping table is
stored anywhere. Replying to that alias from the private mailbox lets the relay
recover both ``carol@external.org`` (where to deliver) and ``bob`` (which
handle to send from).
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

MARKER = "_at_"


@dataclass(frozen=True)
class DecodedAddress:
    """Result of :func:`decode_address`."""

    external: str
    token: str
    domain: Optional[str] = None

    @property
    def handle(self) -> str:
        """Original private-side address (``token@domain``)."""
        if not self.domain:
            return self.token
        return f"{self.token}@{self.domain}"


def split_address(address: str) -> tuple[str, str]:
    """Split ``local@domain`` on the last ``@``; domain is empty when missing."""
    local, sep, domain = address.rpartition("@")
    if not sep:
        return address, ""
    return local, domain


def sanitize(address: str) -> str:
    """Flatten an address into a local-part safe string."""
    return address.replace("@", MARKER).replace(".", "_")


def encode_address(sender: str, recipient: str) -> str:
    """Build the alias the private mailbox sees for ``sender`` → ``recipient``."""
    local, domain = split_address(recipient)
    return f"{sanitize(sender)}_{local}@{domain}"


def decode_address(encoded: str) -> Optional[DecodedAddress]:
    """Recover the external address and recipient token from an alias.

    ``encoded`` may be a bare local-part or a full address. Returns ``None``
    when the ``_at_`` marker is missing or the alias is truncated.
    """
    local, domain = split_address(encoded)
    user, sep, rest = local.partition(MARKER)
    if not sep or not user:
        return None
    sanitized_domain, sep, token = rest.rpartition("_")
    if not sep or not sanitized_domain or not token:
        return None
    external = f"{user.replace('_', '.')}@{sanitized_domain.replace('_', '.')}"
    return DecodedAddress(external=external, token=token, domain=domain or None)


def is_lossless(sender: str, recipient: str) -> bool:
    """Return ``True`` when the alias for this pair decodes back exactly.

    Underscores in the sender, or in the recipient local-part, cannot be told
    apart from sanitized dots, and a sender already containing ``_at_``
    collides with the marker.
    """
    decoded = decode_address(encode_address(sender, recipient))
    if decoded is None:
        return False
    local, _ = split_address(recipient)
    return decoded.external.lower() == sender.lower() and decoded.token == local
