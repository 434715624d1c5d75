"""DKIM key inspection and the DNS records the relay expects to be published."""

from __future__ import annotations

import base64
from typing import List

from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from .config_loader import RelayConfig

KEYGEN_HINT = "openssl genrsa -out dkim_private.pem 2048"


class DKIMKeyError(ValueError):
    """The configured DKIM private key cannot be used."""


def dkim_public_key(private_pem: str) -> str:
    """Return the base64 ``p=`` value for the DKIM TXT record of ``private_pem``."""
    if not private_pem:
        raise DKIMKeyError("DKIM private key is empty")
    try:
        key = serialization.load_pem_private_key(private_pem.encode(), password=None)
    except (ValueError, TypeError, UnsupportedAlgorithm) as exc:
        raise DKIMKeyError(f"invalid DKIM private key: {exc}") from exc
    if not isinstance(key, rsa.RSAPrivateKey):
        raise DKIMKeyError("DKIM private key must be an RSA key")
    der = key.public_key().public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    return base64.b64encode(der).decode("ascii")


def recommended_records(config: RelayConfig, public_key: str | None = None) -> List[str]:
    """Zone-file lines to publish for every accepted domain."""
    smtp = config.smtp
    lines: List[str] = []
    for domain in smtp.allowed_domains:
        lines.append(f";; {domain}")
        lines.append(f"mx.{domain}.\t1\tIN\tA\t<ip address>")
        lines.append(f"{domain}.\t1\tIN\tMX\t5 mx.{domain}.")
        lines.append(f'{domain}.\t1\tIN\tTXT\t"v=spf1 mx:{domain} -all"')
        if smtp.enable_dmarc:
            lines.append(f'_dmarc.{domain}.\t1\tIN\tTXT\t"v=DMARC1; p=reject; ruf=mailto:dmarc@{domain}; fo=1;"')
            lines.append(f'{smtp.dkim_selector}._domainkey.{domain}.\t1\tIN\tTXT\t"v=DKIM1; k=rsa; p={public_key or ""}"')
    return lines
