"""Configuration loader producing the immutable relay configuration.

Options are read from an INI file (default ``config.ini``, overridden by
``RELAY_CONFIG``); every option falls back to an environment variable named
``RELAY_<SECTION>_<OPTION>`` (upper case). Example::

    [smtp]
    listen_address = 0.0.0.0:25
    listen_address_tls = 0.0.0.0:465
    hostname = mx.example.com
    allowed_domains = example.com, example.net
    private_email = me@private.example
    cert_file = /etc/relay/cert.pem
    key_file = /etc/relay/key.pem
    enable_spf = yes
    enable_dmarc = no

    [telegram]
    bot_token = 123:abc
    chat_id = 42
    send_eml = yes

    [webhook]
    enabled = yes
    url = https://hooks.example.com/notify
    headers = {"Authorization": "Bearer xyz"}
    body = {"title": "{title}", "text": "{content}"}

The result is a tree of frozen dataclasses; components receive it at
construction and never mutate it.
"""

from __future__ import annotations

import configparser
import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional, Tuple

from .logger import get_logger

logger = get_logger()

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


@dataclass(frozen=True)
class SMTPSettings:
    listen_address: str = "0.0.0.0:25"
    listen_address_tls: str = "0.0.0.0:465"
    hostname: str = "localhost"
    allowed_domains: Tuple[str, ...] = ()
    private_email: str = ""
    cert_file: Optional[str] = None
    key_file: Optional[str] = None
    enable_spf: bool = True
    enable_dmarc: bool = False
    dkim_selector: str = "default"
    dkim_private_key: Optional[str] = None
    max_message_bytes: int = 1024 * 1024
    max_recipients: int = 50
    timeout: float = 10.0

    def is_allowed_domain(self, domain: str) -> bool:
        domain = domain.strip().lower()
        return any(domain == allowed.lower() for allowed in self.allowed_domains)


@dataclass(frozen=True)
class ForwardSettings:
    relay_host: Optional[str] = None
    relay_port: int = 25
    relay_user: Optional[str] = None
    relay_password: Optional[str] = None
    relay_use_tls: bool = False
    helo_hostname: Optional[str] = None
    timeout: float = 30.0


@dataclass(frozen=True)
class TelegramSettings:
    bot_token: Optional[str] = None
    chat_id: Optional[str] = None
    send_eml: bool = False
    api_base: str = "https://api.telegram.org"
    timeout: float = 15.0

    @property
    def enabled(self) -> bool:
        return bool(self.chat_id and self.bot_token)


@dataclass(frozen=True)
class WebhookSettings:
    enabled: bool = False
    url: Optional[str] = None
    method: str = "POST"
    headers: Tuple[Tuple[str, str], ...] = ()
    body: Optional[str] = None
    timeout: float = 15.0


@dataclass(frozen=True)
class DispatchSettings:
    workers: int = 4
    queue_size: int = 1000
    drain_timeout: float = 10.0


@dataclass(frozen=True)
class StatusSettings:
    enabled: bool = False
    host: str = "127.0.0.1"
    port: int = 8025
    api_token: Optional[str] = None


@dataclass(frozen=True)
class RelayConfig:
    smtp: SMTPSettings = field(default_factory=SMTPSettings)
    forward: ForwardSettings = field(default_factory=ForwardSettings)
    telegram: TelegramSettings = field(default_factory=TelegramSettings)
    webhook: WebhookSettings = field(default_factory=WebhookSettings)
    dispatch: DispatchSettings = field(default_factory=DispatchSettings)
    status: StatusSettings = field(default_factory=StatusSettings)

    @property
    def private_email(self) -> str:
        return self.smtp.private_email


class ConfigLoader:
    """Read ``config.ini`` with ``RELAY_*`` environment fallbacks."""

    def __init__(self, config_path: str | os.PathLike | None = None, environ: Dict[str, str] | None = None):
        self.config_path = Path(config_path or os.getenv("RELAY_CONFIG", "config.ini"))
        self.environ = os.environ if environ is None else environ
        self.parser = configparser.ConfigParser(interpolation=None)

    def read(self) -> None:
        if self.config_path.exists():
            self.parser.read(self.config_path)
        else:
            logger.info("Config file %s not found, using environment only", self.config_path)

    # ------------------------------------------------------------------ getters
    def get(self, section: str, option: str, default: str | None = None) -> str | None:
        if self.parser.has_option(section, option):
            value = self.parser.get(section, option)
        else:
            value = self.environ.get(f"RELAY_{section}_{option}".upper())
        if value is None:
            return default
        value = value.strip()
        return value if value else default

    def get_int(self, section: str, option: str, default: int) -> int:
        value = self.get(section, option)
        if value is None:
            return default
        try:
            return int(value)
        except ValueError:
            raise ValueError(f"[{section}] {option} must be an integer, got {value!r}")

    def get_float(self, section: str, option: str, default: float) -> float:
        value = self.get(section, option)
        if value is None:
            return default
        try:
            return float(value)
        except ValueError:
            raise ValueError(f"[{section}] {option} must be a number, got {value!r}")

    def get_bool(self, section: str, option: str, default: bool) -> bool:
        value = self.get(section, option)
        if value is None:
            return default
        normalized = value.lower()
        if normalized in _TRUE:
            return True
        if normalized in _FALSE:
            return False
        raise ValueError(f"[{section}] {option} must be a boolean, got {value!r}")

    def get_list(self, section: str, option: str) -> Tuple[str, ...]:
        value = self.get(section, option)
        if not value:
            return ()
        return tuple(item.strip() for item in value.replace("\n", ",").split(",") if item.strip())

    def get_json_headers(self, section: str, option: str) -> Tuple[Tuple[str, str], ...]:
        value = self.get(section, option)
        if not value:
            return ()
        try:
            data = json.loads(value)
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid JSON in [{section}] {option}: {e}")
        if not isinstance(data, dict):
            raise ValueError(f"[{section}] {option} must be a JSON object")
        return tuple((str(k), str(v)) for k, v in data.items())

    # ------------------------------------------------------------------ sections
    def _read_key_material(self, value: str | None) -> str | None:
        """Accept inline PEM or a path to a PEM file."""
        if not value:
            return None
        if "-----BEGIN" in value:
            return value
        path = Path(value).expanduser()
        if not path.exists():
            raise ValueError(f"DKIM private key file not found: {path}")
        return path.read_text()

    def load(self) -> RelayConfig:
        self.read()
        smtp = SMTPSettings(
            listen_address=self.get("smtp", "listen_address", "0.0.0.0:25"),
            listen_address_tls=self.get("smtp", "listen_address_tls", "0.0.0.0:465"),
            hostname=self.get("smtp", "hostname", self.environ.get("MXDOMAIN", "localhost")),
            allowed_domains=tuple(d.lower() for d in self.get_list("smtp", "allowed_domains")),
            private_email=self.get("smtp", "private_email", ""),
            cert_file=self.get("smtp", "cert_file"),
            key_file=self.get("smtp", "key_file"),
            enable_spf=self.get_bool("smtp", "enable_spf", True),
            enable_dmarc=self.get_bool("smtp", "enable_dmarc", False),
            dkim_selector=self.get("smtp", "dkim_selector", "default"),
            dkim_private_key=self._read_key_material(
                self.get("smtp", "dkim_private_key_file") or self.get("smtp", "dkim_private_key")
            ),
            max_message_bytes=self.get_int("smtp", "max_message_bytes", 1024 * 1024),
            max_recipients=self.get_int("smtp", "max_recipients", 50),
            timeout=self.get_float("smtp", "timeout", 10.0),
        )
        forward = ForwardSettings(
            relay_host=self.get("forward", "relay_host"),
            relay_port=self.get_int("forward", "relay_port", 25),
            relay_user=self.get("forward", "relay_user"),
            relay_password=self.get("forward", "relay_password"),
            relay_use_tls=self.get_bool("forward", "relay_use_tls", False),
            helo_hostname=self.get("forward", "helo_hostname", smtp.hostname),
            timeout=self.get_float("forward", "timeout", 30.0),
        )
        telegram = TelegramSettings(
            bot_token=self.get("telegram", "bot_token"),
            chat_id=self.get("telegram", "chat_id"),
            send_eml=self.get_bool("telegram", "send_eml", False),
            api_base=self.get("telegram", "api_base", "https://api.telegram.org"),
            timeout=self.get_float("telegram", "timeout", 15.0),
        )
        webhook = WebhookSettings(
            enabled=self.get_bool("webhook", "enabled", False),
            url=self.get("webhook", "url"),
            method=(self.get("webhook", "method", "POST") or "POST").upper(),
            headers=self.get_json_headers("webhook", "headers"),
            body=self.get("webhook", "body"),
            timeout=self.get_float("webhook", "timeout", 15.0),
        )
        if webhook.enabled and not webhook.url:
            raise ValueError("[webhook] url is required when the webhook is enabled")
        dispatch = DispatchSettings(
            workers=self.get_int("dispatch", "workers", 4),
            queue_size=self.get_int("dispatch", "queue_size", 1000),
            drain_timeout=self.get_float("dispatch", "drain_timeout", 10.0),
        )
        status = StatusSettings(
            enabled=self.get_bool("server", "enabled", False),
            host=self.get("server", "host", "127.0.0.1"),
            port=self.get_int("server", "port", 8025),
            api_token=self.get("server", "api_token"),
        )
        config = RelayConfig(smtp=smtp, forward=forward, telegram=telegram, webhook=webhook, dispatch=dispatch, status=status)
        logger.info(
            "Loaded config from %s (domains=%s, spf=%s, dmarc=%s)",
            self.config_path,
            ", ".join(smtp.allowed_domains) or "-",
            smtp.enable_spf,
            smtp.enable_dmarc,
        )
        return config


def load_config(config_path: str | os.PathLike | None = None, environ: Dict[str, str] | None = None) -> RelayConfig:
    """Convenience wrapper around :class:`ConfigLoader`."""
    return ConfigLoader(config_path, environ).load()


def split_listen_address(value: str, default_port: int) -> Tuple[str, int]:
    """``0.0.0.0:25`` → ``("0.0.0.0", 25)``; ``:2525`` binds every interface."""
    host, sep, port = value.rpartition(":")
    if not sep:
        return value or "0.0.0.0", default_port
    host = host.strip("[]") or "0.0.0.0"
    return host, int(port) if port else default_port
