"""Notification fan-out for inbound mail (Telegram and generic webhook)."""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field
from typing import Any, List, Tuple

import aiohttp

from .config_loader import RelayConfig, TelegramSettings, WebhookSettings
from .dispatch import TaskPool
from .logger import get_logger

TELEGRAM_TEXT_LIMIT = 4096


@dataclass(frozen=True)
class NotificationEvent:
    """Snapshot of one received message, used only to render summaries."""

    session_id: str
    mail_from: str
    recipients: Tuple[str, ...]
    spf_status: str
    subject: str = ""
    date: str = ""
    content_type: str = ""
    body: str = ""
    attachments: Tuple[str, ...] = field(default_factory=tuple)

    @property
    def title(self) -> str:
        return f"📬 New Email: {self.subject}"

    def render(self) -> str:
        return (
            "📧 New Email Notification\n"
            "=================================\n"
            f"📤 From: {self.mail_from}\n"
            f"📬 To: {', '.join(self.recipients)}\n"
            "---------------------------------\n"
            f"🔍 SPF Status: {self.spf_status}\n"
            f"📝 Subject: {self.subject}\n"
            f"📅 Date: {self.date}\n"
            f"📄 Content-Type: {self.content_type}\n"
            "=================================\n\n"
            f"✉️ Email Body:\n\n{self.body}\n\n"
            "=================================\n"
            f"📎 Attachments:\n{chr(10).join(self.attachments)}\n"
            "=================================\n"
            f"🔑 UUID: {self.session_id}"
        )


def truncate(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    marker = "\n…[truncated]"
    return text[: limit - len(marker)] + marker


class TelegramSink:
    """Telegram Bot API client for the text summary and the raw ``.eml``."""

    name = "telegram"

    def __init__(self, settings: TelegramSettings):
        self.settings = settings

    def _url(self, method: str) -> str:
        return f"{self.settings.api_base.rstrip('/')}/bot{self.settings.bot_token}/{method}"

    async def send(self, event: NotificationEvent, raw: bytes) -> None:
        payload = {"chat_id": self.settings.chat_id, "text": truncate(event.render(), TELEGRAM_TEXT_LIMIT)}
        timeout = aiohttp.ClientTimeout(total=self.settings.timeout)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            async with session.post(self._url("sendMessage"), json=payload) as resp:
                resp.raise_for_status()

    async def send_eml(self, event: NotificationEvent, raw: bytes) -> None:
        form = aiohttp.FormData()
        form.add_field("chat_id", str(self.settings.chat_id))
        form.add_field("caption", truncate(event.subject or "(no subject)", 1024))
        form.add_field("document", raw, filename=f"{event.session_id}.eml", content_type="message/rfc822")
        timeout = aiohttp.ClientTimeout(total=self.settings.timeout)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            async with session.post(self._url("sendDocument"), data=form) as resp:
                resp.raise_for_status()


class WebhookSink:
    """Generic HTTP callback with a configurable JSON body template.

    The template may use ``{title}``, ``{content}`` and ``{uuid}``; values are
    JSON-escaped before substitution. Without a template the body is
    ``{"title": ..., "content": ..., "uuid": ...}``.
    """

    name = "webhook"

    def __init__(self, settings: WebhookSettings):
        self.settings = settings

    def build_body(self, event: NotificationEvent) -> Any:
        values = {"title": event.title, "content": event.render(), "uuid": event.session_id}
        if not self.settings.body:
            return values
        text = self.settings.body
        for key, value in values.items():
            text = text.replace("{" + key + "}", json.dumps(value)[1:-1])
        return json.loads(text)

    async def send(self, event: NotificationEvent, raw: bytes) -> None:
        timeout = aiohttp.ClientTimeout(total=self.settings.timeout)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            async with session.request(
                self.settings.method,
                self.settings.url,
                json=self.build_body(event),
                headers=dict(self.settings.headers) or None,
            ) as resp:
                resp.raise_for_status()


class Notifier:
    """Submit one independent background job per enabled sink."""

    def __init__(self, config: RelayConfig, pool: TaskPool, *, logger=None, metrics=None):
        self.config = config
        self.pool = pool
        self.logger = logger or get_logger()
        self.metrics = metrics
        self.telegram = TelegramSink(config.telegram) if config.telegram.enabled else None
        self.webhook = WebhookSink(config.webhook) if config.webhook.enabled else None

    def targets(self) -> List[Tuple[str, Any]]:
        """Return ``(name, coroutine function)`` for every enabled sink."""
        targets: List[Tuple[str, Any]] = []
        if self.telegram is not None:
            targets.append(("telegram", self.telegram.send))
            if self.config.telegram.send_eml:
                targets.append(("telegram-eml", self.telegram.send_eml))
        if self.webhook is not None:
            targets.append(("webhook", self.webhook.send))
        return targets

    def fan_out(self, event: NotificationEvent, raw: bytes) -> int:
        """Queue every enabled sink; return how many jobs were accepted."""
        targets = self.targets()
        if not targets:
            self.logger.info("Notifications are disabled - UUID: %s", event.session_id)
            return 0
        submitted = 0
        for name, send in targets:
            job = self._job(name, send, event, raw)
            if self.pool.submit(f"notify-{name}", job, event.session_id):
                submitted += 1
        return submitted

    def _job(self, name: str, send, event: NotificationEvent, raw: bytes):
        async def run() -> None:
            try:
                await send(event, raw)
            except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
                self.logger.warning("Notification %s failed: %s - UUID: %s", name, exc, event.session_id)
                self._count(name, "error")
                return
            self.logger.info("Notification %s delivered - UUID: %s", name, event.session_id)
            self._count(name, "sent")

        return run

    def _count(self, sink: str, status: str) -> None:
        if self.metrics is not None:
            self.metrics.inc_notification(sink, status)
