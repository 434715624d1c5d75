import types

import aiohttp
import pytest

from alias_relay import notifier as notifier_module
from alias_relay.config_loader import RelayConfig, TelegramSettings, WebhookSettings
from alias_relay.dispatch import TaskPool
from alias_relay.notifier import NotificationEvent, Notifier, TelegramSink, WebhookSink, truncate


def quiet_logger():
    noop = lambda *args, **kwargs: None  # noqa: E731
    return types.SimpleNamespace(debug=noop, info=noop, warning=noop, error=noop, exception=noop)


def make_event(**overrides):
    values = dict(
        session_id="1b4e28ba-2fa1-11d2-883f-0016d3cca427",
        mail_from="carol@external.org",
        recipients=("random@gw.example",),
        spf_status="pass",
        subject='Quarterly "numbers"',
        date="Mon, 19 Oct 2026 10:00:00 +0000",
        content_type="text/plain",
        body="Line one\nLine two",
        attachments=("report.pdf",),
    )
    values.update(overrides)
    return NotificationEvent(**values)


class DummyResponse:
    def __init__(self, status=200):
        self.status = status

    def raise_for_status(self):
        if self.status >= 400:
            raise aiohttp.ClientResponseError(None, (), status=self.status)

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False


class DummyClientSession:
    calls = []
    status = 200

    def __init__(self, *args, **kwargs):
        self.kwargs = kwargs

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False

    def post(self, url, **kwargs):
        DummyClientSession.calls.append(("POST", url, kwargs))
        return DummyResponse(DummyClientSession.status)

    def request(self, method, url, **kwargs):
        DummyClientSession.calls.append((method, url, kwargs))
        return DummyResponse(DummyClientSession.status)


@pytest.fixture
def http(monkeypatch):
    DummyClientSession.calls = []
    DummyClientSession.status = 200
    monkeypatch.setattr(notifier_module.aiohttp, "ClientSession", DummyClientSession)
    return DummyClientSession


def test_render_contains_summary_fields():
    text = make_event().render()
    assert text.startswith("📧 New Email Notification")
    assert "📤 From: carol@external.org" in text
    assert "📬 To: random@gw.example" in text
    assert "🔍 SPF Status: pass" in text
    assert "📄 Content-Type: text/plain" in text
    assert "Line one\nLine two" in text
    assert "report.pdf" in text
    assert text.endswith("🔑 UUID: 1b4e28ba-2fa1-11d2-883f-0016d3cca427")


def test_truncate_respects_limit():
    assert truncate("short", 10) == "short"
    long_text = "x" * 5000
    result = truncate(long_text, 4096)
    assert len(result) == 4096
    assert result.endswith("[truncated]")


def test_webhook_body_template_escapes_values():
    sink = WebhookSink(WebhookSettings(enabled=True, url="https://hooks.example", body='{"msg": "{title}", "id": "{uuid}"}'))
    body = sink.build_body(make_event())
    assert body == {"msg": '📬 New Email: Quarterly "numbers"', "id": "1b4e28ba-2fa1-11d2-883f-0016d3cca427"}


def test_webhook_default_body():
    sink = WebhookSink(WebhookSettings(enabled=True, url="https://hooks.example"))
    body = sink.build_body(make_event())
    assert set(body) == {"title", "content", "uuid"}
    assert body["content"] == make_event().render()


def test_webhook_invalid_template_raises_value_error():
    sink = WebhookSink(WebhookSettings(enabled=True, url="https://hooks.example", body="{title"))
    with pytest.raises(ValueError):
        sink.build_body(make_event())


@pytest.mark.asyncio
async def test_telegram_send_posts_text(http):
    sink = TelegramSink(TelegramSettings(bot_token="123:abc", chat_id="42", api_base="https://tg.example/"))
    await sink.send(make_event(body="y" * 6000), b"raw")

    method, url, kwargs = http.calls[0]
    assert url == "https://tg.example/bot123:abc/sendMessage"
    assert kwargs["json"]["chat_id"] == "42"
    assert len(kwargs["json"]["text"]) == 4096


@pytest.mark.asyncio
async def test_telegram_send_eml_uploads_document(http):
    sink = TelegramSink(TelegramSettings(bot_token="123:abc", chat_id="42"))
    await sink.send_eml(make_event(), b"From: a@b\r\n\r\nbody")

    _, url, kwargs = http.calls[0]
    assert url.endswith("/sendDocument")
    assert isinstance(kwargs["data"], aiohttp.FormData)


@pytest.mark.asyncio
async def test_webhook_send_uses_method_and_headers(http):
    settings = WebhookSettings(
        enabled=True, url="https://hooks.example/notify", method="PUT", headers=(("Authorization", "Bearer t"),)
    )
    await WebhookSink(settings).send(make_event(), b"raw")

    method, url, kwargs = http.calls[0]
    assert (method, url) == ("PUT", "https://hooks.example/notify")
    assert kwargs["headers"] == {"Authorization": "Bearer t"}
    assert kwargs["json"]["uuid"] == "1b4e28ba-2fa1-11d2-883f-0016d3cca427"


def make_config(send_eml=True, webhook=True):
    return RelayConfig(
        telegram=TelegramSettings(bot_token="123:abc", chat_id="42", send_eml=send_eml),
        webhook=WebhookSettings(enabled=webhook, url="https://hooks.example/notify" if webhook else None),
    )


def test_targets_follow_configuration():
    pool = TaskPool(logger=quiet_logger())
    assert [name for name, _ in Notifier(make_config(), pool).targets()] == ["telegram", "telegram-eml", "webhook"]
    assert [name for name, _ in Notifier(make_config(send_eml=False, webhook=False), pool).targets()] == ["telegram"]
    assert Notifier(RelayConfig(), pool).targets() == []


class DummyMetrics:
    def __init__(self):
        self.notifications = []

    def inc_notification(self, sink, status):
        self.notifications.append((sink, status))

    def inc_task(self, status):
        pass

    def set_queue_depth(self, value):
        pass


@pytest.mark.asyncio
async def test_fan_out_isolates_failing_sink():
    metrics = DummyMetrics()
    pool = TaskPool(workers=2, logger=quiet_logger(), metrics=metrics)
    await pool.start()
    notifier = Notifier(make_config(send_eml=False), pool, logger=quiet_logger(), metrics=metrics)
    delivered = []

    async def telegram_down(event, raw):
        raise aiohttp.ClientConnectionError("telegram unreachable")

    async def webhook_ok(event, raw):
        delivered.append(event.session_id)

    notifier.telegram.send = telegram_down
    notifier.webhook.send = webhook_ok

    assert notifier.fan_out(make_event(), b"raw") == 2
    await pool.join()

    assert delivered == ["1b4e28ba-2fa1-11d2-883f-0016d3cca427"]
    assert sorted(metrics.notifications) == [("telegram", "error"), ("webhook", "sent")]
    assert pool.failed == 0
    await pool.stop()


@pytest.mark.asyncio
async def test_fan_out_without_sinks_submits_nothing():
    pool = TaskPool(logger=quiet_logger())
    await pool.start()
    assert Notifier(RelayConfig(), pool, logger=quiet_logger()).fan_out(make_event(), b"") == 0
    assert pool.pending == 0
    await pool.stop()


def test_event_title_uses_subject():
    assert make_event(subject="Hi").title == "📬 New Email: Hi"
