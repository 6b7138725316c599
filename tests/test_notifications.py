import asyncio

import pytest

import config
import notifications


@pytest.fixture
def smtp_configured(monkeypatch):
    monkeypatch.setattr(config, "EMAIL_USER", "shop@mail.com")
    monkeypatch.setattr(config, "EMAIL_PASSWORD", "app-password")
    monkeypatch.setattr(config, "EMAIL_FROM", "Shop <shop@mail.com>")


def test_skips_when_not_configured(monkeypatch):
    async def must_not_send(*args, **kwargs):
        raise AssertionError("send should not be called")

    monkeypatch.setattr(notifications.aiosmtplib, "send", must_not_send)
    assert asyncio.run(notifications.send_notification("a@mail.com", "welcome", {"name": "A"})) is False


def test_sends_rendered_message(smtp_configured, monkeypatch):
    sent = {}

    async def fake_send(message, **kwargs):
        sent["message"] = message
        sent["kwargs"] = kwargs

    monkeypatch.setattr(notifications.aiosmtplib, "send", fake_send)
    order = {
        "id": "abc123",
        "items": [{"name": "Pen <b>", "quantity": 2, "price": 10.0}],
        "total_amount": 20.0,
    }
    ok = asyncio.run(notifications.notify_order_created({"email": "a@mail.com", "name": "Ann"}, order))

    assert ok is True
    message = sent["message"]
    assert message["To"] == "a@mail.com"
    assert message["Subject"] == "Order Confirmation - Order #abc123"
    html = message.get_body(preferencelist=("html",)).get_content()
    assert "Pen &lt;b&gt;" in html
    assert "$20.00" in html
    assert sent["kwargs"]["hostname"] == config.SMTP_HOST
    assert sent["kwargs"]["username"] == "shop@mail.com"


def test_send_failure_is_swallowed(smtp_configured, monkeypatch):
    async def failing_send(*args, **kwargs):
        raise OSError("connection refused")

    monkeypatch.setattr(notifications.aiosmtplib, "send", failing_send)
    assert asyncio.run(notifications.notify_welcome({"email": "a@mail.com", "name": "A"})) is False


def test_status_message_includes_tracking(smtp_configured, monkeypatch):
    sent = {}

    async def fake_send(message, **kwargs):
        sent["message"] = message

    monkeypatch.setattr(notifications.aiosmtplib, "send", fake_send)
    order = {"id": "o1", "status": "shipped", "tracking_number": "TRK-9"}
    asyncio.run(notifications.notify_order_status({"email": "a@mail.com", "name": "A"}, order))

    html = sent["message"].get_body(preferencelist=("html",)).get_content()
    assert "SHIPPED" in html
    assert "TRK-9" in html
    assert notifications.STATUS_MESSAGES["shipped"] in html


def test_reset_link_points_at_app(smtp_configured, monkeypatch):
    sent = {}

    async def fake_send(message, **kwargs):
        sent["message"] = message

    monkeypatch.setattr(notifications.aiosmtplib, "send", fake_send)
    monkeypatch.setattr(config, "APP_URL", "https://shop.io/")
    asyncio.run(notifications.notify_password_reset({"email": "a@mail.com", "name": "A"}, "tok"))

    html = sent["message"].get_body(preferencelist=("html",)).get_content()
    assert "https://shop.io/reset-password?token=tok" in html


def test_unknown_kind_is_reported_not_raised(smtp_configured):
    assert asyncio.run(notifications.send_notification("a@mail.com", "nope")) is False
