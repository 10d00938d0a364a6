"""
Unit tests for operator alert payloads and invoice email rendering.
"""
import pytest
from datetime import date, datetime, timezone
from decimal import Decimal
from unittest.mock import patch

from copytrader.config.config import BillingConfig
from copytrader.domain.models import Invoice, InvoiceStatus
from copytrader.monitoring import alerting
from copytrader.monitoring.mailer import payment_url, render_invoice_email, send_invoice_email

NOW = datetime(2026, 4, 1, 9, 30, tzinfo=timezone.utc)


def _make_invoice(**overrides) -> Invoice:
    fields = dict(
        id=1,
        follower_id=3,
        quarter_label="2026-Q1",
        period_start=date(2026, 1, 1),
        period_end=date(2026, 3, 31),
        avg_balance=Decimal("12000"),
        days_in_quarter=90,
        days_active=88,
        base_fee=Decimal("297"),
        bracket_fee=Decimal("197"),
        bracket_label="Silver",
        start_equity=Decimal("10000"),
        end_equity=Decimal("15000"),
        net_deposits=Decimal("0"),
        net_withdrawals=Decimal("0"),
        quarter_profit=Decimal("5000"),
        total_amount=Decimal("494"),
        status=InvoiceStatus.PENDING,
        payment_token="tok123",
    )
    fields.update(overrides)
    return Invoice(**fields)


def test_telegram_payload():
    payload = alerting._build_payload(
        "https://api.telegram.org/bot123/sendMessage", "42", "FOLLOWER_DISABLED", "key rejected", False, NOW,
    )
    assert payload["chat_id"] == "42"
    assert payload["text"].startswith("[FOLLOWER_DISABLED] 09:30:00 UTC")


def test_discord_payload():
    payload = alerting._build_payload(
        "https://discord.com/api/webhooks/1/abc", "", "STARTUP_FAILED", "no leader", True, NOW,
    )
    assert "no leader" in payload["content"]


def test_generic_webhook_payload():
    payload = alerting._build_payload("https://hooks.example.com/x", "", "E", "msg", True, NOW)
    assert payload == {"event_type": "E", "message": "msg", "timestamp": NOW.isoformat(), "urgent": True}


@pytest.mark.asyncio
async def test_alert_without_webhook_is_logged_only():
    with patch("copytrader.monitoring.alerting.aiohttp.ClientSession") as session_cls:
        await alerting.send_alert("FOLLOWER_DISABLED", "x")
    session_cls.assert_not_called()


def test_payment_url_strips_trailing_slash():
    config = BillingConfig(app_base_url="https://app.example.com/")
    assert payment_url(config, "tok") == "https://app.example.com/invoice/tok"


def test_invoice_email_contains_breakdown():
    config = BillingConfig(app_base_url="https://app.example.com")
    subject, text, html = render_invoice_email(config, "Alice", _make_invoice())
    assert subject == "Invoice for 2026-Q1"
    assert "Quarter Profit: +$5000.00" in text
    assert "Amount Due: €494.00" in text
    assert "Days Active: 88 / 90" in text
    assert "https://app.example.com/invoice/tok123" in html


@pytest.mark.asyncio
async def test_send_without_smtp_returns_false():
    with patch("copytrader.monitoring.mailer._send_smtp") as send:
        sent = await send_invoice_email(BillingConfig(), "a@example.com", "Alice", _make_invoice())
    assert sent is False
    send.assert_not_called()


@pytest.mark.asyncio
async def test_smtp_failure_returns_false():
    config = BillingConfig(smtp_host="smtp.example.com", smtp_user="u", smtp_password="p")
    with patch("copytrader.monitoring.mailer._send_smtp", side_effect=OSError("refused")):
        sent = await send_invoice_email(config, "a@example.com", "Alice", _make_invoice())
    assert sent is False


@pytest.mark.asyncio
async def test_smtp_success_returns_true():
    config = BillingConfig(smtp_host="smtp.example.com", smtp_user="u", smtp_password="p")
    with patch("copytrader.monitoring.mailer._send_smtp") as send:
        sent = await send_invoice_email(config, "a@example.com", "Alice", _make_invoice())
    assert sent is True
    assert send.call_args[0][1] == "a@example.com"
