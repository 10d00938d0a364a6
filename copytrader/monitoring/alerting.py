"""
Operator alerts for fleet-level events.

Sends notifications via webhook (Telegram, Discord or generic JSON).
Configure via environment variables:
  ALERT_WEBHOOK_URL  - Telegram bot URL or Discord webhook URL
  ALERT_CHAT_ID      - Telegram chat ID (required for Telegram, ignored for Discord)

If no webhook is configured, alerts are logged but not sent.
"""
import os
from datetime import datetime, timezone

import aiohttp

from copytrader.monitoring.logger import get_logger

logger = get_logger(__name__)

# Max 1 alert per event type per 5 minutes
_last_alert_times: dict[str, datetime] = {}
_RATE_LIMIT_SECONDS = 300

FOLLOWER_DISABLED = "FOLLOWER_DISABLED"
STARTUP_FAILED = "STARTUP_FAILED"
WATCHER_RECONNECTING = "WATCHER_RECONNECTING"


def _is_telegram(url: str) -> bool:
    return "api.telegram.org" in url


def _is_discord(url: str) -> bool:
    return "discord.com/api/webhooks" in url or "discordapp.com/api/webhooks" in url


def _build_payload(webhook_url: str, chat_id: str, event_type: str, message: str,
                   urgent: bool, now: datetime) -> dict:
    formatted = f"[{event_type}] {now.strftime('%H:%M:%S UTC')}\n{message}"
    if _is_telegram(webhook_url):
        return {"chat_id": chat_id, "text": formatted}
    if _is_discord(webhook_url):
        return {"content": formatted}
    return {
        "event_type": event_type,
        "message": message,
        "timestamp": now.isoformat(),
        "urgent": urgent,
    }


async def send_alert(event_type: str, message: str, urgent: bool = False) -> None:
    """
    Send an operator alert.

    Args:
        event_type: Type of event (e.g. "FOLLOWER_DISABLED")
        message: Human-readable message
        urgent: If True, bypass rate limiting
    """
    webhook_url = os.environ.get("ALERT_WEBHOOK_URL", "").strip()
    chat_id = os.environ.get("ALERT_CHAT_ID", "").strip()

    if not webhook_url:
        logger.info("Alert (no webhook configured)", event_type=event_type, message=message)
        return

    now = datetime.now(timezone.utc)
    if not urgent:
        last = _last_alert_times.get(event_type)
        if last and (now - last).total_seconds() < _RATE_LIMIT_SECONDS:
            return
    _last_alert_times[event_type] = now

    payload = _build_payload(webhook_url, chat_id, event_type, message, urgent, now)
    try:
        async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=10)) as session:
            async with session.post(webhook_url, json=payload) as resp:
                if resp.status >= 400:
                    body = await resp.text()
                    logger.warning("Alert webhook failed", status=resp.status, body=body[:200])
    except Exception as e:
        # Alert failures must never stop the worker
        logger.warning("Alert send failed (non-fatal)", event_type=event_type, error=str(e))
