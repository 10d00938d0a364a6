"""
In-app notifications shown on the follower dashboard.

Writing a notification must never break the caller: failures are logged
and dropped.
"""
from typing import Any, Dict, Optional

from copytrader.monitoring.logger import get_logger
from copytrader.storage import repository

logger = get_logger(__name__)

TRADE_COPIED = "trade_copied"
TRADE_FAILED = "trade_failed"
TRADE_PENDING = "trade_pending"
TRADE_EXPIRED = "trade_expired"
TRADE_APPROVED = "trade_approved"
COPYING_DISABLED = "copying_disabled"
INVOICE_CREATED = "invoice_created"


def create_notification(
    user_id: int,
    type: str,
    title: str,
    message: str,
    metadata: Optional[Dict[str, Any]] = None,
) -> None:
    try:
        repository.insert_notification(user_id, type, title, message, metadata)
    except Exception as e:
        logger.warning(
            "Notification write failed",
            user_id=user_id,
            type=type,
            error=str(e),
        )
