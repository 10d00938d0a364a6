"""
Manual-approval lifecycle for pending trades.

pending -> approved | rejected | expired. Every transition is claimed with
a conditional update first, so a trade is acted on at most once even when
a decision races the expiry sweep.
"""
from typing import Optional

from copytrader.domain.models import PendingTrade, PendingTradeStatus
from copytrader.domain.protocols import Notifier
from copytrader.exceptions import ValidationError
from copytrader.execution.trade_copier import TradeCopier
from copytrader.monitoring import notifications
from copytrader.monitoring.logger import get_logger
from copytrader.storage import repository
from copytrader.utils.clock import Clock, utc_now

logger = get_logger(__name__)

APPROVE = "approve"
REJECT = "reject"


class PendingTradeService:

    def __init__(
        self,
        copier: Optional[TradeCopier],
        notifier: Notifier = notifications.create_notification,
        clock: Clock = utc_now,
    ):
        self.copier = copier
        self.notify = notifier
        self.clock = clock

    async def decide(self, pending_id: int, follower_id: int, decision: str) -> PendingTradeStatus:
        """
        Approve or reject a pending trade on behalf of its follower.

        Returns the trade's resulting status. A trade that is no longer
        pending is returned unchanged; a decision after expiry expires it.

        Raises:
            ValidationError: Unknown decision, or the trade does not belong to the follower
        """
        if decision not in (APPROVE, REJECT):
            raise ValidationError("Decision must be 'approve' or 'reject'")

        pending = repository.get_pending_trade(pending_id)
        if pending is None or pending.follower_id != follower_id:
            raise ValidationError(f"Pending trade {pending_id} not found")

        if pending.status != PendingTradeStatus.PENDING:
            logger.info("Pending trade already decided", pending_id=pending_id, status=pending.status.value)
            return pending.status

        if self.clock() >= pending.expires_at:
            self._expire(pending)
            return PendingTradeStatus.EXPIRED

        if decision == REJECT:
            if repository.transition_pending_trade(pending_id, PendingTradeStatus.REJECTED):
                logger.info("PENDING_TRADE_REJECTED", pending_id=pending_id, follower_id=follower_id)
                return PendingTradeStatus.REJECTED
            return repository.get_pending_trade(pending_id).status

        if not repository.transition_pending_trade(pending_id, PendingTradeStatus.APPROVED):
            return repository.get_pending_trade(pending_id).status

        if self.copier is None:
            raise ValidationError("Approval requires a trade copier")
        follower = repository.get_user(follower_id)
        result = await self.copier.execute_pending(pending, follower)
        logger.info(
            "PENDING_TRADE_APPROVED",
            pending_id=pending_id,
            follower_id=follower_id,
            order_id=result.id,
            filled=str(result.filled),
        )
        self.notify(
            follower_id,
            notifications.TRADE_APPROVED,
            f"Approved: {pending.side.value.upper()} {pending.symbol}",
            f"Trade executed: {result.filled or pending.suggested_quantity} {pending.symbol}"
            + (f" @ {result.average}" if result.average else ""),
            {"symbol": pending.symbol, "side": pending.side.value, "pending_trade_id": pending_id},
        )
        return PendingTradeStatus.APPROVED

    def expire_due(self) -> int:
        """Expire every pending trade whose window has passed. Returns the count."""
        expired = 0
        for pending in repository.get_expired_pending_trades(self.clock()):
            if self._expire(pending):
                expired += 1
        if expired:
            logger.info("Expired pending trades", count=expired)
        return expired

    def _expire(self, pending: PendingTrade) -> bool:
        if not repository.transition_pending_trade(pending.id, PendingTradeStatus.EXPIRED):
            return False
        side = pending.side.value
        self.notify(
            pending.follower_id,
            notifications.TRADE_EXPIRED,
            f"Trade expired: {side.upper()} {pending.symbol}",
            f"Pending {side} {pending.symbol} expired (approval window passed).",
            {"symbol": pending.symbol, "side": side, "pending_trade_id": pending.id},
        )
        return True
