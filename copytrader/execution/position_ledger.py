"""
Position Ledger: per-user, per-symbol lots and realized P&L.

Every buy opens a new lot; lots are never merged. A sell closes the single
oldest open lot for (user, symbol):

    close_qty    = min(exit_qty, entry_qty)
    realized_pnl = (exit_price - entry_price) * close_qty

Exit quantity above the lot's entry quantity is discarded, it does not
spill into the next lot.
"""
from decimal import Decimal
from typing import Optional, Tuple

from copytrader.domain.models import ClosedPosition, OrderSide, Position
from copytrader.monitoring.logger import get_logger
from copytrader.storage import repository
from copytrader.utils.clock import Clock, utc_now

logger = get_logger(__name__)


def compute_close(
    entry_price: Decimal,
    entry_quantity: Decimal,
    exit_price: Decimal,
    exit_quantity: Decimal,
) -> Tuple[Decimal, Decimal]:
    """Returns (close_quantity, realized_pnl)."""
    close_quantity = min(exit_quantity, entry_quantity)
    return close_quantity, (exit_price - entry_price) * close_quantity


class PositionLedger:

    def __init__(self, clock: Clock = utc_now):
        self.clock = clock

    def open_position(
        self,
        user_id: int,
        symbol: str,
        entry_price: Decimal,
        entry_quantity: Decimal,
        position_group_id: Optional[str] = None,
    ) -> Position:
        position = repository.insert_position(
            user_id=user_id,
            symbol=symbol,
            side=OrderSide.BUY,
            entry_price=entry_price,
            entry_quantity=entry_quantity,
            position_group_id=position_group_id,
            opened_at=self.clock(),
        )
        logger.info(
            "POSITION_OPENED",
            user_id=user_id,
            symbol=symbol,
            qty=str(entry_quantity),
            price=str(entry_price),
            position_id=position.id,
        )
        return position

    def close_position(
        self,
        user_id: int,
        symbol: str,
        exit_price: Decimal,
        exit_quantity: Decimal,
    ) -> Optional[ClosedPosition]:
        """
        Close the oldest open lot.

        Returns None when the user holds no open lot for the symbol; callers
        treat that as a skip, not an error.
        """
        lot = repository.get_oldest_open_position(user_id, symbol)
        if lot is None:
            logger.info("No open position to close", user_id=user_id, symbol=symbol)
            return None

        close_quantity, realized_pnl = compute_close(
            lot.entry_price, lot.entry_quantity, exit_price, exit_quantity,
        )
        if close_quantity < exit_quantity:
            logger.warning(
                "Exit quantity exceeds lot, excess discarded",
                user_id=user_id,
                symbol=symbol,
                position_id=lot.id,
                exit_qty=str(exit_quantity),
                entry_qty=str(lot.entry_quantity),
            )

        closed = repository.mark_position_closed(
            lot.id, exit_price, close_quantity, realized_pnl, self.clock(),
        )
        if not closed:
            # Closed concurrently between lookup and update
            logger.warning("Position already closed", position_id=lot.id)
            return None

        logger.info(
            "POSITION_CLOSED",
            user_id=user_id,
            symbol=symbol,
            position_id=lot.id,
            pnl=str(realized_pnl),
        )
        return ClosedPosition(
            position_id=lot.id,
            user_id=user_id,
            symbol=symbol,
            entry_price=lot.entry_price,
            exit_price=exit_price,
            close_quantity=close_quantity,
            realized_pnl=realized_pnl,
            position_group_id=lot.position_group_id,
        )
