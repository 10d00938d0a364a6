"""
Startup reconciliation of leader orders missed during downtime.

Polls the leader's open orders and recently closed orders and inserts any
order not yet recorded. Missed fills update the leader's own ledger only;
followers are never copied retroactively, since they did not see those
market conditions and the sizes would be stale.
"""
from dataclasses import dataclass, field
from datetime import timedelta
from typing import List, Optional

from copytrader.config.config import ReconciliationConfig
from copytrader.data.exchange_client import open_client
from copytrader.domain.models import (
    ExchangeCredentials,
    ExchangeOrder,
    OrderSide,
    User,
    leader_status_from_exchange,
)
from copytrader.domain.protocols import ExchangeFactory
from copytrader.execution.position_ledger import PositionLedger
from copytrader.monitoring.logger import get_logger
from copytrader.storage import repository
from copytrader.utils.clock import Clock, epoch_ms, utc_now

logger = get_logger(__name__)


@dataclass
class ReconcileResult:
    open_orders: int = 0
    closed_orders: int = 0
    recovered_order_ids: List[str] = field(default_factory=list)
    ledgered_fills: int = 0
    error: Optional[str] = None


class Reconciler:

    def __init__(
        self,
        exchange_factory: ExchangeFactory,
        ledger: PositionLedger,
        config: Optional[ReconciliationConfig] = None,
        clock: Clock = utc_now,
    ):
        self.exchange_factory = exchange_factory
        self.ledger = ledger
        self.config = config or ReconciliationConfig()
        self.clock = clock

    async def reconcile(self, leader: User, credentials: ExchangeCredentials) -> ReconcileResult:
        """One pass. Never raises; failures are logged and reported on the result."""
        result = ReconcileResult()
        logger.info("RECONCILE_START", leader_id=leader.id)

        try:
            async with open_client(self.exchange_factory, credentials) as client:
                open_orders = await client.fetch_open_orders(limit=self.config.order_fetch_limit)
                result.open_orders = len(open_orders)

                since = self.clock() - timedelta(hours=self.config.lookback_hours)
                closed_orders: List[ExchangeOrder] = []
                try:
                    closed_orders = await client.fetch_closed_orders(
                        since_ms=epoch_ms(since), limit=self.config.order_fetch_limit,
                    )
                except Exception as e:
                    logger.warning(
                        "Could not fetch closed orders (may not be supported for all symbols)",
                        error=str(e),
                    )
                result.closed_orders = len(closed_orders)

            logger.info(
                "RECONCILE_FETCHED",
                open_orders=result.open_orders,
                closed_orders=result.closed_orders,
            )

            for order in list(open_orders) + list(closed_orders):
                if repository.get_leader_trade_by_order_id(order.id) is not None:
                    continue
                self._recover(leader, order, result)

        except Exception as e:
            result.error = str(e)
            logger.error("RECONCILE_FAILED", error=str(e), error_type=type(e).__name__)
            return result

        logger.info(
            "RECONCILE_DONE",
            recovered=len(result.recovered_order_ids),
            ledgered_fills=result.ledgered_fills,
        )
        return result

    def _recover(self, leader: User, order: ExchangeOrder, result: ReconcileResult) -> None:
        now = self.clock()
        group_ms = order.timestamp if order.timestamp is not None else epoch_ms(now)
        group_id = f"{order.symbol}_{group_ms}"

        repository.insert_leader_trade(
            exchange_order_id=order.id,
            symbol=order.symbol,
            side=order.side,
            order_type=order.type,
            quantity=order.amount,
            price=order.price,
            avg_fill_price=order.average,
            filled_quantity=order.filled,
            status=leader_status_from_exchange(order.status, track_open=True),
            position_group_id=group_id,
            raw_data=order.raw,
            detected_at=now,
        )
        result.recovered_order_ids.append(order.id)

        if order.is_fill:
            if order.side == OrderSide.BUY:
                self.ledger.open_position(leader.id, order.symbol, order.average, order.filled, group_id)
            else:
                self.ledger.close_position(leader.id, order.symbol, order.average, order.filled)
            result.ledgered_fills += 1

        logger.info(
            "Recovered missed order (not copied)",
            order_id=order.id,
            side=order.side.value,
            symbol=order.symbol,
            status=order.status,
        )
