"""
Leader Watcher: streams the leader's orders and reacts to each fill once.

States:

    CONNECTING -> STREAMING -> (stream error) -> BACKOFF -> CONNECTING ...
                                   any state  -> STOPPED on stop()

Backoff starts at the floor and doubles per consecutive connect failure up
to the ceiling. It resets as soon as a reconnect establishes the
subscription, so a stream that opens and later drops waits the floor again.
"""
import asyncio
from decimal import Decimal
from enum import Enum
from typing import Awaitable, Callable, Optional

from copytrader.config.config import WatcherConfig
from copytrader.domain.models import (
    ExchangeCredentials,
    ExchangeOrder,
    LeaderTrade,
    LeaderTradeStatus,
    OrderSide,
    User,
    advance_leader_status,
    leader_status_from_exchange,
)
from copytrader.domain.protocols import ExchangeClient, ExchangeFactory
from copytrader.exceptions import StreamError
from copytrader.execution.position_ledger import PositionLedger
from copytrader.execution.trade_copier import TradeCopier
from copytrader.monitoring import alerting
from copytrader.monitoring.logger import get_logger
from copytrader.storage import repository
from copytrader.utils.clock import Clock, epoch_ms, utc_now

logger = get_logger(__name__)


class WatcherState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    STREAMING = "streaming"
    BACKOFF = "backoff"
    STOPPED = "stopped"


def next_backoff(previous: Optional[float], floor: float, ceiling: float) -> float:
    """Delay before the next reconnect: floor first, then doubling, capped at ceiling."""
    if previous is None:
        return floor
    return min(previous * 2, ceiling)


class LeaderWatcher:

    def __init__(
        self,
        leader: User,
        credentials: ExchangeCredentials,
        exchange_factory: ExchangeFactory,
        copier: TradeCopier,
        ledger: PositionLedger,
        config: Optional[WatcherConfig] = None,
        clock: Clock = utc_now,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ):
        self.leader = leader
        self.credentials = credentials
        self.exchange_factory = exchange_factory
        self.copier = copier
        self.ledger = ledger
        self.config = config or WatcherConfig()
        self.clock = clock
        self._sleep = sleep or self._interruptible_sleep

        self.state = WatcherState.IDLE
        self.backoff: Optional[float] = None
        self._running = False
        self._client: Optional[ExchangeClient] = None
        self._stop_event = asyncio.Event()

    async def start(self) -> None:
        """Stream until stop() is called. Stream failures never escape."""
        self._running = True
        self._stop_event.clear()
        logger.info("WATCHER_START", leader_id=self.leader.id)

        while self._running:
            self.state = WatcherState.CONNECTING
            try:
                self._client = self.exchange_factory(self.credentials)
                await self._client.connect()
                self._on_connected()
                await self._watch(self._client)
                if self._running:
                    raise StreamError("Order stream ended")
            except asyncio.CancelledError:
                raise
            except Exception as e:
                if not self._running:
                    break
                self.backoff = next_backoff(
                    self.backoff,
                    self.config.reconnect_floor_seconds,
                    self.config.reconnect_ceiling_seconds,
                )
                self.state = WatcherState.BACKOFF
                logger.warning(
                    "WATCHER_RECONNECT",
                    error=str(e),
                    error_type=type(e).__name__,
                    wait=f"{self.backoff:.0f}s",
                )
                if self.backoff >= self.config.reconnect_ceiling_seconds:
                    await alerting.send_alert(
                        alerting.WATCHER_RECONNECTING,
                        f"Leader order stream failing, retrying every {self.backoff:.0f}s: {e}",
                    )
                await self._close_client()
                await self._sleep(self.backoff)
            finally:
                if not self._running:
                    await self._close_client()

        self.state = WatcherState.STOPPED
        logger.info("WATCHER_STOPPED")

    async def stop(self) -> None:
        """Request shutdown and tear the subscription down, ignoring close errors."""
        self._running = False
        self._stop_event.set()
        await self._close_client()
        self.state = WatcherState.STOPPED

    def _on_connected(self) -> None:
        self.state = WatcherState.STREAMING
        if self.backoff is not None:
            logger.info("WATCHER_RECONNECTED", previous_backoff=self.backoff)
        self.backoff = None

    async def _watch(self, client: ExchangeClient) -> None:
        logger.info("Watching leader orders")
        async for batch in client.stream_orders():
            if not self._running:
                return
            for order in batch:
                try:
                    await self.process_order(order)
                except Exception as e:
                    logger.error(
                        "ORDER_PROCESSING_FAILED",
                        order_id=order.id,
                        symbol=order.symbol,
                        error=str(e),
                        error_type=type(e).__name__,
                    )

    async def process_order(self, order: ExchangeOrder) -> None:
        """Upsert the LeaderTrade for one order update; propagate a new fill."""
        logger.info(
            "LEADER_ORDER",
            order_id=order.id,
            side=order.side.value,
            symbol=order.symbol,
            status=order.status,
            filled=str(order.filled),
            amount=str(order.amount),
        )
        now = self.clock()
        existing = repository.get_leader_trade_by_order_id(order.id)

        if existing is None:
            trade = repository.insert_leader_trade(
                exchange_order_id=order.id,
                symbol=order.symbol,
                side=order.side,
                order_type=order.type,
                quantity=order.amount,
                price=order.price,
                avg_fill_price=order.average,
                filled_quantity=order.filled,
                status=leader_status_from_exchange(order.status),
                position_group_id=f"{order.symbol}_{epoch_ms(now)}",
                raw_data=order.raw,
                detected_at=now,
            )
            logger.info("LEADER_TRADE_INSERTED", order_id=order.id, leader_trade_id=trade.id)
            if order.is_fill:
                await self._handle_fill(trade, order)
            return

        incoming = LeaderTradeStatus.CLOSED if order.is_closed else existing.status
        status = advance_leader_status(existing.status, incoming)
        repository.update_leader_trade(
            existing.id,
            avg_fill_price=order.average,
            filled_quantity=order.filled,
            status=status,
            updated_at=now,
        )
        if order.is_fill and existing.status != LeaderTradeStatus.CLOSED:
            await self._handle_fill(existing, order)

    async def _handle_fill(self, trade: LeaderTrade, order: ExchangeOrder) -> None:
        fill_price: Decimal = order.average
        fill_quantity = order.filled
        logger.info(
            "LEADER_FILL",
            side=order.side.value,
            symbol=order.symbol,
            qty=str(fill_quantity),
            price=str(fill_price),
        )

        if order.side == OrderSide.BUY:
            self.ledger.open_position(
                self.leader.id, order.symbol, fill_price, fill_quantity, trade.position_group_id,
            )
            await self.copier.copy_buy(trade, fill_price, fill_quantity)
        else:
            self.ledger.close_position(self.leader.id, order.symbol, fill_price, fill_quantity)
            await self.copier.copy_sell(trade, fill_price)

    async def _close_client(self) -> None:
        client, self._client = self._client, None
        if client is None:
            return
        try:
            await client.close()
        except Exception as e:
            logger.debug("Stream close failed (ignored)", error=str(e))

    async def _interruptible_sleep(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass
