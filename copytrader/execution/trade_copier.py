"""
Trade Copier: replicates one leader fill to every eligible follower.

Each follower is processed independently; one follower's failure is logged
and recorded and never affects siblings. Sizing for buys:

    notional = min(free_balance * ratio%, max_trade_usd)
    quantity = notional / leader_fill_price

A notional under the minimum trade size is recorded as "skipped" and no
order is placed. Sells mirror the follower's oldest open lot in full.
"""
import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Awaitable, Callable, List, Optional

from copytrader.config.config import CopyConfig
from copytrader.data.exchange_client import open_client
from copytrader.domain.models import (
    ClosedPosition,
    FollowerTradeStatus,
    FollowMode,
    LeaderTrade,
    OrderResult,
    OrderSide,
    PendingTrade,
    SymbolRule,
    SymbolRuleAction,
    User,
)
from copytrader.domain.protocols import ExchangeClient, ExchangeFactory, Notifier
from copytrader.exceptions import AuthenticationError
from copytrader.execution.fee_calculator import FeeCalculator
from copytrader.execution.position_ledger import PositionLedger
from copytrader.monitoring import alerting, notifications
from copytrader.monitoring.logger import get_logger
from copytrader.storage import repository
from copytrader.utils.clock import Clock, utc_now
from copytrader.utils.retry import is_auth_error, retry_order
from copytrader.utils.secret_manager import CredentialStore

logger = get_logger(__name__)

INSUFFICIENT_BALANCE = "Insufficient balance"
SYMBOL_RULE_SKIP = "Symbol skipped by follower rule"
MARKET_NOT_ALLOWED = "Symbol not in allowed markets"
DAILY_LOSS_CAP = "Daily loss cap reached"
MISSING_CREDENTIALS = "No API credentials configured"


# ---------------------------------------------------------------------------
# Pure sizing and risk rules
# ---------------------------------------------------------------------------

def compute_trade_size(
    free_balance: Decimal,
    ratio_percent: Decimal,
    max_trade_usd: Optional[Decimal] = None,
) -> Decimal:
    """Quote-currency notional to allocate: balance * ratio%, capped by max_trade_usd."""
    notional = free_balance * ratio_percent / Decimal("100")
    if max_trade_usd is not None:
        notional = min(notional, max_trade_usd)
    return notional


def compute_quantity(notional: Decimal, price: Decimal) -> Decimal:
    """Base-asset quantity for a notional at the leader's fill price."""
    if price <= 0:
        raise ValueError(f"Fill price must be positive, got {price}")
    return notional / price


@dataclass(frozen=True)
class BuyPlan:
    """How a follower takes part in one leader buy."""
    action: SymbolRuleAction
    ratio_percent: Decimal
    max_trade_usd: Optional[Decimal]
    reason: Optional[str] = None


def resolve_buy_plan(
    follower: User,
    symbol: str,
    rule: Optional[SymbolRule],
    realized_pnl_today: Decimal,
    default_ratio: Decimal,
) -> BuyPlan:
    """
    Apply per-symbol rules, allowed markets and the daily loss cap.

    Order: rule skip, allow-list, loss cap, then manual routing. Custom
    ratio / max from a "copy" or "manual" rule override follower defaults.
    """
    ratio = follower.copy_ratio_percent or default_ratio
    max_usd = follower.max_trade_usd
    if rule is not None:
        if rule.custom_ratio:
            ratio = rule.custom_ratio
        if rule.custom_max_usd:
            max_usd = rule.custom_max_usd

    if rule is not None and rule.action == SymbolRuleAction.SKIP:
        return BuyPlan(SymbolRuleAction.SKIP, ratio, max_usd, SYMBOL_RULE_SKIP)
    if follower.allowed_markets and symbol not in follower.allowed_markets:
        return BuyPlan(SymbolRuleAction.SKIP, ratio, max_usd, MARKET_NOT_ALLOWED)
    if follower.daily_loss_cap_usd and realized_pnl_today <= -follower.daily_loss_cap_usd:
        return BuyPlan(SymbolRuleAction.SKIP, ratio, max_usd, DAILY_LOSS_CAP)

    manual = follower.follow_mode == FollowMode.MANUAL or (
        rule is not None and rule.action == SymbolRuleAction.MANUAL
    )
    action = SymbolRuleAction.MANUAL if manual else SymbolRuleAction.COPY
    return BuyPlan(action, ratio, max_usd)


def _routes_manually(follower: User, rule: Optional[SymbolRule]) -> bool:
    return follower.follow_mode == FollowMode.MANUAL or (
        rule is not None and rule.action == SymbolRuleAction.MANUAL
    )


def _start_of_day(moment: datetime) -> datetime:
    return moment.replace(hour=0, minute=0, second=0, microsecond=0)


# ---------------------------------------------------------------------------
# Copier
# ---------------------------------------------------------------------------

class TradeCopier:
    """Propagates leader fills to followers."""

    def __init__(
        self,
        exchange_factory: ExchangeFactory,
        credentials: CredentialStore,
        ledger: PositionLedger,
        fee_calculator: FeeCalculator,
        config: Optional[CopyConfig] = None,
        quote_currency: str = "USDT",
        notifier: Notifier = notifications.create_notification,
        clock: Clock = utc_now,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ):
        self.exchange_factory = exchange_factory
        self.credentials = credentials
        self.ledger = ledger
        self.fee_calculator = fee_calculator
        self.config = config or CopyConfig()
        self.quote_currency = quote_currency
        self.notify = notifier
        self.clock = clock
        self.sleep = sleep

        self.default_ratio = Decimal(str(self.config.default_ratio_percent))
        self.min_trade_usd = Decimal(str(self.config.min_trade_usd))

    # ----- batch entry points -----

    async def copy_buy(self, leader_trade: LeaderTrade, fill_price: Decimal, fill_quantity: Decimal) -> None:
        followers = repository.get_active_followers()
        logger.info(
            "COPY_BUY",
            leader_trade_id=leader_trade.id,
            symbol=leader_trade.symbol,
            price=str(fill_price),
            leader_qty=str(fill_quantity),
            followers=len(followers),
        )
        await self._fan_out(
            followers,
            lambda f: self._buy_for_follower(f, leader_trade, fill_price),
            side=OrderSide.BUY,
        )

    async def copy_sell(self, leader_trade: LeaderTrade, fill_price: Decimal) -> None:
        followers = repository.get_active_followers()
        logger.info(
            "COPY_SELL",
            leader_trade_id=leader_trade.id,
            symbol=leader_trade.symbol,
            price=str(fill_price),
            followers=len(followers),
        )
        await self._fan_out(
            followers,
            lambda f: self._sell_for_follower(f, leader_trade, fill_price),
            side=OrderSide.SELL,
        )

    async def _fan_out(
        self,
        followers: List[User],
        work: Callable[[User], Awaitable[None]],
        side: OrderSide,
    ) -> None:
        async def guarded(follower: User) -> None:
            try:
                await work(follower)
            except Exception as e:
                logger.error(
                    "Follower copy failed",
                    follower_id=follower.id,
                    side=side.value,
                    error=str(e),
                    error_type=type(e).__name__,
                )

        await asyncio.gather(*(guarded(f) for f in followers))

    # ----- buy -----

    async def _buy_for_follower(self, follower: User, leader_trade: LeaderTrade, fill_price: Decimal) -> None:
        symbol = leader_trade.symbol
        rule = repository.get_symbol_rule(follower.id, symbol)
        realized_today = Decimal("0")
        if follower.daily_loss_cap_usd:
            realized_today = repository.realized_pnl_since(follower.id, _start_of_day(self.clock()))
        plan = resolve_buy_plan(follower, symbol, rule, realized_today, self.default_ratio)

        if plan.action == SymbolRuleAction.SKIP:
            self._record(leader_trade, follower, OrderSide.BUY, FollowerTradeStatus.SKIPPED,
                         ratio=plan.ratio_percent, error=plan.reason)
            logger.info("Follower skipped", follower_id=follower.id, symbol=symbol, reason=plan.reason)
            return

        recorded = False
        try:
            creds = self.credentials.for_user(follower)
            if creds is None:
                raise AuthenticationError(MISSING_CREDENTIALS)

            async with open_client(self.exchange_factory, creds) as client:
                balance = await client.fetch_balance(self.quote_currency)
                notional = compute_trade_size(balance.free, plan.ratio_percent, plan.max_trade_usd)

                if notional < self.min_trade_usd:
                    self._record(leader_trade, follower, OrderSide.BUY, FollowerTradeStatus.SKIPPED,
                                 ratio=plan.ratio_percent, error=INSUFFICIENT_BALANCE)
                    recorded = True
                    logger.info(
                        "Follower skipped: insufficient balance",
                        follower_id=follower.id,
                        free=str(balance.free),
                        notional=str(notional),
                    )
                    return

                quantity = compute_quantity(notional, fill_price)

                if plan.action == SymbolRuleAction.MANUAL:
                    self._create_pending(follower, leader_trade, OrderSide.BUY, quantity, notional, fill_price)
                    recorded = True
                    return

                result = await self._place(client, symbol, OrderSide.BUY, quantity)
                avg_price = result.average or fill_price
                self._record(leader_trade, follower, OrderSide.BUY, FollowerTradeStatus.FILLED,
                             ratio=plan.ratio_percent, quantity=result.filled or quantity,
                             avg_price=avg_price, order_id=result.id)
                recorded = True

            self._open_lot(follower, symbol, avg_price, result.filled or quantity, leader_trade.position_group_id)
            logger.info(
                "FOLLOWER_BUY_FILLED",
                follower_id=follower.id,
                symbol=symbol,
                qty=str(result.filled or quantity),
                price=str(avg_price),
            )
            self.notify(
                follower.id,
                notifications.TRADE_COPIED,
                f"Copied: BUY {symbol}",
                f"Bought {result.filled or quantity} {symbol} @ {avg_price}",
                {"symbol": symbol, "side": "buy", "leader_trade_id": leader_trade.id},
            )
        except Exception as e:
            if not recorded:
                self._record(leader_trade, follower, OrderSide.BUY, FollowerTradeStatus.FAILED,
                             ratio=plan.ratio_percent, error=str(e))
            await self._handle_failure(follower, symbol, OrderSide.BUY, e)

    # ----- sell -----

    async def _sell_for_follower(self, follower: User, leader_trade: LeaderTrade, fill_price: Decimal) -> None:
        symbol = leader_trade.symbol
        lot = repository.get_oldest_open_position(follower.id, symbol)
        if lot is None:
            logger.info("No open position for follower, skipping sell", follower_id=follower.id, symbol=symbol)
            return

        ratio = follower.copy_ratio_percent or self.default_ratio
        rule = repository.get_symbol_rule(follower.id, symbol)
        if _routes_manually(follower, rule):
            self._create_pending(follower, leader_trade, OrderSide.SELL, lot.entry_quantity,
                                 lot.entry_quantity * fill_price, fill_price)
            return

        recorded = False
        try:
            creds = self.credentials.for_user(follower)
            if creds is None:
                raise AuthenticationError(MISSING_CREDENTIALS)

            async with open_client(self.exchange_factory, creds) as client:
                result = await self._place(client, symbol, OrderSide.SELL, lot.entry_quantity)
            exit_price = result.average or fill_price
            self._record(leader_trade, follower, OrderSide.SELL, FollowerTradeStatus.FILLED,
                         ratio=ratio, quantity=result.filled or lot.entry_quantity,
                         avg_price=exit_price, order_id=result.id)
            recorded = True

            closed = self._close_lot(follower, symbol, exit_price, result.filled or lot.entry_quantity)
            logger.info(
                "FOLLOWER_SELL_FILLED",
                follower_id=follower.id,
                symbol=symbol,
                qty=str(lot.entry_quantity),
                price=str(exit_price),
                pnl=str(closed.realized_pnl) if closed else None,
            )
            self.notify(
                follower.id,
                notifications.TRADE_COPIED,
                f"Copied: SELL {symbol}",
                f"Sold {lot.entry_quantity} {symbol} @ {exit_price}",
                {"symbol": symbol, "side": "sell", "leader_trade_id": leader_trade.id},
            )
        except Exception as e:
            if not recorded:
                self._record(leader_trade, follower, OrderSide.SELL, FollowerTradeStatus.FAILED,
                             ratio=ratio, error=str(e))
            await self._handle_failure(follower, symbol, OrderSide.SELL, e)

    # ----- manual approval -----

    async def execute_pending(self, pending: PendingTrade, follower: User) -> OrderResult:
        """
        Execute an approved pending trade with its suggested quantity.

        Writes the same FollowerTrade / Position / Fee rows as the automatic
        path. Errors are recorded as a failed FollowerTrade and re-raised.
        """
        ratio = follower.copy_ratio_percent or self.default_ratio
        leader_trade = repository.get_leader_trade(pending.leader_trade_id)
        group_id = leader_trade.position_group_id if leader_trade else None
        reference_price = pending.leader_fill_price or Decimal("0")

        recorded = False
        try:
            creds = self.credentials.for_user(follower)
            if creds is None:
                raise AuthenticationError(MISSING_CREDENTIALS)

            async with open_client(self.exchange_factory, creds) as client:
                result = await self._place(client, pending.symbol, pending.side, pending.suggested_quantity)
            avg_price = result.average or reference_price
            quantity = result.filled or pending.suggested_quantity
            repository.insert_follower_trade(
                leader_trade_id=pending.leader_trade_id,
                follower_id=follower.id,
                symbol=pending.symbol,
                side=pending.side,
                status=FollowerTradeStatus.FILLED,
                quantity=quantity,
                avg_fill_price=avg_price,
                ratio_used=ratio,
                exchange_order_id=result.id,
            )
            recorded = True
        except Exception as e:
            if not recorded:
                repository.insert_follower_trade(
                    leader_trade_id=pending.leader_trade_id,
                    follower_id=follower.id,
                    symbol=pending.symbol,
                    side=pending.side,
                    status=FollowerTradeStatus.FAILED,
                    ratio_used=ratio,
                    error_message=str(e),
                )
            await self._handle_failure(follower, pending.symbol, pending.side, e)
            raise

        if pending.side == OrderSide.BUY:
            self._open_lot(follower, pending.symbol, avg_price, quantity, group_id)
        else:
            self._close_lot(follower, pending.symbol, avg_price, quantity)
        return result

    # ----- helpers -----

    async def _place(self, client: ExchangeClient, symbol: str, side: OrderSide, quantity: Decimal) -> OrderResult:
        return await retry_order(
            lambda: client.place_market_order(symbol, side, quantity),
            max_attempts=self.config.max_order_attempts,
            base_delay=self.config.retry_base_delay_seconds,
            sleep=self.sleep,
            label=f"{side.value} {symbol}",
        )

    def _open_lot(self, follower: User, symbol: str, price: Decimal, quantity: Decimal,
                  group_id: Optional[str]) -> None:
        try:
            self.ledger.open_position(follower.id, symbol, price, quantity, group_id)
        except Exception as e:
            # The order is already filled and recorded; the trade row stands
            logger.error("POSITION_OPEN_FAILED", follower_id=follower.id, symbol=symbol, error=str(e))

    def _close_lot(self, follower: User, symbol: str, exit_price: Decimal,
                   exit_quantity: Decimal) -> Optional[ClosedPosition]:
        try:
            closed = self.ledger.close_position(follower.id, symbol, exit_price, exit_quantity)
            if closed is not None and closed.realized_pnl > 0:
                self.fee_calculator.calculate_fee(follower.id, closed.position_id, closed.realized_pnl)
            return closed
        except Exception as e:
            logger.error("POSITION_CLOSE_FAILED", follower_id=follower.id, symbol=symbol, error=str(e))
            return None

    def _record(
        self,
        leader_trade: LeaderTrade,
        follower: User,
        side: OrderSide,
        status: FollowerTradeStatus,
        ratio: Optional[Decimal] = None,
        quantity: Optional[Decimal] = None,
        avg_price: Optional[Decimal] = None,
        order_id: Optional[str] = None,
        error: Optional[str] = None,
    ) -> None:
        repository.insert_follower_trade(
            leader_trade_id=leader_trade.id,
            follower_id=follower.id,
            symbol=leader_trade.symbol,
            side=side,
            status=status,
            quantity=quantity,
            avg_fill_price=avg_price,
            ratio_used=ratio,
            exchange_order_id=order_id,
            error_message=error,
        )

    def _create_pending(
        self,
        follower: User,
        leader_trade: LeaderTrade,
        side: OrderSide,
        quantity: Decimal,
        usd_value: Decimal,
        fill_price: Decimal,
    ) -> PendingTrade:
        now = self.clock()
        window = follower.approval_window_minutes or self.config.default_approval_window_minutes
        pending = repository.create_pending_trade(
            leader_trade_id=leader_trade.id,
            follower_id=follower.id,
            symbol=leader_trade.symbol,
            side=side,
            suggested_quantity=quantity,
            suggested_usd_value=usd_value,
            leader_fill_price=fill_price,
            expires_at=now + timedelta(minutes=window),
            created_at=now,
        )
        logger.info(
            "PENDING_TRADE_CREATED",
            pending_id=pending.id,
            follower_id=follower.id,
            symbol=leader_trade.symbol,
            side=side.value,
            qty=str(quantity),
        )
        self.notify(
            follower.id,
            notifications.TRADE_PENDING,
            f"Approval needed: {side.value.upper()} {leader_trade.symbol}",
            f"Leader {side.value} {leader_trade.symbol}. Approve within {window} minutes to copy "
            f"{quantity} (~${usd_value:.2f}).",
            {"pending_trade_id": pending.id, "symbol": leader_trade.symbol, "side": side.value},
        )
        return pending

    async def _handle_failure(self, follower: User, symbol: str, side: OrderSide, error: Exception) -> None:
        logger.error(
            "FOLLOWER_TRADE_FAILED",
            follower_id=follower.id,
            symbol=symbol,
            side=side.value,
            error=str(error),
            error_type=type(error).__name__,
        )
        self.notify(
            follower.id,
            notifications.TRADE_FAILED,
            f"Copy failed: {side.value.upper()} {symbol}",
            str(error),
            {"symbol": symbol, "side": side.value},
        )
        if not is_auth_error(error):
            return

        repository.set_copying_enabled(follower.id, False)
        logger.warning("COPYING_DISABLED", follower_id=follower.id, reason="API key error")
        self.notify(
            follower.id,
            notifications.COPYING_DISABLED,
            "Copy trading paused",
            "Your API key was rejected by the exchange. Update your keys and re-enable copying.",
            None,
        )
        await alerting.send_alert(
            alerting.FOLLOWER_DISABLED,
            f"Copying disabled for follower {follower.id} after API key error: {error}",
        )
