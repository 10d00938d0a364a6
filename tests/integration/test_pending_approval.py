"""
Integration tests for manual-mode pending trades: approve, reject, expire.
"""
import ccxt
import pytest
from datetime import timedelta
from decimal import Decimal
from unittest.mock import AsyncMock

from copytrader.config.config import CopyConfig
from copytrader.domain.models import (
    FollowerTradeStatus,
    FollowMode,
    LeaderTradeStatus,
    OrderSide,
    PendingTradeStatus,
    PositionStatus,
)
from copytrader.exceptions import ValidationError
from copytrader.execution.fee_calculator import FeeCalculator
from copytrader.execution.pending_trades import APPROVE, REJECT, PendingTradeService
from copytrader.execution.position_ledger import PositionLedger
from copytrader.execution.trade_copier import TradeCopier
from copytrader.monitoring import notifications
from copytrader.storage import repository

SYMBOL = "BTC/USDT"


def _make_service(exchange_factory, credential_store, clock) -> PendingTradeService:
    copier = TradeCopier(
        exchange_factory=exchange_factory,
        credentials=credential_store,
        ledger=PositionLedger(clock=clock),
        fee_calculator=FeeCalculator(),
        config=CopyConfig(),
        clock=clock,
        sleep=AsyncMock(),
    )
    return PendingTradeService(copier, clock=clock)


def _make_pending(follower, clock, side=OrderSide.BUY, expires_in=timedelta(minutes=5), quantity="0.002"):
    leader_trade = repository.insert_leader_trade(
        exchange_order_id=f"L-{side.value}",
        symbol=SYMBOL,
        side=side,
        order_type="market",
        quantity=Decimal("0.1"),
        price=None,
        avg_fill_price=Decimal("50000"),
        filled_quantity=Decimal("0.1"),
        status=LeaderTradeStatus.CLOSED,
        position_group_id=f"{SYMBOL}_1",
        raw_data=None,
        detected_at=clock(),
    )
    return repository.create_pending_trade(
        leader_trade_id=leader_trade.id,
        follower_id=follower.id,
        symbol=SYMBOL,
        side=side,
        suggested_quantity=Decimal(quantity),
        suggested_usd_value=Decimal("100"),
        leader_fill_price=Decimal("50000"),
        expires_at=clock() + expires_in,
        created_at=clock(),
    )


@pytest.mark.asyncio
async def test_approve_executes_suggested_quantity(make_user, exchange_factory, credential_store, clock):
    follower = make_user(api_key="alice", follow_mode=FollowMode.MANUAL)
    exchange = exchange_factory.add("alice")
    pending = _make_pending(follower, clock)
    service = _make_service(exchange_factory, credential_store, clock)

    status = await service.decide(pending.id, follower.id, APPROVE)

    assert status == PendingTradeStatus.APPROVED
    assert repository.get_pending_trade(pending.id).status == PendingTradeStatus.APPROVED
    assert exchange.orders == [(SYMBOL, OrderSide.BUY, Decimal("0.002"))]
    [row] = repository.get_follower_trades(follower_id=follower.id)
    assert row.status == FollowerTradeStatus.FILLED
    assert row.avg_fill_price == Decimal("50000")
    assert len(repository.get_positions(follower.id, SYMBOL, PositionStatus.OPEN)) == 1
    assert repository.get_notifications(follower.id, notifications.TRADE_APPROVED)


@pytest.mark.asyncio
async def test_second_approval_is_a_no_op(make_user, exchange_factory, credential_store, clock):
    follower = make_user(api_key="alice")
    exchange = exchange_factory.add("alice")
    pending = _make_pending(follower, clock)
    service = _make_service(exchange_factory, credential_store, clock)

    await service.decide(pending.id, follower.id, APPROVE)
    again = await service.decide(pending.id, follower.id, APPROVE)

    assert again == PendingTradeStatus.APPROVED
    assert len(exchange.orders) == 1


@pytest.mark.asyncio
async def test_reject_places_nothing(make_user, exchange_factory, credential_store, clock):
    follower = make_user(api_key="alice")
    pending = _make_pending(follower, clock)
    service = _make_service(exchange_factory, credential_store, clock)

    assert await service.decide(pending.id, follower.id, REJECT) == PendingTradeStatus.REJECTED
    assert await service.decide(pending.id, follower.id, APPROVE) == PendingTradeStatus.REJECTED
    assert exchange_factory.calls == []


@pytest.mark.asyncio
async def test_decision_after_expiry_expires(make_user, exchange_factory, credential_store, clock):
    follower = make_user(api_key="alice")
    pending = _make_pending(follower, clock, expires_in=timedelta(seconds=0))
    service = _make_service(exchange_factory, credential_store, clock)

    assert await service.decide(pending.id, follower.id, APPROVE) == PendingTradeStatus.EXPIRED
    assert repository.get_pending_trade(pending.id).status == PendingTradeStatus.EXPIRED
    assert exchange_factory.calls == []


@pytest.mark.asyncio
async def test_decide_validates_input(make_user, exchange_factory, credential_store, clock):
    follower = make_user(api_key="alice")
    other = make_user(api_key="bob")
    pending = _make_pending(follower, clock)
    service = _make_service(exchange_factory, credential_store, clock)

    with pytest.raises(ValidationError):
        await service.decide(pending.id, follower.id, "maybe")
    with pytest.raises(ValidationError):
        await service.decide(pending.id, other.id, APPROVE)
    with pytest.raises(ValidationError):
        await service.decide(9999, follower.id, APPROVE)


@pytest.mark.asyncio
async def test_approved_sell_closes_lot_with_fee(make_user, exchange_factory, credential_store, clock):
    follower = make_user(api_key="alice")
    exchange = exchange_factory.add("alice")
    exchange.fill_price = Decimal("51000")
    PositionLedger(clock=clock).open_position(follower.id, SYMBOL, Decimal("50000"), Decimal("0.002"))
    pending = _make_pending(follower, clock, side=OrderSide.SELL)
    service = _make_service(exchange_factory, credential_store, clock)

    await service.decide(pending.id, follower.id, APPROVE)

    [lot] = repository.get_positions(follower.id, SYMBOL)
    assert lot.status == PositionStatus.CLOSED
    assert lot.realized_pnl == Decimal("2")
    [fee] = repository.get_fees(follower.id)
    assert fee.fee_amount == Decimal("0.04")


@pytest.mark.asyncio
async def test_failed_execution_is_recorded_and_raised(make_user, exchange_factory, credential_store, clock):
    follower = make_user(api_key="alice")
    exchange_factory.add("alice").order_errors = [ccxt.InvalidOrder("min notional not met")]
    pending = _make_pending(follower, clock)
    service = _make_service(exchange_factory, credential_store, clock)

    with pytest.raises(ccxt.InvalidOrder):
        await service.decide(pending.id, follower.id, APPROVE)

    [row] = repository.get_follower_trades(follower_id=follower.id)
    assert row.status == FollowerTradeStatus.FAILED
    assert repository.get_pending_trade(pending.id).status == PendingTradeStatus.APPROVED


def test_expire_due_expires_once(make_user, exchange_factory, credential_store, clock):
    follower = make_user(api_key="alice")
    stale = _make_pending(follower, clock, expires_in=timedelta(minutes=-1))
    service = _make_service(exchange_factory, credential_store, clock)

    assert service.expire_due() == 1
    assert service.expire_due() == 0
    assert repository.get_pending_trade(stale.id).status == PendingTradeStatus.EXPIRED
    [note] = repository.get_notifications(follower.id, notifications.TRADE_EXPIRED)
    assert note.title == "Trade expired: BUY BTC/USDT"


def test_unexpired_trades_are_left_alone(make_user, exchange_factory, credential_store, clock):
    follower = make_user(api_key="alice")
    fresh = _make_pending(follower, clock)
    service = _make_service(exchange_factory, credential_store, clock)

    assert service.expire_due() == 0
    assert repository.get_pending_trade(fresh.id).status == PendingTradeStatus.PENDING
