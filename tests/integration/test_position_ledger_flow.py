"""
Integration tests for FIFO lot accounting against the database.
"""
from decimal import Decimal

from copytrader.domain.models import PositionStatus
from copytrader.execution.fee_calculator import FeeCalculator
from copytrader.execution.position_ledger import PositionLedger
from copytrader.storage import repository

SYMBOL = "ETH/USDT"


def test_lots_close_oldest_first(make_user, clock):
    user = make_user()
    ledger = PositionLedger(clock=clock)
    first = ledger.open_position(user.id, SYMBOL, Decimal("100"), Decimal("1"))
    second = ledger.open_position(user.id, SYMBOL, Decimal("110"), Decimal("1"))

    closed = ledger.close_position(user.id, SYMBOL, Decimal("120"), Decimal("1"))

    assert closed.position_id == first.id
    assert closed.realized_pnl == Decimal("20")
    remaining = repository.get_positions(user.id, SYMBOL, PositionStatus.OPEN)
    assert [p.id for p in remaining] == [second.id]
    assert remaining[0].entry_price == Decimal("110")


def test_buys_never_merge(make_user, clock):
    user = make_user()
    ledger = PositionLedger(clock=clock)
    ledger.open_position(user.id, SYMBOL, Decimal("100"), Decimal("1"))
    ledger.open_position(user.id, SYMBOL, Decimal("100"), Decimal("1"))
    assert len(repository.get_positions(user.id, SYMBOL, PositionStatus.OPEN)) == 2


def test_excess_exit_quantity_is_discarded(make_user, clock):
    user = make_user()
    ledger = PositionLedger(clock=clock)
    ledger.open_position(user.id, SYMBOL, Decimal("100"), Decimal("1"))
    second = ledger.open_position(user.id, SYMBOL, Decimal("100"), Decimal("1"))

    closed = ledger.close_position(user.id, SYMBOL, Decimal("105"), Decimal("1.5"))

    assert closed.close_quantity == Decimal("1")
    assert closed.realized_pnl == Decimal("5")
    [still_open] = repository.get_positions(user.id, SYMBOL, PositionStatus.OPEN)
    assert still_open.id == second.id
    assert still_open.entry_quantity == Decimal("1")


def test_close_without_lot_returns_none(make_user, clock):
    user = make_user()
    assert PositionLedger(clock=clock).close_position(user.id, SYMBOL, Decimal("1"), Decimal("1")) is None


def test_lots_are_per_user_and_symbol(make_user, clock):
    alice = make_user()
    bob = make_user()
    ledger = PositionLedger(clock=clock)
    ledger.open_position(alice.id, SYMBOL, Decimal("100"), Decimal("1"))

    assert ledger.close_position(bob.id, SYMBOL, Decimal("120"), Decimal("1")) is None
    assert ledger.close_position(alice.id, "BTC/USDT", Decimal("120"), Decimal("1")) is None
    assert len(repository.get_positions(alice.id, SYMBOL, PositionStatus.OPEN)) == 1


def test_already_closed_lot_cannot_close_twice(make_user, clock):
    user = make_user()
    lot = PositionLedger(clock=clock).open_position(user.id, SYMBOL, Decimal("100"), Decimal("1"))
    assert repository.mark_position_closed(lot.id, Decimal("110"), Decimal("1"), Decimal("10"), clock())
    assert not repository.mark_position_closed(lot.id, Decimal("120"), Decimal("1"), Decimal("20"), clock())


def test_realized_pnl_since_sums_closed_lots(make_user, clock):
    user = make_user()
    ledger = PositionLedger(clock=clock)
    ledger.open_position(user.id, SYMBOL, Decimal("100"), Decimal("1"))
    ledger.open_position(user.id, SYMBOL, Decimal("100"), Decimal("1"))
    ledger.close_position(user.id, SYMBOL, Decimal("90"), Decimal("1"))
    ledger.close_position(user.id, SYMBOL, Decimal("130"), Decimal("1"))

    assert repository.realized_pnl_since(user.id, clock().replace(hour=0)) == Decimal("20")


def test_fee_only_on_profit(make_user):
    user = make_user()
    calculator = FeeCalculator(Decimal("2"))
    assert calculator.calculate_fee(user.id, 1, Decimal("0")) is None
    assert calculator.calculate_fee(user.id, 1, Decimal("-5")) is None

    fee = calculator.calculate_fee(user.id, 2, Decimal("250"))
    assert fee.fee_amount == Decimal("5")
    assert [f.position_id for f in repository.get_fees(user.id)] == [2]
