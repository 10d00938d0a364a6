"""
Unit tests for quarterly fee brackets and quarter profit.
"""
import pytest
from decimal import Decimal

from copytrader.billing.fee_brackets import (
    BASE_FEE,
    calculate_quarter_profit,
    compute_quarter_fee,
    get_bracket,
)


@pytest.mark.parametrize("profit,label", [
    (Decimal("-500"), "No Profit"),
    (Decimal("0"), "Bronze"),
    (Decimal("2499.99"), "Bronze"),
    (Decimal("2500"), "Silver"),
    (Decimal("9999.99"), "Silver"),
    (Decimal("10000"), "Gold"),
    (Decimal("25000"), "Platinum"),
    (Decimal("49999.99"), "Platinum"),
    (Decimal("50000"), "Diamond"),
    (Decimal("1000000"), "Diamond"),
])
def test_bracket_boundaries_are_lower_inclusive(profit, label):
    assert get_bracket(profit).label == label


def test_quarter_profit_nets_out_transfers():
    # 10k start, deposited 2k, withdrew 500, ended at 14k -> 2.5k trading profit
    profit = calculate_quarter_profit(
        start_equity=Decimal("10000"),
        end_equity=Decimal("14000"),
        net_deposits=Decimal("2000"),
        net_withdrawals=Decimal("500"),
    )
    assert profit == Decimal("2500")


def test_silver_quarter_fee():
    fee = compute_quarter_fee(Decimal("10000"), Decimal("15000"), Decimal("0"), Decimal("0"))
    assert fee.profit == Decimal("5000")
    assert fee.bracket_label == "Silver"
    assert fee.base_fee == BASE_FEE
    assert fee.bracket_fee == Decimal("197")
    assert fee.total_fee == Decimal("494")


def test_losing_quarter_pays_base_fee_only():
    fee = compute_quarter_fee(Decimal("10000"), Decimal("9000"), Decimal("0"), Decimal("0"))
    assert fee.bracket_label == "No Profit"
    assert fee.bracket_fee == Decimal("0")
    assert fee.total_fee == BASE_FEE


def test_break_even_quarter_has_no_bracket_fee():
    fee = compute_quarter_fee(Decimal("10000"), Decimal("10000"), Decimal("0"), Decimal("0"))
    assert fee.profit == Decimal("0")
    assert fee.bracket_fee == Decimal("0")
    assert fee.total_fee == BASE_FEE


def test_deposit_is_not_profit():
    fee = compute_quarter_fee(Decimal("10000"), Decimal("60000"), Decimal("50000"), Decimal("0"))
    assert fee.profit == Decimal("0")
    assert fee.total_fee == BASE_FEE
