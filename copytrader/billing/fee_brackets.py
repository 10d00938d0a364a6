"""
Quarterly maintenance fee brackets.

Each follower pays BASE_FEE plus a bracket fee chosen by the quarter's
profit (equity change net of deposits and withdrawals). Brackets are
[min_profit inclusive, max_profit exclusive).
"""
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional, Tuple

BASE_FEE = Decimal("297")


@dataclass(frozen=True)
class FeeBracket:
    label: str
    min_profit: Optional[Decimal]  # None = unbounded below
    max_profit: Optional[Decimal]  # None = unbounded above
    fee: Decimal

    def contains(self, profit: Decimal) -> bool:
        if self.min_profit is not None and profit < self.min_profit:
            return False
        if self.max_profit is not None and profit >= self.max_profit:
            return False
        return True


FEE_BRACKETS: Tuple[FeeBracket, ...] = (
    FeeBracket("No Profit", None, Decimal("0"), Decimal("0")),
    FeeBracket("Bronze", Decimal("0"), Decimal("2500"), Decimal("0")),
    FeeBracket("Silver", Decimal("2500"), Decimal("10000"), Decimal("197")),
    FeeBracket("Gold", Decimal("10000"), Decimal("25000"), Decimal("497")),
    FeeBracket("Platinum", Decimal("25000"), Decimal("50000"), Decimal("997")),
    FeeBracket("Diamond", Decimal("50000"), None, Decimal("1997")),
)


@dataclass(frozen=True)
class QuarterFee:
    profit: Decimal
    base_fee: Decimal
    bracket_fee: Decimal
    bracket_label: str
    total_fee: Decimal


def get_bracket(profit: Decimal) -> FeeBracket:
    for bracket in FEE_BRACKETS:
        if bracket.contains(profit):
            return bracket
    return FEE_BRACKETS[0]


def calculate_quarter_profit(
    start_equity: Decimal,
    end_equity: Decimal,
    net_deposits: Decimal,
    net_withdrawals: Decimal,
) -> Decimal:
    """profit = end - start - deposits + withdrawals"""
    return end_equity - start_equity - net_deposits + net_withdrawals


def compute_quarter_fee(
    start_equity: Decimal,
    end_equity: Decimal,
    net_deposits: Decimal,
    net_withdrawals: Decimal,
) -> QuarterFee:
    """Base fee always; bracket fee only when profit is strictly positive."""
    profit = calculate_quarter_profit(start_equity, end_equity, net_deposits, net_withdrawals)
    bracket = get_bracket(profit)
    bracket_fee = bracket.fee if profit > 0 else Decimal("0")
    return QuarterFee(
        profit=profit,
        base_fee=BASE_FEE,
        bracket_fee=bracket_fee,
        bracket_label=bracket.label,
        total_fee=BASE_FEE + bracket_fee,
    )
