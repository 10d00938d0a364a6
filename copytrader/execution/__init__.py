"""
Execution module.

Copying leader fills to followers and keeping their books.

ARCHITECTURE:
    TradeCopier (one leader fill -> every eligible follower)
        │
        ├── PositionLedger (FIFO lots, realized P&L)
        ├── FeeCalculator (per-trade fee on profitable closes)
        └── PendingTradeService (manual approval: decide / expire)
"""

from copytrader.execution.fee_calculator import FeeCalculator, compute_fee
from copytrader.execution.pending_trades import PendingTradeService
from copytrader.execution.position_ledger import PositionLedger, compute_close
from copytrader.execution.trade_copier import (
    BuyPlan,
    TradeCopier,
    compute_quantity,
    compute_trade_size,
    resolve_buy_plan,
)

__all__ = [
    "FeeCalculator",
    "compute_fee",
    "PendingTradeService",
    "PositionLedger",
    "compute_close",
    "BuyPlan",
    "TradeCopier",
    "compute_quantity",
    "compute_trade_size",
    "resolve_buy_plan",
]
