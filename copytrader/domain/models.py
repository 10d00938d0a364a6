"""
Domain models for the copy-trading worker.

These are the business objects passed between components. Repository
functions return these, never ORM rows. All timestamps are UTC
timezone-aware datetimes; money and quantities are Decimal.
"""
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional


class UserRole(str, Enum):
    LEADER = "leader"
    FOLLOWER = "follower"


class OrderSide(str, Enum):
    BUY = "buy"
    SELL = "sell"


class LeaderTradeStatus(str, Enum):
    """Lifecycle of a leader order. Only ever advances."""
    DETECTED = "detected"
    OPEN = "open"
    CLOSED = "closed"

    @property
    def rank(self) -> int:
        return _LEADER_STATUS_RANK[self]


_LEADER_STATUS_RANK = {
    LeaderTradeStatus.DETECTED: 0,
    LeaderTradeStatus.OPEN: 1,
    LeaderTradeStatus.CLOSED: 2,
}


def advance_leader_status(current: LeaderTradeStatus, incoming: LeaderTradeStatus) -> LeaderTradeStatus:
    """Return the later of two statuses; a leader trade never regresses."""
    return incoming if incoming.rank > current.rank else current


class FollowerTradeStatus(str, Enum):
    PENDING = "pending"
    FILLED = "filled"
    FAILED = "failed"
    SKIPPED = "skipped"


class PositionStatus(str, Enum):
    OPEN = "open"
    CLOSED = "closed"


class FeeStatus(str, Enum):
    CALCULATED = "calculated"
    SETTLED = "settled"


class InvoiceStatus(str, Enum):
    PENDING = "pending"
    EMAILED = "emailed"
    PAID = "paid"
    OVERDUE = "overdue"


class TransferType(str, Enum):
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"


class FollowMode(str, Enum):
    AUTO = "auto"
    MANUAL = "manual"


class PendingTradeStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXPIRED = "expired"


class SymbolRuleAction(str, Enum):
    COPY = "copy"
    SKIP = "skip"
    MANUAL = "manual"


# ---------------------------------------------------------------------------
# Exchange boundary
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ExchangeCredentials:
    api_key: str
    api_secret: str = field(repr=False)


@dataclass(frozen=True)
class ExchangeOrder:
    """
    Narrow view of an exchange order.

    `raw` is the untouched exchange payload, kept only for auditing.
    """
    id: str
    symbol: str
    side: OrderSide
    type: str
    amount: Decimal
    price: Optional[Decimal]
    average: Optional[Decimal]
    filled: Decimal
    status: str  # open / closed / canceled
    timestamp: Optional[int] = None  # epoch ms
    raw: Dict[str, Any] = field(default_factory=dict, repr=False, compare=False)

    @property
    def is_closed(self) -> bool:
        return self.status == "closed"

    @property
    def is_fill(self) -> bool:
        """Closed with a nonzero executed quantity and an average price."""
        return self.is_closed and self.filled > 0 and bool(self.average)


@dataclass(frozen=True)
class Balance:
    free: Decimal
    used: Decimal
    total: Decimal


@dataclass(frozen=True)
class OrderResult:
    id: str
    symbol: str
    side: str
    amount: Decimal
    average: Optional[Decimal]
    filled: Decimal
    status: str


@dataclass(frozen=True)
class Transfer:
    """Deposit or withdrawal reported by the exchange."""
    id: str
    txid: str
    kind: TransferType
    amount: Decimal
    currency: str
    timestamp: int  # epoch ms


# ---------------------------------------------------------------------------
# Persistent entities
# ---------------------------------------------------------------------------

@dataclass
class User:
    id: int
    email: str
    name: str
    role: UserRole
    api_key_encrypted: Optional[str] = field(default=None, repr=False)
    api_secret_encrypted: Optional[str] = field(default=None, repr=False)
    copy_ratio_percent: Optional[Decimal] = None
    max_trade_usd: Optional[Decimal] = None
    copying_enabled: bool = False
    daily_loss_cap_usd: Optional[Decimal] = None
    allowed_markets: List[str] = field(default_factory=list)
    follow_mode: FollowMode = FollowMode.AUTO
    approval_window_minutes: int = 5

    @property
    def has_credentials(self) -> bool:
        return bool(self.api_key_encrypted and self.api_secret_encrypted)


@dataclass
class LeaderTrade:
    id: int
    exchange_order_id: str
    symbol: str
    side: OrderSide
    order_type: str
    quantity: Decimal
    price: Optional[Decimal]
    avg_fill_price: Optional[Decimal]
    filled_quantity: Decimal
    status: LeaderTradeStatus
    position_group_id: Optional[str]
    raw_data: Optional[str]
    detected_at: datetime
    updated_at: datetime


@dataclass
class FollowerTrade:
    id: int
    leader_trade_id: int
    follower_id: int
    symbol: str
    side: OrderSide
    quantity: Optional[Decimal]
    avg_fill_price: Optional[Decimal]
    status: FollowerTradeStatus
    ratio_used: Optional[Decimal]
    exchange_order_id: Optional[str]
    error_message: Optional[str]
    created_at: datetime


@dataclass
class Position:
    id: int
    user_id: int
    symbol: str
    side: OrderSide
    entry_price: Decimal
    entry_quantity: Decimal
    exit_price: Optional[Decimal]
    exit_quantity: Optional[Decimal]
    realized_pnl: Optional[Decimal]
    status: PositionStatus
    position_group_id: Optional[str]
    opened_at: datetime
    closed_at: Optional[datetime] = None


@dataclass(frozen=True)
class ClosedPosition:
    """Outcome of closing one open lot."""
    position_id: int
    user_id: int
    symbol: str
    entry_price: Decimal
    exit_price: Decimal
    close_quantity: Decimal
    realized_pnl: Decimal
    position_group_id: Optional[str] = None


@dataclass
class Fee:
    id: int
    follower_id: int
    position_id: int
    profit_amount: Decimal
    fee_percent: Decimal
    fee_amount: Decimal
    status: FeeStatus


@dataclass
class BalanceSnapshot:
    id: int
    user_id: int
    balance: Decimal
    snapshot_date: date


@dataclass
class QuarterEquitySnapshot:
    id: int
    user_id: int
    quarter_label: str
    start_equity: Optional[Decimal]
    end_equity: Optional[Decimal]
    net_deposits: Decimal
    net_withdrawals: Decimal
    profit: Optional[Decimal]
    bracket_label: Optional[str]


@dataclass
class Invoice:
    id: int
    follower_id: int
    quarter_label: str
    period_start: date
    period_end: date
    avg_balance: Decimal
    days_in_quarter: int
    days_active: int
    base_fee: Decimal
    bracket_fee: Decimal
    bracket_label: str
    start_equity: Decimal
    end_equity: Decimal
    net_deposits: Decimal
    net_withdrawals: Decimal
    quarter_profit: Decimal
    total_amount: Decimal
    status: InvoiceStatus
    payment_token: str
    paid_at: Optional[datetime] = None
    paid_via: Optional[str] = None


@dataclass
class TransferRecord:
    id: int
    user_id: int
    transfer_type: TransferType
    amount: Decimal
    coin: str
    tx_id: str
    occurred_at: datetime


@dataclass
class PendingTrade:
    id: int
    leader_trade_id: int
    follower_id: int
    symbol: str
    side: OrderSide
    suggested_quantity: Decimal
    suggested_usd_value: Optional[Decimal]
    leader_fill_price: Optional[Decimal]
    status: PendingTradeStatus
    expires_at: datetime
    created_at: datetime


@dataclass
class SymbolRule:
    id: int
    user_id: int
    symbol: str
    action: SymbolRuleAction
    custom_ratio: Optional[Decimal] = None
    custom_max_usd: Optional[Decimal] = None


@dataclass
class Notification:
    id: int
    user_id: int
    type: str
    title: str
    message: str
    metadata: Optional[Dict[str, Any]]
    read: bool
    created_at: datetime


def leader_status_from_exchange(exchange_status: str, track_open: bool = False) -> LeaderTradeStatus:
    """
    Map an exchange order status onto the leader trade lifecycle.

    "closed" maps to CLOSED. "open" maps to OPEN only when track_open is set
    (polling sees resting orders as open); everything else is DETECTED.
    """
    if exchange_status == "closed":
        return LeaderTradeStatus.CLOSED
    if track_open and exchange_status == "open":
        return LeaderTradeStatus.OPEN
    return LeaderTradeStatus.DETECTED
