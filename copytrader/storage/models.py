"""
ORM models for the copy-trading store.

Timestamps are stored as naive UTC. Enum-valued columns hold the enum's
string value.
"""
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)

from copytrader.storage.db import Base


def _utcnow_naive() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class UserModel(Base):
    """Leader and follower accounts, copy settings and encrypted API keys."""
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    email = Column(String(255), nullable=False, unique=True)
    name = Column(String(100), nullable=False)
    role = Column(String(20), nullable=False, default="follower")
    api_key_encrypted = Column(Text, nullable=True)
    api_secret_encrypted = Column(Text, nullable=True)
    copy_ratio_percent = Column(Numeric(precision=5, scale=2), nullable=True, default=10)
    max_trade_usd = Column(Numeric(precision=12, scale=2), nullable=True)
    copying_enabled = Column(Boolean, nullable=False, default=False)
    daily_loss_cap_usd = Column(Numeric(precision=12, scale=2), nullable=True)
    allowed_markets = Column(Text, nullable=True)  # JSON array e.g. '["BTC/USDT"]'
    follow_mode = Column(String(10), nullable=False, default="auto")
    approval_window_minutes = Column(Integer, nullable=False, default=5)
    created_at = Column(DateTime, nullable=False, default=_utcnow_naive)
    updated_at = Column(DateTime, nullable=False, default=_utcnow_naive)


class LeaderTradeModel(Base):
    """One row per leader exchange order ever observed."""
    __tablename__ = "leader_trades"
    __table_args__ = (
        Index("idx_leader_trade_symbol", "symbol", "detected_at"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    exchange_order_id = Column(String(100), nullable=False, unique=True)
    symbol = Column(String(30), nullable=False)
    side = Column(String(4), nullable=False)
    order_type = Column(String(20), nullable=False)
    quantity = Column(Numeric(precision=20, scale=8), nullable=False)
    price = Column(Numeric(precision=20, scale=8), nullable=True)
    avg_fill_price = Column(Numeric(precision=20, scale=8), nullable=True)
    filled_quantity = Column(Numeric(precision=20, scale=8), nullable=True)
    status = Column(String(10), nullable=False, default="detected")
    position_group_id = Column(String(100), nullable=True)
    raw_data = Column(Text, nullable=True)
    detected_at = Column(DateTime, nullable=False, default=_utcnow_naive)
    updated_at = Column(DateTime, nullable=False, default=_utcnow_naive)


class FollowerTradeModel(Base):
    """One follower's attempt to replicate one leader trade. Immutable."""
    __tablename__ = "follower_trades"
    __table_args__ = (
        Index("idx_follower_trade_leader", "leader_trade_id"),
        Index("idx_follower_trade_follower", "follower_id", "created_at"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    leader_trade_id = Column(Integer, ForeignKey("leader_trades.id"), nullable=False)
    follower_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    exchange_order_id = Column(String(100), nullable=True)
    symbol = Column(String(30), nullable=False)
    side = Column(String(4), nullable=False)
    quantity = Column(Numeric(precision=20, scale=8), nullable=True)
    avg_fill_price = Column(Numeric(precision=20, scale=8), nullable=True)
    status = Column(String(10), nullable=False, default="pending")
    ratio_used = Column(Numeric(precision=5, scale=2), nullable=True)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=_utcnow_naive)


class PositionModel(Base):
    """One open or closed lot per user per symbol."""
    __tablename__ = "positions"
    __table_args__ = (
        Index("idx_position_open_lookup", "user_id", "symbol", "status", "created_at"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    symbol = Column(String(30), nullable=False)
    side = Column(String(4), nullable=False, default="buy")
    entry_price = Column(Numeric(precision=20, scale=8), nullable=False)
    entry_quantity = Column(Numeric(precision=20, scale=8), nullable=False)
    exit_price = Column(Numeric(precision=20, scale=8), nullable=True)
    exit_quantity = Column(Numeric(precision=20, scale=8), nullable=True)
    realized_pnl = Column(Numeric(precision=20, scale=8), nullable=True)
    status = Column(String(10), nullable=False, default="open")
    position_group_id = Column(String(100), nullable=True)
    created_at = Column(DateTime, nullable=False, default=_utcnow_naive)
    closed_at = Column(DateTime, nullable=True)


class FeeModel(Base):
    """Performance fee on one profitable follower close."""
    __tablename__ = "fees"

    id = Column(Integer, primary_key=True, autoincrement=True)
    follower_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    position_id = Column(Integer, ForeignKey("positions.id"), nullable=False)
    profit_amount = Column(Numeric(precision=20, scale=8), nullable=False)
    fee_percent = Column(Numeric(precision=5, scale=2), nullable=False, default=2)
    fee_amount = Column(Numeric(precision=20, scale=8), nullable=False)
    status = Column(String(12), nullable=False, default="calculated")
    created_at = Column(DateTime, nullable=False, default=_utcnow_naive)


class SystemConfigModel(Base):
    """Key/value markers: job last-run dates, heartbeat."""
    __tablename__ = "system_config"

    key = Column(String(100), primary_key=True)
    value = Column(Text, nullable=False)
    updated_at = Column(DateTime, nullable=False, default=_utcnow_naive)


class BalanceSnapshotModel(Base):
    """Daily total quote balance per user."""
    __tablename__ = "balance_snapshots"
    __table_args__ = (
        UniqueConstraint("user_id", "snapshot_date", name="uq_balance_snapshot_day"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    balance = Column(Numeric(precision=20, scale=8), nullable=False)
    snapshot_date = Column(Date, nullable=False)
    created_at = Column(DateTime, nullable=False, default=_utcnow_naive)


class QuarterEquitySnapshotModel(Base):
    """Start/end equity and computed profit per user per quarter."""
    __tablename__ = "quarter_equity_snapshots"
    __table_args__ = (
        UniqueConstraint("user_id", "quarter_label", name="uq_quarter_equity"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    quarter_label = Column(String(10), nullable=False)  # "2026-Q1"
    start_equity = Column(Numeric(precision=20, scale=8), nullable=True)
    end_equity = Column(Numeric(precision=20, scale=8), nullable=True)
    net_deposits = Column(Numeric(precision=20, scale=8), nullable=False, default=0)
    net_withdrawals = Column(Numeric(precision=20, scale=8), nullable=False, default=0)
    profit = Column(Numeric(precision=20, scale=8), nullable=True)
    bracket_label = Column(String(50), nullable=True)
    created_at = Column(DateTime, nullable=False, default=_utcnow_naive)


class InvoiceModel(Base):
    """Quarterly maintenance invoice, one per follower per quarter."""
    __tablename__ = "invoices"
    __table_args__ = (
        UniqueConstraint("follower_id", "quarter_label", name="uq_invoice_follower_quarter"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    follower_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    quarter_label = Column(String(10), nullable=False)
    period_start = Column(Date, nullable=False)
    period_end = Column(Date, nullable=False)
    avg_balance = Column(Numeric(precision=20, scale=8), nullable=False)
    days_in_quarter = Column(Integer, nullable=False)
    days_active = Column(Integer, nullable=False)
    base_fee = Column(Numeric(precision=12, scale=2), nullable=False)
    bracket_fee = Column(Numeric(precision=12, scale=2), nullable=False)
    bracket_label = Column(String(50), nullable=False)
    start_equity = Column(Numeric(precision=20, scale=8), nullable=False)
    end_equity = Column(Numeric(precision=20, scale=8), nullable=False)
    net_deposits = Column(Numeric(precision=20, scale=8), nullable=False)
    net_withdrawals = Column(Numeric(precision=20, scale=8), nullable=False)
    quarter_profit = Column(Numeric(precision=20, scale=8), nullable=False)
    total_amount = Column(Numeric(precision=20, scale=8), nullable=False)
    status = Column(String(10), nullable=False, default="pending")
    payment_token = Column(String(255), nullable=False, unique=True)
    paid_at = Column(DateTime, nullable=True)
    paid_via = Column(String(20), nullable=True)
    created_at = Column(DateTime, nullable=False, default=_utcnow_naive)


class TransferHistoryModel(Base):
    """Deposits and withdrawals, deduplicated per user by exchange transaction id."""
    __tablename__ = "transfer_history"
    __table_args__ = (
        UniqueConstraint("user_id", "exchange_tx_id", name="uq_transfer_user_tx"),
        Index("idx_transfer_user_time", "user_id", "occurred_at"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    transfer_type = Column(String(10), nullable=False)
    amount = Column(Numeric(precision=20, scale=8), nullable=False)
    coin = Column(String(20), nullable=False, default="USDT")
    exchange_tx_id = Column(String(255), nullable=False)
    occurred_at = Column(DateTime, nullable=False)
    created_at = Column(DateTime, nullable=False, default=_utcnow_naive)


class PendingTradeModel(Base):
    """Copy awaiting a manual-approval follower's decision."""
    __tablename__ = "pending_trades"
    __table_args__ = (
        Index("idx_pending_status_expiry", "status", "expires_at"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    leader_trade_id = Column(Integer, ForeignKey("leader_trades.id"), nullable=False)
    follower_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    symbol = Column(String(30), nullable=False)
    side = Column(String(4), nullable=False)
    suggested_quantity = Column(Numeric(precision=20, scale=8), nullable=False)
    suggested_usd_value = Column(Numeric(precision=20, scale=8), nullable=True)
    leader_fill_price = Column(Numeric(precision=20, scale=8), nullable=True)
    status = Column(String(10), nullable=False, default="pending")
    expires_at = Column(DateTime, nullable=False)
    created_at = Column(DateTime, nullable=False, default=_utcnow_naive)


class SymbolRuleModel(Base):
    """Per-follower per-symbol copy override."""
    __tablename__ = "symbol_rules"
    __table_args__ = (
        UniqueConstraint("user_id", "symbol", name="uq_symbol_rule"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    symbol = Column(String(30), nullable=False)
    action = Column(String(10), nullable=False, default="copy")
    custom_ratio = Column(Numeric(precision=5, scale=2), nullable=True)
    custom_max_usd = Column(Numeric(precision=12, scale=2), nullable=True)
    created_at = Column(DateTime, nullable=False, default=_utcnow_naive)


class NotificationModel(Base):
    """In-app notification shown to a user."""
    __tablename__ = "notifications"
    __table_args__ = (
        Index("idx_notification_user", "user_id", "created_at"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    type = Column(String(50), nullable=False)
    title = Column(String(255), nullable=False)
    message = Column(Text, nullable=False)
    metadata_json = Column("metadata", Text, nullable=True)
    read = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, nullable=False, default=_utcnow_naive)
