"""
Persistence functions for the copy-trading store.

Every function opens one short session and returns domain dataclasses,
never ORM rows. Datetimes go in and come out timezone-aware UTC.
"""
import json
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError

from copytrader.domain.models import (
    BalanceSnapshot,
    Fee,
    FeeStatus,
    FollowerTrade,
    FollowerTradeStatus,
    FollowMode,
    Invoice,
    InvoiceStatus,
    LeaderTrade,
    LeaderTradeStatus,
    Notification,
    OrderSide,
    PendingTrade,
    PendingTradeStatus,
    Position,
    PositionStatus,
    QuarterEquitySnapshot,
    SymbolRule,
    SymbolRuleAction,
    TransferRecord,
    TransferType,
    User,
    UserRole,
)
from copytrader.storage.db import get_db
from copytrader.storage.models import (
    BalanceSnapshotModel,
    FeeModel,
    FollowerTradeModel,
    InvoiceModel,
    LeaderTradeModel,
    NotificationModel,
    PendingTradeModel,
    PositionModel,
    QuarterEquitySnapshotModel,
    SymbolRuleModel,
    SystemConfigModel,
    TransferHistoryModel,
    UserModel,
)


def _naive(moment: datetime) -> datetime:
    """Aware -> naive UTC for storage."""
    if moment.tzinfo is None:
        return moment
    return moment.astimezone(timezone.utc).replace(tzinfo=None)


def _aware(moment: Optional[datetime]) -> Optional[datetime]:
    if moment is None:
        return None
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment


def _dec(value) -> Optional[Decimal]:
    if value is None:
        return None
    return Decimal(str(value))


def _now_naive() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


# ---------------------------------------------------------------------------
# Row -> domain conversion
# ---------------------------------------------------------------------------

def _to_user(row: UserModel) -> User:
    allowed: List[str] = []
    if row.allowed_markets:
        try:
            allowed = [str(s) for s in json.loads(row.allowed_markets)]
        except (TypeError, ValueError):
            allowed = []
    return User(
        id=row.id,
        email=row.email,
        name=row.name,
        role=UserRole(row.role),
        api_key_encrypted=row.api_key_encrypted,
        api_secret_encrypted=row.api_secret_encrypted,
        copy_ratio_percent=_dec(row.copy_ratio_percent),
        max_trade_usd=_dec(row.max_trade_usd),
        copying_enabled=bool(row.copying_enabled),
        daily_loss_cap_usd=_dec(row.daily_loss_cap_usd),
        allowed_markets=allowed,
        follow_mode=FollowMode(row.follow_mode or FollowMode.AUTO.value),
        approval_window_minutes=row.approval_window_minutes or 5,
    )


def _to_leader_trade(row: LeaderTradeModel) -> LeaderTrade:
    return LeaderTrade(
        id=row.id,
        exchange_order_id=row.exchange_order_id,
        symbol=row.symbol,
        side=OrderSide(row.side),
        order_type=row.order_type,
        quantity=_dec(row.quantity),
        price=_dec(row.price),
        avg_fill_price=_dec(row.avg_fill_price),
        filled_quantity=_dec(row.filled_quantity) or Decimal("0"),
        status=LeaderTradeStatus(row.status),
        position_group_id=row.position_group_id,
        raw_data=row.raw_data,
        detected_at=_aware(row.detected_at),
        updated_at=_aware(row.updated_at),
    )


def _to_follower_trade(row: FollowerTradeModel) -> FollowerTrade:
    return FollowerTrade(
        id=row.id,
        leader_trade_id=row.leader_trade_id,
        follower_id=row.follower_id,
        symbol=row.symbol,
        side=OrderSide(row.side),
        quantity=_dec(row.quantity),
        avg_fill_price=_dec(row.avg_fill_price),
        status=FollowerTradeStatus(row.status),
        ratio_used=_dec(row.ratio_used),
        exchange_order_id=row.exchange_order_id,
        error_message=row.error_message,
        created_at=_aware(row.created_at),
    )


def _to_position(row: PositionModel) -> Position:
    return Position(
        id=row.id,
        user_id=row.user_id,
        symbol=row.symbol,
        side=OrderSide(row.side),
        entry_price=_dec(row.entry_price),
        entry_quantity=_dec(row.entry_quantity),
        exit_price=_dec(row.exit_price),
        exit_quantity=_dec(row.exit_quantity),
        realized_pnl=_dec(row.realized_pnl),
        status=PositionStatus(row.status),
        position_group_id=row.position_group_id,
        opened_at=_aware(row.created_at),
        closed_at=_aware(row.closed_at),
    )


def _to_quarter_equity(row: QuarterEquitySnapshotModel) -> QuarterEquitySnapshot:
    return QuarterEquitySnapshot(
        id=row.id,
        user_id=row.user_id,
        quarter_label=row.quarter_label,
        start_equity=_dec(row.start_equity),
        end_equity=_dec(row.end_equity),
        net_deposits=_dec(row.net_deposits) or Decimal("0"),
        net_withdrawals=_dec(row.net_withdrawals) or Decimal("0"),
        profit=_dec(row.profit),
        bracket_label=row.bracket_label,
    )


def _to_invoice(row: InvoiceModel) -> Invoice:
    return Invoice(
        id=row.id,
        follower_id=row.follower_id,
        quarter_label=row.quarter_label,
        period_start=row.period_start,
        period_end=row.period_end,
        avg_balance=_dec(row.avg_balance),
        days_in_quarter=row.days_in_quarter,
        days_active=row.days_active,
        base_fee=_dec(row.base_fee),
        bracket_fee=_dec(row.bracket_fee),
        bracket_label=row.bracket_label,
        start_equity=_dec(row.start_equity),
        end_equity=_dec(row.end_equity),
        net_deposits=_dec(row.net_deposits),
        net_withdrawals=_dec(row.net_withdrawals),
        quarter_profit=_dec(row.quarter_profit),
        total_amount=_dec(row.total_amount),
        status=InvoiceStatus(row.status),
        payment_token=row.payment_token,
        paid_at=_aware(row.paid_at),
        paid_via=row.paid_via,
    )


def _to_pending_trade(row: PendingTradeModel) -> PendingTrade:
    return PendingTrade(
        id=row.id,
        leader_trade_id=row.leader_trade_id,
        follower_id=row.follower_id,
        symbol=row.symbol,
        side=OrderSide(row.side),
        suggested_quantity=_dec(row.suggested_quantity),
        suggested_usd_value=_dec(row.suggested_usd_value),
        leader_fill_price=_dec(row.leader_fill_price),
        status=PendingTradeStatus(row.status),
        expires_at=_aware(row.expires_at),
        created_at=_aware(row.created_at),
    )


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------

def create_user(
    email: str,
    name: str,
    role: UserRole = UserRole.FOLLOWER,
    api_key_encrypted: Optional[str] = None,
    api_secret_encrypted: Optional[str] = None,
    copy_ratio_percent: Optional[Decimal] = Decimal("10"),
    max_trade_usd: Optional[Decimal] = None,
    copying_enabled: bool = False,
    daily_loss_cap_usd: Optional[Decimal] = None,
    allowed_markets: Optional[List[str]] = None,
    follow_mode: FollowMode = FollowMode.AUTO,
    approval_window_minutes: int = 5,
) -> User:
    db = get_db()
    with db.get_session() as session:
        row = UserModel(
            email=email,
            name=name,
            role=role.value,
            api_key_encrypted=api_key_encrypted,
            api_secret_encrypted=api_secret_encrypted,
            copy_ratio_percent=copy_ratio_percent,
            max_trade_usd=max_trade_usd,
            copying_enabled=copying_enabled,
            daily_loss_cap_usd=daily_loss_cap_usd,
            allowed_markets=json.dumps(allowed_markets) if allowed_markets else None,
            follow_mode=follow_mode.value,
            approval_window_minutes=approval_window_minutes,
        )
        session.add(row)
        session.flush()
        return _to_user(row)


def get_user(user_id: int) -> Optional[User]:
    db = get_db()
    with db.get_session() as session:
        row = session.get(UserModel, user_id)
        return _to_user(row) if row else None


def get_leader() -> Optional[User]:
    """The single leader account (lowest id if several are misconfigured)."""
    db = get_db()
    with db.get_session() as session:
        row = (
            session.query(UserModel)
            .filter(UserModel.role == UserRole.LEADER.value)
            .order_by(UserModel.id)
            .first()
        )
        return _to_user(row) if row else None


def get_active_followers() -> List[User]:
    """Followers with copying enabled."""
    db = get_db()
    with db.get_session() as session:
        rows = (
            session.query(UserModel)
            .filter(
                UserModel.role == UserRole.FOLLOWER.value,
                UserModel.copying_enabled.is_(True),
            )
            .order_by(UserModel.id)
            .all()
        )
        return [_to_user(r) for r in rows]


def get_followers() -> List[User]:
    db = get_db()
    with db.get_session() as session:
        rows = (
            session.query(UserModel)
            .filter(UserModel.role == UserRole.FOLLOWER.value)
            .order_by(UserModel.id)
            .all()
        )
        return [_to_user(r) for r in rows]


def get_followers_with_credentials() -> List[User]:
    """All followers that have stored API keys, copying enabled or not."""
    db = get_db()
    with db.get_session() as session:
        rows = (
            session.query(UserModel)
            .filter(
                UserModel.role == UserRole.FOLLOWER.value,
                UserModel.api_key_encrypted.isnot(None),
                UserModel.api_secret_encrypted.isnot(None),
            )
            .order_by(UserModel.id)
            .all()
        )
        return [_to_user(r) for r in rows]


def set_copying_enabled(user_id: int, enabled: bool) -> None:
    db = get_db()
    with db.get_session() as session:
        row = session.get(UserModel, user_id)
        if row is not None:
            row.copying_enabled = enabled
            row.updated_at = _now_naive()


def get_symbol_rule(user_id: int, symbol: str) -> Optional[SymbolRule]:
    db = get_db()
    with db.get_session() as session:
        row = (
            session.query(SymbolRuleModel)
            .filter(SymbolRuleModel.user_id == user_id, SymbolRuleModel.symbol == symbol)
            .first()
        )
        if row is None:
            return None
        return SymbolRule(
            id=row.id,
            user_id=row.user_id,
            symbol=row.symbol,
            action=SymbolRuleAction(row.action),
            custom_ratio=_dec(row.custom_ratio),
            custom_max_usd=_dec(row.custom_max_usd),
        )


def save_symbol_rule(
    user_id: int,
    symbol: str,
    action: SymbolRuleAction,
    custom_ratio: Optional[Decimal] = None,
    custom_max_usd: Optional[Decimal] = None,
) -> None:
    """Insert or replace the rule for (user, symbol)."""
    db = get_db()
    with db.get_session() as session:
        row = (
            session.query(SymbolRuleModel)
            .filter(SymbolRuleModel.user_id == user_id, SymbolRuleModel.symbol == symbol)
            .first()
        )
        if row is None:
            row = SymbolRuleModel(user_id=user_id, symbol=symbol)
            session.add(row)
        row.action = action.value
        row.custom_ratio = custom_ratio
        row.custom_max_usd = custom_max_usd


# ---------------------------------------------------------------------------
# Leader trades
# ---------------------------------------------------------------------------

def get_leader_trade_by_order_id(exchange_order_id: str) -> Optional[LeaderTrade]:
    db = get_db()
    with db.get_session() as session:
        row = (
            session.query(LeaderTradeModel)
            .filter(LeaderTradeModel.exchange_order_id == exchange_order_id)
            .first()
        )
        return _to_leader_trade(row) if row else None


def get_leader_trade(trade_id: int) -> Optional[LeaderTrade]:
    db = get_db()
    with db.get_session() as session:
        row = session.get(LeaderTradeModel, trade_id)
        return _to_leader_trade(row) if row else None


def insert_leader_trade(
    exchange_order_id: str,
    symbol: str,
    side: OrderSide,
    order_type: str,
    quantity: Decimal,
    price: Optional[Decimal],
    avg_fill_price: Optional[Decimal],
    filled_quantity: Decimal,
    status: LeaderTradeStatus,
    position_group_id: str,
    raw_data: Optional[Dict[str, Any]],
    detected_at: datetime,
) -> LeaderTrade:
    """Insert a newly observed leader order. Raises IntegrityError on a duplicate id."""
    db = get_db()
    with db.get_session() as session:
        row = LeaderTradeModel(
            exchange_order_id=exchange_order_id,
            symbol=symbol,
            side=side.value,
            order_type=order_type,
            quantity=quantity,
            price=price,
            avg_fill_price=avg_fill_price,
            filled_quantity=filled_quantity,
            status=status.value,
            position_group_id=position_group_id,
            raw_data=json.dumps(raw_data, default=str) if raw_data else None,
            detected_at=_naive(detected_at),
            updated_at=_naive(detected_at),
        )
        session.add(row)
        session.flush()
        return _to_leader_trade(row)


def update_leader_trade(
    trade_id: int,
    avg_fill_price: Optional[Decimal],
    filled_quantity: Decimal,
    status: LeaderTradeStatus,
    updated_at: datetime,
) -> None:
    db = get_db()
    with db.get_session() as session:
        row = session.get(LeaderTradeModel, trade_id)
        if row is None:
            return
        row.avg_fill_price = avg_fill_price
        row.filled_quantity = filled_quantity
        row.status = status.value
        row.updated_at = _naive(updated_at)


def count_leader_trades() -> int:
    db = get_db()
    with db.get_session() as session:
        return session.query(func.count(LeaderTradeModel.id)).scalar() or 0


# ---------------------------------------------------------------------------
# Follower trades
# ---------------------------------------------------------------------------

def insert_follower_trade(
    leader_trade_id: int,
    follower_id: int,
    symbol: str,
    side: OrderSide,
    status: FollowerTradeStatus,
    quantity: Optional[Decimal] = None,
    avg_fill_price: Optional[Decimal] = None,
    ratio_used: Optional[Decimal] = None,
    exchange_order_id: Optional[str] = None,
    error_message: Optional[str] = None,
) -> FollowerTrade:
    db = get_db()
    with db.get_session() as session:
        row = FollowerTradeModel(
            leader_trade_id=leader_trade_id,
            follower_id=follower_id,
            symbol=symbol,
            side=side.value,
            quantity=quantity,
            avg_fill_price=avg_fill_price,
            status=status.value,
            ratio_used=ratio_used,
            exchange_order_id=exchange_order_id,
            error_message=error_message,
        )
        session.add(row)
        session.flush()
        return _to_follower_trade(row)


def get_follower_trades(
    follower_id: Optional[int] = None,
    leader_trade_id: Optional[int] = None,
) -> List[FollowerTrade]:
    db = get_db()
    with db.get_session() as session:
        query = session.query(FollowerTradeModel)
        if follower_id is not None:
            query = query.filter(FollowerTradeModel.follower_id == follower_id)
        if leader_trade_id is not None:
            query = query.filter(FollowerTradeModel.leader_trade_id == leader_trade_id)
        rows = query.order_by(FollowerTradeModel.created_at, FollowerTradeModel.id).all()
        return [_to_follower_trade(r) for r in rows]


def get_follower_trade_stats() -> Dict[int, Dict[str, int]]:
    """Per follower: count of trades by status."""
    db = get_db()
    with db.get_session() as session:
        rows = (
            session.query(
                FollowerTradeModel.follower_id,
                FollowerTradeModel.status,
                func.count(FollowerTradeModel.id),
            )
            .group_by(FollowerTradeModel.follower_id, FollowerTradeModel.status)
            .all()
        )
    stats: Dict[int, Dict[str, int]] = {}
    for follower_id, status, count in rows:
        stats.setdefault(follower_id, {})[status] = int(count)
    return stats


# ---------------------------------------------------------------------------
# Positions and fees
# ---------------------------------------------------------------------------

def insert_position(
    user_id: int,
    symbol: str,
    side: OrderSide,
    entry_price: Decimal,
    entry_quantity: Decimal,
    position_group_id: Optional[str],
    opened_at: datetime,
) -> Position:
    db = get_db()
    with db.get_session() as session:
        row = PositionModel(
            user_id=user_id,
            symbol=symbol,
            side=side.value,
            entry_price=entry_price,
            entry_quantity=entry_quantity,
            status=PositionStatus.OPEN.value,
            position_group_id=position_group_id,
            created_at=_naive(opened_at),
        )
        session.add(row)
        session.flush()
        return _to_position(row)


def get_oldest_open_position(user_id: int, symbol: str) -> Optional[Position]:
    """Oldest open lot for (user, symbol); ties broken by insertion order."""
    db = get_db()
    with db.get_session() as session:
        row = (
            session.query(PositionModel)
            .filter(
                PositionModel.user_id == user_id,
                PositionModel.symbol == symbol,
                PositionModel.status == PositionStatus.OPEN.value,
            )
            .order_by(PositionModel.created_at, PositionModel.id)
            .first()
        )
        return _to_position(row) if row else None


def get_positions(
    user_id: int,
    symbol: Optional[str] = None,
    status: Optional[PositionStatus] = None,
) -> List[Position]:
    db = get_db()
    with db.get_session() as session:
        query = session.query(PositionModel).filter(PositionModel.user_id == user_id)
        if symbol is not None:
            query = query.filter(PositionModel.symbol == symbol)
        if status is not None:
            query = query.filter(PositionModel.status == status.value)
        rows = query.order_by(PositionModel.created_at, PositionModel.id).all()
        return [_to_position(r) for r in rows]


def mark_position_closed(
    position_id: int,
    exit_price: Decimal,
    exit_quantity: Decimal,
    realized_pnl: Decimal,
    closed_at: datetime,
) -> bool:
    """Close an open lot. Returns False if it was no longer open."""
    db = get_db()
    with db.get_session() as session:
        updated = (
            session.query(PositionModel)
            .filter(
                PositionModel.id == position_id,
                PositionModel.status == PositionStatus.OPEN.value,
            )
            .update(
                {
                    PositionModel.status: PositionStatus.CLOSED.value,
                    PositionModel.exit_price: exit_price,
                    PositionModel.exit_quantity: exit_quantity,
                    PositionModel.realized_pnl: realized_pnl,
                    PositionModel.closed_at: _naive(closed_at),
                },
                synchronize_session=False,
            )
        )
        return updated == 1


def realized_pnl_since(user_id: int, since: datetime) -> Decimal:
    """Sum of realized P&L over lots closed at or after `since`."""
    db = get_db()
    with db.get_session() as session:
        rows = (
            session.query(PositionModel.realized_pnl)
            .filter(
                PositionModel.user_id == user_id,
                PositionModel.status == PositionStatus.CLOSED.value,
                PositionModel.closed_at >= _naive(since),
            )
            .all()
        )
    return sum((_dec(r[0]) or Decimal("0") for r in rows), Decimal("0"))


def insert_fee(
    follower_id: int,
    position_id: int,
    profit_amount: Decimal,
    fee_percent: Decimal,
    fee_amount: Decimal,
) -> Fee:
    db = get_db()
    with db.get_session() as session:
        row = FeeModel(
            follower_id=follower_id,
            position_id=position_id,
            profit_amount=profit_amount,
            fee_percent=fee_percent,
            fee_amount=fee_amount,
            status=FeeStatus.CALCULATED.value,
        )
        session.add(row)
        session.flush()
        return Fee(
            id=row.id,
            follower_id=row.follower_id,
            position_id=row.position_id,
            profit_amount=_dec(row.profit_amount),
            fee_percent=_dec(row.fee_percent),
            fee_amount=_dec(row.fee_amount),
            status=FeeStatus(row.status),
        )


def get_fees(follower_id: int) -> List[Fee]:
    db = get_db()
    with db.get_session() as session:
        rows = (
            session.query(FeeModel)
            .filter(FeeModel.follower_id == follower_id)
            .order_by(FeeModel.id)
            .all()
        )
        return [
            Fee(
                id=r.id,
                follower_id=r.follower_id,
                position_id=r.position_id,
                profit_amount=_dec(r.profit_amount),
                fee_percent=_dec(r.fee_percent),
                fee_amount=_dec(r.fee_amount),
                status=FeeStatus(r.status),
            )
            for r in rows
        ]


# ---------------------------------------------------------------------------
# Balance and quarter equity snapshots
# ---------------------------------------------------------------------------

def upsert_balance_snapshot(user_id: int, snapshot_date: date, balance: Decimal) -> None:
    """One snapshot per (user, day); a re-run overwrites the balance."""
    db = get_db()
    with db.get_session() as session:
        row = (
            session.query(BalanceSnapshotModel)
            .filter(
                BalanceSnapshotModel.user_id == user_id,
                BalanceSnapshotModel.snapshot_date == snapshot_date,
            )
            .first()
        )
        if row is None:
            session.add(BalanceSnapshotModel(
                user_id=user_id, snapshot_date=snapshot_date, balance=balance,
            ))
        else:
            row.balance = balance


def get_balance_snapshots(user_id: int, start: date, end: date) -> List[BalanceSnapshot]:
    """Snapshots with start <= date <= end, oldest first."""
    db = get_db()
    with db.get_session() as session:
        rows = (
            session.query(BalanceSnapshotModel)
            .filter(
                BalanceSnapshotModel.user_id == user_id,
                BalanceSnapshotModel.snapshot_date >= start,
                BalanceSnapshotModel.snapshot_date <= end,
            )
            .order_by(BalanceSnapshotModel.snapshot_date)
            .all()
        )
        return [
            BalanceSnapshot(
                id=r.id, user_id=r.user_id, balance=_dec(r.balance), snapshot_date=r.snapshot_date,
            )
            for r in rows
        ]


def get_quarter_equity(user_id: int, quarter_label: str) -> Optional[QuarterEquitySnapshot]:
    db = get_db()
    with db.get_session() as session:
        row = (
            session.query(QuarterEquitySnapshotModel)
            .filter(
                QuarterEquitySnapshotModel.user_id == user_id,
                QuarterEquitySnapshotModel.quarter_label == quarter_label,
            )
            .first()
        )
        return _to_quarter_equity(row) if row else None


def upsert_quarter_equity(
    user_id: int,
    quarter_label: str,
    start_equity: Optional[Decimal] = None,
    end_equity: Optional[Decimal] = None,
) -> None:
    """Set start and/or end equity; fields passed as None are left untouched."""
    db = get_db()
    with db.get_session() as session:
        row = (
            session.query(QuarterEquitySnapshotModel)
            .filter(
                QuarterEquitySnapshotModel.user_id == user_id,
                QuarterEquitySnapshotModel.quarter_label == quarter_label,
            )
            .first()
        )
        if row is None:
            row = QuarterEquitySnapshotModel(
                user_id=user_id,
                quarter_label=quarter_label,
                net_deposits=Decimal("0"),
                net_withdrawals=Decimal("0"),
            )
            session.add(row)
        if start_equity is not None:
            row.start_equity = start_equity
        if end_equity is not None:
            row.end_equity = end_equity


# ---------------------------------------------------------------------------
# Transfers
# ---------------------------------------------------------------------------

def insert_transfer(
    user_id: int,
    transfer_type: TransferType,
    amount: Decimal,
    coin: str,
    exchange_tx_id: str,
    occurred_at: datetime,
) -> bool:
    """Insert a transfer. Returns False when the tx id is already recorded."""
    db = get_db()
    try:
        with db.get_session() as session:
            session.add(TransferHistoryModel(
                user_id=user_id,
                transfer_type=transfer_type.value,
                amount=amount,
                coin=coin,
                exchange_tx_id=exchange_tx_id,
                occurred_at=_naive(occurred_at),
            ))
    except IntegrityError:
        return False
    return True


def sum_transfers(
    user_id: int,
    transfer_type: TransferType,
    start: datetime,
    end: datetime,
) -> Decimal:
    """Total of one transfer type with start <= occurred_at <= end."""
    db = get_db()
    with db.get_session() as session:
        total = (
            session.query(func.sum(TransferHistoryModel.amount))
            .filter(
                TransferHistoryModel.user_id == user_id,
                TransferHistoryModel.transfer_type == transfer_type.value,
                TransferHistoryModel.occurred_at >= _naive(start),
                TransferHistoryModel.occurred_at <= _naive(end),
            )
            .scalar()
        )
    return _dec(total) or Decimal("0")


def get_transfers(user_id: int) -> List[TransferRecord]:
    db = get_db()
    with db.get_session() as session:
        rows = (
            session.query(TransferHistoryModel)
            .filter(TransferHistoryModel.user_id == user_id)
            .order_by(TransferHistoryModel.occurred_at)
            .all()
        )
        return [
            TransferRecord(
                id=r.id,
                user_id=r.user_id,
                transfer_type=TransferType(r.transfer_type),
                amount=_dec(r.amount),
                coin=r.coin,
                tx_id=r.exchange_tx_id,
                occurred_at=_aware(r.occurred_at),
            )
            for r in rows
        ]


# ---------------------------------------------------------------------------
# Invoices
# ---------------------------------------------------------------------------

def invoice_exists(follower_id: int, quarter_label: str) -> bool:
    db = get_db()
    with db.get_session() as session:
        return (
            session.query(InvoiceModel.id)
            .filter(
                InvoiceModel.follower_id == follower_id,
                InvoiceModel.quarter_label == quarter_label,
            )
            .first()
            is not None
        )


def create_invoice_with_equity(invoice: Invoice) -> Invoice:
    """
    Insert the invoice and record profit/bracket on the quarter equity row
    in a single transaction.

    Raises:
        IntegrityError: If (follower, quarter) is already invoiced
    """
    db = get_db()
    with db.get_session() as session:
        row = InvoiceModel(
            follower_id=invoice.follower_id,
            quarter_label=invoice.quarter_label,
            period_start=invoice.period_start,
            period_end=invoice.period_end,
            avg_balance=invoice.avg_balance,
            days_in_quarter=invoice.days_in_quarter,
            days_active=invoice.days_active,
            base_fee=invoice.base_fee,
            bracket_fee=invoice.bracket_fee,
            bracket_label=invoice.bracket_label,
            start_equity=invoice.start_equity,
            end_equity=invoice.end_equity,
            net_deposits=invoice.net_deposits,
            net_withdrawals=invoice.net_withdrawals,
            quarter_profit=invoice.quarter_profit,
            total_amount=invoice.total_amount,
            status=invoice.status.value,
            payment_token=invoice.payment_token,
        )
        session.add(row)

        equity = (
            session.query(QuarterEquitySnapshotModel)
            .filter(
                QuarterEquitySnapshotModel.user_id == invoice.follower_id,
                QuarterEquitySnapshotModel.quarter_label == invoice.quarter_label,
            )
            .first()
        )
        if equity is None:
            equity = QuarterEquitySnapshotModel(
                user_id=invoice.follower_id,
                quarter_label=invoice.quarter_label,
                start_equity=invoice.start_equity,
                end_equity=invoice.end_equity,
            )
            session.add(equity)
        equity.net_deposits = invoice.net_deposits
        equity.net_withdrawals = invoice.net_withdrawals
        equity.profit = invoice.quarter_profit
        equity.bracket_label = invoice.bracket_label

        session.flush()
        return _to_invoice(row)


def set_invoice_status(invoice_id: int, status: InvoiceStatus) -> None:
    db = get_db()
    with db.get_session() as session:
        row = session.get(InvoiceModel, invoice_id)
        if row is not None:
            row.status = status.value


def get_invoices(quarter_label: Optional[str] = None) -> List[Invoice]:
    db = get_db()
    with db.get_session() as session:
        query = session.query(InvoiceModel)
        if quarter_label is not None:
            query = query.filter(InvoiceModel.quarter_label == quarter_label)
        return [_to_invoice(r) for r in query.order_by(InvoiceModel.id).all()]


# ---------------------------------------------------------------------------
# Pending trades (manual approval)
# ---------------------------------------------------------------------------

def create_pending_trade(
    leader_trade_id: int,
    follower_id: int,
    symbol: str,
    side: OrderSide,
    suggested_quantity: Decimal,
    suggested_usd_value: Optional[Decimal],
    leader_fill_price: Optional[Decimal],
    expires_at: datetime,
    created_at: datetime,
) -> PendingTrade:
    db = get_db()
    with db.get_session() as session:
        row = PendingTradeModel(
            leader_trade_id=leader_trade_id,
            follower_id=follower_id,
            symbol=symbol,
            side=side.value,
            suggested_quantity=suggested_quantity,
            suggested_usd_value=suggested_usd_value,
            leader_fill_price=leader_fill_price,
            status=PendingTradeStatus.PENDING.value,
            expires_at=_naive(expires_at),
            created_at=_naive(created_at),
        )
        session.add(row)
        session.flush()
        return _to_pending_trade(row)


def get_pending_trade(pending_id: int) -> Optional[PendingTrade]:
    db = get_db()
    with db.get_session() as session:
        row = session.get(PendingTradeModel, pending_id)
        return _to_pending_trade(row) if row else None


def get_expired_pending_trades(now: datetime) -> List[PendingTrade]:
    """Trades still pending whose expiry is at or before `now`."""
    db = get_db()
    with db.get_session() as session:
        rows = (
            session.query(PendingTradeModel)
            .filter(
                PendingTradeModel.status == PendingTradeStatus.PENDING.value,
                PendingTradeModel.expires_at <= _naive(now),
            )
            .order_by(PendingTradeModel.expires_at, PendingTradeModel.id)
            .all()
        )
        return [_to_pending_trade(r) for r in rows]


def transition_pending_trade(
    pending_id: int,
    to_status: PendingTradeStatus,
    from_status: PendingTradeStatus = PendingTradeStatus.PENDING,
) -> bool:
    """
    Conditionally move a pending trade between statuses.

    Returns True only for the caller whose update changed the row, so
    concurrent deciders and the expirer can never both act on one trade.
    """
    db = get_db()
    with db.get_session() as session:
        updated = (
            session.query(PendingTradeModel)
            .filter(
                PendingTradeModel.id == pending_id,
                PendingTradeModel.status == from_status.value,
            )
            .update({PendingTradeModel.status: to_status.value}, synchronize_session=False)
        )
        return updated == 1


# ---------------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------------

def insert_notification(
    user_id: int,
    type: str,
    title: str,
    message: str,
    metadata: Optional[Dict[str, Any]] = None,
) -> None:
    db = get_db()
    with db.get_session() as session:
        session.add(NotificationModel(
            user_id=user_id,
            type=type,
            title=title,
            message=message,
            metadata_json=json.dumps(metadata, default=str) if metadata else None,
        ))


def get_notifications(user_id: int, type: Optional[str] = None) -> List[Notification]:
    db = get_db()
    with db.get_session() as session:
        query = session.query(NotificationModel).filter(NotificationModel.user_id == user_id)
        if type is not None:
            query = query.filter(NotificationModel.type == type)
        rows = query.order_by(NotificationModel.created_at, NotificationModel.id).all()
        return [
            Notification(
                id=r.id,
                user_id=r.user_id,
                type=r.type,
                title=r.title,
                message=r.message,
                metadata=json.loads(r.metadata_json) if r.metadata_json else None,
                read=bool(r.read),
                created_at=_aware(r.created_at),
            )
            for r in rows
        ]


# ---------------------------------------------------------------------------
# System config markers
# ---------------------------------------------------------------------------

def get_system_config(key: str) -> Optional[str]:
    db = get_db()
    with db.get_session() as session:
        row = session.get(SystemConfigModel, key)
        return row.value if row else None


def get_system_config_updated_at(key: str) -> Optional[datetime]:
    db = get_db()
    with db.get_session() as session:
        row = session.get(SystemConfigModel, key)
        return _aware(row.updated_at) if row else None


def set_system_config(key: str, value: str, now: Optional[datetime] = None) -> None:
    db = get_db()
    with db.get_session() as session:
        row = session.get(SystemConfigModel, key)
        stamp = _naive(now) if now else _now_naive()
        if row is None:
            session.add(SystemConfigModel(key=key, value=value, updated_at=stamp))
        else:
            row.value = value
            row.updated_at = stamp
