"""
Pytest configuration and shared fixtures.

Every test that touches persistence gets a fresh in-memory SQLite database.
Exchange access goes through FakeExchange, an in-memory ExchangeClient.
"""
import itertools
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, List, Optional

import pytest

from copytrader.domain.models import (
    Balance,
    ExchangeCredentials,
    ExchangeOrder,
    OrderResult,
    OrderSide,
    Transfer,
    UserRole,
)
from copytrader.storage import db as db_module
from copytrader.storage import repository
from copytrader.utils.secret_manager import CredentialCipher, CredentialStore

TEST_ENCRYPTION_KEY = "0123456789abcdef" * 4

FIXED_NOW = datetime(2026, 5, 14, 12, 0, tzinfo=timezone.utc)


class FakeExchange:
    """In-memory ExchangeClient. Script balances, order errors and stream batches per test."""

    def __init__(self, free: Decimal = Decimal("1000"), total: Optional[Decimal] = None):
        self.balance = Balance(free=free, used=Decimal("0"), total=total if total is not None else free)
        self.balance_error: Optional[Exception] = None
        self.fill_price: Optional[Decimal] = None
        self.order_errors: List[Exception] = []
        self.orders: List[tuple] = []
        self.batches: List[List[ExchangeOrder]] = []
        self.stream_error: Optional[Exception] = None
        self.connect_errors: List[Exception] = []
        self.connect_calls = 0
        self.open_orders: List[ExchangeOrder] = []
        self.closed_orders: List[ExchangeOrder] = []
        self.closed_orders_error: Optional[Exception] = None
        self.deposits: List[Transfer] = []
        self.withdrawals: List[Transfer] = []
        self.transfers: List[tuple] = []
        self.close_calls = 0

    async def fetch_balance(self, currency: Optional[str] = None) -> Balance:
        if self.balance_error is not None:
            raise self.balance_error
        return self.balance

    async def fetch_open_orders(self, limit: int = 100) -> List[ExchangeOrder]:
        return list(self.open_orders)

    async def fetch_closed_orders(self, since_ms: Optional[int] = None, limit: int = 100) -> List[ExchangeOrder]:
        if self.closed_orders_error is not None:
            raise self.closed_orders_error
        return list(self.closed_orders)

    async def place_market_order(self, symbol: str, side: OrderSide, quantity: Decimal) -> OrderResult:
        if self.order_errors:
            raise self.order_errors.pop(0)
        self.orders.append((symbol, side, quantity))
        return OrderResult(
            id=f"fake-{len(self.orders)}",
            symbol=symbol,
            side=side.value,
            amount=quantity,
            average=self.fill_price,
            filled=quantity,
            status="closed",
        )

    async def connect(self) -> None:
        self.connect_calls += 1
        if self.connect_errors:
            raise self.connect_errors.pop(0)

    async def stream_orders(self):
        for batch in self.batches:
            yield batch
        if self.stream_error is not None:
            raise self.stream_error

    async def fetch_deposits(self, since_ms: Optional[int] = None) -> List[Transfer]:
        return list(self.deposits)

    async def fetch_withdrawals(self, since_ms: Optional[int] = None) -> List[Transfer]:
        return list(self.withdrawals)

    async def transfer_internal(self, currency, amount, from_account, to_account, counterparty_id) -> str:
        self.transfers.append((currency, amount, from_account, to_account, counterparty_id))
        return f"tx-{len(self.transfers)}"

    async def close(self) -> None:
        self.close_calls += 1


class FakeExchangeFactory:
    """ExchangeFactory keyed by API key; unknown keys get a default FakeExchange."""

    def __init__(self):
        self.exchanges: Dict[str, FakeExchange] = {}
        self.calls: List[str] = []

    def add(self, api_key: str, free: Decimal = Decimal("1000"), total: Optional[Decimal] = None) -> FakeExchange:
        exchange = FakeExchange(free=free, total=total)
        self.exchanges[api_key] = exchange
        return exchange

    def __call__(self, credentials: ExchangeCredentials) -> FakeExchange:
        self.calls.append(credentials.api_key)
        return self.exchanges.setdefault(credentials.api_key, FakeExchange())


@pytest.fixture(autouse=True)
def _no_alert_webhook(monkeypatch):
    monkeypatch.delenv("ALERT_WEBHOOK_URL", raising=False)


@pytest.fixture
def database():
    database = db_module.init_db("sqlite://")
    yield database
    database.drop_all()
    db_module._db_instance = None


@pytest.fixture
def cipher() -> CredentialCipher:
    return CredentialCipher(TEST_ENCRYPTION_KEY)


@pytest.fixture
def credential_store(cipher) -> CredentialStore:
    return CredentialStore(cipher)


@pytest.fixture
def exchange_factory() -> FakeExchangeFactory:
    return FakeExchangeFactory()


@pytest.fixture
def clock():
    return lambda: FIXED_NOW


@pytest.fixture
def make_user(database, cipher):
    """Create a persisted user. Pass api_key=None for a user without keys."""
    counter = itertools.count(1)

    def _make(role: UserRole = UserRole.FOLLOWER, api_key: Optional[str] = "", **overrides):
        n = next(counter)
        if api_key == "":
            api_key = f"{role.value}-key-{n}"
        fields = dict(
            email=f"{role.value}{n}@example.com",
            name=f"{role.value.title()} {n}",
            role=role,
            api_key_encrypted=cipher.encrypt(api_key) if api_key else None,
            api_secret_encrypted=cipher.encrypt(f"secret-{n}") if api_key else None,
            copy_ratio_percent=Decimal("10"),
            copying_enabled=role == UserRole.FOLLOWER,
        )
        fields.update(overrides)
        return repository.create_user(**fields)

    return _make
