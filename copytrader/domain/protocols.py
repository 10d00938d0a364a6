"""
Domain protocols (interfaces) for dependency inversion.

The worker depends on these contracts rather than on ccxt directly, so the
copier, watcher, reconciler and jobs can run against an in-memory exchange
in tests.
"""
from decimal import Decimal
from typing import AsyncIterator, Callable, List, Optional, Protocol, runtime_checkable

from copytrader.domain.models import (
    Balance,
    ExchangeCredentials,
    ExchangeOrder,
    OrderResult,
    OrderSide,
    Transfer,
)


@runtime_checkable
class ExchangeClient(Protocol):
    """
    Authenticated handle on one exchange account.

    Implemented by copytrader.data.exchange_client.CcxtExchangeClient.
    """

    async def fetch_balance(self, currency: Optional[str] = None) -> Balance: ...

    async def fetch_open_orders(self, limit: int = 100) -> List[ExchangeOrder]: ...

    async def fetch_closed_orders(self, since_ms: Optional[int] = None, limit: int = 100) -> List[ExchangeOrder]: ...

    async def place_market_order(self, symbol: str, side: OrderSide, quantity: Decimal) -> OrderResult: ...

    async def connect(self) -> None:
        """Open the order subscription. Raises StreamError when it cannot be established."""

    def stream_orders(self) -> AsyncIterator[List[ExchangeOrder]]: ...

    async def fetch_deposits(self, since_ms: Optional[int] = None) -> List[Transfer]: ...

    async def fetch_withdrawals(self, since_ms: Optional[int] = None) -> List[Transfer]: ...

    async def transfer_internal(
        self,
        currency: str,
        amount: Decimal,
        from_account: str,
        to_account: str,
        counterparty_id: str,
    ) -> str: ...

    async def close(self) -> None: ...


ExchangeFactory = Callable[[ExchangeCredentials], ExchangeClient]
"""Builds a client for one set of credentials."""


@runtime_checkable
class Notifier(Protocol):
    """User-facing notification sink (dashboard notification bell)."""

    def __call__(
        self,
        user_id: int,
        type: str,
        title: str,
        message: str,
        metadata: Optional[dict] = None,
    ) -> None: ...
