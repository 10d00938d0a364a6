"""
ccxt-backed exchange client.

REST calls go through ccxt.async_support; the leader order stream uses
ccxt.pro watch_orders. Raw payloads are normalised into the domain
dataclasses here and do not travel further except as an audit blob.
"""
from contextlib import asynccontextmanager
from decimal import Decimal, InvalidOperation
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional

import ccxt.async_support as ccxt_async
import ccxt.pro as ccxt_pro

from copytrader.config.config import ExchangeConfig
from copytrader.domain.models import (
    Balance,
    ExchangeCredentials,
    ExchangeOrder,
    OrderResult,
    OrderSide,
    Transfer,
    TransferType,
)
from copytrader.domain.protocols import ExchangeClient, ExchangeFactory
from copytrader.exceptions import AuthenticationError, RateLimitError, StreamError
from copytrader.monitoring.logger import get_logger
from copytrader.utils.clock import epoch_ms, utc_now

logger = get_logger(__name__)


def _to_decimal(value: Any) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None


def order_from_ccxt(raw: Dict[str, Any]) -> ExchangeOrder:
    """Normalise a ccxt unified order dict. Raises ValueError on an unknown side."""
    return ExchangeOrder(
        id=str(raw.get("id")),
        symbol=str(raw.get("symbol")),
        side=OrderSide(str(raw.get("side")).lower()),
        type=str(raw.get("type") or "market"),
        amount=_to_decimal(raw.get("amount")) or Decimal("0"),
        price=_to_decimal(raw.get("price")),
        average=_to_decimal(raw.get("average")),
        filled=_to_decimal(raw.get("filled")) or Decimal("0"),
        status=str(raw.get("status") or "open"),
        timestamp=int(raw["timestamp"]) if raw.get("timestamp") is not None else None,
        raw=raw,
    )


def orders_from_ccxt(raws: Iterable[Dict[str, Any]]) -> List[ExchangeOrder]:
    """Normalise each order on its own; malformed ones are logged and skipped."""
    orders = []
    for raw in raws or []:
        try:
            orders.append(order_from_ccxt(raw))
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            logger.warning(
                "MALFORMED_ORDER_SKIPPED",
                order_id=raw.get("id") if isinstance(raw, dict) else None,
                error=str(e),
                error_type=type(e).__name__,
            )
    return orders


def result_from_ccxt(raw: Dict[str, Any]) -> OrderResult:
    return OrderResult(
        id=str(raw.get("id")),
        symbol=str(raw.get("symbol")),
        side=str(raw.get("side")),
        amount=_to_decimal(raw.get("amount")) or Decimal("0"),
        average=_to_decimal(raw.get("average")),
        filled=_to_decimal(raw.get("filled")) or Decimal("0"),
        status=str(raw.get("status")),
    )


def transfer_from_ccxt(raw: Dict[str, Any], kind: TransferType, default_currency: str) -> Transfer:
    """
    Normalise a ccxt deposit/withdrawal.

    txid falls back to the record id, then to a key built from kind,
    currency, amount and timestamp so re-fetches map to the same row.
    Raises ValueError when the record has neither ids nor a timestamp.
    """
    timestamp = raw.get("timestamp")
    amount = _to_decimal(raw.get("amount")) or Decimal("0")
    currency = str(raw.get("currency") or default_currency)
    record_id = raw.get("id")
    txid = raw.get("txid") or record_id
    if not txid:
        if timestamp is None:
            raise ValueError(f"{kind.value} has no id, txid or timestamp")
        txid = f"{kind.value}:{currency}:{amount}:{int(timestamp)}"
    return Transfer(
        id=str(record_id or txid),
        txid=str(txid),
        kind=kind,
        amount=amount,
        currency=currency,
        timestamp=int(timestamp) if timestamp is not None else epoch_ms(utc_now()),
    )


def transfers_from_ccxt(raws: Iterable[Dict[str, Any]], kind: TransferType, default_currency: str) -> List[Transfer]:
    transfers = []
    for raw in raws or []:
        try:
            transfers.append(transfer_from_ccxt(raw, kind, default_currency))
        except (AttributeError, TypeError, ValueError) as e:
            logger.warning("MALFORMED_TRANSFER_SKIPPED", kind=kind.value, error=str(e), error_type=type(e).__name__)
    return transfers


def balance_from_ccxt(raw: Dict[str, Any], currency: str) -> Balance:
    entry = raw.get(currency) or {}
    return Balance(
        free=_to_decimal(entry.get("free")) or Decimal("0"),
        used=_to_decimal(entry.get("used")) or Decimal("0"),
        total=_to_decimal(entry.get("total")) or Decimal("0"),
    )


class CcxtExchangeClient:
    """Authenticated spot-account handle for one set of credentials."""

    def __init__(self, credentials: ExchangeCredentials, config: Optional[ExchangeConfig] = None):
        self.config = config or ExchangeConfig()
        self._credentials = credentials
        self.exchange = self._build(ccxt_async)
        self._stream_exchange = None

    def _build(self, module):
        exchange_class = getattr(module, self.config.name, None)
        if exchange_class is None:
            raise ValueError(f"Unknown ccxt exchange id: {self.config.name}")
        exchange = exchange_class({
            "apiKey": self._credentials.api_key,
            "secret": self._credentials.api_secret,
            "enableRateLimit": True,
            "timeout": self.config.timeout_ms,
            "options": {"defaultType": self.config.market_type},
        })
        if self.config.use_sandbox:
            exchange.set_sandbox_mode(True)
        return exchange

    async def fetch_balance(self, currency: Optional[str] = None) -> Balance:
        currency = currency or self.config.quote_currency
        try:
            raw = await self.exchange.fetch_balance({"type": self.config.market_type})
        except ccxt_async.AuthenticationError as e:
            raise AuthenticationError(f"Invalid API credentials: {e}") from e
        return balance_from_ccxt(raw, currency)

    async def fetch_open_orders(self, limit: int = 100) -> List[ExchangeOrder]:
        raw = await self.exchange.fetch_open_orders(None, None, limit)
        return orders_from_ccxt(raw)

    async def fetch_closed_orders(self, since_ms: Optional[int] = None, limit: int = 100) -> List[ExchangeOrder]:
        raw = await self.exchange.fetch_closed_orders(None, since_ms, limit)
        return orders_from_ccxt(raw)

    async def place_market_order(self, symbol: str, side: OrderSide, quantity: Decimal) -> OrderResult:
        try:
            raw = await self.exchange.create_order(symbol, "market", side.value, float(quantity))
        except (ccxt_async.RateLimitExceeded, ccxt_async.DDoSProtection) as e:
            raise RateLimitError(f"Rate limited placing {side.value} {symbol}: {e}") from e
        except ccxt_async.AuthenticationError as e:
            raise AuthenticationError(f"Invalid API credentials: {e}") from e
        return result_from_ccxt(raw)

    async def connect(self) -> None:
        """Build the websocket exchange and load its markets ahead of the first watch."""
        if self._stream_exchange is None:
            self._stream_exchange = self._build(ccxt_pro)
        try:
            await self._stream_exchange.load_markets()
        except (ccxt_async.NetworkError, ccxt_async.ExchangeError) as e:
            raise StreamError(f"Order stream could not be opened: {e}") from e

    async def stream_orders(self) -> AsyncIterator[List[ExchangeOrder]]:
        """Yield batches of order updates until the connection fails."""
        if self._stream_exchange is None:
            self._stream_exchange = self._build(ccxt_pro)
        while True:
            try:
                batch = await self._stream_exchange.watch_orders()
            except (ccxt_async.NetworkError, ccxt_async.ExchangeError) as e:
                raise StreamError(f"Order stream failed: {e}") from e
            yield orders_from_ccxt(batch)

    async def fetch_deposits(self, since_ms: Optional[int] = None) -> List[Transfer]:
        currency = self.config.quote_currency
        raw = await self.exchange.fetch_deposits(currency, since_ms)
        return transfers_from_ccxt(raw, TransferType.DEPOSIT, currency)

    async def fetch_withdrawals(self, since_ms: Optional[int] = None) -> List[Transfer]:
        currency = self.config.quote_currency
        raw = await self.exchange.fetch_withdrawals(currency, since_ms)
        return transfers_from_ccxt(raw, TransferType.WITHDRAWAL, currency)

    async def transfer_internal(
        self,
        currency: str,
        amount: Decimal,
        from_account: str,
        to_account: str,
        counterparty_id: str,
    ) -> str:
        """Internal transfer to another account on the same exchange. Returns the transfer id."""
        raw = await self.exchange.transfer(
            currency, float(amount), from_account, to_account, {"toMemberId": counterparty_id},
        )
        return str(raw.get("id"))

    async def close(self) -> None:
        """Cleanup resources. The REST exchange is closed even if the stream close fails."""
        stream_exchange, self._stream_exchange = self._stream_exchange, None
        try:
            if stream_exchange is not None:
                await stream_exchange.close()
        finally:
            await self.exchange.close()


def ccxt_factory(config: Optional[ExchangeConfig] = None) -> ExchangeFactory:
    """Factory building CcxtExchangeClient handles with a shared exchange config."""
    def build(credentials: ExchangeCredentials) -> ExchangeClient:
        return CcxtExchangeClient(credentials, config)
    return build


@asynccontextmanager
async def open_client(factory: ExchangeFactory, credentials: ExchangeCredentials) -> AsyncIterator[ExchangeClient]:
    """Scoped client: always closed on exit, close errors are logged and dropped."""
    client = factory(credentials)
    try:
        yield client
    finally:
        try:
            await client.close()
        except Exception as e:
            logger.warning("Exchange client close failed", error=str(e))
