"""
Unit tests for ccxt payload normalisation and the scoped client helper.
"""
import pytest
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import ccxt

from copytrader.data.exchange_client import (
    CcxtExchangeClient,
    balance_from_ccxt,
    open_client,
    order_from_ccxt,
    orders_from_ccxt,
    result_from_ccxt,
    transfer_from_ccxt,
    transfers_from_ccxt,
)
from copytrader.domain.models import ExchangeCredentials, OrderSide, TransferType
from copytrader.exceptions import AuthenticationError, RateLimitError, StreamError


def _raw_order(**overrides) -> dict:
    raw = {
        "id": "123",
        "symbol": "BTC/USDT",
        "side": "buy",
        "type": "market",
        "amount": 0.5,
        "price": None,
        "average": 50000.1,
        "filled": 0.5,
        "status": "closed",
        "timestamp": 1767225600000,
    }
    raw.update(overrides)
    return raw


def test_closed_order_is_fill():
    order = order_from_ccxt(_raw_order())
    assert order.id == "123"
    assert order.side == OrderSide.BUY
    assert order.average == Decimal("50000.1")
    assert order.filled == Decimal("0.5")
    assert order.price is None
    assert order.timestamp == 1767225600000
    assert order.is_fill
    assert order.raw["id"] == "123"


def test_open_order_is_not_fill():
    order = order_from_ccxt(_raw_order(status="open", filled=0, average=None))
    assert not order.is_closed
    assert not order.is_fill


def test_closed_order_without_fill_is_not_fill():
    # Cancelled-by-exchange orders can be reported closed with nothing executed
    assert not order_from_ccxt(_raw_order(filled=0)).is_fill


def test_side_is_case_insensitive():
    assert order_from_ccxt(_raw_order(side="SELL")).side == OrderSide.SELL


def test_order_result():
    result = result_from_ccxt({"id": 9, "symbol": "ETH/USDT", "side": "sell", "amount": "1.5",
                               "average": "2000", "filled": "1.5", "status": "closed"})
    assert result.id == "9"
    assert result.filled == Decimal("1.5")
    assert result.average == Decimal("2000")


def test_order_result_missing_fill_fields():
    result = result_from_ccxt({"id": "9", "symbol": "ETH/USDT", "side": "buy", "amount": 1, "status": "open"})
    assert result.average is None
    assert result.filled == Decimal("0")


def test_transfer_txid_falls_back_to_record_id():
    t = transfer_from_ccxt({"id": "dep-1", "amount": 250, "timestamp": 1000}, TransferType.DEPOSIT, "USDT")
    assert t.txid == "dep-1"
    assert t.currency == "USDT"
    assert t.amount == Decimal("250")
    assert t.kind == TransferType.DEPOSIT


def test_transfer_keeps_chain_txid():
    t = transfer_from_ccxt({"id": "w-1", "txid": "0xabc", "amount": "10", "currency": "USDC", "timestamp": 5},
                           TransferType.WITHDRAWAL, "USDT")
    assert t.txid == "0xabc"
    assert t.currency == "USDC"


def test_transfer_without_ids_gets_stable_key():
    raw = {"id": None, "txid": None, "amount": "100", "currency": "USDT", "timestamp": 1767225600000}

    first = transfer_from_ccxt(raw, TransferType.DEPOSIT, "USDT")
    again = transfer_from_ccxt(dict(raw), TransferType.DEPOSIT, "USDT")

    assert first.txid == "deposit:USDT:100:1767225600000"
    assert first.txid == again.txid
    assert first.id == first.txid
    assert "None" not in first.txid


def test_transfer_without_ids_or_timestamp_is_skipped():
    raws = [
        {"amount": "5", "currency": "USDT"},
        {"id": "w-2", "amount": "7", "timestamp": 10},
    ]

    transfers = transfers_from_ccxt(raws, TransferType.WITHDRAWAL, "USDT")

    assert [t.txid for t in transfers] == ["w-2"]


def test_order_batch_skips_order_without_side():
    raws = [_raw_order(id="1"), _raw_order(id="2", side=None), _raw_order(id="3", side="SELL")]

    orders = orders_from_ccxt(raws)

    assert [o.id for o in orders] == ["1", "3"]
    assert orders[1].side == OrderSide.SELL


def test_order_without_side_is_rejected():
    with pytest.raises(ValueError):
        order_from_ccxt(_raw_order(side=None))


def test_balance_for_currency():
    raw = {"USDT": {"free": 900, "used": 100, "total": 1000}}
    balance = balance_from_ccxt(raw, "USDT")
    assert balance.free == Decimal("900")
    assert balance.total == Decimal("1000")


def test_balance_missing_currency_is_zero():
    balance = balance_from_ccxt({}, "USDT")
    assert balance.free == Decimal("0")
    assert balance.total == Decimal("0")


@pytest.mark.asyncio
async def test_open_client_closes_and_swallows_close_errors():
    client = MagicMock()
    client.close = AsyncMock(side_effect=RuntimeError("socket already closed"))
    factory = MagicMock(return_value=client)

    async with open_client(factory, ExchangeCredentials("k", "s")) as handle:
        assert handle is client

    client.close.assert_awaited_once()


@pytest.mark.asyncio
async def test_open_client_closes_on_error():
    client = MagicMock()
    client.close = AsyncMock()
    factory = MagicMock(return_value=client)

    with pytest.raises(ValueError):
        async with open_client(factory, ExchangeCredentials("k", "s")):
            raise ValueError("boom")

    client.close.assert_awaited_once()


def _make_client() -> CcxtExchangeClient:
    client = CcxtExchangeClient(ExchangeCredentials("k", "s"))
    client.exchange = MagicMock()
    client.exchange.close = AsyncMock()
    return client


@pytest.mark.asyncio
async def test_close_closes_rest_exchange_when_stream_close_fails():
    client = _make_client()
    stream_exchange = MagicMock()
    stream_exchange.close = AsyncMock(side_effect=RuntimeError("socket already closed"))
    client._stream_exchange = stream_exchange

    with pytest.raises(RuntimeError):
        await client.close()

    stream_exchange.close.assert_awaited_once()
    client.exchange.close.assert_awaited_once()
    assert client._stream_exchange is None


@pytest.mark.asyncio
async def test_reconciliation_fetch_skips_malformed_orders():
    client = _make_client()
    client.exchange.fetch_closed_orders = AsyncMock(return_value=[_raw_order(id="1", side=None), _raw_order(id="2")])

    orders = await client.fetch_closed_orders(since_ms=0)

    assert [o.id for o in orders] == ["2"]


@pytest.mark.asyncio
async def test_rate_limited_order_raises_rate_limit_error():
    client = _make_client()
    client.exchange.create_order = AsyncMock(side_effect=ccxt.RateLimitExceeded("429 Too Many Requests"))

    with pytest.raises(RateLimitError):
        await client.place_market_order("BTC/USDT", OrderSide.BUY, Decimal("0.1"))


@pytest.mark.asyncio
async def test_rejected_key_on_order_raises_authentication_error():
    client = _make_client()
    client.exchange.create_order = AsyncMock(side_effect=ccxt.AuthenticationError("retCode 10003"))

    with pytest.raises(AuthenticationError):
        await client.place_market_order("BTC/USDT", OrderSide.SELL, Decimal("0.1"))


@pytest.mark.asyncio
async def test_connect_failure_raises_stream_error():
    client = _make_client()
    stream_exchange = MagicMock()
    stream_exchange.load_markets = AsyncMock(side_effect=ccxt.NetworkError("handshake refused"))
    client._stream_exchange = stream_exchange

    with pytest.raises(StreamError):
        await client.connect()
