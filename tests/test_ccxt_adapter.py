"""Tests for the ccxt gateway using a stand-in exchange object."""

import ccxt
import ccxt.async_support
import pytest

from atr_dca.exchange_adapters.base import (
    CODE_NOT_FOUND,
    CODE_OK,
    CODE_RATE_LIMIT,
    CODE_REJECTED,
    OrderRequest,
)
from atr_dca.exchange_adapters.ccxt_adapter import CCXTGateway


class StubExchange:
    precisionMode = ccxt.TICK_SIZE

    def __init__(self):
        self.markets = {}
        self.orders = []
        self.cancels = []
        self.create_error = None
        self.cancel_error = None
        self.closed = False
        self.load_calls = 0

    async def load_markets(self):
        self.load_calls += 1
        self.markets = {
            "BTC/USDT:USDT": {
                "precision": {"amount": 0.001, "price": 0.1},
                "limits": {"amount": {"min": 0.001}},
            },
        }
        return self.markets

    def market(self, symbol):
        return self.markets[symbol]

    async def create_limit_order(self, symbol, side, amount, price, params):
        if self.create_error is not None:
            raise self.create_error
        self.orders.append((symbol, side, amount, price, params))
        return {"id": 12345}

    async def cancel_order(self, order_id, symbol):
        self.cancels.append((order_id, symbol))
        if self.cancel_error is not None:
            raise self.cancel_error
        return {"id": order_id}

    async def fetch_ohlcv(self, symbol, timeframe, limit=None):
        return [
            [2000, 10.0, 12.0, 9.0, 11.0, 5.0],
            [1000, 9.0, 11.0, 8.0, 10.0, None],
        ]

    async def close(self):
        self.closed = True


@pytest.fixture
def stub():
    return StubExchange()


@pytest.fixture
def ccxt_gateway(stub):
    return CCXTGateway("bybit", exchange=stub)


def order_request(**overrides):
    data = dict(
        symbol="BTC/USDT:USDT",
        side="buy",
        qty="0.015",
        price="98.8",
        position_idx=1,
        client_order_id="p1-L2",
    )
    data.update(overrides)
    return OrderRequest(**data)


@pytest.mark.asyncio
async def test_submit_limit_order(ccxt_gateway, stub):
    response = await ccxt_gateway.submit_order(order_request())

    assert response.code == CODE_OK
    assert response.order_id == "12345"
    symbol, side, amount, price, params = stub.orders[0]
    assert (symbol, side, amount, price) == ("BTC/USDT:USDT", "buy", 0.015, 98.8)
    assert params == {"reduceOnly": False, "positionIdx": 1, "clientOrderId": "p1-L2"}


@pytest.mark.asyncio
async def test_one_way_mode_omits_position_index(stub):
    gateway = CCXTGateway("bybit", exchange=stub, hedge_mode=False)
    await gateway.submit_order(order_request())
    assert "positionIdx" not in stub.orders[0][4]


@pytest.mark.asyncio
async def test_submit_error_mapping(ccxt_gateway, stub):
    stub.create_error = ccxt.RateLimitExceeded("too many requests")
    assert (await ccxt_gateway.submit_order(order_request())).code == CODE_RATE_LIMIT

    stub.create_error = ccxt.InsufficientFunds("insufficient balance")
    response = await ccxt_gateway.submit_order(order_request())
    assert response.code == CODE_REJECTED
    assert "insufficient balance" in response.message


@pytest.mark.asyncio
async def test_network_errors_propagate(ccxt_gateway, stub):
    stub.create_error = ccxt.NetworkError("connection reset")
    with pytest.raises(ccxt.NetworkError):
        await ccxt_gateway.submit_order(order_request())


@pytest.mark.asyncio
async def test_cancel_error_mapping(ccxt_gateway, stub):
    assert (await ccxt_gateway.cancel_order("BTC/USDT:USDT", "12345")).code == CODE_OK
    assert stub.cancels == [("12345", "BTC/USDT:USDT")]

    stub.cancel_error = ccxt.OrderNotFound("unknown order")
    assert (await ccxt_gateway.cancel_order("BTC/USDT:USDT", "12345")).code == CODE_NOT_FOUND

    stub.cancel_error = ccxt.ExchangeError("order is being processed")
    assert (await ccxt_gateway.cancel_order("BTC/USDT:USDT", "12345")).code == CODE_REJECTED


@pytest.mark.asyncio
async def test_candles_sorted_oldest_first(ccxt_gateway):
    candles = await ccxt_gateway.get_candles("BTC/USDT:USDT", "1h", 15)

    assert [c.timestamp for c in candles] == [1000, 2000]
    assert candles[0].high == 11.0
    assert candles[0].volume == 0.0


@pytest.mark.asyncio
async def test_instrument_constraints_tick_size_mode(ccxt_gateway, stub):
    constraints = await ccxt_gateway.get_instrument_constraints("BTC/USDT:USDT")
    await ccxt_gateway.get_instrument_constraints("BTC/USDT:USDT")

    assert constraints.min_order_size == pytest.approx(0.001)
    assert constraints.step_size == pytest.approx(0.001)
    assert constraints.tick_size == pytest.approx(0.1)
    assert stub.load_calls == 1


def test_decimal_places_precision(stub):
    stub.precisionMode = ccxt.DECIMAL_PLACES
    gateway = CCXTGateway("bybit", exchange=stub)
    assert gateway._precision_to_step(3) == pytest.approx(0.001)


def test_unsupported_exchange_rejected():
    with pytest.raises(ValueError):
        CCXTGateway("kraken")


@pytest.mark.asyncio
async def test_close(ccxt_gateway, stub):
    async with ccxt_gateway:
        pass
    assert stub.closed


@pytest.mark.asyncio
@pytest.mark.parametrize("exchange_name", sorted(CCXTGateway.SUPPORTED_EXCHANGES))
async def test_supported_exchanges_construct(exchange_name):
    gateway = CCXTGateway(exchange_name)
    assert isinstance(gateway.exchange, ccxt.async_support.Exchange)
    await gateway.close()


def test_gate_listed_under_current_ccxt_name():
    assert "gate" in CCXTGateway.SUPPORTED_EXCHANGES
    assert "gateio" not in CCXTGateway.SUPPORTED_EXCHANGES
