"""Shared fixtures: an in-memory exchange gateway and an instant sleep."""

from collections import deque
from typing import List

import pytest

from atr_dca.config import DCAConfig
from atr_dca.exchange_adapters.base import (
    Candle,
    ExchangeGateway,
    InstrumentConstraints,
    OrderRequest,
    OrderResponse,
)


def flat_candles(count: int, high: float = 102.0, low: float = 100.0, close: float = 101.0) -> List[Candle]:
    """Candles whose true range is always ``high - low``."""
    return [
        Candle(timestamp=i * 3600_000, open=close, high=high, low=low, close=close)
        for i in range(count)
    ]


class FakeGateway(ExchangeGateway):
    """Scriptable exchange: queue responses or exceptions, inspect what was sent."""

    name = "fake"

    def __init__(self, candles=None, constraints=None):
        self.candles = candles if candles is not None else flat_candles(30)
        self.constraints = constraints or InstrumentConstraints(
            min_order_size=0.001, step_size=0.001, tick_size=0.01
        )
        self.constraints_error = None
        self.candles_errors = deque()
        self.submit_results = deque()
        self.cancel_results = deque()

        self.submitted: List[OrderRequest] = []
        self.accepted: List[str] = []
        self.cancelled: List[tuple] = []
        self.candle_requests: List[tuple] = []
        self._next_id = 0

    async def submit_order(self, request: OrderRequest) -> OrderResponse:
        self.submitted.append(request)
        if self.submit_results:
            result = self.submit_results.popleft()
            if isinstance(result, Exception):
                raise result
            if result.ok and result.order_id:
                self.accepted.append(result.order_id)
            return result
        self._next_id += 1
        order_id = f"ord-{self._next_id}"
        self.accepted.append(order_id)
        return OrderResponse(code=0, message="OK", order_id=order_id)

    async def cancel_order(self, symbol: str, order_id: str) -> OrderResponse:
        self.cancelled.append((symbol, order_id))
        if self.cancel_results:
            result = self.cancel_results.popleft()
            if isinstance(result, Exception):
                raise result
            return result
        return OrderResponse(code=0, message="OK", order_id=order_id)

    async def get_candles(self, symbol: str, timeframe: str, limit: int) -> List[Candle]:
        self.candle_requests.append((symbol, timeframe, limit))
        if self.candles_errors:
            raise self.candles_errors.popleft()
        return list(self.candles)

    async def get_instrument_constraints(self, symbol: str) -> InstrumentConstraints:
        if self.constraints_error is not None:
            raise self.constraints_error
        return self.constraints


class FakeSleep:
    """Records requested delays instead of waiting."""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def fake_sleep():
    return FakeSleep()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def ladder_config():
    """Three-level ladder: ATR 2 x 0.5 gives a first deviation of 1.0."""
    return DCAConfig(
        atr_timeframe="1h",
        atr_length=14,
        atr_deviation=0.5,
        num_orders=3,
        step_scale=1.2,
        volume_scale=1.5,
    )
