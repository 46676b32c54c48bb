"""Tests for the ATR volatility engine."""

import pytest

from atr_dca.core.retry_handler import RetryConfig, RetryHandler
from atr_dca.core.volatility import VolatilityEngine, cache_key, compute_atr, true_range
from atr_dca.exceptions import ConfigurationError, InsufficientDataError, InvalidResultError
from atr_dca.exchange_adapters.base import Candle
from tests.conftest import FakeGateway, flat_candles


def reference_candles():
    """15 candles, period 14: twelve true ranges of 2, then two gaps of 16.

    ATR = 2 for the first twelve ranges, (2*13 + 16)/14 = 3 after the
    first gap and (3*13 + 16)/14 = 55/14 after the second.
    """
    candles = [Candle(open=100, high=101, low=99, close=100)]
    candles += [Candle(open=100, high=101, low=99, close=100) for _ in range(12)]
    # Gap down: |low - prev close| = 16
    candles.append(Candle(open=85, high=86, low=84, close=85))
    # Gap up: |high - prev close| = 16
    candles.append(Candle(open=100, high=101, low=99, close=100))
    return candles


def make_engine(gateway, clock, fake_sleep, **kwargs):
    return VolatilityEngine(
        gateway,
        retry_handler=RetryHandler(sleep=fake_sleep),
        retry_config=RetryConfig(max_attempts=3, base_delay=3.0),
        clock=clock,
        **kwargs,
    )


def test_true_range_uses_previous_close():
    assert true_range(101, 99, 100) == 2
    assert true_range(86, 84, 100) == 16
    assert true_range(101, 99, 85) == 16


def test_wilder_atr_matches_reference():
    candles = reference_candles()
    assert len(candles) == 15
    assert compute_atr(candles, 14) == pytest.approx(55 / 14, rel=1e-9)


def test_wilder_atr_uses_most_recent_window():
    candles = [Candle(open=500, high=1000, low=1, close=500)] + reference_candles()
    assert compute_atr(candles, 14) == pytest.approx(55 / 14, rel=1e-9)


@pytest.mark.asyncio
async def test_calculate_volatility_requests_length_plus_one(clock, fake_sleep):
    gateway = FakeGateway(candles=reference_candles())
    engine = make_engine(gateway, clock, fake_sleep)

    atr = await engine.calculate_volatility("BTCUSDT", "1h", 14)

    assert atr == pytest.approx(55 / 14, rel=1e-9)
    assert gateway.candle_requests == [("BTCUSDT", "1h", 15)]


@pytest.mark.asyncio
async def test_insufficient_candles(clock, fake_sleep):
    gateway = FakeGateway(candles=flat_candles(10))
    engine = make_engine(gateway, clock, fake_sleep)

    with pytest.raises(InsufficientDataError) as exc_info:
        await engine.calculate_volatility("BTCUSDT", "1h", 14)

    assert exc_info.value.received == 10
    assert exc_info.value.required == 15


@pytest.mark.asyncio
@pytest.mark.parametrize("timeframe,length", [("2h", 14), ("1h", 0), ("1h", 101)])
async def test_invalid_config_rejected_before_fetch(clock, fake_sleep, timeframe, length):
    gateway = FakeGateway()
    engine = make_engine(gateway, clock, fake_sleep)

    with pytest.raises(ConfigurationError):
        await engine.calculate_volatility("BTCUSDT", timeframe, length)
    assert gateway.candle_requests == []


@pytest.mark.asyncio
async def test_zero_range_is_invalid_result(clock, fake_sleep):
    gateway = FakeGateway(candles=flat_candles(20, high=100, low=100, close=100))
    engine = make_engine(gateway, clock, fake_sleep)

    with pytest.raises(InvalidResultError):
        await engine.calculate_volatility("BTCUSDT", "1h", 14)
    assert engine.get_cache_stats()["total_entries"] == 0


@pytest.mark.asyncio
async def test_cache_hit_within_ttl_and_refresh_after(clock, fake_sleep):
    gateway = FakeGateway()
    engine = make_engine(gateway, clock, fake_sleep)

    first = await engine.calculate_volatility("BTCUSDT", "1h", 14)
    clock.advance(299)
    second = await engine.calculate_volatility("BTCUSDT", "1h", 14)
    assert first == second == pytest.approx(2.0)
    assert len(gateway.candle_requests) == 1

    clock.advance(2)
    await engine.calculate_volatility("BTCUSDT", "1h", 14)
    assert len(gateway.candle_requests) == 2

    stats = engine.get_cache_stats()
    assert stats["hits"] == 1
    assert stats["misses"] == 2


@pytest.mark.asyncio
async def test_transient_fetch_error_is_retried(clock, fake_sleep):
    gateway = FakeGateway()
    gateway.candles_errors.append(ConnectionError("connection reset"))
    engine = make_engine(gateway, clock, fake_sleep)

    atr = await engine.calculate_volatility("BTCUSDT", "1h", 14)

    assert atr == pytest.approx(2.0)
    assert len(gateway.candle_requests) == 2
    assert 3.0 <= fake_sleep.delays[0] <= 4.0


@pytest.mark.asyncio
async def test_exhausted_fetch_error_becomes_insufficient_data(clock, fake_sleep):
    gateway = FakeGateway()
    gateway.candles_errors.extend([ConnectionError("connection reset")] * 3)
    engine = make_engine(gateway, clock, fake_sleep)

    with pytest.raises(InsufficientDataError) as excinfo:
        await engine.calculate_volatility("BTCUSDT", "1h", 14)

    assert excinfo.value.received == 0
    assert excinfo.value.required == 15
    assert isinstance(excinfo.value.__cause__, ConnectionError)
    assert len(gateway.candle_requests) == 3
    assert engine.get_cache_stats()["total_entries"] == 0


@pytest.mark.asyncio
async def test_update_hook_called_after_calculation(clock, fake_sleep):
    calls = []

    async def on_update():
        calls.append(engine.cache_snapshot())

    engine = make_engine(FakeGateway(), clock, fake_sleep, on_update=on_update)
    await engine.calculate_volatility("BTCUSDT", "1h", 14)

    assert len(calls) == 1
    assert calls[0][0]["key"] == cache_key("BTCUSDT", "1h", 14)


@pytest.mark.asyncio
async def test_get_multiple_maps_failures_to_none(clock, fake_sleep):
    engine = make_engine(FakeGateway(), clock, fake_sleep)

    results = await engine.get_multiple("BTCUSDT", ["1h", "4h", "3h"])

    assert results["1h"] == pytest.approx(2.0)
    assert results["4h"] == pytest.approx(2.0)
    assert results["3h"] is None


@pytest.mark.asyncio
async def test_volatility_percentage_and_threshold(clock, fake_sleep):
    engine = make_engine(FakeGateway(), clock, fake_sleep)

    assert await engine.get_volatility_percentage("BTCUSDT", 50.0) == pytest.approx(4.0)
    assert await engine.is_high_volatility("BTCUSDT", 50.0, threshold=3.0) is True
    assert await engine.is_high_volatility("BTCUSDT", 200.0, threshold=3.0) is False
    assert await engine.is_high_volatility("BTCUSDT", 50.0, timeframe="3h") is False


def test_load_cache_drops_stale_entries(clock):
    engine = VolatilityEngine(FakeGateway(), clock=clock)
    loaded = engine.load_cache([
        {"key": "BTCUSDT|1h|14", "value": 2.0, "timestamp": clock.now - 10},
        {"key": "ETHUSDT|1h|14", "value": 1.0, "timestamp": clock.now - 301},
    ])

    assert loaded == 1
    assert [e["key"] for e in engine.cache_snapshot()] == ["BTCUSDT|1h|14"]

    engine.clear_cache()
    assert engine.cache_snapshot() == []
