"""Tests for retry, backoff and rate-limit cool-down."""

import pytest

from atr_dca.core.retry_handler import RetryConfig, RetryHandler, classify_error
from atr_dca.exceptions import (
    ConfigurationError,
    DuplicatePositionError,
    OrderSubmissionError,
    RateLimitError,
)


class ScriptedOperation:
    """Raises the scripted exceptions in order, then returns 'ok'."""

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.outcomes:
            outcome = self.outcomes.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
        return "ok"


class AlwaysFails:
    def __init__(self, exc):
        self.exc = exc
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        raise self.exc


@pytest.fixture
def handler(fake_sleep):
    return RetryHandler(RetryConfig(max_attempts=3, base_delay=2.0), sleep=fake_sleep)


@pytest.mark.asyncio
async def test_success_on_first_call(handler, fake_sleep):
    op = ScriptedOperation()
    assert await handler.execute(op, "op") == "ok"
    assert op.calls == 1
    assert fake_sleep.delays == []


@pytest.mark.asyncio
async def test_exponential_backoff_with_jitter(handler, fake_sleep):
    op = ScriptedOperation(ConnectionError("reset"), TimeoutError("timeout"))

    assert await handler.execute(op, "op") == "ok"

    assert op.calls == 3
    assert len(fake_sleep.delays) == 2
    assert 2.0 <= fake_sleep.delays[0] <= 3.0
    assert 4.0 <= fake_sleep.delays[1] <= 5.0


@pytest.mark.asyncio
async def test_exhausted_attempts_raise_last_error(handler, fake_sleep):
    op = AlwaysFails(ConnectionError("exchange unreachable"))

    with pytest.raises(ConnectionError):
        await handler.execute(op, "op")

    assert op.calls == 3
    assert len(fake_sleep.delays) == 2
    stats = handler.get_stats()["op"]
    assert stats["failures"] == 3
    assert stats["successes"] == 0


@pytest.mark.asyncio
@pytest.mark.parametrize("exc", [
    OrderSubmissionError("order rejected", code=10001),
    ConfigurationError("bad timeframe"),
    ValueError("bad input"),
    Exception("Insufficient balance for order"),
])
async def test_non_retryable_errors_fail_immediately(handler, fake_sleep, exc):
    op = AlwaysFails(exc)

    with pytest.raises(type(exc)):
        await handler.execute(op, "op")

    assert op.calls == 1
    assert fake_sleep.delays == []


@pytest.mark.asyncio
async def test_rate_limit_cools_down_then_retries_same_call(handler, fake_sleep):
    op = ScriptedOperation(RateLimitError("rate limit exceeded", code=10006))

    assert await handler.execute(op, "op") == "ok"

    assert op.calls == 2
    assert len(fake_sleep.delays) == 1
    assert 5.0 <= fake_sleep.delays[0] <= 10.0
    assert handler.get_stats()["op"]["rate_limit_cooldowns"] == 1


@pytest.mark.asyncio
async def test_rate_limit_then_standard_policy(handler, fake_sleep):
    # One cool-down retry, then the full three-attempt policy
    op = AlwaysFails(Exception("Too many requests"))

    with pytest.raises(Exception, match="Too many requests"):
        await handler.execute(op, "op")

    assert op.calls == 4
    assert 5.0 <= fake_sleep.delays[0] <= 10.0
    assert 2.0 <= fake_sleep.delays[1] <= 3.0
    assert 4.0 <= fake_sleep.delays[2] <= 5.0
    assert len(fake_sleep.delays) == 3


@pytest.mark.asyncio
async def test_per_call_config_override(handler, fake_sleep):
    op = AlwaysFails(ConnectionError("reset"))

    with pytest.raises(ConnectionError):
        await handler.execute(op, "cancel", config=RetryConfig(max_attempts=2, base_delay=1.0))

    assert op.calls == 2
    assert 1.0 <= fake_sleep.delays[0] <= 2.0


def test_delay_is_capped(handler):
    config = RetryConfig(base_delay=10.0, max_delay=15.0, max_jitter=0.0)
    assert handler._calculate_delay(1, config) == 10.0
    assert handler._calculate_delay(5, config) == 15.0


def test_classify_error():
    assert isinstance(classify_error(Exception("429 Too Many Requests")), RateLimitError)

    wrapped = classify_error(ConnectionError("reset"))
    assert type(wrapped) is OrderSubmissionError
    assert "reset" in str(wrapped)

    original = DuplicatePositionError("BTCUSDT", "long", "p1")
    assert classify_error(original) is original
