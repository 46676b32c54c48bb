"""Tests for the lifecycle event bus."""

import pytest

from atr_dca.services.events import EventBus, LevelCancelled, LevelFailed


@pytest.mark.asyncio
async def test_sync_and_async_handlers_receive_event():
    bus = EventBus()
    received = []

    def on_sync(event):
        received.append(("sync", event.ordinal))

    async def on_async(event):
        received.append(("async", event.ordinal))

    bus.subscribe(LevelFailed, on_sync)
    bus.subscribe(LevelFailed, on_async)

    await bus.publish(LevelFailed(position_id="p1", symbol="BTCUSDT", ordinal=2, error="rejected"))

    assert received == [("sync", 2), ("async", 2)]


@pytest.mark.asyncio
async def test_events_routed_by_type():
    bus = EventBus()
    received = []
    bus.subscribe(LevelCancelled, received.append)

    await bus.publish(LevelFailed(position_id="p1", symbol="BTCUSDT", ordinal=1, error="x"))
    assert received == []


@pytest.mark.asyncio
async def test_unsubscribe():
    bus = EventBus()
    received = []
    subscription = bus.subscribe(LevelFailed, received.append)

    subscription.unsubscribe()
    subscription.unsubscribe()
    await bus.publish(LevelFailed(position_id="p1", symbol="BTCUSDT", ordinal=1, error="x"))

    assert received == []
    assert bus.handler_count(LevelFailed) == 0


@pytest.mark.asyncio
async def test_failing_handler_does_not_block_others():
    bus = EventBus()
    received = []

    def broken(event):
        raise RuntimeError("handler bug")

    bus.subscribe(LevelFailed, broken)
    bus.subscribe(LevelFailed, received.append)

    await bus.publish(LevelFailed(position_id="p1", symbol="BTCUSDT", ordinal=1, error="x"))

    assert len(received) == 1


def test_events_are_immutable():
    event = LevelFailed(position_id="p1", symbol="BTCUSDT", ordinal=1, error="x")
    with pytest.raises(AttributeError):
        event.ordinal = 2
