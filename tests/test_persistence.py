"""Tests for the SQLAlchemy snapshot store."""

from datetime import timedelta

import pytest

from atr_dca.core.levels import generate_levels
from atr_dca.core.models import LevelStatus, PerformanceStats, PositionState, PositionStatus, Side, utcnow
from atr_dca.exceptions import PersistenceError
from atr_dca.services.persistence import PersistenceGateway


@pytest.fixture
def persistence():
    gateway = PersistenceGateway("sqlite://")
    yield gateway
    gateway.close()


def make_position(config, position_id="p1", symbol="BTCUSDT"):
    state = PositionState(
        position_id=position_id,
        symbol=symbol,
        side=Side.LONG,
        base_price=100.0,
        base_size=10.0,
        volatility=2.0,
        levels=generate_levels(Side.LONG, 100.0, 10.0, 2.0, config),
        total_allocated=10.0,
        average_entry_price=100.0,
    )
    level = state.levels[0]
    level.status = LevelStatus.FILLED
    level.order_id = "ord-1"
    level.client_order_id = f"{position_id}-L1"
    level.placed_at = utcnow()
    level.filled_at = utcnow()
    level.fill_price = 99.0
    level.filled_qty = 10.0
    state.executed_levels.append(1)
    state.total_allocated = 20.0
    state.average_entry_price = 99.5
    second = state.levels[1]
    second.status = LevelStatus.ACTIVE
    second.order_id = "ord-2"
    second.placed_at = utcnow()
    state.active_order_ids.append("ord-2")
    return state


def test_positions_round_trip(persistence, ladder_config):
    positions = [make_position(ladder_config), make_position(ladder_config, "p2", "ETHUSDT")]

    persistence.save_state(positions, [], PerformanceStats().to_dict())

    assert persistence.load_positions() == positions


def test_cache_is_ttl_filtered(persistence):
    now = 1_700_000_000.0
    persistence.save_cache([
        {"key": "BTCUSDT|1h|14", "value": 2.0, "timestamp": now - 60},
        {"key": "ETHUSDT|1h|14", "value": 1.5, "timestamp": now - 600},
    ])

    entries = persistence.load_cache(ttl_seconds=300, now=now)

    assert [e["key"] for e in entries] == ["BTCUSDT|1h|14"]


def test_stats_and_config_round_trip(persistence, ladder_config):
    stats = PerformanceStats(total_positions=3, total_orders=7, filled_orders=5)
    persistence.save_stats(stats.to_dict())
    persistence.save_config(ladder_config.to_dict())

    loaded = persistence.load_stats()
    assert loaded["total_positions"] == 3
    assert loaded["filled_orders"] == 5
    assert persistence.load_config() == ladder_config.to_dict()


def test_empty_store_loads_nothing(persistence):
    assert persistence.load_positions() == []
    assert persistence.load_cache() == []
    assert persistence.load_stats() is None


def test_latest_snapshot_wins(persistence, ladder_config):
    persistence.save_positions([make_position(ladder_config)])
    persistence.save_positions([])

    assert persistence.load_positions() == []
    assert persistence.get_data_stats()["positions"]["version"] == 2


def test_unserializable_payload_raises_persistence_error(persistence):
    with pytest.raises(PersistenceError):
        persistence.save_stats({"bad": object()})


def test_cleanup_old_data(persistence, ladder_config):
    old = make_position(ladder_config, "old")
    old.status = PositionStatus.COMPLETED
    old.completed_at = utcnow() - timedelta(days=10)
    recent = make_position(ladder_config, "recent", "ETHUSDT")
    persistence.save_positions([old, recent])

    assert persistence.cleanup_old_data(max_age_days=7) == 1
    assert [p.position_id for p in persistence.load_positions()] == ["recent"]


def test_file_database_created(tmp_path, ladder_config):
    url = f"sqlite:///{tmp_path / 'nested' / 'dca_state.db'}"
    gateway = PersistenceGateway(url)
    gateway.save_positions([make_position(ladder_config)])
    gateway.close()

    reopened = PersistenceGateway(url)
    assert [p.position_id for p in reopened.load_positions()] == ["p1"]
    reopened.close()
