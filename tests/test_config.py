"""Tests for configuration loading and validation."""

import pytest

from atr_dca.config import DCAConfig, load_config, load_dca_config
from atr_dca.exceptions import ConfigurationError


def test_defaults_are_valid():
    config = DCAConfig()
    assert config.validate() == []
    assert config.to_dict()["num_orders"] == 5


@pytest.mark.parametrize("overrides", [
    {"atr_timeframe": "2h"},
    {"atr_length": 0},
    {"atr_length": 101},
    {"num_orders": 0},
    {"num_orders": 21},
    {"volume_scale": 0.9},
    {"volume_scale": 5.1},
    {"step_scale": 3.5},
    {"max_total_allocation_percent": 0.5},
    {"max_total_allocation_percent": 101},
])
def test_invalid_values_rejected(overrides):
    with pytest.raises(ConfigurationError):
        DCAConfig(**overrides)


def test_all_errors_reported():
    with pytest.raises(ConfigurationError) as exc_info:
        DCAConfig(atr_timeframe="2h", num_orders=50)
    assert len(exc_info.value.errors) == 2


def test_boundaries_accepted():
    DCAConfig(atr_length=1, num_orders=20, volume_scale=5.0, step_scale=1.0, max_total_allocation_percent=100)


def test_load_dca_config_from_env(monkeypatch):
    monkeypatch.setenv("DCA_NUM_ORDERS", "3")
    monkeypatch.setenv("DCA_ATR_TIMEFRAME", "4h")
    monkeypatch.setenv("DCA_STEP_SCALE", "1.3")
    monkeypatch.setenv("DCA_TRIGGER_ON_BASE_FILL", "false")
    monkeypatch.setenv("DCA_ATR_LENGTH", "not-a-number")

    config = load_dca_config()

    assert config.num_orders == 3
    assert config.atr_timeframe == "4h"
    assert config.step_scale == pytest.approx(1.3)
    assert config.trigger_on_base_fill is False
    assert config.atr_length == 14


def test_load_dca_config_rejects_invalid_env(monkeypatch):
    monkeypatch.setenv("DCA_NUM_ORDERS", "99")
    with pytest.raises(ConfigurationError):
        load_dca_config()


def test_load_app_config(monkeypatch):
    monkeypatch.setenv("EXCHANGE_NAME", "bybit")
    monkeypatch.setenv("USE_TESTNET", "yes")
    monkeypatch.setenv("DCA_DATABASE_URL", "sqlite://")
    monkeypatch.setenv("METRICS_INTERVAL_SECONDS", "15")

    config = load_config()

    assert config.exchange_name == "bybit"
    assert config.use_testnet is True
    assert config.database_url == "sqlite://"
    assert config.metrics_interval_seconds == 15.0
