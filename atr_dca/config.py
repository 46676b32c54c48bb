from __future__ import annotations

import os
from dataclasses import asdict, dataclass, fields
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv

from atr_dca.exceptions import ConfigurationError

VALID_TIMEFRAMES = ("1m", "5m", "15m", "30m", "1h", "4h", "1d", "1w")


@dataclass
class DCAConfig:
    """Scaling, volatility and housekeeping settings for DCA ladders.

    Validated on construction; an invalid combination raises
    ConfigurationError listing every problem found.
    """

    # ATR settings
    atr_timeframe: str = "1h"
    atr_length: int = 14
    atr_deviation: float = 1.0

    # Ladder shape
    num_orders: int = 5
    volume_scale: float = 1.5
    step_scale: float = 1.2

    # Risk management
    max_total_allocation_percent: float = 25.0
    trigger_on_base_fill: bool = True

    # Order lifetime (0 disables)
    expiry_minutes: int = 1440
    fill_timeout_minutes: int = 60
    partial_fill_handling: bool = True

    # Retry policy
    order_max_attempts: int = 3
    order_base_delay: float = 2.0
    cancel_max_attempts: int = 2
    cancel_base_delay: float = 1.0
    volatility_max_attempts: int = 3
    volatility_base_delay: float = 3.0

    # Housekeeping
    completed_retention_days: float = 7.0
    sweep_interval_seconds: float = 60.0
    lock_wait_seconds: float = 30.0

    def __post_init__(self):
        errors = self.validate()
        if errors:
            raise ConfigurationError(
                f"Invalid configuration: {', '.join(errors)}", errors=errors
            )

    def validate(self) -> List[str]:
        """Return a list of validation errors (empty when valid)."""
        errors = []

        if self.atr_timeframe not in VALID_TIMEFRAMES:
            errors.append(
                f"Invalid timeframe: {self.atr_timeframe}. "
                f"Valid options: {', '.join(VALID_TIMEFRAMES)}"
            )
        if not 1 <= self.atr_length <= 100:
            errors.append("ATR length must be between 1 and 100")
        if self.atr_deviation <= 0:
            errors.append("ATR deviation must be positive")

        if not 1 <= self.num_orders <= 20:
            errors.append("DCA number of orders must be between 1 and 20")
        if not 1.0 <= self.volume_scale <= 5.0:
            errors.append("Volume scale must be between 1.0 and 5.0")
        if not 1.0 <= self.step_scale <= 3.0:
            errors.append("Step scale must be between 1.0 and 3.0")

        if not 1 <= self.max_total_allocation_percent <= 100:
            errors.append("Max total allocation percent must be between 1 and 100")

        if self.expiry_minutes < 0 or self.fill_timeout_minutes < 0:
            errors.append("Expiry and fill timeout must not be negative")
        if self.order_max_attempts < 1 or self.cancel_max_attempts < 1:
            errors.append("Retry attempts must be at least 1")
        if self.completed_retention_days < 0:
            errors.append("Completed position retention must not be negative")

        return errors

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class AppConfig:
    exchange_name: str
    api_key: Optional[str]
    api_secret: Optional[str]
    use_testnet: bool
    database_url: str
    constraints_file: Optional[str]
    log_level: str
    metrics_interval_seconds: float


def _to_bool(value: Optional[str], default: bool = False) -> bool:
    if value is None:
        return default
    return str(value).strip().lower() in {"1", "true", "yes", "y", "on"}


def _to_float(value: Optional[str], default: float) -> float:
    try:
        return float(value) if value is not None and value != "" else default
    except ValueError:
        return default


def _to_int(value: Optional[str], default: int) -> int:
    try:
        return int(value) if value is not None and value != "" else default
    except ValueError:
        return default


def load_config() -> AppConfig:
    """Load application configuration from environment variables and optional .env file."""
    load_dotenv()

    return AppConfig(
        exchange_name=os.getenv("EXCHANGE_NAME", "bybit"),
        api_key=os.getenv("API_KEY"),
        api_secret=os.getenv("API_SECRET"),
        use_testnet=_to_bool(os.getenv("USE_TESTNET"), default=False),
        database_url=os.getenv("DCA_DATABASE_URL", "sqlite:///data/dca_state.db"),
        constraints_file=os.getenv("DCA_CONSTRAINTS_FILE", "min_order_sizes.json"),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
        metrics_interval_seconds=_to_float(os.getenv("METRICS_INTERVAL_SECONDS"), default=30.0),
    )


def load_dca_config() -> DCAConfig:
    """Build a DCAConfig from DCA_* environment overrides (e.g. DCA_NUM_ORDERS)."""
    load_dotenv()

    defaults = DCAConfig.__dataclass_fields__
    values: Dict[str, Any] = {}
    for f in fields(DCAConfig):
        raw = os.getenv(f"DCA_{f.name.upper()}")
        default = defaults[f.name].default
        if f.type in ("bool", bool):
            values[f.name] = _to_bool(raw, default=default)
        elif f.type in ("int", int):
            values[f.name] = _to_int(raw, default=default)
        elif f.type in ("float", float):
            values[f.name] = _to_float(raw, default=default)
        else:
            values[f.name] = raw if raw else default

    return DCAConfig(**values)
