"""
Core DCA building blocks.

Contains:
- Domain models and status transitions
- ATR volatility engine
- Level generation
- Position state store
- Keyed locks (mutex per symbol / position)
- Retry handling with rate-limit cool-down
"""

from .models import (
    Level,
    LevelStatus,
    PerformanceStats,
    PositionState,
    PositionStatus,
    Side,
)
from .levels import average_entry_price, calculate_order_price, generate_levels
from .volatility import VolatilityEngine, compute_atr, true_range
from .position_store import PositionStore
from .position_lock import KeyedLockManager, position_key, symbol_key
from .retry_handler import RetryConfig, RetryHandler, classify_error

__all__ = [
    # Models
    'Level',
    'LevelStatus',
    'PerformanceStats',
    'PositionState',
    'PositionStatus',
    'Side',

    # Levels
    'average_entry_price',
    'calculate_order_price',
    'generate_levels',

    # Volatility
    'VolatilityEngine',
    'compute_atr',
    'true_range',

    # State
    'PositionStore',

    # Locks
    'KeyedLockManager',
    'position_key',
    'symbol_key',

    # Retry
    'RetryConfig',
    'RetryHandler',
    'classify_error',
]
