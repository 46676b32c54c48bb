"""DCA services: execution, persistence, monitoring, events and the orchestrating engine."""

from .dca_engine import ScaledATRDCAEngine
from .events import (
    EventBus,
    LevelCancelled,
    LevelFailed,
    LevelFilled,
    LevelPlaced,
    PositionCompleted,
    Subscription,
)
from .health_monitor import HealthMonitor
from .order_executor import OrderExecutor, PlacementResult
from .persistence import PersistenceGateway

__all__ = [
    'ScaledATRDCAEngine',
    'EventBus',
    'LevelCancelled',
    'LevelFailed',
    'LevelFilled',
    'LevelPlaced',
    'PositionCompleted',
    'Subscription',
    'HealthMonitor',
    'OrderExecutor',
    'PlacementResult',
    'PersistenceGateway',
]
