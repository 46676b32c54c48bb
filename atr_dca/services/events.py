"""
Typed publish/subscribe for ladder lifecycle events.

Handlers may be plain functions or coroutines. A failing handler is
logged and does not affect other subscribers or the publisher.
"""

import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Type

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LevelPlaced:
    position_id: str
    symbol: str
    ordinal: int
    order_id: str
    price: float
    quantity: float


@dataclass(frozen=True)
class LevelFilled:
    position_id: str
    symbol: str
    ordinal: int
    order_id: str
    fill_price: float
    filled_qty: float
    average_entry_price: float
    total_allocated: float


@dataclass(frozen=True)
class LevelCancelled:
    position_id: str
    symbol: str
    ordinal: int
    order_id: Optional[str]


@dataclass(frozen=True)
class LevelFailed:
    position_id: str
    symbol: str
    ordinal: int
    error: str


@dataclass(frozen=True)
class PositionCompleted:
    position_id: str
    symbol: str
    executed_levels: int
    total_allocated: float
    average_entry_price: float
    completed_at: datetime


Handler = Callable[[Any], Any]


class Subscription:
    """Handle returned by EventBus.subscribe."""

    def __init__(self, bus: "EventBus", event_type: Type, handler: Handler):
        self._bus = bus
        self.event_type = event_type
        self.handler = handler
        self.active = True

    def unsubscribe(self) -> None:
        if self.active:
            self._bus._remove(self.event_type, self.handler)
            self.active = False


class EventBus:
    def __init__(self):
        self._handlers: Dict[Type, List[Handler]] = defaultdict(list)

    def subscribe(self, event_type: Type, handler: Handler) -> Subscription:
        self._handlers[event_type].append(handler)
        return Subscription(self, event_type, handler)

    def _remove(self, event_type: Type, handler: Handler) -> None:
        handlers = self._handlers.get(event_type, [])
        if handler in handlers:
            handlers.remove(handler)

    def handler_count(self, event_type: Type) -> int:
        return len(self._handlers.get(event_type, []))

    async def publish(self, event: Any) -> None:
        for handler in list(self._handlers.get(type(event), [])):
            try:
                result = handler(event)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.error(f"Event handler {getattr(handler, '__name__', handler)} failed for "
                             f"{type(event).__name__}: {e}")
