"""
DCA domain models.

Ladder levels, position state and process-wide statistics, plus the
status enums and the level transition table every mutation is checked
against. All models serialize to plain dicts for the persistence layer.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class Side(str, Enum):
    """Ladder direction."""
    LONG = "long"
    SHORT = "short"

    @property
    def order_side(self) -> str:
        return "buy" if self is Side.LONG else "sell"

    @property
    def position_idx(self) -> int:
        # Hedge-mode position index: 1 = buy side, 2 = sell side
        return 1 if self is Side.LONG else 2


class LevelStatus(str, Enum):
    """Lifecycle of a single ladder rung."""
    PENDING = "pending"              # Planned, not on the exchange
    ACTIVE = "active"                # Limit order resting on the exchange
    FILLED = "filled"
    CANCELLED = "cancelled"
    CANCEL_FAILED = "cancel_failed"  # Cancel rejected, order may still be live
    FAILED = "failed"                # Submission retries exhausted


class PositionStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"


LEVEL_TRANSITIONS: Dict[LevelStatus, FrozenSet[LevelStatus]] = {
    LevelStatus.PENDING: frozenset({LevelStatus.ACTIVE, LevelStatus.FAILED, LevelStatus.CANCELLED}),
    LevelStatus.ACTIVE: frozenset({
        LevelStatus.FILLED,
        LevelStatus.CANCELLED,
        LevelStatus.CANCEL_FAILED,
        LevelStatus.FAILED,
    }),
    LevelStatus.CANCEL_FAILED: frozenset({
        LevelStatus.CANCELLED,
        LevelStatus.FILLED,
        LevelStatus.CANCEL_FAILED,
    }),
    LevelStatus.FILLED: frozenset(),
    LevelStatus.CANCELLED: frozenset(),
    LevelStatus.FAILED: frozenset(),
}

# Statuses whose order id may still be live on the exchange
LIVE_ORDER_STATUSES = frozenset({LevelStatus.ACTIVE, LevelStatus.CANCEL_FAILED})


@dataclass
class Level:
    """One rung of the DCA ladder."""
    ordinal: int
    order_price: float
    order_size: float
    price_deviation: float
    volume_multiplier: float
    deviation_percentage: float
    status: LevelStatus = LevelStatus.PENDING
    order_id: Optional[str] = None
    client_order_id: Optional[str] = None
    placed_at: Optional[datetime] = None
    filled_at: Optional[datetime] = None
    fill_price: Optional[float] = None
    filled_qty: Optional[float] = None
    error: Optional[str] = None

    def __setattr__(self, name: str, value: Any) -> None:
        if name == "ordinal" and "ordinal" in self.__dict__:
            raise AttributeError("Level ordinal is immutable")
        super().__setattr__(name, value)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ordinal": self.ordinal,
            "order_price": self.order_price,
            "order_size": self.order_size,
            "price_deviation": self.price_deviation,
            "volume_multiplier": self.volume_multiplier,
            "deviation_percentage": self.deviation_percentage,
            "status": self.status.value,
            "order_id": self.order_id,
            "client_order_id": self.client_order_id,
            "placed_at": _iso(self.placed_at),
            "filled_at": _iso(self.filled_at),
            "fill_price": self.fill_price,
            "filled_qty": self.filled_qty,
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Level":
        return cls(
            ordinal=int(data["ordinal"]),
            order_price=float(data["order_price"]),
            order_size=float(data["order_size"]),
            price_deviation=float(data["price_deviation"]),
            volume_multiplier=float(data["volume_multiplier"]),
            deviation_percentage=float(data["deviation_percentage"]),
            status=LevelStatus(data.get("status", LevelStatus.PENDING.value)),
            order_id=data.get("order_id"),
            client_order_id=data.get("client_order_id"),
            placed_at=_parse_dt(data.get("placed_at")),
            filled_at=_parse_dt(data.get("filled_at")),
            fill_price=data.get("fill_price"),
            filled_qty=data.get("filled_qty"),
            error=data.get("error"),
        )


@dataclass
class PositionState:
    """Full state of one DCA ladder."""
    position_id: str
    symbol: str
    side: Side
    base_price: float
    base_size: float
    volatility: float
    levels: List[Level] = field(default_factory=list)
    executed_levels: List[int] = field(default_factory=list)  # ordinals, fill order
    active_order_ids: List[str] = field(default_factory=list)
    started_at: datetime = field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    total_allocated: float = 0.0
    average_entry_price: float = 0.0
    status: PositionStatus = PositionStatus.ACTIVE

    def level(self, ordinal: int) -> Optional[Level]:
        for level in self.levels:
            if level.ordinal == ordinal:
                return level
        return None

    def level_by_order_id(self, order_id: str) -> Optional[Level]:
        for level in self.levels:
            if level.order_id == order_id:
                return level
        return None

    def next_pending_level(self) -> Optional[Level]:
        return next((l for l in self.levels if l.status is LevelStatus.PENDING), None)

    @property
    def filled_levels(self) -> List[Level]:
        """Filled levels in fill order."""
        return [self.level(ordinal) for ordinal in self.executed_levels]

    @property
    def is_active(self) -> bool:
        return self.status is PositionStatus.ACTIVE

    def snapshot(self) -> "PositionState":
        return copy.deepcopy(self)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "position_id": self.position_id,
            "symbol": self.symbol,
            "side": self.side.value,
            "base_price": self.base_price,
            "base_size": self.base_size,
            "volatility": self.volatility,
            "levels": [level.to_dict() for level in self.levels],
            "executed_levels": list(self.executed_levels),
            "active_order_ids": list(self.active_order_ids),
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "total_allocated": self.total_allocated,
            "average_entry_price": self.average_entry_price,
            "status": self.status.value,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PositionState":
        return cls(
            position_id=data["position_id"],
            symbol=data["symbol"],
            side=Side(data["side"]),
            base_price=float(data["base_price"]),
            base_size=float(data["base_size"]),
            volatility=float(data["volatility"]),
            levels=[Level.from_dict(l) for l in data.get("levels", [])],
            executed_levels=[int(o) for o in data.get("executed_levels", [])],
            active_order_ids=list(data.get("active_order_ids", [])),
            started_at=_parse_dt(data.get("started_at")) or utcnow(),
            completed_at=_parse_dt(data.get("completed_at")),
            total_allocated=float(data.get("total_allocated", 0.0)),
            average_entry_price=float(data.get("average_entry_price", 0.0)),
            status=PositionStatus(data.get("status", PositionStatus.ACTIVE.value)),
        )


@dataclass
class PerformanceStats:
    """Process-wide counters. Reset only by explicit operator action."""
    total_positions: int = 0
    total_orders: int = 0
    filled_orders: int = 0
    failed_orders: int = 0
    cancelled_orders: int = 0
    cancel_failures: int = 0
    persistence_failures: int = 0
    started_at: datetime = field(default_factory=utcnow)
    last_update: datetime = field(default_factory=utcnow)

    COUNTERS = (
        "total_positions",
        "total_orders",
        "filled_orders",
        "failed_orders",
        "cancelled_orders",
        "cancel_failures",
        "persistence_failures",
    )

    def merge(self, persisted: Dict[str, Any]) -> None:
        """Adopt counters from a persisted snapshot; uptime restarts with the process."""
        for name in self.COUNTERS:
            if name in persisted:
                setattr(self, name, int(persisted[name]))

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {name: getattr(self, name) for name in self.COUNTERS}
        data["started_at"] = _iso(self.started_at)
        data["last_update"] = _iso(self.last_update)
        return data
