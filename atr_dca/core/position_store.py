"""
Position State Store - single owner of every DCA ladder.

All mutation goes through this class; readers receive deep copies so a
caller can never corrupt a ladder by editing what it was handed. An
order-id index maps exchange orders back to (position, level) for fill
and cancel notifications.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple

from atr_dca.core.levels import average_entry_price
from atr_dca.core.models import (
    LEVEL_TRANSITIONS,
    LIVE_ORDER_STATUSES,
    Level,
    LevelStatus,
    PositionState,
    PositionStatus,
    Side,
    utcnow,
)
from atr_dca.exceptions import DuplicatePositionError, InvalidTransitionError

logger = logging.getLogger(__name__)


class PositionStore:
    """In-memory table of PositionState keyed by position id."""

    def __init__(self):
        self._positions: Dict[str, PositionState] = {}
        self._order_index: Dict[str, Tuple[str, int]] = {}

    # ------------------------------------------------------------------
    # Reads (snapshots only)
    # ------------------------------------------------------------------

    def get(self, position_id: str) -> Optional[PositionState]:
        state = self._positions.get(position_id)
        return state.snapshot() if state else None

    def all(self) -> List[PositionState]:
        return [state.snapshot() for state in self._positions.values()]

    def active(self) -> List[PositionState]:
        return [state.snapshot() for state in self._positions.values() if state.is_active]

    def find_active(self, symbol: str, side: Side) -> Optional[PositionState]:
        side = Side(side)
        for state in self._positions.values():
            if state.symbol == symbol and state.side is side and state.is_active:
                return state.snapshot()
        return None

    def lookup_order(self, order_id: str) -> Optional[Tuple[str, int]]:
        """(position_id, ordinal) for a tracked exchange order."""
        return self._order_index.get(order_id)

    def __contains__(self, position_id: str) -> bool:
        return position_id in self._positions

    def __len__(self) -> int:
        return len(self._positions)

    @property
    def active_count(self) -> int:
        return sum(1 for state in self._positions.values() if state.is_active)

    @property
    def active_order_count(self) -> int:
        return len(self._order_index)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create(self, state: PositionState) -> PositionState:
        existing = self.find_active(state.symbol, state.side)
        if existing is not None:
            raise DuplicatePositionError(state.symbol, state.side.value, existing.position_id)
        if state.position_id in self._positions:
            raise DuplicatePositionError(state.symbol, state.side.value, state.position_id)

        stored = state.snapshot()
        self._positions[stored.position_id] = stored
        logger.debug(f"Stored position {stored.position_id} ({stored.symbol} {stored.side.value})")
        return stored.snapshot()

    def mark_level_active(
        self,
        position_id: str,
        ordinal: int,
        order_id: str,
        client_order_id: Optional[str] = None,
        placed_at: Optional[datetime] = None,
    ) -> PositionState:
        state, level = self._require(position_id, ordinal)
        self._transition(state, level, LevelStatus.ACTIVE)
        level.order_id = order_id
        level.client_order_id = client_order_id
        level.placed_at = placed_at or utcnow()
        level.error = None
        state.active_order_ids.append(order_id)
        self._order_index[order_id] = (position_id, ordinal)
        return state.snapshot()

    def mark_level_failed(self, position_id: str, ordinal: int, error: str) -> PositionState:
        state, level = self._require(position_id, ordinal)
        self._transition(state, level, LevelStatus.FAILED)
        level.error = error
        self._drop_order(state, level)
        return state.snapshot()

    def record_fill(
        self,
        order_id: str,
        fill_price: float,
        filled_qty: float,
        is_final: bool = True,
        filled_at: Optional[datetime] = None,
    ) -> Optional[PositionState]:
        """Apply a (possibly partial) fill. Returns None for untracked orders.

        ``filled_qty`` is the quantity of this notification; partial fills
        accumulate a volume-weighted ``fill_price`` on the level.
        """
        ref = self._order_index.get(order_id)
        if ref is None:
            return None
        state, level = self._require(*ref)
        if level.status not in LIVE_ORDER_STATUSES:
            raise InvalidTransitionError(
                f"Level {level.ordinal} of {state.position_id} cannot fill from {level.status.value}"
            )

        previous_qty = level.filled_qty or 0.0
        new_qty = previous_qty + filled_qty
        if new_qty > 0:
            level.fill_price = (
                (level.fill_price or 0.0) * previous_qty + fill_price * filled_qty
            ) / new_qty
        level.filled_qty = new_qty

        state.total_allocated += filled_qty
        state.average_entry_price = average_entry_price(
            state.base_price,
            state.base_size,
            ((l.fill_price, l.filled_qty) for l in state.levels if l.filled_qty),
        )

        if is_final:
            self._transition(state, level, LevelStatus.FILLED)
            level.filled_at = filled_at or utcnow()
            state.executed_levels.append(level.ordinal)
            self._drop_order(state, level)

        return state.snapshot()

    def mark_cancelled(self, position_id: str, ordinal: int) -> PositionState:
        state, level = self._require(position_id, ordinal)
        self._transition(state, level, LevelStatus.CANCELLED)
        self._drop_order(state, level)
        return state.snapshot()

    def mark_cancel_failed(self, position_id: str, ordinal: int, error: str) -> PositionState:
        # Order id stays indexed and in active_order_ids: it may still be live
        state, level = self._require(position_id, ordinal)
        self._transition(state, level, LevelStatus.CANCEL_FAILED)
        level.error = error
        return state.snapshot()

    def complete(self, position_id: str, completed_at: Optional[datetime] = None) -> PositionState:
        state = self._positions[position_id]
        if state.status is PositionStatus.COMPLETED:
            return state.snapshot()
        state.status = PositionStatus.COMPLETED
        state.completed_at = completed_at or utcnow()
        return state.snapshot()

    def is_finished(self, position_id: str, num_orders: int) -> bool:
        """True when every level executed, or nothing is left pending or live."""
        state = self._positions[position_id]
        if len(state.executed_levels) >= num_orders:
            return True
        return state.next_pending_level() is None and not state.active_order_ids

    def purge_completed(self, older_than: datetime) -> List[str]:
        purged = [
            pid for pid, state in self._positions.items()
            if state.status is PositionStatus.COMPLETED
            and state.completed_at is not None
            and state.completed_at < older_than
        ]
        for pid in purged:
            state = self._positions.pop(pid)
            for order_id in state.active_order_ids:
                self._order_index.pop(order_id, None)
        return purged

    def load(self, positions: Iterable[PositionState]) -> int:
        """Replace the table with persisted state and rebuild the order index."""
        self._positions.clear()
        self._order_index.clear()
        for state in positions:
            self._positions[state.position_id] = state.snapshot()
            for level in state.levels:
                if level.status in LIVE_ORDER_STATUSES and level.order_id:
                    self._order_index[level.order_id] = (state.position_id, level.ordinal)
        return len(self._order_index)

    def clear(self) -> None:
        self._positions.clear()
        self._order_index.clear()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _require(self, position_id: str, ordinal: int) -> Tuple[PositionState, Level]:
        state = self._positions.get(position_id)
        if state is None:
            raise KeyError(f"Unknown position {position_id}")
        level = state.level(ordinal)
        if level is None:
            raise KeyError(f"Position {position_id} has no level {ordinal}")
        return state, level

    @staticmethod
    def _transition(state: PositionState, level: Level, new_status: LevelStatus) -> None:
        if new_status not in LEVEL_TRANSITIONS[level.status]:
            raise InvalidTransitionError(
                f"Level {level.ordinal} of {state.position_id}: "
                f"{level.status.value} -> {new_status.value} not allowed"
            )
        level.status = new_status

    def _drop_order(self, state: PositionState, level: Level) -> None:
        if level.order_id:
            self._order_index.pop(level.order_id, None)
            if level.order_id in state.active_order_ids:
                state.active_order_ids.remove(level.order_id)
