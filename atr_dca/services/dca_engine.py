"""
Scaled ATR DCA Engine - orchestrates volatility-adaptive order ladders.

Flow:
1. initialize_dca_position: ATR -> level ladder -> stored position -> first level placed
2. handle_order_fill: level filled -> average entry recomputed -> next level placed
3. Ladder completes when every level executed or nothing is left to place

At most one level per position has an order on the exchange at any time.
Every mutation is followed by a snapshot write; persistence failures are
logged and counted but never stop the engine.
"""

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

from atr_dca.config import DCAConfig
from atr_dca.core.levels import generate_levels
from atr_dca.core.models import (
    LIVE_ORDER_STATUSES,
    LevelStatus,
    PerformanceStats,
    PositionState,
    PositionStatus,
    Side,
    utcnow,
)
from atr_dca.core.position_lock import KeyedLockManager, position_key, symbol_key
from atr_dca.core.position_store import PositionStore
from atr_dca.core.retry_handler import RetryConfig, RetryHandler
from atr_dca.core.volatility import VolatilityEngine
from atr_dca.exceptions import (
    DuplicatePositionError,
    InvalidTransitionError,
    LockTimeoutError,
    OrderSubmissionError,
    PersistenceError,
)
from atr_dca.exchange_adapters.base import ExchangeGateway
from atr_dca.services.events import (
    EventBus,
    LevelCancelled,
    LevelFailed,
    LevelFilled,
    LevelPlaced,
    PositionCompleted,
    Subscription,
)
from atr_dca.services.health_monitor import HealthMonitor
from atr_dca.services.order_executor import OrderExecutor, PlacementResult
from atr_dca.services.persistence import PersistenceGateway

logger = logging.getLogger(__name__)


def format_uptime(seconds: float) -> str:
    days, remainder = divmod(int(seconds), 86400)
    hours, remainder = divmod(remainder, 3600)
    minutes = remainder // 60
    if days > 0:
        return f"{days}d {hours}h {minutes}m"
    if hours > 0:
        return f"{hours}h {minutes}m"
    return f"{minutes}m"


class ScaledATRDCAEngine:
    """
    Manages DCA ladders for many positions concurrently.

    Usage:
        engine = ScaledATRDCAEngine(gateway, DCAConfig(), PersistenceGateway())
        await engine.start()
        await engine.initialize_dca_position("pos-1", "BTC/USDT:USDT", "long", 100.0, 10.0)
        ...
        await engine.handle_order_fill(order_id, fill_price, filled_qty)
        await engine.stop()
    """

    def __init__(
        self,
        gateway: ExchangeGateway,
        config: Optional[DCAConfig] = None,
        persistence: Optional[PersistenceGateway] = None,
        monitor: Optional[HealthMonitor] = None,
        events: Optional[EventBus] = None,
        constraints_file: Optional[str] = None,
        sleep: Optional[Callable[[float], Any]] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config or DCAConfig()
        self.gateway = gateway
        self.persistence = persistence
        self.events = events or EventBus()

        self.monitor = monitor or HealthMonitor()
        if self.monitor.load_provider is None:
            self.monitor.load_provider = self._load_counts

        self.retry_handler = RetryHandler(sleep=sleep)
        self.volatility = VolatilityEngine(
            gateway,
            retry_handler=self.retry_handler,
            retry_config=RetryConfig(
                max_attempts=self.config.volatility_max_attempts,
                base_delay=self.config.volatility_base_delay,
            ),
            monitor=self.monitor,
            on_update=self._persist,
            clock=clock,
        )
        self.executor = OrderExecutor(
            gateway,
            retry_handler=self.retry_handler,
            order_retry=RetryConfig(
                max_attempts=self.config.order_max_attempts,
                base_delay=self.config.order_base_delay,
            ),
            cancel_retry=RetryConfig(
                max_attempts=self.config.cancel_max_attempts,
                base_delay=self.config.cancel_base_delay,
            ),
            monitor=self.monitor,
            constraints_file=constraints_file,
        )

        self.store = PositionStore()
        self.locks = KeyedLockManager(default_max_wait=self.config.lock_wait_seconds)
        self.stats = PerformanceStats()

        self._write_lock = asyncio.Lock()
        self._sweep_task: Optional[asyncio.Task] = None

        # Fills streamed before the submission response returned the order id
        self._placements_in_flight = 0
        self._early_fills: Dict[str, List[Tuple[float, float, bool]]] = {}

        logger.info(
            f"🪜 Scaled ATR DCA engine ready: {self.config.num_orders} levels, "
            f"ATR {self.config.atr_timeframe}/{self.config.atr_length}, "
            f"volume x{self.config.volume_scale}, step x{self.config.step_scale}"
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        await self.load_persisted_data()
        if self.persistence is not None:
            try:
                await asyncio.to_thread(self.persistence.save_config, self.config.to_dict())
            except PersistenceError as e:
                logger.error(f"Failed to persist DCA config: {e}")

        self.monitor.start()
        if self._sweep_task is None or self._sweep_task.done():
            self._sweep_task = asyncio.create_task(self._sweep_loop())
        logger.info("✅ DCA engine started")

    async def stop(self) -> None:
        if self._sweep_task is not None:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None

        await self.monitor.stop()
        await self._persist()
        logger.info("🛑 DCA engine stopped")

    async def load_persisted_data(self) -> None:
        """Restore positions, fresh cache entries and counters from storage."""
        if self.persistence is None:
            return

        positions = await asyncio.to_thread(self.persistence.load_positions)
        tracked = self.store.load(positions)

        cache = await asyncio.to_thread(
            self.persistence.load_cache, self.volatility.ttl_seconds, self.volatility.clock()
        )
        self.volatility.load_cache(cache)

        stats = await asyncio.to_thread(self.persistence.load_stats)
        if stats:
            self.stats.merge(stats)

        stored_config = await asyncio.to_thread(self.persistence.load_config)
        if stored_config and stored_config != self.config.to_dict():
            logger.info("DCA configuration changed since last run")

        logger.info(
            f"📂 Restored {len(positions)} positions ({self.store.active_count} active, "
            f"{tracked} live orders tracked)"
        )

    # ------------------------------------------------------------------
    # Locking / persistence helpers
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def _locked(self, key: str, holder: str, wait_forever: bool = False):
        async with self.locks.acquire_lock(key, holder, wait_forever=wait_forever) as acquired:
            if not acquired:
                raise LockTimeoutError(f"Timed out waiting for {key} ({holder})")
            yield

    def _load_counts(self):
        return self.store.active_count, self.store.active_order_count

    async def _persist(self, raise_errors: bool = False) -> None:
        if self.persistence is None:
            return
        async with self._write_lock:
            self.stats.last_update = utcnow()
            positions = self.store.all()
            cache = self.volatility.cache_snapshot()
            stats = self.stats.to_dict()
            try:
                await asyncio.to_thread(self.persistence.save_state, positions, cache, stats)
            except PersistenceError as e:
                self.stats.persistence_failures += 1
                logger.error(f"💾 Failed to persist DCA state: {e}")
                if raise_errors:
                    raise

    # ------------------------------------------------------------------
    # Ladder operations
    # ------------------------------------------------------------------

    async def initialize_dca_position(
        self,
        position_id: str,
        symbol: str,
        side: str,
        base_price: float,
        base_size: float,
    ) -> PositionState:
        """Create a ladder for a freshly opened position.

        Raises:
            DuplicatePositionError: an active ladder exists for symbol and side
            ConfigurationError, InsufficientDataError, InvalidResultError:
                volatility or level generation failed; nothing is stored
        """
        side = Side(side)

        async with self._locked(symbol_key(symbol), "initialize_dca_position"):
            existing = self.store.find_active(symbol, side)
            if existing is not None:
                raise DuplicatePositionError(symbol, side.value, existing.position_id)

            volatility = await self.volatility.calculate_volatility(
                symbol, self.config.atr_timeframe, self.config.atr_length
            )
            levels = generate_levels(side, base_price, base_size, volatility, self.config)

            self.store.create(PositionState(
                position_id=position_id,
                symbol=symbol,
                side=side,
                base_price=base_price,
                base_size=base_size,
                volatility=volatility,
                levels=levels,
                total_allocated=base_size,
                average_entry_price=base_price,
            ))
            self.stats.total_positions += 1
            await self._persist()

            logger.info(
                f"🪜 DCA initialized for {position_id} ({symbol} {side.value}): "
                f"{len(levels)} levels, ATR={volatility:.6f}, base {base_size} @ {base_price}"
            )

            if self.config.trigger_on_base_fill:
                try:
                    await self.place_next_level(position_id)
                except (OrderSubmissionError, LockTimeoutError) as e:
                    logger.error(f"Failed to place first DCA level for {position_id}: {e}")

        return self.store.get(position_id)

    async def place_next_level(self, position_id: str) -> Optional[PlacementResult]:
        """Place the next pending level unless an order is already outstanding.

        Raises:
            OrderSubmissionError: submission rejected or retries exhausted
                (the level is marked failed)
        """
        async with self._locked(position_key(position_id), "place_next_level"):
            return await self._place_next_locked(position_id)

    async def check_and_place_next(self, position_id: str) -> Optional[PlacementResult]:
        """Operator re-trigger: complete the ladder if finished, otherwise place the next level."""
        async with self._locked(position_key(position_id), "check_and_place_next"):
            state = self.store.get(position_id)
            if state is None or not state.is_active:
                return None
            if await self._maybe_complete_locked(position_id):
                return None
            return await self._place_next_locked(position_id)

    async def _place_next_locked(self, position_id: str) -> Optional[PlacementResult]:
        state = self.store.get(position_id)
        if state is None:
            logger.warning(f"Position {position_id} not found")
            return None
        if not state.is_active:
            return None
        if state.active_order_ids:
            logger.debug(f"Position {position_id} already has an order outstanding")
            return None

        level = state.next_pending_level()
        if level is None:
            await self._maybe_complete_locked(position_id)
            return None

        self._placements_in_flight += 1
        try:
            try:
                result = await self.executor.place_level(state, level)
            except OrderSubmissionError as e:
                self.store.mark_level_failed(position_id, level.ordinal, str(e))
                self.stats.failed_orders += 1
                await self._persist()
                logger.error(f"❌ Level {level.ordinal} of {position_id} failed: {e}")
                await self.events.publish(LevelFailed(
                    position_id=position_id,
                    symbol=state.symbol,
                    ordinal=level.ordinal,
                    error=str(e),
                ))
                await self._maybe_complete_locked(position_id)
                raise

            self.store.mark_level_active(
                position_id, level.ordinal, result.order_id, client_order_id=result.client_order_id
            )
            self.stats.total_orders += 1
            await self._persist()
            await self.events.publish(LevelPlaced(
                position_id=position_id,
                symbol=state.symbol,
                ordinal=level.ordinal,
                order_id=result.order_id,
                price=result.price,
                quantity=result.quantity,
            ))

            for fill_price, filled_qty, is_final in self._early_fills.pop(result.order_id, []):
                logger.info(f"Applying fill for {result.order_id} received during submission")
                await self._apply_fill_locked(
                    position_id, level.ordinal, result.order_id, fill_price, filled_qty, is_final
                )
        finally:
            self._placements_in_flight -= 1
            if not self._placements_in_flight and self._early_fills:
                logger.warning(
                    f"Discarding fills for untracked orders: {', '.join(self._early_fills)}"
                )
                self._early_fills.clear()
        return result

    async def handle_order_fill(
        self,
        order_id: str,
        fill_price: float,
        filled_qty: float,
        is_final: bool = True,
    ) -> Optional[PositionState]:
        """Apply a fill notification and advance the ladder.

        Unknown order ids are ignored, except while a placement is awaiting
        its exchange response: those fills are held and applied once the
        order id is known. Placement failures of the next level are logged
        and recorded on that level, not raised.
        """
        if not self.config.partial_fill_handling:
            is_final = True

        ref = self.store.lookup_order(order_id)
        if ref is None:
            if self._placements_in_flight:
                self._early_fills.setdefault(order_id, []).append((fill_price, filled_qty, is_final))
                logger.debug(f"Fill for {order_id} arrived before its submission returned, holding it")
                return None
            logger.warning(f"Fill for untracked order {order_id} ignored")
            return None
        position_id, ordinal = ref

        async with self._locked(position_key(position_id), "handle_order_fill", wait_forever=True):
            state = await self._apply_fill_locked(
                position_id, ordinal, order_id, fill_price, filled_qty, is_final
            )
            if state is None or not is_final:
                return state

        return self.store.get(position_id)

    async def _apply_fill_locked(
        self,
        position_id: str,
        ordinal: int,
        order_id: str,
        fill_price: float,
        filled_qty: float,
        is_final: bool,
    ) -> Optional[PositionState]:
        try:
            state = self.store.record_fill(order_id, fill_price, filled_qty, is_final=is_final)
        except InvalidTransitionError as e:
            logger.error(f"Rejected fill for {order_id}: {e}")
            return None
        if state is None:
            logger.warning(f"Order {order_id} no longer tracked, fill ignored")
            return None

        if not is_final:
            await self._persist()
            logger.info(
                f"Partial fill on level {ordinal} of {position_id}: "
                f"{filled_qty} @ {fill_price}, avg entry {state.average_entry_price:.6f}"
            )
            return state

        self.stats.filled_orders += 1
        await self._persist()

        level = state.level(ordinal)
        logger.info(
            f"✅ Level {ordinal} of {position_id} filled: {level.filled_qty} @ {level.fill_price} | "
            f"avg entry {state.average_entry_price:.6f}, allocated {state.total_allocated}"
        )
        await self.events.publish(LevelFilled(
            position_id=position_id,
            symbol=state.symbol,
            ordinal=ordinal,
            order_id=order_id,
            fill_price=level.fill_price,
            filled_qty=level.filled_qty,
            average_entry_price=state.average_entry_price,
            total_allocated=state.total_allocated,
        ))

        if not await self._maybe_complete_locked(position_id):
            try:
                await self._place_next_locked(position_id)
            except OrderSubmissionError as e:
                logger.error(f"Could not place next level for {position_id}: {e}")
        return state

    async def handle_order_cancelled(self, order_id: str) -> Optional[PositionState]:
        """Exchange-side cancel confirmation. Does not advance the ladder."""
        ref = self.store.lookup_order(order_id)
        if ref is None:
            logger.debug(f"Cancel confirmation for untracked order {order_id}")
            return None
        position_id, ordinal = ref

        async with self._locked(position_key(position_id), "handle_order_cancelled", wait_forever=True):
            try:
                state = self.store.mark_cancelled(position_id, ordinal)
            except (InvalidTransitionError, KeyError) as e:
                logger.error(f"Rejected cancel confirmation for {order_id}: {e}")
                return None
            self.stats.cancelled_orders += 1
            await self._persist()
            await self.events.publish(LevelCancelled(
                position_id=position_id, symbol=state.symbol, ordinal=ordinal, order_id=order_id
            ))
            await self._maybe_complete_locked(position_id)

        return self.store.get(position_id)

    async def cancel_level(self, position_id: str, ordinal: int) -> bool:
        """Cancel one level. Never raises for exchange failures; does not advance the ladder."""
        async with self._locked(position_key(position_id), "cancel_level"):
            return await self._cancel_level_locked(position_id, ordinal)

    async def _cancel_level_locked(self, position_id: str, ordinal: int) -> bool:
        state = self.store.get(position_id)
        level = state.level(ordinal) if state else None
        if level is None:
            logger.warning(f"Cannot cancel level {ordinal} of {position_id}: not found")
            return False

        if level.status is LevelStatus.PENDING:
            self.store.mark_cancelled(position_id, ordinal)
        elif level.status in LIVE_ORDER_STATUSES:
            if await self.executor.cancel_order(state.symbol, level.order_id):
                self.store.mark_cancelled(position_id, ordinal)
                self.stats.cancelled_orders += 1
            else:
                self.store.mark_cancel_failed(position_id, ordinal, "cancel request failed")
                self.stats.cancel_failures += 1
                await self._persist()
                logger.warning(
                    f"⚠️ Level {ordinal} of {position_id} cancel failed; "
                    f"order {level.order_id} may still be live"
                )
                return False
        else:
            logger.debug(f"Level {ordinal} of {position_id} already {level.status.value}")
            return False

        await self._persist()
        await self.events.publish(LevelCancelled(
            position_id=position_id, symbol=state.symbol, ordinal=ordinal, order_id=level.order_id
        ))
        await self._maybe_complete_locked(position_id)
        return True

    async def cancel_all_orders(self, position_id: str) -> int:
        """Cancel every live order of a position. Returns the number cancelled."""
        async with self._locked(position_key(position_id), "cancel_all_orders"):
            state = self.store.get(position_id)
            if state is None:
                return 0
            cancelled = 0
            for level in state.levels:
                if level.status in LIVE_ORDER_STATUSES:
                    if await self._cancel_level_locked(position_id, level.ordinal):
                        cancelled += 1
            return cancelled

    async def expire_position(self, position_id: str) -> bool:
        """Cancel outstanding and pending levels, then complete the ladder.

        Returns False (position left active) when a live order could not
        be cancelled; the next sweep tries again.
        """
        async with self._locked(position_key(position_id), "expire_position"):
            state = self.store.get(position_id)
            if state is None or not state.is_active:
                return False

            for level in state.levels:
                if level.status is LevelStatus.PENDING or level.status in LIVE_ORDER_STATUSES:
                    await self._cancel_level_locked(position_id, level.ordinal)

            await self._maybe_complete_locked(position_id)
            if self.store.get(position_id).is_active:
                logger.warning(f"DCA ladder {position_id} expiry incomplete, live order remains")
                return False
            logger.info(f"⌛ DCA ladder {position_id} expired")
            return True

    async def complete_position(self, position_id: str) -> Optional[PositionState]:
        async with self._locked(position_key(position_id), "complete_position"):
            if position_id not in self.store:
                return None
            return await self._complete_locked(position_id)

    async def _maybe_complete_locked(self, position_id: str) -> bool:
        state = self.store.get(position_id)
        if state is None or not state.is_active:
            return False
        if not self.store.is_finished(position_id, self.config.num_orders):
            return False
        await self._complete_locked(position_id)
        return True

    async def _complete_locked(self, position_id: str) -> PositionState:
        before = self.store.get(position_id)
        state = self.store.complete(position_id)
        if before.status is PositionStatus.COMPLETED:
            return state

        await self._persist()
        logger.info(
            f"🏁 DCA position {position_id} completed: {len(state.executed_levels)}/"
            f"{len(state.levels)} levels, avg entry {state.average_entry_price:.6f}"
        )
        await self.events.publish(PositionCompleted(
            position_id=position_id,
            symbol=state.symbol,
            executed_levels=len(state.executed_levels),
            total_allocated=state.total_allocated,
            average_entry_price=state.average_entry_price,
            completed_at=state.completed_at,
        ))
        return state

    # ------------------------------------------------------------------
    # Housekeeping
    # ------------------------------------------------------------------

    async def cleanup_completed_positions(self, max_age_days: Optional[float] = None) -> int:
        max_age_days = self.config.completed_retention_days if max_age_days is None else max_age_days
        purged = self.store.purge_completed(utcnow() - timedelta(days=max_age_days))
        for position_id in purged:
            logger.debug(f"Cleaned up completed position: {position_id}")
        if purged:
            await self._persist()
            logger.info(f"🧹 Cleaned up {len(purged)} completed positions")
        return len(purged)

    async def sweep_stale_orders(self, now=None) -> Dict[str, int]:
        """Cancel timed-out levels, expire old ladders, purge old completed positions."""
        now = now or utcnow()
        timed_out = 0
        expired = 0

        for state in self.store.active():
            try:
                if (
                    self.config.expiry_minutes
                    and now - state.started_at > timedelta(minutes=self.config.expiry_minutes)
                ):
                    if await self.expire_position(state.position_id):
                        expired += 1
                    continue

                if self.config.fill_timeout_minutes:
                    timeout = timedelta(minutes=self.config.fill_timeout_minutes)
                    for level in state.levels:
                        if (
                            level.status is LevelStatus.ACTIVE
                            and level.placed_at is not None
                            and now - level.placed_at > timeout
                        ):
                            logger.info(
                                f"⏱️ Level {level.ordinal} of {state.position_id} unfilled "
                                f"after {self.config.fill_timeout_minutes}m, cancelling"
                            )
                            if await self.cancel_level(state.position_id, level.ordinal):
                                timed_out += 1
            except Exception as e:
                logger.error(f"Sweep failed for {state.position_id}: {e}")

        purged = await self.cleanup_completed_positions()
        self.locks.prune_idle_locks()
        return {"timed_out": timed_out, "expired": expired, "purged": purged}

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.sweep_interval_seconds)
            try:
                await self.sweep_stale_orders()
            except Exception as e:
                logger.error(f"DCA sweep error: {e}")

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def get_position_status(self, position_id: str) -> Optional[Dict[str, Any]]:
        state = self.store.get(position_id)
        if state is None:
            return None
        executed = len(state.executed_levels)
        total = len(state.levels)
        return {
            "position_id": position_id,
            "symbol": state.symbol,
            "side": state.side.value,
            "status": state.status.value,
            "executed_levels": executed,
            "total_levels": total,
            "progress_percent": executed / total * 100 if total else 0.0,
            "average_entry_price": state.average_entry_price,
            "total_allocated": state.total_allocated,
            "active_orders": len(state.active_order_ids),
            "started_at": state.started_at.isoformat(),
            "completed_at": state.completed_at.isoformat() if state.completed_at else None,
            "volatility": state.volatility,
            "levels": [level.to_dict() for level in state.levels],
        }

    def get_active_positions(self) -> List[Dict[str, Any]]:
        return [self.get_position_status(state.position_id) for state in self.store.active()]

    def get_data_stats(self) -> Dict[str, Any]:
        positions = self.store.all()
        completed = [p for p in positions if p.status is PositionStatus.COMPLETED]
        total_levels = sum(len(p.levels) for p in positions)
        executed = sum(len(p.executed_levels) for p in positions)
        stats: Dict[str, Any] = {
            "active_positions": len(positions) - len(completed),
            "completed_positions": len(completed),
            "total_levels": total_levels,
            "executed_levels": executed,
            "active_orders": self.store.active_order_count,
            "avg_success_rate": (
                sum(len(p.executed_levels) / len(p.levels) * 100 for p in completed if p.levels) / len(completed)
                if completed else 0.0
            ),
            "cache": self.volatility.get_cache_stats(),
        }
        if self.persistence is not None:
            stats["storage"] = self.persistence.get_data_stats()
        return stats

    def get_statistics(self) -> Dict[str, Any]:
        data = self.stats.to_dict()
        data.update({
            "active_positions": self.store.active_count,
            "active_orders": self.store.active_order_count,
            "cache_stats": self.volatility.get_cache_stats(),
            "retry_stats": self.retry_handler.get_stats(),
            "metrics": self.monitor.get_metrics(),
        })
        return data

    def get_performance_report(self) -> Dict[str, Any]:
        uptime = (utcnow() - self.stats.started_at).total_seconds()
        uptime_hours = uptime / 3600
        completed = len(self.store) - self.store.active_count
        snapshot = self.monitor.collect(self.store.active_count, self.store.active_order_count)

        return {
            "uptime": {
                "seconds": uptime,
                "hours": round(uptime_hours, 2),
                "formatted": format_uptime(uptime),
            },
            "throughput": {
                "orders_per_hour": round(self.stats.total_orders / uptime_hours, 2) if uptime_hours > 0 else 0,
                "positions_per_hour": round(self.stats.total_positions / uptime_hours, 2) if uptime_hours > 0 else 0,
            },
            "success_rates": {
                "order_fill_rate": (
                    round(self.stats.filled_orders / self.stats.total_orders * 100, 2)
                    if self.stats.total_orders else 0
                ),
                "position_completion_rate": (
                    round(completed / self.stats.total_positions * 100, 2)
                    if self.stats.total_positions else 0
                ),
            },
            "efficiency": {
                "cache_hit_rate": snapshot.cache_hit_rate,
                "avg_execution_ms": snapshot.avg_execution_ms,
                "avg_volatility_ms": snapshot.avg_volatility_ms,
                "memory_mb": snapshot.memory_mb,
            },
            "current_load": {
                "active_positions": snapshot.active_positions,
                "active_orders": snapshot.active_orders,
                "system_load": round(snapshot.load_score),
            },
        }

    def optimize_performance(self) -> List[str]:
        """Tuning advisories for the current load. Logged, never applied."""
        snapshot = self.monitor.collect(self.store.active_count, self.store.active_order_count)
        if snapshot.advisories:
            logger.info(f"Performance advisories: {', '.join(snapshot.advisories)}")
        return snapshot.advisories

    async def health_check(self) -> Dict[str, Any]:
        health: Dict[str, Any] = {"status": "healthy", "components": {}, "timestamp": utcnow().isoformat()}
        try:
            health["components"]["volatility"] = {
                "status": "healthy",
                "cache_stats": self.volatility.get_cache_stats(),
            }
            if self.persistence is not None:
                storage = await asyncio.to_thread(self.persistence.get_data_stats)
                health["components"]["persistence"] = {
                    "status": "warning" if self.stats.persistence_failures else "healthy",
                    "persistence_failures": self.stats.persistence_failures,
                    "stats": storage,
                }
                if self.stats.persistence_failures:
                    health["status"] = "warning"
            health["components"]["orders"] = {
                "status": "healthy",
                "active_orders": self.store.active_order_count,
                "active_positions": self.store.active_count,
                "locks_held": len(self.locks.get_all_locks()),
            }
            config_errors = self.config.validate()
            if config_errors:
                health["components"]["config"] = {"status": "warning", "errors": config_errors}
                health["status"] = "warning"
        except Exception as e:
            logger.error(f"Health check failed: {e}")
            health["status"] = "unhealthy"
            health["error"] = str(e)
        return health

    async def force_save(self) -> None:
        """Write a snapshot now. Raises PersistenceError on failure."""
        await self._persist(raise_errors=True)
        logger.info("Force save completed")

    async def reset_statistics(self) -> None:
        self.stats = PerformanceStats()
        self.monitor.reset()
        await self._persist()
        logger.info("Statistics reset")

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def on_level_filled(self, handler: Callable[[LevelFilled], Any]) -> Subscription:
        return self.events.subscribe(LevelFilled, handler)

    def on_position_completed(self, handler: Callable[[PositionCompleted], Any]) -> Subscription:
        return self.events.subscribe(PositionCompleted, handler)
