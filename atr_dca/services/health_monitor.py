"""
Health Monitor - latency, cache and load tracking for the DCA engine.

Keeps bounded latency histories, computes a 0-100 load score from
position count, open orders and process memory, and logs tuning
advisories when thresholds are crossed. Advisories are never applied
automatically.
"""

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Deque, Dict, List, Optional, Tuple

import psutil

from atr_dca.core.models import utcnow

logger = logging.getLogger(__name__)

HISTORY_SIZE = 1000
HIGH_LOAD_THRESHOLD = 80.0
MAX_CONCURRENT_ORDERS = 10
LOW_CACHE_HIT_RATE = 50.0
SLOW_EXECUTION_MS = 5000.0


@dataclass
class HealthSnapshot:
    timestamp: datetime
    active_positions: int
    active_orders: int
    memory_mb: float
    load_score: float
    avg_execution_ms: float
    avg_volatility_ms: float
    cache_hit_rate: float
    advisories: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "timestamp": self.timestamp.isoformat(),
            "active_positions": self.active_positions,
            "active_orders": self.active_orders,
            "memory_mb": round(self.memory_mb, 2),
            "load_score": round(self.load_score, 2),
            "avg_execution_ms": round(self.avg_execution_ms, 2),
            "avg_volatility_ms": round(self.avg_volatility_ms, 2),
            "cache_hit_rate": round(self.cache_hit_rate, 2),
            "advisories": list(self.advisories),
        }


def calculate_load_score(active_positions: int, active_orders: int, memory_mb: float) -> float:
    """0-100: positions weigh up to 40, orders up to 30, memory up to 30."""
    return (
        min(active_positions * 10, 40)
        + min(active_orders * 5, 30)
        + min(memory_mb / 100, 30)
    )


def _average(values: Deque[float]) -> float:
    return sum(values) / len(values) if values else 0.0


class HealthMonitor:
    """Collects engine performance metrics and samples them periodically."""

    def __init__(
        self,
        interval_seconds: float = 30.0,
        load_provider: Optional[Callable[[], Tuple[int, int]]] = None,
        memory_provider: Optional[Callable[[], float]] = None,
    ):
        self.interval_seconds = interval_seconds
        self.load_provider = load_provider
        self._memory_provider = memory_provider or self._process_memory_mb

        self.execution_times: Deque[float] = deque(maxlen=HISTORY_SIZE)
        self.volatility_times: Deque[float] = deque(maxlen=HISTORY_SIZE)
        self.cache_hits = 0
        self.cache_misses = 0
        self.api_calls = 0
        self.last_snapshot: Optional[HealthSnapshot] = None

        self._task: Optional[asyncio.Task] = None

    @staticmethod
    def _process_memory_mb() -> float:
        return psutil.Process().memory_info().rss / 1024 / 1024

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------

    def record_execution_latency(self, elapsed_ms: float) -> None:
        self.execution_times.append(elapsed_ms)

    def record_volatility_latency(self, elapsed_ms: float) -> None:
        self.volatility_times.append(elapsed_ms)

    def record_cache_hit(self) -> None:
        self.cache_hits += 1

    def record_cache_miss(self) -> None:
        self.cache_misses += 1

    def record_api_call(self) -> None:
        self.api_calls += 1

    @property
    def cache_hit_rate(self) -> float:
        lookups = self.cache_hits + self.cache_misses
        return self.cache_hits / lookups * 100 if lookups else 0.0

    @property
    def avg_execution_ms(self) -> float:
        return _average(self.execution_times)

    @property
    def avg_volatility_ms(self) -> float:
        return _average(self.volatility_times)

    # ------------------------------------------------------------------
    # Sampling
    # ------------------------------------------------------------------

    def collect(self, active_positions: int = 0, active_orders: int = 0) -> HealthSnapshot:
        memory_mb = self._memory_provider()
        snapshot = HealthSnapshot(
            timestamp=utcnow(),
            active_positions=active_positions,
            active_orders=active_orders,
            memory_mb=memory_mb,
            load_score=calculate_load_score(active_positions, active_orders, memory_mb),
            avg_execution_ms=self.avg_execution_ms,
            avg_volatility_ms=self.avg_volatility_ms,
            cache_hit_rate=self.cache_hit_rate,
        )
        snapshot.advisories = self.advisories(snapshot)
        self.last_snapshot = snapshot
        return snapshot

    def advisories(self, snapshot: HealthSnapshot) -> List[str]:
        advice = []
        if snapshot.load_score > HIGH_LOAD_THRESHOLD:
            advice.append(
                f"High load score {snapshot.load_score:.1f}: consider reducing completed position retention"
            )
            if snapshot.active_orders > MAX_CONCURRENT_ORDERS:
                advice.append(
                    f"{snapshot.active_orders} concurrent orders: consider limiting concurrent ladders"
                )
        lookups = self.cache_hits + self.cache_misses
        if lookups and snapshot.cache_hit_rate < LOW_CACHE_HIT_RATE:
            advice.append(
                f"Low ATR cache hit rate {snapshot.cache_hit_rate:.1f}%: consider a longer cache TTL"
            )
        if snapshot.avg_execution_ms > SLOW_EXECUTION_MS:
            advice.append(
                f"Slow order execution ({snapshot.avg_execution_ms:.0f}ms average): check exchange connectivity"
            )
        return advice

    def sample(self) -> HealthSnapshot:
        positions, orders = self.load_provider() if self.load_provider else (0, 0)
        snapshot = self.collect(positions, orders)
        for advice in snapshot.advisories:
            logger.warning(f"⚠️ {advice}")
        logger.debug(
            f"Health: load={snapshot.load_score:.1f} positions={positions} "
            f"orders={orders} memory={snapshot.memory_mb:.1f}MB"
        )
        return snapshot

    def start(self) -> None:
        """Start periodic sampling. Calling start twice is a no-op."""
        if self._task is not None and not self._task.done():
            logger.debug("Health monitor already running")
            return
        self._task = asyncio.create_task(self._run())
        logger.info("🔍 Health monitor started")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("🛑 Health monitor stopped")

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval_seconds)
            started = time.perf_counter()
            try:
                self.sample()
            except Exception as e:
                logger.error(f"Health sampling failed: {e}")
            logger.debug(f"Health sample took {(time.perf_counter() - started) * 1000:.1f}ms")

    def get_metrics(self) -> Dict[str, object]:
        return {
            "avg_execution_ms": round(self.avg_execution_ms, 2),
            "avg_volatility_ms": round(self.avg_volatility_ms, 2),
            "execution_samples": len(self.execution_times),
            "volatility_samples": len(self.volatility_times),
            "cache_hits": self.cache_hits,
            "cache_misses": self.cache_misses,
            "cache_hit_rate": round(self.cache_hit_rate, 2),
            "api_calls": self.api_calls,
            "last_snapshot": self.last_snapshot.to_dict() if self.last_snapshot else None,
        }

    def reset(self) -> None:
        self.execution_times.clear()
        self.volatility_times.clear()
        self.cache_hits = 0
        self.cache_misses = 0
        self.api_calls = 0
