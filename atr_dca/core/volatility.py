"""
Volatility Engine - Average True Range with Wilder smoothing.

Values are cached per (symbol, timeframe, length) for five minutes and
handed to an update hook (the engine persists them) so a restart does not refetch
candles for every active symbol.
"""

from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Awaitable, Callable, Dict, Iterable, List, Optional, Sequence

from atr_dca.config import VALID_TIMEFRAMES
from atr_dca.core.retry_handler import RetryConfig, RetryHandler
from atr_dca.exceptions import (
    ConfigurationError,
    DCAError,
    InsufficientDataError,
    InvalidResultError,
)
from atr_dca.exchange_adapters.base import Candle, ExchangeGateway

if TYPE_CHECKING:
    from atr_dca.services.health_monitor import HealthMonitor

logger = logging.getLogger(__name__)

CACHE_TTL_SECONDS = 300


@dataclass
class VolatilityCacheEntry:
    key: str
    value: float
    timestamp: float  # epoch seconds

    def is_fresh(self, now: float, ttl: float) -> bool:
        return now - self.timestamp < ttl

    def to_dict(self) -> dict:
        return {"key": self.key, "value": self.value, "timestamp": self.timestamp}

    @classmethod
    def from_dict(cls, data: dict) -> "VolatilityCacheEntry":
        return cls(key=data["key"], value=float(data["value"]), timestamp=float(data["timestamp"]))


def true_range(high: float, low: float, prev_close: float) -> float:
    return max(high - low, abs(high - prev_close), abs(low - prev_close))


def compute_atr(candles: Sequence[Candle], period: int) -> float:
    """Wilder ATR over the most recent ``period + 1`` candles (oldest first).

    The first candle only supplies the previous close for the first true range.
    """
    if len(candles) < period + 1:
        raise ValueError(f"Need {period + 1} candles, got {len(candles)}")

    window = list(candles)[-(period + 1):]
    atr = None
    for prev, current in zip(window, window[1:]):
        tr = true_range(current.high, current.low, prev.close)
        atr = tr if atr is None else (atr * (period - 1) + tr) / period
    return atr


def cache_key(symbol: str, timeframe: str, length: int) -> str:
    return f"{symbol}|{timeframe}|{length}"


class VolatilityEngine:
    """Computes and caches ATR values per symbol/timeframe/length."""

    def __init__(
        self,
        gateway: ExchangeGateway,
        retry_handler: Optional[RetryHandler] = None,
        retry_config: Optional[RetryConfig] = None,
        monitor: Optional["HealthMonitor"] = None,
        on_update: Optional[Callable[[], Awaitable[None]]] = None,
        ttl_seconds: float = CACHE_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self.gateway = gateway
        self.retry_handler = retry_handler or RetryHandler()
        self.retry_config = retry_config or RetryConfig(max_attempts=3, base_delay=3.0)
        self.monitor = monitor
        self.on_update = on_update
        self.ttl_seconds = ttl_seconds
        self.clock = clock
        self._cache: Dict[str, VolatilityCacheEntry] = {}
        self.hits = 0
        self.misses = 0

    @staticmethod
    def validate_config(timeframe: str, length: int) -> None:
        errors = []
        if timeframe not in VALID_TIMEFRAMES:
            errors.append(f"Invalid timeframe: {timeframe}. Valid options: {', '.join(VALID_TIMEFRAMES)}")
        if not isinstance(length, int) or not 1 <= length <= 100:
            errors.append("ATR length must be between 1 and 100")
        if errors:
            raise ConfigurationError(f"Invalid ATR configuration: {', '.join(errors)}", errors=errors)

    async def calculate_volatility(self, symbol: str, timeframe: str = "1h", length: int = 14) -> float:
        """Return the ATR for a symbol, from cache when fresh.

        Raises:
            ConfigurationError: invalid timeframe or length
            InsufficientDataError: fewer than ``length + 1`` candles available,
                or the candle fetch failed after retries
            InvalidResultError: non-finite or non-positive result
        """
        self.validate_config(timeframe, length)

        key = cache_key(symbol, timeframe, length)
        now = self.clock()
        entry = self._cache.get(key)
        if entry is not None:
            if entry.is_fresh(now, self.ttl_seconds):
                self.hits += 1
                if self.monitor:
                    self.monitor.record_cache_hit()
                logger.debug(f"ATR cache hit for {key}: {entry.value}")
                return entry.value
            del self._cache[key]

        self.misses += 1
        if self.monitor:
            self.monitor.record_cache_miss()

        started = time.perf_counter()
        required = length + 1
        try:
            candles = await self.retry_handler.execute(
                lambda: self.gateway.get_candles(symbol, timeframe, required),
                operation_name="fetch_candles",
                config=self.retry_config,
            )
        except DCAError:
            raise
        except Exception as e:
            logger.warning(f"Candle fetch for {symbol} ({timeframe}) failed: {e}")
            raise InsufficientDataError(symbol, 0, required) from e
        if self.monitor:
            self.monitor.record_api_call()

        if not candles or len(candles) < required:
            raise InsufficientDataError(symbol, len(candles or []), required)

        atr = compute_atr(candles, length)
        if atr is None or not math.isfinite(atr) or atr <= 0:
            raise InvalidResultError(f"Invalid ATR for {symbol} ({timeframe}, {length}): {atr}")

        self._cache[key] = VolatilityCacheEntry(key=key, value=atr, timestamp=self.clock())
        elapsed_ms = (time.perf_counter() - started) * 1000
        if self.monitor:
            self.monitor.record_volatility_latency(elapsed_ms)

        logger.info(f"📈 ATR calculated for {symbol} ({timeframe}, {length}): {atr:.6f} in {elapsed_ms:.0f}ms")
        if self.on_update is not None:
            await self.on_update()
        return atr

    async def get_multiple(
        self,
        symbol: str,
        timeframes: Iterable[str],
        length: int = 14,
    ) -> Dict[str, Optional[float]]:
        """ATR for several timeframes; a failed timeframe maps to None."""
        results: Dict[str, Optional[float]] = {}
        for timeframe in timeframes:
            try:
                results[timeframe] = await self.calculate_volatility(symbol, timeframe, length)
            except Exception as e:
                logger.warning(f"ATR for {symbol} {timeframe} unavailable: {e}")
                results[timeframe] = None
        return results

    async def get_volatility_percentage(
        self,
        symbol: str,
        current_price: float,
        timeframe: str = "1h",
        length: int = 14,
    ) -> float:
        if current_price <= 0:
            raise ConfigurationError(f"Current price must be positive, got {current_price}")
        atr = await self.calculate_volatility(symbol, timeframe, length)
        return atr / current_price * 100

    async def is_high_volatility(
        self,
        symbol: str,
        current_price: float,
        threshold: float = 2.0,
        timeframe: str = "1h",
        length: int = 14,
    ) -> bool:
        try:
            percentage = await self.get_volatility_percentage(symbol, current_price, timeframe, length)
        except Exception as e:
            logger.warning(f"Could not evaluate volatility for {symbol}: {e}")
            return False
        return percentage > threshold

    def clear_cache(self) -> None:
        self._cache.clear()
        logger.info("ATR cache cleared")

    def get_cache_stats(self) -> dict:
        now = self.clock()
        valid = sum(1 for e in self._cache.values() if e.is_fresh(now, self.ttl_seconds))
        lookups = self.hits + self.misses
        return {
            "total_entries": len(self._cache),
            "valid_entries": valid,
            "expired_entries": len(self._cache) - valid,
            "ttl_seconds": self.ttl_seconds,
            "hits": self.hits,
            "misses": self.misses,
            "hit_rate": (self.hits / lookups * 100) if lookups else 0.0,
        }

    def cache_snapshot(self) -> List[dict]:
        return [entry.to_dict() for entry in self._cache.values()]

    def load_cache(self, entries: Iterable[dict]) -> int:
        """Adopt persisted entries that are still fresh. Returns the number loaded."""
        now = self.clock()
        loaded = 0
        for data in entries:
            entry = VolatilityCacheEntry.from_dict(data)
            if entry.is_fresh(now, self.ttl_seconds):
                self._cache[entry.key] = entry
                loaded += 1
        if loaded:
            logger.info(f"Loaded {loaded} cached ATR values")
        return loaded
