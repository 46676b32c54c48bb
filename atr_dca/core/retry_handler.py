"""
Retry Handler - Retry logic for exchange operations.

Provides:
1. Exponential backoff: base_delay * 2**(attempt-1) + random jitter
2. Rate-limit cool-down: one retry of the same call after a 5-10s pause
3. Non-retryable classification (exchange rejections, bad input)
4. Per-operation statistics
"""

import asyncio
import logging
import random
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional, Set, Tuple, Type

from atr_dca.exceptions import (
    ConfigurationError,
    DCAError,
    InsufficientDataError,
    InvalidResultError,
    OrderSubmissionError,
    RateLimitError,
)

logger = logging.getLogger(__name__)

# These errors won't be fixed by retrying - fail immediately
NON_RETRYABLE_ERROR_PATTERNS = [
    'insufficient balance',
    'insufficient funds',
    'insufficient margin',
    'account has insufficient',
    'notional must be',
    'min notional',
    'invalid api-key',
    'invalid signature',
    'permission denied',
    'api key expired',
]

RATE_LIMIT_PATTERNS = ['rate limit', 'too many requests', 'too many visits']


@dataclass
class RetryConfig:
    """Configuration for retry behavior."""
    max_attempts: int = 3
    base_delay: float = 1.0                 # seconds
    max_delay: float = 60.0                 # cap on backoff delay
    exponential_base: float = 2.0
    max_jitter: float = 1.0                 # uniform 0..max_jitter seconds added
    rate_limit_cooldown: Tuple[float, float] = (5.0, 10.0)

    # Exceptions that always fail immediately
    non_retryable_exceptions: Set[Type[Exception]] = field(default_factory=lambda: {
        ConfigurationError,
        InsufficientDataError,
        InvalidResultError,
        ValueError,
        TypeError,
        KeyError,
        AttributeError,
        NotImplementedError,
    })


@dataclass
class RetryStats:
    """Statistics for retry operations."""
    operation: str
    attempts: int = 0
    successes: int = 0
    failures: int = 0
    rate_limit_cooldowns: int = 0
    total_delay: float = 0.0
    last_error: Optional[str] = None
    last_attempt: Optional[datetime] = None


class RetryHandler:
    """
    Handles retry logic with exponential backoff and rate-limit cool-down.

    Usage:
        handler = RetryHandler(RetryConfig(max_attempts=3, base_delay=2.0))

        result = await handler.execute(
            lambda: gateway.submit_order(request),
            operation_name="place_level"
        )

    A rate-limited call triggers one cool-down and one retry of the same
    call; that retry counts as the first attempt of the standard policy.
    """

    def __init__(
        self,
        config: Optional[RetryConfig] = None,
        sleep: Optional[Callable[[float], Awaitable[Any]]] = None,
    ):
        self.config = config or RetryConfig()
        self.stats: Dict[str, RetryStats] = {}
        self._sleep = sleep or asyncio.sleep

    def _calculate_delay(self, attempt: int, config: RetryConfig) -> float:
        """Delay before the next attempt, ``attempt`` being the one that just failed."""
        delay = config.base_delay * (config.exponential_base ** (attempt - 1))
        delay = min(delay, config.max_delay)
        return delay + random.uniform(0, config.max_jitter)

    @staticmethod
    def is_rate_limit(exception: Exception) -> bool:
        if isinstance(exception, RateLimitError):
            return True
        error_str = str(exception).lower()
        return any(pattern in error_str for pattern in RATE_LIMIT_PATTERNS)

    def _should_retry(self, exception: Exception, config: RetryConfig) -> bool:
        """Determine if exception is retryable."""
        error_str = str(exception).lower()

        for pattern in NON_RETRYABLE_ERROR_PATTERNS:
            if pattern in error_str:
                logger.warning(f"🚫 Non-retryable error detected: {pattern}")
                return False

        if self.is_rate_limit(exception):
            return True

        # An explicit exchange rejection is not transient
        if isinstance(exception, OrderSubmissionError):
            return False

        for non_retry_type in config.non_retryable_exceptions:
            if isinstance(exception, non_retry_type):
                return False

        return True

    async def execute(
        self,
        operation: Callable[[], Awaitable[Any]],
        operation_name: str = "operation",
        config: Optional[RetryConfig] = None,
    ) -> Any:
        """
        Execute an async operation with retry logic.

        Args:
            operation: Zero-argument callable returning an awaitable
            operation_name: Name for logging and stats
            config: Override default retry config

        Returns:
            Operation result

        Raises:
            Last exception if all retries fail or the error is non-retryable
        """
        config = config or self.config

        if operation_name not in self.stats:
            self.stats[operation_name] = RetryStats(operation=operation_name)
        stats = self.stats[operation_name]

        attempt = 0
        calls = 0
        cooled_down = False

        while True:
            attempt += 1
            calls += 1
            stats.attempts += 1
            stats.last_attempt = datetime.now(timezone.utc)

            try:
                result = await operation()
            except Exception as e:
                stats.failures += 1
                stats.last_error = str(e)

                if not cooled_down and self.is_rate_limit(e):
                    cooled_down = True
                    attempt -= 1
                    stats.rate_limit_cooldowns += 1
                    delay = random.uniform(*config.rate_limit_cooldown)
                    stats.total_delay += delay
                    logger.warning(
                        f"Rate limit hit during {operation_name}, "
                        f"cooling down {delay:.1f}s before retrying: {e}"
                    )
                    await self._sleep(delay)
                    continue

                if not self._should_retry(e, config):
                    logger.error(f"Operation {operation_name} failed with non-retryable error: {e}")
                    raise

                if attempt >= config.max_attempts:
                    logger.error(f"{operation_name} failed after {attempt} attempts: {e}")
                    raise

                delay = self._calculate_delay(attempt, config)
                stats.total_delay += delay
                logger.warning(
                    f"{operation_name} failed (attempt {attempt}/{config.max_attempts}), "
                    f"retrying in {delay:.2f}s: {e}"
                )
                await self._sleep(delay)
                continue

            stats.successes += 1
            if attempt > 1 or cooled_down:
                logger.info(f"Operation {operation_name} succeeded after {calls} calls")
            return result

    def get_stats(self) -> Dict[str, dict]:
        """Get retry statistics."""
        return {
            name: {
                "operation": stats.operation,
                "attempts": stats.attempts,
                "successes": stats.successes,
                "failures": stats.failures,
                "rate_limit_cooldowns": stats.rate_limit_cooldowns,
                "success_rate": (
                    stats.successes / stats.attempts * 100
                    if stats.attempts > 0 else 0
                ),
                "total_delay": round(stats.total_delay, 2),
                "last_error": stats.last_error,
                "last_attempt": stats.last_attempt.isoformat() if stats.last_attempt else None,
            }
            for name, stats in self.stats.items()
        }


def classify_error(exception: Exception) -> DCAError:
    """Wrap an arbitrary gateway exception into the DCA taxonomy."""
    if isinstance(exception, DCAError):
        return exception
    if RetryHandler.is_rate_limit(exception):
        return RateLimitError(str(exception))
    return OrderSubmissionError(str(exception))
