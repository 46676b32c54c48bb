"""Exception hierarchy for the scaled ATR DCA engine."""

from typing import Optional


class DCAError(Exception):
    """Base type for all DCA engine failures."""


class ConfigurationError(DCAError):
    """Raised when scaling or volatility parameters are invalid."""

    def __init__(self, message: str, errors: Optional[list] = None):
        self.errors = errors or [message]
        super().__init__(message)


class InsufficientDataError(DCAError):
    """Raised when not enough candles are available to compute volatility."""

    def __init__(self, symbol: str, received: int, required: int):
        self.symbol = symbol
        self.received = received
        self.required = required
        super().__init__(
            f"Insufficient candle data for {symbol}: received {received}, need {required}"
        )


class InvalidResultError(DCAError):
    """Raised when a volatility computation yields a non-finite or non-positive value."""


class DuplicatePositionError(DCAError):
    """Raised when an active ladder already exists for a symbol and side."""

    def __init__(self, symbol: str, side: str, existing_position_id: str):
        self.symbol = symbol
        self.side = side
        self.existing_position_id = existing_position_id
        super().__init__(
            f"DCA position already exists for {symbol} {side} "
            f"(position {existing_position_id})"
        )


class OrderSubmissionError(DCAError):
    """Raised when the exchange rejects an order or retries are exhausted."""

    def __init__(self, message: str, code: Optional[int] = None):
        self.code = code
        super().__init__(message)


class RateLimitError(OrderSubmissionError):
    """Raised when the exchange reports a rate limit."""


class CancellationError(DCAError):
    """Cancel failure. Never escapes the order executor."""


class PersistenceError(DCAError):
    """Raised when a snapshot cannot be written."""


class InvalidTransitionError(DCAError):
    """Raised on an illegal level or position status transition."""


class LockTimeoutError(DCAError):
    """Raised when a per-key lock cannot be acquired in time."""
