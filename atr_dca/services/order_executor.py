"""
Order Execution Engine - places and cancels ladder orders.

Responsible for:
- Resolving instrument constraints (live, last live snapshot, local file, default)
- Normalizing price to the tick size and quantity to the step size
- Submitting limit orders through the retry handler
- Cancelling orders without ever raising

It never mutates position state; callers apply the returned result.
"""

import json
import logging
import math
import os
import time
from dataclasses import dataclass
from decimal import ROUND_CEILING, ROUND_HALF_UP, Decimal
from typing import Dict, Optional, TYPE_CHECKING

from atr_dca.core.models import Level, PositionState
from atr_dca.core.retry_handler import RetryConfig, RetryHandler, classify_error
from atr_dca.exceptions import CancellationError, OrderSubmissionError, RateLimitError
from atr_dca.exchange_adapters.base import (
    CODE_RATE_LIMIT,
    ExchangeGateway,
    InstrumentConstraints,
    OrderRequest,
    OrderResponse,
)

if TYPE_CHECKING:
    from atr_dca.services.health_monitor import HealthMonitor

logger = logging.getLogger(__name__)

DEFAULT_CONSTRAINTS = InstrumentConstraints(min_order_size=0.001, step_size=0.001, tick_size=0.0001)


@dataclass
class PlacementResult:
    order_id: str
    price: float
    quantity: float
    client_order_id: Optional[str] = None


def step_precision(step: float) -> int:
    """Decimal places implied by a step or tick size."""
    return max(0, math.ceil(round(-math.log10(step), 9)))


def format_decimal(value: float, step: float) -> str:
    text = f"{value:.{step_precision(step)}f}"
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text


def normalize_quantity(size: float, constraints: InstrumentConstraints) -> float:
    """Raise to the minimum order size, then round up to a step multiple."""
    size = max(size, constraints.min_order_size)
    step = Decimal(str(constraints.step_size))
    steps = (Decimal(str(size)) / step).to_integral_value(rounding=ROUND_CEILING)
    return round(float(steps * step), 8)


def normalize_price(price: float, tick_size: float) -> float:
    """Round to the nearest tick."""
    tick = Decimal(str(tick_size))
    ticks = (Decimal(str(price)) / tick).to_integral_value(rounding=ROUND_HALF_UP)
    return round(float(ticks * tick), 8)


def client_order_id(position_id: str, ordinal: int) -> str:
    return f"{position_id}-L{ordinal}"


def _raise_for_response(response: OrderResponse, action: str) -> None:
    if response.ok:
        return
    message = f"{action} failed: {response.message} (code {response.code})"
    if response.code == CODE_RATE_LIMIT or RetryHandler.is_rate_limit(Exception(response.message)):
        raise RateLimitError(message, code=response.code)
    raise OrderSubmissionError(message, code=response.code)


class OrderExecutor:
    """Places ladder levels on the exchange with retry and normalization."""

    def __init__(
        self,
        gateway: ExchangeGateway,
        retry_handler: Optional[RetryHandler] = None,
        order_retry: Optional[RetryConfig] = None,
        cancel_retry: Optional[RetryConfig] = None,
        monitor: Optional["HealthMonitor"] = None,
        constraints_file: Optional[str] = None,
    ):
        self.gateway = gateway
        self.retry_handler = retry_handler or RetryHandler()
        self.order_retry = order_retry or RetryConfig(max_attempts=3, base_delay=2.0)
        self.cancel_retry = cancel_retry or RetryConfig(max_attempts=2, base_delay=1.0)
        self.monitor = monitor
        self.constraints_file = constraints_file

        self._live_constraints: Dict[str, InstrumentConstraints] = {}
        self._file_constraints: Optional[Dict[str, InstrumentConstraints]] = None

    # ------------------------------------------------------------------
    # Constraints
    # ------------------------------------------------------------------

    def _load_constraints_file(self) -> Dict[str, InstrumentConstraints]:
        if self._file_constraints is not None:
            return self._file_constraints

        self._file_constraints = {}
        if not self.constraints_file or not os.path.exists(self.constraints_file):
            return self._file_constraints

        try:
            with open(self.constraints_file, "r", encoding="utf-8") as f:
                rows = json.load(f)
            for row in rows:
                self._file_constraints[row["pair"]] = InstrumentConstraints(
                    min_order_size=float(row["minOrderSize"]),
                    step_size=float(row["qtyStep"]),
                    tick_size=float(row["tickSize"]),
                )
            logger.info(f"Loaded constraints for {len(self._file_constraints)} symbols from {self.constraints_file}")
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.error(f"Failed to read constraints file {self.constraints_file}: {e}")
        return self._file_constraints

    async def get_constraints(self, symbol: str) -> InstrumentConstraints:
        try:
            constraints = await self.gateway.get_instrument_constraints(symbol)
            if self.monitor:
                self.monitor.record_api_call()
            self._live_constraints[symbol] = constraints
            return constraints
        except Exception as e:
            logger.warning(f"Live constraints unavailable for {symbol}: {e}")

        if symbol in self._live_constraints:
            return self._live_constraints[symbol]

        file_constraints = self._load_constraints_file().get(symbol)
        if file_constraints is not None:
            return file_constraints

        logger.warning(f"Using default order constraints for {symbol}")
        return DEFAULT_CONSTRAINTS

    # ------------------------------------------------------------------
    # Orders
    # ------------------------------------------------------------------

    async def place_level(self, position: PositionState, level: Level) -> PlacementResult:
        """Submit the limit order for one level.

        Raises:
            OrderSubmissionError: rejected by the exchange or retries exhausted
        """
        constraints = await self.get_constraints(position.symbol)
        quantity = normalize_quantity(level.order_size, constraints)
        price = normalize_price(level.order_price, constraints.tick_size)
        coid = client_order_id(position.position_id, level.ordinal)

        request = OrderRequest(
            symbol=position.symbol,
            side=position.side.order_side,
            order_type="limit",
            qty=format_decimal(quantity, constraints.step_size),
            price=format_decimal(price, constraints.tick_size),
            reduce_only=False,
            position_idx=position.side.position_idx,
            client_order_id=coid,
        )

        async def submit() -> OrderResponse:
            if self.monitor:
                self.monitor.record_api_call()
            response = await self.gateway.submit_order(request)
            _raise_for_response(response, f"Order for {position.symbol} level {level.ordinal}")
            if not response.order_id:
                raise OrderSubmissionError(f"Exchange accepted {coid} without an order id")
            return response

        logger.info(
            f"📤 Placing level {level.ordinal} for {position.symbol}: "
            f"{request.side} {request.qty} @ {request.price} ({coid})"
        )
        started = time.perf_counter()
        try:
            response = await self.retry_handler.execute(
                submit, operation_name="place_level", config=self.order_retry
            )
        except Exception as e:
            raise classify_error(e) from e
        finally:
            if self.monitor:
                self.monitor.record_execution_latency((time.perf_counter() - started) * 1000)

        logger.info(f"✅ Level {level.ordinal} placed for {position.symbol}: order {response.order_id}")
        return PlacementResult(
            order_id=response.order_id,
            price=price,
            quantity=quantity,
            client_order_id=coid,
        )

    async def cancel_order(self, symbol: str, order_id: str) -> bool:
        """Cancel an order. Returns False instead of raising on failure."""

        async def cancel() -> OrderResponse:
            if self.monitor:
                self.monitor.record_api_call()
            response = await self.gateway.cancel_order(symbol, order_id)
            if response.ok:
                return response
            if response.code == CODE_RATE_LIMIT:
                raise RateLimitError(response.message, code=response.code)
            raise CancellationError(f"Cancel {order_id} failed: {response.message} (code {response.code})")

        try:
            await self.retry_handler.execute(cancel, operation_name="cancel_order", config=self.cancel_retry)
        except Exception as e:
            logger.error(f"❌ Failed to cancel order {order_id} on {symbol}: {e}")
            return False

        logger.info(f"🚫 Cancelled order {order_id} on {symbol}")
        return True
