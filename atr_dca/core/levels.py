"""
Scaled ATR level generation.

Turns (base price, base size, volatility, side, scaling config) into an
ordered ladder of limit order levels. Level i (1-based):

    deviation_i  = atr_deviation * step_scale**(i-1) * volatility
    price_i      = base_price - deviation_i   (long, buy lower)
                   base_price + deviation_i   (short, sell higher)
    size_i       = base_size * volume_scale**(i-1)
    deviation_%  = deviation_i / base_price * 100

Pure functions; no I/O.
"""

from __future__ import annotations

import logging
import math
from typing import Iterable, List, Tuple, Union

from atr_dca.config import DCAConfig
from atr_dca.core.models import Level, Side
from atr_dca.exceptions import ConfigurationError

logger = logging.getLogger(__name__)


def calculate_order_price(base_price: float, deviation: float, side: Side) -> float:
    """Price of a level: below base for longs, above for shorts."""
    if side is Side.LONG:
        return base_price - deviation
    return base_price + deviation


def generate_levels(
    side: Union[Side, str],
    base_price: float,
    base_size: float,
    volatility: float,
    config: DCAConfig,
) -> List[Level]:
    """Generate ``config.num_orders`` pending levels for a ladder.

    Raises:
        ConfigurationError: on non-positive price/size, unusable volatility,
            or a long ladder that would reach a non-positive price.
    """
    side = Side(side)

    if not (math.isfinite(base_price) and base_price > 0):
        raise ConfigurationError(f"Base price must be positive, got {base_price}")
    if not (math.isfinite(base_size) and base_size > 0):
        raise ConfigurationError(f"Base size must be positive, got {base_size}")
    if not (math.isfinite(volatility) and volatility > 0):
        raise ConfigurationError(f"Volatility must be finite and positive, got {volatility}")

    levels = []
    for i in range(1, config.num_orders + 1):
        step_multiplier = config.step_scale ** (i - 1)
        volume_multiplier = config.volume_scale ** (i - 1)

        price_deviation = config.atr_deviation * step_multiplier * volatility
        order_price = calculate_order_price(base_price, price_deviation, side)
        if order_price <= 0:
            raise ConfigurationError(
                f"Level {i} price {order_price} is not positive "
                f"(deviation {price_deviation} from {base_price})"
            )

        level = Level(
            ordinal=i,
            order_price=order_price,
            order_size=base_size * volume_multiplier,
            price_deviation=price_deviation,
            volume_multiplier=volume_multiplier,
            deviation_percentage=price_deviation / base_price * 100,
        )
        levels.append(level)

        logger.debug(
            f"Level {i}: Price={level.order_price}, Size={level.order_size}, "
            f"Deviation={level.deviation_percentage:.2f}%"
        )

    return levels


def average_entry_price(
    base_price: float,
    base_size: float,
    fills: Iterable[Tuple[float, float]],
) -> float:
    """Size-weighted mean of the base entry and every (fill_price, filled_qty)."""
    total_value = base_price * base_size
    total_size = base_size

    for fill_price, filled_qty in fills:
        if fill_price and filled_qty:
            total_value += fill_price * filled_qty
            total_size += filled_qty

    if total_size <= 0:
        return base_price
    return total_value / total_size
