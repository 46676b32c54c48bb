from .base import (
    Candle,
    ExchangeGateway,
    InstrumentConstraints,
    OrderRequest,
    OrderResponse,
)
from .ccxt_adapter import CCXTGateway

__all__ = [
    'Candle',
    'CCXTGateway',
    'ExchangeGateway',
    'InstrumentConstraints',
    'OrderRequest',
    'OrderResponse',
]
