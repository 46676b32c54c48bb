from __future__ import annotations

from abc import ABC, abstractmethod
from typing import List, Optional

from pydantic import BaseModel, Field

# Response codes shared by gateway implementations
CODE_OK = 0
CODE_REJECTED = 10001
CODE_RATE_LIMIT = 10006
CODE_NOT_FOUND = 110001


class Candle(BaseModel):
    """One OHLC bar, oldest first in any list returned by a gateway."""

    timestamp: Optional[int] = None
    open: float
    high: float
    low: float
    close: float
    volume: float = 0.0


class InstrumentConstraints(BaseModel):
    """Exchange-imposed minimums and increments for a symbol."""

    min_order_size: float = Field(gt=0)
    step_size: float = Field(gt=0)
    tick_size: float = Field(gt=0)


class OrderRequest(BaseModel):
    symbol: str
    side: str  # 'buy' or 'sell'
    order_type: str = "limit"
    qty: str
    price: str
    reduce_only: bool = False
    position_idx: int = 0
    client_order_id: Optional[str] = None


class OrderResponse(BaseModel):
    code: int
    message: str = ""
    order_id: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.code == CODE_OK


class ExchangeGateway(ABC):
    """Minimal exchange contract consumed by the DCA core."""

    name: str = "exchange"

    @abstractmethod
    async def submit_order(self, request: OrderRequest) -> OrderResponse:
        """Submit an order and return the normalized response."""

    @abstractmethod
    async def cancel_order(self, symbol: str, order_id: str) -> OrderResponse:
        """Cancel an order on the exchange."""

    @abstractmethod
    async def get_candles(self, symbol: str, timeframe: str, limit: int) -> List[Candle]:
        """Return up to ``limit`` candles in chronological order."""

    @abstractmethod
    async def get_instrument_constraints(self, symbol: str) -> InstrumentConstraints:
        """Return live order-size and price constraints for a symbol."""

    async def close(self) -> None:
        """Tear down any open connections."""

    async def __aenter__(self) -> "ExchangeGateway":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()
