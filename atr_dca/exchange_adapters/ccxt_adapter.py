"""
CCXT gateway - the DCA exchange contract over ccxt.async_support.

Exchange-level outcomes (rejections, rate limits, unknown orders) are
returned as OrderResponse codes; network failures propagate as ccxt
exceptions so the retry handler can back off and try again.
"""

import logging
import time
from typing import Any, Dict, List, Optional

import ccxt
import ccxt.async_support as ccxt_async

from atr_dca.exchange_adapters.base import (
    CODE_NOT_FOUND,
    CODE_OK,
    CODE_RATE_LIMIT,
    CODE_REJECTED,
    Candle,
    ExchangeGateway,
    InstrumentConstraints,
    OrderRequest,
    OrderResponse,
)

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT = 30000  # milliseconds


class CCXTGateway(ExchangeGateway):
    """Asynchronous exchange gateway for linear perpetual futures."""

    SUPPORTED_EXCHANGES = {
        'binance': ccxt_async.binanceusdm,
        'bybit': ccxt_async.bybit,
        'okx': ccxt_async.okx,
        'bitget': ccxt_async.bitget,
        'gate': ccxt_async.gate,
        'mexc': ccxt_async.mexc,
    }

    def __init__(
        self,
        exchange_name: str,
        api_key: Optional[str] = None,
        api_secret: Optional[str] = None,
        testnet: bool = False,
        hedge_mode: bool = True,
        exchange: Any = None,
    ):
        self.name = exchange_name
        self.hedge_mode = hedge_mode

        if exchange is not None:
            self.exchange = exchange
        else:
            if exchange_name not in self.SUPPORTED_EXCHANGES:
                raise ValueError(
                    f"Exchange {exchange_name} not supported. Use: {list(self.SUPPORTED_EXCHANGES.keys())}"
                )
            config = {
                'apiKey': api_key,
                'secret': api_secret,
                'enableRateLimit': True,
                'timeout': REQUEST_TIMEOUT,
                'options': {
                    'adjustForTimeDifference': True,
                    'defaultType': 'swap',
                },
            }
            self.exchange = self.SUPPORTED_EXCHANGES[exchange_name](config)
            if testnet:
                self.exchange.set_sandbox_mode(True)

        self._markets_loaded = False

    async def _ensure_markets_loaded(self) -> None:
        if not self._markets_loaded:
            await self.exchange.load_markets()
            self._markets_loaded = True
            logger.info(f"✅ Loaded {len(self.exchange.markets)} markets from {self.name}")

    async def submit_order(self, request: OrderRequest) -> OrderResponse:
        params: Dict[str, Any] = {'reduceOnly': request.reduce_only}
        if self.hedge_mode and request.position_idx:
            params['positionIdx'] = request.position_idx
        if request.client_order_id:
            params['clientOrderId'] = request.client_order_id

        try:
            if request.order_type.lower() == 'limit':
                order = await self.exchange.create_limit_order(
                    request.symbol, request.side, float(request.qty), float(request.price), params
                )
            else:
                order = await self.exchange.create_market_order(
                    request.symbol, request.side, float(request.qty), None, params
                )
        except ccxt.RateLimitExceeded as e:
            logger.warning(f"Rate limit exceeded submitting {request.symbol} order: {e}")
            return OrderResponse(code=CODE_RATE_LIMIT, message=f"rate limit exceeded: {e}")
        except ccxt.ExchangeError as e:
            logger.error(f"Exchange rejected {request.symbol} order: {e}")
            return OrderResponse(code=CODE_REJECTED, message=str(e))

        return OrderResponse(code=CODE_OK, message="OK", order_id=str(order['id']))

    async def cancel_order(self, symbol: str, order_id: str) -> OrderResponse:
        try:
            await self.exchange.cancel_order(order_id, symbol)
        except ccxt.OrderNotFound as e:
            return OrderResponse(code=CODE_NOT_FOUND, message=f"order not found: {e}")
        except ccxt.RateLimitExceeded as e:
            return OrderResponse(code=CODE_RATE_LIMIT, message=f"rate limit exceeded: {e}")
        except ccxt.ExchangeError as e:
            return OrderResponse(code=CODE_REJECTED, message=str(e))

        return OrderResponse(code=CODE_OK, message="OK", order_id=order_id)

    async def get_candles(self, symbol: str, timeframe: str, limit: int) -> List[Candle]:
        ohlcv = await self.exchange.fetch_ohlcv(symbol, timeframe, limit=limit)
        # ccxt returns [timestamp, open, high, low, close, volume], oldest first
        candles = [
            Candle(
                timestamp=int(row[0]),
                open=float(row[1]),
                high=float(row[2]),
                low=float(row[3]),
                close=float(row[4]),
                volume=float(row[5] or 0),
            )
            for row in ohlcv
        ]
        candles.sort(key=lambda c: c.timestamp or 0)
        return candles

    async def get_instrument_constraints(self, symbol: str) -> InstrumentConstraints:
        await self._ensure_markets_loaded()

        market = self.exchange.market(symbol)
        precision = market.get('precision', {})
        limits = market.get('limits', {})

        step = self._precision_to_step(precision.get('amount'))
        tick = self._precision_to_step(precision.get('price'))
        min_amount = float(limits.get('amount', {}).get('min') or step)

        return InstrumentConstraints(min_order_size=min_amount, step_size=step, tick_size=tick)

    def _precision_to_step(self, value: Optional[float]) -> float:
        if value is None:
            raise ValueError(f"Market precision missing on {self.name}")
        if getattr(self.exchange, 'precisionMode', ccxt.TICK_SIZE) == ccxt.TICK_SIZE:
            return float(value)
        # DECIMAL_PLACES mode: value is a digit count
        return 10 ** -int(value)

    async def close(self) -> None:
        """Close the exchange connection."""
        started = time.monotonic()
        await self.exchange.close()
        logger.debug(f"Closed {self.name} connection in {time.monotonic() - started:.2f}s")
