"""
Exchange connectors for the MSTB trading bot.

CcxtExchangeConnector talks to a real exchange through CCXT with rate
limiting and exponential backoff. PaperExchangeConnector keeps orders in
memory and fills them against the latest known price, optionally pulling
market data from another connector.

Both satisfy mstb.trading.ports.ExchangeConnector. Transient failures
surface as ExchangeCommError; orders the exchange refuses return None.

Example Usage:
    ```python
    async with CcxtExchangeConnector.from_settings(settings.exchange) as exchange:
        candles = await exchange.fetch_candles("BTC/USDT", "1h", limit=100)

        paper = PaperExchangeConnector(market_data=exchange)
        external_id = await paper.execute_order(order)
        status = await paper.fetch_order(external_id, "BTC/USDT")
    ```
"""

import asyncio
import itertools
from collections.abc import Callable, Mapping, Sequence
from typing import Any, Optional

import ccxt.async_support as ccxt
from ccxt.base.errors import (
    AuthenticationError,
    BadRequest,
    ExchangeError,
    ExchangeNotAvailable,
    InsufficientFunds,
    InvalidOrder,
    NetworkError,
    OrderNotFound,
    RateLimitExceeded,
    RequestTimeout,
)

from mstb.config.settings import ExchangeSettings
from mstb.trading.errors import ExchangeCommError
from mstb.trading.models import Candle, Order, OrderSide, OrderType
from mstb.trading.ports import ExchangeConnector
from mstb.utils.logger import get_logger

logger = get_logger(__name__)

_CCXT_ORDER_TYPES: dict[OrderType, str] = {
    OrderType.MARKET: "market",
    OrderType.LIMIT: "limit",
    OrderType.STOP: "stop_market",
    OrderType.STOP_MARKET: "stop_market",
    OrderType.STOP_LIMIT: "stop",
}

_TRANSIENT_ERRORS = (NetworkError, RequestTimeout, ExchangeNotAvailable)


# =============================================================================
# CCXT Connector
# =============================================================================


class CcxtExchangeConnector:
    """
    Async CCXT exchange connector with retries and rate limiting.

    Args:
        exchange_id: CCXT exchange identifier (e.g., "binanceusdm", "bybit")
        api_key: API key for authentication
        api_secret: API secret for authentication
        testnet: Use the exchange sandbox
        max_retries: Retries for transient errors
        max_concurrent_requests: Requests allowed in flight at once
        initial_delay: Backoff base in seconds
    """

    def __init__(
        self,
        exchange_id: str,
        api_key: str = "",
        api_secret: str = "",
        testnet: bool = False,
        max_retries: int = 3,
        max_concurrent_requests: int = 10,
        initial_delay: float = 1.0,
    ):
        self.exchange_id = exchange_id
        self.api_key = api_key
        self.api_secret = api_secret
        self.testnet = testnet
        self.max_retries = max_retries
        self.initial_delay = initial_delay
        self.exchange: Optional[ccxt.Exchange] = None
        self._connected = False
        self._rate_limiter = asyncio.Semaphore(max_concurrent_requests)

        logger.info(
            "exchange_connector_initialized",
            exchange=exchange_id,
            testnet=testnet,
        )

    @classmethod
    def from_settings(cls, settings: ExchangeSettings) -> "CcxtExchangeConnector":
        return cls(
            exchange_id=settings.exchange_id,
            api_key=settings.api_key.get_secret_value(),
            api_secret=settings.api_secret.get_secret_value(),
            testnet=settings.testnet,
            max_retries=settings.max_retries,
            max_concurrent_requests=settings.max_concurrent_requests,
        )

    async def __aenter__(self) -> "CcxtExchangeConnector":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def connect(self) -> None:
        """
        Create the CCXT exchange instance and load markets.

        Raises:
            AuthenticationError: Invalid API credentials
            ExchangeCommError: Exchange unreachable after retries
        """
        if self._connected:
            logger.warning("exchange_already_connected", exchange=self.exchange_id)
            return

        exchange_class = getattr(ccxt, self.exchange_id)
        self.exchange = exchange_class(
            {
                "apiKey": self.api_key,
                "secret": self.api_secret,
                "enableRateLimit": True,
            }
        )
        if self.testnet:
            self.exchange.set_sandbox_mode(True)

        try:
            await self._retry_request(self.exchange.load_markets)
        except AuthenticationError as e:
            logger.error("exchange_authentication_failed", exchange=self.exchange_id, error=str(e))
            await self.exchange.close()
            raise

        self._connected = True
        logger.info(
            "exchange_connected",
            exchange=self.exchange_id,
            testnet=self.testnet,
            markets_loaded=len(self.exchange.markets),
        )

    async def close(self) -> None:
        if self.exchange and self._connected:
            await self.exchange.close()
            self._connected = False
            logger.info("exchange_closed", exchange=self.exchange_id)

    async def _retry_request(self, func: Callable, *args, **kwargs) -> Any:
        """
        Execute a request with exponential backoff.

        Rate limits and network errors are retried up to max_retries times.
        Anything else propagates unchanged.

        Raises:
            ExchangeCommError: If every attempt failed on a transient error
        """
        last_exception: Exception | None = None

        for attempt in range(self.max_retries + 1):
            try:
                async with self._rate_limiter:
                    result = await func(*args, **kwargs)
                if attempt > 0:
                    logger.info(
                        "request_retry_succeeded",
                        function=func.__name__,
                        attempt=attempt + 1,
                    )
                return result

            except RateLimitExceeded as e:
                last_exception = e
                wait_time = self.initial_delay * (2**attempt)
                logger.warning(
                    "rate_limit_exceeded",
                    function=func.__name__,
                    attempt=attempt + 1,
                    max_retries=self.max_retries,
                    wait_time=wait_time,
                )

            except _TRANSIENT_ERRORS as e:
                last_exception = e
                wait_time = self.initial_delay * (2**attempt)
                logger.warning(
                    "network_error",
                    function=func.__name__,
                    error=str(e),
                    attempt=attempt + 1,
                    max_retries=self.max_retries,
                    wait_time=wait_time,
                )

            if attempt < self.max_retries:
                await asyncio.sleep(wait_time)

        logger.error(
            "request_failed_all_retries",
            function=func.__name__,
            max_retries=self.max_retries,
            error=str(last_exception),
        )
        raise ExchangeCommError(str(last_exception)) from last_exception

    def _require_connection(self) -> ccxt.Exchange:
        if not self._connected or self.exchange is None:
            raise ExchangeCommError("Exchange not connected. Call connect() first.")
        return self.exchange

    # =========================================================================
    # Orders
    # =========================================================================

    async def execute_order(self, order: Order, options: dict[str, Any] | None = None) -> str | None:
        """
        Place an order.

        Returns:
            Exchange order id, or None when the exchange refused the order
        """
        exchange = self._require_connection()
        params: dict[str, Any] = {k: v for k, v in (options or {}).items() if k != "forward"}
        if order.stop_price is not None:
            params["stopPrice"] = order.stop_price
        if order.reduce_only:
            params["reduceOnly"] = True

        price = order.price if order.type in (OrderType.LIMIT, OrderType.STOP_LIMIT) else None
        try:
            result = await self._retry_request(
                exchange.create_order,
                order.symbol,
                _CCXT_ORDER_TYPES[order.type],
                order.side.value,
                order.amount,
                price,
                params,
            )
        except (InvalidOrder, InsufficientFunds, BadRequest) as e:
            logger.error("order_refused", order_id=order.id, symbol=order.symbol, error=str(e))
            return None
        except ExchangeError as e:
            logger.error("order_execution_failed", order_id=order.id, symbol=order.symbol, error=str(e))
            return None

        logger.info(
            "order_executed",
            order_id=order.id,
            exchange_order_id=result.get("id"),
            symbol=order.symbol,
            status=result.get("status"),
        )
        return str(result["id"]) if result.get("id") else None

    async def fetch_order(self, external_id: str, symbol: str) -> dict[str, Any] | None:
        exchange = self._require_connection()
        try:
            result = await self._retry_request(exchange.fetch_order, external_id, symbol)
        except OrderNotFound:
            logger.warning("exchange_order_not_found", exchange_order_id=external_id, symbol=symbol)
            return None
        return {
            "status": result.get("status"),
            "price": result.get("average") or result.get("price"),
            "amount": result.get("filled") or result.get("amount"),
            "filled": result.get("filled") or 0.0,
        }

    async def cancel_order(self, external_id: str, symbol: str) -> bool:
        exchange = self._require_connection()
        try:
            await self._retry_request(exchange.cancel_order, external_id, symbol)
        except (OrderNotFound, InvalidOrder) as e:
            logger.warning("exchange_cancel_refused", exchange_order_id=external_id, error=str(e))
            return False
        logger.info("exchange_order_canceled", exchange_order_id=external_id, symbol=symbol)
        return True

    async def create_oco_order(self, params: dict[str, Any]) -> list[str]:
        """
        Place a reduce-only take-profit limit and stop-market pair.

        If the stop leg is refused the take-profit leg is canceled and only
        its id is returned, so the ledger keeps tracking it until the
        exchange reports it gone.
        """
        extra = {
            k: v
            for k, v in params.items()
            if k not in ("symbol", "side", "amount", "price", "stop_price")
        }
        symbol, side, amount = params["symbol"], OrderSide(params["side"]), params["amount"]

        take_profit = Order(
            symbol=symbol,
            side=side,
            type=OrderType.LIMIT,
            amount=amount,
            price=params["price"],
            reduce_only=True,
        )
        stop = Order(
            symbol=symbol,
            side=side,
            type=OrderType.STOP_MARKET,
            amount=amount,
            stop_price=params["stop_price"],
            reduce_only=True,
        )

        take_profit_id = await self.execute_order(take_profit, extra)
        if take_profit_id is None:
            return []
        stop_id = await self.execute_order(stop, extra)
        if stop_id is None:
            try:
                canceled = await self.cancel_order(take_profit_id, symbol)
            except ExchangeCommError as e:
                logger.error(
                    "oco_take_profit_cancel_failed",
                    exchange_order_id=take_profit_id,
                    symbol=symbol,
                    error=str(e),
                )
                return [take_profit_id]
            if not canceled:
                logger.error(
                    "oco_take_profit_cancel_failed",
                    exchange_order_id=take_profit_id,
                    symbol=symbol,
                    error="cancel refused",
                )
            return [take_profit_id]
        return [take_profit_id, stop_id]

    # =========================================================================
    # Market Data
    # =========================================================================

    async def fetch_candles(self, symbol: str, timeframe: str, limit: int) -> list[Candle]:
        exchange = self._require_connection()
        logger.debug(
            "fetching_ohlcv",
            exchange=self.exchange_id,
            symbol=symbol,
            timeframe=timeframe,
            limit=limit,
        )
        data = await self._retry_request(exchange.fetch_ohlcv, symbol, timeframe, None, limit)
        return [Candle.from_ccxt(row) for row in data]

    async def get_latest_price(self, symbol: str) -> float:
        exchange = self._require_connection()
        ticker = await self._retry_request(exchange.fetch_ticker, symbol)
        if ticker.get("last") is None:
            raise ExchangeCommError(f"No last price for {symbol}")
        return float(ticker["last"])


# =============================================================================
# Paper Connector
# =============================================================================


class PaperExchangeConnector:
    """
    In-memory exchange for paper trading and tests.

    Market orders fill at the latest known price. Limit and stop orders rest
    until a price update crosses them. The ledger sees fills through
    fetch_order, exactly as with a real exchange.

    Args:
        candles: Initial candles per symbol
        market_data: Optional connector that supplies candles and prices
    """

    def __init__(
        self,
        candles: Mapping[str, Sequence[Candle]] | None = None,
        market_data: ExchangeConnector | None = None,
    ):
        self.market_data = market_data
        self._candles: dict[str, list[Candle]] = {s: list(c) for s, c in (candles or {}).items()}
        self._prices: dict[str, float] = {s: c[-1].close for s, c in self._candles.items() if c}
        self._orders: dict[str, dict[str, Any]] = {}
        self._ids = itertools.count(1)

        logger.info("paper_exchange_initialized", symbols=sorted(self._candles))

    def add_candles(self, symbol: str, candles: Sequence[Candle]) -> None:
        self._candles.setdefault(symbol, []).extend(candles)
        if candles:
            self.set_price(symbol, candles[-1].close)

    def set_price(self, symbol: str, price: float) -> None:
        """Record a new price and fill resting orders it crosses."""
        self._prices[symbol] = price
        for record in self._orders.values():
            if record["symbol"] != symbol or record["status"] != "open":
                continue
            fill_price = self._crossing_price(record, price)
            if fill_price is not None:
                self._fill(record, fill_price)

    @property
    def orders(self) -> list[dict[str, Any]]:
        return [dict(r) for r in self._orders.values()]

    # =========================================================================
    # Orders
    # =========================================================================

    async def execute_order(self, order: Order, options: dict[str, Any] | None = None) -> str | None:
        external_id = f"paper-{next(self._ids)}"
        record = {
            "id": external_id,
            "symbol": order.symbol,
            "side": order.side.value,
            "type": order.type.value,
            "amount": order.amount,
            "price": order.price,
            "stop_price": order.stop_price,
            "status": "open",
            "oco_group": None,
        }

        if order.type is OrderType.MARKET:
            price = self._prices.get(order.symbol) or order.price
            if not price:
                logger.warning("paper_order_refused_no_price", order_id=order.id, symbol=order.symbol)
                return None
            self._orders[external_id] = record
            self._fill(record, price)
        else:
            self._orders[external_id] = record

        logger.info(
            "paper_order_accepted",
            order_id=order.id,
            exchange_order_id=external_id,
            symbol=order.symbol,
            type=order.type.value,
            status=record["status"],
        )
        return external_id

    async def fetch_order(self, external_id: str, symbol: str) -> dict[str, Any] | None:
        record = self._orders.get(external_id)
        if record is None:
            return None
        return {
            "status": record["status"],
            "price": record.get("fill_price") or record["price"],
            "amount": record["amount"],
            "filled": record["amount"] if record["status"] == "closed" else 0.0,
        }

    async def cancel_order(self, external_id: str, symbol: str) -> bool:
        record = self._orders.get(external_id)
        if record is None or record["status"] != "open":
            return False
        record["status"] = "canceled"
        logger.info("paper_order_canceled", exchange_order_id=external_id, symbol=symbol)
        return True

    async def create_oco_order(self, params: dict[str, Any]) -> list[str]:
        side = OrderSide(params["side"])
        group = f"oco-{next(self._ids)}"
        take_profit = Order(
            symbol=params["symbol"],
            side=side,
            type=OrderType.LIMIT,
            amount=params["amount"],
            price=params["price"],
            reduce_only=True,
        )
        stop = Order(
            symbol=params["symbol"],
            side=side,
            type=OrderType.STOP_MARKET,
            amount=params["amount"],
            stop_price=params["stop_price"],
            reduce_only=True,
        )
        ids = [await self.execute_order(take_profit), await self.execute_order(stop)]
        for external_id in ids:
            self._orders[external_id]["oco_group"] = group
        return ids

    # =========================================================================
    # Market Data
    # =========================================================================

    async def fetch_candles(self, symbol: str, timeframe: str, limit: int) -> list[Candle]:
        if self.market_data is not None:
            candles = await self.market_data.fetch_candles(symbol, timeframe, limit)
            if candles:
                self.set_price(symbol, candles[-1].close)
            return candles
        return list(self._candles.get(symbol, [])[-limit:])

    async def get_latest_price(self, symbol: str) -> float:
        if self.market_data is not None:
            price = await self.market_data.get_latest_price(symbol)
            self.set_price(symbol, price)
            return price
        if symbol not in self._prices:
            raise ExchangeCommError(f"No price for {symbol}")
        return self._prices[symbol]

    # =========================================================================
    # Internals
    # =========================================================================

    @staticmethod
    def _crossing_price(record: dict[str, Any], price: float) -> float | None:
        side = record["side"]
        if record["stop_price"] is not None:
            stop = record["stop_price"]
            crossed = price <= stop if side == "sell" else price >= stop
            if not crossed:
                return None
            return record["price"] if record["type"] == "stop_limit" and record["price"] else stop
        limit = record["price"]
        if limit is None:
            return None
        if side == "buy" and price <= limit:
            return limit
        if side == "sell" and price >= limit:
            return limit
        return None

    def _fill(self, record: dict[str, Any], price: float) -> None:
        record["status"] = "closed"
        record["fill_price"] = price
        logger.info(
            "paper_order_filled",
            exchange_order_id=record["id"],
            symbol=record["symbol"],
            side=record["side"],
            price=price,
        )
        group = record.get("oco_group")
        if not group:
            return
        for sibling in self._orders.values():
            if sibling is not record and sibling.get("oco_group") == group and sibling["status"] == "open":
                sibling["status"] = "canceled"
