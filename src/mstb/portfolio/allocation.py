"""
Capital allocation across instruments.

Weights are a pure function of the strategy, the symbol list and the price
history. Whatever the strategy, the returned weights sum to 1.

Example Usage:
    ```python
    manager = AllocationManager()
    history = await manager.fetch_price_history(connector, symbols, "1h", limit=100)
    weights = manager.calculate_weights("volatility", symbols, history)
    btc_capital = manager.initial_balance("BTC/USDT", 10000.0)
    ```
"""

import asyncio
from collections.abc import Mapping, Sequence
from enum import Enum

import numpy as np

from mstb.analysis.indicators import atr_ratio
from mstb.config.constants import ATR_PERIOD, MAX_FETCH_CONCURRENCY, MIN_VOLATILITY_CANDLES
from mstb.trading.errors import ExchangeCommError
from mstb.trading.models import Candle
from mstb.trading.ports import ExchangeConnector
from mstb.utils.logger import get_logger

logger = get_logger(__name__)


class AllocationStrategy(str, Enum):
    EQUAL = "equal"
    CUSTOM = "custom"
    VOLATILITY = "volatility"
    MARKET_CAP = "market_cap"


class AllocationManager:
    """
    Computes and remembers allocation weights.

    Args:
        min_volatility_candles: Candles per symbol required for volatility weighting
        atr_period: ATR lookback for volatility weighting
        max_fetch_concurrency: Upper bound on concurrent history fetches
    """

    def __init__(
        self,
        min_volatility_candles: int = MIN_VOLATILITY_CANDLES,
        atr_period: int = ATR_PERIOD,
        max_fetch_concurrency: int = MAX_FETCH_CONCURRENCY,
    ):
        self.min_volatility_candles = min_volatility_candles
        self.atr_period = atr_period
        self.max_fetch_concurrency = max_fetch_concurrency
        self.weights: dict[str, float] = {}

    def calculate_weights(
        self,
        strategy: AllocationStrategy | str,
        symbols: Sequence[str],
        price_history: Mapping[str, Sequence[Candle]] | None = None,
        custom_weights: Mapping[str, float] | None = None,
    ) -> dict[str, float]:
        """
        Compute allocation weights.

        Args:
            strategy: equal, custom, volatility or market_cap
            symbols: Active symbols
            price_history: Candles per symbol (volatility only)
            custom_weights: Raw user weights (custom only). Missing symbols get 1.

        Returns:
            Weight per symbol, summing to 1

        Raises:
            ValueError: If symbols is empty
        """
        if not symbols:
            raise ValueError("At least one symbol is required")
        strategy = AllocationStrategy(strategy)
        symbols = list(dict.fromkeys(symbols))

        if strategy is AllocationStrategy.CUSTOM:
            raw = self._custom(symbols, custom_weights or {})
        elif strategy is AllocationStrategy.VOLATILITY:
            raw = self._volatility(symbols, price_history or {})
        elif strategy is AllocationStrategy.MARKET_CAP:
            logger.warning("market_cap_allocation_unavailable", fallback="equal")
            raw = self._equal(symbols)
        else:
            raw = self._equal(symbols)

        self.weights = self._normalize(raw)
        logger.info(
            "allocation_calculated",
            strategy=strategy.value,
            weights={s: round(w, 4) for s, w in self.weights.items()},
        )
        return dict(self.weights)

    def get_symbol_weight(self, symbol: str) -> float:
        return self.weights.get(symbol, 0.0)

    def initial_balance(self, symbol: str, total_balance: float) -> float:
        """Capital assigned to symbol under the current weights."""
        return total_balance * self.get_symbol_weight(symbol)

    async def fetch_price_history(
        self,
        connector: ExchangeConnector,
        symbols: Sequence[str],
        timeframe: str,
        limit: int,
    ) -> dict[str, list[Candle]]:
        """
        Fetch candles for every symbol concurrently.

        At most min(len(symbols), max_fetch_concurrency) requests run at
        once. A symbol whose fetch fails maps to an empty list.
        """
        if not symbols:
            return {}
        limiter = asyncio.Semaphore(min(len(symbols), self.max_fetch_concurrency))

        async def fetch(symbol: str) -> tuple[str, list[Candle]]:
            async with limiter:
                try:
                    return symbol, await connector.fetch_candles(symbol, timeframe, limit)
                except ExchangeCommError as e:
                    logger.warning("price_history_fetch_failed", symbol=symbol, error=str(e))
                    return symbol, []

        results = await asyncio.gather(*(fetch(s) for s in symbols))
        logger.info(
            "price_history_fetched",
            symbols=len(symbols),
            candles={s: len(c) for s, c in results},
        )
        return dict(results)

    # =========================================================================
    # Strategies
    # =========================================================================

    @staticmethod
    def _equal(symbols: Sequence[str]) -> dict[str, float]:
        return {s: 1.0 for s in symbols}

    @staticmethod
    def _custom(symbols: Sequence[str], custom_weights: Mapping[str, float]) -> dict[str, float]:
        raw: dict[str, float] = {}
        for symbol in symbols:
            weight = float(custom_weights.get(symbol, 1.0))
            if weight < 0 or not np.isfinite(weight):
                logger.warning("custom_weight_invalid", symbol=symbol, weight=weight)
                weight = 0.0
            raw[symbol] = weight
        return raw

    def _volatility(
        self, symbols: Sequence[str], price_history: Mapping[str, Sequence[Candle]]
    ) -> dict[str, float]:
        short = [
            s for s in symbols if len(price_history.get(s, ())) < self.min_volatility_candles
        ]
        if short:
            logger.warning(
                "volatility_allocation_insufficient_data",
                symbols=short,
                required=self.min_volatility_candles,
                fallback="equal",
            )
            return self._equal(symbols)

        raw: dict[str, float] = {}
        for symbol in symbols:
            ratio = atr_ratio(list(price_history[symbol]), self.atr_period)
            if not ratio or ratio <= 0:
                logger.warning("volatility_unavailable", symbol=symbol, fallback="equal")
                return self._equal(symbols)
            raw[symbol] = 1.0 / ratio
        return raw

    @staticmethod
    def _normalize(raw: Mapping[str, float]) -> dict[str, float]:
        total = sum(raw.values())
        if total <= 0:
            return {s: 1.0 / len(raw) for s in raw}
        return {s: w / total for s, w in raw.items()}
