"""
Unit tests for capital allocation.
"""

import asyncio
from unittest.mock import AsyncMock

import pytest

from mstb.portfolio.allocation import AllocationManager, AllocationStrategy
from mstb.trading.errors import ExchangeCommError

SYMBOLS = ["BTC/USDT", "ETH/USDT", "SOL/USDT"]


@pytest.fixture
def manager() -> AllocationManager:
    return AllocationManager()


@pytest.mark.unit
class TestCalculateWeights:
    """Test weight strategies."""

    def test_equal(self, manager):
        """Test equal weighting."""
        weights = manager.calculate_weights("equal", SYMBOLS)

        assert weights == pytest.approx({s: 1 / 3 for s in SYMBOLS})
        assert manager.get_symbol_weight("ETH/USDT") == pytest.approx(1 / 3)

    def test_custom_normalized(self, manager):
        """Test custom weights are normalized and missing symbols default to 1."""
        weights = manager.calculate_weights(
            AllocationStrategy.CUSTOM,
            SYMBOLS,
            custom_weights={"BTC/USDT": 2.0, "ETH/USDT": 1.0},
        )

        assert weights["BTC/USDT"] == pytest.approx(0.5)
        assert weights["ETH/USDT"] == pytest.approx(0.25)
        assert weights["SOL/USDT"] == pytest.approx(0.25)

    def test_custom_all_zero_falls_back_to_equal(self, manager):
        """Test a zero total falls back to equal weights."""
        weights = manager.calculate_weights(
            "custom", SYMBOLS[:2], custom_weights={"BTC/USDT": 0.0, "ETH/USDT": 0.0}
        )

        assert weights == pytest.approx({"BTC/USDT": 0.5, "ETH/USDT": 0.5})

    def test_volatility_inverse_atr(self, manager, make_candles):
        """Test the calmer symbol gets the larger weight."""
        history = {
            "BTC/USDT": make_candles([100.0] * 40, spread=1.0),
            "ETH/USDT": make_candles([100.0] * 40, spread=2.0),
        }

        weights = manager.calculate_weights("volatility", list(history), history)

        assert weights["BTC/USDT"] == pytest.approx(2 / 3)
        assert weights["ETH/USDT"] == pytest.approx(1 / 3)

    def test_volatility_short_history_falls_back(self, manager, make_candles):
        """Test fewer than 30 candles for any symbol falls back to equal."""
        history = {
            "BTC/USDT": make_candles([100.0] * 40, spread=1.0),
            "ETH/USDT": make_candles([100.0] * 10, spread=2.0),
        }

        weights = manager.calculate_weights("volatility", list(history), history)

        assert weights == pytest.approx({"BTC/USDT": 0.5, "ETH/USDT": 0.5})

    def test_market_cap_falls_back_to_equal(self, manager):
        """Test market-cap weighting degrades to equal."""
        weights = manager.calculate_weights("market_cap", SYMBOLS)

        assert weights == pytest.approx({s: 1 / 3 for s in SYMBOLS})

    def test_empty_symbols_raises(self, manager):
        """Test an empty symbol list is rejected."""
        with pytest.raises(ValueError):
            manager.calculate_weights("equal", [])

    def test_unknown_strategy_raises(self, manager):
        """Test an unknown strategy name is rejected."""
        with pytest.raises(ValueError):
            manager.calculate_weights("momentum", SYMBOLS)

    @pytest.mark.parametrize("strategy", ["equal", "custom", "volatility", "market_cap"])
    def test_weights_sum_to_one(self, manager, strategy):
        """Test every strategy returns weights summing to 1."""
        weights = manager.calculate_weights(strategy, SYMBOLS, custom_weights={"BTC/USDT": 5.0})

        assert sum(weights.values()) == pytest.approx(1.0)

    def test_initial_balance(self, manager):
        """Test capital split by weight."""
        manager.calculate_weights("custom", SYMBOLS[:2], custom_weights={"BTC/USDT": 3.0})

        assert manager.initial_balance("BTC/USDT", 10000.0) == pytest.approx(7500.0)
        assert manager.initial_balance("XRP/USDT", 10000.0) == 0.0


@pytest.mark.unit
class TestFetchPriceHistory:
    """Test concurrent history fetches."""

    @pytest.mark.asyncio
    async def test_failed_fetch_maps_to_empty(self, manager, make_candles):
        """Test a failing symbol returns an empty list."""
        candles = make_candles([100.0, 101.0])

        async def fetch_candles(symbol, timeframe, limit):
            if symbol == "ETH/USDT":
                raise ExchangeCommError("timeout")
            return candles

        connector = AsyncMock()
        connector.fetch_candles = fetch_candles

        history = await manager.fetch_price_history(connector, SYMBOLS[:2], "1h", 100)

        assert history == {"BTC/USDT": candles, "ETH/USDT": []}

    @pytest.mark.asyncio
    async def test_concurrency_is_bounded(self, manager):
        """Test at most eight fetches run at once."""
        active = 0
        peak = 0

        async def fetch_candles(symbol, timeframe, limit):
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.01)
            active -= 1
            return []

        connector = AsyncMock()
        connector.fetch_candles = fetch_candles
        symbols = [f"SYM{i}/USDT" for i in range(12)]

        history = await manager.fetch_price_history(connector, symbols, "1h", 10)

        assert len(history) == 12
        assert peak == 8

    @pytest.mark.asyncio
    async def test_no_symbols(self, manager):
        """Test an empty symbol list fetches nothing."""
        assert await manager.fetch_price_history(AsyncMock(), [], "1h", 10) == {}
