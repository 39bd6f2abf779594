"""
Unit tests for technical indicators and reference signal providers.

Tests individual indicator calculations with known inputs and expected outputs.
"""

import math

from hypothesis import given, strategies as st
import pytest

from mstb.analysis import (
    EmaCrossProvider,
    TrendRegimeAnalyzer,
    atr_ratio,
    average_range,
    calculate_atr,
    calculate_returns,
    calculate_vwap,
    candles_to_frame,
    default_providers,
    no_signals,
)
from mstb.trading.models import (
    Candle,
    MarketEnvironment,
    OrderSide,
    OrderType,
    Position,
    PositionSide,
    StrategyType,
)

SYMBOL = "BTC/USDT"


@pytest.mark.unit
class TestTechnicalIndicators:
    """Test suite for technical indicator calculations."""

    def test_candles_to_frame(self, make_candles):
        """Test the frame is indexed by timestamp with OHLCV columns."""
        candles = make_candles([100.0, 101.0, 102.0])

        frame = candles_to_frame(candles)

        assert list(frame.columns) == ["open", "high", "low", "close", "volume"]
        assert list(frame.index) == [c.timestamp for c in candles]
        assert frame["close"].iloc[-1] == 102.0

    def test_atr_needs_period_plus_one(self, make_candles):
        """Test ATR is None until period + 1 candles exist."""
        assert calculate_atr(make_candles([100.0] * 14), period=14) is None
        assert calculate_atr(make_candles([100.0] * 15), period=14) is not None

    def test_atr_constant_range(self, make_candles):
        """Test ATR of flat candles equals twice the spread."""
        candles = make_candles([100.0] * 20, spread=1.0)

        assert calculate_atr(candles, period=14) == pytest.approx(2.0)
        assert average_range(candles, period=14) == pytest.approx(2.0)
        assert atr_ratio(candles, period=14) == pytest.approx(0.02)

    def test_atr_includes_gaps(self, make_candles):
        """Test true range uses the previous close for gaps."""
        candles = make_candles([100.0, 100.0, 110.0])

        assert calculate_atr(candles, period=1) == pytest.approx(10.0)

    def test_vwap_weights_by_volume(self, make_candles):
        """Test VWAP of flat candles is the close."""
        assert calculate_vwap(make_candles([50.0] * 5, spread=2.0)) == pytest.approx(50.0)

    def test_vwap_without_volume(self, make_candles):
        """Test zero volume falls back to the last close."""
        candles = make_candles([100.0, 104.0], volume=0.0)

        assert calculate_vwap(candles) == 104.0
        assert calculate_vwap([]) is None

    def test_returns(self, make_candles):
        """Test close-to-close simple returns."""
        returns = calculate_returns(make_candles([100.0, 110.0, 99.0]))

        assert returns == pytest.approx([0.1, -0.1])
        assert calculate_returns(make_candles([100.0])) == []

    @given(st.lists(st.floats(min_value=1.0, max_value=1e5), min_size=2, max_size=50))
    def test_returns_length_property(self, closes):
        """Test one return per consecutive close pair."""
        candles = [Candle(i, c, c, c, c, 1.0) for i, c in enumerate(closes)]
        returns = calculate_returns(candles)

        assert len(returns) == len(closes) - 1
        assert all(math.isfinite(r) for r in returns)


@pytest.mark.unit
class TestTrendRegimeAnalyzer:
    """Test regime classification."""

    def test_short_history_unknown(self, make_candles):
        """Test fewer than slow candles gives an unknown regime."""
        analysis = TrendRegimeAnalyzer().analyze(make_candles([100.0] * 10))

        assert analysis.environment is MarketEnvironment.UNKNOWN
        assert analysis.recommended_strategy is StrategyType.TREND_FOLLOWING

    def test_uptrend(self, make_candles):
        """Test a steady rise is trend following."""
        closes = [100.0 * 1.01**i for i in range(40)]

        analysis = TrendRegimeAnalyzer().analyze(make_candles(closes))

        assert analysis.environment is MarketEnvironment.TRENDING_UP
        assert analysis.recommended_strategy is StrategyType.TREND_FOLLOWING
        assert analysis.trend_strength > 0.01

    def test_downtrend(self, make_candles):
        """Test a steady fall is trend following short."""
        closes = [100.0 * 0.99**i for i in range(40)]

        analysis = TrendRegimeAnalyzer().analyze(make_candles(closes))

        assert analysis.environment is MarketEnvironment.TRENDING_DOWN

    def test_flat_is_ranging(self, make_candles):
        """Test a flat market is range trading."""
        analysis = TrendRegimeAnalyzer().analyze(make_candles([100.0] * 40, spread=0.2))

        assert analysis.environment is MarketEnvironment.RANGING
        assert analysis.recommended_strategy is StrategyType.RANGE_TRADING
        assert analysis.atr == pytest.approx(0.4)

    def test_wide_ranges_are_volatile(self, make_candles):
        """Test an ATR above the threshold is mean reversion."""
        analysis = TrendRegimeAnalyzer().analyze(make_candles([100.0] * 40, spread=5.0))

        assert analysis.environment is MarketEnvironment.VOLATILE
        assert analysis.recommended_strategy is StrategyType.MEAN_REVERT


@pytest.mark.unit
class TestSignalProviders:
    """Test the reference providers."""

    def cross_up(self) -> list[float]:
        return [100.0 - 0.5 * i for i in range(30)] + [90.0, 120.0]

    def test_cross_up_opens_long_with_stop(self, make_candles):
        """Test a fresh bullish cross emits a market buy and a reduce-only stop."""
        provider = EmaCrossProvider(risk_fraction=0.1)
        candles = make_candles(self.cross_up())

        result = provider(candles, SYMBOL, [], 10000.0)

        entry, stop = result.signals
        assert entry.side is OrderSide.BUY
        assert entry.type is OrderType.MARKET
        assert entry.amount == pytest.approx(10000.0 * 0.1 / 120.0)
        assert stop.type is OrderType.STOP_MARKET
        assert stop.side is OrderSide.SELL
        assert stop.reduce_only
        assert stop.stop_price < 120.0
        assert result.timestamp == candles[-1].timestamp

    def test_existing_position_suppresses_entry(self, make_candles):
        """Test no entry is emitted when already holding that side."""
        held = Position(symbol=SYMBOL, side=PositionSide.LONG, amount=1.0, entry_price=100.0, current_price=100.0)

        result = EmaCrossProvider()(make_candles(self.cross_up()), SYMBOL, [held], 10000.0)

        assert result.signals == []

    def test_no_cross_no_signal(self, make_candles):
        """Test a steady trend without a cross is silent."""
        closes = [100.0 + i for i in range(40)]

        assert EmaCrossProvider()(make_candles(closes), SYMBOL, [], 10000.0).signals == []

    def test_short_history_silent(self, make_candles):
        """Test too few candles produce no signals."""
        assert EmaCrossProvider()(make_candles([100.0] * 5), SYMBOL, [], 10000.0).signals == []

    def test_default_table(self, make_candles):
        """Test every non-emergency strategy has a provider."""
        providers = default_providers()

        assert StrategyType.EMERGENCY not in providers
        assert set(providers) == {
            StrategyType.TREND_FOLLOWING,
            StrategyType.DONCHIAN_BREAKOUT,
            StrategyType.RANGE_TRADING,
            StrategyType.MEAN_REVERT,
        }
        assert no_signals(make_candles([100.0]), SYMBOL, [], 1.0).signals == []
