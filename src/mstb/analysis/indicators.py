"""Technical indicators and the default market regime analyzer.

Indicators are vectorized with pandas over a candle frame. The engine needs
only a few of them: ATR for stop distances and allocation weights, VWAP for
hedge pricing, per-period returns for correlation, and an EMA trend read
for regime classification.
"""

from collections.abc import Sequence

import numpy as np
import pandas as pd

from mstb.trading.models import Candle, MarketAnalysis, MarketEnvironment, StrategyType


def candles_to_frame(candles: Sequence[Candle]) -> pd.DataFrame:
    """Build an OHLCV DataFrame indexed by timestamp (ms)."""
    frame = pd.DataFrame(
        [(c.timestamp, c.open, c.high, c.low, c.close, c.volume) for c in candles],
        columns=["timestamp", "open", "high", "low", "close", "volume"],
    )
    return frame.set_index("timestamp")


# ==================== ATR ====================


def true_range(frame: pd.DataFrame) -> pd.Series:
    high = frame["high"]
    low = frame["low"]
    close = frame["close"]

    tr1 = high - low
    tr2 = (high - close.shift()).abs()
    tr3 = (low - close.shift()).abs()

    return pd.concat([tr1, tr2, tr3], axis=1).max(axis=1)


def calculate_atr(candles: Sequence[Candle], period: int = 14) -> float | None:
    """Average True Range over the last ``period`` candles.

    Returns:
        Latest ATR, or None when there are not enough candles
    """
    if len(candles) <= period:
        return None
    atr = true_range(candles_to_frame(candles)).rolling(window=period).mean()
    value = atr.iloc[-1]
    return None if pd.isna(value) else float(value)


def average_range(candles: Sequence[Candle], period: int = 14) -> float | None:
    """Mean high-low range of the last ``period`` candles.

    Fallback volatility estimate used when no analysis ATR is cached.
    """
    if len(candles) <= period:
        return None
    recent = candles[-period:]
    return float(np.mean([c.high - c.low for c in recent]))


def atr_ratio(candles: Sequence[Candle], period: int = 14) -> float | None:
    """ATR as a fraction of the last close."""
    atr = calculate_atr(candles, period)
    if atr is None or candles[-1].close <= 0:
        return None
    return atr / candles[-1].close


# ==================== VWAP ====================


def calculate_vwap(candles: Sequence[Candle], window: int = 20) -> float | None:
    """Volume-weighted typical price of the last ``window`` candles.

    Falls back to the last close when the window has no volume.
    """
    if not candles:
        return None
    frame = candles_to_frame(candles[-window:])
    typical = (frame["high"] + frame["low"] + frame["close"]) / 3
    volume = frame["volume"].sum()
    if volume <= 0:
        return float(frame["close"].iloc[-1])
    return float((typical * frame["volume"]).sum() / volume)


# ==================== Returns ====================


def calculate_returns(candles: Sequence[Candle]) -> list[float]:
    """Simple close-to-close returns."""
    if len(candles) < 2:
        return []
    closes = pd.Series([c.close for c in candles], dtype=float)
    returns = closes.pct_change().dropna()
    returns = returns.replace([np.inf, -np.inf], np.nan).dropna()
    return returns.tolist()


# ==================== Regime ====================


class TrendRegimeAnalyzer:
    """Classifies the market from EMA slope and ATR.

    Trending markets map to trend following, quiet ones to range trading and
    unusually volatile ones to mean reversion.

    Args:
        fast: Fast EMA span
        slow: Slow EMA span
        atr_period: ATR lookback
        trend_threshold: Relative EMA gap that counts as a trend
        volatility_threshold: ATR/price ratio that counts as volatile
    """

    def __init__(
        self,
        fast: int = 9,
        slow: int = 21,
        atr_period: int = 14,
        trend_threshold: float = 0.01,
        volatility_threshold: float = 0.05,
    ):
        self.fast = fast
        self.slow = slow
        self.atr_period = atr_period
        self.trend_threshold = trend_threshold
        self.volatility_threshold = volatility_threshold

    def analyze(self, candles: Sequence[Candle]) -> MarketAnalysis:
        timestamp = candles[-1].timestamp if candles else 0
        if len(candles) < self.slow:
            return MarketAnalysis(
                environment=MarketEnvironment.UNKNOWN,
                recommended_strategy=StrategyType.TREND_FOLLOWING,
                atr=calculate_atr(candles, self.atr_period),
                timestamp=timestamp,
            )

        close = candles_to_frame(candles)["close"]
        fast_ema = close.ewm(span=self.fast, adjust=False).mean().iloc[-1]
        slow_ema = close.ewm(span=self.slow, adjust=False).mean().iloc[-1]
        gap = float((fast_ema - slow_ema) / slow_ema) if slow_ema else 0.0

        atr = calculate_atr(candles, self.atr_period)
        volatility = atr / candles[-1].close if atr and candles[-1].close else 0.0

        if volatility > self.volatility_threshold:
            environment = MarketEnvironment.VOLATILE
            strategy = StrategyType.MEAN_REVERT
        elif gap > self.trend_threshold:
            environment = MarketEnvironment.TRENDING_UP
            strategy = StrategyType.TREND_FOLLOWING
        elif gap < -self.trend_threshold:
            environment = MarketEnvironment.TRENDING_DOWN
            strategy = StrategyType.TREND_FOLLOWING
        else:
            environment = MarketEnvironment.RANGING
            strategy = StrategyType.RANGE_TRADING

        return MarketAnalysis(
            environment=environment,
            recommended_strategy=strategy,
            atr=atr,
            trend_strength=abs(gap),
            timestamp=timestamp,
        )
