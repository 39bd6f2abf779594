"""Reference signal providers.

These are deliberately simple. Real strategies plug into the engine through
the same ``(candles, symbol, positions, balance) -> StrategyResult``
signature.
"""

from collections.abc import Sequence

from mstb.trading.models import (
    Candle,
    Order,
    OrderSide,
    OrderType,
    Position,
    PositionSide,
    StrategyResult,
    StrategyType,
)

from .indicators import calculate_atr, candles_to_frame


class EmaCrossProvider:
    """Opens in the direction of a fresh EMA cross with an ATR stop attached.

    Args:
        strategy: Tag reported in the result
        fast: Fast EMA span
        slow: Slow EMA span
        risk_fraction: Fraction of balance used for the entry notional
        stop_atr: Stop distance in ATRs
    """

    def __init__(
        self,
        strategy: StrategyType = StrategyType.TREND_FOLLOWING,
        fast: int = 9,
        slow: int = 21,
        risk_fraction: float = 0.1,
        stop_atr: float = 2.0,
    ):
        self.strategy = strategy
        self.fast = fast
        self.slow = slow
        self.risk_fraction = risk_fraction
        self.stop_atr = stop_atr

    def __call__(
        self,
        candles: Sequence[Candle],
        symbol: str,
        positions: Sequence[Position],
        balance: float,
    ) -> StrategyResult:
        timestamp = candles[-1].timestamp if candles else 0
        result = StrategyResult(strategy=self.strategy, timestamp=timestamp)
        if len(candles) < self.slow + 2 or balance <= 0:
            return result

        close = candles_to_frame(candles)["close"]
        diff = close.ewm(span=self.fast, adjust=False).mean() - close.ewm(
            span=self.slow, adjust=False
        ).mean()
        previous, current = diff.iloc[-2], diff.iloc[-1]
        if previous <= 0 < current:
            side = OrderSide.BUY
        elif previous >= 0 > current:
            side = OrderSide.SELL
        else:
            return result

        held = {p.side for p in positions}
        if PositionSide.from_order_side(side) in held:
            return result

        price = candles[-1].close
        atr = calculate_atr(candles) or price * 0.01
        amount = balance * self.risk_fraction / price
        stop = price - self.stop_atr * atr if side is OrderSide.BUY else price + self.stop_atr * atr

        result.signals = [
            Order(symbol=symbol, side=side, type=OrderType.MARKET, amount=amount, price=price),
            Order(
                symbol=symbol,
                side=side.opposite,
                type=OrderType.STOP_MARKET,
                amount=amount,
                stop_price=stop,
                reduce_only=True,
            ),
        ]
        return result


def no_signals(
    candles: Sequence[Candle],
    symbol: str,
    positions: Sequence[Position],
    balance: float,
    strategy: StrategyType = StrategyType.RANGE_TRADING,
) -> StrategyResult:
    """Provider that never trades."""
    timestamp = candles[-1].timestamp if candles else 0
    return StrategyResult(strategy=strategy, timestamp=timestamp)


def default_providers() -> dict:
    """Provider table covering every StrategyType except emergency."""
    trend = EmaCrossProvider(StrategyType.TREND_FOLLOWING)
    return {
        StrategyType.TREND_FOLLOWING: trend,
        StrategyType.DONCHIAN_BREAKOUT: EmaCrossProvider(
            StrategyType.DONCHIAN_BREAKOUT, fast=20, slow=55
        ),
        StrategyType.RANGE_TRADING: no_signals,
        StrategyType.MEAN_REVERT: no_signals,
    }
