"""
Portfolio backtest driver for MSTB Trading Bot.

Feeds historical candles for several symbols through a backtest-mode
coordinator. Each step advances a SimClock to the candle timestamp, so the
emergency dwell, correlation refresh and risk snapshot cadence behave
exactly as they would live.

Example Usage:
    ```python
    from mstb.backtest import PortfolioBacktest
    import pandas as pd

    data = {
        "BTC/USDT": pd.read_csv("btc_1h.csv"),
        "ETH/USDT": pd.read_csv("eth_1h.csv"),
    }
    backtest = PortfolioBacktest(load_settings())
    result = await backtest.run(data)
    print(result.equity_curve.tail())
    ```
"""

from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime

import pandas as pd

from mstb.analysis.signals import default_providers
from mstb.config.settings import Settings
from mstb.portfolio.coordinator import PortfolioCoordinator, create_coordinator
from mstb.trading.models import Candle, Fill, Position, StrategyType
from mstb.trading.ports import SignalProvider
from mstb.utils.clock import SimClock
from mstb.utils.logger import get_logger

logger = get_logger(__name__)

OHLCV_COLUMNS = ["timestamp", "open", "high", "low", "close", "volume"]


# =============================================================================
# Data Structures
# =============================================================================


@dataclass
class BacktestConfig:
    """Configuration for a portfolio backtest run."""

    warmup_periods: int = 30
    close_at_end: bool = True


@dataclass
class BacktestResult:
    """Outcome of a portfolio backtest."""

    equity_curve: pd.DataFrame  # timestamp, equity, drawdown
    positions: dict[str, list[Position]]
    fills: list[Fill]
    start_equity: float
    final_equity: float
    vetoes: int = 0
    modes: dict[str, str] = field(default_factory=dict)

    @property
    def total_return_pct(self) -> float:
        if self.start_equity <= 0:
            return 0.0
        return (self.final_equity - self.start_equity) / self.start_equity

    @property
    def max_drawdown_pct(self) -> float:
        if self.equity_curve.empty:
            return 0.0
        return float(abs(self.equity_curve["drawdown"].min()))

    def to_dict(self) -> dict:
        return {
            "start_equity": round(self.start_equity, 2),
            "final_equity": round(self.final_equity, 2),
            "total_return_pct": round(self.total_return_pct, 4),
            "max_drawdown_pct": round(self.max_drawdown_pct, 4),
            "fills": len(self.fills),
            "vetoes": self.vetoes,
            "open_positions": sum(len(p) for p in self.positions.values()),
            "modes": dict(self.modes),
        }


# =============================================================================
# Helpers
# =============================================================================


def _timestamps_ms(column: pd.Series) -> pd.Series:
    if pd.api.types.is_datetime64_any_dtype(column):
        return column.map(lambda t: int(pd.Timestamp(t).timestamp() * 1000))
    return column.astype("int64")


def align_frames(data: Mapping[str, pd.DataFrame]) -> dict[str, pd.DataFrame]:
    """
    Restrict every frame to the timestamps all symbols share.

    Args:
        data: OHLCV frame per symbol (columns: timestamp, open, high, low, close, volume)

    Returns:
        Frames indexed by epoch-millisecond timestamp, sorted ascending

    Raises:
        ValueError: If a frame lacks OHLCV columns or no timestamp is shared
    """
    frames: dict[str, pd.DataFrame] = {}
    for symbol, frame in data.items():
        missing = [c for c in OHLCV_COLUMNS if c not in frame.columns]
        if missing:
            raise ValueError(f"{symbol} frame is missing columns: {', '.join(missing)}")
        frame = frame[OHLCV_COLUMNS].copy()
        frame["timestamp"] = _timestamps_ms(frame["timestamp"])
        frames[symbol] = frame.drop_duplicates("timestamp").set_index("timestamp").sort_index()

    common = None
    for frame in frames.values():
        common = frame.index if common is None else common.intersection(frame.index)
    if common is None or len(common) == 0:
        raise ValueError("Frames share no timestamps")

    return {symbol: frame.loc[common] for symbol, frame in frames.items()}


def frame_to_candles(frame: pd.DataFrame) -> list[Candle]:
    return [
        Candle(
            timestamp=int(ts),
            open=float(row.open),
            high=float(row.high),
            low=float(row.low),
            close=float(row.close),
            volume=float(row.volume),
        )
        for ts, row in zip(frame.index, frame.itertuples(index=False))
    ]


# =============================================================================
# Backtest Driver
# =============================================================================


class PortfolioBacktest:
    """
    Event-driven multi-symbol backtest.

    Args:
        settings: Application settings. trading.backtest is forced on and
            trading.symbols is replaced by the symbols of the data.
        providers_factory: Builds the signal providers for each engine
        config: Warmup and end-of-run behaviour
    """

    def __init__(
        self,
        settings: Settings,
        providers_factory: Callable[[], Mapping[StrategyType, SignalProvider]] = default_providers,
        config: BacktestConfig | None = None,
    ):
        self.settings = settings
        self.providers_factory = providers_factory
        self.config = config or BacktestConfig()
        self.coordinator: PortfolioCoordinator | None = None

    async def run(self, data: Mapping[str, pd.DataFrame]) -> BacktestResult:
        """
        Run the backtest.

        The first warmup_periods candles seed each engine (and volatility
        allocation); the remaining candles are replayed one step at a time.
        """
        frames = align_frames(data)
        symbols = sorted(frames)
        timestamps = list(next(iter(frames.values())).index)
        warmup = max(0, min(self.config.warmup_periods, len(timestamps) - 1))

        candles = {symbol: frame_to_candles(frames[symbol]) for symbol in symbols}
        clock = SimClock(
            datetime.fromtimestamp(int(timestamps[max(warmup - 1, 0)]) / 1000, tz=UTC)
        )

        settings = self.settings.model_copy(
            update={
                "trading": self.settings.trading.model_copy(
                    update={"backtest": True, "symbols_raw": ",".join(symbols)}
                )
            }
        )
        self.coordinator = coordinator = await create_coordinator(
            settings,
            providers_factory=self.providers_factory,
            clock=clock,
            price_history={s: c[:warmup] for s, c in candles.items()} if warmup else None,
        )
        start_equity = coordinator.portfolio_equity

        logger.info(
            "backtest_started",
            symbols=symbols,
            steps=len(timestamps) - warmup,
            warmup=warmup,
            start_equity=start_equity,
        )

        equity_rows: list[tuple[int, float]] = []
        vetoes = 0
        for index in range(warmup, len(timestamps)):
            timestamp = int(timestamps[index])
            clock.set_ms(timestamp)
            await coordinator.update({s: candles[s][index] for s in symbols})
            vetoes += len(coordinator.last_vetoes)
            equity_rows.append((timestamp, coordinator.portfolio_equity))

        if self.config.close_at_end:
            for engine in coordinator.engines.values():
                await engine.close_all_positions()
            if equity_rows:
                equity_rows[-1] = (equity_rows[-1][0], coordinator.portfolio_equity)

        equity_curve = pd.DataFrame(equity_rows, columns=["timestamp", "equity"])
        peak = equity_curve["equity"].cummax()
        equity_curve["drawdown"] = (equity_curve["equity"] - peak) / peak

        result = BacktestResult(
            equity_curve=equity_curve,
            positions=coordinator.positions_by_symbol(),
            fills=[f for e in coordinator.engines.values() for f in e.ledger.get_fills(e.symbol)],
            start_equity=start_equity,
            final_equity=coordinator.portfolio_equity,
            vetoes=vetoes,
            modes={s: e.system_mode.value for s, e in coordinator.engines.items()},
        )

        logger.info("backtest_completed", **result.to_dict())
        return result
