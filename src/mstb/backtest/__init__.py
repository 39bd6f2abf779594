"""
Backtest module for MSTB Trading Bot.

Replays historical candles for several symbols through the same
coordinator, engines and ledgers used live, with simulated fills.

Example Usage:
    ```python
    from mstb.backtest import PortfolioBacktest

    result = await PortfolioBacktest(settings).run({"BTC/USDT": btc_df, "ETH/USDT": eth_df})
    print(result.to_dict())
    ```
"""

from mstb.backtest.engine import (
    BacktestConfig,
    BacktestResult,
    PortfolioBacktest,
    align_frames,
    frame_to_candles,
)

__all__ = [
    "BacktestConfig",
    "BacktestResult",
    "PortfolioBacktest",
    "align_frames",
    "frame_to_candles",
]
