"""
Analysis module for MSTB trading bot.

Technical indicators, the default regime analyzer and reference signal
providers.
"""

from .indicators import (
    TrendRegimeAnalyzer,
    average_range,
    atr_ratio,
    calculate_atr,
    calculate_returns,
    calculate_vwap,
    candles_to_frame,
)
from .signals import EmaCrossProvider, default_providers, no_signals

__all__ = [
    "TrendRegimeAnalyzer",
    "average_range",
    "atr_ratio",
    "calculate_atr",
    "calculate_returns",
    "calculate_vwap",
    "candles_to_frame",
    "EmaCrossProvider",
    "default_providers",
    "no_signals",
]
