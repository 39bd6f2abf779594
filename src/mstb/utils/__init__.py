"""
Utility modules for MSTB trading bot.

This package provides logging, time sources and periodic job scheduling.
"""

from .clock import Clock, SimClock, WallClock
from .logger import (
    LogConfig,
    add_context,
    clear_context,
    get_logger,
    set_log_level,
    setup_logging,
)
from .scheduler import AsyncioScheduler, ManualScheduler, Scheduler

__all__ = [
    "LogConfig",
    "setup_logging",
    "get_logger",
    "add_context",
    "set_log_level",
    "clear_context",
    "Clock",
    "WallClock",
    "SimClock",
    "Scheduler",
    "AsyncioScheduler",
    "ManualScheduler",
]
