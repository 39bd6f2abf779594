"""
Trading module for MSTB trading bot.

Order and position data structures, the order ledger, the error taxonomy,
collaborator interfaces and kill switches. The per-instrument decision loop
lives in mstb.trading.engine.
"""

from .errors import (
    ExchangeCommError,
    InsufficientBalance,
    InsufficientPosition,
    InvalidStateTransition,
    OrderNotFound,
    RiskLimitExceeded,
    StrategyExecutionError,
    TradingError,
    TradingHalted,
)
from .kill_switch import FlagFileKillSwitch, ManualKillSwitch
from .ledger import OrderLedger
from .models import (
    Account,
    Candle,
    EmergencyOverride,
    Fill,
    MarketAnalysis,
    MarketEnvironment,
    Order,
    OrderSide,
    OrderStatus,
    OrderType,
    Position,
    PositionSide,
    RiskSnapshot,
    StrategyResult,
    StrategyType,
    StressScenario,
    SystemMode,
)

__all__ = [
    # Ledger
    "OrderLedger",
    # Models
    "Account",
    "Candle",
    "EmergencyOverride",
    "Fill",
    "MarketAnalysis",
    "MarketEnvironment",
    "Order",
    "OrderSide",
    "OrderStatus",
    "OrderType",
    "Position",
    "PositionSide",
    "RiskSnapshot",
    "StrategyResult",
    "StrategyType",
    "StressScenario",
    "SystemMode",
    # Kill switches
    "FlagFileKillSwitch",
    "ManualKillSwitch",
    # Errors
    "TradingError",
    "OrderNotFound",
    "InvalidStateTransition",
    "InsufficientBalance",
    "InsufficientPosition",
    "RiskLimitExceeded",
    "ExchangeCommError",
    "StrategyExecutionError",
    "TradingHalted",
]
