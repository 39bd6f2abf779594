"""
Configuration module for MSTB trading bot.

Exports the Settings class and its section models. Settings are built with
load_settings() and passed explicitly into components.
"""

from .settings import (
    EngineSettings,
    ExchangeSettings,
    LedgerSettings,
    LoggingSettings,
    MetricsSettings,
    PortfolioSettings,
    RiskSettings,
    Settings,
    TradingSettings,
    load_settings,
)

__all__ = [
    "Settings",
    "load_settings",
    "ExchangeSettings",
    "TradingSettings",
    "RiskSettings",
    "EngineSettings",
    "PortfolioSettings",
    "LedgerSettings",
    "LoggingSettings",
    "MetricsSettings",
]
