"""
Configuration settings for the MSTB trading bot.

Uses pydantic-settings for environment variable management with nested models
for different configuration domains. A Settings instance is built once at
startup and passed explicitly into every component that needs it.
"""

from typing import Any, Literal, Optional

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .constants import (
    ATR_PERIOD,
    ATR_STOP_MULTIPLIER,
    CANDLE_HISTORY_LENGTH,
    CORRELATION_MIN_SAMPLES,
    DEFAULT_COMMISSION_RATE,
    DEFAULT_SLIPPAGE,
    EMERGENCY_DWELL_HOURS,
    EMERGENCY_POSITION_REDUCTION,
    EMERGENCY_RECOVERY_THRESHOLD,
    EMERGENCY_THRESHOLD,
    EQUITY_HISTORY_LENGTH,
    HEDGE_DELTA_THRESHOLD,
    HEDGE_RATIO,
    MARGIN_RATE,
    MAX_DAILY_LOSS_PCT,
    MAX_FETCH_CONCURRENCY,
    MAX_RISK_PER_TRADE,
    MIN_ORDER_AMOUNT,
    NOTIONAL_CAP_MULTIPLIER,
    PORTFOLIO_RISK_LIMIT,
    RISK_REDUCTION_FACTOR,
    VWAP_WINDOW,
)


class ExchangeSettings(BaseSettings):
    """Exchange API configuration settings."""

    exchange_id: str = Field(default="binanceusdm", description="CCXT exchange identifier")
    api_key: SecretStr = Field(default=SecretStr(""), description="Exchange API key")
    api_secret: SecretStr = Field(default=SecretStr(""), description="Exchange API secret")
    testnet: bool = Field(default=True, description="Use testnet environment")
    max_retries: int = Field(default=3, description="Retries for transient exchange errors")
    max_concurrent_requests: int = Field(
        default=10, description="Concurrent requests allowed against the exchange"
    )

    model_config = SettingsConfigDict(
        env_prefix="EXCHANGE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


class TradingSettings(BaseSettings):
    """Trading configuration settings."""

    symbols_raw: str = Field(
        default="BTC/USDT,ETH/USDT",
        alias="symbols",
        description="Trading symbols (comma-separated)",
    )
    timeframe: str = Field(default="1h", description="Candle timeframe for the decision loop")
    paper_trading: bool = Field(default=True, description="Route orders to the paper connector")
    backtest: bool = Field(
        default=False, description="Apply approved signals as simulated fills"
    )
    initial_balance: float = Field(
        default=10000.0, description="Total starting capital across all symbols"
    )
    loop_interval_seconds: float = Field(
        default=60.0, description="Seconds between decision cycles"
    )
    strategy: str = Field(
        default="trend_following", description="Default strategy tag before analysis"
    )

    @property
    def symbols(self) -> list[str]:
        """Parse comma-separated string to list of strings."""
        return [x.strip() for x in self.symbols_raw.split(",") if x.strip()]

    model_config = SettingsConfigDict(
        env_prefix="TRADING_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )


class RiskSettings(BaseSettings):
    """Per-trade and daily risk limits."""

    max_risk_per_trade: float = Field(
        default=MAX_RISK_PER_TRADE, description="Fraction of balance risked per trade"
    )
    max_daily_loss: float = Field(
        default=MAX_DAILY_LOSS_PCT, description="Daily loss fraction that pauses trading"
    )
    atr_period: int = Field(default=ATR_PERIOD, description="ATR lookback in candles")
    atr_stop_multiplier: float = Field(
        default=ATR_STOP_MULTIPLIER, description="Stop distance as a multiple of ATR"
    )
    notional_cap_multiplier: float = Field(
        default=NOTIONAL_CAP_MULTIPLIER,
        description="Notional cap as a multiple of the max risk amount",
    )
    min_order_amount: float = Field(
        default=MIN_ORDER_AMOUNT, description="Smallest order amount worth sending"
    )
    margin_rate: float = Field(
        default=MARGIN_RATE, description="Margin reserved per unit of position notional"
    )
    risk_reduction_factor: float = Field(
        default=RISK_REDUCTION_FACTOR, description="Size multiplier in risk_reduction mode"
    )

    @field_validator("max_risk_per_trade", "max_daily_loss")
    @classmethod
    def validate_fraction(cls, v: float) -> float:
        if not 0 < v < 1:
            raise ValueError("risk fractions must be between 0 and 1")
        return v

    model_config = SettingsConfigDict(
        env_prefix="RISK_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


class EngineSettings(BaseSettings):
    """Per-instrument decision loop settings."""

    emergency_threshold: float = Field(
        default=EMERGENCY_THRESHOLD, description="24h price change that forces emergency mode"
    )
    emergency_recovery_threshold: float = Field(
        default=EMERGENCY_RECOVERY_THRESHOLD,
        description="Every change sample must stay below this to leave emergency",
    )
    emergency_recovery_hours: float = Field(
        default=EMERGENCY_DWELL_HOURS, description="Minimum hours spent in emergency mode"
    )
    emergency_position_reduction: float = Field(
        default=EMERGENCY_POSITION_REDUCTION,
        description="Fraction of each position closed on emergency entry",
    )
    emergency_time_source: Literal["wall", "candle"] = Field(
        default="candle",
        description="Measure the emergency dwell on the clock or on candle timestamps",
    )
    hedge_enabled: bool = Field(default=True, description="Emit imbalance hedge orders")
    hedge_threshold: float = Field(
        default=HEDGE_DELTA_THRESHOLD, description="Absolute net delta that triggers a hedge"
    )
    hedge_ratio: float = Field(
        default=HEDGE_RATIO, description="Fraction of the imbalance covered by a hedge"
    )
    vwap_window: int = Field(default=VWAP_WINDOW, description="Candles used for hedge VWAP")
    candle_history_length: int = Field(
        default=CANDLE_HISTORY_LENGTH, description="Candles retained per instrument"
    )
    slippage: float = Field(default=DEFAULT_SLIPPAGE, description="Simulated fill slippage")
    commission_rate: float = Field(
        default=DEFAULT_COMMISSION_RATE, description="Simulated commission per fill notional"
    )

    model_config = SettingsConfigDict(
        env_prefix="ENGINE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


class PortfolioSettings(BaseSettings):
    """Multi-instrument coordination settings."""

    allocation_strategy: Literal["equal", "custom", "volatility", "market_cap"] = Field(
        default="equal", description="Capital allocation rule"
    )
    custom_weights_raw: str = Field(
        default="",
        alias="custom_weights",
        description="Custom weights as SYMBOL=weight pairs (comma-separated)",
    )
    portfolio_risk_limit: float = Field(
        default=PORTFOLIO_RISK_LIMIT,
        description="Max fraction of equity committed to a single symbol",
    )
    correlation_limit: float = Field(
        default=0.7, description="Absolute correlation above which pairs are vetoed"
    )
    correlation_refresh_seconds: float = Field(
        default=86400.0, description="Interval between correlation matrix refreshes"
    )
    correlation_min_samples: int = Field(
        default=CORRELATION_MIN_SAMPLES,
        description="Overlapping returns required for a correlation coefficient",
    )
    risk_refresh_seconds: float = Field(
        default=300.0, description="Interval between portfolio risk snapshots"
    )
    equity_history_length: int = Field(
        default=EQUITY_HISTORY_LENGTH, description="Equity samples retained"
    )
    max_fetch_concurrency: int = Field(
        default=MAX_FETCH_CONCURRENCY, description="Cap on concurrent initialization fetches"
    )
    history_limit: int = Field(
        default=100, description="Candles fetched per symbol for allocation"
    )

    @property
    def custom_weights(self) -> dict[str, float]:
        """Parse SYMBOL=weight pairs into a mapping."""
        weights: dict[str, float] = {}
        for item in self.custom_weights_raw.split(","):
            if "=" not in item:
                continue
            symbol, value = item.split("=", 1)
            weights[symbol.strip()] = float(value)
        return weights

    model_config = SettingsConfigDict(
        env_prefix="PORTFOLIO_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )


class LedgerSettings(BaseSettings):
    """Order ledger reconciliation settings."""

    reconcile_interval_seconds: float = Field(
        default=60.0, description="Seconds between pending-order polls"
    )
    kill_switch_path: str = Field(
        default="data/kill-switch.flag", description="Control file that halts trading"
    )
    kill_switch_poll_seconds: float = Field(
        default=5.0, description="Seconds between kill switch polls"
    )

    model_config = SettingsConfigDict(
        env_prefix="LEDGER_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


class LoggingSettings(BaseSettings):
    """Logging configuration settings."""

    level: str = Field(default="INFO", description="Logging level")
    format: Literal["json", "pretty"] = Field(default="pretty", description="Log renderer")
    file_path: Optional[str] = Field(default=None, description="Optional log file path")

    model_config = SettingsConfigDict(
        env_prefix="LOG_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


class MetricsSettings(BaseSettings):
    """Prometheus exporter settings."""

    enabled: bool = Field(default=False, description="Expose metrics over HTTP")
    port: int = Field(default=8000, description="Prometheus metrics port")

    model_config = SettingsConfigDict(
        env_prefix="METRICS_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


class Settings(BaseSettings):
    """
    Main settings class combining all configuration domains.

    Loads configuration from environment variables and .env file. Components
    read thresholds through ``get`` with dotted keys so they can also be
    handed a plain mapping in tests.
    """

    exchange: ExchangeSettings = Field(default_factory=ExchangeSettings)
    trading: TradingSettings = Field(default_factory=TradingSettings)
    risk: RiskSettings = Field(default_factory=RiskSettings)
    engine: EngineSettings = Field(default_factory=EngineSettings)
    portfolio: PortfolioSettings = Field(default_factory=PortfolioSettings)
    ledger: LedgerSettings = Field(default_factory=LedgerSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    metrics: MetricsSettings = Field(default_factory=MetricsSettings)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    def get(self, key: str, default: Any = None) -> Any:
        """
        Look up a value by dotted key.

        Args:
            key: Dotted path such as "risk.max_risk_per_trade"
            default: Value returned when any segment is missing

        Returns:
            The configured value or the default
        """
        node: Any = self
        for part in key.split("."):
            if isinstance(node, dict):
                if part not in node:
                    return default
                node = node[part]
            elif hasattr(node, part):
                node = getattr(node, part)
            else:
                return default
        return node


def load_settings(**overrides: Any) -> Settings:
    """
    Build a fresh Settings instance.

    Args:
        **overrides: Section models or values replacing the loaded ones

    Returns:
        New Settings instance
    """
    return Settings(**overrides)
