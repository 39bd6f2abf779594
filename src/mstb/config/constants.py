"""
Risk Management Constants for the MSTB Trading Bot.

This module defines the default risk parameters, limits and thresholds used
by the order ledger, the per-instrument engines and the portfolio coordinator.
Settings fall back to these values when no environment override is present.

All constants are immutable (Final) to prevent accidental modification during runtime.
"""

from typing import Final


# =============================================================================
# Per-Trade Risk
# =============================================================================

MAX_RISK_PER_TRADE: Final[float] = 0.01
"""
Fraction of account balance that a single trade may put at risk (1%).
Risk is measured as amount times the distance to the protective stop.
"""

ATR_PERIOD: Final[int] = 14
"""
Lookback window for the Average True Range used to size stops.
"""

ATR_STOP_MULTIPLIER: Final[float] = 1.5
"""
Stop distance used when a signal carries no paired stop order, in ATRs.
"""

NOTIONAL_CAP_MULTIPLIER: Final[float] = 10.0
"""
Absolute notional cap for a single signal, as a multiple of the max risk amount.
"""

MIN_ORDER_AMOUNT: Final[float] = 1e-8
"""
Amounts below this are dropped after risk shrinking.
"""

MARGIN_RATE: Final[float] = 0.10
"""
Margin reserved per unit of open position notional (10%).
"""

RISK_REDUCTION_FACTOR: Final[float] = 0.5
"""
Signal size multiplier while an engine runs in risk_reduction mode.
"""


# =============================================================================
# Capital Protection
# =============================================================================

MAX_DAILY_LOSS_PCT: Final[float] = 0.05
"""
Maximum daily loss threshold (5% of starting daily balance).
The engine drops to standby for the rest of the day when breached.
"""

PORTFOLIO_RISK_LIMIT: Final[float] = 0.20
"""
Maximum fraction of portfolio equity committed to one symbol.
"""


# =============================================================================
# Emergency Mode
# =============================================================================

EMERGENCY_THRESHOLD: Final[float] = 0.15
"""
Absolute 24h price change (15%) that forces an engine into emergency mode.
"""

EMERGENCY_RECOVERY_THRESHOLD: Final[float] = 0.075
"""
Every price change sample inside the dwell window must stay below 7.5%
before an engine may leave emergency mode.
"""

EMERGENCY_DWELL_HOURS: Final[float] = 24.0
"""
Minimum time an engine stays in emergency mode.
"""

EMERGENCY_POSITION_REDUCTION: Final[float] = 0.5
"""
Fraction of every open position closed when emergency mode is entered.
"""

PRICE_CHANGE_WINDOW_MS: Final[int] = 24 * 60 * 60 * 1000
"""
Lookback used for the rolling price change evaluation (24 hours).
"""


# =============================================================================
# Hedging
# =============================================================================

HEDGE_DELTA_THRESHOLD: Final[float] = 0.15
"""
Absolute net delta at which a hedge order is emitted.
"""

HEDGE_RATIO: Final[float] = 0.4
"""
Fraction of the long/short notional imbalance covered by a hedge.
"""

VWAP_WINDOW: Final[int] = 20
"""
Candles used for the volume-weighted hedge price.
"""


# =============================================================================
# Portfolio Risk
# =============================================================================

VAR_RATE: Final[float] = 0.02
"""
Value at risk per unit of gross notional (2%).
"""

VAR_EQUITY_CAP: Final[float] = 0.10
"""
Value at risk never exceeds this fraction of equity (10%).
"""

EXPECTED_SHORTFALL_MULTIPLIER: Final[float] = 1.5
"""
Expected shortfall as a multiple of value at risk.
"""

CORRELATION_MIN_SAMPLES: Final[int] = 10
"""
Overlapping return samples required before a pair gets a coefficient.
"""

MIN_VOLATILITY_CANDLES: Final[int] = 30
"""
Candles per symbol required for volatility-weighted allocation.
"""

STRESS_MARKET_DROP: Final[float] = 0.05
"""
Market-wide drop applied to gross notional in the market stress scenario.
"""

STRESS_LARGEST_POSITION_DROP: Final[float] = 0.10
"""
Drop applied to the largest single-symbol exposure.
"""

STRESS_LIQUIDITY_COST: Final[float] = 0.01
"""
Exit cost per unit of gross notional when liquidity dries up.
"""


# =============================================================================
# Buffers and Concurrency
# =============================================================================

CANDLE_HISTORY_LENGTH: Final[int] = 100
"""
Candles retained per instrument.
"""

EQUITY_HISTORY_LENGTH: Final[int] = 1000
"""
Portfolio equity samples retained by the coordinator.
"""

MAX_FETCH_CONCURRENCY: Final[int] = 8
"""
Upper bound on concurrent exchange fetches during initialization.
"""


# =============================================================================
# Backtest Simulation
# =============================================================================

DEFAULT_SLIPPAGE: Final[float] = 0.0005
"""
Simulated slippage applied to backtest fills (0.05%).
"""

DEFAULT_COMMISSION_RATE: Final[float] = 0.001
"""
Simulated commission charged on backtest fill notional (0.1%).
"""
