"""
Trading data structures shared by the ledger, engines and coordinator.

Enums subclass str so they compare equal to the plain strings exchanges
and config files use ("buy", "filled", "trend_following").
"""

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any


# =============================================================================
# Enums
# =============================================================================


class OrderSide(str, Enum):
    BUY = "buy"
    SELL = "sell"

    @property
    def opposite(self) -> "OrderSide":
        return OrderSide.SELL if self is OrderSide.BUY else OrderSide.BUY


class OrderType(str, Enum):
    MARKET = "market"
    LIMIT = "limit"
    STOP = "stop"
    STOP_LIMIT = "stop_limit"
    STOP_MARKET = "stop_market"

    @property
    def is_stop(self) -> bool:
        return self in (OrderType.STOP, OrderType.STOP_LIMIT, OrderType.STOP_MARKET)


class OrderStatus(str, Enum):
    OPEN = "open"
    PLACED = "placed"
    FILLED = "filled"
    CANCELED = "canceled"
    REJECTED = "rejected"

    @property
    def is_terminal(self) -> bool:
        return self in (OrderStatus.FILLED, OrderStatus.CANCELED, OrderStatus.REJECTED)


class PositionSide(str, Enum):
    LONG = "long"
    SHORT = "short"

    @classmethod
    def from_order_side(cls, side: OrderSide) -> "PositionSide":
        return cls.LONG if side is OrderSide.BUY else cls.SHORT

    @property
    def closing_side(self) -> OrderSide:
        """Order side that reduces a position on this side."""
        return OrderSide.SELL if self is PositionSide.LONG else OrderSide.BUY


class SystemMode(str, Enum):
    NORMAL = "normal"
    RISK_REDUCTION = "risk_reduction"
    STANDBY = "standby"
    EMERGENCY = "emergency"
    KILL_SWITCH = "kill_switch"


class StrategyType(str, Enum):
    TREND_FOLLOWING = "trend_following"
    RANGE_TRADING = "range_trading"
    MEAN_REVERT = "mean_revert"
    DONCHIAN_BREAKOUT = "donchian_breakout"
    EMERGENCY = "emergency"


class MarketEnvironment(str, Enum):
    TRENDING_UP = "trending_up"
    TRENDING_DOWN = "trending_down"
    RANGING = "ranging"
    VOLATILE = "volatile"
    UNKNOWN = "unknown"


# =============================================================================
# Market Data
# =============================================================================


@dataclass(frozen=True)
class Candle:
    """
    OHLCV candlestick bar.

    Attributes:
        timestamp: Unix timestamp in milliseconds
        open: Opening price
        high: Highest price in period
        low: Lowest price in period
        close: Closing price
        volume: Traded volume in base currency
    """

    timestamp: int
    open: float
    high: float
    low: float
    close: float
    volume: float

    @classmethod
    def from_ccxt(cls, data: list) -> "Candle":
        """Create a Candle from the CCXT [ts, o, h, l, c, v] array format."""
        return cls(
            timestamp=int(data[0]),
            open=float(data[1]),
            high=float(data[2]),
            low=float(data[3]),
            close=float(data[4]),
            volume=float(data[5] or 0.0),
        )

    @property
    def typical_price(self) -> float:
        return (self.high + self.low + self.close) / 3

    def to_dict(self) -> dict:
        return asdict(self)


# =============================================================================
# Orders, Fills, Positions
# =============================================================================


@dataclass
class Order:
    """
    Order tracked by the ledger.

    Attributes:
        symbol: Trading pair symbol (e.g., "BTC/USDT")
        side: Order side
        type: Order type
        amount: Quantity in base currency, strictly positive
        price: Limit or reference price (optional for market orders)
        stop_price: Trigger price for stop orders
        id: Ledger-assigned identifier, empty until recorded
        external_id: Exchange order id once placed
        status: Lifecycle status
        created_at: Creation time in epoch milliseconds
        reduce_only: Order may only shrink an existing position
        oco_group: Shared id of a one-cancels-other pair
        filled_price: Execution price once filled
        error_message: Reason for rejection
    """

    symbol: str
    side: OrderSide
    type: OrderType
    amount: float
    price: float | None = None
    stop_price: float | None = None
    id: str = ""
    external_id: str | None = None
    status: OrderStatus = OrderStatus.OPEN
    created_at: int = 0
    reduce_only: bool = False
    oco_group: str | None = None
    filled_price: float | None = None
    error_message: str | None = None

    def __post_init__(self):
        self.side = OrderSide(self.side)
        self.type = OrderType(self.type)
        self.status = OrderStatus(self.status)
        if not self.amount > 0:
            raise ValueError(f"Order amount must be positive, got {self.amount}")

    @property
    def is_stop(self) -> bool:
        return self.type.is_stop

    def notional(self, reference_price: float | None = None) -> float:
        price = self.price if self.price is not None else reference_price
        if price is None:
            price = self.stop_price or 0.0
        return self.amount * price

    def to_dict(self) -> dict:
        data = asdict(self)
        data["side"] = self.side.value
        data["type"] = self.type.value
        data["status"] = self.status.value
        return data


@dataclass(frozen=True)
class Fill:
    """Execution of an order. Recorded once and never modified."""

    order_id: str
    symbol: str
    side: OrderSide
    amount: float
    price: float
    timestamp: int


@dataclass
class Position:
    """
    Open position on one side of a symbol.

    Attributes:
        symbol: Trading pair symbol
        side: Long or short
        amount: Size in base currency
        entry_price: Size-weighted average entry price
        current_price: Latest mark price
        unrealized_pnl: Mark-to-market profit or loss
        stop_price: Protective stop attached by a stop order
    """

    symbol: str
    side: PositionSide
    amount: float
    entry_price: float
    current_price: float
    unrealized_pnl: float = 0.0
    stop_price: float | None = None

    @property
    def notional(self) -> float:
        return self.amount * self.current_price

    def mark(self, price: float) -> None:
        """Re-mark the position at a new price."""
        self.current_price = price
        direction = 1.0 if self.side is PositionSide.LONG else -1.0
        self.unrealized_pnl = (price - self.entry_price) * self.amount * direction

    def to_dict(self) -> dict:
        data = asdict(self)
        data["side"] = self.side.value
        return data


# =============================================================================
# Account and Strategy Results
# =============================================================================


@dataclass
class Account:
    """Per-instrument account view."""

    balance: float
    available: float
    positions: list[Position] = field(default_factory=list)
    margin_used: float = 0.0
    daily_pnl: float = 0.0
    daily_pnl_percentage: float = 0.0

    def to_dict(self) -> dict:
        return {
            "balance": self.balance,
            "available": self.available,
            "margin_used": self.margin_used,
            "daily_pnl": self.daily_pnl,
            "daily_pnl_percentage": self.daily_pnl_percentage,
            "positions": [p.to_dict() for p in self.positions],
        }


@dataclass
class StrategyResult:
    """Output of one strategy evaluation."""

    strategy: StrategyType
    signals: list[Order] = field(default_factory=list)
    timestamp: int = 0
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class MarketAnalysis:
    """Regime classification produced by a market analyzer."""

    environment: MarketEnvironment
    recommended_strategy: StrategyType
    atr: float | None = None
    trend_strength: float = 0.0
    timestamp: int = 0

    def to_dict(self) -> dict:
        return {
            "environment": self.environment.value,
            "recommended_strategy": self.recommended_strategy.value,
            "atr": self.atr,
            "trend_strength": self.trend_strength,
            "timestamp": self.timestamp,
        }


@dataclass(frozen=True)
class EmergencyOverride:
    """Record of a forced switch into emergency mode."""

    symbol: str
    price_change: float
    reference_price: float
    price: float
    triggered_at: int
    reduce_orders: int


# =============================================================================
# Portfolio Risk
# =============================================================================


@dataclass
class StressScenario:
    name: str
    loss: float
    loss_pct: float

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class RiskSnapshot:
    """Portfolio-level risk figures, recomputed on a fixed cadence."""

    value_at_risk: float = 0.0
    expected_shortfall: float = 0.0
    concentration_risk: float = 0.0
    correlation_risk: float = 0.0
    stress_scenarios: list[StressScenario] = field(default_factory=list)
    total_exposure: float = 0.0
    total_equity: float = 0.0
    timestamp: int = 0

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["stress_scenarios"] = [s.to_dict() for s in self.stress_scenarios]
        return data
