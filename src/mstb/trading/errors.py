"""
Error taxonomy for the trading core.

Recoverable errors are caught and logged at component boundaries. A halt
is only ever caused by the kill switch.
"""


class TradingError(Exception):
    """Base class for trading core errors."""


class OrderNotFound(TradingError):
    def __init__(self, order_id: str):
        super().__init__(f"Order not found: {order_id}")
        self.order_id = order_id


class InvalidStateTransition(TradingError):
    """Mutation attempted on an order whose status does not allow it."""

    def __init__(self, order_id: str, current: str, target: str):
        super().__init__(f"Order {order_id} cannot move from {current} to {target}")
        self.order_id = order_id
        self.current = current
        self.target = target


class InsufficientBalance(TradingError):
    """Buy notional exceeds available balance. The signal is dropped."""


class InsufficientPosition(TradingError):
    """Sell amount exceeds the held long. The signal is dropped."""


class RiskLimitExceeded(TradingError):
    """Signal risk over the per-trade limit. The amount is shrunk."""


class ExchangeCommError(TradingError):
    """Transient failure talking to the exchange."""


class StrategyExecutionError(TradingError):
    """A signal provider raised. Treated as an empty signal set."""


class TradingHalted(TradingError):
    """New orders refused after the kill switch was observed."""
