"""
Collaborator interfaces consumed by the trading core.

Concrete exchange adapters live in mstb.data.exchange; kill switches in
mstb.trading.kill_switch; the default market analyzer in
mstb.analysis.indicators.
"""

from collections.abc import Sequence
from typing import Any, Protocol, runtime_checkable

from .models import Candle, MarketAnalysis, Order, Position, StrategyResult


@runtime_checkable
class ExchangeConnector(Protocol):
    """
    Exchange access used by the ledger and coordinator.

    Any method may raise ExchangeCommError on a transient failure.
    """

    async def execute_order(self, order: Order, options: dict[str, Any] | None = None) -> str | None:
        """Send an order. Returns the exchange id, or None when refused."""
        ...

    async def fetch_order(self, external_id: str, symbol: str) -> dict[str, Any] | None:
        """Return {"status", "price", "amount"} or None when unknown."""
        ...

    async def cancel_order(self, external_id: str, symbol: str) -> bool: ...

    async def create_oco_order(self, params: dict[str, Any]) -> list[str]:
        """Place a linked take-profit/stop pair. Returns both exchange ids."""
        ...

    async def fetch_candles(self, symbol: str, timeframe: str, limit: int) -> list[Candle]: ...

    async def get_latest_price(self, symbol: str) -> float: ...


class SignalProvider(Protocol):
    """Strategy for one StrategyType. May raise; the engine treats that as no signals."""

    def __call__(
        self,
        candles: Sequence[Candle],
        symbol: str,
        positions: Sequence[Position],
        balance: float,
    ) -> StrategyResult: ...


class MarketAnalyzer(Protocol):
    def analyze(self, candles: Sequence[Candle]) -> MarketAnalysis: ...


class ConfigProvider(Protocol):
    def get(self, key: str, default: Any = None) -> Any: ...


@runtime_checkable
class KillSwitchSignal(Protocol):
    def is_triggered(self) -> bool: ...
