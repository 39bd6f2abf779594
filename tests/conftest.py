"""
Shared pytest fixtures for the MSTB test suite.

This module provides fixtures for:
- Static configuration overrides
- Simulated clock and virtual-time scheduler
- Exchange connector mocks
- Candle series
- Signal providers returning fixed orders
"""

from collections.abc import Callable, Sequence
from datetime import UTC, datetime
from typing import Any
from unittest.mock import AsyncMock

import pytest

from mstb.trading.models import Candle, Order, Position, StrategyResult, StrategyType
from mstb.utils.clock import SimClock
from mstb.utils.scheduler import ManualScheduler

HOUR_MS = 60 * 60 * 1000
START_MS = int(datetime(2024, 1, 1, tzinfo=UTC).timestamp() * 1000)


# ============================================================================
# Pytest Configuration
# ============================================================================


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "unit: Unit tests")
    config.addinivalue_line("markers", "integration: Integration tests")
    config.addinivalue_line("markers", "slow: Slow-running tests")


# ============================================================================
# Configuration Fixtures
# ============================================================================


class StaticConfig:
    """ConfigProvider backed by a flat dict of dotted keys."""

    def __init__(self, values: dict[str, Any] | None = None):
        self.values = dict(values or {})

    def get(self, key: str, default: Any = None) -> Any:
        return self.values.get(key, default)


@pytest.fixture
def make_config() -> Callable[..., StaticConfig]:
    """Build a StaticConfig; hedging is off unless asked for."""

    def factory(**overrides: Any) -> StaticConfig:
        values = {"engine.hedge_enabled": False}
        values.update({key.replace("__", "."): value for key, value in overrides.items()})
        return StaticConfig(values)

    return factory


@pytest.fixture
def config(make_config) -> StaticConfig:
    return make_config()


# ============================================================================
# Time Fixtures
# ============================================================================


@pytest.fixture
def sim_clock() -> SimClock:
    return SimClock(datetime(2024, 1, 1, tzinfo=UTC))


@pytest.fixture
def scheduler(sim_clock) -> ManualScheduler:
    return ManualScheduler(sim_clock)


# ============================================================================
# Exchange Fixtures
# ============================================================================


@pytest.fixture
def mock_exchange() -> AsyncMock:
    """Exchange connector mock that accepts every order."""
    exchange = AsyncMock()
    exchange.execute_order = AsyncMock(return_value="ex-1")
    exchange.fetch_order = AsyncMock(return_value=None)
    exchange.cancel_order = AsyncMock(return_value=True)
    exchange.create_oco_order = AsyncMock(return_value=["ex-tp", "ex-sl"])
    exchange.fetch_candles = AsyncMock(return_value=[])
    exchange.get_latest_price = AsyncMock(return_value=100.0)
    return exchange


# ============================================================================
# Market Data Fixtures
# ============================================================================


def build_candles(
    closes: Sequence[float],
    start_ms: int = START_MS,
    interval_ms: int = HOUR_MS,
    spread: float = 0.0,
    volume: float = 10.0,
) -> list[Candle]:
    """Candles with the given closes, opening at the previous close."""
    candles = []
    previous = closes[0] if closes else 0.0
    for i, close in enumerate(closes):
        candles.append(
            Candle(
                timestamp=start_ms + i * interval_ms,
                open=previous,
                high=max(previous, close) + spread,
                low=min(previous, close) - spread,
                close=close,
                volume=volume,
            )
        )
        previous = close
    return candles


@pytest.fixture
def make_candles() -> Callable[..., list[Candle]]:
    return build_candles


# ============================================================================
# Signal Provider Fixtures
# ============================================================================


class StaticProvider:
    """Signal provider returning a fixed list of orders on every call."""

    def __init__(self, signals: Sequence[Order] | None = None, error: Exception | None = None):
        self.signals = list(signals or [])
        self.error = error
        self.calls = 0

    def __call__(
        self,
        candles: Sequence[Candle],
        symbol: str,
        positions: Sequence[Position],
        balance: float,
    ) -> StrategyResult:
        self.calls += 1
        if self.error is not None:
            raise self.error
        timestamp = candles[-1].timestamp if candles else 0
        return StrategyResult(
            strategy=StrategyType.TREND_FOLLOWING,
            signals=[Order(**{**s.to_dict(), "id": ""}) for s in self.signals],
            timestamp=timestamp,
        )


def providers_for(provider: StaticProvider) -> dict[StrategyType, StaticProvider]:
    """Same provider for every non-emergency strategy."""
    return {s: provider for s in StrategyType if s is not StrategyType.EMERGENCY}


@pytest.fixture
def static_provider() -> Callable[..., StaticProvider]:
    return StaticProvider


@pytest.fixture
def make_providers() -> Callable[[StaticProvider], dict[StrategyType, StaticProvider]]:
    return providers_for
