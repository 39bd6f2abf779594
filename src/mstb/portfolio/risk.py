"""
Cross-instrument risk analysis.

The analyzer owns the correlation matrix and the latest risk snapshot.
Both are recomputed on a fixed cadence rather than on every tick.
"""

from collections.abc import Mapping, Sequence
from itertools import combinations

import numpy as np

from mstb.config.constants import (
    CORRELATION_MIN_SAMPLES,
    EXPECTED_SHORTFALL_MULTIPLIER,
    STRESS_LARGEST_POSITION_DROP,
    STRESS_LIQUIDITY_COST,
    STRESS_MARKET_DROP,
    VAR_EQUITY_CAP,
    VAR_RATE,
)
from mstb.trading.models import Position, PositionSide, RiskSnapshot, StressScenario
from mstb.utils.clock import Clock, WallClock
from mstb.utils.logger import get_logger

logger = get_logger(__name__)


def pearson(a: Sequence[float], b: Sequence[float], min_samples: int = CORRELATION_MIN_SAMPLES) -> float:
    """
    Pearson correlation of the overlapping tails of two return series.

    Returns 0 when fewer than min_samples values overlap or either series
    is constant.
    """
    n = min(len(a), len(b))
    if n < min_samples:
        return 0.0
    x = np.asarray(a[-n:], dtype=float)
    y = np.asarray(b[-n:], dtype=float)
    if np.std(x) == 0 or np.std(y) == 0:
        return 0.0
    coefficient = float(np.corrcoef(x, y)[0, 1])
    if not np.isfinite(coefficient):
        return 0.0
    return float(np.clip(coefficient, -1.0, 1.0))


class PortfolioRiskAnalyzer:
    """
    Correlation matrix and portfolio risk snapshot.

    Args:
        refresh_interval_seconds: Minimum time between correlation refreshes
        min_samples: Overlapping returns needed for a coefficient
        clock: Time source for the refresh gate
    """

    def __init__(
        self,
        refresh_interval_seconds: float = 86400.0,
        min_samples: int = CORRELATION_MIN_SAMPLES,
        clock: Clock | None = None,
    ):
        self.refresh_interval_ms = int(refresh_interval_seconds * 1000)
        self.min_samples = min_samples
        self.clock = clock or WallClock()
        self._matrix: dict[str, dict[str, float]] = {}
        self._last_update_ms: int | None = None
        self._snapshot = RiskSnapshot()

    # =========================================================================
    # Correlation
    # =========================================================================

    def update_correlation_matrix(
        self, returns_by_symbol: Mapping[str, Sequence[float]], force: bool = False
    ) -> bool:
        """
        Recompute the correlation matrix if the refresh interval has passed.

        Args:
            returns_by_symbol: Per-period returns per symbol, oldest first
            force: Recompute regardless of the interval

        Returns:
            True if the matrix was recomputed
        """
        now = self.clock.now_ms()
        if (
            not force
            and self._last_update_ms is not None
            and now - self._last_update_ms < self.refresh_interval_ms
        ):
            return False

        symbols = sorted(returns_by_symbol)
        matrix: dict[str, dict[str, float]] = {s: {s: 1.0} for s in symbols}
        for a, b in combinations(symbols, 2):
            coefficient = pearson(returns_by_symbol[a], returns_by_symbol[b], self.min_samples)
            matrix[a][b] = coefficient
            matrix[b][a] = coefficient

        self._matrix = matrix
        self._last_update_ms = now
        logger.info(
            "correlation_matrix_updated",
            symbols=len(symbols),
            samples={s: len(returns_by_symbol[s]) for s in symbols},
        )
        return True

    def get_correlation(self, a: str, b: str) -> float:
        if a == b:
            return 1.0
        return self._matrix.get(a, {}).get(b, 0.0)

    def get_correlation_matrix(self) -> dict[str, dict[str, float]]:
        return {s: dict(row) for s, row in self._matrix.items()}

    def get_highly_correlated_pairs(self, threshold: float) -> list[tuple[str, str, float]]:
        """
        Symbol pairs whose absolute correlation exceeds threshold.

        Returns:
            (symbol_a, symbol_b, coefficient) with symbol_a < symbol_b, sorted
        """
        pairs = []
        for a, b in combinations(sorted(self._matrix), 2):
            coefficient = self._matrix[a].get(b, 0.0)
            if abs(coefficient) > threshold:
                pairs.append((a, b, coefficient))
        return pairs

    # =========================================================================
    # Risk Snapshot
    # =========================================================================

    def analyze_portfolio_risk(
        self,
        positions_by_symbol: Mapping[str, Sequence[Position]],
        total_equity: float,
        allocation_weights: Mapping[str, float] | None = None,
    ) -> RiskSnapshot:
        """
        Compute VaR, expected shortfall, concentration and correlation risk.

        Args:
            positions_by_symbol: Open positions per symbol
            total_equity: Portfolio equity
            allocation_weights: Weight per symbol for the correlation term

        Returns:
            New snapshot, also kept as the latest snapshot
        """
        exposure: dict[str, float] = {}
        for symbol, positions in positions_by_symbol.items():
            long_notional = sum(abs(p.notional) for p in positions if p.side is PositionSide.LONG)
            short_notional = sum(abs(p.notional) for p in positions if p.side is PositionSide.SHORT)
            if long_notional + short_notional > 0:
                exposure[symbol] = long_notional + short_notional

        gross = sum(exposure.values())
        value_at_risk = gross * VAR_RATE
        if total_equity > 0:
            value_at_risk = min(value_at_risk, total_equity * VAR_EQUITY_CAP)

        concentration = sum((v / gross) ** 2 for v in exposure.values()) if gross > 0 else 0.0

        weights = dict(allocation_weights) if allocation_weights else {
            s: 1.0 / len(exposure) for s in exposure
        }
        pair_terms = [
            max(0.0, self.get_correlation(a, b)) * weights[a] * weights[b]
            for a, b in combinations(sorted(weights), 2)
        ]
        correlation_risk = float(np.mean(pair_terms)) if pair_terms else 0.0

        snapshot = RiskSnapshot(
            value_at_risk=value_at_risk,
            expected_shortfall=value_at_risk * EXPECTED_SHORTFALL_MULTIPLIER,
            concentration_risk=concentration,
            correlation_risk=correlation_risk,
            stress_scenarios=self._stress_scenarios(exposure, gross, total_equity),
            total_exposure=gross,
            total_equity=total_equity,
            timestamp=self.clock.now_ms(),
        )
        self._snapshot = snapshot

        logger.info(
            "portfolio_risk_analyzed",
            value_at_risk=round(value_at_risk, 2),
            concentration=round(concentration, 4),
            correlation_risk=round(correlation_risk, 4),
            gross_exposure=round(gross, 2),
        )
        return snapshot

    @property
    def latest_snapshot(self) -> RiskSnapshot:
        return self._snapshot

    @staticmethod
    def _stress_scenarios(
        exposure: Mapping[str, float], gross: float, equity: float
    ) -> list[StressScenario]:
        largest = max(exposure.values(), default=0.0)
        losses = [
            ("market_drop_5pct", gross * STRESS_MARKET_DROP),
            ("largest_position_drop_10pct", largest * STRESS_LARGEST_POSITION_DROP),
            ("liquidity_crunch", gross * STRESS_LIQUIDITY_COST),
        ]
        return [
            StressScenario(name=name, loss=loss, loss_pct=loss / equity if equity > 0 else 0.0)
            for name, loss in losses
        ]
