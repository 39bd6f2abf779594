"""
Unit tests for cross-instrument risk analysis.

Tests cover:
- Pearson correlation edge cases
- Correlation matrix refresh gating
- Highly correlated pair selection
- VaR, expected shortfall, concentration and stress scenarios
"""

import pytest

from mstb.portfolio.risk import PortfolioRiskAnalyzer, pearson
from mstb.trading.models import Position, PositionSide

RETURNS = [0.01, -0.02, 0.015, 0.003, -0.007, 0.02, -0.01, 0.004, 0.011, -0.005, 0.008, -0.012]


def position(symbol: str, amount: float, price: float, side=PositionSide.LONG) -> Position:
    return Position(symbol=symbol, side=side, amount=amount, entry_price=price, current_price=price)


@pytest.fixture
def analyzer(sim_clock) -> PortfolioRiskAnalyzer:
    return PortfolioRiskAnalyzer(refresh_interval_seconds=3600, clock=sim_clock)


# =============================================================================
# Pearson Tests
# =============================================================================


@pytest.mark.unit
class TestPearson:
    """Test the correlation coefficient."""

    def test_identical_series(self):
        """Test a series is perfectly correlated with itself."""
        assert pearson(RETURNS, RETURNS) == pytest.approx(1.0)

    def test_inverted_series(self):
        """Test a negated series is perfectly anti-correlated."""
        assert pearson(RETURNS, [-r for r in RETURNS]) == pytest.approx(-1.0)

    def test_too_few_samples(self):
        """Test fewer than ten overlapping samples yields 0."""
        assert pearson(RETURNS[:9], RETURNS[:9]) == 0.0

    def test_constant_series(self):
        """Test a constant series yields 0."""
        assert pearson(RETURNS, [0.01] * len(RETURNS)) == 0.0

    def test_uses_overlapping_tail(self):
        """Test series of different lengths are aligned on their tails."""
        assert pearson([0.5, 0.9] + RETURNS, RETURNS) == pytest.approx(1.0)


# =============================================================================
# Correlation Matrix Tests
# =============================================================================


@pytest.mark.unit
class TestCorrelationMatrix:
    """Test the cached correlation matrix."""

    def test_matrix_symmetric_with_unit_diagonal(self, analyzer):
        """Test symmetry and diagonal."""
        analyzer.update_correlation_matrix(
            {"BTC/USDT": RETURNS, "ETH/USDT": RETURNS[::-1], "SOL/USDT": RETURNS}
        )

        matrix = analyzer.get_correlation_matrix()
        for a in matrix:
            assert matrix[a][a] == 1.0
            for b in matrix:
                assert matrix[a][b] == pytest.approx(matrix[b][a])
                assert -1.0 <= matrix[a][b] <= 1.0
        assert analyzer.get_correlation("BTC/USDT", "SOL/USDT") == pytest.approx(1.0)

    def test_refresh_is_gated_by_interval(self, analyzer, sim_clock):
        """Test the matrix is only recomputed after the refresh interval."""
        assert analyzer.update_correlation_matrix({"A": RETURNS, "B": RETURNS})
        assert not analyzer.update_correlation_matrix({"A": RETURNS, "B": RETURNS[::-1]})
        assert analyzer.get_correlation("A", "B") == pytest.approx(1.0)

        sim_clock.advance_seconds(3600)

        assert analyzer.update_correlation_matrix({"A": RETURNS, "B": RETURNS[::-1]})
        assert analyzer.get_correlation("A", "B") != pytest.approx(1.0)

    def test_force_bypasses_interval(self, analyzer):
        """Test force=True always recomputes."""
        analyzer.update_correlation_matrix({"A": RETURNS, "B": RETURNS})

        assert analyzer.update_correlation_matrix({"A": RETURNS, "B": RETURNS}, force=True)

    def test_unknown_pair_is_uncorrelated(self, analyzer):
        """Test symbols outside the matrix read as 0."""
        assert analyzer.get_correlation("A", "B") == 0.0
        assert analyzer.get_correlation("A", "A") == 1.0

    def test_highly_correlated_pairs(self, analyzer):
        """Test pairs over the threshold, ordered and including negatives."""
        analyzer.update_correlation_matrix(
            {
                "ETH/USDT": RETURNS,
                "BTC/USDT": RETURNS,
                "XRP/USDT": [-r for r in RETURNS],
                "SOL/USDT": RETURNS[:5],
            }
        )

        pairs = analyzer.get_highly_correlated_pairs(0.7)

        assert [(a, b) for a, b, _ in pairs] == [
            ("BTC/USDT", "ETH/USDT"),
            ("BTC/USDT", "XRP/USDT"),
            ("ETH/USDT", "XRP/USDT"),
        ]
        assert pairs[1][2] == pytest.approx(-1.0)


# =============================================================================
# Risk Snapshot Tests
# =============================================================================


@pytest.mark.unit
class TestRiskSnapshot:
    """Test portfolio risk figures."""

    def test_var_and_concentration(self, analyzer):
        """Test BTC 10 @ 100 and ETH 5 @ 100 on 10000 equity."""
        snapshot = analyzer.analyze_portfolio_risk(
            {
                "BTC/USDT": [position("BTC/USDT", 10, 100.0)],
                "ETH/USDT": [position("ETH/USDT", 5, 100.0)],
            },
            total_equity=10000.0,
        )

        assert snapshot.total_exposure == pytest.approx(1500.0)
        assert snapshot.value_at_risk == pytest.approx(30.0)
        assert snapshot.expected_shortfall == pytest.approx(45.0)
        assert snapshot.concentration_risk == pytest.approx(5 / 9)
        assert analyzer.latest_snapshot is snapshot

    def test_var_capped_at_ten_percent_of_equity(self, analyzer):
        """Test VaR never exceeds 10% of equity."""
        snapshot = analyzer.analyze_portfolio_risk(
            {"BTC/USDT": [position("BTC/USDT", 10, 100.0)]}, total_equity=100.0
        )

        assert snapshot.value_at_risk == pytest.approx(10.0)
        assert snapshot.expected_shortfall == pytest.approx(15.0)

    def test_stress_scenarios(self, analyzer):
        """Test the three stress losses."""
        snapshot = analyzer.analyze_portfolio_risk(
            {
                "BTC/USDT": [position("BTC/USDT", 10, 100.0)],
                "ETH/USDT": [position("ETH/USDT", 5, 100.0, PositionSide.SHORT)],
            },
            total_equity=10000.0,
        )

        losses = {s.name: s.loss for s in snapshot.stress_scenarios}
        assert losses["market_drop_5pct"] == pytest.approx(75.0)
        assert losses["largest_position_drop_10pct"] == pytest.approx(100.0)
        assert losses["liquidity_crunch"] == pytest.approx(15.0)

    def test_correlation_risk_uses_weights(self, analyzer):
        """Test positive correlations weighted by allocation."""
        analyzer.update_correlation_matrix({"A": RETURNS, "B": RETURNS})

        snapshot = analyzer.analyze_portfolio_risk({}, 1000.0, {"A": 0.5, "B": 0.5})

        assert snapshot.correlation_risk == pytest.approx(0.25)

    def test_empty_portfolio(self, analyzer):
        """Test no positions gives a zero snapshot."""
        snapshot = analyzer.analyze_portfolio_risk({}, total_equity=1000.0)

        assert snapshot.value_at_risk == 0.0
        assert snapshot.concentration_risk == 0.0
        assert snapshot.to_dict()["stress_scenarios"][0]["loss"] == 0.0
