"""
Unit tests for Prometheus metrics.
"""

import pytest

from mstb.monitoring.metrics import REGISTRY, MetricsManager


def sample(name: str, labels: dict | None = None) -> float:
    return REGISTRY.get_sample_value(name, labels or {}) or 0.0


@pytest.fixture
def metrics() -> MetricsManager:
    return MetricsManager(port=0)


@pytest.mark.unit
class TestMetricsManager:
    """Test metric helpers update the custom registry."""

    def test_counters_increment(self, metrics):
        """Test order, fill and signal counters."""
        labels = {"symbol": "TEST/USDT", "side": "buy"}
        fills_before = sample("mstb_fills_total", labels)
        vetoes_before = sample(
            "mstb_signals_total", {"symbol": "TEST/USDT", "outcome": "vetoed_risk"}
        )

        metrics.record_fill("TEST/USDT", "buy")
        metrics.record_signal("TEST/USDT", "vetoed_risk")

        assert sample("mstb_fills_total", labels) == fills_before + 1
        assert (
            sample("mstb_signals_total", {"symbol": "TEST/USDT", "outcome": "vetoed_risk"})
            == vetoes_before + 1
        )

    def test_mode_is_one_hot(self, metrics):
        """Test only the active mode is set."""
        metrics.update_mode("TEST/USDT", "emergency", ["normal", "emergency", "standby"])

        assert sample("mstb_system_mode", {"symbol": "TEST/USDT", "mode": "emergency"}) == 1.0
        assert sample("mstb_system_mode", {"symbol": "TEST/USDT", "mode": "normal"}) == 0.0

    def test_portfolio_gauges(self, metrics):
        """Test equity, VaR and kill switch gauges."""
        metrics.update_portfolio(12345.0, value_at_risk=30.0)
        metrics.update_kill_switch(True)

        assert sample("mstb_portfolio_equity") == 12345.0
        assert sample("mstb_portfolio_value_at_risk") == 30.0
        assert sample("mstb_kill_switch_active") == 1.0

        metrics.update_kill_switch(False)

    def test_exposition(self, metrics):
        """Test the text exposition contains project metrics."""
        metrics.update_position("TEST/USDT", "long", 1.5, 12.0)

        output = metrics.get_metrics().decode()

        assert 'mstb_position_size{side="long",symbol="TEST/USDT"} 1.5' in output
