"""
Prometheus metrics for the MSTB trading bot.

All collectors live on a private registry so several ledgers or coordinators
can exist in one process (tests, backtests) without clashing with the
default global registry.
"""

from datetime import UTC, datetime

from prometheus_client import (
    CollectorRegistry,
    Counter,
    Gauge,
    Info,
    generate_latest,
    start_http_server,
)

REGISTRY = CollectorRegistry()


# =============================================================================
# System Info
# =============================================================================

SYSTEM_INFO = Info(
    "mstb_system",
    "MSTB trading bot system information",
    registry=REGISTRY,
)

PROCESS_UPTIME = Gauge(
    "mstb_process_uptime_seconds",
    "Seconds since the metrics manager was created",
    registry=REGISTRY,
)


# =============================================================================
# Ledger Metrics
# =============================================================================

ORDERS_TOTAL = Counter(
    "mstb_orders_total",
    "Order status transitions recorded by the ledger",
    ["symbol", "side", "order_type", "status"],
    registry=REGISTRY,
)

FILLS_TOTAL = Counter(
    "mstb_fills_total",
    "Fills applied to positions",
    ["symbol", "side"],
    registry=REGISTRY,
)

RECONCILE_ERRORS = Counter(
    "mstb_reconcile_errors_total",
    "Exchange failures while polling pending orders",
    ["symbol"],
    registry=REGISTRY,
)

POSITION_SIZE = Gauge(
    "mstb_position_size",
    "Current position size in base currency",
    ["symbol", "side"],
    registry=REGISTRY,
)

POSITION_PNL = Gauge(
    "mstb_position_unrealized_pnl",
    "Unrealized P&L of the position",
    ["symbol", "side"],
    registry=REGISTRY,
)


# =============================================================================
# Engine and Portfolio Metrics
# =============================================================================

SYSTEM_MODE = Gauge(
    "mstb_system_mode",
    "1 for the engine's active mode, 0 for the others",
    ["symbol", "mode"],
    registry=REGISTRY,
)

SIGNALS_TOTAL = Counter(
    "mstb_signals_total",
    "Signals by outcome (approved, vetoed_risk, vetoed_correlation, dropped)",
    ["symbol", "outcome"],
    registry=REGISTRY,
)

PORTFOLIO_EQUITY = Gauge(
    "mstb_portfolio_equity",
    "Sum of instrument equities",
    registry=REGISTRY,
)

PORTFOLIO_VAR = Gauge(
    "mstb_portfolio_value_at_risk",
    "Latest portfolio value at risk",
    registry=REGISTRY,
)

KILL_SWITCH_STATUS = Gauge(
    "mstb_kill_switch_active",
    "1 once the kill switch has been observed",
    registry=REGISTRY,
)


# =============================================================================
# Metrics Manager
# =============================================================================


class MetricsManager:
    """
    Helper methods over the module collectors plus the HTTP exporter.
    """

    def __init__(self, port: int = 8000, version: str = "0.1.0"):
        self.port = port
        self.version = version
        self._start_time = datetime.now(UTC)
        self._server_started = False

    def start_server(self, mode: str = "paper") -> None:
        """Expose the registry over HTTP. Safe to call more than once."""
        if self._server_started:
            return
        SYSTEM_INFO.info({"version": self.version, "mode": mode})
        start_http_server(self.port, registry=REGISTRY)
        self._server_started = True

    def get_metrics(self) -> bytes:
        return generate_latest(REGISTRY)

    def update_uptime(self) -> None:
        PROCESS_UPTIME.set((datetime.now(UTC) - self._start_time).total_seconds())

    def record_order(self, symbol: str, side: str, order_type: str, status: str) -> None:
        ORDERS_TOTAL.labels(
            symbol=symbol, side=side, order_type=order_type, status=status
        ).inc()

    def record_fill(self, symbol: str, side: str) -> None:
        FILLS_TOTAL.labels(symbol=symbol, side=side).inc()

    def record_reconcile_error(self, symbol: str) -> None:
        RECONCILE_ERRORS.labels(symbol=symbol).inc()

    def update_position(self, symbol: str, side: str, size: float, pnl: float) -> None:
        POSITION_SIZE.labels(symbol=symbol, side=side).set(size)
        POSITION_PNL.labels(symbol=symbol, side=side).set(pnl)

    def update_mode(self, symbol: str, mode: str, all_modes: list[str]) -> None:
        for candidate in all_modes:
            SYSTEM_MODE.labels(symbol=symbol, mode=candidate).set(1 if candidate == mode else 0)

    def record_signal(self, symbol: str, outcome: str) -> None:
        SIGNALS_TOTAL.labels(symbol=symbol, outcome=outcome).inc()

    def update_portfolio(self, equity: float, value_at_risk: float | None = None) -> None:
        PORTFOLIO_EQUITY.set(equity)
        if value_at_risk is not None:
            PORTFOLIO_VAR.set(value_at_risk)

    def update_kill_switch(self, active: bool) -> None:
        KILL_SWITCH_STATUS.set(1 if active else 0)
