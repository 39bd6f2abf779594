"""
Multi-instrument coordinator.

The coordinator owns one InstrumentEngine per symbol and drives them through
a cooperative cycle:

1. stop everything if the kill switch is set
2. update every engine without forwarding, collecting raw signals
3. drop signals that would push a symbol over the portfolio risk budget
4. veto same-direction signals on highly correlated pairs, keeping the
   symbol with the larger allocation weight
5. forward the survivors through each engine
6. record portfolio equity and refresh correlation and risk on their cadence

A failing engine is logged and skipped; the other symbols still run.

Example Usage:
    ```python
    coordinator = await create_coordinator(settings, connector=connector)
    coordinator.start(scheduler)
    approved = await coordinator.update({"BTC/USDT": btc_candle, "ETH/USDT": eth_candle})
    print(coordinator.get_portfolio_risk_analysis().to_dict())
    ```
"""

import asyncio
from collections import deque
from collections.abc import Callable, Mapping, Sequence

from mstb.analysis.indicators import TrendRegimeAnalyzer, calculate_returns
from mstb.analysis.signals import default_providers
from mstb.config.constants import EQUITY_HISTORY_LENGTH, PORTFOLIO_RISK_LIMIT
from mstb.config.settings import Settings
from mstb.monitoring.metrics import MetricsManager
from mstb.trading.engine import InstrumentEngine
from mstb.trading.errors import ExchangeCommError
from mstb.trading.ledger import OrderLedger
from mstb.trading.models import (
    Candle,
    Order,
    OrderSide,
    Position,
    RiskSnapshot,
    StrategyType,
    SystemMode,
)
from mstb.trading.ports import ConfigProvider, ExchangeConnector, KillSwitchSignal, SignalProvider
from mstb.utils.clock import Clock, WallClock
from mstb.utils.logger import add_context, get_logger
from mstb.utils.scheduler import Scheduler

from .allocation import AllocationManager
from .risk import PortfolioRiskAnalyzer

logger = get_logger(__name__)

KILL_SWITCH_JOB = "kill_switch_poll"


def _is_risk_increasing(order: Order) -> bool:
    return not order.reduce_only and not order.is_stop


def _keep_reductions(signals: Sequence[Order]) -> list[Order]:
    """Orders that survive a veto: reductions that are not resting stops."""
    return [s for s in signals if s.reduce_only and not s.is_stop]


class PortfolioCoordinator:
    """
    Owns the instrument engines and filters their signals at portfolio level.

    Args:
        engines: Engine per symbol
        allocation: Allocation manager holding the current weights
        risk_analyzer: Correlation and risk snapshot owner
        settings: Threshold lookups via dotted keys
        clock: Time source for the risk cadence and equity history
        kill_switch: Signal polled at the top of every cycle
        metrics: Optional Prometheus helper
    """

    def __init__(
        self,
        engines: Mapping[str, InstrumentEngine],
        allocation: AllocationManager,
        risk_analyzer: PortfolioRiskAnalyzer,
        settings: ConfigProvider,
        clock: Clock | None = None,
        kill_switch: KillSwitchSignal | None = None,
        metrics: MetricsManager | None = None,
    ):
        if not engines:
            raise ValueError("At least one engine is required")

        self.engines = dict(engines)
        self.allocation = allocation
        self.risk_analyzer = risk_analyzer
        self.clock = clock or WallClock()
        self.kill_switch = kill_switch
        self.metrics = metrics

        self.portfolio_risk_limit = settings.get(
            "portfolio.portfolio_risk_limit", PORTFOLIO_RISK_LIMIT
        )
        self.correlation_limit = settings.get("portfolio.correlation_limit", 0.7)
        self.risk_refresh_ms = int(settings.get("portfolio.risk_refresh_seconds", 300.0) * 1000)
        self.reconcile_interval = settings.get("ledger.reconcile_interval_seconds", 60.0)
        self.kill_switch_poll = settings.get("ledger.kill_switch_poll_seconds", 5.0)

        self.equity_history: deque[tuple[int, float]] = deque(
            maxlen=settings.get("portfolio.equity_history_length", EQUITY_HISTORY_LENGTH)
        )
        self.trading_enabled = True
        self.cycle = 0
        self.last_vetoes: list[dict] = []
        self._last_risk_ms: int | None = None
        self._scheduler: Scheduler | None = None

        if not self.allocation.weights:
            self.allocation.calculate_weights("equal", list(self.engines))

        logger.info(
            "portfolio_coordinator_initialized",
            symbols=sorted(self.engines),
            portfolio_risk_limit=self.portfolio_risk_limit,
            correlation_limit=self.correlation_limit,
        )

    # =========================================================================
    # Cycle
    # =========================================================================

    async def update(self, candles: Mapping[str, Candle]) -> dict[str, list[Order]]:
        """
        Run one portfolio cycle.

        Args:
            candles: Latest candle per symbol. Symbols without a candle are skipped.

        Returns:
            Signals forwarded per symbol
        """
        self.cycle += 1
        if self.check_kill_switch():
            return {}

        raw: dict[str, list[Order]] = {}
        for symbol, engine in self.engines.items():
            candle = candles.get(symbol)
            if candle is None:
                continue
            with add_context(symbol=symbol, cycle=self.cycle):
                try:
                    result = await engine.update(candle, forward=False)
                except Exception as e:
                    logger.error("engine_update_failed", error=str(e), exc_info=True)
                    continue
            if result.signals:
                raw[symbol] = list(result.signals)

        equity = self.portfolio_equity
        self.last_vetoes = []
        approved = self._apply_risk_budget(raw, equity)
        approved = self._apply_correlation_veto(approved)

        for symbol, signals in approved.items():
            if not signals:
                continue
            try:
                await self.engines[symbol].process_signals(signals)
            except Exception as e:
                logger.error("signal_forwarding_failed", symbol=symbol, error=str(e), exc_info=True)
            if self.metrics:
                for _ in signals:
                    self.metrics.record_signal(symbol, "approved")

        self._record_equity()
        self.refresh_analytics()

        if raw:
            logger.info(
                "portfolio_cycle_complete",
                cycle=self.cycle,
                raw_signals=sum(len(s) for s in raw.values()),
                approved_signals=sum(len(s) for s in approved.values()),
                vetoes=len(self.last_vetoes),
                equity=round(self.portfolio_equity, 2),
            )
        return {s: list(v) for s, v in approved.items() if v}

    def check_kill_switch(self) -> bool:
        """Halt the portfolio if the kill switch is set. Returns True when halted."""
        if not self.trading_enabled:
            return True
        if self.kill_switch is not None and self.kill_switch.is_triggered():
            self.halt("kill switch observed")
            return True
        return False

    def halt(self, reason: str) -> None:
        """Disable trading on every engine and halt their ledgers."""
        if not self.trading_enabled:
            return
        self.trading_enabled = False
        for engine in self.engines.values():
            engine.halt(reason)
        if self.metrics:
            self.metrics.update_kill_switch(True)
        logger.critical("portfolio_halted", reason=reason, cycle=self.cycle)

    # =========================================================================
    # Signal Filters
    # =========================================================================

    def _apply_risk_budget(
        self, raw: Mapping[str, list[Order]], equity: float
    ) -> dict[str, list[Order]]:
        approved: dict[str, list[Order]] = {}
        for symbol, signals in raw.items():
            increasing = [s for s in signals if _is_risk_increasing(s)]
            if not increasing:
                approved[symbol] = list(signals)
                continue
            if equity <= 0:
                self._veto(symbol, "vetoed_risk", reason="no portfolio equity")
                approved[symbol] = _keep_reductions(signals)
                continue

            engine = self.engines[symbol]
            reference = engine.candles[-1].close if engine.candles else None
            signal_notional = sum(s.notional(reference) for s in increasing)
            current_risk = self._symbol_exposure(symbol) / equity
            projected = current_risk + signal_notional / equity

            if projected > self.portfolio_risk_limit:
                self._veto(
                    symbol,
                    "vetoed_risk",
                    current_risk=round(current_risk, 4),
                    projected_risk=round(projected, 4),
                    limit=self.portfolio_risk_limit,
                    dropped=len(signals) - len(_keep_reductions(signals)),
                )
                approved[symbol] = _keep_reductions(signals)
            else:
                approved[symbol] = list(signals)
        return approved

    def _apply_correlation_veto(self, signals: Mapping[str, list[Order]]) -> dict[str, list[Order]]:
        approved = {s: list(v) for s, v in signals.items()}
        directions = {
            symbol: direction
            for symbol, orders in approved.items()
            if (direction := self._net_direction(symbol, orders)) != 0
        }
        if len(directions) < 2:
            return approved

        weights = self.allocation.weights
        for a, b, correlation in self.risk_analyzer.get_highly_correlated_pairs(self.correlation_limit):
            if a not in directions or b not in directions:
                continue
            compounding = (directions[a] == directions[b]) == (correlation > 0)
            if not compounding:
                continue

            weight_a, weight_b = weights.get(a, 0.0), weights.get(b, 0.0)
            # equal weights: the lexicographically later symbol is dropped
            loser = a if weight_a < weight_b else b
            winner = b if loser == a else a
            self._veto(
                loser,
                "vetoed_correlation",
                paired_with=winner,
                correlation=round(correlation, 4),
                weight=weights.get(loser, 0.0),
                dropped=len(approved[loser]) - len(_keep_reductions(approved[loser])),
            )
            approved[loser] = _keep_reductions(approved[loser])
            directions.pop(loser)
        return approved

    def _net_direction(self, symbol: str, orders: Sequence[Order]) -> int:
        engine = self.engines[symbol]
        reference = engine.candles[-1].close if engine.candles else None
        net = sum(
            o.notional(reference) * (1 if o.side is OrderSide.BUY else -1)
            for o in orders
            if _is_risk_increasing(o)
        )
        return (net > 0) - (net < 0)

    def _veto(self, symbol: str, outcome: str, **details) -> None:
        self.last_vetoes.append({"symbol": symbol, "outcome": outcome, **details})
        if self.metrics:
            self.metrics.record_signal(symbol, outcome)
        logger.warning("signals_vetoed", symbol=symbol, outcome=outcome, **details)

    # =========================================================================
    # Equity and Analytics
    # =========================================================================

    @property
    def portfolio_equity(self) -> float:
        return sum(engine.equity for engine in self.engines.values())

    def _symbol_exposure(self, symbol: str) -> float:
        return sum(abs(p.notional) for p in self.engines[symbol].ledger.get_positions(symbol))

    def positions_by_symbol(self) -> dict[str, list[Position]]:
        return {
            symbol: engine.ledger.get_positions(symbol)
            for symbol, engine in self.engines.items()
        }

    def _record_equity(self) -> None:
        equity = self.portfolio_equity
        self.equity_history.append((self.clock.now_ms(), equity))
        if self.metrics:
            self.metrics.update_portfolio(equity)

    def refresh_analytics(self, force: bool = False) -> None:
        """Refresh correlation and the risk snapshot when their intervals have passed."""
        returns = {
            symbol: calculate_returns(list(engine.candles))
            for symbol, engine in self.engines.items()
        }
        self.risk_analyzer.update_correlation_matrix(returns, force=force)

        now = self.clock.now_ms()
        if force or self._last_risk_ms is None or now - self._last_risk_ms >= self.risk_refresh_ms:
            snapshot = self.risk_analyzer.analyze_portfolio_risk(
                self.positions_by_symbol(), self.portfolio_equity, self.allocation.weights
            )
            self._last_risk_ms = now
            if self.metrics:
                self.metrics.update_portfolio(self.portfolio_equity, snapshot.value_at_risk)

    def get_portfolio_risk_analysis(self) -> RiskSnapshot:
        return self.risk_analyzer.latest_snapshot

    def get_status(self) -> dict:
        return {
            "cycle": self.cycle,
            "trading_enabled": self.trading_enabled,
            "portfolio_equity": self.portfolio_equity,
            "weights": dict(self.allocation.weights),
            "engines": {s: e.get_status() for s, e in self.engines.items()},
            "risk": self.get_portfolio_risk_analysis().to_dict(),
            "equity_history_length": len(self.equity_history),
            "last_vetoes": list(self.last_vetoes),
        }

    def set_system_mode(self, mode: SystemMode | str, symbols: Sequence[str] | None = None) -> dict[str, bool]:
        targets = symbols or list(self.engines)
        return {s: self.engines[s].set_system_mode(mode) for s in targets if s in self.engines}

    # =========================================================================
    # Live Operation
    # =========================================================================

    def start(self, scheduler: Scheduler) -> None:
        """Schedule ledger reconciliation and kill switch polling."""
        self._scheduler = scheduler
        for ledger in self._ledgers():
            ledger.start_reconciliation(scheduler, self.reconcile_interval)
        if self.kill_switch is not None:
            scheduler.every(self.kill_switch_poll, self._poll_kill_switch, name=KILL_SWITCH_JOB)

    def stop(self) -> None:
        for ledger in self._ledgers():
            ledger.stop_reconciliation()
        if self._scheduler is not None:
            self._scheduler.cancel(KILL_SWITCH_JOB)
            self._scheduler = None

    async def fetch_latest_candles(
        self, connector: ExchangeConnector, timeframe: str, limit: int = 2, max_concurrency: int = 8
    ) -> dict[str, Candle]:
        """
        Latest closed candle per symbol, fetched concurrently.

        The exchange's last bar is the one still forming, so the bar before
        it is returned. Symbols with fewer than two bars are skipped.
        """
        limiter = asyncio.Semaphore(min(len(self.engines), max_concurrency))
        limit = max(limit, 2)

        async def fetch(symbol: str) -> tuple[str, Candle | None]:
            async with limiter:
                try:
                    candles = await connector.fetch_candles(symbol, timeframe, limit)
                except ExchangeCommError as e:
                    logger.warning("candle_fetch_failed", symbol=symbol, error=str(e))
                    return symbol, None
            return symbol, candles[-2] if len(candles) >= 2 else None

        results = await asyncio.gather(*(fetch(s) for s in self.engines))
        return {symbol: candle for symbol, candle in results if candle is not None}

    async def _poll_kill_switch(self) -> None:
        self.check_kill_switch()

    def _ledgers(self) -> list[OrderLedger]:
        seen: dict[int, OrderLedger] = {}
        for engine in self.engines.values():
            seen.setdefault(id(engine.ledger), engine.ledger)
        return list(seen.values())


# =============================================================================
# Factory
# =============================================================================


async def create_coordinator(
    settings: Settings,
    connector: ExchangeConnector | None = None,
    providers_factory: Callable[[], Mapping[StrategyType, SignalProvider]] = default_providers,
    clock: Clock | None = None,
    kill_switch: KillSwitchSignal | None = None,
    price_history: Mapping[str, Sequence[Candle]] | None = None,
    metrics: MetricsManager | None = None,
) -> PortfolioCoordinator:
    """
    Build allocation, ledgers, engines and the coordinator from settings.

    Volatility allocation fetches price history through the connector when
    none is supplied.
    """
    symbols = settings.trading.symbols
    clock = clock or WallClock()
    backtest = settings.trading.backtest

    allocation = AllocationManager(
        atr_period=settings.risk.atr_period,
        max_fetch_concurrency=settings.portfolio.max_fetch_concurrency,
    )
    if (
        settings.portfolio.allocation_strategy == "volatility"
        and price_history is None
        and connector is not None
    ):
        price_history = await allocation.fetch_price_history(
            connector, symbols, settings.trading.timeframe, settings.portfolio.history_limit
        )
    allocation.calculate_weights(
        settings.portfolio.allocation_strategy,
        symbols,
        price_history,
        settings.portfolio.custom_weights,
    )

    engines: dict[str, InstrumentEngine] = {}
    for symbol in symbols:
        ledger = OrderLedger(
            exchange=None if backtest else connector, clock=clock, metrics=metrics, name=symbol
        )
        engine = InstrumentEngine(
            symbol=symbol,
            ledger=ledger,
            providers=providers_factory(),
            settings=settings,
            initial_balance=allocation.initial_balance(symbol, settings.trading.initial_balance),
            analyzer=TrendRegimeAnalyzer(atr_period=settings.risk.atr_period),
            clock=clock,
            backtest=backtest,
            metrics=metrics,
        )
        if price_history and price_history.get(symbol):
            await engine.update_market_data(price_history[symbol])
        engines[symbol] = engine

    risk_analyzer = PortfolioRiskAnalyzer(
        refresh_interval_seconds=settings.portfolio.correlation_refresh_seconds,
        min_samples=settings.portfolio.correlation_min_samples,
        clock=clock,
    )
    return PortfolioCoordinator(
        engines=engines,
        allocation=allocation,
        risk_analyzer=risk_analyzer,
        settings=settings,
        clock=clock,
        kill_switch=kill_switch,
        metrics=metrics,
    )
