"""
Per-instrument decision loop.

Each cycle the engine ingests candles, watches the rolling 24h price change
for emergencies, classifies the market, asks the signal provider for the
selected strategy, adds hedge orders, applies the risk filters and finally
hands the surviving orders to the ledger (live) or simulates their fills
(backtest).

Modes:
    normal          full trading
    risk_reduction  new entries scaled down
    standby         no new signals (daily loss limit or manual pause)
    emergency       only reduce-only orders until the market calms down
    kill_switch     trading disabled for the rest of the run

Example Usage:
    ```python
    engine = InstrumentEngine(
        symbol="BTC/USDT",
        ledger=OrderLedger(exchange=connector),
        providers=default_providers(),
        settings=load_settings(),
        initial_balance=5000.0,
    )
    result = await engine.update(candle)
    print(engine.get_status())
    ```
"""

from collections import deque
from collections.abc import Mapping, Sequence
from dataclasses import asdict, replace
from datetime import UTC, datetime

from mstb.analysis.indicators import TrendRegimeAnalyzer, average_range, calculate_vwap
from mstb.config.constants import (
    ATR_PERIOD,
    ATR_STOP_MULTIPLIER,
    CANDLE_HISTORY_LENGTH,
    DEFAULT_COMMISSION_RATE,
    DEFAULT_SLIPPAGE,
    EMERGENCY_DWELL_HOURS,
    EMERGENCY_POSITION_REDUCTION,
    EMERGENCY_RECOVERY_THRESHOLD,
    EMERGENCY_THRESHOLD,
    HEDGE_DELTA_THRESHOLD,
    HEDGE_RATIO,
    MARGIN_RATE,
    MAX_DAILY_LOSS_PCT,
    MAX_RISK_PER_TRADE,
    MIN_ORDER_AMOUNT,
    NOTIONAL_CAP_MULTIPLIER,
    PRICE_CHANGE_WINDOW_MS,
    RISK_REDUCTION_FACTOR,
    VWAP_WINDOW,
)
from mstb.monitoring.metrics import MetricsManager
from mstb.utils.clock import Clock, WallClock
from mstb.utils.logger import get_logger

from .errors import (
    InsufficientBalance,
    InsufficientPosition,
    RiskLimitExceeded,
    StrategyExecutionError,
    TradingHalted,
)
from .ledger import OrderLedger
from .models import (
    Account,
    Candle,
    EmergencyOverride,
    MarketAnalysis,
    Order,
    OrderSide,
    OrderStatus,
    OrderType,
    PositionSide,
    StrategyResult,
    StrategyType,
    SystemMode,
)
from .ports import ConfigProvider, KillSwitchSignal, MarketAnalyzer, SignalProvider

logger = get_logger(__name__)

MS_PER_HOUR = 60 * 60 * 1000


class InstrumentEngine:
    """
    Decision loop for a single symbol.

    Args:
        symbol: Trading pair symbol
        ledger: Ledger receiving this engine's orders. May be shared.
        providers: Signal provider per strategy. Every strategy except
            emergency must be covered; an emergency provider is optional.
        settings: Threshold lookups via dotted keys
        initial_balance: Capital allocated to this symbol
        analyzer: Market regime classifier
        clock: Time source for wall-clock measurements
        kill_switch: Optional signal checked before every strategy run
        backtest: Simulate fills instead of sending orders
        metrics: Optional Prometheus helper
    """

    def __init__(
        self,
        symbol: str,
        ledger: OrderLedger,
        providers: Mapping[StrategyType, SignalProvider],
        settings: ConfigProvider,
        initial_balance: float,
        analyzer: MarketAnalyzer | None = None,
        clock: Clock | None = None,
        kill_switch: KillSwitchSignal | None = None,
        backtest: bool = False,
        metrics: MetricsManager | None = None,
    ):
        missing = [
            s.value
            for s in StrategyType
            if s is not StrategyType.EMERGENCY and s not in providers
        ]
        if missing:
            raise ValueError(f"No signal provider for strategies: {', '.join(missing)}")
        not_callable = [s.value for s, p in providers.items() if not callable(p)]
        if not_callable:
            raise ValueError(f"Signal providers must be callable: {', '.join(not_callable)}")

        self.symbol = symbol
        self.ledger = ledger
        self.providers = {StrategyType(k): v for k, v in providers.items()}
        self.analyzer = analyzer or TrendRegimeAnalyzer()
        self.clock = clock or WallClock()
        self.kill_switch = kill_switch
        self.backtest = backtest
        self.metrics = metrics
        self.initial_balance = initial_balance

        get = settings.get
        self.max_risk_per_trade = get("risk.max_risk_per_trade", MAX_RISK_PER_TRADE)
        self.max_daily_loss = get("risk.max_daily_loss", MAX_DAILY_LOSS_PCT)
        self.atr_period = get("risk.atr_period", ATR_PERIOD)
        self.atr_stop_multiplier = get("risk.atr_stop_multiplier", ATR_STOP_MULTIPLIER)
        self.notional_cap_multiplier = get("risk.notional_cap_multiplier", NOTIONAL_CAP_MULTIPLIER)
        self.min_order_amount = get("risk.min_order_amount", MIN_ORDER_AMOUNT)
        self.margin_rate = get("risk.margin_rate", MARGIN_RATE)
        self.risk_reduction_factor = get("risk.risk_reduction_factor", RISK_REDUCTION_FACTOR)

        self.emergency_threshold = get("engine.emergency_threshold", EMERGENCY_THRESHOLD)
        self.recovery_threshold = get(
            "engine.emergency_recovery_threshold", EMERGENCY_RECOVERY_THRESHOLD
        )
        self.recovery_ms = int(
            get("engine.emergency_recovery_hours", EMERGENCY_DWELL_HOURS) * MS_PER_HOUR
        )
        self.emergency_reduction = get(
            "engine.emergency_position_reduction", EMERGENCY_POSITION_REDUCTION
        )
        self.time_source = get("engine.emergency_time_source", "candle")
        self.hedge_enabled = get("engine.hedge_enabled", True)
        self.hedge_threshold = get("engine.hedge_threshold", HEDGE_DELTA_THRESHOLD)
        self.hedge_ratio = get("engine.hedge_ratio", HEDGE_RATIO)
        self.vwap_window = get("engine.vwap_window", VWAP_WINDOW)
        self.slippage = get("engine.slippage", DEFAULT_SLIPPAGE)
        self.commission_rate = get("engine.commission_rate", DEFAULT_COMMISSION_RATE)

        self.candles: deque[Candle] = deque(
            maxlen=get("engine.candle_history_length", CANDLE_HISTORY_LENGTH)
        )
        self.system_mode = SystemMode.NORMAL
        self.trading_enabled = True
        self.active_strategy = StrategyType(get("trading.strategy", StrategyType.TREND_FOLLOWING))
        self.market_analysis: MarketAnalysis | None = None
        self.last_emergency: EmergencyOverride | None = None

        self._emergency_since: int | None = None
        self._change_samples: deque[tuple[int, float]] = deque()
        self._fees_paid = 0.0
        self._day: str | None = None
        self._day_start_equity = initial_balance
        self._daily_loss_standby = False

        logger.info(
            "instrument_engine_initialized",
            symbol=symbol,
            initial_balance=initial_balance,
            backtest=backtest,
            strategies=sorted(s.value for s in self.providers),
            emergency_time_source=self.time_source,
        )

    # =========================================================================
    # Cycle
    # =========================================================================

    async def update(self, candle: Candle, forward: bool = True) -> StrategyResult:
        """
        Run one full cycle for a new candle.

        Args:
            candle: Latest candle
            forward: Send resulting signals now. The coordinator passes False
                to filter signals before forwarding them itself.

        Returns:
            Strategy result holding the signals that passed the engine's filters
        """
        await self.update_market_data([candle])
        self._update_daily_tracking()
        self.analyze_market()
        return await self.execute_strategy(forward=forward)

    async def update_market_data(self, candles: Sequence[Candle]) -> None:
        """
        Append new candles, re-mark positions and evaluate the emergency rule.

        A candle with the same timestamp as the last one replaces it; older
        candles are ignored.
        """
        latest: Candle | None = None
        for candle in candles:
            last = self.candles[-1] if self.candles else None
            if last is not None and candle.timestamp < last.timestamp:
                continue
            if last is not None and candle.timestamp == last.timestamp:
                if candle == last:
                    continue
                self.candles[-1] = candle
            else:
                self.candles.append(candle)
                if self.backtest:
                    self._match_resting_orders(candle)
            latest = candle

        if latest is None:
            return

        self.ledger.update_prices(self.symbol, latest.close)
        await self._evaluate_emergency()

    def analyze_market(self) -> MarketAnalysis | None:
        """Classify the market and cache the recommended strategy."""
        if not self.candles:
            return self.market_analysis
        try:
            analysis = self.analyzer.analyze(list(self.candles))
        except Exception as e:
            logger.error("market_analysis_failed", symbol=self.symbol, error=str(e), exc_info=True)
            return self.market_analysis

        self.market_analysis = analysis
        recommended = analysis.recommended_strategy
        if recommended is not StrategyType.EMERGENCY and recommended in self.providers:
            if recommended is not self.active_strategy:
                logger.info(
                    "strategy_switched",
                    symbol=self.symbol,
                    previous=self.active_strategy.value,
                    strategy=recommended.value,
                    environment=analysis.environment.value,
                )
            self.active_strategy = recommended
        return analysis

    async def execute_strategy(self, forward: bool = True) -> StrategyResult:
        """
        Produce this cycle's signals.

        Returns:
            StrategyResult. ``error`` is set when trading is disabled or the
            provider failed; ``signals`` is then empty.
        """
        now = self._now_ms()

        if self.kill_switch is not None and self.trading_enabled and self.kill_switch.is_triggered():
            self.halt("kill switch observed")

        if not self.trading_enabled:
            return StrategyResult(
                strategy=self.active_strategy, timestamp=now, error="trading disabled"
            )

        if self.system_mode is SystemMode.EMERGENCY:
            signals = self._emergency_strategy_signals()
            if forward:
                await self.process_signals(signals)
            return StrategyResult(strategy=StrategyType.EMERGENCY, signals=signals, timestamp=now)

        if self.system_mode is SystemMode.STANDBY:
            logger.debug("engine_in_standby", symbol=self.symbol)
            return StrategyResult(strategy=self.active_strategy, timestamp=now)

        strategy = self.active_strategy
        provider = self.providers[strategy]
        positions = self.ledger.get_positions(self.symbol)
        try:
            result = provider(list(self.candles), self.symbol, positions, self.balance)
        except Exception as e:
            error = StrategyExecutionError(f"{strategy.value} failed for {self.symbol}: {e}")
            logger.error(
                "strategy_execution_failed",
                symbol=self.symbol,
                strategy=strategy.value,
                error=str(error),
                exc_info=True,
            )
            return StrategyResult(strategy=strategy, timestamp=now, error=str(error))

        if result.error:
            logger.warning(
                "strategy_reported_error", symbol=self.symbol, strategy=strategy.value, error=result.error
            )
            return StrategyResult(strategy=strategy, timestamp=now, error=result.error)

        signals = [s for s in result.signals if s.symbol == self.symbol]
        if self.system_mode is SystemMode.RISK_REDUCTION:
            signals = self._scale_entries(signals, self.risk_reduction_factor)

        signals = self.apply_risk_filters(signals + self.compute_hedge_orders())

        if forward:
            await self.process_signals(signals)
        return StrategyResult(strategy=strategy, signals=signals, timestamp=now)

    # =========================================================================
    # Hedging and Risk Filters
    # =========================================================================

    def compute_hedge_orders(self) -> list[Order]:
        """
        One market order shrinking a long/short notional imbalance.

        The order covers hedge_ratio of the imbalance and is priced at the
        VWAP of the last vwap_window candles.
        """
        if not self.hedge_enabled or not self.candles:
            return []

        long_notional, short_notional = self._exposure()
        total = long_notional + short_notional
        if total <= 0:
            return []

        net_delta = (long_notional - short_notional) / total
        if abs(net_delta) < self.hedge_threshold:
            return []

        vwap = calculate_vwap(list(self.candles), self.vwap_window)
        if not vwap:
            return []

        side = OrderSide.SELL if net_delta > 0 else OrderSide.BUY
        amount = self.hedge_ratio * abs(long_notional - short_notional) / vwap
        held_long, held_short = self._held_amounts()
        amount = min(amount, held_long if side is OrderSide.SELL else held_short)
        if amount < self.min_order_amount:
            return []

        logger.warning(
            "position_imbalance_hedge",
            symbol=self.symbol,
            net_delta=round(net_delta, 4),
            side=side.value,
            amount=amount,
            vwap=vwap,
        )
        return [
            Order(
                symbol=self.symbol,
                side=side,
                type=OrderType.MARKET,
                amount=amount,
                price=vwap,
                created_at=self._now_ms(),
                reduce_only=True,
            )
        ]

    def apply_risk_filters(self, signals: Sequence[Order]) -> list[Order]:
        """
        Drop or shrink signals that break the per-trade risk rules.

        Entries are checked in order:

        1. sells (other than stops) larger than the held long are dropped
        2. risk = amount x stop distance, where the stop distance comes from
           a paired opposite-side stop order or ATR x multiplier; the amount
           is shrunk until risk <= balance x max_risk_per_trade
        3. notional is capped at notional_cap_multiplier x max risk amount
        4. buys whose notional exceeds the available balance are dropped
        5. amounts that shrank below min_order_amount are dropped

        A paired stop follows its entry: resized when the entry shrinks,
        dropped when the entry is dropped.
        """
        if not signals:
            return []

        account = self.get_account()
        max_risk = account.balance * self.max_risk_per_trade
        notional_cap = self.notional_cap_multiplier * max_risk
        last_price = self.candles[-1].close if self.candles else None
        atr = self._current_atr()
        held_long, held_short = self._held_amounts()

        entries = [s for s in signals if not s.is_stop]
        stops = [s for s in signals if s.is_stop]
        paired: dict[int, int] = {}
        used: set[int] = set()
        for e_idx, entry in enumerate(entries):
            for s_idx, stop in enumerate(stops):
                if s_idx in used or stop.side is not entry.side.opposite or stop.stop_price is None:
                    continue
                paired[e_idx] = s_idx
                used.add(s_idx)
                break

        approved: list[Order] = []
        stop_amounts: dict[int, float | None] = {}

        for e_idx, entry in enumerate(entries):
            price = entry.price or last_price
            stop_idx = paired.get(e_idx)
            if not price:
                logger.warning("signal_without_price", symbol=self.symbol, side=entry.side.value)
                if stop_idx is not None:
                    stop_amounts[stop_idx] = None
                continue

            amount = entry.amount
            if entry.side is OrderSide.SELL and held_long < amount:
                error = InsufficientPosition(
                    f"sell {amount} exceeds held long {held_long} on {self.symbol}"
                )
                logger.info("signal_dropped", symbol=self.symbol, reason=str(error))
                if stop_idx is not None:
                    stop_amounts[stop_idx] = None
                continue

            if not entry.reduce_only and self._opens_exposure(entry.side, amount, held_long, held_short):
                stop_distance = None
                if stop_idx is not None:
                    stop_distance = abs(price - stops[stop_idx].stop_price)
                elif atr:
                    stop_distance = atr * self.atr_stop_multiplier

                if stop_distance and amount * stop_distance > max_risk:
                    shrunk = max_risk / stop_distance
                    error = RiskLimitExceeded(
                        f"risk {amount * stop_distance:.2f} over limit {max_risk:.2f}"
                    )
                    logger.info(
                        "signal_shrunk",
                        symbol=self.symbol,
                        reason=str(error),
                        amount=amount,
                        new_amount=shrunk,
                    )
                    amount = shrunk

                if amount * price > notional_cap:
                    capped = notional_cap / price
                    logger.info(
                        "signal_notional_capped",
                        symbol=self.symbol,
                        amount=amount,
                        new_amount=capped,
                        cap=notional_cap,
                    )
                    amount = capped

                if entry.side is OrderSide.BUY and amount * price > account.available:
                    error = InsufficientBalance(
                        f"notional {amount * price:.2f} exceeds available {account.available:.2f}"
                    )
                    logger.info("signal_dropped", symbol=self.symbol, reason=str(error))
                    if stop_idx is not None:
                        stop_amounts[stop_idx] = None
                    continue

            if amount < self.min_order_amount:
                logger.info("signal_dropped", symbol=self.symbol, reason="amount below minimum")
                if stop_idx is not None:
                    stop_amounts[stop_idx] = None
                continue

            approved.append(replace(entry, amount=amount) if amount != entry.amount else entry)
            if stop_idx is not None:
                stop_amounts[stop_idx] = amount

        for s_idx, stop in enumerate(stops):
            if s_idx not in stop_amounts:
                approved.append(stop)
            elif stop_amounts[s_idx] is not None:
                amount = stop_amounts[s_idx]
                approved.append(replace(stop, amount=amount) if amount != stop.amount else stop)

        return approved

    # =========================================================================
    # Order Processing
    # =========================================================================

    async def process_signals(self, signals: Sequence[Order]) -> list[str]:
        """
        Send approved signals to the ledger, or simulate them in backtest mode.

        Returns:
            Ledger ids of the recorded orders
        """
        if not signals:
            return []
        if not self.trading_enabled:
            logger.warning("signals_discarded_trading_disabled", symbol=self.symbol, count=len(signals))
            return []

        order_ids: list[str] = []
        for signal in signals:
            try:
                if self.backtest:
                    order_ids.append(await self._simulate(signal))
                else:
                    order_ids.append(await self.ledger.create_order(signal))
            except TradingHalted as e:
                logger.warning("signals_discarded_ledger_halted", symbol=self.symbol, error=str(e))
                break
        return order_ids

    async def close_all_positions(self) -> list[str]:
        """Flatten every position on this symbol with reduce-only market orders."""
        price = self.candles[-1].close if self.candles else None
        orders = [
            Order(
                symbol=self.symbol,
                side=position.side.closing_side,
                type=OrderType.MARKET,
                amount=position.amount,
                price=price,
                reduce_only=True,
                created_at=self._now_ms(),
            )
            for position in self.ledger.get_positions(self.symbol)
        ]
        logger.warning("closing_all_positions", symbol=self.symbol, count=len(orders))
        return await self.process_signals(orders)

    def update_price(self, price: float) -> None:
        self.ledger.update_prices(self.symbol, price)

    # =========================================================================
    # Modes
    # =========================================================================

    def set_system_mode(self, mode: SystemMode | str, reason: str = "") -> bool:
        """
        Switch mode manually.

        Returns:
            False if the engine is already in kill switch mode
        """
        mode = SystemMode(mode)
        if self.system_mode is SystemMode.KILL_SWITCH and mode is not SystemMode.KILL_SWITCH:
            logger.warning("mode_change_refused_kill_switch", symbol=self.symbol, requested=mode.value)
            return False

        if mode is SystemMode.KILL_SWITCH:
            self.trading_enabled = False
        elif mode is SystemMode.EMERGENCY:
            self._emergency_since = self._now_ms()
        elif mode is SystemMode.NORMAL:
            self._emergency_since = None
            self._daily_loss_standby = False

        self._set_mode(mode, reason or "manual")
        return True

    def halt(self, reason: str) -> None:
        """Disable trading for the rest of the run and halt the ledger."""
        self.trading_enabled = False
        self._set_mode(SystemMode.KILL_SWITCH, reason)
        self.ledger.halt()

    # =========================================================================
    # Account
    # =========================================================================

    @property
    def balance(self) -> float:
        return self.initial_balance + self.ledger.get_realized_pnl(self.symbol) - self._fees_paid

    @property
    def equity(self) -> float:
        return self.balance + self.ledger.get_total_unrealized_pnl(self.symbol)

    def get_account(self) -> Account:
        positions = self.ledger.get_positions(self.symbol)
        margin_used = self.margin_rate * sum(p.notional for p in positions)
        balance = self.balance
        daily_pnl = self.equity - self._day_start_equity
        return Account(
            balance=balance,
            available=balance - margin_used,
            positions=positions,
            margin_used=margin_used,
            daily_pnl=daily_pnl,
            daily_pnl_percentage=daily_pnl / self._day_start_equity if self._day_start_equity else 0.0,
        )

    def get_status(self) -> dict:
        return {
            "symbol": self.symbol,
            "account": self.get_account().to_dict(),
            "market_analysis": self.market_analysis.to_dict() if self.market_analysis else None,
            "active_mode": self.system_mode.value,
            "active_strategy": self.active_strategy.value,
            "trading_enabled": self.trading_enabled,
            "equity": self.equity,
            "last_emergency": (
                asdict(self.last_emergency) if self.last_emergency else None
            ),
        }

    # =========================================================================
    # Internals
    # =========================================================================

    def _now_ms(self) -> int:
        if self.time_source == "candle" and self.candles:
            return self.candles[-1].timestamp
        return self.clock.now_ms()

    def _set_mode(self, mode: SystemMode, reason: str) -> None:
        previous = self.system_mode
        self.system_mode = mode
        if previous is not mode:
            logger.warning(
                "system_mode_changed",
                symbol=self.symbol,
                previous=previous.value,
                mode=mode.value,
                reason=reason,
            )
        if self.metrics:
            self.metrics.update_mode(self.symbol, mode.value, [m.value for m in SystemMode])

    def _price_change(self) -> tuple[float, float] | None:
        latest = self.candles[-1]
        cutoff = latest.timestamp - PRICE_CHANGE_WINDOW_MS
        reference = self.candles[0]
        for candle in self.candles:
            if candle.timestamp > cutoff:
                break
            reference = candle
        if reference is latest or reference.close <= 0:
            return None
        return (latest.close - reference.close) / reference.close, reference.close

    async def _evaluate_emergency(self) -> None:
        if self.system_mode is SystemMode.KILL_SWITCH:
            return
        measured = self._price_change()
        if measured is None:
            return
        change, reference_price = measured
        now = self._now_ms()

        self._change_samples.append((now, abs(change)))
        while self._change_samples and self._change_samples[0][0] < now - self.recovery_ms:
            self._change_samples.popleft()

        if abs(change) > self.emergency_threshold:
            if self.system_mode is SystemMode.EMERGENCY:
                self._emergency_since = now
                logger.warning(
                    "emergency_extended", symbol=self.symbol, price_change=round(change, 4)
                )
            else:
                await self._enter_emergency(change, reference_price, now)
            return

        if self.system_mode is not SystemMode.EMERGENCY or self._emergency_since is None:
            return
        if now - self._emergency_since < self.recovery_ms:
            return
        if self._change_samples and all(
            sample < self.recovery_threshold for _, sample in self._change_samples
        ):
            self._emergency_since = None
            self._set_mode(SystemMode.NORMAL, "market recovered")
            logger.info(
                "emergency_recovered",
                symbol=self.symbol,
                max_recent_change=max(s for _, s in self._change_samples),
            )

    async def _enter_emergency(self, change: float, reference_price: float, now: int) -> None:
        self._emergency_since = now
        self._set_mode(SystemMode.EMERGENCY, f"24h price change {change:.2%}")

        price = self.candles[-1].close
        orders = [
            Order(
                symbol=self.symbol,
                side=position.side.closing_side,
                type=OrderType.MARKET,
                amount=position.amount * self.emergency_reduction,
                price=price,
                reduce_only=True,
                created_at=now,
            )
            for position in self.ledger.get_positions(self.symbol)
            if position.amount * self.emergency_reduction >= self.min_order_amount
        ]
        self.last_emergency = EmergencyOverride(
            symbol=self.symbol,
            price_change=change,
            reference_price=reference_price,
            price=price,
            triggered_at=now,
            reduce_orders=len(orders),
        )
        logger.critical(
            "emergency_mode_entered",
            symbol=self.symbol,
            price_change=round(change, 4),
            reference_price=reference_price,
            price=price,
            reduce_orders=len(orders),
        )
        await self.process_signals(orders)

    def _emergency_strategy_signals(self) -> list[Order]:
        provider = self.providers.get(StrategyType.EMERGENCY)
        if provider is None:
            return []
        try:
            result = provider(
                list(self.candles), self.symbol, self.ledger.get_positions(self.symbol), self.balance
            )
        except Exception as e:
            logger.error("emergency_strategy_failed", symbol=self.symbol, error=str(e), exc_info=True)
            return []
        return [s for s in result.signals if s.reduce_only and s.symbol == self.symbol]

    def _scale_entries(self, signals: Sequence[Order], factor: float) -> list[Order]:
        return [
            s if s.reduce_only or s.is_stop else replace(s, amount=s.amount * factor)
            for s in signals
        ]

    def _current_atr(self) -> float | None:
        if self.market_analysis and self.market_analysis.atr:
            return self.market_analysis.atr
        return average_range(list(self.candles), self.atr_period)

    def _exposure(self) -> tuple[float, float]:
        long_notional = short_notional = 0.0
        for position in self.ledger.get_positions(self.symbol):
            if position.side is PositionSide.LONG:
                long_notional += position.notional
            else:
                short_notional += position.notional
        return long_notional, short_notional

    def _held_amounts(self) -> tuple[float, float]:
        held_long = held_short = 0.0
        for position in self.ledger.get_positions(self.symbol):
            if position.side is PositionSide.LONG:
                held_long += position.amount
            else:
                held_short += position.amount
        return held_long, held_short

    @staticmethod
    def _opens_exposure(side: OrderSide, amount: float, held_long: float, held_short: float) -> bool:
        if side is OrderSide.BUY:
            return amount > held_short
        return amount > held_long

    def _update_daily_tracking(self) -> None:
        day = datetime.fromtimestamp(self._now_ms() / 1000, tz=UTC).date().isoformat()
        if day != self._day:
            self._day = day
            self._day_start_equity = self.equity
            if self._daily_loss_standby and self.system_mode is SystemMode.STANDBY:
                self._daily_loss_standby = False
                self._set_mode(SystemMode.NORMAL, "new trading day")
            return

        if self._day_start_equity <= 0 or self.system_mode is not SystemMode.NORMAL:
            return
        daily_return = (self.equity - self._day_start_equity) / self._day_start_equity
        if daily_return <= -self.max_daily_loss:
            self._daily_loss_standby = True
            self._set_mode(SystemMode.STANDBY, f"daily loss {daily_return:.2%}")

    # =========================================================================
    # Backtest Simulation
    # =========================================================================

    async def _simulate(self, signal: Order) -> str:
        order_id = await self.ledger.create_order(signal, {"forward": False})
        if signal.type is OrderType.MARKET:
            price = signal.price or (self.candles[-1].close if self.candles else None)
            if price:
                self._simulate_fill(order_id, signal.side, signal.amount, price)
        return order_id

    def _simulate_fill(self, order_id: str, side: OrderSide, amount: float, price: float) -> None:
        exec_price = price * (1 + self.slippage) if side is OrderSide.BUY else price * (1 - self.slippage)
        if self.ledger.fill_order(order_id, exec_price):
            commission = exec_price * amount * self.commission_rate
            self._fees_paid += commission
            logger.debug(
                "backtest_fill",
                symbol=self.symbol,
                order_id=order_id,
                side=side.value,
                amount=amount,
                price=exec_price,
                commission=commission,
            )

    def _match_resting_orders(self, candle: Candle) -> None:
        """Fill resting limit and stop orders that this candle crossed."""
        resting = [
            o
            for o in self.ledger.get_orders(self.symbol)
            if o.status is OrderStatus.OPEN and o.type is not OrderType.MARKET
        ]
        for order in resting:
            trigger: float | None = None
            if order.is_stop and order.stop_price is not None:
                if order.side is OrderSide.SELL and candle.low <= order.stop_price:
                    trigger = order.stop_price
                elif order.side is OrderSide.BUY and candle.high >= order.stop_price:
                    trigger = order.stop_price
                if trigger is not None and order.type is OrderType.STOP_LIMIT and order.price:
                    trigger = order.price
            elif order.type is OrderType.LIMIT and order.price is not None:
                if order.side is OrderSide.BUY and candle.low <= order.price:
                    trigger = order.price
                elif order.side is OrderSide.SELL and candle.high >= order.price:
                    trigger = order.price

            if trigger is None:
                continue
            if order.reduce_only and not self.ledger.get_positions(order.symbol):
                self.ledger.discard_order(order.id)
                continue
            self._simulate_fill(order.id, order.side, order.amount, trigger)
