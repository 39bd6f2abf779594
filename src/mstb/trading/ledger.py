"""
Order and position ledger.

The ledger is the only owner of order and position state. Orders move through
a one-way lifecycle::

    open -> placed -> filled | canceled | rejected
    open -> filled | canceled | rejected

Every mutator checks the current status first, so replaying a fill or a
status update that has already been applied is a no-op. That lets the
periodic reconciliation job overlap with the decision loop.

Example Usage:
    ```python
    ledger = OrderLedger(exchange=connector)
    order_id = await ledger.create_order(
        Order(symbol="BTC/USDT", side=OrderSide.BUY, type=OrderType.MARKET, amount=0.1)
    )
    ledger.start_reconciliation(scheduler, interval_seconds=60)
    ...
    positions = ledger.get_positions("BTC/USDT")
    ```
"""

import asyncio
from collections import defaultdict
from dataclasses import replace
from typing import Any
import uuid

from mstb.monitoring.metrics import MetricsManager
from mstb.utils.clock import Clock, WallClock
from mstb.utils.logger import get_logger
from mstb.utils.scheduler import Scheduler

from .errors import ExchangeCommError, InvalidStateTransition, OrderNotFound, TradingHalted
from .models import Fill, Order, OrderSide, OrderStatus, OrderType, Position, PositionSide
from .ports import ExchangeConnector

logger = get_logger(__name__)

# Amounts below this are treated as zero when netting.
AMOUNT_EPSILON = 1e-12

RECONCILE_JOB = "ledger_reconcile"

_ALLOWED_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.OPEN: frozenset(
        {OrderStatus.PLACED, OrderStatus.FILLED, OrderStatus.CANCELED, OrderStatus.REJECTED}
    ),
    OrderStatus.PLACED: frozenset(
        {OrderStatus.FILLED, OrderStatus.CANCELED, OrderStatus.REJECTED}
    ),
}

_FILLED_STATUSES = frozenset({"closed", "filled"})
_CANCELED_STATUSES = frozenset({"canceled", "cancelled", "expired"})
_REJECTED_STATUSES = frozenset({"rejected"})


class OrderLedger:
    """
    Order and position bookkeeping with exchange reconciliation.

    Args:
        exchange: Connector orders are forwarded to. Without one, orders stay
            open until filled or canceled through the ledger itself.
        clock: Time source for order and fill timestamps
        metrics: Optional Prometheus helper
        name: Label used in log entries (usually the engine's symbol)
    """

    def __init__(
        self,
        exchange: ExchangeConnector | None = None,
        clock: Clock | None = None,
        metrics: MetricsManager | None = None,
        name: str = "ledger",
    ):
        self._exchange = exchange
        self._clock = clock or WallClock()
        self._metrics = metrics
        self.name = name

        self._orders: dict[str, Order] = {}
        self._positions: dict[tuple[str, PositionSide], Position] = {}
        self._fills: list[Fill] = []
        self._realized_pnl: dict[str, float] = defaultdict(float)
        self._halted = False
        self._scheduler: Scheduler | None = None
        self._reconcile_lock = asyncio.Lock()

    # =========================================================================
    # Order Lifecycle
    # =========================================================================

    @property
    def halted(self) -> bool:
        return self._halted

    def halt(self) -> None:
        """Refuse every new order from now on. In-flight calls still complete."""
        if not self._halted:
            self._halted = True
            logger.critical("ledger_halted", ledger=self.name, open_orders=len(self._pending()))

    async def create_order(self, order: Order, options: dict[str, Any] | None = None) -> str:
        """
        Record an order and forward it to the exchange.

        Args:
            order: Order to record. The ledger keeps its own copy.
            options: Passed through to the connector. ``forward=False`` keeps
                the order local (backtest and paper fills).

        Returns:
            Ledger order id

        Raises:
            TradingHalted: If the ledger has been halted
        """
        if self._halted:
            raise TradingHalted(f"Ledger {self.name} is halted; order for {order.symbol} refused")

        options = dict(options or {})
        forward = options.pop("forward", True)

        record = replace(
            order,
            id=str(uuid.uuid4()),
            status=OrderStatus.OPEN,
            external_id=None,
            created_at=order.created_at or self._clock.now_ms(),
        )
        self._orders[record.id] = record
        self._record_status(record)

        logger.info(
            "order_created",
            ledger=self.name,
            order_id=record.id,
            symbol=record.symbol,
            side=record.side.value,
            type=record.type.value,
            amount=record.amount,
            price=record.price,
            reduce_only=record.reduce_only,
        )

        if record.is_stop and record.stop_price is not None:
            self._attach_stop(record)

        if self._exchange is None or not forward:
            return record.id

        try:
            external_id = await self._exchange.execute_order(record, options)
        except ExchangeCommError as e:
            self._reject(record, str(e))
            return record.id
        except Exception as e:
            logger.error(
                "order_send_unexpected_error", order_id=record.id, error=str(e), exc_info=True
            )
            self._reject(record, str(e))
            return record.id

        if not external_id:
            self._reject(record, "exchange returned no order id")
            return record.id

        record.external_id = str(external_id)
        if record.status is OrderStatus.OPEN:
            self._transition(record, OrderStatus.PLACED)
            logger.info(
                "order_placed",
                ledger=self.name,
                order_id=record.id,
                external_id=record.external_id,
            )
        elif record.status is OrderStatus.CANCELED:
            # canceled locally while the send was in flight
            await self._cancel_on_exchange(record)
        return record.id

    async def create_oco_order(
        self,
        symbol: str,
        side: OrderSide,
        amount: float,
        take_profit_price: float,
        stop_price: float,
        options: dict[str, Any] | None = None,
    ) -> list[str]:
        """
        Record a one-cancels-other take-profit/stop pair.

        Both legs are reduce-only. When one leg fills the other is canceled.

        Returns:
            Ledger ids of the take-profit and stop legs
        """
        if self._halted:
            raise TradingHalted(f"Ledger {self.name} is halted; OCO for {symbol} refused")

        group = str(uuid.uuid4())
        now = self._clock.now_ms()
        legs = [
            Order(
                symbol=symbol,
                side=side,
                type=OrderType.LIMIT,
                amount=amount,
                price=take_profit_price,
                id=str(uuid.uuid4()),
                created_at=now,
                reduce_only=True,
                oco_group=group,
            ),
            Order(
                symbol=symbol,
                side=side,
                type=OrderType.STOP_MARKET,
                amount=amount,
                stop_price=stop_price,
                id=str(uuid.uuid4()),
                created_at=now,
                reduce_only=True,
                oco_group=group,
            ),
        ]
        for leg in legs:
            self._orders[leg.id] = leg
            self._record_status(leg)
        self._attach_stop(legs[1])

        logger.info(
            "oco_order_created",
            ledger=self.name,
            symbol=symbol,
            side=side.value,
            amount=amount,
            take_profit=take_profit_price,
            stop_price=stop_price,
            oco_group=group,
        )

        if self._exchange is None or not (options or {}).get("forward", True):
            return [leg.id for leg in legs]

        params = {
            "symbol": symbol,
            "side": side.value,
            "amount": amount,
            "price": take_profit_price,
            "stop_price": stop_price,
            **{k: v for k, v in (options or {}).items() if k != "forward"},
        }
        try:
            external_ids = await self._exchange.create_oco_order(params)
        except ExchangeCommError as e:
            for leg in legs:
                self._reject(leg, str(e))
            return [leg.id for leg in legs]

        if not external_ids:
            for leg in legs:
                self._reject(leg, "exchange returned no OCO ids")
            return [leg.id for leg in legs]

        if len(external_ids) < 2:
            # stop leg refused; track the take-profit until it is gone from the exchange
            take_profit, stop = legs
            self._reject(stop, "exchange refused the stop leg")
            take_profit.external_id = str(external_ids[0])
            self._transition(take_profit, OrderStatus.PLACED)
            await self.cancel_order(take_profit.id)
            return [leg.id for leg in legs]

        for leg, external_id in zip(legs, external_ids):
            leg.external_id = str(external_id)
            if leg.status is OrderStatus.OPEN:
                self._transition(leg, OrderStatus.PLACED)
            elif leg.status is OrderStatus.CANCELED:
                await self._cancel_on_exchange(leg)
        return [leg.id for leg in legs]

    async def cancel_order(self, order_id: str) -> bool:
        """
        Cancel an open or placed order.

        Returns:
            True if the order is now canceled. False if it was unknown,
            already terminal, or the exchange could not be reached.
        """
        order = self._orders.get(order_id)
        if order is None:
            logger.warning("cancel_failed", error=str(OrderNotFound(order_id)))
            return False

        if order.status.is_terminal:
            error = InvalidStateTransition(order.id, order.status.value, OrderStatus.CANCELED.value)
            logger.warning("cancel_failed", order_id=order_id, error=str(error))
            return False

        if order.status is OrderStatus.PLACED and self._exchange and order.external_id:
            if not await self._cancel_on_exchange(order):
                return False

        try:
            self._transition(order, OrderStatus.CANCELED)
        except InvalidStateTransition as e:
            # filled by reconciliation while the cancel was in flight
            logger.warning("cancel_failed", order_id=order_id, error=str(e))
            return False

        logger.info("order_canceled", ledger=self.name, order_id=order_id, symbol=order.symbol)

        if self._exchange and order.external_id:
            # pick up anything that filled before the cancel landed
            try:
                result = await self._exchange.fetch_order(order.external_id, order.symbol)
            except ExchangeCommError as e:
                logger.warning("cancel_settle_failed", order_id=order_id, error=str(e))
                result = None
            if result:
                self._apply_exchange_status(order, result)
        return True

    def discard_order(self, order_id: str) -> bool:
        """Cancel an order that never reached the exchange."""
        order = self._orders.get(order_id)
        if order is None or order.external_id is not None:
            return False
        try:
            self._transition(order, OrderStatus.CANCELED)
        except InvalidStateTransition as e:
            logger.warning("discard_failed", order_id=order_id, error=str(e))
            return False
        logger.info("order_discarded", ledger=self.name, order_id=order_id, symbol=order.symbol)
        return True

    def fill_order(self, order_id: str, exec_price: float) -> bool:
        """Fill the whole order at exec_price."""
        order = self._orders.get(order_id)
        if order is None:
            logger.warning("fill_failed", error=str(OrderNotFound(order_id)))
            return False
        return self.process_fill(
            Fill(
                order_id=order.id,
                symbol=order.symbol,
                side=order.side,
                amount=order.amount,
                price=exec_price,
                timestamp=self._clock.now_ms(),
            )
        )

    def process_fill(self, fill: Fill) -> bool:
        """
        Apply a fill to its order and position. Applied at most once per order.

        Returns:
            True if the fill was applied
        """
        order = self._orders.get(fill.order_id)
        if order is None:
            logger.warning("fill_failed", error=str(OrderNotFound(fill.order_id)))
            return False

        try:
            self._transition(order, OrderStatus.FILLED)
        except InvalidStateTransition as e:
            logger.warning("fill_ignored", order_id=order.id, error=str(e))
            return False

        self._record_fill(order, fill)

        if order.oco_group:
            self._cancel_local_siblings(order)
        return True

    # =========================================================================
    # Positions
    # =========================================================================

    def update_position(self, order: Order, exec_price: float, amount: float | None = None) -> None:
        """
        Net a filled amount against the symbol's positions.

        An opposite-side position is reduced first; any excess opens or
        extends the same side at a size-weighted average entry price.
        Reduce-only orders never open a new side.
        """
        amount = order.amount if amount is None else amount
        side = PositionSide.from_order_side(order.side)
        opposite_key = (order.symbol, PositionSide.from_order_side(order.side.opposite))
        remaining = amount

        opposite = self._positions.get(opposite_key)
        if opposite is not None:
            closed = min(opposite.amount, remaining)
            direction = 1.0 if opposite.side is PositionSide.LONG else -1.0
            realized = (exec_price - opposite.entry_price) * closed * direction
            self._realized_pnl[order.symbol] += realized
            opposite.amount -= closed
            remaining -= closed

            logger.info(
                "position_reduced",
                ledger=self.name,
                symbol=order.symbol,
                side=opposite.side.value,
                closed=closed,
                remaining=opposite.amount,
                realized_pnl=realized,
            )
            if opposite.amount <= AMOUNT_EPSILON:
                del self._positions[opposite_key]
                self._publish_position(order.symbol, opposite.side, None)
            else:
                opposite.mark(exec_price)
                self._publish_position(order.symbol, opposite.side, opposite)

        if remaining <= AMOUNT_EPSILON:
            return

        if order.reduce_only:
            logger.info(
                "reduce_only_excess_ignored",
                ledger=self.name,
                symbol=order.symbol,
                order_id=order.id,
                excess=remaining,
            )
            return

        key = (order.symbol, side)
        position = self._positions.get(key)
        if position is None:
            position = Position(
                symbol=order.symbol,
                side=side,
                amount=remaining,
                entry_price=exec_price,
                current_price=exec_price,
            )
            self._positions[key] = position
            logger.info(
                "position_opened",
                ledger=self.name,
                symbol=order.symbol,
                side=side.value,
                amount=remaining,
                entry_price=exec_price,
            )
        else:
            total = position.amount + remaining
            position.entry_price = (
                position.entry_price * position.amount + exec_price * remaining
            ) / total
            position.amount = total
            logger.info(
                "position_extended",
                ledger=self.name,
                symbol=order.symbol,
                side=side.value,
                amount=total,
                entry_price=position.entry_price,
            )
        position.mark(exec_price)
        self._publish_position(order.symbol, side, position)

    def update_prices(self, symbol: str, price: float) -> None:
        """Mark every position on symbol to price."""
        for (pos_symbol, side), position in self._positions.items():
            if pos_symbol == symbol:
                position.mark(price)
                self._publish_position(symbol, side, position)

    # =========================================================================
    # Reconciliation
    # =========================================================================

    async def check_pending_orders(self, force_check: bool = False) -> int:
        """
        Poll the exchange for orders awaiting settlement.

        A failed round-trip leaves the order untouched for the next poll.

        Args:
            force_check: Poll every order with an exchange id, terminal ones
                included. Terminal orders are only compared, never changed.

        Returns:
            Number of orders whose status changed
        """
        if self._exchange is None:
            return 0
        if self._reconcile_lock.locked():
            logger.debug("reconcile_already_running", ledger=self.name)
            return 0

        async with self._reconcile_lock:
            candidates = [
                order
                for order in list(self._orders.values())
                if order.external_id and (force_check or not order.status.is_terminal)
            ]
            changed = 0
            for order in candidates:
                try:
                    result = await self._exchange.fetch_order(order.external_id, order.symbol)
                except ExchangeCommError as e:
                    logger.warning(
                        "order_poll_failed",
                        ledger=self.name,
                        order_id=order.id,
                        external_id=order.external_id,
                        error=str(e),
                    )
                    if self._metrics:
                        self._metrics.record_reconcile_error(order.symbol)
                    continue

                if result is None:
                    logger.debug("order_unknown_to_exchange", order_id=order.id)
                    continue
                if self._apply_exchange_status(order, result):
                    changed += 1

            changed += await self.cancel_oco_siblings()

            if changed:
                logger.info("orders_reconciled", ledger=self.name, changed=changed)
            return changed

    async def cancel_oco_siblings(self) -> int:
        """
        Cancel live legs whose OCO sibling has filled.

        A leg the exchange could not cancel stays placed and is retried on
        the next poll.

        Returns:
            Number of legs canceled
        """
        filled_groups = {
            o.oco_group
            for o in self._orders.values()
            if o.oco_group and o.status is OrderStatus.FILLED
        }
        canceled = 0
        for order in list(self._orders.values()):
            if order.oco_group in filled_groups and not order.status.is_terminal:
                if await self.cancel_order(order.id):
                    canceled += 1
                    logger.info("oco_sibling_canceled", ledger=self.name, order_id=order.id)
        return canceled

    def start_reconciliation(self, scheduler: Scheduler, interval_seconds: float = 60.0) -> None:
        self._scheduler = scheduler
        scheduler.every(interval_seconds, self.check_pending_orders, name=self._job_name)

    def stop_reconciliation(self) -> None:
        if self._scheduler is not None:
            self._scheduler.cancel(self._job_name)
            self._scheduler = None

    # =========================================================================
    # Reads
    # =========================================================================

    def get_order(self, order_id: str) -> Order:
        """
        Raises:
            OrderNotFound: If no order has this id
        """
        order = self._orders.get(order_id)
        if order is None:
            raise OrderNotFound(order_id)
        return replace(order)

    def get_orders(self, symbol: str | None = None) -> list[Order]:
        return [
            replace(o) for o in self._orders.values() if symbol is None or o.symbol == symbol
        ]

    def get_orders_by_status(self, status: OrderStatus | str) -> list[Order]:
        status = OrderStatus(status)
        return [replace(o) for o in self._orders.values() if o.status is status]

    def get_positions(self, symbol: str | None = None) -> list[Position]:
        return [
            replace(p)
            for p in self._positions.values()
            if symbol is None or p.symbol == symbol
        ]

    def get_position(self, symbol: str, side: PositionSide) -> Position | None:
        position = self._positions.get((symbol, side))
        return replace(position) if position else None

    def get_positions_by_symbol(self) -> dict[str, list[Position]]:
        grouped: dict[str, list[Position]] = defaultdict(list)
        for position in self._positions.values():
            grouped[position.symbol].append(replace(position))
        return dict(grouped)

    def get_total_unrealized_pnl(self, symbol: str | None = None) -> float:
        return sum(
            p.unrealized_pnl
            for p in self._positions.values()
            if symbol is None or p.symbol == symbol
        )

    def get_realized_pnl(self, symbol: str | None = None) -> float:
        if symbol is not None:
            return self._realized_pnl.get(symbol, 0.0)
        return sum(self._realized_pnl.values())

    def get_fills(self, symbol: str | None = None) -> list[Fill]:
        return [f for f in self._fills if symbol is None or f.symbol == symbol]

    # =========================================================================
    # Internals
    # =========================================================================

    @property
    def _job_name(self) -> str:
        return f"{RECONCILE_JOB}:{self.name}"

    def _pending(self) -> list[Order]:
        return [o for o in self._orders.values() if not o.status.is_terminal]

    def _transition(self, order: Order, target: OrderStatus) -> None:
        if target not in _ALLOWED_TRANSITIONS.get(order.status, frozenset()):
            raise InvalidStateTransition(order.id, order.status.value, target.value)
        order.status = target
        self._record_status(order)

    def _reject(self, order: Order, reason: str) -> None:
        try:
            self._transition(order, OrderStatus.REJECTED)
        except InvalidStateTransition as e:
            logger.warning("reject_ignored", order_id=order.id, error=str(e))
            return
        order.error_message = reason
        logger.error(
            "order_rejected",
            ledger=self.name,
            order_id=order.id,
            symbol=order.symbol,
            reason=reason,
        )

    def _record_status(self, order: Order) -> None:
        if self._metrics:
            self._metrics.record_order(
                order.symbol, order.side.value, order.type.value, order.status.value
            )

    def _attach_stop(self, order: Order) -> None:
        protected = self._positions.get(
            (order.symbol, PositionSide.from_order_side(order.side.opposite))
        )
        if protected is None:
            return
        protected.stop_price = order.stop_price
        logger.info(
            "position_stop_updated",
            ledger=self.name,
            symbol=order.symbol,
            side=protected.side.value,
            stop_price=order.stop_price,
        )

    def _record_fill(self, order: Order, fill: Fill) -> None:
        order.filled_price = fill.price
        self._fills.append(fill)
        if self._metrics:
            self._metrics.record_fill(order.symbol, order.side.value)

        logger.info(
            "order_filled",
            ledger=self.name,
            order_id=order.id,
            symbol=order.symbol,
            side=order.side.value,
            amount=fill.amount,
            price=fill.price,
        )
        self.update_position(order, fill.price, fill.amount)

    def _cancel_local_siblings(self, filled: Order) -> None:
        """Cancel siblings that never reached the exchange.

        Legs live on the exchange are left for cancel_oco_siblings().
        """
        for sibling in self._orders.values():
            if (
                sibling.oco_group == filled.oco_group
                and sibling.id != filled.id
                and not sibling.status.is_terminal
                and (self._exchange is None or sibling.external_id is None)
            ):
                self._transition(sibling, OrderStatus.CANCELED)
                logger.info(
                    "oco_sibling_canceled",
                    ledger=self.name,
                    order_id=sibling.id,
                    filled_order_id=filled.id,
                )

    async def _cancel_on_exchange(self, order: Order) -> bool:
        try:
            accepted = await self._exchange.cancel_order(order.external_id, order.symbol)
        except ExchangeCommError as e:
            logger.error(
                "exchange_cancel_failed",
                ledger=self.name,
                order_id=order.id,
                external_id=order.external_id,
                error=str(e),
            )
            return False
        if not accepted:
            logger.warning(
                "cancel_refused_by_exchange", order_id=order.id, external_id=order.external_id
            )
        return bool(accepted)

    def _apply_exchange_status(self, order: Order, result: dict[str, Any]) -> bool:
        status = str(result.get("status") or "").lower()

        if order.status.is_terminal:
            if status in _FILLED_STATUSES and order.status is not OrderStatus.FILLED:
                logger.warning(
                    "order_status_mismatch",
                    order_id=order.id,
                    ledger_status=order.status.value,
                    exchange_status=status,
                )
            if (
                order.status is OrderStatus.CANCELED
                and status in _CANCELED_STATUSES
                and not any(f.order_id == order.id for f in self._fills)
            ):
                filled = min(float(result.get("filled") or 0.0), order.amount)
                if filled > AMOUNT_EPSILON:
                    self._apply_partial_fill(order, filled, result.get("price") or order.price)
                    return True
            return False

        if status in _FILLED_STATUSES:
            price = result.get("price") or result.get("average") or order.price
            if not price:
                logger.warning("fill_without_price", order_id=order.id)
                return False
            amount = result.get("filled") or result.get("amount") or order.amount
            return self.process_fill(
                Fill(
                    order_id=order.id,
                    symbol=order.symbol,
                    side=order.side,
                    amount=float(amount),
                    price=float(price),
                    timestamp=self._clock.now_ms(),
                )
            )
        if status in _CANCELED_STATUSES:
            self._transition(order, OrderStatus.CANCELED)
            logger.info("order_canceled_by_exchange", order_id=order.id, status=status)
            filled = min(float(result.get("filled") or 0.0), order.amount)
            if filled > AMOUNT_EPSILON:
                self._apply_partial_fill(order, filled, result.get("price") or order.price)
            return True
        if status in _REJECTED_STATUSES:
            self._reject(order, "rejected by exchange")
            return True
        if status == "open" and order.status is OrderStatus.OPEN:
            self._transition(order, OrderStatus.PLACED)
            return True
        return False

    def _apply_partial_fill(self, order: Order, amount: float, price: float | None) -> None:
        if not price:
            logger.warning("partial_fill_without_price", order_id=order.id, filled=amount)
            return
        logger.info("order_partially_filled", order_id=order.id, filled=amount, amount=order.amount)
        self._record_fill(
            order,
            Fill(
                order_id=order.id,
                symbol=order.symbol,
                side=order.side,
                amount=amount,
                price=float(price),
                timestamp=self._clock.now_ms(),
            ),
        )

    def _publish_position(self, symbol: str, side: PositionSide, position: Position | None) -> None:
        if self._metrics is None:
            return
        if position is None:
            self._metrics.update_position(symbol, side.value, 0.0, 0.0)
        else:
            self._metrics.update_position(symbol, side.value, position.amount, position.unrealized_pnl)
