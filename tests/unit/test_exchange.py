"""
Unit tests for exchange connectors.

Tests cover:
- Paper connector fills, resting orders and OCO pairs
- Paper connector reconciliation through the ledger
- CCXT connector retry, refusal and status mapping
"""

from unittest.mock import MagicMock

from ccxt.base.errors import InvalidOrder, NetworkError, OrderNotFound
import pytest

from mstb.data.exchange import CcxtExchangeConnector, PaperExchangeConnector
from mstb.trading.errors import ExchangeCommError
from mstb.trading.ledger import OrderLedger
from mstb.trading.models import Order, OrderSide, OrderStatus, OrderType, PositionSide

SYMBOL = "BTC/USDT"


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def paper(make_candles) -> PaperExchangeConnector:
    return PaperExchangeConnector(candles={SYMBOL: make_candles([99.0, 100.0])})


@pytest.fixture
def connector() -> CcxtExchangeConnector:
    """CCXT connector wired to a mocked exchange object."""
    connector = CcxtExchangeConnector("binanceusdm", max_retries=2, initial_delay=0.0)
    connector.exchange = MagicMock()
    connector._connected = True
    return connector


def flaky(results):
    """Async callable raising or returning the given results in turn."""
    calls = iter(results)

    async def fetch_ticker(*args, **kwargs):
        fetch_ticker.calls += 1
        result = next(calls)
        if isinstance(result, Exception):
            raise result
        return result

    fetch_ticker.calls = 0
    return fetch_ticker


# =============================================================================
# Paper Connector Tests
# =============================================================================


@pytest.mark.unit
class TestPaperExchange:
    """Test the in-memory connector."""

    @pytest.mark.asyncio
    async def test_market_order_fills_at_latest_price(self, paper):
        """Test market orders fill immediately at the last close."""
        order = Order(symbol=SYMBOL, side=OrderSide.BUY, type=OrderType.MARKET, amount=1.0)

        external_id = await paper.execute_order(order)

        assert await paper.fetch_order(external_id, SYMBOL) == {
            "status": "closed",
            "price": 100.0,
            "amount": 1.0,
            "filled": 1.0,
        }

    @pytest.mark.asyncio
    async def test_market_order_without_price_refused(self):
        """Test a market order for an unknown symbol is refused."""
        paper = PaperExchangeConnector()
        order = Order(symbol=SYMBOL, side=OrderSide.BUY, type=OrderType.MARKET, amount=1.0)

        assert await paper.execute_order(order) is None

    @pytest.mark.asyncio
    async def test_limit_rests_until_crossed(self, paper):
        """Test a buy limit fills once the price trades down to it."""
        order = Order(symbol=SYMBOL, side=OrderSide.BUY, type=OrderType.LIMIT, amount=1.0, price=95.0)
        external_id = await paper.execute_order(order)

        paper.set_price(SYMBOL, 97.0)
        assert (await paper.fetch_order(external_id, SYMBOL))["status"] == "open"

        paper.set_price(SYMBOL, 94.0)
        result = await paper.fetch_order(external_id, SYMBOL)
        assert result["status"] == "closed"
        assert result["price"] == 95.0

    @pytest.mark.asyncio
    async def test_cancel_only_open_orders(self, paper):
        """Test canceling a filled order is refused."""
        market = Order(symbol=SYMBOL, side=OrderSide.BUY, type=OrderType.MARKET, amount=1.0)
        limit = Order(symbol=SYMBOL, side=OrderSide.SELL, type=OrderType.LIMIT, amount=1.0, price=120.0)
        filled_id = await paper.execute_order(market)
        open_id = await paper.execute_order(limit)

        assert not await paper.cancel_order(filled_id, SYMBOL)
        assert await paper.cancel_order(open_id, SYMBOL)
        assert (await paper.fetch_order(open_id, SYMBOL))["status"] == "canceled"

    @pytest.mark.asyncio
    async def test_oco_fill_cancels_sibling(self, paper):
        """Test the stop leg filling cancels the take-profit leg."""
        tp_id, stop_id = await paper.create_oco_order(
            {"symbol": SYMBOL, "side": "sell", "amount": 1.0, "price": 110.0, "stop_price": 90.0}
        )

        paper.set_price(SYMBOL, 89.0)

        assert (await paper.fetch_order(stop_id, SYMBOL))["status"] == "closed"
        assert (await paper.fetch_order(tp_id, SYMBOL))["status"] == "canceled"

    @pytest.mark.asyncio
    async def test_market_data_delegation(self, make_candles):
        """Test candles and prices come from the market data connector when set."""
        candles = make_candles([100.0, 105.0])
        market_data = MagicMock()

        async def fetch_candles(symbol, timeframe, limit):
            return candles

        market_data.fetch_candles = fetch_candles
        paper = PaperExchangeConnector(market_data=market_data)

        assert await paper.fetch_candles(SYMBOL, "1h", 2) == candles
        assert paper._prices[SYMBOL] == 105.0

    @pytest.mark.asyncio
    async def test_unknown_price_raises(self):
        """Test a missing price is a communication error."""
        with pytest.raises(ExchangeCommError):
            await PaperExchangeConnector().get_latest_price(SYMBOL)

    @pytest.mark.asyncio
    async def test_ledger_reconciles_paper_fills(self, paper, sim_clock):
        """Test the ledger sees paper fills through reconciliation."""
        ledger = OrderLedger(exchange=paper, clock=sim_clock, name=SYMBOL)
        order_id = await ledger.create_order(
            Order(symbol=SYMBOL, side=OrderSide.BUY, type=OrderType.MARKET, amount=2.0)
        )
        assert ledger.get_order(order_id).status is OrderStatus.PLACED

        assert await ledger.check_pending_orders() == 1

        position = ledger.get_position(SYMBOL, PositionSide.LONG)
        assert position.amount == 2.0
        assert position.entry_price == 100.0


# =============================================================================
# CCXT Connector Tests
# =============================================================================


@pytest.mark.unit
class TestCcxtExchange:
    """Test the CCXT connector against a mocked exchange."""

    @pytest.mark.asyncio
    async def test_transient_error_retried(self, connector):
        """Test a network error is retried and the next result returned."""
        connector.exchange.fetch_ticker = flaky([NetworkError("reset"), {"last": 101.5}])

        assert await connector.get_latest_price(SYMBOL) == 101.5
        assert connector.exchange.fetch_ticker.calls == 2

    @pytest.mark.asyncio
    async def test_retries_exhausted(self, connector):
        """Test persistent network errors surface as ExchangeCommError."""
        connector.exchange.fetch_ticker = flaky([NetworkError("down")] * 3)

        with pytest.raises(ExchangeCommError):
            await connector.get_latest_price(SYMBOL)
        assert connector.exchange.fetch_ticker.calls == 3

    @pytest.mark.asyncio
    async def test_refused_order_returns_none(self, connector):
        """Test an invalid order is refused without raising."""
        connector.exchange.create_order = flaky([InvalidOrder("min notional")])
        order = Order(symbol=SYMBOL, side=OrderSide.BUY, type=OrderType.MARKET, amount=0.001)

        assert await connector.execute_order(order) is None

    @pytest.mark.asyncio
    async def test_stop_order_params(self, connector):
        """Test stop orders map to stop_market with stopPrice and reduceOnly."""
        calls = []

        async def create_order(*args):
            calls.append(args)
            return {"id": 42, "status": "open"}

        connector.exchange.create_order = create_order
        order = Order(
            symbol=SYMBOL,
            side=OrderSide.SELL,
            type=OrderType.STOP_MARKET,
            amount=1.0,
            stop_price=95.0,
            reduce_only=True,
        )

        assert await connector.execute_order(order) == "42"
        symbol, order_type, side, amount, price, params = calls[0]
        assert order_type == "stop_market"
        assert price is None
        assert params == {"stopPrice": 95.0, "reduceOnly": True}

    @pytest.mark.asyncio
    async def test_fetch_order_maps_status(self, connector):
        """Test fetch_order reports average price and filled amount."""
        connector.exchange.fetch_order = flaky(
            [{"status": "closed", "average": 100.2, "price": None, "filled": 0.5, "amount": 1.0}]
        )

        assert await connector.fetch_order("1", SYMBOL) == {
            "status": "closed",
            "price": 100.2,
            "amount": 0.5,
            "filled": 0.5,
        }

    @pytest.mark.asyncio
    async def test_fetch_canceled_order_reports_filled(self, connector):
        """Test a canceled order still reports the amount that filled."""
        connector.exchange.fetch_order = flaky(
            [{"status": "canceled", "average": 95.0, "price": 95.0, "filled": 0.5, "amount": 2.0}]
        )

        result = await connector.fetch_order("1", SYMBOL)

        assert result["status"] == "canceled"
        assert result["filled"] == 0.5

    @pytest.mark.asyncio
    async def test_oco_refused_stop_cancels_take_profit(self, connector):
        """Test a refused stop leg pulls the take-profit and returns only its id."""
        connector.exchange.create_order = flaky([{"id": "tp-1"}, InvalidOrder("stop")])
        connector.exchange.cancel_order = flaky([{"id": "tp-1"}])

        params = {"symbol": SYMBOL, "side": "sell", "amount": 1.0, "price": 110.0, "stop_price": 90.0}

        assert await connector.create_oco_order(params) == ["tp-1"]
        assert connector.exchange.cancel_order.calls == 1

    @pytest.mark.asyncio
    async def test_oco_take_profit_cancel_failure_returns_id(self, connector):
        """Test a take-profit that could not be canceled is still reported."""
        connector.exchange.create_order = flaky([{"id": "tp-1"}, InvalidOrder("stop")])
        connector.exchange.cancel_order = flaky([NetworkError("down")] * 3)

        params = {"symbol": SYMBOL, "side": "sell", "amount": 1.0, "price": 110.0, "stop_price": 90.0}

        assert await connector.create_oco_order(params) == ["tp-1"]
        assert connector.exchange.cancel_order.calls == 3

    @pytest.mark.asyncio
    async def test_fetch_unknown_order(self, connector):
        """Test an order unknown to the exchange returns None."""
        connector.exchange.fetch_order = flaky([OrderNotFound("gone")])

        assert await connector.fetch_order("1", SYMBOL) is None

    @pytest.mark.asyncio
    async def test_not_connected(self):
        """Test calls before connect raise ExchangeCommError."""
        connector = CcxtExchangeConnector("binanceusdm")

        with pytest.raises(ExchangeCommError):
            await connector.fetch_candles(SYMBOL, "1h", 10)
