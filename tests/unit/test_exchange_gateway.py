"""
Tests for the exchange gateway: startup, stream parsing and order placement.
"""

import pytest

from perp_mm.config.schema import ApiConfig
from perp_mm.core.errors import RequestError, StartupError
from perp_mm.core.events import EventType
from perp_mm.core.models import OrderRequest, OrderSide, OrderType
from perp_mm.gateway.exchange import Endpoints, ExchangeGateway, generate_client_order_id

from conftest import FakeStream, wait_until


class RoutingTransport:
    """HTTP transport answering by path; each route is a (status, body) pair."""

    def __init__(self, routes=None):
        self.routes = {Endpoints.EXCHANGE_INFO: (200, {"symbols": ["BTC-USDT"]})}
        self.routes.update(routes or {})
        self.calls = []

    async def __call__(self, method, url, params, body):
        path = url.split("exchange.test", 1)[1]
        self.calls.append((method, path, params, body))
        return self.routes[path]

    async def close(self):
        pass


def make_gateway(bus, routes=None, open_stream=None, connect_timeout_s=1.0):
    streams = []

    async def opener(url):
        stream = FakeStream()
        streams.append(stream)
        return stream

    transport = RoutingTransport(routes)
    gateway = ExchangeGateway(
        ApiConfig(rest_url="https://exchange.test", stream_connections=1, max_retries=0),
        bus,
        http_transport=transport,
        open_stream=open_stream or opener,
        connect_timeout_s=connect_timeout_s,
    )
    return gateway, transport, streams


class TestLifecycle:
    """Tests for initialize() and close()."""

    @pytest.mark.asyncio
    async def test_initialize_loads_exchange_info(self, bus):
        connected = []
        bus.subscribe(EventType.CONNECTED, connected.append)
        gateway, transport, streams = make_gateway(bus)

        await gateway.initialize()
        await bus.join()

        assert gateway.initialized
        assert gateway.exchange_info == {"symbols": ["BTC-USDT"]}
        assert gateway.active_connection == 0
        assert connected[0].data == {"connection": 0}
        assert transport.calls[0][:2] == ("GET", Endpoints.EXCHANGE_INFO)

        await gateway.close()
        assert not gateway.initialized
        assert streams[0].closed

    @pytest.mark.asyncio
    async def test_initialize_times_out(self, bus):
        """No stream within the timeout is a startup failure."""
        async def refuse(url):
            raise ConnectionError("refused")

        gateway, _, _ = make_gateway(bus, open_stream=refuse, connect_timeout_s=0.05)

        with pytest.raises(StartupError):
            await gateway.initialize()
        assert not gateway.initialized

    @pytest.mark.asyncio
    async def test_initialize_metadata_failure(self, bus):
        gateway, _, _ = make_gateway(bus, routes={Endpoints.EXCHANGE_INFO: (403, None)})

        with pytest.raises(RequestError):
            await gateway.initialize()
        await gateway.close()


class TestStreamParsing:
    """Tests for inbound message handling."""

    @pytest.mark.asyncio
    async def test_messages_published_and_cached(self, bus):
        received = []
        bus.subscribe_all(received.append)
        gateway, _, streams = make_gateway(bus)
        await gateway.initialize()

        streams[0].push({
            "type": "orderbook",
            "data": {"symbol": "BTC-USDT", "bids": [["100", "1"]], "asks": [["102", "2"]], "timestamp": 1},
        })
        streams[0].push({
            "type": "market",
            "data": {"symbol": "BTC-USDT", "lastPrice": "101", "volume24h": "500", "timestamp": 2},
        })
        streams[0].push({
            "type": "position",
            "data": {"symbol": "BTC-USDT", "size": "0.5", "entryPrice": "100", "markPrice": "101"},
        })
        await wait_until(lambda: gateway.messages_received == 3)
        await bus.join()

        kinds = [e.type for e in received if e.type is not EventType.CONNECTED]
        assert kinds == [EventType.ORDERBOOK, EventType.MARKET, EventType.POSITION]

        book = gateway.order_book("BTC-USDT")
        assert book.bids == [(100.0, 1.0)]
        assert book.mid_price == 101.0
        assert gateway.market("BTC-USDT").mark_price == 101.0
        assert gateway.positions()["BTC-USDT"].size == 0.5
        await gateway.close()

    @pytest.mark.asyncio
    async def test_malformed_messages_ignored(self, bus):
        received = []
        bus.subscribe(EventType.ORDERBOOK, received.append)
        gateway, _, streams = make_gateway(bus)
        await gateway.initialize()

        streams[0].push({"type": "orderbook", "data": {"bids": []}})
        streams[0].push({"type": "orderbook", "data": "garbage"})
        streams[0].push({"type": "pong"})
        await wait_until(lambda: gateway.messages_received == 3)
        await bus.join()

        assert received == []
        assert gateway.order_book("BTC-USDT") is None
        await gateway.close()

    @pytest.mark.asyncio
    async def test_terminal_orders_leave_cache(self, bus):
        gateway, _, streams = make_gateway(bus)
        await gateway.initialize()
        order = {"orderId": "1", "symbol": "BTC-USDT", "side": "buy", "price": "100", "size": "1"}

        streams[0].push({"type": "order", "data": order})
        await wait_until(lambda: gateway.messages_received == 1)
        assert "1" in gateway.open_orders()

        streams[0].push({"type": "order", "data": {**order, "status": "filled"}})
        await wait_until(lambda: gateway.messages_received == 2)
        assert gateway.open_orders() == {}
        await gateway.close()

    @pytest.mark.asyncio
    async def test_exchange_error_published(self, bus):
        errors = []
        bus.subscribe(EventType.CONNECTION_ERROR, errors.append)
        gateway, _, streams = make_gateway(bus)
        await gateway.initialize()

        streams[0].push({"type": "error", "data": "bad channel"})
        await wait_until(lambda: gateway.messages_received == 1)
        await bus.join()

        assert errors[0].data == {"error": "bad channel"}
        await gateway.close()


class TestOrders:
    """Tests for REST order operations."""

    @pytest.mark.asyncio
    async def test_place_order_deduplicates(self, bus):
        """A repeated client order id returns the accepted order without resending."""
        gateway, transport, _ = make_gateway(
            bus, routes={Endpoints.ORDER: (200, {"orderId": "ex-1", "status": "new"})}
        )
        request = OrderRequest(
            symbol="BTC-USDT",
            side=OrderSide.BUY,
            order_type=OrderType.LIMIT,
            size=0.1,
            price=100.0,
            client_order_id="mm-1",
        )

        first = await gateway.place_order(request)
        second = await gateway.place_order(request)

        posts = [c for c in transport.calls if c[0] == "POST"]
        assert len(posts) == 1
        assert posts[0][3]["clientOrderId"] == "mm-1"
        assert first is second
        assert first.order_id == "ex-1"
        assert first.price == 100.0
        assert "ex-1" in gateway.open_orders()

    @pytest.mark.asyncio
    async def test_filled_order_released_from_dedup(self, bus):
        gateway, transport, streams = make_gateway(
            bus, routes={Endpoints.ORDER: (200, {"orderId": "ex-1", "status": "new"})}
        )
        await gateway.initialize()
        request = OrderRequest("BTC-USDT", OrderSide.BUY, OrderType.LIMIT, 0.1, price=100.0, client_order_id="mm-1")
        await gateway.place_order(request)
        assert gateway.get_state()["tracked_placements"] == 1

        streams[0].push({"type": "order", "data": {
            "orderId": "ex-1", "clientOrderId": "mm-1", "symbol": "BTC-USDT",
            "side": "buy", "price": "100", "size": "0.1", "status": "filled",
        }})
        await wait_until(lambda: gateway.messages_received == 1)

        assert gateway.get_state()["tracked_placements"] == 0
        await gateway.close()

    @pytest.mark.asyncio
    async def test_canceled_order_released_from_dedup(self, bus):
        gateway, transport, _ = make_gateway(
            bus, routes={Endpoints.ORDER: (200, {"orderId": "ex-1", "status": "new"})}
        )
        request = OrderRequest("BTC-USDT", OrderSide.BUY, OrderType.LIMIT, 0.1, price=100.0, client_order_id="mm-1")
        await gateway.place_order(request)

        await gateway.cancel_order("BTC-USDT", "ex-1")

        assert gateway.get_state()["tracked_placements"] == 0
        assert gateway.open_orders() == {}

    @pytest.mark.asyncio
    async def test_place_order_assigns_client_id(self, bus):
        gateway, _, _ = make_gateway(bus, routes={Endpoints.ORDER: (200, {"orderId": "ex-2"})})
        request = OrderRequest("ETH-USDT", OrderSide.SELL, OrderType.LIMIT, 1.0, price=2000.0)

        order = await gateway.place_order(request)

        assert request.client_order_id.startswith("mm-")
        assert order.client_order_id == request.client_order_id

    @pytest.mark.asyncio
    async def test_rejected_order_raises(self, bus):
        gateway, _, _ = make_gateway(bus, routes={Endpoints.ORDER: (400, {"message": "size"})})
        request = OrderRequest("BTC-USDT", OrderSide.BUY, OrderType.LIMIT, 0.1, price=100.0)

        with pytest.raises(RequestError):
            await gateway.place_order(request)

    @pytest.mark.asyncio
    async def test_snapshots_via_rest(self, bus):
        gateway, _, _ = make_gateway(bus, routes={
            Endpoints.DEPTH: (200, {"bids": [[99, 1]], "asks": [[101, 1]]}),
            Endpoints.TICKER: (200, {"lastPrice": 100, "volume24h": 10}),
            Endpoints.POSITIONS: (200, [{"symbol": "BTC-USDT", "size": -1}]),
        })

        book = await gateway.get_order_book("BTC-USDT")
        market = await gateway.get_market_data("BTC-USDT")
        positions = await gateway.get_positions()

        assert book.symbol == "BTC-USDT"
        assert gateway.order_book("BTC-USDT") is book
        assert market.index_price == 100.0
        assert positions[0].size == -1.0


def test_client_order_id_format():
    order_id = generate_client_order_id("mm")
    prefix, timestamp, suffix = order_id.split("-")
    assert prefix == "mm"
    assert timestamp.isdigit()
    assert len(suffix) == 8
