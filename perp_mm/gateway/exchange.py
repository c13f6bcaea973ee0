"""
Exchange gateway.

The sole source of market and account truth. Streaming messages are parsed
into model objects, stored (replaced wholesale, never merged) and published
on the event bus. REST operations go through the rate-limited RestClient.
"""

import random
import time
from typing import Any, Callable, Optional

import structlog

from perp_mm.config.schema import ApiConfig
from perp_mm.core.errors import GatewayError, StartupError
from perp_mm.core.events import EventBus, EventType
from perp_mm.core.models import (
    MarketSnapshot,
    Order,
    OrderBookSnapshot,
    OrderRequest,
    Position,
    Trade,
    now_ms,
)
from perp_mm.gateway.connection import ConnectionSupervisor, StreamOpener
from perp_mm.gateway.rest import HttpTransport, RestClient

logger = structlog.get_logger(__name__)


class Endpoints:
    """REST paths."""
    EXCHANGE_INFO = "/api/v1/exchangeInfo"
    DEPTH = "/api/v1/depth"
    TICKER = "/api/v1/ticker/24hr"
    ORDER = "/api/v1/order"
    OPEN_ORDERS = "/api/v1/openOrders"
    POSITIONS = "/api/v1/positions"
    ACCOUNT = "/api/v1/account"


def generate_client_order_id(prefix: str = "mm", rng: Optional[random.Random] = None) -> str:
    """Correlation id of the form ``<prefix>-<ms timestamp>-<random>``."""
    rng = rng or random
    return f"{prefix}-{now_ms()}-{rng.randrange(16 ** 8):08x}"


class ExchangeGateway:
    """
    Duplex connection to the venue.

    Design principles:
    - Connection loss is transparent: callers see events resume, not errors
    - REST failures after retries are raised to the caller
    - Subscriptions are replayed on every new connection
    - Cached state is owned here; others get copies or events
    """

    def __init__(
        self,
        config: ApiConfig,
        bus: EventBus,
        http_transport: Optional[HttpTransport] = None,
        open_stream: Optional[StreamOpener] = None,
        clock: Callable[[], float] = time.monotonic,
        connect_timeout_s: float = 30.0,
    ):
        """
        Initialize exchange gateway.

        Args:
            config: API configuration
            bus: Event bus the gateway publishes to
            http_transport: REST transport (defaults to aiohttp)
            open_stream: Streaming transport factory (defaults to aiohttp websockets)
            clock: Monotonic clock for liveness tracking
            connect_timeout_s: How long initialize() waits for a first connection
        """
        self.config = config
        self.bus = bus
        self.connect_timeout_s = connect_timeout_s

        self.rest = RestClient(config, transport=http_transport)
        self.supervisor = ConnectionSupervisor(
            config,
            on_message=self._handle_message,
            open_stream=open_stream,
            on_state_change=self._handle_active_change,
            clock=clock,
        )

        self.exchange_info: Optional[dict] = None
        self._order_books: dict[str, OrderBookSnapshot] = {}
        self._markets: dict[str, MarketSnapshot] = {}
        self._orders: dict[str, Order] = {}
        self._positions: dict[str, Position] = {}
        self._placed: dict[str, Order] = {}  # client_order_id -> order

        self.messages_received = 0
        self.initialized = False

        logger.info(
            "exchange_gateway_initialized",
            ws_url=config.ws_url,
            rest_url=config.rest_url,
        )

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    async def initialize(self) -> None:
        """
        Open the streaming legs, wait for one to become active, then load
        exchange metadata.

        Raises:
            StartupError: No leg opened within the connect timeout
            RequestError: Metadata could not be loaded after retries
        """
        await self.supervisor.start()
        if not await self.supervisor.wait_until_active(self.connect_timeout_s):
            await self.supervisor.stop()
            raise StartupError(
                f"no streaming connection within {self.connect_timeout_s}s"
            )
        self.exchange_info = await self.get_exchange_info()
        self.initialized = True
        logger.info("exchange_gateway_ready")

    async def close(self) -> None:
        """Close both streaming legs and drain in-flight REST calls."""
        await self.supervisor.stop()
        await self.rest.close()
        self.initialized = False
        logger.info("exchange_gateway_closed")

    @property
    def active_connection(self) -> Optional[int]:
        return self.supervisor.active_index

    def _handle_active_change(self, index: Optional[int]) -> None:
        if index is None:
            self.bus.emit(
                EventType.CONNECTION_ERROR,
                {"error": "no active streaming connection"},
                source="gateway",
            )
        else:
            self.bus.emit(EventType.CONNECTED, {"connection": index}, source="gateway")

    # =========================================================================
    # STREAMING
    # =========================================================================

    async def subscribe(self, channel: str, symbol: str) -> None:
        await self.supervisor.subscribe(channel, symbol)
        logger.debug("subscribed", channel=channel, symbol=symbol)

    async def unsubscribe(self, channel: str, symbol: str) -> None:
        await self.supervisor.unsubscribe(channel, symbol)
        logger.debug("unsubscribed", channel=channel, symbol=symbol)

    def _handle_message(self, message: dict) -> None:
        """Parse one inbound message, update cached state and publish it."""
        self.messages_received += 1
        msg_type = message.get("type")
        data = message.get("data")

        if msg_type in (None, "pong", "subscribed", "unsubscribed"):
            return

        if msg_type == "error":
            logger.warning("exchange_error_message", data=data)
            self.bus.emit(EventType.CONNECTION_ERROR, {"error": data}, source="gateway")
            return

        if not isinstance(data, dict):
            logger.warning("stream_message_malformed", type=msg_type)
            return

        try:
            if msg_type == "orderbook":
                book = OrderBookSnapshot.from_dict(data)
                self._order_books[book.symbol] = book
                self.bus.emit(EventType.ORDERBOOK, book, source="gateway")
            elif msg_type == "market":
                market = MarketSnapshot.from_dict(data)
                self._markets[market.symbol] = market
                self.bus.emit(EventType.MARKET, market, source="gateway")
            elif msg_type == "trade":
                self.bus.emit(EventType.TRADE, Trade.from_dict(data), source="gateway")
            elif msg_type == "order":
                order = Order.from_dict(data)
                self._store_order(order)
                self.bus.emit(EventType.ORDER, order, source="gateway")
            elif msg_type == "position":
                position = Position.from_dict(data)
                self._positions[position.symbol] = position
                self.bus.emit(EventType.POSITION, position, source="gateway")
            else:
                logger.debug("stream_message_unknown_type", type=msg_type)
        except (KeyError, TypeError, ValueError) as e:
            logger.warning("stream_message_parse_failed", type=msg_type, error=str(e))

    def _store_order(self, order: Order) -> None:
        if order.is_terminal:
            self._orders.pop(order.order_id, None)
            self._forget_placement(order)
        else:
            self._orders[order.order_id] = order

    def _forget_placement(self, order: Order) -> None:
        """A finished order no longer needs duplicate suppression."""
        placed = self._placed.get(order.client_order_id) if order.client_order_id else None
        if placed is not None and placed.order_id == order.order_id:
            del self._placed[order.client_order_id]

    # =========================================================================
    # REST
    # =========================================================================

    async def get_exchange_info(self) -> dict:
        return await self.rest.request("GET", Endpoints.EXCHANGE_INFO)

    async def get_order_book(self, symbol: str, limit: int = 100) -> OrderBookSnapshot:
        data = await self.rest.request(
            "GET", Endpoints.DEPTH, params={"symbol": symbol, "limit": limit}
        )
        data.setdefault("symbol", symbol)
        book = OrderBookSnapshot.from_dict(data)
        self._order_books[symbol] = book
        return book

    async def get_market_data(self, symbol: str) -> MarketSnapshot:
        data = await self.rest.request("GET", Endpoints.TICKER, params={"symbol": symbol})
        data.setdefault("symbol", symbol)
        market = MarketSnapshot.from_dict(data)
        self._markets[symbol] = market
        return market

    async def place_order(self, request: OrderRequest) -> Order:
        """
        Submit an order.

        Placement is the one non-idempotent call: every request carries a
        client order id, and a request whose id was already accepted returns
        the accepted order instead of being sent again.
        """
        if not request.client_order_id:
            request.client_order_id = generate_client_order_id()

        existing = self._placed.get(request.client_order_id)
        if existing is not None:
            logger.warning("duplicate_order_suppressed", client_order_id=request.client_order_id)
            return existing

        data = await self.rest.request("POST", Endpoints.ORDER, body=request.to_dict())
        if not isinstance(data, dict):
            raise GatewayError(f"unexpected order response: {data!r}")
        merged = {**request.to_dict(), **data}
        merged.setdefault("clientOrderId", request.client_order_id)
        order = Order.from_dict(merged)
        self._placed[request.client_order_id] = order
        self._store_order(order)

        logger.info(
            "order_placed",
            order_id=order.order_id,
            client_order_id=order.client_order_id,
            symbol=order.symbol,
            side=order.side.value,
            type=order.order_type.value,
            price=order.price,
            size=order.size,
        )
        return order

    async def cancel_order(self, symbol: str, order_id: str) -> Any:
        result = await self.rest.request(
            "DELETE", Endpoints.ORDER, params={"symbol": symbol, "orderId": order_id}
        )
        order = self._orders.pop(order_id, None)
        if order is not None:
            self._forget_placement(order)
        logger.info("order_canceled", symbol=symbol, order_id=order_id)
        return result

    async def get_open_orders(self, symbol: Optional[str] = None) -> list[Order]:
        params = {"symbol": symbol} if symbol else None
        data = await self.rest.request("GET", Endpoints.OPEN_ORDERS, params=params)
        orders = [Order.from_dict(item) for item in data or []]
        for order in orders:
            self._store_order(order)
        return orders

    async def get_positions(self) -> list[Position]:
        data = await self.rest.request("GET", Endpoints.POSITIONS)
        positions = [Position.from_dict(item) for item in data or []]
        for position in positions:
            self._positions[position.symbol] = position
        return positions

    async def get_account(self) -> dict:
        return await self.rest.request("GET", Endpoints.ACCOUNT)

    # =========================================================================
    # READ-ONLY SNAPSHOTS
    # =========================================================================

    def order_book(self, symbol: str) -> Optional[OrderBookSnapshot]:
        return self._order_books.get(symbol)

    def market(self, symbol: str) -> Optional[MarketSnapshot]:
        return self._markets.get(symbol)

    def positions(self) -> dict[str, Position]:
        return dict(self._positions)

    def open_orders(self) -> dict[str, Order]:
        return dict(self._orders)

    def get_state(self) -> dict:
        return {
            "initialized": self.initialized,
            "active_connection": self.active_connection,
            "messages_received": self.messages_received,
            "tracked_placements": len(self._placed),
            "requests_sent": self.rest.requests_sent,
            "requests_failed": self.rest.requests_failed,
            "rate_limiter_queued": self.rest.limiter.queued,
            "streams": self.supervisor.get_state(),
        }
