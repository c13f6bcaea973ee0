"""
Quoting engine.

Keeps the latest book, market snapshot, position and price history per
symbol, and on every refresh interval replaces its resting quotes:

1. skip the symbol while its circuit breaker is active
2. cancel every tracked resting quote for the symbol
3. price and size a fresh bid/ask
4. submit each side that clears the minimum size, then the layers

Every submission is authorized by the security gate before it reaches the
gateway.
"""

import asyncio
import itertools
import random
from typing import Any, Callable, Optional

import structlog

from perp_mm.config.schema import MarketMakingConfig
from perp_mm.core.errors import GatewayError
from perp_mm.core.events import Event, EventBus, EventType, Subscription
from perp_mm.core.models import (
    MarketSnapshot,
    Order,
    OrderBookSnapshot,
    OrderRequest,
    OrderSide,
    OrderType,
    Position,
    Trade,
    now_ms,
)
from perp_mm.core.periodic import PeriodicTask
from perp_mm.gateway.exchange import generate_client_order_id
from perp_mm.quoting.pricing import compute_quote_prices, compute_quote_sizes, imbalance_ratio, layer_orders
from perp_mm.quoting.volatility import VolatilityMetrics, compute_volatility, history_for
from perp_mm.security.gate import PendingTransaction, TransactionStatus

logger = structlog.get_logger(__name__)

QUOTE_PREFIX = "mm"
CHANNELS = ("orderbook", "market", "trade")


class MarketMaker:
    """
    Two-sided quoting with inventory skew and layering.

    Design principles:
    - Cancel before replace within one refresh pass
    - Only quotes placed under the ``mm-`` client id prefix are managed here
    - A symbol's refreshes are serialized; timer and imbalance refreshes never interleave
    """

    def __init__(
        self,
        config: MarketMakingConfig,
        gateway: Any,
        bus: EventBus,
        security: Any,
        risk: Optional[Any] = None,
        clock: Callable[[], int] = now_ms,
        rng: Optional[random.Random] = None,
    ):
        """
        Initialize market maker.

        Args:
            config: Market-making configuration
            gateway: Exchange gateway
            bus: Event bus
            security: Security gate authorizing every order
            risk: Risk engine consulted for circuit breakers
            clock: Wall clock in epoch milliseconds
            rng: Source for client order ids
        """
        self.config = config
        self.gateway = gateway
        self.bus = bus
        self.security = security
        self.risk = risk
        self._clock = clock
        self._rng = rng

        self.order_books: dict[str, OrderBookSnapshot] = {}
        self.markets: dict[str, MarketSnapshot] = {}
        self.positions: dict[str, Position] = {}
        self.last_trades: dict[str, Trade] = {}
        self.active_orders: dict[str, Order] = {}
        self.price_history = {symbol: history_for(config.volatility) for symbol in config.pairs}
        self.volatility: dict[str, VolatilityMetrics] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._quote_sequence = itertools.count(1)
        self.pending_quotes: dict[str, list[PendingTransaction]] = {}

        self.quotes_submitted = 0
        self.quotes_pending = 0
        self.quotes_failed = 0

        self._subscriptions: list[Subscription] = []
        self._refresh = PeriodicTask(
            "quote-refresh", config.orders.refresh_interval_ms / 1000, self.refresh_all
        )
        self.running = False

        logger.info(
            "market_maker_initialized",
            pairs=list(config.pairs),
            refresh_interval_ms=config.orders.refresh_interval_ms,
            layering=config.layering.enabled,
            inventory_strategy=config.inventory.strategy,
        )

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    async def start(self) -> None:
        """
        Subscribe to market data, load initial state and start the refresh timer.

        Raises:
            GatewayError: Subscription failed
        """
        if self.running:
            return
        self._subscriptions = [
            self.bus.subscribe(EventType.ORDERBOOK, self._on_orderbook, name="quoting.orderbook"),
            self.bus.subscribe(EventType.MARKET, self._on_market, name="quoting.market"),
            self.bus.subscribe(EventType.TRADE, self._on_trade, name="quoting.trade"),
            self.bus.subscribe(EventType.ORDER, self._on_order, name="quoting.order"),
            self.bus.subscribe(EventType.POSITION, self._on_position, name="quoting.position"),
        ]
        for symbol in self.config.pairs:
            for channel in CHANNELS:
                await self.gateway.subscribe(channel, symbol)

        await self._load_initial_state()
        self.running = True
        self._refresh.start()
        logger.info("market_maker_started", pairs=list(self.config.pairs))

    async def stop(self) -> None:
        if not self.running and not self._subscriptions:
            return
        self.running = False
        await self._refresh.stop()
        for subscription in self._subscriptions:
            self.bus.unsubscribe(subscription)
        self._subscriptions = []

        for symbol in self.config.pairs:
            self._cancel_pending_quotes(symbol)
            await self.cancel_symbol_orders(symbol)
            for channel in CHANNELS:
                try:
                    await self.gateway.unsubscribe(channel, symbol)
                except GatewayError as e:
                    logger.warning("unsubscribe_failed", channel=channel, symbol=symbol, error=str(e))
        logger.info("market_maker_stopped")

    def update_config(self, config: MarketMakingConfig) -> None:
        self.config = config
        for symbol in config.pairs:
            self.price_history.setdefault(symbol, history_for(config.volatility))

    async def _load_initial_state(self) -> None:
        """Initial books, markets, our resting quotes and positions. Per-symbol failures are logged."""
        for symbol in self.config.pairs:
            try:
                self.order_books[symbol] = await self.gateway.get_order_book(symbol)
                market = await self.gateway.get_market_data(symbol)
            except GatewayError as e:
                logger.error("initial_data_fetch_failed", symbol=symbol, error=str(e))
                continue
            self.handle_market(market)

        try:
            for order in await self.gateway.get_open_orders():
                if self._is_quote(order):
                    self.active_orders[order.order_id] = order
        except GatewayError as e:
            logger.error("open_orders_fetch_failed", error=str(e))

        try:
            for position in await self.gateway.get_positions():
                self.positions[position.symbol] = position
        except GatewayError as e:
            logger.error("positions_fetch_failed", error=str(e))

        logger.info(
            "initial_state_loaded",
            books=len(self.order_books),
            open_quotes=len(self.active_orders),
            positions=len(self.positions),
        )

    # =========================================================================
    # EVENT HANDLERS
    # =========================================================================

    async def _on_orderbook(self, event: Event) -> None:
        await self.handle_orderbook(event.data)

    def _on_market(self, event: Event) -> None:
        self.handle_market(event.data)

    def _on_trade(self, event: Event) -> None:
        self.handle_trade(event.data)

    def _on_order(self, event: Event) -> None:
        self.handle_order(event.data)

    def _on_position(self, event: Event) -> None:
        self.handle_position(event.data)

    async def handle_orderbook(self, book: OrderBookSnapshot) -> None:
        """Store the book; an imbalance past the threshold triggers an immediate refresh."""
        self.order_books[book.symbol] = book
        imbalance = self.config.imbalance
        if not (self.running and imbalance.enabled) or book.symbol not in self.config.pairs:
            return

        ratio = imbalance_ratio(book, imbalance.depth)
        if abs(ratio) <= imbalance.threshold:
            return
        logger.info("orderbook_imbalance_detected", symbol=book.symbol, ratio=round(ratio, 4))
        self.bus.emit(
            EventType.IMBALANCE_DETECTED,
            {"symbol": book.symbol, "ratio": ratio, "threshold": imbalance.threshold},
            source="quoting",
        )
        await self.refresh_symbol(book.symbol)

    def handle_market(self, market: MarketSnapshot) -> None:
        self.markets[market.symbol] = market
        now = self._clock()
        history = self.price_history.setdefault(market.symbol, history_for(self.config.volatility))
        history.append(now, market.last_price)
        self.volatility[market.symbol] = compute_volatility(history, self.config.volatility, now)

    def handle_trade(self, trade: Trade) -> None:
        self.last_trades[trade.symbol] = trade

    def handle_order(self, order: Order) -> None:
        if not self._is_quote(order):
            return
        if order.is_terminal:
            self.active_orders.pop(order.order_id, None)
        else:
            self.active_orders[order.order_id] = order

    def handle_position(self, position: Position) -> None:
        self.positions[position.symbol] = position

    @staticmethod
    def _is_quote(order: Order) -> bool:
        return bool(order.client_order_id) and order.client_order_id.startswith(f"{QUOTE_PREFIX}-")

    # =========================================================================
    # QUOTING
    # =========================================================================

    def _lock(self, symbol: str) -> asyncio.Lock:
        if symbol not in self._locks:
            self._locks[symbol] = asyncio.Lock()
        return self._locks[symbol]

    def symbol_orders(self, symbol: str) -> list[Order]:
        return [o for o in self.active_orders.values() if o.symbol == symbol]

    async def refresh_all(self) -> None:
        if not self.running:
            return
        for symbol in self.config.pairs:
            try:
                await self.refresh_symbol(symbol)
            except GatewayError as e:
                logger.error("quote_refresh_failed", symbol=symbol, error=str(e))

    async def refresh_symbol(self, symbol: str) -> int:
        """
        Replace the resting quotes for one symbol.

        Returns:
            Number of orders submitted
        """
        async with self._lock(symbol):
            # Quotes still awaiting co-signers were priced for an older book.
            self._cancel_pending_quotes(symbol)
            if self.risk is not None and self.risk.is_circuit_breaker_active(symbol):
                logger.info("quote_refresh_skipped", symbol=symbol, reason="circuit_breaker")
                return 0

            book = self.order_books.get(symbol)
            market = self.markets.get(symbol)
            if book is None or market is None:
                logger.debug("quote_refresh_skipped", symbol=symbol, reason="missing_data")
                return 0

            volatility = self.volatility.get(symbol, VolatilityMetrics())
            prices = compute_quote_prices(book, self.config, volatility.short)
            if prices is None:
                logger.debug("quote_refresh_skipped", symbol=symbol, reason="empty_book")
                return 0
            position = self.positions.get(symbol)
            sizes = compute_quote_sizes(market, position.size if position else 0.0, self.config)

            await self.cancel_symbol_orders(symbol)

            correlation = f"q-{symbol}-{next(self._quote_sequence)}"
            submitted = 0
            if sizes.bid > 0:
                submitted += await self._submit(symbol, OrderSide.BUY, prices.bid, sizes.bid, f"{correlation}-0")
            if sizes.ask > 0:
                submitted += await self._submit(symbol, OrderSide.SELL, prices.ask, sizes.ask, f"{correlation}-0")

            for layer in layer_orders(prices.bid, prices.ask, sizes.bid, sizes.ask, self.config):
                submitted += await self._submit(
                    symbol, layer.side, layer.price, layer.size, f"{correlation}-{layer.level}"
                )

            logger.debug(
                "quotes_refreshed",
                symbol=symbol,
                bid=prices.bid,
                ask=prices.ask,
                bid_size=sizes.bid,
                ask_size=sizes.ask,
                skew=round(sizes.skew, 4),
                spread_pct=prices.spread_pct,
                submitted=submitted,
            )
            return submitted

    async def _submit(
        self,
        symbol: str,
        side: OrderSide,
        price: float,
        size: float,
        correlation_id: str,
    ) -> int:
        """Authorize and place one limit quote. Returns 1 if it reached the exchange."""
        if len(self.symbol_orders(symbol)) >= self.config.orders.max_open_orders:
            logger.info("max_open_orders_reached", symbol=symbol, max=self.config.orders.max_open_orders)
            return 0

        request = OrderRequest(
            symbol=symbol,
            side=side,
            order_type=OrderType.LIMIT,
            size=size,
            price=price,
            client_order_id=generate_client_order_id(QUOTE_PREFIX, self._rng),
            correlation_id=correlation_id,
        )

        async def place() -> Order:
            return await self.gateway.place_order(request)

        try:
            tx = await self.security.secure_transaction("order", request, request.notional, place)
        except GatewayError as e:
            self.quotes_failed += 1
            logger.error("quote_placement_failed", symbol=symbol, side=side.value, error=str(e))
            return 0

        if tx.status is TransactionStatus.EXECUTED:
            order = tx.result
            self.active_orders[order.order_id] = order
            self.quotes_submitted += 1
            return 1
        self.quotes_pending += 1
        self.pending_quotes.setdefault(symbol, []).append(tx)
        return 0

    def _cancel_pending_quotes(self, symbol: str) -> int:
        canceled = 0
        for tx in self.pending_quotes.pop(symbol, []):
            if tx.status is not TransactionStatus.PENDING:
                continue
            self.security.cancel_transaction(tx.transaction_id, reason="superseded")
            canceled += 1
        if canceled:
            logger.info("pending_quotes_canceled", symbol=symbol, count=canceled)
        return canceled

    async def cancel_symbol_orders(self, symbol: str) -> int:
        canceled = 0
        for order in self.symbol_orders(symbol):
            try:
                await self.gateway.cancel_order(symbol, order.order_id)
            except GatewayError as e:
                logger.warning("quote_cancel_failed", symbol=symbol, order_id=order.order_id, error=str(e))
                continue
            self.active_orders.pop(order.order_id, None)
            canceled += 1
        return canceled

    def get_state(self) -> dict:
        return {
            "running": self.running,
            "pairs": list(self.config.pairs),
            "active_orders": [o.to_dict() for o in self.active_orders.values()],
            "positions": {s: p.to_dict() for s, p in self.positions.items()},
            "volatility": {s: v.to_dict() for s, v in self.volatility.items()},
            "order_books": {s: b.to_dict() for s, b in self.order_books.items()},
            "markets": {s: m.to_dict() for s, m in self.markets.items()},
            "quotes_submitted": self.quotes_submitted,
            "quotes_pending": self.quotes_pending,
            "pending_quote_transactions": sum(len(txs) for txs in self.pending_quotes.values()),
            "quotes_failed": self.quotes_failed,
        }
