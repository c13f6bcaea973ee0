"""
Risk engine.

Responsibilities:
- Per-position limit checks (max long, max short, max leverage)
- Protective stop-loss / take-profit orders, with a trailing stop ratchet
- Per-symbol volatility circuit breakers
- Portfolio exposure and drawdown checks on a fixed tick

Every breach is published as an advisory event. Nothing here halts trading
on its own.
"""

import asyncio
from dataclasses import dataclass
from typing import Any, Callable, Optional

import structlog

from perp_mm.config.schema import RiskConfig
from perp_mm.core.errors import GatewayError
from perp_mm.core.events import Event, EventBus, EventType, Subscription
from perp_mm.core.models import (
    MarketSnapshot,
    Order,
    OrderRequest,
    OrderStatus,
    OrderType,
    Position,
    now_ms,
)
from perp_mm.core.periodic import PeriodicTask
from perp_mm.gateway.exchange import generate_client_order_id
from perp_mm.risk.circuit_breaker import CircuitBreaker
from perp_mm.risk.protective import (
    ProtectiveOrders,
    is_tighter,
    position_id,
    protective_side,
    stop_loss_price,
    take_profit_price,
    trailing_stop_candidate,
)

logger = structlog.get_logger(__name__)


@dataclass
class LimitBreach:
    """A limit that is currently exceeded."""
    limit: str
    current: float
    maximum: float
    symbol: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "symbol": self.symbol,
            "limit": self.limit,
            "current": self.current,
            "max": self.maximum,
        }


class RiskEngine:
    """
    Enforces position and portfolio limits and manages protective orders.

    Design principles:
    - Signals, never halts: breaches are events for others to act on
    - Stops only tighten, never loosen
    - Cancel before replace, so a position never has two live stops
    """

    def __init__(
        self,
        config: RiskConfig,
        gateway: Any,
        bus: EventBus,
        clock: Callable[[], int] = now_ms,
    ):
        """
        Initialize risk engine.

        Args:
            config: Risk configuration
            gateway: Exchange gateway (place_order, cancel_order, get_positions)
            bus: Event bus
            clock: Wall clock in epoch milliseconds
        """
        self.config = config
        self.gateway = gateway
        self.bus = bus
        self._clock = clock

        self.positions: dict[str, Position] = {}
        self.markets: dict[str, MarketSnapshot] = {}
        self.protective: dict[str, ProtectiveOrders] = {}  # position_id -> orders
        self.circuit_breakers: dict[str, CircuitBreaker] = {}
        self._locks: dict[str, asyncio.Lock] = {}

        self._subscriptions: list[Subscription] = []
        self._monitor = PeriodicTask("risk-monitor", config.monitor_interval_s, self.monitor)
        self.running = False

        logger.info(
            "risk_engine_initialized",
            symbols=list(config.position_limits),
            max_exposure=config.portfolio.max_total_exposure,
            max_drawdown_pct=config.portfolio.max_drawdown_pct,
        )

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    async def start(self) -> None:
        """
        Load current positions, protect open ones, then start listening.

        Raises:
            RequestError: Positions could not be fetched
        """
        positions = await self.gateway.get_positions()
        for position in positions:
            await self.handle_position(position)

        self._subscriptions = [
            self.bus.subscribe(EventType.POSITION, self._on_position, name="risk.position"),
            self.bus.subscribe(EventType.MARKET, self._on_market, name="risk.market"),
            self.bus.subscribe(EventType.ORDER, self._on_order, name="risk.order"),
        ]
        self._monitor.start()
        self.running = True
        logger.info("risk_engine_started", positions=len(positions))

    async def stop(self) -> None:
        for subscription in self._subscriptions:
            self.bus.unsubscribe(subscription)
        self._subscriptions = []
        await self._monitor.stop()
        self.running = False
        logger.info("risk_engine_stopped")

    def update_config(self, config: RiskConfig) -> None:
        self.config = config
        self.circuit_breakers.clear()

    async def _on_position(self, event: Event) -> None:
        await self.handle_position(event.data)

    async def _on_market(self, event: Event) -> None:
        await self.handle_market(event.data)

    def _on_order(self, event: Event) -> None:
        self.handle_order(event.data)

    def _lock(self, key: str) -> asyncio.Lock:
        if key not in self._locks:
            self._locks[key] = asyncio.Lock()
        return self._locks[key]

    # =========================================================================
    # POSITIONS
    # =========================================================================

    async def handle_position(self, position: Position) -> None:
        """Replace the stored position, adjust protection, check limits."""
        previous = self.positions.get(position.symbol)
        self.positions[position.symbol] = position

        if previous is None or previous.size != position.size:
            await self._on_position_change(position, previous)

        breaches = self.check_position_limits(position)
        for breach in breaches:
            self.bus.emit(EventType.LIMIT_EXCEEDED, breach.to_dict(), source="risk")

    async def _on_position_change(self, position: Position, previous: Optional[Position]) -> None:
        async with self._lock(position.symbol):
            if position.is_flat:
                await self._cancel_protection(position.symbol)
                return

            opened = previous is None or previous.is_flat
            reversed_side = not opened and (previous.size > 0) != (position.size > 0)
            if opened or reversed_side:
                if reversed_side:
                    await self._cancel_protection(position.symbol)
                await self._setup_protection(position)

    def check_position_limits(self, position: Position) -> list[LimitBreach]:
        """Return every per-symbol limit the position exceeds."""
        if position.is_flat:
            return []
        limits = self.config.position_limits.get(position.symbol)
        if limits is None:
            return []

        breaches = []
        if position.size > 0 and position.size > limits.max_long_size:
            breaches.append(LimitBreach("max_long_size", position.size, limits.max_long_size, position.symbol))
        if position.size < 0 and abs(position.size) > limits.max_short_size:
            breaches.append(LimitBreach("max_short_size", abs(position.size), limits.max_short_size, position.symbol))
        if position.leverage > limits.max_leverage:
            breaches.append(LimitBreach("max_leverage", position.leverage, limits.max_leverage, position.symbol))

        for breach in breaches:
            logger.warning("position_limit_exceeded", **breach.to_dict())
        return breaches

    # =========================================================================
    # PROTECTIVE ORDERS
    # =========================================================================

    async def setup_protective_orders(self, position: Position) -> Optional[ProtectiveOrders]:
        """Place a stop-market stop-loss and a limit take-profit for the full size."""
        async with self._lock(position.symbol):
            return await self._setup_protection(position)

    async def _setup_protection(self, position: Position) -> Optional[ProtectiveOrders]:
        if position.is_flat:
            return None

        pid = position_id(position.symbol, position.size)
        protection = ProtectiveOrders(
            position_id=pid,
            symbol=position.symbol,
            is_long=position.is_long,
            size=abs(position.size),
        )
        self.protective[pid] = protection
        side = protective_side(position)

        if self.config.stop_loss.enabled:
            price = stop_loss_price(position.entry_price, self.config.stop_loss.percentage, position.is_long)
            order = await self._place_stop(position, price, "stop_loss")
            if order is not None:
                protection.stop_order = order
                protection.stop_price = price
                protection.stop_history.append(price)

        if self.config.take_profit.enabled:
            price = take_profit_price(position.entry_price, self.config.take_profit.percentage, position.is_long)
            order = await self._place(
                OrderRequest(
                    symbol=position.symbol,
                    side=side,
                    order_type=OrderType.LIMIT,
                    size=abs(position.size),
                    price=price,
                    reduce_only=True,
                    client_order_id=generate_client_order_id("tp"),
                ),
                kind="take_profit",
            )
            if order is not None:
                protection.take_profit_order = order
                protection.take_profit_price = price

        logger.info(
            "protective_orders_placed",
            position_id=pid,
            stop_price=protection.stop_price,
            take_profit_price=protection.take_profit_price,
        )
        return protection

    async def _place_stop(self, position: Position, price: float, kind: str) -> Optional[Order]:
        return await self._place(
            OrderRequest(
                symbol=position.symbol,
                side=protective_side(position),
                order_type=OrderType.STOP_MARKET,
                size=abs(position.size),
                stop_price=price,
                reduce_only=True,
                client_order_id=generate_client_order_id("sl"),
            ),
            kind=kind,
        )

    async def _place(self, request: OrderRequest, kind: str) -> Optional[Order]:
        try:
            return await self.gateway.place_order(request)
        except GatewayError as e:
            logger.error(
                "protective_order_failed",
                kind=kind,
                symbol=request.symbol,
                error=str(e),
            )
            return None

    async def _cancel(self, symbol: str, order: Optional[Order], kind: str) -> bool:
        if order is None:
            return True
        try:
            await self.gateway.cancel_order(symbol, order.order_id)
            return True
        except GatewayError as e:
            logger.error(
                "protective_cancel_failed",
                kind=kind,
                symbol=symbol,
                order_id=order.order_id,
                error=str(e),
            )
            return False

    async def cancel_protective_orders(self, symbol: str) -> None:
        """Cancel stop-loss and take-profit for both sides of a symbol."""
        async with self._lock(symbol):
            await self._cancel_protection(symbol)

    async def _cancel_protection(self, symbol: str) -> None:
        for pid in (f"{symbol}-long", f"{symbol}-short"):
            protection = self.protective.pop(pid, None)
            if protection is None:
                continue
            await self._cancel(symbol, protection.stop_order, "stop_loss")
            await self._cancel(symbol, protection.take_profit_order, "take_profit")
            logger.info("protective_orders_canceled", position_id=pid)

    async def update_trailing_stop(self, symbol: str, price: float) -> bool:
        """
        Ratchet the stop-loss toward the market.

        A stop lost to a failed replace is placed again on the next call.

        Returns:
            True if the stop price moved
        """
        stop_cfg = self.config.stop_loss
        if not (stop_cfg.enabled and stop_cfg.trailing):
            return False

        async with self._lock(symbol):
            position = self.positions.get(symbol)
            if position is None or position.is_flat:
                return False
            pid = position_id(symbol, position.size)
            protection = self.protective.get(pid)
            if protection is None or protection.stop_price is None:
                return False

            previous = protection.stop_price
            candidate = trailing_stop_candidate(price, stop_cfg.trailing_percentage, protection.is_long)
            tighter = is_tighter(candidate, previous, protection.is_long)

            if protection.stop_order is None:
                target = candidate if tighter else previous
                order = await self._place_stop(position, target, "stop_loss_restore")
                if order is None:
                    return False
                protection.stop_order = order
                logger.warning("stop_loss_restored", position_id=pid, stop_price=target)
                if target == previous:
                    return False
            else:
                if not tighter:
                    return False
                if not await self._cancel(symbol, protection.stop_order, "stop_loss"):
                    return False
                protection.stop_order = None

                order = await self._place_stop(position, candidate, "trailing_stop")
                if order is None:
                    # Cancel-before-replace left the position bare; put the old stop back.
                    protection.stop_order = await self._place_stop(position, previous, "stop_loss_restore")
                    return False
                protection.stop_order = order
                target = candidate

            protection.stop_price = target
            protection.stop_history.append(target)
            logger.info(
                "trailing_stop_updated",
                position_id=pid,
                previous=previous,
                stop_price=target,
                market_price=price,
            )
            return True

    def handle_order(self, order: Order) -> None:
        """Track protective order status and signal SL/TP fills."""
        for pid, protection in list(self.protective.items()):
            if protection.stop_order is not None and protection.stop_order.order_id == order.order_id:
                kind, event_type = "stop_order", EventType.STOP_LOSS_TRIGGERED
            elif (
                protection.take_profit_order is not None
                and protection.take_profit_order.order_id == order.order_id
            ):
                kind, event_type = "take_profit_order", EventType.TAKE_PROFIT_TRIGGERED
            else:
                continue

            if order.status is OrderStatus.FILLED:
                setattr(protection, kind, None)
                logger.warning(event_type.value, position_id=pid, order_id=order.order_id)
                self.bus.emit(
                    event_type,
                    {"position_id": pid, "symbol": order.symbol, "order": order.to_dict()},
                    source="risk",
                )
            elif order.is_terminal:
                setattr(protection, kind, None)
            else:
                setattr(protection, kind, order)

    # =========================================================================
    # MARKET / CIRCUIT BREAKERS
    # =========================================================================

    async def handle_market(self, snapshot: MarketSnapshot) -> None:
        """Record the price, ratchet trailing stops, evaluate the breaker."""
        self.markets[snapshot.symbol] = snapshot
        now = self._clock()
        cb_cfg = self.config.circuit_breaker

        breaker = None
        if cb_cfg.enabled:
            breaker = self.circuit_breakers.get(snapshot.symbol)
            if breaker is None:
                breaker = CircuitBreaker(snapshot.symbol, cb_cfg)
                self.circuit_breakers[snapshot.symbol] = breaker
            breaker.record(snapshot.last_price, now)

        if snapshot.symbol in self.positions:
            await self.update_trailing_stop(snapshot.symbol, snapshot.last_price)

        if breaker is not None:
            trip = breaker.evaluate(now)
            if trip is not None:
                self.bus.emit(EventType.CIRCUIT_BREAKER, trip.to_dict(), source="risk")

    def is_circuit_breaker_active(self, symbol: str) -> bool:
        breaker = self.circuit_breakers.get(symbol)
        return breaker is not None and breaker.is_active(self._clock())

    # =========================================================================
    # PORTFOLIO
    # =========================================================================

    def check_portfolio_limits(self) -> list[LimitBreach]:
        """Total exposure and unrealized drawdown against portfolio caps."""
        exposure = 0.0
        unrealized = 0.0
        for position in self.positions.values():
            if position.is_flat:
                continue
            exposure += position.notional
            unrealized += position.unrealized_pnl

        limits = self.config.portfolio
        breaches = []
        if exposure > limits.max_total_exposure:
            breaches.append(LimitBreach("max_total_exposure", exposure, limits.max_total_exposure))

        if unrealized < 0 and exposure > 0:
            drawdown_pct = abs(unrealized) / exposure * 100
            if drawdown_pct > limits.max_drawdown_pct:
                breaches.append(LimitBreach("max_drawdown", drawdown_pct, limits.max_drawdown_pct))

        for breach in breaches:
            logger.warning("portfolio_limit_exceeded", **breach.to_dict())
            self.bus.emit(EventType.PORTFOLIO_LIMIT_EXCEEDED, breach.to_dict(), source="risk")
        return breaches

    async def monitor(self) -> None:
        """Periodic tick: portfolio limits, then trailing stops for every position."""
        self.check_portfolio_limits()
        for symbol, position in list(self.positions.items()):
            if position.is_flat:
                continue
            market = self.markets.get(symbol)
            if market is not None:
                await self.update_trailing_stop(symbol, market.last_price)

    def get_state(self) -> dict:
        return {
            "running": self.running,
            "positions": {s: p.to_dict() for s, p in self.positions.items()},
            "protective_orders": {pid: p.to_dict() for pid, p in self.protective.items()},
            "circuit_breakers": {s: cb.to_dict() for s, cb in self.circuit_breakers.items()},
        }
