"""
Core building blocks shared by every component.

Handles:
- Exchange data model (orders, positions, order books, market snapshots)
- Typed event bus
- Error taxonomy
"""

from perp_mm.core.errors import (
    PerpMMError,
    ConfigError,
    GatewayError,
    RequestError,
    ConnectionUnavailable,
    AuthorizationError,
    StartupError,
)
from perp_mm.core.events import Event, EventBus, EventType, Subscription
from perp_mm.core.models import (
    MarketSnapshot,
    Order,
    OrderBookSnapshot,
    OrderRequest,
    OrderSide,
    OrderStatus,
    OrderType,
    Position,
    Trade,
)

__all__ = [
    "PerpMMError",
    "ConfigError",
    "GatewayError",
    "RequestError",
    "ConnectionUnavailable",
    "AuthorizationError",
    "StartupError",
    "Event",
    "EventBus",
    "EventType",
    "Subscription",
    "MarketSnapshot",
    "Order",
    "OrderBookSnapshot",
    "OrderRequest",
    "OrderSide",
    "OrderStatus",
    "OrderType",
    "Position",
    "Trade",
]
