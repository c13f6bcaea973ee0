"""
Exchange data model.

Orders are mutated only by gateway-delivered status events and are terminal
once filled, canceled, rejected or expired:

NEW → PARTIALLY_FILLED → FILLED
 ↓          ↓
CANCELED / REJECTED / EXPIRED

Positions, order books and market snapshots are replaced wholesale on every
update, never patched.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional
import time


class OrderSide(Enum):
    """Order side."""
    BUY = "buy"
    SELL = "sell"

    @property
    def opposite(self) -> "OrderSide":
        return OrderSide.SELL if self is OrderSide.BUY else OrderSide.BUY


class OrderType(Enum):
    """Order kind."""
    LIMIT = "limit"
    MARKET = "market"
    STOP_LIMIT = "stopLimit"
    STOP_MARKET = "stopMarket"


class OrderStatus(Enum):
    """Exchange-reported order status."""
    NEW = "new"
    PARTIALLY_FILLED = "partiallyFilled"
    FILLED = "filled"
    CANCELED = "canceled"
    REJECTED = "rejected"
    EXPIRED = "expired"


TERMINAL_STATUSES = frozenset({
    OrderStatus.FILLED,
    OrderStatus.CANCELED,
    OrderStatus.REJECTED,
    OrderStatus.EXPIRED,
})


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


def _to_float(value: Any, default: float = 0.0) -> float:
    if value is None or value == "":
        return default
    return float(value)


@dataclass
class OrderRequest:
    """An order we intend to submit."""
    symbol: str
    side: OrderSide
    order_type: OrderType
    size: float
    price: Optional[float] = None
    stop_price: Optional[float] = None
    reduce_only: bool = False
    post_only: bool = False
    client_order_id: Optional[str] = None
    correlation_id: Optional[str] = None

    @property
    def notional(self) -> float:
        """Notional value used for security tier classification."""
        reference = self.price if self.price is not None else self.stop_price
        return abs(self.size * (reference or 0.0))

    def to_dict(self) -> dict:
        """Wire representation for the order endpoint."""
        payload: dict[str, Any] = {
            "symbol": self.symbol,
            "side": self.side.value,
            "type": self.order_type.value,
            "size": self.size,
        }
        if self.price is not None:
            payload["price"] = self.price
        if self.stop_price is not None:
            payload["stopPrice"] = self.stop_price
        if self.reduce_only:
            payload["reduceOnly"] = True
        if self.post_only:
            payload["postOnly"] = True
        if self.client_order_id:
            payload["clientOrderId"] = self.client_order_id
        if self.correlation_id:
            payload["correlationId"] = self.correlation_id
        return payload


@dataclass
class Order:
    """
    An order known to the exchange.

    Mutated only by gateway status events. Terminal once filled, canceled,
    rejected or expired.
    """
    order_id: str
    symbol: str
    side: OrderSide
    order_type: OrderType
    price: float
    size: float
    status: OrderStatus = OrderStatus.NEW
    filled_size: float = 0.0
    avg_fill_price: float = 0.0
    timestamp: int = field(default_factory=now_ms)
    client_order_id: Optional[str] = None
    stop_price: Optional[float] = None
    correlation_id: Optional[str] = None

    def __post_init__(self):
        # Orders placed without an explicit correlation id stand alone
        if self.correlation_id is None:
            self.correlation_id = self.client_order_id

    @property
    def is_terminal(self) -> bool:
        """Check if order is in terminal state."""
        return self.status in TERMINAL_STATUSES

    @property
    def is_open(self) -> bool:
        return not self.is_terminal

    @property
    def remaining_size(self) -> float:
        return max(self.size - self.filled_size, 0.0)

    @classmethod
    def from_dict(cls, data: dict) -> "Order":
        """Parse an exchange order payload."""
        return cls(
            order_id=str(data.get("orderId") or data.get("id") or ""),
            symbol=data["symbol"],
            side=OrderSide(data["side"]),
            order_type=OrderType(data.get("type", OrderType.LIMIT.value)),
            price=_to_float(data.get("price")),
            size=_to_float(data.get("size")),
            status=OrderStatus(data.get("status", OrderStatus.NEW.value)),
            filled_size=_to_float(data.get("filledSize")),
            avg_fill_price=_to_float(data.get("avgFillPrice")),
            timestamp=int(data.get("timestamp") or now_ms()),
            client_order_id=data.get("clientOrderId"),
            stop_price=(
                _to_float(data["stopPrice"]) if data.get("stopPrice") is not None else None
            ),
            correlation_id=data.get("correlationId"),
        )

    def to_dict(self) -> dict:
        """Convert to dictionary for the control surface."""
        return {
            "order_id": self.order_id,
            "symbol": self.symbol,
            "side": self.side.value,
            "type": self.order_type.value,
            "price": self.price,
            "size": self.size,
            "status": self.status.value,
            "filled_size": self.filled_size,
            "avg_fill_price": self.avg_fill_price,
            "timestamp": self.timestamp,
            "client_order_id": self.client_order_id,
            "stop_price": self.stop_price,
            "correlation_id": self.correlation_id,
        }


@dataclass
class Position:
    """
    A position on one symbol. Positive size is long.

    One position per symbol, replaced wholesale on each update.
    """
    symbol: str
    size: float
    entry_price: float
    mark_price: float
    liquidation_price: float = 0.0
    unrealized_pnl: float = 0.0
    realized_pnl: float = 0.0
    leverage: float = 1.0
    margin_type: str = "cross"
    timestamp: int = field(default_factory=now_ms)

    @property
    def is_flat(self) -> bool:
        return self.size == 0

    @property
    def is_long(self) -> bool:
        return self.size > 0

    @property
    def notional(self) -> float:
        return abs(self.size * self.mark_price)

    @classmethod
    def from_dict(cls, data: dict) -> "Position":
        return cls(
            symbol=data["symbol"],
            size=_to_float(data.get("size")),
            entry_price=_to_float(data.get("entryPrice")),
            mark_price=_to_float(data.get("markPrice")),
            liquidation_price=_to_float(data.get("liquidationPrice")),
            unrealized_pnl=_to_float(data.get("unrealizedPnl")),
            realized_pnl=_to_float(data.get("realizedPnl")),
            leverage=_to_float(data.get("leverage"), 1.0),
            margin_type=data.get("marginType", "cross"),
            timestamp=int(data.get("timestamp") or now_ms()),
        )

    def to_dict(self) -> dict:
        return {
            "symbol": self.symbol,
            "size": self.size,
            "entry_price": self.entry_price,
            "mark_price": self.mark_price,
            "liquidation_price": self.liquidation_price,
            "unrealized_pnl": self.unrealized_pnl,
            "realized_pnl": self.realized_pnl,
            "leverage": self.leverage,
            "margin_type": self.margin_type,
            "timestamp": self.timestamp,
        }


@dataclass
class OrderBookSnapshot:
    """Full order book snapshot. Bids descending, asks ascending."""
    symbol: str
    bids: list[tuple[float, float]]
    asks: list[tuple[float, float]]
    timestamp: int = field(default_factory=now_ms)

    @property
    def best_bid(self) -> Optional[float]:
        return self.bids[0][0] if self.bids else None

    @property
    def best_ask(self) -> Optional[float]:
        return self.asks[0][0] if self.asks else None

    @property
    def mid_price(self) -> Optional[float]:
        if not self.bids or not self.asks:
            return None
        return (self.bids[0][0] + self.asks[0][0]) / 2

    @property
    def spread(self) -> Optional[float]:
        if not self.bids or not self.asks:
            return None
        return self.asks[0][0] - self.bids[0][0]

    @classmethod
    def from_dict(cls, data: dict) -> "OrderBookSnapshot":
        return cls(
            symbol=data["symbol"],
            bids=[(float(p), float(s)) for p, s in data.get("bids", [])],
            asks=[(float(p), float(s)) for p, s in data.get("asks", [])],
            timestamp=int(data.get("timestamp") or now_ms()),
        )

    def to_dict(self) -> dict:
        return {
            "symbol": self.symbol,
            "bids": [list(level) for level in self.bids],
            "asks": [list(level) for level in self.asks],
            "timestamp": self.timestamp,
        }


@dataclass
class MarketSnapshot:
    """Ticker-level market data for one symbol."""
    symbol: str
    last_price: float
    mark_price: float
    index_price: float = 0.0
    funding_rate: float = 0.0
    volume_24h: float = 0.0
    open_interest: float = 0.0
    timestamp: int = field(default_factory=now_ms)

    @classmethod
    def from_dict(cls, data: dict) -> "MarketSnapshot":
        last = _to_float(data.get("lastPrice"))
        return cls(
            symbol=data["symbol"],
            last_price=last,
            mark_price=_to_float(data.get("markPrice"), last),
            index_price=_to_float(data.get("indexPrice"), last),
            funding_rate=_to_float(data.get("fundingRate")),
            volume_24h=_to_float(data.get("volume24h")),
            open_interest=_to_float(data.get("openInterest")),
            timestamp=int(data.get("timestamp") or now_ms()),
        )

    def to_dict(self) -> dict:
        return {
            "symbol": self.symbol,
            "last_price": self.last_price,
            "mark_price": self.mark_price,
            "index_price": self.index_price,
            "funding_rate": self.funding_rate,
            "volume_24h": self.volume_24h,
            "open_interest": self.open_interest,
            "timestamp": self.timestamp,
        }


@dataclass
class Trade:
    """A public trade print."""
    symbol: str
    price: float
    size: float
    side: OrderSide
    timestamp: int = field(default_factory=now_ms)
    trade_id: str = ""

    @classmethod
    def from_dict(cls, data: dict) -> "Trade":
        return cls(
            symbol=data["symbol"],
            price=_to_float(data.get("price")),
            size=_to_float(data.get("size")),
            side=OrderSide(data.get("side", OrderSide.BUY.value)),
            timestamp=int(data.get("timestamp") or now_ms()),
            trade_id=str(data.get("id", "")),
        )


def utc_iso(timestamp_ms: int) -> str:
    """Format an epoch-millisecond timestamp for logs and reports."""
    return datetime.fromtimestamp(timestamp_ms / 1000, tz=timezone.utc).isoformat()
