"""
Protective order pricing.

Stop-loss and take-profit levels relative to a position's entry, and the
trailing-stop ratchet. Prices are rounded to 2 decimals.
"""

from dataclasses import dataclass, field
from typing import Optional

from perp_mm.core.models import Order, OrderSide, Position

PRICE_DECIMALS = 2


def position_id(symbol: str, size: float) -> str:
    """``SYMBOL-long`` or ``SYMBOL-short``."""
    return f"{symbol}-{'long' if size > 0 else 'short'}"


def stop_loss_price(entry_price: float, percentage: float, is_long: bool) -> float:
    """Below entry for longs, above entry for shorts."""
    pct = percentage / 100
    price = entry_price * (1 - pct) if is_long else entry_price * (1 + pct)
    return round(price, PRICE_DECIMALS)


def take_profit_price(entry_price: float, percentage: float, is_long: bool) -> float:
    """Above entry for longs, below entry for shorts."""
    pct = percentage / 100
    price = entry_price * (1 + pct) if is_long else entry_price * (1 - pct)
    return round(price, PRICE_DECIMALS)


def trailing_stop_candidate(price: float, trailing_percentage: float, is_long: bool) -> float:
    distance = price * trailing_percentage / 100
    candidate = price - distance if is_long else price + distance
    return round(candidate, PRICE_DECIMALS)


def is_tighter(candidate: float, current: float, is_long: bool) -> bool:
    """Stops only ratchet toward the market: up for longs, down for shorts."""
    return candidate > current if is_long else candidate < current


def protective_side(position: Position) -> OrderSide:
    return OrderSide.SELL if position.is_long else OrderSide.BUY


@dataclass
class ProtectiveOrders:
    """Stop-loss and take-profit currently guarding one position."""
    position_id: str
    symbol: str
    is_long: bool
    size: float
    stop_order: Optional[Order] = None
    stop_price: Optional[float] = None
    take_profit_order: Optional[Order] = None
    take_profit_price: Optional[float] = None
    stop_history: list[float] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "position_id": self.position_id,
            "symbol": self.symbol,
            "is_long": self.is_long,
            "size": self.size,
            "stop_order_id": self.stop_order.order_id if self.stop_order else None,
            "stop_price": self.stop_price,
            "take_profit_order_id": (
                self.take_profit_order.order_id if self.take_profit_order else None
            ),
            "take_profit_price": self.take_profit_price,
        }
