"""
Quote pricing and sizing.

Pure functions over an order book, market snapshot and config. The market
maker composes them; tests exercise them directly.
"""

from dataclasses import dataclass
from typing import Optional

from perp_mm.config.schema import MarketMakingConfig, OrderConfig, SpreadConfig, VolatilityConfig
from perp_mm.core.models import MarketSnapshot, OrderBookSnapshot, OrderSide
from perp_mm.quoting.inventory import get_strategy
from perp_mm.utils.market_utils import clamp, round_down, round_up

# Base quote size as a fraction of 24h volume
VOLUME_FRACTION = 0.001


@dataclass
class QuotePrices:
    bid: float
    ask: float
    mid: float
    half_spread: float
    spread_pct: float
    imbalance_adjustment: float = 0.0


@dataclass
class QuoteSizes:
    bid: float
    ask: float
    base: float
    skew: float


@dataclass
class LayerOrder:
    side: OrderSide
    level: int
    price: float
    size: float


def mid_price(book: OrderBookSnapshot) -> Optional[float]:
    return book.mid_price


def select_spread_tier(short_volatility: float, spread: SpreadConfig, thresholds: VolatilityConfig) -> float:
    """Base spread (%) for the current short-horizon volatility."""
    if short_volatility > thresholds.high_threshold:
        return spread.tier3
    if short_volatility > thresholds.medium_threshold:
        return spread.tier2
    return spread.tier1


def imbalance_ratio(book: OrderBookSnapshot, depth: int = 10) -> float:
    """
    (bid volume - ask volume) / total over the top ``depth`` levels.

    Positive when bids dominate; 0.0 for an empty book.
    """
    bid_volume = sum(size for _, size in book.bids[:depth])
    ask_volume = sum(size for _, size in book.asks[:depth])
    total = bid_volume + ask_volume
    if total <= 0:
        return 0.0
    return (bid_volume - ask_volume) / total


def imbalance_adjustment(mid: float, ratio: float, threshold: float, factor: float) -> float:
    """Price shift for an imbalanced book, 0.0 inside the threshold."""
    if abs(ratio) <= threshold:
        return 0.0
    return mid * ratio * factor


def compute_quote_prices(
    book: OrderBookSnapshot,
    config: MarketMakingConfig,
    short_volatility: float = 0.0,
) -> Optional[QuotePrices]:
    """
    Bid/ask around mid.

    Half-spread = mid * tier% / 2. When imbalance adjustment is enabled and the
    book is imbalanced past the threshold, both quotes shift by the same
    amount toward the heavier side. Bid rounds down, ask rounds up.

    Returns:
        QuotePrices, or None when either side of the book is empty
    """
    mid = book.mid_price
    if mid is None:
        return None

    spread_pct = select_spread_tier(short_volatility, config.spread, config.volatility)
    half_spread = mid * spread_pct / 100 / 2

    adjustment = 0.0
    if config.imbalance.enabled:
        ratio = imbalance_ratio(book, config.imbalance.depth)
        adjustment = imbalance_adjustment(
            mid, ratio, config.imbalance.threshold, config.imbalance.adjustment_factor
        )

    increment = config.orders.price_increment
    return QuotePrices(
        bid=round_down(mid - half_spread + adjustment, increment),
        ask=round_up(mid + half_spread + adjustment, increment),
        mid=mid,
        half_spread=half_spread,
        spread_pct=spread_pct,
        imbalance_adjustment=adjustment,
    )


def base_size(market: Optional[MarketSnapshot], orders: OrderConfig) -> float:
    """0.1% of 24h volume, clamped to [min_size, max_size]."""
    if market is None:
        return orders.min_size
    return clamp(market.volume_24h * VOLUME_FRACTION, orders.min_size, orders.max_size)


def inventory_skew(position_size: float, base: float, max_imbalance: float) -> float:
    """Position relative to the tolerated inventory, in [-1, 1]."""
    if position_size == 0 or base <= 0:
        return 0.0
    return clamp(position_size / (base * max_imbalance), -1.0, 1.0)


def finalize_size(size: float, orders: OrderConfig) -> float:
    """
    Cap at max_size, floor to the increment, then drop below-minimum sizes.

    Returns:
        The submittable size, or 0.0 when the order should be skipped
    """
    floored = round_down(min(size, orders.max_size), orders.size_increment)
    return floored if floored >= orders.min_size else 0.0


def compute_quote_sizes(
    market: Optional[MarketSnapshot],
    position_size: float,
    config: MarketMakingConfig,
) -> QuoteSizes:
    """Bid/ask sizes after inventory skew; a size of 0.0 means skip that side."""
    base = base_size(market, config.orders)
    skew = inventory_skew(position_size, base, config.inventory.max_imbalance)
    strategy = get_strategy(config.inventory.strategy)
    bid, ask = strategy(base, skew, config.inventory.target_ratio)
    return QuoteSizes(
        bid=finalize_size(bid, config.orders),
        ask=finalize_size(ask, config.orders),
        base=base,
        skew=skew,
    )


def layer_orders(
    bid_price: float,
    ask_price: float,
    bid_size: float,
    ask_size: float,
    config: MarketMakingConfig,
) -> list[LayerOrder]:
    """
    Additional quotes behind the top of book.

    Level i (1..levels) sits ``price * spread_multiplier * i / 100`` further
    out with size ``size * size_multiplier ** i``. Levels whose floored size is
    below the minimum are left out.
    """
    layering = config.layering
    orders = config.orders
    layers = []
    if not layering.enabled:
        return layers

    for side, price, size in (
        (OrderSide.BUY, bid_price, bid_size),
        (OrderSide.SELL, ask_price, ask_size),
    ):
        if size <= 0:
            continue
        for level in range(1, layering.levels + 1):
            delta = price * layering.spread_multiplier * level / 100
            if side is OrderSide.BUY:
                layer_price = round_down(price - delta, orders.price_increment)
            else:
                layer_price = round_up(price + delta, orders.price_increment)
            layer_size = finalize_size(size * layering.size_multiplier ** level, orders)
            if layer_size <= 0 or layer_price <= 0:
                continue
            layers.append(LayerOrder(side=side, level=level, price=layer_price, size=layer_size))
    return layers
