"""Quote pricing, sizing and the market maker."""

from perp_mm.quoting.inventory import STRATEGIES, aggressive, get_strategy, passive, register_strategy
from perp_mm.quoting.market_maker import MarketMaker
from perp_mm.quoting.pricing import (
    LayerOrder,
    QuotePrices,
    QuoteSizes,
    base_size,
    compute_quote_prices,
    compute_quote_sizes,
    finalize_size,
    imbalance_adjustment,
    imbalance_ratio,
    inventory_skew,
    layer_orders,
    mid_price,
    select_spread_tier,
)
from perp_mm.quoting.volatility import VolatilityMetrics, compute_volatility

__all__ = [
    "STRATEGIES",
    "aggressive",
    "get_strategy",
    "passive",
    "register_strategy",
    "MarketMaker",
    "LayerOrder",
    "QuotePrices",
    "QuoteSizes",
    "base_size",
    "compute_quote_prices",
    "compute_quote_sizes",
    "finalize_size",
    "imbalance_adjustment",
    "imbalance_ratio",
    "inventory_skew",
    "layer_orders",
    "mid_price",
    "select_spread_tier",
    "VolatilityMetrics",
    "compute_volatility",
]
