"""Utility functions and helpers."""

from perp_mm.utils.market_utils import (
    PriceHistory,
    annualized_volatility,
    clamp,
    round_down,
    round_to_step,
    round_up,
)

__all__ = [
    "PriceHistory",
    "annualized_volatility",
    "clamp",
    "round_down",
    "round_to_step",
    "round_up",
]
