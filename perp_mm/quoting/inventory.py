"""
Inventory rebalancing strategies.

A strategy maps (base size, inventory skew, target ratio) to raw bid and ask
sizes. Sizes are capped, floored and minimum-checked afterwards.
"""

from typing import Callable

SizingStrategy = Callable[[float, float, float], tuple[float, float]]


def passive(base: float, skew: float, target_ratio: float) -> tuple[float, float]:
    """Resize only the side that adds to the inventory."""
    bid = ask = base
    if skew > 0:
        ask = base * (2 - target_ratio - skew * (1 - target_ratio))
    elif skew < 0:
        bid = base * (1 + target_ratio + skew * target_ratio)
    return bid, ask


def aggressive(base: float, skew: float, target_ratio: float) -> tuple[float, float]:
    """Passive sizing, plus the opposite side shrinks by (1 - |skew|)."""
    bid, ask = passive(base, skew, target_ratio)
    factor = 1 - abs(skew)
    if skew > 0:
        bid = base * factor
    elif skew < 0:
        ask = base * factor
    return bid, ask


STRATEGIES: dict[str, SizingStrategy] = {
    "passive": passive,
    "aggressive": aggressive,
}


def register_strategy(name: str, strategy: SizingStrategy) -> None:
    STRATEGIES[name] = strategy


def get_strategy(name: str) -> SizingStrategy:
    try:
        return STRATEGIES[name]
    except KeyError:
        raise ValueError(f"unknown inventory strategy: {name}") from None
