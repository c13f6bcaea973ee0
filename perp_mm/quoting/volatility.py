"""
Short, medium and long horizon volatility per symbol.
"""

from dataclasses import dataclass

from perp_mm.config.schema import VolatilityConfig
from perp_mm.utils.market_utils import PriceHistory, annualized_volatility

__all__ = ["VolatilityMetrics", "annualized_volatility", "compute_volatility", "history_for"]


@dataclass
class VolatilityMetrics:
    short: float = 0.0
    medium: float = 0.0
    long: float = 0.0

    def to_dict(self) -> dict:
        return {"short": self.short, "medium": self.medium, "long": self.long}


def _max_lookback_ms(config: VolatilityConfig) -> float:
    longest = max(config.short_lookback_min, config.medium_lookback_min, config.long_lookback_min)
    return longest * 60_000


def history_for(config: VolatilityConfig) -> PriceHistory:
    """Price history pruned to the longest configured lookback."""
    return PriceHistory(max_age_ms=_max_lookback_ms(config))


def compute_volatility(history: PriceHistory, config: VolatilityConfig, now_ms: int) -> VolatilityMetrics:
    return VolatilityMetrics(
        short=history.volatility(config.short_lookback_min * 60_000, now_ms),
        medium=history.volatility(config.medium_lookback_min * 60_000, now_ms),
        long=history.volatility(config.long_lookback_min * 60_000, now_ms),
    )
