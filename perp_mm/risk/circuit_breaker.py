"""
Volatility circuit breaker.

Per symbol: a rolling price window; if its annualized volatility exceeds the
threshold the breaker trips and stays tripped until the cooldown expires.
A tripped breaker is advisory. It suppresses quoting, it does not cancel
orders.
"""

from dataclasses import dataclass
from typing import Optional

import structlog

from perp_mm.config.schema import CircuitBreakerConfig
from perp_mm.utils.market_utils import PriceHistory

logger = structlog.get_logger(__name__)


@dataclass
class BreakerTrip:
    """Emitted when a breaker trips."""
    symbol: str
    volatility: float
    threshold: float
    cooldown_until: int

    def to_dict(self) -> dict:
        return {
            "symbol": self.symbol,
            "volatility": self.volatility,
            "threshold": self.threshold,
            "cooldown_until": self.cooldown_until,
        }


class CircuitBreaker:
    """Circuit breaker state for one symbol."""

    def __init__(self, symbol: str, config: CircuitBreakerConfig):
        self.symbol = symbol
        self.config = config
        self.history = PriceHistory(max_age_ms=config.window_minutes * 60_000)
        self.triggered = False
        self.cooldown_until = 0
        self.last_volatility = 0.0
        self.trips = 0

    def record(self, price: float, timestamp_ms: int) -> None:
        self.history.append(timestamp_ms, price)

    def is_active(self, now_ms: int) -> bool:
        return self.triggered and now_ms < self.cooldown_until

    def evaluate(self, now_ms: int) -> Optional[BreakerTrip]:
        """
        Check the breaker after a new price.

        Returns:
            BreakerTrip if the breaker tripped on this check, else None
        """
        if self.triggered and now_ms < self.cooldown_until:
            return None
        if self.triggered:
            self.triggered = False
            logger.info("circuit_breaker_cleared", symbol=self.symbol)

        self.last_volatility = self.history.volatility()
        if self.last_volatility <= self.config.volatility_threshold:
            return None

        self.triggered = True
        self.trips += 1
        self.cooldown_until = int(now_ms + self.config.cooldown_minutes * 60_000)
        logger.warning(
            "circuit_breaker_triggered",
            symbol=self.symbol,
            volatility=round(self.last_volatility, 2),
            threshold=self.config.volatility_threshold,
            cooldown_until=self.cooldown_until,
        )
        return BreakerTrip(
            symbol=self.symbol,
            volatility=self.last_volatility,
            threshold=self.config.volatility_threshold,
            cooldown_until=self.cooldown_until,
        )

    def to_dict(self) -> dict:
        return {
            "triggered": self.triggered,
            "cooldown_until": self.cooldown_until,
            "last_volatility": self.last_volatility,
            "samples": len(self.history),
            "trips": self.trips,
        }
