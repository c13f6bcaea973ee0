"""
Market utility functions.

Helper functions shared by quoting, risk and optimization:
- Annualized volatility of a price series
- Rounding prices and sizes to exchange increments
- Time-bounded rolling price history
"""

import math
from collections import deque
from decimal import Decimal
from typing import Iterable, Optional, Sequence

import numpy as np

SECONDS_PER_YEAR = 365 * 24 * 60 * 60

# Guards floor/ceil against binary representation error (0.3 / 0.1 = 2.9999...)
_ROUNDING_EPSILON = 1e-9


def annualized_volatility(prices: Sequence[float]) -> float:
    """
    Annualized volatility of a price series, in percent.

    Population standard deviation of tick-to-tick returns, scaled by
    ``sqrt(SECONDS_PER_YEAR / sample_count)`` where sample_count is the
    number of returns.

    Returns:
        Volatility in percent, 0.0 with fewer than two prices
    """
    if len(prices) < 2:
        return 0.0
    values = np.asarray(prices, dtype=float)
    previous = values[:-1]
    if np.any(previous == 0):
        return 0.0
    returns = np.diff(values) / previous
    std = float(np.std(returns))
    return std * math.sqrt(SECONDS_PER_YEAR / len(returns)) * 100


def _decimals(increment: float) -> int:
    exponent = Decimal(str(increment)).normalize().as_tuple().exponent
    return max(0, -int(exponent))


def round_down(value: float, increment: float) -> float:
    """Floor to a multiple of increment."""
    steps = math.floor(value / increment + _ROUNDING_EPSILON)
    return round(steps * increment, _decimals(increment))


def round_up(value: float, increment: float) -> float:
    """Ceil to a multiple of increment."""
    steps = math.ceil(value / increment - _ROUNDING_EPSILON)
    return round(steps * increment, _decimals(increment))


def round_to_step(value: float, step: float) -> float:
    """Round to the nearest multiple of step."""
    return round(round(value / step) * step, _decimals(step))


def clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


class PriceHistory:
    """
    Time-stamped prices kept for a bounded window.

    Points older than ``max_age_ms`` (relative to the newest point) are
    pruned on every append.
    """

    def __init__(self, max_age_ms: float, max_points: Optional[int] = None):
        self.max_age_ms = max_age_ms
        self._points: deque = deque(maxlen=max_points)

    def __len__(self) -> int:
        return len(self._points)

    def append(self, timestamp_ms: int, price: float) -> None:
        self._points.append((timestamp_ms, price))
        cutoff = timestamp_ms - self.max_age_ms
        while self._points and self._points[0][0] < cutoff:
            self._points.popleft()

    def prices(self, since_ms: Optional[float] = None) -> list[float]:
        if since_ms is None:
            return [p for _, p in self._points]
        return [p for t, p in self._points if t >= since_ms]

    def latest(self) -> Optional[float]:
        return self._points[-1][1] if self._points else None

    def latest_timestamp(self) -> Optional[int]:
        return self._points[-1][0] if self._points else None

    def volatility(self, lookback_ms: Optional[float] = None, now_ms: Optional[float] = None) -> float:
        """Annualized volatility over the trailing lookback window."""
        if lookback_ms is None:
            return annualized_volatility(self.prices())
        reference = now_ms if now_ms is not None else self.latest_timestamp()
        if reference is None:
            return 0.0
        return annualized_volatility(self.prices(since_ms=reference - lookback_ms))

    def extend(self, points: Iterable[tuple[int, float]]) -> None:
        for timestamp_ms, price in points:
            self.append(timestamp_ms, price)
