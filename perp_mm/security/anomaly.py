"""
Statistical anomaly detection over order and position activity.

Three z-score checks:
- latest filled order size against the recent fill sizes
- order count in the last 5 minutes against the previous hour in 5-minute buckets
- latest absolute position size per symbol against that symbol's history
"""

from collections import defaultdict, deque
from dataclasses import dataclass, field
from typing import Callable, Optional

import numpy as np
import structlog

from perp_mm.config.schema import AnomalyConfig
from perp_mm.core.models import Order, OrderStatus, Position, now_ms

logger = structlog.get_logger(__name__)

SIZE_HISTORY = 100
FREQUENCY_WINDOW_MS = 60 * 60_000
BUCKET_MS = 5 * 60_000
BUCKETS = 12


SENSITIVITY_THRESHOLDS = {"low": 4.0, "medium": 3.0, "high": 2.0}


def sensitivity_threshold(config: AnomalyConfig) -> float:
    """z-score cut-off for the configured sensitivity. alert_threshold does not move it."""
    return SENSITIVITY_THRESHOLDS[config.sensitivity]


def z_score(values: list[float], latest: float) -> float:
    std = float(np.std(values))
    return (latest - float(np.mean(values))) / (std or 1.0)


@dataclass
class AnomalyReport:
    order_size: bool = False
    order_frequency: bool = False
    position_size: bool = False
    timestamp: int = 0
    details: dict = field(default_factory=dict)

    @property
    def any(self) -> bool:
        return self.order_size or self.order_frequency or self.position_size

    def to_dict(self) -> dict:
        return {
            "order_size": self.order_size,
            "order_frequency": self.order_frequency,
            "position_size": self.position_size,
            "timestamp": self.timestamp,
            "details": self.details,
        }


class AnomalyDetector:
    """Keeps bounded activity histories and flags outliers."""

    def __init__(self, config: AnomalyConfig, clock: Callable[[], int] = now_ms):
        self.config = config
        self._clock = clock
        self.order_sizes: deque = deque(maxlen=SIZE_HISTORY)
        self.order_times: deque = deque()
        self.position_sizes: dict[str, deque] = defaultdict(lambda: deque(maxlen=SIZE_HISTORY))
        self.last_alert_ms: Optional[int] = None
        self.alerts = 0

    def record_order(self, order: Order, timestamp_ms: Optional[int] = None) -> None:
        now = self._clock() if timestamp_ms is None else timestamp_ms
        if order.status in (OrderStatus.FILLED, OrderStatus.PARTIALLY_FILLED):
            self.order_sizes.append(order.size)
        self.order_times.append(now)
        cutoff = now - FREQUENCY_WINDOW_MS
        while self.order_times and self.order_times[0] < cutoff:
            self.order_times.popleft()

    def record_position(self, position: Position) -> None:
        self.position_sizes[position.symbol].append(abs(position.size))

    def in_cooldown(self, now: int) -> bool:
        if self.last_alert_ms is None:
            return False
        return now - self.last_alert_ms < self.config.alert_cooldown_minutes * 60_000

    def detect(self, now: Optional[int] = None) -> Optional[AnomalyReport]:
        """
        Run every check.

        Returns:
            AnomalyReport when at least one check fires outside the cooldown,
            otherwise None
        """
        if not self.config.enabled:
            return None
        now = self._clock() if now is None else now
        min_samples = self.config.min_samples
        if len(self.order_sizes) < min_samples or len(self.order_times) < min_samples:
            return None
        if self.in_cooldown(now):
            return None

        threshold = sensitivity_threshold(self.config)
        report = AnomalyReport(timestamp=now)

        sizes = list(self.order_sizes)
        size_z = z_score(sizes, sizes[-1])
        report.order_size = abs(size_z) > threshold
        report.details["order_size_z"] = round(size_z, 4)

        recent = sum(1 for t in self.order_times if t > now - BUCKET_MS)
        buckets = [
            sum(1 for t in self.order_times if now - (i + 1) * BUCKET_MS <= t < now - i * BUCKET_MS)
            for i in range(BUCKETS)
        ]
        frequency_z = z_score(buckets, recent)
        report.order_frequency = frequency_z > threshold
        report.details["order_frequency_z"] = round(frequency_z, 4)

        flagged = []
        for symbol, history in self.position_sizes.items():
            if len(history) < min_samples:
                continue
            values = list(history)
            if abs(z_score(values, values[-1])) > threshold:
                flagged.append(symbol)
        report.position_size = bool(flagged)
        report.details["position_symbols"] = flagged

        if not report.any:
            return None

        self.last_alert_ms = now
        self.alerts += 1
        logger.warning("anomaly_detected", threshold=threshold, **report.to_dict())
        return report

    def get_state(self) -> dict:
        return {
            "enabled": self.config.enabled,
            "threshold": sensitivity_threshold(self.config),
            "order_samples": len(self.order_sizes),
            "orders_last_hour": len(self.order_times),
            "position_symbols": sorted(self.position_sizes),
            "last_alert_ms": self.last_alert_ms,
            "alerts": self.alerts,
        }
