"""
Market regime detection from a last-price series.

Indicators: SMA20, SMA100, RSI14 and 20-period return volatility.

- MOMENTUM: SMA20 above SMA100 with RSI > 60, or below with RSI < 40
- RANGING: averages within 1% of each other and volatility under 1%
- MEAN_REVERSION: everything else
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Sequence

import numpy as np
import pandas as pd
import structlog

logger = structlog.get_logger(__name__)

MAX_CONFIDENCE = 0.95


class Regime(Enum):
    MOMENTUM = "momentum"
    MEAN_REVERSION = "mean-reversion"
    RANGING = "ranging"


@dataclass
class RegimeReading:
    """Classification plus the indicators behind it."""
    symbol: str
    regime: Regime
    confidence: float
    sma_short: float
    sma_long: float
    rsi: float
    volatility: float
    timestamp: int = 0

    def to_dict(self) -> dict:
        return {
            "symbol": self.symbol,
            "regime": self.regime.value,
            "confidence": self.confidence,
            "sma_short": self.sma_short,
            "sma_long": self.sma_long,
            "rsi": self.rsi,
            "volatility": self.volatility,
            "timestamp": self.timestamp,
        }


def sma(prices: pd.Series, period: int) -> float:
    if len(prices) < period:
        return float(prices.iloc[-1])
    return float(prices.rolling(window=period).mean().iloc[-1])


def rsi(prices: pd.Series, period: int = 14) -> float:
    """Simple-average RSI over the last ``period`` changes; 50 without enough data."""
    if len(prices) < period + 1:
        return 50.0
    changes = prices.diff().dropna().tail(period)
    avg_gain = float(changes.clip(lower=0).sum()) / period
    avg_loss = float(-changes.clip(upper=0).sum()) / period
    if avg_loss == 0:
        return 100.0
    return 100 - 100 / (1 + avg_gain / avg_loss)


def return_volatility(prices: pd.Series, period: int = 20) -> float:
    """Population std of returns over the last ``period`` prices, as a fraction."""
    if len(prices) < period:
        return 0.0
    returns = prices.tail(period).pct_change().dropna()
    if returns.empty:
        return 0.0
    return float(np.std(returns.to_numpy()))


class RegimeDetector:
    """
    Classifies a symbol's recent price action.

    Needs ``min_samples`` prices; fewer yields no reading.
    """

    def __init__(
        self,
        min_samples: int = 100,
        short_period: int = 20,
        long_period: int = 100,
        rsi_period: int = 14,
        volatility_period: int = 20,
    ):
        self.min_samples = min_samples
        self.short_period = short_period
        self.long_period = long_period
        self.rsi_period = rsi_period
        self.volatility_period = volatility_period

        logger.info(
            "regime_detector_initialized",
            min_samples=min_samples,
            short_period=short_period,
            long_period=long_period,
        )

    def detect(self, symbol: str, prices: Sequence[float], timestamp: int = 0) -> Optional[RegimeReading]:
        if len(prices) < self.min_samples:
            logger.debug(
                "insufficient_data_for_regime",
                symbol=symbol,
                samples=len(prices),
                required=self.min_samples,
            )
            return None

        series = pd.Series(prices, dtype=float)
        sma_short = sma(series, self.short_period)
        sma_long = sma(series, self.long_period)
        rsi_value = rsi(series, self.rsi_period)
        volatility = return_volatility(series, self.volatility_period)

        if sma_short > sma_long and rsi_value > 60:
            regime, confidence = Regime.MOMENTUM, 0.7 + (rsi_value - 60) / 100
        elif sma_short < sma_long and rsi_value < 40:
            regime, confidence = Regime.MOMENTUM, 0.7 + (40 - rsi_value) / 100
        elif sma_long and abs(sma_short - sma_long) / sma_long < 0.01 and volatility < 0.01:
            regime, confidence = Regime.RANGING, 0.6 + (0.01 - volatility) * 10
        else:
            regime, confidence = Regime.MEAN_REVERSION, 0.5 + abs(50 - rsi_value) / 100

        return RegimeReading(
            symbol=symbol,
            regime=regime,
            confidence=min(confidence, MAX_CONFIDENCE),
            sma_short=sma_short,
            sma_long=sma_long,
            rsi=rsi_value,
            volatility=volatility,
            timestamp=timestamp,
        )
