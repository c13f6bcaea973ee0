"""
Tests for market regime detection.
"""

import pandas as pd
import pytest

from perp_mm.optimizer.regime import Regime, RegimeDetector, return_volatility, rsi, sma


class TestIndicators:
    def test_sma(self):
        series = pd.Series([1.0, 2.0, 3.0, 4.0])
        assert sma(series, 2) == 3.5
        assert sma(series, 10) == 4.0

    def test_rsi_bounds(self):
        rising = pd.Series([float(i) for i in range(20)])
        falling = pd.Series([float(20 - i) for i in range(20)])
        assert rsi(rising) == 100.0
        assert rsi(falling) == 0.0
        assert rsi(pd.Series([1.0, 2.0])) == 50.0

    def test_return_volatility(self):
        assert return_volatility(pd.Series([100.0] * 30)) == 0.0
        assert return_volatility(pd.Series([100.0] * 5)) == 0.0
        assert return_volatility(pd.Series([100.0, 103.0] * 15)) > 0.01


class TestRegimeDetector:
    """Tests for RegimeDetector.detect()."""

    def test_needs_min_samples(self):
        assert RegimeDetector().detect("BTC-USDT", [100.0] * 99) is None

    def test_uptrend_is_momentum(self):
        prices = [100.0 + i * 0.5 for i in range(120)]

        reading = RegimeDetector().detect("BTC-USDT", prices, timestamp=7)

        assert reading.regime is Regime.MOMENTUM
        assert reading.confidence == 0.95
        assert reading.sma_short > reading.sma_long
        assert reading.to_dict()["timestamp"] == 7

    def test_downtrend_is_momentum(self):
        prices = [200.0 - i * 0.5 for i in range(120)]

        reading = RegimeDetector().detect("BTC-USDT", prices)

        assert reading.regime is Regime.MOMENTUM
        assert reading.rsi == 0.0

    def test_flat_market_is_ranging(self):
        reading = RegimeDetector().detect("BTC-USDT", [100.0] * 120)

        assert reading.regime is Regime.RANGING
        assert reading.confidence == pytest.approx(0.7)

    def test_choppy_market_is_mean_reversion(self):
        reading = RegimeDetector().detect("BTC-USDT", [100.0, 103.0] * 60)

        assert reading.regime is Regime.MEAN_REVERSION
        assert reading.rsi == pytest.approx(50.0)
        assert reading.confidence == pytest.approx(0.5)
        assert reading.to_dict()["regime"] == "mean-reversion"
