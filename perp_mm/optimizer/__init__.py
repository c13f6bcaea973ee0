"""Regime detection and parameter search."""

from perp_mm.optimizer.genetic import GeneticSearch, Scored, closeness_fitness, random_value
from perp_mm.optimizer.optimizer import OptimizationResult, Optimizer
from perp_mm.optimizer.regime import Regime, RegimeDetector, RegimeReading, return_volatility, rsi, sma
from perp_mm.optimizer.variants import DEFAULT_VARIANT, VariantTester

__all__ = [
    "GeneticSearch",
    "Scored",
    "closeness_fitness",
    "random_value",
    "OptimizationResult",
    "Optimizer",
    "Regime",
    "RegimeDetector",
    "RegimeReading",
    "return_volatility",
    "rsi",
    "sma",
    "DEFAULT_VARIANT",
    "VariantTester",
]
