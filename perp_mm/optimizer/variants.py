"""
Paired-variant comparison.

Keeps a "default" parameter set and N alternatives, each with roughly 30% of
its parameters redrawn from their ranges. The variant with the highest total
PnL wins an evaluation round; a fresh set of alternatives follows.
"""

import math
import random
from typing import Optional

import structlog

from perp_mm.config.schema import ParameterRange
from perp_mm.optimizer.genetic import Individual, random_value

logger = structlog.get_logger(__name__)

DEFAULT_VARIANT = "default"
MUTATED_FRACTION = 0.3


class VariantTester:
    """Tracks variant parameter sets and their realized PnL."""

    def __init__(
        self,
        ranges: dict[str, ParameterRange],
        variants: int = 2,
        rng: Optional[random.Random] = None,
    ):
        self.ranges = ranges
        self.variant_count = variants
        self.rng = rng or random.Random()
        self.variants: dict[str, Individual] = {}
        self.performance: dict[str, float] = {}
        self.rounds = 0

    def make_variant(self, base: Individual) -> Individual:
        variant = dict(base)
        names = [n for n in base if n in self.ranges]
        if not names:
            return variant
        count = max(1, math.floor(len(names) * MUTATED_FRACTION))
        for name in self.rng.sample(names, count):
            variant[name] = random_value(self.ranges[name], self.rng)
        return variant

    def generate(self, base: Individual, baseline_pnl: float = 0.0) -> None:
        """Reset to ``default`` plus fresh variants, all starting at the baseline PnL."""
        self.variants = {DEFAULT_VARIANT: dict(base)}
        for i in range(1, self.variant_count + 1):
            self.variants[f"variant-{i}"] = self.make_variant(base)
        self.performance = {name: baseline_pnl for name in self.variants}
        logger.info("variants_generated", variants=list(self.variants))

    def record_performance(self, variant: str, total_pnl: float) -> None:
        if variant not in self.variants:
            raise KeyError(f"unknown variant: {variant}")
        self.performance[variant] = total_pnl

    def evaluate(self, base: Individual, baseline_pnl: float = 0.0) -> tuple[str, Individual]:
        """
        Pick the best variant by total PnL, then regenerate around the new best.

        Returns:
            (winning variant name, its parameters)
        """
        if not self.variants:
            self.generate(base, baseline_pnl)
            return DEFAULT_VARIANT, dict(base)

        winner = max(self.performance, key=lambda name: (self.performance[name], name == DEFAULT_VARIANT))
        params = dict(self.variants[winner])
        self.rounds += 1
        logger.info(
            "variant_evaluation_complete",
            winner=winner,
            pnl=self.performance[winner],
            round=self.rounds,
        )
        self.generate(params, baseline_pnl)
        return winner, params

    def get_state(self) -> dict:
        return {
            "variants": {name: dict(params) for name, params in self.variants.items()},
            "performance": dict(self.performance),
            "rounds": self.rounds,
        }
