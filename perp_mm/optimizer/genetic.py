"""
Genetic parameter search.

Individuals are ``{dotted.path: value}`` dicts over the declared parameter
ranges. The fitness function is injectable; the default scores closeness to
the current best parameters with a random factor, a placeholder for a real
backtest.
"""

import random
from dataclasses import dataclass
from typing import Callable, Optional

import structlog

from perp_mm.config.schema import GeneticConfig, ParameterRange
from perp_mm.utils.market_utils import round_to_step

logger = structlog.get_logger(__name__)

Individual = dict[str, float]
FitnessFunction = Callable[[Individual, Individual, random.Random], float]


@dataclass
class Scored:
    individual: Individual
    fitness: float


def random_value(bounds: ParameterRange, rng: random.Random) -> float:
    return round_to_step(bounds.min + rng.random() * (bounds.max - bounds.min), bounds.step)


def closeness_fitness(
    individual: Individual,
    best: Individual,
    ranges: dict[str, ParameterRange],
    rng: random.Random,
) -> float:
    """Mean over parameters of (1 - normalized distance from best) * U(0.8, 1.2)."""
    if not individual:
        return 0.0
    total = 0.0
    for name, value in individual.items():
        bounds = ranges.get(name)
        if bounds is None:
            continue
        width = (bounds.max - bounds.min) or 1.0
        distance = abs(value - best.get(name, 0.0)) / width
        total += (1 - distance) * (0.8 + 0.4 * rng.random())
    return total / len(individual)


class GeneticSearch:
    """
    Population search over parameter ranges.

    Steps per generation: tournament selection of half the population,
    crossover (uniform with probability ``crossover_rate``, otherwise a
    step-rounded blend), per-gene mutation, then the fittest of parents and
    offspring survive.
    """

    def __init__(
        self,
        ranges: dict[str, ParameterRange],
        config: GeneticConfig,
        rng: Optional[random.Random] = None,
        fitness: Optional[FitnessFunction] = None,
    ):
        self.ranges = ranges
        self.config = config
        self.rng = rng or random.Random()
        self._fitness = fitness

    def fitness(self, individual: Individual, best: Individual) -> float:
        if self._fitness is not None:
            return self._fitness(individual, best, self.rng)
        return closeness_fitness(individual, best, self.ranges, self.rng)

    def initial_population(self, best: Individual) -> list[Individual]:
        population = [dict(best)]
        for _ in range(1, self.config.population_size):
            individual = {}
            for name, current in best.items():
                bounds = self.ranges.get(name)
                individual[name] = random_value(bounds, self.rng) if bounds else current
            population.append(individual)
        return population

    def evaluate(self, population: list[Individual], best: Individual) -> list[Scored]:
        scored = [Scored(individual, self.fitness(individual, best)) for individual in population]
        scored.sort(key=lambda s: s.fitness, reverse=True)
        return scored

    def _two_indices(self, n: int) -> tuple[int, int]:
        first = self.rng.randrange(n)
        second = self.rng.randrange(n - 1)
        if second >= first:
            second += 1
        return first, second

    def select_parents(self, scored: list[Scored]) -> list[Individual]:
        parents = []
        if len(scored) < 2:
            return [dict(s.individual) for s in scored]
        for _ in range(max(2, len(scored) // 2)):
            i, j = self._two_indices(len(scored))
            winner = scored[i] if scored[i].fitness > scored[j].fitness else scored[j]
            parents.append(dict(winner.individual))
        return parents

    def crossover(self, first: Individual, second: Individual) -> Individual:
        child = {}
        for name, value in first.items():
            other = second.get(name, value)
            if self.rng.random() < self.config.crossover_rate:
                child[name] = value if self.rng.random() < 0.5 else other
            else:
                alpha = self.rng.random()
                blended = value * alpha + other * (1 - alpha)
                bounds = self.ranges.get(name)
                child[name] = round_to_step(blended, bounds.step) if bounds else blended
        return child

    def mutate(self, individual: Individual) -> Individual:
        for name in list(individual):
            bounds = self.ranges.get(name)
            if bounds is not None and self.rng.random() < self.config.mutation_rate:
                individual[name] = random_value(bounds, self.rng)
        return individual

    def offspring(self, parents: list[Individual]) -> list[Individual]:
        if len(parents) < 2:
            return [self.mutate(dict(p)) for p in parents]
        children = []
        for _ in range(len(parents)):
            i, j = self._two_indices(len(parents))
            children.append(self.mutate(self.crossover(parents[i], parents[j])))
        return children

    def run(self, best: Individual) -> tuple[Individual, float]:
        """
        Search starting from ``best``.

        Returns:
            (fittest individual, its fitness)
        """
        if not best:
            return {}, 0.0

        scored = self.evaluate(self.initial_population(best), best)
        size = len(scored)
        for generation in range(self.config.generations):
            children = self.evaluate(self.offspring(self.select_parents(scored)), best)
            scored = sorted(scored + children, key=lambda s: s.fitness, reverse=True)[:size]
            logger.debug(
                "genetic_generation_complete",
                generation=generation + 1,
                best_fitness=round(scored[0].fitness, 4),
            )

        winner = scored[0]
        logger.info(
            "genetic_search_complete",
            generations=self.config.generations,
            population=size,
            fitness=round(winner.fitness, 4),
        )
        return dict(winner.individual), winner.fitness
