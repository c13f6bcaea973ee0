"""
Self-optimization loop.

On every interval:
1. refresh the regime reading for each tracked symbol
2. run the genetic search from the current best parameters
3. if variant testing is on, let the best-performing variant override
4. publish a new config tree with the parameters applied

The optimizer never swaps config in place. It publishes CONFIG_UPDATE and
the orchestrator applies it through the validated merge.
"""

import random
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

import structlog

from perp_mm.config.loader import apply_parameters, get_parameter
from perp_mm.config.schema import BotConfig
from perp_mm.core.errors import ConfigError
from perp_mm.core.events import Event, EventBus, EventType, Subscription
from perp_mm.core.models import MarketSnapshot, now_ms
from perp_mm.core.periodic import PeriodicTask
from perp_mm.optimizer.genetic import FitnessFunction, GeneticSearch, Individual
from perp_mm.optimizer.regime import RegimeDetector, RegimeReading
from perp_mm.optimizer.variants import DEFAULT_VARIANT, VariantTester

logger = structlog.get_logger(__name__)

RESULT_HISTORY = 100


@dataclass
class OptimizationResult:
    timestamp: int
    parameters: Individual
    fitness: float
    variant: Optional[str] = None
    total_pnl: float = 0.0
    applied: bool = False
    regimes: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "timestamp": self.timestamp,
            "parameters": dict(self.parameters),
            "fitness": self.fitness,
            "variant": self.variant,
            "total_pnl": self.total_pnl,
            "applied": self.applied,
            "regimes": dict(self.regimes),
        }


class Optimizer:
    """
    Regime detection plus parameter search.

    Design principles:
    - All randomness comes from one injected random.Random
    - Searched parameters are read from and written to the config tree by dotted path
    - A result that fails validation is logged and dropped, the running config stays
    """

    def __init__(
        self,
        config: BotConfig,
        bus: EventBus,
        ledger: Optional[Any] = None,
        clock: Callable[[], int] = now_ms,
        rng: Optional[random.Random] = None,
        fitness: Optional[FitnessFunction] = None,
    ):
        """
        Initialize optimizer.

        Args:
            config: Full bot configuration (parameter source and target)
            bus: Event bus
            ledger: Performance ledger providing total PnL
            clock: Wall clock in epoch milliseconds
            rng: Random source for search and variants
            fitness: Optional replacement for the default fitness function
        """
        self.config = config
        self.bus = bus
        self.ledger = ledger
        self._clock = clock
        self.rng = rng or random.Random()
        self._fitness = fitness

        opt = config.optimization
        self.detector = RegimeDetector(min_samples=opt.regime_min_samples)
        self.search = GeneticSearch(opt.parameters, opt.genetic, self.rng, fitness)
        self.variants = VariantTester(opt.parameters, opt.ab_testing.variants, self.rng)

        self.prices: dict[str, deque] = {}
        self.regimes: dict[str, RegimeReading] = {}
        self.best_parameters: Individual = self.extract_parameters(config)
        self.results: deque = deque(maxlen=RESULT_HISTORY)
        self.last_optimization_ms: Optional[int] = None

        self._subscriptions: list[Subscription] = []
        self._timer = PeriodicTask("optimizer", opt.interval_hours * 3600, self.optimize)
        self.running = False

        logger.info(
            "optimizer_initialized",
            parameters=sorted(self.best_parameters),
            interval_hours=opt.interval_hours,
            ab_testing=opt.ab_testing.enabled,
        )

    def extract_parameters(self, config: BotConfig) -> Individual:
        """Current values of every searched parameter."""
        params = {}
        for path in config.optimization.parameters:
            value = get_parameter(config, path)
            if isinstance(value, (int, float)) and not isinstance(value, bool):
                params[path] = float(value)
        return params

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    async def start(self) -> None:
        self.best_parameters = self.extract_parameters(self.config)
        if self.config.optimization.ab_testing.enabled:
            self.variants.generate(self.best_parameters, self._total_pnl())
        self._subscriptions = [
            self.bus.subscribe(EventType.MARKET, self._on_market, name="optimizer.market"),
        ]
        self._timer.start()
        self.running = True
        logger.info("optimizer_started")

    async def stop(self) -> None:
        for subscription in self._subscriptions:
            self.bus.unsubscribe(subscription)
        self._subscriptions = []
        await self._timer.stop()
        self.running = False
        logger.info("optimizer_stopped")

    def update_config(self, config: BotConfig) -> None:
        self.config = config
        opt = config.optimization
        self.search = GeneticSearch(opt.parameters, opt.genetic, self.rng, self._fitness)
        self.variants = VariantTester(opt.parameters, opt.ab_testing.variants, self.rng)
        self.best_parameters = self.extract_parameters(config)

    def _on_market(self, event: Event) -> None:
        self.record_market(event.data)
        self.detect_regime(event.data.symbol)

    def _total_pnl(self) -> float:
        return float(self.ledger.total_pnl) if self.ledger is not None else 0.0

    # =========================================================================
    # REGIME
    # =========================================================================

    def record_market(self, snapshot: MarketSnapshot) -> None:
        history = self.prices.setdefault(
            snapshot.symbol, deque(maxlen=self.config.optimization.max_history)
        )
        history.append(snapshot.last_price)

    def detect_regime(self, symbol: str) -> Optional[RegimeReading]:
        """Classify a symbol; publishes REGIME_CHANGED when the class changes."""
        reading = self.detector.detect(symbol, list(self.prices.get(symbol, ())), self._clock())
        if reading is None:
            return None
        previous = self.regimes.get(symbol)
        self.regimes[symbol] = reading
        if previous is None or previous.regime is not reading.regime:
            logger.info(
                "regime_changed",
                symbol=symbol,
                regime=reading.regime.value,
                previous=previous.regime.value if previous else None,
                confidence=round(reading.confidence, 3),
            )
            self.bus.emit(EventType.REGIME_CHANGED, reading.to_dict(), source="optimizer")
        return reading

    # =========================================================================
    # SEARCH
    # =========================================================================

    async def optimize(self) -> Optional[OptimizationResult]:
        """
        Run one optimization round.

        Returns:
            The result, or None when optimization is disabled
        """
        if not self.config.optimization.enabled:
            return None

        for symbol in list(self.prices):
            self.detect_regime(symbol)

        params, fitness = self.search.run(self.best_parameters)
        self.best_parameters = params
        total_pnl = self._total_pnl()

        variant = None
        if self.config.optimization.ab_testing.enabled:
            if not self.variants.variants:
                self.variants.generate(self.best_parameters, total_pnl)
            self.variants.record_performance(DEFAULT_VARIANT, total_pnl)
            variant, winning = self.variants.evaluate(self.best_parameters, total_pnl)
            self.best_parameters = winning

        result = OptimizationResult(
            timestamp=self._clock(),
            parameters=dict(self.best_parameters),
            fitness=fitness,
            variant=variant,
            total_pnl=total_pnl,
            regimes={s: r.regime.value for s, r in self.regimes.items()},
        )

        try:
            new_config = apply_parameters(self.config, self.best_parameters)
        except ConfigError as e:
            logger.error("optimized_parameters_rejected", error=str(e), path=e.path)
        else:
            result.applied = True
            self.config = new_config
            self.bus.emit(
                EventType.CONFIG_UPDATE,
                {"config": new_config, "parameters": dict(self.best_parameters)},
                source="optimizer",
            )

        self.results.append(result)
        self.last_optimization_ms = result.timestamp
        logger.info(
            "optimization_complete",
            fitness=round(fitness, 4),
            variant=variant,
            applied=result.applied,
        )
        self.bus.emit(EventType.OPTIMIZATION_COMPLETE, result.to_dict(), source="optimizer")
        return result

    def get_results(self, limit: int = RESULT_HISTORY) -> list[dict]:
        return [r.to_dict() for r in list(self.results)[-limit:]]

    def get_state(self) -> dict:
        return {
            "running": self.running,
            "last_optimization_ms": self.last_optimization_ms,
            "best_parameters": dict(self.best_parameters),
            "regimes": {s: r.to_dict() for s, r in self.regimes.items()},
            "samples": {s: len(p) for s, p in self.prices.items()},
            "variants": self.variants.get_state() if self.config.optimization.ab_testing.enabled else {},
            "results": len(self.results),
        }
