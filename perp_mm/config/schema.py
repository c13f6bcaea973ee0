"""
Typed configuration trees.

Every section is a frozen dataclass: a running component holds a reference
to one tree and a configuration update always produces a new tree, never
patches the one in use. Numeric fields declare their valid range in field
metadata; merge_config() enforces it.
"""

from dataclasses import dataclass, field
from typing import Optional


def bounded(default, minimum=None, maximum=None, exclusive_min: bool = False):
    """Numeric field with a declared valid range."""
    return field(
        default=default,
        metadata={"min": minimum, "max": maximum, "exclusive_min": exclusive_min},
    )


def choice(default: str, *options: str):
    """String field restricted to a fixed set of values."""
    return field(default=default, metadata={"choices": options})


ZERO_ADDRESS = "0x" + "0" * 40


# =============================================================================
# API
# =============================================================================

@dataclass(frozen=True)
class ApiConfig:
    """Exchange endpoints, retry policy and rate limit."""
    ws_url: str = "wss://api.hyperliquid.xyz/ws"
    rest_url: str = "https://api.hyperliquid.xyz"
    max_retries: int = bounded(3, 0, 10)
    retry_delay_ms: int = bounded(1000, 0, 60_000)
    rate_limit_max_requests: int = bounded(10, 1, 10_000)
    rate_limit_window_ms: int = bounded(1000, 1, 3_600_000)

    # Streaming connection supervision
    ping_interval_s: float = bounded(15.0, 0.1, 300.0)
    stale_timeout_s: float = bounded(30.0, 0.1, 600.0)
    failover_reconnect_s: float = bounded(5.0, 0.0, 300.0)
    max_backoff_s: float = bounded(30.0, 0.0, 600.0)
    stream_connections: int = bounded(2, 1, 4)


# =============================================================================
# MARKET MAKING
# =============================================================================

@dataclass(frozen=True)
class SpreadConfig:
    """Base spread tiers in percent of mid price."""
    tier1: float = bounded(0.1, 0.0, 100.0, exclusive_min=True)
    tier2: float = bounded(0.2, 0.0, 100.0, exclusive_min=True)
    tier3: float = bounded(0.5, 0.0, 100.0, exclusive_min=True)


@dataclass(frozen=True)
class VolatilityConfig:
    """Lookback windows (minutes) and annualized-volatility tier thresholds (%)."""
    short_lookback_min: float = bounded(5.0, 0.0, 100_000.0, exclusive_min=True)
    medium_lookback_min: float = bounded(60.0, 0.0, 100_000.0, exclusive_min=True)
    long_lookback_min: float = bounded(1440.0, 0.0, 100_000.0, exclusive_min=True)
    medium_threshold: float = bounded(50.0, 0.0, 10_000.0)
    high_threshold: float = bounded(100.0, 0.0, 10_000.0)


@dataclass(frozen=True)
class ImbalanceConfig:
    enabled: bool = True
    threshold: float = bounded(0.2, 0.0, 1.0)
    adjustment_factor: float = bounded(0.5, 0.0, 10.0)
    depth: int = bounded(10, 1, 500)


@dataclass(frozen=True)
class InventoryConfig:
    target_ratio: float = bounded(0.5, 0.0, 1.0)
    rebalance_threshold: float = bounded(0.1, 0.0, 1.0)
    max_imbalance: float = bounded(5.0, 0.0, 1000.0, exclusive_min=True)
    strategy: str = choice("passive", "passive", "aggressive")


@dataclass(frozen=True)
class OrderConfig:
    min_size: float = bounded(0.001, 0.0, None, exclusive_min=True)
    max_size: float = bounded(1.0, 0.0, None, exclusive_min=True)
    size_increment: float = bounded(0.001, 0.0, None, exclusive_min=True)
    price_increment: float = bounded(0.01, 0.0, None, exclusive_min=True)
    max_open_orders: int = bounded(10, 0, 1000)
    refresh_interval_ms: int = bounded(5000, 100, 3_600_000)


@dataclass(frozen=True)
class LayeringConfig:
    enabled: bool = True
    levels: int = bounded(3, 0, 20)
    size_multiplier: float = bounded(1.5, 0.0, 10.0, exclusive_min=True)
    spread_multiplier: float = bounded(1.0, 0.0, 100.0)


@dataclass(frozen=True)
class MarketMakingConfig:
    enabled: bool = True
    pairs: tuple = ("BTC-USDT", "ETH-USDT")
    spread: SpreadConfig = field(default_factory=SpreadConfig)
    volatility: VolatilityConfig = field(default_factory=VolatilityConfig)
    imbalance: ImbalanceConfig = field(default_factory=ImbalanceConfig)
    inventory: InventoryConfig = field(default_factory=InventoryConfig)
    orders: OrderConfig = field(default_factory=OrderConfig)
    layering: LayeringConfig = field(default_factory=LayeringConfig)


# =============================================================================
# RISK
# =============================================================================

@dataclass(frozen=True)
class PositionLimit:
    max_long_size: float = bounded(1.0, 0.0, None)
    max_short_size: float = bounded(1.0, 0.0, None)
    max_leverage: float = bounded(5.0, 0.0, 200.0, exclusive_min=True)


@dataclass(frozen=True)
class PortfolioLimits:
    max_total_exposure: float = bounded(100_000.0, 0.0, None)
    max_drawdown_pct: float = bounded(10.0, 0.0, 100.0)


@dataclass(frozen=True)
class StopLossConfig:
    enabled: bool = True
    percentage: float = bounded(5.0, 0.0, 100.0, exclusive_min=True)
    trailing: bool = True
    trailing_percentage: float = bounded(2.0, 0.0, 100.0, exclusive_min=True)


@dataclass(frozen=True)
class TakeProfitConfig:
    enabled: bool = True
    percentage: float = bounded(10.0, 0.0, 1000.0, exclusive_min=True)


@dataclass(frozen=True)
class CircuitBreakerConfig:
    enabled: bool = True
    volatility_threshold: float = bounded(100.0, 0.0, 100_000.0)
    window_minutes: float = bounded(5.0, 0.0, 1440.0, exclusive_min=True)
    cooldown_minutes: float = bounded(15.0, 0.0, 10_080.0)


def _default_position_limits() -> dict:
    return {
        "BTC-USDT": PositionLimit(max_long_size=1.0, max_short_size=1.0, max_leverage=5.0),
        "ETH-USDT": PositionLimit(max_long_size=10.0, max_short_size=10.0, max_leverage=5.0),
    }


@dataclass(frozen=True)
class RiskConfig:
    position_limits: dict = field(
        default_factory=_default_position_limits,
        metadata={"item": PositionLimit},
    )
    portfolio: PortfolioLimits = field(default_factory=PortfolioLimits)
    stop_loss: StopLossConfig = field(default_factory=StopLossConfig)
    take_profit: TakeProfitConfig = field(default_factory=TakeProfitConfig)
    circuit_breaker: CircuitBreakerConfig = field(default_factory=CircuitBreakerConfig)
    monitor_interval_s: float = bounded(5.0, 0.1, 3600.0)


# =============================================================================
# SECURITY
# =============================================================================

SECURITY_LEVELS = ("low", "medium", "high")


@dataclass(frozen=True)
class MultiSigConfig:
    enabled: bool = True
    required_signatures: int = bounded(2, 1, 20)
    authorized_signers: tuple = (ZERO_ADDRESS,)


@dataclass(frozen=True)
class SecurityTier:
    """Transactions up to max_amount (inclusive) get this security level."""
    max_amount: float = bounded(float("inf"), 0.0, None)
    security_level: str = choice("high", *SECURITY_LEVELS)


@dataclass(frozen=True)
class TransactionLimits:
    tier1: SecurityTier = field(default_factory=lambda: SecurityTier(1000.0, "low"))
    tier2: SecurityTier = field(default_factory=lambda: SecurityTier(10_000.0, "medium"))
    tier3: SecurityTier = field(default_factory=lambda: SecurityTier(float("inf"), "high"))


@dataclass(frozen=True)
class AnomalyConfig:
    enabled: bool = True
    sensitivity: str = choice("medium", *SECURITY_LEVELS)
    alert_threshold: float = bounded(3.0, 0.0, 100.0)
    min_samples: int = bounded(10, 2, 10_000)
    alert_cooldown_minutes: float = bounded(10.0, 0.0, 1440.0)


@dataclass(frozen=True)
class SecurityConfig:
    multisig: MultiSigConfig = field(default_factory=MultiSigConfig)
    transaction_limits: TransactionLimits = field(default_factory=TransactionLimits)
    anomaly: AnomalyConfig = field(default_factory=AnomalyConfig)
    sweep_interval_s: float = bounded(5.0, 0.1, 3600.0)
    transaction_ttl_hours: float = bounded(24.0, 0.0, 720.0, exclusive_min=True)
    history_limit: int = bounded(1000, 1, 1_000_000)


# =============================================================================
# OPTIMIZATION
# =============================================================================

@dataclass(frozen=True)
class ParameterRange:
    min: float = 0.0
    max: float = 1.0
    step: float = bounded(0.01, 0.0, None, exclusive_min=True)


def _default_parameter_ranges() -> dict:
    return {
        "market_making.spread.tier1": ParameterRange(0.05, 0.5, 0.01),
        "market_making.spread.tier2": ParameterRange(0.1, 1.0, 0.01),
        "market_making.spread.tier3": ParameterRange(0.2, 2.0, 0.01),
        "market_making.volatility.medium_threshold": ParameterRange(30.0, 80.0, 5.0),
        "market_making.volatility.high_threshold": ParameterRange(60.0, 150.0, 5.0),
        "market_making.inventory.target_ratio": ParameterRange(0.3, 0.7, 0.05),
        "market_making.inventory.rebalance_threshold": ParameterRange(0.05, 0.3, 0.01),
        "risk.stop_loss.percentage": ParameterRange(1.0, 10.0, 0.5),
        "risk.take_profit.percentage": ParameterRange(2.0, 20.0, 0.5),
    }


@dataclass(frozen=True)
class GeneticConfig:
    population_size: int = bounded(20, 2, 10_000)
    generations: int = bounded(5, 1, 10_000)
    mutation_rate: float = bounded(0.1, 0.0, 1.0)
    crossover_rate: float = bounded(0.7, 0.0, 1.0)


@dataclass(frozen=True)
class ABTestingConfig:
    enabled: bool = True
    variants: int = bounded(2, 1, 50)
    duration_hours: float = bounded(24.0, 0.0, 8760.0, exclusive_min=True)


@dataclass(frozen=True)
class OptimizationConfig:
    enabled: bool = True
    interval_hours: float = bounded(24.0, 0.0, 8760.0, exclusive_min=True)
    parameters: dict = field(
        default_factory=_default_parameter_ranges,
        metadata={"item": ParameterRange},
    )
    genetic: GeneticConfig = field(default_factory=GeneticConfig)
    ab_testing: ABTestingConfig = field(default_factory=ABTestingConfig)
    regime_min_samples: int = bounded(100, 2, 100_000)
    max_history: int = bounded(1000, 100, 1_000_000)


# =============================================================================
# ROOT
# =============================================================================

@dataclass(frozen=True)
class BotConfig:
    """Complete agent configuration."""
    wallet_address: Optional[str] = None
    api: ApiConfig = field(default_factory=ApiConfig)
    market_making: MarketMakingConfig = field(default_factory=MarketMakingConfig)
    risk: RiskConfig = field(default_factory=RiskConfig)
    security: SecurityConfig = field(default_factory=SecurityConfig)
    optimization: OptimizationConfig = field(default_factory=OptimizationConfig)
    health_check_interval_s: float = bounded(30.0, 0.1, 3600.0)
