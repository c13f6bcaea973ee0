"""
Configuration trees, defaults and validated merging.
"""

from perp_mm.config.schema import (
    ApiConfig,
    BotConfig,
    MarketMakingConfig,
    OptimizationConfig,
    ParameterRange,
    PositionLimit,
    RiskConfig,
    SecurityConfig,
)
from perp_mm.config.loader import (
    apply_parameters,
    config_to_dict,
    default_config,
    get_parameter,
    is_valid_address,
    load_config,
    merge_config,
)

__all__ = [
    "ApiConfig",
    "BotConfig",
    "MarketMakingConfig",
    "OptimizationConfig",
    "ParameterRange",
    "PositionLimit",
    "RiskConfig",
    "SecurityConfig",
    "apply_parameters",
    "config_to_dict",
    "default_config",
    "get_parameter",
    "is_valid_address",
    "load_config",
    "merge_config",
]
