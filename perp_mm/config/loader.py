"""
Configuration loading, validation and merging.

- merge_config() applies a partial update (plain dicts, as read from YAML or
  received from the control surface) onto a tree and returns a new tree
- Unknown keys, wrong types and out-of-range values raise ConfigError; the
  base tree is never touched, so the caller's active config stays in force
- Each top-level section has its own cross-field validator
"""

import dataclasses
import math
import re
from pathlib import Path
from typing import Any, Callable, Optional, Union

import structlog
import yaml

from perp_mm.config.schema import BotConfig, SECURITY_LEVELS
from perp_mm.core.errors import ConfigError

logger = structlog.get_logger(__name__)

WALLET_ADDRESS_RE = re.compile(r"^0x[a-fA-F0-9]{40}$")


def default_config(wallet_address: Optional[str] = None) -> BotConfig:
    """Return the default configuration tree."""
    config = BotConfig()
    if wallet_address is not None:
        config = merge_config(config, {"wallet_address": wallet_address})
    return config


def is_valid_address(address: Any) -> bool:
    return isinstance(address, str) and bool(WALLET_ADDRESS_RE.match(address))


# =============================================================================
# SCALAR COERCION
# =============================================================================

def _coerce_scalar(value: Any, current: Any, meta: dict, path: str) -> Any:
    """Validate a single leaf value against the type of its current value."""
    if isinstance(current, bool):
        if not isinstance(value, bool):
            raise ConfigError(f"expected boolean, got {value!r}", path)
        return value

    if isinstance(current, int) and not isinstance(current, bool):
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ConfigError(f"expected integer, got {value!r}", path)
        if isinstance(value, float) and not value.is_integer():
            raise ConfigError(f"expected integer, got {value!r}", path)
        value = int(value)
        _check_range(value, meta, path)
        return value

    if isinstance(current, float):
        if isinstance(value, str) and value.lower() in ("inf", "infinity"):
            value = math.inf
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ConfigError(f"expected number, got {value!r}", path)
        value = float(value)
        if math.isnan(value):
            raise ConfigError("NaN is not allowed", path)
        _check_range(value, meta, path)
        return value

    if isinstance(current, str) or current is None:
        if value is not None and not isinstance(value, str):
            raise ConfigError(f"expected string, got {value!r}", path)
        choices = meta.get("choices")
        if choices and value not in choices:
            raise ConfigError(f"must be one of {list(choices)}, got {value!r}", path)
        return value

    if isinstance(current, tuple):
        if isinstance(value, str) or not isinstance(value, (list, tuple)):
            raise ConfigError(f"expected list, got {value!r}", path)
        return tuple(value)

    raise ConfigError(f"unsupported field type {type(current).__name__}", path)


def _check_range(value: float, meta: dict, path: str) -> None:
    minimum = meta.get("min")
    maximum = meta.get("max")
    if minimum is not None:
        if meta.get("exclusive_min") and value <= minimum:
            raise ConfigError(f"must be > {minimum}, got {value}", path)
        if value < minimum:
            raise ConfigError(f"must be >= {minimum}, got {value}", path)
    if maximum is not None and value > maximum:
        raise ConfigError(f"must be <= {maximum}, got {value}", path)


# =============================================================================
# RECURSIVE MERGE
# =============================================================================

def _merge_dataclass(obj: Any, updates: Any, path: str) -> Any:
    if dataclasses.is_dataclass(updates) and type(updates) is type(obj):
        updates = config_to_dict(updates)
    if not isinstance(updates, dict):
        raise ConfigError(f"expected mapping, got {updates!r}", path or "<root>")

    fields = {f.name: f for f in dataclasses.fields(obj)}
    changes = {}
    for key, value in updates.items():
        child_path = f"{path}.{key}" if path else key
        if key not in fields:
            raise ConfigError("unknown field", child_path)

        f = fields[key]
        current = getattr(obj, key)
        if dataclasses.is_dataclass(current):
            changes[key] = _merge_dataclass(current, value, child_path)
        elif "item" in f.metadata:
            changes[key] = _merge_mapping(current, value, f.metadata["item"], child_path)
        else:
            changes[key] = _coerce_scalar(value, current, f.metadata, child_path)

    return dataclasses.replace(obj, **changes)


def _merge_mapping(current: dict, updates: Any, item_type: type, path: str) -> dict:
    """Merge a keyed mapping of dataclass items (e.g. per-symbol limits)."""
    if not isinstance(updates, dict):
        raise ConfigError(f"expected mapping, got {updates!r}", path)
    merged = dict(current)
    for key, value in updates.items():
        child_path = f"{path}.{key}"
        if value is None:
            merged.pop(key, None)
            continue
        base = merged.get(key, item_type())
        merged[key] = _merge_dataclass(base, value, child_path)
    return merged


# =============================================================================
# SECTION VALIDATORS
# =============================================================================

def _validate_api(config: BotConfig) -> None:
    api = config.api
    for name in ("ws_url", "rest_url"):
        if not getattr(api, name):
            raise ConfigError("must not be empty", f"api.{name}")


def _validate_market_making(config: BotConfig) -> None:
    mm = config.market_making
    if not all(isinstance(p, str) and p for p in mm.pairs):
        raise ConfigError("pairs must be non-empty strings", "market_making.pairs")
    if mm.orders.min_size > mm.orders.max_size:
        raise ConfigError("min_size must not exceed max_size", "market_making.orders")


def _validate_risk(config: BotConfig) -> None:
    if not all(isinstance(symbol, str) and symbol for symbol in config.risk.position_limits):
        raise ConfigError("symbols must be non-empty strings", "risk.position_limits")


def _validate_security(config: BotConfig) -> None:
    security = config.security
    for signer in security.multisig.authorized_signers:
        if not is_valid_address(signer):
            raise ConfigError(
                f"malformed signer address {signer!r}",
                "security.multisig.authorized_signers",
            )
    limits = security.transaction_limits
    if not (limits.tier1.max_amount <= limits.tier2.max_amount <= limits.tier3.max_amount):
        raise ConfigError("tier bands must be non-decreasing", "security.transaction_limits")
    levels = [SECURITY_LEVELS.index(t.security_level) for t in (limits.tier1, limits.tier2, limits.tier3)]
    if levels != sorted(levels):
        raise ConfigError(
            "security levels must not decrease with value",
            "security.transaction_limits",
        )


def _validate_optimization(config: BotConfig) -> None:
    for name, rng in config.optimization.parameters.items():
        path = f"optimization.parameters.{name}"
        if rng.min > rng.max:
            raise ConfigError("min must not exceed max", path)
        try:
            current = get_parameter(config, name)
        except ConfigError:
            raise ConfigError("does not name a configuration field", path) from None
        if isinstance(current, bool) or not isinstance(current, (int, float)):
            raise ConfigError("does not name a numeric field", path)


SECTION_VALIDATORS: dict[str, Callable[[BotConfig], None]] = {
    "api": _validate_api,
    "market_making": _validate_market_making,
    "risk": _validate_risk,
    "security": _validate_security,
    "optimization": _validate_optimization,
}


def validate_config(config: BotConfig) -> BotConfig:
    """Run every section validator. Raises ConfigError on the first failure."""
    if config.wallet_address is not None and not is_valid_address(config.wallet_address):
        raise ConfigError(f"malformed address {config.wallet_address!r}", "wallet_address")
    for validator in SECTION_VALIDATORS.values():
        validator(config)
    return config


def merge_config(base: BotConfig, updates: Union[dict, BotConfig]) -> BotConfig:
    """
    Merge a partial update onto a configuration tree.

    Args:
        base: Active configuration (not modified)
        updates: Nested mapping of top-level sections to partial values

    Returns:
        New validated configuration tree

    Raises:
        ConfigError: Unknown field, wrong type or out-of-range value
    """
    merged = _merge_dataclass(base, updates, "")
    return validate_config(merged)


# =============================================================================
# SERIALIZATION AND LOADING
# =============================================================================

def config_to_dict(config: Any) -> Any:
    """Convert a configuration tree to plain, YAML/JSON-friendly values."""
    if dataclasses.is_dataclass(config):
        return {f.name: config_to_dict(getattr(config, f.name)) for f in dataclasses.fields(config)}
    if isinstance(config, dict):
        return {k: config_to_dict(v) for k, v in config.items()}
    if isinstance(config, tuple):
        return [config_to_dict(v) for v in config]
    if isinstance(config, float) and math.isinf(config):
        return "inf" if config > 0 else "-inf"
    return config


def load_config(path: Optional[Union[str, Path]] = None, **overrides: Any) -> BotConfig:
    """
    Load configuration from a YAML file onto the defaults.

    A missing file yields the default tree.
    """
    config = default_config()
    if path is not None:
        config_path = Path(path)
        if config_path.exists():
            with open(config_path) as f:
                data = yaml.safe_load(f) or {}
            config = merge_config(config, data)
            logger.info("config_loaded", path=str(config_path))
        else:
            logger.warning("config_file_not_found", path=str(config_path))
    if overrides:
        config = merge_config(config, overrides)
    return config


# =============================================================================
# DOTTED-PATH PARAMETERS
# =============================================================================

def get_parameter(config: BotConfig, path: str) -> Any:
    """Read a leaf value by dotted path, e.g. ``risk.stop_loss.percentage``."""
    node: Any = config
    for part in path.split("."):
        if dataclasses.is_dataclass(node) and part in {f.name for f in dataclasses.fields(node)}:
            node = getattr(node, part)
        elif isinstance(node, dict) and part in node:
            node = node[part]
        else:
            raise ConfigError("unknown parameter", path)
    return node


def _nest(path: str, value: Any) -> dict:
    result: Any = value
    for part in reversed(path.split(".")):
        result = {part: result}
    return result


def _deep_update(target: dict, source: dict) -> None:
    for key, value in source.items():
        if isinstance(value, dict) and isinstance(target.get(key), dict):
            _deep_update(target[key], value)
        else:
            target[key] = value


def apply_parameters(config: BotConfig, parameters: dict[str, float]) -> BotConfig:
    """Return a new tree with dotted-path parameter values applied."""
    updates: dict = {}
    for path, value in parameters.items():
        current = get_parameter(config, path)
        if isinstance(current, int) and not isinstance(current, bool):
            value = int(round(value))
        _deep_update(updates, _nest(path, value))
    return merge_config(config, updates)
