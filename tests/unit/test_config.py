"""
Tests for configuration trees, validated merging and loading.
"""

import dataclasses
import math

import pytest

from perp_mm.config.loader import (
    apply_parameters,
    config_to_dict,
    default_config,
    get_parameter,
    is_valid_address,
    load_config,
    merge_config,
)
from perp_mm.config.schema import ZERO_ADDRESS
from perp_mm.core.errors import ConfigError

from conftest import COSIGNER, WALLET


class TestDefaults:
    """Tests for the default tree."""

    def test_default_values(self):
        """Defaults match the documented values."""
        config = default_config()
        mm = config.market_making
        assert mm.pairs == ("BTC-USDT", "ETH-USDT")
        assert (mm.spread.tier1, mm.spread.tier2, mm.spread.tier3) == (0.1, 0.2, 0.5)
        assert mm.inventory.strategy == "passive"
        assert mm.layering.levels == 3
        assert config.risk.position_limits["ETH-USDT"].max_long_size == 10.0
        assert config.risk.circuit_breaker.cooldown_minutes == 15.0
        assert config.security.transaction_limits.tier3.max_amount == math.inf
        assert config.security.multisig.authorized_signers == (ZERO_ADDRESS,)
        assert config.optimization.genetic.population_size == 20

    def test_tree_is_frozen(self):
        """Config sections cannot be patched in place."""
        config = default_config()
        with pytest.raises(dataclasses.FrozenInstanceError):
            config.market_making.orders.max_size = 5.0


class TestMergeConfig:
    """Tests for merge_config()."""

    def test_merge_returns_new_tree(self):
        """Merging leaves the base untouched."""
        base = default_config(WALLET)
        merged = merge_config(base, {"market_making": {"spread": {"tier1": 0.15}}})

        assert merged.market_making.spread.tier1 == 0.15
        assert merged.market_making.spread.tier2 == 0.2
        assert base.market_making.spread.tier1 == 0.1

    def test_unknown_field_rejected(self):
        with pytest.raises(ConfigError) as exc:
            merge_config(default_config(), {"market_making": {"spreads": {}}})
        assert exc.value.path == "market_making.spreads"

    def test_out_of_range_rejected(self):
        """Values outside the declared range are rejected with their path."""
        with pytest.raises(ConfigError) as exc:
            merge_config(default_config(), {"market_making": {"imbalance": {"threshold": 1.5}}})
        assert exc.value.path == "market_making.imbalance.threshold"

    def test_exclusive_minimum(self):
        with pytest.raises(ConfigError):
            merge_config(default_config(), {"market_making": {"spread": {"tier1": 0}}})

    def test_wrong_type_rejected(self):
        with pytest.raises(ConfigError):
            merge_config(default_config(), {"risk": {"stop_loss": {"enabled": "yes"}}})

    def test_invalid_choice_rejected(self):
        with pytest.raises(ConfigError):
            merge_config(default_config(), {"market_making": {"inventory": {"strategy": "yolo"}}})

    def test_malformed_wallet_rejected(self):
        with pytest.raises(ConfigError) as exc:
            merge_config(default_config(), {"wallet_address": "0x123"})
        assert exc.value.path == "wallet_address"

    def test_malformed_signer_rejected(self):
        with pytest.raises(ConfigError):
            merge_config(
                default_config(),
                {"security": {"multisig": {"authorized_signers": ["not-an-address"]}}},
            )

    def test_position_limit_added_per_symbol(self):
        """New symbols in keyed mappings start from the item defaults."""
        merged = merge_config(
            default_config(),
            {"risk": {"position_limits": {"SOL-USDT": {"max_long_size": 50}}}},
        )
        limit = merged.risk.position_limits["SOL-USDT"]
        assert limit.max_long_size == 50.0
        assert limit.max_leverage == 5.0
        assert "BTC-USDT" in merged.risk.position_limits

    def test_inf_string_accepted(self):
        merged = merge_config(
            default_config(),
            {"security": {"transaction_limits": {"tier2": {"max_amount": "inf"}}}},
        )
        assert merged.security.transaction_limits.tier2.max_amount == math.inf

    def test_merge_full_tree(self):
        """A complete BotConfig can be merged as an update."""
        target = merge_config(default_config(WALLET), {"risk": {"take_profit": {"percentage": 12}}})
        merged = merge_config(default_config(WALLET), target)
        assert merged == target


class TestSerialization:
    """Tests for config_to_dict() and load_config()."""

    def test_inf_serialized_as_string(self):
        data = config_to_dict(default_config())
        assert data["security"]["transaction_limits"]["tier3"]["max_amount"] == "inf"
        assert data["market_making"]["pairs"] == ["BTC-USDT", "ETH-USDT"]

    def test_round_trip_through_dict(self):
        config = default_config(WALLET)
        assert merge_config(default_config(), config_to_dict(config)) == config

    def test_load_yaml(self, tmp_path):
        path = tmp_path / "settings.yaml"
        path.write_text(
            "market_making:\n"
            "  pairs: [BTC-USDT]\n"
            "  orders:\n"
            "    max_open_orders: 4\n"
            "security:\n"
            "  multisig:\n"
            f"    authorized_signers: ['{COSIGNER}']\n"
        )
        config = load_config(path, wallet_address=WALLET)

        assert config.market_making.pairs == ("BTC-USDT",)
        assert config.market_making.orders.max_open_orders == 4
        assert config.security.multisig.authorized_signers == (COSIGNER,)
        assert config.wallet_address == WALLET

    def test_missing_file_yields_defaults(self, tmp_path):
        assert load_config(tmp_path / "missing.yaml") == default_config()


class TestParameters:
    """Tests for dotted-path parameter access."""

    def test_get_parameter(self):
        assert get_parameter(default_config(), "risk.stop_loss.percentage") == 5.0

    def test_get_unknown_parameter(self):
        with pytest.raises(ConfigError):
            get_parameter(default_config(), "risk.stop_loss.nope")

    def test_apply_parameters(self):
        config = default_config()
        updated = apply_parameters(config, {
            "market_making.spread.tier1": 0.12,
            "risk.stop_loss.percentage": 4.5,
        })
        assert updated.market_making.spread.tier1 == 0.12
        assert updated.risk.stop_loss.percentage == 4.5
        assert config.risk.stop_loss.percentage == 5.0

    def test_apply_parameters_validates(self):
        with pytest.raises(ConfigError):
            apply_parameters(default_config(), {"risk.stop_loss.percentage": 150.0})


class TestAddress:
    def test_valid_address(self):
        assert is_valid_address(WALLET)
        assert is_valid_address("0x" + "AbCdEf" * 6 + "0123")
        assert not is_valid_address("0x" + "g" * 40)
        assert not is_valid_address(None)
