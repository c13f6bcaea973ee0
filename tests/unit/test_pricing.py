"""
Tests for quote pricing, sizing, layering and inventory strategies.
"""

import dataclasses

import pytest

from perp_mm.config.loader import default_config, merge_config
from perp_mm.core.models import OrderSide
from perp_mm.quoting.inventory import aggressive, get_strategy, passive, register_strategy, STRATEGIES
from perp_mm.quoting.pricing import (
    base_size,
    compute_quote_prices,
    compute_quote_sizes,
    finalize_size,
    imbalance_adjustment,
    imbalance_ratio,
    inventory_skew,
    layer_orders,
    select_spread_tier,
)


@pytest.fixture
def mm():
    return default_config().market_making


class TestQuotePrices:
    """Tests for compute_quote_prices()."""

    def test_symmetric_quotes_around_mid(self, mm, make_book):
        """Tier-1 half spread, bid floored and ask ceiled to the tick."""
        prices = compute_quote_prices(make_book(), mm)

        assert prices.mid == 101.0
        assert prices.spread_pct == 0.1
        assert prices.bid == 100.94
        assert prices.ask == 101.06
        assert prices.imbalance_adjustment == 0.0

    def test_imbalance_shifts_both_quotes(self, mm, make_book):
        """Heavy bids move both quotes up by mid * ratio * factor."""
        book = make_book(bids=((100.0, 9.0),), asks=((102.0, 1.0),))
        prices = compute_quote_prices(book, mm)

        assert prices.imbalance_adjustment == pytest.approx(40.4)
        assert prices.bid == 141.34
        assert prices.ask == 141.46

    def test_imbalance_disabled(self, make_book):
        mm = merge_config(default_config(), {"market_making": {"imbalance": {"enabled": False}}}).market_making
        book = make_book(bids=((100.0, 9.0),), asks=((102.0, 1.0),))

        assert compute_quote_prices(book, mm).bid == 100.94

    def test_volatility_widens_spread(self, mm, make_book):
        assert compute_quote_prices(make_book(), mm, short_volatility=60).spread_pct == 0.2
        assert compute_quote_prices(make_book(), mm, short_volatility=150).spread_pct == 0.5

    def test_one_sided_book(self, mm, make_book):
        assert compute_quote_prices(make_book(asks=()), mm) is None


class TestBookMetrics:
    def test_spread_tier_boundaries(self, mm):
        assert select_spread_tier(50.0, mm.spread, mm.volatility) == 0.1
        assert select_spread_tier(50.1, mm.spread, mm.volatility) == 0.2
        assert select_spread_tier(100.1, mm.spread, mm.volatility) == 0.5

    def test_imbalance_ratio(self, make_book):
        assert imbalance_ratio(make_book(bids=((100.0, 3.0),), asks=((102.0, 1.0),))) == 0.5
        assert imbalance_ratio(make_book(bids=(), asks=())) == 0.0

    def test_imbalance_ratio_depth(self, make_book):
        book = make_book(bids=((100.0, 1.0), (99.0, 100.0)), asks=((102.0, 1.0),))
        assert imbalance_ratio(book, depth=1) == 0.0

    def test_adjustment_inside_threshold(self):
        assert imbalance_adjustment(100.0, 0.2, 0.2, 0.5) == 0.0
        assert imbalance_adjustment(100.0, -0.4, 0.2, 0.5) == pytest.approx(-20.0)


class TestQuoteSizes:
    """Tests for sizing and inventory skew."""

    def test_base_size_from_volume(self, mm, make_market):
        assert base_size(make_market(volume=500.0), mm.orders) == 0.5
        assert base_size(make_market(volume=1e9), mm.orders) == 1.0
        assert base_size(make_market(volume=0.0), mm.orders) == 0.001
        assert base_size(None, mm.orders) == 0.001

    def test_inventory_skew(self):
        assert inventory_skew(1.25, 0.5, 5.0) == 0.5
        assert inventory_skew(100.0, 0.5, 5.0) == 1.0
        assert inventory_skew(-100.0, 0.5, 5.0) == -1.0
        assert inventory_skew(0.0, 0.5, 5.0) == 0.0

    def test_passive_long_inventory(self, mm, make_market):
        """Long inventory only grows the ask."""
        sizes = compute_quote_sizes(make_market(volume=500.0), 1.25, mm)

        assert sizes.skew == 0.5
        assert sizes.bid == 0.5
        assert sizes.ask == 0.625

    def test_passive_short_inventory(self, mm, make_market):
        sizes = compute_quote_sizes(make_market(volume=500.0), -1.25, mm)

        assert sizes.bid == 0.625
        assert sizes.ask == 0.5

    def test_aggressive_shrinks_adding_side(self, make_market):
        mm = merge_config(default_config(), {"market_making": {"inventory": {"strategy": "aggressive"}}}).market_making
        sizes = compute_quote_sizes(make_market(volume=500.0), 1.25, mm)

        assert sizes.bid == 0.25
        assert sizes.ask == 0.625

    def test_below_minimum_skipped(self, make_market):
        """A side that floors below the minimum is skipped, never clamped up."""
        mm = merge_config(default_config(), {"market_making": {"inventory": {"strategy": "aggressive"}}}).market_making
        sizes = compute_quote_sizes(make_market(volume=0.0), 0.004, mm)

        assert sizes.bid == 0.0
        assert sizes.ask == 0.001

    def test_finalize_size(self, mm):
        assert finalize_size(5.0, mm.orders) == 1.0
        assert finalize_size(0.12345, mm.orders) == 0.123
        assert finalize_size(0.0009, mm.orders) == 0.0


class TestLayering:
    """Tests for layer_orders()."""

    def test_layers_step_out_and_grow(self, mm):
        layers = layer_orders(100.0, 101.0, 0.1, 0.1, mm)

        buys = [(l.level, l.price, l.size) for l in layers if l.side is OrderSide.BUY]
        sells = [(l.level, l.price, l.size) for l in layers if l.side is OrderSide.SELL]
        assert buys == [(1, 99.0, 0.15), (2, 98.0, 0.225), (3, 97.0, 0.337)]
        assert sells == [(1, 102.01, 0.15), (2, 103.02, 0.225), (3, 104.03, 0.337)]

    def test_skipped_side_has_no_layers(self, mm):
        layers = layer_orders(100.0, 101.0, 0.0, 0.1, mm)
        assert {l.side for l in layers} == {OrderSide.SELL}

    def test_oversized_layers_capped(self, mm):
        layers = layer_orders(100.0, 101.0, 0.9, 0.9, mm)
        assert all(l.size <= mm.orders.max_size for l in layers)

    def test_disabled(self, mm):
        disabled = dataclasses.replace(mm, layering=dataclasses.replace(mm.layering, enabled=False))
        assert layer_orders(100.0, 101.0, 0.1, 0.1, disabled) == []


class TestStrategies:
    """Tests for the inventory strategy registry."""

    def test_flat_inventory_is_symmetric(self):
        assert passive(1.0, 0.0, 0.5) == (1.0, 1.0)
        assert aggressive(1.0, 0.0, 0.5) == (1.0, 1.0)

    def test_full_skew(self):
        assert passive(1.0, 1.0, 0.5) == (1.0, 1.0)
        assert aggressive(1.0, 1.0, 0.5) == (0.0, 1.0)

    def test_unknown_strategy(self):
        with pytest.raises(ValueError):
            get_strategy("martingale")

    def test_register_strategy(self):
        def flat(base, skew, target_ratio):
            return base, base

        register_strategy("flat", flat)
        try:
            assert get_strategy("flat") is flat
        finally:
            STRATEGIES.pop("flat")
