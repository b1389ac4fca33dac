"""
Tests for bank math: rates, capacity, weights, valuation and leverage,
plus oracle price construction.
"""

from dataclasses import replace
from decimal import Decimal

import pytest

from mrgn.models.bank import MarginRequirementType
from mrgn.models.emode import EmodeWeights
from mrgn.models.oracle import OracleSetup, PriceBias, build_oracle_price, get_price
from mrgn.services.bank_compute import (
    apr_to_apy,
    compute_interest_rates,
    compute_looping_params,
    compute_max_leverage,
    compute_remaining_capacity,
    compute_tvl,
    compute_utilization_rate,
    get_asset_weight,
    get_liability_weight,
    get_total_asset_quantity,
    get_total_liability_quantity,
)
from tests.factories import make_bank, make_price


def _pool(assets_ui, liabilities_ui, **kwargs):
    return make_bank(
        total_asset_shares=Decimal(assets_ui) * 10 ** 6,
        total_liability_shares=Decimal(liabilities_ui) * 10 ** 6,
        **kwargs,
    )


# ============================================================================
# Pool metrics
# ============================================================================

class TestInterestRates:
    """Two-segment utilization curve."""

    def test_empty_pool_has_zero_utilization(self):
        assert compute_utilization_rate(_pool(0, 0)) == 0

    def test_below_optimal_utilization(self):
        """At 40% utilization with an 80% kink the base rate is half the plateau."""
        rates = compute_interest_rates(_pool(1000, 400))

        assert compute_utilization_rate(_pool(1000, 400)) == Decimal("0.4")
        assert rates.borrowing_rate == Decimal("0.05")
        assert rates.lending_rate == Decimal("0.02")

    def test_above_optimal_utilization(self):
        """Past the kink the rate ramps from the plateau toward the max rate."""
        rates = compute_interest_rates(_pool(1000, 900))

        assert rates.borrowing_rate == Decimal("0.55")
        assert rates.lending_rate == Decimal("0.495")

    def test_fees_only_increase_borrow_rate(self):
        """IR fees scale the base rate and fixed APRs are added on top."""
        bank = _pool(1000, 400)
        ir = replace(
            bank.config.interest_rate_config,
            protocol_ir_fee=Decimal("0.1"),
            insurance_fee_fixed_apr=Decimal("0.01"),
        )
        bank = replace(bank, config=replace(bank.config, interest_rate_config=ir))

        rates = compute_interest_rates(bank)

        assert rates.borrowing_rate == Decimal("0.05") * Decimal("1.1") + Decimal("0.01")
        assert rates.lending_rate == Decimal("0.02")


class TestTotals:
    def test_totals_scale_with_share_value(self):
        bank = _pool(1000, 400, asset_share_value="1.5", liability_share_value="1.25")

        assert get_total_asset_quantity(bank) == Decimal(1500) * 10 ** 6
        assert get_total_liability_quantity(bank) == Decimal(500) * 10 ** 6


class TestRemainingCapacity:
    def test_capacity_clamped_at_zero(self):
        """A pool over its limit reports zero capacity, not a negative one."""
        bank = _pool(1000, 500)
        bank = replace(
            bank,
            config=replace(bank.config, deposit_limit=Decimal(500) * 10 ** 6, borrow_limit=Decimal(800) * 10 ** 6),
        )

        capacity = compute_remaining_capacity(bank)

        assert capacity.deposit_capacity == 0
        assert capacity.borrow_capacity == Decimal(300) * 10 ** 6


# ============================================================================
# Weights and valuation
# ============================================================================

class TestWeights:
    def test_regime_weights(self, usdc_bank):
        price = make_price(1)
        assert get_asset_weight(usdc_bank, MarginRequirementType.INITIAL, price) == Decimal("0.8")
        assert get_asset_weight(usdc_bank, MarginRequirementType.MAINTENANCE, price) == Decimal("0.9")
        assert get_asset_weight(usdc_bank, MarginRequirementType.EQUITY, price) == 1
        assert get_liability_weight(usdc_bank.config, MarginRequirementType.INITIAL) == Decimal("1.2")
        assert get_liability_weight(usdc_bank.config, MarginRequirementType.EQUITY) == 1

    def test_initial_weight_soft_limit(self):
        """Collateral beyond the init value limit is discounted proportionally."""
        bank = _pool(1000, 0)
        bank = replace(bank, config=replace(bank.config, total_asset_value_init_limit=Decimal(500)))

        weight = get_asset_weight(bank, MarginRequirementType.INITIAL, make_price(1))

        assert weight == Decimal("0.4")

    def test_soft_limit_can_be_ignored(self):
        bank = _pool(1000, 0)
        bank = replace(bank, config=replace(bank.config, total_asset_value_init_limit=Decimal(500)))

        weight = get_asset_weight(bank, MarginRequirementType.INITIAL, make_price(1), ignore_soft_limits=True)

        assert weight == Decimal("0.8")

    def test_emode_weight_never_lowers(self, usdc_bank):
        """A weaker e-mode entry leaves the bank's own weight in place."""
        weaker = EmodeWeights(asset_weight_init=Decimal("0.5"), asset_weight_maint=Decimal("0.6"))
        stronger = EmodeWeights(asset_weight_init=Decimal("0.9"), asset_weight_maint=Decimal("0.95"))
        price = make_price(1)

        assert get_asset_weight(usdc_bank, MarginRequirementType.INITIAL, price, emode_weights=weaker) == Decimal("0.8")
        assert get_asset_weight(usdc_bank, MarginRequirementType.INITIAL, price, emode_weights=stronger) == Decimal("0.9")

    def test_tvl_is_unweighted(self):
        assert compute_tvl(_pool(1000, 250), make_price(2, "0.5")) == Decimal(1500)


# ============================================================================
# Leverage
# ============================================================================

class TestLeverage:
    def test_max_leverage(self, usdc_bank):
        """0.8 / 1.2 LTV gives 3x max leverage."""
        max_leverage, ltv = compute_max_leverage(usdc_bank, usdc_bank)

        assert abs(ltv - Decimal(2) / Decimal(3)) < Decimal("1e-40")
        assert abs(max_leverage - 3) < Decimal("1e-40")

    def test_looping_params(self, usdc_bank):
        deposit_total, borrow_total = compute_looping_params(
            100, 2, usdc_bank, usdc_bank, make_price(1), make_price(1)
        )

        assert deposit_total == Decimal(200)
        assert borrow_total == Decimal(100)

    def test_looping_params_clamps_leverage(self, usdc_bank):
        """A target above max leverage is clamped rather than rejected."""
        deposit_total, _ = compute_looping_params(100, 10, usdc_bank, usdc_bank, make_price(1), make_price(1))

        assert Decimal("299.999999") <= deposit_total <= Decimal(300)

    def test_apr_to_apy(self):
        assert apr_to_apy(0) == 0
        assert Decimal("0.105") < apr_to_apy("0.1") < Decimal("0.106")
        assert apr_to_apy(10) == 3


# ============================================================================
# Oracle prices
# ============================================================================

class TestOraclePrice:
    def test_pyth_weighted_band_is_wider(self):
        price = build_oracle_price(1, "0.01", OracleSetup.PYTH_PUSH_ORACLE)

        assert price.price_realtime.lowest_price == Decimal("0.99")
        assert price.price_weighted.lowest_price == Decimal("0.9788")

    def test_switchboard_weighted_band(self):
        """Switchboard widens by 1.96 standard deviations, below the 5% cap."""
        price = build_oracle_price(1, "0.01", OracleSetup.SWITCHBOARD_PULL)

        assert price.price_realtime.confidence == Decimal("0.01")
        assert price.price_weighted.confidence == Decimal("0.0196")
        assert get_price(price, PriceBias.LOWEST, weighted=True) == Decimal("0.9804")
        assert get_price(price, PriceBias.HIGHEST, weighted=True) == Decimal("1.0196")

    def test_confidence_is_capped(self):
        """Confidence never exceeds 5% of the price by default."""
        price = build_oracle_price(100, 20, OracleSetup.SWITCHBOARD_PULL)

        assert price.price_realtime.confidence == Decimal(5)
        assert price.price_weighted.confidence == Decimal(5)

    def test_fixed_price_has_no_band(self):
        price = build_oracle_price(1, "0.5", OracleSetup.FIXED)

        assert get_price(price, PriceBias.LOWEST) == 1
        assert get_price(price, PriceBias.HIGHEST, weighted=True) == 1

    def test_negative_confidence_rejected(self):
        with pytest.raises(ValueError):
            build_oracle_price(1, -1, OracleSetup.PYTH_PUSH_ORACLE)
