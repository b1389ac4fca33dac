"""
Bank math.

Pure functions over a Bank snapshot:
- share <-> quantity conversions with conservative rounding
- pool totals, utilization, interest-rate curve and remaining capacity
- asset/liability weights per margin regime, with e-mode and soft limits
- USD valuation under a price bias
- leverage helpers for looping
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional, Tuple

from ..core.constants import HOURS_PER_YEAR
from ..core.fixed_point import (
    FIXED_CONTEXT,
    ONE,
    ZERO,
    Numeric,
    checked_div,
    div_ceil,
    div_floor,
    floor_to,
    mul_ceil,
    mul_floor,
    to_decimal,
)
from ..models.bank import Bank, BankConfig, MarginRequirementType
from ..models.emode import EmodeWeights
from ..models.oracle import OraclePrice, PriceBias, get_price

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class InterestRates:
    lending_rate: Decimal
    borrowing_rate: Decimal


@dataclass(frozen=True)
class RemainingCapacity:
    deposit_capacity: Decimal
    borrow_capacity: Decimal


# ============================================================================
# Share conversions
# ============================================================================

def get_asset_quantity(bank: Bank, asset_shares: Numeric) -> Decimal:
    """Deposit quantity (native units) for asset shares, rounded down."""
    return mul_floor(asset_shares, bank.asset_share_value)


def get_liability_quantity(bank: Bank, liability_shares: Numeric) -> Decimal:
    """Debt quantity (native units) for liability shares, rounded up."""
    return mul_ceil(liability_shares, bank.liability_share_value)


def get_asset_shares(bank: Bank, asset_quantity: Numeric) -> Decimal:
    """Asset shares minted for a deposit, rounded down; 0 when the share value is 0."""
    if bank.asset_share_value.is_zero():
        return ZERO
    return div_floor(asset_quantity, bank.asset_share_value)


def get_liability_shares(bank: Bank, liability_quantity: Numeric) -> Decimal:
    """Liability shares owed for a borrow, rounded up; 0 when the share value is 0."""
    if bank.liability_share_value.is_zero():
        return ZERO
    return div_ceil(liability_quantity, bank.liability_share_value)


def get_total_asset_quantity(bank: Bank) -> Decimal:
    return get_asset_quantity(bank, bank.total_asset_shares)


def get_total_liability_quantity(bank: Bank) -> Decimal:
    return get_liability_quantity(bank, bank.total_liability_shares)


# ============================================================================
# Pool metrics
# ============================================================================

def compute_utilization_rate(bank: Bank) -> Decimal:
    """Total liabilities over total assets; 0 for an empty pool."""
    assets = get_total_asset_quantity(bank)
    if assets.is_zero():
        return ZERO
    return checked_div(get_total_liability_quantity(bank), assets)


def compute_interest_rates(bank: Bank) -> InterestRates:
    """
    Evaluate the bank's two-segment utilization curve.

    Below the optimal utilization the base rate ramps linearly to the plateau
    rate; above it, it ramps from the plateau to the max rate at 100%.
    Lenders earn base x utilization. Borrowers pay base plus the IR fees
    (proportional) and the fixed APR fees.

    Returns:
        InterestRates with lending and borrowing APRs
    """
    ir = bank.config.interest_rate_config
    utilization = compute_utilization_rate(bank)
    optimal = ir.optimal_utilization_rate

    if utilization <= optimal:
        base_rate = checked_div(utilization, optimal) * ir.plateau_interest_rate if optimal > 0 else ir.plateau_interest_rate
    else:
        base_rate = (
            checked_div(utilization - optimal, ONE - optimal) * (ir.max_interest_rate - ir.plateau_interest_rate)
            + ir.plateau_interest_rate
        )

    lending_rate = base_rate * utilization
    borrowing_rate = (
        base_rate * (ONE + ir.insurance_ir_fee + ir.protocol_ir_fee)
        + ir.insurance_fee_fixed_apr
        + ir.protocol_fixed_fee_apr
    )

    return InterestRates(lending_rate=lending_rate, borrowing_rate=borrowing_rate)


def compute_remaining_capacity(bank: Bank) -> RemainingCapacity:
    """Room left under the deposit and borrow limits, clamped at zero."""
    deposit_capacity = bank.config.deposit_limit - get_total_asset_quantity(bank)
    borrow_capacity = bank.config.borrow_limit - get_total_liability_quantity(bank)
    return RemainingCapacity(
        deposit_capacity=max(ZERO, deposit_capacity),
        borrow_capacity=max(ZERO, borrow_capacity),
    )


def apr_to_apy(apr: Numeric, compounding_frequency: Numeric = HOURS_PER_YEAR, apy_cap: Numeric = 3) -> Decimal:
    """Compound an APR hourly (by default) and cap the result."""
    apr = to_decimal(apr)
    n = to_decimal(compounding_frequency)
    apy = FIXED_CONTEXT.power(ONE + apr / n, n) - ONE
    return min(apy, to_decimal(apy_cap))


# ============================================================================
# Weights and valuation
# ============================================================================

def is_weighted_price(margin_requirement: MarginRequirementType) -> bool:
    return margin_requirement == MarginRequirementType.INITIAL


def get_asset_weight(
    bank: Bank,
    margin_requirement: MarginRequirementType,
    oracle_price: OraclePrice,
    asset_share_value_multiplier: Optional[Decimal] = None,
    emode_weights: Optional[EmodeWeights] = None,
    ignore_soft_limits: bool = False,
) -> Decimal:
    """
    Asset weight for a regime.

    E-mode weights never lower a weight: the larger of the bank's own weight
    and the override wins. In the Initial regime the weight is scaled down
    when the bank's total collateral exceeds `total_asset_value_init_limit`.
    """
    weight_init = bank.config.asset_weight_init
    weight_maint = bank.config.asset_weight_maint
    if emode_weights is not None:
        weight_init = max(emode_weights.asset_weight_init, weight_init)
        weight_maint = max(emode_weights.asset_weight_maint, weight_maint)

    if margin_requirement == MarginRequirementType.INITIAL:
        limit = bank.config.total_asset_value_init_limit
        if ignore_soft_limits or limit.is_zero():
            return weight_init
        total_collateral_value = compute_usd_value(
            bank,
            oracle_price,
            get_total_asset_quantity(bank),
            PriceBias.LOWEST,
            weighted_price=False,
            asset_share_value_multiplier=asset_share_value_multiplier,
        )
        if total_collateral_value > limit:
            return checked_div(limit, total_collateral_value) * weight_init
        return weight_init

    if margin_requirement == MarginRequirementType.MAINTENANCE:
        return weight_maint

    return ONE


def get_liability_weight(config: BankConfig, margin_requirement: MarginRequirementType) -> Decimal:
    if margin_requirement == MarginRequirementType.INITIAL:
        return config.liability_weight_init
    if margin_requirement == MarginRequirementType.MAINTENANCE:
        return config.liability_weight_maint
    return ONE


def compute_usd_value(
    bank: Bank,
    oracle_price: OraclePrice,
    quantity: Numeric,
    price_bias: PriceBias,
    weighted_price: bool,
    weight: Decimal = ONE,
    scale_to_base: bool = True,
    asset_share_value_multiplier: Optional[Decimal] = None,
) -> Decimal:
    """
    USD value of a native quantity.

    Args:
        bank: Bank (for mint decimals)
        oracle_price: Price snapshot
        quantity: Native units
        price_bias: Edge of the confidence band to use
        weighted_price: Use the widened (weighted) band
        weight: Risk weight applied to the value
        scale_to_base: Divide by 10^decimals (False for UI quantities)
        asset_share_value_multiplier: Collateral exchange rate for integration banks

    Returns:
        Value in USD
    """
    price = get_price(oracle_price, price_bias, weighted_price)
    value = to_decimal(quantity) * (asset_share_value_multiplier or ONE) * price * weight
    if scale_to_base:
        value = value.scaleb(-bank.mint_decimals, context=FIXED_CONTEXT)
    return value


def compute_asset_usd_value(
    bank: Bank,
    oracle_price: OraclePrice,
    asset_shares: Numeric,
    margin_requirement: MarginRequirementType,
    price_bias: PriceBias,
    asset_share_value_multiplier: Optional[Decimal] = None,
    emode_weights: Optional[EmodeWeights] = None,
) -> Decimal:
    weight = get_asset_weight(
        bank,
        margin_requirement,
        oracle_price,
        asset_share_value_multiplier=asset_share_value_multiplier,
        emode_weights=emode_weights,
    )
    return compute_usd_value(
        bank,
        oracle_price,
        get_asset_quantity(bank, asset_shares),
        price_bias,
        is_weighted_price(margin_requirement),
        weight=weight,
        asset_share_value_multiplier=asset_share_value_multiplier,
    )


def compute_liability_usd_value(
    bank: Bank,
    oracle_price: OraclePrice,
    liability_shares: Numeric,
    margin_requirement: MarginRequirementType,
    price_bias: PriceBias,
) -> Decimal:
    return compute_usd_value(
        bank,
        oracle_price,
        get_liability_quantity(bank, liability_shares),
        price_bias,
        is_weighted_price(margin_requirement),
        weight=get_liability_weight(bank.config, margin_requirement),
    )


def compute_tvl(bank: Bank, oracle_price: OraclePrice) -> Decimal:
    """Unweighted, unbiased pool assets minus liabilities in USD."""
    assets = compute_asset_usd_value(
        bank, oracle_price, bank.total_asset_shares, MarginRequirementType.EQUITY, PriceBias.NONE
    )
    liabilities = compute_liability_usd_value(
        bank, oracle_price, bank.total_liability_shares, MarginRequirementType.EQUITY, PriceBias.NONE
    )
    return assets - liabilities


# ============================================================================
# Leverage
# ============================================================================

def compute_max_leverage(
    deposit_bank: Bank,
    borrow_bank: Bank,
    asset_weight_init: Optional[Decimal] = None,
    liability_weight_init: Optional[Decimal] = None,
) -> Tuple[Decimal, Decimal]:
    """
    Max leverage for looping deposit_bank against borrow_bank.

    Returns:
        (max_leverage, ltv) where ltv = asset weight / liability weight
    """
    asset_weight = asset_weight_init or deposit_bank.config.asset_weight_init
    liability_weight = liability_weight_init or borrow_bank.config.liability_weight_init

    ltv = checked_div(asset_weight, liability_weight)
    max_leverage = checked_div(ONE, ONE - ltv)
    return max_leverage, ltv


def compute_looping_params(
    principal: Numeric,
    target_leverage: Numeric,
    deposit_bank: Bank,
    borrow_bank: Bank,
    deposit_price: OraclePrice,
    borrow_price: OraclePrice,
    asset_weight_init: Optional[Decimal] = None,
    liability_weight_init: Optional[Decimal] = None,
) -> Tuple[Decimal, Decimal]:
    """
    Deposit and borrow totals (UI units) that reach a target leverage.

    The target is clamped to [1, max leverage] with a warning.

    Returns:
        (total_deposit_amount, total_borrow_amount), each rounded down to
        its mint's decimals
    """
    principal = to_decimal(principal)
    leverage = to_decimal(target_leverage)
    max_leverage, _ = compute_max_leverage(deposit_bank, borrow_bank, asset_weight_init, liability_weight_init)

    if leverage < ONE:
        logger.warning(f"Target leverage {leverage} < 1, clamping to 1")
        leverage = ONE
    elif leverage > max_leverage:
        logger.warning(f"Target leverage {leverage} > max leverage {max_leverage}, clamping")
        leverage = max_leverage

    total_deposit = principal * leverage
    additional_deposit = total_deposit - principal
    total_borrow = checked_div(
        additional_deposit * deposit_price.price_weighted.lowest_price,
        borrow_price.price_weighted.highest_price,
    )

    return (
        floor_to(total_deposit, deposit_bank.mint_decimals),
        floor_to(total_borrow, borrow_bank.mint_decimals),
    )
