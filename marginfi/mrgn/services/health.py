"""
Account health engine.

Two paths produce (assets, liabilities) in USD for a margin regime:
- cached: read straight from the account's HealthCache
- legacy: revalue every active balance from bank snapshots and oracle prices,
  assets at the low edge of the band and liabilities at the high edge
  (Equity uses the raw price)

Everything else (free collateral, health factor, net APY, liquidation price,
emissions) is derived from these two.
"""

import logging
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, Iterable, List, Mapping, Optional, Sequence

from solders.pubkey import Pubkey

from ..core.constants import SECONDS_PER_YEAR
from ..core.fixed_point import FIXED_CONTEXT, ZERO, Numeric, ceil_to, floor_to, native_to_ui, to_decimal
from ..models.account import MarginfiAccount
from ..models.balance import Balance
from ..models.bank import Bank, MarginRequirementType
from ..models.emode import EmodeWeights
from ..models.health_cache import HealthCache, HealthCacheStatus
from ..models.oracle import OraclePrice, PriceBias, get_price
from .bank_compute import (
    apr_to_apy,
    compute_asset_usd_value,
    compute_interest_rates,
    compute_liability_usd_value,
    get_asset_quantity,
    get_asset_weight,
    get_liability_quantity,
    get_liability_weight,
)

logger = logging.getLogger(__name__)

INFINITE_HEALTH = Decimal("Infinity")


@dataclass(frozen=True)
class HealthComponents:
    assets: Decimal
    liabilities: Decimal

    @property
    def net(self) -> Decimal:
        return self.assets - self.liabilities


def _short(pubkey) -> str:
    key = str(pubkey)
    return f"{key[:4]}...{key[-4:]}"


# ============================================================================
# Per-balance valuation
# ============================================================================

def compute_balance_usd_value(
    balance: Balance,
    bank: Bank,
    oracle_price: OraclePrice,
    margin_requirement: MarginRequirementType,
    asset_share_value_multiplier: Optional[Decimal] = None,
    emode_weights: Optional[EmodeWeights] = None,
    with_bias: bool = True,
) -> HealthComponents:
    """
    USD value of one balance.

    With bias, assets use the lowest price and liabilities the highest,
    except in the Equity regime which is always valued at the raw price.
    """
    if with_bias and margin_requirement != MarginRequirementType.EQUITY:
        asset_bias, liability_bias = PriceBias.LOWEST, PriceBias.HIGHEST
    else:
        asset_bias = liability_bias = PriceBias.NONE

    assets = compute_asset_usd_value(
        bank,
        oracle_price,
        balance.asset_shares,
        margin_requirement,
        asset_bias,
        asset_share_value_multiplier=asset_share_value_multiplier,
        emode_weights=emode_weights,
    )
    liabilities = compute_liability_usd_value(
        bank, oracle_price, balance.liability_shares, margin_requirement, liability_bias
    )
    return HealthComponents(assets=assets, liabilities=liabilities)


def compute_quantity_ui(
    balance: Balance,
    bank: Bank,
    asset_share_value_multiplier: Optional[Decimal] = None,
) -> HealthComponents:
    """Balance quantities in UI units (assets converted to underlying for integration banks)."""
    assets = get_asset_quantity(bank, balance.asset_shares)
    if asset_share_value_multiplier is not None:
        assets = assets * asset_share_value_multiplier
    liabilities = get_liability_quantity(bank, balance.liability_shares)
    return HealthComponents(
        assets=native_to_ui(assets, bank.mint_decimals),
        liabilities=native_to_ui(liabilities, bank.mint_decimals),
    )


def _effective_emode_weights(bank: Bank, override: Optional[EmodeWeights]) -> Optional[EmodeWeights]:
    if override is None:
        return None
    return EmodeWeights(
        asset_weight_init=max(bank.config.asset_weight_init, override.asset_weight_init),
        asset_weight_maint=max(bank.config.asset_weight_maint, override.asset_weight_maint),
    )


def _sum_balances(
    balances: Iterable[Balance],
    bank_map: Mapping[str, Bank],
    oracle_prices: Mapping[str, OraclePrice],
    margin_requirement: MarginRequirementType,
    excluded_banks: Sequence[Pubkey],
    asset_share_value_multipliers: Optional[Mapping[str, Decimal]],
    emode_weights_by_bank: Optional[Mapping[str, EmodeWeights]],
    with_bias: bool,
) -> HealthComponents:
    excluded = {str(pk) for pk in excluded_banks}
    total_assets = ZERO
    total_liabilities = ZERO

    for balance in balances:
        if not balance.active:
            continue
        bank_key = str(balance.bank_pk)
        if bank_key in excluded:
            continue

        bank = bank_map.get(bank_key)
        if bank is None:
            logger.warning(f"Bank {_short(bank_key)} not found, excluding from health computation")
            continue

        oracle_price = oracle_prices.get(bank_key)
        if oracle_price is None:
            logger.warning(f"Price info for bank {_short(bank_key)} not found, excluding from health computation")
            continue

        value = compute_balance_usd_value(
            balance,
            bank,
            oracle_price,
            margin_requirement,
            asset_share_value_multiplier=(asset_share_value_multipliers or {}).get(bank_key),
            emode_weights=_effective_emode_weights(bank, (emode_weights_by_bank or {}).get(bank_key)),
            with_bias=with_bias,
        )
        total_assets += value.assets
        total_liabilities += value.liabilities

    return HealthComponents(assets=total_assets, liabilities=total_liabilities)


# ============================================================================
# Health components
# ============================================================================

def compute_health_components(
    account: MarginfiAccount,
    margin_requirement: MarginRequirementType,
) -> HealthComponents:
    """Assets/liabilities for a regime, read from the account's health cache."""
    if account.health_cache.simulation_status == HealthCacheStatus.UNSET:
        logger.warning(f"Health cache not computed for account {_short(account.address)} yet")

    assets, liabilities = account.health_cache.components(margin_requirement)
    return HealthComponents(assets=assets, liabilities=liabilities)


def compute_health_components_legacy(
    balances: Sequence[Balance],
    bank_map: Mapping[str, Bank],
    oracle_prices: Mapping[str, OraclePrice],
    margin_requirement: MarginRequirementType,
    excluded_banks: Sequence[Pubkey] = (),
    asset_share_value_multipliers: Optional[Mapping[str, Decimal]] = None,
    emode_weights_by_bank: Optional[Mapping[str, EmodeWeights]] = None,
) -> HealthComponents:
    """
    Revalue active balances from bank and oracle snapshots.

    Balances whose bank or price is missing are skipped with a warning.

    Args:
        balances: Balance slots (inactive ones are ignored)
        bank_map: Banks keyed by address string
        oracle_prices: Prices keyed by bank address string
        margin_requirement: Regime to value under
        excluded_banks: Banks to leave out, e.g. a position being closed
        asset_share_value_multipliers: Collateral exchange rates for integration banks
        emode_weights_by_bank: Active e-mode weights per collateral bank

    Returns:
        HealthComponents in USD
    """
    return _sum_balances(
        balances,
        bank_map,
        oracle_prices,
        margin_requirement,
        excluded_banks,
        asset_share_value_multipliers,
        emode_weights_by_bank,
        with_bias=True,
    )


def compute_health_components_without_bias(
    balances: Sequence[Balance],
    bank_map: Mapping[str, Bank],
    oracle_prices: Mapping[str, OraclePrice],
    margin_requirement: MarginRequirementType,
    excluded_banks: Sequence[Pubkey] = (),
    asset_share_value_multipliers: Optional[Mapping[str, Decimal]] = None,
    emode_weights_by_bank: Optional[Mapping[str, EmodeWeights]] = None,
) -> HealthComponents:
    """Same as the legacy path, valued at raw prices on both sides."""
    return _sum_balances(
        balances,
        bank_map,
        oracle_prices,
        margin_requirement,
        excluded_banks,
        asset_share_value_multipliers,
        emode_weights_by_bank,
        with_bias=False,
    )


def compute_asset_health_component(
    balances: Sequence[Balance],
    bank_map: Mapping[str, Bank],
    oracle_prices: Mapping[str, OraclePrice],
    asset_banks: Sequence[Pubkey],
    margin_requirement: MarginRequirementType,
    asset_share_value_multipliers: Optional[Mapping[str, Decimal]] = None,
    emode_weights_by_bank: Optional[Mapping[str, EmodeWeights]] = None,
) -> Decimal:
    """Biased asset value restricted to `asset_banks`."""
    wanted = {str(pk) for pk in asset_banks}
    selected = [b for b in balances if b.active and str(b.bank_pk) in wanted]
    return compute_health_components_legacy(
        selected,
        bank_map,
        oracle_prices,
        margin_requirement,
        asset_share_value_multipliers=asset_share_value_multipliers,
        emode_weights_by_bank=emode_weights_by_bank,
    ).assets


def compute_liability_health_component(
    balances: Sequence[Balance],
    bank_map: Mapping[str, Bank],
    oracle_prices: Mapping[str, OraclePrice],
    liability_banks: Sequence[Pubkey],
    margin_requirement: MarginRequirementType,
) -> Decimal:
    """Biased liability value restricted to `liability_banks`."""
    wanted = {str(pk) for pk in liability_banks}
    selected = [b for b in balances if b.active and str(b.bank_pk) in wanted]
    return compute_health_components_legacy(selected, bank_map, oracle_prices, margin_requirement).liabilities


def compute_health_cache_status(
    balances: Sequence[Balance],
    bank_map: Mapping[str, Bank],
    oracle_prices: Mapping[str, OraclePrice],
    asset_share_value_multipliers: Optional[Mapping[str, Decimal]] = None,
    emode_weights_by_bank: Optional[Mapping[str, EmodeWeights]] = None,
    timestamp: Optional[int] = None,
) -> HealthCache:
    """
    Build a locally computed health cache.

    Initial and Maintenance come from the biased legacy path, Equity from
    the unbiased one. The result is tagged COMPUTED.
    """
    kwargs = dict(
        asset_share_value_multipliers=asset_share_value_multipliers,
        emode_weights_by_bank=emode_weights_by_bank,
    )
    equity = compute_health_components_without_bias(
        balances, bank_map, oracle_prices, MarginRequirementType.EQUITY, **kwargs
    )
    maint = compute_health_components_legacy(
        balances, bank_map, oracle_prices, MarginRequirementType.MAINTENANCE, **kwargs
    )
    initial = compute_health_components_legacy(
        balances, bank_map, oracle_prices, MarginRequirementType.INITIAL, **kwargs
    )

    return HealthCache(
        asset_value=initial.assets,
        liability_value=initial.liabilities,
        asset_value_maint=maint.assets,
        liability_value_maint=maint.liabilities,
        asset_value_equity=equity.assets,
        liability_value_equity=equity.liabilities,
        timestamp=int(time.time()) if timestamp is None else timestamp,
        simulation_status=HealthCacheStatus.COMPUTED,
    )


# ============================================================================
# Derived metrics
# ============================================================================

def compute_free_collateral(
    account: MarginfiAccount,
    margin_requirement: MarginRequirementType = MarginRequirementType.MAINTENANCE,
    clamped: bool = True,
) -> Decimal:
    """
    Assets minus liabilities from the cache.

    Args:
        account: Account snapshot
        margin_requirement: Regime (Maintenance by default; max-borrow uses Initial)
        clamped: Floor at zero. Pass False to detect an unhealthy account.
    """
    components = compute_health_components(account, margin_requirement)
    signed = components.assets - components.liabilities
    return max(ZERO, signed) if clamped else signed


def compute_free_collateral_legacy(
    balances: Sequence[Balance],
    bank_map: Mapping[str, Bank],
    oracle_prices: Mapping[str, OraclePrice],
    margin_requirement: MarginRequirementType = MarginRequirementType.MAINTENANCE,
    clamped: bool = True,
    asset_share_value_multipliers: Optional[Mapping[str, Decimal]] = None,
    emode_weights_by_bank: Optional[Mapping[str, EmodeWeights]] = None,
    excluded_banks: Sequence[Pubkey] = (),
) -> Decimal:
    components = compute_health_components_legacy(
        balances,
        bank_map,
        oracle_prices,
        margin_requirement,
        excluded_banks=excluded_banks,
        asset_share_value_multipliers=asset_share_value_multipliers,
        emode_weights_by_bank=emode_weights_by_bank,
    )
    signed = components.assets - components.liabilities
    return max(ZERO, signed) if clamped else signed


def compute_health_factor(components: HealthComponents) -> Decimal:
    """Assets over liabilities; Infinity when there is no debt."""
    if components.liabilities.is_zero():
        return INFINITE_HEALTH
    return FIXED_CONTEXT.divide(components.assets, components.liabilities)


def compute_account_value(account: MarginfiAccount) -> Decimal:
    """Equity-regime net value from the cache."""
    return compute_health_components(account, MarginRequirementType.EQUITY).net


def compute_net_apy(
    account: MarginfiAccount,
    bank_map: Mapping[str, Bank],
    oracle_prices: Mapping[str, OraclePrice],
    asset_share_value_multipliers: Optional[Mapping[str, Decimal]] = None,
    emode_weights_by_bank: Optional[Mapping[str, EmodeWeights]] = None,
) -> Decimal:
    """
    Net APY over account equity.

    Each balance contributes lending APR x deposit value minus borrowing APR
    x debt value (Equity regime, raw prices); the sum over equity is then
    compounded.
    """
    total_value = compute_account_value(account)
    denominator = total_value if not total_value.is_zero() else Decimal(1)

    weighted_apr = ZERO
    for balance in account.active_balances:
        bank_key = str(balance.bank_pk)
        bank = bank_map.get(bank_key)
        if bank is None:
            logger.warning(f"Bank {_short(bank_key)} not found, excluding from APY computation")
            continue
        oracle_price = oracle_prices.get(bank_key)
        if oracle_price is None:
            logger.warning(f"Price info for bank {_short(bank_key)} not found, excluding from APY computation")
            continue

        rates = compute_interest_rates(bank)
        value = compute_balance_usd_value(
            balance,
            bank,
            oracle_price,
            MarginRequirementType.EQUITY,
            asset_share_value_multiplier=(asset_share_value_multipliers or {}).get(bank_key),
            emode_weights=(emode_weights_by_bank or {}).get(bank_key),
            with_bias=False,
        )
        weighted_apr += (rates.lending_rate * value.assets - rates.borrowing_rate * value.liabilities) / denominator

    return apr_to_apy(weighted_apr)


def compute_liquidation_price_for_bank(
    account: MarginfiAccount,
    bank: Bank,
    oracle_price: OraclePrice,
    asset_share_value_multiplier: Optional[Decimal] = None,
    emode_weights: Optional[EmodeWeights] = None,
) -> Optional[Decimal]:
    """
    Price at which the account reaches the Maintenance threshold, holding
    every other position fixed.

    Returns:
        Liquidation price in USD, or None when the balance is inactive, a
        lending position has no debt against it, or the result is not a
        finite non-negative number
    """
    balance = account.get_balance(bank.address)
    if not balance.active:
        return None

    bank_value = compute_balance_usd_value(
        balance,
        bank,
        oracle_price,
        MarginRequirementType.MAINTENANCE,
        asset_share_value_multiplier=asset_share_value_multiplier,
        emode_weights=emode_weights,
        with_bias=False,
    )
    account_value = compute_health_components(account, MarginRequirementType.MAINTENANCE)
    assets = account_value.assets - bank_value.assets
    liabilities = account_value.liabilities - bank_value.liabilities

    quantity = compute_quantity_ui(balance, bank)
    is_lending = balance.liability_shares.is_zero()

    if is_lending:
        if liabilities.is_zero():
            return None
        weight = get_asset_weight(
            bank,
            MarginRequirementType.MAINTENANCE,
            oracle_price,
            asset_share_value_multiplier=asset_share_value_multiplier,
            emode_weights=emode_weights,
        )
        denominator = quantity.assets * weight
        confidence = get_price(oracle_price, PriceBias.NONE) - get_price(oracle_price, PriceBias.LOWEST)
        if denominator.is_zero():
            return None
        liquidation_price = (liabilities - assets) / denominator + confidence
    else:
        weight = get_liability_weight(bank.config, MarginRequirementType.MAINTENANCE)
        denominator = quantity.liabilities * weight
        confidence = get_price(oracle_price, PriceBias.HIGHEST) - get_price(oracle_price, PriceBias.NONE)
        if denominator.is_zero():
            return None
        liquidation_price = (assets - liabilities) / denominator - confidence

    if liquidation_price.is_nan() or liquidation_price.is_infinite() or liquidation_price < 0:
        return None
    return liquidation_price


# ============================================================================
# Emissions
# ============================================================================

def compute_claimed_emissions(balance: Balance, bank: Bank, current_timestamp: Numeric) -> Decimal:
    """Emissions accrued since the balance's last update, capped at what the bank has left."""
    if bank.emissions_active_lending:
        amount = get_asset_quantity(bank, balance.asset_shares)
    elif bank.emissions_active_borrowing:
        amount = get_liability_quantity(bank, balance.liability_shares)
    else:
        return ZERO

    period = to_decimal(current_timestamp) - balance.last_update
    emissions = period * amount * bank.emissions_rate / (SECONDS_PER_YEAR * Decimal(10) ** bank.mint_decimals)
    return min(emissions, bank.emissions_remaining)


def compute_total_outstanding_emissions(
    balance: Balance, bank: Bank, current_timestamp: Optional[Numeric] = None
) -> Decimal:
    if current_timestamp is None:
        current_timestamp = time.time()
    return balance.emissions_outstanding + compute_claimed_emissions(balance, bank, current_timestamp)


# ============================================================================
# Position helpers
# ============================================================================

def compute_close_position_token_amount(position_amount: Numeric, is_lending: bool, mint_decimals: int) -> Decimal:
    """Amount that closes a position: deposits floor, debts ceil at mint precision."""
    if is_lending:
        return floor_to(position_amount, mint_decimals)
    return ceil_to(position_amount, mint_decimals)


def is_whole_position(position_amount: Numeric, is_lending: bool, amount: Numeric, mint_decimals: int) -> bool:
    """True when `amount` covers the entire position."""
    return to_decimal(amount) >= compute_close_position_token_amount(position_amount, is_lending, mint_decimals)


def get_active_bank_keys(balances: Sequence[Balance]) -> List[str]:
    return [str(b.bank_pk) for b in balances if b.active]


def build_emode_weights_by_bank(
    bank_map: Mapping[str, Bank],
    collateral_banks: Sequence[Pubkey],
    weights: EmodeWeights,
) -> Dict[str, EmodeWeights]:
    """Map each collateral bank of an active e-mode pair to the pair's weights."""
    return {str(pk): weights for pk in collateral_banks if str(pk) in bank_map}
