"""
Max borrow / max withdraw.

Both solve against Initial-regime free collateral:
- borrow: collateral already deposited in the target bank is released at its
  own (low-bias, asset-weighted) price; the rest of the free collateral funds
  new debt at the high-bias, liability-weighted price
- withdraw: the largest amount that keeps Initial health non-negative, with
  special cases for isolated and retiring (zero init weight) banks

Caveat: neither accounts for collateral a liquidator would receive
mid-liquidation.
"""

import logging
from decimal import Decimal
from typing import Dict, Mapping, Optional

from solders.pubkey import Pubkey

from ..core.errors import DataNotFound
from ..core.fixed_point import ZERO, Numeric, checked_div, to_decimal
from ..models.account import MarginfiAccount
from ..models.bank import Bank, MarginRequirementType, RiskTier
from ..models.emode import ActiveEmodePair, EmodeImpactStatus
from ..models.oracle import OraclePrice, PriceBias, get_price
from .bank_compute import compute_asset_usd_value, get_asset_weight, get_liability_weight
from .emode import apply_emode_weights
from .health import compute_free_collateral, compute_free_collateral_legacy, compute_health_components, compute_quantity_ui

logger = logging.getLogger(__name__)


def _effective_banks(bank_map: Mapping[str, Bank], active_pair: Optional[ActiveEmodePair]) -> Dict[str, Bank]:
    if active_pair is None:
        return dict(bank_map)
    return {key: apply_emode_weights(bank, active_pair) for key, bank in bank_map.items()}


def _lookup(
    banks: Mapping[str, Bank], oracle_prices: Mapping[str, OraclePrice], bank_address: Pubkey
):
    key = str(bank_address)
    bank = banks.get(key)
    if bank is None:
        raise DataNotFound(f"Bank {key} not found", kind="bank", key=key)
    price = oracle_prices.get(key)
    if price is None:
        raise DataNotFound(f"Price info for {key} not found", kind="oracle_price", key=key)
    return bank, price


def compute_max_borrow_for_bank(
    account: MarginfiAccount,
    bank_map: Mapping[str, Bank],
    oracle_prices: Mapping[str, OraclePrice],
    bank_address: Pubkey,
    emode_impact_status: Optional[EmodeImpactStatus] = None,
    volatility_factor: Numeric = 1,
    active_pair: Optional[ActiveEmodePair] = None,
) -> Decimal:
    """
    Largest UI amount of `bank_address` the account can borrow.

    Args:
        account: Account snapshot
        bank_map: Banks keyed by address string
        oracle_prices: Prices keyed by bank address string
        bank_address: Bank to borrow from
        emode_impact_status: Impact of this borrow on e-mode. When the borrow
            leaves e-mode unchanged (INACTIVE/EXTEND) the cached free
            collateral is used; otherwise it is recomputed from balances.
        volatility_factor: Fraction of free collateral to use (<= 1)
        active_pair: E-mode pair whose weights apply to collateral banks

    Returns:
        Max borrow in UI units (0 when isolated-tier rules forbid it)

    Raises:
        DataNotFound: If the bank or its price is missing
    """
    banks = _effective_banks(bank_map, active_pair)
    bank, oracle_price = _lookup(banks, oracle_prices, bank_address)
    active_balances = account.active_balances

    has_other_liabilities = any(
        b.liability_shares > 0 and b.bank_pk != bank_address for b in active_balances
    )
    if bank.config.risk_tier == RiskTier.ISOLATED and has_other_liabilities:
        return ZERO

    for b in active_balances:
        if b.liability_shares > 0 and b.bank_pk != bank_address:
            liability_bank = banks.get(str(b.bank_pk))
            if liability_bank is not None and liability_bank.config.risk_tier == RiskTier.ISOLATED:
                return ZERO

    volatility_factor = to_decimal(volatility_factor)
    balance = account.get_balance(bank_address)

    use_cache = emode_impact_status in (EmodeImpactStatus.INACTIVE_EMODE, EmodeImpactStatus.EXTEND_EMODE)
    if use_cache:
        free_collateral = compute_free_collateral(account, MarginRequirementType.INITIAL)
    else:
        free_collateral = compute_free_collateral_legacy(
            active_balances, banks, oracle_prices, MarginRequirementType.INITIAL
        )
    free_collateral = free_collateral * volatility_factor

    untied_collateral = min(
        compute_asset_usd_value(
            bank, oracle_price, balance.asset_shares, MarginRequirementType.INITIAL, PriceBias.LOWEST
        ),
        free_collateral,
    )

    price_low = get_price(oracle_price, PriceBias.LOWEST, weighted=True)
    price_high = get_price(oracle_price, PriceBias.HIGHEST, weighted=True)
    asset_weight = get_asset_weight(bank, MarginRequirementType.INITIAL, oracle_price)
    liability_weight = get_liability_weight(bank.config, MarginRequirementType.INITIAL)

    new_debt = checked_div(free_collateral - untied_collateral, price_high * liability_weight)
    if asset_weight.is_zero():
        return compute_quantity_ui(balance, bank).assets + new_debt
    return checked_div(untied_collateral, price_low * asset_weight) + new_debt


def compute_max_withdraw_for_bank(
    account: MarginfiAccount,
    bank_map: Mapping[str, Bank],
    oracle_prices: Mapping[str, OraclePrice],
    bank_address: Pubkey,
    volatility_factor: Numeric = 1,
    active_pair: Optional[ActiveEmodePair] = None,
) -> Decimal:
    """
    Largest UI amount of `bank_address` the account can withdraw.

    Raises:
        DataNotFound: If the bank or its price is missing
    """
    banks = _effective_banks(bank_map, active_pair)
    bank, oracle_price = _lookup(banks, oracle_prices, bank_address)
    volatility_factor = to_decimal(volatility_factor)

    init_weight = get_asset_weight(bank, MarginRequirementType.INITIAL, oracle_price)
    maint_weight = get_asset_weight(bank, MarginRequirementType.MAINTENANCE, oracle_price)
    active_balances = account.active_balances
    balance = account.get_balance(bank_address)

    if active_pair is not None:
        free_collateral = compute_free_collateral_legacy(
            active_balances, banks, oracle_prices, MarginRequirementType.INITIAL
        )
    else:
        free_collateral = compute_free_collateral(account, MarginRequirementType.INITIAL)

    init_collateral_for_bank = compute_asset_usd_value(
        bank, oracle_price, balance.asset_shares, MarginRequirementType.INITIAL, PriceBias.LOWEST
    )
    entire_balance = compute_quantity_ui(balance, bank).assets
    liabilities_init = compute_health_components(account, MarginRequirementType.INITIAL).liabilities

    # Isolated or zero-weight collateral does not back any debt
    if bank.config.risk_tier == RiskTier.ISOLATED or (init_weight.is_zero() and maint_weight.is_zero()):
        if free_collateral.is_zero() and not liabilities_init.is_zero():
            return ZERO
        return entire_balance

    # Collateral being retired: only the Maintenance cushion can be released
    if init_weight.is_zero():
        if liabilities_init.is_zero():
            return entire_balance
        if free_collateral.is_zero():
            return ZERO
        maint = compute_health_components(account, MarginRequirementType.MAINTENANCE)
        price_low = get_price(oracle_price, PriceBias.LOWEST, weighted=True)
        return checked_div(maint.assets - maint.liabilities, price_low * maint_weight)

    if liabilities_init.is_zero() or init_collateral_for_bank <= free_collateral:
        return entire_balance

    price_low = get_price(oracle_price, PriceBias.LOWEST, weighted=True)
    return checked_div(free_collateral * volatility_factor, price_low * init_weight)
