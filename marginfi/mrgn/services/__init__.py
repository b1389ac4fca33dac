"""
Pure computations over a MarginFi snapshot.

- bank_compute: share conversions, interest rates, weights and USD values
- health: health components, free collateral, liquidation prices
- emode: emode pairing and impact analysis
- max_amounts: max borrow / withdraw for a bank
- projection: active banks after a batch of instructions
- crank: which oracles must be updated before an action
- simulation: on-chain health cache with a local fallback
"""

from .crank import OracleCrankProvider, SmartCrankResult, compute_smart_crank
from .health import (
    HealthComponents,
    compute_free_collateral,
    compute_health_cache_status,
    compute_health_components,
    compute_liquidation_price_for_bank,
)
from .max_amounts import compute_max_borrow_for_bank, compute_max_withdraw_for_bank
from .projection import compute_projected_active_balances, compute_projected_active_banks_no_cpi
from .simulation import FallbackHealth, SimulatedHealth, simulate_account_health_cache


__all__ = [
    "OracleCrankProvider",
    "SmartCrankResult",
    "compute_smart_crank",
    "HealthComponents",
    "compute_free_collateral",
    "compute_health_cache_status",
    "compute_health_components",
    "compute_liquidation_price_for_bank",
    "compute_max_borrow_for_bank",
    "compute_max_withdraw_for_bank",
    "compute_projected_active_balances",
    "compute_projected_active_banks_no_cpi",
    "FallbackHealth",
    "SimulatedHealth",
    "simulate_account_health_cache",
]
