"""
Bank model.

A Bank is an immutable snapshot of one lending pool: share values, totals,
risk configuration, emissions, e-mode settings and optional integration
accounts (Kamino, Drift, Solend). E-mode overrides produce a new Bank via
`with_asset_weights`; nothing mutates a snapshot in place.
"""

from dataclasses import dataclass, field, replace
from decimal import Decimal
from enum import IntEnum
from typing import Any, Dict, Optional, Tuple

from solders.pubkey import Pubkey

from ..core.constants import DEFAULT_PUBKEY
from ..core.fixed_point import ZERO
from .emode import EmodeSettings
from .oracle import OracleSetup


class MarginRequirementType(IntEnum):
    INITIAL = 0
    MAINTENANCE = 1
    EQUITY = 2


class RiskTier(IntEnum):
    COLLATERAL = 0
    ISOLATED = 1


class AssetTag(IntEnum):
    DEFAULT = 0
    SOL = 1
    STAKED = 2
    KAMINO = 3
    DRIFT = 4
    SOLEND = 5


class OperationalState(IntEnum):
    PAUSED = 0
    OPERATIONAL = 1
    REDUCE_ONLY = 2


@dataclass(frozen=True)
class InterestRateConfig:
    optimal_utilization_rate: Decimal
    plateau_interest_rate: Decimal
    max_interest_rate: Decimal
    insurance_fee_fixed_apr: Decimal = ZERO
    insurance_ir_fee: Decimal = ZERO
    protocol_fixed_fee_apr: Decimal = ZERO
    protocol_ir_fee: Decimal = ZERO
    protocol_origination_fee: Decimal = ZERO


@dataclass(frozen=True)
class BankConfig:
    """Risk and oracle configuration. Limits are in native units, value limit in USD."""
    asset_weight_init: Decimal
    asset_weight_maint: Decimal
    liability_weight_init: Decimal
    liability_weight_maint: Decimal
    deposit_limit: Decimal
    borrow_limit: Decimal
    interest_rate_config: InterestRateConfig
    oracle_setup: OracleSetup
    oracle_keys: Tuple[Pubkey, ...] = ()
    risk_tier: RiskTier = RiskTier.COLLATERAL
    asset_tag: AssetTag = AssetTag.DEFAULT
    operational_state: OperationalState = OperationalState.OPERATIONAL
    total_asset_value_init_limit: Decimal = ZERO
    oracle_max_age: int = 60
    oracle_max_confidence: Decimal = ZERO
    fixed_price: Optional[Decimal] = None


@dataclass(frozen=True)
class KaminoIntegrationAccounts:
    kamino_reserve: Pubkey
    kamino_obligation: Pubkey


@dataclass(frozen=True)
class DriftIntegrationAccounts:
    drift_spot_market: Pubkey
    drift_user: Pubkey
    drift_user_stats: Pubkey


@dataclass(frozen=True)
class SolendIntegrationAccounts:
    solend_reserve: Pubkey
    solend_obligation: Pubkey


@dataclass(frozen=True)
class Bank:
    address: Pubkey
    group: Pubkey
    mint: Pubkey
    mint_decimals: int
    asset_share_value: Decimal
    liability_share_value: Decimal
    total_asset_shares: Decimal
    total_liability_shares: Decimal
    config: BankConfig
    emissions_active_lending: bool = False
    emissions_active_borrowing: bool = False
    emissions_rate: Decimal = ZERO
    emissions_remaining: Decimal = ZERO
    emissions_mint: Pubkey = DEFAULT_PUBKEY
    emode: EmodeSettings = field(default_factory=EmodeSettings)
    kamino_integration_accounts: Optional[KaminoIntegrationAccounts] = None
    drift_integration_accounts: Optional[DriftIntegrationAccounts] = None
    solend_integration_accounts: Optional[SolendIntegrationAccounts] = None
    token_symbol: Optional[str] = None

    @property
    def key(self) -> str:
        """Map key used by bank/price snapshots."""
        return str(self.address)

    @property
    def oracle_key(self) -> Pubkey:
        """Primary oracle account; the default key when none is configured."""
        return self.config.oracle_keys[0] if self.config.oracle_keys else DEFAULT_PUBKEY

    @property
    def asset_tag(self) -> AssetTag:
        return self.config.asset_tag

    def with_asset_weights(self, asset_weight_init: Decimal, asset_weight_maint: Decimal) -> "Bank":
        """Return a copy with replaced asset weights."""
        return replace(
            self,
            config=replace(
                self.config,
                asset_weight_init=asset_weight_init,
                asset_weight_maint=asset_weight_maint,
            ),
        )

    def display_name(self) -> str:
        return self.token_symbol or str(self.address)


@dataclass(frozen=True)
class BankIntegrationMetadata:
    """
    Third-party state needed to build integration instructions.

    `kamino_states` is an integrations.solana.kamino.KaminoStates and
    `drift_states` an integrations.solana.drift.DriftStates.
    """
    kamino_states: Optional[Any] = None
    drift_states: Optional[Any] = None


BankMap = Dict[str, Bank]
BankIntegrationMetadataMap = Dict[str, BankIntegrationMetadata]
