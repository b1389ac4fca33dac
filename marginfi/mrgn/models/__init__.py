"""
Snapshot models: banks, balances, oracle prices, health cache, accounts and e-mode.
"""

from .account import MarginfiAccount
from .balance import Balance
from .bank import (
    AssetTag,
    Bank,
    BankConfig,
    BankIntegrationMetadata,
    DriftIntegrationAccounts,
    InterestRateConfig,
    KaminoIntegrationAccounts,
    MarginRequirementType,
    OperationalState,
    RiskTier,
    SolendIntegrationAccounts,
)
from .emode import (
    ActionEmodeImpact,
    ActiveEmodePair,
    EmodeEntry,
    EmodeImpact,
    EmodeImpactStatus,
    EmodePair,
    EmodeSettings,
    EmodeWeights,
)
from .health_cache import HealthCache, HealthCacheFlags, HealthCacheStatus
from .oracle import OraclePrice, OracleSetup, PriceBias, PriceWithConfidence, build_oracle_price, get_price


__all__ = [
    "MarginfiAccount",
    "Balance",
    "AssetTag",
    "Bank",
    "BankConfig",
    "BankIntegrationMetadata",
    "DriftIntegrationAccounts",
    "InterestRateConfig",
    "KaminoIntegrationAccounts",
    "MarginRequirementType",
    "OperationalState",
    "RiskTier",
    "SolendIntegrationAccounts",
    "ActionEmodeImpact",
    "ActiveEmodePair",
    "EmodeEntry",
    "EmodeImpact",
    "EmodeImpactStatus",
    "EmodePair",
    "EmodeSettings",
    "EmodeWeights",
    "HealthCache",
    "HealthCacheFlags",
    "HealthCacheStatus",
    "OraclePrice",
    "OracleSetup",
    "PriceBias",
    "PriceWithConfidence",
    "build_oracle_price",
    "get_price",
]
