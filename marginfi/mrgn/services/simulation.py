"""
Health cache simulation.

Reads a fresh health cache by simulating a small bundle against current
chain state:
- funding + integration refresh transaction
- optional oracle crank transaction
- health pulse transaction

The bundle is simulated, never sent. If the simulated cache reports an
error the account is revalued locally instead and the failure is returned
with it.
"""

import base64
import logging
from dataclasses import dataclass, replace
from decimal import Decimal
from typing import List, Mapping, Optional, Sequence, Union

from solders.address_lookup_table_account import AddressLookupTableAccount
from solders.hash import Hash
from solders.pubkey import Pubkey
from solders.system_program import TransferParams, transfer
from solders.transaction import VersionedTransaction

from integrations.solana.drift import make_update_drift_markets_ixs
from integrations.solana.kamino import make_refresh_kamino_banks_ixs

from ..core.constants import (
    HEALTH_CACHE_STALE_ORACLE_ERROR,
    MAX_SIMULATION_TRANSACTIONS,
    SIMULATION_COMPUTE_UNITS,
    SIMULATION_FUNDING_LAMPORTS,
    SIMULATION_FUNDING_WALLET,
)
from ..core.errors import HealthCacheSimulationError
from ..core.rpc import RpcClient
from ..logging_config import log_with_context
from ..models.account import MarginfiAccount
from ..models.bank import Bank, BankIntegrationMetadata, MarginRequirementType
from ..models.emode import EmodeWeights
from ..models.health_cache import HealthCacheStatus
from ..models.oracle import OraclePrice
from ..transactions.health_accounts import make_health_account_metas
from ..transactions.instructions import make_compute_budget_ixs, make_pulse_health_ix
from ..transactions.tx_size import compile_v0_transaction
from .crank import OracleCrankProvider, make_crank_swb_feed_ix
from .health import compute_health_cache_status, compute_health_components_without_bias

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SimulatedHealth:
    """Health cache read back from a successful simulation."""
    account: MarginfiAccount


@dataclass(frozen=True)
class FallbackHealth:
    """Locally computed health cache, with the reason simulation was not used."""
    account: MarginfiAccount
    error: HealthCacheSimulationError


HealthSimulationResult = Union[SimulatedHealth, FallbackHealth]


async def get_health_simulation_transactions(
    account: MarginfiAccount,
    bank_map: Mapping[str, Bank],
    projected_active_banks: Sequence[Pubkey],
    program_id: Pubkey,
    blockhash: Hash,
    metadata_map: Optional[Mapping[str, BankIntegrationMetadata]] = None,
    crank_provider: Optional[OracleCrankProvider] = None,
    lookup_tables: Sequence[AddressLookupTableAccount] = (),
    include_crank_tx: bool = True,
) -> List[VersionedTransaction]:
    """
    Build the bundle that refreshes and pulses the account's health cache.

    Args:
        account: Account to pulse
        bank_map: Banks keyed by address string
        projected_active_banks: Banks active once the pending action lands;
            banks it drops are excluded and banks it opens are mandatory
        program_id: marginfi program
        blockhash: Recent blockhash (replaced by the simulator)
        metadata_map: Kamino / Drift state per bank
        crank_provider: Builds oracle updates; no crank transaction without one
        lookup_tables: Lookup tables to compile against
        include_crank_tx: Set False to skip oracle cranking

    Returns:
        refresh transaction, optional crank transaction, health transaction

    Raises:
        ValueError: If the bundle would exceed MAX_SIMULATION_TRANSACTIONS
    """
    metadata_map = metadata_map or {}
    active = [b.bank_pk for b in account.active_balances]
    active_keys = {str(pk) for pk in active}
    projected_keys = {str(pk) for pk in projected_active_banks}

    excluded = [pk for pk in active if str(pk) not in projected_keys]
    mandatory = [pk for pk in projected_active_banks if str(pk) not in active_keys]

    fund_ix = transfer(
        TransferParams(
            from_pubkey=SIMULATION_FUNDING_WALLET,
            to_pubkey=account.authority,
            lamports=SIMULATION_FUNDING_LAMPORTS,
        )
    )
    refresh_ixs = (
        make_compute_budget_ixs(SIMULATION_COMPUTE_UNITS)
        + [fund_ix]
        + make_refresh_kamino_banks_ixs(account.balances, bank_map, mandatory, metadata_map)
        + make_update_drift_markets_ixs(account.balances, bank_map, [], metadata_map)
    )

    pulse_ix = make_pulse_health_ix(
        program_id,
        account.address,
        make_health_account_metas(account.balances, bank_map, mandatory, excluded),
    )
    health_ixs = make_compute_budget_ixs(SIMULATION_COMPUTE_UNITS) + [pulse_ix]

    transactions = [compile_v0_transaction(account.authority, refresh_ixs, blockhash, lookup_tables)]

    if include_crank_tx:
        crank = await make_crank_swb_feed_ix(account.balances, bank_map, mandatory, account.authority, crank_provider)
        if crank.instructions:
            transactions.append(
                compile_v0_transaction(
                    account.authority,
                    crank.instructions,
                    blockhash,
                    list(lookup_tables) + list(crank.lookup_tables),
                )
            )

    transactions.append(compile_v0_transaction(account.authority, health_ixs, blockhash, lookup_tables))

    if len(transactions) > MAX_SIMULATION_TRANSACTIONS:
        raise ValueError(
            f"Health simulation needs {len(transactions)} transactions, max is {MAX_SIMULATION_TRANSACTIONS}"
        )
    return transactions


def _decode_post_state(account: MarginfiAccount, results: Sequence[dict]) -> MarginfiAccount:
    for result in results:
        for entry in result.get("postExecutionAccounts") or []:
            if entry and entry.get("data"):
                return MarginfiAccount.decode(account.address, _account_bytes(entry["data"]))
    raise HealthCacheSimulationError("Account not found")


def _account_bytes(data) -> bytes:
    # RPC returns [base64, "base64"]
    payload = data[0] if isinstance(data, (list, tuple)) else data
    return base64.b64decode(payload)


def check_simulated_cache(account: MarginfiAccount) -> None:
    """
    Raise unless the simulated cache can be trusted.

    A stale-oracle error (6009) is accepted when all six values are
    populated; the engine still valued every position in that case.

    Raises:
        HealthCacheSimulationError: Any other program or engine error
    """
    cache = account.health_cache
    if not cache.has_error:
        return

    if cache.mrgn_err == HEALTH_CACHE_STALE_ORACLE_ERROR and cache.all_values_nonzero():
        logger.warning(f"Accepting health cache with stale oracle error for account {account.address}")
        return

    raise HealthCacheSimulationError(
        "Account health cache simulation failed",
        mrgn_err=cache.mrgn_err,
        internal_err=cache.internal_err,
    )


async def simulate_account_health_cache(
    rpc: RpcClient,
    account: MarginfiAccount,
    bank_map: Mapping[str, Bank],
    oracle_prices: Mapping[str, OraclePrice],
    program_id: Pubkey,
    metadata_map: Optional[Mapping[str, BankIntegrationMetadata]] = None,
    crank_provider: Optional[OracleCrankProvider] = None,
    lookup_tables: Sequence[AddressLookupTableAccount] = (),
    asset_share_value_multipliers: Optional[Mapping[str, Decimal]] = None,
    emode_weights_by_bank: Optional[Mapping[str, EmodeWeights]] = None,
) -> HealthSimulationResult:
    """
    Refresh the account's health cache by simulation, falling back to local math.

    Equity values always come from the unbiased local computation, the
    program does not track them the same way.

    Returns:
        SimulatedHealth on success, FallbackHealth with the failure otherwise
    """
    equity = compute_health_components_without_bias(
        account.balances,
        bank_map,
        oracle_prices,
        MarginRequirementType.EQUITY,
        asset_share_value_multipliers=asset_share_value_multipliers,
        emode_weights_by_bank=emode_weights_by_bank,
    )

    try:
        blockhash = await rpc.get_latest_blockhash()
        transactions = await get_health_simulation_transactions(
            account,
            bank_map,
            [b.bank_pk for b in account.active_balances],
            program_id,
            blockhash,
            metadata_map=metadata_map,
            crank_provider=crank_provider,
            lookup_tables=lookup_tables,
        )
        results = await rpc.simulate_bundle(transactions, [account.address])
        simulated = _decode_post_state(account, results)
        check_simulated_cache(simulated)

        cache = replace(
            simulated.health_cache,
            asset_value_equity=equity.assets,
            liability_value_equity=equity.liabilities,
            simulation_status=HealthCacheStatus.SIMULATED,
        )
        logger.info(f"Simulated health cache for account {account.address}")
        return SimulatedHealth(account=simulated.with_health_cache(cache))

    except Exception as e:
        error = e if isinstance(e, HealthCacheSimulationError) else HealthCacheSimulationError(str(e))
        log_with_context(
            logger,
            logging.WARNING,
            f"Health simulation failed for account {account.address}, computing locally: {error}",
            mrgn_err=error.mrgn_err,
            internal_err=error.internal_err,
        )

        cache = compute_health_cache_status(
            account.balances,
            bank_map,
            oracle_prices,
            asset_share_value_multipliers=asset_share_value_multipliers,
            emode_weights_by_bank=emode_weights_by_bank,
        )
        return FallbackHealth(account=account.with_health_cache(cache), error=error)
