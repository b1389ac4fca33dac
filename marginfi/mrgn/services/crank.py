"""
Oracle crank selection.

Switchboard pull feeds are only fresh when the client cranks them in the
same bundle. This module decides which feeds a transaction needs:
- no liabilities after the transaction: nothing to crank
- every liability feed must be crankable, otherwise the action is blocked
- asset feeds are cranked only as far as needed to keep Initial health
  positive, preferring the fewest cranks and then the best health

Building the actual feed-update instructions is delegated to an
OracleCrankProvider.
"""

import itertools
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, List, Mapping, Optional, Sequence

from solders.address_lookup_table_account import AddressLookupTableAccount
from solders.instruction import Instruction
from solders.pubkey import Pubkey

from integrations.solana.switchboard import CrankabilityResult, SwitchboardCrossbarClient, check_crankability, fetch_feed_hashes

from ..core.constants import ZERO_ORACLE_KEY
from ..core.errors import TransactionBuildingError
from ..core.rpc import RpcClient
from ..models.account import MarginfiAccount
from ..models.balance import Balance
from ..models.bank import Bank, MarginRequirementType
from ..models.oracle import SWITCHBOARD_PULL_SETUPS, OraclePrice
from .health import compute_asset_health_component, compute_liability_health_component
from .projection import compute_projected_active_balances

logger = logging.getLogger(__name__)


@dataclass
class CrankInstructions:
    instructions: List[Instruction] = field(default_factory=list)
    lookup_tables: List[AddressLookupTableAccount] = field(default_factory=list)


class OracleCrankProvider(ABC):
    """Builds the instructions that push fresh values into pull feeds."""

    @abstractmethod
    async def make_update_feed_ixs(self, oracle_keys: Sequence[Pubkey], fee_payer: Pubkey) -> CrankInstructions:
        """
        Feed-update instructions for `oracle_keys`.

        Args:
            oracle_keys: Deduplicated pull feed accounts
            fee_payer: Wallet paying for the update
        """


@dataclass
class UncrankableBank:
    bank: Bank
    reason: Optional[str]


@dataclass
class SmartCrankResult:
    required_oracles: List[Pubkey]
    uncrankable_liabilities: List[UncrankableBank]
    uncrankable_assets: List[UncrankableBank]
    is_crankable: bool


def is_switchboard_pull(bank: Bank) -> bool:
    return bank.config.oracle_setup in SWITCHBOARD_PULL_SETUPS


def _unique_oracles(banks: Sequence[Bank]) -> List[Pubkey]:
    seen: Dict[str, Pubkey] = {}
    for bank in banks:
        seen.setdefault(str(bank.oracle_key), bank.oracle_key)
    return list(seen.values())


async def _resolve_crankability(
    banks: Sequence[Bank],
    oracle_prices: Mapping[str, OraclePrice],
    rpc: Optional[RpcClient],
    crossbar: Optional[SwitchboardCrossbarClient],
) -> Dict[str, CrankabilityResult]:
    hashes: Dict[str, Optional[str]] = {}
    missing: List[Pubkey] = []
    for bank in banks:
        price = oracle_prices.get(bank.key)
        feed_hash = price.feed_hash if price else None
        hashes[str(bank.oracle_key)] = feed_hash
        if not feed_hash:
            missing.append(bank.oracle_key)

    if missing and rpc is not None:
        fetched = await fetch_feed_hashes(rpc, missing)
        hashes.update(fetched)

    return check_crankability(crossbar, hashes)


async def compute_smart_crank(
    account: MarginfiAccount,
    bank_map: Mapping[str, Bank],
    oracle_prices: Mapping[str, OraclePrice],
    instructions: Sequence[Instruction],
    program_id: Pubkey,
    rpc: Optional[RpcClient] = None,
    crossbar: Optional[SwitchboardCrossbarClient] = None,
) -> SmartCrankResult:
    """
    Pick the pull feeds a transaction needs cranked.

    Args:
        account: Account before the transaction
        bank_map: Banks keyed by address string
        oracle_prices: Prices keyed by bank address string
        instructions: The transaction's instructions, used to project balances
        program_id: marginfi program
        rpc: Used to read feed hashes that are not in `oracle_prices`
        crossbar: Crankability checker; None assumes every known feed is crankable

    Returns:
        SmartCrankResult; `is_crankable` is False when the action cannot
        pass its health check whatever gets cranked
    """
    projected = compute_projected_active_balances(account.balances, instructions, program_id, bank_map)
    balances: List[Balance] = projected.balances

    def banks_of(selected: Sequence[Balance]) -> List[Bank]:
        return [bank_map[str(b.bank_pk)] for b in selected if str(b.bank_pk) in bank_map]

    liability_banks = banks_of([b for b in balances if b.active and b.liability_shares > 0])
    asset_banks = banks_of([b for b in balances if b.active and b.asset_shares > 0])

    if not liability_banks:
        return SmartCrankResult([], [], [], True)

    swb_banks = [bank for bank in liability_banks + asset_banks if is_switchboard_pull(bank)]
    if not swb_banks:
        return SmartCrankResult([], [], [], True)

    crankability = await _resolve_crankability(swb_banks, oracle_prices, rpc, crossbar)

    crankable_keys = {k for k, result in crankability.items() if result.crankable}
    liability_keys = {bank.key for bank in liability_banks}
    asset_keys = {bank.key for bank in asset_banks}

    uncrankable_liabilities = []
    uncrankable_assets = []
    for bank in swb_banks:
        result = crankability.get(str(bank.oracle_key))
        if result is not None and result.crankable:
            continue
        entry = UncrankableBank(bank=bank, reason=result.reason if result else "Feed not checked")
        if bank.key in liability_keys:
            uncrankable_liabilities.append(entry)
        elif bank.key in asset_keys:
            uncrankable_assets.append(entry)

    if uncrankable_liabilities:
        logger.warning(
            f"Uncrankable liabilities: {[u.bank.display_name() for u in uncrankable_liabilities]}"
        )
        return SmartCrankResult([], uncrankable_liabilities, uncrankable_assets, False)

    liabilities_init = compute_liability_health_component(
        balances, bank_map, oracle_prices, [b.address for b in liability_banks], MarginRequirementType.INITIAL
    )

    def asset_health(banks: Sequence[Bank]) -> Decimal:
        return compute_asset_health_component(
            balances, bank_map, oracle_prices, [b.address for b in banks], MarginRequirementType.INITIAL
        ) - liabilities_init

    swb_liabilities = [bank for bank in liability_banks if is_switchboard_pull(bank)]
    non_swb_assets = [bank for bank in asset_banks if not is_switchboard_pull(bank)]
    swb_assets = [bank for bank in asset_banks if is_switchboard_pull(bank)]
    crankable_swb_assets = [bank for bank in swb_assets if str(bank.oracle_key) in crankable_keys]

    # Pyth-priced collateral alone covers the debt
    if non_swb_assets and asset_health(non_swb_assets) > 0:
        logger.info("Non-Switchboard assets cover liabilities, cranking liability feeds only")
        return SmartCrankResult(_unique_oracles(swb_liabilities), [], uncrankable_assets, True)

    available_assets = non_swb_assets + crankable_swb_assets
    health_with_all = asset_health(available_assets)

    if not health_with_all > 0:
        if uncrankable_assets:
            logger.warning("Assets do not cover liabilities and some asset feeds cannot be cranked")
            return SmartCrankResult([], [], uncrankable_assets, False)
        logger.error("Assets do not cover liabilities even with every feed cranked, cranking all feeds")
        return SmartCrankResult(_unique_oracles(swb_banks), [], [], True)

    crankable_banks = [bank for bank in swb_banks if str(bank.oracle_key) in crankable_keys]
    combinations = [(_unique_oracles(crankable_banks), health_with_all)]

    liability_oracles = {str(bank.oracle_key) for bank in liability_banks}
    for size in range(1, len(crankable_swb_assets)):
        for combo in itertools.combinations(crankable_swb_assets, size):
            health = asset_health(non_swb_assets + list(combo))
            if not health > 0:
                continue
            additional = [bank for bank in combo if str(bank.oracle_key) not in liability_oracles]
            combinations.append((_unique_oracles(swb_liabilities + additional), health))

    combinations.sort(key=lambda c: (len(c[0]), -c[1]))
    required, _ = combinations[0]
    return SmartCrankResult(required, [], uncrankable_assets, True)


async def make_smart_crank_swb_feed_ix(
    account: MarginfiAccount,
    bank_map: Mapping[str, Bank],
    oracle_prices: Mapping[str, OraclePrice],
    instructions: Sequence[Instruction],
    program_id: Pubkey,
    crank_provider: Optional[OracleCrankProvider] = None,
    rpc: Optional[RpcClient] = None,
    crossbar: Optional[SwitchboardCrossbarClient] = None,
) -> CrankInstructions:
    """
    Crank instructions for the feeds `instructions` depend on.

    Raises:
        TransactionBuildingError: ORACLE_CRANK_FAILED when a liability feed
            (or a needed asset feed) cannot be cranked
    """
    result = await compute_smart_crank(account, bank_map, oracle_prices, instructions, program_id, rpc, crossbar)

    if not result.is_crankable:
        raise TransactionBuildingError.oracle_crank_failed(
            [(u.bank.key, u.bank.token_symbol) for u in result.uncrankable_liabilities],
            [(u.bank.key, u.bank.token_symbol) for u in result.uncrankable_assets],
        )

    if not result.required_oracles:
        return CrankInstructions()

    if crank_provider is None:
        logger.warning(f"{len(result.required_oracles)} feeds need cranking but no crank provider is configured")
        return CrankInstructions()

    return await crank_provider.make_update_feed_ixs(result.required_oracles, account.authority)


async def make_crank_swb_feed_ix(
    balances: Sequence[Balance],
    bank_map: Mapping[str, Bank],
    new_banks: Sequence[Pubkey],
    fee_payer: Pubkey,
    crank_provider: Optional[OracleCrankProvider],
) -> CrankInstructions:
    """Crank every pull feed among held and newly opened banks (simulation path)."""
    keys: Dict[str, None] = {}
    for balance in balances:
        if balance.active:
            keys[str(balance.bank_pk)] = None
    for pk in new_banks:
        keys[str(pk)] = None

    banks = [bank_map[key] for key in keys if key in bank_map and is_switchboard_pull(bank_map[key])]
    oracles = [pk for pk in _unique_oracles(banks) if pk != ZERO_ORACLE_KEY]

    if not oracles or crank_provider is None:
        return CrankInstructions()
    return await crank_provider.make_update_feed_ixs(oracles, fee_payer)


__all__ = [
    "CrankInstructions",
    "OracleCrankProvider",
    "SmartCrankResult",
    "UncrankableBank",
    "compute_smart_crank",
    "is_switchboard_pull",
    "make_crank_swb_feed_ix",
    "make_smart_crank_swb_feed_ix",
]
