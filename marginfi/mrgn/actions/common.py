"""
Shared pieces for the action builders.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, List, Mapping, Optional, Sequence

from solders.address_lookup_table_account import AddressLookupTableAccount
from solders.hash import Hash
from solders.instruction import AccountMeta, Instruction
from solders.keypair import Keypair
from solders.pubkey import Pubkey

from integrations.solana.drift import DriftStates, get_drift_ctoken_multiplier
from integrations.solana.kamino import KaminoStates, get_kamino_ctoken_multiplier
from integrations.solana.switchboard import SwitchboardCrossbarClient

from ..core.constants import TOKEN_PROGRAM_ID
from ..core.errors import DataNotFound, InvalidAmountError, TransactionBuildingError
from ..core.fixed_point import ONE, Numeric, to_decimal
from ..core.rpc import RpcClient
from ..models.account import MarginfiAccount
from ..models.bank import AssetTag, Bank, BankIntegrationMetadata
from ..models.oracle import OraclePrice
from ..services.crank import OracleCrankProvider, make_smart_crank_swb_feed_ix
from ..transactions.pda import get_associated_token_address
from ..transactions.tokens import is_token_2022
from ..transactions.tx_size import compile_v0_transaction
from ..transactions.types import PreparedTransaction, TransactionType


@dataclass(frozen=True)
class AccountOverrides:
    """
    Accounts supplied by the caller instead of being derived.

    Composers building inner instructions pass the addresses they already
    resolved; tests use them to pin accounts.
    """
    authority: Optional[Pubkey] = None
    group: Optional[Pubkey] = None
    liquidity_vault: Optional[Pubkey] = None
    token_account: Optional[Pubkey] = None


NO_OVERRIDES = AccountOverrides()


def require_positive(amount: Numeric, action: str) -> Decimal:
    """
    Raises:
        InvalidAmountError: If amount is zero or negative
    """
    value = to_decimal(amount)
    if value <= 0:
        raise InvalidAmountError(f"{action} amount must be positive, got {value}")
    return value


def user_token_account(
    authority: Pubkey,
    bank: Bank,
    token_program: Pubkey,
    overrides: AccountOverrides,
) -> Pubkey:
    if overrides.token_account is not None:
        return overrides.token_account
    return get_associated_token_address(authority, bank.mint, token_program)


def mint_remaining_accounts(bank: Bank, token_program: Pubkey) -> List[AccountMeta]:
    """Token-2022 transfers need the mint passed along."""
    if is_token_2022(token_program):
        return [AccountMeta(pubkey=bank.mint, is_signer=False, is_writable=False)]
    return []


def require_kamino_states(
    bank: Bank,
    metadata_map: Optional[Mapping[str, BankIntegrationMetadata]],
) -> KaminoStates:
    """
    Raises:
        TransactionBuildingError: KAMINO_RESERVE_NOT_FOUND
    """
    metadata = (metadata_map or {}).get(bank.key)
    if metadata is None or metadata.kamino_states is None or bank.kamino_integration_accounts is None:
        raise TransactionBuildingError.kamino_reserve_not_found(bank.key, str(bank.mint), bank.token_symbol)
    return metadata.kamino_states


def require_drift_states(
    bank: Bank,
    metadata_map: Optional[Mapping[str, BankIntegrationMetadata]],
) -> DriftStates:
    """
    Raises:
        TransactionBuildingError: DRIFT_STATE_NOT_FOUND
    """
    metadata = (metadata_map or {}).get(bank.key)
    if metadata is None or metadata.drift_states is None or bank.drift_integration_accounts is None:
        raise TransactionBuildingError.drift_state_not_found(bank.key, str(bank.mint), bank.token_symbol)
    return metadata.drift_states


def get_asset_share_value_multiplier(
    bank: Bank,
    metadata_map: Optional[Mapping[str, BankIntegrationMetadata]],
) -> Decimal:
    """Underlying tokens per unit of the bank's collateral; 1 for plain banks."""
    metadata = (metadata_map or {}).get(bank.key)
    if bank.asset_tag == AssetTag.KAMINO and metadata and metadata.kamino_states:
        return get_kamino_ctoken_multiplier(metadata.kamino_states.reserve_state)
    if bank.asset_tag == AssetTag.DRIFT and metadata and metadata.drift_states:
        return get_drift_ctoken_multiplier(metadata.drift_states.spot_market_state)
    return ONE


def get_asset_share_value_multipliers(
    bank_map: Mapping[str, Bank],
    metadata_map: Optional[Mapping[str, BankIntegrationMetadata]],
) -> Dict[str, Decimal]:
    """Multipliers for every integration bank with known state."""
    return {
        key: get_asset_share_value_multiplier(bank, metadata_map)
        for key, bank in bank_map.items()
        if bank.asset_tag in (AssetTag.KAMINO, AssetTag.DRIFT)
    }


@dataclass(frozen=True)
class ActionContext:
    """
    Snapshot and collaborators an action builder works against.

    Nothing here is mutated; refresh the client snapshot and build a new
    context to pick up chain changes.
    """
    program_id: Pubkey
    group: Pubkey
    bank_map: Mapping[str, Bank]
    oracle_prices: Mapping[str, OraclePrice]
    metadata_map: Mapping[str, BankIntegrationMetadata] = field(default_factory=dict)
    mint_token_programs: Mapping[str, Pubkey] = field(default_factory=dict)
    lookup_tables: Sequence[AddressLookupTableAccount] = ()
    rpc: Optional[RpcClient] = None
    crank_provider: Optional[OracleCrankProvider] = None
    crossbar: Optional[SwitchboardCrossbarClient] = None
    blockhash: Optional[Hash] = None

    def token_program(self, bank: Bank) -> Pubkey:
        return self.mint_token_programs.get(str(bank.mint), TOKEN_PROGRAM_ID)

    def bank(self, bank_pk: Pubkey) -> Bank:
        """
        Raises:
            DataNotFound: If the bank is not in the snapshot
        """
        bank = self.bank_map.get(str(bank_pk))
        if bank is None:
            raise DataNotFound(f"Bank {bank_pk} not found", kind="bank", key=str(bank_pk))
        return bank

    @property
    def multipliers(self) -> Dict[str, Decimal]:
        return get_asset_share_value_multipliers(self.bank_map, self.metadata_map)

    async def get_blockhash(self) -> Hash:
        if self.blockhash is not None:
            return self.blockhash
        if self.rpc is None:
            raise ValueError("Either a blockhash or an RPC client is required")
        return await self.rpc.get_latest_blockhash()


async def prepare_transaction(
    ctx: ActionContext,
    payer: Pubkey,
    instructions: Sequence[Instruction],
    tx_type: TransactionType,
    extra_lookup_tables: Sequence[AddressLookupTableAccount] = (),
    signers: Sequence[Keypair] = (),
    description: Optional[str] = None,
) -> PreparedTransaction:
    lookup_tables = list(ctx.lookup_tables) + list(extra_lookup_tables)
    blockhash = await ctx.get_blockhash()
    return PreparedTransaction(
        transaction=compile_v0_transaction(payer, instructions, blockhash, lookup_tables),
        type=tx_type,
        signers=tuple(signers),
        lookup_tables=tuple(lookup_tables),
        description=description,
    )


async def make_crank_transactions(
    ctx: ActionContext,
    account: MarginfiAccount,
    action_ixs: Sequence[Instruction],
) -> List[PreparedTransaction]:
    """
    Oracle crank transaction for `action_ixs`, or nothing when no feed needs it.

    Raises:
        TransactionBuildingError: ORACLE_CRANK_FAILED
    """
    crank = await make_smart_crank_swb_feed_ix(
        account,
        ctx.bank_map,
        ctx.oracle_prices,
        action_ixs,
        ctx.program_id,
        crank_provider=ctx.crank_provider,
        rpc=ctx.rpc,
        crossbar=ctx.crossbar,
    )
    if not crank.instructions:
        return []
    tx = await prepare_transaction(
        ctx,
        account.authority,
        crank.instructions,
        TransactionType.CRANK,
        extra_lookup_tables=crank.lookup_tables,
        description="Refresh oracle feeds",
    )
    return [tx]
