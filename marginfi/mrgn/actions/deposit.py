"""
Deposit builders.

One builder per bank asset tag:
- default / SOL / staked banks deposit into the bank's liquidity vault
- Kamino banks route the deposit through the klend reserve
- Drift banks route it through the Drift spot market
"""

import logging
from decimal import Decimal
from typing import Callable, Dict, Mapping, Optional

from solders.pubkey import Pubkey

from integrations.solana.drift import derive_drift_spot_market_vault, derive_drift_state
from integrations.solana.kamino import (
    get_all_derived_kamino_accounts,
    get_farm_accounts,
    make_refresh_obligation_ix,
    make_refresh_reserves_batch_ix,
)

from ..core.constants import DEFAULT_PUBKEY, NATIVE_MINT, TOKEN_PROGRAM_ID
from ..core.errors import TransactionBuildingError
from ..core.fixed_point import Numeric, ui_to_native
from ..models.account import MarginfiAccount
from ..models.bank import AssetTag, Bank, BankIntegrationMetadata
from ..transactions import instructions as ix
from ..transactions.tokens import make_wrap_sol_ixs
from ..transactions.types import InstructionsWrapper, TransactionBuilderResult, TransactionType
from .common import (
    NO_OVERRIDES,
    AccountOverrides,
    ActionContext,
    mint_remaining_accounts,
    prepare_transaction,
    require_drift_states,
    require_kamino_states,
    require_positive,
    user_token_account,
)

logger = logging.getLogger(__name__)


def _default_deposit(
    program_id: Pubkey,
    account: MarginfiAccount,
    bank: Bank,
    amount: Decimal,
    token_program: Pubkey,
    metadata_map: Optional[Mapping[str, BankIntegrationMetadata]],
    wrap_and_unwrap_sol: bool,
    overrides: AccountOverrides,
) -> InstructionsWrapper:
    authority = overrides.authority or account.authority
    ixs = []
    if wrap_and_unwrap_sol and bank.mint == NATIVE_MINT:
        ixs.extend(make_wrap_sol_ixs(authority, amount))

    ixs.append(
        ix.make_deposit_ix(
            program_id,
            overrides.group or account.group,
            account.address,
            authority,
            bank.address,
            user_token_account(authority, bank, token_program, overrides),
            ui_to_native(amount, bank.mint_decimals),
            token_program=token_program,
            liquidity_vault=overrides.liquidity_vault,
            remaining_accounts=mint_remaining_accounts(bank, token_program),
        )
    )
    return InstructionsWrapper(instructions=ixs)


def _kamino_deposit(
    program_id: Pubkey,
    account: MarginfiAccount,
    bank: Bank,
    amount: Decimal,
    token_program: Pubkey,
    metadata_map: Optional[Mapping[str, BankIntegrationMetadata]],
    wrap_and_unwrap_sol: bool,
    overrides: AccountOverrides,
) -> InstructionsWrapper:
    states = require_kamino_states(bank, metadata_map)
    reserve_state = states.reserve_state
    accounts = bank.kamino_integration_accounts
    authority = overrides.authority or account.authority
    derived = get_all_derived_kamino_accounts(reserve_state.lending_market, bank.mint)
    farm_user_state, farm_state = get_farm_accounts(states)

    ixs = []
    if wrap_and_unwrap_sol and bank.mint == NATIVE_MINT:
        ixs.extend(make_wrap_sol_ixs(authority, amount))

    ixs.append(make_refresh_reserves_batch_ix([(accounts.kamino_reserve, reserve_state.lending_market)]))
    ixs.append(
        make_refresh_obligation_ix(reserve_state.lending_market, accounts.kamino_obligation, accounts.kamino_reserve)
    )
    ixs.append(
        ix.make_kamino_deposit_ix(
            program_id,
            overrides.group or account.group,
            account.address,
            authority,
            bank.address,
            user_token_account(authority, bank, token_program, overrides),
            obligation=accounts.kamino_obligation,
            lending_market=reserve_state.lending_market,
            lending_market_authority=derived.lending_market_authority,
            reserve=accounts.kamino_reserve,
            mint=bank.mint,
            reserve_liquidity_supply=reserve_state.liquidity_supply_vault,
            reserve_collateral_mint=reserve_state.collateral_mint,
            reserve_destination_deposit_collateral=reserve_state.collateral_supply_vault,
            amount=ui_to_native(amount, bank.mint_decimals),
            liquidity_token_program=reserve_state.liquidity_token_program,
            obligation_farm_user_state=farm_user_state,
            reserve_farm_state=farm_state,
            liquidity_vault=overrides.liquidity_vault,
        )
    )
    return InstructionsWrapper(instructions=ixs)


def _drift_deposit(
    program_id: Pubkey,
    account: MarginfiAccount,
    bank: Bank,
    amount: Decimal,
    token_program: Pubkey,
    metadata_map: Optional[Mapping[str, BankIntegrationMetadata]],
    wrap_and_unwrap_sol: bool,
    overrides: AccountOverrides,
) -> InstructionsWrapper:
    spot_market = require_drift_states(bank, metadata_map).spot_market_state
    accounts = bank.drift_integration_accounts
    authority = overrides.authority or account.authority

    ixs = []
    if wrap_and_unwrap_sol and bank.mint == NATIVE_MINT:
        ixs.extend(make_wrap_sol_ixs(authority, amount))

    ixs.append(
        ix.make_drift_deposit_ix(
            program_id,
            overrides.group or account.group,
            account.address,
            authority,
            bank.address,
            user_token_account(authority, bank, token_program, overrides),
            drift_state=derive_drift_state(),
            drift_user=accounts.drift_user,
            drift_user_stats=accounts.drift_user_stats,
            drift_spot_market=accounts.drift_spot_market,
            drift_spot_market_vault=derive_drift_spot_market_vault(spot_market.market_index),
            mint=bank.mint,
            amount=ui_to_native(amount, bank.mint_decimals),
            drift_oracle=spot_market.oracle if spot_market.oracle != DEFAULT_PUBKEY else None,
            token_program=token_program,
            liquidity_vault=overrides.liquidity_vault,
        )
    )
    return InstructionsWrapper(instructions=ixs)


DepositBuilder = Callable[..., InstructionsWrapper]

_DEPOSIT_BUILDERS: Dict[AssetTag, DepositBuilder] = {
    AssetTag.DEFAULT: _default_deposit,
    AssetTag.SOL: _default_deposit,
    AssetTag.STAKED: _default_deposit,
    AssetTag.KAMINO: _kamino_deposit,
    AssetTag.DRIFT: _drift_deposit,
}


def make_deposit_ixs(
    program_id: Pubkey,
    account: MarginfiAccount,
    bank: Bank,
    amount: Numeric,
    token_program: Pubkey = TOKEN_PROGRAM_ID,
    metadata_map: Optional[Mapping[str, BankIntegrationMetadata]] = None,
    wrap_and_unwrap_sol: bool = True,
    overrides: AccountOverrides = NO_OVERRIDES,
) -> InstructionsWrapper:
    """
    Instructions depositing `amount` (UI units) into `bank`.

    Raises:
        InvalidAmountError: If amount is not positive
        TransactionBuildingError: Missing Kamino/Drift state, or an
            unsupported bank type
    """
    value = require_positive(amount, "Deposit")
    builder = _DEPOSIT_BUILDERS.get(bank.asset_tag)
    if builder is None:
        raise TransactionBuildingError.unsupported_asset_tag(bank.key, bank.asset_tag.name, "Deposit")
    return builder(program_id, account, bank, value, token_program, metadata_map, wrap_and_unwrap_sol, overrides)


async def make_deposit_tx(
    ctx: ActionContext,
    account: MarginfiAccount,
    bank_pk: Pubkey,
    amount: Numeric,
    wrap_and_unwrap_sol: bool = True,
    overrides: AccountOverrides = NO_OVERRIDES,
) -> TransactionBuilderResult:
    """Deposit needs no health check, so it is always a single transaction."""
    bank = ctx.bank(bank_pk)
    wrapper = make_deposit_ixs(
        ctx.program_id,
        account,
        bank,
        amount,
        token_program=ctx.token_program(bank),
        metadata_map=ctx.metadata_map,
        wrap_and_unwrap_sol=wrap_and_unwrap_sol,
        overrides=overrides,
    )
    tx = await prepare_transaction(
        ctx,
        account.authority,
        wrapper.instructions,
        TransactionType.DEPOSIT,
        description=f"Deposit {amount} {bank.display_name()}",
    )
    logger.info(f"Built deposit of {amount} into {bank.display_name()}")
    return TransactionBuilderResult(transactions=[tx], action_tx_index=0)
