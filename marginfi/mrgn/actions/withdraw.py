"""
Withdraw builders.

Dispatches on the bank's asset tag:
- default / SOL / staked banks withdraw from the liquidity vault
- Kamino banks redeem collateral tokens from the klend reserve
- Drift banks withdraw through the Drift spot market

A full withdrawal closes the position, so the bank is left out of the
health check; a partial one keeps it in.
"""

import logging
from decimal import Decimal
from typing import Callable, Dict, List, Mapping, Optional, Sequence

from solders.instruction import AccountMeta
from solders.pubkey import Pubkey

from integrations.solana.drift import (
    derive_drift_signer,
    derive_drift_spot_market_vault,
    derive_drift_state,
    get_drift_ctoken_multiplier,
    make_update_drift_markets_ixs,
)
from integrations.solana.kamino import (
    get_all_derived_kamino_accounts,
    get_farm_accounts,
    get_kamino_ctoken_multiplier,
    make_refresh_kamino_banks_ixs,
    make_refresh_obligation_ix,
    make_refresh_reserves_batch_ix,
)

from ..core.constants import DEFAULT_PUBKEY, NATIVE_MINT, TOKEN_PROGRAM_ID
from ..core.errors import TransactionBuildingError
from ..core.fixed_point import Numeric, ui_to_native
from ..models.account import MarginfiAccount
from ..models.bank import AssetTag, Bank, BankIntegrationMetadata
from ..services.bank_compute import get_asset_quantity
from ..transactions import instructions as ix
from ..transactions.health_accounts import make_health_account_metas
from ..transactions.tokens import make_create_ata_idempotent_ix, make_unwrap_sol_ix
from ..transactions.types import InstructionsWrapper, TransactionBuilderResult, TransactionType
from .common import (
    NO_OVERRIDES,
    AccountOverrides,
    ActionContext,
    make_crank_transactions,
    mint_remaining_accounts,
    prepare_transaction,
    require_drift_states,
    require_kamino_states,
    require_positive,
    user_token_account,
)

logger = logging.getLogger(__name__)


def withdraw_health_metas(
    account: MarginfiAccount,
    bank: Bank,
    bank_map: Mapping[str, Bank],
    withdraw_all: bool,
) -> List[AccountMeta]:
    if withdraw_all:
        return make_health_account_metas(account.balances, bank_map, excluded_banks=[bank.address])
    return make_health_account_metas(account.balances, bank_map, mandatory_banks=[bank.address])


def _default_withdraw(
    program_id: Pubkey,
    account: MarginfiAccount,
    bank: Bank,
    amount: Decimal,
    withdraw_all: bool,
    bank_map: Mapping[str, Bank],
    token_program: Pubkey,
    metadata_map: Optional[Mapping[str, BankIntegrationMetadata]],
    destination: Pubkey,
    overrides: AccountOverrides,
    drift_reward_accounts: Sequence[Pubkey],
) -> List:
    remaining = mint_remaining_accounts(bank, token_program) + withdraw_health_metas(
        account, bank, bank_map, withdraw_all
    )
    return [
        ix.make_withdraw_ix(
            program_id,
            overrides.group or account.group,
            account.address,
            overrides.authority or account.authority,
            bank.address,
            destination,
            ui_to_native(amount, bank.mint_decimals),
            token_program=token_program,
            withdraw_all=withdraw_all,
            liquidity_vault=overrides.liquidity_vault,
            remaining_accounts=remaining,
        )
    ]


def _kamino_withdraw(
    program_id: Pubkey,
    account: MarginfiAccount,
    bank: Bank,
    amount: Decimal,
    withdraw_all: bool,
    bank_map: Mapping[str, Bank],
    token_program: Pubkey,
    metadata_map: Optional[Mapping[str, BankIntegrationMetadata]],
    destination: Pubkey,
    overrides: AccountOverrides,
    drift_reward_accounts: Sequence[Pubkey],
) -> List:
    states = require_kamino_states(bank, metadata_map)
    reserve_state = states.reserve_state
    accounts = bank.kamino_integration_accounts
    derived = get_all_derived_kamino_accounts(reserve_state.lending_market, bank.mint)
    farm_user_state, farm_state = get_farm_accounts(states)

    if withdraw_all:
        balance = account.get_balance(bank.address)
        collateral = int(get_asset_quantity(bank, balance.asset_shares))
    else:
        collateral = ui_to_native(amount / get_kamino_ctoken_multiplier(reserve_state), bank.mint_decimals)

    return [
        make_refresh_reserves_batch_ix([(accounts.kamino_reserve, reserve_state.lending_market)]),
        make_refresh_obligation_ix(reserve_state.lending_market, accounts.kamino_obligation, accounts.kamino_reserve),
        ix.make_kamino_withdraw_ix(
            program_id,
            overrides.group or account.group,
            account.address,
            overrides.authority or account.authority,
            bank.address,
            destination,
            obligation=accounts.kamino_obligation,
            lending_market=reserve_state.lending_market,
            lending_market_authority=derived.lending_market_authority,
            reserve=accounts.kamino_reserve,
            reserve_liquidity_mint=bank.mint,
            reserve_liquidity_supply=reserve_state.liquidity_supply_vault,
            reserve_collateral_mint=reserve_state.collateral_mint,
            reserve_source_collateral=reserve_state.collateral_supply_vault,
            amount=collateral,
            is_final_withdrawal=withdraw_all,
            liquidity_token_program=reserve_state.liquidity_token_program,
            obligation_farm_user_state=farm_user_state,
            reserve_farm_state=farm_state,
            liquidity_vault=overrides.liquidity_vault,
            remaining_accounts=withdraw_health_metas(account, bank, bank_map, withdraw_all),
        ),
    ]


def _drift_withdraw(
    program_id: Pubkey,
    account: MarginfiAccount,
    bank: Bank,
    amount: Decimal,
    withdraw_all: bool,
    bank_map: Mapping[str, Bank],
    token_program: Pubkey,
    metadata_map: Optional[Mapping[str, BankIntegrationMetadata]],
    destination: Pubkey,
    overrides: AccountOverrides,
    drift_reward_accounts: Sequence[Pubkey],
) -> List:
    spot_market = require_drift_states(bank, metadata_map).spot_market_state
    accounts = bank.drift_integration_accounts

    if withdraw_all:
        balance = account.get_balance(bank.address)
        native = int(get_asset_quantity(bank, balance.asset_shares) * get_drift_ctoken_multiplier(spot_market))
    else:
        native = ui_to_native(amount, bank.mint_decimals)

    return [
        ix.make_drift_withdraw_ix(
            program_id,
            overrides.group or account.group,
            account.address,
            overrides.authority or account.authority,
            bank.address,
            destination,
            drift_state=derive_drift_state(),
            drift_user=accounts.drift_user,
            drift_user_stats=accounts.drift_user_stats,
            drift_spot_market=accounts.drift_spot_market,
            drift_spot_market_vault=derive_drift_spot_market_vault(spot_market.market_index),
            drift_signer=derive_drift_signer(),
            mint=bank.mint,
            amount=native,
            withdraw_all=withdraw_all,
            drift_oracle=spot_market.oracle if spot_market.oracle != DEFAULT_PUBKEY else None,
            reward_accounts=drift_reward_accounts,
            token_program=token_program,
            liquidity_vault=overrides.liquidity_vault,
            remaining_accounts=withdraw_health_metas(account, bank, bank_map, withdraw_all),
        )
    ]


_WITHDRAW_BUILDERS: Dict[AssetTag, Callable[..., List]] = {
    AssetTag.DEFAULT: _default_withdraw,
    AssetTag.SOL: _default_withdraw,
    AssetTag.STAKED: _default_withdraw,
    AssetTag.KAMINO: _kamino_withdraw,
    AssetTag.DRIFT: _drift_withdraw,
}


def make_withdraw_ixs(
    program_id: Pubkey,
    account: MarginfiAccount,
    bank: Bank,
    amount: Numeric,
    bank_map: Mapping[str, Bank],
    withdraw_all: bool = False,
    token_program: Pubkey = TOKEN_PROGRAM_ID,
    metadata_map: Optional[Mapping[str, BankIntegrationMetadata]] = None,
    create_atas: bool = True,
    wrap_and_unwrap_sol: bool = True,
    overrides: AccountOverrides = NO_OVERRIDES,
    drift_reward_accounts: Sequence[Pubkey] = (),
) -> InstructionsWrapper:
    """
    Instructions withdrawing `amount` (UI units of the underlying token).

    Args:
        withdraw_all: Close the position; the amount is then ignored on chain
        drift_reward_accounts: Reward (oracle, spot market, mint) triples for
            Drift banks with active reward markets

    Raises:
        InvalidAmountError: If amount is not positive
        TransactionBuildingError: Missing Kamino/Drift state, or an
            unsupported bank type
        DataNotFound: If a bank needed for the health check is missing
    """
    value = require_positive(amount, "Withdraw")
    builder = _WITHDRAW_BUILDERS.get(bank.asset_tag)
    if builder is None:
        raise TransactionBuildingError.unsupported_asset_tag(bank.key, bank.asset_tag.name, "Withdraw")

    authority = overrides.authority or account.authority
    destination = user_token_account(authority, bank, token_program, overrides)

    ixs = []
    if create_atas:
        ixs.append(make_create_ata_idempotent_ix(authority, destination, authority, bank.mint, token_program))

    ixs.extend(
        builder(
            program_id,
            account,
            bank,
            value,
            withdraw_all,
            bank_map,
            token_program,
            metadata_map,
            destination,
            overrides,
            drift_reward_accounts,
        )
    )

    if wrap_and_unwrap_sol and bank.mint == NATIVE_MINT:
        ixs.append(make_unwrap_sol_ix(authority))

    return InstructionsWrapper(instructions=ixs)


async def make_withdraw_tx(
    ctx: ActionContext,
    account: MarginfiAccount,
    bank_pk: Pubkey,
    amount: Numeric,
    withdraw_all: bool = False,
    create_atas: bool = True,
    wrap_and_unwrap_sol: bool = True,
    overrides: AccountOverrides = NO_OVERRIDES,
) -> TransactionBuilderResult:
    """
    Withdraw transaction with its integration refreshes.

    Oracle cranks are only needed while the account carries liabilities;
    without debt the health check always passes.

    Raises:
        TransactionBuildingError: ORACLE_CRANK_FAILED, or missing
            integration state
    """
    bank = ctx.bank(bank_pk)
    wrapper = make_withdraw_ixs(
        ctx.program_id,
        account,
        bank,
        amount,
        ctx.bank_map,
        withdraw_all=withdraw_all,
        token_program=ctx.token_program(bank),
        metadata_map=ctx.metadata_map,
        create_atas=create_atas,
        wrap_and_unwrap_sol=wrap_and_unwrap_sol,
        overrides=overrides,
    )

    refresh_ixs = make_refresh_kamino_banks_ixs(
        [b for b in account.balances if b.bank_pk != bank.address], ctx.bank_map, [], ctx.metadata_map
    ) + make_update_drift_markets_ixs(account.balances, ctx.bank_map, [], ctx.metadata_map)

    has_liabilities = any(b.active and b.liability_shares > 0 for b in account.balances)
    transactions = await make_crank_transactions(ctx, account, wrapper.instructions) if has_liabilities else []

    transactions.append(
        await prepare_transaction(
            ctx,
            account.authority,
            refresh_ixs + wrapper.instructions,
            TransactionType.WITHDRAW,
            description=f"Withdraw {amount} {bank.display_name()}",
        )
    )
    logger.info(f"Built withdraw of {amount} from {bank.display_name()} (all={withdraw_all})")
    return TransactionBuilderResult(transactions=transactions, action_tx_index=len(transactions) - 1)
