"""
Borrow builders.
"""

import logging
from typing import Mapping

from solders.pubkey import Pubkey

from integrations.solana.drift import make_update_drift_markets_ixs
from integrations.solana.kamino import make_refresh_kamino_banks_ixs

from ..core.constants import NATIVE_MINT, TOKEN_PROGRAM_ID
from ..core.fixed_point import Numeric, ui_to_native
from ..models.account import MarginfiAccount
from ..models.bank import Bank
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
    require_positive,
    user_token_account,
)

logger = logging.getLogger(__name__)


def make_borrow_ixs(
    program_id: Pubkey,
    account: MarginfiAccount,
    bank: Bank,
    amount: Numeric,
    bank_map: Mapping[str, Bank],
    token_program: Pubkey = TOKEN_PROGRAM_ID,
    create_atas: bool = True,
    wrap_and_unwrap_sol: bool = True,
    overrides: AccountOverrides = NO_OVERRIDES,
) -> InstructionsWrapper:
    """
    Instructions borrowing `amount` (UI units) from `bank`.

    The bank is added to the health check accounts since borrowing opens
    (or grows) a liability there.

    Raises:
        InvalidAmountError: If amount is not positive
        DataNotFound: If a bank needed for the health check is missing
    """
    value = require_positive(amount, "Borrow")
    authority = overrides.authority or account.authority
    destination = user_token_account(authority, bank, token_program, overrides)

    ixs = []
    if create_atas:
        ixs.append(make_create_ata_idempotent_ix(authority, destination, authority, bank.mint, token_program))

    remaining = mint_remaining_accounts(bank, token_program) + make_health_account_metas(
        account.balances, bank_map, mandatory_banks=[bank.address]
    )
    ixs.append(
        ix.make_borrow_ix(
            program_id,
            overrides.group or account.group,
            account.address,
            authority,
            bank.address,
            destination,
            ui_to_native(value, bank.mint_decimals),
            token_program=token_program,
            liquidity_vault=overrides.liquidity_vault,
            remaining_accounts=remaining,
        )
    )

    if wrap_and_unwrap_sol and bank.mint == NATIVE_MINT:
        ixs.append(make_unwrap_sol_ix(authority))

    return InstructionsWrapper(instructions=ixs)


async def make_borrow_tx(
    ctx: ActionContext,
    account: MarginfiAccount,
    bank_pk: Pubkey,
    amount: Numeric,
    create_atas: bool = True,
    wrap_and_unwrap_sol: bool = True,
    overrides: AccountOverrides = NO_OVERRIDES,
) -> TransactionBuilderResult:
    """
    Borrow transaction, preceded by an oracle crank when one is needed.

    Raises:
        TransactionBuildingError: ORACLE_CRANK_FAILED
    """
    bank = ctx.bank(bank_pk)
    wrapper = make_borrow_ixs(
        ctx.program_id,
        account,
        bank,
        amount,
        ctx.bank_map,
        token_program=ctx.token_program(bank),
        create_atas=create_atas,
        wrap_and_unwrap_sol=wrap_and_unwrap_sol,
        overrides=overrides,
    )

    refresh_ixs = make_refresh_kamino_banks_ixs(
        account.balances, ctx.bank_map, [], ctx.metadata_map
    ) + make_update_drift_markets_ixs(account.balances, ctx.bank_map, [], ctx.metadata_map)

    transactions = await make_crank_transactions(ctx, account, wrapper.instructions)
    transactions.append(
        await prepare_transaction(
            ctx,
            account.authority,
            refresh_ixs + wrapper.instructions,
            TransactionType.BORROW,
            description=f"Borrow {amount} {bank.display_name()}",
        )
    )
    logger.info(f"Built borrow of {amount} from {bank.display_name()} in {len(transactions)} transactions")
    return TransactionBuilderResult(transactions=transactions, action_tx_index=len(transactions) - 1)
