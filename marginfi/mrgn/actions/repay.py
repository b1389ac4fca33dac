"""
Repay builders.
"""

import logging

from solders.pubkey import Pubkey

from ..core.constants import NATIVE_MINT, TOKEN_PROGRAM_ID
from ..core.fixed_point import Numeric, ui_to_native
from ..models.account import MarginfiAccount
from ..models.bank import Bank
from ..transactions import instructions as ix
from ..transactions.tokens import make_create_ata_idempotent_ix, make_unwrap_sol_ix, make_wrap_sol_ixs
from ..transactions.types import InstructionsWrapper, TransactionBuilderResult, TransactionType
from .common import (
    NO_OVERRIDES,
    AccountOverrides,
    ActionContext,
    mint_remaining_accounts,
    prepare_transaction,
    require_positive,
    user_token_account,
)

logger = logging.getLogger(__name__)


def make_repay_ixs(
    program_id: Pubkey,
    account: MarginfiAccount,
    bank: Bank,
    amount: Numeric,
    repay_all: bool = False,
    token_program: Pubkey = TOKEN_PROGRAM_ID,
    create_atas: bool = False,
    wrap_and_unwrap_sol: bool = True,
    overrides: AccountOverrides = NO_OVERRIDES,
) -> InstructionsWrapper:
    """
    Instructions repaying `amount` (UI units) of the liability in `bank`.

    Repaying never lowers health, so no health accounts are attached.

    Raises:
        InvalidAmountError: If amount is not positive
    """
    value = require_positive(amount, "Repay")
    authority = overrides.authority or account.authority
    source = user_token_account(authority, bank, token_program, overrides)

    ixs = []
    if create_atas:
        ixs.append(make_create_ata_idempotent_ix(authority, source, authority, bank.mint, token_program))

    is_native = wrap_and_unwrap_sol and bank.mint == NATIVE_MINT
    if is_native:
        ixs.extend(make_wrap_sol_ixs(authority, value))

    ixs.append(
        ix.make_repay_ix(
            program_id,
            overrides.group or account.group,
            account.address,
            authority,
            bank.address,
            source,
            ui_to_native(value, bank.mint_decimals),
            token_program=token_program,
            repay_all=repay_all,
            liquidity_vault=overrides.liquidity_vault,
            remaining_accounts=mint_remaining_accounts(bank, token_program),
        )
    )

    if is_native:
        ixs.append(make_unwrap_sol_ix(authority))

    return InstructionsWrapper(instructions=ixs)


async def make_repay_tx(
    ctx: ActionContext,
    account: MarginfiAccount,
    bank_pk: Pubkey,
    amount: Numeric,
    repay_all: bool = False,
    wrap_and_unwrap_sol: bool = True,
    overrides: AccountOverrides = NO_OVERRIDES,
) -> TransactionBuilderResult:
    bank = ctx.bank(bank_pk)
    wrapper = make_repay_ixs(
        ctx.program_id,
        account,
        bank,
        amount,
        repay_all=repay_all,
        token_program=ctx.token_program(bank),
        wrap_and_unwrap_sol=wrap_and_unwrap_sol,
        overrides=overrides,
    )
    tx = await prepare_transaction(
        ctx,
        account.authority,
        wrapper.instructions,
        TransactionType.REPAY,
        description=f"Repay {amount} {bank.display_name()}",
    )
    return TransactionBuilderResult(transactions=[tx], action_tx_index=0)
