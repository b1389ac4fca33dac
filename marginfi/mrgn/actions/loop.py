"""
Leveraged loop: borrow, swap into the deposit token, deposit, in one flash loan.
"""

import logging
from typing import Optional, Sequence

from solders.instruction import Instruction
from solders.pubkey import Pubkey

from integrations.solana.jupiter import SWAP_MODE_EXACT_IN, JupiterClient, SwapCandidate, SwapQuoteParams

from ..core.constants import NATIVE_MINT
from ..core.errors import TransactionBuildingError
from ..core.fixed_point import ZERO, Numeric, native_to_ui, to_decimal, ui_to_native
from ..models.account import MarginfiAccount
from ..transactions.tokens import make_wrap_sol_ixs
from ..transactions.types import TransactionType
from .borrow import make_borrow_ixs
from .common import ActionContext, require_positive
from .deposit import make_deposit_ixs
from .swap import (
    FlashLoanActionResult,
    compose_flashloan_candidates,
    destination_account,
    fetch_swap_routes,
    finalize_flashloan_action,
)

logger = logging.getLogger(__name__)


async def make_loop_tx(
    ctx: ActionContext,
    account: MarginfiAccount,
    deposit_bank_pk: Pubkey,
    borrow_bank_pk: Pubkey,
    borrow_amount: Numeric,
    deposit_amount: Numeric = ZERO,
    jupiter: Optional[JupiterClient] = None,
    slippage_bps: int = 50,
    platform_fee_bps: Optional[int] = None,
    additional_ixs: Sequence[Instruction] = (),
) -> FlashLoanActionResult:
    """
    Build a loop.

    Args:
        deposit_bank_pk: Bank receiving the collateral
        borrow_bank_pk: Bank lent from
        borrow_amount: UI amount borrowed
        deposit_amount: UI amount the user adds from the wallet on top
        jupiter: Required when the two banks have different mints

    Raises:
        InvalidAmountError: If borrow_amount is not positive
        TransactionBuildingError: NO_SWAP_ROUTES, JUPITER_SWAP_SIZE_EXCEEDED_LOOP,
            ORACLE_CRANK_FAILED or missing integration state
    """
    deposit_bank = ctx.bank(deposit_bank_pk)
    borrow_bank = ctx.bank(borrow_bank_pk)
    borrow_value = require_positive(borrow_amount, "Borrow")
    principal = to_decimal(deposit_amount)
    authority = account.authority

    def borrow_leg():
        return make_borrow_ixs(
            ctx.program_id,
            account,
            borrow_bank,
            borrow_value,
            ctx.bank_map,
            token_program=ctx.token_program(borrow_bank),
            create_atas=False,
            wrap_and_unwrap_sol=False,
        ).instructions

    def deposit_leg(amount):
        return make_deposit_ixs(
            ctx.program_id,
            account,
            deposit_bank,
            amount,
            token_program=ctx.token_program(deposit_bank),
            metadata_map=ctx.metadata_map,
            wrap_and_unwrap_sol=False,
        ).instructions

    def build_legs(candidate: Optional[SwapCandidate]):
        if candidate is None:
            return borrow_leg(), deposit_leg(borrow_value + principal)
        swapped = native_to_ui(candidate.other_amount_threshold, deposit_bank.mint_decimals)
        return borrow_leg(), deposit_leg(swapped + principal)

    if deposit_bank.mint == borrow_bank.mint:
        candidates = [None]
    else:
        if jupiter is None:
            raise TransactionBuildingError.no_swap_routes(str(borrow_bank.mint), str(deposit_bank.mint))
        params = SwapQuoteParams(
            input_mint=borrow_bank.mint,
            output_mint=deposit_bank.mint,
            amount=ui_to_native(borrow_value, borrow_bank.mint_decimals),
            swap_mode=SWAP_MODE_EXACT_IN,
            slippage_bps=slippage_bps,
            platform_fee_bps=platform_fee_bps,
        )
        candidates = await fetch_swap_routes(
            ctx, jupiter, params, authority, destination_account(ctx, authority, deposit_bank)
        )

    blockhash = await ctx.get_blockhash()
    composed = compose_flashloan_candidates(
        ctx.program_id,
        account,
        ctx.bank_map,
        blockhash,
        ctx.lookup_tables,
        candidates,
        build_legs,
        TransactionBuildingError.jupiter_swap_size_exceeded_loop,
        route_mints=(borrow_bank.mint, deposit_bank.mint),
    )

    extra = list(additional_ixs)
    if deposit_bank.mint == NATIVE_MINT and principal > 0:
        extra += make_wrap_sol_ixs(authority, principal)

    return await finalize_flashloan_action(
        ctx, account, composed, [deposit_bank, borrow_bank], TransactionType.LOOP, extra
    )
