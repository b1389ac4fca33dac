"""
Swap debt: borrow a new token, swap it into the old debt token, repay, in one flash loan.
"""

import logging
from typing import Optional, Sequence

from solders.instruction import Instruction
from solders.pubkey import Pubkey

from integrations.solana.jupiter import SWAP_MODE_EXACT_OUT, JupiterClient, SwapCandidate, SwapQuoteParams

from ..core.errors import InvalidAmountError, TransactionBuildingError
from ..core.fixed_point import native_to_ui, ui_to_native
from ..models.account import MarginfiAccount
from ..services.health import compute_quantity_ui, is_whole_position
from ..transactions.types import TransactionType
from .borrow import make_borrow_ixs
from .common import ActionContext
from .repay import make_repay_ixs
from .swap import (
    FlashLoanActionResult,
    compose_flashloan_candidates,
    destination_account,
    fetch_swap_routes,
    finalize_flashloan_action,
)

logger = logging.getLogger(__name__)


async def make_swap_debt_tx(
    ctx: ActionContext,
    account: MarginfiAccount,
    repay_bank_pk: Pubkey,
    borrow_bank_pk: Pubkey,
    jupiter: Optional[JupiterClient] = None,
    slippage_bps: int = 50,
    platform_fee_bps: Optional[int] = None,
    additional_ixs: Sequence[Instruction] = (),
) -> FlashLoanActionResult:
    """
    Refinance the whole debt in `repay_bank_pk` with a borrow from `borrow_bank_pk`.

    The route is quoted ExactOut on the outstanding debt, so the borrow is
    whatever the route needs as input.

    Raises:
        InvalidAmountError: If there is no debt to swap
        TransactionBuildingError: NO_SWAP_ROUTES, JUPITER_SWAP_SIZE_EXCEEDED_SWAP_DEBT
            or ORACLE_CRANK_FAILED
    """
    repay_bank = ctx.bank(repay_bank_pk)
    borrow_bank = ctx.bank(borrow_bank_pk)
    authority = account.authority

    total_debt = compute_quantity_ui(account.get_balance(repay_bank.address), repay_bank).liabilities
    if total_debt <= 0:
        raise InvalidAmountError(f"No debt in {repay_bank.display_name()} to swap")

    def build_legs(candidate: Optional[SwapCandidate]):
        if candidate is None:
            borrow_amount = total_debt
        else:
            borrow_amount = native_to_ui(candidate.in_amount, borrow_bank.mint_decimals)

        borrow_ixs = make_borrow_ixs(
            ctx.program_id,
            account,
            borrow_bank,
            borrow_amount,
            ctx.bank_map,
            token_program=ctx.token_program(borrow_bank),
            create_atas=False,
            wrap_and_unwrap_sol=False,
        ).instructions
        repay_ixs = make_repay_ixs(
            ctx.program_id,
            account,
            repay_bank,
            total_debt,
            repay_all=is_whole_position(total_debt, False, total_debt, repay_bank.mint_decimals),
            token_program=ctx.token_program(repay_bank),
            wrap_and_unwrap_sol=False,
        ).instructions
        return borrow_ixs, repay_ixs

    if repay_bank.mint == borrow_bank.mint:
        candidates = [None]
    else:
        if jupiter is None:
            raise TransactionBuildingError.no_swap_routes(str(borrow_bank.mint), str(repay_bank.mint))
        params = SwapQuoteParams(
            input_mint=borrow_bank.mint,
            output_mint=repay_bank.mint,
            amount=ui_to_native(total_debt, repay_bank.mint_decimals),
            swap_mode=SWAP_MODE_EXACT_OUT,
            slippage_bps=slippage_bps,
            platform_fee_bps=platform_fee_bps,
        )
        candidates = await fetch_swap_routes(
            ctx, jupiter, params, authority, destination_account(ctx, authority, repay_bank)
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
        TransactionBuildingError.jupiter_swap_size_exceeded_swap_debt,
        route_mints=(borrow_bank.mint, repay_bank.mint),
    )
    return await finalize_flashloan_action(
        ctx, account, composed, [borrow_bank, repay_bank], TransactionType.SWAP_DEBT, additional_ixs
    )
