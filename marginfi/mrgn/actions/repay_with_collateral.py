"""
Repay debt with collateral: withdraw, swap into the debt token, repay, in one flash loan.
"""

import logging
from typing import Optional, Sequence

from solders.instruction import Instruction
from solders.pubkey import Pubkey

from integrations.solana.jupiter import SWAP_MODE_EXACT_IN, JupiterClient, SwapCandidate, SwapQuoteParams

from ..core.errors import TransactionBuildingError
from ..core.fixed_point import Numeric, native_to_ui, ui_to_native
from ..models.account import MarginfiAccount
from ..services.health import compute_quantity_ui, is_whole_position
from ..transactions.types import TransactionType
from .common import ActionContext, get_asset_share_value_multiplier, require_positive
from .repay import make_repay_ixs
from .swap import (
    FlashLoanActionResult,
    compose_flashloan_candidates,
    destination_account,
    fetch_swap_routes,
    finalize_flashloan_action,
)
from .withdraw import make_withdraw_ixs

logger = logging.getLogger(__name__)


async def make_repay_with_collateral_tx(
    ctx: ActionContext,
    account: MarginfiAccount,
    withdraw_bank_pk: Pubkey,
    repay_bank_pk: Pubkey,
    withdraw_amount: Numeric,
    jupiter: Optional[JupiterClient] = None,
    slippage_bps: int = 50,
    platform_fee_bps: Optional[int] = None,
    additional_ixs: Sequence[Instruction] = (),
) -> FlashLoanActionResult:
    """
    Repay the debt in `repay_bank_pk` using collateral from `withdraw_bank_pk`.

    The repaid amount is capped at the outstanding debt; when the swap
    covers all of it the liability is closed.

    Raises:
        InvalidAmountError: If withdraw_amount is not positive
        TransactionBuildingError: NO_SWAP_ROUTES, JUPITER_SWAP_SIZE_EXCEEDED_REPAY,
            ORACLE_CRANK_FAILED or missing integration state
    """
    withdraw_bank = ctx.bank(withdraw_bank_pk)
    repay_bank = ctx.bank(repay_bank_pk)
    withdraw_value = require_positive(withdraw_amount, "Withdraw")
    authority = account.authority

    collateral = compute_quantity_ui(
        account.get_balance(withdraw_bank.address),
        withdraw_bank,
        get_asset_share_value_multiplier(withdraw_bank, ctx.metadata_map),
    ).assets
    total_debt = compute_quantity_ui(account.get_balance(repay_bank.address), repay_bank).liabilities

    withdraw_all = is_whole_position(collateral, True, withdraw_value, withdraw_bank.mint_decimals)

    def build_legs(candidate: Optional[SwapCandidate]):
        if candidate is None:
            repay_amount = withdraw_value
        elif native_to_ui(candidate.out_amount, repay_bank.mint_decimals) > total_debt:
            repay_amount = total_debt
        else:
            repay_amount = native_to_ui(candidate.other_amount_threshold, repay_bank.mint_decimals)

        repay_all = is_whole_position(total_debt, False, repay_amount, repay_bank.mint_decimals)
        withdraw_ixs = make_withdraw_ixs(
            ctx.program_id,
            account,
            withdraw_bank,
            withdraw_value,
            ctx.bank_map,
            withdraw_all=withdraw_all,
            token_program=ctx.token_program(withdraw_bank),
            metadata_map=ctx.metadata_map,
            create_atas=False,
            wrap_and_unwrap_sol=False,
        ).instructions
        repay_ixs = make_repay_ixs(
            ctx.program_id,
            account,
            repay_bank,
            repay_amount,
            repay_all=repay_all,
            token_program=ctx.token_program(repay_bank),
            wrap_and_unwrap_sol=False,
        ).instructions
        return withdraw_ixs, repay_ixs

    if withdraw_bank.mint == repay_bank.mint:
        candidates = [None]
    else:
        if jupiter is None:
            raise TransactionBuildingError.no_swap_routes(str(withdraw_bank.mint), str(repay_bank.mint))
        params = SwapQuoteParams(
            input_mint=withdraw_bank.mint,
            output_mint=repay_bank.mint,
            amount=ui_to_native(withdraw_value, withdraw_bank.mint_decimals),
            swap_mode=SWAP_MODE_EXACT_IN,
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
        TransactionBuildingError.jupiter_swap_size_exceeded_repay,
        route_mints=(withdraw_bank.mint, repay_bank.mint),
    )
    return await finalize_flashloan_action(
        ctx, account, composed, [withdraw_bank, repay_bank], TransactionType.REPAY_COLLAT, additional_ixs
    )
