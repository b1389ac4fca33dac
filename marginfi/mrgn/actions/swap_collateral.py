"""
Swap collateral: withdraw one deposit, swap, deposit into another bank, in one flash loan.
"""

import logging
from typing import Optional, Sequence

from solders.instruction import Instruction
from solders.pubkey import Pubkey

from integrations.solana.jupiter import SWAP_MODE_EXACT_IN, JupiterClient, SwapCandidate, SwapQuoteParams

from ..core.errors import TransactionBuildingError
from ..core.fixed_point import Numeric, native_to_ui, ui_to_native
from ..models.account import MarginfiAccount
from ..models.bank import AssetTag
from ..services.health import compute_quantity_ui, is_whole_position
from ..transactions.types import TransactionType
from .common import (
    ActionContext,
    get_asset_share_value_multiplier,
    require_drift_states,
    require_kamino_states,
    require_positive,
)
from .deposit import make_deposit_ixs
from .swap import (
    FlashLoanActionResult,
    compose_flashloan_candidates,
    destination_account,
    fetch_swap_routes,
    finalize_flashloan_action,
)
from .withdraw import make_withdraw_ixs

logger = logging.getLogger(__name__)


async def make_swap_collateral_tx(
    ctx: ActionContext,
    account: MarginfiAccount,
    withdraw_bank_pk: Pubkey,
    deposit_bank_pk: Pubkey,
    withdraw_amount: Numeric,
    jupiter: Optional[JupiterClient] = None,
    slippage_bps: int = 50,
    platform_fee_bps: Optional[int] = None,
    additional_ixs: Sequence[Instruction] = (),
) -> FlashLoanActionResult:
    """
    Move collateral from `withdraw_bank_pk` to `deposit_bank_pk`.

    The withdrawn amount is clamped to the position; withdrawing all of it
    closes the source balance.

    Raises:
        InvalidAmountError: If withdraw_amount is not positive
        TransactionBuildingError: KAMINO_RESERVE_NOT_FOUND, DRIFT_STATE_NOT_FOUND,
            NO_SWAP_ROUTES, JUPITER_SWAP_SIZE_EXCEEDED_SWAP_COLLATERAL or
            ORACLE_CRANK_FAILED
    """
    withdraw_bank = ctx.bank(withdraw_bank_pk)
    deposit_bank = ctx.bank(deposit_bank_pk)
    requested = require_positive(withdraw_amount, "Withdraw")
    authority = account.authority

    # Fail before any route lookup when integration state is missing
    for bank in (withdraw_bank, deposit_bank):
        if bank.asset_tag == AssetTag.KAMINO:
            require_kamino_states(bank, ctx.metadata_map)
        elif bank.asset_tag == AssetTag.DRIFT:
            require_drift_states(bank, ctx.metadata_map)

    collateral = compute_quantity_ui(
        account.get_balance(withdraw_bank.address),
        withdraw_bank,
        get_asset_share_value_multiplier(withdraw_bank, ctx.metadata_map),
    ).assets
    withdraw_value = min(requested, collateral) if collateral > 0 else requested
    if withdraw_value < requested:
        logger.warning(f"Clamping withdraw from {withdraw_bank.display_name()} to position size {collateral}")
    withdraw_all = is_whole_position(collateral, True, withdraw_value, withdraw_bank.mint_decimals)

    def build_legs(candidate: Optional[SwapCandidate]):
        if candidate is None:
            deposit_amount = withdraw_value
        else:
            deposit_amount = native_to_ui(candidate.other_amount_threshold, deposit_bank.mint_decimals)

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
        deposit_ixs = make_deposit_ixs(
            ctx.program_id,
            account,
            deposit_bank,
            deposit_amount,
            token_program=ctx.token_program(deposit_bank),
            metadata_map=ctx.metadata_map,
            wrap_and_unwrap_sol=False,
        ).instructions
        return withdraw_ixs, deposit_ixs

    if withdraw_bank.mint == deposit_bank.mint:
        candidates = [None]
    else:
        if jupiter is None:
            raise TransactionBuildingError.no_swap_routes(str(withdraw_bank.mint), str(deposit_bank.mint))
        params = SwapQuoteParams(
            input_mint=withdraw_bank.mint,
            output_mint=deposit_bank.mint,
            amount=ui_to_native(withdraw_value, withdraw_bank.mint_decimals),
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
        TransactionBuildingError.jupiter_swap_size_exceeded_swap_collateral,
        route_mints=(withdraw_bank.mint, deposit_bank.mint),
    )
    return await finalize_flashloan_action(
        ctx, account, composed, [withdraw_bank, deposit_bank], TransactionType.SWAP_COLLATERAL, additional_ixs
    )
