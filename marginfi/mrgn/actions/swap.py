"""
Swap-in-flash-loan composer.

Shared machinery for loop, repay-with-collateral, swap-collateral and
swap-debt:
- fetch Jupiter routes under several account limits
- build leg1 + swap + leg2 per route, wrap in a flash loan, and take the
  first one that fits the transaction size and account key limits
- hoist token account creation, Kamino refreshes and oracle cranks into
  transactions ahead of the flash loan
"""

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from solders.hash import Hash
from solders.instruction import Instruction
from solders.pubkey import Pubkey

from integrations.solana.jupiter import (
    JupiterApiError,
    JupiterClient,
    SwapCandidate,
    SwapQuoteParams,
    filter_setup_instructions,
    get_swap_candidates,
)
from integrations.solana.kamino import make_refresh_kamino_banks_ixs

from ..core.constants import (
    DEFAULT_PRIORITY_FEE_MICRO_LAMPORTS,
    FLASHLOAN_COMPUTE_UNITS,
    MAX_ACCOUNT_KEYS,
    MAX_TX_SIZE,
    SWAP_MAX_ACCOUNTS_CANDIDATES,
)
from ..core.errors import SizeAttempt, TransactionBuildingError
from ..logging_config import log_with_context
from ..models.account import MarginfiAccount
from ..models.bank import Bank
from ..transactions.instructions import make_compute_budget_ixs
from ..transactions.pda import get_associated_token_address
from ..transactions.tx_size import measure_instructions, split_instructions_to_fit_transactions
from ..transactions.types import PreparedTransaction, TransactionBuilderResult, TransactionType
from .common import ActionContext, make_crank_transactions
from .flash_loan import make_flashloan_ixs, make_flashloan_tx
from .lifecycle import make_setup_atas_ixs

logger = logging.getLogger(__name__)

# (leg1 instructions, leg2 instructions) for a route; None means no swap
LegBuilder = Callable[[Optional[SwapCandidate]], Tuple[List[Instruction], List[Instruction]]]
# (worst bytes, worst account keys, every attempt) -> error
SizeError = Callable[[int, int, List[SizeAttempt]], TransactionBuildingError]


@dataclass(frozen=True)
class FlashLoanActionResult(TransactionBuilderResult):
    """Transactions for a composite action and the route it settled on."""
    quote: Optional[Dict[str, Any]] = None


@dataclass(frozen=True)
class ComposedFlashLoan:
    instructions: List[Instruction]
    leg_instructions: List[Instruction]
    candidate: Optional[SwapCandidate]
    size: int
    account_keys: int


async def fetch_swap_routes(
    ctx: ActionContext,
    jupiter: JupiterClient,
    params: SwapQuoteParams,
    authority: Pubkey,
    destination_token_account: Optional[Pubkey] = None,
    max_accounts_candidates: Sequence[int] = SWAP_MAX_ACCOUNTS_CANDIDATES,
) -> List[SwapCandidate]:
    """
    Raises:
        TransactionBuildingError: NO_SWAP_ROUTES when Jupiter returns nothing usable
    """
    try:
        candidates = await get_swap_candidates(
            jupiter, ctx.rpc, params, authority, destination_token_account, max_accounts_candidates
        )
    except JupiterApiError as e:
        logger.error(f"Swap route lookup failed: {str(e)}")
        raise TransactionBuildingError.no_swap_routes(str(params.input_mint), str(params.output_mint)) from e

    if not candidates:
        raise TransactionBuildingError.no_swap_routes(str(params.input_mint), str(params.output_mint))
    return candidates


def compose_flashloan_candidates(
    program_id: Pubkey,
    account: MarginfiAccount,
    bank_map,
    blockhash: Hash,
    lookup_tables,
    candidates: Sequence[Optional[SwapCandidate]],
    build_legs: LegBuilder,
    size_error: SizeError,
    route_mints: Optional[Tuple[Pubkey, Pubkey]] = None,
) -> ComposedFlashLoan:
    """
    Pick the first route whose flash loan fits in one transaction.

    Each attempt is compute budget, leg1, swap, leg2, wrapped in a flash
    loan and compiled against the group's and the route's lookup tables.

    Raises:
        TransactionBuildingError: `size_error` with every attempt when no
            candidate fits; NO_SWAP_ROUTES when there is nothing to try
    """
    if not candidates:
        input_mint, output_mint = route_mints if route_mints is not None else ("unknown", "unknown")
        raise TransactionBuildingError.no_swap_routes(str(input_mint), str(output_mint))

    attempts: List[SizeAttempt] = []
    for candidate in candidates:
        leg1, leg2 = build_legs(candidate)
        swap_ixs = [candidate.swap_instruction] if candidate is not None else []
        inner = (
            make_compute_budget_ixs(FLASHLOAN_COMPUTE_UNITS, DEFAULT_PRIORITY_FEE_MICRO_LAMPORTS)
            + leg1
            + swap_ixs
            + leg2
        )
        wrapped = make_flashloan_ixs(program_id, account, bank_map, inner)
        route_luts = list(lookup_tables) + (list(candidate.lookup_tables) if candidate is not None else [])
        size, keys = measure_instructions(account.authority, wrapped, blockhash, route_luts)

        if size > MAX_TX_SIZE or keys > MAX_ACCOUNT_KEYS:
            label = f"route with maxAccounts={candidate.max_accounts}" if candidate is not None else "direct path"
            logger.warning(f"Flash loan {label} too large: {size} bytes, {keys} account keys")
            attempts.append((candidate.max_accounts if candidate is not None else None, size, keys))
            continue

        return ComposedFlashLoan(
            instructions=inner,
            leg_instructions=leg1 + leg2,
            candidate=candidate,
            size=size,
            account_keys=keys,
        )

    _, worst_size, worst_keys = max(attempts, key=lambda attempt: (attempt[1], attempt[2]))
    raise size_error(worst_size, worst_keys, attempts)


async def finalize_flashloan_action(
    ctx: ActionContext,
    account: MarginfiAccount,
    composed: ComposedFlashLoan,
    banks: Sequence[Bank],
    tx_type: TransactionType,
    additional_ixs: Sequence[Instruction] = (),
) -> FlashLoanActionResult:
    """
    Assemble setup, crank and flash loan transactions for a composed action.

    Args:
        banks: The two banks the legs touch
        additional_ixs: Caller instructions that go in the setup transactions
    """
    authority = account.authority
    mints = [(bank.mint, ctx.token_program(bank)) for bank in banks]

    setup_ixs = await make_setup_atas_ixs(ctx.rpc, authority, mints) if ctx.rpc is not None else []
    if composed.candidate is not None:
        setup_ixs += filter_setup_instructions(
            composed.candidate.setup_instructions, [bank.mint for bank in banks]
        )

    kamino_ixs = make_refresh_kamino_banks_ixs(
        account.balances, ctx.bank_map, [bank.address for bank in banks], ctx.metadata_map
    )

    transactions: List[PreparedTransaction] = []
    pre_ixs = list(additional_ixs) + setup_ixs + kamino_ixs
    if pre_ixs:
        blockhash = await ctx.get_blockhash()
        for tx in split_instructions_to_fit_transactions([], pre_ixs, authority, blockhash, ctx.lookup_tables):
            transactions.append(
                PreparedTransaction(
                    transaction=tx,
                    type=TransactionType.CREATE_ATA,
                    lookup_tables=tuple(ctx.lookup_tables),
                )
            )

    transactions += await make_crank_transactions(ctx, account, composed.leg_instructions)

    route_luts = composed.candidate.lookup_tables if composed.candidate is not None else []
    transactions.append(
        await make_flashloan_tx(ctx, account, composed.instructions, extra_lookup_tables=route_luts, tx_type=tx_type)
    )

    log_with_context(
        logger,
        logging.INFO,
        f"Built {tx_type.value}",
        txs=len(transactions),
        bytes=composed.size,
        keys=composed.account_keys,
        max_accounts=composed.candidate.max_accounts if composed.candidate is not None else None,
    )
    return FlashLoanActionResult(
        transactions=transactions,
        action_tx_index=len(transactions) - 1,
        quote=composed.candidate.quote if composed.candidate is not None else None,
    )


def destination_account(ctx: ActionContext, authority: Pubkey, bank: Bank) -> Pubkey:
    return get_associated_token_address(authority, bank.mint, ctx.token_program(bank))
