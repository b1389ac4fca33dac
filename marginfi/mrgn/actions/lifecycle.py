"""
Account lifecycle builders.

Opening, closing and moving margin accounts, claiming emissions, and
creating the token accounts a later action will need.
"""

import logging
from typing import List, Optional, Sequence, Tuple

from solders.keypair import Keypair
from solders.pubkey import Pubkey

from ..core.constants import TOKEN_PROGRAM_ID
from ..core.rpc import RpcClient
from ..models.account import MarginfiAccount
from ..models.bank import Bank
from ..transactions import instructions as ix
from ..transactions.pda import (
    derive_emissions_authority,
    derive_emissions_vault,
    derive_marginfi_account_pda,
    get_associated_token_address,
)
from ..transactions.tokens import make_create_ata_idempotent_ix, make_create_missing_atas_ixs
from ..transactions.types import InstructionsWrapper, PreparedTransaction, TransactionBuilderResult, TransactionType
from .common import ActionContext, prepare_transaction

logger = logging.getLogger(__name__)


def make_create_account_ixs(
    program_id: Pubkey,
    group: Pubkey,
    authority: Pubkey,
    fee_payer: Optional[Pubkey] = None,
    account_index: Optional[int] = None,
    third_party_id: Optional[int] = None,
) -> Tuple[InstructionsWrapper, Pubkey]:
    """
    Instructions opening a margin account.

    With `account_index` the account is a PDA of (group, authority, index,
    third party id); otherwise a fresh keypair is generated and returned
    as an extra signer.

    Returns:
        (instructions, new account address)
    """
    fee_payer = fee_payer or authority

    if account_index is not None:
        address, _ = derive_marginfi_account_pda(program_id, group, authority, account_index, third_party_id or 0)
        instruction = ix.make_init_marginfi_account_pda_ix(
            program_id, group, address, authority, fee_payer, account_index, third_party_id
        )
        return InstructionsWrapper(instructions=[instruction]), address

    keypair = Keypair()
    instruction = ix.make_init_marginfi_account_ix(program_id, group, keypair.pubkey(), authority, fee_payer)
    return InstructionsWrapper(instructions=[instruction], keys=[keypair]), keypair.pubkey()


async def make_create_account_tx(
    ctx: ActionContext,
    authority: Pubkey,
    account_index: Optional[int] = None,
    third_party_id: Optional[int] = None,
) -> Tuple[TransactionBuilderResult, Pubkey]:
    wrapper, address = make_create_account_ixs(
        ctx.program_id, ctx.group, authority, account_index=account_index, third_party_id=third_party_id
    )
    tx = await prepare_transaction(
        ctx,
        authority,
        wrapper.instructions,
        TransactionType.CREATE_ACCOUNT,
        signers=wrapper.keys,
        description="Create marginfi account",
    )
    logger.info(f"Built account creation for {address}")
    return TransactionBuilderResult(transactions=[tx], action_tx_index=0), address


def make_close_account_ixs(program_id: Pubkey, account: MarginfiAccount) -> InstructionsWrapper:
    """Close an account; the program rejects it while any balance is active."""
    if account.active_balances:
        logger.warning(f"Account {account.address} still has {len(account.active_balances)} active balances")
    return InstructionsWrapper(
        instructions=[ix.make_close_account_ix(program_id, account.address, account.authority, account.authority)]
    )


def make_transfer_account_ixs(
    program_id: Pubkey,
    account: MarginfiAccount,
    new_authority: Pubkey,
    global_fee_wallet: Pubkey,
) -> Tuple[InstructionsWrapper, Pubkey]:
    """
    Move positions to a new account owned by `new_authority`.

    Returns:
        (instructions with the new account keypair as signer, new account address)
    """
    keypair = Keypair()
    instruction = ix.make_transfer_to_new_account_ix(
        program_id,
        account.group,
        account.address,
        keypair.pubkey(),
        account.authority,
        account.authority,
        new_authority,
        global_fee_wallet,
    )
    return InstructionsWrapper(instructions=[instruction], keys=[keypair]), keypair.pubkey()


def make_withdraw_emissions_ixs(
    program_id: Pubkey,
    account: MarginfiAccount,
    banks: Sequence[Bank],
    emissions_token_program: Pubkey = TOKEN_PROGRAM_ID,
) -> InstructionsWrapper:
    """Claim emissions from every bank in `banks` that pays them."""
    ixs = []
    for bank in banks:
        if not (bank.emissions_active_lending or bank.emissions_active_borrowing):
            logger.debug(f"Bank {bank.display_name()} has no active emissions, skipping")
            continue

        destination = get_associated_token_address(account.authority, bank.emissions_mint, emissions_token_program)
        ixs.append(
            make_create_ata_idempotent_ix(
                account.authority, destination, account.authority, bank.emissions_mint, emissions_token_program
            )
        )
        ixs.append(
            ix.make_withdraw_emissions_ix(
                program_id,
                account.group,
                account.address,
                account.authority,
                bank.address,
                bank.emissions_mint,
                derive_emissions_authority(program_id, bank.address),
                derive_emissions_vault(program_id, bank.address, bank.emissions_mint),
                destination,
                token_program=emissions_token_program,
            )
        )
    return InstructionsWrapper(instructions=ixs)


async def make_setup_atas_ixs(
    rpc: RpcClient,
    owner: Pubkey,
    mints: Sequence[Tuple[Pubkey, Pubkey]],
) -> List:
    """
    Create-idempotent instructions for the owner's missing token accounts.

    Args:
        mints: (mint, token program) pairs
    """
    atas = [get_associated_token_address(owner, mint, token_program) for mint, token_program in mints]
    datas = await rpc.get_multiple_accounts(atas)
    return make_create_missing_atas_ixs(owner, mints, datas)


async def make_setup_atas_tx(
    ctx: ActionContext,
    owner: Pubkey,
    mints: Sequence[Tuple[Pubkey, Pubkey]],
) -> Optional[PreparedTransaction]:
    """One CREATE_ATA transaction, or None when every account exists."""
    ixs = await make_setup_atas_ixs(ctx.rpc, owner, mints)
    if not ixs:
        return None
    return await prepare_transaction(ctx, owner, ixs, TransactionType.CREATE_ATA, description="Create token accounts")
