"""
SPL token helpers.

- associated token account creation (idempotent)
- wrap / unwrap native SOL
- detection of missing token accounts
"""

import logging
from decimal import Decimal
from typing import Dict, List, Optional, Sequence, Tuple

from solders.instruction import AccountMeta, Instruction
from solders.pubkey import Pubkey
from solders.system_program import TransferParams, transfer

from ..core.constants import (
    ASSOCIATED_TOKEN_PROGRAM_ID,
    NATIVE_MINT,
    SYSTEM_PROGRAM_ID,
    TOKEN_2022_PROGRAM_ID,
    TOKEN_PROGRAM_ID,
)
from ..core.fixed_point import ZERO, ui_to_native
from .pda import get_associated_token_address

logger = logging.getLogger(__name__)

# SPL token instruction tags
_TOKEN_IX_CLOSE_ACCOUNT = 9
_TOKEN_IX_SYNC_NATIVE = 17
_ATA_IX_CREATE_IDEMPOTENT = 1

# Extra lamports wrapped on top of the requested amount
WRAP_SOL_BUFFER_LAMPORTS = 10_000


def make_create_ata_idempotent_ix(
    payer: Pubkey,
    ata: Pubkey,
    owner: Pubkey,
    mint: Pubkey,
    token_program: Pubkey = TOKEN_PROGRAM_ID,
) -> Instruction:
    accounts = [
        AccountMeta(pubkey=payer, is_signer=True, is_writable=True),
        AccountMeta(pubkey=ata, is_signer=False, is_writable=True),
        AccountMeta(pubkey=owner, is_signer=False, is_writable=False),
        AccountMeta(pubkey=mint, is_signer=False, is_writable=False),
        AccountMeta(pubkey=SYSTEM_PROGRAM_ID, is_signer=False, is_writable=False),
        AccountMeta(pubkey=token_program, is_signer=False, is_writable=False),
    ]
    return Instruction(
        program_id=ASSOCIATED_TOKEN_PROGRAM_ID,
        accounts=accounts,
        data=bytes([_ATA_IX_CREATE_IDEMPOTENT]),
    )


def make_close_account_ix(
    account: Pubkey,
    destination: Pubkey,
    owner: Pubkey,
    token_program: Pubkey = TOKEN_PROGRAM_ID,
) -> Instruction:
    accounts = [
        AccountMeta(pubkey=account, is_signer=False, is_writable=True),
        AccountMeta(pubkey=destination, is_signer=False, is_writable=True),
        AccountMeta(pubkey=owner, is_signer=True, is_writable=False),
    ]
    return Instruction(program_id=token_program, accounts=accounts, data=bytes([_TOKEN_IX_CLOSE_ACCOUNT]))


def make_sync_native_ix(account: Pubkey) -> Instruction:
    return Instruction(
        program_id=TOKEN_PROGRAM_ID,
        accounts=[AccountMeta(pubkey=account, is_signer=False, is_writable=True)],
        data=bytes([_TOKEN_IX_SYNC_NATIVE]),
    )


def make_wrap_sol_ixs(wallet: Pubkey, amount: Decimal = ZERO) -> List[Instruction]:
    """
    Create the wrapped-SOL account and fund it.

    Args:
        wallet: Owner and payer
        amount: UI amount of SOL to wrap (0 only creates the account)

    Returns:
        Create-ATA, and when amount > 0, transfer + sync-native
    """
    ata = get_associated_token_address(wallet, NATIVE_MINT)
    ixs = [make_create_ata_idempotent_ix(wallet, ata, wallet, NATIVE_MINT)]

    if amount > 0:
        lamports = ui_to_native(amount, 9) + WRAP_SOL_BUFFER_LAMPORTS
        ixs.append(transfer(TransferParams(from_pubkey=wallet, to_pubkey=ata, lamports=lamports)))
        ixs.append(make_sync_native_ix(ata))

    return ixs


def make_unwrap_sol_ix(wallet: Pubkey) -> Instruction:
    """Close the wrapped-SOL account back into the wallet."""
    ata = get_associated_token_address(wallet, NATIVE_MINT)
    return make_close_account_ix(ata, wallet, wallet)


def is_token_2022(token_program: Pubkey) -> bool:
    return token_program == TOKEN_2022_PROGRAM_ID


def find_missing_atas(
    owner: Pubkey,
    mints: Sequence[Tuple[Pubkey, Pubkey]],
    account_datas: Sequence[Optional[bytes]],
) -> List[Tuple[Pubkey, Pubkey, Pubkey]]:
    """
    Pick the associated token accounts that do not exist yet.

    Args:
        owner: Wallet owning the token accounts
        mints: (mint, token program) pairs, in the order they were fetched
        account_datas: Fetched data per ATA, None where missing

    Returns:
        (ata, mint, token program) for each missing account, deduplicated
    """
    missing: Dict[str, Tuple[Pubkey, Pubkey, Pubkey]] = {}
    for (mint, token_program), data in zip(mints, account_datas):
        if data is not None:
            continue
        ata = get_associated_token_address(owner, mint, token_program)
        missing.setdefault(str(ata), (ata, mint, token_program))
    return list(missing.values())


def make_create_missing_atas_ixs(
    owner: Pubkey,
    mints: Sequence[Tuple[Pubkey, Pubkey]],
    account_datas: Sequence[Optional[bytes]],
) -> List[Instruction]:
    ixs = []
    for ata, mint, token_program in find_missing_atas(owner, mints, account_datas):
        logger.debug(f"Creating missing token account {ata} for mint {mint}")
        ixs.append(make_create_ata_idempotent_ix(owner, ata, owner, mint, token_program))
    return ixs
