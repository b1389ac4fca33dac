"""
Flash loan wrapping.

Inner instructions run between begin and end flash loan; the health check
happens once, at the end, against the banks active after all of them.
"""

import logging
from typing import List, Mapping, Sequence

from solders.address_lookup_table_account import AddressLookupTableAccount
from solders.instruction import Instruction
from solders.keypair import Keypair
from solders.pubkey import Pubkey

from ..core.errors import DataNotFound
from ..models.account import MarginfiAccount
from ..models.bank import Bank
from ..services.projection import compute_projected_active_banks_no_cpi
from ..transactions import instructions as ix
from ..transactions.health_accounts import compute_health_account_metas
from ..transactions.types import PreparedTransaction, TransactionType
from .common import ActionContext, prepare_transaction

logger = logging.getLogger(__name__)


def make_flashloan_ixs(
    program_id: Pubkey,
    account: MarginfiAccount,
    bank_map: Mapping[str, Bank],
    ixs: Sequence[Instruction],
) -> List[Instruction]:
    """
    Wrap `ixs` in begin / end flash loan.

    Raises:
        DataNotFound: If a projected active bank is missing from bank_map
        DataIntegrityError: If the inner instructions cannot be projected
    """
    projected = compute_projected_active_banks_no_cpi(account.balances, ixs, program_id)

    banks = []
    for pk in projected:
        bank = bank_map.get(str(pk))
        if bank is None:
            raise DataNotFound(f"Bank {pk} not found", kind="bank", key=str(pk))
        banks.append(bank)

    begin = ix.make_begin_flash_loan_ix(program_id, account.address, account.authority, len(ixs) + 1)
    end = ix.make_end_flash_loan_ix(
        program_id, account.address, account.authority, compute_health_account_metas(banks)
    )
    return [begin] + list(ixs) + [end]


async def make_flashloan_tx(
    ctx: ActionContext,
    account: MarginfiAccount,
    ixs: Sequence[Instruction],
    extra_lookup_tables: Sequence[AddressLookupTableAccount] = (),
    signers: Sequence[Keypair] = (),
    tx_type: TransactionType = TransactionType.FLASHLOAN,
) -> PreparedTransaction:
    """Compile the flash loan against the group's and any extra lookup tables."""
    wrapped = make_flashloan_ixs(ctx.program_id, account, ctx.bank_map, ixs)
    return await prepare_transaction(
        ctx,
        account.authority,
        wrapped,
        tx_type,
        extra_lookup_tables=extra_lookup_tables,
        signers=signers,
    )
