"""
Transaction compilation and size measurement.

Transactions are compiled to v0 messages against the supplied lookup
tables and measured with placeholder signatures, matching what the wallet
would eventually submit.
"""

import logging
from typing import List, Sequence

from solders.address_lookup_table_account import AddressLookupTableAccount
from solders.hash import Hash
from solders.instruction import Instruction
from solders.message import MessageV0
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.transaction import VersionedTransaction

from ..core.constants import MAX_ACCOUNT_KEYS, MAX_TX_SIZE

logger = logging.getLogger(__name__)

# Reported when a message cannot even be compiled
OVERFLOW_SIZE = 9999


def compile_v0_transaction(
    payer: Pubkey,
    instructions: Sequence[Instruction],
    blockhash: Hash,
    lookup_tables: Sequence[AddressLookupTableAccount] = (),
) -> VersionedTransaction:
    """
    Compile instructions into an unsigned v0 transaction.

    Signature slots are filled with placeholders so the serialized length
    equals the signed length.
    """
    message = MessageV0.try_compile(payer, list(instructions), list(lookup_tables), blockhash)
    signatures = [Signature.default()] * message.header.num_required_signatures
    return VersionedTransaction.populate(message, signatures)


def get_tx_size(transaction: VersionedTransaction) -> int:
    """Serialized size in bytes."""
    return len(bytes(transaction))


def get_account_keys_count(transaction: VersionedTransaction) -> int:
    """Unique account keys, static plus those loaded from lookup tables."""
    message = transaction.message
    count = len(message.account_keys)
    for lookup in getattr(message, "address_table_lookups", []) or []:
        count += len(lookup.writable_indexes) + len(lookup.readonly_indexes)
    return count


def fits_limits(transaction: VersionedTransaction) -> bool:
    return get_tx_size(transaction) <= MAX_TX_SIZE and get_account_keys_count(transaction) <= MAX_ACCOUNT_KEYS


def measure_instructions(
    payer: Pubkey,
    instructions: Sequence[Instruction],
    blockhash: Hash,
    lookup_tables: Sequence[AddressLookupTableAccount] = (),
):
    """
    Compile and measure in one step.

    Returns:
        (size in bytes, account key count); (OVERFLOW_SIZE, OVERFLOW_SIZE)
        when the message cannot be compiled
    """
    try:
        tx = compile_v0_transaction(payer, instructions, blockhash, lookup_tables)
    except Exception as e:
        logger.debug(f"Message failed to compile: {e}")
        return OVERFLOW_SIZE, OVERFLOW_SIZE
    return get_tx_size(tx), get_account_keys_count(tx)


def split_instructions_to_fit_transactions(
    mandatory_ixs: Sequence[Instruction],
    ixs: Sequence[Instruction],
    payer: Pubkey,
    blockhash: Hash,
    lookup_tables: Sequence[AddressLookupTableAccount] = (),
) -> List[VersionedTransaction]:
    """
    Pack instructions greedily into as few transactions as possible.

    Every transaction starts with `mandatory_ixs` (e.g. compute budget).

    Raises:
        ValueError: If a single instruction cannot fit on its own
    """
    result: List[VersionedTransaction] = []
    buffer: List[Instruction] = []

    def build(extra: Sequence[Instruction]) -> VersionedTransaction:
        return compile_v0_transaction(payer, list(mandatory_ixs) + list(extra), blockhash, lookup_tables)

    for ix in ixs:
        size, _ = measure_instructions(payer, list(mandatory_ixs) + buffer + [ix], blockhash, lookup_tables)
        if size <= MAX_TX_SIZE:
            buffer.append(ix)
            continue

        if not buffer:
            raise ValueError("Single instruction too large to fit in a transaction")

        result.append(build(buffer))
        buffer = [ix]

        solo_size, _ = measure_instructions(payer, list(mandatory_ixs) + buffer, blockhash, lookup_tables)
        if solo_size > MAX_TX_SIZE:
            raise ValueError("Single instruction too large to fit in a transaction")

    if buffer:
        result.append(build(buffer))

    return result
