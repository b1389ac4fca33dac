"""
Instruction encoders, PDAs, token helpers and transaction compilation.
"""

from .instructions import Discriminator
from .tx_size import (
    compile_v0_transaction,
    get_account_keys_count,
    get_tx_size,
    split_instructions_to_fit_transactions,
)
from .types import InstructionsWrapper, PreparedTransaction, TransactionBuilderResult, TransactionType


__all__ = [
    "Discriminator",
    "compile_v0_transaction",
    "get_account_keys_count",
    "get_tx_size",
    "split_instructions_to_fit_transactions",
    "InstructionsWrapper",
    "PreparedTransaction",
    "TransactionBuilderResult",
    "TransactionType",
]
