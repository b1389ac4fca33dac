"""
Transaction result types shared by the builders.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Tuple

from solders.address_lookup_table_account import AddressLookupTableAccount
from solders.instruction import Instruction
from solders.keypair import Keypair
from solders.transaction import VersionedTransaction


class TransactionType(str, Enum):
    CREATE_ACCOUNT = "CREATE_ACCOUNT"
    CREATE_ATA = "CREATE_ATA"
    CRANK = "CRANK"
    DEPOSIT = "DEPOSIT"
    WITHDRAW = "WITHDRAW"
    BORROW = "BORROW"
    REPAY = "REPAY"
    FLASHLOAN = "FLASHLOAN"
    LOOP = "LOOP"
    REPAY_COLLAT = "REPAY_COLLAT"
    SWAP_COLLATERAL = "SWAP_COLLATERAL"
    SWAP_DEBT = "SWAP_DEBT"
    WITHDRAW_EMISSIONS = "WITHDRAW_EMISSIONS"
    CLOSE_ACCOUNT = "CLOSE_ACCOUNT"
    TRANSFER_AUTHORITY = "TRANSFER_AUTHORITY"


@dataclass(frozen=True)
class InstructionsWrapper:
    """Ordered instructions plus any ephemeral signers they need."""
    instructions: List[Instruction]
    keys: List[Keypair] = field(default_factory=list)


@dataclass(frozen=True)
class PreparedTransaction:
    """
    A compiled, unsigned v0 transaction.

    `signers` are ephemeral keys the caller must add besides the wallet.
    """
    transaction: VersionedTransaction
    type: TransactionType
    signers: Tuple[Keypair, ...] = ()
    lookup_tables: Tuple[AddressLookupTableAccount, ...] = ()
    description: Optional[str] = None


@dataclass(frozen=True)
class TransactionBuilderResult:
    """
    Ordered transactions for one user action.

    `action_tx_index` points at the transaction performing the economic
    action; the ones before it are setup or oracle cranks.
    """
    transactions: List[PreparedTransaction]
    action_tx_index: int

    @property
    def action_transaction(self) -> PreparedTransaction:
        return self.transactions[self.action_tx_index]
