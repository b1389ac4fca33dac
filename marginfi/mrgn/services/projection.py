"""
Balance projection over pending instructions.

Walks a list of instructions, keeps only marginfi lending instructions and
replays their effect on the account's balance slots:
- deposits and borrows open a slot (first inactive one) when needed
- repays and withdraws require the slot; the "all" flag closes it
- share deltas use the same conservative rounding as the program

The bank is always the fourth account (group, account, authority, bank).
"""

import logging
from dataclasses import dataclass, replace
from decimal import Decimal
from typing import Dict, List, Mapping, Optional, Sequence

from solders.instruction import Instruction
from solders.pubkey import Pubkey

from ..core.errors import DataIntegrityError, DataNotFound
from ..core.fixed_point import ONE, ZERO
from ..models.balance import Balance
from ..models.bank import Bank
from ..transactions.instructions import Discriminator, decode_amount_and_flag
from .bank_compute import get_asset_shares, get_liability_shares

logger = logging.getLogger(__name__)

_BANK_ACCOUNT_INDEX = 3

_OPENING = {
    Discriminator.LENDING_ACCOUNT_DEPOSIT: "deposit",
    Discriminator.KAMINO_DEPOSIT: "deposit",
    Discriminator.DRIFT_DEPOSIT: "deposit",
    Discriminator.LENDING_ACCOUNT_BORROW: "borrow",
}

_CLOSING = {
    Discriminator.LENDING_ACCOUNT_REPAY: "repay",
    Discriminator.LENDING_ACCOUNT_WITHDRAW: "withdraw",
    Discriminator.KAMINO_WITHDRAW: "withdraw",
    Discriminator.DRIFT_WITHDRAW: "withdraw",
}


@dataclass(frozen=True)
class ProjectedBalances:
    balances: List[Balance]
    impacted_asset_banks: List[str]
    impacted_liability_banks: List[str]


def _classify(ix: Instruction, program_id: Pubkey) -> Optional[str]:
    if ix.program_id != program_id or len(ix.data) < 8:
        return None
    discriminator = bytes(ix.data[:8])
    return _OPENING.get(discriminator) or _CLOSING.get(discriminator)


def _target_bank(ix: Instruction) -> Pubkey:
    return ix.accounts[_BANK_ACCOUNT_INDEX].pubkey


def _find_slot(slots: List[Balance], bank: Pubkey) -> int:
    for index, slot in enumerate(slots):
        if slot.active and slot.bank_pk == bank:
            return index
    return -1


def _open_slot(slots: List[Balance], bank: Pubkey) -> int:
    index = _find_slot(slots, bank)
    if index != -1:
        return index
    for index, slot in enumerate(slots):
        if not slot.active:
            slots[index] = Balance(active=True, bank_pk=bank)
            return index
    raise DataIntegrityError("No inactive balance found")


def _require_slot(slots: List[Balance], bank: Pubkey, ix_index: int, action: str) -> int:
    index = _find_slot(slots, bank)
    if index == -1:
        raise DataIntegrityError(
            f"Balance for bank {bank} should be projected active at this point (ix {ix_index}: {action})"
        )
    return index


def compute_projected_active_banks_no_cpi(
    balances: Sequence[Balance],
    instructions: Sequence[Instruction],
    program_id: Pubkey,
) -> List[Pubkey]:
    """
    Banks active after the instructions run, ignoring share amounts.

    Used to build the end-flash-loan health accounts.

    Raises:
        DataIntegrityError: No free slot for a new position, or a repay /
            withdraw against a bank that is not active
    """
    slots = [Balance(active=b.active, bank_pk=b.bank_pk) for b in balances]

    for index, ix in enumerate(instructions):
        action = _classify(ix, program_id)
        if action is None:
            continue

        bank = _target_bank(ix)
        if action in ("deposit", "borrow"):
            _open_slot(slots, bank)
            continue

        slot_index = _require_slot(slots, bank, index, action)
        _, close_all = decode_amount_and_flag(bytes(ix.data))
        if close_all:
            slots[slot_index] = Balance.empty()

    return [slot.bank_pk for slot in slots if slot.active]


def compute_projected_active_balances(
    balances: Sequence[Balance],
    instructions: Sequence[Instruction],
    program_id: Pubkey,
    bank_map: Mapping[str, Bank],
    asset_share_value_multipliers: Optional[Mapping[str, Decimal]] = None,
) -> ProjectedBalances:
    """
    Balances after the instructions run, with share amounts.

    Args:
        balances: Current balance slots (not modified)
        instructions: Instructions in execution order
        program_id: marginfi program; other programs' instructions are ignored
        bank_map: Banks keyed by address string
        asset_share_value_multipliers: Underlying-per-collateral rate for
            integration banks; deposits are converted before share math

    Returns:
        ProjectedBalances with the new slots and the banks whose asset /
        liability side changed

    Raises:
        DataNotFound: A touched bank is missing from bank_map
        DataIntegrityError: See compute_projected_active_banks_no_cpi
    """
    multipliers = asset_share_value_multipliers or {}
    slots = list(balances)
    impacted_assets: Dict[str, None] = {}
    impacted_liabilities: Dict[str, None] = {}

    def bank_for(pk: Pubkey) -> Bank:
        bank = bank_map.get(str(pk))
        if bank is None:
            raise DataNotFound(f"Bank {pk} not found in bank map", kind="bank", key=str(pk))
        return bank

    def settle(slot_index: int, slot: Balance) -> None:
        if slot.asset_shares.is_zero() and slot.liability_shares.is_zero():
            slots[slot_index] = Balance.empty()
        else:
            slots[slot_index] = slot

    for index, ix in enumerate(instructions):
        action = _classify(ix, program_id)
        if action is None:
            continue

        bank_pk = _target_bank(ix)
        key = str(bank_pk)
        amount, flag = decode_amount_and_flag(bytes(ix.data))

        if action == "deposit":
            impacted_assets[key] = None
            slot_index = _open_slot(slots, bank_pk)
            bank = bank_for(bank_pk)
            collateral_amount = Decimal(amount) / multipliers.get(key, ONE)
            slot = slots[slot_index]
            slots[slot_index] = replace(
                slot, asset_shares=slot.asset_shares + get_asset_shares(bank, collateral_amount)
            )

        elif action == "borrow":
            impacted_liabilities[key] = None
            slot_index = _open_slot(slots, bank_pk)
            bank = bank_for(bank_pk)
            slot = slots[slot_index]
            slots[slot_index] = replace(
                slot, liability_shares=slot.liability_shares + get_liability_shares(bank, amount)
            )

        elif action == "repay":
            impacted_liabilities[key] = None
            slot_index = _require_slot(slots, bank_pk, index, action)
            slot = slots[slot_index]
            if flag:
                settle(slot_index, replace(slot, liability_shares=ZERO))
            else:
                shares = get_liability_shares(bank_for(bank_pk), amount)
                settle(slot_index, replace(slot, liability_shares=max(ZERO, slot.liability_shares - shares)))

        else:
            impacted_assets[key] = None
            slot_index = _require_slot(slots, bank_pk, index, action)
            slot = slots[slot_index]
            if flag:
                settle(slot_index, replace(slot, asset_shares=ZERO))
            else:
                # Withdrawals are denominated in the bank's own token
                shares = get_asset_shares(bank_for(bank_pk), amount)
                settle(slot_index, replace(slot, asset_shares=max(ZERO, slot.asset_shares - shares)))

    return ProjectedBalances(
        balances=slots,
        impacted_asset_banks=list(impacted_assets),
        impacted_liability_banks=list(impacted_liabilities),
    )
