"""
Remaining accounts for instructions that run an on-chain health check.

The program walks the account's balance slots and expects, per bank, the
bank itself followed by its oracle (and integration state for Kamino and
Drift banks). Slot order decides where newly opened banks land.
"""

import logging
from typing import Dict, List, Mapping, Sequence

from solders.instruction import AccountMeta
from solders.pubkey import Pubkey

from ..core.constants import DEFAULT_PUBKEY
from ..core.errors import DataNotFound
from ..models.balance import Balance
from ..models.bank import AssetTag, Bank

logger = logging.getLogger(__name__)


def compute_health_check_accounts(
    balances: Sequence[Balance],
    bank_map: Mapping[str, Bank],
    mandatory_banks: Sequence[Pubkey] = (),
    excluded_banks: Sequence[Pubkey] = (),
) -> List[Bank]:
    """
    Banks the program needs to see to evaluate the account's health.

    Active slots are kept in place unless excluded. Mandatory banks that are
    not yet active fill the empty slots in order.

    Args:
        balances: The account's balance slots
        bank_map: Banks keyed by address string
        mandatory_banks: Banks that must appear (e.g. a bank being opened)
        excluded_banks: Banks to leave out (e.g. a position being closed)

    Returns:
        Banks in slot order

    Raises:
        DataNotFound: If a selected bank is not in bank_map
    """
    active_keys = {str(b.bank_pk) for b in balances if b.active}
    excluded = {str(pk) for pk in excluded_banks}

    banks_to_add: List[Pubkey] = []
    for pk in mandatory_banks:
        if str(pk) not in active_keys and pk not in banks_to_add:
            banks_to_add.append(pk)

    slots_to_keep = len(banks_to_add)
    selected: List[Pubkey] = []

    for balance in balances:
        if balance.active:
            if str(balance.bank_pk) not in excluded:
                selected.append(balance.bank_pk)
        elif slots_to_keep > 0:
            slots_to_keep -= 1
            selected.append(banks_to_add.pop(0))

    banks = []
    for pk in selected:
        bank = bank_map.get(str(pk))
        if bank is None:
            raise DataNotFound(f"Bank {pk} not found", kind="bank", key=str(pk))
        banks.append(bank)
    return banks


def _bank_accounts(bank: Bank) -> List[Pubkey]:
    keys = [bank.address]
    if bank.oracle_key != DEFAULT_PUBKEY:
        keys.append(bank.oracle_key)

    if bank.asset_tag == AssetTag.KAMINO:
        accounts = bank.kamino_integration_accounts
        if accounts is None:
            logger.warning(f"Kamino reserve not set for bank {bank.display_name()}")
        else:
            keys.append(accounts.kamino_reserve)
    elif bank.asset_tag == AssetTag.DRIFT:
        accounts = bank.drift_integration_accounts
        if accounts is None:
            logger.warning(f"Drift spot market not set for bank {bank.display_name()}")
        else:
            keys.append(accounts.drift_spot_market)

    return keys


def compute_health_account_metas(banks: Sequence[Bank]) -> List[AccountMeta]:
    """
    Readonly metas for `banks`, grouped per bank.

    Groups are sorted by bank address bytes, descending, which is the order
    the program iterates them in.
    """
    groups: Dict[bytes, List[Pubkey]] = {}
    for bank in banks:
        groups[bytes(bank.address)] = _bank_accounts(bank)

    metas = []
    for address in sorted(groups, reverse=True):
        for pk in groups[address]:
            metas.append(AccountMeta(pubkey=pk, is_signer=False, is_writable=False))
    return metas


def make_health_account_metas(
    balances: Sequence[Balance],
    bank_map: Mapping[str, Bank],
    mandatory_banks: Sequence[Pubkey] = (),
    excluded_banks: Sequence[Pubkey] = (),
) -> List[AccountMeta]:
    """compute_health_check_accounts followed by compute_health_account_metas."""
    banks = compute_health_check_accounts(balances, bank_map, mandatory_banks, excluded_banks)
    return compute_health_account_metas(banks)
