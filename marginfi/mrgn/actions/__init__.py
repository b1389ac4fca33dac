"""
Transaction builders for user actions.

- single actions: deposit, borrow, repay, withdraw
- account lifecycle: create, close, transfer, emissions, token accounts
- flash loan composites: loop, repay with collateral, swap collateral, swap debt
"""

from .borrow import make_borrow_ixs, make_borrow_tx
from .common import NO_OVERRIDES, AccountOverrides, ActionContext
from .deposit import make_deposit_ixs, make_deposit_tx
from .flash_loan import make_flashloan_ixs, make_flashloan_tx
from .lifecycle import (
    make_close_account_ixs,
    make_create_account_ixs,
    make_create_account_tx,
    make_setup_atas_tx,
    make_transfer_account_ixs,
    make_withdraw_emissions_ixs,
)
from .loop import make_loop_tx
from .repay import make_repay_ixs, make_repay_tx
from .repay_with_collateral import make_repay_with_collateral_tx
from .swap import FlashLoanActionResult
from .swap_collateral import make_swap_collateral_tx
from .swap_debt import make_swap_debt_tx
from .withdraw import make_withdraw_ixs, make_withdraw_tx


__all__ = [
    "make_borrow_ixs",
    "make_borrow_tx",
    "NO_OVERRIDES",
    "AccountOverrides",
    "ActionContext",
    "make_deposit_ixs",
    "make_deposit_tx",
    "make_flashloan_ixs",
    "make_flashloan_tx",
    "make_close_account_ixs",
    "make_create_account_ixs",
    "make_create_account_tx",
    "make_setup_atas_tx",
    "make_transfer_account_ixs",
    "make_withdraw_emissions_ixs",
    "make_loop_tx",
    "make_repay_ixs",
    "make_repay_tx",
    "make_repay_with_collateral_tx",
    "FlashLoanActionResult",
    "make_swap_collateral_tx",
    "make_swap_debt_tx",
    "make_withdraw_ixs",
    "make_withdraw_tx",
]
