"""
Tests for balance projection over pending instructions.
"""

from decimal import Decimal

import pytest
from solders.pubkey import Pubkey

from mrgn.core.constants import MAX_BALANCES
from mrgn.core.errors import DataIntegrityError
from mrgn.services.projection import compute_projected_active_balances, compute_projected_active_banks_no_cpi
from mrgn.transactions.instructions import (
    make_borrow_ix,
    make_compute_budget_ixs,
    make_deposit_ix,
    make_repay_ix,
    make_withdraw_ix,
)
from tests.factories import GROUP, PROGRAM_ID, bank_map_of, borrow, deposit, make_account, make_bank


def _ix(builder, account, bank, amount, **kwargs):
    return builder(
        program_id=PROGRAM_ID,
        group=GROUP,
        marginfi_account=account.address,
        authority=account.authority,
        bank=bank.address,
        amount=amount,
        **kwargs,
    )


def _deposit(account, bank, amount):
    return _ix(make_deposit_ix, account, bank, amount, signer_token_account=Pubkey.new_unique())


def _borrow(account, bank, amount):
    return _ix(make_borrow_ix, account, bank, amount, destination_token_account=Pubkey.new_unique())


def _repay(account, bank, amount, repay_all=None):
    return _ix(make_repay_ix, account, bank, amount, signer_token_account=Pubkey.new_unique(), repay_all=repay_all)


def _withdraw(account, bank, amount, withdraw_all=None):
    return _ix(make_withdraw_ix, account, bank, amount, destination_token_account=Pubkey.new_unique(),
               withdraw_all=withdraw_all)


class TestProjectedActiveBanks:
    def test_deposit_and_borrow_open_slots(self, usdc_bank, sol_bank):
        account = make_account([deposit(usdc_bank, 100)])
        ixs = [_deposit(account, usdc_bank, 1), _borrow(account, sol_bank, 1)]

        banks = compute_projected_active_banks_no_cpi(account.balances, ixs, PROGRAM_ID)

        assert banks == [usdc_bank.address, sol_bank.address]

    def test_close_all_frees_slot(self, usdc_bank, sol_bank):
        account = make_account([deposit(usdc_bank, 100), borrow(sol_bank, 1)])
        ixs = [_repay(account, sol_bank, 0, repay_all=True)]

        assert compute_projected_active_banks_no_cpi(account.balances, ixs, PROGRAM_ID) == [usdc_bank.address]

    def test_foreign_programs_ignored(self, usdc_bank):
        account = make_account([deposit(usdc_bank, 100)])
        ixs = make_compute_budget_ixs(200_000, 1)

        assert compute_projected_active_banks_no_cpi(account.balances, ixs, PROGRAM_ID) == [usdc_bank.address]

    def test_repay_without_position_raises(self, usdc_bank, sol_bank):
        account = make_account([deposit(usdc_bank, 100)])

        with pytest.raises(DataIntegrityError):
            compute_projected_active_banks_no_cpi(account.balances, [_repay(account, sol_bank, 1)], PROGRAM_ID)

    def test_no_free_slot_raises(self):
        banks = [make_bank() for _ in range(MAX_BALANCES)]
        account = make_account([deposit(bank, 1) for bank in banks])

        with pytest.raises(DataIntegrityError, match="No inactive balance"):
            compute_projected_active_banks_no_cpi(account.balances, [_deposit(account, make_bank(), 1)], PROGRAM_ID)


class TestProjectedActiveBalances:
    def test_deposit_adds_asset_shares(self, usdc_bank, bank_map):
        account = make_account()

        projected = compute_projected_active_balances(
            account.balances, [_deposit(account, usdc_bank, 5_000_000)], PROGRAM_ID, bank_map
        )

        slot = projected.balances[0]
        assert slot.active and slot.bank_pk == usdc_bank.address
        assert slot.asset_shares == Decimal(5_000_000)
        assert projected.impacted_asset_banks == [usdc_bank.key]
        assert projected.impacted_liability_banks == []

    def test_partial_repay_reduces_liability(self, usdc_bank, bank_map):
        account = make_account([borrow(usdc_bank, 10)])

        projected = compute_projected_active_balances(
            account.balances, [_repay(account, usdc_bank, 4_000_000)], PROGRAM_ID, bank_map
        )

        assert projected.balances[0].liability_shares == Decimal(6_000_000)

    def test_withdraw_all_closes_slot(self, usdc_bank, bank_map):
        account = make_account([deposit(usdc_bank, 10)])

        projected = compute_projected_active_balances(
            account.balances, [_withdraw(account, usdc_bank, 0, withdraw_all=True)], PROGRAM_ID, bank_map
        )

        assert not projected.balances[0].active

    def test_multiplier_converts_deposit_to_collateral(self, usdc_bank):
        """Integration deposits are underlying amounts; shares track collateral tokens."""
        account = make_account()

        projected = compute_projected_active_balances(
            account.balances,
            [_deposit(account, usdc_bank, 2_000_000)],
            PROGRAM_ID,
            bank_map_of(usdc_bank),
            asset_share_value_multipliers={usdc_bank.key: Decimal(2)},
        )

        assert projected.balances[0].asset_shares == Decimal(1_000_000)

    def test_input_balances_untouched(self, usdc_bank, bank_map):
        account = make_account([deposit(usdc_bank, 10)])
        before = account.balances

        compute_projected_active_balances(
            account.balances, [_withdraw(account, usdc_bank, 0, withdraw_all=True)], PROGRAM_ID, bank_map
        )

        assert account.balances == before and account.balances[0].active
