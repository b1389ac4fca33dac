"""
Tests for instruction encoders and PDA derivation.
"""

import struct

import pytest
from solders.pubkey import Pubkey

from mrgn.core.constants import SYSVAR_INSTRUCTIONS_ID
from mrgn.transactions.instructions import (
    Discriminator,
    decode_amount_and_flag,
    make_begin_flash_loan_ix,
    make_borrow_ix,
    make_deposit_ix,
    make_drift_withdraw_ix,
    make_end_flash_loan_ix,
    make_repay_ix,
    make_withdraw_ix,
    readonly_metas,
)
from mrgn.transactions.pda import (
    derive_bank_liquidity_vault,
    derive_bank_liquidity_vault_authority,
    derive_marginfi_account_pda,
    get_associated_token_address,
)
from tests.factories import GROUP, PROGRAM_ID


@pytest.fixture
def keys():
    return {name: Pubkey.new_unique() for name in ("account", "authority", "bank", "token")}


def _drift_withdraw_args(keys):
    return dict(
        program_id=PROGRAM_ID, group=GROUP, marginfi_account=keys["account"], authority=keys["authority"],
        bank=keys["bank"], destination_token_account=keys["token"], drift_state=Pubkey.new_unique(),
        drift_user=Pubkey.new_unique(), drift_user_stats=Pubkey.new_unique(),
        drift_spot_market=Pubkey.new_unique(), drift_spot_market_vault=Pubkey.new_unique(),
        drift_signer=Pubkey.new_unique(), mint=Pubkey.new_unique(), amount=9,
    )


class TestLendingInstructions:
    def test_deposit_layout(self, keys):
        ix = make_deposit_ix(
            PROGRAM_ID, GROUP, keys["account"], keys["authority"], keys["bank"], keys["token"], 1_500_000
        )

        data = bytes(ix.data)
        assert data[:8] == Discriminator.LENDING_ACCOUNT_DEPOSIT
        assert struct.unpack_from("<Q", data, 8)[0] == 1_500_000
        assert data[16:] == b"\x00"
        assert ix.accounts[3].pubkey == keys["bank"]
        assert ix.accounts[5].pubkey == derive_bank_liquidity_vault(PROGRAM_ID, keys["bank"])
        assert ix.accounts[2].is_signer

    def test_withdraw_all_flag(self, keys):
        ix = make_withdraw_ix(
            PROGRAM_ID, GROUP, keys["account"], keys["authority"], keys["bank"], keys["token"], 0, withdraw_all=True
        )

        assert bytes(ix.data)[16:] == b"\x01\x01"
        assert ix.accounts[0].is_writable
        assert ix.accounts[5].pubkey == derive_bank_liquidity_vault_authority(PROGRAM_ID, keys["bank"])

    def test_remaining_accounts_are_appended(self, keys):
        extra = [Pubkey.new_unique(), Pubkey.new_unique()]
        ix = make_borrow_ix(
            PROGRAM_ID, GROUP, keys["account"], keys["authority"], keys["bank"], keys["token"], 1,
            remaining_accounts=readonly_metas(extra),
        )

        assert [m.pubkey for m in ix.accounts[-2:]] == extra
        assert not any(m.is_writable for m in ix.accounts[-2:])
        assert len(bytes(ix.data)) == 16

    def test_bank_is_fourth_account(self, keys):
        """Projection reads the bank from the same position for every lending instruction."""
        for builder in (make_deposit_ix, make_repay_ix, make_withdraw_ix, make_borrow_ix):
            ix = builder(PROGRAM_ID, GROUP, keys["account"], keys["authority"], keys["bank"], keys["token"], 1)
            assert ix.accounts[3].pubkey == keys["bank"]


class TestFlashLoanInstructions:
    def test_begin_encodes_end_index(self, keys):
        ix = make_begin_flash_loan_ix(PROGRAM_ID, keys["account"], keys["authority"], end_index=7)

        assert bytes(ix.data) == Discriminator.LENDING_ACCOUNT_START_FLASHLOAN + struct.pack("<Q", 7)
        assert ix.accounts[2].pubkey == SYSVAR_INSTRUCTIONS_ID

    def test_end_carries_health_accounts(self, keys):
        metas = readonly_metas([Pubkey.new_unique()])
        ix = make_end_flash_loan_ix(PROGRAM_ID, keys["account"], keys["authority"], remaining_accounts=metas)

        assert bytes(ix.data) == Discriminator.LENDING_ACCOUNT_END_FLASHLOAN
        assert len(ix.accounts) == 3


class TestDecodeAmountAndFlag:
    def test_option_bool_absent(self):
        data = Discriminator.LENDING_ACCOUNT_REPAY + struct.pack("<Q", 42) + b"\x00"
        assert decode_amount_and_flag(data) == (42, None)

    def test_option_bool_true(self):
        data = Discriminator.LENDING_ACCOUNT_REPAY + struct.pack("<Q", 42) + b"\x01\x01"
        assert decode_amount_and_flag(data) == (42, True)

    def test_option_bool_false(self):
        data = Discriminator.LENDING_ACCOUNT_REPAY + struct.pack("<Q", 42) + b"\x01\x00"
        assert decode_amount_and_flag(data) == (42, False)

    def test_plain_bool(self, keys):
        """Drift withdrawals encode the flag as a bare bool."""
        common = _drift_withdraw_args(keys)

        assert decode_amount_and_flag(bytes(make_drift_withdraw_ix(withdraw_all=True, **common).data)) == (9, True)
        assert not decode_amount_and_flag(bytes(make_drift_withdraw_ix(**common).data))[1]

    def test_drift_reward_accounts_limited(self, keys):
        with pytest.raises(ValueError):
            make_drift_withdraw_ix(reward_accounts=[Pubkey.new_unique() for _ in range(7)], **_drift_withdraw_args(keys))


class TestPda:
    def test_account_pda_is_deterministic(self):
        authority = Pubkey.new_unique()

        first = derive_marginfi_account_pda(PROGRAM_ID, GROUP, authority, 0)
        again = derive_marginfi_account_pda(PROGRAM_ID, GROUP, authority, 0)
        other = derive_marginfi_account_pda(PROGRAM_ID, GROUP, authority, 1)

        assert first == again
        assert first[0] != other[0]

    def test_third_party_id_changes_address(self):
        authority = Pubkey.new_unique()

        assert (
            derive_marginfi_account_pda(PROGRAM_ID, GROUP, authority, 0)[0]
            != derive_marginfi_account_pda(PROGRAM_ID, GROUP, authority, 0, third_party_id=5)[0]
        )

    def test_associated_token_address_off_curve(self):
        ata = get_associated_token_address(Pubkey.new_unique(), Pubkey.new_unique())
        assert not ata.is_on_curve()
