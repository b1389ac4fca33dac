"""
Tests for v0 compilation, size measurement and greedy packing.
"""

import pytest
from solders.instruction import AccountMeta, Instruction
from solders.pubkey import Pubkey

from mrgn.core.constants import MAX_TX_SIZE
from mrgn.transactions.tx_size import (
    OVERFLOW_SIZE,
    compile_v0_transaction,
    fits_limits,
    get_account_keys_count,
    get_tx_size,
    measure_instructions,
    split_instructions_to_fit_transactions,
)


def _ix(accounts=2, data_len=8):
    return Instruction(
        program_id=Pubkey.new_unique(),
        accounts=[AccountMeta(Pubkey.new_unique(), False, True) for _ in range(accounts)],
        data=bytes(data_len),
    )


class TestMeasure:
    def test_placeholder_signature_counted(self, blockhash):
        payer = Pubkey.new_unique()

        tx = compile_v0_transaction(payer, [_ix()], blockhash)

        assert len(tx.signatures) == 1
        assert get_tx_size(tx) == len(bytes(tx))
        assert get_account_keys_count(tx) == 4
        assert fits_limits(tx)

    def test_measure_matches_compiled(self, blockhash):
        payer = Pubkey.new_unique()
        ixs = [_ix(), _ix(3)]

        size, keys = measure_instructions(payer, ixs, blockhash)

        tx = compile_v0_transaction(payer, ixs, blockhash)
        assert (size, keys) == (get_tx_size(tx), get_account_keys_count(tx))

    def test_too_many_accounts_does_not_fit(self, blockhash):
        tx = compile_v0_transaction(Pubkey.new_unique(), [_ix(70)], blockhash)

        assert not fits_limits(tx)

    def test_uncompilable_reports_overflow(self, blockhash):
        """More than 256 unique keys cannot be indexed by a v0 message."""
        assert measure_instructions(Pubkey.new_unique(), [_ix(300)], blockhash) == (OVERFLOW_SIZE, OVERFLOW_SIZE)


class TestSplit:
    def test_small_batch_stays_together(self, blockhash):
        txs = split_instructions_to_fit_transactions([], [_ix(), _ix()], Pubkey.new_unique(), blockhash)

        assert len(txs) == 1
        assert len(txs[0].message.instructions) == 2

    def test_overflow_starts_new_transaction(self, blockhash):
        ixs = [_ix(data_len=500) for _ in range(4)]

        txs = split_instructions_to_fit_transactions([], ixs, Pubkey.new_unique(), blockhash)

        assert len(txs) > 1
        assert sum(len(tx.message.instructions) for tx in txs) == 4
        assert all(get_tx_size(tx) <= MAX_TX_SIZE for tx in txs)

    def test_mandatory_instructions_lead_every_transaction(self, blockhash):
        budget = _ix(0, 5)
        ixs = [_ix(data_len=500) for _ in range(3)]

        txs = split_instructions_to_fit_transactions([budget], ixs, Pubkey.new_unique(), blockhash)

        for tx in txs:
            first = tx.message.instructions[0]
            assert tx.message.account_keys[first.program_id_index] == budget.program_id

    def test_oversized_single_instruction(self, blockhash):
        with pytest.raises(ValueError, match="too large"):
            split_instructions_to_fit_transactions([], [_ix(data_len=2000)], Pubkey.new_unique(), blockhash)
