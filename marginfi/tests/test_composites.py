"""
Test Flash-Loan Composites

Loop, repay-with-collateral, swap-collateral and swap-debt:
- same-mint paths skip the swap entirely
- routes are tried most-accounts first and the first one that fits wins
- route failures surface as NO_SWAP_ROUTES
"""

import struct
from unittest.mock import MagicMock

import pytest
from solders.pubkey import Pubkey

from integrations.solana.jupiter import SWAP_MODE_EXACT_OUT, JupiterApiError
from mrgn.actions import (
    ActionContext,
    make_loop_tx,
    make_repay_with_collateral_tx,
    make_swap_collateral_tx,
    make_swap_debt_tx,
)
from mrgn.actions.swap import compose_flashloan_candidates
from mrgn.core.constants import COMPUTE_BUDGET_PROGRAM_ID
from mrgn.core.errors import InvalidAmountError, TransactionBuildingError, TransactionBuildingErrorCode
from mrgn.models.bank import AssetTag, KaminoIntegrationAccounts
from mrgn.transactions.instructions import Discriminator
from mrgn.transactions.types import TransactionType
from tests.factories import (
    GROUP,
    PROGRAM_ID,
    bank_map_of,
    borrow,
    deposit,
    jupiter_quote,
    jupiter_swap_payload,
    make_account,
    make_bank,
    make_price,
)


@pytest.fixture
def ctx(usdc_bank, sol_bank, bank_map, oracle_prices, mock_rpc, blockhash):
    return ActionContext(
        program_id=PROGRAM_ID,
        group=GROUP,
        bank_map=bank_map,
        oracle_prices=oracle_prices,
        rpc=mock_rpc,
        blockhash=blockhash,
    )


def _jupiter(quote, payloads):
    """Jupiter stand-in answering every quote with `quote` and routes in `payloads` order."""
    jupiter = MagicMock()
    jupiter.get_quote.return_value = quote
    jupiter.get_swap_instructions.side_effect = list(payloads)
    return jupiter


def _instructions(prepared):
    """(program id, data) for each compiled instruction."""
    message = prepared.transaction.message
    keys = message.account_keys
    return [(keys[ci.program_id_index], bytes(ci.data)) for ci in message.instructions]


def _find(prepared, discriminator):
    return [data for _, data in _instructions(prepared) if data[:8] == discriminator]


def _amount(data):
    return struct.unpack_from("<Q", data, 8)[0]


# ============================================================================
# Loop
# ============================================================================

class TestLoop:
    @pytest.mark.asyncio
    async def test_same_mint_loop_has_no_swap(self, ctx, usdc_bank):
        """Borrow and deposit in one bank: the deposit is borrow plus principal."""
        account = make_account([deposit(usdc_bank, 1000)])

        result = await make_loop_tx(ctx, account, usdc_bank.address, usdc_bank.address, 100, deposit_amount=50)

        action = result.action_transaction
        assert action.type == TransactionType.LOOP
        assert {program for program, _ in _instructions(action)} <= {PROGRAM_ID, COMPUTE_BUDGET_PROGRAM_ID}
        assert _amount(_find(action, Discriminator.LENDING_ACCOUNT_BORROW)[0]) == 100_000_000
        assert _amount(_find(action, Discriminator.LENDING_ACCOUNT_DEPOSIT)[0]) == 150_000_000
        assert result.quote is None

    @pytest.mark.asyncio
    async def test_flash_loan_brackets_legs(self, ctx, usdc_bank):
        account = make_account([deposit(usdc_bank, 1000)])

        result = await make_loop_tx(ctx, account, usdc_bank.address, usdc_bank.address, 100)

        datas = [data for _, data in _instructions(result.action_transaction)]
        assert datas[0][:8] == Discriminator.LENDING_ACCOUNT_START_FLASHLOAN
        assert datas[-1] == Discriminator.LENDING_ACCOUNT_END_FLASHLOAN
        assert _amount(datas[0]) == len(datas) - 1

    @pytest.mark.asyncio
    async def test_swap_output_threshold_is_deposited(self, ctx, usdc_bank, sol_bank):
        account = make_account([deposit(sol_bank, 10)])
        jupiter = _jupiter(jupiter_quote(100_000_000, 600_000_000, 590_000_000), [jupiter_swap_payload()] * 2)

        result = await make_loop_tx(ctx, account, sol_bank.address, usdc_bank.address, 100, jupiter=jupiter)

        action = result.action_transaction
        assert _amount(_find(action, Discriminator.LENDING_ACCOUNT_DEPOSIT)[0]) == 590_000_000
        assert result.quote["otherAmountThreshold"] == "590000000"

    @pytest.mark.asyncio
    async def test_oversized_route_falls_back(self, ctx, usdc_bank, sol_bank):
        """A route touching too many accounts is skipped for the next candidate."""
        account = make_account([deposit(sol_bank, 10)])
        jupiter = MagicMock()
        jupiter.get_quote.side_effect = lambda params, max_accounts: jupiter_quote(1, max_accounts)
        jupiter.get_swap_instructions.side_effect = [jupiter_swap_payload(60), jupiter_swap_payload(4)]

        result = await make_loop_tx(ctx, account, sol_bank.address, usdc_bank.address, 100, jupiter=jupiter)

        assert result.quote["outAmount"] == "30"

    @pytest.mark.asyncio
    async def test_every_route_too_large(self, ctx, usdc_bank, sol_bank):
        account = make_account([deposit(sol_bank, 10)])
        jupiter = _jupiter(jupiter_quote(1, 1), [jupiter_swap_payload(60), jupiter_swap_payload(60)])

        with pytest.raises(TransactionBuildingError) as exc_info:
            await make_loop_tx(ctx, account, sol_bank.address, usdc_bank.address, 100, jupiter=jupiter)

        assert exc_info.value.code == TransactionBuildingErrorCode.JUPITER_SWAP_SIZE_EXCEEDED_LOOP
        details = exc_info.value.details
        assert [attempt["max_accounts"] for attempt in details["attempts"]] == [40, 30]
        assert details["bytes"] == max(attempt["bytes"] for attempt in details["attempts"])
        assert details["bytes"] > 1232 or details["account_keys"] > 64

    def test_nothing_to_compose_is_no_swap_routes(self, usdc_bank, sol_bank, bank_map, blockhash):
        with pytest.raises(TransactionBuildingError) as exc_info:
            compose_flashloan_candidates(
                PROGRAM_ID,
                make_account(),
                bank_map,
                blockhash,
                [],
                [],
                lambda candidate: ([], []),
                TransactionBuildingError.jupiter_swap_size_exceeded_loop,
                route_mints=(usdc_bank.mint, sol_bank.mint),
            )

        assert exc_info.value.code == TransactionBuildingErrorCode.NO_SWAP_ROUTES
        assert exc_info.value.details["input_mint"] == str(usdc_bank.mint)

    @pytest.mark.asyncio
    async def test_route_failure_is_no_swap_routes(self, ctx, usdc_bank, sol_bank):
        account = make_account([deposit(sol_bank, 10)])
        jupiter = MagicMock()
        jupiter.get_quote.side_effect = JupiterApiError("No routes found")

        with pytest.raises(TransactionBuildingError) as exc_info:
            await make_loop_tx(ctx, account, sol_bank.address, usdc_bank.address, 100, jupiter=jupiter)

        assert exc_info.value.code == TransactionBuildingErrorCode.NO_SWAP_ROUTES

    @pytest.mark.asyncio
    async def test_different_mints_without_jupiter(self, ctx, usdc_bank, sol_bank):
        account = make_account([deposit(sol_bank, 10)])

        with pytest.raises(TransactionBuildingError) as exc_info:
            await make_loop_tx(ctx, account, sol_bank.address, usdc_bank.address, 100)

        assert exc_info.value.code == TransactionBuildingErrorCode.NO_SWAP_ROUTES

    @pytest.mark.asyncio
    async def test_non_positive_borrow_rejected(self, ctx, usdc_bank):
        with pytest.raises(InvalidAmountError):
            await make_loop_tx(ctx, make_account(), usdc_bank.address, usdc_bank.address, 0)

    @pytest.mark.asyncio
    async def test_missing_atas_are_created_first(self, ctx, usdc_bank):
        account = make_account([deposit(usdc_bank, 1000)])

        result = await make_loop_tx(ctx, account, usdc_bank.address, usdc_bank.address, 100)

        assert [tx.type for tx in result.transactions] == [TransactionType.CREATE_ATA, TransactionType.LOOP]
        assert result.action_tx_index == 1


# ============================================================================
# Repay with collateral
# ============================================================================

class TestRepayWithCollateral:
    @pytest.mark.asyncio
    async def test_swap_covering_debt_closes_liability(self, ctx, usdc_bank, sol_bank):
        """Swap output above the debt repays exactly the debt, with the repay-all flag."""
        account = make_account([deposit(sol_bank, 10), borrow(usdc_bank, 500)])
        jupiter = _jupiter(jupiter_quote(4_000_000_000, 600_000_000, 595_000_000), [jupiter_swap_payload()] * 2)

        result = await make_repay_with_collateral_tx(
            ctx, account, sol_bank.address, usdc_bank.address, 4, jupiter=jupiter
        )

        repay = _find(result.action_transaction, Discriminator.LENDING_ACCOUNT_REPAY)[0]
        assert _amount(repay) == 500_000_000
        assert repay[16:] == b"\x01\x01"
        withdraw = _find(result.action_transaction, Discriminator.LENDING_ACCOUNT_WITHDRAW)[0]
        assert _amount(withdraw) == 4_000_000_000
        assert result.action_transaction.type == TransactionType.REPAY_COLLAT

    @pytest.mark.asyncio
    async def test_partial_repay_uses_threshold(self, ctx, usdc_bank, sol_bank):
        account = make_account([deposit(sol_bank, 10), borrow(usdc_bank, 500)])
        jupiter = _jupiter(jupiter_quote(1_000_000_000, 150_000_000, 149_000_000), [jupiter_swap_payload()] * 2)

        result = await make_repay_with_collateral_tx(
            ctx, account, sol_bank.address, usdc_bank.address, 1, jupiter=jupiter
        )

        repay = _find(result.action_transaction, Discriminator.LENDING_ACCOUNT_REPAY)[0]
        assert _amount(repay) == 149_000_000
        assert repay[16:] == b"\x01\x00"


# ============================================================================
# Swap collateral / swap debt
# ============================================================================

class TestSwapCollateral:
    @pytest.mark.asyncio
    async def test_withdraw_clamped_to_position(self, ctx, usdc_bank, sol_bank, caplog):
        account = make_account([deposit(sol_bank, 10)])
        jupiter = _jupiter(jupiter_quote(10_000_000_000, 1_500_000_000, 1_490_000_000), [jupiter_swap_payload()] * 2)

        result = await make_swap_collateral_tx(
            ctx, account, sol_bank.address, usdc_bank.address, 25, jupiter=jupiter
        )

        quoted = jupiter.get_quote.call_args.args[0]
        assert quoted.amount == 10_000_000_000
        withdraw = _find(result.action_transaction, Discriminator.LENDING_ACCOUNT_WITHDRAW)[0]
        assert withdraw[16:] == b"\x01\x01"
        deposit_data = _find(result.action_transaction, Discriminator.LENDING_ACCOUNT_DEPOSIT)[0]
        assert _amount(deposit_data) == 1_490_000_000
        assert "Clamping" in caplog.text

    @pytest.mark.asyncio
    async def test_missing_kamino_state_fails_before_routing(self, usdc_bank, mock_rpc, blockhash):
        kamino = make_bank(
            asset_tag=AssetTag.KAMINO,
            kamino_integration_accounts=KaminoIntegrationAccounts(
                kamino_reserve=Pubkey.new_unique(), kamino_obligation=Pubkey.new_unique()
            ),
        )
        ctx = ActionContext(
            program_id=PROGRAM_ID,
            group=GROUP,
            bank_map=bank_map_of(usdc_bank, kamino),
            oracle_prices={usdc_bank.key: make_price(1), kamino.key: make_price(1)},
            rpc=mock_rpc,
            blockhash=blockhash,
        )
        jupiter = MagicMock()

        with pytest.raises(TransactionBuildingError) as exc_info:
            await make_swap_collateral_tx(
                ctx, make_account([deposit(usdc_bank, 10)]), usdc_bank.address, kamino.address, 5, jupiter=jupiter
            )

        assert exc_info.value.code == TransactionBuildingErrorCode.KAMINO_RESERVE_NOT_FOUND
        jupiter.get_quote.assert_not_called()


class TestSwapDebt:
    @pytest.mark.asyncio
    async def test_exact_out_on_whole_debt(self, ctx, usdc_bank, sol_bank):
        """The route is quoted for the full debt and the borrow is its input amount."""
        account = make_account([deposit(usdc_bank, 2000), borrow(sol_bank, 2)])
        jupiter = _jupiter(jupiter_quote(310_000_000, 2_000_000_000), [jupiter_swap_payload()] * 2)

        result = await make_swap_debt_tx(ctx, account, sol_bank.address, usdc_bank.address, jupiter=jupiter)

        quoted = jupiter.get_quote.call_args.args[0]
        assert quoted.swap_mode == SWAP_MODE_EXACT_OUT
        assert quoted.amount == 2_000_000_000
        borrow_data = _find(result.action_transaction, Discriminator.LENDING_ACCOUNT_BORROW)[0]
        assert _amount(borrow_data) == 310_000_000
        repay = _find(result.action_transaction, Discriminator.LENDING_ACCOUNT_REPAY)[0]
        assert repay[16:] == b"\x01\x01"
        assert result.action_transaction.type == TransactionType.SWAP_DEBT

    @pytest.mark.asyncio
    async def test_no_debt_rejected(self, ctx, usdc_bank, sol_bank):
        account = make_account([deposit(usdc_bank, 10)])

        with pytest.raises(InvalidAmountError):
            await make_swap_debt_tx(ctx, account, sol_bank.address, usdc_bank.address, jupiter=MagicMock())
