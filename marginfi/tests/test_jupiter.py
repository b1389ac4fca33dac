"""
Test Jupiter Integration

Quote / swap-instruction requests, instruction decoding and candidate
route assembly.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest
import requests
from solders.pubkey import Pubkey

from integrations.solana.jupiter import (
    SWAP_MODE_EXACT_IN,
    SWAP_MODE_EXACT_OUT,
    JupiterApiError,
    JupiterClient,
    SwapQuoteParams,
    deserialize_instruction,
    filter_setup_instructions,
    get_fee_account,
    get_fee_mint,
    get_swap_candidates,
)
from mrgn.core.constants import (
    ADDRESS_LOOKUP_TABLE_FOR_SWAP,
    ASSOCIATED_TOKEN_PROGRAM_ID,
    COMPUTE_BUDGET_PROGRAM_ID,
)
from tests.factories import SOL_MINT, USDC_MINT, jupiter_instruction, jupiter_quote, jupiter_swap_payload


def _response(payload):
    response = MagicMock()
    response.json.return_value = payload
    response.raise_for_status.return_value = None
    return response


@pytest.fixture
def client():
    return JupiterClient(api_key="test-key", api_base="https://jup.example")


@pytest.fixture
def params():
    return SwapQuoteParams(input_mint=SOL_MINT, output_mint=USDC_MINT, amount=1_000_000_000)


# ============================================================================
# HTTP client
# ============================================================================

class TestJupiterClient:
    def test_api_key_header(self, client):
        assert client.session.headers["x-api-key"] == "test-key"

    def test_quote_query(self, client, params):
        client.session.get = MagicMock(return_value=_response(jupiter_quote(1_000_000_000, 150_000_000)))

        quote = client.get_quote(params, 40)

        assert quote["outAmount"] == "150000000"
        _, kwargs = client.session.get.call_args
        assert kwargs["params"]["maxAccounts"] == 40
        assert kwargs["params"]["swapMode"] == SWAP_MODE_EXACT_IN
        assert "platformFeeBps" not in kwargs["params"]
        assert kwargs["timeout"] == 10

    def test_quote_without_route_raises(self, client, params):
        client.session.get = MagicMock(return_value=_response({"error": "No routes found"}))

        with pytest.raises(JupiterApiError):
            client.get_quote(params, 40)

    def test_quote_http_error_raises(self, client, params):
        client.session.get = MagicMock(side_effect=requests.exceptions.HTTPError("500 Server Error"))

        with pytest.raises(JupiterApiError, match="500"):
            client.get_quote(params, 40)

    def test_swap_instructions_body(self, client):
        user, destination, fee = Pubkey.new_unique(), Pubkey.new_unique(), Pubkey.new_unique()
        client.session.post = MagicMock(return_value=_response(jupiter_swap_payload()))

        client.get_swap_instructions({"inAmount": "1"}, user, destination, fee)

        body = client.session.post.call_args.kwargs["json"]
        assert body["wrapAndUnwrapSol"] is False
        assert body["userPublicKey"] == str(user)
        assert body["destinationTokenAccount"] == str(destination)
        assert body["feeAccount"] == str(fee)

    def test_missing_swap_instruction_raises(self, client):
        client.session.post = MagicMock(return_value=_response({"setupInstructions": []}))

        with pytest.raises(JupiterApiError):
            client.get_swap_instructions({}, Pubkey.new_unique())


# ============================================================================
# Instruction handling
# ============================================================================

class TestInstructions:
    def test_deserialize(self):
        program, account = Pubkey.new_unique(), Pubkey.new_unique()

        ix = deserialize_instruction(jupiter_instruction(program, [account], b"\x07\x08"))

        assert ix.program_id == program
        assert ix.accounts[0].pubkey == account and ix.accounts[0].is_writable
        assert bytes(ix.data) == b"\x07\x08"

    def test_deserialize_malformed(self):
        with pytest.raises(JupiterApiError):
            deserialize_instruction({"programId": str(Pubkey.new_unique())})

    def test_filter_setup_drops_budget_and_known_atas(self):
        budget = deserialize_instruction(jupiter_instruction(COMPUTE_BUDGET_PROGRAM_ID))
        usdc_ata = deserialize_instruction(jupiter_instruction(
            ASSOCIATED_TOKEN_PROGRAM_ID, [Pubkey.new_unique(), Pubkey.new_unique(), Pubkey.new_unique(), USDC_MINT]
        ))
        other_ata = deserialize_instruction(jupiter_instruction(
            ASSOCIATED_TOKEN_PROGRAM_ID, [Pubkey.new_unique(), Pubkey.new_unique(), Pubkey.new_unique(),
                                          Pubkey.new_unique()]
        ))

        kept = filter_setup_instructions([budget, usdc_ata, other_ata], [USDC_MINT, SOL_MINT])

        assert kept == [other_ata]

    def test_fee_mint_follows_swap_mode(self, params):
        assert get_fee_mint(params) == USDC_MINT
        exact_out = SwapQuoteParams(input_mint=SOL_MINT, output_mint=USDC_MINT, amount=1,
                                    swap_mode=SWAP_MODE_EXACT_OUT)
        assert get_fee_mint(exact_out) == SOL_MINT
        assert get_fee_account(USDC_MINT) != get_fee_account(SOL_MINT)


# ============================================================================
# Candidate routes
# ============================================================================

class TestSwapCandidates:
    @pytest.mark.asyncio
    async def test_one_candidate_per_account_limit(self, mock_rpc, params):
        jupiter = MagicMock()
        jupiter.get_quote.side_effect = lambda p, max_accounts: jupiter_quote(p.amount, max_accounts)
        jupiter.get_swap_instructions.return_value = jupiter_swap_payload()

        candidates = await get_swap_candidates(jupiter, mock_rpc, params, Pubkey.new_unique())

        assert [c.max_accounts for c in candidates] == [40, 30]
        assert [c.out_amount for c in candidates] == [40, 30]
        lut_request = mock_rpc.get_address_lookup_tables.await_args.args[0]
        assert lut_request[-1] == ADDRESS_LOOKUP_TABLE_FOR_SWAP

    @pytest.mark.asyncio
    async def test_missing_fee_account_drops_platform_fee(self, mock_rpc):
        """A referral account that does not exist is never passed to Jupiter."""
        params = SwapQuoteParams(input_mint=SOL_MINT, output_mint=USDC_MINT, amount=1, platform_fee_bps=20)
        jupiter = MagicMock()
        jupiter.get_quote.return_value = jupiter_quote(1, 1)
        jupiter.get_swap_instructions.return_value = jupiter_swap_payload()

        await get_swap_candidates(jupiter, mock_rpc, params, Pubkey.new_unique(), max_accounts_candidates=[40])

        quoted_params = jupiter.get_quote.call_args.args[0]
        assert quoted_params.platform_fee_bps is None
        assert jupiter.get_swap_instructions.call_args.args[3] is None

    @pytest.mark.asyncio
    async def test_existing_fee_account_is_used(self, mock_rpc):
        params = SwapQuoteParams(input_mint=SOL_MINT, output_mint=USDC_MINT, amount=1, platform_fee_bps=20)
        mock_rpc.get_multiple_accounts = AsyncMock(return_value=[b"\x00" * 165])
        jupiter = MagicMock()
        jupiter.get_quote.return_value = jupiter_quote(1, 1)
        jupiter.get_swap_instructions.return_value = jupiter_swap_payload()

        await get_swap_candidates(jupiter, mock_rpc, params, Pubkey.new_unique(), max_accounts_candidates=[40])

        assert jupiter.get_swap_instructions.call_args.args[3] == get_fee_account(USDC_MINT)
