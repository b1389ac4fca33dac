"""
Jupiter Aggregator Integration

Swap routes for flash-loan composites:
- quote and swap-instruction requests against the Jupiter swap API
- referral fee account derivation and existence check
- one candidate route per max-accounts setting, most accounts first
- route lookup tables fetched and decoded alongside the instructions

Get a free API key at https://portal.jup.ag
"""

import asyncio
import base64
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

import requests
from solders.address_lookup_table_account import AddressLookupTableAccount
from solders.instruction import AccountMeta, Instruction
from solders.pubkey import Pubkey

from mrgn.core.constants import (
    ADDRESS_LOOKUP_TABLE_FOR_SWAP,
    ASSOCIATED_TOKEN_PROGRAM_ID,
    COMPUTE_BUDGET_PROGRAM_ID,
    JUPITER_REFERRAL_ACCOUNT,
    JUPITER_REFERRAL_PROGRAM_ID,
    SWAP_MAX_ACCOUNTS_CANDIDATES,
)
from mrgn.core.rpc import RpcClient


logger = logging.getLogger(__name__)


JUPITER_API_BASE = "https://api.jup.ag"

SWAP_MODE_EXACT_IN = "ExactIn"
SWAP_MODE_EXACT_OUT = "ExactOut"


class JupiterApiError(Exception):
    """Jupiter API request failed or returned an unusable payload."""


@dataclass
class SwapQuoteParams:
    """Quote request. `amount` is in native units of the input (ExactIn) or output (ExactOut) mint."""
    input_mint: Pubkey
    output_mint: Pubkey
    amount: int
    swap_mode: str = SWAP_MODE_EXACT_IN
    slippage_bps: int = 50
    platform_fee_bps: Optional[int] = None
    only_direct_routes: bool = False

    def to_query(self, max_accounts: int) -> Dict[str, Any]:
        query = {
            "inputMint": str(self.input_mint),
            "outputMint": str(self.output_mint),
            "amount": str(self.amount),
            "slippageBps": self.slippage_bps,
            "swapMode": self.swap_mode,
            "maxAccounts": max_accounts,
        }
        if self.only_direct_routes:
            query["onlyDirectRoutes"] = "true"
        if self.platform_fee_bps:
            query["platformFeeBps"] = self.platform_fee_bps
        return query


@dataclass
class SwapCandidate:
    """One route, ready to splice into a flash loan."""
    swap_instruction: Instruction
    setup_instructions: List[Instruction]
    lookup_tables: List[AddressLookupTableAccount]
    quote: Dict[str, Any]
    max_accounts: int = 0
    cleanup_instructions: List[Instruction] = field(default_factory=list)

    @property
    def in_amount(self) -> int:
        return int(self.quote.get("inAmount", 0))

    @property
    def out_amount(self) -> int:
        return int(self.quote.get("outAmount", 0))

    @property
    def other_amount_threshold(self) -> int:
        return int(self.quote.get("otherAmountThreshold", 0))


def get_fee_mint(params: SwapQuoteParams) -> Pubkey:
    """Fees are taken in the output mint for ExactIn and in the input mint otherwise."""
    return params.output_mint if params.swap_mode == SWAP_MODE_EXACT_IN else params.input_mint


def get_fee_account(mint: Pubkey) -> Pubkey:
    """Referral token account collecting platform fees for `mint`."""
    fee_account, _ = Pubkey.find_program_address(
        [b"referral_ata", bytes(JUPITER_REFERRAL_ACCOUNT), bytes(mint)],
        JUPITER_REFERRAL_PROGRAM_ID,
    )
    return fee_account


def deserialize_instruction(payload: Dict[str, Any]) -> Instruction:
    """
    Convert a Jupiter JSON instruction into a solders Instruction.

    Raises:
        JupiterApiError: If a required field is missing
    """
    try:
        return Instruction(
            program_id=Pubkey.from_string(payload["programId"]),
            accounts=[
                AccountMeta(
                    pubkey=Pubkey.from_string(account["pubkey"]),
                    is_signer=bool(account["isSigner"]),
                    is_writable=bool(account["isWritable"]),
                )
                for account in payload["accounts"]
            ],
            data=base64.b64decode(payload["data"]),
        )
    except (KeyError, TypeError, ValueError) as e:
        raise JupiterApiError(f"Malformed Jupiter instruction: {e}") from e


def filter_setup_instructions(
    instructions: Sequence[Instruction],
    mints: Sequence[Pubkey],
) -> List[Instruction]:
    """
    Drop setup instructions the composite already provides.

    Compute budget instructions are rebuilt by the caller and token accounts
    for the two legs' mints are created up front.
    """
    skip_mints = set(mints)
    kept = []
    for ix in instructions:
        if ix.program_id == COMPUTE_BUDGET_PROGRAM_ID:
            continue
        if (
            ix.program_id == ASSOCIATED_TOKEN_PROGRAM_ID
            and len(ix.accounts) > 3
            and ix.accounts[3].pubkey in skip_mints
        ):
            continue
        kept.append(ix)
    return kept


class JupiterClient:
    """
    Thin wrapper around the Jupiter swap API.

    Requests are synchronous (requests.Session); async callers go through
    `get_swap_candidates`, which runs them in worker threads.
    """

    def __init__(self, api_key: Optional[str] = None, api_base: Optional[str] = None, timeout: int = 10):
        self.api_base = (api_base or os.getenv("JUPITER_API_BASE") or JUPITER_API_BASE).rstrip("/")
        self.api_key = api_key or os.getenv("JUPITER_API_KEY")
        self.timeout = timeout
        self.session = requests.Session()

        if self.api_key:
            self.session.headers.update({"x-api-key": self.api_key})
            logger.info("Initialized Jupiter client with API key")
        else:
            logger.warning("Jupiter API key not provided, requests are rate limited")

    def get_quote(self, params: SwapQuoteParams, max_accounts: int) -> Dict[str, Any]:
        """
        Best route for a swap.

        Args:
            params: Quote request
            max_accounts: Upper bound on accounts the route may touch

        Returns:
            Raw quote response, passed back verbatim to swap-instructions

        Raises:
            JupiterApiError: If the request fails or no route is returned
        """
        try:
            logger.info(
                f"Getting quote {params.input_mint} -> {params.output_mint} "
                f"({params.swap_mode}, amount={params.amount}, maxAccounts={max_accounts})"
            )
            response = self.session.get(
                f"{self.api_base}/swap/v1/quote",
                params=params.to_query(max_accounts),
                timeout=self.timeout,
            )
            response.raise_for_status()
            data = response.json()

        except requests.exceptions.RequestException as e:
            error_msg = f"Failed to get Jupiter quote: {str(e)}"
            logger.error(error_msg)
            raise JupiterApiError(error_msg) from e

        if not isinstance(data, dict) or "outAmount" not in data:
            error_msg = f"Jupiter returned no route: {data}"
            logger.error(error_msg)
            raise JupiterApiError(error_msg)

        logger.info(f"Quote: in={data.get('inAmount')} out={data.get('outAmount')} impact={data.get('priceImpactPct')}")
        return data

    def get_swap_instructions(
        self,
        quote: Dict[str, Any],
        user_public_key: Pubkey,
        destination_token_account: Optional[Pubkey] = None,
        fee_account: Optional[Pubkey] = None,
    ) -> Dict[str, Any]:
        """
        Instructions for a quoted route.

        SOL is never wrapped or unwrapped by Jupiter; the composite handles it.

        Raises:
            JupiterApiError: If the request fails or the swap instruction is missing
        """
        body: Dict[str, Any] = {
            "quoteResponse": quote,
            "userPublicKey": str(user_public_key),
            "wrapAndUnwrapSol": False,
        }
        if fee_account is not None:
            body["feeAccount"] = str(fee_account)
        if destination_token_account is not None:
            body["destinationTokenAccount"] = str(destination_token_account)

        try:
            response = self.session.post(
                f"{self.api_base}/swap/v1/swap-instructions",
                json=body,
                timeout=self.timeout,
            )
            response.raise_for_status()
            data = response.json()

        except requests.exceptions.RequestException as e:
            error_msg = f"Failed to get Jupiter swap instructions: {str(e)}"
            logger.error(error_msg)
            raise JupiterApiError(error_msg) from e

        if not isinstance(data, dict) or "swapInstruction" not in data:
            error_msg = f"Jupiter swap instructions missing: {data}"
            logger.error(error_msg)
            raise JupiterApiError(error_msg)

        return data


async def get_swap_candidates(
    jupiter: JupiterClient,
    rpc: RpcClient,
    params: SwapQuoteParams,
    authority: Pubkey,
    destination_token_account: Optional[Pubkey] = None,
    max_accounts_candidates: Sequence[int] = SWAP_MAX_ACCOUNTS_CANDIDATES,
) -> List[SwapCandidate]:
    """
    Fetch one route per max-accounts setting, in order.

    Platform fees are only requested when the referral token account for the
    fee mint exists; otherwise the fee is dropped with a warning.

    Args:
        jupiter: API client
        rpc: RPC client for fee account and lookup table fetches
        params: Quote request
        authority: Wallet executing the swap
        destination_token_account: Where the swap output lands
        max_accounts_candidates: Route account limits to try

    Returns:
        Candidates in the order of `max_accounts_candidates`

    Raises:
        JupiterApiError: If any quote or swap-instructions request fails
    """
    fee_account: Optional[Pubkey] = None
    if params.platform_fee_bps:
        candidate_fee_account = get_fee_account(get_fee_mint(params))
        (fee_account_data,) = await rpc.get_multiple_accounts([candidate_fee_account])
        if fee_account_data is None:
            logger.warning(f"Referral fee account {candidate_fee_account} does not exist, skipping platform fee")
            params = SwapQuoteParams(
                input_mint=params.input_mint,
                output_mint=params.output_mint,
                amount=params.amount,
                swap_mode=params.swap_mode,
                slippage_bps=params.slippage_bps,
                platform_fee_bps=None,
                only_direct_routes=params.only_direct_routes,
            )
        else:
            fee_account = candidate_fee_account

    candidates: List[SwapCandidate] = []
    for max_accounts in max_accounts_candidates:
        quote = await asyncio.to_thread(jupiter.get_quote, params, max_accounts)
        payload = await asyncio.to_thread(
            jupiter.get_swap_instructions,
            quote,
            authority,
            destination_token_account,
            fee_account,
        )

        lut_addresses = [Pubkey.from_string(a) for a in payload.get("addressLookupTableAddresses") or []]
        lut_addresses.append(ADDRESS_LOOKUP_TABLE_FOR_SWAP)
        lookup_tables = await rpc.get_address_lookup_tables(lut_addresses)

        candidates.append(
            SwapCandidate(
                swap_instruction=deserialize_instruction(payload["swapInstruction"]),
                setup_instructions=[deserialize_instruction(ix) for ix in payload.get("setupInstructions") or []],
                lookup_tables=lookup_tables,
                quote=quote,
                max_accounts=max_accounts,
                cleanup_instructions=(
                    [deserialize_instruction(payload["cleanupInstruction"])]
                    if payload.get("cleanupInstruction")
                    else []
                ),
            )
        )

    return candidates
