"""
RPC transport with provider fallback.

Provides:
- Ordered fallback across RPC providers (Helius first when configured)
- Standard reads through the `solana` AsyncClient (blockhash, multiple accounts)
- Address lookup table fetch + decode
- Raw JSON-RPC `simulateBundle` over aiohttp, which AsyncClient does not expose
"""

import base64
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, TypeVar

import aiohttp
from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Confirmed
from solders.address_lookup_table_account import AddressLookupTable, AddressLookupTableAccount
from solders.hash import Hash
from solders.pubkey import Pubkey
from solders.transaction import VersionedTransaction

from .errors import ErrorHandler, RpcError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class RPCProvider:
    """RPC provider configuration."""
    name: str
    url: str
    priority: int  # Lower = higher priority
    max_retries: int = 3
    timeout: int = 10
    is_available: bool = True
    failure_count: int = 0


def decode_lookup_table(key: Pubkey, data: bytes) -> AddressLookupTableAccount:
    """
    Decode an address lookup table account.

    Raises:
        ValueError: If the data is not an initialized lookup table
    """
    table = AddressLookupTable.deserialize(data)
    return AddressLookupTableAccount(key=key, addresses=list(table.addresses))


class RpcClient:
    """
    RPC client with automatic fallback across providers.

    Providers are tried in priority order; a provider is marked unavailable
    after `max_retries` consecutive failures and re-enabled once every
    provider has failed.
    """

    def __init__(self, urls: Sequence[str], timeout: int = 10):
        """
        Initialize RPC client.

        Args:
            urls: Endpoints in priority order
            timeout: Per-request timeout in seconds

        Raises:
            ValueError: If no endpoint is given
        """
        if not urls:
            raise ValueError("No RPC providers configured!")

        self.providers: List[RPCProvider] = [
            RPCProvider(name=_provider_name(url), url=url, priority=i + 1, timeout=timeout)
            for i, url in enumerate(urls)
        ]
        self.providers.sort(key=lambda p: p.priority)

        logger.info(f"Initialized RPC client with {len(self.providers)} providers")

    def get_current_provider(self) -> RPCProvider:
        """Get the first available provider."""
        for provider in self.providers:
            if provider.is_available:
                return provider

        logger.warning("All providers failed, resetting availability")
        for provider in self.providers:
            provider.is_available = True
            provider.failure_count = 0

        return self.providers[0]

    async def _with_fallback(self, method: str, call: Callable[[RPCProvider], Awaitable[T]]) -> T:
        last_error: Optional[Exception] = None

        for _ in range(len(self.providers)):
            provider = self.get_current_provider()
            try:
                result = await call(provider)
                provider.failure_count = 0
                return result
            except Exception as e:
                last_error = e
                provider.failure_count += 1

                kind = "transient failure" if ErrorHandler.is_retryable(e) else "failure"
                logger.warning(
                    f"RPC {method} {kind} on {provider.name} "
                    f"(attempt {provider.failure_count}/{provider.max_retries}): {e}"
                )

                if ErrorHandler.is_request_error(e):
                    # Another provider would reject the same request
                    break

                if provider.failure_count >= provider.max_retries:
                    provider.is_available = False
                    logger.error(f"Marking {provider.name} as unavailable")

        error_msg = f"All RPC providers failed for {method}. Last error: {last_error}"
        logger.error(error_msg)
        raise RpcError(error_msg, method=method) from last_error

    async def rpc_call(self, method: str, params: Optional[List[Any]] = None) -> Any:
        """
        Make a raw JSON-RPC call with fallback.

        Returns:
            The `result` member of the response
        """
        if params is None:
            params = []

        async def call(provider: RPCProvider) -> Any:
            return await self._post(provider, method, params)

        return await self._with_fallback(method, call)

    async def _post(self, provider: RPCProvider, method: str, params: List[Any]) -> Any:
        payload = {
            "jsonrpc": "2.0",
            "id": 1,
            "method": method,
            "params": params,
        }

        async with aiohttp.ClientSession() as session:
            async with session.post(
                provider.url,
                json=payload,
                timeout=aiohttp.ClientTimeout(total=provider.timeout),
            ) as response:
                if response.status == 429:
                    raise Exception(f"Rate limited (429) on {provider.name}")

                if response.status != 200:
                    raise Exception(f"HTTP {response.status} from {provider.name}")

                data = await response.json()

                if "error" in data:
                    error_msg = data["error"].get("message", "Unknown error")
                    raise Exception(f"RPC error from {provider.name}: {error_msg}")

                return data.get("result")

    async def get_latest_blockhash(self) -> Hash:
        """Get the latest confirmed blockhash."""
        async def call(provider: RPCProvider) -> Hash:
            async with AsyncClient(provider.url, commitment=Confirmed, timeout=provider.timeout) as client:
                resp = await client.get_latest_blockhash(Confirmed)
                return resp.value.blockhash

        return await self._with_fallback("getLatestBlockhash", call)

    async def get_multiple_accounts(self, pubkeys: Sequence[Pubkey]) -> List[Optional[bytes]]:
        """
        Fetch raw account data for several accounts.

        Returns:
            Account data per key, None where the account does not exist
        """
        if not pubkeys:
            return []

        async def call(provider: RPCProvider) -> List[Optional[bytes]]:
            async with AsyncClient(provider.url, commitment=Confirmed, timeout=provider.timeout) as client:
                resp = await client.get_multiple_accounts(list(pubkeys))
                return [account.data if account is not None else None for account in resp.value]

        return await self._with_fallback("getMultipleAccounts", call)

    async def get_address_lookup_tables(self, addresses: Sequence[Pubkey]) -> List[AddressLookupTableAccount]:
        """Fetch and decode lookup tables, skipping any that do not exist."""
        datas = await self.get_multiple_accounts(addresses)
        tables = []
        for address, data in zip(addresses, datas):
            if data is None:
                logger.warning(f"Address lookup table {address} not found, skipping")
                continue
            tables.append(decode_lookup_table(address, data))
        return tables

    async def simulate_bundle(
        self,
        transactions: Sequence[VersionedTransaction],
        include_accounts: Sequence[Pubkey],
    ) -> List[Dict[str, Any]]:
        """
        Simulate transactions sequentially against one state, committing nothing.

        Args:
            transactions: Transactions to simulate in order
            include_accounts: Accounts whose post-execution state is returned

        Returns:
            One result per transaction; each has a `postExecutionAccounts` list
        """
        encoded = [base64.b64encode(bytes(tx)).decode("ascii") for tx in transactions]
        post_config = {
            "addresses": [str(pk) for pk in include_accounts],
            "encoding": "base64",
        }
        params = [
            {"encodedTransactions": encoded},
            {
                "preExecutionAccountsConfigs": [None] * len(encoded),
                "postExecutionAccountsConfigs": [post_config] * len(encoded),
                "skipSigVerify": True,
                "replaceRecentBlockhash": True,
            },
        ]

        result = await self.rpc_call("simulateBundle", params)
        value = (result or {}).get("value", {})

        summary = value.get("summary")
        if isinstance(summary, dict) and "failed" in summary:
            logger.warning(f"Bundle simulation reported failure: {summary['failed']}")

        return [
            {
                "err": tx_result.get("err"),
                "logs": tx_result.get("logs") or [],
                "postExecutionAccounts": tx_result.get("postExecutionAccounts") or [],
            }
            for tx_result in value.get("transactionResults", [])
        ]


def _provider_name(url: str) -> str:
    if "helius" in url:
        return "Helius"
    if "api.mainnet-beta.solana.com" in url:
        return "Solana Public"
    return url.split("//")[-1].split("/")[0].split("?")[0]
