"""
Client snapshot and RPC-backed loader.

A ClientSnapshot is an immutable bundle of everything the builders and
health engine read:
- resolved config (program, group)
- bank map and oracle price map, keyed by bank address
- Kamino / Drift integration metadata per bank
- mint -> token program map
- address lookup tables for the group

`refresh()` returns a new snapshot; nothing is updated in place.
"""

import logging
from dataclasses import dataclass, field, replace
from typing import Dict, Mapping, Optional, Sequence, Tuple

from solders.address_lookup_table_account import AddressLookupTableAccount
from solders.hash import Hash
from solders.pubkey import Pubkey

from integrations.solana.drift import DriftIntegration
from integrations.solana.kamino import KaminoIntegration
from integrations.solana.switchboard import SwitchboardCrossbarClient

from .actions.common import ActionContext
from .core.config import EnvironmentConfig, MarginfiConfig
from .core.errors import DataNotFound
from .core.rpc import RpcClient
from .models.account import MarginfiAccount
from .models.bank import Bank, BankIntegrationMetadata
from .models.oracle import OraclePrice
from .services.crank import OracleCrankProvider

logger = logging.getLogger(__name__)


async def fetch_integration_metadata(
    rpc_client: RpcClient,
    banks: Sequence[Bank],
) -> Dict[str, BankIntegrationMetadata]:
    """Kamino and Drift state for every integration bank, keyed by bank address."""
    kamino_states = await KaminoIntegration(rpc_client).fetch_states(banks)
    drift_states = await DriftIntegration(rpc_client).fetch_states(banks)

    metadata: Dict[str, BankIntegrationMetadata] = {}
    for key in set(kamino_states) | set(drift_states):
        metadata[key] = BankIntegrationMetadata(
            kamino_states=kamino_states.get(key),
            drift_states=drift_states.get(key),
        )
    return metadata


@dataclass(frozen=True)
class ClientSnapshot:
    """Point-in-time view of a marginfi group."""
    config: MarginfiConfig
    bank_map: Mapping[str, Bank]
    oracle_prices: Mapping[str, OraclePrice]
    metadata_map: Mapping[str, BankIntegrationMetadata] = field(default_factory=dict)
    mint_token_programs: Mapping[str, Pubkey] = field(default_factory=dict)
    lookup_tables: Tuple[AddressLookupTableAccount, ...] = ()

    @property
    def program_id(self) -> Pubkey:
        return self.config.program_id

    @property
    def group(self) -> Pubkey:
        return self.config.group_pk

    def get_bank(self, bank_pk: Pubkey) -> Bank:
        """
        Raises:
            DataNotFound: If the bank is not part of the snapshot
        """
        bank = self.bank_map.get(str(bank_pk))
        if bank is None:
            raise DataNotFound(f"Bank {bank_pk} not found", kind="bank", key=str(bank_pk))
        return bank

    def get_bank_by_symbol(self, symbol: str) -> Optional[Bank]:
        for bank in self.bank_map.values():
            if bank.token_symbol and bank.token_symbol.upper() == symbol.upper():
                return bank
        return None

    def get_oracle_price(self, bank_pk: Pubkey) -> OraclePrice:
        """
        Raises:
            DataNotFound: If no price is known for the bank
        """
        price = self.oracle_prices.get(str(bank_pk))
        if price is None:
            raise DataNotFound(f"Price for bank {bank_pk} not found", kind="oracle", key=str(bank_pk))
        return price

    async def refresh(
        self,
        rpc_client: RpcClient,
        banks: Optional[Sequence[Bank]] = None,
        oracle_prices: Optional[Mapping[str, OraclePrice]] = None,
    ) -> "ClientSnapshot":
        """
        Build a new snapshot with fresh integration state and lookup tables.

        Args:
            rpc_client: Transport used for the reads
            banks: Replacement banks (default: keep the current ones)
            oracle_prices: Replacement prices (default: keep the current ones)

        Returns:
            A new ClientSnapshot; this one is left untouched
        """
        bank_map = {bank.key: bank for bank in banks} if banks is not None else dict(self.bank_map)
        prices = dict(oracle_prices) if oracle_prices is not None else dict(self.oracle_prices)

        metadata_map = await fetch_integration_metadata(rpc_client, list(bank_map.values()))

        lookup_tables: Tuple[AddressLookupTableAccount, ...] = ()
        lut_addresses = self.config.lookup_tables()
        if lut_addresses:
            lookup_tables = tuple(await rpc_client.get_address_lookup_tables(lut_addresses))

        missing_prices = [key for key in bank_map if key not in prices]
        if missing_prices:
            logger.warning(f"{len(missing_prices)} banks have no oracle price in the refreshed snapshot")

        logger.info(
            f"Refreshed snapshot for group {self.config.group_pk}: {len(bank_map)} banks, "
            f"{len(metadata_map)} integration states, {len(lookup_tables)} lookup tables"
        )
        return replace(
            self,
            bank_map=bank_map,
            oracle_prices=prices,
            metadata_map=metadata_map,
            lookup_tables=lookup_tables,
        )

    def to_action_context(
        self,
        rpc_client: Optional[RpcClient] = None,
        crank_provider: Optional[OracleCrankProvider] = None,
        crossbar: Optional[SwitchboardCrossbarClient] = None,
        blockhash: Optional[Hash] = None,
    ) -> ActionContext:
        return ActionContext(
            program_id=self.program_id,
            group=self.group,
            bank_map=self.bank_map,
            oracle_prices=self.oracle_prices,
            metadata_map=self.metadata_map,
            mint_token_programs=self.mint_token_programs,
            lookup_tables=self.lookup_tables,
            rpc=rpc_client,
            crank_provider=crank_provider,
            crossbar=crossbar,
            blockhash=blockhash,
        )


class MarginfiClient:
    """
    Entry point binding a config to an RPC transport.

    Bank and oracle data come from the caller (indexer, API, fixtures);
    the client adds integration state, lookup tables and account reads.
    """

    def __init__(
        self,
        rpc_client: RpcClient,
        config: MarginfiConfig,
        crank_provider: Optional[OracleCrankProvider] = None,
        crossbar: Optional[SwitchboardCrossbarClient] = None,
    ):
        self.rpc_client = rpc_client
        self.config = config
        self.crank_provider = crank_provider
        self.crossbar = crossbar

        if crank_provider is None:
            logger.warning("No oracle crank provider configured, Switchboard feeds will not be cranked")
        logger.info(f"Initialized marginfi client for {config.environment} (group {config.group_pk})")

    @classmethod
    def from_env(
        cls,
        env: Optional[EnvironmentConfig] = None,
        crank_provider: Optional[OracleCrankProvider] = None,
    ) -> "MarginfiClient":
        """
        Build a client from environment variables.

        Raises:
            ConfigurationError: If the deployment target cannot be resolved
        """
        env = env or EnvironmentConfig()
        env.validate()
        return cls(
            rpc_client=RpcClient(env.get_rpc_urls()),
            config=env.get_marginfi_config(),
            crank_provider=crank_provider,
            crossbar=SwitchboardCrossbarClient(env.get("CROSSBAR_URL")),
        )

    async def load_snapshot(
        self,
        banks: Sequence[Bank],
        oracle_prices: Mapping[str, OraclePrice],
        mint_token_programs: Optional[Mapping[str, Pubkey]] = None,
    ) -> ClientSnapshot:
        """Initial snapshot for `banks`; integration state and lookup tables are read from chain."""
        empty = ClientSnapshot(
            config=self.config,
            bank_map={},
            oracle_prices={},
            mint_token_programs=dict(mint_token_programs or {}),
        )
        return await empty.refresh(self.rpc_client, banks=banks, oracle_prices=oracle_prices)

    async def refresh(
        self,
        snapshot: ClientSnapshot,
        banks: Optional[Sequence[Bank]] = None,
        oracle_prices: Optional[Mapping[str, OraclePrice]] = None,
    ) -> ClientSnapshot:
        return await snapshot.refresh(self.rpc_client, banks=banks, oracle_prices=oracle_prices)

    async def fetch_account(self, address: Pubkey) -> MarginfiAccount:
        """
        Fetch and decode a margin account.

        Raises:
            DataNotFound: If the account does not exist
            ValueError: If the data is not a margin account
        """
        (data,) = await self.rpc_client.get_multiple_accounts([address])
        if data is None:
            raise DataNotFound(f"Marginfi account {address} not found", kind="account", key=str(address))
        account = MarginfiAccount.decode(address, data)
        if account.group != self.config.group_pk:
            logger.warning(f"Account {address} belongs to group {account.group}, not {self.config.group_pk}")
        return account

    def action_context(self, snapshot: ClientSnapshot, blockhash: Optional[Hash] = None) -> ActionContext:
        return snapshot.to_action_context(
            rpc_client=self.rpc_client,
            crank_provider=self.crank_provider,
            crossbar=self.crossbar,
            blockhash=blockhash,
        )
