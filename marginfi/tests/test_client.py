"""
Tests for the client snapshot, the RPC-backed loader and the account wrapper.
"""

import os
from decimal import Decimal
from unittest.mock import AsyncMock, patch

import pytest
import pytest_asyncio
from solders.pubkey import Pubkey

from mrgn.account_wrapper import MarginfiAccountWrapper
from mrgn.client import ClientSnapshot, MarginfiClient
from mrgn.core.config import EnvironmentConfig, get_config
from mrgn.core.errors import DataNotFound
from mrgn.models.bank import MarginRequirementType
from mrgn.services.health import INFINITE_HEALTH
from mrgn.transactions.types import TransactionType
from tests.factories import (
    GROUP,
    borrow,
    deposit,
    encode_account,
    make_account,
    with_computed_cache,
)


@pytest.fixture
def client(mock_rpc):
    return MarginfiClient(mock_rpc, get_config())


@pytest_asyncio.fixture
async def snapshot(client, usdc_bank, sol_bank, oracle_prices):
    return await client.load_snapshot([usdc_bank, sol_bank], oracle_prices)


class TestSnapshot:
    @pytest.mark.asyncio
    async def test_load(self, snapshot, mock_rpc, usdc_bank, sol_bank):
        assert set(snapshot.bank_map) == {usdc_bank.key, sol_bank.key}
        assert snapshot.metadata_map == {}
        assert snapshot.group == GROUP
        mock_rpc.get_address_lookup_tables.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_refresh_returns_new_snapshot(self, snapshot, mock_rpc, usdc_bank):
        """The old snapshot is never updated in place."""
        refreshed = await snapshot.refresh(mock_rpc, banks=[usdc_bank])

        assert list(refreshed.bank_map) == [usdc_bank.key]
        assert len(snapshot.bank_map) == 2
        assert refreshed is not snapshot

    @pytest.mark.asyncio
    async def test_refresh_warns_about_missing_prices(self, snapshot, mock_rpc, caplog):
        await snapshot.refresh(mock_rpc, oracle_prices={})

        assert "no oracle price" in caplog.text

    @pytest.mark.asyncio
    async def test_lookups(self, snapshot, usdc_bank):
        assert snapshot.get_bank(usdc_bank.address) is usdc_bank
        assert snapshot.get_bank_by_symbol("usdc") is usdc_bank
        assert snapshot.get_bank_by_symbol("BONK") is None

        with pytest.raises(DataNotFound):
            snapshot.get_bank(Pubkey.new_unique())
        with pytest.raises(DataNotFound) as exc_info:
            snapshot.get_oracle_price(Pubkey.new_unique())
        assert exc_info.value.kind == "oracle"

    def test_action_context_carries_snapshot(self, usdc_bank, oracle_prices, mock_rpc):
        snapshot = ClientSnapshot(config=get_config(), bank_map={usdc_bank.key: usdc_bank}, oracle_prices=oracle_prices)

        ctx = snapshot.to_action_context(rpc_client=mock_rpc)

        assert ctx.bank(usdc_bank.address) is usdc_bank
        assert ctx.program_id == snapshot.program_id
        assert ctx.rpc is mock_rpc


class TestClient:
    @pytest.mark.asyncio
    async def test_fetch_account(self, client, mock_rpc, usdc_bank):
        account = make_account([deposit(usdc_bank, 5)])
        mock_rpc.get_multiple_accounts = AsyncMock(return_value=[encode_account(account)])

        fetched = await client.fetch_account(account.address)

        assert fetched.authority == account.authority
        assert fetched.active_balances[0].bank_pk == usdc_bank.address

    @pytest.mark.asyncio
    async def test_fetch_missing_account(self, client):
        with pytest.raises(DataNotFound) as exc_info:
            await client.fetch_account(Pubkey.new_unique())

        assert exc_info.value.kind == "account"

    def test_from_env(self):
        env = {"RPC_URL": "https://rpc.example", "HELIUS_API_KEY": "abc"}
        with patch("pathlib.Path.exists", return_value=False):
            with patch.dict(os.environ, env, clear=True):
                client = MarginfiClient.from_env(EnvironmentConfig())

        assert [p.name for p in client.rpc_client.providers] == ["Helius", "rpc.example"]
        assert client.config.environment == "production"
        assert client.crossbar is not None


class TestAccountWrapper:
    @pytest.mark.asyncio
    async def test_health_from_cache(self, client, snapshot, bank_map, oracle_prices, usdc_bank, sol_bank):
        account = with_computed_cache(
            make_account([deposit(sol_bank, 10), borrow(usdc_bank, 500)]), bank_map, oracle_prices
        )
        wrapper = MarginfiAccountWrapper(account, snapshot, client)

        components = wrapper.health_components(MarginRequirementType.MAINTENANCE)

        assert components.assets > components.liabilities
        assert wrapper.health_factor() > 1
        assert wrapper.free_collateral() == components.assets - components.liabilities

    @pytest.mark.asyncio
    async def test_no_debt_is_infinitely_healthy(self, client, snapshot, bank_map, oracle_prices, sol_bank):
        account = with_computed_cache(make_account([deposit(sol_bank, 10)]), bank_map, oracle_prices)

        assert MarginfiAccountWrapper(account, snapshot, client).health_factor() == INFINITE_HEALTH

    @pytest.mark.asyncio
    async def test_actions_use_snapshot(self, client, snapshot, usdc_bank):
        wrapper = MarginfiAccountWrapper(make_account(), snapshot, client)

        result = await wrapper.make_deposit_tx(usdc_bank.address, 1)

        assert result.action_transaction.type == TransactionType.DEPOSIT

    @pytest.mark.asyncio
    async def test_with_account_keeps_original(self, client, snapshot, usdc_bank):
        wrapper = MarginfiAccountWrapper(make_account(), snapshot, client)
        updated = wrapper.with_account(make_account([deposit(usdc_bank, 1)]))

        assert wrapper.account.active_balances == []
        assert len(updated.account.active_balances) == 1
        assert updated.snapshot is wrapper.snapshot

    @pytest.mark.asyncio
    async def test_max_borrow_positive_with_collateral(self, client, snapshot, usdc_bank, sol_bank, bank_map, oracle_prices):
        account = with_computed_cache(make_account([deposit(sol_bank, 10)]), bank_map, oracle_prices)
        wrapper = MarginfiAccountWrapper(account, snapshot, client)

        assert wrapper.max_borrow(usdc_bank.address) > Decimal(0)
