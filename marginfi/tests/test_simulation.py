"""
Test Health Cache Simulation

Bundle construction, acceptance of simulated caches, and the local
fallback when the simulated pulse cannot be trusted.
"""

from decimal import Decimal
from unittest.mock import AsyncMock

import pytest
from solders.instruction import AccountMeta, Instruction
from solders.pubkey import Pubkey

from mrgn.core.constants import HEALTH_CACHE_STALE_ORACLE_ERROR
from mrgn.core.errors import HealthCacheSimulationError, RpcError
from mrgn.models.health_cache import HealthCacheStatus
from mrgn.models.oracle import OracleSetup
from mrgn.services.crank import CrankInstructions, OracleCrankProvider
from mrgn.services.simulation import (
    FallbackHealth,
    SimulatedHealth,
    check_simulated_cache,
    get_health_simulation_transactions,
    simulate_account_health_cache,
)
from tests.factories import (
    PROGRAM_ID,
    bank_map_of,
    borrow,
    bundle_result,
    deposit,
    make_account,
    make_bank,
    make_health_cache,
    make_price,
)


class StaticCrankProvider(OracleCrankProvider):
    """Returns one no-op instruction per feed and records the request."""

    def __init__(self):
        self.requested = []

    async def make_update_feed_ixs(self, oracle_keys, fee_payer):
        self.requested.append(list(oracle_keys))
        program = Pubkey.new_unique()
        return CrankInstructions(
            instructions=[
                Instruction(program_id=program, data=b"", accounts=[AccountMeta(key, False, False)])
                for key in oracle_keys
            ]
        )


@pytest.fixture
def leveraged_account(usdc_bank, sol_bank):
    """10 SOL deposited against 500 USDC borrowed."""
    return make_account([deposit(sol_bank, 10), borrow(usdc_bank, 500)])


def _with_cache(account, **cache_fields):
    return account.with_health_cache(make_health_cache(**cache_fields))


# ============================================================================
# Bundle construction
# ============================================================================

class TestSimulationTransactions:
    @pytest.mark.asyncio
    async def test_refresh_and_pulse_without_crank(self, leveraged_account, bank_map, blockhash):
        """With no pull feeds the bundle is a refresh plus a pulse."""
        txs = await get_health_simulation_transactions(
            leveraged_account,
            bank_map,
            [b.bank_pk for b in leveraged_account.active_balances],
            PROGRAM_ID,
            blockhash,
            crank_provider=StaticCrankProvider(),
        )

        assert len(txs) == 2

    @pytest.mark.asyncio
    async def test_pull_feeds_add_crank_transaction(self, blockhash):
        collateral = make_bank(oracle_setup=OracleSetup.SWITCHBOARD_PULL)
        debt = make_bank(oracle_setup=OracleSetup.SWITCHBOARD_PULL)
        account = make_account([deposit(collateral, 100), borrow(debt, 10)])
        provider = StaticCrankProvider()

        txs = await get_health_simulation_transactions(
            account,
            bank_map_of(collateral, debt),
            [collateral.address, debt.address],
            PROGRAM_ID,
            blockhash,
            crank_provider=provider,
        )

        assert len(txs) == 3
        assert provider.requested == [[collateral.oracle_key, debt.oracle_key]]

    @pytest.mark.asyncio
    async def test_crank_can_be_skipped(self, blockhash):
        bank = make_bank(oracle_setup=OracleSetup.SWITCHBOARD_PULL)
        account = make_account([deposit(bank, 100)])

        txs = await get_health_simulation_transactions(
            account, bank_map_of(bank), [bank.address], PROGRAM_ID, blockhash,
            crank_provider=StaticCrankProvider(), include_crank_tx=False,
        )

        assert len(txs) == 2


# ============================================================================
# Cache acceptance
# ============================================================================

class TestCheckSimulatedCache:
    def test_clean_cache_passes(self, leveraged_account):
        check_simulated_cache(_with_cache(leveraged_account, initial=(1, 1)))

    def test_stale_oracle_error_accepted_when_fully_populated(self, leveraged_account):
        """Error 6009 still valued every position, so the values are usable."""
        account = _with_cache(
            leveraged_account,
            initial=(1050, 600),
            maint=(1200, 550),
            equity=(1500, 500),
            mrgn_err=HEALTH_CACHE_STALE_ORACLE_ERROR,
        )

        check_simulated_cache(account)

    def test_stale_oracle_error_rejected_with_missing_values(self, leveraged_account):
        account = _with_cache(
            leveraged_account,
            initial=(1050, 600),
            maint=(1200, 550),
            mrgn_err=HEALTH_CACHE_STALE_ORACLE_ERROR,
        )

        with pytest.raises(HealthCacheSimulationError) as exc_info:
            check_simulated_cache(account)
        assert exc_info.value.mrgn_err == HEALTH_CACHE_STALE_ORACLE_ERROR

    def test_internal_error_rejected(self, leveraged_account):
        account = _with_cache(leveraged_account, initial=(1, 1), internal_err=3)

        with pytest.raises(HealthCacheSimulationError) as exc_info:
            check_simulated_cache(account)
        assert exc_info.value.internal_err == 3


# ============================================================================
# End to end
# ============================================================================

class TestSimulateAccountHealthCache:
    @pytest.mark.asyncio
    async def test_simulated_cache_is_used(self, mock_rpc, leveraged_account, bank_map, oracle_prices):
        """Initial / maintenance come from the pulse; equity is recomputed without bias."""
        post = _with_cache(leveraged_account, initial=(1050, 600), maint=(1200, 550), equity=(7, 7))
        mock_rpc.simulate_bundle = AsyncMock(return_value=bundle_result(post))

        result = await simulate_account_health_cache(
            mock_rpc, leveraged_account, bank_map, oracle_prices, PROGRAM_ID
        )

        assert isinstance(result, SimulatedHealth)
        cache = result.account.health_cache
        assert cache.simulation_status == HealthCacheStatus.SIMULATED
        assert (cache.asset_value, cache.liability_value) == (Decimal(1050), Decimal(600))
        assert (cache.asset_value_equity, cache.liability_value_equity) == (Decimal(1500), Decimal(500))

    @pytest.mark.asyncio
    async def test_program_error_falls_back_to_local(self, mock_rpc, leveraged_account, bank_map, oracle_prices):
        """A non-tolerated error yields a computed cache together with the error."""
        post = _with_cache(leveraged_account, initial=(1050, 600), maint=(1200, 550), mrgn_err=6001)
        mock_rpc.simulate_bundle = AsyncMock(return_value=bundle_result(post))

        result = await simulate_account_health_cache(
            mock_rpc, leveraged_account, bank_map, oracle_prices, PROGRAM_ID
        )

        assert isinstance(result, FallbackHealth)
        assert result.error.mrgn_err == 6001
        cache = result.account.health_cache
        assert cache.simulation_status == HealthCacheStatus.COMPUTED
        # 10 SOL at 149.5 x 0.7 against 500 USDC at 1.01 x 1.2
        assert cache.asset_value == Decimal("1046.5")
        assert cache.liability_value == Decimal("606")

    @pytest.mark.asyncio
    async def test_stale_oracle_with_full_cache_is_simulated(
        self, mock_rpc, leveraged_account, bank_map, oracle_prices
    ):
        post = _with_cache(
            leveraged_account,
            initial=(1050, 600),
            maint=(1200, 550),
            equity=(1500, 500),
            mrgn_err=HEALTH_CACHE_STALE_ORACLE_ERROR,
        )
        mock_rpc.simulate_bundle = AsyncMock(return_value=bundle_result(post))

        result = await simulate_account_health_cache(
            mock_rpc, leveraged_account, bank_map, oracle_prices, PROGRAM_ID
        )

        assert isinstance(result, SimulatedHealth)

    @pytest.mark.asyncio
    async def test_transport_failure_is_wrapped(self, mock_rpc, leveraged_account, bank_map, oracle_prices):
        mock_rpc.simulate_bundle = AsyncMock(side_effect=RpcError("All RPC providers failed", method="simulateBundle"))

        result = await simulate_account_health_cache(
            mock_rpc, leveraged_account, bank_map, oracle_prices, PROGRAM_ID
        )

        assert isinstance(result, FallbackHealth)
        assert isinstance(result.error, HealthCacheSimulationError)
        assert "All RPC providers failed" in str(result.error)

    @pytest.mark.asyncio
    async def test_missing_post_state(self, mock_rpc, leveraged_account, bank_map, oracle_prices):
        """An empty bundle result is reported as a missing account."""
        result = await simulate_account_health_cache(
            mock_rpc, leveraged_account, bank_map, oracle_prices, PROGRAM_ID
        )

        assert isinstance(result, FallbackHealth)
        assert "Account not found" in str(result.error)

    @pytest.mark.asyncio
    async def test_missing_price_still_falls_back(self, mock_rpc, usdc_bank, sol_bank, bank_map):
        account = make_account([deposit(sol_bank, 10), borrow(usdc_bank, 500)])
        prices = {usdc_bank.key: make_price(1)}

        result = await simulate_account_health_cache(mock_rpc, account, bank_map, prices, PROGRAM_ID)

        assert isinstance(result, FallbackHealth)
        assert result.account.health_cache.asset_value == 0
