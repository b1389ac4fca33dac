"""
Test Kamino and Drift Integrations

Reserve / spot market decoding, exchange rates, refresh instructions and
state fetching for integration banks.
"""

import struct
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest
from solders.pubkey import Pubkey

from integrations.solana.drift import (
    MIN_SPOT_MARKET_SIZE,
    SPOT_MARKET_DISCRIMINATOR,
    DriftIntegration,
    DriftSpotMarketState,
    DriftStates,
    get_drift_ctoken_multiplier,
    make_update_drift_markets_ixs,
)
from integrations.solana.kamino import (
    MIN_RESERVE_SIZE,
    REFRESH_OBLIGATION_DISCRIMINATOR,
    REFRESH_RESERVES_BATCH_DISCRIMINATOR,
    RESERVE_DISCRIMINATOR,
    KaminoIntegration,
    KaminoReserveState,
    KaminoStates,
    get_farm_accounts,
    get_kamino_ctoken_multiplier,
    make_refresh_kamino_banks_ixs,
)
from mrgn.core.constants import KAMINO_LENDING_PROGRAM_ID
from mrgn.models.bank import AssetTag, BankIntegrationMetadata, DriftIntegrationAccounts, KaminoIntegrationAccounts
from tests.factories import bank_map_of, deposit, make_bank


SF = 2 ** 60


def _reserve_data(lending_market, available=1000, borrowed=200, collateral_supply=1000, farm=None):
    data = bytearray(MIN_RESERVE_SIZE)
    data[:8] = RESERVE_DISCRIMINATOR
    data[32:64] = bytes(lending_market)
    data[64:96] = bytes(farm) if farm else bytes(32)
    struct.pack_into("<Q", data, 224, available)
    data[232:248] = (borrowed * SF).to_bytes(16, "little")
    struct.pack_into("<Q", data, 2592, collateral_supply)
    return bytes(data)


def _spot_market_data(market_index=3, decimals=9, cumulative_deposit_interest=10_500_000_000):
    data = bytearray(MIN_SPOT_MARKET_SIZE)
    data[:8] = SPOT_MARKET_DISCRIMINATOR
    data[8:40] = bytes(Pubkey.new_unique())
    data[464:480] = cumulative_deposit_interest.to_bytes(16, "little")
    struct.pack_into("<I", data, 680, decimals)
    struct.pack_into("<H", data, 684, market_index)
    return bytes(data)


def _kamino_bank():
    return make_bank(
        asset_tag=AssetTag.KAMINO,
        kamino_integration_accounts=KaminoIntegrationAccounts(
            kamino_reserve=Pubkey.new_unique(), kamino_obligation=Pubkey.new_unique()
        ),
    )


def _drift_bank():
    return make_bank(
        asset_tag=AssetTag.DRIFT,
        drift_integration_accounts=DriftIntegrationAccounts(
            drift_spot_market=Pubkey.new_unique(), drift_user=Pubkey.new_unique(), drift_user_stats=Pubkey.new_unique()
        ),
    )


def _kamino_metadata(bank, lending_market):
    reserve = KaminoReserveState.decode(
        bank.kamino_integration_accounts.kamino_reserve, _reserve_data(lending_market)
    )
    states = KaminoStates(reserve_state=reserve, obligation=bank.kamino_integration_accounts.kamino_obligation)
    return {bank.key: BankIntegrationMetadata(kamino_states=states)}


# ============================================================================
# Kamino
# ============================================================================

class TestKaminoReserve:
    def test_decode_and_exchange_rate(self):
        """Depositor supply over collateral supply: (1000 + 200) / 1000."""
        market = Pubkey.new_unique()

        reserve = KaminoReserveState.decode(Pubkey.new_unique(), _reserve_data(market))

        assert reserve.lending_market == market
        assert reserve.total_supply() == Decimal(1200)
        assert get_kamino_ctoken_multiplier(reserve) == Decimal("1.2")

    def test_empty_reserve_at_par(self):
        reserve = KaminoReserveState.decode(Pubkey.new_unique(), _reserve_data(Pubkey.new_unique(), collateral_supply=0))

        assert get_kamino_ctoken_multiplier(reserve) == 1

    def test_wrong_discriminator(self):
        data = bytearray(_reserve_data(Pubkey.new_unique()))
        data[:8] = bytes(8)

        with pytest.raises(ValueError, match="not a Kamino reserve"):
            KaminoReserveState.decode(Pubkey.new_unique(), bytes(data))

    def test_farm_accounts(self):
        farm, obligation = Pubkey.new_unique(), Pubkey.new_unique()
        with_farm = KaminoReserveState.decode(Pubkey.new_unique(), _reserve_data(Pubkey.new_unique(), farm=farm))
        without = KaminoReserveState.decode(Pubkey.new_unique(), _reserve_data(Pubkey.new_unique()))

        user_state, farm_state = get_farm_accounts(KaminoStates(with_farm, obligation))

        assert farm_state == farm and user_state is not None
        assert get_farm_accounts(KaminoStates(without, obligation)) == (None, None)


class TestKaminoRefresh:
    def test_held_and_new_banks_share_one_batch(self):
        """Obligations are refreshed only for banks being opened."""
        held, opening = _kamino_bank(), _kamino_bank()
        market = Pubkey.new_unique()
        metadata = {**_kamino_metadata(held, market), **_kamino_metadata(opening, market)}

        ixs = make_refresh_kamino_banks_ixs(
            [deposit(held, 10)], bank_map_of(held, opening), [opening.address], metadata
        )

        assert [bytes(ix.data)[:8] for ix in ixs] == [
            REFRESH_RESERVES_BATCH_DISCRIMINATOR, REFRESH_OBLIGATION_DISCRIMINATOR
        ]
        assert len(ixs[0].accounts) == 4
        assert ixs[1].accounts[1].pubkey == opening.kamino_integration_accounts.kamino_obligation
        assert all(ix.program_id == KAMINO_LENDING_PROGRAM_ID for ix in ixs)

    def test_plain_banks_need_nothing(self, usdc_bank):
        assert make_refresh_kamino_banks_ixs([deposit(usdc_bank, 1)], bank_map_of(usdc_bank), [], {}) == []

    def test_missing_state_skipped(self, caplog):
        bank = _kamino_bank()

        assert make_refresh_kamino_banks_ixs([], bank_map_of(bank), [bank.address], {}) == []
        assert "Kamino state missing" in caplog.text

    @pytest.mark.asyncio
    async def test_fetch_states(self, mock_rpc):
        good, missing = _kamino_bank(), _kamino_bank()
        market = Pubkey.new_unique()
        mock_rpc.get_multiple_accounts = AsyncMock(return_value=[_reserve_data(market), None])

        states = await KaminoIntegration(mock_rpc).fetch_states([good, missing, make_bank()])

        assert list(states) == [good.key]
        assert states[good.key].reserve_state.lending_market == market


# ============================================================================
# Drift
# ============================================================================

class TestDriftSpotMarket:
    def test_decode_and_exchange_rate(self):
        market = DriftSpotMarketState.decode(_spot_market_data())

        assert market.market_index == 3
        assert market.decimals == 9
        assert get_drift_ctoken_multiplier(market) == Decimal("1.05")

    def test_short_data(self):
        with pytest.raises(ValueError, match="too short"):
            DriftSpotMarketState.decode(bytes(100))

    def test_update_skips_excluded_banks(self):
        held, excluded = _drift_bank(), _drift_bank()
        metadata = {
            bank.key: BankIntegrationMetadata(
                drift_states=DriftStates(DriftSpotMarketState.decode(_spot_market_data()))
            )
            for bank in (held, excluded)
        }

        ixs = make_update_drift_markets_ixs(
            [deposit(held, 1), deposit(excluded, 1)], bank_map_of(held, excluded), [excluded.address], metadata
        )

        assert len(ixs) == 1
        assert ixs[0].accounts[1].pubkey == metadata[held.key].drift_states.spot_market_state.pubkey

    @pytest.mark.asyncio
    async def test_fetch_states_skips_undecodable(self, mock_rpc):
        good, broken = _drift_bank(), _drift_bank()
        mock_rpc.get_multiple_accounts = AsyncMock(return_value=[_spot_market_data(), bytes(16)])

        states = await DriftIntegration(mock_rpc).fetch_states([good, broken])

        assert list(states) == [good.key]
