"""
Drift Protocol Integration

Support for marginfi banks whose deposits sit in a Drift spot market:
- spot market state decoding (pubkey, oracle, mint, interest, index)
- Drift PDAs (state, signer, user, user stats, spot market and vault)
- update-spot-market-cumulative-interest instruction
- deposit interest exchange rate used as the asset share multiplier
"""

import hashlib
import logging
import struct
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, List, Mapping, Sequence

from solders.instruction import AccountMeta, Instruction
from solders.pubkey import Pubkey

from mrgn.core.constants import DEFAULT_PUBKEY, DRIFT_PROGRAM_ID
from mrgn.core.fixed_point import checked_div
from mrgn.core.rpc import RpcClient
from mrgn.models.balance import Balance
from mrgn.models.bank import AssetTag, Bank, BankIntegrationMetadata


logger = logging.getLogger(__name__)


SPOT_MARKET_DISCRIMINATOR = hashlib.sha256(b"account:SpotMarket").digest()[:8]
UPDATE_SPOT_MARKET_CUMULATIVE_INTEREST_DISCRIMINATOR = bytes([39, 166, 139, 243, 158, 165, 155, 225])

# Drift stores balances with 19 implied decimals less the mint's
SPOT_BALANCE_PRECISION_EXP = 19

# Byte offsets in the spot market account, discriminator included
_PUBKEY = 8
_ORACLE = 40
_MINT = 72
_VAULT = 104
_DEPOSIT_BALANCE = 432
_BORROW_BALANCE = 448
_CUMULATIVE_DEPOSIT_INTEREST = 464
_CUMULATIVE_BORROW_INTEREST = 480
_DECIMALS = 680
_MARKET_INDEX = 684
MIN_SPOT_MARKET_SIZE = _MARKET_INDEX + 2


@dataclass(frozen=True)
class DriftSpotMarketState:
    """Decoded subset of a Drift spot market."""
    pubkey: Pubkey
    oracle: Pubkey
    mint: Pubkey
    vault: Pubkey
    deposit_balance: int
    borrow_balance: int
    cumulative_deposit_interest: int
    cumulative_borrow_interest: int
    decimals: int
    market_index: int

    @classmethod
    def decode(cls, data: bytes) -> "DriftSpotMarketState":
        """
        Decode a Drift spot market account.

        Raises:
            ValueError: If the data is too short or not a spot market
        """
        if len(data) < MIN_SPOT_MARKET_SIZE:
            raise ValueError(f"Spot market data too short: {len(data)} bytes")
        if data[:8] != SPOT_MARKET_DISCRIMINATOR:
            raise ValueError("Account is not a Drift spot market")

        def u128(offset: int) -> int:
            return int.from_bytes(data[offset:offset + 16], "little")

        return cls(
            pubkey=Pubkey.from_bytes(data[_PUBKEY:_PUBKEY + 32]),
            oracle=Pubkey.from_bytes(data[_ORACLE:_ORACLE + 32]),
            mint=Pubkey.from_bytes(data[_MINT:_MINT + 32]),
            vault=Pubkey.from_bytes(data[_VAULT:_VAULT + 32]),
            deposit_balance=u128(_DEPOSIT_BALANCE),
            borrow_balance=u128(_BORROW_BALANCE),
            cumulative_deposit_interest=u128(_CUMULATIVE_DEPOSIT_INTEREST),
            cumulative_borrow_interest=u128(_CUMULATIVE_BORROW_INTEREST),
            decimals=struct.unpack_from("<I", data, _DECIMALS)[0],
            market_index=struct.unpack_from("<H", data, _MARKET_INDEX)[0],
        )


@dataclass(frozen=True)
class DriftStates:
    spot_market_state: DriftSpotMarketState


def get_drift_ctoken_multiplier(spot_market: DriftSpotMarketState) -> Decimal:
    """Underlying native units per Drift scaled balance unit."""
    precision = Decimal(10) ** (SPOT_BALANCE_PRECISION_EXP - spot_market.decimals)
    return checked_div(spot_market.cumulative_deposit_interest, precision)


# ============================================================================
# PDAs
# ============================================================================

def derive_drift_state() -> Pubkey:
    pda, _ = Pubkey.find_program_address([b"drift_state"], DRIFT_PROGRAM_ID)
    return pda


def derive_drift_signer() -> Pubkey:
    pda, _ = Pubkey.find_program_address([b"drift_signer"], DRIFT_PROGRAM_ID)
    return pda


def derive_drift_user(authority: Pubkey, sub_account_id: int = 0) -> Pubkey:
    pda, _ = Pubkey.find_program_address(
        [b"user", bytes(authority), struct.pack("<H", sub_account_id)], DRIFT_PROGRAM_ID
    )
    return pda


def derive_drift_user_stats(authority: Pubkey) -> Pubkey:
    pda, _ = Pubkey.find_program_address([b"user_stats", bytes(authority)], DRIFT_PROGRAM_ID)
    return pda


def derive_drift_spot_market(market_index: int) -> Pubkey:
    pda, _ = Pubkey.find_program_address([b"spot_market", struct.pack("<H", market_index)], DRIFT_PROGRAM_ID)
    return pda


def derive_drift_spot_market_vault(market_index: int) -> Pubkey:
    pda, _ = Pubkey.find_program_address([b"spot_market_vault", struct.pack("<H", market_index)], DRIFT_PROGRAM_ID)
    return pda


# ============================================================================
# Instructions
# ============================================================================

def make_update_spot_market_cumulative_interest_ix(spot_market: DriftSpotMarketState) -> Instruction:
    accounts = [
        AccountMeta(pubkey=derive_drift_state(), is_signer=False, is_writable=False),
        AccountMeta(pubkey=spot_market.pubkey, is_signer=False, is_writable=True),
        AccountMeta(pubkey=spot_market.oracle, is_signer=False, is_writable=False),
        AccountMeta(pubkey=derive_drift_spot_market_vault(spot_market.market_index), is_signer=False, is_writable=False),
    ]
    return Instruction(
        program_id=DRIFT_PROGRAM_ID,
        accounts=accounts,
        data=UPDATE_SPOT_MARKET_CUMULATIVE_INTEREST_DISCRIMINATOR,
    )


def make_update_drift_markets_ixs(
    balances: Sequence[Balance],
    bank_map: Mapping[str, Bank],
    banks_to_exclude: Sequence[Pubkey],
    metadata_map: Mapping[str, BankIntegrationMetadata],
) -> List[Instruction]:
    """Interest update for every held Drift bank not in `banks_to_exclude`."""
    excluded = {str(pk) for pk in banks_to_exclude}
    ixs = []
    for balance in balances:
        key = str(balance.bank_pk)
        if not balance.active or key in excluded:
            continue
        bank = bank_map.get(key)
        if bank is None or bank.asset_tag != AssetTag.DRIFT:
            continue
        metadata = metadata_map.get(key)
        if metadata is None or metadata.drift_states is None:
            logger.warning(f"Drift state missing for bank {bank.display_name()}, skipping market update")
            continue
        ixs.append(make_update_spot_market_cumulative_interest_ix(metadata.drift_states.spot_market_state))
    return ixs


class DriftIntegration:
    """Fetches Drift spot market state for integration banks."""

    def __init__(self, rpc_client: RpcClient):
        self.rpc_client = rpc_client

    async def fetch_states(self, banks: Sequence[Bank]) -> Dict[str, DriftStates]:
        """
        Spot market state per Drift bank, keyed by bank address.

        Banks without integration accounts, or whose market is missing or
        undecodable, are left out with a warning.
        """
        inputs = []
        for bank in banks:
            if bank.asset_tag != AssetTag.DRIFT:
                continue
            accounts = bank.drift_integration_accounts
            if accounts is None or accounts.drift_spot_market == DEFAULT_PUBKEY:
                logger.warning(f"Drift accounts not set for bank {bank.display_name()}")
                continue
            inputs.append((bank, accounts.drift_spot_market))

        if not inputs:
            return {}

        datas = await self.rpc_client.get_multiple_accounts([market for _, market in inputs])

        states: Dict[str, DriftStates] = {}
        for (bank, market), data in zip(inputs, datas):
            if data is None:
                logger.warning(f"Drift spot market {market} not found for bank {bank.display_name()}")
                continue
            try:
                states[bank.key] = DriftStates(spot_market_state=DriftSpotMarketState.decode(data))
            except ValueError as e:
                logger.warning(f"Failed to decode Drift spot market for bank {bank.display_name()}: {e}")

        logger.info(f"Fetched Drift state for {len(states)}/{len(inputs)} banks")
        return states
