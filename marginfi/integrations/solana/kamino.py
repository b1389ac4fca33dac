"""
Kamino Lending Integration

Support for marginfi banks whose deposits sit in a Kamino (klend) reserve:
- reserve state decoding (only the fields marginfi instructions need)
- klend PDAs (market authority, reserve vaults, farm user state)
- refresh-reserves-batch and refresh-obligation instructions
- collateral token exchange rate used as the asset share multiplier
"""

import hashlib
import logging
import struct
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

from solders.instruction import AccountMeta, Instruction
from solders.pubkey import Pubkey

from mrgn.core.constants import DEFAULT_PUBKEY, KAMINO_FARMS_PROGRAM_ID, KAMINO_LENDING_PROGRAM_ID
from mrgn.core.fixed_point import ONE, checked_div
from mrgn.core.rpc import RpcClient
from mrgn.models.balance import Balance
from mrgn.models.bank import AssetTag, Bank, BankIntegrationMetadata


logger = logging.getLogger(__name__)


RESERVE_DISCRIMINATOR = hashlib.sha256(b"account:Reserve").digest()[:8]

REFRESH_RESERVES_BATCH_DISCRIMINATOR = bytes([144, 110, 26, 103, 162, 204, 252, 147])
REFRESH_OBLIGATION_DISCRIMINATOR = bytes([33, 132, 147, 228, 151, 192, 72, 89])

# Scaled fractions carry 60 fractional bits
_SF_SCALE = Decimal(2) ** 60

# Byte offsets in the reserve account, discriminator included
_LENDING_MARKET = 32
_FARM_COLLATERAL = 64
_FARM_DEBT = 96
_LIQUIDITY_MINT = 128
_LIQUIDITY_SUPPLY_VAULT = 160
_LIQUIDITY_FEE_VAULT = 192
_LIQUIDITY_AVAILABLE = 224
_LIQUIDITY_BORROWED_SF = 232
_LIQUIDITY_MINT_DECIMALS = 272
_ACCUMULATED_PROTOCOL_FEES_SF = 344
_ACCUMULATED_REFERRER_FEES_SF = 360
_PENDING_REFERRER_FEES_SF = 376
_LIQUIDITY_TOKEN_PROGRAM = 408
_COLLATERAL_MINT = 2560
_COLLATERAL_MINT_TOTAL_SUPPLY = 2592
_COLLATERAL_SUPPLY_VAULT = 2600
MIN_RESERVE_SIZE = _COLLATERAL_SUPPLY_VAULT + 32


def _pubkey_at(data: bytes, offset: int) -> Pubkey:
    return Pubkey.from_bytes(data[offset:offset + 32])


def _u64_at(data: bytes, offset: int) -> int:
    return struct.unpack_from("<Q", data, offset)[0]


def _sf_at(data: bytes, offset: int) -> Decimal:
    return Decimal(int.from_bytes(data[offset:offset + 16], "little")) / _SF_SCALE


@dataclass(frozen=True)
class KaminoReserveState:
    """Decoded subset of a klend reserve."""
    address: Pubkey
    lending_market: Pubkey
    farm_collateral: Pubkey
    farm_debt: Pubkey
    liquidity_mint: Pubkey
    liquidity_supply_vault: Pubkey
    liquidity_fee_vault: Pubkey
    liquidity_available_amount: int
    liquidity_borrowed_amount: Decimal
    liquidity_mint_decimals: int
    accumulated_protocol_fees: Decimal
    accumulated_referrer_fees: Decimal
    pending_referrer_fees: Decimal
    liquidity_token_program: Pubkey
    collateral_mint: Pubkey
    collateral_mint_total_supply: int
    collateral_supply_vault: Pubkey

    @classmethod
    def decode(cls, address: Pubkey, data: bytes) -> "KaminoReserveState":
        """
        Decode a klend reserve account.

        Raises:
            ValueError: If the data is too short or not a reserve
        """
        if len(data) < MIN_RESERVE_SIZE:
            raise ValueError(f"Reserve {address} data too short: {len(data)} bytes")
        if data[:8] != RESERVE_DISCRIMINATOR:
            raise ValueError(f"Account {address} is not a Kamino reserve")

        return cls(
            address=address,
            lending_market=_pubkey_at(data, _LENDING_MARKET),
            farm_collateral=_pubkey_at(data, _FARM_COLLATERAL),
            farm_debt=_pubkey_at(data, _FARM_DEBT),
            liquidity_mint=_pubkey_at(data, _LIQUIDITY_MINT),
            liquidity_supply_vault=_pubkey_at(data, _LIQUIDITY_SUPPLY_VAULT),
            liquidity_fee_vault=_pubkey_at(data, _LIQUIDITY_FEE_VAULT),
            liquidity_available_amount=_u64_at(data, _LIQUIDITY_AVAILABLE),
            liquidity_borrowed_amount=_sf_at(data, _LIQUIDITY_BORROWED_SF),
            liquidity_mint_decimals=_u64_at(data, _LIQUIDITY_MINT_DECIMALS),
            accumulated_protocol_fees=_sf_at(data, _ACCUMULATED_PROTOCOL_FEES_SF),
            accumulated_referrer_fees=_sf_at(data, _ACCUMULATED_REFERRER_FEES_SF),
            pending_referrer_fees=_sf_at(data, _PENDING_REFERRER_FEES_SF),
            liquidity_token_program=_pubkey_at(data, _LIQUIDITY_TOKEN_PROGRAM),
            collateral_mint=_pubkey_at(data, _COLLATERAL_MINT),
            collateral_mint_total_supply=_u64_at(data, _COLLATERAL_MINT_TOTAL_SUPPLY),
            collateral_supply_vault=_pubkey_at(data, _COLLATERAL_SUPPLY_VAULT),
        )

    @property
    def has_farm(self) -> bool:
        return self.farm_collateral != DEFAULT_PUBKEY

    def total_supply(self) -> Decimal:
        """Liquidity owned by depositors, in native units."""
        return (
            Decimal(self.liquidity_available_amount)
            + self.liquidity_borrowed_amount
            - self.accumulated_protocol_fees
            - self.accumulated_referrer_fees
            - self.pending_referrer_fees
        )


@dataclass(frozen=True)
class KaminoStates:
    reserve_state: KaminoReserveState
    obligation: Pubkey


def get_kamino_ctoken_multiplier(reserve: KaminoReserveState) -> Decimal:
    """
    Underlying tokens per collateral token.

    Both supplies share the liquidity mint's decimals, so the native ratio
    is the UI ratio. An empty reserve trades at par.
    """
    if reserve.collateral_mint_total_supply == 0:
        return ONE
    return checked_div(reserve.total_supply(), reserve.collateral_mint_total_supply)


# ============================================================================
# PDAs
# ============================================================================

def derive_lending_market_authority(lending_market: Pubkey) -> Pubkey:
    pda, _ = Pubkey.find_program_address([b"lma", bytes(lending_market)], KAMINO_LENDING_PROGRAM_ID)
    return pda


def derive_reserve_liquidity_supply(lending_market: Pubkey, mint: Pubkey) -> Pubkey:
    pda, _ = Pubkey.find_program_address(
        [b"reserve_liq_supply", bytes(lending_market), bytes(mint)], KAMINO_LENDING_PROGRAM_ID
    )
    return pda


def derive_reserve_collateral_mint(lending_market: Pubkey, mint: Pubkey) -> Pubkey:
    pda, _ = Pubkey.find_program_address(
        [b"reserve_coll_mint", bytes(lending_market), bytes(mint)], KAMINO_LENDING_PROGRAM_ID
    )
    return pda


def derive_reserve_collateral_supply(lending_market: Pubkey, mint: Pubkey) -> Pubkey:
    pda, _ = Pubkey.find_program_address(
        [b"reserve_coll_supply", bytes(lending_market), bytes(mint)], KAMINO_LENDING_PROGRAM_ID
    )
    return pda


def derive_obligation_farm_user_state(farm_state: Pubkey, obligation: Pubkey) -> Pubkey:
    pda, _ = Pubkey.find_program_address([b"user", bytes(farm_state), bytes(obligation)], KAMINO_FARMS_PROGRAM_ID)
    return pda


@dataclass(frozen=True)
class KaminoDerivedAccounts:
    lending_market_authority: Pubkey
    reserve_liquidity_supply: Pubkey
    reserve_collateral_mint: Pubkey
    reserve_collateral_supply: Pubkey


def get_all_derived_kamino_accounts(lending_market: Pubkey, mint: Pubkey) -> KaminoDerivedAccounts:
    return KaminoDerivedAccounts(
        lending_market_authority=derive_lending_market_authority(lending_market),
        reserve_liquidity_supply=derive_reserve_liquidity_supply(lending_market, mint),
        reserve_collateral_mint=derive_reserve_collateral_mint(lending_market, mint),
        reserve_collateral_supply=derive_reserve_collateral_supply(lending_market, mint),
    )


def get_farm_accounts(states: KaminoStates) -> Tuple[Optional[Pubkey], Optional[Pubkey]]:
    """(obligation farm user state, reserve farm state), both None without a collateral farm."""
    reserve = states.reserve_state
    if not reserve.has_farm:
        return None, None
    return derive_obligation_farm_user_state(reserve.farm_collateral, states.obligation), reserve.farm_collateral


# ============================================================================
# Instructions
# ============================================================================

def make_refresh_reserves_batch_ix(
    reserves: Sequence[Tuple[Pubkey, Pubkey]],
    skip_price_updates: bool = True,
) -> Instruction:
    """
    Refresh several reserves in one instruction.

    Args:
        reserves: (reserve, lending market) pairs
        skip_price_updates: Leave oracle prices untouched
    """
    accounts = []
    for reserve, lending_market in reserves:
        accounts.append(AccountMeta(pubkey=reserve, is_signer=False, is_writable=True))
        accounts.append(AccountMeta(pubkey=lending_market, is_signer=False, is_writable=False))
    data = REFRESH_RESERVES_BATCH_DISCRIMINATOR + (b"\x01" if skip_price_updates else b"\x00")
    return Instruction(program_id=KAMINO_LENDING_PROGRAM_ID, accounts=accounts, data=data)


def make_refresh_obligation_ix(lending_market: Pubkey, obligation: Pubkey, reserve: Pubkey) -> Instruction:
    accounts = [
        AccountMeta(pubkey=lending_market, is_signer=False, is_writable=False),
        AccountMeta(pubkey=obligation, is_signer=False, is_writable=True),
        AccountMeta(pubkey=reserve, is_signer=False, is_writable=False),
    ]
    return Instruction(program_id=KAMINO_LENDING_PROGRAM_ID, accounts=accounts, data=REFRESH_OBLIGATION_DISCRIMINATOR)


def make_refresh_kamino_banks_ixs(
    balances: Sequence[Balance],
    bank_map: Mapping[str, Bank],
    new_banks: Sequence[Pubkey],
    metadata_map: Mapping[str, BankIntegrationMetadata],
) -> List[Instruction]:
    """
    Refresh instructions for every Kamino bank the account holds or is opening.

    One batch reserve refresh covers all of them; obligations are refreshed
    only for the newly opened banks.
    """
    keys: Dict[str, None] = {}
    for balance in balances:
        if balance.active:
            keys[str(balance.bank_pk)] = None
    for pk in new_banks:
        keys[str(pk)] = None
    new_keys = {str(pk) for pk in new_banks}

    kamino_banks = [
        bank_map[key] for key in keys
        if key in bank_map and bank_map[key].asset_tag == AssetTag.KAMINO
    ]
    if not kamino_banks:
        return []

    reserves = []
    obligations = []
    for bank in kamino_banks:
        metadata = metadata_map.get(bank.key)
        states = metadata.kamino_states if metadata else None
        if states is None or bank.kamino_integration_accounts is None:
            logger.warning(f"Kamino state missing for bank {bank.display_name()}, skipping refresh")
            continue

        lending_market = states.reserve_state.lending_market
        reserve = bank.kamino_integration_accounts.kamino_reserve
        reserves.append((reserve, lending_market))
        if bank.key in new_keys:
            obligations.append(
                make_refresh_obligation_ix(lending_market, bank.kamino_integration_accounts.kamino_obligation, reserve)
            )

    if not reserves:
        return []
    return [make_refresh_reserves_batch_ix(reserves)] + obligations


class KaminoIntegration:
    """Fetches Kamino reserve state for integration banks."""

    def __init__(self, rpc_client: RpcClient):
        self.rpc_client = rpc_client

    async def fetch_states(self, banks: Sequence[Bank]) -> Dict[str, KaminoStates]:
        """
        Reserve state per Kamino bank, keyed by bank address.

        Banks without integration accounts, or whose reserve is missing or
        undecodable, are left out with a warning.
        """
        inputs = []
        for bank in banks:
            if bank.asset_tag != AssetTag.KAMINO:
                continue
            accounts = bank.kamino_integration_accounts
            if accounts is None:
                logger.warning(f"Kamino accounts not set for bank {bank.display_name()}")
                continue
            if accounts.kamino_reserve == DEFAULT_PUBKEY or accounts.kamino_obligation == DEFAULT_PUBKEY:
                continue
            inputs.append((bank, accounts))

        if not inputs:
            return {}

        datas = await self.rpc_client.get_multiple_accounts([accounts.kamino_reserve for _, accounts in inputs])

        states: Dict[str, KaminoStates] = {}
        for (bank, accounts), data in zip(inputs, datas):
            if data is None:
                logger.warning(f"Kamino reserve {accounts.kamino_reserve} not found for bank {bank.display_name()}")
                continue
            try:
                reserve = KaminoReserveState.decode(accounts.kamino_reserve, data)
            except ValueError as e:
                logger.warning(f"Failed to decode Kamino reserve for bank {bank.display_name()}: {e}")
                continue
            states[bank.key] = KaminoStates(reserve_state=reserve, obligation=accounts.kamino_obligation)

        logger.info(f"Fetched Kamino state for {len(states)}/{len(inputs)} banks")
        return states

