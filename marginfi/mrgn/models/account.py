"""
Margin account model.

MarginfiAccount is an immutable snapshot:
- 16 balance slots in on-chain order (slot position matters for health-check
  account ordering)
- account flags (disabled, in flash loan, flash loan enabled, transfer allowed)
- emissions destination and the current health cache

Derived states (projected balances, refreshed health cache) are new values
built with `with_balances` / `with_health_cache`.
"""

import hashlib
import logging
import struct
from dataclasses import dataclass, field, replace
from typing import List, Optional, Tuple

from solders.pubkey import Pubkey

from ..core.constants import (
    ACCOUNT_DISABLED,
    ACCOUNT_FLASHLOAN_ENABLED,
    ACCOUNT_IN_FLASHLOAN,
    ACCOUNT_TRANSFER_AUTHORITY_ALLOWED,
    DEFAULT_PUBKEY,
    MAX_BALANCES,
)
from ..core.errors import DataIntegrityError
from .balance import BALANCE_SIZE, Balance
from .health_cache import HEALTH_CACHE_SIZE, HealthCache

logger = logging.getLogger(__name__)

MARGINFI_ACCOUNT_DISCRIMINATOR = hashlib.sha256(b"account:MarginfiAccount").digest()[:8]

_GROUP_OFFSET = 8
_AUTHORITY_OFFSET = 40
_BALANCES_OFFSET = 72
_FLAGS_OFFSET = _BALANCES_OFFSET + MAX_BALANCES * BALANCE_SIZE + 64
_EMISSIONS_DESTINATION_OFFSET = _FLAGS_OFFSET + 8
_HEALTH_CACHE_OFFSET = _EMISSIONS_DESTINATION_OFFSET + 32
MIN_ACCOUNT_SIZE = _HEALTH_CACHE_OFFSET + HEALTH_CACHE_SIZE


@dataclass(frozen=True)
class MarginfiAccount:
    address: Pubkey
    group: Pubkey
    authority: Pubkey
    balances: Tuple[Balance, ...]
    account_flags: int = 0
    emissions_destination: Pubkey = DEFAULT_PUBKEY
    health_cache: HealthCache = field(default_factory=HealthCache)

    def __post_init__(self):
        if len(self.balances) > MAX_BALANCES:
            raise DataIntegrityError(
                f"Account {self.address} has {len(self.balances)} balance slots, max is {MAX_BALANCES}"
            )
        if len(self.balances) < MAX_BALANCES:
            padded = tuple(self.balances) + tuple(
                Balance.empty() for _ in range(MAX_BALANCES - len(self.balances))
            )
            object.__setattr__(self, "balances", padded)

    @classmethod
    def decode(cls, address: Pubkey, data: bytes) -> "MarginfiAccount":
        """
        Decode a margin account from raw account data.

        Args:
            address: Account address
            data: Raw account bytes, discriminator included

        Returns:
            MarginfiAccount with a CACHED (or UNSET) health cache

        Raises:
            ValueError: If the data is too short or not a margin account
            DataIntegrityError: If any slot holds both deposit and borrow shares
        """
        if len(data) < MIN_ACCOUNT_SIZE:
            raise ValueError(f"Account {address} data too short: {len(data)} bytes")
        if data[:8] != MARGINFI_ACCOUNT_DISCRIMINATOR:
            raise ValueError(f"Account {address} is not a marginfi account")

        balances = tuple(
            Balance.decode(data[offset:offset + BALANCE_SIZE])
            for offset in range(_BALANCES_OFFSET, _BALANCES_OFFSET + MAX_BALANCES * BALANCE_SIZE, BALANCE_SIZE)
        )
        (account_flags,) = struct.unpack_from("<Q", data, _FLAGS_OFFSET)

        return cls(
            address=address,
            group=Pubkey.from_bytes(data[_GROUP_OFFSET:_GROUP_OFFSET + 32]),
            authority=Pubkey.from_bytes(data[_AUTHORITY_OFFSET:_AUTHORITY_OFFSET + 32]),
            balances=balances,
            account_flags=account_flags,
            emissions_destination=Pubkey.from_bytes(
                data[_EMISSIONS_DESTINATION_OFFSET:_EMISSIONS_DESTINATION_OFFSET + 32]
            ),
            health_cache=HealthCache.decode(data[_HEALTH_CACHE_OFFSET:_HEALTH_CACHE_OFFSET + HEALTH_CACHE_SIZE]),
        )

    @property
    def active_balances(self) -> List[Balance]:
        return [balance for balance in self.balances if balance.active]

    def get_balance(self, bank_pk: Pubkey) -> Balance:
        """Active balance for a bank, or an empty one labelled with it."""
        for balance in self.balances:
            if balance.active and balance.bank_pk == bank_pk:
                return balance
        return Balance.empty(bank_pk)

    def find_balance(self, bank_pk: Pubkey) -> Optional[Balance]:
        for balance in self.balances:
            if balance.active and balance.bank_pk == bank_pk:
                return balance
        return None

    @property
    def is_disabled(self) -> bool:
        return bool(self.account_flags & ACCOUNT_DISABLED)

    @property
    def is_flashloan_in_progress(self) -> bool:
        return bool(self.account_flags & ACCOUNT_IN_FLASHLOAN)

    @property
    def is_flashloan_enabled(self) -> bool:
        return bool(self.account_flags & ACCOUNT_FLASHLOAN_ENABLED)

    @property
    def is_transfer_authority_allowed(self) -> bool:
        return bool(self.account_flags & ACCOUNT_TRANSFER_AUTHORITY_ALLOWED)

    def with_health_cache(self, health_cache: HealthCache) -> "MarginfiAccount":
        """New snapshot with the health cache replaced."""
        return replace(self, health_cache=health_cache)

    def with_balances(self, balances: Tuple[Balance, ...]) -> "MarginfiAccount":
        return replace(self, balances=tuple(balances))
