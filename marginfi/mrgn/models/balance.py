"""
Balance model.

One slot of a margin account's fixed-capacity balance array. A slot holds a
deposit or a borrow, never both; decoding a slot with both share amounts set
raises DataIntegrityError.
"""

import struct
from dataclasses import dataclass
from decimal import Decimal

from solders.pubkey import Pubkey

from ..core.constants import DEFAULT_PUBKEY
from ..core.errors import DataIntegrityError
from ..core.fixed_point import ZERO, decode_i80f48, encode_i80f48

# active u8 | bank 32 | asset tag u8 | pad 6 | 3 x I80F48 | last_update u64 | pad 8
BALANCE_SIZE = 104


@dataclass(frozen=True)
class Balance:
    active: bool
    bank_pk: Pubkey
    asset_shares: Decimal = ZERO
    liability_shares: Decimal = ZERO
    emissions_outstanding: Decimal = ZERO
    last_update: int = 0
    bank_asset_tag: int = 0

    @classmethod
    def empty(cls, bank_pk: Pubkey = DEFAULT_PUBKEY) -> "Balance":
        """Inactive slot, optionally labelled with a bank."""
        return cls(active=False, bank_pk=bank_pk)

    @classmethod
    def decode(cls, data: bytes) -> "Balance":
        """
        Decode one on-chain balance slot.

        Raises:
            ValueError: If the buffer is not BALANCE_SIZE bytes
            DataIntegrityError: If both share amounts are nonzero
        """
        if len(data) != BALANCE_SIZE:
            raise ValueError(f"Balance requires {BALANCE_SIZE} bytes, got {len(data)}")

        active = data[0] != 0
        bank_pk = Pubkey.from_bytes(data[1:33])
        bank_asset_tag = data[33]
        asset_shares = decode_i80f48(data[40:56])
        liability_shares = decode_i80f48(data[56:72])
        emissions_outstanding = decode_i80f48(data[72:88])
        (last_update,) = struct.unpack_from("<Q", data, 88)

        if not asset_shares.is_zero() and not liability_shares.is_zero():
            raise DataIntegrityError(
                f"Balance for bank {bank_pk} holds both asset and liability shares"
            )

        return cls(
            active=active,
            bank_pk=bank_pk,
            asset_shares=asset_shares,
            liability_shares=liability_shares,
            emissions_outstanding=emissions_outstanding,
            last_update=last_update,
            bank_asset_tag=bank_asset_tag,
        )

    def encode(self) -> bytes:
        return b"".join([
            bytes([1 if self.active else 0]),
            bytes(self.bank_pk),
            bytes([self.bank_asset_tag]),
            bytes(6),
            encode_i80f48(self.asset_shares),
            encode_i80f48(self.liability_shares),
            encode_i80f48(self.emissions_outstanding),
            struct.pack("<Q", self.last_update),
            bytes(8),
        ])

    @property
    def is_lending(self) -> bool:
        return self.active and self.asset_shares > 0

    @property
    def is_borrowing(self) -> bool:
        return self.active and self.liability_shares > 0
