"""
Health cache model.

The program keeps a per-account snapshot of weighted asset/liability USD
values for each margin regime. The client fills the same structure from a
simulated health pulse or from a local computation, and tags its origin in
`simulation_status`.
"""

import logging
import struct
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum, IntFlag
from typing import Tuple

from ..core.fixed_point import ZERO, decode_i80f48
from .bank import MarginRequirementType

logger = logging.getLogger(__name__)

HEALTH_CACHE_SIZE = 304
HEALTH_CACHE_PRICES = 16


class HealthCacheStatus(str, Enum):
    UNSET = "UNSET"
    CACHED = "CACHED"
    SIMULATED = "SIMULATED"
    COMPUTED = "COMPUTED"


class HealthCacheFlags(IntFlag):
    HEALTHY = 1
    ENGINE_OK = 2
    ORACLE_OK = 4


@dataclass(frozen=True)
class HealthCache:
    """
    Cached risk snapshot.

    Values are non-negative USD amounts. A cache with `mrgn_err` or
    `internal_err` set is not authoritative; check `is_authoritative`
    before gating a permission decision on it.
    """
    asset_value: Decimal = ZERO
    liability_value: Decimal = ZERO
    asset_value_maint: Decimal = ZERO
    liability_value_maint: Decimal = ZERO
    asset_value_equity: Decimal = ZERO
    liability_value_equity: Decimal = ZERO
    timestamp: int = 0
    flags: int = 0
    prices: Tuple[float, ...] = field(default_factory=tuple)
    simulation_status: HealthCacheStatus = HealthCacheStatus.UNSET
    mrgn_err: int = 0
    internal_err: int = 0
    internal_liq_err: int = 0
    internal_bankruptcy_err: int = 0
    err_index: int = 0
    program_version: int = 0

    def __post_init__(self):
        for name in (
            "asset_value",
            "liability_value",
            "asset_value_maint",
            "liability_value_maint",
            "asset_value_equity",
            "liability_value_equity",
        ):
            if getattr(self, name) < 0:
                object.__setattr__(self, name, ZERO)

    @classmethod
    def decode(cls, data: bytes) -> "HealthCache":
        """
        Decode the on-chain health cache.

        Raises:
            ValueError: If the buffer is shorter than HEALTH_CACHE_SIZE
        """
        if len(data) < HEALTH_CACHE_SIZE:
            raise ValueError(f"Health cache requires {HEALTH_CACHE_SIZE} bytes, got {len(data)}")

        values = [decode_i80f48(data[i * 16:(i + 1) * 16]) for i in range(6)]
        timestamp, flags, mrgn_err = struct.unpack_from("<qII", data, 96)
        prices = struct.unpack_from(f"<{HEALTH_CACHE_PRICES}d", data, 112)
        internal_err, err_index, program_version = struct.unpack_from("<IBB", data, 240)
        internal_liq_err, internal_bankruptcy_err = struct.unpack_from("<II", data, 248)

        return cls(
            asset_value=values[0],
            liability_value=values[1],
            asset_value_maint=values[2],
            liability_value_maint=values[3],
            asset_value_equity=values[4],
            liability_value_equity=values[5],
            timestamp=timestamp,
            flags=flags,
            prices=tuple(prices),
            simulation_status=HealthCacheStatus.CACHED if timestamp else HealthCacheStatus.UNSET,
            mrgn_err=mrgn_err,
            internal_err=internal_err,
            internal_liq_err=internal_liq_err,
            internal_bankruptcy_err=internal_bankruptcy_err,
            err_index=err_index,
            program_version=program_version,
        )

    def components(self, margin_requirement: MarginRequirementType) -> Tuple[Decimal, Decimal]:
        """(assets, liabilities) for a regime."""
        if margin_requirement == MarginRequirementType.INITIAL:
            return self.asset_value, self.liability_value
        if margin_requirement == MarginRequirementType.MAINTENANCE:
            return self.asset_value_maint, self.liability_value_maint
        return self.asset_value_equity, self.liability_value_equity

    def all_values_nonzero(self) -> bool:
        return all(
            not value.is_zero()
            for value in (
                self.asset_value,
                self.liability_value,
                self.asset_value_maint,
                self.liability_value_maint,
                self.asset_value_equity,
                self.liability_value_equity,
            )
        )

    @property
    def has_error(self) -> bool:
        return bool(self.mrgn_err or self.internal_err)

    @property
    def is_healthy(self) -> bool:
        return bool(self.flags & HealthCacheFlags.HEALTHY)

    @property
    def is_authoritative(self) -> bool:
        return self.simulation_status != HealthCacheStatus.UNSET and not self.has_error
