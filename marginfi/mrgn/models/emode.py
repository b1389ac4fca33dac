"""
Efficiency-mode (e-mode) types.

A liability bank lists e-mode entries; each entry names a collateral tag and
the boosted asset weights collateral with that tag receives while the
liability is held.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum, IntFlag
from typing import List, Optional, Tuple

from solders.pubkey import Pubkey


EMODE_TAG_NONE = 0


class EmodeEntryFlags(IntFlag):
    APPLIES_TO_ISOLATED = 1


@dataclass(frozen=True)
class EmodeEntry:
    collateral_bank_emode_tag: int
    flags: int
    asset_weight_init: Decimal
    asset_weight_maint: Decimal


@dataclass(frozen=True)
class EmodeSettings:
    emode_tag: int = EMODE_TAG_NONE
    timestamp: int = 0
    flags: int = 0
    entries: Tuple[EmodeEntry, ...] = ()

    @property
    def is_enabled(self) -> bool:
        return self.emode_tag != EMODE_TAG_NONE


@dataclass(frozen=True)
class EmodeWeights:
    """Asset weight override applied to collateral while an e-mode pair is active."""
    asset_weight_init: Decimal
    asset_weight_maint: Decimal


@dataclass(frozen=True)
class EmodePair:
    """One configured (liability bank, collateral tag) relationship."""
    collateral_banks: Tuple[Pubkey, ...]
    collateral_bank_tag: int
    liability_bank: Pubkey
    liability_bank_tag: int
    asset_weight_init: Decimal
    asset_weight_maint: Decimal


@dataclass(frozen=True)
class ActiveEmodePair:
    """Pairs currently in effect, merged into a single conservative pair."""
    collateral_banks: Tuple[Pubkey, ...]
    collateral_bank_tags: Tuple[int, ...]
    liability_banks: Tuple[Pubkey, ...]
    liability_bank_tags: Tuple[int, ...]
    asset_weight_init: Decimal
    asset_weight_maint: Decimal


class EmodeImpactStatus(str, Enum):
    """Effect an action would have on the account's e-mode state."""
    ACTIVATE_EMODE = "ACTIVATE_EMODE"
    EXTEND_EMODE = "EXTEND_EMODE"
    INCREASE_EMODE = "INCREASE_EMODE"
    REDUCE_EMODE = "REDUCE_EMODE"
    REMOVE_EMODE = "REMOVE_EMODE"
    INACTIVE_EMODE = "INACTIVE_EMODE"


@dataclass(frozen=True)
class EmodeImpact:
    status: EmodeImpactStatus
    resulting_pairs: List[EmodePair] = field(default_factory=list)
    active_pair: Optional[ActiveEmodePair] = None


@dataclass(frozen=True)
class ActionEmodeImpact:
    """Per-bank e-mode impact of each action that applies to the bank."""
    borrow_impact: Optional[EmodeImpact] = None
    supply_impact: Optional[EmodeImpact] = None
    repay_all_impact: Optional[EmodeImpact] = None
    withdraw_all_impact: Optional[EmodeImpact] = None
