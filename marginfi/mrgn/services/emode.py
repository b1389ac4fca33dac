"""
E-mode pair resolution and action impact analysis.

A pair is "in effect" when the account borrows from the liability bank and
holds collateral in a bank carrying the pair's collateral tag. When several
liabilities are held, only collateral tags configured for every one of them
qualify, and the merged pair takes the lowest weights.
"""

import logging
from typing import Dict, List, Mapping, Optional, Sequence, Set

from solders.pubkey import Pubkey

from ..models.bank import Bank, RiskTier
from ..models.emode import (
    EMODE_TAG_NONE,
    ActionEmodeImpact,
    ActiveEmodePair,
    EmodeEntryFlags,
    EmodeImpact,
    EmodeImpactStatus,
    EmodePair,
    EmodeWeights,
)

logger = logging.getLogger(__name__)


def get_emode_pairs(banks: Sequence[Bank]) -> List[EmodePair]:
    """
    Expand every liability bank's e-mode entries into pairs.

    Isolated banks only count as collateral for entries flagged
    APPLIES_TO_ISOLATED.
    """
    pairs = []
    for liability_bank in banks:
        for entry in liability_bank.emode.entries:
            if entry.collateral_bank_emode_tag == EMODE_TAG_NONE:
                continue
            applies_to_isolated = bool(entry.flags & EmodeEntryFlags.APPLIES_TO_ISOLATED)
            collateral_banks = tuple(
                bank.address
                for bank in banks
                if bank.emode.emode_tag == entry.collateral_bank_emode_tag
                and (applies_to_isolated or bank.config.risk_tier != RiskTier.ISOLATED)
            )
            pairs.append(
                EmodePair(
                    collateral_banks=collateral_banks,
                    collateral_bank_tag=entry.collateral_bank_emode_tag,
                    liability_bank=liability_bank.address,
                    liability_bank_tag=liability_bank.emode.emode_tag,
                    asset_weight_init=entry.asset_weight_init,
                    asset_weight_maint=entry.asset_weight_maint,
                )
            )
    return pairs


def compute_active_emode_pairs(
    emode_pairs: Sequence[EmodePair],
    active_liabilities: Sequence[Pubkey],
    active_collateral: Sequence[Pubkey],
) -> List[EmodePair]:
    """
    Pairs currently in effect.

    Returns an empty list when any active liability has no configured pair
    or when no collateral tag is shared by every liability.
    """
    configured = [p for p in emode_pairs if p.collateral_bank_tag != EMODE_TAG_NONE]
    if not active_liabilities:
        return []

    liability_tags: Dict[Pubkey, int] = {p.liability_bank: p.liability_bank_tag for p in configured}
    required_tags: Set[int] = set()
    for liability in active_liabilities:
        tag = liability_tags.get(liability)
        if tag is None:
            return []
        required_tags.add(tag)

    liabilities = set(active_liabilities)
    collateral = set(active_collateral)
    possible = [
        p for p in configured
        if p.liability_bank in liabilities and any(c in collateral for c in p.collateral_banks)
    ]

    tags_by_liability_tag: Dict[int, Set[int]] = {}
    for pair in possible:
        tags_by_liability_tag.setdefault(pair.liability_bank_tag, set()).add(pair.collateral_bank_tag)

    valid_tags: Optional[Set[int]] = None
    for tag in required_tags:
        supported = tags_by_liability_tag.get(tag)
        if not supported:
            return []
        valid_tags = set(supported) if valid_tags is None else valid_tags & supported

    if not valid_tags:
        return []

    return [p for p in possible if p.collateral_bank_tag in valid_tags]


def get_active_emode_pair(pairs: Sequence[EmodePair]) -> Optional[ActiveEmodePair]:
    """Merge in-effect pairs into one, keeping the lowest weights."""
    if not pairs:
        return None

    def unique(items):
        seen = []
        for item in items:
            if item not in seen:
                seen.append(item)
        return tuple(seen)

    return ActiveEmodePair(
        collateral_banks=unique(b for p in pairs for b in p.collateral_banks),
        collateral_bank_tags=unique(p.collateral_bank_tag for p in pairs),
        liability_banks=unique(p.liability_bank for p in pairs),
        liability_bank_tags=unique(p.liability_bank_tag for p in pairs),
        asset_weight_init=min(p.asset_weight_init for p in pairs),
        asset_weight_maint=min(p.asset_weight_maint for p in pairs),
    )


def get_emode_weights_by_bank(active_pair: Optional[ActiveEmodePair]) -> Dict[str, EmodeWeights]:
    """Weights override per collateral bank of the active pair."""
    if active_pair is None:
        return {}
    weights = EmodeWeights(
        asset_weight_init=active_pair.asset_weight_init,
        asset_weight_maint=active_pair.asset_weight_maint,
    )
    return {str(pk): weights for pk in active_pair.collateral_banks}


def apply_emode_weights(bank: Bank, active_pair: Optional[ActiveEmodePair]) -> Bank:
    """
    Bank with e-mode asset weights applied when it is collateral of the
    active pair. Weights only ever go up.
    """
    if active_pair is None or bank.emode.emode_tag not in active_pair.collateral_bank_tags:
        return bank
    return bank.with_asset_weights(
        max(bank.config.asset_weight_init, active_pair.asset_weight_init),
        max(bank.config.asset_weight_maint, active_pair.asset_weight_maint),
    )


def _min_weight(pairs: Sequence[EmodePair]):
    return min(p.asset_weight_init for p in pairs)


def _diff_state(before: Sequence[EmodePair], after: Sequence[EmodePair]) -> EmodeImpactStatus:
    was_on = bool(before)
    is_on = bool(after)

    if not was_on and is_on:
        return EmodeImpactStatus.ACTIVATE_EMODE
    if was_on and not is_on:
        return EmodeImpactStatus.REMOVE_EMODE
    if not was_on and not is_on:
        return EmodeImpactStatus.INACTIVE_EMODE

    before_tags = {p.collateral_bank_tag for p in before}
    after_tags = {p.collateral_bank_tag for p in after}
    if before_tags - after_tags:
        return EmodeImpactStatus.REDUCE_EMODE
    if after_tags - before_tags:
        return EmodeImpactStatus.INCREASE_EMODE

    before_min = _min_weight(before)
    after_min = _min_weight(after)
    if after_min < before_min:
        return EmodeImpactStatus.REDUCE_EMODE
    if after_min > before_min:
        return EmodeImpactStatus.INCREASE_EMODE
    return EmodeImpactStatus.EXTEND_EMODE


def compute_emode_impacts(
    emode_pairs: Sequence[EmodePair],
    active_liabilities: Sequence[Pubkey],
    active_collateral: Sequence[Pubkey],
    banks: Sequence[Pubkey],
) -> Dict[str, ActionEmodeImpact]:
    """
    Effect of borrow / supply / repay-all / withdraw-all on each bank.

    Args:
        emode_pairs: All configured pairs (see get_emode_pairs)
        active_liabilities: Banks the account borrows from
        active_collateral: Banks the account lends to
        banks: Banks to analyze

    Returns:
        ActionEmodeImpact per bank address string; an action is omitted when
        it does not apply (e.g. repay on a bank with no debt)
    """
    base = compute_active_emode_pairs(emode_pairs, active_liabilities, active_collateral)

    def simulate(bank: Pubkey, action: str) -> EmodeImpact:
        liabilities = list(active_liabilities)
        collateral = list(active_collateral)
        if action == "borrow" and bank not in liabilities:
            liabilities.append(bank)
        elif action == "repay":
            liabilities = [b for b in liabilities if b != bank]
        elif action == "supply" and bank not in collateral:
            collateral.append(bank)
        elif action == "withdraw":
            collateral = [b for b in collateral if b != bank]

        after = compute_active_emode_pairs(emode_pairs, liabilities, collateral)
        return EmodeImpact(
            status=_diff_state(base, after),
            resulting_pairs=list(after),
            active_pair=get_active_emode_pair(after),
        )

    collateral_candidates = {b for p in emode_pairs for b in p.collateral_banks}
    impacts: Dict[str, ActionEmodeImpact] = {}

    for bank in banks:
        is_liability = bank in active_liabilities
        is_collateral = bank in active_collateral
        impacts[str(bank)] = ActionEmodeImpact(
            borrow_impact=None if is_liability else simulate(bank, "borrow"),
            supply_impact=(
                simulate(bank, "supply")
                if bank in collateral_candidates and not is_collateral and not is_liability
                else None
            ),
            repay_all_impact=simulate(bank, "repay") if is_liability else None,
            withdraw_all_impact=simulate(bank, "withdraw") if is_collateral else None,
        )

    return impacts
