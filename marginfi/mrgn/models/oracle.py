"""
Oracle price model.

An OraclePrice carries two views of the same feed:
- realtime: raw price and confidence (capped at a fraction of price)
- weighted: confidence widened by the oracle family's deviation multiplier,
  used for Initial-regime risk math

Bias queries return the lowest/highest edge of the band or the raw price.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from enum import IntEnum
from typing import Any, Dict, Optional

from ..core.constants import (
    MAX_CONFIDENCE_INTERVAL_RATIO,
    PYTH_PRICE_CONF_INTERVALS,
    SWB_PRICE_CONF_INTERVALS,
)
from ..core.fixed_point import ZERO, Numeric, to_decimal

logger = logging.getLogger(__name__)


class PriceBias(IntEnum):
    LOWEST = 0
    NONE = 1
    HIGHEST = 2


class OracleSetup(IntEnum):
    NONE = 0
    PYTH_LEGACY = 1
    SWITCHBOARD_V2 = 2
    PYTH_PUSH_ORACLE = 3
    SWITCHBOARD_PULL = 4
    STAKED_WITH_PYTH_PUSH = 5
    KAMINO_PYTH_PUSH = 6
    KAMINO_SWITCHBOARD_PULL = 7
    FIXED = 8
    DRIFT_PYTH_PULL = 9
    DRIFT_SWITCHBOARD_PULL = 10
    SOLEND_PYTH_PULL = 11
    SOLEND_SWITCHBOARD_PULL = 12


PYTH_SETUPS = frozenset({
    OracleSetup.PYTH_LEGACY,
    OracleSetup.PYTH_PUSH_ORACLE,
    OracleSetup.STAKED_WITH_PYTH_PUSH,
    OracleSetup.KAMINO_PYTH_PUSH,
    OracleSetup.DRIFT_PYTH_PULL,
    OracleSetup.SOLEND_PYTH_PULL,
})

# Feeds that must be cranked by the client before a health check
SWITCHBOARD_PULL_SETUPS = frozenset({
    OracleSetup.SWITCHBOARD_PULL,
    OracleSetup.KAMINO_SWITCHBOARD_PULL,
    OracleSetup.DRIFT_SWITCHBOARD_PULL,
    OracleSetup.SOLEND_SWITCHBOARD_PULL,
})

SWITCHBOARD_SETUPS = SWITCHBOARD_PULL_SETUPS | {OracleSetup.SWITCHBOARD_V2}


@dataclass(frozen=True)
class PriceWithConfidence:
    """Price with its confidence band edges."""
    price: Decimal
    confidence: Decimal
    lowest_price: Decimal
    highest_price: Decimal


@dataclass(frozen=True)
class OraclePrice:
    """Current price for one bank's oracle."""
    price_realtime: PriceWithConfidence
    price_weighted: PriceWithConfidence
    timestamp: int = 0
    oracle_setup: Optional[OracleSetup] = None
    switchboard_data: Optional[Dict[str, Any]] = None

    @property
    def feed_hash(self) -> Optional[str]:
        """Switchboard feed hash, when known."""
        if not self.switchboard_data:
            return None
        return self.switchboard_data.get("feed_hash")


def cap_confidence_interval(price: Decimal, confidence: Decimal, max_confidence: Decimal) -> Decimal:
    """Cap confidence at `max_confidence` x price."""
    return min(confidence, price * max_confidence)


def confidence_multiplier(oracle_setup: OracleSetup) -> Decimal:
    """Deviation multiplier applied to confidence for weighted prices."""
    if oracle_setup in PYTH_SETUPS:
        return PYTH_PRICE_CONF_INTERVALS
    if oracle_setup in SWITCHBOARD_SETUPS:
        return SWB_PRICE_CONF_INTERVALS
    return ZERO


def _band(price: Decimal, confidence: Decimal) -> PriceWithConfidence:
    return PriceWithConfidence(
        price=price,
        confidence=confidence,
        lowest_price=price - confidence,
        highest_price=price + confidence,
    )


def build_oracle_price(
    price: Numeric,
    confidence: Numeric,
    oracle_setup: OracleSetup,
    timestamp: int = 0,
    max_confidence: Optional[Numeric] = None,
    switchboard_data: Optional[Dict[str, Any]] = None,
) -> OraclePrice:
    """
    Build an OraclePrice from a raw feed reading.

    Args:
        price: Feed price in USD
        confidence: Raw (one standard deviation) confidence
        oracle_setup: Oracle family, selects the weighted multiplier
        timestamp: Publish time (unix seconds)
        max_confidence: Max confidence as a fraction of price; the bank's
            configured value, falling back to the protocol default when 0/None
        switchboard_data: Optional feed metadata (feed_hash, queue, ...)

    Returns:
        OraclePrice with both bands populated
    """
    price = to_decimal(price)
    confidence = to_decimal(confidence)
    if confidence < 0:
        raise ValueError(f"Oracle confidence must be non-negative, got {confidence}")

    max_conf = to_decimal(max_confidence) if max_confidence else MAX_CONFIDENCE_INTERVAL_RATIO

    if oracle_setup == OracleSetup.FIXED:
        realtime = _band(price, ZERO)
        weighted = _band(price, ZERO)
    else:
        realtime = _band(price, cap_confidence_interval(price, confidence, max_conf))
        widened = confidence * confidence_multiplier(oracle_setup)
        weighted = _band(price, cap_confidence_interval(price, widened, max_conf))

    return OraclePrice(
        price_realtime=realtime,
        price_weighted=weighted,
        timestamp=timestamp,
        oracle_setup=oracle_setup,
        switchboard_data=switchboard_data,
    )


def get_price_with_confidence(oracle_price: OraclePrice, weighted: bool) -> PriceWithConfidence:
    return oracle_price.price_weighted if weighted else oracle_price.price_realtime


def get_price(
    oracle_price: OraclePrice,
    price_bias: PriceBias = PriceBias.NONE,
    weighted: bool = False,
) -> Decimal:
    """
    Get a price under a bias.

    Args:
        oracle_price: Price snapshot
        price_bias: LOWEST -> price - confidence, HIGHEST -> price + confidence
        weighted: Use the widened (weighted) band

    Returns:
        Biased price
    """
    band = get_price_with_confidence(oracle_price, weighted)
    if price_bias == PriceBias.LOWEST:
        return band.lowest_price
    if price_bias == PriceBias.HIGHEST:
        return band.highest_price
    return band.price
