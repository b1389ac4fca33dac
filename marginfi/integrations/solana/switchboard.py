"""
Switchboard On-Demand Integration

Crankability checks for Switchboard pull feeds:
- feed hash extraction from pull feed accounts
- Crossbar simulate endpoint (batch, one request for all feeds)
- per-feed verdict with a reason when a feed cannot be cranked
"""

import logging
import os
from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional, Sequence

import requests
from solders.pubkey import Pubkey

from mrgn.core.rpc import RpcClient


logger = logging.getLogger(__name__)


CROSSBAR_URL = "https://crossbar.switchboard.xyz"

# discriminator 8 | submissions 32 x 64 | authority 32 | queue 32 | feed_hash 32
_FEED_HASH_OFFSET = 8 + 32 * 64 + 32 + 32


@dataclass
class CrankabilityResult:
    oracle: Pubkey
    crankable: bool
    reason: Optional[str] = None


def decode_feed_hash(data: bytes) -> str:
    """
    Hex feed hash of a pull feed account.

    Raises:
        ValueError: If the account is too short to hold a feed hash
    """
    if len(data) < _FEED_HASH_OFFSET + 32:
        raise ValueError(f"Pull feed data too short: {len(data)} bytes")
    return data[_FEED_HASH_OFFSET:_FEED_HASH_OFFSET + 32].hex()


class SwitchboardCrossbarClient:
    """Crossbar HTTP client. A feed is crankable when its simulation returns a number."""

    def __init__(self, crossbar_url: Optional[str] = None, timeout: int = 8):
        self.crossbar_url = (crossbar_url or os.getenv("CROSSBAR_URL") or CROSSBAR_URL).rstrip("/")
        self.timeout = timeout
        self.session = requests.Session()
        self.session.headers.update({"Accept": "application/json"})

    def simulate_feeds(self, feed_hashes: Sequence[str]) -> Dict[str, Dict[str, object]]:
        """
        Simulate feeds in one batch request.

        Returns:
            feed hash -> {"crankable": bool, "reason": Optional[str]}. Every
            requested hash is present; a failed request marks all of them
            uncrankable with the failure as reason.
        """
        results: Dict[str, Dict[str, object]] = {}
        if not feed_hashes:
            return results

        try:
            response = self.session.get(
                f"{self.crossbar_url}/simulate/{','.join(feed_hashes)}",
                timeout=self.timeout,
            )
            response.raise_for_status()
            payload = response.json()

        except requests.exceptions.RequestException as e:
            error_msg = f"Crossbar simulate failed: {str(e)}"
            logger.error(error_msg)
            return {h: {"crankable": False, "reason": error_msg} for h in feed_hashes}

        for feed in payload or []:
            values = feed.get("results") or []
            first = values[0] if values else None
            valid = _is_number(first)
            results[feed.get("feedHash")] = {
                "crankable": valid,
                "reason": None if valid else "Invalid feed response",
            }

        for feed_hash in feed_hashes:
            results.setdefault(feed_hash, {"crankable": False, "reason": "No response from Crossbar"})

        return results


def _is_number(value) -> bool:
    if value is None or isinstance(value, bool):
        return False
    try:
        return float(value) == float(value)
    except (TypeError, ValueError):
        return False


async def fetch_feed_hashes(rpc: RpcClient, oracle_keys: Sequence[Pubkey]) -> Dict[str, str]:
    """Feed hash per oracle key string; undecodable or missing feeds are skipped."""
    hashes: Dict[str, str] = {}
    if not oracle_keys:
        return hashes

    datas = await rpc.get_multiple_accounts(oracle_keys)
    for key, data in zip(oracle_keys, datas):
        if data is None:
            continue
        try:
            hashes[str(key)] = decode_feed_hash(data)
        except ValueError as e:
            logger.error(f"Failed to decode feed hash for oracle {key}: {e}")
    return hashes


def check_crankability(
    crossbar: Optional[SwitchboardCrossbarClient],
    oracle_feed_hashes: Mapping[str, Optional[str]],
) -> Dict[str, CrankabilityResult]:
    """
    Crankability per oracle key.

    Args:
        crossbar: Crossbar client; None skips the remote check and treats
            every feed with a known hash as crankable
        oracle_feed_hashes: Oracle key string -> feed hash (None when unknown)

    Returns:
        Oracle key string -> CrankabilityResult
    """
    results: Dict[str, CrankabilityResult] = {}
    oracles_by_hash: Dict[str, List[str]] = {}

    for oracle_key, feed_hash in oracle_feed_hashes.items():
        if not feed_hash:
            results[oracle_key] = CrankabilityResult(
                oracle=Pubkey.from_string(oracle_key), crankable=False, reason="Feed hash not available"
            )
            continue
        oracles_by_hash.setdefault(feed_hash, []).append(oracle_key)

    if not oracles_by_hash:
        return results

    if crossbar is None:
        verdicts = {h: {"crankable": True, "reason": None} for h in oracles_by_hash}
    else:
        verdicts = crossbar.simulate_feeds(list(oracles_by_hash))

    for feed_hash, oracle_keys in oracles_by_hash.items():
        verdict = verdicts[feed_hash]
        for oracle_key in oracle_keys:
            results[oracle_key] = CrankabilityResult(
                oracle=Pubkey.from_string(oracle_key),
                crankable=bool(verdict["crankable"]),
                reason=verdict["reason"],
            )

    return results
