"""
Solana Protocol Integrations

Adapters for the external protocols marginfi banks and composites touch:
- Jupiter: swap quotes and instructions for flash-loan composites
- Kamino: klend reserve state, PDAs and refresh instructions
- Drift: spot market state, PDAs and interest update instructions
- Switchboard: Crossbar crankability checks for pull feeds
"""

from .drift import DriftIntegration, DriftSpotMarketState, DriftStates
from .jupiter import JupiterApiError, JupiterClient, SwapCandidate, SwapQuoteParams, get_swap_candidates
from .kamino import KaminoIntegration, KaminoReserveState, KaminoStates
from .switchboard import CrankabilityResult, SwitchboardCrossbarClient


__all__ = [
    "DriftIntegration",
    "DriftSpotMarketState",
    "DriftStates",
    "JupiterApiError",
    "JupiterClient",
    "SwapCandidate",
    "SwapQuoteParams",
    "get_swap_candidates",
    "KaminoIntegration",
    "KaminoReserveState",
    "KaminoStates",
    "CrankabilityResult",
    "SwitchboardCrossbarClient",
]
