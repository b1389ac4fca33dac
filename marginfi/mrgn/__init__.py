"""
mrgn: a Python client for the marginfi lending protocol on Solana.

- core: config, errors, fixed point, RPC transport
- models: banks, balances, oracle prices, accounts, health cache
- services: health engine, max amounts, e-mode, simulation, oracle cranks
- transactions: instruction encoders and transaction compilation
- actions: per-action and flash loan transaction builders
"""

from .account_wrapper import MarginfiAccountWrapper
from .client import ClientSnapshot, MarginfiClient
from .core.config import EnvironmentConfig, MarginfiConfig, get_config
from .core.errors import MarginfiError, TransactionBuildingError


__version__ = "0.1.0"

__all__ = [
    "MarginfiAccountWrapper",
    "ClientSnapshot",
    "MarginfiClient",
    "EnvironmentConfig",
    "MarginfiConfig",
    "get_config",
    "MarginfiError",
    "TransactionBuildingError",
]
