"""
Core building blocks: constants, configuration, errors, fixed point and RPC transport.
"""

from .config import ConfigurationError, EnvironmentConfig, MarginfiConfig, get_config
from .errors import (
    DataIntegrityError,
    DataNotFound,
    DivisionByZero,
    ErrorHandler,
    HealthCacheSimulationError,
    InvalidAmountError,
    MarginfiError,
    RpcError,
    TransactionBuildingError,
    TransactionBuildingErrorCode,
)
from .rpc import RpcClient


__all__ = [
    "ConfigurationError",
    "EnvironmentConfig",
    "MarginfiConfig",
    "get_config",
    "DataIntegrityError",
    "DataNotFound",
    "DivisionByZero",
    "ErrorHandler",
    "HealthCacheSimulationError",
    "InvalidAmountError",
    "MarginfiError",
    "RpcError",
    "TransactionBuildingError",
    "TransactionBuildingErrorCode",
    "RpcClient",
]
