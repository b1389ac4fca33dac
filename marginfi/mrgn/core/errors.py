"""
Error taxonomy for the marginfi client.

Every condition the client can diagnose locally has a dedicated exception:
- DataNotFound: a bank, price or integration entry missing from a snapshot
- InvalidAmountError: non-positive or otherwise unusable amounts
- DivisionByZero: fixed-point division with a zero denominator
- TransactionBuildingError: a transaction could not be assembled, with a code
- HealthCacheSimulationError: the on-chain health pulse reported an error
- RpcError: every configured RPC provider failed
"""

import logging
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)

# (max_accounts of the route or None for the direct path, bytes, account keys)
SizeAttempt = Tuple[Optional[int], int, int]


class MarginfiError(Exception):
    """Base class for all client errors."""
    pass


class DataNotFound(MarginfiError):
    """Raised when a referenced entry is absent from a caller-supplied map."""

    def __init__(self, message: str, kind: str = "bank", key: Optional[str] = None):
        super().__init__(message)
        self.kind = kind
        self.key = key


class InvalidAmountError(MarginfiError, ValueError):
    """Raised before any network call when an amount is unusable."""
    pass


class DivisionByZero(MarginfiError, ZeroDivisionError):
    """Raised by checked fixed-point division instead of producing infinity."""
    pass


class DataIntegrityError(MarginfiError):
    """Raised when decoded or projected state breaks a protocol invariant."""
    pass


class RpcError(MarginfiError):
    """Raised when an RPC request fails on every provider."""

    def __init__(self, message: str, method: Optional[str] = None):
        super().__init__(message)
        self.method = method


class TransactionBuildingErrorCode(str, Enum):
    """Machine-checkable reasons a transaction build can fail."""
    JUPITER_SWAP_SIZE_EXCEEDED_LOOP = "JUPITER_SWAP_SIZE_EXCEEDED_LOOP"
    JUPITER_SWAP_SIZE_EXCEEDED_REPAY = "JUPITER_SWAP_SIZE_EXCEEDED_REPAY"
    JUPITER_SWAP_SIZE_EXCEEDED_SWAP_COLLATERAL = "JUPITER_SWAP_SIZE_EXCEEDED_SWAP_COLLATERAL"
    JUPITER_SWAP_SIZE_EXCEEDED_SWAP_DEBT = "JUPITER_SWAP_SIZE_EXCEEDED_SWAP_DEBT"
    NO_SWAP_ROUTES = "NO_SWAP_ROUTES"
    ORACLE_CRANK_FAILED = "ORACLE_CRANK_FAILED"
    KAMINO_RESERVE_NOT_FOUND = "KAMINO_RESERVE_NOT_FOUND"
    DRIFT_STATE_NOT_FOUND = "DRIFT_STATE_NOT_FOUND"
    UNSUPPORTED_ASSET_TAG = "UNSUPPORTED_ASSET_TAG"


class TransactionBuildingError(MarginfiError):
    """
    Raised when a transaction cannot be assembled.

    Callers match on `code`; `details` carries the context needed to build
    an actionable message (sizes, addresses, uncrankable banks).
    """

    def __init__(
        self,
        code: TransactionBuildingErrorCode,
        message: str,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.code = code
        self.details = details or {}

    def __repr__(self) -> str:
        return f"TransactionBuildingError(code={self.code.value}, details={self.details})"

    @classmethod
    def _swap_size_exceeded(
        cls,
        code: TransactionBuildingErrorCode,
        action: str,
        tx_size: int,
        account_keys: int,
        attempts: Optional[List[SizeAttempt]] = None,
    ) -> "TransactionBuildingError":
        details: Dict[str, Any] = {"bytes": tx_size, "account_keys": account_keys, "action": action}
        message = f"{action} transaction exceeds limits: {tx_size} bytes, {account_keys} account keys"
        if attempts:
            details["attempts"] = [
                {"max_accounts": max_accounts, "bytes": size, "account_keys": keys}
                for max_accounts, size, keys in attempts
            ]
            tried = ", ".join(f"{size}B/{keys} keys" for _, size, keys in attempts)
            message += f" (attempted: {tried})"
        return cls(code, message, details)

    @classmethod
    def jupiter_swap_size_exceeded_loop(
        cls, tx_size: int, account_keys: int, attempts=None
    ) -> "TransactionBuildingError":
        return cls._swap_size_exceeded(
            TransactionBuildingErrorCode.JUPITER_SWAP_SIZE_EXCEEDED_LOOP, "Loop", tx_size, account_keys, attempts
        )

    @classmethod
    def jupiter_swap_size_exceeded_repay(
        cls, tx_size: int, account_keys: int, attempts=None
    ) -> "TransactionBuildingError":
        return cls._swap_size_exceeded(
            TransactionBuildingErrorCode.JUPITER_SWAP_SIZE_EXCEEDED_REPAY,
            "Repay with collateral",
            tx_size,
            account_keys,
            attempts,
        )

    @classmethod
    def jupiter_swap_size_exceeded_swap_collateral(
        cls, tx_size: int, account_keys: int, attempts=None
    ) -> "TransactionBuildingError":
        return cls._swap_size_exceeded(
            TransactionBuildingErrorCode.JUPITER_SWAP_SIZE_EXCEEDED_SWAP_COLLATERAL,
            "Swap collateral",
            tx_size,
            account_keys,
            attempts,
        )

    @classmethod
    def jupiter_swap_size_exceeded_swap_debt(
        cls, tx_size: int, account_keys: int, attempts=None
    ) -> "TransactionBuildingError":
        return cls._swap_size_exceeded(
            TransactionBuildingErrorCode.JUPITER_SWAP_SIZE_EXCEEDED_SWAP_DEBT,
            "Swap debt",
            tx_size,
            account_keys,
            attempts,
        )

    @classmethod
    def no_swap_routes(cls, input_mint: str, output_mint: str) -> "TransactionBuildingError":
        return cls(
            TransactionBuildingErrorCode.NO_SWAP_ROUTES,
            f"No swap routes found for {input_mint} -> {output_mint}",
            {"input_mint": input_mint, "output_mint": output_mint},
        )

    @classmethod
    def oracle_crank_failed(
        cls,
        uncrankable_liabilities: List[Tuple[str, Optional[str]]],
        uncrankable_assets: List[Tuple[str, Optional[str]]],
    ) -> "TransactionBuildingError":
        """
        Args:
            uncrankable_liabilities: (bank address, symbol) pairs blocking the action
            uncrankable_assets: (bank address, symbol) pairs that could not be refreshed
        """
        names = [symbol or address for address, symbol in uncrankable_liabilities + uncrankable_assets]
        return cls(
            TransactionBuildingErrorCode.ORACLE_CRANK_FAILED,
            f"Unable to refresh oracle feeds for: {', '.join(names)}",
            {
                "uncrankable_liabilities": uncrankable_liabilities,
                "uncrankable_assets": uncrankable_assets,
            },
        )

    @classmethod
    def kamino_reserve_not_found(
        cls, bank_address: str, bank_mint: str, bank_symbol: Optional[str] = None
    ) -> "TransactionBuildingError":
        return cls(
            TransactionBuildingErrorCode.KAMINO_RESERVE_NOT_FOUND,
            f"Kamino reserve state not found for bank {bank_symbol or bank_address}",
            {"bank_address": bank_address, "bank_mint": bank_mint, "bank_symbol": bank_symbol},
        )

    @classmethod
    def drift_state_not_found(
        cls, bank_address: str, bank_mint: str, bank_symbol: Optional[str] = None
    ) -> "TransactionBuildingError":
        return cls(
            TransactionBuildingErrorCode.DRIFT_STATE_NOT_FOUND,
            f"Drift state not found for bank {bank_symbol or bank_address}",
            {"bank_address": bank_address, "bank_mint": bank_mint, "bank_symbol": bank_symbol},
        )

    @classmethod
    def unsupported_asset_tag(cls, bank_address: str, asset_tag: str, action: str) -> "TransactionBuildingError":
        return cls(
            TransactionBuildingErrorCode.UNSUPPORTED_ASSET_TAG,
            f"{action} is not supported for {asset_tag} bank {bank_address}",
            {"bank_address": bank_address, "asset_tag": asset_tag, "action": action},
        )


class HealthCacheSimulationError(MarginfiError):
    """
    Raised when a simulated health pulse reports a program or engine error.

    Attributes:
        mrgn_err: Program error code written to the health cache (0 if none)
        internal_err: Internal risk-engine error code (0 if none)
    """

    def __init__(self, message: str, mrgn_err: Optional[int] = None, internal_err: Optional[int] = None):
        super().__init__(message)
        self.mrgn_err = mrgn_err
        self.internal_err = internal_err


class ErrorHandler:
    """
    Classifies transport errors for the RPC fallback layer.
    """

    RETRYABLE_ERRORS = [
        "timeout",
        "connection",
        "network",
        "rate limit",
        "rate limited",
        "429",
        "502",
        "503",
        "504",
    ]

    NON_RETRYABLE_ERRORS = [
        "invalid params",
        "method not found",
        "invalid request",
    ]

    @staticmethod
    def is_retryable(error: Exception) -> bool:
        """Determine if an error should move on to the next provider."""
        error_str = str(error).lower()

        for pattern in ErrorHandler.NON_RETRYABLE_ERRORS:
            if pattern in error_str:
                return False

        for pattern in ErrorHandler.RETRYABLE_ERRORS:
            if pattern in error_str:
                return True

        return False

    @staticmethod
    def is_request_error(error: Exception) -> bool:
        """Determine if an error was caused by the request itself."""
        error_str = str(error).lower()
        return any(pattern in error_str for pattern in ErrorHandler.NON_RETRYABLE_ERRORS)
