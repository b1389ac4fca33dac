"""
Tests for the error taxonomy and transport error classification.
"""

import pytest

from mrgn.core.errors import (
    DivisionByZero,
    ErrorHandler,
    InvalidAmountError,
    MarginfiError,
    TransactionBuildingError,
    TransactionBuildingErrorCode,
)


class TestTransactionBuildingError:
    """Coded errors carry the context callers need."""

    def test_size_exceeded_details(self):
        error = TransactionBuildingError.jupiter_swap_size_exceeded_swap_debt(1400, 70)

        assert error.code == TransactionBuildingErrorCode.JUPITER_SWAP_SIZE_EXCEEDED_SWAP_DEBT
        assert error.details == {"bytes": 1400, "account_keys": 70, "action": "Swap debt"}
        assert "1400 bytes" in str(error)

    def test_size_exceeded_lists_attempts(self):
        error = TransactionBuildingError.jupiter_swap_size_exceeded_loop(1500, 70, [(40, 1500, 70), (30, 1300, 66)])

        assert error.details["attempts"] == [
            {"max_accounts": 40, "bytes": 1500, "account_keys": 70},
            {"max_accounts": 30, "bytes": 1300, "account_keys": 66},
        ]
        assert "attempted: 1500B/70 keys, 1300B/66 keys" in str(error)

    def test_crank_failure_prefers_symbols(self):
        error = TransactionBuildingError.oracle_crank_failed([("Bank111", "JUP")], [("Bank222", None)])

        assert str(error) == "Unable to refresh oracle feeds for: JUP, Bank222"
        assert error.details["uncrankable_liabilities"] == [("Bank111", "JUP")]

    def test_integration_state_errors(self):
        kamino = TransactionBuildingError.kamino_reserve_not_found("Bank111", "Mint111")
        drift = TransactionBuildingError.drift_state_not_found("Bank222", "Mint222", "dSOL")

        assert kamino.code == TransactionBuildingErrorCode.KAMINO_RESERVE_NOT_FOUND
        assert "Bank111" in str(kamino)
        assert drift.code == TransactionBuildingErrorCode.DRIFT_STATE_NOT_FOUND
        assert "dSOL" in str(drift)

    def test_repr_names_code(self):
        error = TransactionBuildingError.no_swap_routes("A", "B")

        assert "NO_SWAP_ROUTES" in repr(error)


class TestHierarchy:
    def test_amount_errors_are_value_errors(self):
        with pytest.raises(ValueError):
            raise InvalidAmountError("Amount must be positive")

    def test_division_by_zero_is_zero_division(self):
        with pytest.raises(ZeroDivisionError):
            raise DivisionByZero("denominator is zero")

    def test_all_share_a_base(self):
        assert issubclass(TransactionBuildingError, MarginfiError)


class TestErrorHandler:
    @pytest.mark.parametrize("message", ["Request timeout", "HTTP 429 Too Many Requests", "Connection refused"])
    def test_retryable(self, message):
        assert ErrorHandler.is_retryable(Exception(message))

    def test_request_errors_win_over_retryable_words(self):
        """A malformed request is never retried, even if the message mentions the network."""
        error = Exception("Invalid params: network field missing")

        assert not ErrorHandler.is_retryable(error)
        assert ErrorHandler.is_request_error(error)

    def test_unknown_is_not_retryable(self):
        assert not ErrorHandler.is_retryable(Exception("something odd"))
