"""
Tests for I80F48 decoding, amount conversion and directional rounding.
"""

from decimal import Decimal

import pytest
from hypothesis import given, strategies as st

from mrgn.core.errors import DivisionByZero, InvalidAmountError
from mrgn.core.fixed_point import (
    I80F48_SCALE,
    checked_div,
    ceil_to,
    decode_i80f48,
    encode_i80f48,
    floor_to,
    native_to_ui,
    to_decimal,
    ui_to_native,
)
from mrgn.services.bank_compute import (
    get_asset_quantity,
    get_asset_shares,
    get_liability_quantity,
    get_liability_shares,
)
from tests.factories import make_bank


quantity_strategy = st.decimals(min_value=0, max_value=10 ** 12, places=6, allow_nan=False, allow_infinity=False)
share_value_strategy = st.decimals(min_value=Decimal("0.5"), max_value=3, places=6, allow_nan=False,
                                   allow_infinity=False)


class TestI80F48:
    """Wire layout of the protocol's fixed-point numbers."""

    def test_decode_one(self):
        """Raw value 2^48 is exactly one."""
        data = I80F48_SCALE.to_bytes(16, "little", signed=True)
        assert decode_i80f48(data) == Decimal(1)

    def test_decode_negative(self):
        """The layout is two's complement."""
        data = (-3 * I80F48_SCALE // 2).to_bytes(16, "little", signed=True)
        assert decode_i80f48(data) == Decimal("-1.5")

    def test_encode_decode_fraction(self):
        """Binary fractions survive encoding exactly."""
        assert decode_i80f48(encode_i80f48("1234.0625")) == Decimal("1234.0625")

    def test_decode_wrong_length_raises(self):
        """Buffers that are not 16 bytes are rejected."""
        with pytest.raises(ValueError):
            decode_i80f48(bytes(15))

    def test_encode_overflow_raises(self):
        """Values beyond 80 integer bits cannot be encoded."""
        with pytest.raises(OverflowError):
            encode_i80f48(Decimal(2) ** 80)


class TestAmountConversion:
    """UI <-> native conversions."""

    def test_ui_to_native_floors(self):
        """Sub-unit dust is dropped, never rounded up."""
        assert ui_to_native("1.2345679", 6) == 1_234_567

    def test_native_to_ui(self):
        assert native_to_ui(1_500_000_000, 9) == Decimal("1.5")

    def test_float_input_uses_shortest_repr(self):
        """0.1 is 0.1, not its binary expansion."""
        assert to_decimal(0.1) == Decimal("0.1")

    def test_invalid_input_raises(self):
        with pytest.raises(InvalidAmountError):
            to_decimal("not-a-number")

    def test_floor_and_ceil_to_decimals(self):
        """Directional rounding at mint precision."""
        assert floor_to("1.0000019", 6) == Decimal("1.000001")
        assert ceil_to("1.0000011", 6) == Decimal("1.000002")

    def test_checked_div_by_zero(self):
        """Zero denominators raise DivisionByZero, which is also a ZeroDivisionError."""
        with pytest.raises(DivisionByZero):
            checked_div(1, 0)
        with pytest.raises(ZeroDivisionError):
            checked_div(1, "0")


class TestShareRoundTrip:
    """Share conversions round in the protocol's favor."""

    @given(quantity=quantity_strategy, share_value=share_value_strategy)
    def test_asset_round_trip_never_exceeds_deposit(self, quantity, share_value):
        """Converting a deposit to shares and back never yields more than was deposited."""
        bank = make_bank(asset_share_value=share_value, oracle_keys=())
        back = get_asset_quantity(bank, get_asset_shares(bank, quantity))

        assert back <= quantity
        assert quantity - back <= Decimal("1e-30")

    @given(quantity=quantity_strategy, share_value=share_value_strategy)
    def test_liability_round_trip_never_below_debt(self, quantity, share_value):
        """Converting a debt to shares and back never yields less than was borrowed."""
        bank = make_bank(liability_share_value=share_value, oracle_keys=())
        back = get_liability_quantity(bank, get_liability_shares(bank, quantity))

        assert back >= quantity
        assert back - quantity <= Decimal("1e-30")

    def test_zero_share_value_yields_zero_shares(self):
        """An uninitialized bank mints no shares instead of dividing by zero."""
        bank = make_bank(asset_share_value=0, liability_share_value=0, oracle_keys=())
        assert get_asset_shares(bank, 100) == 0
        assert get_liability_shares(bank, 100) == 0
