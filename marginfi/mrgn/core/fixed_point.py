"""
Fixed-point arithmetic for on-chain I80F48 values.

The protocol stores every share, share value, weight and cached USD value as a
signed 128-bit fixed-point number with 48 fractional bits. This module:
- Decodes/encodes the 16-byte little-endian wire layout losslessly
- Converts between native token units and UI amounts
- Provides checked division and decimal-place rounding helpers

All values are handled as `decimal.Decimal` under a 60-digit context, which
is wide enough to hold any I80F48 exactly.
"""

import logging
from decimal import Decimal, Context, ROUND_FLOOR, ROUND_CEILING, ROUND_HALF_EVEN
from typing import Union

from .errors import DivisionByZero, InvalidAmountError

logger = logging.getLogger(__name__)


I80F48_FRACTIONAL_BITS = 48
I80F48_BYTES = 16
I80F48_SCALE = 2 ** I80F48_FRACTIONAL_BITS
I80F48_MAX_RAW = 2 ** 127 - 1
I80F48_MIN_RAW = -(2 ** 127)

FIXED_CONTEXT = Context(prec=60)

ZERO = Decimal(0)
ONE = Decimal(1)

Numeric = Union[Decimal, int, float, str]


def to_decimal(value: Numeric) -> Decimal:
    """
    Convert a user-supplied number to Decimal.

    Floats go through `str()` so that 0.1 becomes Decimal("0.1") rather than
    its binary expansion.
    """
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        return Decimal(str(value))
    try:
        return Decimal(value)
    except (ArithmeticError, ValueError, TypeError) as e:
        raise InvalidAmountError(f"Invalid numeric value: {value!r}") from e


def decode_i80f48(data: bytes) -> Decimal:
    """
    Decode a 16-byte little-endian I80F48 into an exact Decimal.

    Args:
        data: Exactly 16 bytes as laid out on-chain

    Returns:
        Decimal value

    Raises:
        ValueError: If the buffer is not 16 bytes
    """
    if len(data) != I80F48_BYTES:
        raise ValueError(f"I80F48 requires {I80F48_BYTES} bytes, got {len(data)}")
    raw = int.from_bytes(data, "little", signed=True)
    return FIXED_CONTEXT.divide(Decimal(raw), Decimal(I80F48_SCALE))


def encode_i80f48(value: Numeric) -> bytes:
    """
    Encode a number into the 16-byte I80F48 layout.

    The scaled value is rounded half-even to the nearest representable step.

    Raises:
        OverflowError: If the value falls outside the I80F48 range
    """
    scaled = FIXED_CONTEXT.multiply(to_decimal(value), Decimal(I80F48_SCALE))
    raw = int(scaled.to_integral_value(rounding=ROUND_HALF_EVEN))
    if raw > I80F48_MAX_RAW or raw < I80F48_MIN_RAW:
        raise OverflowError(f"Value {value} out of I80F48 range")
    return raw.to_bytes(I80F48_BYTES, "little", signed=True)


def checked_div(numerator: Numeric, denominator: Numeric) -> Decimal:
    """Divide, raising DivisionByZero instead of producing infinity."""
    denominator = to_decimal(denominator)
    if denominator.is_zero():
        raise DivisionByZero(f"Division of {numerator} by zero")
    return FIXED_CONTEXT.divide(to_decimal(numerator), denominator)


def _quantum(decimals: int) -> Decimal:
    return Decimal(1).scaleb(-decimals)


def floor_to(value: Numeric, decimals: int) -> Decimal:
    """Round toward negative infinity at `decimals` places."""
    return to_decimal(value).quantize(_quantum(decimals), rounding=ROUND_FLOOR, context=FIXED_CONTEXT)


def ceil_to(value: Numeric, decimals: int) -> Decimal:
    """Round toward positive infinity at `decimals` places."""
    return to_decimal(value).quantize(_quantum(decimals), rounding=ROUND_CEILING, context=FIXED_CONTEXT)


def ui_to_native(amount: Numeric, decimals: int) -> int:
    """
    Convert a UI amount into integer native units, rounding down.

    Args:
        amount: Amount in whole tokens (e.g. 1.5 USDC)
        decimals: Mint decimals

    Returns:
        Native units as int
    """
    scaled = to_decimal(amount).scaleb(decimals, context=FIXED_CONTEXT)
    return int(scaled.to_integral_value(rounding=ROUND_FLOOR))


def native_to_ui(amount: Numeric, decimals: int) -> Decimal:
    """Convert native units into a UI amount."""
    return to_decimal(amount).scaleb(-decimals, context=FIXED_CONTEXT)


FLOOR_CONTEXT = Context(prec=60, rounding=ROUND_FLOOR)
CEILING_CONTEXT = Context(prec=60, rounding=ROUND_CEILING)


def mul_floor(a: Numeric, b: Numeric) -> Decimal:
    """Multiply, rounding the last significant digit toward negative infinity."""
    return FLOOR_CONTEXT.multiply(to_decimal(a), to_decimal(b))


def mul_ceil(a: Numeric, b: Numeric) -> Decimal:
    return CEILING_CONTEXT.multiply(to_decimal(a), to_decimal(b))


def div_floor(numerator: Numeric, denominator: Numeric) -> Decimal:
    """Checked division rounding toward negative infinity."""
    denominator = to_decimal(denominator)
    if denominator.is_zero():
        raise DivisionByZero(f"Division of {numerator} by zero")
    return FLOOR_CONTEXT.divide(to_decimal(numerator), denominator)


def div_ceil(numerator: Numeric, denominator: Numeric) -> Decimal:
    denominator = to_decimal(denominator)
    if denominator.is_zero():
        raise DivisionByZero(f"Division of {numerator} by zero")
    return CEILING_CONTEXT.divide(to_decimal(numerator), denominator)
