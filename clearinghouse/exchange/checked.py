"""
Checked fixed-point arithmetic.

Stored amounts are bounded to 128-bit unsigned/signed ranges and every
division is explicit about rounding. Any failure raises `MathError` tagged
with the operation that produced it, which aborts the enclosing operation.
"""

from __future__ import annotations

from fractions import Fraction
from math import isqrt

from ..exceptions import MathError

U128_MAX = (1 << 128) - 1
I128_MAX = (1 << 127) - 1
I128_MIN = -(1 << 127)


def u128(value: int, op: str) -> int:
    """Return `value` if it fits an unsigned 128-bit integer."""
    if value < 0 or value > U128_MAX:
        raise MathError(op)
    return value


def i128(value: int, op: str) -> int:
    """Return `value` if it fits a signed 128-bit integer."""
    if value < I128_MIN or value > I128_MAX:
        raise MathError(op)
    return value


def sub(a: int, b: int, op: str) -> int:
    """Unsigned subtraction; underflow is an error."""
    return u128(a - b, op)


def div(numerator: int, denominator: int, op: str) -> int:
    """
    Integer division truncating toward zero.

    Floor division differs from truncation for negative operands, and signed
    funding/spread math is defined with truncation.
    """
    if denominator == 0:
        raise MathError(op)
    quotient = abs(numerator) // abs(denominator)
    if (numerator < 0) != (denominator < 0):
        quotient = -quotient
    return quotient


def mul_fraction(amount: int, fraction: Fraction, op: str = "mul_fraction") -> int:
    """`amount * fraction`, truncated toward zero."""
    return div(amount * fraction.numerator, fraction.denominator, op)


def sqrt(value: int, op: str = "sqrt") -> int:
    """Floor integer square root."""
    if value < 0:
        raise MathError(op)
    return isqrt(value)


def parse_fraction(raw) -> Fraction:
    """Accept a Fraction, [numerator, denominator], "a/b", a decimal string or an int."""
    if isinstance(raw, Fraction):
        return raw
    if isinstance(raw, (list, tuple)):
        numerator, denominator = raw
        return Fraction(int(numerator), int(denominator))
    if isinstance(raw, float):
        raise ValueError(f"Float fractions are ambiguous, use [num, den] or a string: {raw}")
    return Fraction(raw)
