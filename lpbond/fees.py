"""
fees.py - Fixed-Point Fee Math

Pure integer functions for basis-point fee rates on a 1,000,000 scale
(1,000,000 = 100%, 25,000 = 2.5%). No state, no floating point.

Every product is checked against UINT256_MAX before it is divided, so an
oversized intermediate raises ArithmeticOverflow instead of wrapping.
"""

from __future__ import annotations
from typing import Tuple

from .core import ArithmeticOverflow, UINT256_MAX


FEE_SCALE = 1_000_000


def _require_amount(name: str, value: int) -> None:
    if not isinstance(value, int) or isinstance(value, bool):
        raise ValueError(f"{name} must be an int, got {type(value).__name__}")
    if value < 0:
        raise ValueError(f"{name} must be non-negative, got {value}")


def is_valid_fee_rate(rate: int) -> bool:
    """True if rate is an int in [0, FEE_SCALE]."""
    return isinstance(rate, int) and not isinstance(rate, bool) and 0 <= rate <= FEE_SCALE


def checked_add(a: int, b: int) -> int:
    """a + b, raising ArithmeticOverflow above UINT256_MAX."""
    result = a + b
    if result > UINT256_MAX:
        raise ArithmeticOverflow(f"{a} + {b} overflows uint256")
    return result


def checked_mul(a: int, b: int) -> int:
    """a * b, raising ArithmeticOverflow above UINT256_MAX."""
    result = a * b
    if result > UINT256_MAX:
        raise ArithmeticOverflow(f"{a} * {b} overflows uint256")
    return result


def saturating_sub(a: int, b: int) -> int:
    """a - b floored at zero."""
    return a - b if a > b else 0


def mul_div(a: int, b: int, denominator: int) -> int:
    """floor(a * b / denominator) with a checked product."""
    if denominator <= 0:
        raise ValueError(f"denominator must be positive, got {denominator}")
    return checked_mul(a, b) // denominator


def split(amount: int, fee_rate: int) -> Tuple[int, int]:
    """
    Split an amount into (fee, net).

    fee = floor(amount * fee_rate / FEE_SCALE), net = amount - fee,
    so fee + net == amount exactly.

    Args:
        amount: Gross amount in base units
        fee_rate: Rate on the FEE_SCALE scale

    Returns:
        (fee, net)

    Raises:
        ValueError: If amount is negative or fee_rate is outside [0, FEE_SCALE]
        ArithmeticOverflow: If amount * fee_rate exceeds UINT256_MAX

    Example:
        split(100, 25_000)  # (2, 98)
    """
    _require_amount("amount", amount)
    if not is_valid_fee_rate(fee_rate):
        raise ValueError(f"fee_rate must be in [0, {FEE_SCALE}], got {fee_rate!r}")
    fee = mul_div(amount, fee_rate, FEE_SCALE)
    return fee, amount - fee
