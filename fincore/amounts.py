"""
Decimal helpers for monetary amounts.

Amounts are always Decimal quantized to two places with
ROUND_HALF_UP. Floats are rejected.
"""

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from typing import Union

from .errors import ValidationError


CENT = Decimal("0.01")
ZERO = Decimal("0.00")

AmountLike = Union[Decimal, int, str]


def to_amount(value: AmountLike) -> Decimal:
    """Convert to a two-place Decimal"""
    if isinstance(value, float):
        raise ValidationError("Monetary amounts must not be floats", "INVALID_AMOUNT")
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
    except InvalidOperation:
        raise ValidationError(f"Invalid amount: {value!r}", "INVALID_AMOUNT")
    if not amount.is_finite():
        raise ValidationError(f"Invalid amount: {value!r}", "INVALID_AMOUNT")
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


def positive_amount(value: AmountLike) -> Decimal:
    """Convert and require a strictly positive amount"""
    amount = to_amount(value)
    if amount <= ZERO:
        raise ValidationError("Amount must be positive", "INVALID_AMOUNT")
    return amount


def format_amount(amount: Decimal, currency: str = "RWF") -> str:
    """Format amount for display, e.g. ``RWF 1,250.00``"""
    return f"{currency} {to_amount(amount):,.2f}"
