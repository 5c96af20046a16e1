"""
Conversion between human-readable decimal amounts and integer atomic units.

All arithmetic works on the decimal digits directly, so results are exact for
any precision (SPL mints commonly use 6 or 9 decimals, wrapped assets up to 18).
"""

from __future__ import annotations

from decimal import Decimal, InvalidOperation
from typing import Union

from ..recovery.errors import InvalidAmountError

HumanAmount = Union[str, int, Decimal]


def _validate_decimals(decimals: int) -> None:
    if isinstance(decimals, bool) or not isinstance(decimals, int) or decimals < 0:
        raise InvalidAmountError(f"Invalid decimal precision: {decimals!r}", value=decimals)


def parse_amount(human_amount: HumanAmount) -> Decimal:
    """Validate a human amount and return it as an exact Decimal."""
    if isinstance(human_amount, bool) or isinstance(human_amount, float):
        # exact inputs only
        raise InvalidAmountError("Amount must be a decimal string", value=human_amount)
    try:
        value = human_amount if isinstance(human_amount, Decimal) else Decimal(str(human_amount).strip())
    except (InvalidOperation, ValueError, TypeError):
        raise InvalidAmountError(f"Amount is not a number: {human_amount!r}", value=human_amount) from None

    if not value.is_finite():
        raise InvalidAmountError(f"Amount is not finite: {human_amount!r}", value=human_amount)
    if value.is_signed() and not value.is_zero():
        raise InvalidAmountError(f"Amount must not be negative: {human_amount!r}", value=human_amount)
    return value


def to_atomic(human_amount: HumanAmount, decimals: int) -> int:
    """
    Convert a human amount to atomic units, truncating extra fractional digits.

    >>> to_atomic("1.5", 9)
    1500000000
    >>> to_atomic("0.1234567", 6)
    123456
    """
    _validate_decimals(decimals)
    value = parse_amount(human_amount)

    _, digits, exponent = value.as_tuple()
    coefficient = int("".join(str(d) for d in digits)) if digits else 0
    shift = exponent + decimals
    if shift >= 0:
        return coefficient * 10 ** shift
    return coefficient // 10 ** (-shift)


def to_human(atomic: int, decimals: int) -> str:
    """
    Render atomic units as a canonical decimal string.

    >>> to_human(1500000000, 9)
    '1.5'
    """
    _validate_decimals(decimals)
    if isinstance(atomic, bool) or not isinstance(atomic, int):
        raise InvalidAmountError(f"Atomic amount must be an integer: {atomic!r}", value=atomic)
    if atomic < 0:
        raise InvalidAmountError(f"Atomic amount must not be negative: {atomic}", value=atomic)

    whole, fraction = divmod(atomic, 10 ** decimals)
    if decimals == 0 or fraction == 0:
        return str(whole)
    fraction_digits = str(fraction).rjust(decimals, "0").rstrip("0")
    return f"{whole}.{fraction_digits}"


def truncate(human_amount: HumanAmount, decimals: int) -> str:
    """Canonical form of ``human_amount`` cut to ``decimals`` fractional digits."""
    return to_human(to_atomic(human_amount, decimals), decimals)


def to_decimal(atomic: int, decimals: int) -> Decimal:
    """Exact Decimal value of an atomic amount."""
    return Decimal(to_human(atomic, decimals))


__all__ = ["HumanAmount", "parse_amount", "to_atomic", "to_human", "truncate", "to_decimal"]
