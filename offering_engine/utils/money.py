"""Integer money helpers.

Amounts are always int minor units. Rates (percentages, multipliers) are
evaluated as Decimal; results are rounded half-up back to int.
"""

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

_ONE = Decimal(1)
_HUNDRED = Decimal(100)


def to_decimal(value: Any) -> Decimal:
    """Rate value from JSON (int, str, or float) to Decimal, exactly as written."""
    if isinstance(value, bool):
        raise ValueError(f"Not a number: {value!r}")
    if isinstance(value, Decimal):
        return value
    try:
        # str() keeps 7.5 as 7.5 rather than its binary float expansion
        return Decimal(str(value))
    except (InvalidOperation, ValueError) as e:
        raise ValueError(f"Not a number: {value!r}") from e


def round_half_up(amount: Decimal) -> int:
    return int(amount.quantize(_ONE, rounding=ROUND_HALF_UP))


def percent_of(amount: int | Decimal, percent: Any) -> Decimal:
    return Decimal(amount) * to_decimal(percent) / _HUNDRED


def is_minor_units(value: Any) -> bool:
    """True for a non-negative int amount (bools excluded)."""
    return isinstance(value, int) and not isinstance(value, bool) and value >= 0


def percent_difference(new: int, base: int) -> Decimal | None:
    """(new - base) / base as a percentage with 2 decimals; None when base <= 0."""
    if base is None or new is None or base <= 0:
        return None
    pct = (Decimal(new) - Decimal(base)) / Decimal(base) * _HUNDRED
    return pct.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
