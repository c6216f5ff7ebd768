"""Monetary helpers.

Amounts are ``Decimal`` in major units (dollars) everywhere inside the
package and integers in minor units (cents) on the gateway wire. Both
directions round half-to-even to the minor unit.
"""

from decimal import ROUND_HALF_EVEN, Decimal
from typing import Union

MINOR_UNIT = Decimal("0.01")
MINOR_PER_MAJOR = 100

Number = Union[Decimal, int, float, str]


def to_decimal(value: Number) -> Decimal:
    """Convert a number to Decimal without binary float artefacts."""
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        return Decimal(str(value))
    return Decimal(value)


def quantize_money(value: Number) -> Decimal:
    """Round to the currency minor unit."""
    return to_decimal(value).quantize(MINOR_UNIT, rounding=ROUND_HALF_EVEN)


def to_minor_units(value: Number) -> int:
    """Dollars -> integer cents."""
    return int(quantize_money(value) * MINOR_PER_MAJOR)


def from_minor_units(cents: int) -> Decimal:
    """Integer cents -> dollars."""
    return quantize_money(Decimal(int(cents)) / MINOR_PER_MAJOR)


def money_str(value: Decimal) -> str:
    """Serialize an amount for JSON storage."""
    return str(quantize_money(value))
