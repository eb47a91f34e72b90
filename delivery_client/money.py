"""
money.py — Integer-cents arithmetic and BRL display helpers

All amounts inside the client are integers in cents. Conversion to
decimal units only happens here, at the display boundary.
"""

from decimal import Decimal, ROUND_FLOOR, ROUND_HALF_UP
from typing import Union

CENTS_PER_UNIT = 100

Number = Union[int, float, str, Decimal]


def to_cents(value: Number) -> int:
    """Converts an amount in decimal units (e.g. 149.99) to cents (14999), rounding half up."""
    amount = Decimal(str(value)) * CENTS_PER_UNIT
    return int(amount.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_cents(cents: int) -> Decimal:
    return (Decimal(int(cents)) / CENTS_PER_UNIT).quantize(Decimal("0.01"))


def clamp_non_negative(cents: int) -> int:
    return max(0, int(cents))


def percentage_of(cents: int, percent: Number) -> int:
    """
    Returns floor(cents × percent / 100).

    Args:
        cents (int): Base amount in cents.
        percent (Number): Percentage points, may be fractional (e.g. 12.5).

    Returns:
        int: The portion in cents, rounded down.
    """
    portion = Decimal(int(cents)) * Decimal(str(percent)) / 100
    return int(portion.to_integral_value(rounding=ROUND_FLOOR))


def format_brl(cents: int) -> str:
    """Formats cents the pt-BR way: 123456 -> 'R$ 1.234,56'."""
    value = from_cents(cents)
    sign = "-" if value < 0 else ""
    # Formata em en-US e troca os separadores
    text = f"{abs(value):,.2f}".replace(",", "_").replace(".", ",").replace("_", ".")
    return f"{sign}R$ {text}"
