"""
Project: School Canteen Wallet
Date: October 2026

Description:
Money helpers. Amounts are stored as integer cents and handled as Decimal
at the edges. Rounding is ROUND_HALF_UP to the cent.
"""

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

from errors import ValidationError

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


def quantize(value) -> Decimal:
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def to_money(value) -> Decimal:
    """Parse user input (str, int, Decimal, or float) into a cent-precision Decimal.

    Floats go through str() so their shortest repr is used rather than the
    binary expansion.
    """
    if value is None or isinstance(value, bool):
        raise ValidationError(f"invalid amount: {value!r}")
    if isinstance(value, float):
        value = str(value)
    try:
        amount = Decimal(value)
        if not amount.is_finite():
            raise ValidationError(f"invalid amount: {value!r}")
        return quantize(amount)
    except (InvalidOperation, TypeError, ValueError):
        raise ValidationError(f"invalid amount: {value!r}")


def to_cents(value) -> int:
    return int(to_money(value) * 100)


def from_cents(cents: int | None) -> Decimal | None:
    if cents is None:
        return None
    return (Decimal(cents) / 100).quantize(CENT)


def format_money(value) -> str | None:
    """'390.00' style rendering used in JSON payloads."""
    if value is None:
        return None
    return f"{quantize(value):.2f}"


def format_cents(cents: int | None) -> str | None:
    return format_money(from_cents(cents))
