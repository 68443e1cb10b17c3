"""Rupee / paise conversion. The gateway only ever sees integer paise."""

from decimal import Decimal, ROUND_HALF_UP
from typing import Union

Number = Union[Decimal, int, float, str]

MINOR_UNITS_PER_RUPEE = 100
TWO_PLACES = Decimal("0.01")


def to_decimal(amount: Number) -> Decimal:
    if isinstance(amount, Decimal):
        return amount
    return Decimal(str(amount))


def to_minor_units(amount: Number) -> int:
    """Rupees to paise, rounded half-up."""
    return int((to_decimal(amount) * MINOR_UNITS_PER_RUPEE).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_minor_units(amount_minor: Number) -> Decimal:
    """Paise to rupees with two decimal places."""
    return (to_decimal(amount_minor) / MINOR_UNITS_PER_RUPEE).quantize(TWO_PLACES, rounding=ROUND_HALF_UP)


def split_gst(total: Number, rate_percent: Number) -> tuple:
    """Return (amount_before_gst, gst_amount) where gst is a flat share of the total."""
    total = to_decimal(total)
    gst = (total * to_decimal(rate_percent) / 100).quantize(TWO_PLACES, rounding=ROUND_HALF_UP)
    return total - gst, gst
