"""
Fixed-point money helpers.

Every derived monetary field is rounded exactly once, at the end of its
computation, with ROUND_HALF_UP:

    amounts -> 2 places (0.01)
    rates   -> 4 places (0.0001)

Intermediate arithmetic stays exact Decimal. Floats are converted through
str() so 0.1 becomes Decimal("0.1") and not its binary expansion.
"""

from __future__ import annotations

from decimal import Decimal, ROUND_DOWN, ROUND_HALF_UP
from typing import Iterable, Union

Number = Union[Decimal, int, float, str, None]

ZERO = Decimal("0.00")
HUNDRED = Decimal("100")
CENT = Decimal("0.01")
RATE_STEP = Decimal("0.0001")


def to_decimal(value: Number) -> Decimal:
    if value is None:
        return Decimal("0")
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        return Decimal(str(value))
    return Decimal(value)


def round_to(value: Number, places: int) -> Decimal:
    step = Decimal(1).scaleb(-places)
    return to_decimal(value).quantize(step, rounding=ROUND_HALF_UP)


def to_money(value: Number) -> Decimal:
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def to_rate(value: Number) -> Decimal:
    return to_decimal(value).quantize(RATE_STEP, rounding=ROUND_HALF_UP)


def is_money(value: Number) -> bool:
    """True when value already sits on the cent grid."""
    try:
        d = to_decimal(value)
    except (ArithmeticError, ValueError, TypeError):
        return False
    return d.is_finite() and d == to_money(d)


def percent_of(amount: Number, pct: Number) -> Decimal:
    """amount * pct / 100, rounded to cents."""
    return to_money(to_decimal(amount) * to_decimal(pct) / HUNDRED)


def safe_divide(numerator: Number, divisor: Number, places: int = 2) -> Decimal:
    """Division that yields zero for a zero divisor instead of raising."""
    d = to_decimal(divisor)
    if d == 0:
        return round_to(0, places)
    return round_to(to_decimal(numerator) / d, places)


def percentage(part: Number, whole: Number) -> Decimal:
    """part as a percentage of whole (2 places); 0 when whole is 0."""
    return safe_divide(to_decimal(part) * HUNDRED, whole, 2)


def money_sum(values: Iterable[Number]) -> Decimal:
    total = Decimal("0")
    for v in values:
        total += to_decimal(v)
    return to_money(total)


def floor_int(value: Number) -> int:
    return int(to_decimal(value).to_integral_value(rounding=ROUND_DOWN))


def non_negative(value: Number) -> Decimal:
    v = to_money(value)
    return v if v > 0 else ZERO


def money_str(value: Number) -> str | None:
    """Serialize for to_dict(); keeps the declared scale."""
    if value is None:
        return None
    return str(to_money(value))
