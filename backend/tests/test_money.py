from decimal import Decimal

import pytest

from salesbackend.money import (
    floor_int,
    is_money,
    money_str,
    money_sum,
    non_negative,
    percent_of,
    percentage,
    round_to,
    safe_divide,
    to_decimal,
    to_money,
    to_rate,
)


@pytest.mark.parametrize("value, expected", [
    ("2.345", Decimal("2.35")),
    ("2.344", Decimal("2.34")),
    ("-2.345", Decimal("-2.35")),
    (0.1, Decimal("0.10")),
    (None, Decimal("0.00")),
])
def test_to_money_rounds_half_up(value, expected):
    assert to_money(value) == expected


def test_to_rate_keeps_four_places():
    assert to_rate("12.34565") == Decimal("12.3457")
    assert to_rate(15) == Decimal("15.0000")


def test_float_is_converted_through_str():
    assert to_decimal(0.1) == Decimal("0.1")


def test_percent_of_rounds_once():
    assert percent_of(Decimal("250.00"), Decimal("3")) == Decimal("7.50")
    assert percent_of(Decimal("33.33"), Decimal("15")) == Decimal("5.00")


def test_safe_divide_by_zero_is_zero():
    assert safe_divide(10, 0) == Decimal("0.00")
    assert percentage(5, 0) == Decimal("0.00")


def test_percentage():
    assert percentage(25, 200) == Decimal("12.50")


def test_money_sum_and_helpers():
    assert money_sum(["0.10", "0.20", 0.3]) == Decimal("0.60")
    assert floor_int(Decimal("25.99")) == 25
    assert non_negative(Decimal("-3")) == Decimal("0.00")
    assert money_str(Decimal("5")) == "5.00"
    assert money_str(None) is None
    assert round_to("12.345", 1) == Decimal("12.3")


@pytest.mark.parametrize("value, expected", [
    ("12.50", True),
    (3, True),
    ("12.505", False),
    ("not a number", False),
    (Decimal("Infinity"), False),
])
def test_is_money(value, expected):
    assert is_money(value) is expected
