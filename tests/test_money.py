"""Minor-unit conversion."""

from decimal import Decimal

import pytest

from onetouch.common.errors import InvalidInputError
from onetouch.common.money import from_minor_units, to_minor_units


def test_two_digit_currency():
    assert to_minor_units(Decimal("34.00"), "BGN") == 3400
    assert to_minor_units("0.01", "eur") == 1


def test_zero_and_three_digit_currencies():
    assert to_minor_units("500", "JPY") == 500
    assert to_minor_units("1.234", "KWD") == 1234


def test_extra_precision_is_rejected():
    with pytest.raises(InvalidInputError):
        to_minor_units("34.005", "BGN")
    with pytest.raises(InvalidInputError):
        to_minor_units("1.5", "JPY")


@pytest.mark.parametrize("amount", ["0", "-1", "abc", "NaN", "Infinity"])
def test_invalid_amounts(amount):
    with pytest.raises(InvalidInputError):
        to_minor_units(amount, "BGN")


def test_from_minor_units():
    assert from_minor_units(3400, "BGN") == Decimal("34.00")
