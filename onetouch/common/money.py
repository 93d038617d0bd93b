"""Currency amount helpers. The wire always carries integral minor units."""

from decimal import Decimal, InvalidOperation

from onetouch.common.errors import InvalidInputError


# ISO 4217 minor-unit digits for currencies the provider settles in or that
# commonly reach it. Anything not listed uses two digits.
CURRENCY_EXPONENTS: dict[str, int] = {
    "BGN": 2,
    "EUR": 2,
    "USD": 2,
    "GBP": 2,
    "CHF": 2,
    "RON": 2,
    "HUF": 2,
    "JPY": 0,
    "KRW": 0,
    "BHD": 3,
    "KWD": 3,
}
DEFAULT_EXPONENT = 2


def currency_exponent(currency: str) -> int:
    return CURRENCY_EXPONENTS.get(currency.upper(), DEFAULT_EXPONENT)


def to_minor_units(amount: Decimal | int | str, currency: str) -> int:
    """Convert a major-unit amount (e.g. `34.00`) into minor units (`3400`).

    Amounts with more precision than the currency allows are rejected rather
    than rounded.
    """

    try:
        value = Decimal(str(amount))
    except InvalidOperation as exc:
        raise InvalidInputError(f"invalid amount: {amount!r}") from exc
    if not value.is_finite() or value <= 0:
        raise InvalidInputError(f"amount must be positive: {amount!r}")
    scaled = value.scaleb(currency_exponent(currency))
    if scaled != scaled.to_integral_value():
        raise InvalidInputError(
            f"amount {amount} has more precision than {currency.upper()} allows",
            {"currency": currency.upper()},
        )
    return int(scaled)


def from_minor_units(amount_minor: int, currency: str) -> Decimal:
    """Inverse of `to_minor_units`, for display and refund bookkeeping."""

    return Decimal(amount_minor).scaleb(-currency_exponent(currency))
