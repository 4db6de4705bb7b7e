from __future__ import annotations

import pytest

from app.billing.errors import NormalizationError, NormalizationErrorKind
from app.billing.money import (
    currency_exponent,
    decimal_amount_to_minor,
    integer_minor_amount,
    normalize_currency,
)


def test_currency_exponent_uses_table_and_defaults_to_two() -> None:
    assert currency_exponent("JPY") == 0
    assert currency_exponent("kwd") == 3
    assert currency_exponent("USD") == 2
    assert currency_exponent("PHP") == 2


@pytest.mark.parametrize(
    ("value", "currency", "expected"),
    [
        ("12.99", "USD", 1299),
        ("12.9", "USD", 1290),
        ("100", "USD", 10000),
        ("1500", "JPY", 1500),
        ("1.234", "KWD", 1234),
        (" 0.50 ", "PHP", 50),
    ],
)
def test_decimal_amount_to_minor_converts_exactly(value: str, currency: str, expected: int) -> None:
    assert decimal_amount_to_minor(value, currency) == expected


@pytest.mark.parametrize(
    ("value", "currency"),
    [
        (12.99, "USD"),
        (True, "USD"),
        ("12.999", "USD"),
        ("15.5", "JPY"),
        ("abc", "USD"),
        ("-1.00", "USD"),
        ("NaN", "USD"),
        (None, "USD"),
    ],
)
def test_decimal_amount_to_minor_rejects_unsafe_values(value: object, currency: str) -> None:
    with pytest.raises(NormalizationError) as exc_info:
        decimal_amount_to_minor(value, currency)
    assert exc_info.value.kind is NormalizationErrorKind.MALFORMED_PAYLOAD


def test_integer_minor_amount_accepts_ints_and_digit_strings() -> None:
    assert integer_minor_amount(72900) == 72900
    assert integer_minor_amount("150") == 150


@pytest.mark.parametrize("value", [1.5, False, "1.50", -5, None])
def test_integer_minor_amount_rejects_non_integers(value: object) -> None:
    with pytest.raises(NormalizationError):
        integer_minor_amount(value)


def test_normalize_currency_uppercases_and_validates() -> None:
    assert normalize_currency(" php ") == "PHP"
    with pytest.raises(NormalizationError):
        normalize_currency("US")
    with pytest.raises(NormalizationError):
        normalize_currency(840)
