from __future__ import annotations

from decimal import Decimal, InvalidOperation

from app.billing.errors import NormalizationError, NormalizationErrorKind

DEFAULT_CURRENCY_EXPONENT = 2
CURRENCY_EXPONENTS: dict[str, int] = {
    "CLP": 0,
    "IDR": 0,
    "JPY": 0,
    "KRW": 0,
    "MMK": 0,
    "VND": 0,
    "KWD": 3,
}


def _malformed(detail: str) -> NormalizationError:
    return NormalizationError(NormalizationErrorKind.MALFORMED_PAYLOAD, detail)


def currency_exponent(currency: str) -> int:
    return CURRENCY_EXPONENTS.get(currency.upper(), DEFAULT_CURRENCY_EXPONENT)


def normalize_currency(value: object) -> str:
    if not isinstance(value, str):
        raise _malformed("currency must be a string")
    code = value.strip().upper()
    if len(code) != 3 or not code.isalpha():
        raise _malformed(f"invalid currency code {value!r}")
    return code


def decimal_amount_to_minor(value: object, currency: str) -> int:
    """Convert a major-unit decimal string such as ``"12.99"`` into minor units.

    Floats are refused outright: their binary value is not the amount the
    provider printed.
    """
    if isinstance(value, bool) or isinstance(value, float):
        raise _malformed("amount must be a decimal string")
    if isinstance(value, int):
        amount = Decimal(value)
    elif isinstance(value, str):
        try:
            amount = Decimal(value.strip())
        except InvalidOperation as exc:
            raise _malformed(f"invalid amount {value!r}") from exc
    else:
        raise _malformed("amount must be a decimal string")

    if not amount.is_finite():
        raise _malformed(f"invalid amount {value!r}")
    if amount < 0:
        raise _malformed("amount must not be negative")

    scaled = amount.scaleb(currency_exponent(currency))
    if scaled != scaled.to_integral_value():
        raise _malformed(f"amount {value!r} has more precision than {currency} allows")
    return int(scaled)


def integer_minor_amount(value: object) -> int:
    """Read an amount that the provider already sends in minor units."""
    if isinstance(value, bool) or isinstance(value, float):
        raise _malformed("minor amount must be an integer")
    if isinstance(value, int):
        amount = value
    elif isinstance(value, str) and value.strip().isdigit():
        amount = int(value.strip())
    else:
        raise _malformed(f"invalid minor amount {value!r}")
    if amount < 0:
        raise _malformed("amount must not be negative")
    return amount
