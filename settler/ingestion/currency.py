"""
Amount and timestamp parsing shared by provider strategies.
"""

from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any

# ISO 4217 minor-unit exponents that differ from the usual 2
MINOR_UNIT_EXPONENTS = {
    "BIF": 0, "CLP": 0, "DJF": 0, "GNF": 0, "ISK": 0, "JPY": 0, "KMF": 0,
    "KRW": 0, "PYG": 0, "RWF": 0, "UGX": 0, "VND": 0, "VUV": 0, "XAF": 0,
    "XOF": 0, "XPF": 0,
    "BHD": 3, "IQD": 3, "JOD": 3, "KWD": 3, "LYD": 3, "OMR": 3, "TND": 3,
}


def minor_unit_exponent(currency: str) -> int:
    return MINOR_UNIT_EXPONENTS.get(currency.upper(), 2)


def parse_decimal(value: Any) -> Decimal:
    """Decimal from a number or decimal string. Floats go through str() to avoid binary noise."""
    if isinstance(value, bool) or value is None:
        raise ValueError(f"Not a numeric amount: {value!r}")
    try:
        amount = Decimal(str(value).strip())
    except InvalidOperation:
        raise ValueError(f"Not a numeric amount: {value!r}") from None
    if not amount.is_finite():
        raise ValueError(f"Amount must be finite: {value!r}")
    return amount


def from_minor_units(value: Any, currency: str) -> Decimal:
    """
    Convert an integer minor-unit amount to a decimal amount.

    9999 USD -> 99.99, 500 JPY -> 500, 1234 KWD -> 1.234
    """
    amount = parse_decimal(value)
    if amount != amount.to_integral_value():
        raise ValueError(f"Minor-unit amount must be an integer: {value!r}")
    return Decimal(int(amount)).scaleb(-minor_unit_exponent(currency))


def parse_timestamp(value: Any) -> datetime:
    """
    Parse ISO-8601 strings, dates, unix seconds and Microsoft JSON dates
    (/Date(1705276800000+0000)/). Naive values are taken as UTC.
    """
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        parsed = _from_unix(value)
    elif isinstance(value, str) and value.startswith("/Date("):
        millis = value[len("/Date("):].split(")")[0]
        for sep in ("+", "-"):
            if sep in millis[1:]:
                millis = millis[: millis.index(sep, 1)]
        parsed = _from_unix(int(millis) / 1000)
    elif isinstance(value, str):
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    else:
        raise ValueError(f"Unsupported timestamp: {value!r}")

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _from_unix(seconds: float) -> datetime:
    try:
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    except (OverflowError, OSError) as e:
        raise ValueError(f"Unix timestamp out of range: {seconds!r}") from e
