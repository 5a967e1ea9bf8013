"""
Fixed-point money helpers.

All monetary values are Decimal with exactly two places, rounded half-up.
Quantities (metered usage) keep four places.
"""

import re
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

from apps.core.exceptions import ValidationError

CENT = Decimal("0.01")
QUANTITY_STEP = Decimal("0.0001")
ZERO = Decimal("0.00")

_CURRENCY_RE = re.compile(r"^[A-Z]{3}$")


def to_decimal(value: Decimal | int | float | str) -> Decimal:
    """Convert to Decimal without float artifacts (floats go through str)."""
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        value = repr(value)
    try:
        return Decimal(value)
    except (InvalidOperation, TypeError, ValueError) as e:
        raise ValidationError(f"Invalid numeric value: {value!r}", code="INVALID_AMOUNT") from e


def money(value: Decimal | int | float | str) -> Decimal:
    """Quantize to cents."""
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def quantity(value: Decimal | int | float | str) -> Decimal:
    """Quantize a metered quantity."""
    return to_decimal(value).quantize(QUANTITY_STEP, rounding=ROUND_HALF_UP)


def require_positive(value: Decimal | int | float | str, field: str = "amount") -> Decimal:
    """Return the amount in cents, rejecting zero and negatives."""
    amount = money(value)
    if amount <= 0:
        raise ValidationError(f"{field} must be positive", code="INVALID_AMOUNT")
    return amount


def validate_currency(code: str) -> str:
    """Validate and normalize a 3-letter ISO 4217 currency code."""
    normalized = (code or "").strip().upper()
    if not _CURRENCY_RE.match(normalized):
        raise ValidationError(f"Invalid currency code: {code!r}", code="INVALID_CURRENCY")
    return normalized
