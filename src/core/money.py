"""Money helpers (two-decimal, half-up)."""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

from core.errors import ValidationFailed

CENT = Decimal("0.01")


def round_money(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def parse_amount(value: Any, field_name: str) -> Decimal:
    """Parse a non-negative amount or raise ValidationFailed."""

    if value is None or (isinstance(value, str) and not value.strip()):
        raise ValidationFailed(f"{field_name} is required.")
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value).strip())
    except InvalidOperation:
        raise ValidationFailed(f"{field_name} must be a number.") from None
    if not amount.is_finite() or amount < 0:
        raise ValidationFailed(f"{field_name} must be zero or more.")
    return round_money(amount)
