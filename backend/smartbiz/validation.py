from __future__ import annotations

from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any

from .errors import ValidationError
from .time_utils import coerce_datetime


# Maximum monetary amount accepted from clients (whole currency units)
MAX_AMOUNT = Decimal("999999999999")


class FieldErrors:
    """
    Collects per-field problems and raises them together.

    Each field keeps its own message so forms can highlight every offending
    input in one round trip.
    """

    def __init__(self) -> None:
        self.fields: dict[str, str] = {}

    def add(self, field: str, message: str) -> None:
        # First message per field wins
        self.fields.setdefault(field, message)

    def __bool__(self) -> bool:
        return bool(self.fields)

    def __contains__(self, field: str) -> bool:
        return field in self.fields

    def raise_if_any(self) -> None:
        if self.fields:
            raise ValidationError(self.fields)


def coerce_int(value: Any, field: str, errors: FieldErrors, *, minimum: int | None = None) -> int | None:
    """
    Strict integer coercion: rejects floats, decimals, booleans and
    scientific notation instead of silently truncating them.
    """
    if value is None:
        return None

    result: int | None = None
    if isinstance(value, bool):
        errors.add(field, f"{field} must be an integer")
        return None
    if isinstance(value, int):
        result = value
    elif isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            errors.add(field, f"{field} must be an integer")
            return None
        if "e" in stripped.lower():
            errors.add(field, f"{field} must be a plain integer (scientific notation not allowed)")
            return None
        if "." in stripped:
            errors.add(field, f"{field} must be an integer (no decimals)")
            return None
        try:
            result = int(stripped)
        except ValueError:
            errors.add(field, f"{field} must be an integer")
            return None
    elif isinstance(value, float):
        errors.add(field, f"{field} must be an integer, not a decimal")
        return None
    else:
        errors.add(field, f"{field} must be an integer")
        return None

    if minimum is not None and result < minimum:
        errors.add(field, f"{field} must be >= {minimum}")
        return None
    return result


def coerce_amount(
    value: Any,
    field: str,
    errors: FieldErrors,
    *,
    minimum: Decimal | int | None = 0,
) -> Decimal | None:
    """Parse a monetary amount into Decimal. Floats go through str() to avoid binary noise."""
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        errors.add(field, f"{field} must be a number")
        return None
    try:
        if isinstance(value, float):
            amount = Decimal(str(value))
        else:
            amount = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        errors.add(field, f"{field} must be a number")
        return None
    if not amount.is_finite():
        errors.add(field, f"{field} must be a number")
        return None
    if minimum is not None and amount < Decimal(minimum):
        errors.add(field, f"{field} must be >= {minimum}")
        return None
    if amount > MAX_AMOUNT:
        errors.add(field, f"{field} exceeds {MAX_AMOUNT}")
        return None
    return amount


def coerce_datetime_field(value: Any, field: str, errors: FieldErrors) -> datetime | None:
    if value is None or value == "":
        return None
    try:
        return coerce_datetime(value)
    except (ValueError, TypeError):
        errors.add(field, f"{field} must be an ISO-8601 date or datetime")
        return None


def clean_text(value: Any, max_length: int | None = None) -> str:
    if value is None:
        return ""
    text = str(value).strip()
    if max_length is not None:
        text = text[:max_length]
    return text
