from __future__ import annotations

from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

# The reference currency has no subunit in practice: totals round to whole units.
CURRENCY_QUANTUM = Decimal("1")

ZERO = Decimal("0")


def to_decimal(value) -> Decimal:
    """None -> 0; floats go through str() so 0.1 stays 0.1."""
    if value is None:
        return ZERO
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        return Decimal(str(value))
    return Decimal(value)


def quantize_amount(value: Decimal, quantum: Decimal = CURRENCY_QUANTUM) -> Decimal:
    return to_decimal(value).quantize(quantum, rounding=ROUND_HALF_UP)


def amount_str(value: Optional[Decimal]) -> Optional[str]:
    """Serialize an amount for JSON without float conversion."""
    if value is None:
        return None
    text = format(to_decimal(value), "f")
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text or "0"
