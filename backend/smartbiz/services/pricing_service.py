# Overview: Unit-price resolution per sale type, per-line tax, order totals and loyalty arithmetic.

"""
Pricing Rules

PRECEDENCE for a line's unit price:
1. FREE always resolves to 0 (a manual price cannot make a free line cost money)
2. a manual override price, verbatim
3. the sale-type policy:
   - NORMAL, VIP: list price
   - AT_COST: cost price, list price when cost is zero or missing
   - CLEARANCE: same as AT_COST until a manual price is entered

TAX: tax_rate is a percentage; the sentinel -1 marks a non-taxable product.
line tax = unit_price * quantity * tax_rate / 100.

ROUNDING: every figure is a Decimal. Lines are never rounded; only the
order totals are rounded to whole currency units, half-up.

Line objects are duck-typed: anything with list_price, cost_price,
tax_rate, quantity, sale_type and override_price works (cart lines on the
terminal, request items on the server).
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, ROUND_FLOOR
from enum import Enum
from typing import Callable, Iterable

from ..money import ZERO, amount_str, quantize_amount, to_decimal
from ..models.catalog import NOT_TAXABLE

HUNDRED = Decimal("100")


class SaleType(str, Enum):
    NORMAL = "NORMAL"
    VIP = "VIP"
    AT_COST = "AT_COST"
    CLEARANCE = "CLEARANCE"
    FREE = "FREE"

    @classmethod
    def parse(cls, value) -> "SaleType":
        """Strict parse; raises ValueError on unknown tags. None means NORMAL."""
        if value is None or value == "":
            return cls.NORMAL
        if isinstance(value, cls):
            return value
        return cls(str(value).strip().upper())


def _list_price(line) -> Decimal:
    return to_decimal(line.list_price)


def _cost_or_list_price(line) -> Decimal:
    cost = to_decimal(line.cost_price)
    if cost > 0:
        return cost
    return to_decimal(line.list_price)


def _free(line) -> Decimal:
    return ZERO


_PRICE_POLICIES: dict[SaleType, Callable] = {
    SaleType.NORMAL: _list_price,
    SaleType.VIP: _list_price,
    SaleType.AT_COST: _cost_or_list_price,
    SaleType.CLEARANCE: _cost_or_list_price,
    SaleType.FREE: _free,
}

_missing = set(SaleType) - set(_PRICE_POLICIES)
if _missing:
    raise RuntimeError(f"No price policy for sale types: {sorted(t.value for t in _missing)}")


def resolve_unit_price(line) -> Decimal:
    try:
        sale_type = SaleType.parse(getattr(line, "sale_type", None))
    except ValueError:
        # Unknown tags never reach here through the API; fail closed to list price
        return _list_price(line)

    if sale_type is SaleType.FREE:
        return ZERO
    override = getattr(line, "override_price", None)
    if override is not None:
        return to_decimal(override)
    return _PRICE_POLICIES[sale_type](line)


def is_taxable(tax_rate) -> bool:
    return tax_rate is not None and to_decimal(tax_rate) != NOT_TAXABLE


def line_subtotal(line) -> Decimal:
    return resolve_unit_price(line) * int(line.quantity)


def line_tax(line) -> Decimal:
    if not is_taxable(line.tax_rate):
        return ZERO
    return line_subtotal(line) * to_decimal(line.tax_rate) / HUNDRED


@dataclass(frozen=True)
class OrderTotals:
    subtotal: Decimal
    discount: Decimal
    tax_total: Decimal
    grand_total: Decimal

    def to_dict(self) -> dict:
        return {
            "subtotal": amount_str(self.subtotal),
            "discount": amount_str(self.discount),
            "tax_total": amount_str(self.tax_total),
            "grand_total": amount_str(self.grand_total),
        }


def order_totals(lines: Iterable, loyalty_discount=ZERO) -> OrderTotals:
    """
    subtotal = sum(unit_price * qty); discount capped at subtotal;
    grand_total = subtotal - discount + tax_total.
    """
    lines = list(lines)
    subtotal = sum((line_subtotal(l) for l in lines), ZERO)
    tax_total = sum((line_tax(l) for l in lines), ZERO)

    discount = max(to_decimal(loyalty_discount), ZERO)
    if discount > subtotal:
        discount = subtotal

    grand_total = subtotal - discount + tax_total
    return OrderTotals(
        subtotal=quantize_amount(subtotal),
        discount=quantize_amount(discount),
        tax_total=quantize_amount(tax_total),
        grand_total=quantize_amount(grand_total),
    )


def change_due(cash_received, grand_total) -> Decimal | None:
    """None when the cash does not cover the total."""
    if cash_received is None:
        return None
    cash = to_decimal(cash_received)
    total = to_decimal(grand_total)
    if cash < total:
        return None
    return quantize_amount(cash - total)


def loyalty_discount(points: int, currency_per_point) -> Decimal:
    if not points or points <= 0:
        return ZERO
    return to_decimal(currency_per_point) * points


def earned_points(total, setting) -> int:
    """Points earned for an order total under a store's LoyaltySetting (None = program off)."""
    if setting is None or not setting.is_active:
        return 0
    total = to_decimal(total)
    if total <= 0 or total < to_decimal(setting.min_order_value):
        return 0
    points = (total * to_decimal(setting.points_per_currency)).to_integral_value(rounding=ROUND_FLOOR)
    return int(points)
