# Overview: Immutable POS tab snapshot with pure cart edits and derived totals.

"""
POS Tab Model

An OrderTab is a frozen snapshot. Every edit returns a new tab; nothing is
mutated in place, and totals, change due and state are computed from the
snapshot on demand instead of being stored next to it.

STATES:
- EMPTY: no lines and no pending order
- EDITING: cart has lines that are not (or no longer) reflected by a
  pending order, or a QR order whose code was cancelled/expired
- PENDING_PAYMENT: pending order in sync with the cart, awaiting cash
  confirmation or a QR payment
- PAID: payment confirmed; only printing is left. Printing resets the
  tab to EMPTY.

INVARIANTS:
- A line's quantity never exceeds the stock ceiling captured when it was
  added (the server re-checks on submit).
- A paid tab rejects every cart edit with StaleOrderState.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import Decimal
from enum import Enum

from ..errors import InsufficientStock, StaleOrderState, ValidationError
from ..money import ZERO, to_decimal
from ..services import pricing_service
from ..services.pricing_service import OrderTotals, SaleType

PAYMENT_CASH = "cash"
PAYMENT_QR = "qr"


class TabState(str, Enum):
    EMPTY = "EMPTY"
    EDITING = "EDITING"
    PENDING_PAYMENT = "PENDING_PAYMENT"
    PAID = "PAID"


@dataclass(frozen=True)
class CartLine:
    product_id: int
    name: str
    quantity: int
    list_price: Decimal
    cost_price: Decimal | None = None
    tax_rate: Decimal = ZERO
    unit: str | None = None
    sale_type: SaleType = SaleType.NORMAL
    override_price: Decimal | None = None
    batch_no: str | None = None
    expiry_date: datetime | None = None
    # Sellable quantity observed when the line was added
    stock_ceiling: int | None = None

    @property
    def unit_price(self) -> Decimal:
        return pricing_service.resolve_unit_price(self)

    @property
    def subtotal(self) -> Decimal:
        return pricing_service.line_subtotal(self)


@dataclass(frozen=True)
class CustomerRef:
    phone: str
    name: str | None = None
    loyalty_balance: int | None = None


@dataclass(frozen=True)
class VatInfo:
    company_name: str = ""
    tax_code: str = ""
    company_address: str = ""

    def to_dict(self) -> dict:
        return {
            "company_name": self.company_name,
            "tax_code": self.tax_code,
            "company_address": self.company_address,
        }


@dataclass(frozen=True)
class QrCode:
    reference: str | None
    payload: str | None
    image: str | None
    expires_at: datetime | None

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at <= now


@dataclass(frozen=True)
class PendingOrder:
    order_id: int
    created_at: str | None
    total: Decimal
    print_count: int = 0
    earned_points: int = 0
    payment_method: str = PAYMENT_CASH
    qr: QrCode | None = None
    paid: bool = False
    # Tab revision the server copy reflects
    revision: int = 0


@dataclass(frozen=True)
class OrderTab:
    lines: tuple[CartLine, ...] = ()
    employee_id: int | None = None
    customer: CustomerRef | None = None
    loyalty_points: int = 0
    currency_per_point: Decimal = ZERO
    is_vat_invoice: bool = False
    vat_info: VatInfo = field(default_factory=VatInfo)
    payment_method: str = PAYMENT_CASH
    cash_received: Decimal | None = None
    pending: PendingOrder | None = None
    # Copy of the last QR so the dialog can be reopened without a new code
    saved_qr: QrCode | None = None
    qr_visible: bool = False
    revision: int = 0


def empty_tab(employee_id: int | None = None) -> OrderTab:
    return OrderTab(employee_id=employee_id)


def _ensure_editable(tab: OrderTab) -> None:
    if tab.pending is not None and tab.pending.paid:
        raise StaleOrderState(tab.pending.order_id, TabState.PAID.value)


def _edited(tab: OrderTab, **changes) -> OrderTab:
    """Apply a cart/customer/payment edit and bump the revision."""
    _ensure_editable(tab)
    return replace(tab, revision=tab.revision + 1, **changes)


def _line_index(tab: OrderTab, index: int) -> int:
    if not 0 <= index < len(tab.lines):
        raise ValidationError({"line": f"No cart line at position {index}"})
    return index


def _check_ceiling(line: CartLine, quantity: int) -> None:
    if line.stock_ceiling is not None and quantity > line.stock_ceiling:
        raise InsufficientStock(
            line.product_id,
            quantity,
            line.stock_ceiling,
            message=f"Only {line.stock_ceiling} {line.unit or 'units'} of {line.name} available",
        )


def _replace_line(tab: OrderTab, index: int, line: CartLine) -> OrderTab:
    lines = tab.lines[:index] + (line,) + tab.lines[index + 1:]
    return _edited(tab, lines=lines)


def add_line(tab: OrderTab, line: CartLine) -> OrderTab:
    """
    Add a line, or merge into an existing line for the same product,
    sale type, override and batch.
    """
    if line.quantity < 1:
        raise ValidationError({"quantity": "Quantity must be at least 1"})
    for index, existing in enumerate(tab.lines):
        if (
            existing.product_id == line.product_id
            and existing.sale_type == line.sale_type
            and existing.override_price == line.override_price
            and existing.batch_no == line.batch_no
        ):
            quantity = existing.quantity + line.quantity
            ceiling = line.stock_ceiling if line.stock_ceiling is not None else existing.stock_ceiling
            merged = replace(existing, quantity=quantity, stock_ceiling=ceiling)
            _check_ceiling(merged, quantity)
            return _replace_line(tab, index, merged)
    _check_ceiling(line, line.quantity)
    return _edited(tab, lines=tab.lines + (line,))


def update_quantity(tab: OrderTab, index: int, quantity: int) -> OrderTab:
    index = _line_index(tab, index)
    if quantity < 1:
        raise ValidationError({f"lines[{index}].quantity": "Quantity must be at least 1"})
    line = tab.lines[index]
    _check_ceiling(line, quantity)
    return _replace_line(tab, index, replace(line, quantity=quantity))


def remove_line(tab: OrderTab, index: int) -> OrderTab:
    index = _line_index(tab, index)
    return _edited(tab, lines=tab.lines[:index] + tab.lines[index + 1:])


def set_sale_type(tab: OrderTab, index: int, sale_type) -> OrderTab:
    index = _line_index(tab, index)
    try:
        parsed = SaleType.parse(sale_type)
    except ValueError:
        raise ValidationError({f"lines[{index}].sale_type": f"Unknown sale type {sale_type!r}"})
    return _replace_line(tab, index, replace(tab.lines[index], sale_type=parsed))


def set_override_price(tab: OrderTab, index: int, price) -> OrderTab:
    index = _line_index(tab, index)
    value = None if price is None else to_decimal(price)
    if value is not None and value < 0:
        raise ValidationError({f"lines[{index}].override_price": "Price cannot be negative"})
    return _replace_line(tab, index, replace(tab.lines[index], override_price=value))


def set_customer(tab: OrderTab, customer: CustomerRef | None) -> OrderTab:
    if customer is not None and not (customer.phone or "").strip():
        raise ValidationError({"customer.phone": "Customer phone is required"})
    # Points belong to the previous customer
    return _edited(tab, customer=customer, loyalty_points=0 if customer is None else tab.loyalty_points)


def set_loyalty_points(tab: OrderTab, points: int, currency_per_point=None) -> OrderTab:
    if points < 0:
        raise ValidationError({"loyalty_points": "Points cannot be negative"})
    if points and tab.customer is None:
        raise ValidationError({"loyalty_points": "Loyalty points need a customer"})
    balance = tab.customer.loyalty_balance if tab.customer else None
    if balance is not None and points > balance:
        raise ValidationError({"loyalty_points": f"Customer only has {balance} points"})
    rate = tab.currency_per_point if currency_per_point is None else to_decimal(currency_per_point)
    return _edited(tab, loyalty_points=points, currency_per_point=rate)


def set_vat_invoice(tab: OrderTab, enabled: bool, vat_info: VatInfo | None = None) -> OrderTab:
    return _edited(tab, is_vat_invoice=bool(enabled), vat_info=vat_info or VatInfo())


def set_payment_method(tab: OrderTab, method: str) -> OrderTab:
    method = (method or "").strip().lower()
    if method not in (PAYMENT_CASH, PAYMENT_QR):
        raise ValidationError({"payment_method": "payment_method must be 'cash' or 'qr'"})
    return _edited(tab, payment_method=method, qr_visible=False)


def set_cash_received(tab: OrderTab, amount) -> OrderTab:
    _ensure_editable(tab)
    value = None if amount is None else to_decimal(amount)
    if value is not None and value < 0:
        raise ValidationError({"cash_received": "Cash received cannot be negative"})
    # Cash is sent with the confirmation, so this does not make the cart dirty
    return replace(tab, cash_received=value)


def totals(tab: OrderTab) -> OrderTotals:
    discount = pricing_service.loyalty_discount(tab.loyalty_points, tab.currency_per_point)
    return pricing_service.order_totals(tab.lines, discount)


def change_due(tab: OrderTab) -> Decimal | None:
    return pricing_service.change_due(tab.cash_received, totals(tab).grand_total)


def is_dirty(tab: OrderTab) -> bool:
    """The cart changed after the pending order was last submitted."""
    return tab.pending is not None and tab.pending.revision != tab.revision


def state(tab: OrderTab) -> TabState:
    pending = tab.pending
    if pending is None:
        return TabState.EDITING if tab.lines else TabState.EMPTY
    if pending.paid:
        return TabState.PAID
    if is_dirty(tab):
        return TabState.EDITING
    if pending.payment_method == PAYMENT_QR and pending.qr is None:
        return TabState.EDITING
    return TabState.PENDING_PAYMENT


def order_request(tab: OrderTab, *, store_id: int, employee_id: int | None = None) -> dict:
    """Submission body for the order API."""
    body = {
        "store_id": store_id,
        "employee_id": employee_id if employee_id is not None else tab.employee_id,
        "items": [
            {
                "product_id": line.product_id,
                "quantity": line.quantity,
                "sale_type": line.sale_type.value,
                "custom_price": str(line.override_price) if line.override_price is not None else None,
                "batch_no": line.batch_no,
            }
            for line in tab.lines
        ],
        "payment_method": tab.payment_method,
        "is_vat_invoice": tab.is_vat_invoice,
        "loyalty_points": tab.loyalty_points,
    }
    if tab.payment_method == PAYMENT_CASH and tab.cash_received is not None:
        body["cash_received"] = str(tab.cash_received)
    if tab.is_vat_invoice:
        body["vat_info"] = tab.vat_info.to_dict()
    if tab.customer is not None:
        body["customer"] = {"phone": tab.customer.phone, "name": tab.customer.name}
    if tab.pending is not None:
        body["order_id"] = tab.pending.order_id
    return body


def with_pending(tab: OrderTab, pending: PendingOrder) -> OrderTab:
    """Record the server's copy of the order; a QR code also becomes the saved copy."""
    changes = {"pending": pending}
    if pending.qr is not None:
        changes["saved_qr"] = pending.qr
        changes["qr_visible"] = True
    elif pending.payment_method != PAYMENT_QR or pending.paid:
        changes["saved_qr"] = None
        changes["qr_visible"] = False
    return replace(tab, **changes)


def without_qr(tab: OrderTab) -> OrderTab:
    """Drop the active and saved QR codes (cancelled or expired)."""
    pending = replace(tab.pending, qr=None) if tab.pending is not None else None
    return replace(tab, pending=pending, saved_qr=None, qr_visible=False)


def mark_paid(tab: OrderTab) -> OrderTab:
    if tab.pending is None:
        return tab
    return replace(
        tab,
        pending=replace(tab.pending, paid=True, qr=None),
        saved_qr=None,
        qr_visible=False,
    )


def reset(tab: OrderTab) -> OrderTab:
    """Printed: back to an empty tab for the same seller."""
    return empty_tab(tab.employee_id)
