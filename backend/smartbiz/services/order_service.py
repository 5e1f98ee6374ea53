# Overview: Server side of the POS order lifecycle: submit, pay (cash or QR), print and finalize.

"""
Order Service

LIFECYCLE:
1. PENDING: created by submit_order; every later submit with the same
   order_id replaces the lines in place (same id, never a duplicate)
2. PAID: confirm_cash_payment, a QR status poll that sees the payment,
   the provider webhook, or the confirm-and-print fallback
3. printed: print_order; the first print finalizes the sale
4. REFUNDED: refund_order takes a paid order back

INVARIANTS:
- A PAID order rejects every mutation except printing (StaleOrderState).
- Stock is re-validated against current batches on every submit; the
  terminal's cached ceiling is never trusted.
- Stock is debited once, at the first print, FIFO by expiry. A debit that
  loses a race with another terminal surfaces as InsufficientStock.
- Redeemed loyalty points leave the customer's balance when the order is
  paid; earned points, total spent and order count are credited at the
  first print.
- A QR code carries an absolute expiry. After it elapses the provider is
  asked once more; a payment it reports marks the order PAID, otherwise
  the code is cleared and the order needs a fresh submit for a new one.
- A refund credits stock back to exactly the batches the sale debited.
"""

from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal

from flask import current_app

from ..errors import NotFoundError, PaymentGatewayError, StaleOrderState, ValidationError
from ..extensions import db
from ..models import Batch, Customer, LoyaltySetting, Order, OrderItem, OrderItemBatch
from ..money import amount_str, to_decimal
from ..time_utils import to_utc_z, utcnow
from ..validation import FieldErrors, clean_text, coerce_amount, coerce_int
from . import pricing_service, stock_service
from .concurrency import lock_for_update, run_in_transaction
from .payment_gateway import (
    STATUS_CANCELLED,
    STATUS_EXPIRED,
    STATUS_PAID,
    STATUS_PENDING,
    get_payment_provider,
    qr_expiry,
    verify_signature,
)
from .pricing_service import SaleType

# Order status
STATUS_ORDER_PENDING = "PENDING"
STATUS_ORDER_PAID = "PAID"
STATUS_ORDER_REFUNDED = "REFUNDED"

PAYMENT_CASH = "cash"
PAYMENT_QR = "qr"
PAYMENT_METHODS = {PAYMENT_CASH, PAYMENT_QR}


@dataclass
class OrderLineRequest:
    product_id: int
    quantity: int
    sale_type: SaleType = SaleType.NORMAL
    custom_price: Decimal | None = None
    batch_no: str | None = None


@dataclass
class OrderRequest:
    store_id: int
    items: list[OrderLineRequest]
    payment_method: str = PAYMENT_CASH
    employee_id: int | None = None
    cash_received: Decimal | None = None
    is_vat_invoice: bool = False
    vat_info: dict = field(default_factory=dict)
    customer_phone: str | None = None
    customer_name: str | None = None
    loyalty_points: int = 0
    order_id: int | None = None


def parse_order_request(data: dict) -> OrderRequest:
    """
    Validate an order submission body.

    Every failing field is reported at once, keyed like the request
    ("items[1].sale_type", "vat_info.tax_code").
    """
    if not isinstance(data, dict):
        raise ValidationError({"_": "Request body must be a JSON object"})

    errors = FieldErrors()

    store_id = coerce_int(data.get("store_id"), "store_id", errors, minimum=1)
    if data.get("store_id") is None:
        errors.add("store_id", "store_id is required")
    employee_id = coerce_int(data.get("employee_id"), "employee_id", errors, minimum=1)
    order_id = coerce_int(data.get("order_id"), "order_id", errors, minimum=1)

    items: list[OrderLineRequest] = []
    raw_items = data.get("items")
    if not isinstance(raw_items, list) or not raw_items:
        errors.add("items", "Cart is empty")
        raw_items = []
    for i, raw in enumerate(raw_items):
        prefix = f"items[{i}]"
        if not isinstance(raw, dict):
            errors.add(prefix, "Each item must be an object")
            continue
        product_id = coerce_int(raw.get("product_id"), f"{prefix}.product_id", errors, minimum=1)
        if raw.get("product_id") is None:
            errors.add(f"{prefix}.product_id", "product_id is required")
        quantity = coerce_int(raw.get("quantity"), f"{prefix}.quantity", errors, minimum=1)
        if raw.get("quantity") is None:
            errors.add(f"{prefix}.quantity", "quantity is required")
        try:
            sale_type = SaleType.parse(raw.get("sale_type"))
        except ValueError:
            errors.add(
                f"{prefix}.sale_type",
                f"Unknown sale type {raw.get('sale_type')!r}; expected one of "
                + ", ".join(t.value for t in SaleType),
            )
            sale_type = None
        custom_price = coerce_amount(raw.get("custom_price"), f"{prefix}.custom_price", errors)
        if product_id is not None and quantity is not None and sale_type is not None:
            items.append(
                OrderLineRequest(
                    product_id=product_id,
                    quantity=quantity,
                    sale_type=sale_type,
                    custom_price=custom_price,
                    batch_no=clean_text(raw.get("batch_no"), 64) or None,
                )
            )

    payment_method = clean_text(data.get("payment_method") or PAYMENT_CASH).lower()
    if payment_method not in PAYMENT_METHODS:
        errors.add("payment_method", "payment_method must be 'cash' or 'qr'")

    cash_received = coerce_amount(data.get("cash_received"), "cash_received", errors)

    is_vat_invoice = bool(data.get("is_vat_invoice"))
    vat_info = data.get("vat_info") or {}
    if not isinstance(vat_info, dict):
        errors.add("vat_info", "vat_info must be an object")
        vat_info = {}
    vat_clean = {
        "company_name": clean_text(vat_info.get("company_name"), 255),
        "tax_code": clean_text(vat_info.get("tax_code"), 64),
        "company_address": clean_text(vat_info.get("company_address"), 512),
    }
    if is_vat_invoice:
        if not vat_clean["company_name"]:
            errors.add("vat_info.company_name", "Company name is required for a VAT invoice")
        if not vat_clean["tax_code"]:
            errors.add("vat_info.tax_code", "Tax code is required for a VAT invoice")

    customer = data.get("customer") or {}
    if not isinstance(customer, dict):
        errors.add("customer", "customer must be an object")
        customer = {}
    customer_phone = clean_text(customer.get("phone"), 32) or None
    customer_name = clean_text(customer.get("name"), 255) or None
    if customer_name and not customer_phone:
        errors.add("customer.phone", "Customer phone is required")

    loyalty_points = coerce_int(data.get("loyalty_points"), "loyalty_points", errors, minimum=0) or 0
    if loyalty_points and not customer_phone:
        errors.add("loyalty_points", "Loyalty points need a customer")

    errors.raise_if_any()

    return OrderRequest(
        store_id=store_id,
        items=items,
        payment_method=payment_method,
        employee_id=employee_id,
        cash_received=cash_received,
        is_vat_invoice=is_vat_invoice,
        vat_info=vat_clean if is_vat_invoice else {},
        customer_phone=customer_phone,
        customer_name=customer_name,
        loyalty_points=loyalty_points,
        order_id=order_id,
    )


def _get_order(order_id: int, *, lock: bool = False) -> Order:
    query = db.session.query(Order).filter_by(id=order_id)
    if lock:
        query = lock_for_update(query)
    order = query.first()
    if order is None:
        raise NotFoundError("Order", order_id)
    return order


def get_order(order_id: int) -> Order:
    return _get_order(order_id)


def _ensure_mutable(order: Order) -> None:
    if order.is_paid or order.is_refunded:
        raise StaleOrderState(order.id, order.display_status)


def _find_or_create_customer(store_id: int, phone: str | None, name: str | None) -> Customer | None:
    if not phone:
        return None
    customer = db.session.query(Customer).filter_by(store_id=store_id, phone=phone).first()
    if customer is None:
        customer = Customer(store_id=store_id, phone=phone, name=name or phone)
        db.session.add(customer)
        db.session.flush()
    elif name and customer.name != name:
        customer.name = name
    return customer


def _loyalty_setting(store_id: int) -> LoyaltySetting | None:
    return db.session.query(LoyaltySetting).filter_by(store_id=store_id).first()


def _build_items(request: OrderRequest, now: datetime) -> list[OrderItem]:
    """Snapshot price inputs and re-check stock for every product in the cart."""
    products = OrderedDict()
    demand: dict[int, int] = {}
    for line in request.items:
        if line.product_id not in products:
            products[line.product_id] = stock_service.get_product_for_store(
                request.store_id, line.product_id, require_active=True
            )
        demand[line.product_id] = demand.get(line.product_id, 0) + line.quantity

    for product_id, quantity in demand.items():
        stock_service.ensure_sellable(products[product_id], quantity, now)

    items = []
    for line in request.items:
        product = products[line.product_id]
        item = OrderItem(
            product_id=product.id,
            product_name=product.name,
            sku=product.sku,
            unit=product.unit,
            quantity=line.quantity,
            sale_type=line.sale_type.value,
            custom_price=line.custom_price,
            list_price=product.price,
            cost_price=product.cost_price,
            tax_rate=product.tax_rate,
            batch_no=line.batch_no,
        )
        item.unit_price = pricing_service.resolve_unit_price(item)
        item.subtotal = pricing_service.line_subtotal(item)
        item.tax_amount = pricing_service.line_tax(item)
        items.append(item)
    return items


def _clear_qr(order: Order) -> None:
    order.qr_payload = None
    order.qr_image = None
    order.qr_amount = None
    order.qr_expires_at = None


def _qr_active(order: Order, now: datetime) -> bool:
    return (
        order.payment_status == STATUS_PENDING
        and order.qr_expires_at is not None
        and order.qr_expires_at > now
        and order.qr_payload is not None
    )


def _cancel_at_provider(order: Order) -> None:
    if not order.payment_reference:
        return
    try:
        get_payment_provider().cancel_payment(order.payment_reference)
    except PaymentGatewayError as exc:
        # The local order is authoritative; a stale provider code simply expires
        current_app.logger.warning(
            "Could not cancel payment %s for order %s: %s", order.payment_reference, order.id, exc.message
        )


def _issue_qr(order: Order, now: datetime) -> None:
    payment = get_payment_provider().create_payment(
        order_id=order.id,
        amount=to_decimal(order.total),
        expires_at=qr_expiry(now),
    )
    order.payment_reference = payment.reference
    order.qr_payload = payment.payload
    order.qr_image = payment.image or payment.checkout_url
    order.qr_amount = order.total
    order.qr_expires_at = payment.expires_at
    order.payment_status = STATUS_PENDING


def submit_order(data: dict | OrderRequest, *, now: datetime | None = None) -> Order:
    """
    Create a pending order, or update the pending order named by order_id in place.

    Raises ValidationError, InsufficientStock / ExpiredBatchOnly,
    StaleOrderState (order already paid), NotFoundError, PaymentGatewayError.
    """
    request = data if isinstance(data, OrderRequest) else parse_order_request(data)
    now = now or utcnow()

    def _op() -> Order:
        if request.order_id:
            order = _get_order(request.order_id, lock=True)
            if order.store_id != request.store_id:
                raise NotFoundError("Order", request.order_id)
            _ensure_mutable(order)
            created = False
        else:
            order = Order(store_id=request.store_id, status=STATUS_ORDER_PENDING)
            db.session.add(order)
            created = True

        items = _build_items(request, now)

        customer = _find_or_create_customer(request.store_id, request.customer_phone, request.customer_name)
        setting = _loyalty_setting(request.store_id)
        points = 0
        discount = Decimal("0")
        if customer is not None and request.loyalty_points and setting is not None and setting.is_active:
            points = min(request.loyalty_points, customer.loyalty_points or 0)
            discount = pricing_service.loyalty_discount(points, setting.currency_per_point)

        totals = pricing_service.order_totals(items, discount)

        if request.payment_method == PAYMENT_CASH and request.cash_received is not None:
            if request.cash_received < totals.grand_total:
                raise ValidationError(
                    {"cash_received": f"Not enough cash: received {amount_str(request.cash_received)}, "
                                      f"total is {amount_str(totals.grand_total)}"}
                )

        order.items[:] = items
        order.employee_id = request.employee_id
        order.customer = customer
        order.customer_name = customer.name if customer else None
        order.customer_phone = customer.phone if customer else None
        order.loyalty_points_used = points
        order.subtotal = totals.subtotal
        order.discount = totals.discount
        order.tax_total = totals.tax_total
        order.total = totals.grand_total
        order.earned_points = pricing_service.earned_points(totals.grand_total, setting)
        order.is_vat_invoice = request.is_vat_invoice
        order.vat_company_name = request.vat_info.get("company_name") or None
        order.vat_tax_code = request.vat_info.get("tax_code") or None
        order.vat_company_address = request.vat_info.get("company_address") or None

        previous_method = order.payment_method
        order.payment_method = request.payment_method
        if request.payment_method == PAYMENT_CASH:
            order.cash_received = request.cash_received
            order.change_amount = pricing_service.change_due(request.cash_received, totals.grand_total)
            if previous_method == PAYMENT_QR and not created:
                _cancel_at_provider(order)
                _clear_qr(order)
            order.payment_status = STATUS_PENDING
        else:
            order.cash_received = None
            order.change_amount = None
            db.session.flush()
            if _qr_active(order, now) and to_decimal(order.qr_amount) == totals.grand_total:
                pass
            else:
                if _qr_active(order, now):
                    _cancel_at_provider(order)
                _issue_qr(order, now)

        db.session.flush()
        current_app.logger.info(
            "Order %s %s: total=%s method=%s",
            order.id,
            "created" if created else "updated",
            amount_str(order.total),
            order.payment_method,
        )
        return order

    return run_in_transaction(_op)


def _redeem_points(order: Order) -> None:
    if not order.customer or not order.loyalty_points_used:
        return
    balance = order.customer.loyalty_points or 0
    redeemed = min(order.loyalty_points_used, balance)
    order.customer.loyalty_points = balance - redeemed


def _mark_paid(order: Order, now: datetime) -> None:
    order.status = STATUS_ORDER_PAID
    order.payment_status = STATUS_PAID
    order.paid_at = now
    if order.payment_method == PAYMENT_QR:
        order.qr_payload = None
        order.qr_image = None
    _redeem_points(order)
    current_app.logger.info("Order %s paid (%s)", order.id, order.payment_method)


def confirm_cash_payment(order_id: int, cash_received=None, *, now: datetime | None = None) -> Order:
    """Pending cash order -> PAID. Repeating the call on a paid order returns it unchanged."""
    now = now or utcnow()
    errors = FieldErrors()
    cash = coerce_amount(cash_received, "cash_received", errors)
    errors.raise_if_any()

    def _op() -> Order:
        order = _get_order(order_id, lock=True)
        if order.payment_method != PAYMENT_CASH:
            raise ValidationError({"payment_method": "Order is not a cash order"})
        if order.is_refunded:
            raise StaleOrderState(order.id, order.display_status)
        if order.is_paid:
            return order

        received = cash if cash is not None else order.cash_received
        if received is None:
            raise ValidationError({"cash_received": "cash_received is required"})
        change = pricing_service.change_due(received, order.total)
        if change is None:
            raise ValidationError(
                {"cash_received": f"Not enough cash: received {amount_str(received)}, "
                                  f"total is {amount_str(order.total)}"}
            )
        order.cash_received = received
        order.change_amount = change
        _mark_paid(order, now)
        return order

    return run_in_transaction(_op)


def _payment_status_dict(order: Order) -> dict:
    return {
        "order_id": order.id,
        "status": order.payment_status,
        "paid": order.is_paid,
        "payment_reference": order.payment_reference,
        "qr_expires_at": to_utc_z(order.qr_expires_at) if order.qr_expires_at else None,
    }


def _expire_qr(order: Order) -> None:
    _clear_qr(order)
    order.payment_status = STATUS_EXPIRED
    current_app.logger.info("QR for order %s expired", order.id)


def _settle_elapsed_qr(order: Order, now: datetime) -> None:
    """The window has elapsed: a payment made inside it still wins over expiry."""
    if order.payment_reference and get_payment_provider().get_status(order.payment_reference) == STATUS_PAID:
        current_app.logger.info("Order %s was paid before its QR expired", order.id)
        _mark_paid(order, now)
        return
    _expire_qr(order)


def get_payment_status(order_id: int, *, now: datetime | None = None) -> dict:
    """
    PENDING | PAID | EXPIRED | CANCELLED for an order's payment.

    A pending QR is checked with the provider. Once its window has elapsed
    the provider is asked one last time; unless it reports the payment, the
    code is cleared and reported as EXPIRED.
    """
    now = now or utcnow()

    def _op() -> dict:
        order = _get_order(order_id, lock=True)
        if order.is_paid or order.payment_method != PAYMENT_QR or order.payment_status != STATUS_PENDING:
            return _payment_status_dict(order)
        if order.qr_expires_at is None:
            return _payment_status_dict(order)

        if order.qr_expires_at <= now:
            _settle_elapsed_qr(order, now)
            return _payment_status_dict(order)

        provider_status = get_payment_provider().get_status(order.payment_reference)
        if provider_status == STATUS_PAID:
            _mark_paid(order, now)
        elif provider_status in (STATUS_EXPIRED, STATUS_CANCELLED):
            _clear_qr(order)
            order.payment_status = provider_status
        return _payment_status_dict(order)

    return run_in_transaction(_op)


def mark_paid_by_reference(reference: str, amount=None, *, now: datetime | None = None) -> Order:
    """Provider confirmation (webhook). Idempotent: a paid order is returned as is."""
    now = now or utcnow()
    reference = clean_text(reference)
    if not reference:
        raise ValidationError({"reference": "Payment reference is required"})

    def _op() -> Order:
        order = lock_for_update(db.session.query(Order).filter_by(payment_reference=reference)).first()
        if order is None:
            raise NotFoundError("Payment", reference)
        if order.is_paid or order.is_refunded:
            return order
        if amount is not None and to_decimal(amount) < to_decimal(order.total):
            raise ValidationError(
                {"amount": f"Paid amount {amount_str(to_decimal(amount))} is less than the order "
                           f"total {amount_str(order.total)}"}
            )
        _mark_paid(order, now)
        return order

    return run_in_transaction(_op)


def apply_payment_webhook(payload: dict, *, now: datetime | None = None) -> Order:
    """
    Verify and apply a provider webhook: {"code": "00", "data": {"orderCode", "amount", ...}, "signature"}.

    The signature is HMAC-SHA256 over the sorted data fields, keyed by
    PAYMENT_WEBHOOK_SECRET; an empty secret skips the check.
    """
    if not isinstance(payload, dict) or not isinstance(payload.get("data"), dict):
        raise ValidationError({"data": "Webhook payload must carry a data object"})
    data = payload["data"]

    secret = current_app.config.get("PAYMENT_WEBHOOK_SECRET") or ""
    if secret and not verify_signature(data, payload.get("signature"), secret):
        raise ValidationError({"signature": "Invalid webhook signature"})

    if str(payload.get("code", "00")) != "00":
        raise ValidationError({"code": f"Payment not successful: {payload.get('desc') or payload.get('code')}"})

    reference = data.get("orderCode")
    if reference is None:
        raise ValidationError({"data.orderCode": "orderCode is required"})
    return mark_paid_by_reference(str(reference), data.get("amount"), now=now)


def cancel_qr_payment(order_id: int) -> Order:
    """Clear the active QR; the order stays pending and can be re-submitted."""
    def _op() -> Order:
        order = _get_order(order_id, lock=True)
        _ensure_mutable(order)
        if order.payment_method != PAYMENT_QR:
            raise ValidationError({"payment_method": "Order is not a QR order"})
        _cancel_at_provider(order)
        _clear_qr(order)
        order.payment_status = STATUS_CANCELLED
        current_app.logger.info("QR for order %s cancelled", order.id)
        return order

    return run_in_transaction(_op)


def _finalize(order: Order, now: datetime) -> None:
    """
    First print: debit stock FIFO and credit the customer's aggregates.

    The order is already paid, so a batch that expired between the stock
    check at submit and this print is still debited.
    """
    for item in order.items:
        product = stock_service.get_product_for_store(order.store_id, item.product_id, lock=True)
        if product.batches:
            plan = stock_service.select_debit_plan(
                product, item.quantity, now=now, preferred_batch_no=item.batch_no, allow_expired=True
            )
            for planned in plan:
                item.allocations.append(
                    OrderItemBatch(
                        batch_id=planned.batch.id,
                        batch_no=planned.batch.batch_no,
                        expiry_date=planned.batch.expiry_date,
                        quantity=planned.quantity,
                        cost_price=planned.batch.cost_price,
                    )
                )
            stock_service.apply_debit_plan(product, plan)
        else:
            stock_service.debit_flat_counter(product, item.quantity)

    if order.customer is not None and not order.loyalty_settled:
        customer = order.customer
        customer.loyalty_points = (customer.loyalty_points or 0) + (order.earned_points or 0)
        customer.total_spent = to_decimal(customer.total_spent) + to_decimal(order.total)
        customer.total_orders = (customer.total_orders or 0) + 1
        order.loyalty_settled = True

    order.finalized_at = now


def print_summary(order: Order) -> dict:
    return {
        "order_id": order.id,
        "print_count": order.print_count,
        "duplicate": order.print_count > 1,
        "printed_at": to_utc_z(order.print_date) if order.print_date else None,
        "currency": current_app.config.get("CURRENCY", "VND"),
        "payment_method": order.payment_method,
        "customer": {"name": order.customer_name, "phone": order.customer_phone} if order.customer_phone else None,
        "vat_info": {
            "company_name": order.vat_company_name,
            "tax_code": order.vat_tax_code,
            "company_address": order.vat_company_address,
        } if order.is_vat_invoice else None,
        "lines": [
            {
                "name": item.product_name,
                "quantity": item.quantity,
                "unit": item.unit,
                "unit_price": amount_str(item.unit_price),
                "subtotal": amount_str(item.subtotal),
            }
            for item in order.items
        ],
        "totals": {
            "subtotal": amount_str(order.subtotal),
            "discount": amount_str(order.discount),
            "tax_total": amount_str(order.tax_total),
            "grand_total": amount_str(order.total),
        },
        "cash_received": amount_str(order.cash_received),
        "change_amount": amount_str(order.change_amount),
        "earned_points": order.earned_points,
    }


def print_order(order_id: int, *, now: datetime | None = None) -> dict:
    """
    Print (or reprint) a receipt.

    PAID orders print directly. A pending QR order is confirmed and printed
    in the same transaction. A cash order must be confirmed first.
    """
    now = now or utcnow()

    def _op() -> dict:
        order = _get_order(order_id, lock=True)
        if order.is_refunded:
            raise StaleOrderState(order.id, order.display_status, f"Order {order.id} was refunded and cannot be printed")
        if not order.is_paid:
            if order.payment_method == PAYMENT_CASH:
                raise ValidationError({"status": "Confirm the cash payment before printing"})
            _mark_paid(order, now)

        if order.finalized_at is None:
            _finalize(order, now)

        order.print_count = (order.print_count or 0) + 1
        order.print_date = now
        db.session.flush()
        current_app.logger.info("Order %s printed (copy %s)", order.id, order.print_count)
        return print_summary(order)

    return run_in_transaction(_op)


def _return_stock(order: Order) -> None:
    """Credit a finalized sale back to the batches it was debited from."""
    for item in order.items:
        product = stock_service.get_product_for_store(order.store_id, item.product_id, lock=True)
        if not item.allocations:
            # Sold from the flat counter
            stock_service.move_exact_batch(product, None, item.quantity)
            continue
        for allocation in item.allocations:
            batch = db.session.get(Batch, allocation.batch_id) if allocation.batch_id else None
            if batch is not None and batch.product_id == product.id:
                stock_service.move_exact_batch(product, batch, allocation.quantity)
            else:
                stock_service.credit_batch(
                    product,
                    quantity=allocation.quantity,
                    batch_no=allocation.batch_no,
                    expiry_date=allocation.expiry_date,
                    warehouse_id=product.default_warehouse_id,
                    cost_price=allocation.cost_price,
                )


def _reverse_customer(order: Order) -> None:
    customer = order.customer
    if customer is None:
        return
    points = customer.loyalty_points or 0
    if order.loyalty_settled:
        points = max(0, points - (order.earned_points or 0))
        customer.total_spent = max(Decimal("0"), to_decimal(customer.total_spent) - to_decimal(order.total))
        customer.total_orders = max(0, (customer.total_orders or 0) - 1)
    customer.loyalty_points = points + (order.loyalty_points_used or 0)


def refund_order(order_id: int, employee_id=None, reason=None, *, now: datetime | None = None) -> Order:
    """
    Take a paid order back.

    Stock the first print debited returns to the recorded batches, the
    customer's points and totals are reversed and the order becomes REFUNDED.
    A paid order that was never printed moved no stock, so only its redeemed
    points come back. Raises StaleOrderState for a second refund.
    """
    now = now or utcnow()
    errors = FieldErrors()
    refunded_by = coerce_int(employee_id, "employee_id", errors, minimum=1)
    reason = clean_text(reason, 512)
    if not reason:
        errors.add("reason", "Refund reason is required")
    errors.raise_if_any()

    def _op() -> Order:
        order = _get_order(order_id, lock=True)
        if order.is_refunded:
            raise StaleOrderState(order.id, order.status, f"Order {order.id} was already refunded")
        if not order.is_paid:
            raise ValidationError({"status": "Only paid orders can be refunded"})

        if order.finalized_at is not None:
            _return_stock(order)
        _reverse_customer(order)

        order.status = STATUS_ORDER_REFUNDED
        order.refunded_at = now
        order.refunded_by = refunded_by
        order.refund_reason = reason
        db.session.flush()
        current_app.logger.info("Order %s refunded by %s: %s", order.id, refunded_by or "owner", reason)
        return order

    return run_in_transaction(_op)


def list_paid_orders(store_id: int, *, limit: int = 100, offset: int = 0) -> list[Order]:
    limit = max(1, min(limit, 500))
    offset = max(0, offset)
    return (
        db.session.query(Order)
        .filter(Order.store_id == store_id, Order.status == STATUS_ORDER_PAID)
        .order_by(Order.paid_at.desc(), Order.id.desc())
        .offset(offset)
        .limit(limit)
        .all()
    )


def order_summary(order_id: int) -> dict:
    return _get_order(order_id).to_dict()


def expire_stale_qr_payments(*, now: datetime | None = None) -> int:
    """
    Clear every pending QR whose window has elapsed. Returns how many were expired.

    Orders the provider reports as paid are marked PAID instead. An order the
    provider cannot answer for stays pending until the next sweep.
    """
    now = now or utcnow()

    def _op() -> int:
        orders = (
            db.session.query(Order)
            .filter(
                Order.status == STATUS_ORDER_PENDING,
                Order.payment_method == PAYMENT_QR,
                Order.payment_status == STATUS_PENDING,
                Order.qr_expires_at.isnot(None),
                Order.qr_expires_at <= now,
            )
            .all()
        )
        expired = 0
        for order in orders:
            try:
                _settle_elapsed_qr(order, now)
            except PaymentGatewayError as exc:
                current_app.logger.warning(
                    "Could not check payment %s for order %s: %s", order.payment_reference, order.id, exc.message
                )
                continue
            if order.payment_status == STATUS_EXPIRED:
                expired += 1
        return expired

    return run_in_transaction(_op)
