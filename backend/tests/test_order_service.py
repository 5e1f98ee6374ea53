"""Order lifecycle: submit, cash and QR payment, print and finalize."""

from datetime import timedelta
from decimal import Decimal

import pytest

from smartbiz.errors import (
    ExpiredBatchOnly,
    InsufficientStock,
    NotFoundError,
    StaleOrderState,
    ValidationError,
)
from smartbiz.models import Customer, Order
from smartbiz.services import order_service
from smartbiz.services.payment_gateway import sign_fields
from smartbiz.time_utils import utcnow

from conftest import WEBHOOK_SECRET, batch_quantities, order_body, stock_counter


@pytest.fixture
def product(make_product):
    return make_product("Milk", batches=[("B1", 30, 10)])


# =============================================================================
# Submit
# =============================================================================

def test_submit_computes_totals(store, product):
    order = order_service.submit_order(order_body(store, (product, 3), cash_received="350000"))

    assert order.id is not None
    assert order.status == "PENDING"
    assert order.subtotal == Decimal("300000")
    assert order.tax_total == Decimal("30000")
    assert order.total == Decimal("330000")
    assert order.change_amount == Decimal("20000")
    assert order.items[0].unit_price == Decimal("100000")


def test_exact_cash_gives_zero_change(store, product):
    order = order_service.submit_order(order_body(store, (product, 3), cash_received="330000"))
    assert order.change_amount == 0


def test_short_cash_is_rejected_at_submit(db_session, store, product):
    with pytest.raises(ValidationError) as exc:
        order_service.submit_order(order_body(store, (product, 3), cash_received="300000"))
    assert "cash_received" in exc.value.fields
    assert "Not enough cash" in exc.value.fields["cash_received"]
    assert db_session.query(Order).count() == 0


def test_resubmit_updates_the_same_order(db_session, store, product):
    order = order_service.submit_order(order_body(store, (product, 3)))
    updated = order_service.submit_order(order_body(store, (product, 5), order_id=order.id))

    assert updated.id == order.id
    assert db_session.query(Order).count() == 1
    assert [item.quantity for item in updated.items] == [5]
    assert updated.total == Decimal("550000")


def test_resubmit_of_paid_order_is_stale(store, product):
    order = order_service.submit_order(order_body(store, (product, 1), cash_received="110000"))
    order_service.confirm_cash_payment(order.id)

    with pytest.raises(StaleOrderState) as exc:
        order_service.submit_order(order_body(store, (product, 2), order_id=order.id))
    assert exc.value.details["status"] == "PAID"


def test_resubmit_for_another_store_is_not_found(db_session, store, product):
    order = order_service.submit_order(order_body(store, (product, 1)))
    body = order_body(store, (product, 1), order_id=order.id)
    body["store_id"] = store.id + 100
    with pytest.raises(NotFoundError):
        order_service.submit_order(body)


def test_submit_rechecks_stock(db_session, store, product):
    with pytest.raises(InsufficientStock) as exc:
        order_service.submit_order(order_body(store, (product, 11)))
    assert exc.value.available == 10
    assert db_session.query(Order).count() == 0


def test_submit_adds_up_lines_for_the_same_product(store, product):
    with pytest.raises(InsufficientStock):
        order_service.submit_order(order_body(store, (product, 6), (product, 5, "VIP")))


def test_submit_of_expired_only_product(store, make_product):
    stale = make_product("Yogurt", batches=[("OLD", -2, 8)])
    with pytest.raises(ExpiredBatchOnly) as exc:
        order_service.submit_order(order_body(store, (stale, 1)))
    assert exc.value.details["expired_quantity"] == 8


def test_inactive_product_is_rejected(store, make_product):
    retired = make_product("Retired", stock_quantity=5, is_active=False)
    with pytest.raises(ValidationError):
        order_service.submit_order(order_body(store, (retired, 1)))


def test_parse_reports_every_field(store, product):
    body = order_body(store, (product, 0, "WHOLESALE"), payment_method="card", is_vat_invoice=True)
    with pytest.raises(ValidationError) as exc:
        order_service.parse_order_request(body)

    fields = exc.value.fields
    assert "items[0].quantity" in fields
    assert "items[0].sale_type" in fields
    assert "payment_method" in fields
    assert "vat_info.company_name" in fields
    assert "vat_info.tax_code" in fields


def test_empty_cart_is_rejected(store):
    with pytest.raises(ValidationError) as exc:
        order_service.parse_order_request({"store_id": store.id, "items": []})
    assert exc.value.fields == {"items": "Cart is empty"}


def test_sale_types_are_priced_on_the_server(store, make_product):
    product = make_product(price=100000, cost_price=70000, tax_rate=-1, stock_quantity=50)
    order = order_service.submit_order(order_body(
        store, (product, 1, "AT_COST"), (product, 1, "FREE"), (product, 1, "vip"),
    ))
    assert [item.unit_price for item in order.items] == [Decimal("70000"), 0, Decimal("100000")]
    assert order.tax_total == 0
    assert order.total == Decimal("170000")


def test_custom_price_overrides_list_price(store, product):
    body = order_body(store, (product, 2, "CLEARANCE"))
    body["items"][0]["custom_price"] = "45000"
    order = order_service.submit_order(body)
    assert order.subtotal == Decimal("90000")


def test_vat_invoice_fields_are_stored(store, product):
    order = order_service.submit_order(order_body(
        store, (product, 1),
        is_vat_invoice=True,
        vat_info={"company_name": "Acme JSC", "tax_code": "0101234567", "company_address": "1 Le Loi"},
    ))
    assert order.to_dict()["vat_info"] == {
        "company_name": "Acme JSC",
        "tax_code": "0101234567",
        "company_address": "1 Le Loi",
    }


# =============================================================================
# Customers and loyalty
# =============================================================================

def test_customer_is_found_or_created_by_phone(db_session, store, product):
    body = order_body(store, (product, 1), customer={"phone": "0901234567", "name": "Lan"})
    first = order_service.submit_order(body)
    second = order_service.submit_order(body)

    assert first.customer_id == second.customer_id
    assert db_session.query(Customer).filter_by(store_id=store.id).count() == 1
    assert first.customer_name == "Lan"


def test_loyalty_redeem_and_earn(db_session, store, product, loyalty_setting):
    customer = Customer(store_id=store.id, name="Lan", phone="0901234567", loyalty_points=100)
    db_session.add(customer)
    db_session.commit()

    order = order_service.submit_order(order_body(
        store, (product, 3),
        customer={"phone": "0901234567"},
        loyalty_points=5,
        cash_received="400000",
    ))
    assert order.loyalty_points_used == 5
    assert order.discount == Decimal("5000")
    assert order.total == Decimal("325000")
    assert order.earned_points == 32

    order_service.confirm_cash_payment(order.id)
    db_session.refresh(customer)
    assert customer.loyalty_points == 95

    order_service.print_order(order.id)
    order_service.print_order(order.id)
    db_session.refresh(customer)
    assert customer.loyalty_points == 127
    assert customer.total_orders == 1
    assert customer.total_spent == Decimal("325000")


def test_redeemed_points_are_capped_at_balance(db_session, store, product, loyalty_setting):
    db_session.add(Customer(store_id=store.id, name="Binh", phone="0907654321", loyalty_points=3))
    db_session.commit()

    order = order_service.submit_order(order_body(
        store, (product, 1), customer={"phone": "0907654321"}, loyalty_points=50,
    ))
    assert order.loyalty_points_used == 3
    assert order.discount == Decimal("3000")


def test_loyalty_points_need_a_customer(store, product):
    with pytest.raises(ValidationError) as exc:
        order_service.submit_order(order_body(store, (product, 1), loyalty_points=5))
    assert "loyalty_points" in exc.value.fields


# =============================================================================
# Cash payment and printing
# =============================================================================

def test_confirm_cash_payment(store, product):
    order = order_service.submit_order(order_body(store, (product, 3)))

    with pytest.raises(ValidationError) as exc:
        order_service.confirm_cash_payment(order.id, "300000")
    assert "cash_received" in exc.value.fields

    paid = order_service.confirm_cash_payment(order.id, "330000")
    assert paid.status == "PAID"
    assert paid.change_amount == 0
    assert paid.paid_at is not None


def test_confirm_cash_requires_an_amount(store, product):
    order = order_service.submit_order(order_body(store, (product, 1)))
    with pytest.raises(ValidationError):
        order_service.confirm_cash_payment(order.id)


def test_confirm_cash_is_idempotent(store, product):
    order = order_service.submit_order(order_body(store, (product, 1), cash_received="200000"))
    first = order_service.confirm_cash_payment(order.id)
    paid_at = first.paid_at
    again = order_service.confirm_cash_payment(order.id, "999999")
    assert again.paid_at == paid_at
    assert again.cash_received == Decimal("200000")


def test_unpaid_cash_order_cannot_print(store, product):
    order = order_service.submit_order(order_body(store, (product, 1)))
    with pytest.raises(ValidationError) as exc:
        order_service.print_order(order.id)
    assert "status" in exc.value.fields
    assert batch_quantities(product) == {"B1": 10}


def test_first_print_debits_stock_fifo(db_session, store, make_product):
    product = make_product(batches=[("DATED", 30, 2), ("UNDATED", None, 3)])
    order = order_service.submit_order(order_body(store, (product, 4), cash_received="440000"))

    # Pending orders do not hold stock
    assert batch_quantities(product) == {"DATED": 2, "UNDATED": 3}

    order_service.confirm_cash_payment(order.id)
    receipt = order_service.print_order(order.id)

    assert receipt["print_count"] == 1
    assert receipt["duplicate"] is False
    assert receipt["totals"]["grand_total"] == "440000"
    assert receipt["change_amount"] == "0"
    assert batch_quantities(product) == {"DATED": 0, "UNDATED": 1}
    assert stock_counter(product) == 1

    item = order_service.get_order(order.id).items[0].to_dict()
    assert [(b["batch_no"], b["quantity"]) for b in item["batches"]] == [("DATED", 2), ("UNDATED", 2)]


def test_reprint_is_a_duplicate_and_does_not_debit_again(store, product):
    order = order_service.submit_order(order_body(store, (product, 2), cash_received="220000"))
    order_service.confirm_cash_payment(order.id)
    order_service.print_order(order.id)
    receipt = order_service.print_order(order.id)

    assert receipt["print_count"] == 2
    assert receipt["duplicate"] is True
    assert batch_quantities(product) == {"B1": 8}
    assert order_service.get_order(order.id).display_status == "PRINTED"


def test_print_debits_flat_counter_for_products_without_batches(store, make_product):
    bag = make_product("Bag", price=2000, tax_rate=-1, stock_quantity=500)
    order = order_service.submit_order(order_body(store, (bag, 3), cash_received="6000"))
    order_service.confirm_cash_payment(order.id)
    order_service.print_order(order.id)
    assert stock_counter(bag) == 497


def test_print_after_stock_was_sold_elsewhere(db_session, store, product):
    first = order_service.submit_order(order_body(store, (product, 8), cash_received="880000"))
    second = order_service.submit_order(order_body(store, (product, 8), cash_received="880000"))
    order_service.confirm_cash_payment(first.id)
    order_service.confirm_cash_payment(second.id)
    order_service.print_order(first.id)

    with pytest.raises(InsufficientStock):
        order_service.print_order(second.id)
    assert order_service.get_order(second.id).print_count == 0
    assert batch_quantities(product) == {"B1": 2}


def test_paid_order_still_prints_after_its_batch_expired(store, make_product):
    now = utcnow()
    product = make_product(batches=[("B1", 1, 5)], now=now)
    order = order_service.submit_order(order_body(store, (product, 3), cash_received="330000"), now=now)
    order_service.confirm_cash_payment(order.id, now=now)

    receipt = order_service.print_order(order.id, now=now + timedelta(days=2))

    assert receipt["print_count"] == 1
    assert batch_quantities(product) == {"B1": 2}
    assert stock_counter(product) == 2


# =============================================================================
# Refund
# =============================================================================

def test_refund_returns_stock_to_the_debited_batches(db_session, store, make_product):
    product = make_product(batches=[("DATED", 30, 2), ("UNDATED", None, 3)])
    order = order_service.submit_order(order_body(store, (product, 4), cash_received="440000"))
    order_service.confirm_cash_payment(order.id)
    order_service.print_order(order.id)
    assert batch_quantities(product) == {"DATED": 0, "UNDATED": 1}

    refunded = order_service.refund_order(order.id, 7, "Damaged packaging")

    assert refunded.status == "REFUNDED"
    assert refunded.display_status == "REFUNDED"
    assert refunded.refunded_by == 7
    assert refunded.to_dict()["refund"]["reason"] == "Damaged packaging"
    assert batch_quantities(product) == {"DATED": 2, "UNDATED": 3}
    assert stock_counter(product) == 5
    assert order_service.list_paid_orders(store.id) == []


def test_refund_of_flat_counter_sale(store, make_product):
    bag = make_product("Bag", price=2000, tax_rate=-1, stock_quantity=500)
    order = order_service.submit_order(order_body(store, (bag, 3), cash_received="6000"))
    order_service.confirm_cash_payment(order.id)
    order_service.print_order(order.id)

    order_service.refund_order(order.id, reason="Wrong size")
    assert stock_counter(bag) == 500


def test_refund_reverses_customer_totals(db_session, store, product, loyalty_setting):
    customer = Customer(store_id=store.id, name="Lan", phone="0901234567", loyalty_points=100)
    db_session.add(customer)
    db_session.commit()

    order = order_service.submit_order(order_body(
        store, (product, 3), customer={"phone": "0901234567"}, loyalty_points=5, cash_received="400000",
    ))
    order_service.confirm_cash_payment(order.id)
    order_service.print_order(order.id)
    db_session.refresh(customer)
    assert customer.loyalty_points == 127

    order_service.refund_order(order.id, reason="Customer changed mind")
    db_session.refresh(customer)
    assert customer.loyalty_points == 100
    assert customer.total_orders == 0
    assert customer.total_spent == Decimal("0")


def test_refund_before_print_moves_no_stock(db_session, store, product, loyalty_setting):
    customer = Customer(store_id=store.id, name="Lan", phone="0901234567", loyalty_points=100)
    db_session.add(customer)
    db_session.commit()

    order = order_service.submit_order(order_body(
        store, (product, 3), customer={"phone": "0901234567"}, loyalty_points=5, cash_received="400000",
    ))
    order_service.confirm_cash_payment(order.id)
    order_service.refund_order(order.id, reason="Left without goods")

    db_session.refresh(customer)
    assert customer.loyalty_points == 100
    assert customer.total_orders == 0
    assert batch_quantities(product) == {"B1": 10}


def test_refunded_order_is_final(store, product):
    order = order_service.submit_order(order_body(store, (product, 1), cash_received="110000"))
    order_service.confirm_cash_payment(order.id)
    order_service.print_order(order.id)
    order_service.refund_order(order.id, reason="Expired on shelf")

    with pytest.raises(StaleOrderState):
        order_service.refund_order(order.id, reason="Again")
    with pytest.raises(StaleOrderState):
        order_service.print_order(order.id)
    with pytest.raises(StaleOrderState):
        order_service.confirm_cash_payment(order.id)
    with pytest.raises(StaleOrderState):
        order_service.submit_order(order_body(store, (product, 1), order_id=order.id))
    assert batch_quantities(product) == {"B1": 10}


def test_refund_needs_a_paid_order_and_a_reason(store, product):
    order = order_service.submit_order(order_body(store, (product, 1)))
    with pytest.raises(ValidationError) as exc:
        order_service.refund_order(order.id, reason="Changed mind")
    assert "status" in exc.value.fields

    with pytest.raises(ValidationError) as exc:
        order_service.refund_order(order.id, reason="  ")
    assert "reason" in exc.value.fields


def test_list_paid_orders(store, product):
    paid = order_service.submit_order(order_body(store, (product, 1), cash_received="110000"))
    order_service.confirm_cash_payment(paid.id)
    order_service.submit_order(order_body(store, (product, 1)))

    orders = order_service.list_paid_orders(store.id)
    assert [o.id for o in orders] == [paid.id]


def test_missing_order(db_session):
    with pytest.raises(NotFoundError):
        order_service.get_order(999)


# =============================================================================
# QR payment
# =============================================================================

def submit_qr(store, product, quantity=3, **extra):
    return order_service.submit_order(order_body(store, (product, quantity), payment_method="qr", **extra))


def test_qr_submit_issues_a_code(store, product, payment_provider):
    now = utcnow()
    order = submit_qr(store, product)
    assert order.payment_status == "PENDING"
    assert order.payment_reference == payment_provider.created[0]["reference"]
    assert order.qr_payload.startswith("QR|")
    assert order.qr_expires_at > now
    assert order.cash_received is None


def test_qr_code_is_reused_when_total_is_unchanged(store, product, payment_provider):
    order = submit_qr(store, product)
    again = submit_qr(store, product, order_id=order.id)
    assert again.payment_reference == order.payment_reference
    assert len(payment_provider.created) == 1


def test_qr_code_is_replaced_when_total_changes(store, product, payment_provider):
    order = submit_qr(store, product)
    old_reference = order.payment_reference
    updated = submit_qr(store, product, quantity=4, order_id=order.id)

    assert updated.payment_reference != old_reference
    assert payment_provider.cancelled == [old_reference]
    assert payment_provider.created[-1]["amount"] == Decimal("440000")


def test_switching_to_cash_cancels_the_code(store, product, payment_provider):
    order = submit_qr(store, product)
    reference = order.payment_reference
    cash = order_service.submit_order(order_body(store, (product, 3), order_id=order.id))
    assert cash.payment_method == "cash"
    assert cash.qr_payload is None
    assert payment_provider.cancelled == [reference]


def test_payment_status_sees_provider_payment(store, product, payment_provider):
    order = submit_qr(store, product)
    assert order_service.get_payment_status(order.id)["status"] == "PENDING"

    payment_provider.pay(order.payment_reference)
    status = order_service.get_payment_status(order.id)

    assert status["status"] == "PAID"
    assert status["paid"] is True
    paid = order_service.get_order(order.id)
    assert paid.status == "PAID"
    assert paid.qr_payload is None


def test_qr_window_expires(store, product, payment_provider):
    now = utcnow()
    order = order_service.submit_order(order_body(store, (product, 3), payment_method="qr"), now=now)
    reference = order.payment_reference

    status = order_service.get_payment_status(order.id, now=now + timedelta(minutes=16))
    assert status["status"] == "EXPIRED"
    assert status["paid"] is False

    expired = order_service.get_order(order.id)
    assert expired.qr_payload is None
    assert expired.qr_expires_at is None
    assert expired.payment_reference == reference

    # A new submit issues a fresh code
    renewed = order_service.submit_order(
        order_body(store, (product, 3), payment_method="qr", order_id=order.id),
        now=now + timedelta(minutes=17),
    )
    assert renewed.payment_status == "PENDING"
    assert renewed.payment_reference != reference
    assert len(payment_provider.created) == 2


def test_payment_made_inside_the_window_survives_a_late_poll(store, product, payment_provider):
    now = utcnow()
    order = order_service.submit_order(order_body(store, (product, 3), payment_method="qr"), now=now)
    payment_provider.pay(order.payment_reference)

    status = order_service.get_payment_status(order.id, now=now + timedelta(minutes=15, seconds=1))
    assert status["status"] == "PAID"
    assert status["paid"] is True

    # No second code can be issued for an order that was already paid
    with pytest.raises(StaleOrderState):
        order_service.submit_order(
            order_body(store, (product, 3), payment_method="qr", order_id=order.id),
            now=now + timedelta(minutes=16),
        )
    assert len(payment_provider.created) == 1


def test_expire_stale_qr_payments(store, product):
    now = utcnow()
    order_service.submit_order(order_body(store, (product, 1), payment_method="qr"), now=now)
    order_service.submit_order(order_body(store, (product, 1), payment_method="qr"), now=now + timedelta(minutes=10))

    assert order_service.expire_stale_qr_payments(now=now + timedelta(minutes=16)) == 1
    assert order_service.expire_stale_qr_payments(now=now + timedelta(minutes=16)) == 0


def test_expiry_sweep_keeps_late_payments(store, product, payment_provider):
    now = utcnow()
    unpaid = order_service.submit_order(order_body(store, (product, 1), payment_method="qr"), now=now)
    paid = order_service.submit_order(order_body(store, (product, 1), payment_method="qr"), now=now)
    payment_provider.pay(paid.payment_reference)

    assert order_service.expire_stale_qr_payments(now=now + timedelta(minutes=16)) == 1
    assert order_service.get_order(unpaid.id).payment_status == "EXPIRED"
    assert order_service.get_order(paid.id).status == "PAID"


def test_expiry_sweep_leaves_orders_it_cannot_check(store, product, payment_provider):
    now = utcnow()
    order = order_service.submit_order(order_body(store, (product, 1), payment_method="qr"), now=now)
    payment_provider.fail_status = True

    assert order_service.expire_stale_qr_payments(now=now + timedelta(minutes=16)) == 0
    assert order_service.get_order(order.id).payment_status == "PENDING"


def webhook_payload(order, amount=None, code="00", secret=WEBHOOK_SECRET):
    data = {
        "orderCode": int(order.payment_reference),
        "amount": int(amount if amount is not None else order.total),
        "description": f"SB{order.id}",
    }
    return {"code": code, "desc": "success", "data": data, "signature": sign_fields(data, secret)}


def test_webhook_marks_order_paid(store, product):
    order = submit_qr(store, product)
    paid = order_service.apply_payment_webhook(webhook_payload(order))
    assert paid.id == order.id
    assert paid.status == "PAID"

    # Provider retries are harmless
    again = order_service.apply_payment_webhook(webhook_payload(order))
    assert again.paid_at == paid.paid_at


def test_webhook_rejects_bad_signature(store, product):
    order = submit_qr(store, product)
    with pytest.raises(ValidationError) as exc:
        order_service.apply_payment_webhook(webhook_payload(order, secret="wrong-key"))
    assert "signature" in exc.value.fields
    assert order_service.get_order(order.id).status == "PENDING"


def test_webhook_rejects_short_amount(store, product):
    order = submit_qr(store, product)
    with pytest.raises(ValidationError) as exc:
        order_service.apply_payment_webhook(webhook_payload(order, amount=329000))
    assert "amount" in exc.value.fields


def test_webhook_with_failure_code(store, product):
    order = submit_qr(store, product)
    with pytest.raises(ValidationError):
        order_service.apply_payment_webhook(webhook_payload(order, code="01"))


def test_cancel_qr_payment(store, product, payment_provider):
    order = submit_qr(store, product)
    reference = order.payment_reference
    cancelled = order_service.cancel_qr_payment(order.id)

    assert cancelled.payment_status == "CANCELLED"
    assert cancelled.status == "PENDING"
    assert cancelled.qr_payload is None
    assert payment_provider.cancelled == [reference]


def test_cancel_survives_provider_failure(store, product, payment_provider):
    order = submit_qr(store, product)
    payment_provider.fail_cancel = True
    cancelled = order_service.cancel_qr_payment(order.id)
    assert cancelled.payment_status == "CANCELLED"


def test_cancel_qr_on_cash_order(store, product):
    order = order_service.submit_order(order_body(store, (product, 1)))
    with pytest.raises(ValidationError):
        order_service.cancel_qr_payment(order.id)


def test_print_confirms_pending_qr_order(store, product):
    order = submit_qr(store, product)
    receipt = order_service.print_order(order.id)

    assert receipt["payment_method"] == "qr"
    assert receipt["print_count"] == 1
    assert order_service.get_order(order.id).status == "PAID"
    assert batch_quantities(product) == {"B1": 7}
