"""HTTP API: status codes and error bodies for orders, payments, stock and vouchers."""

from smartbiz.services.payment_gateway import sign_fields

from conftest import WEBHOOK_SECRET, batch_quantities, order_body


def submit(client, body):
    return client.post("/api/orders/", json=body)


def test_health(client, db_session):
    response = client.get("/health")
    assert response.status_code == 200
    data = response.get_json()
    assert data["status"] == "ok"
    assert data["checks"]["database"]["status"] == "healthy"
    assert data["checks"]["payment_provider"] == "FakePaymentProvider"


# =============================================================================
# Orders
# =============================================================================

def test_submit_then_update(client, store, make_product):
    product = make_product(batches=[("B1", 30, 10)])

    created = submit(client, order_body(store, (product, 3)))
    assert created.status_code == 201
    order = created.get_json()["order"]
    assert order["total"] == "330000"
    assert order["tax_total"] == "30000"
    assert order["status"] == "PENDING"

    updated = submit(client, order_body(store, (product, 1), order_id=order["id"]))
    assert updated.status_code == 200
    assert updated.get_json()["order"]["id"] == order["id"]
    assert updated.get_json()["order"]["total"] == "110000"


def test_submit_validation_error_lists_fields(client, store, make_product):
    product = make_product(stock_quantity=5)
    response = submit(client, order_body(store, (product, 1, "BULK"), payment_method="qr", cash_received="abc"))

    assert response.status_code == 400
    data = response.get_json()
    assert data["code"] == "VALIDATION_ERROR"
    assert set(data["details"]["fields"]) == {"items[0].sale_type", "cash_received"}


def test_submit_insufficient_stock(client, store, make_product):
    product = make_product(batches=[("B1", 30, 2)])
    response = submit(client, order_body(store, (product, 5)))

    assert response.status_code == 409
    data = response.get_json()
    assert data["code"] == "INSUFFICIENT_STOCK"
    assert data["details"]["available"] == 2


def test_submit_expired_only(client, store, make_product):
    product = make_product(batches=[("OLD", -1, 4)])
    response = submit(client, order_body(store, (product, 1)))
    assert response.status_code == 409
    assert response.get_json()["code"] == "EXPIRED_BATCH_ONLY"


def test_cash_flow(client, store, make_product):
    product = make_product(batches=[("B1", 30, 10)])
    order_id = submit(client, order_body(store, (product, 3))).get_json()["order"]["id"]

    early_print = client.post(f"/api/orders/{order_id}/print")
    assert early_print.status_code == 400

    short = client.post(f"/api/orders/{order_id}/confirm-cash", json={"cash_received": "300000"})
    assert short.status_code == 400
    assert "cash_received" in short.get_json()["details"]["fields"]

    paid = client.post(f"/api/orders/{order_id}/confirm-cash", json={"cash_received": "500000"})
    assert paid.status_code == 200
    assert paid.get_json()["order"]["status"] == "PAID"
    assert paid.get_json()["order"]["change_amount"] == "170000"

    stale = submit(client, order_body(store, (product, 1), order_id=order_id))
    assert stale.status_code == 409
    assert stale.get_json()["code"] == "STALE_ORDER_STATE"

    receipt = client.post(f"/api/orders/{order_id}/print").get_json()["receipt"]
    assert receipt["print_count"] == 1
    assert receipt["duplicate"] is False
    assert receipt["lines"][0]["unit_price"] == "100000"
    assert batch_quantities(product) == {"B1": 7}

    reprint = client.post(f"/api/orders/{order_id}/print").get_json()["receipt"]
    assert reprint["duplicate"] is True

    listed = client.get(f"/api/orders/paid?store_id={store.id}").get_json()["orders"]
    assert [o["id"] for o in listed] == [order_id]
    assert listed[0]["display_status"] == "PRINTED"


def test_refund(client, store, make_product):
    product = make_product(batches=[("B1", 30, 10)])
    order_id = submit(client, order_body(store, (product, 3), cash_received="330000")).get_json()["order"]["id"]

    early = client.post(f"/api/orders/{order_id}/refund", json={"reason": "Changed mind"})
    assert early.status_code == 400

    client.post(f"/api/orders/{order_id}/confirm-cash")
    client.post(f"/api/orders/{order_id}/print")
    assert batch_quantities(product) == {"B1": 7}

    missing_reason = client.post(f"/api/orders/{order_id}/refund", json={"employee_id": 3})
    assert missing_reason.status_code == 400
    assert "reason" in missing_reason.get_json()["details"]["fields"]

    refunded = client.post(f"/api/orders/{order_id}/refund", json={"employee_id": 3, "reason": "Torn bag"})
    assert refunded.status_code == 200
    order = refunded.get_json()["order"]
    assert order["status"] == "REFUNDED"
    assert order["refund"]["refunded_by"] == 3
    assert order["refund"]["reason"] == "Torn bag"
    assert batch_quantities(product) == {"B1": 10}

    again = client.post(f"/api/orders/{order_id}/refund", json={"reason": "Torn bag"})
    assert again.status_code == 409
    assert again.get_json()["code"] == "STALE_ORDER_STATE"


def test_paid_list_requires_store(client, db_session):
    response = client.get("/api/orders/paid")
    assert response.status_code == 400


def test_unknown_order(client, db_session):
    response = client.get("/api/orders/4242")
    assert response.status_code == 404
    assert response.get_json()["code"] == "NOT_FOUND"


def test_qr_flow_with_webhook(client, store, make_product):
    product = make_product(batches=[("B1", 30, 10)])
    order = submit(client, order_body(store, (product, 3), payment_method="qr")).get_json()["order"]
    assert order["qr_payload"]
    assert order["qr_expires_at"].endswith("Z")

    status = client.get(f"/api/orders/{order['id']}/payment-status").get_json()
    assert status == {
        "order_id": order["id"],
        "status": "PENDING",
        "paid": False,
        "payment_reference": order["payment_reference"],
        "qr_expires_at": order["qr_expires_at"],
    }

    data = {"orderCode": int(order["payment_reference"]), "amount": 330000, "description": f"SB{order['id']}"}
    forged = client.post("/api/payments/webhook", json={"code": "00", "data": data, "signature": "00ff"})
    assert forged.status_code == 400

    response = client.post(
        "/api/payments/webhook",
        json={"code": "00", "data": data, "signature": sign_fields(data, WEBHOOK_SECRET)},
    )
    assert response.status_code == 200
    assert response.get_json() == {"success": True, "order_id": order["id"], "status": "PAID"}

    status = client.get(f"/api/orders/{order['id']}/payment-status").get_json()
    assert status["paid"] is True


def test_cancel_qr(client, store, make_product, payment_provider):
    product = make_product(batches=[("B1", 30, 10)])
    order = submit(client, order_body(store, (product, 1), payment_method="qr")).get_json()["order"]

    response = client.post(f"/api/orders/{order['id']}/cancel-qr")
    assert response.status_code == 200
    assert response.get_json()["order"]["payment_status"] == "CANCELLED"
    assert response.get_json()["order"]["qr_payload"] is None
    assert payment_provider.cancelled == [order["payment_reference"]]


def test_reconcile(client, store, make_product):
    product = make_product(batches=[("B1", 30, 10)])
    order = submit(client, order_body(store, (product, 3))).get_json()["order"]

    response = client.post(
        f"/api/orders/{order['id']}/reconcile",
        json={"text": f"Order ID: {order['id']}\nPayment: Tiền mặt\nTotal: 329.000 đ"},
    )
    assert response.status_code == 200
    report = response.get_json()
    total = next(c for c in report["checks"] if c["field"] == "total")
    assert total == {"field": "total", "expected": "330000", "actual": "329000", "match": False}
    assert report["summary"]["status"] == "diverged"


# =============================================================================
# Stock
# =============================================================================

def test_product_stock(client, store, make_product):
    product = make_product(batches=[("NEW", 20, 4), ("OLD", -1, 3)])
    response = client.get(f"/api/stock/products/{product.id}?store_id={store.id}")

    assert response.status_code == 200
    data = response.get_json()
    assert data["available"] == 4
    assert data["expired_quantity"] == 3
    assert [b["batch_no"] for b in data["batches"]] == ["OLD", "NEW"]


def test_debit_plan(client, store, make_product):
    product = make_product(batches=[("DATED", 30, 2), ("UNDATED", None, 3)])
    response = client.post(
        f"/api/stock/products/{product.id}/debit-plan",
        json={"quantity": 4, "store_id": store.id},
    )

    assert response.status_code == 200
    plan = response.get_json()["plan"]
    assert [(p["batch_no"], p["quantity"]) for p in plan] == [("DATED", 2), ("UNDATED", 2)]
    # Preview only
    assert batch_quantities(product) == {"DATED": 2, "UNDATED": 3}


def test_debit_plan_errors(client, store, make_product):
    tracked = make_product(batches=[("A", 30, 1)])
    flat = make_product(stock_quantity=10)

    assert client.post(f"/api/stock/products/{tracked.id}/debit-plan", json={}).status_code == 400
    assert client.post(
        f"/api/stock/products/{tracked.id}/debit-plan", json={"quantity": 2}
    ).status_code == 409
    assert client.post(
        f"/api/stock/products/{flat.id}/debit-plan", json={"quantity": 1}
    ).status_code == 400


# =============================================================================
# Vouchers
# =============================================================================

def test_voucher_lifecycle(client, store, warehouse, supplier, make_product):
    product = make_product(stock_quantity=0)
    body = {
        "store_id": store.id,
        "voucher_type": "IN",
        "warehouse_id": warehouse.id,
        "supplier_id": supplier.id,
        "reason": "Opening stock",
        "deliverer_name": "Hung",
        "receiver_name": "Mai",
        "lines": [{"product_id": product.id, "quantity": 12, "unit_cost": "8000", "batch_no": "L1"}],
    }
    created = client.post("/api/vouchers/", json=body)
    assert created.status_code == 201
    voucher = created.get_json()["voucher"]
    assert voucher["code"] == "NK-000001"
    assert voucher["supplier"]["name"] == "Fresh Farms Ltd"
    assert voucher["total_amount"] == "96000"

    check = client.post(f"/api/vouchers/{voucher['id']}/validate").get_json()
    assert check == {"valid": False, "fields": {"ref_no": "Reference document number is required"}}

    patched = client.patch(f"/api/vouchers/{voucher['id']}", json={"ref_no": "PO-77"})
    assert patched.status_code == 200
    assert client.post(f"/api/vouchers/{voucher['id']}/validate").get_json()["valid"] is True

    assert client.post(f"/api/vouchers/{voucher['id']}/post").status_code == 409
    assert client.post(f"/api/vouchers/{voucher['id']}/approve").status_code == 200
    posted = client.post(f"/api/vouchers/{voucher['id']}/post")
    assert posted.status_code == 200
    assert posted.get_json()["voucher"]["status"] == "POSTED"
    assert batch_quantities(product) == {"L1": 12}

    reversed_ = client.post(f"/api/vouchers/{voucher['id']}/reverse", json={"employee_id": 2})
    assert reversed_.status_code == 201
    assert reversed_.get_json()["voucher"]["code"] == "XK-000001"
    assert batch_quantities(product) == {"L1": 0}

    listing = client.get(f"/api/vouchers/?store_id={store.id}&voucher_type=IN").get_json()
    assert listing["total"] == 1
    assert "lines" not in listing["vouchers"][0]


def test_delete_voucher(client, store, warehouse, make_product):
    product = make_product(stock_quantity=0)
    body = {
        "store_id": store.id,
        "voucher_type": "IN",
        "warehouse_id": warehouse.id,
        "reason": "Opening stock",
        "deliverer_name": "Hung",
        "receiver_name": "Mai",
        "ref_no": "PO-78",
        "lines": [{"product_id": product.id, "quantity": 2}],
    }
    draft = client.post("/api/vouchers/", json=body).get_json()["voucher"]
    deleted = client.delete(f"/api/vouchers/{draft['id']}?store_id={store.id}")
    assert deleted.status_code == 200
    assert deleted.get_json() == {"deleted": True, "id": draft["id"]}
    assert client.get(f"/api/vouchers/{draft['id']}").status_code == 404

    approved = client.post("/api/vouchers/", json=body).get_json()["voucher"]
    client.post(f"/api/vouchers/{approved['id']}/approve")
    rejected = client.delete(f"/api/vouchers/{approved['id']}")
    assert rejected.status_code == 409
    assert rejected.get_json()["code"] == "VOUCHER_STATE_ERROR"


def test_voucher_list_requires_store(client, db_session):
    assert client.get("/api/vouchers/").status_code == 400


def test_approve_reports_stock_shortfall_per_line(client, store, warehouse, make_product):
    product = make_product(batches=[("A", 30, 2)])
    body = {
        "store_id": store.id,
        "voucher_type": "OUT",
        "warehouse_id": warehouse.id,
        "reason": "Transfer",
        "deliverer_name": "Hung",
        "receiver_name": "Branch 2",
        "ref_no": "TR-1",
        "lines": [{"product_id": product.id, "quantity": 5}],
    }
    voucher = client.post("/api/vouchers/", json=body).get_json()["voucher"]

    response = client.post(f"/api/vouchers/{voucher['id']}/approve")
    assert response.status_code == 400
    assert "lines[0].quantity" in response.get_json()["details"]["fields"]


def test_process_expired(client, store, make_product):
    product = make_product(batches=[("OLD", -2, 5), ("NEW", 30, 1)])
    old_id = next(b.id for b in product.batches if b.batch_no == "OLD")

    bad = client.post("/api/vouchers/process-expired", json={"store_id": store.id, "batch_ids": "all"})
    assert bad.status_code == 400

    response = client.post(
        "/api/vouchers/process-expired",
        json={"store_id": str(store.id), "batch_ids": [old_id], "action": "DISPOSE"},
    )
    assert response.status_code == 201
    voucher = response.get_json()["voucher"]
    assert voucher["voucher_type"] == "OUT"
    assert voucher["status"] == "POSTED"
    assert batch_quantities(product) == {"OLD": 0, "NEW": 1}
