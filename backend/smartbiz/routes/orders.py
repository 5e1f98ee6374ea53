# Overview: Flask API routes for POS orders and provider payment callbacks.

# backend/smartbiz/routes/orders.py
"""Order API routes: submit, pay, print, refund, reconcile"""

from flask import Blueprint, current_app, jsonify, request

from ..decorators import handle_engine_errors
from ..errors import ValidationError
from ..services import order_service, reconciliation_service


orders_bp = Blueprint("orders", __name__, url_prefix="/api/orders")
payments_bp = Blueprint("payments", __name__, url_prefix="/api/payments")


@orders_bp.post("/")
@handle_engine_errors
def submit_order_route():
    """
    Create a pending order, or replace the lines of the pending order named by order_id.

    Returns 201 on create, 200 on update.
    """
    data = request.get_json(silent=True) or {}
    updating = bool(data.get("order_id"))
    order = order_service.submit_order(data)
    return jsonify({"order": order.to_dict()}), 200 if updating else 201


@orders_bp.get("/<int:order_id>")
@handle_engine_errors
def get_order_route(order_id: int):
    return jsonify({"order": order_service.order_summary(order_id)}), 200


@orders_bp.get("/paid")
@handle_engine_errors
def list_paid_orders_route():
    store_id = request.args.get("store_id", type=int)
    if not store_id:
        raise ValidationError({"store_id": "store_id is required"})
    limit = request.args.get("limit", 100, type=int)
    offset = request.args.get("offset", 0, type=int)

    orders = order_service.list_paid_orders(store_id, limit=limit, offset=offset)
    return jsonify({
        "orders": [o.to_dict(include_items=False) for o in orders],
        "limit": limit,
        "offset": offset,
    }), 200


@orders_bp.post("/<int:order_id>/confirm-cash")
@handle_engine_errors
def confirm_cash_route(order_id: int):
    data = request.get_json(silent=True) or {}
    order = order_service.confirm_cash_payment(order_id, data.get("cash_received"))
    return jsonify({"order": order.to_dict()}), 200


@orders_bp.get("/<int:order_id>/payment-status")
@handle_engine_errors
def payment_status_route(order_id: int):
    return jsonify(order_service.get_payment_status(order_id)), 200


@orders_bp.post("/<int:order_id>/cancel-qr")
@handle_engine_errors
def cancel_qr_route(order_id: int):
    order = order_service.cancel_qr_payment(order_id)
    return jsonify({"order": order.to_dict()}), 200


@orders_bp.post("/<int:order_id>/print")
@handle_engine_errors
def print_order_route(order_id: int):
    """
    Print or reprint the receipt.

    The first print finalizes the sale (stock debit, customer totals).
    Later prints are marked as duplicates.
    """
    return jsonify({"receipt": order_service.print_order(order_id)}), 200


@orders_bp.post("/<int:order_id>/refund")
@handle_engine_errors
def refund_order_route(order_id: int):
    """Refund a paid order; body carries employee_id and reason."""
    data = request.get_json(silent=True) or {}
    order = order_service.refund_order(order_id, data.get("employee_id"), data.get("reason"))
    return jsonify({"order": order.to_dict()}), 200


@orders_bp.post("/<int:order_id>/reconcile")
@handle_engine_errors
def reconcile_order_route(order_id: int):
    data = request.get_json(silent=True) or {}
    store_id = request.args.get("store_id", type=int)
    report = reconciliation_service.reconcile_order(order_id, data, store_id=store_id)
    return jsonify(report), 200


@payments_bp.post("/webhook")
@handle_engine_errors
def payment_webhook_route():
    """
    Provider callback. Always answers with a JSON body the provider can log.
    """
    payload = request.get_json(silent=True) or {}
    order = order_service.apply_payment_webhook(payload)
    current_app.logger.info("Webhook confirmed payment for order %s", order.id)
    return jsonify({"success": True, "order_id": order.id, "status": order.payment_status}), 200
