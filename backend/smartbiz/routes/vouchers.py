# Overview: Flask API routes for inventory vouchers (stock-in, stock-out, supplier returns).

# backend/smartbiz/routes/vouchers.py
"""Inventory voucher API routes"""

from flask import Blueprint, jsonify, request

from ..decorators import handle_engine_errors
from ..errors import ValidationError
from ..services import voucher_service
from ..time_utils import parse_iso_datetime
from ..validation import FieldErrors, coerce_int


vouchers_bp = Blueprint("vouchers", __name__, url_prefix="/api/vouchers")


@vouchers_bp.post("/")
@handle_engine_errors
def create_voucher_route():
    """
    Create a DRAFT voucher.

    Body: store_id, voucher_type (IN|OUT|RETURN), warehouse_id, reason,
    deliverer_name, receiver_name, ref_no, ref_date, supplier_id, lines[].
    """
    data = request.get_json(silent=True) or {}
    voucher = voucher_service.create_voucher(data)
    return jsonify({"voucher": voucher.to_dict()}), 201


@vouchers_bp.get("/")
@handle_engine_errors
def list_vouchers_route():
    store_id = request.args.get("store_id", type=int)
    if not store_id:
        raise ValidationError({"store_id": "store_id is required"})

    from_date_str = request.args.get("from_date")
    to_date_str = request.args.get("to_date")
    try:
        from_date = parse_iso_datetime(from_date_str) if from_date_str else None
        to_date = parse_iso_datetime(to_date_str) if to_date_str else None
    except ValueError:
        raise ValidationError({"from_date": "Invalid date format. Use ISO 8601."})

    limit = request.args.get("limit", 100, type=int)
    offset = request.args.get("offset", 0, type=int)
    vouchers, total = voucher_service.list_vouchers(
        store_id=store_id,
        voucher_type=request.args.get("voucher_type"),
        status=request.args.get("status"),
        from_date=from_date,
        to_date=to_date,
        limit=limit,
        offset=offset,
    )
    return jsonify({
        "vouchers": [v.to_dict(include_lines=False) for v in vouchers],
        "total": total,
        "limit": limit,
        "offset": offset,
    }), 200


@vouchers_bp.get("/<int:voucher_id>")
@handle_engine_errors
def get_voucher_route(voucher_id: int):
    return jsonify({"voucher": voucher_service.get_voucher(voucher_id).to_dict()}), 200


@vouchers_bp.patch("/<int:voucher_id>")
@handle_engine_errors
def update_voucher_route(voucher_id: int):
    data = request.get_json(silent=True) or {}
    voucher = voucher_service.update_voucher(voucher_id, data)
    return jsonify({"voucher": voucher.to_dict()}), 200


@vouchers_bp.post("/<int:voucher_id>/validate")
@handle_engine_errors
def validate_voucher_route(voucher_id: int):
    """Dry-run of the approval rules. Always 200; errors are listed per field."""
    voucher = voucher_service.get_voucher(voucher_id)
    errors = voucher_service.collect_voucher_errors(voucher)
    return jsonify({"valid": not errors, "fields": errors.fields}), 200


@vouchers_bp.post("/<int:voucher_id>/approve")
@handle_engine_errors
def approve_voucher_route(voucher_id: int):
    voucher = voucher_service.approve_voucher(voucher_id)
    return jsonify({"voucher": voucher.to_dict()}), 200


@vouchers_bp.delete("/<int:voucher_id>")
@handle_engine_errors
def delete_voucher_route(voucher_id: int):
    """Hard delete; DRAFT vouchers only."""
    store_id = request.args.get("store_id", type=int)
    voucher_service.delete_voucher(voucher_id, store_id=store_id)
    return jsonify({"deleted": True, "id": voucher_id}), 200


@vouchers_bp.post("/<int:voucher_id>/post")
@handle_engine_errors
def post_voucher_route(voucher_id: int):
    """Apply to stock. All lines or none."""
    voucher = voucher_service.post_voucher(voucher_id)
    return jsonify({"voucher": voucher.to_dict()}), 200


@vouchers_bp.post("/<int:voucher_id>/cancel")
@handle_engine_errors
def cancel_voucher_route(voucher_id: int):
    voucher = voucher_service.cancel_voucher(voucher_id)
    return jsonify({"voucher": voucher.to_dict()}), 200


@vouchers_bp.post("/<int:voucher_id>/reverse")
@handle_engine_errors
def reverse_voucher_route(voucher_id: int):
    data = request.get_json(silent=True) or {}
    mirror = voucher_service.reverse_voucher(voucher_id, employee_id=data.get("employee_id"))
    return jsonify({"voucher": mirror.to_dict()}), 201


@vouchers_bp.post("/process-expired")
@handle_engine_errors
def process_expired_route():
    """
    Dispose of, or return to the supplier, the full remaining quantity of expired batches.

    Body: store_id, batch_ids[], action (DISPOSE|RETURN), supplier_id (RETURN only).
    """
    data = request.get_json(silent=True) or {}
    errors = FieldErrors()
    store_id = coerce_int(data.get("store_id"), "store_id", errors, minimum=1)
    if data.get("store_id") is None:
        errors.add("store_id", "store_id is required")
    batch_ids = data.get("batch_ids")
    if not isinstance(batch_ids, list):
        errors.add("batch_ids", "batch_ids must be a list")
    errors.raise_if_any()

    voucher = voucher_service.process_expired_goods(
        store_id=store_id,
        batch_ids=batch_ids,
        action=data.get("action") or voucher_service.EXPIRED_ACTION_DISPOSE,
        warehouse_id=data.get("warehouse_id"),
        supplier_id=data.get("supplier_id"),
        employee_id=data.get("employee_id"),
        deliverer_name=data.get("deliverer_name"),
        receiver_name=data.get("receiver_name"),
        note=data.get("note"),
    )
    return jsonify({"voucher": voucher.to_dict()}), 201
