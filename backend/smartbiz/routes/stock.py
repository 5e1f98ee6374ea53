# Overview: Flask API routes for batch stock inspection and debit planning.

from flask import Blueprint, jsonify, request

from ..decorators import handle_engine_errors
from ..errors import ValidationError
from ..services import stock_service
from ..validation import FieldErrors, coerce_int


stock_bp = Blueprint("stock", __name__, url_prefix="/api/stock")


@stock_bp.get("/products/<int:product_id>")
@handle_engine_errors
def product_stock_route(product_id: int):
    """Sellable quantity, expired quantity and batches in FIFO order."""
    store_id = request.args.get("store_id", type=int)
    product = stock_service.get_product_for_store(store_id, product_id)
    return jsonify(stock_service.stock_summary(product)), 200


@stock_bp.post("/products/<int:product_id>/debit-plan")
@handle_engine_errors
def debit_plan_route(product_id: int):
    """Preview which batches a sale of `quantity` would consume. Nothing is written."""
    data = request.get_json(silent=True) or {}
    errors = FieldErrors()
    quantity = coerce_int(data.get("quantity"), "quantity", errors, minimum=1)
    store_id = coerce_int(data.get("store_id"), "store_id", errors, minimum=1)
    if data.get("quantity") is None:
        errors.add("quantity", "quantity is required")
    errors.raise_if_any()

    product = stock_service.get_product_for_store(store_id, product_id)
    if not product.batches:
        raise ValidationError({"product_id": f"Product {product.name} is not batch-tracked"})
    plan = stock_service.select_debit_plan(
        product, quantity, preferred_batch_no=data.get("batch_no") or None
    )
    return jsonify({
        "product_id": product.id,
        "quantity": quantity,
        "plan": [p.to_dict() for p in plan],
    }), 200
