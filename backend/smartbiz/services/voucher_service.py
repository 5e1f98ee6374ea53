# Overview: Inventory voucher workflow (stock-in, stock-out, return to supplier) over product batches.

"""
Inventory Voucher Service

LIFECYCLE:
1. DRAFT: created, header and lines editable
2. APPROVED: passed validation, ready to post
3. POSTED: applied to batch stock (immutable; undo with reverse_voucher)
4. CANCELLED: abandoned before posting

TYPES:
- IN (code NK-): receipt; credits the batch matching (batch_no, expiry,
  warehouse) or creates it
- OUT (code XK-): issue; debits FIFO by expiry, a named batch first
- RETURN (code TH-): return to supplier; leaves the store like OUT

INVARIANTS:
- Posting is all-or-nothing per voucher. Any failure rolls back every line
  and is reported as PartialVoucherApplyRejected carrying the cause.
- An IN line may not carry an expiry date earlier than the voucher date
  (compared by calendar day).
- Supplier legal fields are copied at creation and never refreshed.
- Every batch movement of a posted line is recorded, so a reversal replays
  exactly the batches the original touched.
"""

from __future__ import annotations

from datetime import datetime

from flask import current_app

from ..errors import (
    EngineError,
    NotFoundError,
    PartialVoucherApplyRejected,
    ValidationError,
    VoucherStateError,
)
from ..extensions import db
from ..models import (
    Batch,
    InventoryVoucher,
    InventoryVoucherLine,
    InventoryVoucherMovement,
    Supplier,
    Warehouse,
)
from ..money import ZERO, to_decimal
from ..time_utils import utcnow
from ..validation import (
    FieldErrors,
    clean_text,
    coerce_amount,
    coerce_datetime_field,
    coerce_int,
)
from . import stock_service
from .concurrency import lock_for_update, run_in_transaction
from .document_service import next_document_number

TYPE_IN = "IN"
TYPE_OUT = "OUT"
TYPE_RETURN = "RETURN"
VOUCHER_TYPES = {TYPE_IN, TYPE_OUT, TYPE_RETURN}

STATUS_DRAFT = "DRAFT"
STATUS_APPROVED = "APPROVED"
STATUS_POSTED = "POSTED"
STATUS_CANCELLED = "CANCELLED"

CODE_PREFIXES = {
    TYPE_IN: "NK",
    TYPE_OUT: "XK",
    TYPE_RETURN: "TH",
}

MIRROR_TYPES = {
    TYPE_IN: TYPE_OUT,
    TYPE_OUT: TYPE_IN,
    TYPE_RETURN: TYPE_IN,
}

EXPIRED_ACTION_DISPOSE = "DISPOSE"
EXPIRED_ACTION_RETURN = "RETURN"

SUPPLIER_SNAPSHOT_FIELDS = ("name", "phone", "email", "address", "tax_code", "contact_person")

HEADER_TEXT_FIELDS = {
    "reason": 255,
    "note": None,
    "deliverer_name": 255,
    "receiver_name": 255,
    "ref_no": 64,
}


def _parse_lines(raw_lines, errors: FieldErrors) -> list[dict]:
    """Shape-check voucher lines. Range rules (quantity > 0, cost >= 0) belong to validate_voucher."""
    if raw_lines is None:
        return []
    if not isinstance(raw_lines, list):
        errors.add("lines", "lines must be a list")
        return []

    lines = []
    for i, raw in enumerate(raw_lines):
        prefix = f"lines[{i}]"
        if not isinstance(raw, dict):
            errors.add(prefix, "Each line must be an object")
            continue
        product_id = coerce_int(raw.get("product_id"), f"{prefix}.product_id", errors, minimum=1)
        if raw.get("product_id") is None:
            errors.add(f"{prefix}.product_id", "product_id is required")
        quantity = coerce_int(raw.get("quantity"), f"{prefix}.quantity", errors)
        if raw.get("quantity") is None:
            errors.add(f"{prefix}.quantity", "quantity is required")
        lines.append({
            "product_id": product_id,
            "quantity": quantity,
            "unit_cost": coerce_amount(raw.get("unit_cost"), f"{prefix}.unit_cost", errors, minimum=None),
            "selling_price": coerce_amount(raw.get("selling_price"), f"{prefix}.selling_price", errors),
            "batch_no": clean_text(raw.get("batch_no"), 64) or None,
            "expiry_date": coerce_datetime_field(raw.get("expiry_date"), f"{prefix}.expiry_date", errors),
            "note": clean_text(raw.get("note"), 512) or None,
        })
    return lines


def _build_lines(voucher: InventoryVoucher, parsed_lines: list[dict]) -> None:
    lines = []
    for i, data in enumerate(parsed_lines):
        try:
            product = stock_service.get_product_for_store(voucher.store_id, data["product_id"])
        except NotFoundError:
            raise ValidationError({f"lines[{i}].product_id": f"Product {data['product_id']} not found"})
        lines.append(
            InventoryVoucherLine(
                product_id=product.id,
                product_sku=product.sku,
                product_name=product.name,
                unit=product.unit,
                quantity=data["quantity"],
                unit_cost=data["unit_cost"] if data["unit_cost"] is not None else (product.cost_price or 0),
                selling_price=data["selling_price"],
                batch_no=data["batch_no"],
                expiry_date=data["expiry_date"],
                note=data["note"],
            )
        )
    voucher.lines[:] = lines
    _recalculate_totals(voucher)


def _recalculate_totals(voucher: InventoryVoucher) -> None:
    voucher.total_quantity = sum(line.quantity or 0 for line in voucher.lines)
    voucher.total_amount = sum((to_decimal(line.line_total) for line in voucher.lines), ZERO)


def _apply_supplier(voucher: InventoryVoucher, supplier_id, overrides: dict, errors: FieldErrors) -> None:
    """Copy the supplier's legal fields; explicit snapshot fields in the request win."""
    supplier = None
    if supplier_id is not None:
        supplier = db.session.query(Supplier).filter_by(id=supplier_id, store_id=voucher.store_id).first()
        if supplier is None:
            errors.add("supplier_id", f"Supplier {supplier_id} not found")
            return
    voucher.supplier_id = supplier.id if supplier else None
    for name in SUPPLIER_SNAPSHOT_FIELDS:
        value = clean_text(overrides.get(name)) or (getattr(supplier, name, None) if supplier else None)
        setattr(voucher, f"supplier_{name}", value or None)


def _apply_header(voucher: InventoryVoucher, data: dict, errors: FieldErrors) -> None:
    for name, max_length in HEADER_TEXT_FIELDS.items():
        if name in data:
            setattr(voucher, name, clean_text(data.get(name), max_length) or None)
    if "warehouse_id" in data:
        voucher.warehouse_id = coerce_int(data.get("warehouse_id"), "warehouse_id", errors, minimum=1)
    if "ref_date" in data:
        voucher.ref_date = coerce_datetime_field(data.get("ref_date"), "ref_date", errors)
    if "voucher_date" in data and data.get("voucher_date"):
        voucher_date = coerce_datetime_field(data.get("voucher_date"), "voucher_date", errors)
        if voucher_date is not None:
            voucher.voucher_date = voucher_date


def _get_voucher(voucher_id: int, *, lock: bool = False) -> InventoryVoucher:
    query = db.session.query(InventoryVoucher).filter_by(id=voucher_id)
    if lock:
        query = lock_for_update(query)
    voucher = query.first()
    if voucher is None:
        raise NotFoundError("Voucher", voucher_id)
    return voucher


def get_voucher(voucher_id: int) -> InventoryVoucher:
    return _get_voucher(voucher_id)


def create_voucher(data: dict, *, now: datetime | None = None) -> InventoryVoucher:
    """
    Create a DRAFT voucher.

    Required: store_id, voucher_type. Everything else may be completed
    before approval; validate_voucher enforces the full rule set.
    """
    if not isinstance(data, dict):
        raise ValidationError({"_": "Request body must be a JSON object"})
    now = now or utcnow()

    errors = FieldErrors()
    store_id = coerce_int(data.get("store_id"), "store_id", errors, minimum=1)
    if data.get("store_id") is None:
        errors.add("store_id", "store_id is required")
    voucher_type = clean_text(data.get("voucher_type")).upper()
    if voucher_type not in VOUCHER_TYPES:
        errors.add("voucher_type", "voucher_type must be IN, OUT or RETURN")
    supplier_id = coerce_int(data.get("supplier_id"), "supplier_id", errors, minimum=1)
    employee_id = coerce_int(data.get("employee_id"), "employee_id", errors, minimum=1)
    parsed_lines = _parse_lines(data.get("lines"), errors)
    errors.raise_if_any()

    supplier_overrides = data.get("supplier") if isinstance(data.get("supplier"), dict) else {}

    def _op() -> InventoryVoucher:
        voucher = InventoryVoucher(
            store_id=store_id,
            voucher_type=voucher_type,
            status=STATUS_DRAFT,
            voucher_date=now,
            created_by_employee_id=employee_id,
        )
        header_errors = FieldErrors()
        _apply_header(voucher, data, header_errors)
        _apply_supplier(voucher, supplier_id, supplier_overrides, header_errors)
        header_errors.raise_if_any()

        voucher.code = next_document_number(
            store_id=store_id,
            document_type=f"VOUCHER_{voucher_type}",
            prefix=CODE_PREFIXES[voucher_type],
        )
        db.session.add(voucher)
        _build_lines(voucher, parsed_lines)
        db.session.flush()
        current_app.logger.info("Voucher %s created (%s)", voucher.code, voucher.voucher_type)
        return voucher

    return run_in_transaction(_op)


def update_voucher(voucher_id: int, data: dict) -> InventoryVoucher:
    """Edit a DRAFT voucher. Lines are replaced when "lines" is present."""
    if not isinstance(data, dict):
        raise ValidationError({"_": "Request body must be a JSON object"})

    errors = FieldErrors()
    parsed_lines = _parse_lines(data.get("lines"), errors) if "lines" in data else None
    supplier_id = coerce_int(data.get("supplier_id"), "supplier_id", errors, minimum=1)
    errors.raise_if_any()

    def _op() -> InventoryVoucher:
        voucher = _get_voucher(voucher_id, lock=True)
        if voucher.status != STATUS_DRAFT:
            raise VoucherStateError(voucher.id, voucher.status, f"Only DRAFT vouchers can be edited (status {voucher.status})")

        header_errors = FieldErrors()
        _apply_header(voucher, data, header_errors)
        if "supplier_id" in data and supplier_id != voucher.supplier_id:
            overrides = data.get("supplier") if isinstance(data.get("supplier"), dict) else {}
            _apply_supplier(voucher, supplier_id, overrides, header_errors)
        header_errors.raise_if_any()

        if parsed_lines is not None:
            _build_lines(voucher, parsed_lines)
        db.session.flush()
        return voucher

    return run_in_transaction(_op)


def _same_or_later_day(expiry: datetime, voucher_date: datetime) -> bool:
    return expiry.date() >= voucher_date.date()


def collect_voucher_errors(voucher: InventoryVoucher, *, now: datetime | None = None) -> FieldErrors:
    now = now or utcnow()
    errors = FieldErrors()

    if not voucher.warehouse_id:
        errors.add("warehouse_id", "Warehouse is required")
    else:
        warehouse = db.session.query(Warehouse).filter_by(id=voucher.warehouse_id, store_id=voucher.store_id).first()
        if warehouse is None:
            errors.add("warehouse_id", f"Warehouse {voucher.warehouse_id} not found")
    if not clean_text(voucher.reason) and not clean_text(voucher.note):
        errors.add("reason", "Reason is required")
    if not clean_text(voucher.deliverer_name):
        errors.add("deliverer_name", "Deliverer name is required")
    if not clean_text(voucher.receiver_name):
        errors.add("receiver_name", "Receiver name is required")
    if not clean_text(voucher.ref_no):
        errors.add("ref_no", "Reference document number is required")
    if not voucher.lines:
        errors.add("lines", "At least one line is required")

    demand: dict[int, list[int]] = {}
    for i, line in enumerate(voucher.lines):
        prefix = f"lines[{i}]"
        if line.quantity is None or line.quantity <= 0:
            errors.add(f"{prefix}.quantity", "Quantity must be greater than 0")
        if line.unit_cost is None or to_decimal(line.unit_cost) < 0:
            errors.add(f"{prefix}.unit_cost", "Unit cost cannot be negative")
        if voucher.voucher_type == TYPE_IN and line.expiry_date is not None and voucher.voucher_date is not None:
            if not _same_or_later_day(line.expiry_date, voucher.voucher_date):
                errors.add(
                    f"{prefix}.expiry_date",
                    f"Cannot receive already-expired stock: expiry {line.expiry_date.date().isoformat()} "
                    f"is before the voucher date {voucher.voucher_date.date().isoformat()}",
                )
        if voucher.voucher_type in (TYPE_OUT, TYPE_RETURN) and line.quantity and line.quantity > 0:
            demand.setdefault(line.product_id, []).append(i)

    for product_id, indexes in demand.items():
        product = stock_service.get_product_for_store(voucher.store_id, product_id)
        requested = sum(voucher.lines[i].quantity for i in indexes)
        available = stock_service.available_stock(product, now)
        if requested > available:
            if stock_service.is_expired_only(product, now):
                message = f"All remaining stock of {product.name} has expired"
            else:
                message = f"Only {available} {product.unit or 'units'} of {product.name} available, {requested} requested"
            for i in indexes:
                errors.add(f"lines[{i}].quantity", message)

    return errors


def validate_voucher(voucher_or_id, *, now: datetime | None = None) -> InventoryVoucher:
    """Raise ValidationError with every failing field; return the voucher when it is valid."""
    voucher = voucher_or_id if isinstance(voucher_or_id, InventoryVoucher) else _get_voucher(voucher_or_id)
    collect_voucher_errors(voucher, now=now).raise_if_any()
    return voucher


def approve_voucher(voucher_id: int, *, now: datetime | None = None) -> InventoryVoucher:
    now = now or utcnow()

    def _op() -> InventoryVoucher:
        voucher = _get_voucher(voucher_id, lock=True)
        if voucher.status != STATUS_DRAFT:
            raise VoucherStateError(voucher.id, voucher.status, f"Only DRAFT vouchers can be approved (status {voucher.status})")
        validate_voucher(voucher, now=now)
        voucher.status = STATUS_APPROVED
        voucher.approved_at = now
        return voucher

    return run_in_transaction(_op)


def _record(line: InventoryVoucherLine, batch: Batch | None, delta: int) -> None:
    line.movements.append(
        InventoryVoucherMovement(
            batch_id=batch.id if batch is not None else None,
            batch_no=batch.batch_no if batch is not None else None,
            expiry_date=batch.expiry_date if batch is not None else None,
            quantity_delta=delta,
        )
    )


def _apply_line(voucher: InventoryVoucher, line: InventoryVoucherLine, now: datetime) -> None:
    product = stock_service.get_product_for_store(voucher.store_id, line.product_id, lock=True)
    if voucher.voucher_type == TYPE_IN:
        batch = stock_service.credit_batch(
            product,
            quantity=line.quantity,
            batch_no=line.batch_no,
            expiry_date=line.expiry_date,
            warehouse_id=voucher.warehouse_id,
            cost_price=line.unit_cost,
            selling_price=line.selling_price,
        )
        _record(line, batch, line.quantity)
        return

    if product.batches:
        plan = stock_service.select_debit_plan(
            product, line.quantity, now=now, preferred_batch_no=line.batch_no
        )
        stock_service.apply_debit_plan(product, plan)
        for planned in plan:
            _record(line, planned.batch, -planned.quantity)
    else:
        stock_service.ensure_sellable(product, line.quantity, now)
        stock_service.debit_flat_counter(product, line.quantity)
        _record(line, None, -line.quantity)


def post_voucher(voucher_id: int, *, now: datetime | None = None) -> InventoryVoucher:
    """
    Apply an APPROVED voucher to batch stock, atomically.

    Validation is repeated because stock may have moved since approval.
    Raises PartialVoucherApplyRejected (nothing committed) on any failure.
    """
    now = now or utcnow()

    def _op() -> InventoryVoucher:
        voucher = _get_voucher(voucher_id, lock=True)
        if voucher.status == STATUS_POSTED:
            return voucher
        if voucher.status != STATUS_APPROVED:
            raise VoucherStateError(voucher.id, voucher.status, f"Only APPROVED vouchers can be posted (status {voucher.status})")

        try:
            validate_voucher(voucher, now=now)
            for line in voucher.lines:
                _apply_line(voucher, line, now)
        except EngineError as exc:
            raise PartialVoucherApplyRejected(voucher_id, exc) from exc

        voucher.status = STATUS_POSTED
        voucher.posted_at = now
        db.session.flush()
        current_app.logger.info("Voucher %s posted: %s units", voucher.code, voucher.total_quantity)
        return voucher

    return run_in_transaction(_op)


def cancel_voucher(voucher_id: int, *, now: datetime | None = None) -> InventoryVoucher:
    now = now or utcnow()

    def _op() -> InventoryVoucher:
        voucher = _get_voucher(voucher_id, lock=True)
        if voucher.status == STATUS_CANCELLED:
            return voucher
        if voucher.status == STATUS_POSTED:
            raise VoucherStateError(voucher.id, voucher.status, "Posted vouchers cannot be cancelled; reverse them instead")
        voucher.status = STATUS_CANCELLED
        voucher.cancelled_at = now
        return voucher

    return run_in_transaction(_op)


def delete_voucher(voucher_id: int, *, store_id: int | None = None) -> None:
    """Hard-delete a DRAFT voucher and its lines. Anything further along must be cancelled or reversed."""
    def _op() -> None:
        voucher = _get_voucher(voucher_id, lock=True)
        if store_id is not None and voucher.store_id != store_id:
            raise NotFoundError("Voucher", voucher_id)
        if voucher.status != STATUS_DRAFT:
            raise VoucherStateError(voucher.id, voucher.status, f"Only DRAFT vouchers can be deleted (status {voucher.status})")
        db.session.delete(voucher)
        db.session.flush()
        current_app.logger.info("Voucher %s (%s) deleted", voucher.id, voucher.code)

    run_in_transaction(_op)


def reverse_voucher(voucher_id: int, *, employee_id: int | None = None, now: datetime | None = None) -> InventoryVoucher:
    """
    Post a mirror voucher (IN <-> OUT) that replays the original's batch movements backwards.

    Fails with PartialVoucherApplyRejected when received stock has already
    been sold and the batch cannot give it back.
    """
    now = now or utcnow()

    def _op() -> InventoryVoucher:
        original = _get_voucher(voucher_id, lock=True)
        if original.status != STATUS_POSTED:
            raise VoucherStateError(original.id, original.status, "Only POSTED vouchers can be reversed")
        if original.reversed_by_id:
            raise VoucherStateError(original.id, original.status, "Voucher has already been reversed")

        mirror_type = MIRROR_TYPES[original.voucher_type]
        mirror = InventoryVoucher(
            store_id=original.store_id,
            voucher_type=mirror_type,
            status=STATUS_POSTED,
            voucher_date=now,
            warehouse_id=original.warehouse_id,
            reason=f"Reversal of {original.code}",
            note=original.note,
            deliverer_name=original.receiver_name,
            receiver_name=original.deliverer_name,
            ref_no=original.code,
            ref_date=original.voucher_date,
            supplier_id=original.supplier_id,
            supplier_name=original.supplier_name,
            supplier_phone=original.supplier_phone,
            supplier_email=original.supplier_email,
            supplier_address=original.supplier_address,
            supplier_tax_code=original.supplier_tax_code,
            supplier_contact_person=original.supplier_contact_person,
            reversal_of_id=original.id,
            created_by_employee_id=employee_id,
            approved_at=now,
            posted_at=now,
        )
        mirror.code = next_document_number(
            store_id=original.store_id,
            document_type=f"VOUCHER_{mirror_type}",
            prefix=CODE_PREFIXES[mirror_type],
        )
        db.session.add(mirror)

        try:
            for line in original.lines:
                product = stock_service.get_product_for_store(original.store_id, line.product_id, lock=True)
                mirror_line = InventoryVoucherLine(
                    product_id=line.product_id,
                    product_sku=line.product_sku,
                    product_name=line.product_name,
                    unit=line.unit,
                    quantity=line.quantity,
                    unit_cost=line.unit_cost,
                    selling_price=line.selling_price,
                    batch_no=line.batch_no,
                    expiry_date=line.expiry_date,
                    note=line.note,
                )
                mirror.lines.append(mirror_line)
                for movement in line.movements:
                    batch = db.session.get(Batch, movement.batch_id) if movement.batch_id else None
                    stock_service.move_exact_batch(product, batch, -movement.quantity_delta)
                    _record(mirror_line, batch, -movement.quantity_delta)
        except EngineError as exc:
            raise PartialVoucherApplyRejected(voucher_id, exc) from exc

        _recalculate_totals(mirror)
        db.session.flush()
        original.reversed_by_id = mirror.id
        current_app.logger.info("Voucher %s reversed by %s", original.code, mirror.code)
        return mirror

    return run_in_transaction(_op)


def process_expired_goods(
    *,
    store_id: int,
    batch_ids: list[int],
    action: str = EXPIRED_ACTION_DISPOSE,
    warehouse_id: int | None = None,
    supplier_id: int | None = None,
    employee_id: int | None = None,
    deliverer_name: str | None = None,
    receiver_name: str | None = None,
    note: str | None = None,
    now: datetime | None = None,
) -> InventoryVoucher:
    """
    Remove the full remaining quantity of expired batches in one posted voucher.

    DISPOSE writes an OUT voucher; RETURN writes a RETURN voucher to the
    supplier. Only batches that are expired and still hold stock qualify.
    """
    now = now or utcnow()
    action = clean_text(action).upper()
    errors = FieldErrors()
    if action not in (EXPIRED_ACTION_DISPOSE, EXPIRED_ACTION_RETURN):
        errors.add("action", "action must be DISPOSE or RETURN")
    if not batch_ids:
        errors.add("batch_ids", "Select at least one expired batch")
    if action == EXPIRED_ACTION_RETURN and not supplier_id:
        errors.add("supplier_id", "Supplier is required to return goods")
    errors.raise_if_any()

    voucher_type = TYPE_OUT if action == EXPIRED_ACTION_DISPOSE else TYPE_RETURN

    def _op() -> InventoryVoucher:
        batches = []
        batch_errors = FieldErrors()
        for i, batch_id in enumerate(batch_ids):
            batch = lock_for_update(db.session.query(Batch).filter_by(id=batch_id)).first()
            if batch is None or batch.product.store_id != store_id:
                batch_errors.add(f"batch_ids[{i}]", f"Batch {batch_id} not found")
                continue
            if not stock_service.is_expired(batch, now):
                batch_errors.add(f"batch_ids[{i}]", f"Batch {batch.batch_no} has not expired")
                continue
            if batch.quantity <= 0:
                batch_errors.add(f"batch_ids[{i}]", f"Batch {batch.batch_no} is empty")
                continue
            batches.append(batch)
        batch_errors.raise_if_any()

        voucher = InventoryVoucher(
            store_id=store_id,
            voucher_type=voucher_type,
            status=STATUS_POSTED,
            voucher_date=now,
            warehouse_id=warehouse_id or batches[0].warehouse_id,
            reason="Dispose expired goods" if action == EXPIRED_ACTION_DISPOSE else "Return expired goods to supplier",
            note=clean_text(note) or None,
            deliverer_name=clean_text(deliverer_name) or "Store staff",
            receiver_name=clean_text(receiver_name) or ("Disposal" if action == EXPIRED_ACTION_DISPOSE else "Supplier"),
            created_by_employee_id=employee_id,
            approved_at=now,
            posted_at=now,
        )
        header_errors = FieldErrors()
        _apply_supplier(voucher, supplier_id, {}, header_errors)
        header_errors.raise_if_any()
        voucher.code = next_document_number(
            store_id=store_id,
            document_type=f"VOUCHER_{voucher_type}",
            prefix=CODE_PREFIXES[voucher_type],
        )
        voucher.ref_no = voucher.code
        db.session.add(voucher)

        for batch in batches:
            product = batch.product
            quantity = batch.quantity
            line = InventoryVoucherLine(
                product_id=product.id,
                product_sku=product.sku,
                product_name=product.name,
                unit=product.unit,
                quantity=quantity,
                unit_cost=batch.cost_price or 0,
                selling_price=batch.selling_price,
                batch_no=batch.batch_no,
                expiry_date=batch.expiry_date,
                note="Expired",
            )
            voucher.lines.append(line)
            stock_service.move_exact_batch(product, batch, -quantity)
            _record(line, batch, -quantity)

        _recalculate_totals(voucher)
        db.session.flush()
        current_app.logger.info("Expired goods %s: voucher %s, %s batches", action, voucher.code, len(batches))
        return voucher

    return run_in_transaction(_op)


def list_vouchers(
    *,
    store_id: int,
    voucher_type: str | None = None,
    status: str | None = None,
    from_date: datetime | None = None,
    to_date: datetime | None = None,
    limit: int = 100,
    offset: int = 0,
) -> tuple[list[InventoryVoucher], int]:
    query = db.session.query(InventoryVoucher).filter(InventoryVoucher.store_id == store_id)
    if voucher_type:
        query = query.filter(InventoryVoucher.voucher_type == voucher_type.upper())
    if status:
        query = query.filter(InventoryVoucher.status == status.upper())
    if from_date:
        query = query.filter(InventoryVoucher.voucher_date >= from_date)
    if to_date:
        query = query.filter(InventoryVoucher.voucher_date <= to_date)

    total = query.count()
    limit = max(1, min(limit, 500))
    offset = max(0, offset)
    vouchers = query.order_by(InventoryVoucher.id.desc()).offset(offset).limit(limit).all()
    return vouchers, total
