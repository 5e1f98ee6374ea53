from __future__ import annotations

from ..extensions import db
from ..money import amount_str
from ..time_utils import to_utc_z


class InventoryVoucher(db.Model):
    """
    Stock movement document: receipt (IN), issue (OUT) or return to supplier (RETURN).

    LIFECYCLE:
    1. DRAFT: created by staff, editable
    2. APPROVED: checked, ready to post
    3. POSTED: batch quantities mutated; immutable from here on
    4. CANCELLED: abandoned before posting

    Supplier fields are a snapshot taken at creation time and are never
    refreshed from the supplier record.
    """
    __tablename__ = "inventory_vouchers"
    __table_args__ = (
        db.UniqueConstraint("store_id", "code", name="uq_inventory_vouchers_store_code"),
        db.Index("ix_inventory_vouchers_store_type_status", "store_id", "voucher_type", "status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    store_id = db.Column(db.Integer, db.ForeignKey("stores.id"), nullable=False, index=True)
    code = db.Column(db.String(64), nullable=False)

    voucher_type = db.Column(db.String(8), nullable=False)  # IN, OUT, RETURN
    status = db.Column(db.String(16), nullable=False, default="DRAFT", index=True)
    voucher_date = db.Column(db.DateTime(timezone=True), nullable=False)

    warehouse_id = db.Column(db.Integer, db.ForeignKey("warehouses.id"), nullable=True, index=True)
    reason = db.Column(db.String(255), nullable=True)
    note = db.Column(db.Text, nullable=True)
    deliverer_name = db.Column(db.String(255), nullable=True)
    receiver_name = db.Column(db.String(255), nullable=True)
    ref_no = db.Column(db.String(64), nullable=True)
    ref_date = db.Column(db.DateTime(timezone=True), nullable=True)

    # Supplier snapshot
    supplier_id = db.Column(db.Integer, db.ForeignKey("suppliers.id"), nullable=True)
    supplier_name = db.Column(db.String(255), nullable=True)
    supplier_phone = db.Column(db.String(32), nullable=True)
    supplier_email = db.Column(db.String(255), nullable=True)
    supplier_address = db.Column(db.String(512), nullable=True)
    supplier_tax_code = db.Column(db.String(64), nullable=True)
    supplier_contact_person = db.Column(db.String(255), nullable=True)

    total_quantity = db.Column(db.Integer, nullable=False, default=0)
    total_amount = db.Column(db.Numeric(14, 2), nullable=False, default=0)

    reversal_of_id = db.Column(db.Integer, db.ForeignKey("inventory_vouchers.id"), nullable=True)
    reversed_by_id = db.Column(db.Integer, nullable=True)

    created_by_employee_id = db.Column(db.Integer, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    approved_at = db.Column(db.DateTime(timezone=True), nullable=True)
    posted_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)
    version_id = db.Column(db.Integer, nullable=False, default=1)

    warehouse = db.relationship("Warehouse")
    lines = db.relationship(
        "InventoryVoucherLine",
        back_populates="voucher",
        order_by="InventoryVoucherLine.id",
        cascade="all, delete-orphan",
    )
    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self, include_lines: bool = True) -> dict:
        data = {
            "id": self.id,
            "store_id": self.store_id,
            "code": self.code,
            "voucher_type": self.voucher_type,
            "status": self.status,
            "voucher_date": to_utc_z(self.voucher_date),
            "warehouse_id": self.warehouse_id,
            "reason": self.reason,
            "note": self.note,
            "deliverer_name": self.deliverer_name,
            "receiver_name": self.receiver_name,
            "ref_no": self.ref_no,
            "ref_date": to_utc_z(self.ref_date) if self.ref_date else None,
            "supplier": {
                "id": self.supplier_id,
                "name": self.supplier_name,
                "phone": self.supplier_phone,
                "email": self.supplier_email,
                "address": self.supplier_address,
                "tax_code": self.supplier_tax_code,
                "contact_person": self.supplier_contact_person,
            } if self.supplier_id or self.supplier_name else None,
            "total_quantity": self.total_quantity,
            "total_amount": amount_str(self.total_amount),
            "reversal_of_id": self.reversal_of_id,
            "reversed_by_id": self.reversed_by_id,
            "created_by_employee_id": self.created_by_employee_id,
            "created_at": to_utc_z(self.created_at),
            "approved_at": to_utc_z(self.approved_at) if self.approved_at else None,
            "posted_at": to_utc_z(self.posted_at) if self.posted_at else None,
            "cancelled_at": to_utc_z(self.cancelled_at) if self.cancelled_at else None,
            "version_id": self.version_id,
        }
        if include_lines:
            data["lines"] = [line.to_dict() for line in self.lines]
        return data


class InventoryVoucherLine(db.Model):
    """One product movement on a voucher. Product identity fields are snapshotted."""
    __tablename__ = "inventory_voucher_lines"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    voucher_id = db.Column(db.Integer, db.ForeignKey("inventory_vouchers.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False)

    product_sku = db.Column(db.String(64), nullable=True)
    product_name = db.Column(db.String(255), nullable=True)
    unit = db.Column(db.String(32), nullable=True)

    quantity = db.Column(db.Integer, nullable=False)
    unit_cost = db.Column(db.Numeric(14, 2), nullable=False, default=0)
    selling_price = db.Column(db.Numeric(14, 2), nullable=True)
    batch_no = db.Column(db.String(64), nullable=True)
    expiry_date = db.Column(db.DateTime(timezone=True), nullable=True)
    note = db.Column(db.String(512), nullable=True)

    voucher = db.relationship("InventoryVoucher", back_populates="lines")
    product = db.relationship("Product")
    movements = db.relationship(
        "InventoryVoucherMovement",
        back_populates="line",
        order_by="InventoryVoucherMovement.id",
        cascade="all, delete-orphan",
    )

    @property
    def line_total(self):
        return (self.unit_cost or 0) * (self.quantity or 0)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "voucher_id": self.voucher_id,
            "product_id": self.product_id,
            "product_sku": self.product_sku,
            "product_name": self.product_name,
            "unit": self.unit,
            "quantity": self.quantity,
            "unit_cost": amount_str(self.unit_cost),
            "selling_price": amount_str(self.selling_price),
            "batch_no": self.batch_no,
            "expiry_date": to_utc_z(self.expiry_date) if self.expiry_date else None,
            "note": self.note,
            "line_total": amount_str(self.line_total),
            "movements": [m.to_dict() for m in self.movements],
        }


class InventoryVoucherMovement(db.Model):
    """
    Batch quantity actually moved when a voucher line was posted.

    Positive quantity credits the batch, negative debits it. Reversals replay
    these rows in the opposite direction.
    """
    __tablename__ = "inventory_voucher_movements"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    line_id = db.Column(db.Integer, db.ForeignKey("inventory_voucher_lines.id"), nullable=False, index=True)
    batch_id = db.Column(db.Integer, db.ForeignKey("batches.id"), nullable=True)
    batch_no = db.Column(db.String(64), nullable=True)
    expiry_date = db.Column(db.DateTime(timezone=True), nullable=True)
    quantity_delta = db.Column(db.Integer, nullable=False)

    line = db.relationship("InventoryVoucherLine", back_populates="movements")

    def to_dict(self) -> dict:
        return {
            "batch_id": self.batch_id,
            "batch_no": self.batch_no,
            "expiry_date": to_utc_z(self.expiry_date) if self.expiry_date else None,
            "quantity_delta": self.quantity_delta,
        }
