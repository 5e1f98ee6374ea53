from __future__ import annotations

from ..extensions import db
from ..money import amount_str
from ..time_utils import to_utc_z


class Order(db.Model):
    """
    Persisted POS order (document-first).

    LIFECYCLE:
    1. PENDING: created by a terminal submit, updated in place on re-submit
    2. PAID: cash confirmed or QR payment observed; lines are frozen
    3. printed: print_count > 0; the first print finalizes stock and loyalty
    4. REFUNDED: a paid order taken back; finalized stock returns to its batches

    The QR columns describe the currently active payment code only; they are
    cleared when the code expires or is cancelled.
    """
    __tablename__ = "orders"
    __table_args__ = (
        db.Index("ix_orders_store_status_created", "store_id", "status", "created_at"),
        db.UniqueConstraint("payment_reference", name="uq_orders_payment_reference"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    store_id = db.Column(db.Integer, db.ForeignKey("stores.id"), nullable=False, index=True)
    # Employees are managed elsewhere; NULL means the proprietor
    employee_id = db.Column(db.Integer, nullable=True)
    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id"), nullable=True, index=True)

    status = db.Column(db.String(16), nullable=False, default="PENDING", index=True)  # PENDING, PAID, REFUNDED
    payment_method = db.Column(db.String(8), nullable=False, default="cash")  # cash, qr
    payment_status = db.Column(db.String(16), nullable=False, default="PENDING")  # PENDING, PAID, EXPIRED, CANCELLED

    # Totals (Decimal, rounded to whole currency units)
    subtotal = db.Column(db.Numeric(14, 2), nullable=False, default=0)
    discount = db.Column(db.Numeric(14, 2), nullable=False, default=0)
    tax_total = db.Column(db.Numeric(14, 2), nullable=False, default=0)
    total = db.Column(db.Numeric(14, 2), nullable=False, default=0)
    cash_received = db.Column(db.Numeric(14, 2), nullable=True)
    change_amount = db.Column(db.Numeric(14, 2), nullable=True)

    # Loyalty
    loyalty_points_used = db.Column(db.Integer, nullable=False, default=0)
    earned_points = db.Column(db.Integer, nullable=False, default=0)
    loyalty_settled = db.Column(db.Boolean, nullable=False, default=False)

    # Customer snapshot for receipts and reconciliation
    customer_name = db.Column(db.String(255), nullable=True)
    customer_phone = db.Column(db.String(32), nullable=True)

    # VAT invoice buyer fields
    is_vat_invoice = db.Column(db.Boolean, nullable=False, default=False)
    vat_company_name = db.Column(db.String(255), nullable=True)
    vat_tax_code = db.Column(db.String(64), nullable=True)
    vat_company_address = db.Column(db.String(512), nullable=True)

    # QR payment window
    payment_reference = db.Column(db.String(64), nullable=True)
    qr_payload = db.Column(db.Text, nullable=True)
    qr_image = db.Column(db.Text, nullable=True)
    qr_amount = db.Column(db.Numeric(14, 2), nullable=True)
    qr_expires_at = db.Column(db.DateTime(timezone=True), nullable=True)

    # Printing and finalization
    print_count = db.Column(db.Integer, nullable=False, default=0)
    print_date = db.Column(db.DateTime(timezone=True), nullable=True)
    finalized_at = db.Column(db.DateTime(timezone=True), nullable=True)

    # Refund
    refunded_at = db.Column(db.DateTime(timezone=True), nullable=True)
    refunded_by = db.Column(db.Integer, nullable=True)
    refund_reason = db.Column(db.String(512), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )
    paid_at = db.Column(db.DateTime(timezone=True), nullable=True)
    version_id = db.Column(db.Integer, nullable=False, default=1)

    store = db.relationship("Store", backref=db.backref("orders", lazy=True))
    customer = db.relationship("Customer", backref=db.backref("orders", lazy=True))
    items = db.relationship(
        "OrderItem",
        back_populates="order",
        order_by="OrderItem.id",
        cascade="all, delete-orphan",
    )
    __mapper_args__ = {"version_id_col": version_id}

    @property
    def is_paid(self) -> bool:
        return self.status == "PAID"

    @property
    def is_refunded(self) -> bool:
        return self.status == "REFUNDED"

    @property
    def is_printed(self) -> bool:
        return (self.print_count or 0) > 0

    @property
    def display_status(self) -> str:
        if self.is_refunded:
            return self.status
        if self.is_printed:
            return "PRINTED"
        return self.status

    def to_dict(self, include_items: bool = True) -> dict:
        data = {
            "id": self.id,
            "store_id": self.store_id,
            "employee_id": self.employee_id,
            "customer_id": self.customer_id,
            "customer_name": self.customer_name,
            "customer_phone": self.customer_phone,
            "status": self.status,
            "display_status": self.display_status,
            "payment_method": self.payment_method,
            "payment_status": self.payment_status,
            "subtotal": amount_str(self.subtotal),
            "discount": amount_str(self.discount),
            "tax_total": amount_str(self.tax_total),
            "total": amount_str(self.total),
            "cash_received": amount_str(self.cash_received),
            "change_amount": amount_str(self.change_amount),
            "loyalty_points_used": self.loyalty_points_used,
            "earned_points": self.earned_points,
            "is_vat_invoice": self.is_vat_invoice,
            "vat_info": {
                "company_name": self.vat_company_name,
                "tax_code": self.vat_tax_code,
                "company_address": self.vat_company_address,
            } if self.is_vat_invoice else None,
            "payment_reference": self.payment_reference,
            "qr_payload": self.qr_payload,
            "qr_image": self.qr_image,
            "qr_expires_at": to_utc_z(self.qr_expires_at) if self.qr_expires_at else None,
            "print_count": self.print_count,
            "print_date": to_utc_z(self.print_date) if self.print_date else None,
            "created_at": to_utc_z(self.created_at),
            "paid_at": to_utc_z(self.paid_at) if self.paid_at else None,
            "refund": {
                "refunded_at": to_utc_z(self.refunded_at) if self.refunded_at else None,
                "refunded_by": self.refunded_by,
                "reason": self.refund_reason,
            } if self.is_refunded else None,
            "version_id": self.version_id,
        }
        if include_items:
            data["items"] = [item.to_dict() for item in self.items]
        return data


class OrderItem(db.Model):
    """Individual line items on an order, with the price and tax inputs snapshotted."""
    __tablename__ = "order_items"
    __table_args__ = (
        db.CheckConstraint("quantity >= 1", name="ck_order_items_quantity_positive"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False)

    product_name = db.Column(db.String(255), nullable=False)
    sku = db.Column(db.String(64), nullable=True)
    unit = db.Column(db.String(32), nullable=True)

    quantity = db.Column(db.Integer, nullable=False)
    sale_type = db.Column(db.String(16), nullable=False, default="NORMAL")
    custom_price = db.Column(db.Numeric(14, 2), nullable=True)
    list_price = db.Column(db.Numeric(14, 2), nullable=False, default=0)
    unit_price = db.Column(db.Numeric(14, 2), nullable=False, default=0)
    cost_price = db.Column(db.Numeric(14, 2), nullable=True)
    tax_rate = db.Column(db.Numeric(5, 2), nullable=False, default=0)

    # Unrounded line figures; only order totals are rounded
    subtotal = db.Column(db.Numeric(18, 4), nullable=False, default=0)
    tax_amount = db.Column(db.Numeric(18, 4), nullable=False, default=0)

    # Preferred batch (debited first when the order is finalized)
    batch_no = db.Column(db.String(64), nullable=True)

    order = db.relationship("Order", back_populates="items")
    product = db.relationship("Product")
    allocations = db.relationship(
        "OrderItemBatch",
        back_populates="item",
        order_by="OrderItemBatch.id",
        cascade="all, delete-orphan",
    )

    @property
    def override_price(self):
        return self.custom_price

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "product_id": self.product_id,
            "product_name": self.product_name,
            "sku": self.sku,
            "unit": self.unit,
            "quantity": self.quantity,
            "sale_type": self.sale_type,
            "custom_price": amount_str(self.custom_price),
            "list_price": amount_str(self.list_price),
            "unit_price": amount_str(self.unit_price),
            "cost_price": amount_str(self.cost_price),
            "tax_rate": amount_str(self.tax_rate),
            "subtotal": amount_str(self.subtotal),
            "tax_amount": amount_str(self.tax_amount),
            "batch_no": self.batch_no,
            "batches": [a.to_dict() for a in self.allocations],
        }


class OrderItemBatch(db.Model):
    """Batch quantity consumed by an order line when the order was finalized."""
    __tablename__ = "order_item_batches"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    order_item_id = db.Column(db.Integer, db.ForeignKey("order_items.id"), nullable=False, index=True)
    batch_id = db.Column(db.Integer, db.ForeignKey("batches.id"), nullable=True)
    batch_no = db.Column(db.String(64), nullable=True)
    expiry_date = db.Column(db.DateTime(timezone=True), nullable=True)
    quantity = db.Column(db.Integer, nullable=False)
    cost_price = db.Column(db.Numeric(14, 2), nullable=True)

    item = db.relationship("OrderItem", back_populates="allocations")

    def to_dict(self) -> dict:
        return {
            "batch_id": self.batch_id,
            "batch_no": self.batch_no,
            "expiry_date": to_utc_z(self.expiry_date) if self.expiry_date else None,
            "quantity": self.quantity,
            "cost_price": amount_str(self.cost_price),
        }
