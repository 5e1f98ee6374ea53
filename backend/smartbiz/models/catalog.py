from __future__ import annotations

from ..extensions import db
from ..money import amount_str
from ..time_utils import to_utc_z

# Product.tax_rate sentinel: the product is not taxable at all
NOT_TAXABLE = -1


class Store(db.Model):
    """
    Store master data.

    Store and employee management live outside this service; the row exists
    so every catalog and document row can be scoped to a store.
    """
    __tablename__ = "stores"
    __table_args__ = (
        db.UniqueConstraint("code", name="uq_stores_code"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    code = db.Column(db.String(32), nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "code": self.code,
            "created_at": to_utc_z(self.created_at),
        }


class Warehouse(db.Model):
    __tablename__ = "warehouses"
    __table_args__ = (
        db.UniqueConstraint("store_id", "name", name="uq_warehouses_store_name"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    store_id = db.Column(db.Integer, db.ForeignKey("stores.id"), nullable=False, index=True)
    name = db.Column(db.String(255), nullable=False)
    location = db.Column(db.String(255), nullable=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    store = db.relationship("Store", backref=db.backref("warehouses", lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "store_id": self.store_id,
            "name": self.name,
            "location": self.location,
            "is_active": self.is_active,
        }


class Supplier(db.Model):
    """
    Supplier master data.

    Vouchers copy the legal fields at creation time; edits here never reach
    a voucher that already exists.
    """
    __tablename__ = "suppliers"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    store_id = db.Column(db.Integer, db.ForeignKey("stores.id"), nullable=False, index=True)
    name = db.Column(db.String(255), nullable=False)
    phone = db.Column(db.String(32), nullable=True)
    email = db.Column(db.String(255), nullable=True)
    address = db.Column(db.String(512), nullable=True)
    tax_code = db.Column(db.String(64), nullable=True)
    contact_person = db.Column(db.String(255), nullable=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    store = db.relationship("Store", backref=db.backref("suppliers", lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "store_id": self.store_id,
            "name": self.name,
            "phone": self.phone,
            "email": self.email,
            "address": self.address,
            "tax_code": self.tax_code,
            "contact_person": self.contact_person,
            "is_active": self.is_active,
        }


class Customer(db.Model):
    """
    Customer master data for purchase tracking and loyalty.

    Customers are found-or-created by phone at order time; a missing
    customer means a walk-in sale.
    """
    __tablename__ = "customers"
    __table_args__ = (
        db.UniqueConstraint("store_id", "phone", name="uq_customers_store_phone"),
        db.CheckConstraint("loyalty_points >= 0", name="ck_customers_points_floor"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    store_id = db.Column(db.Integer, db.ForeignKey("stores.id"), nullable=False, index=True)
    name = db.Column(db.String(255), nullable=False)
    phone = db.Column(db.String(32), nullable=False)

    # Denormalized aggregates (updated when an order is first printed)
    loyalty_points = db.Column(db.Integer, nullable=False, default=0)
    total_spent = db.Column(db.Numeric(14, 2), nullable=False, default=0)
    total_orders = db.Column(db.Integer, nullable=False, default=0)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    version_id = db.Column(db.Integer, nullable=False, default=1)

    store = db.relationship("Store", backref=db.backref("customers", lazy=True))
    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "store_id": self.store_id,
            "name": self.name,
            "phone": self.phone,
            "loyalty_points": self.loyalty_points,
            "total_spent": amount_str(self.total_spent),
            "total_orders": self.total_orders,
        }


class LoyaltySetting(db.Model):
    """
    Per-store loyalty conversion rates.

    These are business policy inputs; the engine applies them but never
    derives them.
    """
    __tablename__ = "loyalty_settings"
    __table_args__ = (
        db.UniqueConstraint("store_id", name="uq_loyalty_settings_store"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    store_id = db.Column(db.Integer, db.ForeignKey("stores.id"), nullable=False)

    # Points earned per currency unit spent (0.00005 = 1 point per 20,000)
    points_per_currency = db.Column(db.Numeric(12, 8), nullable=False, default=0)
    # Discount value of one redeemed point
    currency_per_point = db.Column(db.Numeric(14, 2), nullable=False, default=0)
    # Orders below this total earn nothing
    min_order_value = db.Column(db.Numeric(14, 2), nullable=False, default=0)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    store = db.relationship("Store", backref=db.backref("loyalty_setting", uselist=False, lazy=True))

    def to_dict(self) -> dict:
        return {
            "store_id": self.store_id,
            "points_per_currency": amount_str(self.points_per_currency),
            "currency_per_point": amount_str(self.currency_per_point),
            "min_order_value": amount_str(self.min_order_value),
            "is_active": self.is_active,
        }


class Product(db.Model):
    """
    Product master data with batch-level stock.

    STOCK MODEL:
    - Batches are the source of truth for sellable quantity.
    - stock_quantity is the flat counter; it is used on its own only when a
      product has no batches, and is kept in step with batch movements.
    - tax_rate is a percentage, or NOT_TAXABLE (-1).
    """
    __tablename__ = "products"
    __table_args__ = (
        db.UniqueConstraint("store_id", "sku", name="uq_products_store_sku"),
        db.Index("ix_products_store_name", "store_id", "name"),
        db.CheckConstraint("stock_quantity >= 0", name="ck_products_stock_floor"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    store_id = db.Column(db.Integer, db.ForeignKey("stores.id"), nullable=False, index=True)

    sku = db.Column(db.String(64), nullable=False)
    name = db.Column(db.String(255), nullable=False)
    unit = db.Column(db.String(32), nullable=True)

    price = db.Column(db.Numeric(14, 2), nullable=False, default=0)
    cost_price = db.Column(db.Numeric(14, 2), nullable=True)
    tax_rate = db.Column(db.Numeric(5, 2), nullable=False, default=0)

    stock_quantity = db.Column(db.Integer, nullable=False, default=0)
    default_warehouse_id = db.Column(db.Integer, db.ForeignKey("warehouses.id"), nullable=True)

    is_active = db.Column(db.Boolean, nullable=False, default=True)
    version_id = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    store = db.relationship("Store", backref=db.backref("products", lazy=True))
    default_warehouse = db.relationship("Warehouse")
    batches = db.relationship(
        "Batch",
        back_populates="product",
        order_by="Batch.id",
        cascade="all, delete-orphan",
        lazy="selectin",
    )
    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<Product id={self.id} sku={self.sku!r} name={self.name!r} store_id={self.store_id}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "store_id": self.store_id,
            "sku": self.sku,
            "name": self.name,
            "unit": self.unit,
            "price": amount_str(self.price),
            "cost_price": amount_str(self.cost_price),
            "tax_rate": amount_str(self.tax_rate),
            "stock_quantity": self.stock_quantity,
            "default_warehouse_id": self.default_warehouse_id,
            "is_active": self.is_active,
            "batches": [b.to_dict() for b in self.batches],
        }


class Batch(db.Model):
    """
    A dated sub-quantity of one product's stock.

    INVARIANTS:
    - quantity never goes below zero (enforced by the database as well, so
      two terminals racing on a stale check cannot oversell).
    - a batch at zero stays on record; it is inert, not deleted.
    - expiry is evaluated at read time against the current moment.
    - batch_no is not unique across products.
    """
    __tablename__ = "batches"
    __table_args__ = (
        db.CheckConstraint("quantity >= 0", name="ck_batches_quantity_floor"),
        db.Index("ix_batches_product_batch_no", "product_id", "batch_no"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    warehouse_id = db.Column(db.Integer, db.ForeignKey("warehouses.id"), nullable=True, index=True)

    batch_no = db.Column(db.String(64), nullable=False)
    expiry_date = db.Column(db.DateTime(timezone=True), nullable=True)
    quantity = db.Column(db.Integer, nullable=False, default=0)
    cost_price = db.Column(db.Numeric(14, 2), nullable=False, default=0)
    selling_price = db.Column(db.Numeric(14, 2), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    version_id = db.Column(db.Integer, nullable=False, default=1)

    product = db.relationship("Product", back_populates="batches")
    warehouse = db.relationship("Warehouse")
    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<Batch id={self.id} product_id={self.product_id} batch_no={self.batch_no!r} qty={self.quantity}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "warehouse_id": self.warehouse_id,
            "batch_no": self.batch_no,
            "expiry_date": to_utc_z(self.expiry_date),
            "quantity": self.quantity,
            "cost_price": amount_str(self.cost_price),
            "selling_price": amount_str(self.selling_price),
        }
