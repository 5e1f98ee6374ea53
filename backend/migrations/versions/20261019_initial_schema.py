"""Initial SmartBiz schema: catalog, batches, orders, vouchers

Revision ID: 20261019_initial
Revises:
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "20261019_initial"
down_revision = None
branch_labels = None
depends_on = None


def _created_at():
    return sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False)


def _updated_at():
    return sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False)


def _version_id():
    return sa.Column("version_id", sa.Integer(), nullable=False, server_default=sa.text("1"))


def upgrade():
    op.create_table(
        "stores",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("code", sa.String(32), nullable=False),
        _created_at(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("code", name="uq_stores_code"),
        sqlite_autoincrement=True,
    )

    op.create_table(
        "warehouses",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("store_id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("location", sa.String(255), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("1")),
        sa.ForeignKeyConstraint(["store_id"], ["stores.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("store_id", "name", name="uq_warehouses_store_name"),
        sqlite_autoincrement=True,
    )

    op.create_table(
        "suppliers",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("store_id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("phone", sa.String(32), nullable=True),
        sa.Column("email", sa.String(255), nullable=True),
        sa.Column("address", sa.String(512), nullable=True),
        sa.Column("tax_code", sa.String(64), nullable=True),
        sa.Column("contact_person", sa.String(255), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("1")),
        sa.ForeignKeyConstraint(["store_id"], ["stores.id"]),
        sa.PrimaryKeyConstraint("id"),
        sqlite_autoincrement=True,
    )

    op.create_table(
        "customers",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("store_id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("phone", sa.String(32), nullable=False),
        sa.Column("loyalty_points", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("total_spent", sa.Numeric(14, 2), nullable=False, server_default=sa.text("0")),
        sa.Column("total_orders", sa.Integer(), nullable=False, server_default=sa.text("0")),
        _created_at(),
        _version_id(),
        sa.ForeignKeyConstraint(["store_id"], ["stores.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("store_id", "phone", name="uq_customers_store_phone"),
        sa.CheckConstraint("loyalty_points >= 0", name="ck_customers_points_floor"),
        sqlite_autoincrement=True,
    )

    op.create_table(
        "loyalty_settings",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("store_id", sa.Integer(), nullable=False),
        sa.Column("points_per_currency", sa.Numeric(12, 8), nullable=False, server_default=sa.text("0")),
        sa.Column("currency_per_point", sa.Numeric(14, 2), nullable=False, server_default=sa.text("0")),
        sa.Column("min_order_value", sa.Numeric(14, 2), nullable=False, server_default=sa.text("0")),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("1")),
        sa.ForeignKeyConstraint(["store_id"], ["stores.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("store_id", name="uq_loyalty_settings_store"),
        sqlite_autoincrement=True,
    )

    op.create_table(
        "products",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("store_id", sa.Integer(), nullable=False),
        sa.Column("sku", sa.String(64), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("unit", sa.String(32), nullable=True),
        sa.Column("price", sa.Numeric(14, 2), nullable=False, server_default=sa.text("0")),
        sa.Column("cost_price", sa.Numeric(14, 2), nullable=True),
        sa.Column("tax_rate", sa.Numeric(5, 2), nullable=False, server_default=sa.text("0")),
        sa.Column("stock_quantity", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("default_warehouse_id", sa.Integer(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("1")),
        _version_id(),
        _created_at(),
        _updated_at(),
        sa.ForeignKeyConstraint(["store_id"], ["stores.id"]),
        sa.ForeignKeyConstraint(["default_warehouse_id"], ["warehouses.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("store_id", "sku", name="uq_products_store_sku"),
        sa.CheckConstraint("stock_quantity >= 0", name="ck_products_stock_floor"),
        sqlite_autoincrement=True,
    )

    op.create_table(
        "batches",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("product_id", sa.Integer(), nullable=False),
        sa.Column("warehouse_id", sa.Integer(), nullable=True),
        sa.Column("batch_no", sa.String(64), nullable=False),
        sa.Column("expiry_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("quantity", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("cost_price", sa.Numeric(14, 2), nullable=False, server_default=sa.text("0")),
        sa.Column("selling_price", sa.Numeric(14, 2), nullable=True),
        _created_at(),
        _version_id(),
        sa.ForeignKeyConstraint(["product_id"], ["products.id"]),
        sa.ForeignKeyConstraint(["warehouse_id"], ["warehouses.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint("quantity >= 0", name="ck_batches_quantity_floor"),
        sqlite_autoincrement=True,
    )

    op.create_table(
        "document_sequences",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("store_id", sa.Integer(), nullable=False),
        sa.Column("document_type", sa.String(32), nullable=False),
        sa.Column("next_number", sa.Integer(), nullable=False, server_default=sa.text("1")),
        _updated_at(),
        sa.ForeignKeyConstraint(["store_id"], ["stores.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("store_id", "document_type", name="uq_doc_sequences_store_type"),
        sqlite_autoincrement=True,
    )

    op.create_table(
        "orders",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("store_id", sa.Integer(), nullable=False),
        sa.Column("employee_id", sa.Integer(), nullable=True),
        sa.Column("customer_id", sa.Integer(), nullable=True),
        sa.Column("status", sa.String(16), nullable=False, server_default="PENDING"),
        sa.Column("payment_method", sa.String(8), nullable=False, server_default="cash"),
        sa.Column("payment_status", sa.String(16), nullable=False, server_default="PENDING"),
        sa.Column("subtotal", sa.Numeric(14, 2), nullable=False, server_default=sa.text("0")),
        sa.Column("discount", sa.Numeric(14, 2), nullable=False, server_default=sa.text("0")),
        sa.Column("tax_total", sa.Numeric(14, 2), nullable=False, server_default=sa.text("0")),
        sa.Column("total", sa.Numeric(14, 2), nullable=False, server_default=sa.text("0")),
        sa.Column("cash_received", sa.Numeric(14, 2), nullable=True),
        sa.Column("change_amount", sa.Numeric(14, 2), nullable=True),
        sa.Column("loyalty_points_used", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("earned_points", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("loyalty_settled", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.Column("customer_name", sa.String(255), nullable=True),
        sa.Column("customer_phone", sa.String(32), nullable=True),
        sa.Column("is_vat_invoice", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.Column("vat_company_name", sa.String(255), nullable=True),
        sa.Column("vat_tax_code", sa.String(64), nullable=True),
        sa.Column("vat_company_address", sa.String(512), nullable=True),
        sa.Column("payment_reference", sa.String(64), nullable=True),
        sa.Column("qr_payload", sa.Text(), nullable=True),
        sa.Column("qr_image", sa.Text(), nullable=True),
        sa.Column("qr_amount", sa.Numeric(14, 2), nullable=True),
        sa.Column("qr_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("print_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("print_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("finalized_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("refunded_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("refunded_by", sa.Integer(), nullable=True),
        sa.Column("refund_reason", sa.String(512), nullable=True),
        _created_at(),
        _updated_at(),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        _version_id(),
        sa.ForeignKeyConstraint(["store_id"], ["stores.id"]),
        sa.ForeignKeyConstraint(["customer_id"], ["customers.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("payment_reference", name="uq_orders_payment_reference"),
        sqlite_autoincrement=True,
    )

    op.create_table(
        "order_items",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("order_id", sa.Integer(), nullable=False),
        sa.Column("product_id", sa.Integer(), nullable=False),
        sa.Column("product_name", sa.String(255), nullable=False),
        sa.Column("sku", sa.String(64), nullable=True),
        sa.Column("unit", sa.String(32), nullable=True),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.Column("sale_type", sa.String(16), nullable=False, server_default="NORMAL"),
        sa.Column("custom_price", sa.Numeric(14, 2), nullable=True),
        sa.Column("list_price", sa.Numeric(14, 2), nullable=False, server_default=sa.text("0")),
        sa.Column("unit_price", sa.Numeric(14, 2), nullable=False, server_default=sa.text("0")),
        sa.Column("cost_price", sa.Numeric(14, 2), nullable=True),
        sa.Column("tax_rate", sa.Numeric(5, 2), nullable=False, server_default=sa.text("0")),
        sa.Column("subtotal", sa.Numeric(18, 4), nullable=False, server_default=sa.text("0")),
        sa.Column("tax_amount", sa.Numeric(18, 4), nullable=False, server_default=sa.text("0")),
        sa.Column("batch_no", sa.String(64), nullable=True),
        sa.ForeignKeyConstraint(["order_id"], ["orders.id"]),
        sa.ForeignKeyConstraint(["product_id"], ["products.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint("quantity >= 1", name="ck_order_items_quantity_positive"),
        sqlite_autoincrement=True,
    )

    op.create_table(
        "order_item_batches",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("order_item_id", sa.Integer(), nullable=False),
        sa.Column("batch_id", sa.Integer(), nullable=True),
        sa.Column("batch_no", sa.String(64), nullable=True),
        sa.Column("expiry_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.Column("cost_price", sa.Numeric(14, 2), nullable=True),
        sa.ForeignKeyConstraint(["order_item_id"], ["order_items.id"]),
        sa.ForeignKeyConstraint(["batch_id"], ["batches.id"]),
        sa.PrimaryKeyConstraint("id"),
        sqlite_autoincrement=True,
    )

    op.create_table(
        "inventory_vouchers",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("store_id", sa.Integer(), nullable=False),
        sa.Column("code", sa.String(64), nullable=False),
        sa.Column("voucher_type", sa.String(8), nullable=False),
        sa.Column("status", sa.String(16), nullable=False, server_default="DRAFT"),
        sa.Column("voucher_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("warehouse_id", sa.Integer(), nullable=True),
        sa.Column("reason", sa.String(255), nullable=True),
        sa.Column("note", sa.Text(), nullable=True),
        sa.Column("deliverer_name", sa.String(255), nullable=True),
        sa.Column("receiver_name", sa.String(255), nullable=True),
        sa.Column("ref_no", sa.String(64), nullable=True),
        sa.Column("ref_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("supplier_id", sa.Integer(), nullable=True),
        sa.Column("supplier_name", sa.String(255), nullable=True),
        sa.Column("supplier_phone", sa.String(32), nullable=True),
        sa.Column("supplier_email", sa.String(255), nullable=True),
        sa.Column("supplier_address", sa.String(512), nullable=True),
        sa.Column("supplier_tax_code", sa.String(64), nullable=True),
        sa.Column("supplier_contact_person", sa.String(255), nullable=True),
        sa.Column("total_quantity", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("total_amount", sa.Numeric(14, 2), nullable=False, server_default=sa.text("0")),
        sa.Column("reversal_of_id", sa.Integer(), nullable=True),
        sa.Column("reversed_by_id", sa.Integer(), nullable=True),
        sa.Column("created_by_employee_id", sa.Integer(), nullable=True),
        _created_at(),
        sa.Column("approved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("posted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        _version_id(),
        sa.ForeignKeyConstraint(["store_id"], ["stores.id"]),
        sa.ForeignKeyConstraint(["warehouse_id"], ["warehouses.id"]),
        sa.ForeignKeyConstraint(["supplier_id"], ["suppliers.id"]),
        sa.ForeignKeyConstraint(["reversal_of_id"], ["inventory_vouchers.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("store_id", "code", name="uq_inventory_vouchers_store_code"),
        sqlite_autoincrement=True,
    )

    op.create_table(
        "inventory_voucher_lines",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("voucher_id", sa.Integer(), nullable=False),
        sa.Column("product_id", sa.Integer(), nullable=False),
        sa.Column("product_sku", sa.String(64), nullable=True),
        sa.Column("product_name", sa.String(255), nullable=True),
        sa.Column("unit", sa.String(32), nullable=True),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.Column("unit_cost", sa.Numeric(14, 2), nullable=False, server_default=sa.text("0")),
        sa.Column("selling_price", sa.Numeric(14, 2), nullable=True),
        sa.Column("batch_no", sa.String(64), nullable=True),
        sa.Column("expiry_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("note", sa.String(512), nullable=True),
        sa.ForeignKeyConstraint(["voucher_id"], ["inventory_vouchers.id"]),
        sa.ForeignKeyConstraint(["product_id"], ["products.id"]),
        sa.PrimaryKeyConstraint("id"),
        sqlite_autoincrement=True,
    )

    op.create_table(
        "inventory_voucher_movements",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("line_id", sa.Integer(), nullable=False),
        sa.Column("batch_id", sa.Integer(), nullable=True),
        sa.Column("batch_no", sa.String(64), nullable=True),
        sa.Column("expiry_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("quantity_delta", sa.Integer(), nullable=False),
        sa.ForeignKeyConstraint(["line_id"], ["inventory_voucher_lines.id"]),
        sa.ForeignKeyConstraint(["batch_id"], ["batches.id"]),
        sa.PrimaryKeyConstraint("id"),
        sqlite_autoincrement=True,
    )

    with op.batch_alter_table("warehouses", schema=None) as batch_op:
        batch_op.create_index("ix_warehouses_store_id", ["store_id"], unique=False)
    with op.batch_alter_table("suppliers", schema=None) as batch_op:
        batch_op.create_index("ix_suppliers_store_id", ["store_id"], unique=False)
    with op.batch_alter_table("customers", schema=None) as batch_op:
        batch_op.create_index("ix_customers_store_id", ["store_id"], unique=False)
    with op.batch_alter_table("products", schema=None) as batch_op:
        batch_op.create_index("ix_products_store_id", ["store_id"], unique=False)
        batch_op.create_index("ix_products_store_name", ["store_id", "name"], unique=False)
    with op.batch_alter_table("batches", schema=None) as batch_op:
        batch_op.create_index("ix_batches_product_id", ["product_id"], unique=False)
        batch_op.create_index("ix_batches_warehouse_id", ["warehouse_id"], unique=False)
        batch_op.create_index("ix_batches_product_batch_no", ["product_id", "batch_no"], unique=False)
    with op.batch_alter_table("document_sequences", schema=None) as batch_op:
        batch_op.create_index("ix_document_sequences_store_id", ["store_id"], unique=False)
        batch_op.create_index("ix_document_sequences_document_type", ["document_type"], unique=False)
    with op.batch_alter_table("orders", schema=None) as batch_op:
        batch_op.create_index("ix_orders_store_id", ["store_id"], unique=False)
        batch_op.create_index("ix_orders_customer_id", ["customer_id"], unique=False)
        batch_op.create_index("ix_orders_status", ["status"], unique=False)
        batch_op.create_index("ix_orders_store_status_created", ["store_id", "status", "created_at"], unique=False)
    with op.batch_alter_table("order_items", schema=None) as batch_op:
        batch_op.create_index("ix_order_items_order_id", ["order_id"], unique=False)
    with op.batch_alter_table("order_item_batches", schema=None) as batch_op:
        batch_op.create_index("ix_order_item_batches_order_item_id", ["order_item_id"], unique=False)
    with op.batch_alter_table("inventory_vouchers", schema=None) as batch_op:
        batch_op.create_index("ix_inventory_vouchers_store_id", ["store_id"], unique=False)
        batch_op.create_index("ix_inventory_vouchers_status", ["status"], unique=False)
        batch_op.create_index("ix_inventory_vouchers_warehouse_id", ["warehouse_id"], unique=False)
        batch_op.create_index(
            "ix_inventory_vouchers_store_type_status", ["store_id", "voucher_type", "status"], unique=False
        )
    with op.batch_alter_table("inventory_voucher_lines", schema=None) as batch_op:
        batch_op.create_index("ix_inventory_voucher_lines_voucher_id", ["voucher_id"], unique=False)
    with op.batch_alter_table("inventory_voucher_movements", schema=None) as batch_op:
        batch_op.create_index("ix_inventory_voucher_movements_line_id", ["line_id"], unique=False)


def downgrade():
    for table in (
        "inventory_voucher_movements",
        "inventory_voucher_lines",
        "inventory_vouchers",
        "order_item_batches",
        "order_items",
        "orders",
        "document_sequences",
        "batches",
        "products",
        "loyalty_settings",
        "customers",
        "suppliers",
        "warehouses",
        "stores",
    ):
        op.drop_table(table)
