"""Initial settlement schema: catalog, users, coupons, orders, points ledger

Revision ID: 20261018_settlement
Revises:
Create Date: 2026-10-18
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "20261018_settlement"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        "discount_groups",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("pair_price", sa.Numeric(12, 2), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("1")),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sqlite_autoincrement=True,
    )

    op.create_table(
        "products",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("sku", sa.String(64), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("price", sa.Numeric(12, 2), nullable=False),
        sa.Column("sale_price", sa.Numeric(12, 2), nullable=True),
        sa.Column("discount_group_id", sa.Integer(), nullable=True),
        sa.Column("category", sa.String(128), nullable=True),
        sa.Column("sub_category", sa.String(128), nullable=True),
        sa.Column("sub_sub_category", sa.String(128), nullable=True),
        sa.Column("categories_path", sa.JSON(), nullable=True),
        sa.Column("categories_path_ids", sa.JSON(), nullable=True),
        sa.ForeignKeyConstraint(["discount_group_id"], ["discount_groups.id"], name="fk_products_discount_group_id_discount_groups"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("sku", name="uq_products_sku"),
        sqlite_autoincrement=True,
    )

    with op.batch_alter_table("products", schema=None) as batch_op:
        batch_op.create_index("ix_products_discount_group_id", ["discount_group_id"], unique=False)

    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("email", sa.String(255), nullable=True),
        sa.Column("first_name", sa.String(128), nullable=True),
        sa.Column("last_name", sa.String(128), nullable=True),
        sa.Column("phone", sa.String(32), nullable=True),
        sa.Column("points_balance", sa.Numeric(12, 2), nullable=False, server_default=sa.text("0")),
        sa.Column("verifone_customer_no", sa.String(32), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("email", name="uq_users_email"),
        sqlite_autoincrement=True,
    )

    with op.batch_alter_table("users", schema=None) as batch_op:
        batch_op.create_index("ix_users_phone", ["phone"], unique=False)

    op.create_table(
        "coupons",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("code", sa.String(64), nullable=False),
        sa.Column("name_en", sa.String(255), nullable=False, server_default=""),
        sa.Column("name_he", sa.String(255), nullable=False, server_default=""),
        sa.Column("description_en", sa.Text(), nullable=True),
        sa.Column("description_he", sa.Text(), nullable=True),
        sa.Column("discount_type", sa.String(32), nullable=False),
        sa.Column("discount_value", sa.Numeric(12, 2), nullable=True),
        sa.Column("eligible_skus", sa.JSON(), nullable=True),
        sa.Column("eligible_categories", sa.JSON(), nullable=True),
        sa.Column("stackable", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.Column("auto_apply", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.Column("min_cart_value", sa.Numeric(12, 2), nullable=True),
        sa.Column("usage_limit", sa.Integer(), nullable=True),
        sa.Column("usage_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("usage_limit_per_user", sa.Integer(), nullable=True),
        sa.Column("start_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("end_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("1")),
        sa.Column("bogo_buy_qty", sa.Integer(), nullable=True),
        sa.Column("bogo_get_qty", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("code", name="uq_coupons_code"),
        sqlite_autoincrement=True,
    )

    with op.batch_alter_table("coupons", schema=None) as batch_op:
        batch_op.create_index("ix_coupons_auto_apply_active", ["auto_apply", "is_active"], unique=False)
        batch_op.create_index("ix_coupons_is_active", ["is_active"], unique=False)

    op.create_table(
        "coupon_redemptions",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("coupon_id", sa.Integer(), nullable=False),
        sa.Column("user_identifier", sa.String(255), nullable=False),
        sa.Column("usage_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("last_used_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["coupon_id"], ["coupons.id"], name="fk_coupon_redemptions_coupon_id_coupons"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("coupon_id", "user_identifier", name="uq_coupon_redemptions_coupon_user"),
        sqlite_autoincrement=True,
    )

    with op.batch_alter_table("coupon_redemptions", schema=None) as batch_op:
        batch_op.create_index("ix_coupon_redemptions_coupon_id", ["coupon_id"], unique=False)

    op.create_table(
        "orders",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("order_number", sa.String(64), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=True),
        sa.Column("customer_name", sa.String(255), nullable=True),
        sa.Column("customer_phone", sa.String(32), nullable=True),
        sa.Column("subtotal", sa.Numeric(12, 2), nullable=False, server_default=sa.text("0")),
        sa.Column("discount_total", sa.Numeric(12, 2), nullable=False, server_default=sa.text("0")),
        sa.Column("bogo_discount_amount", sa.Numeric(12, 2), nullable=True),
        sa.Column("delivery_fee", sa.Numeric(12, 2), nullable=False, server_default=sa.text("0")),
        sa.Column("points_used", sa.Numeric(12, 2), nullable=False, server_default=sa.text("0")),
        sa.Column("total", sa.Numeric(12, 2), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.Column("coupons_redeemed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("verifone_invoice_status", sa.String(16), nullable=False, server_default="none"),
        sa.Column("verifone_invoice_attempted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("verifone_invoice_no", sa.String(64), nullable=True),
        sa.Column("verifone_invoice_error", sa.Text(), nullable=True),
        sa.Column("verifone_invoice_request", sa.Text(), nullable=True),
        sa.Column("verifone_invoice_response", sa.Text(), nullable=True),
        sa.Column("verifone_invoice_synced_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], name="fk_orders_user_id_users"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("order_number", name="uq_orders_order_number"),
        sqlite_autoincrement=True,
    )

    with op.batch_alter_table("orders", schema=None) as batch_op:
        batch_op.create_index("ix_orders_user_id", ["user_id"], unique=False)
        batch_op.create_index("ix_orders_invoice_status", ["verifone_invoice_status"], unique=False)

    op.create_table(
        "order_items",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("order_id", sa.Integer(), nullable=False),
        sa.Column("product_sku", sa.String(64), nullable=False),
        sa.Column("color_name", sa.String(64), nullable=True),
        sa.Column("size", sa.String(16), nullable=True),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.Column("price", sa.Numeric(12, 2), nullable=False),
        sa.Column("sale_price", sa.Numeric(12, 2), nullable=True),
        sa.ForeignKeyConstraint(["order_id"], ["orders.id"], name="fk_order_items_order_id_orders"),
        sa.PrimaryKeyConstraint("id"),
        sqlite_autoincrement=True,
    )

    with op.batch_alter_table("order_items", schema=None) as batch_op:
        batch_op.create_index("ix_order_items_order_id", ["order_id"], unique=False)

    op.create_table(
        "applied_coupons",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("order_id", sa.Integer(), nullable=False),
        sa.Column("code", sa.String(64), nullable=False),
        sa.Column("discount_amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("discount_type", sa.String(32), nullable=False),
        sa.Column("stackable", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.ForeignKeyConstraint(["order_id"], ["orders.id"], name="fk_applied_coupons_order_id_orders"),
        sa.PrimaryKeyConstraint("id"),
        sqlite_autoincrement=True,
    )

    with op.batch_alter_table("applied_coupons", schema=None) as batch_op:
        batch_op.create_index("ix_applied_coupons_order_id", ["order_id"], unique=False)

    op.create_table(
        "points_entries",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("order_id", sa.Integer(), nullable=False),
        sa.Column("kind", sa.String(8), nullable=False),
        sa.Column("delta", sa.Numeric(12, 2), nullable=False),
        sa.Column("reason", sa.String(255), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], name="fk_points_entries_user_id_users"),
        sa.ForeignKeyConstraint(["order_id"], ["orders.id"], name="fk_points_entries_order_id_orders"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("order_id", "kind", name="uq_points_entries_order_kind"),
        sqlite_autoincrement=True,
    )

    with op.batch_alter_table("points_entries", schema=None) as batch_op:
        batch_op.create_index("ix_points_entries_user_id", ["user_id"], unique=False)
        batch_op.create_index("ix_points_entries_order_id", ["order_id"], unique=False)
        batch_op.create_index("ix_points_entries_user_created", ["user_id", "created_at"], unique=False)


def downgrade():
    op.drop_table("points_entries")
    op.drop_table("applied_coupons")
    op.drop_table("order_items")
    op.drop_table("orders")
    op.drop_table("coupon_redemptions")
    op.drop_table("coupons")
    op.drop_table("users")
    op.drop_table("products")
    op.drop_table("discount_groups")
