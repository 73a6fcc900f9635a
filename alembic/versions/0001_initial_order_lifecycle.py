"""initial order lifecycle schema

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-17 12:00:00

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "0001_initial"
down_revision = None
branch_labels = None
depends_on = None

ORDER_STATUSES = (
    "awaiting_payment", "paid", "shipped", "delivered", "cancelled", "return_requested",
    "returned", "partially_returned", "refunded", "partially_refunded",
)

ENUMS = {
    "roleenum": ("customer", "admin"),
    "orderstatus": ORDER_STATUSES,
    "returnstatus": ("requested", "approved", "rejected"),
    "refundscope": ("full", "partial"),
    "historykind": ("transition", "alert"),
}


def _enum(name):
    # Типы создаются один раз в upgrade(), колонки на них только ссылаются
    return postgresql.ENUM(*ENUMS[name], name=name, create_type=False)


def upgrade() -> None:
    bind = op.get_bind()
    if bind.dialect.name == "postgresql":
        for name, values in ENUMS.items():
            postgresql.ENUM(*values, name=name).create(bind, checkfirst=True)

    op.create_table(
        "users",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("email", sa.String(), nullable=False),
        sa.Column("full_name", sa.String(), nullable=True),
        sa.Column("role", _enum("roleenum"), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=True),
        sa.Column("blacklisted", sa.Boolean(), nullable=True),
    )
    op.create_index("ix_users_email", "users", ["email"], unique=True)

    op.create_table(
        "products",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("price", sa.Integer(), nullable=False),
        sa.Column("stock", sa.Integer(), nullable=False),
        sa.Column("active", sa.Boolean(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=True),
        sa.CheckConstraint("stock >= 0", name="ck_products_stock_non_negative"),
        sa.CheckConstraint("price >= 0", name="ck_products_price_non_negative"),
    )

    op.create_table(
        "orders",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("order_number", sa.String(), nullable=False),
        sa.Column("status", _enum("orderstatus"), nullable=False),
        sa.Column("total_amount", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.String(36), sa.ForeignKey("users.id"), nullable=True),
        sa.Column("guest_email", sa.String(), nullable=True),
        sa.Column("customer_name", sa.String(), nullable=True),
        sa.Column("shipping_address", sa.JSON(), nullable=False),
        sa.Column("stripe_payment_intent_id", sa.String(), nullable=True),
        sa.Column("stripe_checkout_session_id", sa.String(), nullable=True),
        sa.Column("invoice_number", sa.String(), nullable=True, unique=True),
        sa.Column("coupon_id", sa.String(), nullable=True),
        sa.Column("discount_amount", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("tracking_number", sa.String(), nullable=True),
        sa.Column("delivered_at", sa.DateTime(), nullable=True),
        sa.Column("return_deadline", sa.DateTime(), nullable=True),
        sa.Column("return_requested_at", sa.DateTime(), nullable=True),
        sa.Column("return_ship_by", sa.DateTime(), nullable=True),
        sa.Column("transition_token", sa.String(36), nullable=True),
        sa.Column("transition_claimed_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=True),
        sa.Column("updated_at", sa.DateTime(), nullable=True),
        sa.CheckConstraint("total_amount >= 0", name="ck_orders_total_non_negative"),
        sa.CheckConstraint("(user_id IS NULL) <> (guest_email IS NULL)", name="ck_orders_exactly_one_customer"),
    )
    op.create_index("ix_orders_order_number", "orders", ["order_number"], unique=True)
    op.create_index("ix_orders_status", "orders", ["status"])
    op.create_index("ix_orders_user_id", "orders", ["user_id"])
    op.create_index("ix_orders_stripe_payment_intent_id", "orders", ["stripe_payment_intent_id"])
    op.create_index("ix_orders_stripe_checkout_session_id", "orders", ["stripe_checkout_session_id"])

    op.create_table(
        "refund_records",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("credit_note_number", sa.String(), nullable=False, unique=True),
        sa.Column("invoice_number", sa.String(), nullable=True),
        sa.Column("order_id", sa.String(36), sa.ForeignKey("orders.id"), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("scope", _enum("refundscope"), nullable=False),
        sa.Column("item_ids", sa.JSON(), nullable=False),
        sa.Column("external_refund_id", sa.String(), nullable=True, unique=True),
        sa.Column("actor_id", sa.String(36), nullable=False),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint("amount > 0", name="ck_refund_records_amount_positive"),
    )
    op.create_index("ix_refund_records_order_id", "refund_records", ["order_id"])

    op.create_table(
        "order_items",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("order_id", sa.String(36), sa.ForeignKey("orders.id"), nullable=False),
        sa.Column("product_id", sa.String(36), sa.ForeignKey("products.id"), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.Column("price_at_purchase", sa.Integer(), nullable=False),
        sa.Column("return_status", _enum("returnstatus"), nullable=True),
        sa.Column("return_reason", sa.Text(), nullable=True),
        sa.Column("stock_deducted", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("refund_record_id", sa.String(36), sa.ForeignKey("refund_records.id"), nullable=True),
        sa.CheckConstraint("quantity > 0", name="ck_order_items_quantity_positive"),
        sa.CheckConstraint("price_at_purchase >= 0", name="ck_order_items_price_non_negative"),
    )
    op.create_index("ix_order_items_order_id", "order_items", ["order_id"])

    op.create_table(
        "order_status_history",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("sequence", sa.Integer(), nullable=False),
        sa.Column("order_id", sa.String(36), sa.ForeignKey("orders.id"), nullable=False),
        sa.Column("kind", _enum("historykind"), nullable=False),
        sa.Column("previous_status", _enum("orderstatus"), nullable=True),
        sa.Column("new_status", _enum("orderstatus"), nullable=False),
        sa.Column("actor_id", sa.String(36), nullable=False),
        sa.Column("alert_code", sa.String(), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("order_id", "sequence", name="uq_order_status_history_sequence"),
    )
    op.create_index("ix_order_status_history_order_id", "order_status_history", ["order_id"])


def downgrade() -> None:
    op.drop_table("order_status_history")
    op.drop_table("order_items")
    op.drop_table("refund_records")
    op.drop_table("orders")
    op.drop_table("products")
    op.drop_table("users")
    bind = op.get_bind()
    if bind.dialect.name == "postgresql":
        for name in reversed(list(ENUMS)):
            postgresql.ENUM(name=name).drop(bind, checkfirst=True)
