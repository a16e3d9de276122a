"""Storefront checkout, orders and subscriptions

Revision ID: 001_storefront_checkout
Revises:
Create Date: 2026-10-19
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision = "001_storefront_checkout"
down_revision = None
branch_labels = None
depends_on = None

ORDER_STATUSES = ("PENDING", "PAID", "PROCESSING", "SHIPPED", "DELIVERED", "CANCELLED")


def upgrade():
    """Create storefront tables"""
    bind = op.get_bind()
    if bind.dialect.name == "postgresql":
        postgresql.ENUM(*ORDER_STATUSES, name="orderstatus").create(bind, checkfirst=True)
        order_status = postgresql.ENUM(*ORDER_STATUSES, name="orderstatus", create_type=False)
    else:
        order_status = sa.String(10)

    op.create_table(
        "users",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("email", sa.String(255), nullable=False),
        sa.Column("full_name", sa.String(255), nullable=True),
        sa.Column("phone", sa.String(50), nullable=True),
        sa.Column("stripe_customer_id", sa.String(255), nullable=True),
        sa.Column("created_at", sa.TIMESTAMP(), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
        sa.Column("updated_at", sa.TIMESTAMP(), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
        sa.UniqueConstraint("stripe_customer_id"),
    )
    op.create_index("ix_users_email", "users", ["email"], unique=True)

    op.create_table(
        "checkout_drafts",
        sa.Column("key", sa.String(64), primary_key=True),
        sa.Column("user_id", sa.String(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
        sa.Column("data", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.TIMESTAMP(), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
        sa.Column("expires_at", sa.TIMESTAMP(), nullable=False),
    )
    op.create_index("idx_checkout_draft_created", "checkout_drafts", ["created_at"])

    op.create_table(
        "subscriptions",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("user_id", sa.String(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("stripe_subscription_id", sa.String(255), nullable=False),
        sa.Column("stripe_price_id", sa.String(255), nullable=False),
        sa.Column("status", sa.String(50), nullable=False),
        sa.Column("interval", sa.String(20), nullable=True),
        sa.Column("current_period_end", sa.TIMESTAMP(), nullable=True),
        sa.Column("cancel_at_period_end", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("collection_paused", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("checkout_draft_key", sa.String(64), nullable=True),
        sa.Column("created_at", sa.TIMESTAMP(), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
        sa.Column("updated_at", sa.TIMESTAMP(), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
        sa.UniqueConstraint("stripe_subscription_id"),
    )
    op.create_index("idx_subscription_user", "subscriptions", ["user_id"])
    op.create_index("idx_subscription_draft_key", "subscriptions", ["checkout_draft_key"])

    op.create_table(
        "orders",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("user_id", sa.String(), sa.ForeignKey("users.id"), nullable=True),
        sa.Column("contact_email", sa.String(255), nullable=False),
        sa.Column("contact_phone", sa.String(50), nullable=True),
        sa.Column("shipping_name", sa.String(255), nullable=False),
        sa.Column("shipping_address1", sa.String(255), nullable=False),
        sa.Column("shipping_address2", sa.String(255), nullable=True),
        sa.Column("shipping_city", sa.String(100), nullable=False),
        sa.Column("shipping_state", sa.String(100), nullable=False),
        sa.Column("shipping_postal_code", sa.String(20), nullable=False),
        sa.Column("shipping_country", sa.String(64), nullable=False),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("total_cents", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False, server_default="usd"),
        sa.Column("status", order_status, nullable=False),
        sa.Column("checkout_draft_key", sa.String(64), nullable=True),
        sa.Column("stripe_payment_intent_id", sa.String(255), nullable=True),
        sa.Column("stripe_invoice_id", sa.String(255), nullable=True),
        sa.Column(
            "subscription_id", sa.String(), sa.ForeignKey("subscriptions.id", ondelete="SET NULL"), nullable=True
        ),
        sa.Column("created_at", sa.TIMESTAMP(), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
        sa.Column("updated_at", sa.TIMESTAMP(), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
        sa.UniqueConstraint("checkout_draft_key"),
        sa.UniqueConstraint("stripe_payment_intent_id"),
        sa.UniqueConstraint("stripe_invoice_id"),
        sa.CheckConstraint("total_cents >= 0", name="check_order_total_positive"),
    )
    op.create_index("idx_order_status_created", "orders", ["status", "created_at"])
    op.create_index("idx_order_user", "orders", ["user_id"])
    op.create_index("idx_order_subscription", "orders", ["subscription_id"])

    op.create_table(
        "order_items",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("order_id", sa.String(), sa.ForeignKey("orders.id", ondelete="CASCADE"), nullable=False),
        sa.Column("product_id", sa.String(255), nullable=False),
        sa.Column("price_id", sa.String(255), nullable=True),
        sa.Column("product_name", sa.String(255), nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("unit_price_cents", sa.Integer(), nullable=False),
        sa.CheckConstraint("quantity > 0", name="check_item_quantity_positive"),
        sa.CheckConstraint("unit_price_cents >= 0", name="check_item_unit_price_positive"),
    )
    op.create_index("idx_order_item_order", "order_items", ["order_id"])

    op.create_table(
        "saved_cards",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("user_id", sa.String(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("stripe_payment_method_id", sa.String(255), nullable=False),
        sa.Column("brand", sa.String(50), nullable=True),
        sa.Column("last4", sa.String(4), nullable=True),
        sa.Column("exp_month", sa.Integer(), nullable=True),
        sa.Column("exp_year", sa.Integer(), nullable=True),
        sa.Column("is_default", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.TIMESTAMP(), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
        sa.UniqueConstraint("stripe_payment_method_id"),
    )
    op.create_index("idx_saved_card_user", "saved_cards", ["user_id"])


def downgrade():
    """Drop storefront tables"""
    op.drop_index("idx_saved_card_user", table_name="saved_cards")
    op.drop_table("saved_cards")
    op.drop_index("idx_order_item_order", table_name="order_items")
    op.drop_table("order_items")
    op.drop_index("idx_order_subscription", table_name="orders")
    op.drop_index("idx_order_user", table_name="orders")
    op.drop_index("idx_order_status_created", table_name="orders")
    op.drop_table("orders")
    op.drop_index("idx_subscription_draft_key", table_name="subscriptions")
    op.drop_index("idx_subscription_user", table_name="subscriptions")
    op.drop_table("subscriptions")
    op.drop_index("idx_checkout_draft_created", table_name="checkout_drafts")
    op.drop_table("checkout_drafts")
    op.drop_index("ix_users_email", table_name="users")
    op.drop_table("users")

    bind = op.get_bind()
    if bind.dialect.name == "postgresql":
        postgresql.ENUM(name="orderstatus").drop(bind, checkfirst=True)
