"""order, escrow and flash deal core tables

Revision ID: 4c1d9e2a7b30
Revises:
Create Date: 2026-10-19 09:00:00.000000
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "4c1d9e2a7b30"
down_revision = None
branch_labels = None
depends_on = None


def _table_exists(bind, table_name: str) -> bool:
    try:
        return sa.inspect(bind).has_table(table_name)
    except Exception:
        return False


def upgrade():
    bind = op.get_bind()

    if not _table_exists(bind, "users"):
        op.create_table(
            "users",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("name", sa.String(length=120), nullable=False, server_default=""),
            sa.Column("email", sa.String(length=255), nullable=False),
            sa.Column("phone", sa.String(length=32), nullable=True),
            sa.Column("role", sa.String(length=32), nullable=False, server_default="buyer"),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_users_email", "users", ["email"], unique=True)
        op.create_index("ix_users_role", "users", ["role"], unique=False)

    if not _table_exists(bind, "products"):
        op.create_table(
            "products",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("seller_id", sa.Integer(), nullable=False),
            sa.Column("name", sa.String(length=160), nullable=False),
            sa.Column("price_minor", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("stock", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("sales", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("is_available", sa.Boolean(), nullable=False, server_default=sa.text("true")),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.CheckConstraint("stock >= 0", name="ck_products_stock_non_negative"),
            sa.ForeignKeyConstraint(["seller_id"], ["users.id"]),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_products_seller_id", "products", ["seller_id"], unique=False)

    if not _table_exists(bind, "flash_deals"):
        op.create_table(
            "flash_deals",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("product_id", sa.Integer(), nullable=False),
            sa.Column("seller_id", sa.Integer(), nullable=False),
            sa.Column("original_price_minor", sa.Integer(), nullable=False),
            sa.Column("deal_price_minor", sa.Integer(), nullable=False),
            sa.Column("discount_percentage", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("quantity_available", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("quantity_sold", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("starts_at", sa.DateTime(), nullable=False),
            sa.Column("ends_at", sa.DateTime(), nullable=False),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.Column("updated_at", sa.DateTime(), nullable=False),
            sa.CheckConstraint("quantity_sold >= 0", name="ck_flash_deals_sold_non_negative"),
            sa.CheckConstraint("quantity_sold <= quantity_available", name="ck_flash_deals_no_oversell"),
            sa.CheckConstraint("deal_price_minor < original_price_minor", name="ck_flash_deals_discounted"),
            sa.CheckConstraint("ends_at > starts_at", name="ck_flash_deals_window"),
            sa.ForeignKeyConstraint(["product_id"], ["products.id"]),
            sa.ForeignKeyConstraint(["seller_id"], ["users.id"]),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_flash_deals_product_id", "flash_deals", ["product_id"], unique=False)
        op.create_index("ix_flash_deals_seller_id", "flash_deals", ["seller_id"], unique=False)
        op.create_index("ix_flash_deals_starts_at", "flash_deals", ["starts_at"], unique=False)
        op.create_index("ix_flash_deals_ends_at", "flash_deals", ["ends_at"], unique=False)
        op.create_index("ix_flash_deals_product_window", "flash_deals", ["product_id", "starts_at", "ends_at"], unique=False)

    if not _table_exists(bind, "orders"):
        op.create_table(
            "orders",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("order_number", sa.String(length=32), nullable=False),
            sa.Column("checkout_reference", sa.String(length=64), nullable=True),
            sa.Column("buyer_id", sa.Integer(), nullable=False),
            sa.Column("seller_id", sa.Integer(), nullable=False),
            sa.Column("product_id", sa.Integer(), nullable=False),
            sa.Column("deal_id", sa.Integer(), nullable=True),
            sa.Column("quantity", sa.Integer(), nullable=False, server_default="1"),
            sa.Column("unit_price_minor", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("deal_price_minor", sa.Integer(), nullable=True),
            sa.Column("total_amount_minor", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("currency", sa.String(length=8), nullable=False, server_default="GHS"),
            sa.Column("delivery_address", sa.Text(), nullable=False, server_default=""),
            sa.Column("status", sa.String(length=24), nullable=False, server_default="pending"),
            sa.Column("tracking_number", sa.String(length=120), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.Column("updated_at", sa.DateTime(), nullable=False),
            sa.Column("shipped_at", sa.DateTime(), nullable=True),
            sa.Column("delivered_at", sa.DateTime(), nullable=True),
            sa.Column("buyer_confirmed_at", sa.DateTime(), nullable=True),
            sa.Column("cancelled_at", sa.DateTime(), nullable=True),
            sa.Column("delivery_person_id", sa.Integer(), nullable=True),
            sa.Column("claimed_at", sa.DateTime(), nullable=True),
            sa.Column("delivery_proof_url", sa.String(length=1024), nullable=True),
            sa.Column("delivery_photo_uploaded_at", sa.DateTime(), nullable=True),
            sa.Column("delivery_signature_name", sa.String(length=160), nullable=True),
            sa.Column("delivery_signature_data", sa.Text(), nullable=True),
            sa.Column("delivery_proof_type", sa.String(length=24), nullable=True),
            sa.Column("escrow_status", sa.String(length=16), nullable=False, server_default="none"),
            sa.Column("escrow_amount_minor", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("escrow_updated_at", sa.DateTime(), nullable=True),
            sa.Column("issue_description", sa.Text(), nullable=True),
            sa.Column("disputed_at", sa.DateTime(), nullable=True),
            sa.Column("dispute_resolution", sa.String(length=16), nullable=True),
            sa.Column("resolution_note", sa.String(length=500), nullable=True),
            sa.Column("resolved_at", sa.DateTime(), nullable=True),
            sa.CheckConstraint("quantity >= 1", name="ck_orders_quantity_positive"),
            sa.ForeignKeyConstraint(["buyer_id"], ["users.id"]),
            sa.ForeignKeyConstraint(["seller_id"], ["users.id"]),
            sa.ForeignKeyConstraint(["product_id"], ["products.id"]),
            sa.ForeignKeyConstraint(["deal_id"], ["flash_deals.id"]),
            sa.ForeignKeyConstraint(["delivery_person_id"], ["users.id"]),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_orders_order_number", "orders", ["order_number"], unique=True)
        op.create_index("ix_orders_checkout_reference", "orders", ["checkout_reference"], unique=False)
        op.create_index("ix_orders_buyer_id", "orders", ["buyer_id"], unique=False)
        op.create_index("ix_orders_seller_id", "orders", ["seller_id"], unique=False)
        op.create_index("ix_orders_product_id", "orders", ["product_id"], unique=False)
        op.create_index("ix_orders_deal_id", "orders", ["deal_id"], unique=False)
        op.create_index("ix_orders_status", "orders", ["status"], unique=False)
        op.create_index("ix_orders_created_at", "orders", ["created_at"], unique=False)
        op.create_index("ix_orders_delivery_person_id", "orders", ["delivery_person_id"], unique=False)
        op.create_index("ix_orders_escrow_status", "orders", ["escrow_status"], unique=False)
        op.create_index("ix_orders_status_delivery_person", "orders", ["status", "delivery_person_id"], unique=False)

    if not _table_exists(bind, "order_events"):
        op.create_table(
            "order_events",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("order_id", sa.Integer(), nullable=False),
            sa.Column("actor_user_id", sa.Integer(), nullable=True),
            sa.Column("event", sa.String(length=64), nullable=False),
            sa.Column("note", sa.String(length=240), nullable=True),
            sa.Column("idempotency_key", sa.String(length=160), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.ForeignKeyConstraint(["order_id"], ["orders.id"]),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("idempotency_key"),
        )
        op.create_index("ix_order_events_order_id", "order_events", ["order_id"], unique=False)
        op.create_index("ix_order_events_created_at", "order_events", ["created_at"], unique=False)

    if not _table_exists(bind, "escrow_transitions"):
        op.create_table(
            "escrow_transitions",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("escrow_id", sa.String(length=64), nullable=False),
            sa.Column("order_id", sa.Integer(), nullable=False),
            sa.Column("from_status", sa.String(length=16), nullable=False, server_default=""),
            sa.Column("to_status", sa.String(length=16), nullable=False),
            sa.Column("amount_minor", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("currency", sa.String(length=8), nullable=False, server_default=""),
            sa.Column("actor_type", sa.String(length=32), nullable=False, server_default="system"),
            sa.Column("actor_id", sa.Integer(), nullable=True),
            sa.Column("idempotency_key", sa.String(length=160), nullable=False),
            sa.Column("reason", sa.String(length=240), nullable=True),
            sa.Column("metadata_json", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.ForeignKeyConstraint(["order_id"], ["orders.id"]),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("order_id", "idempotency_key", name="uq_escrow_transition_order_key"),
        )
        op.create_index("ix_escrow_transitions_escrow_id", "escrow_transitions", ["escrow_id"], unique=False)
        op.create_index("ix_escrow_transitions_order_id", "escrow_transitions", ["order_id"], unique=False)

    if not _table_exists(bind, "platform_events"):
        op.create_table(
            "platform_events",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.Column("event_type", sa.String(length=80), nullable=False),
            sa.Column("actor_user_id", sa.Integer(), nullable=True),
            sa.Column("actor_role", sa.String(length=32), nullable=True),
            sa.Column("subject_type", sa.String(length=40), nullable=True),
            sa.Column("subject_ref", sa.String(length=120), nullable=True),
            sa.Column("request_id", sa.String(length=80), nullable=True),
            sa.Column("severity", sa.String(length=16), nullable=False, server_default="INFO"),
            sa.Column("metadata_json", sa.Text(), nullable=True),
            sa.PrimaryKeyConstraint("id"),
        )
        for col in ("created_at", "event_type", "actor_user_id", "subject_type", "subject_ref", "request_id"):
            op.create_index(f"ix_platform_events_{col}", "platform_events", [col], unique=False)

    if not _table_exists(bind, "idempotency_keys"):
        op.create_table(
            "idempotency_keys",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("key", sa.String(length=128), nullable=False),
            sa.Column("scope", sa.String(length=128), nullable=False, server_default=""),
            sa.Column("user_id", sa.Integer(), nullable=True),
            sa.Column("request_hash", sa.String(length=64), nullable=False, server_default=""),
            sa.Column("response_body_json", sa.Text(), nullable=True),
            sa.Column("response_code", sa.Integer(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.Column("updated_at", sa.DateTime(), nullable=False),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("scope", "user_id", "key", name="uq_idempotency_scope_user_key"),
        )
        op.create_index("ix_idempotency_keys_key", "idempotency_keys", ["key"], unique=False)


def downgrade():
    for table in (
        "idempotency_keys",
        "platform_events",
        "escrow_transitions",
        "order_events",
        "orders",
        "flash_deals",
        "products",
        "users",
    ):
        op.drop_table(table)
