"""create whatsapp commerce schema

Revision ID: 0001_create_schema
Revises:
Create Date: 2026-10-19
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision = "0001_create_schema"
down_revision = None
branch_labels = None
depends_on = None

_JSON = postgresql.JSONB().with_variant(sa.JSON(), "sqlite")


def _timestamps(*, updated: bool = False) -> list[sa.Column]:
    columns = [sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False)]
    if updated:
        columns.append(
            sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False)
        )
    return columns


def upgrade() -> None:
    op.create_table(
        "tenants",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("business_name", sa.String(), nullable=True),
        sa.Column("contact_email", sa.String(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
    )

    op.create_table(
        "whatsapp_config",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("tenant_id", sa.Integer(), sa.ForeignKey("tenants.id"), nullable=False),
        sa.Column("provider", sa.String(), nullable=False, server_default="mock"),
        sa.Column("phone_number_id", sa.String(), nullable=True),
        sa.Column("display_phone_number", sa.String(), nullable=True),
        sa.Column("waba_id", sa.String(), nullable=True),
        sa.Column("access_token", sa.String(), nullable=True),
        sa.Column("verify_token", sa.String(), nullable=True),
        sa.Column("is_enabled", sa.Boolean(), nullable=False, server_default=sa.false()),
        *_timestamps(),
    )
    op.create_index("ix_whatsapp_config_tenant_id", "whatsapp_config", ["tenant_id"], unique=True)
    op.create_index("ix_whatsapp_config_phone_number_id", "whatsapp_config", ["phone_number_id"], unique=True)

    op.create_table(
        "agent_configs",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("tenant_id", sa.Integer(), sa.ForeignKey("tenants.id"), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("ai_enabled", sa.Boolean(), nullable=True),
        sa.Column("agent_name", sa.String(100), nullable=True),
        sa.Column("greeting_message", sa.Text(), nullable=True),
        sa.Column("emoji_usage", sa.String(20), nullable=True),
        sa.Column("language", sa.String(40), nullable=True),
        sa.Column("negotiation_enabled", sa.Boolean(), nullable=True),
        sa.Column("max_discount_percent", sa.Integer(), nullable=True),
        sa.Column("min_price_percent", sa.Integer(), nullable=True),
        sa.Column("delivery_areas", _JSON, nullable=True),
        sa.Column("default_delivery_fee", sa.Numeric(10, 2), nullable=True),
        sa.Column("dispatch_time", sa.String(100), nullable=True),
        *_timestamps(updated=True),
    )
    op.create_index("ix_agent_configs_tenant_id", "agent_configs", ["tenant_id"], unique=True)

    op.create_table(
        "products",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("tenant_id", sa.Integer(), sa.ForeignKey("tenants.id"), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("price", sa.Numeric(12, 2), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="active"),
        sa.Column("track_inventory", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("quantity", sa.Integer(), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_products_tenant_id", "products", ["tenant_id"])
    op.create_index("ix_products_tenant_status", "products", ["tenant_id", "status"])

    op.create_table(
        "conversations",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("tenant_id", sa.Integer(), sa.ForeignKey("tenants.id"), nullable=False),
        sa.Column("customer_phone", sa.String(20), nullable=False),
        sa.Column("customer_name", sa.String(), nullable=True),
        sa.Column("customer_whatsapp_id", sa.String(100), nullable=True),
        sa.Column("state", sa.String(50), nullable=False, server_default="greeting"),
        sa.Column("context", _JSON, nullable=False),
        sa.Column("cart", _JSON, nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("last_message_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("message_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_handed_off", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("handed_off_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("handed_off_reason", sa.Text(), nullable=True),
        sa.Column("outcome", sa.String(20), nullable=True),
        sa.Column("order_id", sa.Integer(), nullable=True),
        *_timestamps(updated=True),
        sa.UniqueConstraint("tenant_id", "customer_phone", name="uq_conversations_tenant_phone"),
    )
    op.create_index("ix_conversations_tenant_id", "conversations", ["tenant_id"])
    op.create_index("ix_conversations_customer_phone", "conversations", ["customer_phone"])

    op.create_table(
        "conversation_messages",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("conversation_id", sa.Integer(), sa.ForeignKey("conversations.id"), nullable=False),
        sa.Column("direction", sa.String(10), nullable=False),
        sa.Column("message_type", sa.String(20), nullable=False, server_default="text"),
        sa.Column("content", sa.Text(), nullable=True),
        sa.Column("media_url", sa.Text(), nullable=True),
        sa.Column("whatsapp_message_id", sa.String(100), nullable=True, unique=True),
        sa.Column("intent_detected", sa.String(50), nullable=True),
        sa.Column("entities_extracted", _JSON, nullable=True),
        sa.Column("ai_confidence", sa.Numeric(3, 2), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_conversation_messages_conversation_id", "conversation_messages", ["conversation_id"])
    op.create_index(
        "ix_conversation_messages_conversation_created",
        "conversation_messages",
        ["conversation_id", "created_at"],
    )

    op.create_table(
        "whatsapp_orders",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("tenant_id", sa.Integer(), sa.ForeignKey("tenants.id"), nullable=False),
        sa.Column("order_number", sa.String(50), nullable=False),
        sa.Column("customer_name", sa.String(), nullable=False),
        sa.Column("customer_phone", sa.String(20), nullable=False),
        sa.Column("customer_email", sa.String(), nullable=True),
        sa.Column("delivery_address", sa.Text(), nullable=False),
        sa.Column("delivery_area", sa.String(100), nullable=True),
        sa.Column("delivery_fee", sa.Numeric(10, 2), nullable=False, server_default="0"),
        sa.Column("delivery_notes", sa.Text(), nullable=True),
        sa.Column("items", _JSON, nullable=False),
        sa.Column("subtotal", sa.Numeric(12, 2), nullable=False),
        sa.Column("discount_amount", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("total", sa.Numeric(12, 2), nullable=False),
        sa.Column("payment_status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("payment_method", sa.String(50), nullable=True),
        sa.Column("payment_reference", sa.String(100), nullable=True),
        sa.Column("payment_link", sa.Text(), nullable=True),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("fulfillment_status", sa.String(20), nullable=False, server_default="unfulfilled"),
        sa.Column("shipped_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("delivered_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("tracking_number", sa.String(100), nullable=True),
        sa.Column("internal_notes", sa.Text(), nullable=True),
        sa.Column("source", sa.String(20), nullable=False, server_default="whatsapp"),
        sa.Column("conversation_id", sa.Integer(), sa.ForeignKey("conversations.id"), nullable=True),
        *_timestamps(updated=True),
    )
    op.create_index("ix_whatsapp_orders_order_number", "whatsapp_orders", ["order_number"], unique=True)
    op.create_index("ix_whatsapp_orders_tenant_id", "whatsapp_orders", ["tenant_id"])
    op.create_index("ix_whatsapp_orders_customer_phone", "whatsapp_orders", ["customer_phone"])
    op.create_index("ix_whatsapp_orders_payment_reference", "whatsapp_orders", ["payment_reference"])
    op.create_index("ix_whatsapp_orders_conversation_id", "whatsapp_orders", ["conversation_id"])


def downgrade() -> None:
    op.drop_table("whatsapp_orders")
    op.drop_table("conversation_messages")
    op.drop_table("conversations")
    op.drop_table("products")
    op.drop_table("agent_configs")
    op.drop_table("whatsapp_config")
    op.drop_table("tenants")
