import sqlalchemy as sa
from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, Numeric, String, Text, func
from sqlalchemy.dialects.postgresql import JSONB

from app.core.database import Base


class AgentConfig(Base):
    """Per-tenant sales agent settings.

    Columns are nullable on purpose: a missing value means "use the default"
    and is resolved by ``AgentSettings.from_model``.
    """

    __tablename__ = "agent_configs"

    id = Column(Integer, primary_key=True)
    tenant_id = Column(Integer, ForeignKey("tenants.id"), index=True, nullable=False, unique=True)
    version = Column(Integer, nullable=False, default=1)

    ai_enabled = Column(Boolean, nullable=True)
    agent_name = Column(String(100), nullable=True)
    greeting_message = Column(Text, nullable=True)

    # personality
    emoji_usage = Column(String(20), nullable=True)
    language = Column(String(40), nullable=True)

    # sales policy
    negotiation_enabled = Column(Boolean, nullable=True)
    max_discount_percent = Column(Integer, nullable=True)
    min_price_percent = Column(Integer, nullable=True)

    # delivery
    delivery_areas = Column(JSONB().with_variant(sa.JSON(), "sqlite"), nullable=True)  # [{"name": ..., "fee": ...}]
    default_delivery_fee = Column(Numeric(10, 2), nullable=True)
    dispatch_time = Column(String(100), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)
