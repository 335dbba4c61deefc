import sqlalchemy as sa
from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship

from app.core.clock import utcnow
from app.core.database import Base

_JSON = JSONB().with_variant(sa.JSON(), "sqlite")


class Conversation(Base):
    __tablename__ = "conversations"
    __table_args__ = (UniqueConstraint("tenant_id", "customer_phone", name="uq_conversations_tenant_phone"),)

    id = Column(Integer, primary_key=True)
    tenant_id = Column(Integer, ForeignKey("tenants.id"), index=True, nullable=False)

    customer_phone = Column(String(20), index=True, nullable=False)
    customer_name = Column(String, nullable=True)
    customer_whatsapp_id = Column(String(100), nullable=True)

    state = Column(String(50), nullable=False, default="greeting")
    # free-form extensions
    context = Column(_JSON, nullable=False, default=dict)
    # OrderContext document, written together with ``state``
    cart = Column(_JSON, nullable=True)

    is_active = Column(Boolean, nullable=False, default=True)
    last_message_at = Column(DateTime(timezone=True), nullable=True)
    message_count = Column(Integer, nullable=False, default=0)

    is_handed_off = Column(Boolean, nullable=False, default=False)
    handed_off_at = Column(DateTime(timezone=True), nullable=True)
    handed_off_reason = Column(Text, nullable=True)

    outcome = Column(String(20), nullable=True)  # converted / abandoned
    order_id = Column(Integer, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    messages = relationship(
        "ConversationMessage",
        back_populates="conversation",
        cascade="all, delete-orphan",
        order_by="ConversationMessage.id",
    )

    def increment_message_count(self) -> None:
        self.message_count = (self.message_count or 0) + 1
        self.last_message_at = utcnow()

    def hand_off(self, reason: str | None) -> None:
        self.is_handed_off = True
        self.handed_off_at = utcnow()
        self.handed_off_reason = reason

    def clear_handoff(self) -> None:
        self.is_handed_off = False
        self.handed_off_at = None
        self.handed_off_reason = None

    def mark_as_converted(self, order_id: int | None) -> None:
        self.outcome = "converted"
        self.order_id = order_id
        self.is_active = False

    def mark_as_abandoned(self) -> None:
        self.outcome = "abandoned"
        self.is_active = False
        self.clear_handoff()
