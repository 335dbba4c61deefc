import sqlalchemy as sa
from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, Numeric, String, Text, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship

from app.core.database import Base


class ConversationMessage(Base):
    __tablename__ = "conversation_messages"

    id = Column(Integer, primary_key=True)
    conversation_id = Column(Integer, ForeignKey("conversations.id"), index=True, nullable=False)
    direction = Column(String(10), nullable=False)  # inbound / outbound
    message_type = Column(String(20), nullable=False, default="text")
    content = Column(Text, nullable=True)
    media_url = Column(Text, nullable=True)
    # upstream id, used for deduplication of webhook redeliveries
    whatsapp_message_id = Column(String(100), nullable=True, unique=True)
    intent_detected = Column(String(50), nullable=True)
    entities_extracted = Column(JSONB().with_variant(sa.JSON(), "sqlite"), nullable=True)
    ai_confidence = Column(Numeric(3, 2), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    conversation = relationship("Conversation", back_populates="messages")


Index("ix_conversation_messages_conversation_created", ConversationMessage.conversation_id, ConversationMessage.created_at)
