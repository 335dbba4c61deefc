from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.clock import utcnow
from app.fsm.states import ConversationState
from app.models.conversation import Conversation
from app.models.conversation_message import ConversationMessage

logger = logging.getLogger(__name__)

_TERMINAL_STATES = [
    ConversationState.COMPLETED.value,
    ConversationState.ABANDONED.value,
    ConversationState.HANDED_OFF.value,
]


def is_message_processed(db: Session, whatsapp_message_id: str | None) -> bool:
    if not whatsapp_message_id:
        return False
    return (
        db.query(ConversationMessage.id)
        .filter(ConversationMessage.whatsapp_message_id == whatsapp_message_id)
        .first()
        is not None
    )


def find_conversation(db: Session, tenant_id: int, customer_phone: str) -> Conversation | None:
    return (
        db.query(Conversation)
        .filter(Conversation.tenant_id == tenant_id, Conversation.customer_phone == customer_phone)
        .first()
    )


def get_or_create(
    db: Session,
    *,
    tenant_id: int,
    customer_phone: str,
    customer_name: str | None = None,
    customer_whatsapp_id: str | None = None,
) -> Conversation:
    conversation = find_conversation(db, tenant_id, customer_phone)
    if conversation is None:
        conversation = Conversation(
            tenant_id=tenant_id,
            customer_phone=customer_phone,
            customer_name=customer_name,
            customer_whatsapp_id=customer_whatsapp_id,
            state=ConversationState.GREETING.value,
            context={},
            cart=None,
            is_active=True,
            message_count=0,
        )
        db.add(conversation)
        try:
            db.commit()
        except IntegrityError:
            # another worker created it first
            db.rollback()
            conversation = find_conversation(db, tenant_id, customer_phone)
            if conversation is None:
                raise
        else:
            db.refresh(conversation)
            logger.info("Created conversation %s tenant=%s", conversation.id, tenant_id)
            return conversation

    if customer_name:
        conversation.customer_name = customer_name
    if customer_whatsapp_id:
        conversation.customer_whatsapp_id = customer_whatsapp_id
    if not conversation.is_active:
        conversation.is_active = True
        conversation.state = ConversationState.GREETING.value
        conversation.cart = None
        conversation.outcome = None
        conversation.clear_handoff()
        logger.info("Reactivated conversation %s tenant=%s", conversation.id, tenant_id)
    db.add(conversation)
    db.commit()
    return conversation


def save_inbound(db: Session, conversation: Conversation, inbound: dict[str, Any]) -> ConversationMessage:
    message = ConversationMessage(
        conversation_id=conversation.id,
        direction="inbound",
        message_type=inbound.get("message_type") or "text",
        content=inbound.get("text") or "",
        media_url=inbound.get("media_id"),
        whatsapp_message_id=inbound.get("message_id"),
    )
    conversation.increment_message_count()
    db.add(message)
    db.add(conversation)
    db.commit()
    db.refresh(message)
    return message


def save_outbound(
    db: Session,
    conversation: Conversation,
    content: str,
    *,
    whatsapp_message_id: str | None = None,
    message_type: str = "text",
    intent: str | None = None,
) -> ConversationMessage:
    message = ConversationMessage(
        conversation_id=conversation.id,
        direction="outbound",
        message_type=message_type,
        content=content,
        whatsapp_message_id=whatsapp_message_id,
        intent_detected=intent,
    )
    conversation.increment_message_count()
    db.add(message)
    db.add(conversation)
    db.commit()
    return message


def recent_messages(
    db: Session,
    conversation_id: int,
    limit: int,
    *,
    exclude_id: int | None = None,
) -> list[ConversationMessage]:
    """Last ``limit`` messages in ascending order."""
    query = db.query(ConversationMessage).filter(ConversationMessage.conversation_id == conversation_id)
    if exclude_id is not None:
        query = query.filter(ConversationMessage.id != exclude_id)
    rows = (
        query.order_by(ConversationMessage.created_at.desc(), ConversationMessage.id.desc())
        .limit(limit)
        .all()
    )
    return list(reversed(rows))


def all_messages(db: Session, conversation_id: int) -> list[ConversationMessage]:
    return (
        db.query(ConversationMessage)
        .filter(ConversationMessage.conversation_id == conversation_id)
        .order_by(ConversationMessage.created_at.asc(), ConversationMessage.id.asc())
        .all()
    )


def is_handed_off(conversation: Conversation) -> bool:
    return bool(conversation.is_handed_off) or conversation.state == ConversationState.HANDED_OFF.value


def request_handoff(db: Session, conversation: Conversation, reason: str | None) -> Conversation:
    conversation.hand_off(reason)
    conversation.state = ConversationState.HANDED_OFF.value
    db.add(conversation)
    db.commit()
    logger.info("Conversation %s handed off: %s", conversation.id, reason)
    return conversation


def resolve_handoff(db: Session, conversation: Conversation) -> Conversation:
    conversation.clear_handoff()
    conversation.state = ConversationState.BROWSING.value
    conversation.is_active = True
    db.add(conversation)
    db.commit()
    logger.info("Conversation %s returned to the assistant", conversation.id)
    return conversation


def mark_abandoned(db: Session, conversation: Conversation) -> Conversation:
    conversation.mark_as_abandoned()
    conversation.state = ConversationState.ABANDONED.value
    db.add(conversation)
    db.commit()
    return conversation


def find_stale(db: Session, tenant_id: int | None, hours: int) -> list[Conversation]:
    cutoff = utcnow() - timedelta(hours=hours)
    query = db.query(Conversation).filter(
        Conversation.is_active.is_(True),
        Conversation.state.notin_(_TERMINAL_STATES),
        Conversation.last_message_at.isnot(None),
        Conversation.last_message_at < cutoff,
    )
    if tenant_id is not None:
        query = query.filter(Conversation.tenant_id == tenant_id)
    return query.order_by(Conversation.last_message_at.asc()).all()


def abandon_stale(db: Session, tenant_id: int | None, hours: int) -> int:
    stale = find_stale(db, tenant_id, hours)
    for conversation in stale:
        conversation.mark_as_abandoned()
        conversation.state = ConversationState.ABANDONED.value
        db.add(conversation)
    db.commit()
    if stale:
        logger.info("Abandoned %s stale conversations tenant=%s", len(stale), tenant_id)
    return len(stale)
