import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from app.core.config import CONVERSATION_STALE_HOURS
from app.core.database import get_db
from app.fsm.cart import OrderContext
from app.fsm.states import ConversationState
from app.models.conversation import Conversation
from app.models.conversation_message import ConversationMessage
from app.routers.webhook import get_whatsapp_service
from app.services import conversations
from app.whatsapp.service import WhatsAppService

router = APIRouter(prefix="/api/conversations", tags=["conversations"])
logger = logging.getLogger(__name__)


class ManualMessageCreate(BaseModel):
    text: str = Field(..., min_length=1, max_length=4096)


class HandoffRequest(BaseModel):
    reason: Optional[str] = None


class ExpireStaleRequest(BaseModel):
    tenant_id: Optional[int] = None
    hours: int = Field(CONVERSATION_STALE_HOURS, ge=1)


class MessageRead(BaseModel):
    id: int
    direction: str
    message_type: str
    content: Optional[str]
    whatsapp_message_id: Optional[str]
    intent_detected: Optional[str]
    created_at: Optional[datetime]


def _conversation_to_dict(conversation: Conversation, *, include_cart: bool = False) -> Dict[str, Any]:
    data: Dict[str, Any] = {
        "id": conversation.id,
        "tenant_id": conversation.tenant_id,
        "customer_phone": conversation.customer_phone,
        "customer_name": conversation.customer_name,
        "state": conversation.state,
        "is_active": conversation.is_active,
        "is_handed_off": conversation.is_handed_off,
        "handed_off_reason": conversation.handed_off_reason,
        "outcome": conversation.outcome,
        "order_id": conversation.order_id,
        "message_count": conversation.message_count,
        "last_message_at": conversation.last_message_at,
        "created_at": conversation.created_at,
    }
    if include_cart:
        context = OrderContext.from_document(conversation.cart)
        data["cart"] = context.model_dump(mode="json")
        data["cart_summary"] = context.summary()
    return data


def _message_to_read(message: ConversationMessage) -> MessageRead:
    return MessageRead(
        id=message.id,
        direction=message.direction,
        message_type=message.message_type,
        content=message.content,
        whatsapp_message_id=message.whatsapp_message_id,
        intent_detected=message.intent_detected,
        created_at=message.created_at,
    )


def _get_conversation(db: Session, conversation_id: int) -> Conversation:
    conversation = db.query(Conversation).filter(Conversation.id == conversation_id).first()
    if conversation is None:
        raise HTTPException(status_code=404, detail="Conversation not found")
    return conversation


@router.get("")
def list_conversations(
    tenant_id: int,
    active: Optional[bool] = None,
    handed_off: Optional[bool] = None,
    limit: int = Query(50, ge=1, le=200),
    db: Session = Depends(get_db),
):
    query = db.query(Conversation).filter(Conversation.tenant_id == tenant_id)
    if active is not None:
        query = query.filter(Conversation.is_active.is_(active))
    if handed_off is not None:
        query = query.filter(Conversation.is_handed_off.is_(handed_off))
    rows = query.order_by(Conversation.last_message_at.desc(), Conversation.id.desc()).limit(limit).all()
    return [_conversation_to_dict(row) for row in rows]


@router.get("/{conversation_id}")
def get_conversation(conversation_id: int, db: Session = Depends(get_db)):
    return _conversation_to_dict(_get_conversation(db, conversation_id), include_cart=True)


@router.get("/{conversation_id}/messages", response_model=List[MessageRead])
def list_messages(conversation_id: int, db: Session = Depends(get_db)):
    conversation = _get_conversation(db, conversation_id)
    return [_message_to_read(message) for message in conversations.all_messages(db, conversation.id)]


@router.post("/{conversation_id}/messages", response_model=MessageRead)
def send_manual_message(
    conversation_id: int,
    body: ManualMessageCreate,
    db: Session = Depends(get_db),
    whatsapp: WhatsAppService = Depends(get_whatsapp_service),
):
    conversation = _get_conversation(db, conversation_id)
    result = whatsapp.send_text(
        db,
        tenant_id=conversation.tenant_id,
        to_phone=conversation.customer_phone,
        text=body.text,
    )
    if not result.ok:
        raise HTTPException(status_code=502, detail=f"Message not delivered: {result.error}")
    message = conversations.save_outbound(
        db,
        conversation,
        body.text,
        whatsapp_message_id=result.provider_message_id,
        intent="manual",
    )
    return _message_to_read(message)


@router.post("/{conversation_id}/handoff")
def handoff_conversation(conversation_id: int, body: HandoffRequest, db: Session = Depends(get_db)):
    conversation = _get_conversation(db, conversation_id)
    if conversations.is_handed_off(conversation):
        raise HTTPException(status_code=409, detail="Conversation is already handed off")
    conversations.request_handoff(db, conversation, body.reason or "Requested by operator")
    return _conversation_to_dict(conversation)


@router.post("/{conversation_id}/resolve")
def resolve_conversation(conversation_id: int, db: Session = Depends(get_db)):
    conversation = _get_conversation(db, conversation_id)
    if not conversations.is_handed_off(conversation):
        raise HTTPException(status_code=409, detail="Conversation is not handed off")
    conversations.resolve_handoff(db, conversation)
    return _conversation_to_dict(conversation)


@router.post("/{conversation_id}/close")
def close_conversation(conversation_id: int, db: Session = Depends(get_db)):
    conversation = _get_conversation(db, conversation_id)
    if conversation.state in {ConversationState.COMPLETED.value, ConversationState.ABANDONED.value}:
        raise HTTPException(status_code=409, detail="Conversation is already closed")
    conversations.mark_abandoned(db, conversation)
    logger.info("Conversation %s closed by operator", conversation.id)
    return _conversation_to_dict(conversation)


@router.post("/expire-stale")
def expire_stale_conversations(body: ExpireStaleRequest, db: Session = Depends(get_db)):
    expired = conversations.abandon_stale(db, body.tenant_id, body.hours)
    return {"expired": expired}
