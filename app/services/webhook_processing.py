"""Background processing of WhatsApp and Paystack webhook deliveries.

Each inbound message (and each payment event) is an isolated unit of work
with its own database session: a failure is logged and rolled back without
affecting sibling messages from the same delivery.
"""
from __future__ import annotations

import logging
from threading import Lock
from typing import Any, Callable

from sqlalchemy.orm import Session

from app.ai.service import SalesAgentService
from app.core.config import CONVERSATION_HISTORY_LIMIT, META_WA_PHONE_NUMBER_ID
from app.core.database import SessionLocal
from app.core.metrics import request_metrics
from app.core.request_context import clear_request_context, set_request_context
from app.services import conversations
from app.services.conversation_locks import conversation_locks
from app.services.orders import create_order_from_conversation
from app.services.payment_reconciler import PaystackWebhookEvent, handle_payment_success
from app.whatsapp.cloud_provider import parse_cloud_webhook, parse_status_updates
from app.whatsapp.service import WhatsAppService

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], Session]

_payment_lock = Lock()


def resolve_tenant_id(db: Session, whatsapp: WhatsAppService, phone_number_id: str | None) -> int | None:
    config = whatsapp.find_config_by_phone_number_id(db, phone_number_id)
    if config is not None:
        return config.tenant_id
    if phone_number_id and phone_number_id == META_WA_PHONE_NUMBER_ID:
        logger.debug("Message to the platform number %s without a tenant mapping", phone_number_id)
    else:
        logger.warning("No tenant mapped to phone_number_id=%s", phone_number_id)
    return None


def process_inbound_message(
    db: Session,
    inbound: dict[str, Any],
    *,
    whatsapp: WhatsAppService | None = None,
    agent: SalesAgentService | None = None,
) -> str:
    """One turn for one inbound message. Returns a short outcome label."""
    whatsapp = whatsapp or WhatsAppService()
    message_id = inbound.get("message_id")

    if conversations.is_message_processed(db, message_id):
        request_metrics.increment("inbound_duplicates")
        logger.info("Skipping duplicate message", extra={"message_id": message_id})
        return "duplicate"

    tenant_id = resolve_tenant_id(db, whatsapp, inbound.get("phone_number_id"))
    if tenant_id is None:
        return "ignored"
    set_request_context(tenant_id=tenant_id)

    customer_phone = inbound["from_number"]
    with conversation_locks.hold(tenant_id, customer_phone):
        # a concurrent delivery of the same message may have won the lock first
        if conversations.is_message_processed(db, message_id):
            request_metrics.increment("inbound_duplicates", tenant_id=tenant_id)
            return "duplicate"

        conversation = conversations.get_or_create(
            db,
            tenant_id=tenant_id,
            customer_phone=customer_phone,
            customer_name=inbound.get("contact_name"),
            customer_whatsapp_id=inbound.get("wa_id"),
        )
        set_request_context(conversation_id=conversation.id)
        saved = conversations.save_inbound(db, conversation, inbound)
        request_metrics.increment("inbound_processed", tenant_id=tenant_id)

        if message_id:
            whatsapp.mark_read(db, tenant_id=tenant_id, message_id=message_id)

        if conversations.is_handed_off(conversation):
            logger.info("Conversation %s is handed off, no automated reply", conversation.id)
            return "handed_off"

        history = conversations.recent_messages(
            db,
            conversation.id,
            CONVERSATION_HISTORY_LIMIT,
            exclude_id=saved.id,
        )
        agent = agent or SalesAgentService(db)
        response = agent.run_turn(conversation, inbound.get("text") or "", history)

        if response.requires_handoff:
            conversations.request_handoff(db, conversation, response.handoff_reason)
        elif response.new_state is not None and conversation.state != response.new_state.value:
            conversation.state = response.new_state.value
            db.add(conversation)
            db.commit()

        reply = response.message
        if response.requires_payment_link:
            result = create_order_from_conversation(db, conversation, whatsapp=whatsapp)
            if result.success:
                return "order_created"
            reply = f"{reply}\n\n{result.message}" if reply else result.message

        if not reply:
            return "no_reply"

        send_result = whatsapp.send_text(db, tenant_id=tenant_id, to_phone=customer_phone, text=reply)
        if send_result.ok:
            conversations.save_outbound(
                db,
                conversation,
                reply,
                whatsapp_message_id=send_result.provider_message_id,
                intent="fallback" if response.used_fallback else "assistant",
            )
            return "replied"

        logger.warning("Reply not delivered conversation=%s: %s", conversation.id, send_result.error)
        return "send_failed"


def process_whatsapp_payload(
    payload: dict[str, Any],
    *,
    session_factory: SessionFactory = SessionLocal,
    whatsapp: WhatsAppService | None = None,
    agent_factory: Callable[[Session], SalesAgentService] | None = None,
) -> dict[str, int]:
    """Processes every message in a webhook delivery; never raises."""
    outcomes: dict[str, int] = {}

    for status in parse_status_updates(payload):
        logger.info(
            "WhatsApp status %s for message %s",
            status.get("status"),
            status.get("message_id"),
            extra={"message_id": status.get("message_id")},
        )

    for inbound in parse_cloud_webhook(payload):
        db = session_factory()
        try:
            agent = agent_factory(db) if agent_factory else None
            outcome = process_inbound_message(db, inbound, whatsapp=whatsapp, agent=agent)
        except Exception:
            db.rollback()
            request_metrics.increment("inbound_failed")
            logger.exception("Failed to process inbound message", extra={"message_id": inbound.get("message_id")})
            outcome = "failed"
        finally:
            db.close()
            clear_request_context()
        outcomes[outcome] = outcomes.get(outcome, 0) + 1

    return outcomes


def process_payment_event(
    payload: dict[str, Any],
    *,
    session_factory: SessionFactory = SessionLocal,
    whatsapp: WhatsAppService | None = None,
) -> bool:
    """Reconciles one Paystack event; never raises. Returns True when an order was updated."""
    try:
        event = PaystackWebhookEvent.model_validate(payload)
    except ValueError:
        logger.warning("Unparseable Paystack event ignored")
        return False

    if not event.is_successful_charge:
        logger.info("Ignoring Paystack event %s", event.event)
        return False

    db = session_factory()
    try:
        with _payment_lock:
            return handle_payment_success(db, event, whatsapp=whatsapp) is not None
    except Exception:
        db.rollback()
        logger.exception("Failed to reconcile payment reference=%s", event.data.reference)
        return False
    finally:
        db.close()
        clear_request_context()

