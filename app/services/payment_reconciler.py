from __future__ import annotations

import logging
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.orm import Session

from app.core.metrics import request_metrics
from app.core.request_context import set_request_context
from app.fsm.engine import ConversationStateMachine
from app.models.conversation import Conversation
from app.models.order import WhatsAppOrder
from app.services.conversation_locks import conversation_locks
from app.services.order_notifications import notify_customer, payment_confirmation_message
from app.services.orders import order_number_from_reference
from app.whatsapp.service import WhatsAppService

logger = logging.getLogger(__name__)

CHARGE_SUCCESS = "charge.success"


class PaystackData(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: Optional[int] = None
    status: Optional[str] = None
    reference: Optional[str] = None
    amount: Optional[int] = None
    channel: Optional[str] = None
    currency: Optional[str] = None
    paid_at: Optional[str] = None
    gateway_response: Optional[str] = None
    metadata: Optional[dict[str, Any]] = None

    @property
    def order_number(self) -> str | None:
        return order_number_from_reference(self.reference) or self.reference


class PaystackWebhookEvent(BaseModel):
    model_config = ConfigDict(extra="ignore")

    event: str
    data: PaystackData = Field(default_factory=PaystackData)

    @property
    def is_successful_charge(self) -> bool:
        return self.event == CHARGE_SUCCESS and (self.data.status or "").lower() == "success"


def find_order(db: Session, data: PaystackData) -> WhatsAppOrder | None:
    order = None
    if data.order_number:
        order = db.query(WhatsAppOrder).filter(WhatsAppOrder.order_number == data.order_number).first()
    if order is None and data.reference:
        order = db.query(WhatsAppOrder).filter(WhatsAppOrder.payment_reference == data.reference).first()
    return order


def handle_payment_success(
    db: Session,
    event: PaystackWebhookEvent,
    *,
    whatsapp: WhatsAppService | None = None,
) -> WhatsAppOrder | None:
    """Mark the order paid, complete its conversation and confirm to the customer.

    Returns the order when it was updated, ``None`` when the event was dropped
    (no matching order, or already paid).
    """
    data = event.data
    if not data.reference:
        logger.warning("Payment success event without reference")
        return None

    order = find_order(db, data)
    if order is None:
        logger.warning("No order found for payment reference %s", data.reference)
        return None

    set_request_context(tenant_id=order.tenant_id, conversation_id=order.conversation_id)
    if order.is_paid:
        logger.info("Order %s already paid, ignoring redelivery", order.order_number)
        request_metrics.increment("payment_duplicates", tenant_id=order.tenant_id)
        return None

    order.mark_as_paid(data.reference, data.channel or "paystack")
    db.add(order)
    db.commit()
    request_metrics.increment("payments_reconciled", tenant_id=order.tenant_id)
    logger.info(
        "Order %s marked paid via %s",
        order.order_number,
        order.payment_method,
        extra={"order_number": order.order_number},
    )

    if order.conversation_id is not None:
        # same lock as the inbound turn, so the two never interleave on one conversation
        with conversation_locks.hold(order.tenant_id, order.customer_phone):
            conversation = db.query(Conversation).filter(Conversation.id == order.conversation_id).first()
            if conversation is not None:
                try:
                    ConversationStateMachine(db).complete_order(conversation, order.order_number, order.id)
                except Exception:
                    # the payment stays recorded
                    db.rollback()
                    logger.exception("Failed to complete conversation %s", conversation.id)

    notify_customer(
        db,
        order,
        payment_confirmation_message(order, data.channel),
        whatsapp=whatsapp,
        intent="payment_confirmed",
    )
    return order
