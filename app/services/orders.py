from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass
from decimal import Decimal

from sqlalchemy.orm import Session

from app.core.clock import utcnow
from app.core.config import PAYSTACK_PAYER_EMAIL_DOMAIN
from app.core.metrics import request_metrics
from app.fsm.cart import OrderContext
from app.fsm.engine import ConversationStateMachine
from app.fsm.states import ConversationState
from app.models.conversation import Conversation
from app.models.order import WhatsAppOrder
from app.services import conversations
from app.services.paystack import PaystackClient, PaystackError
from app.whatsapp.service import WhatsAppService

logger = logging.getLogger(__name__)

DEFAULT_CUSTOMER_NAME = "WhatsApp Customer"
PAYMENT_REFERENCE_PREFIX = "WA-"
LINK_UNAVAILABLE = "Payment link unavailable - contact us for payment options"
PROCESSING_ERROR = "Sorry, there was an error processing your order. Please try again."

FULFILLMENT_STATUSES = ("unfulfilled", "processing", "shipped", "delivered", "cancelled")


@dataclass
class OrderCreationResult:
    success: bool
    message: str
    order: WhatsAppOrder | None = None
    payment_link: str | None = None


def generate_order_number() -> str:
    """Time ordered and collision resistant, e.g. ``20261019-143015123A1B2``."""
    now = utcnow()
    return f"{now:%Y%m%d}-{now:%H%M%S}{now.microsecond // 1000:03d}{secrets.token_hex(2).upper()}"


def payment_reference(order_number: str) -> str:
    return f"{PAYMENT_REFERENCE_PREFIX}{order_number}"


def order_number_from_reference(reference: str | None) -> str | None:
    if reference and reference.startswith(PAYMENT_REFERENCE_PREFIX):
        return reference[len(PAYMENT_REFERENCE_PREFIX):]
    return None


def _items_snapshot(context: OrderContext) -> list[dict]:
    return [
        {
            "product_id": item.product_id,
            "name": item.product_name,
            "quantity": item.quantity,
            "price": str(item.unit_price),
            "discount": str(item.discount_percent),
            "final_price": str(item.final_unit_price),
            "total": str(item.line_total),
        }
        for item in context.items
    ]


def build_payment_message(order: WhatsAppOrder, context: OrderContext, payment_link: str) -> str:
    text = f"*Order Confirmed!*\n\nOrder #: {order.order_number}\n\n{context.summary()}\n\n"
    if context.delivery_address:
        text += f"*Delivery to:* {context.delivery_address}\n\n"
    if payment_link.startswith("http"):
        text += (
            f"Please complete your payment using this secure link:\n{payment_link}\n\n"
            "You can pay with card or bank transfer. "
        )
    else:
        text += "Please contact us for payment options.\n\n"
    text += "We'll start preparing your order once payment is confirmed!"
    return text


def _payer_email(tenant_id: int) -> str:
    # customers are identified by phone only, Paystack still requires an email
    return f"whatsapp@{tenant_id}.{PAYSTACK_PAYER_EMAIL_DOMAIN}"


def create_order_from_conversation(
    db: Session,
    conversation: Conversation,
    *,
    whatsapp: WhatsAppService | None = None,
    paystack: PaystackClient | None = None,
) -> OrderCreationResult:
    state_machine = ConversationStateMachine(db)
    context = state_machine.get_order_context(conversation)

    if context.is_empty:
        return OrderCreationResult(success=False, message="Cannot create order - cart is empty")
    if not context.confirmed:
        return OrderCreationResult(success=False, message="Order has not been confirmed yet")
    if context.order_reference and conversation.order_id:
        existing = db.query(WhatsAppOrder).filter(WhatsAppOrder.id == conversation.order_id).first()
        if existing is not None:
            logger.info("Order %s already exists for conversation %s", existing.order_number, conversation.id)
            return OrderCreationResult(
                success=True,
                message=build_payment_message(existing, context, existing.payment_link or LINK_UNAVAILABLE),
                order=existing,
                payment_link=existing.payment_link,
            )

    whatsapp = whatsapp or WhatsAppService()
    paystack = paystack or PaystackClient()

    try:
        order = WhatsAppOrder(
            tenant_id=conversation.tenant_id,
            order_number=generate_order_number(),
            customer_name=conversation.customer_name or DEFAULT_CUSTOMER_NAME,
            customer_phone=conversation.customer_phone,
            delivery_address=context.delivery_address,
            delivery_area=context.delivery_area,
            delivery_fee=context.delivery_fee or Decimal("0"),
            delivery_notes=context.delivery_notes,
            items=_items_snapshot(context),
            subtotal=context.subtotal,
            discount_amount=context.total_discount,
            total=context.grand_total,
            payment_status="pending",
            fulfillment_status="unfulfilled",
            source="whatsapp_ai",
            conversation_id=conversation.id,
        )
        db.add(order)
        db.commit()
        db.refresh(order)

        reference = payment_reference(order.order_number)
        try:
            initialization = paystack.initialize_transaction(
                tenant_id=conversation.tenant_id,
                reference=reference,
                amount=context.grand_total,
                email=_payer_email(conversation.tenant_id),
                customer_name=conversation.customer_name or "Customer",
                metadata={
                    "order_number": order.order_number,
                    "conversation_id": conversation.id,
                    "tenant_id": conversation.tenant_id,
                },
            )
            payment_link = initialization.authorization_url
            order.payment_link = payment_link
            order.payment_reference = initialization.reference
        except PaystackError as exc:
            logger.warning(
                "Failed to create payment link for order %s: %s",
                order.order_number,
                exc,
                extra={"integration": "paystack", "order_number": order.order_number},
            )
            payment_link = LINK_UNAVAILABLE

        context.order_reference = order.order_number
        context.payment_link = payment_link
        conversation.order_id = order.id
        db.add(order)
        state_machine.save(conversation, context, ConversationState.AWAITING_PAYMENT)
        request_metrics.increment("orders_created", tenant_id=conversation.tenant_id)

        message = build_payment_message(order, context, payment_link)
        send_result = whatsapp.send_text(
            db,
            tenant_id=conversation.tenant_id,
            to_phone=conversation.customer_phone,
            text=message,
        )
        if send_result.ok:
            conversations.save_outbound(
                db,
                conversation,
                message,
                whatsapp_message_id=send_result.provider_message_id,
                intent="order_confirmed",
            )
        else:
            logger.warning(
                "Payment message not delivered for order %s: %s",
                order.order_number,
                send_result.error,
                extra={"order_number": order.order_number},
            )

        logger.info(
            "Created order %s from conversation %s",
            order.order_number,
            conversation.id,
            extra={"order_number": order.order_number},
        )
        return OrderCreationResult(success=True, message=message, order=order, payment_link=payment_link)
    except Exception:
        db.rollback()
        logger.exception("Failed to create order from conversation %s", conversation.id)
        return OrderCreationResult(success=False, message=PROCESSING_ERROR)


def list_orders(
    db: Session,
    tenant_id: int,
    *,
    payment_status: str | None = None,
    limit: int = 50,
) -> list[WhatsAppOrder]:
    query = db.query(WhatsAppOrder).filter(WhatsAppOrder.tenant_id == tenant_id)
    if payment_status:
        query = query.filter(WhatsAppOrder.payment_status == payment_status)
    return query.order_by(WhatsAppOrder.created_at.desc(), WhatsAppOrder.id.desc()).limit(limit).all()


def update_fulfillment(
    db: Session,
    order: WhatsAppOrder,
    status: str,
    *,
    tracking_number: str | None = None,
) -> WhatsAppOrder:
    if status not in FULFILLMENT_STATUSES:
        raise ValueError(f"Unknown fulfillment status: {status}")
    if status == "shipped":
        order.mark_as_shipped(tracking_number)
    elif status == "delivered":
        order.mark_as_delivered()
    elif status == "cancelled":
        order.cancel()
    else:
        order.fulfillment_status = status
    db.add(order)
    db.commit()
    db.refresh(order)
    return order
