from __future__ import annotations

import logging
from decimal import Decimal

from sqlalchemy.orm import Session

from app.models.conversation import Conversation
from app.models.order import WhatsAppOrder
from app.services import conversations
from app.whatsapp.service import WhatsAppService

logger = logging.getLogger(__name__)

PAYMENT_METHOD_LABELS = {
    "card": "Card Payment",
    "bank": "Bank Payment",
    "ussd": "USSD Payment",
    "bank_transfer": "Bank Transfer",
    "qr": "QR Code Payment",
    "mobile_money": "Mobile Money",
}


def format_payment_method(channel: str) -> str:
    return PAYMENT_METHOD_LABELS.get(channel.lower(), channel)


def format_amount(value: Decimal | None) -> str:
    return f"₦{Decimal(value or 0):,.2f}"


def payment_confirmation_message(order: WhatsAppOrder, channel: str | None) -> str:
    text = "*Payment Confirmed!* \n\n"
    text += "Thank you for your payment. Your order is now being processed.\n\n"
    text += "*Order Details:*\n"
    text += f"Order #: {order.order_number}\n"
    text += f"Amount Paid: {format_amount(order.total)}\n"
    if channel:
        text += f"Payment Method: {format_payment_method(channel)}\n"
    text += f"\n*Delivery Address:*\n{order.delivery_address}\n\n"
    text += "We'll notify you when your order is shipped.\n\n"
    text += "If you have any questions, please reply to this chat."
    return text


def status_change_message(order: WhatsAppOrder, status: str) -> str:
    status = status.lower()
    if status == "shipped":
        text = "*Your Order Has Been Shipped!* \n\nGreat news! Your order is on its way.\n\n"
        text += f"Order #: {order.order_number}\n"
        if order.tracking_number:
            text += f"Tracking #: {order.tracking_number}\n"
        text += f"\n*Delivery Address:*\n{order.delivery_address}\n\n"
        return text + "You'll receive another notification when it's delivered."
    if status == "delivered":
        return (
            "*Order Delivered!* \n\nYour order has been successfully delivered!\n\n"
            f"Order #: {order.order_number}\n\n"
            "Thank you for shopping with us!\n"
            "We'd love to hear about your experience. Feel free to reply to this chat with any feedback."
        )
    if status == "cancelled":
        return (
            "*Order Cancelled*\n\nYour order has been cancelled.\n\n"
            f"Order #: {order.order_number}\n\n"
            "If you have any questions or if this was a mistake, please reply to this chat and we'll help you out."
        )
    return (
        f"*Order Update*\n\nYour order status has been updated to: {status}\n\n"
        f"Order #: {order.order_number}\n\n"
        "If you have any questions, please reply to this chat."
    )


def notify_customer(
    db: Session,
    order: WhatsAppOrder,
    text: str,
    *,
    whatsapp: WhatsAppService | None = None,
    intent: str | None = None,
) -> bool:
    """Best-effort delivery; failures are logged and reported as ``False``."""
    if not order.customer_phone:
        logger.warning("No customer phone for order %s", order.order_number)
        return False

    whatsapp = whatsapp or WhatsAppService()
    try:
        result = whatsapp.send_text(db, tenant_id=order.tenant_id, to_phone=order.customer_phone, text=text)
        if not result.ok:
            logger.warning(
                "Notification for order %s not delivered: %s",
                order.order_number,
                result.error,
                extra={"order_number": order.order_number},
            )
            return False

        if order.conversation_id is not None:
            conversation = db.query(Conversation).filter(Conversation.id == order.conversation_id).first()
            if conversation is not None:
                conversations.save_outbound(
                    db,
                    conversation,
                    text,
                    whatsapp_message_id=result.provider_message_id,
                    intent=intent,
                )
        return True
    except Exception:
        db.rollback()
        logger.exception("Failed to notify customer for order %s", order.order_number)
        return False
