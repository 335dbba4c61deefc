import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel
from sqlalchemy.orm import Session

from app.core.database import get_db
from app.models.order import WhatsAppOrder
from app.routers.webhook import get_whatsapp_service
from app.services.order_notifications import notify_customer, status_change_message
from app.services.orders import FULFILLMENT_STATUSES, list_orders, update_fulfillment
from app.whatsapp.service import WhatsAppService

router = APIRouter(prefix="/api/orders", tags=["orders"])
logger = logging.getLogger(__name__)

NOTIFIED_STATUSES = {"shipped", "delivered", "cancelled"}


class FulfillmentUpdate(BaseModel):
    status: str
    tracking_number: Optional[str] = None
    notify_customer: bool = True


def _order_to_dict(order: WhatsAppOrder) -> Dict[str, Any]:
    return {
        "id": order.id,
        "tenant_id": order.tenant_id,
        "order_number": order.order_number,
        "customer_name": order.customer_name,
        "customer_phone": order.customer_phone,
        "delivery_address": order.delivery_address,
        "delivery_area": order.delivery_area,
        "delivery_fee": str(order.delivery_fee),
        "items": order.items,
        "subtotal": str(order.subtotal),
        "discount_amount": str(order.discount_amount),
        "total": str(order.total),
        "payment_status": order.payment_status,
        "payment_method": order.payment_method,
        "payment_reference": order.payment_reference,
        "payment_link": order.payment_link,
        "paid_at": order.paid_at,
        "fulfillment_status": order.fulfillment_status,
        "tracking_number": order.tracking_number,
        "shipped_at": order.shipped_at,
        "delivered_at": order.delivered_at,
        "conversation_id": order.conversation_id,
        "source": order.source,
        "created_at": order.created_at,
    }


def _get_order(db: Session, order_id: int) -> WhatsAppOrder:
    order = db.query(WhatsAppOrder).filter(WhatsAppOrder.id == order_id).first()
    if order is None:
        raise HTTPException(status_code=404, detail="Order not found")
    return order


@router.get("")
def get_orders(
    tenant_id: int,
    payment_status: Optional[str] = None,
    limit: int = Query(50, ge=1, le=200),
    db: Session = Depends(get_db),
):
    return [_order_to_dict(order) for order in list_orders(db, tenant_id, payment_status=payment_status, limit=limit)]


@router.get("/{order_id}")
def get_order(order_id: int, db: Session = Depends(get_db)):
    return _order_to_dict(_get_order(db, order_id))


@router.patch("/{order_id}/fulfillment")
def update_order_fulfillment(
    order_id: int,
    body: FulfillmentUpdate,
    db: Session = Depends(get_db),
    whatsapp: WhatsAppService = Depends(get_whatsapp_service),
):
    order = _get_order(db, order_id)
    status = body.status.strip().lower()
    if status not in FULFILLMENT_STATUSES:
        raise HTTPException(status_code=400, detail=f"Unknown fulfillment status: {body.status}")
    if order.fulfillment_status in {"delivered", "cancelled"}:
        raise HTTPException(status_code=409, detail=f"Order is already {order.fulfillment_status}")

    update_fulfillment(db, order, status, tracking_number=body.tracking_number)
    logger.info(
        "Order %s fulfillment -> %s",
        order.order_number,
        status,
        extra={"order_number": order.order_number},
    )

    notified = False
    if body.notify_customer and status in NOTIFIED_STATUSES:
        notified = notify_customer(
            db,
            order,
            status_change_message(order, status),
            whatsapp=whatsapp,
            intent=f"order_{status}",
        )
    return {"order": _order_to_dict(order), "customer_notified": notified}
