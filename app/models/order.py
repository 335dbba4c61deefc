import sqlalchemy as sa
from sqlalchemy import Column, DateTime, ForeignKey, Integer, Numeric, String, Text, func
from sqlalchemy.dialects.postgresql import JSONB

from app.core.clock import utcnow
from app.core.database import Base


class WhatsAppOrder(Base):
    __tablename__ = "whatsapp_orders"

    id = Column(Integer, primary_key=True)
    tenant_id = Column(Integer, ForeignKey("tenants.id"), index=True, nullable=False)
    order_number = Column(String(50), unique=True, index=True, nullable=False)

    customer_name = Column(String, nullable=False)
    customer_phone = Column(String(20), index=True, nullable=False)
    customer_email = Column(String, nullable=True)

    delivery_address = Column(Text, nullable=False)
    delivery_area = Column(String(100), nullable=True)
    delivery_fee = Column(Numeric(10, 2), nullable=False, default=0)
    delivery_notes = Column(Text, nullable=True)

    # snapshot of the cart lines at confirmation time
    items = Column(JSONB().with_variant(sa.JSON(), "sqlite"), nullable=False)
    subtotal = Column(Numeric(12, 2), nullable=False)
    discount_amount = Column(Numeric(12, 2), nullable=False, default=0)
    total = Column(Numeric(12, 2), nullable=False)

    payment_status = Column(String(20), nullable=False, default="pending")  # pending / paid / failed
    payment_method = Column(String(50), nullable=True)
    payment_reference = Column(String(100), index=True, nullable=True)
    payment_link = Column(Text, nullable=True)
    paid_at = Column(DateTime(timezone=True), nullable=True)

    fulfillment_status = Column(String(20), nullable=False, default="unfulfilled")
    shipped_at = Column(DateTime(timezone=True), nullable=True)
    delivered_at = Column(DateTime(timezone=True), nullable=True)
    tracking_number = Column(String(100), nullable=True)
    internal_notes = Column(Text, nullable=True)

    source = Column(String(20), nullable=False, default="whatsapp")
    conversation_id = Column(Integer, ForeignKey("conversations.id"), index=True, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    @property
    def is_paid(self) -> bool:
        return self.payment_status == "paid"

    def mark_as_paid(self, payment_reference: str | None, payment_method: str | None) -> None:
        self.payment_status = "paid"
        if payment_reference:
            self.payment_reference = payment_reference
        self.payment_method = payment_method
        self.paid_at = utcnow()

    def mark_as_shipped(self, tracking_number: str | None = None) -> None:
        self.fulfillment_status = "shipped"
        self.tracking_number = tracking_number
        self.shipped_at = utcnow()

    def mark_as_delivered(self) -> None:
        self.fulfillment_status = "delivered"
        self.delivered_at = utcnow()

    def cancel(self) -> None:
        self.fulfillment_status = "cancelled"
