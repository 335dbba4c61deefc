from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String, func

from app.core.database import Base


class WhatsAppConfig(Base):
    __tablename__ = "whatsapp_config"

    id = Column(Integer, primary_key=True)
    tenant_id = Column(Integer, ForeignKey("tenants.id"), index=True, nullable=False, unique=True)
    provider = Column(String, nullable=False, default="mock")  # mock / cloud
    # Receiving channel identifier; inbound webhooks are routed to a tenant by it
    phone_number_id = Column(String, nullable=True, unique=True, index=True)
    display_phone_number = Column(String, nullable=True)
    waba_id = Column(String, nullable=True)
    access_token = Column(String, nullable=True)
    verify_token = Column(String, nullable=True)
    is_enabled = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
