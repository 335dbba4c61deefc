from __future__ import annotations

import logging
import uuid
from typing import Any

from app.models.whatsapp_config import WhatsAppConfig
from app.whatsapp.base import WhatsAppSendResult

logger = logging.getLogger(__name__)


class MockWhatsAppProvider:
    """Keeps outbound messages in memory instead of calling Meta.

    Used for tenants without cloud credentials and in tests.
    """

    def __init__(self) -> None:
        self.sent: list[dict[str, Any]] = []
        self.read: list[str] = []

    def send_text(
        self,
        *,
        tenant_id: int,
        config: WhatsAppConfig | None,
        to_phone: str,
        text: str,
    ) -> WhatsAppSendResult:
        provider_message_id = f"mock-{uuid.uuid4().hex[:10]}"
        self.sent.append(
            {
                "tenant_id": tenant_id,
                "to": to_phone,
                "text": text,
                "provider_message_id": provider_message_id,
            }
        )
        logger.info("Mock WhatsApp send tenant=%s to=%s", tenant_id, to_phone)
        return WhatsAppSendResult(status="sent", provider_message_id=provider_message_id)

    def mark_read(
        self,
        *,
        tenant_id: int,
        config: WhatsAppConfig | None,
        message_id: str,
    ) -> bool:
        self.read.append(message_id)
        return True

