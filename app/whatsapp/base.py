from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol

from app.models.whatsapp_config import WhatsAppConfig


@dataclass
class WhatsAppSendResult:
    status: str
    provider_message_id: str | None = None
    error: str | None = None
    response_payload: dict[str, Any] | None = None

    @property
    def ok(self) -> bool:
        return self.status == "sent"


class WhatsAppProvider(Protocol):
    def send_text(
        self,
        *,
        tenant_id: int,
        config: WhatsAppConfig | None,
        to_phone: str,
        text: str,
    ) -> WhatsAppSendResult:
        ...

    def mark_read(
        self,
        *,
        tenant_id: int,
        config: WhatsAppConfig | None,
        message_id: str,
    ) -> bool:
        ...


SECRET_KEYS = {"access_token", "verify_token", "authorization", "token"}
# customer phone numbers keep their last 4 digits in logs
PHONE_KEYS = {"to", "from", "wa_id", "recipient_id", "customer_phone"}


def mask_phone(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value)
    return "****" if len(text) <= 4 else f"****{text[-4:]}"


def sanitize_payload(payload: Any) -> Any:
    """Copy of a Graph API payload that is safe to log."""
    if isinstance(payload, list):
        return [sanitize_payload(item) for item in payload]
    if not isinstance(payload, dict):
        return payload
    cleaned: dict[str, Any] = {}
    for key, value in payload.items():
        lowered = str(key).lower()
        if lowered in SECRET_KEYS:
            cleaned[key] = "***"
        elif lowered in PHONE_KEYS:
            cleaned[key] = mask_phone(value)
        else:
            cleaned[key] = sanitize_payload(value)
    return cleaned
