from __future__ import annotations

import logging
import time
from typing import Any

import httpx

from app.core.config import META_API_VERSION, META_GRAPH_BASE_URL, META_WA_ACCESS_TOKEN, META_WA_PHONE_NUMBER_ID
from app.models.whatsapp_config import WhatsAppConfig
from app.services.tenant_backoff import InMemoryTenantBackoffService
from app.whatsapp.base import WhatsAppSendResult, sanitize_payload

logger = logging.getLogger(__name__)
_backoff_service = InMemoryTenantBackoffService()

MEDIA_TYPES = ("image", "audio", "video", "document", "sticker")


def extract_content(msg: dict[str, Any]) -> str:
    msg_type = msg.get("type") or "text"
    if msg_type == "text":
        return ((msg.get("text") or {}).get("body")) or ""
    if msg_type == "image":
        return ((msg.get("image") or {}).get("caption")) or "[Image]"
    if msg_type == "audio":
        return "[Audio message]"
    if msg_type == "document":
        filename = (msg.get("document") or {}).get("filename")
        return f"[Document: {filename}]" if filename else "[Document]"
    if msg_type == "interactive":
        interactive = msg.get("interactive") or {}
        reply = interactive.get("button_reply") or interactive.get("list_reply") or {}
        return reply.get("title") or "[Interactive]"
    if msg_type == "button":
        return ((msg.get("button") or {}).get("text")) or "[Button]"
    return f"[Unsupported message type: {msg_type}]"


def parse_cloud_webhook(payload: dict[str, Any]) -> list[dict[str, Any]]:
    messages: list[dict[str, Any]] = []
    for entry in payload.get("entry", []) or []:
        for change in entry.get("changes", []) or []:
            value = change.get("value") or {}
            metadata = value.get("metadata") or {}
            phone_number_id = metadata.get("phone_number_id")
            display_phone_number = metadata.get("display_phone_number")

            contacts = {
                contact.get("wa_id"): contact
                for contact in value.get("contacts") or []
                if isinstance(contact, dict)
            }

            for msg in value.get("messages", []) or []:
                msg_type = msg.get("type") or "text"
                message_id = msg.get("id")
                from_number = msg.get("from")
                if not message_id or not from_number:
                    continue
                contact = contacts.get(from_number) or next(iter(contacts.values()), {})
                media_id = ((msg.get(msg_type) or {}).get("id")) if msg_type in MEDIA_TYPES else None
                messages.append(
                    {
                        "message_id": message_id,
                        "from_number": from_number,
                        "text": extract_content(msg).strip(),
                        "message_type": msg_type,
                        "media_id": media_id,
                        "phone_number_id": phone_number_id,
                        "display_phone_number": display_phone_number,
                        "contact_name": ((contact.get("profile") or {}).get("name")) or None,
                        "wa_id": contact.get("wa_id") or from_number,
                    }
                )
    return messages


def parse_status_updates(payload: dict[str, Any]) -> list[dict[str, Any]]:
    statuses: list[dict[str, Any]] = []
    for entry in payload.get("entry", []) or []:
        for change in entry.get("changes", []) or []:
            value = change.get("value") or {}
            for status in value.get("statuses", []) or []:
                statuses.append(
                    {
                        "message_id": status.get("id"),
                        "status": status.get("status"),
                        "recipient_id": status.get("recipient_id"),
                        "errors": status.get("errors") or [],
                    }
                )
    return statuses


class CloudWhatsAppProvider:
    MAX_RETRIES = 3
    INTEGRATION_NAME = "whatsapp_cloud"

    def __init__(self, *, transport: httpx.BaseTransport | None = None, sleep=time.sleep) -> None:
        self._transport = transport
        self._sleep = sleep

    def send_text(
        self,
        *,
        tenant_id: int,
        config: WhatsAppConfig | None,
        to_phone: str,
        text: str,
    ) -> WhatsAppSendResult:
        payload = {
            "messaging_product": "whatsapp",
            "recipient_type": "individual",
            "to": to_phone,
            "type": "text",
            "text": {"preview_url": False, "body": text},
        }
        return self._send(tenant_id=tenant_id, config=config, payload=payload)

    def mark_read(
        self,
        *,
        tenant_id: int,
        config: WhatsAppConfig | None,
        message_id: str,
    ) -> bool:
        phone_number_id, access_token = _credentials(config)
        if not phone_number_id or not access_token:
            return False
        payload = {"messaging_product": "whatsapp", "status": "read", "message_id": message_id}
        try:
            with httpx.Client(timeout=10.0, transport=self._transport) as client:
                response = client.post(_messages_url(phone_number_id), headers=_headers(access_token), json=payload)
        except httpx.HTTPError as exc:
            logger.warning("WhatsApp mark_read failed tenant=%s: %s", tenant_id, exc)
            return False
        if response.status_code >= 400:
            logger.warning("WhatsApp mark_read rejected tenant=%s status=%s", tenant_id, response.status_code)
            return False
        return True

    def _send(
        self,
        *,
        tenant_id: int,
        config: WhatsAppConfig | None,
        payload: dict[str, Any],
    ) -> WhatsAppSendResult:
        phone_number_id, access_token = _credentials(config)
        if not phone_number_id or not access_token:
            return WhatsAppSendResult(status="failed", error="WhatsApp Cloud credentials are incomplete")

        url = _messages_url(phone_number_id)
        headers = _headers(access_token)
        last_error: str | None = None

        for attempt in range(1, self.MAX_RETRIES + 1):
            decision = _backoff_service.before_request(tenant_id=tenant_id, integration=self.INTEGRATION_NAME)
            if decision.delay_seconds > 0:
                logger.warning(
                    "tenant integration backoff activated",
                    extra={
                        "tenant_id": tenant_id,
                        "integration": self.INTEGRATION_NAME,
                        "delay_seconds": decision.delay_seconds,
                        "consecutive_failures": decision.consecutive_failures,
                    },
                )
                self._sleep(decision.delay_seconds)

            try:
                with httpx.Client(timeout=20.0, transport=self._transport) as client:
                    response = client.post(url, headers=headers, json=payload)

                if 200 <= response.status_code < 300:
                    _backoff_service.register_success(tenant_id=tenant_id, integration=self.INTEGRATION_NAME)
                    try:
                        data = response.json()
                    except ValueError:
                        data = {"raw": response.text}
                    provider_id = ((data.get("messages") or [{}])[0].get("id")) if isinstance(data, dict) else None
                    return WhatsAppSendResult(status="sent", provider_message_id=provider_id, response_payload=data)

                last_error = f"WhatsApp error {response.status_code}: {response.text[:300]}"
                # 4xx other than throttling will not succeed on retry
                if 400 <= response.status_code < 500 and response.status_code != 429:
                    self._register_failure(tenant_id)
                    break
            except httpx.HTTPError as exc:
                last_error = str(exc)

            self._register_failure(tenant_id)
            if attempt >= self.MAX_RETRIES:
                break

        logger.warning(
            "WhatsApp send failed tenant=%s payload=%s error=%s",
            tenant_id,
            sanitize_payload({"to": payload.get("to"), "type": payload.get("type")}),
            last_error,
            extra={"integration": self.INTEGRATION_NAME},
        )
        return WhatsAppSendResult(status="failed", error=last_error)

    def _register_failure(self, tenant_id: int) -> None:
        failures = _backoff_service.register_failure(tenant_id=tenant_id, integration=self.INTEGRATION_NAME)
        if failures == _backoff_service.threshold:
            logger.warning(
                "tenant integration failure threshold reached",
                extra={
                    "tenant_id": tenant_id,
                    "integration": self.INTEGRATION_NAME,
                    "consecutive_failures": failures,
                },
            )


def _credentials(config: WhatsAppConfig | None) -> tuple[str | None, str | None]:
    if config is not None and config.phone_number_id and config.access_token:
        return config.phone_number_id, config.access_token
    phone_number_id = (config.phone_number_id if config is not None else None) or META_WA_PHONE_NUMBER_ID
    return phone_number_id or None, META_WA_ACCESS_TOKEN or None


def _messages_url(phone_number_id: str) -> str:
    return f"{META_GRAPH_BASE_URL}/{META_API_VERSION}/{phone_number_id}/messages"


def _headers(access_token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {access_token}", "Content-Type": "application/json"}
