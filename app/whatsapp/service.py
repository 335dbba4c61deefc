from __future__ import annotations

import logging

from sqlalchemy.orm import Session

from app.core.config import IS_DEV
from app.models.whatsapp_config import WhatsAppConfig
from app.whatsapp.base import WhatsAppProvider, WhatsAppSendResult
from app.whatsapp.cloud_provider import CloudWhatsAppProvider
from app.whatsapp.mock_provider import MockWhatsAppProvider

logger = logging.getLogger(__name__)


class WhatsAppService:
    def __init__(
        self,
        *,
        cloud_provider: WhatsAppProvider | None = None,
        mock_provider: MockWhatsAppProvider | None = None,
        fallback_to_mock: bool | None = None,
    ) -> None:
        self._mock_provider = mock_provider or MockWhatsAppProvider()
        self._cloud_provider = cloud_provider or CloudWhatsAppProvider()
        self._fallback_to_mock = IS_DEV if fallback_to_mock is None else fallback_to_mock

    def get_config(self, db: Session, tenant_id: int) -> WhatsAppConfig | None:
        return db.query(WhatsAppConfig).filter(WhatsAppConfig.tenant_id == tenant_id).first()

    def find_config_by_phone_number_id(self, db: Session, phone_number_id: str | None) -> WhatsAppConfig | None:
        if not phone_number_id:
            return None
        return db.query(WhatsAppConfig).filter(WhatsAppConfig.phone_number_id == phone_number_id).first()

    def _select_provider(self, config: WhatsAppConfig | None) -> WhatsAppProvider:
        if not config or not config.is_enabled:
            return self._mock_provider
        if config.provider == "cloud" and config.access_token and config.phone_number_id:
            return self._cloud_provider
        return self._mock_provider

    def send_text(self, db: Session, *, tenant_id: int, to_phone: str, text: str) -> WhatsAppSendResult:
        config = self.get_config(db, tenant_id)
        provider = self._select_provider(config)
        result = provider.send_text(tenant_id=tenant_id, config=config, to_phone=to_phone, text=text)
        if not result.ok and provider is self._cloud_provider and self._fallback_to_mock:
            logger.warning("WhatsApp Cloud send failed, using mock (tenant=%s): %s", tenant_id, result.error)
            return self._mock_provider.send_text(tenant_id=tenant_id, config=config, to_phone=to_phone, text=text)
        return result

    def mark_read(self, db: Session, *, tenant_id: int, message_id: str) -> bool:
        config = self.get_config(db, tenant_id)
        provider = self._select_provider(config)
        try:
            return provider.mark_read(tenant_id=tenant_id, config=config, message_id=message_id)
        except Exception:
            logger.exception("WhatsApp mark_read failed tenant=%s", tenant_id)
            return False
