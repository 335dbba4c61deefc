from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any, List, Optional

from pydantic import BaseModel, Field, ValidationError
from sqlalchemy.orm import Session

from app.models.agent_config import AgentConfig

logger = logging.getLogger(__name__)

SETTINGS_VERSION = 1
PROMPT_DELIVERY_FEE_FALLBACK = Decimal("1500")


class DeliveryArea(BaseModel):
    name: str = Field(..., min_length=1)
    fee: Decimal = Field(..., ge=0)


class AgentSettings(BaseModel):
    """Typed view of a tenant's ``AgentConfig`` row with explicit defaults."""

    version: int = SETTINGS_VERSION
    ai_enabled: bool = True
    agent_name: str = "Ayo"
    greeting_message: Optional[str] = None
    emoji_usage: str = "moderate"
    language: str = "english_nigerian"
    negotiation_enabled: bool = True
    max_discount_percent: int = Field(10, ge=0, le=100)
    min_price_percent: int = Field(85, ge=0, le=100)
    delivery_areas: List[DeliveryArea] = Field(default_factory=list)
    default_delivery_fee: Optional[Decimal] = None
    dispatch_time: str = "24-48 hours"

    @classmethod
    def from_model(cls, config: AgentConfig | None) -> "AgentSettings":
        if config is None:
            return cls()
        values: dict[str, Any] = {}
        for field in cls.model_fields:
            if field == "delivery_areas":
                continue
            value = getattr(config, field, None)
            if value is not None:
                values[field] = value
        values["delivery_areas"] = _parse_areas(config.delivery_areas, tenant_id=config.tenant_id)
        return cls.model_validate(values)

    @property
    def prompt_delivery_fee(self) -> Decimal:
        if self.default_delivery_fee is None:
            return PROMPT_DELIVERY_FEE_FALLBACK
        return self.default_delivery_fee

    def find_area(self, area: str | None) -> DeliveryArea | None:
        if not area or not area.strip():
            return None
        wanted = area.strip().lower()
        for entry in self.delivery_areas:
            if entry.name.strip().lower() == wanted:
                return entry
        return None

    def detect_area(self, address: str | None) -> str | None:
        """Name of the first configured area mentioned in a free-text address."""
        if not address:
            return None
        lowered = address.lower()
        for entry in self.delivery_areas:
            if entry.name.strip() and entry.name.strip().lower() in lowered:
                return entry.name
        return None

    def resolve_delivery_fee(self, area: str | None) -> Decimal:
        match = self.find_area(area)
        if match is not None:
            return match.fee
        if self.default_delivery_fee is not None:
            return self.default_delivery_fee
        return Decimal("0")


def _parse_areas(raw: Any, *, tenant_id: int | None) -> list[DeliveryArea]:
    areas: list[DeliveryArea] = []
    for entry in raw or []:
        try:
            areas.append(DeliveryArea.model_validate(entry))
        except ValidationError:
            logger.warning("Ignoring invalid delivery area tenant=%s entry=%s", tenant_id, entry)
    return areas


def get_agent_settings(db: Session, tenant_id: int) -> AgentSettings:
    config = db.query(AgentConfig).filter(AgentConfig.tenant_id == tenant_id).first()
    return AgentSettings.from_model(config)
