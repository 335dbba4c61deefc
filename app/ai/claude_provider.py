from __future__ import annotations

import logging
from typing import Any, Sequence

import httpx

from app.ai.base import TextCompletionError
from app.ai.schema import ChatMessage
from app.core.config import (
    AI_TIMEOUT_SECONDS,
    ANTHROPIC_API_KEY,
    ANTHROPIC_BASE_URL,
    ANTHROPIC_MAX_TOKENS,
    ANTHROPIC_MODEL,
    ANTHROPIC_TEMPERATURE,
)

logger = logging.getLogger(__name__)

ANTHROPIC_VERSION = "2023-06-01"


class ClaudeProvider:
    """Text completion over the Anthropic Messages API."""

    name = "claude"

    def __init__(
        self,
        *,
        api_key: str | None = None,
        model: str | None = None,
        base_url: str | None = None,
        max_tokens: int | None = None,
        temperature: float | None = None,
        timeout: float | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.api_key = ANTHROPIC_API_KEY if api_key is None else api_key
        self.model = model or ANTHROPIC_MODEL
        self.base_url = (base_url or ANTHROPIC_BASE_URL).rstrip("/")
        self.max_tokens = max_tokens or ANTHROPIC_MAX_TOKENS
        self.temperature = ANTHROPIC_TEMPERATURE if temperature is None else temperature
        self.timeout = timeout or AI_TIMEOUT_SECONDS
        self._transport = transport

    def is_configured(self) -> bool:
        return bool(self.api_key)

    def complete(self, system_prompt: str, messages: Sequence[ChatMessage]) -> str | None:
        if not self.is_configured():
            logger.warning("Text completion requested without an API key")
            return None

        payload: dict[str, Any] = {
            "model": self.model,
            "max_tokens": self.max_tokens,
            "temperature": self.temperature,
            "system": system_prompt,
            "messages": [message.model_dump() for message in messages],
        }
        headers = {
            "x-api-key": self.api_key,
            "anthropic-version": ANTHROPIC_VERSION,
            "content-type": "application/json",
        }

        try:
            with httpx.Client(timeout=self.timeout, transport=self._transport) as client:
                response = client.post(f"{self.base_url}/v1/messages", headers=headers, json=payload)
        except httpx.TimeoutException as exc:
            raise TextCompletionError(f"text completion timed out after {self.timeout}s") from exc
        except httpx.HTTPError as exc:
            raise TextCompletionError(f"text completion request failed: {exc}") from exc

        if response.status_code >= 400:
            raise TextCompletionError(f"text completion error {response.status_code}: {response.text[:300]}")

        try:
            data = response.json()
        except ValueError as exc:
            raise TextCompletionError("text completion returned invalid JSON") from exc

        return _extract_text(data)


def _extract_text(data: dict[str, Any]) -> str | None:
    parts = [
        block.get("text") or ""
        for block in data.get("content") or []
        if isinstance(block, dict) and block.get("type") == "text"
    ]
    text = "".join(parts).strip()
    return text or None
