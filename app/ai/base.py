from __future__ import annotations

from typing import Protocol, Sequence

from app.ai.schema import ChatMessage


class TextCompletionError(RuntimeError):
    """Raised by providers when the backend is unreachable or answers with an error."""


class TextCompletionProvider(Protocol):
    name: str

    def is_configured(self) -> bool:
        ...

    def complete(self, system_prompt: str, messages: Sequence[ChatMessage]) -> str | None:
        ...
