from __future__ import annotations

from typing import Literal, Optional

from pydantic import BaseModel, Field

from app.fsm.cart import OrderContext
from app.fsm.states import ConversationState


class ChatMessage(BaseModel):
    role: Literal["user", "assistant"]
    content: str = Field(..., min_length=1)


class AgentResponse(BaseModel):
    """Outcome of one sales-agent turn."""

    message: str = ""
    requires_handoff: bool = False
    handoff_reason: Optional[str] = None
    new_state: Optional[ConversationState] = None
    order_context: Optional[OrderContext] = None
    requires_payment_link: bool = False
    used_fallback: bool = False

    def hand_off(self, reason: str) -> None:
        self.requires_handoff = True
        self.handoff_reason = reason
