from __future__ import annotations

import logging
from typing import Sequence

from sqlalchemy.orm import Session

from app.ai.base import TextCompletionError, TextCompletionProvider
from app.ai.claude_provider import ClaudeProvider
from app.ai.fallback import FallbackResponder
from app.ai.markers import CommandExtractor
from app.ai.prompts import build_message_history, build_system_prompt
from app.ai.schema import AgentResponse
from app.core.metrics import request_metrics
from app.fsm.engine import ConversationStateMachine
from app.models.conversation import Conversation
from app.models.conversation_message import ConversationMessage
from app.models.tenant import Tenant
from app.services import catalog
from app.services.agent_settings import get_agent_settings

logger = logging.getLogger(__name__)


def get_provider() -> TextCompletionProvider:
    return ClaudeProvider()


class SalesAgentService:
    """Runs one sales-assistant turn for a conversation.

    The text backend is asked first; when it is disabled, unconfigured,
    fails or answers with nothing, the deterministic fallback answers
    instead so the order flow keeps working.
    """

    def __init__(self, db: Session, provider: TextCompletionProvider | None = None) -> None:
        self.db = db
        self.provider = provider or get_provider()

    def run_turn(
        self,
        conversation: Conversation,
        message: str,
        history: Sequence[ConversationMessage] = (),
    ) -> AgentResponse:
        settings = get_agent_settings(self.db, conversation.tenant_id)
        state_machine = ConversationStateMachine(self.db, settings)
        products = catalog.find_active_by_tenant(self.db, conversation.tenant_id)

        if settings.ai_enabled and self.provider.is_configured():
            tenant = self.db.query(Tenant).filter(Tenant.id == conversation.tenant_id).first()
            system_prompt = build_system_prompt(
                business_name=tenant.display_name if tenant else "our store",
                settings=settings,
                products=products,
                context=state_machine.get_order_context(conversation),
                state=state_machine.get_state(conversation),
            )
            raw_text = self._complete(system_prompt, build_message_history(history, message), conversation)
            if raw_text:
                response = CommandExtractor(state_machine).apply(conversation, raw_text)
                if not response.message and response.new_state is not None and response.order_context:
                    # markers only; the cart already changed so the fallback must not run again
                    response.message = response.order_context.summary()
                if response.message or response.requires_payment_link or response.requires_handoff:
                    return response
                logger.warning("Text backend reply was empty after marker extraction conversation=%s", conversation.id)

        request_metrics.increment("fallback_replies", tenant_id=conversation.tenant_id)
        return FallbackResponder(state_machine).respond(
            conversation,
            message,
            settings=settings,
            products=products,
        )

    def _complete(self, system_prompt, messages, conversation: Conversation) -> str | None:
        try:
            return self.provider.complete(system_prompt, messages)
        except TextCompletionError as exc:
            logger.warning(
                "Text backend unavailable, using fallback conversation=%s: %s",
                conversation.id,
                exc,
                extra={"integration": self.provider.name},
            )
        except Exception:
            logger.exception("Unexpected text backend failure conversation=%s", conversation.id)
        return None
