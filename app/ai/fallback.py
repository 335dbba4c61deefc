"""Deterministic replies used when the text backend is unavailable.

Covers the full happy path on its own: greeting, prices, adding items by
"<qty> <product>", checkout, address capture and confirmation.
"""
from __future__ import annotations

import logging
import re
from typing import Sequence

from app.ai.schema import AgentResponse
from app.fsm.cart import format_naira
from app.fsm.engine import CartOperationResult, ConversationStateMachine
from app.fsm.states import ConversationState
from app.models.conversation import Conversation
from app.models.product import Product
from app.services import catalog
from app.services.agent_settings import AgentSettings

logger = logging.getLogger(__name__)

MAX_PRICE_LINES = 5
DEFAULT_GREETING = "Hello! Welcome to our store. How can I help you today?"
HANDOFF_REASON = "Customer requested human assistance"

ORDER_PATTERN = re.compile(r"(\d+)\s*(?:pieces?|pcs?|x)?\s*(?:of\s+)?(.+)", re.IGNORECASE)
GREETING_PATTERN = re.compile(
    r"\b(hi|hello|hey|good morning|good afternoon|good evening|howdy|greetings|what'?s up|wassup|sup)\b",
    re.IGNORECASE,
)
CONFIRM_WORDS = {"yes", "y", "yes please", "yeah", "yep", "ok", "okay", "sure"}
CHECKOUT_PATTERN = re.compile(
    r"\b(check ?out|proceed|done|that'?s all|that is all|nothing else|ready to pay)\b",
    re.IGNORECASE,
)
ADDRESS_HINT_PATTERN = re.compile(
    r"\b(street|st|road|rd|avenue|ave|close|crescent|way|lane|estate|drive|plaza|junction|off|"
    r"phase|block|flat|house|no)\b",
    re.IGNORECASE,
)

DEFAULT_REPLY = (
    "I'm here to help! You can:\n"
    "- View our products\n"
    "- Place an order\n"
    "- Ask about delivery\n\n"
    "What would you like to do?"
)


def _product_lines(products: Sequence[Product]) -> str:
    return "".join(f"- {product.name}: NGN {format_naira(product.price)}\n" for product in products)


def looks_like_address(text: str, settings: AgentSettings) -> bool:
    stripped = text.strip()
    if len(stripped) < 5 or stripped.endswith("?"):
        return False
    if any(char.isdigit() for char in stripped) or "," in stripped:
        return True
    if settings.detect_area(stripped):
        return True
    return bool(ADDRESS_HINT_PATTERN.search(stripped))


def parse_order_intent(text: str, products: Sequence[Product]) -> tuple[Product, int] | None:
    """Catalog product and quantity named by "<qty> <product>" or a want/order/buy phrase."""
    match = ORDER_PATTERN.search(text)
    if match is None and not any(word in text.lower() for word in ("want", "order", "buy")):
        return None

    quantity = 1
    query = text
    if match is not None:
        quantity = int(match.group(1))
        query = match.group(2).strip()

    product = catalog.match_product(products, query)
    if product is None:
        return None
    return product, quantity


class FallbackResponder:
    def __init__(self, state_machine: ConversationStateMachine) -> None:
        self.state_machine = state_machine

    def respond(
        self,
        conversation: Conversation,
        message: str,
        *,
        settings: AgentSettings,
        products: Sequence[Product],
    ) -> AgentResponse:
        text = (message or "").strip()
        lower = text.lower()
        state = self.state_machine.get_state(conversation)
        context = self.state_machine.get_order_context(conversation)

        if state == ConversationState.CONFIRMING_ORDER and (lower in CONFIRM_WORDS or "confirm" in lower):
            result = self.state_machine.confirm_order(conversation)
            return self._from_result(conversation, result)

        if ("cancel" in lower or "forget it" in lower or lower == "no") and state.is_ordering:
            result = self.state_machine.cancel_order(conversation)
            response = self._from_result(conversation, result)
            response.message = "No problem! Your order has been cancelled. Is there anything else I can help you with?"
            return response

        if "cart" in lower or ("order" in lower and "what" in lower):
            if context.is_empty:
                return self._reply(conversation, "Your cart is empty. Would you like to see our products?")
            return self._reply(conversation, context.summary())

        if (
            state == ConversationState.COLLECTING_ADDRESS
            and not context.is_empty
            and looks_like_address(text, settings)
            and parse_order_intent(text, products) is None
        ):
            return self._capture_address(conversation, text)

        added = self._try_order_intent(conversation, text, products)
        if added is not None:
            return added

        if not context.is_empty and state.can_add_to_cart and CHECKOUT_PATTERN.search(lower):
            result = self.state_machine.request_delivery_address(conversation)
            return self._from_result(conversation, result)

        if GREETING_PATTERN.search(lower):
            return self._reply(conversation, settings.greeting_message or DEFAULT_GREETING)

        if "price" in lower or "cost" in lower or "how much" in lower:
            if products:
                reply = "Here are our products:\n\n" + _product_lines(products[:MAX_PRICE_LINES])
                reply += "\nWhich one interests you?"
            else:
                reply = "I'd be happy to help with pricing! What product are you interested in?"
            return self._reply(conversation, reply)

        if "delivery" in lower or "address" in lower:
            if context.is_empty:
                return self._reply(
                    conversation,
                    f"We dispatch orders within {settings.dispatch_time}. Would you like to place an order?",
                )
            if state.can_add_to_cart:
                result = self.state_machine.request_delivery_address(conversation)
                response = self._from_result(conversation, result)
                if result.success:
                    response.message = "Please provide your delivery address and I'll calculate the delivery fee."
                return response
            return self._reply(conversation, "Please provide your delivery address and I'll calculate the delivery fee.")

        if "pay" in lower or "transfer" in lower:
            return self._reply(
                conversation,
                "Once you confirm your order, I'll send you a secure payment link. "
                "You can pay with card or bank transfer.",
            )

        if "help" in lower or "human" in lower or "speak" in lower:
            response = self._reply(conversation, "Let me connect you with our team. Someone will respond shortly!")
            response.hand_off(HANDOFF_REASON)
            return response

        if "thank" in lower:
            return self._reply(conversation, "You're welcome! Is there anything else I can help you with?")

        if "product" in lower or "menu" in lower or "list" in lower:
            if products:
                reply = "Here's what we have:\n\n" + _product_lines(products) + "\nWhich one would you like?"
            else:
                reply = "Our product catalog is being updated. Please check back soon!"
            return self._reply(conversation, reply)

        return self._reply(conversation, DEFAULT_REPLY)

    def _try_order_intent(
        self,
        conversation: Conversation,
        text: str,
        products: Sequence[Product],
    ) -> AgentResponse | None:
        intent = parse_order_intent(text, products)
        if intent is None:
            return None

        product, quantity = intent
        result = self.state_machine.add_to_cart(conversation, product.id, quantity)
        response = self._from_result(conversation, result)
        if result.success:
            response.message = (
                f"{result.message}\n\n{result.order_context.summary()}"
                "\n\nWould you like anything else, or should we proceed with delivery?"
            )
        return response

    def _capture_address(self, conversation: Conversation, address: str) -> AgentResponse:
        result = self.state_machine.set_delivery_address(conversation, address, None)
        if not result.success:
            return self._from_result(conversation, result)
        prepared = self.state_machine.prepare_for_confirmation(conversation)
        return self._from_result(conversation, prepared)

    def _from_result(self, conversation: Conversation, result: CartOperationResult) -> AgentResponse:
        response = self._reply(conversation, result.message)
        if result.success:
            response.new_state = result.new_state
            response.requires_payment_link = result.requires_payment_link
        return response

    def _reply(self, conversation: Conversation, message: str) -> AgentResponse:
        return AgentResponse(
            message=message,
            order_context=self.state_machine.get_order_context(conversation),
            used_fallback=True,
        )
