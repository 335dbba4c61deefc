from __future__ import annotations

from typing import Iterable, Sequence

from app.ai.schema import ChatMessage
from app.fsm.cart import OrderContext, format_naira
from app.fsm.states import ConversationState
from app.models.conversation_message import ConversationMessage
from app.models.product import Product
from app.services.agent_settings import AgentSettings

LOW_STOCK_THRESHOLD = 5

_RULES = (
    "CRITICAL RULES:\n"
    "1. Keep responses SHORT (1-2 sentences max). WhatsApp users hate long messages.\n"
    "2. Be conversational and warm - use light Nigerian English flavor.\n"
    "3. Always guide toward a purchase - ask if they want to order, offer help.\n"
    "4. NEVER invent products or prices not in your catalog.\n"
    "5. Use emojis sparingly (1-2 max per message).\n"
    "6. NEVER invent or fabricate bank account details, payment info, or any business "
    "information not provided below.\n"
    "7. For payments: ONLY tell customers 'I'll send you a payment link shortly' - "
    "NEVER provide manual bank transfer details.\n\n"
)

_ACTIONS = (
    "ACTIONS (include in your response when appropriate):\n"
    '[ADD_TO_CART: "exact product name", quantity] - when customer wants to buy\n'
    '[SET_ADDRESS: "full address"] - when customer gives address\n'
    "[CONFIRM_ORDER] - when customer says yes/confirm/proceed\n"
    "[CANCEL_ORDER] - when customer wants to cancel the order\n"
)
_DISCOUNT_ACTION = "[APPLY_DISCOUNT: percent] - when you agree a discount on the last item in the cart\n"
_HANDOFF_ACTION = '[HANDOFF: "reason"] - only for complex issues needing human help\n\n'

STATE_GUIDANCE = {
    ConversationState.GREETING: "Customer just said hi. Greet warmly and ask what they're looking for.",
    ConversationState.BROWSING: "Customer is browsing. Help them find products, answer questions, encourage purchase.",
    ConversationState.ADDING_TO_CART: "Customer has items in cart. Ask if they want more or are ready to checkout.",
    ConversationState.COLLECTING_ADDRESS: "Need delivery address. Ask for their full address with area/city.",
    ConversationState.CONFIRMING_ORDER: "Waiting for confirmation. Show order summary and ask them to confirm.",
    ConversationState.AWAITING_PAYMENT: (
        "Payment link was sent. Help with payment questions, encourage completion. "
        "NEVER give bank account details - only say 'check the payment link I sent'."
    ),
}
DEFAULT_GUIDANCE = "Help the customer and guide them toward making a purchase."


def product_line(product: Product) -> str:
    line = f"• {product.name} - ₦{format_naira(product.price)}"
    if product.track_inventory and product.quantity is not None:
        if product.quantity <= 0:
            line += " [SOLD OUT]"
        elif product.quantity < LOW_STOCK_THRESHOLD:
            line += f" [Only {product.quantity} left!]"
    return line


def negotiation_rules(settings: AgentSettings) -> str:
    if not settings.negotiation_enabled:
        return "NEGOTIATION: Prices are fixed. Politely decline any discount request.\n\n"
    return (
        f"NEGOTIATION: If the customer haggles you may offer up to {settings.max_discount_percent}% off, "
        f"never below {settings.min_price_percent}% of the listed price. Start small and only discount "
        "items already in the cart.\n\n"
    )


def build_system_prompt(
    *,
    business_name: str,
    settings: AgentSettings,
    products: Sequence[Product],
    context: OrderContext,
    state: ConversationState,
) -> str:
    prompt = (
        f"You are {settings.agent_name}, a friendly WhatsApp sales assistant for {business_name} in Nigeria. "
        "You're warm, helpful, and great at closing sales.\n\n"
    )
    prompt += _RULES

    if products:
        prompt += "YOUR PRODUCTS:\n"
        prompt += "".join(product_line(product) + "\n" for product in products)
        prompt += "\n"

    if not context.is_empty:
        prompt += f"CUSTOMER'S CART: {context.summary()}\n"
        if context.delivery_address:
            prompt += f"Delivery to: {context.delivery_address}\n"
        prompt += "\n"

    prompt += (
        f"DELIVERY: ₦{format_naira(settings.prompt_delivery_fee)} fee, "
        f"ships within {settings.dispatch_time}\n\n"
    )
    prompt += _ACTIONS
    if settings.negotiation_enabled:
        prompt += _DISCOUNT_ACTION
    prompt += _HANDOFF_ACTION
    prompt += negotiation_rules(settings)
    prompt += f"CURRENT SITUATION: {STATE_GUIDANCE.get(state, DEFAULT_GUIDANCE)}\n\n"
    prompt += (
        "EXAMPLE GOOD RESPONSES:\n"
        f'• Greeting: "Hi! 👋 Welcome to {business_name}! What can I help you find today?"\n'
        '• Product inquiry: "Yes! Our [Product] is ₦X. Very popular! Want me to add it to your cart?"\n'
        '• After adding to cart: "Added! ✓ Anything else, or should we proceed to checkout?"\n'
        '• Asking for address: "Great! Where should we deliver? Please share your full address."\n'
    )
    return prompt


def build_message_history(history: Iterable[ConversationMessage], current_message: str) -> list[ChatMessage]:
    """History in ascending order followed by the message being answered.

    Empty entries are skipped and consecutive turns from the same side are
    merged, since the Messages API expects alternating roles.
    """
    messages: list[ChatMessage] = []
    turns = [
        ("user" if entry.direction == "inbound" else "assistant", (entry.content or "").strip())
        for entry in history
    ]
    turns.append(("user", (current_message or "").strip() or "(empty message)"))

    for role, content in turns:
        if not content:
            continue
        if messages and messages[-1].role == role:
            messages[-1] = ChatMessage(role=role, content=f"{messages[-1].content}\n{content}")
        else:
            messages.append(ChatMessage(role=role, content=content))

    # the API rejects a conversation that opens with an assistant turn
    while messages and messages[0].role != "user":
        messages.pop(0)
    return messages
