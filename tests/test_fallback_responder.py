from decimal import Decimal

import pytest

from app.ai.fallback import DEFAULT_GREETING, DEFAULT_REPLY, FallbackResponder, looks_like_address
from app.fsm.engine import ConversationStateMachine
from app.fsm.states import ConversationState
from app.services import catalog, conversations
from app.services.agent_settings import AgentSettings, get_agent_settings
from tests.fixtures_data import CUSTOMER_PHONE, build_session_factory, seed_store


@pytest.fixture
def db():
    session = build_session_factory()()
    seed_store(session)
    try:
        yield session
    finally:
        session.close()


def _respond(db, conversation, text):
    settings = get_agent_settings(db, 1)
    responder = FallbackResponder(ConversationStateMachine(db, settings))
    return responder.respond(
        conversation,
        text,
        settings=settings,
        products=catalog.find_active_by_tenant(db, 1),
    )


def test_fallback_happy_path_reaches_payment_link(db):
    conversation = conversations.get_or_create(db, tenant_id=1, customer_phone=CUSTOMER_PHONE)

    greeting = _respond(db, conversation, "Hello")
    assert greeting.message == DEFAULT_GREETING
    assert greeting.used_fallback is True

    added = _respond(db, conversation, "2 Ankara Print Dress")
    assert added.new_state == ConversationState.ADDING_TO_CART
    assert added.message.startswith("Added 2x Ankara Print Dress to your cart!")
    assert added.order_context.subtotal == Decimal("50000.00")

    checkout = _respond(db, conversation, "that's all")
    assert checkout.new_state == ConversationState.COLLECTING_ADDRESS

    address = _respond(db, conversation, "15 Admiralty Way, Lekki")
    assert address.new_state == ConversationState.CONFIRMING_ORDER
    assert "*Delivery to:* 15 Admiralty Way, Lekki" in address.message
    assert address.order_context.grand_total == Decimal("51500.00")

    confirmed = _respond(db, conversation, "YES")
    assert confirmed.requires_payment_link is True
    assert conversation.state == ConversationState.AWAITING_PAYMENT.value


def test_tenant_greeting_is_used():
    db = build_session_factory()()
    seed_store(db, greeting_message="Welcome to Ada Styles!")
    conversation = conversations.get_or_create(db, tenant_id=1, customer_phone=CUSTOMER_PHONE)

    assert _respond(db, conversation, "good morning").message == "Welcome to Ada Styles!"


def test_greeting_words_inside_other_words_do_not_match(db):
    conversation = conversations.get_or_create(db, tenant_id=1, customer_phone=CUSTOMER_PHONE)

    response = _respond(db, conversation, "which colours do you ship?")

    assert response.message != DEFAULT_GREETING


def test_price_question_lists_products(db):
    conversation = conversations.get_or_create(db, tenant_id=1, customer_phone=CUSTOMER_PHONE)

    response = _respond(db, conversation, "How much?")

    assert response.message.startswith("Here are our products:")
    assert "- Ankara Print Dress: NGN 25000" in response.message
    assert "- Leather Sandals: NGN 13000" in response.message


def test_cart_view(db):
    conversation = conversations.get_or_create(db, tenant_id=1, customer_phone=CUSTOMER_PHONE)
    assert "cart is empty" in _respond(db, conversation, "show my cart").message

    ConversationStateMachine(db).add_to_cart(conversation, 3, 1)
    assert "1. Adire Scarf x1 - NGN 4500" in _respond(db, conversation, "show my cart").message


def test_cancel_while_ordering(db):
    conversation = conversations.get_or_create(db, tenant_id=1, customer_phone=CUSTOMER_PHONE)
    ConversationStateMachine(db).add_to_cart(conversation, 1, 1)

    response = _respond(db, conversation, "cancel")

    assert response.new_state == ConversationState.BROWSING
    assert response.message.startswith("No problem! Your order has been cancelled.")


def test_help_requests_handoff(db):
    conversation = conversations.get_or_create(db, tenant_id=1, customer_phone=CUSTOMER_PHONE)

    response = _respond(db, conversation, "I need to speak to a human")

    assert response.requires_handoff is True
    assert response.handoff_reason == "Customer requested human assistance"


def test_unknown_message_gets_default_reply(db):
    conversation = conversations.get_or_create(db, tenant_id=1, customer_phone=CUSTOMER_PHONE)

    assert _respond(db, conversation, "hmm").message == DEFAULT_REPLY


def test_looks_like_address():
    settings = AgentSettings()
    assert looks_like_address("12 Highway Close", settings) is True
    assert looks_like_address("Plot 5, Lekki", settings) is True
    assert looks_like_address("where do you deliver?", settings) is False
    assert looks_like_address("ok", settings) is False


def test_product_order_while_collecting_address_is_not_taken_as_address(db):
    conversation = conversations.get_or_create(db, tenant_id=1, customer_phone=CUSTOMER_PHONE)
    machine = ConversationStateMachine(db)
    machine.add_to_cart(conversation, 1, 1)
    machine.request_delivery_address(conversation)

    response = _respond(db, conversation, "2 Ankara Print Dress Long")

    assert response.new_state is None
    assert response.message.startswith("Cannot add items in the current state.")
    context = machine.get_order_context(conversation)
    assert context.delivery_address is None
    assert [(item.product_name, item.quantity) for item in context.items] == [("Ankara Print Dress", 1)]
    assert conversation.state == ConversationState.COLLECTING_ADDRESS.value

    address = _respond(db, conversation, "15 Admiralty Way, Lekki")
    assert address.new_state == ConversationState.CONFIRMING_ORDER
