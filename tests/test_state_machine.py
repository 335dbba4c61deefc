from decimal import Decimal

import pytest

from app.fsm.engine import ConversationStateMachine
from app.fsm.states import ConversationState
from app.services import conversations
from tests.fixtures_data import CUSTOMER_PHONE, build_session_factory, seed_store


@pytest.fixture
def db():
    session = build_session_factory()()
    seed_store(session)
    try:
        yield session
    finally:
        session.close()


def _conversation(db, tenant_id=1):
    return conversations.get_or_create(db, tenant_id=tenant_id, customer_phone=CUSTOMER_PHONE, customer_name="Ada")


def test_end_to_end_scenarios_a_b_c(db):
    conversation = _conversation(db)
    machine = ConversationStateMachine(db)

    added = machine.add_to_cart_by_name(conversation, "Ankara Print Dress", 1)
    assert added.success is True
    assert added.new_state == ConversationState.ADDING_TO_CART
    assert added.order_context.subtotal == Decimal("25000.00")
    assert added.order_context.grand_total == Decimal("25000.00")

    address = machine.set_delivery_address(conversation, "15 Admiralty Way, Lekki", "Lekki")
    assert address.success is True
    assert address.order_context.delivery_fee == Decimal("1500.00")
    assert address.order_context.grand_total == Decimal("26500.00")
    assert conversation.state == ConversationState.COLLECTING_ADDRESS.value

    prepared = machine.prepare_for_confirmation(conversation)
    assert prepared.success is True
    assert conversation.state == ConversationState.CONFIRMING_ORDER.value
    assert "*Your Order:*" in prepared.message
    assert "15 Admiralty Way, Lekki" in prepared.message
    assert "*YES*" in prepared.message

    confirmed = machine.confirm_order(conversation)
    assert confirmed.success is True
    assert confirmed.requires_payment_link is True
    assert conversation.state == ConversationState.AWAITING_PAYMENT.value
    assert machine.get_order_context(conversation).confirmed is True


def test_exact_name_wins_over_longer_match(db):
    conversation = _conversation(db)
    result = ConversationStateMachine(db).add_to_cart_by_name(conversation, "ankara print dress", 1)

    assert result.order_context.items[0].product_name == "Ankara Print Dress"


def test_unknown_product_lists_suggestions(db):
    conversation = _conversation(db)
    result = ConversationStateMachine(db).add_to_cart_by_name(conversation, "Agbada", 1)

    assert result.success is False
    assert result.message.startswith('I couldn\'t find "Agbada".')
    assert "- Adire Scarf" in result.message
    assert conversation.cart is None


def test_add_to_cart_while_collecting_address_fails_without_mutation(db):
    conversation = _conversation(db)
    machine = ConversationStateMachine(db)
    machine.add_to_cart(conversation, 1, 1)
    machine.request_delivery_address(conversation)
    before = dict(conversation.cart)

    result = machine.add_to_cart(conversation, 4, 1)

    assert result.success is False
    assert "current state" in result.message
    assert conversation.cart == before
    assert conversation.state == ConversationState.COLLECTING_ADDRESS.value


def test_stock_limit_is_enforced(db):
    conversation = _conversation(db)
    result = ConversationStateMachine(db).add_to_cart(conversation, 3, 5)

    assert result.success is False
    assert result.message == "Sorry, we only have 3 of Adire Scarf in stock."


def test_product_from_other_tenant_is_rejected(db):
    seed_store(db, tenant_id=2, phone_number_id="PNID-2", verify_token="other")
    conversation = _conversation(db)

    result = ConversationStateMachine(db).add_to_cart(conversation, 101, 1)

    assert result.success is False
    assert result.message == "This product is not available from this store."


def test_discount_above_tenant_cap_leaves_item_unchanged(db):
    conversation = _conversation(db)
    machine = ConversationStateMachine(db)
    machine.add_to_cart(conversation, 1, 1)

    rejected = machine.apply_discount(conversation, 0, 15)
    assert rejected.success is False
    assert rejected.message == "Sorry, the maximum discount I can offer is 10%."
    assert machine.get_order_context(conversation).items[0].discount_percent == Decimal(0)

    accepted = machine.apply_discount(conversation, 0, 10)
    assert accepted.success is True
    assert accepted.order_context.items[0].final_unit_price == Decimal("22500.00")
    assert accepted.order_context.total_discount == Decimal("2500.00")


def test_discount_when_negotiation_disabled():
    db = build_session_factory()()
    seed_store(db, negotiation_enabled=False)
    conversation = _conversation(db)
    machine = ConversationStateMachine(db)
    machine.add_to_cart(conversation, 1, 1)

    result = machine.apply_discount(conversation, 0, 5)

    assert result.success is False
    assert "prices are fixed" in result.message


@pytest.mark.parametrize(
    "state",
    [
        ConversationState.GREETING,
        ConversationState.BROWSING,
        ConversationState.ADDING_TO_CART,
        ConversationState.COLLECTING_ADDRESS,
        ConversationState.AWAITING_PAYMENT,
    ],
)
def test_confirm_outside_confirming_state_fails(db, state):
    conversation = _conversation(db)
    machine = ConversationStateMachine(db)
    machine.add_to_cart(conversation, 1, 1)
    machine.set_delivery_address(conversation, "15 Admiralty Way, Lekki")
    machine.transition(conversation, state)

    result = machine.confirm_order(conversation)

    assert result.success is False
    assert result.message == "Please review your order first before confirming."
    assert conversation.state == state.value


def test_prepare_requires_address(db):
    conversation = _conversation(db)
    machine = ConversationStateMachine(db)
    machine.add_to_cart(conversation, 1, 1)

    result = machine.prepare_for_confirmation(conversation)

    assert result.success is False
    assert result.message == "Please provide your delivery address first."


def test_configured_area_fee_is_detected_from_address():
    db = build_session_factory()()
    seed_store(db, delivery_areas=[{"name": "Ikeja", "fee": "2000"}, {"name": "Lekki", "fee": "3500"}])
    conversation = _conversation(db)
    machine = ConversationStateMachine(db)
    machine.add_to_cart(conversation, 1, 1)

    result = machine.set_delivery_address(conversation, "3 Admiralty Road, lekki phase 1")

    assert result.order_context.delivery_area == "Lekki"
    assert result.order_context.grand_total == Decimal("28500.00")


def test_removing_last_item_returns_to_browsing(db):
    conversation = _conversation(db)
    machine = ConversationStateMachine(db)
    machine.add_to_cart(conversation, 1, 1)

    result = machine.update_item_quantity(conversation, 0, 0)

    assert result.success is True
    assert result.new_state == ConversationState.BROWSING
    assert machine.get_order_context(conversation).is_empty


def test_confirmed_cart_cannot_be_edited(db):
    conversation = _conversation(db)
    machine = ConversationStateMachine(db)
    machine.add_to_cart(conversation, 1, 1)
    machine.set_delivery_address(conversation, "15 Admiralty Way, Lekki")
    machine.prepare_for_confirmation(conversation)
    machine.confirm_order(conversation)

    result = machine.update_item_quantity(conversation, 0, 4)

    assert result.success is False
    assert "already been confirmed" in result.message


def test_cancel_clears_cart_and_address(db):
    conversation = _conversation(db)
    machine = ConversationStateMachine(db)
    machine.add_to_cart(conversation, 1, 2)
    machine.set_delivery_address(conversation, "15 Admiralty Way, Lekki")

    result = machine.cancel_order(conversation)

    assert result.new_state == ConversationState.BROWSING
    context = machine.get_order_context(conversation)
    assert context.is_empty
    assert context.delivery_address is None
    assert context.grand_total == Decimal("0.00")


def test_complete_order_marks_conversation_converted(db):
    conversation = _conversation(db)
    result = ConversationStateMachine(db).complete_order(conversation, "20261019-101500123ABCD", 42)

    assert result.new_state == ConversationState.COMPLETED
    assert conversation.outcome == "converted"
    assert conversation.order_id == 42
    assert conversation.is_active is False
    assert "20261019-101500123ABCD" in result.message
