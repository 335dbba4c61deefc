import hashlib
import hmac
import json
import re
import threading
from decimal import Decimal

import httpx
import pytest

from app.core.metrics import request_metrics
from app.fsm.engine import ConversationStateMachine
from app.fsm.states import ConversationState
from app.models.conversation import Conversation
from app.models.order import WhatsAppOrder
from app.services import conversations
from app.services import paystack as paystack_module
from app.services.conversation_locks import conversation_locks
from app.services.orders import (
    LINK_UNAVAILABLE,
    create_order_from_conversation,
    generate_order_number,
    order_number_from_reference,
)
from app.services.paystack import PaystackClient, PaystackError, to_kobo, verify_webhook_signature
from app.services.webhook_processing import process_payment_event
from app.whatsapp.mock_provider import MockWhatsAppProvider
from app.whatsapp.service import WhatsAppService
from tests.fixtures_data import (
    CUSTOMER_PHONE,
    PAYSTACK_INITIALIZE_OK,
    build_session_factory,
    paystack_charge_success,
    seed_store,
)


@pytest.fixture
def session_factory():
    factory = build_session_factory()
    db = factory()
    seed_store(db)
    db.close()
    request_metrics.reset()
    paystack_module._backoff_service.reset()
    return factory


@pytest.fixture
def mock_provider():
    return MockWhatsAppProvider()


@pytest.fixture
def whatsapp(mock_provider):
    return WhatsAppService(mock_provider=mock_provider, fallback_to_mock=False)


def _confirmed_conversation(db):
    conversation = conversations.get_or_create(db, tenant_id=1, customer_phone=CUSTOMER_PHONE, customer_name="Ada Obi")
    machine = ConversationStateMachine(db)
    machine.add_to_cart_by_name(conversation, "Ankara Print Dress", 1)
    machine.set_delivery_address(conversation, "15 Admiralty Way, Lekki", "Lekki")
    machine.prepare_for_confirmation(conversation)
    machine.confirm_order(conversation)
    return conversation


def _paystack(handler):
    return PaystackClient(secret_key="sk_test_123", base_url="https://paystack.test", transport=httpx.MockTransport(handler))


def test_order_creation_initializes_paystack_transaction(session_factory, whatsapp, mock_provider):
    captured = {}

    def handler(request):
        captured["url"] = str(request.url)
        captured["auth"] = request.headers["Authorization"]
        captured["body"] = json.loads(request.content)
        return httpx.Response(200, json=PAYSTACK_INITIALIZE_OK)

    db = session_factory()
    conversation = _confirmed_conversation(db)

    result = create_order_from_conversation(db, conversation, whatsapp=whatsapp, paystack=_paystack(handler))

    assert result.success is True
    order = result.order
    assert captured["url"] == "https://paystack.test/transaction/initialize"
    assert captured["auth"] == "Bearer sk_test_123"
    assert captured["body"]["amount"] == 2650000
    assert captured["body"]["reference"] == f"WA-{order.order_number}"
    assert captured["body"]["email"] == "whatsapp@1.customers.whatsapp-commerce.app"
    assert captured["body"]["channels"] == ["card", "bank", "ussd", "bank_transfer"]
    assert captured["body"]["metadata"]["conversation_id"] == conversation.id
    assert order.items[0]["name"] == "Ankara Print Dress"
    assert order.delivery_fee == Decimal("1500.00")
    assert order.payment_reference == f"WA-{order.order_number}"
    assert conversation.state == ConversationState.AWAITING_PAYMENT.value
    assert len(mock_provider.sent) == 1


def test_creating_twice_reuses_the_existing_order(session_factory, whatsapp, mock_provider):
    db = session_factory()
    conversation = _confirmed_conversation(db)
    client = _paystack(lambda request: httpx.Response(200, json=PAYSTACK_INITIALIZE_OK))

    first = create_order_from_conversation(db, conversation, whatsapp=whatsapp, paystack=client)
    second = create_order_from_conversation(db, conversation, whatsapp=whatsapp, paystack=client)

    assert second.order.id == first.order.id
    assert db.query(WhatsAppOrder).count() == 1


def test_gateway_failure_keeps_order_and_asks_to_contact_store(session_factory, whatsapp, mock_provider):
    db = session_factory()
    conversation = _confirmed_conversation(db)
    client = _paystack(lambda request: httpx.Response(401, json={"status": False, "message": "Invalid key"}))

    result = create_order_from_conversation(db, conversation, whatsapp=whatsapp, paystack=client)

    assert result.success is True
    assert result.payment_link == LINK_UNAVAILABLE
    assert result.order.payment_link is None
    assert "Please contact us for payment options." in mock_provider.sent[-1]["text"]


def test_unconfirmed_cart_cannot_become_an_order(session_factory, whatsapp):
    db = session_factory()
    conversation = conversations.get_or_create(db, tenant_id=1, customer_phone=CUSTOMER_PHONE)
    ConversationStateMachine(db).add_to_cart(conversation, 1, 1)

    result = create_order_from_conversation(db, conversation, whatsapp=whatsapp)

    assert result.success is False
    assert result.message == "Order has not been confirmed yet"


def test_payment_success_scenario_d_is_idempotent(session_factory, whatsapp, mock_provider):
    db = session_factory()
    conversation = _confirmed_conversation(db)
    client = _paystack(lambda request: httpx.Response(200, json=PAYSTACK_INITIALIZE_OK))
    order = create_order_from_conversation(db, conversation, whatsapp=whatsapp, paystack=client).order
    reference = order.payment_reference
    conversation_id = conversation.id
    db.close()
    sent_before = len(mock_provider.sent)

    event = paystack_charge_success(reference)
    assert process_payment_event(event, session_factory=session_factory, whatsapp=whatsapp) is True

    check = session_factory()
    paid = check.query(WhatsAppOrder).filter(WhatsAppOrder.payment_reference == reference).one()
    assert paid.payment_status == "paid"
    assert paid.payment_method == "card"
    assert paid.paid_at is not None
    assert check.query(Conversation).filter(Conversation.id == conversation_id).one().state == (
        ConversationState.COMPLETED.value
    )
    assert len(mock_provider.sent) == sent_before + 1
    confirmation = mock_provider.sent[-1]["text"]
    assert confirmation.startswith("*Payment Confirmed!*")
    assert "Amount Paid: ₦26,500.00" in confirmation
    assert "Payment Method: Card Payment" in confirmation
    check.close()

    assert process_payment_event(event, session_factory=session_factory, whatsapp=whatsapp) is False
    assert len(mock_provider.sent) == sent_before + 1
    assert request_metrics.count("payments_reconciled") == 1
    assert request_metrics.count("payment_duplicates") == 1


def test_payment_is_not_undone_by_a_session_holding_a_stale_copy(session_factory, whatsapp):
    db = session_factory()
    conversation = _confirmed_conversation(db)
    client = _paystack(lambda request: httpx.Response(200, json=PAYSTACK_INITIALIZE_OK))
    reference = create_order_from_conversation(db, conversation, whatsapp=whatsapp, paystack=client).order.payment_reference
    # loaded before the payment lands
    assert conversation.state == ConversationState.AWAITING_PAYMENT.value

    assert process_payment_event(paystack_charge_success(reference), session_factory=session_factory, whatsapp=whatsapp)
    result = ConversationStateMachine(db).cancel_order(conversation)
    db.close()

    assert result.success is False
    assert "already been paid" in result.message
    check = session_factory()
    stored = check.query(Conversation).one()
    assert stored.state == ConversationState.COMPLETED.value
    assert stored.outcome == "converted"
    assert [item["product_name"] for item in stored.cart["items"]] == ["Ankara Print Dress"]
    check.close()


def test_payment_completion_waits_for_the_inbound_turn(session_factory, whatsapp):
    db = session_factory()
    conversation = _confirmed_conversation(db)
    client = _paystack(lambda request: httpx.Response(200, json=PAYSTACK_INITIALIZE_OK))
    reference = create_order_from_conversation(db, conversation, whatsapp=whatsapp, paystack=client).order.payment_reference
    db.close()
    results = []

    def pay():
        event = paystack_charge_success(reference)
        results.append(process_payment_event(event, session_factory=session_factory, whatsapp=whatsapp))

    with conversation_locks.hold(1, CUSTOMER_PHONE):
        worker = threading.Thread(target=pay)
        worker.start()
        worker.join(timeout=0.3)
        assert worker.is_alive()
    worker.join(timeout=5)

    assert results == [True]
    check = session_factory()
    assert check.query(Conversation).one().state == ConversationState.COMPLETED.value
    check.close()


def test_non_success_and_unknown_events_are_dropped(session_factory, whatsapp, mock_provider):
    failed = paystack_charge_success("WA-20261019-000000000AAAA")
    failed["event"] = "charge.failed"
    unknown = paystack_charge_success("WA-does-not-exist")

    assert process_payment_event(failed, session_factory=session_factory, whatsapp=whatsapp) is False
    assert process_payment_event(unknown, session_factory=session_factory, whatsapp=whatsapp) is False
    assert process_payment_event({"data": {}}, session_factory=session_factory, whatsapp=whatsapp) is False
    assert mock_provider.sent == []


def test_webhook_signature_is_hmac_sha512_of_raw_body():
    body = b'{"event":"charge.success","data":{"reference":"WA-1"}}'
    signature = hmac.new(b"sk_test_123", body, hashlib.sha512).hexdigest()

    assert verify_webhook_signature(body, signature, "sk_test_123") is True
    assert verify_webhook_signature(body + b" ", signature, "sk_test_123") is False
    assert verify_webhook_signature(body, "deadbeef", "sk_test_123") is False
    assert verify_webhook_signature(body, signature, "") is False
    assert verify_webhook_signature(body, None, "sk_test_123") is False


def test_order_numbers_and_references():
    number = generate_order_number()

    assert re.fullmatch(r"\d{8}-\d{9}[0-9A-F]{4}", number)
    assert order_number_from_reference(f"WA-{number}") == number
    assert order_number_from_reference("T123") is None
    assert to_kobo(Decimal("26500.00")) == 2650000


def test_verify_transaction_returns_gateway_data():
    def handler(request):
        assert request.method == "GET"
        assert request.url.path == "/transaction/verify/WA-20261019-101500123ABCD"
        return httpx.Response(200, json={"status": True, "data": {"status": "success", "channel": "ussd"}})

    data = _paystack(handler).verify_transaction("WA-20261019-101500123ABCD", tenant_id=1)

    assert data == {"status": "success", "channel": "ussd"}


def test_repeated_gateway_failures_pause_calls(session_factory):
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(500, json={"status": False, "message": "Server error"})

    client = _paystack(handler)
    for _ in range(3):
        with pytest.raises(PaystackError):
            client.verify_transaction("WA-1", tenant_id=9)

    with pytest.raises(PaystackError, match="paused"):
        client.verify_transaction("WA-1", tenant_id=9)
    assert len(calls) == 3
