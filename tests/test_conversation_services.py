import threading
from datetime import timedelta

import pytest

from app.core.clock import utcnow
from app.fsm.engine import ConversationStateMachine
from app.fsm.states import ConversationState
from app.models.conversation import Conversation
from app.services import conversations
from app.services.conversation_locks import ConversationLocks
from app.services.tenant_backoff import InMemoryTenantBackoffService
from tests.fixtures_data import CUSTOMER_PHONE, build_session_factory, seed_store


@pytest.fixture
def db():
    session = build_session_factory()()
    seed_store(session)
    seed_store(session, tenant_id=2, phone_number_id="PNID-2", verify_token="other-token")
    try:
        yield session
    finally:
        session.close()


def test_conversations_are_scoped_per_tenant(db):
    first = conversations.get_or_create(db, tenant_id=1, customer_phone=CUSTOMER_PHONE)
    again = conversations.get_or_create(db, tenant_id=1, customer_phone=CUSTOMER_PHONE, customer_name="Ada")
    other_tenant = conversations.get_or_create(db, tenant_id=2, customer_phone=CUSTOMER_PHONE)

    assert again.id == first.id
    assert again.customer_name == "Ada"
    assert other_tenant.id != first.id


def test_inactive_conversation_is_reactivated_fresh(db):
    conversation = conversations.get_or_create(db, tenant_id=1, customer_phone=CUSTOMER_PHONE)
    ConversationStateMachine(db).add_to_cart(conversation, 1, 1)
    conversations.mark_abandoned(db, conversation)
    assert conversation.is_active is False

    reopened = conversations.get_or_create(db, tenant_id=1, customer_phone=CUSTOMER_PHONE)

    assert reopened.id == conversation.id
    assert reopened.is_active is True
    assert reopened.state == ConversationState.GREETING.value
    assert reopened.cart is None
    assert reopened.outcome is None


def test_abandon_stale_only_touches_idle_open_conversations(db):
    idle = conversations.get_or_create(db, tenant_id=1, customer_phone="2348011111111")
    recent = conversations.get_or_create(db, tenant_id=1, customer_phone="2348022222222")
    other_tenant = conversations.get_or_create(db, tenant_id=2, customer_phone="2348033333333")
    idle.last_message_at = utcnow() - timedelta(hours=48)
    recent.last_message_at = utcnow() - timedelta(hours=1)
    other_tenant.last_message_at = utcnow() - timedelta(hours=48)
    db.commit()

    assert conversations.abandon_stale(db, 1, 24) == 1

    assert idle.state == ConversationState.ABANDONED.value
    assert idle.outcome == "abandoned"
    assert recent.state == ConversationState.GREETING.value
    assert other_tenant.is_active is True


def test_handoff_round_trip(db):
    conversation = conversations.get_or_create(db, tenant_id=1, customer_phone=CUSTOMER_PHONE)

    conversations.request_handoff(db, conversation, "Customer asked for a refund")
    assert conversations.is_handed_off(conversation) is True
    assert conversation.handed_off_reason == "Customer asked for a refund"

    conversations.resolve_handoff(db, conversation)
    assert conversations.is_handed_off(conversation) is False
    assert conversation.state == ConversationState.BROWSING.value


def test_conversation_locks_are_released_after_use():
    locks = ConversationLocks()
    entered = threading.Event()
    release = threading.Event()
    order = []

    def first():
        with locks.hold(1, CUSTOMER_PHONE):
            entered.set()
            release.wait(timeout=5)
            order.append("first")

    def second():
        with locks.hold(1, CUSTOMER_PHONE):
            order.append("second")

    thread_one = threading.Thread(target=first)
    thread_one.start()
    entered.wait(timeout=5)
    thread_two = threading.Thread(target=second)
    thread_two.start()
    with locks.hold(2, CUSTOMER_PHONE):
        assert len(locks) == 2
    release.set()
    thread_one.join(timeout=5)
    thread_two.join(timeout=5)

    assert order == ["first", "second"]
    assert len(locks) == 0


def test_backoff_kicks_in_after_threshold_and_is_forgotten():
    now = [0.0]
    backoff = InMemoryTenantBackoffService(threshold=2, max_backoff_seconds=4.0, forget_after_seconds=60.0, clock=lambda: now[0])

    for _ in range(2):
        backoff.register_failure(tenant_id=1, integration="paystack")
    assert backoff.before_request(tenant_id=1, integration="paystack").delay_seconds == 1.0
    for _ in range(5):
        backoff.register_failure(tenant_id=1, integration="paystack")
    assert backoff.before_request(tenant_id=1, integration="paystack").delay_seconds == 4.0
    assert backoff.before_request(tenant_id=2, integration="paystack").delay_seconds == 0.0

    now[0] = 61.0
    decision = backoff.before_request(tenant_id=1, integration="paystack")
    assert decision.delay_seconds == 0.0
    assert decision.consecutive_failures == 0


def test_backoff_success_clears_failures():
    backoff = InMemoryTenantBackoffService(threshold=1)
    backoff.register_failure(tenant_id=1, integration="whatsapp_cloud")

    backoff.register_success(tenant_id=1, integration="whatsapp_cloud")

    assert backoff.before_request(tenant_id=1, integration="whatsapp_cloud").consecutive_failures == 0


def test_expire_stale_script_abandons_idle_conversations(capsys):
    from scripts import expire_stale_conversations

    factory = build_session_factory()
    db = factory()
    seed_store(db)
    conversation = conversations.get_or_create(db, tenant_id=1, customer_phone=CUSTOMER_PHONE)
    conversation.last_message_at = utcnow() - timedelta(hours=5)
    db.commit()
    db.close()

    exit_code = expire_stale_conversations.main(["--tenant", "1", "--hours", "4"], session_factory=factory)

    assert exit_code == 0
    assert "Abandoned 1 conversation(s) idle for 4h (tenant=1)" in capsys.readouterr().out
    assert factory().query(Conversation).one().state == ConversationState.ABANDONED.value
    assert expire_stale_conversations.main(["--hours", "0"], session_factory=factory) == 1
