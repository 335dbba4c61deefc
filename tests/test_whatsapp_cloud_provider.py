import json

import httpx
import pytest

from app.models.whatsapp_config import WhatsAppConfig
from app.whatsapp import cloud_provider
from app.whatsapp.base import sanitize_payload
from app.whatsapp.cloud_provider import CloudWhatsAppProvider, parse_cloud_webhook, parse_status_updates


@pytest.fixture(autouse=True)
def reset_backoff():
    cloud_provider._backoff_service.reset()
    yield
    cloud_provider._backoff_service.reset()


def _config():
    return WhatsAppConfig(tenant_id=1, provider="cloud", phone_number_id="PNID-1", access_token="wa-token", is_enabled=True)


def _payload(*messages, contacts=None):
    return {
        "object": "whatsapp_business_account",
        "entry": [
            {
                "changes": [
                    {
                        "value": {
                            "metadata": {"phone_number_id": "PNID-1", "display_phone_number": "+234 800 000 0000"},
                            "contacts": contacts or [],
                            "messages": list(messages),
                        }
                    }
                ]
            }
        ],
    }


def test_parse_webhook_normalizes_content_types():
    payload = _payload(
        {"id": "m1", "from": "2348011111111", "type": "image", "image": {"id": "media-1", "caption": "this one"}},
        {"id": "m2", "from": "2348011111111", "type": "image", "image": {"id": "media-2"}},
        {
            "id": "m3",
            "from": "2348011111111",
            "type": "interactive",
            "interactive": {"type": "button_reply", "button_reply": {"id": "yes", "title": "Yes, confirm"}},
        },
        {"id": "m4", "from": "2348011111111", "type": "document", "document": {"id": "d", "filename": "receipt.pdf"}},
        {"id": "m5", "from": "2348011111111", "type": "location", "location": {}},
        {"from": "2348011111111", "type": "text", "text": {"body": "no id"}},
        contacts=[{"wa_id": "2348011111111", "profile": {"name": "Chidi"}}],
    )

    messages = parse_cloud_webhook(payload)

    assert [message["text"] for message in messages] == [
        "this one",
        "[Image]",
        "Yes, confirm",
        "[Document: receipt.pdf]",
        "[Unsupported message type: location]",
    ]
    assert messages[0]["media_id"] == "media-1"
    assert messages[2]["media_id"] is None
    assert {message["contact_name"] for message in messages} == {"Chidi"}
    assert {message["phone_number_id"] for message in messages} == {"PNID-1"}


def test_parse_status_updates():
    payload = {
        "entry": [
            {
                "changes": [
                    {
                        "value": {
                            "statuses": [
                                {"id": "wamid.out", "status": "failed", "recipient_id": "234", "errors": [{"code": 131047}]}
                            ]
                        }
                    }
                ]
            }
        ]
    }

    assert parse_status_updates(payload) == [
        {"message_id": "wamid.out", "status": "failed", "recipient_id": "234", "errors": [{"code": 131047}]}
    ]
    assert parse_cloud_webhook(payload) == []


def test_send_text_retries_server_errors():
    calls = []

    def handler(request):
        calls.append(json.loads(request.content))
        if len(calls) < 3:
            return httpx.Response(500, text="upstream")
        return httpx.Response(200, json={"messages": [{"id": "wamid.sent"}]})

    provider = CloudWhatsAppProvider(transport=httpx.MockTransport(handler), sleep=lambda seconds: None)

    result = provider.send_text(tenant_id=1, config=_config(), to_phone="2348011111111", text="Hello")

    assert result.ok is True
    assert result.provider_message_id == "wamid.sent"
    assert len(calls) == 3
    assert calls[0]["text"] == {"preview_url": False, "body": "Hello"}
    assert cloud_provider._backoff_service.before_request(tenant_id=1, integration="whatsapp_cloud").consecutive_failures == 0


def test_send_text_does_not_retry_client_errors():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(400, json={"error": {"message": "Recipient not on allow list"}})

    provider = CloudWhatsAppProvider(transport=httpx.MockTransport(handler), sleep=lambda seconds: None)

    result = provider.send_text(tenant_id=1, config=_config(), to_phone="2348011111111", text="Hello")

    assert result.ok is False
    assert result.error.startswith("WhatsApp error 400")
    assert len(calls) == 1


def test_repeated_failures_trigger_backoff_sleep():
    sleeps = []
    provider = CloudWhatsAppProvider(
        transport=httpx.MockTransport(lambda request: httpx.Response(503)),
        sleep=sleeps.append,
    )

    provider.send_text(tenant_id=7, config=_config(), to_phone="234", text="a")
    provider.send_text(tenant_id=7, config=_config(), to_phone="234", text="b")

    assert sleeps == [1.0, 2.0, 4.0]


def test_missing_credentials_fail_without_calling_meta(monkeypatch):
    monkeypatch.setattr(cloud_provider, "META_WA_ACCESS_TOKEN", "")

    def handler(request):
        raise AssertionError("should not be called")

    provider = CloudWhatsAppProvider(transport=httpx.MockTransport(handler))
    config = WhatsAppConfig(tenant_id=1, provider="cloud", phone_number_id="PNID-1")

    result = provider.send_text(tenant_id=1, config=config, to_phone="234", text="Hello")

    assert result.ok is False
    assert "credentials" in result.error


def test_sanitize_payload_masks_phones_and_secrets():
    payload = {
        "to": "2348011111111",
        "type": "text",
        "access_token": "EAAG-secret",
        "contacts": [{"wa_id": "2348022222222", "profile": {"name": "Chidi"}}],
    }

    assert sanitize_payload(payload) == {
        "to": "****1111",
        "type": "text",
        "access_token": "***",
        "contacts": [{"wa_id": "****2222", "profile": {"name": "Chidi"}}],
    }
