from __future__ import annotations

import hashlib
import hmac
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any

import httpx

from app.core.config import PAYSTACK_BASE_URL, PAYSTACK_CALLBACK_URL, PAYSTACK_SECRET_KEY
from app.services.tenant_backoff import InMemoryTenantBackoffService

logger = logging.getLogger(__name__)
_backoff_service = InMemoryTenantBackoffService()

PAYMENT_CHANNELS = ["card", "bank", "ussd", "bank_transfer"]


class PaystackError(RuntimeError):
    """Raised when a Paystack call fails or returns ``status: false``."""


@dataclass
class PaymentInitialization:
    authorization_url: str
    access_code: str | None
    reference: str


def to_kobo(amount: Decimal) -> int:
    return int((Decimal(amount) * 100).to_integral_value())


class PaystackClient:
    INTEGRATION_NAME = "paystack"

    def __init__(
        self,
        *,
        secret_key: str | None = None,
        base_url: str | None = None,
        callback_url: str | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.secret_key = PAYSTACK_SECRET_KEY if secret_key is None else secret_key
        self.base_url = (base_url or PAYSTACK_BASE_URL).rstrip("/")
        self.callback_url = callback_url or PAYSTACK_CALLBACK_URL
        self._transport = transport

    @property
    def is_configured(self) -> bool:
        return bool(self.secret_key)

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.secret_key}", "Content-Type": "application/json"}

    def _request(self, method: str, path: str, *, tenant_id: int, json: dict[str, Any] | None = None) -> dict[str, Any]:
        if not self.is_configured:
            raise PaystackError("Paystack secret key is not configured")

        decision = _backoff_service.before_request(tenant_id=tenant_id, integration=self.INTEGRATION_NAME)
        if decision.delay_seconds > 0:
            raise PaystackError(
                f"Paystack calls paused after {decision.consecutive_failures} consecutive failures"
            )

        try:
            with httpx.Client(timeout=30.0, transport=self._transport) as client:
                response = client.request(method, f"{self.base_url}{path}", headers=self._headers(), json=json)
        except httpx.HTTPError as exc:
            _backoff_service.register_failure(tenant_id=tenant_id, integration=self.INTEGRATION_NAME)
            raise PaystackError(f"Paystack request failed: {exc}") from exc

        try:
            data = response.json()
        except ValueError:
            data = {}
        if response.status_code >= 400 or not data.get("status"):
            _backoff_service.register_failure(tenant_id=tenant_id, integration=self.INTEGRATION_NAME)
            raise PaystackError(f"Paystack error {response.status_code}: {data.get('message') or response.text[:200]}")

        _backoff_service.register_success(tenant_id=tenant_id, integration=self.INTEGRATION_NAME)
        return data.get("data") or {}

    def initialize_transaction(
        self,
        *,
        tenant_id: int,
        reference: str,
        amount: Decimal,
        email: str,
        customer_name: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> PaymentInitialization:
        payload: dict[str, Any] = {
            "email": email,
            "amount": to_kobo(amount),
            "currency": "NGN",
            "reference": reference,
            "channels": PAYMENT_CHANNELS,
            "metadata": {**(metadata or {}), "customer_name": customer_name},
        }
        if self.callback_url:
            payload["callback_url"] = self.callback_url

        data = self._request("POST", "/transaction/initialize", tenant_id=tenant_id, json=payload)
        authorization_url = data.get("authorization_url")
        if not authorization_url:
            raise PaystackError("Paystack did not return an authorization url")
        logger.info("Paystack transaction initialized reference=%s", reference, extra={"integration": "paystack"})
        return PaymentInitialization(
            authorization_url=authorization_url,
            access_code=data.get("access_code"),
            reference=data.get("reference") or reference,
        )

    def verify_transaction(self, reference: str, *, tenant_id: int) -> dict[str, Any]:
        return self._request("GET", f"/transaction/verify/{reference}", tenant_id=tenant_id)


def verify_webhook_signature(raw_body: bytes, signature: str | None, secret_key: str | None = None) -> bool:
    """HMAC-SHA512 of the raw request body, hex encoded, compared in constant time."""
    secret = PAYSTACK_SECRET_KEY if secret_key is None else secret_key
    if not secret or not signature:
        return False
    expected = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha512).hexdigest()
    return hmac.compare_digest(expected, signature.strip().lower())
