from __future__ import annotations

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from threading import Lock
from typing import Callable


@dataclass
class BackoffDecision:
    delay_seconds: float
    consecutive_failures: int


class TenantBackoffService(ABC):
    """Per (tenant, integration) failure tracking for outbound calls.

    Shared by the WhatsApp and Paystack adapters so one tenant with broken
    credentials does not hammer the upstream API.
    """

    @abstractmethod
    def before_request(self, *, tenant_id: int, integration: str) -> BackoffDecision:
        """Delay to wait before calling the external integration."""

    @abstractmethod
    def register_success(self, *, tenant_id: int, integration: str) -> None:
        """Clear the consecutive failure count."""

    @abstractmethod
    def register_failure(self, *, tenant_id: int, integration: str) -> int:
        """Record one more consecutive failure and return the new total."""


class InMemoryTenantBackoffService(TenantBackoffService):
    def __init__(
        self,
        *,
        threshold: int = 3,
        max_backoff_seconds: float = 8.0,
        forget_after_seconds: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.threshold = threshold
        self.max_backoff_seconds = max_backoff_seconds
        self.forget_after_seconds = forget_after_seconds
        self._clock = clock
        self._failures: dict[tuple[int, str], int] = {}
        self._last_failure_at: dict[tuple[int, str], float] = {}
        self._lock = Lock()

    def before_request(self, *, tenant_id: int, integration: str) -> BackoffDecision:
        key = (tenant_id, integration)
        with self._lock:
            last_failure = self._last_failure_at.get(key)
            if last_failure is not None and self._clock() - last_failure > self.forget_after_seconds:
                # a quiet period counts as recovery
                self._failures.pop(key, None)
                self._last_failure_at.pop(key, None)

            failures = self._failures.get(key, 0)
            if failures < self.threshold:
                return BackoffDecision(delay_seconds=0.0, consecutive_failures=failures)
            delay = min(2 ** (failures - self.threshold), self.max_backoff_seconds)
            return BackoffDecision(delay_seconds=float(delay), consecutive_failures=failures)

    def register_success(self, *, tenant_id: int, integration: str) -> None:
        key = (tenant_id, integration)
        with self._lock:
            self._failures.pop(key, None)
            self._last_failure_at.pop(key, None)

    def register_failure(self, *, tenant_id: int, integration: str) -> int:
        key = (tenant_id, integration)
        with self._lock:
            failures = self._failures.get(key, 0) + 1
            self._failures[key] = failures
            self._last_failure_at[key] = self._clock()
            return failures

    def reset(self) -> None:
        with self._lock:
            self._failures.clear()
            self._last_failure_at.clear()
