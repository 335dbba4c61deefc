from __future__ import annotations

from collections import Counter
from dataclasses import dataclass
from threading import Lock


@dataclass
class EndpointMetric:
    total_requests: int = 0
    total_duration_ms: float = 0.0
    error_count: int = 0


class InMemoryRequestMetrics:
    """Process-local request latencies plus commerce event counters."""

    def __init__(self) -> None:
        self._metrics: dict[tuple[str, str], EndpointMetric] = {}
        self._events: Counter[str] = Counter()
        self._tenant_events: dict[str, Counter[str]] = {}
        self._lock = Lock()

    def observe(self, endpoint: str, method: str, status_code: int, duration_ms: float) -> None:
        key = (endpoint, method)
        with self._lock:
            metric = self._metrics.setdefault(key, EndpointMetric())
            metric.total_requests += 1
            metric.total_duration_ms += duration_ms
            if status_code >= 400:
                metric.error_count += 1

    def increment(self, event: str, *, tenant_id: int | str | None = None, amount: int = 1) -> None:
        with self._lock:
            self._events[event] += amount
            if tenant_id is not None:
                self._tenant_events.setdefault(str(tenant_id), Counter())[event] += amount

    def count(self, event: str, *, tenant_id: int | str | None = None) -> int:
        with self._lock:
            if tenant_id is None:
                return self._events.get(event, 0)
            return self._tenant_events.get(str(tenant_id), Counter()).get(event, 0)

    def snapshot(self) -> dict[str, dict[str, float | int]]:
        with self._lock:
            result: dict[str, dict[str, float | int]] = {}
            for (endpoint, method), metric in self._metrics.items():
                avg = metric.total_duration_ms / metric.total_requests if metric.total_requests else 0.0
                result[f"{method} {endpoint}"] = {
                    "total_requests": metric.total_requests,
                    "total_duration_ms": round(metric.total_duration_ms, 2),
                    "avg_duration_ms": round(avg, 2),
                    "error_count": metric.error_count,
                }
            return result

    def events_snapshot(self) -> dict[str, object]:
        with self._lock:
            return {
                "totals": dict(self._events),
                "per_tenant": {tenant: dict(counter) for tenant, counter in self._tenant_events.items()},
            }

    def reset(self) -> None:
        with self._lock:
            self._metrics.clear()
            self._events.clear()
            self._tenant_events.clear()


request_metrics = InMemoryRequestMetrics()
