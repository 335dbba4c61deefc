from __future__ import annotations

import logging
import time
import uuid

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

from app.core.metrics import request_metrics
from app.core.request_context import clear_request_context, set_request_context

logger = logging.getLogger(__name__)

WEBHOOK_INTEGRATIONS = {
    "/webhook/whatsapp": "whatsapp_cloud",
    "/webhooks/paystack": "paystack",
}


class ObservabilityMiddleware(BaseHTTPMiddleware):
    """Request id propagation, per-route latency metrics and one access log line per request."""

    async def dispatch(self, request: Request, call_next):
        start = time.perf_counter()
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
        request.state.request_id = request_id
        set_request_context(request_id=request_id)

        response = None
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            return response
        finally:
            # resolved after routing so /api/orders/1 and /api/orders/2 share one bucket
            endpoint = _route_template(request)
            duration_ms = round((time.perf_counter() - start) * 1000, 2)
            request_metrics.observe(
                endpoint=endpoint,
                method=request.method,
                status_code=status_code,
                duration_ms=duration_ms,
            )

            extra = {
                "request_id": request_id,
                "tenant_id": _tenant_hint(request),
                "conversation_id": request.path_params.get("conversation_id"),
                "endpoint": endpoint,
                "method": request.method,
                "status_code": status_code,
                "duration_ms": duration_ms,
            }
            integration = WEBHOOK_INTEGRATIONS.get(endpoint)
            if integration:
                extra["integration"] = integration
            log = logger.warning if status_code >= 500 else logger.info
            log("request completed", extra=extra)

            if response is not None:
                response.headers["X-Request-ID"] = request_id
            clear_request_context()


def _route_template(request: Request) -> str:
    route = request.scope.get("route")
    return getattr(route, "path_format", None) or request.url.path


def _tenant_hint(request: Request) -> str | None:
    tenant = request.path_params.get("tenant_id") or request.query_params.get("tenant_id")
    return str(tenant) if tenant else request.headers.get("X-Tenant-ID") or None
