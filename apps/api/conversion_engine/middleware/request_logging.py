from __future__ import annotations

import logging
import time
from typing import Any

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from conversion_engine.context import reset_tenant_id, set_tenant_id
from conversion_engine.metrics import observe_http_request, resolve_http_path_label


logger = logging.getLogger("conversion_engine.request")


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Logs one structured line per request and binds the tenant header to the log context."""

    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        method = request.method
        tenant_id = request.headers.get("x-tenant-id")
        token = set_tenant_id(tenant_id)

        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            duration_ms = round((time.perf_counter() - started) * 1000, 2)
            path = resolve_http_path_label(request)
            observe_http_request(method=method, path=path, status=500, duration=duration_ms / 1000)
            logger.error(
                "http.error",
                exc_info=True,
                extra=_request_fields(method, path, 500, duration_ms, tenant_id),
            )
            raise
        finally:
            reset_tenant_id(token)

        duration_ms = round((time.perf_counter() - started) * 1000, 2)
        # route is resolved during dispatch, so the template label is only available afterwards
        path = resolve_http_path_label(request)
        observe_http_request(method=method, path=path, status=response.status_code, duration=duration_ms / 1000)
        logger.info(
            "http.request",
            extra=_request_fields(method, path, response.status_code, duration_ms, tenant_id),
        )
        return response


def _request_fields(method: str, path: str, status_code: int, duration_ms: float, tenant_id: str | None) -> dict[str, Any]:
    return {
        "method": method,
        "path": path,
        "status_code": status_code,
        "duration_ms": duration_ms,
        "tenant_id": tenant_id,
    }
