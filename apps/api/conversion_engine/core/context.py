from dataclasses import dataclass, field

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request


@dataclass
class RequestContext:
    request_id: str
    correlation_id: str
    user_id: str | None
    tenant_id: str | None


@dataclass(slots=True)
class TenantContext:
    """Already-authenticated caller identity handed to engine operations."""

    tenant_id: str
    user_id: str = "system"
    correlation_id: str | None = None
    roles: list[str] = field(default_factory=list)


class RequestContextMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        correlation_id = getattr(request.state, "correlation_id", None)
        request.state.context = RequestContext(
            request_id=correlation_id or "",
            correlation_id=correlation_id or "",
            user_id=None,
            tenant_id=request.headers.get("x-tenant-id"),
        )
        response = await call_next(request)
        response.headers["x-request-id"] = request.state.context.request_id
        return response
