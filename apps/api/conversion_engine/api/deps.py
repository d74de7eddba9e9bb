from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from fastapi import Depends, Header, Request
from fastapi.responses import JSONResponse

from conversion_engine.context import get_correlation_id
from conversion_engine.core.auth import AuthUser, get_current_user as get_auth_user
from conversion_engine.core.context import TenantContext
from conversion_engine.errors import ForbiddenError, InvalidArgumentError


@dataclass
class ErrorEnvelope:
    code: str
    message: str
    details: Any
    correlation_id: str | None


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
) -> JSONResponse:
    correlation_id = get_correlation_id() or getattr(getattr(request.state, "context", None), "request_id", None)
    payload = ErrorEnvelope(
        code=code,
        message=message,
        details=details,
        correlation_id=correlation_id,
    )
    return JSONResponse(status_code=status_code, content=payload.__dict__)


def get_tenant_context(
    request: Request,
    auth_user: AuthUser = Depends(get_auth_user),
    tenant_id_header: str | None = Header(default=None, alias="x-tenant-id"),
) -> TenantContext:
    tenant_id = (tenant_id_header or "").strip() or (auth_user.tenant_id or "")
    if not tenant_id:
        raise InvalidArgumentError("x-tenant-id header is required")
    if auth_user.tenant_id and auth_user.tenant_id != tenant_id:
        raise ForbiddenError("token is not valid for this tenant")
    correlation_id = get_correlation_id() or getattr(getattr(request.state, "context", None), "request_id", None)
    return TenantContext(
        tenant_id=tenant_id,
        user_id=auth_user.sub,
        correlation_id=correlation_id,
        roles=[str(role) for role in auth_user.roles],
    )
