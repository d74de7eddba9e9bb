import logging
from dataclasses import dataclass, field

from jose import JWTError, jwt
from starlette.requests import Request

from conversion_engine.core.config import get_settings

logger = logging.getLogger("conversion_engine.auth")


@dataclass
class AuthUser:
    sub: str
    roles: list[str]
    tenant_id: str | None = field(default=None)


def _anonymous() -> AuthUser:
    return AuthUser(sub="anonymous", roles=["guest"])


async def get_current_user(request: Request) -> AuthUser:
    """Resolve the bearer token into a caller; a missing or unreadable token yields a guest."""

    auth_header = request.headers.get("authorization", "")
    token = auth_header.replace("Bearer ", "") if auth_header.startswith("Bearer ") else ""

    if not token:
        return _anonymous()

    settings = get_settings()
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError as exc:
        logger.warning("auth.invalid_token", extra={"error": str(exc)})
        return _anonymous()

    subject = str(payload.get("sub", "anonymous"))
    roles = payload.get("roles", ["user"])
    if not isinstance(roles, list):
        roles = ["user"]
    tenant_claim = payload.get("tenant_id")
    context = getattr(request.state, "context", None)
    if context is not None:
        context.user_id = subject
    return AuthUser(
        sub=subject,
        roles=[str(role) for role in roles],
        tenant_id=str(tenant_claim) if tenant_claim else None,
    )
