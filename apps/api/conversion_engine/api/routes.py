import logging

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import JSONResponse, Response
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from conversion_engine.core.auth import AuthUser, get_current_user
from conversion_engine.core.config import get_settings
from conversion_engine.core.database import get_db
from conversion_engine.conversion.api import conversions_router, rules_router
from conversion_engine.extensions.api import router as extension_fields_router
from conversion_engine.metrics import generate_metrics_payload, metrics_content_type
from conversion_engine.store import get_entity_store

logger = logging.getLogger("conversion_engine.health")

router = APIRouter()
router.include_router(extension_fields_router)
router.include_router(rules_router)
router.include_router(conversions_router)


@router.get("/health", tags=["system"])
def health() -> dict[str, str]:
    settings = get_settings()
    return {
        "status": "ok",
        "service": settings.app_name,
        "environment": settings.app_env,
    }


@router.get("/ready", tags=["system"])
def ready(db: Session = Depends(get_db)) -> JSONResponse:
    """Readiness: the rule database answers and an entity store is installed."""

    store_name = type(get_entity_store()).__name__
    try:
        db.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        logger.warning("readiness.database_unavailable", extra={"error": str(exc)})
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"status": "unavailable", "database": "error", "entity_store": store_name},
        )
    return JSONResponse(content={"status": "ready", "database": "ok", "entity_store": store_name})


@router.get("/metrics", tags=["system"])
def metrics(user: AuthUser = Depends(get_current_user)) -> Response:
    settings = get_settings()
    if not settings.metrics_enabled:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="not found")
    if "system.metrics.read" not in user.roles:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Missing permission: system.metrics.read")
    return Response(content=generate_metrics_payload(), media_type=metrics_content_type())
