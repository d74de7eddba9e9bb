from contextlib import asynccontextmanager, contextmanager
import logging
from typing import Any

from fastapi import FastAPI
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from conversion_engine.api.routes import router as api_router
from conversion_engine.context import bound_context
from conversion_engine.conversion.executor import conversion_executor, resolve_entity_store_backend
from conversion_engine.core.celery_app import check_auto_triggers_task
from conversion_engine.core.config import get_settings
from conversion_engine.core.context import RequestContextMiddleware, TenantContext
from conversion_engine.core.database import SessionLocal, get_db
from conversion_engine.core.events import RECORD_LIFECYCLE_EVENTS, SYSTEM_STARTED, InternalEvent, event_bus
from conversion_engine.logging import configure_logging
from conversion_engine.middleware.correlation_id import CorrelationIdMiddleware
from conversion_engine.middleware.request_logging import RequestLoggingMiddleware
from conversion_engine.otel import get_fastapi_server_request_hook, setup_otel
from conversion_engine.store import InMemoryEntityStore, set_entity_store
from conversion_engine.store.sql import SqlEntityStore


configure_logging()
logger = logging.getLogger("conversion_engine.lifecycle")


def _on_system_started(event: InternalEvent) -> None:
    logger.info("system_event", extra={"event_type": event.name})


@contextmanager
def _conversion_session_scope():
    override = app.dependency_overrides.get(get_db) if "app" in globals() else None
    if override is None:
        session = SessionLocal()
        try:
            yield session
        finally:
            session.close()
        return

    generator = override()
    session = next(generator)
    try:
        yield session
    finally:
        try:
            next(generator)
        except StopIteration:
            pass


def _record_event_fields(envelope: dict[str, Any]) -> tuple[str, str, str, str] | None:
    """Accept flat payloads and event envelopes that nest the record under ``payload``."""

    nested = envelope.get("payload") if isinstance(envelope.get("payload"), dict) else {}
    tenant_id = envelope.get("tenant_id") or nested.get("tenant_id")
    entity_table = envelope.get("entity_table") or nested.get("entity_table")
    record_id = envelope.get("record_id") or nested.get("record_id")
    actor = envelope.get("actor_user_id") or nested.get("actor_user_id") or "system"
    if not all(isinstance(item, str) and item for item in (tenant_id, entity_table, record_id)):
        return None
    return tenant_id, entity_table, record_id, str(actor)


def _on_record_event(event: InternalEvent) -> None:
    if not isinstance(event.payload, dict):
        return
    envelope: dict[str, Any] = event.payload
    fields = _record_event_fields(envelope)
    if fields is None:
        logger.warning("record_event_ignored", extra={"event_type": event.name})
        return
    tenant_id, entity_table, record_id, actor = fields
    correlation_id = envelope.get("correlation_id") if isinstance(envelope.get("correlation_id"), str) else None

    settings = get_settings()
    if not settings.auto_run_conversions:
        try:
            check_auto_triggers_task.delay(tenant_id, entity_table, record_id, actor, correlation_id)
        except Exception as exc:
            logger.exception(
                "auto_trigger_enqueue_failed",
                extra={"event_type": event.name, "tenant_id": tenant_id, "error": str(exc)[:500]},
            )
        return

    ctx = TenantContext(tenant_id=tenant_id, user_id=actor, correlation_id=correlation_id)
    try:
        with bound_context(correlation_id, tenant_id), _conversion_session_scope() as session:
            conversion_executor.check_auto_triggers(session, ctx, entity_table, record_id)
    except Exception as exc:
        logger.exception(
            "auto_trigger_check_failed",
            extra={
                "event_type": event.name,
                "tenant_id": tenant_id,
                "entity_table": entity_table,
                "source_record_id": record_id,
                "error": str(exc)[:500],
            },
        )


@asynccontextmanager
async def lifespan(app: FastAPI):
    event_bus.subscribe(SYSTEM_STARTED, _on_system_started)
    for event_name in RECORD_LIFECYCLE_EVENTS:
        event_bus.subscribe(event_name, _on_record_event)
    event_bus.publish(SYSTEM_STARTED, {"service": "conversion-engine"})
    yield


app = FastAPI(title="Entity Conversion Engine", version="0.1.0", lifespan=lifespan)
app.add_middleware(RequestContextMiddleware)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.include_router(api_router)

settings = get_settings()
if resolve_entity_store_backend(settings.app_env, settings.entity_store_backend) == "sql":
    set_entity_store(SqlEntityStore())
else:
    set_entity_store(InMemoryEntityStore())

if settings.otel_enabled:
    setup_otel("conversion-engine", True)

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())
