from celery import Celery

from conversion_engine.context import bound_context
from conversion_engine.conversion.executor import conversion_executor
from conversion_engine.core.config import get_settings
from conversion_engine.core.context import TenantContext
from conversion_engine.core.database import SessionLocal

settings = get_settings()

celery_app = Celery("conversion_engine", broker=settings.redis_url, backend=settings.redis_url)


@celery_app.task(name="conversion_engine.tasks.check_auto_triggers")
def check_auto_triggers_task(
    tenant_id: str,
    entity_table: str,
    record_id: str,
    user_id: str = "system",
    correlation_id: str | None = None,
) -> list[dict]:
    ctx = TenantContext(tenant_id=tenant_id, user_id=user_id, correlation_id=correlation_id)
    with bound_context(correlation_id, tenant_id), SessionLocal() as session:
        results = conversion_executor.check_auto_triggers(session, ctx, entity_table, record_id)
    return [result.model_dump(mode="json") for result in results]
