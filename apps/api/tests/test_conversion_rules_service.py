from __future__ import annotations

import uuid
from collections.abc import Generator
from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from conversion_engine import audit, events
from conversion_engine.conversion.models import ConversionExecution
from conversion_engine.conversion.schemas import ConversionRuleCreate, ConversionRuleUpdate, ConversionSettings
from conversion_engine.conversion.service import conversion_rule_service
from conversion_engine.core.config import get_settings
from conversion_engine.core.context import TenantContext
from conversion_engine.core.database import Base
from conversion_engine.errors import ConflictError, InvalidArgumentError, NotFoundError
from conversion_engine.extensions.schemas import ExtensionFieldCreate
from conversion_engine.extensions.service import extension_field_service
from conversion_engine.schema.composer import schema_composer


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def setup_env() -> Generator[None, None, None]:
    get_settings.cache_clear()
    audit.audit_entries.clear()
    events.published_events.clear()
    schema_composer.clear()
    yield
    get_settings.cache_clear()
    audit.audit_entries.clear()
    events.published_events.clear()
    schema_composer.clear()


@pytest.fixture()
def ctx() -> TenantContext:
    return TenantContext(tenant_id="tenant-a", user_id="admin-1", correlation_id="rule-corr-1")


@pytest.fixture()
def priority_fields(db_session: Session, ctx: TenantContext) -> None:
    for entity_table in ("leads", "clients"):
        extension_field_service.create_field(
            db_session,
            ctx,
            ExtensionFieldCreate(
                entity_table=entity_table,
                field_name="priority",
                field_type="select",
                display_name="Priority",
                ui_config={"options": ["low", "high"]},
            ),
        )


def _rule(**overrides) -> ConversionRuleCreate:
    payload = {
        "name": "Won lead to client",
        "source_entity": "leads",
        "target_entity": "clients",
        "trigger_conditions": {"field": "status", "operator": "eq", "value": "won"},
        "field_mapping": {"name": "name", "email": "contact_email", "company_name": "company_name"},
    }
    payload.update(overrides)
    return ConversionRuleCreate(**payload)


def test_create_and_read_rule(db_session: Session, ctx: TenantContext, priority_fields: None) -> None:
    created = conversion_rule_service.create_rule(
        db_session,
        ctx,
        _rule(extension_field_mapping={"priority": "priority"}, target_name_template="{company_name} ({name})"),
    )

    assert created.tenant_id == "tenant-a"
    assert created.created_by == "admin-1"
    assert created.is_active is True
    assert created.conversion_settings == ConversionSettings()
    assert created.extension_field_mapping == {"priority": "priority"}

    fetched = conversion_rule_service.get_rule(db_session, ctx, created.id)
    assert fetched == created
    assert [item.id for item in conversion_rule_service.list_rules(db_session, ctx)] == [created.id]
    assert conversion_rule_service.list_rules(db_session, ctx, source_entity="clients") == []

    assert audit.audit_entries[-1]["action"] == "conversion_rule.created"
    assert audit.audit_entries[-1]["correlation_id"] == "rule-corr-1"
    created_events = [item for item in events.published_events if item["event_type"] == "conversion_rule.created"]
    assert created_events[-1]["payload"]["rule_id"] == str(created.id)


def test_rule_names_are_unique_per_tenant(db_session: Session, ctx: TenantContext) -> None:
    conversion_rule_service.create_rule(db_session, ctx, _rule())

    with pytest.raises(ConflictError) as exc_info:
        conversion_rule_service.create_rule(db_session, ctx, _rule(trigger_conditions=None))
    assert exc_info.value.detail == "conversion rule 'Won lead to client' already exists"

    other_tenant = TenantContext(tenant_id="tenant-b", user_id="admin-2")
    conversion_rule_service.create_rule(db_session, other_tenant, _rule())
    assert len(conversion_rule_service.list_rules(db_session, other_tenant)) == 1


def test_mapping_errors_are_reported_together(db_session: Session, ctx: TenantContext) -> None:
    with pytest.raises(InvalidArgumentError) as exc_info:
        conversion_rule_service.create_rule(
            db_session,
            ctx,
            _rule(field_mapping={"nope": "name", "email": "ghost", "company_name": "name"}),
        )

    assert exc_info.value.detail == "; ".join(
        [
            "field_mapping.nope: unknown field on leads",
            "field_mapping.email: unknown target field 'ghost' on clients",
            "field_mapping.company_name: target field 'name' is mapped more than once",
        ]
    )
    assert conversion_rule_service.list_rules(db_session, ctx) == []


@pytest.mark.parametrize(
    ("overrides", "message"),
    [
        ({"target_entity": "invoices"}, "target_entity 'invoices' is not a supported entity table"),
        ({"extension_field_mapping": {"name": "name"}}, "extension_field_mapping.name: unknown field on leads"),
        ({"default_values": {"region": "emea"}}, "default_values.region: unknown field on clients"),
        (
            {"trigger_conditions": {"field": "stage", "operator": "eq", "value": "won"}},
            "conditions.field: unknown field 'stage' for leads",
        ),
        ({"target_name_template": "{company}"}, "target_name_template: unknown placeholder 'company' on leads"),
        (
            {"conversion_settings": {"target_name_field": "title"}},
            "conversion_settings.target_name_field: unknown field on clients",
        ),
    ],
)
def test_invalid_rule_definitions(db_session: Session, ctx: TenantContext, overrides: dict, message: str) -> None:
    with pytest.raises(InvalidArgumentError) as exc_info:
        conversion_rule_service.create_rule(db_session, ctx, _rule(**overrides))

    assert exc_info.value.detail == message


def test_source_and_target_must_differ() -> None:
    with pytest.raises(ValidationError):
        _rule(target_entity="leads")


def test_update_rule(db_session: Session, ctx: TenantContext) -> None:
    first = conversion_rule_service.create_rule(db_session, ctx, _rule())
    second = conversion_rule_service.create_rule(db_session, ctx, _rule(name="Lead to project", target_entity="projects", field_mapping={"name": "name"}))

    with pytest.raises(ConflictError):
        conversion_rule_service.update_rule(db_session, ctx, second.id, ConversionRuleUpdate(name="Won lead to client"))

    updated = conversion_rule_service.update_rule(
        db_session,
        ctx,
        first.id,
        ConversionRuleUpdate(
            trigger_conditions=None,
            field_mapping={"name": "name"},
            conversion_settings=ConversionSettings(auto_conversion_enabled=False),
        ),
    )

    assert updated.trigger_conditions is None
    assert updated.field_mapping == {"name": "name"}
    assert updated.conversion_settings.auto_conversion_enabled is False
    assert updated.name == "Won lead to client"
    assert audit.audit_entries[-1]["action"] == "conversion_rule.updated"
    assert audit.audit_entries[-1]["before"]["trigger_conditions"] == {"field": "status", "operator": "eq", "value": "won"}

    with pytest.raises(InvalidArgumentError):
        conversion_rule_service.update_rule(db_session, ctx, first.id, ConversionRuleUpdate(field_mapping={"ghost": "name"}))
    assert conversion_rule_service.get_rule(db_session, ctx, first.id).field_mapping == {"name": "name"}


def test_soft_and_hard_delete(db_session: Session, ctx: TenantContext) -> None:
    rule = conversion_rule_service.create_rule(db_session, ctx, _rule())

    conversion_rule_service.delete_rule(db_session, ctx, rule.id)

    assert conversion_rule_service.get_rule(db_session, ctx, rule.id).is_active is False
    assert conversion_rule_service.list_rules(db_session, ctx, is_active=True) == []
    assert conversion_rule_service.list_by_source_entity(db_session, "tenant-a", "leads") == []
    assert len(conversion_rule_service.list_by_source_entity(db_session, "tenant-a", "leads", is_active=None)) == 1

    conversion_rule_service.delete_rule(db_session, ctx, rule.id, soft=False)

    with pytest.raises(NotFoundError):
        conversion_rule_service.get_rule(db_session, ctx, rule.id)
    deleted = [item for item in events.published_events if item["event_type"] == "conversion_rule.deleted"]
    assert [item["payload"]["soft"] for item in deleted] == [True, False]


def test_rules_are_tenant_scoped(db_session: Session, ctx: TenantContext) -> None:
    rule = conversion_rule_service.create_rule(db_session, ctx, _rule())
    other_tenant = TenantContext(tenant_id="tenant-b")

    with pytest.raises(NotFoundError):
        conversion_rule_service.get_rule(db_session, other_tenant, rule.id)
    with pytest.raises(NotFoundError):
        conversion_rule_service.delete_rule(db_session, other_tenant, rule.id)


def _execution(rule_id: uuid.UUID, *, success: bool, ms: float, created_at: datetime) -> ConversionExecution:
    return ConversionExecution(
        tenant_id="tenant-a",
        rule_id=rule_id,
        rule_name="Won lead to client",
        source_entity="leads",
        target_entity="clients",
        source_record_id=str(uuid.uuid4()),
        target_record_id=str(uuid.uuid4()) if success else None,
        conversion_type="manual",
        success=success,
        error_message=None if success else "source record not found",
        execution_time_ms=ms,
        created_at=created_at,
    )


def test_stats_aggregate_execution_history(db_session: Session, ctx: TenantContext) -> None:
    rule = conversion_rule_service.create_rule(db_session, ctx, _rule())
    idle = conversion_rule_service.create_rule(db_session, ctx, _rule(name="Idle rule", target_entity="projects", field_mapping={}))
    base_time = datetime(2026, 9, 1, 12, 0, tzinfo=timezone.utc)
    db_session.add_all(
        [
            _execution(rule.id, success=True, ms=10.0, created_at=base_time),
            _execution(rule.id, success=False, ms=20.0, created_at=base_time + timedelta(minutes=1)),
            _execution(rule.id, success=True, ms=30.0, created_at=base_time + timedelta(minutes=2)),
        ]
    )
    db_session.commit()

    stats = {item.rule_id: item for item in conversion_rule_service.get_stats(db_session, ctx)}

    busy = stats[rule.id]
    assert busy.total_conversions == 3
    assert busy.successful_conversions == 2
    assert busy.failed_conversions == 1
    assert busy.avg_conversion_time_ms == 20.0
    assert busy.last_conversion_at is not None
    assert busy.last_conversion_at.replace(tzinfo=None) == (base_time + timedelta(minutes=2)).replace(tzinfo=None)

    quiet = stats[idle.id]
    assert quiet.total_conversions == 0
    assert quiet.last_conversion_at is None

    only = conversion_rule_service.get_stats(db_session, ctx, rule_id=idle.id)
    assert [item.rule_name for item in only] == ["Idle rule"]
    with pytest.raises(NotFoundError):
        conversion_rule_service.get_stats(db_session, ctx, rule_id=uuid.uuid4())


def test_list_executions_newest_first(db_session: Session, ctx: TenantContext) -> None:
    rule = conversion_rule_service.create_rule(db_session, ctx, _rule())
    base_time = datetime(2026, 9, 1, 12, 0, tzinfo=timezone.utc)
    db_session.add_all(
        [
            _execution(rule.id, success=True, ms=1.0, created_at=base_time),
            _execution(rule.id, success=False, ms=2.0, created_at=base_time + timedelta(minutes=5)),
        ]
    )
    db_session.commit()

    history = conversion_rule_service.list_executions(db_session, ctx, rule_id=rule.id)

    assert [item.success for item in history] == [False, True]
    assert history[0].error_message == "source record not found"
    assert len(conversion_rule_service.list_executions(db_session, ctx, limit=1)) == 1
    assert conversion_rule_service.list_executions(db_session, TenantContext(tenant_id="tenant-b")) == []


def test_trigger_validation_and_mapping_suggestions(db_session: Session, ctx: TenantContext, priority_fields: None) -> None:
    valid = conversion_rule_service.validate_trigger_conditions(
        db_session, ctx, {"field": "priority", "operator": "in", "value": ["high"]}, "leads"
    )
    assert valid.is_valid is True

    invalid = conversion_rule_service.validate_trigger_conditions(
        db_session, ctx, {"field": "priority", "operator": "gt", "value": 1}, "leads"
    )
    assert invalid.is_valid is False

    suggestions = conversion_rule_service.suggest_mapping(db_session, ctx, "leads", "clients")
    assert suggestions.source_entity == "leads"
    assert ("priority", "priority") in {
        (item.source_field, item.target_field) for item in suggestions.extension_field_suggestions
    }

    with pytest.raises(InvalidArgumentError):
        conversion_rule_service.suggest_mapping(db_session, ctx, "leads", "invoices")
