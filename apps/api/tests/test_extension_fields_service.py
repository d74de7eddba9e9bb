from __future__ import annotations

from collections.abc import Generator

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from conversion_engine import audit, events
from conversion_engine.core.config import get_settings
from conversion_engine.core.context import TenantContext
from conversion_engine.core.database import Base
from conversion_engine.errors import ConflictError, FieldValidationError, InvalidArgumentError, NotFoundError
from conversion_engine.extensions.schemas import ExtensionFieldCreate, ExtensionFieldUpdate
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
    return TenantContext(tenant_id="tenant-a", user_id="admin-1", correlation_id="ext-corr-1")


def _priority(**overrides) -> ExtensionFieldCreate:
    payload = {
        "entity_table": "leads",
        "field_name": "priority",
        "field_type": "select",
        "display_name": "Priority",
        "ui_config": {"options": ["low", "high"]},
    }
    payload.update(overrides)
    return ExtensionFieldCreate(**payload)


def test_create_field_is_composed_after_base_fields(db_session: Session, ctx: TenantContext) -> None:
    created = extension_field_service.create_field(db_session, ctx, _priority(default_value="low"))

    assert created.id > 0
    assert created.tenant_id == "tenant-a"
    assert created.is_active is True
    assert created.created_by == "admin-1"
    assert created.default_value == "low"

    schema = extension_field_service.get_composed_schema(db_session, ctx, "leads")
    names = [item.name for item in schema.fields]
    assert names[-1] == "priority"
    assert names[0] == "name"
    assert schema.fields[-1].source == "extension"
    assert schema.fields[-1].type == "select"
    assert all(item.source == "base" for item in schema.fields[:-1])

    created_audits = [entry for entry in audit.audit_entries if entry["action"] == "extension_field.created"]
    assert created_audits
    assert created_audits[-1]["tenant_id"] == "tenant-a"
    assert created_audits[-1]["correlation_id"] == "ext-corr-1"
    created_events = [item for item in events.published_events if item["event_type"] == "extension_field.created"]
    assert created_events
    assert created_events[-1]["payload"]["field_name"] == "priority"


def test_duplicate_active_field_name_conflicts(db_session: Session, ctx: TenantContext) -> None:
    extension_field_service.create_field(db_session, ctx, _priority())

    with pytest.raises(ConflictError):
        extension_field_service.create_field(db_session, ctx, _priority(display_name="Priority again"))


def test_same_name_allowed_for_other_tenant_and_table(db_session: Session, ctx: TenantContext) -> None:
    extension_field_service.create_field(db_session, ctx, _priority())
    other_tenant = TenantContext(tenant_id="tenant-b", user_id="admin-2")

    extension_field_service.create_field(db_session, other_tenant, _priority())
    extension_field_service.create_field(db_session, ctx, _priority(entity_table="clients"))

    assert [item.field_name for item in extension_field_service.list_fields(db_session, other_tenant)] == ["priority"]
    assert len(extension_field_service.list_fields(db_session, ctx)) == 2
    assert len(extension_field_service.list_fields(db_session, ctx, entity_table="leads")) == 1


def test_base_field_names_and_reserved_names_are_rejected(db_session: Session, ctx: TenantContext) -> None:
    with pytest.raises(ConflictError):
        extension_field_service.create_field(
            db_session, ctx, ExtensionFieldCreate(entity_table="leads", field_name="Email", field_type="text", display_name="Email")
        )
    with pytest.raises(InvalidArgumentError):
        extension_field_service.create_field(
            db_session, ctx, ExtensionFieldCreate(entity_table="leads", field_name="tenant_id", field_type="text", display_name="Tenant")
        )
    with pytest.raises(InvalidArgumentError):
        extension_field_service.create_field(
            db_session, ctx, ExtensionFieldCreate(entity_table="leads", field_name="9lives", field_type="text", display_name="Nine")
        )


@pytest.mark.parametrize(
    "dto",
    [
        ExtensionFieldCreate(entity_table="invoices", field_name="po_number", field_type="text", display_name="PO"),
        ExtensionFieldCreate(entity_table="leads", field_name="tier", field_type="select", display_name="Tier"),
        ExtensionFieldCreate(
            entity_table="leads", field_name="code", field_type="text", display_name="Code", validation_rules={"pattern": "(["}
        ),
        ExtensionFieldCreate(
            entity_table="leads", field_name="score", field_type="number", display_name="Score", validation_rules={"min": 10, "max": 1}
        ),
        ExtensionFieldCreate(
            entity_table="leads", field_name="score", field_type="number", display_name="Score", validation_rules={"min": "low"}
        ),
        ExtensionFieldCreate(
            entity_table="leads", field_name="site", field_type="text", display_name="Site", validation_rules={"format": "ipv6"}
        ),
        ExtensionFieldCreate(
            entity_table="leads", field_name="code", field_type="text", display_name="Code", validation_rules={"minLength": 2.5}
        ),
        ExtensionFieldCreate(
            entity_table="leads", field_name="code", field_type="text", display_name="Code", validation_rules={"maxLength": -1}
        ),
        ExtensionFieldCreate(
            entity_table="leads", field_name="code", field_type="text", display_name="Code", validation_rules={"min": 1}
        ),
        ExtensionFieldCreate(
            entity_table="leads", field_name="score", field_type="number", display_name="Score", validation_rules={"pattern": "^1"}
        ),
        ExtensionFieldCreate(
            entity_table="leads", field_name="due", field_type="date", display_name="Due", validation_rules={"max": 10}
        ),
    ],
)
def test_invalid_definitions_are_rejected(db_session: Session, ctx: TenantContext, dto: ExtensionFieldCreate) -> None:
    with pytest.raises(InvalidArgumentError):
        extension_field_service.create_field(db_session, ctx, dto)

    assert extension_field_service.list_fields(db_session, ctx, include_inactive=True) == []


def test_default_value_must_satisfy_definition(db_session: Session, ctx: TenantContext) -> None:
    with pytest.raises(FieldValidationError):
        extension_field_service.create_field(db_session, ctx, _priority(default_value="medium"))

    created = extension_field_service.create_field(db_session, ctx, _priority())
    with pytest.raises(FieldValidationError):
        extension_field_service.update_field(db_session, ctx, created.id, ExtensionFieldUpdate(default_value="urgent"))

    assert extension_field_service.get_field(db_session, ctx, created.id).default_value is None


def test_update_renames_and_invalidates_schema(db_session: Session, ctx: TenantContext) -> None:
    created = extension_field_service.create_field(db_session, ctx, _priority())
    before = extension_field_service.get_composed_schema(db_session, ctx, "leads")
    assert "priority" in [item.name for item in before.fields]

    updated = extension_field_service.update_field(
        db_session,
        ctx,
        created.id,
        ExtensionFieldUpdate(field_name="urgency", display_name="Urgency", ui_config={"options": ["low", "high", "critical"]}),
    )

    assert updated.field_name == "urgency"
    assert updated.ui_config["options"] == ["low", "high", "critical"]
    after = extension_field_service.get_composed_schema(db_session, ctx, "leads")
    names = [item.name for item in after.fields]
    assert "urgency" in names
    assert "priority" not in names
    assert any(item["event_type"] == "extension_field.updated" for item in events.published_events)


def test_deactivate_hides_field_and_frees_name(db_session: Session, ctx: TenantContext) -> None:
    created = extension_field_service.create_field(db_session, ctx, _priority())

    deactivated = extension_field_service.deactivate_field(db_session, ctx, created.id)

    assert deactivated.is_active is False
    schema = extension_field_service.get_composed_schema(db_session, ctx, "leads")
    assert "priority" not in [item.name for item in schema.fields]
    assert extension_field_service.list_fields(db_session, ctx) == []
    assert [item.id for item in extension_field_service.list_fields(db_session, ctx, include_inactive=True)] == [created.id]
    assert any(item["event_type"] == "extension_field.deactivated" for item in events.published_events)

    replacement = extension_field_service.create_field(db_session, ctx, _priority(display_name="Priority v2"))
    assert replacement.id != created.id

    with pytest.raises(ConflictError):
        extension_field_service.update_field(db_session, ctx, created.id, ExtensionFieldUpdate(is_active=True))


def test_fields_are_tenant_scoped(db_session: Session, ctx: TenantContext) -> None:
    created = extension_field_service.create_field(db_session, ctx, _priority())
    other_tenant = TenantContext(tenant_id="tenant-b")

    with pytest.raises(NotFoundError):
        extension_field_service.get_field(db_session, other_tenant, created.id)
    with pytest.raises(NotFoundError):
        extension_field_service.deactivate_field(db_session, other_tenant, created.id)

    schema = extension_field_service.get_composed_schema(db_session, other_tenant, "leads")
    assert "priority" not in [item.name for item in schema.fields]


def test_validate_record_uses_composed_schema(db_session: Session, ctx: TenantContext) -> None:
    extension_field_service.create_field(db_session, ctx, _priority(is_required=True))

    ok = extension_field_service.validate_record(db_session, ctx, "leads", {"name": "Acme", "extensions": {"priority": "high"}})
    assert ok.is_valid is True

    bad = extension_field_service.validate_record(db_session, ctx, "leads", {"name": "Acme", "email": "nope"})
    assert bad.is_valid is False
    assert bad.errors[0].startswith("email:")
    assert bad.errors[1] == "priority: Priority is required"


def test_list_active_filters_by_tenant_and_table_in_creation_order(db_session: Session, ctx: TenantContext) -> None:
    extension_field_service.create_field(db_session, ctx, _priority(field_name="zeta", display_name="Zeta"))
    extension_field_service.create_field(db_session, ctx, _priority(entity_table="clients"))
    retired = extension_field_service.create_field(db_session, ctx, _priority(field_name="retired", display_name="Retired"))
    extension_field_service.create_field(db_session, ctx, _priority(field_name="alpha", display_name="Alpha"))
    extension_field_service.create_field(db_session, TenantContext(tenant_id="tenant-b", user_id="admin-2"), _priority())
    extension_field_service.deactivate_field(db_session, ctx, retired.id)

    leads = extension_field_service.list_active(db_session, "tenant-a", "leads")
    everything = extension_field_service.list_active(db_session, "tenant-a")

    assert [item.field_name for item in leads] == ["zeta", "alpha"]
    assert [(item.entity_table, item.field_name) for item in everything] == [
        ("leads", "zeta"),
        ("clients", "priority"),
        ("leads", "alpha"),
    ]
    composed = extension_field_service.get_composed_schema(db_session, ctx, "leads")
    assert [item.name for item in composed.fields if item.source == "extension"] == ["zeta", "alpha"]


def test_extension_names_conflict_regardless_of_case(db_session: Session, ctx: TenantContext) -> None:
    created = extension_field_service.create_field(db_session, ctx, _priority())

    with pytest.raises(ConflictError):
        extension_field_service.create_field(db_session, ctx, _priority(field_name="Priority"))

    renamed = extension_field_service.update_field(db_session, ctx, created.id, ExtensionFieldUpdate(field_name="PRIORITY"))
    assert renamed.field_name == "PRIORITY"


def test_length_rules_must_be_whole_numbers_and_are_enforced(db_session: Session, ctx: TenantContext) -> None:
    extension_field_service.create_field(
        db_session,
        ctx,
        ExtensionFieldCreate(
            entity_table="leads",
            field_name="code",
            field_type="text",
            display_name="Code",
            validation_rules={"minLength": 2, "maxLength": 4},
        ),
    )

    outcome = extension_field_service.validate_record(db_session, ctx, "leads", {"name": "Ada", "extensions": {"code": "x"}})

    assert outcome.is_valid is False
    assert outcome.errors == ["code: Code must be at least 2 characters"]
