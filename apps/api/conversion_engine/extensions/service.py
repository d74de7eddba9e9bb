from __future__ import annotations

import logging
import re
from typing import Any

from sqlalchemy import Select, and_, func, select
from sqlalchemy.orm import Session

from conversion_engine import audit, events
from conversion_engine.core.context import TenantContext
from conversion_engine.errors import ConflictError, FieldValidationError, InvalidArgumentError, NotFoundError
from conversion_engine.extensions.models import ExtensionFieldDefinition, active_definitions_query, utcnow
from conversion_engine.extensions.schemas import (
    ComposedFieldRead,
    ComposedSchemaRead,
    ExtensionFieldCreate,
    ExtensionFieldRead,
    ExtensionFieldUpdate,
    RecordValidationResponse,
)
from conversion_engine.schema.base import ComposedSchema, FieldDefinition, FieldSource, FieldType
from conversion_engine.schema.composer import SchemaComposer, schema_composer
from conversion_engine.validation.validator import select_options, validate, validate_record

logger = logging.getLogger("conversion_engine.extensions")

FIELD_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
RESERVED_FIELD_NAMES = {"id", "created_at", "updated_at", "tenant_id", "user_id", "extensions"}
RULE_FIELD_TYPES = {
    "min": {FieldType.NUMBER},
    "max": {FieldType.NUMBER},
    "minLength": {FieldType.TEXT},
    "maxLength": {FieldType.TEXT},
    "min_length": {FieldType.TEXT},
    "max_length": {FieldType.TEXT},
    "pattern": {FieldType.TEXT},
    "message": {FieldType.TEXT},
    "format": {FieldType.TEXT},
}


class ExtensionFieldService:
    def __init__(self, composer: SchemaComposer | None = None) -> None:
        self._composer = composer or schema_composer

    @property
    def composer(self) -> SchemaComposer:
        return self._composer

    def list_fields(
        self,
        session: Session,
        ctx: TenantContext,
        entity_table: str | None = None,
        include_inactive: bool = False,
    ) -> list[ExtensionFieldRead]:
        stmt: Select[tuple[ExtensionFieldDefinition]] = select(ExtensionFieldDefinition).where(
            ExtensionFieldDefinition.tenant_id == ctx.tenant_id
        )
        if entity_table:
            stmt = stmt.where(ExtensionFieldDefinition.entity_table == entity_table)
        if not include_inactive:
            stmt = stmt.where(ExtensionFieldDefinition.is_active.is_(True))
        rows = session.scalars(
            stmt.order_by(ExtensionFieldDefinition.entity_table.asc(), ExtensionFieldDefinition.id.asc())
        ).all()
        return [self._to_read(row) for row in rows]

    def list_active(self, session: Session, tenant_id: str, entity_table: str | None = None) -> list[ExtensionFieldDefinition]:
        return list(session.scalars(active_definitions_query(tenant_id, entity_table)).all())

    def get_field(self, session: Session, ctx: TenantContext, field_id: int) -> ExtensionFieldRead:
        return self._to_read(self._load(session, ctx.tenant_id, field_id))

    def create_field(self, session: Session, ctx: TenantContext, dto: ExtensionFieldCreate) -> ExtensionFieldRead:
        entity_table = dto.entity_table.strip()
        if not self._composer.supports(entity_table):
            raise InvalidArgumentError(f"unsupported entity table: {entity_table}")
        field_name = self._validate_field_name(dto.field_name)
        self._ensure_name_available(session, ctx.tenant_id, entity_table, field_name)
        self._validate_config(dto.field_type, dto.validation_rules, dto.ui_config)

        definition = ExtensionFieldDefinition(
            tenant_id=ctx.tenant_id,
            entity_table=entity_table,
            field_name=field_name,
            field_type=dto.field_type,
            display_name=dto.display_name.strip(),
            description=dto.description,
            is_required=dto.is_required,
            is_searchable=dto.is_searchable,
            is_filterable=dto.is_filterable,
            is_sortable=dto.is_sortable,
            default_value=dto.default_value,
            validation_rules=dict(dto.validation_rules or {}),
            ui_config=dict(dto.ui_config or {}),
            is_active=True,
            created_by=ctx.user_id,
        )
        self._validate_default(definition)
        session.add(definition)
        session.flush()

        after = self._to_read(definition).model_dump(mode="json")
        audit.record(
            actor_user_id=ctx.user_id,
            tenant_id=ctx.tenant_id,
            entity_type="extension_field",
            entity_id=str(definition.id),
            action="extension_field.created",
            before=None,
            after=after,
            correlation_id=ctx.correlation_id,
        )
        session.commit()
        session.refresh(definition)
        self._composer.invalidate(ctx.tenant_id, entity_table)
        self._publish(ctx, "extension_field.created", definition)
        logger.info(
            "extension_field.created",
            extra={"tenant_id": ctx.tenant_id, "entity_table": entity_table, "field_name": field_name},
        )
        return self._to_read(definition)

    def update_field(
        self,
        session: Session,
        ctx: TenantContext,
        field_id: int,
        dto: ExtensionFieldUpdate,
    ) -> ExtensionFieldRead:
        definition = self._load(session, ctx.tenant_id, field_id)
        before = self._to_read(definition).model_dump(mode="json")
        payload = dto.model_dump(exclude_unset=True)

        if "field_name" in payload and payload["field_name"] is not None:
            new_name = self._validate_field_name(payload["field_name"])
            if new_name != definition.field_name:
                self._ensure_name_available(session, ctx.tenant_id, definition.entity_table, new_name, exclude_id=definition.id)
            payload["field_name"] = new_name
        if payload.get("is_active") is True and not definition.is_active:
            self._ensure_name_available(
                session,
                ctx.tenant_id,
                definition.entity_table,
                payload.get("field_name") or definition.field_name,
                exclude_id=definition.id,
            )

        field_type = payload.get("field_type") or definition.field_type
        validation_rules = payload["validation_rules"] if payload.get("validation_rules") is not None else definition.validation_rules
        ui_config = payload["ui_config"] if payload.get("ui_config") is not None else definition.ui_config
        self._validate_config(field_type, validation_rules or {}, ui_config or {})

        for key in [
            "field_name",
            "field_type",
            "display_name",
            "description",
            "is_required",
            "is_searchable",
            "is_filterable",
            "is_sortable",
            "default_value",
            "validation_rules",
            "ui_config",
            "is_active",
        ]:
            if key not in payload:
                continue
            if payload[key] is None and key not in {"description", "default_value"}:
                continue
            setattr(definition, key, payload[key])
        try:
            self._validate_default(definition)
        except FieldValidationError:
            session.rollback()
            raise
        definition.updated_at = utcnow()
        session.add(definition)
        session.flush()

        after = self._to_read(definition).model_dump(mode="json")
        audit.record(
            actor_user_id=ctx.user_id,
            tenant_id=ctx.tenant_id,
            entity_type="extension_field",
            entity_id=str(definition.id),
            action="extension_field.updated",
            before=before,
            after=after,
            correlation_id=ctx.correlation_id,
        )
        session.commit()
        session.refresh(definition)
        self._composer.invalidate(ctx.tenant_id, definition.entity_table)
        self._publish(ctx, "extension_field.updated", definition)
        return self._to_read(definition)

    def deactivate_field(self, session: Session, ctx: TenantContext, field_id: int) -> ExtensionFieldRead:
        definition = self._load(session, ctx.tenant_id, field_id)
        before = self._to_read(definition).model_dump(mode="json")
        if not definition.is_active:
            return self._to_read(definition)

        definition.is_active = False
        definition.updated_at = utcnow()
        session.add(definition)
        session.flush()

        audit.record(
            actor_user_id=ctx.user_id,
            tenant_id=ctx.tenant_id,
            entity_type="extension_field",
            entity_id=str(definition.id),
            action="extension_field.deactivated",
            before=before,
            after={"is_active": False},
            correlation_id=ctx.correlation_id,
        )
        session.commit()
        session.refresh(definition)
        self._composer.invalidate(ctx.tenant_id, definition.entity_table)
        self._publish(ctx, "extension_field.deactivated", definition)
        logger.info(
            "extension_field.deactivated",
            extra={
                "tenant_id": ctx.tenant_id,
                "entity_table": definition.entity_table,
                "field_name": definition.field_name,
            },
        )
        return self._to_read(definition)

    def get_composed_schema(self, session: Session, ctx: TenantContext, entity_table: str) -> ComposedSchemaRead:
        schema = self._composer.compose(session, ctx.tenant_id, entity_table)
        return to_composed_schema_read(schema)

    def validate_record(
        self,
        session: Session,
        ctx: TenantContext,
        entity_table: str,
        record: dict[str, Any],
    ) -> RecordValidationResponse:
        schema = self._composer.compose(session, ctx.tenant_id, entity_table)
        outcome = validate_record(schema, record)
        return RecordValidationResponse(is_valid=outcome.is_valid, errors=outcome.errors)

    def _validate_field_name(self, raw: str) -> str:
        field_name = raw.strip()
        if not FIELD_NAME_RE.match(field_name):
            raise InvalidArgumentError("field_name must match ^[A-Za-z_][A-Za-z0-9_]*$")
        if field_name.lower() in RESERVED_FIELD_NAMES:
            raise InvalidArgumentError(f"field_name '{field_name}' is reserved")
        return field_name

    def _ensure_name_available(
        self,
        session: Session,
        tenant_id: str,
        entity_table: str,
        field_name: str,
        exclude_id: int | None = None,
    ) -> None:
        base_fields = self._composer.provider.get_base_fields(entity_table) or ()
        if any(item.name.lower() == field_name.lower() for item in base_fields):
            raise ConflictError(f"field '{field_name}' already exists on {entity_table}")

        stmt = select(ExtensionFieldDefinition.id).where(
            and_(
                ExtensionFieldDefinition.tenant_id == tenant_id,
                ExtensionFieldDefinition.entity_table == entity_table,
                func.lower(ExtensionFieldDefinition.field_name) == field_name.lower(),
                ExtensionFieldDefinition.is_active.is_(True),
            )
        )
        if exclude_id is not None:
            stmt = stmt.where(ExtensionFieldDefinition.id != exclude_id)
        if session.scalar(stmt) is not None:
            raise ConflictError(f"extension field '{field_name}' already exists on {entity_table}")

    def _validate_config(self, field_type: str, validation_rules: dict[str, Any], ui_config: dict[str, Any]) -> None:
        if field_type == FieldType.SELECT and not select_options(ui_config):
            raise InvalidArgumentError("select fields require non-empty ui_config.options")

        for key in validation_rules:
            allowed_types = RULE_FIELD_TYPES.get(key)
            if allowed_types is not None and field_type not in allowed_types:
                raise InvalidArgumentError(f"validation_rules.{key} does not apply to {field_type} fields")

        pattern = validation_rules.get("pattern")
        if pattern is not None:
            if not isinstance(pattern, str):
                raise InvalidArgumentError("validation_rules.pattern must be a string")
            try:
                re.compile(pattern)
            except re.error as exc:
                raise InvalidArgumentError(f"validation_rules.pattern is invalid: {exc}") from None

        for key in ("min", "max"):
            value = validation_rules.get(key)
            if value is not None and (isinstance(value, bool) or not isinstance(value, (int, float))):
                raise InvalidArgumentError(f"validation_rules.{key} must be a number")
        for key in ("minLength", "maxLength", "min_length", "max_length"):
            value = validation_rules.get(key)
            if value is not None and (isinstance(value, bool) or not isinstance(value, int) or value < 0):
                raise InvalidArgumentError(f"validation_rules.{key} must be a non-negative integer")

        for lower_key, upper_key in (("min", "max"), ("minLength", "maxLength"), ("min_length", "max_length")):
            lower = validation_rules.get(lower_key)
            upper = validation_rules.get(upper_key)
            if lower is not None and upper is not None and lower > upper:
                raise InvalidArgumentError(f"validation_rules.{lower_key} must not exceed {upper_key}")

        format_name = validation_rules.get("format")
        if format_name is not None and format_name not in {"email", "url", "uuid", "phone"}:
            raise InvalidArgumentError("validation_rules.format must be one of email, url, uuid, phone")

    def _validate_default(self, definition: ExtensionFieldDefinition) -> None:
        if definition.default_value is None:
            return
        field = FieldDefinition(
            name=definition.field_name,
            field_type=FieldType(definition.field_type),
            required=False,
            source=FieldSource.EXTENSION,
            display_name=definition.display_name,
            validation_rules=definition.validation_rules or {},
            ui_config=definition.ui_config or {},
        )
        outcome = validate(field, definition.default_value)
        if not outcome.is_valid:
            raise FieldValidationError(f"default_value is invalid: {outcome.error}")

    def _load(self, session: Session, tenant_id: str, field_id: int) -> ExtensionFieldDefinition:
        definition = session.scalar(
            select(ExtensionFieldDefinition).where(
                and_(ExtensionFieldDefinition.id == field_id, ExtensionFieldDefinition.tenant_id == tenant_id)
            )
        )
        if definition is None:
            raise NotFoundError("extension field not found")
        return definition

    def _publish(self, ctx: TenantContext, event_type: str, definition: ExtensionFieldDefinition) -> None:
        events.publish(
            events.build_envelope(
                event_type,
                tenant_id=ctx.tenant_id,
                actor_user_id=ctx.user_id,
                correlation_id=ctx.correlation_id,
                payload={
                    "field_id": definition.id,
                    "entity_table": definition.entity_table,
                    "field_name": definition.field_name,
                    "field_type": definition.field_type,
                    "is_active": definition.is_active,
                },
            )
        )

    def _to_read(self, definition: ExtensionFieldDefinition) -> ExtensionFieldRead:
        return ExtensionFieldRead.model_validate(definition)


def to_composed_schema_read(schema: ComposedSchema) -> ComposedSchemaRead:
    return ComposedSchemaRead(
        tenant_id=schema.tenant_id,
        entity_table=schema.entity_table,
        fields=[
            ComposedFieldRead(
                name=item.name,
                type=item.field_type.value,
                required=item.required,
                source=item.source.value,
                display_name=item.display_name,
            )
            for item in schema.fields
        ],
    )


extension_field_service = ExtensionFieldService()
