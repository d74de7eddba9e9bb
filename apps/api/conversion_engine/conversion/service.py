from __future__ import annotations

import logging
import uuid
from typing import Any

from sqlalchemy import Select, and_, case, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from conversion_engine import audit, events
from conversion_engine.conversion.conditions import validate_trigger_conditions
from conversion_engine.conversion.mapping import MappingSuggestionEngine, mapping_suggestion_engine
from conversion_engine.conversion.models import ConversionExecution, EntityConversionRule, utcnow
from conversion_engine.conversion.schemas import (
    ApprovalSettings,
    ConversionExecutionResult,
    ConversionRuleCreate,
    ConversionRuleRead,
    ConversionRuleStats,
    ConversionRuleUpdate,
    ConversionSettings,
    MappingSuggestions,
    TriggerValidationResponse,
)
from conversion_engine.conversion.templates import template_references
from conversion_engine.core.context import TenantContext
from conversion_engine.errors import ConflictError, InvalidArgumentError, NotFoundError
from conversion_engine.schema.base import ComposedSchema, FieldSource
from conversion_engine.schema.composer import SchemaComposer, schema_composer

logger = logging.getLogger("conversion_engine.conversion")

_MUTABLE_RULE_FIELDS = [
    "name",
    "description",
    "is_active",
    "source_entity",
    "target_entity",
    "trigger_conditions",
    "field_mapping",
    "extension_field_mapping",
    "conversion_settings",
    "target_name_template",
    "default_values",
    "approval_settings",
]


class ConversionRuleService:
    def __init__(
        self,
        composer: SchemaComposer | None = None,
        suggestion_engine: MappingSuggestionEngine | None = None,
    ) -> None:
        self._composer = composer or schema_composer
        self._suggestion_engine = suggestion_engine or mapping_suggestion_engine

    def list_rules(
        self,
        session: Session,
        ctx: TenantContext,
        *,
        source_entity: str | None = None,
        is_active: bool | None = None,
    ) -> list[ConversionRuleRead]:
        stmt: Select[tuple[EntityConversionRule]] = select(EntityConversionRule).where(
            EntityConversionRule.tenant_id == ctx.tenant_id
        )
        if source_entity:
            stmt = stmt.where(EntityConversionRule.source_entity == source_entity)
        if is_active is not None:
            stmt = stmt.where(EntityConversionRule.is_active.is_(is_active))
        rows = session.scalars(stmt.order_by(EntityConversionRule.created_at.desc())).all()
        return [self._to_read(row) for row in rows]

    def list_by_source_entity(
        self,
        session: Session,
        tenant_id: str,
        source_entity: str,
        is_active: bool | None = True,
    ) -> list[EntityConversionRule]:
        stmt = select(EntityConversionRule).where(
            and_(
                EntityConversionRule.tenant_id == tenant_id,
                EntityConversionRule.source_entity == source_entity,
            )
        )
        if is_active is not None:
            stmt = stmt.where(EntityConversionRule.is_active.is_(is_active))
        return list(session.scalars(stmt.order_by(EntityConversionRule.created_at.asc(), EntityConversionRule.name.asc())).all())

    def get_rule(self, session: Session, ctx: TenantContext, rule_id: uuid.UUID) -> ConversionRuleRead:
        return self._to_read(self.load_rule(session, ctx.tenant_id, rule_id))

    def create_rule(self, session: Session, ctx: TenantContext, dto: ConversionRuleCreate) -> ConversionRuleRead:
        payload = dto.model_dump(mode="json")
        self._validate_definition(session, ctx.tenant_id, payload)
        self._ensure_name_available(session, ctx.tenant_id, payload["name"])

        rule = EntityConversionRule(
            tenant_id=ctx.tenant_id,
            name=payload["name"],
            description=payload["description"],
            is_active=payload["is_active"],
            source_entity=payload["source_entity"],
            target_entity=payload["target_entity"],
            trigger_conditions=payload["trigger_conditions"],
            field_mapping=payload["field_mapping"],
            extension_field_mapping=payload["extension_field_mapping"],
            conversion_settings=payload["conversion_settings"],
            target_name_template=payload["target_name_template"],
            default_values=payload["default_values"],
            approval_settings=payload["approval_settings"],
            created_by=ctx.user_id,
        )
        session.add(rule)
        try:
            session.flush()
        except IntegrityError:
            session.rollback()
            raise ConflictError(f"conversion rule '{payload['name']}' already exists")

        after = self._to_read(rule).model_dump(mode="json")
        audit.record(
            actor_user_id=ctx.user_id,
            tenant_id=ctx.tenant_id,
            entity_type="conversion_rule",
            entity_id=str(rule.id),
            action="conversion_rule.created",
            before=None,
            after=after,
            correlation_id=ctx.correlation_id,
        )
        session.commit()
        session.refresh(rule)
        self._publish(ctx, "conversion_rule.created", rule)
        logger.info("conversion_rule.created", extra={"tenant_id": ctx.tenant_id, "rule_id": str(rule.id)})
        return self._to_read(rule)

    def update_rule(
        self,
        session: Session,
        ctx: TenantContext,
        rule_id: uuid.UUID,
        dto: ConversionRuleUpdate,
    ) -> ConversionRuleRead:
        rule = self.load_rule(session, ctx.tenant_id, rule_id)
        before = self._to_read(rule).model_dump(mode="json")
        changes = dto.model_dump(mode="json", exclude_unset=True)

        merged = {key: before[key] for key in _MUTABLE_RULE_FIELDS}
        for key, value in changes.items():
            if value is None and key not in {"description", "trigger_conditions", "target_name_template"}:
                continue
            merged[key] = value
        if isinstance(merged.get("name"), str):
            merged["name"] = merged["name"].strip()
        if not merged.get("name"):
            raise InvalidArgumentError("name must not be blank")

        self._validate_definition(session, ctx.tenant_id, merged)
        if merged["name"] != rule.name:
            self._ensure_name_available(session, ctx.tenant_id, merged["name"], exclude_id=rule.id)

        for key in _MUTABLE_RULE_FIELDS:
            setattr(rule, key, merged[key])
        rule.updated_at = utcnow()
        session.add(rule)
        try:
            session.flush()
        except IntegrityError:
            session.rollback()
            raise ConflictError(f"conversion rule '{merged['name']}' already exists")

        after = self._to_read(rule).model_dump(mode="json")
        audit.record(
            actor_user_id=ctx.user_id,
            tenant_id=ctx.tenant_id,
            entity_type="conversion_rule",
            entity_id=str(rule.id),
            action="conversion_rule.updated",
            before=before,
            after=after,
            correlation_id=ctx.correlation_id,
        )
        session.commit()
        session.refresh(rule)
        self._publish(ctx, "conversion_rule.updated", rule)
        return self._to_read(rule)

    def delete_rule(self, session: Session, ctx: TenantContext, rule_id: uuid.UUID, *, soft: bool = True) -> None:
        rule = self.load_rule(session, ctx.tenant_id, rule_id)
        before = self._to_read(rule).model_dump(mode="json")

        if soft:
            rule.is_active = False
            rule.updated_at = utcnow()
            session.add(rule)
            after: dict[str, Any] | None = {"is_active": False}
        else:
            session.delete(rule)
            after = None
        session.flush()

        audit.record(
            actor_user_id=ctx.user_id,
            tenant_id=ctx.tenant_id,
            entity_type="conversion_rule",
            entity_id=str(rule_id),
            action="conversion_rule.deleted",
            before=before,
            after=after,
            correlation_id=ctx.correlation_id,
        )
        session.commit()
        events.publish(
            events.build_envelope(
                "conversion_rule.deleted",
                tenant_id=ctx.tenant_id,
                actor_user_id=ctx.user_id,
                correlation_id=ctx.correlation_id,
                payload={"rule_id": str(rule_id), "name": before["name"], "soft": soft},
            )
        )

    def get_stats(
        self,
        session: Session,
        ctx: TenantContext,
        rule_id: uuid.UUID | None = None,
    ) -> list[ConversionRuleStats]:
        rule_stmt = select(EntityConversionRule.id, EntityConversionRule.name).where(
            EntityConversionRule.tenant_id == ctx.tenant_id
        )
        if rule_id is not None:
            rule_stmt = rule_stmt.where(EntityConversionRule.id == rule_id)
        rules = session.execute(rule_stmt.order_by(EntityConversionRule.created_at.asc())).all()
        if rule_id is not None and not rules:
            raise NotFoundError("conversion rule not found")

        aggregate_stmt = (
            select(
                ConversionExecution.rule_id,
                func.count(ConversionExecution.id),
                func.sum(case((ConversionExecution.success.is_(True), 1), else_=0)),
                func.max(ConversionExecution.created_at),
                func.avg(ConversionExecution.execution_time_ms),
            )
            .where(ConversionExecution.tenant_id == ctx.tenant_id)
            .group_by(ConversionExecution.rule_id)
        )
        if rule_id is not None:
            aggregate_stmt = aggregate_stmt.where(ConversionExecution.rule_id == rule_id)
        aggregates = {row[0]: row for row in session.execute(aggregate_stmt).all()}

        stats: list[ConversionRuleStats] = []
        for current_id, name in rules:
            row = aggregates.get(current_id)
            if row is None:
                stats.append(ConversionRuleStats(rule_id=current_id, rule_name=name))
                continue
            total = int(row[1] or 0)
            successful = int(row[2] or 0)
            stats.append(
                ConversionRuleStats(
                    rule_id=current_id,
                    rule_name=name,
                    total_conversions=total,
                    successful_conversions=successful,
                    failed_conversions=total - successful,
                    last_conversion_at=row[3],
                    avg_conversion_time_ms=round(float(row[4] or 0.0), 2),
                )
            )
        return stats

    def list_executions(
        self,
        session: Session,
        ctx: TenantContext,
        rule_id: uuid.UUID | None = None,
        limit: int = 100,
    ) -> list[ConversionExecutionResult]:
        stmt = select(ConversionExecution).where(ConversionExecution.tenant_id == ctx.tenant_id)
        if rule_id is not None:
            stmt = stmt.where(ConversionExecution.rule_id == rule_id)
        rows = session.scalars(stmt.order_by(ConversionExecution.created_at.desc()).limit(limit)).all()
        return [
            ConversionExecutionResult(
                success=row.success,
                source_record_id=row.source_record_id,
                target_record_id=row.target_record_id,
                rule_id=row.rule_id,
                rule_name=row.rule_name,
                source_entity=row.source_entity,
                target_entity=row.target_entity,
                conversion_type=row.conversion_type,
                error_message=row.error_message,
                warnings=list(row.warnings or []),
                converted_fields=list(row.converted_fields or []),
                skipped_fields=list(row.skipped_fields or []),
                converted_extension_fields=list(row.converted_extension_fields or []),
                skipped_extension_fields=list(row.skipped_extension_fields or []),
                execution_time_ms=row.execution_time_ms,
                created_at=row.created_at,
            )
            for row in rows
        ]

    def validate_trigger_conditions(
        self,
        session: Session,
        ctx: TenantContext,
        conditions: dict[str, Any],
        source_entity: str,
    ) -> TriggerValidationResponse:
        schema = self._composer.compose(session, ctx.tenant_id, source_entity)
        outcome = validate_trigger_conditions(conditions, schema)
        return TriggerValidationResponse(is_valid=outcome.is_valid, errors=outcome.errors)

    def suggest_mapping(
        self,
        session: Session,
        ctx: TenantContext,
        source_entity: str,
        target_entity: str,
    ) -> MappingSuggestions:
        source_schema = self._composer.compose(session, ctx.tenant_id, source_entity)
        target_schema = self._composer.compose(session, ctx.tenant_id, target_entity)
        return self._suggestion_engine.suggest(source_schema, target_schema)

    def load_rule(self, session: Session, tenant_id: str, rule_id: uuid.UUID) -> EntityConversionRule:
        rule = session.scalar(
            select(EntityConversionRule).where(
                and_(EntityConversionRule.id == rule_id, EntityConversionRule.tenant_id == tenant_id)
            )
        )
        if rule is None:
            raise NotFoundError("conversion rule not found")
        return rule

    def _validate_definition(self, session: Session, tenant_id: str, payload: dict[str, Any]) -> None:
        source_entity = payload.get("source_entity")
        target_entity = payload.get("target_entity")
        for label, entity in (("source_entity", source_entity), ("target_entity", target_entity)):
            if not isinstance(entity, str) or not self._composer.supports(entity):
                raise InvalidArgumentError(f"{label} '{entity}' is not a supported entity table")
        if source_entity == target_entity:
            raise InvalidArgumentError("source_entity and target_entity must differ")

        source_schema = self._composer.compose(session, tenant_id, source_entity)
        target_schema = self._composer.compose(session, tenant_id, target_entity)
        errors: list[str] = []

        errors.extend(self._mapping_errors("field_mapping", payload.get("field_mapping") or {}, source_schema, target_schema, False))
        errors.extend(
            self._mapping_errors(
                "extension_field_mapping",
                payload.get("extension_field_mapping") or {},
                source_schema,
                target_schema,
                True,
            )
        )

        for field_name in (payload.get("default_values") or {}):
            if not target_schema.has(field_name):
                errors.append(f"default_values.{field_name}: unknown field on {target_entity}")

        conditions = payload.get("trigger_conditions")
        if conditions is not None:
            errors.extend(validate_trigger_conditions(conditions, source_schema).errors)

        template = payload.get("target_name_template")
        if template:
            for namespace, name in template_references(template):
                definition = source_schema.get(name)
                if definition is None or (namespace == "extension" and definition.source != FieldSource.EXTENSION):
                    errors.append(f"target_name_template: unknown placeholder '{name}' on {source_entity}")

        settings = ConversionSettings.model_validate(payload.get("conversion_settings") or {})
        if settings.target_name_field and not target_schema.has(settings.target_name_field):
            errors.append(f"conversion_settings.target_name_field: unknown field on {target_entity}")
        ApprovalSettings.model_validate(payload.get("approval_settings") or {})

        if errors:
            raise InvalidArgumentError("; ".join(errors))

    def _mapping_errors(
        self,
        label: str,
        mapping: dict[str, str],
        source_schema: ComposedSchema,
        target_schema: ComposedSchema,
        extensions_only: bool,
    ) -> list[str]:
        errors: list[str] = []
        seen_targets: set[str] = set()
        for source_field, target_field in mapping.items():
            source_def = source_schema.get_extension(source_field) if extensions_only else source_schema.get(source_field)
            if source_def is None:
                errors.append(f"{label}.{source_field}: unknown field on {source_schema.entity_table}")
            target_def = target_schema.get_extension(target_field) if extensions_only else target_schema.get(target_field)
            if target_def is None:
                errors.append(f"{label}.{source_field}: unknown target field '{target_field}' on {target_schema.entity_table}")
            if target_field in seen_targets:
                errors.append(f"{label}.{source_field}: target field '{target_field}' is mapped more than once")
            seen_targets.add(target_field)
        return errors

    def _ensure_name_available(
        self,
        session: Session,
        tenant_id: str,
        name: str,
        exclude_id: uuid.UUID | None = None,
    ) -> None:
        stmt = select(EntityConversionRule.id).where(
            and_(EntityConversionRule.tenant_id == tenant_id, EntityConversionRule.name == name)
        )
        if exclude_id is not None:
            stmt = stmt.where(EntityConversionRule.id != exclude_id)
        if session.scalar(stmt) is not None:
            raise ConflictError(f"conversion rule '{name}' already exists")

    def _publish(self, ctx: TenantContext, event_type: str, rule: EntityConversionRule) -> None:
        events.publish(
            events.build_envelope(
                event_type,
                tenant_id=ctx.tenant_id,
                actor_user_id=ctx.user_id,
                correlation_id=ctx.correlation_id,
                payload={
                    "rule_id": str(rule.id),
                    "name": rule.name,
                    "source_entity": rule.source_entity,
                    "target_entity": rule.target_entity,
                    "is_active": rule.is_active,
                },
            )
        )

    def _to_read(self, rule: EntityConversionRule) -> ConversionRuleRead:
        return ConversionRuleRead.model_validate(rule)


conversion_rule_service = ConversionRuleService()
