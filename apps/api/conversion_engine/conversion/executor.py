from __future__ import annotations

import contextvars
import logging
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from opentelemetry import trace
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from conversion_engine import events
from conversion_engine.context import get_correlation_id
from conversion_engine.conversion.conditions import ConditionEvaluator, TriggerDiagnostic, condition_evaluator, resolve_field
from conversion_engine.conversion.models import ConversionExecution, EntityConversionRule
from conversion_engine.conversion.schemas import ConversionExecutionResult, ConversionSettings, ConversionType
from conversion_engine.conversion.service import ConversionRuleService, conversion_rule_service
from conversion_engine.conversion.templates import render_name_template
from conversion_engine.core.config import get_settings
from conversion_engine.core.context import TenantContext
from conversion_engine.errors import ConflictError, StorageFailureError
from conversion_engine.metrics import observe_conversion, observe_history_write_failure, observe_skipped_fields
from conversion_engine.otel import set_span_attributes
from conversion_engine.schema.base import ComposedSchema, FieldDefinition, FieldSource
from conversion_engine.schema.composer import SchemaComposer, schema_composer
from conversion_engine.store import EntityRecord, EntityStore, call_with_timeout, get_entity_store
from conversion_engine.validation import is_missing, missing_required_fields, validate

logger = logging.getLogger("conversion_engine.conversion")
tracer = trace.get_tracer("conversion_engine.conversion")

SOURCE_NOT_FOUND = "source record not found"


@dataclass(frozen=True, slots=True)
class ConversionPlan:
    """Snapshot of a rule plus its target schema, safe to hand to worker threads."""

    rule_id: uuid.UUID
    rule_name: str
    source_entity: str
    target_entity: str
    field_mapping: dict[str, str]
    extension_field_mapping: dict[str, str]
    default_values: dict[str, Any]
    target_name_template: str | None
    settings: ConversionSettings
    target_schema: ComposedSchema


@dataclass(slots=True)
class _TargetPayload:
    data: dict[str, Any] = field(default_factory=dict)
    extensions: dict[str, Any] = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)
    converted_fields: list[str] = field(default_factory=list)
    skipped_fields: list[str] = field(default_factory=list)
    converted_extension_fields: list[str] = field(default_factory=list)
    skipped_extension_fields: list[str] = field(default_factory=list)

    def populated(self) -> set[str]:
        return set(self.data) | set(self.extensions)

    def put(self, definition: FieldDefinition, value: Any) -> None:
        if definition.source == FieldSource.EXTENSION:
            self.extensions[definition.name] = value
        else:
            self.data[definition.name] = value


class ConversionExecutor:
    """Runs conversion rules against stored records.

    Execution is lenient: a missing source record, a field that fails validation,
    a storage failure or timeout all end up in the returned result instead of
    being raised. Only rule lookup problems on the explicit path raise.
    """

    def __init__(
        self,
        store: EntityStore | None = None,
        composer: SchemaComposer | None = None,
        rules: ConversionRuleService | None = None,
        evaluator: ConditionEvaluator | None = None,
        channel: events.OutboundEventChannel | None = None,
    ) -> None:
        self._store = store
        self._composer = composer or schema_composer
        self._rules = rules or conversion_rule_service
        self._evaluator = evaluator or condition_evaluator
        self._channel = channel

    @property
    def store(self) -> EntityStore:
        return self._store or get_entity_store()

    @property
    def channel(self) -> events.OutboundEventChannel:
        return self._channel or events.outbound_channel

    def execute(
        self,
        session: Session,
        ctx: TenantContext,
        rule_id: uuid.UUID,
        source_record_id: str,
        *,
        timeout: float | None = None,
    ) -> ConversionExecutionResult:
        rule = self._rules.load_rule(session, ctx.tenant_id, rule_id)
        if not rule.is_active:
            raise ConflictError("conversion rule is inactive")
        plan = self.prepare(session, ctx.tenant_id, rule)
        if not plan.settings.manual_conversion_enabled:
            raise ConflictError("manual conversion is disabled for this rule")

        timeout_seconds = self._timeout(timeout)
        started = time.perf_counter()
        try:
            source = call_with_timeout(
                "get_record",
                lambda: self.store.get_record(ctx.tenant_id, plan.source_entity, source_record_id),
                timeout_seconds,
            )
        except StorageFailureError as exc:
            result = self._failed(plan, source_record_id, "manual", str(exc), started)
        else:
            result = self.run_plan(ctx, plan, source_record_id, source, "manual", timeout_seconds, started)

        self._record(session, ctx, [result])
        return result

    def check_auto_triggers(
        self,
        session: Session,
        ctx: TenantContext,
        entity_table: str,
        record_id: str,
        *,
        timeout: float | None = None,
    ) -> list[ConversionExecutionResult]:
        with tracer.start_as_current_span("conversion.check_auto_triggers") as span:
            set_span_attributes(
                span,
                {
                    "tenant_id": ctx.tenant_id,
                    "entity_table": entity_table,
                    "record_id": record_id,
                    "correlation_id": get_correlation_id(),
                },
            )

            rules = [
                rule
                for rule in self._rules.list_by_source_entity(session, ctx.tenant_id, entity_table, is_active=True)
                if ConversionSettings.model_validate(rule.conversion_settings or {}).auto_conversion_enabled
            ]
            if not rules:
                span.set_attribute("matched_rules", 0)
                return []

            timeout_seconds = self._timeout(timeout)
            started = time.perf_counter()
            try:
                source = call_with_timeout(
                    "get_record",
                    lambda: self.store.get_record(ctx.tenant_id, entity_table, record_id),
                    timeout_seconds,
                )
            except StorageFailureError as exc:
                logger.warning(
                    "conversion.auto_trigger_load_failed",
                    extra={"tenant_id": ctx.tenant_id, "entity_table": entity_table, "source_record_id": record_id, "error": str(exc)},
                )
                return []
            if source is None:
                logger.info(
                    "conversion.auto_trigger_source_missing",
                    extra={"tenant_id": ctx.tenant_id, "entity_table": entity_table, "source_record_id": record_id},
                )
                return []
            load_ms = (time.perf_counter() - started) * 1000

            source_schema = self._composer.compose(session, ctx.tenant_id, entity_table)
            record = source.as_record()
            plans: list[ConversionPlan] = []
            for rule in rules:
                diagnostics: list[TriggerDiagnostic] = []
                if not self._evaluator.evaluate(rule.trigger_conditions, record, source_schema, diagnostics):
                    continue
                plans.append(self.prepare(session, ctx.tenant_id, rule))
            span.set_attribute("matched_rules", len(plans))
            if not plans:
                return []

            results = self._run_concurrently(ctx, plans, source, timeout_seconds, load_ms)
            self._record(session, ctx, results)
            return results

    def prepare(self, session: Session, tenant_id: str, rule: EntityConversionRule) -> ConversionPlan:
        return ConversionPlan(
            rule_id=rule.id,
            rule_name=rule.name,
            source_entity=rule.source_entity,
            target_entity=rule.target_entity,
            field_mapping=dict(rule.field_mapping or {}),
            extension_field_mapping=dict(rule.extension_field_mapping or {}),
            default_values=dict(rule.default_values or {}),
            target_name_template=rule.target_name_template,
            settings=ConversionSettings.model_validate(rule.conversion_settings or {}),
            target_schema=self._composer.compose(session, tenant_id, rule.target_entity),
        )

    def run_plan(
        self,
        ctx: TenantContext,
        plan: ConversionPlan,
        source_record_id: str,
        source: EntityRecord | None,
        conversion_type: ConversionType,
        timeout_seconds: float | None,
        started: float,
    ) -> ConversionExecutionResult:
        with tracer.start_as_current_span("conversion.execute") as span:
            set_span_attributes(
                span,
                {
                    "tenant_id": ctx.tenant_id,
                    "rule_id": plan.rule_id,
                    "source_record_id": source_record_id,
                    "conversion_type": conversion_type,
                    "correlation_id": get_correlation_id(),
                },
            )
            result = self._convert(ctx, plan, source_record_id, source, conversion_type, timeout_seconds, started)
            span.set_attribute("outcome", "success" if result.success else "failed")

        observe_conversion(conversion_type, result.success, result.execution_time_ms / 1000)
        observe_skipped_fields("base", len(result.skipped_fields))
        observe_skipped_fields("extension", len(result.skipped_extension_fields))
        logger.info(
            "conversion.executed",
            extra={
                "tenant_id": ctx.tenant_id,
                "rule_id": str(plan.rule_id),
                "source_record_id": source_record_id,
                "target_record_id": result.target_record_id,
                "success": result.success,
                "error": result.error_message,
                "duration_ms": round(result.execution_time_ms, 2),
            },
        )
        return result

    def _run_concurrently(
        self,
        ctx: TenantContext,
        plans: list[ConversionPlan],
        source: EntityRecord,
        timeout_seconds: float | None,
        load_ms: float,
    ) -> list[ConversionExecutionResult]:
        def _run(plan: ConversionPlan) -> ConversionExecutionResult:
            # clock starts at the shared source load
            started = time.perf_counter() - load_ms / 1000
            return self.run_plan(ctx, plan, source.id, source, "automatic", timeout_seconds, started)

        max_workers = max(1, min(get_settings().conversion_max_workers, len(plans)))
        if max_workers == 1:
            return [_run(plan) for plan in plans]

        with ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="conversion") as pool:
            futures = [pool.submit(contextvars.copy_context().run, _run, plan) for plan in plans]
            return [future.result() for future in futures]

    def _convert(
        self,
        ctx: TenantContext,
        plan: ConversionPlan,
        source_record_id: str,
        source: EntityRecord | None,
        conversion_type: ConversionType,
        timeout_seconds: float | None,
        started: float,
    ) -> ConversionExecutionResult:
        if source is None:
            return self._failed(plan, source_record_id, conversion_type, SOURCE_NOT_FOUND, started)

        payload = self._build_payload(plan, source)

        missing = missing_required_fields(plan.target_schema, payload.populated())
        if missing:
            return self._result(
                plan,
                source_record_id,
                conversion_type,
                payload,
                started,
                success=False,
                error_message=f"validation failed: missing required fields: {', '.join(missing)}",
            )

        try:
            inserted = call_with_timeout(
                "insert_record",
                lambda: self.store.insert_record(ctx.tenant_id, plan.target_entity, payload.data, payload.extensions),
                timeout_seconds,
            )
        except StorageFailureError as exc:
            return self._result(
                plan,
                source_record_id,
                conversion_type,
                payload,
                started,
                success=False,
                error_message=str(exc),
            )

        return self._result(
            plan,
            source_record_id,
            conversion_type,
            payload,
            started,
            success=True,
            target_record_id=inserted.id,
        )

    def _build_payload(self, plan: ConversionPlan, source: EntityRecord) -> _TargetPayload:
        payload = _TargetPayload()
        record = source.as_record()
        target_schema = plan.target_schema

        for source_field, target_field in plan.field_mapping.items():
            present, value = resolve_field(record, source_field)
            definition = target_schema.get(target_field)
            warning = self._map_value(payload, source_field, target_field, present, value, definition, plan.target_entity)
            if warning is None:
                payload.converted_fields.append(source_field)
            else:
                payload.skipped_fields.append(source_field)
                payload.warnings.append(warning)

        for source_field, target_field in plan.extension_field_mapping.items():
            present = source_field in source.extensions
            value = source.extensions.get(source_field)
            definition = target_schema.get_extension(target_field)
            warning = self._map_value(payload, source_field, target_field, present, value, definition, plan.target_entity)
            if warning is None:
                payload.converted_extension_fields.append(source_field)
            else:
                payload.skipped_extension_fields.append(source_field)
                payload.warnings.append(warning)

        for target_field, value in plan.default_values.items():
            if target_field in payload.populated():
                continue
            definition = target_schema.get(target_field)
            if definition is None:
                payload.warnings.append(f"default value for '{target_field}' ignored: field not in {plan.target_entity} schema")
                continue
            outcome = validate(definition, value)
            if not outcome.is_valid:
                payload.warnings.append(f"default value for '{target_field}' ignored: {outcome.error}")
                continue
            if not is_missing(value):
                payload.put(definition, outcome.value.to_raw() if outcome.value is not None else value)

        for definition in target_schema.extension_fields:
            if definition.name in payload.populated() or definition.default_value is None:
                continue
            payload.put(definition, definition.default_value)

        if plan.target_name_template:
            self._apply_name_template(plan, source, payload)
        return payload

    def _map_value(
        self,
        payload: _TargetPayload,
        source_field: str,
        target_field: str,
        present: bool,
        value: Any,
        definition: FieldDefinition | None,
        target_entity: str,
    ) -> str | None:
        if not present or is_missing(value):
            return f"{source_field}: source value is empty"
        if definition is None:
            return f"{source_field}: target field '{target_field}' is not in the {target_entity} schema"
        outcome = validate(definition, value)
        if not outcome.is_valid:
            return f"{source_field}: {outcome.error}"
        payload.put(definition, outcome.value.to_raw() if outcome.value is not None else value)
        return None

    def _apply_name_template(self, plan: ConversionPlan, source: EntityRecord, payload: _TargetPayload) -> None:
        name_field = plan.settings.target_name_field or get_settings().target_name_field
        definition = plan.target_schema.get(name_field)
        if definition is None:
            payload.warnings.append(f"name template ignored: field '{name_field}' not in {plan.target_entity} schema")
            return
        rendered, unresolved = render_name_template(plan.target_name_template or "", source.data, source.extensions)
        if unresolved:
            payload.warnings.append(f"name template has unresolved placeholders: {', '.join(unresolved)}")
        if rendered:
            payload.put(definition, rendered)

    def _failed(
        self,
        plan: ConversionPlan,
        source_record_id: str,
        conversion_type: ConversionType,
        error_message: str,
        started: float,
    ) -> ConversionExecutionResult:
        return self._result(
            plan,
            source_record_id,
            conversion_type,
            _TargetPayload(),
            started,
            success=False,
            error_message=error_message,
        )

    def _result(
        self,
        plan: ConversionPlan,
        source_record_id: str,
        conversion_type: ConversionType,
        payload: _TargetPayload,
        started: float,
        *,
        success: bool,
        target_record_id: str | None = None,
        error_message: str | None = None,
    ) -> ConversionExecutionResult:
        return ConversionExecutionResult(
            success=success,
            source_record_id=source_record_id,
            target_record_id=target_record_id if success else None,
            rule_id=plan.rule_id,
            rule_name=plan.rule_name,
            source_entity=plan.source_entity,
            target_entity=plan.target_entity,
            conversion_type=conversion_type,
            error_message=error_message,
            warnings=payload.warnings,
            converted_fields=payload.converted_fields,
            skipped_fields=payload.skipped_fields,
            converted_extension_fields=payload.converted_extension_fields,
            skipped_extension_fields=payload.skipped_extension_fields,
            execution_time_ms=round((time.perf_counter() - started) * 1000, 3),
            created_at=datetime.now(timezone.utc),
        )

    def _record(self, session: Session, ctx: TenantContext, results: list[ConversionExecutionResult]) -> None:
        correlation_id = ctx.correlation_id or get_correlation_id()
        for result in results:
            session.add(
                ConversionExecution(
                    tenant_id=ctx.tenant_id,
                    rule_id=result.rule_id,
                    rule_name=result.rule_name,
                    source_entity=result.source_entity,
                    target_entity=result.target_entity,
                    source_record_id=result.source_record_id,
                    target_record_id=result.target_record_id,
                    conversion_type=result.conversion_type,
                    success=result.success,
                    error_message=result.error_message,
                    warnings=list(result.warnings),
                    converted_fields=list(result.converted_fields),
                    skipped_fields=list(result.skipped_fields),
                    converted_extension_fields=list(result.converted_extension_fields),
                    skipped_extension_fields=list(result.skipped_extension_fields),
                    execution_time_ms=result.execution_time_ms,
                    performed_by=ctx.user_id,
                    correlation_id=correlation_id,
                    created_at=result.created_at,
                )
            )
        try:
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            observe_history_write_failure()
            logger.error(
                "conversion.history_write_failed",
                extra={"tenant_id": ctx.tenant_id, "rule_id": str(results[0].rule_id) if results else None, "error": str(exc)},
            )

        for result in results:
            self.channel.send(
                events.build_envelope(
                    "entity.converted" if result.success else "entity.conversion_failed",
                    tenant_id=ctx.tenant_id,
                    actor_user_id=ctx.user_id,
                    correlation_id=correlation_id,
                    payload={
                        "rule_id": str(result.rule_id),
                        "rule_name": result.rule_name,
                        "source_entity": result.source_entity,
                        "target_entity": result.target_entity,
                        "source_record_id": result.source_record_id,
                        "target_record_id": result.target_record_id,
                        "outcome": "success" if result.success else "failed",
                        "error_message": result.error_message,
                        "conversion_type": result.conversion_type,
                        "performed_by": ctx.user_id,
                    },
                )
            )

    def _timeout(self, timeout: float | None) -> float | None:
        return timeout if timeout is not None else get_settings().entity_store_timeout_seconds


def resolve_entity_store_backend(app_env: str, backend: str) -> str:
    choice = backend.lower()
    if choice == "auto":
        return "sql" if app_env.lower() in {"prod", "production"} else "inmemory"
    return choice


conversion_executor = ConversionExecutor()
