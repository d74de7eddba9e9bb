from __future__ import annotations

import uuid
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from conversion_engine.api.deps import error_response, get_tenant_context
from conversion_engine.conversion.executor import conversion_executor
from conversion_engine.conversion.schemas import (
    CheckAutoTriggersRequest,
    ConversionExecutionResult,
    ConversionRuleCreate,
    ConversionRuleRead,
    ConversionRuleStats,
    ConversionRuleUpdate,
    ExecuteConversionRequest,
    MappingSuggestions,
    TriggerValidationRequest,
    TriggerValidationResponse,
)
from conversion_engine.conversion.service import conversion_rule_service
from conversion_engine.core.context import TenantContext
from conversion_engine.core.database import get_db

rules_router = APIRouter(prefix="/api/conversion-rules", tags=["conversion_rules"])
conversions_router = APIRouter(prefix="/api/conversions", tags=["conversions"])


@rules_router.get("", response_model=list[ConversionRuleRead])
def list_conversion_rules(
    request: Request,
    source_entity: str | None = Query(default=None),
    is_active: bool | None = Query(default=None),
    db: Session = Depends(get_db),
    ctx: TenantContext = Depends(get_tenant_context),
) -> list[ConversionRuleRead] | JSONResponse:
    try:
        return conversion_rule_service.list_rules(db, ctx, source_entity=source_entity, is_active=is_active)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="conversion_rule_list_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@rules_router.post("", response_model=ConversionRuleRead, status_code=status.HTTP_201_CREATED)
def create_conversion_rule(
    request: Request,
    dto: ConversionRuleCreate,
    db: Session = Depends(get_db),
    ctx: TenantContext = Depends(get_tenant_context),
) -> ConversionRuleRead | JSONResponse:
    try:
        return conversion_rule_service.create_rule(db, ctx, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="conversion_rule_create_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@rules_router.get("/stats", response_model=list[ConversionRuleStats])
def get_conversion_rule_stats(
    request: Request,
    rule_id: uuid.UUID | None = Query(default=None),
    db: Session = Depends(get_db),
    ctx: TenantContext = Depends(get_tenant_context),
) -> list[ConversionRuleStats] | JSONResponse:
    try:
        return conversion_rule_service.get_stats(db, ctx, rule_id=rule_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="conversion_rule_stats_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@rules_router.post("/validate-trigger", response_model=TriggerValidationResponse)
def validate_trigger_conditions(
    request: Request,
    dto: TriggerValidationRequest,
    db: Session = Depends(get_db),
    ctx: TenantContext = Depends(get_tenant_context),
) -> TriggerValidationResponse | JSONResponse:
    try:
        return conversion_rule_service.validate_trigger_conditions(db, ctx, dto.conditions, dto.source_entity)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="trigger_validation_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@rules_router.get("/suggest-mapping", response_model=MappingSuggestions)
def suggest_field_mapping(
    request: Request,
    source_entity: str = Query(min_length=1),
    target_entity: str = Query(min_length=1),
    db: Session = Depends(get_db),
    ctx: TenantContext = Depends(get_tenant_context),
) -> MappingSuggestions | JSONResponse:
    try:
        return conversion_rule_service.suggest_mapping(db, ctx, source_entity, target_entity)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="mapping_suggestion_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@rules_router.get("/{rule_id}", response_model=ConversionRuleRead)
def get_conversion_rule(
    request: Request,
    rule_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: TenantContext = Depends(get_tenant_context),
) -> ConversionRuleRead | JSONResponse:
    try:
        return conversion_rule_service.get_rule(db, ctx, rule_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="conversion_rule_get_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@rules_router.patch("/{rule_id}", response_model=ConversionRuleRead)
def update_conversion_rule(
    request: Request,
    rule_id: uuid.UUID,
    dto: ConversionRuleUpdate,
    db: Session = Depends(get_db),
    ctx: TenantContext = Depends(get_tenant_context),
) -> ConversionRuleRead | JSONResponse:
    try:
        return conversion_rule_service.update_rule(db, ctx, rule_id, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="conversion_rule_update_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@rules_router.delete("/{rule_id}", status_code=status.HTTP_200_OK, response_model=None)
def delete_conversion_rule(
    request: Request,
    rule_id: uuid.UUID,
    hard: bool = Query(default=False),
    db: Session = Depends(get_db),
    ctx: TenantContext = Depends(get_tenant_context),
) -> Any:
    try:
        conversion_rule_service.delete_rule(db, ctx, rule_id, soft=not hard)
        return {"status": "deleted" if hard else "deactivated"}
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="conversion_rule_delete_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@rules_router.post("/{rule_id}/execute", response_model=ConversionExecutionResult)
def execute_conversion(
    request: Request,
    rule_id: uuid.UUID,
    dto: ExecuteConversionRequest,
    db: Session = Depends(get_db),
    ctx: TenantContext = Depends(get_tenant_context),
) -> ConversionExecutionResult | JSONResponse:
    try:
        return conversion_executor.execute(db, ctx, rule_id, dto.source_record_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="conversion_execute_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@conversions_router.post("/check-auto-triggers", response_model=list[ConversionExecutionResult])
def check_auto_triggers(
    request: Request,
    dto: CheckAutoTriggersRequest,
    db: Session = Depends(get_db),
    ctx: TenantContext = Depends(get_tenant_context),
) -> list[ConversionExecutionResult] | JSONResponse:
    try:
        return conversion_executor.check_auto_triggers(db, ctx, dto.entity_table, dto.record_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="auto_trigger_check_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@conversions_router.get("/executions", response_model=list[ConversionExecutionResult])
def list_conversion_executions(
    request: Request,
    rule_id: uuid.UUID | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
    db: Session = Depends(get_db),
    ctx: TenantContext = Depends(get_tenant_context),
) -> list[ConversionExecutionResult] | JSONResponse:
    try:
        return conversion_rule_service.list_executions(db, ctx, rule_id=rule_id, limit=limit)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="conversion_execution_list_failed",
            message=str(exc.detail),
            details=exc.detail,
        )
