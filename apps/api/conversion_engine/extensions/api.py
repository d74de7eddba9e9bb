from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from conversion_engine.api.deps import error_response, get_tenant_context
from conversion_engine.core.context import TenantContext
from conversion_engine.core.database import get_db
from conversion_engine.extensions.schemas import (
    ComposedSchemaRead,
    ExtensionFieldCreate,
    ExtensionFieldRead,
    ExtensionFieldUpdate,
    RecordValidationRequest,
    RecordValidationResponse,
)
from conversion_engine.extensions.service import extension_field_service

router = APIRouter(prefix="/api", tags=["extension_fields"])


@router.get("/extension-fields", response_model=list[ExtensionFieldRead])
def list_extension_fields(
    request: Request,
    entity_table: str | None = Query(default=None),
    include_inactive: bool = Query(default=False),
    db: Session = Depends(get_db),
    ctx: TenantContext = Depends(get_tenant_context),
) -> list[ExtensionFieldRead] | JSONResponse:
    try:
        return extension_field_service.list_fields(db, ctx, entity_table=entity_table, include_inactive=include_inactive)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="extension_field_list_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@router.post("/extension-fields", response_model=ExtensionFieldRead, status_code=status.HTTP_201_CREATED)
def create_extension_field(
    request: Request,
    dto: ExtensionFieldCreate,
    db: Session = Depends(get_db),
    ctx: TenantContext = Depends(get_tenant_context),
) -> ExtensionFieldRead | JSONResponse:
    try:
        return extension_field_service.create_field(db, ctx, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="extension_field_create_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@router.get("/extension-fields/{field_id}", response_model=ExtensionFieldRead)
def get_extension_field(
    request: Request,
    field_id: int,
    db: Session = Depends(get_db),
    ctx: TenantContext = Depends(get_tenant_context),
) -> ExtensionFieldRead | JSONResponse:
    try:
        return extension_field_service.get_field(db, ctx, field_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="extension_field_get_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@router.patch("/extension-fields/{field_id}", response_model=ExtensionFieldRead)
def update_extension_field(
    request: Request,
    field_id: int,
    dto: ExtensionFieldUpdate,
    db: Session = Depends(get_db),
    ctx: TenantContext = Depends(get_tenant_context),
) -> ExtensionFieldRead | JSONResponse:
    try:
        return extension_field_service.update_field(db, ctx, field_id, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="extension_field_update_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@router.delete("/extension-fields/{field_id}", response_model=ExtensionFieldRead)
def deactivate_extension_field(
    request: Request,
    field_id: int,
    db: Session = Depends(get_db),
    ctx: TenantContext = Depends(get_tenant_context),
) -> ExtensionFieldRead | JSONResponse:
    try:
        return extension_field_service.deactivate_field(db, ctx, field_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="extension_field_deactivate_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@router.get("/schemas/{entity_table}", response_model=ComposedSchemaRead)
def get_composed_schema(
    request: Request,
    entity_table: str,
    db: Session = Depends(get_db),
    ctx: TenantContext = Depends(get_tenant_context),
) -> ComposedSchemaRead | JSONResponse:
    try:
        return extension_field_service.get_composed_schema(db, ctx, entity_table)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="schema_compose_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@router.post("/schemas/{entity_table}/validate", response_model=RecordValidationResponse)
def validate_entity_record(
    request: Request,
    entity_table: str,
    dto: RecordValidationRequest,
    db: Session = Depends(get_db),
    ctx: TenantContext = Depends(get_tenant_context),
) -> RecordValidationResponse | JSONResponse:
    try:
        return extension_field_service.validate_record(db, ctx, entity_table, dto.record)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="record_validation_failed",
            message=str(exc.detail),
            details=exc.detail,
        )
