from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import JSON, Boolean, DateTime, Float, Index, String, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from conversion_engine.core.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class EntityConversionRule(Base):
    __tablename__ = "entity_conversion_rule"
    __table_args__ = (UniqueConstraint("tenant_id", "name", name="uq_entity_conversion_rule_tenant_name"),)

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default="true")
    source_entity: Mapped[str] = mapped_column(String(100), nullable=False)
    target_entity: Mapped[str] = mapped_column(String(100), nullable=False)
    trigger_conditions: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    field_mapping: Mapped[dict[str, str]] = mapped_column(JSON, nullable=False, default=dict)
    extension_field_mapping: Mapped[dict[str, str]] = mapped_column(JSON, nullable=False, default=dict)
    conversion_settings: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    target_name_template: Mapped[str | None] = mapped_column(Text, nullable=True)
    default_values: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    approval_settings: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    created_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )


class ConversionExecution(Base):
    """Append-only log of execution results; rows are never updated."""

    __tablename__ = "conversion_execution"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    rule_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False)
    rule_name: Mapped[str] = mapped_column(String(200), nullable=False)
    source_entity: Mapped[str] = mapped_column(String(100), nullable=False)
    target_entity: Mapped[str] = mapped_column(String(100), nullable=False)
    source_record_id: Mapped[str] = mapped_column(String(64), nullable=False)
    target_record_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    conversion_type: Mapped[str] = mapped_column(String(16), nullable=False)
    success: Mapped[bool] = mapped_column(Boolean, nullable=False)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    warnings: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    converted_fields: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    skipped_fields: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    converted_extension_fields: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    skipped_extension_fields: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    execution_time_ms: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    performed_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    correlation_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


Index(
    "ix_entity_conversion_rule_tenant_source_active",
    EntityConversionRule.tenant_id,
    EntityConversionRule.source_entity,
    EntityConversionRule.is_active,
)
Index(
    "ix_conversion_execution_tenant_rule_created",
    ConversionExecution.tenant_id,
    ConversionExecution.rule_id,
    ConversionExecution.created_at,
)
