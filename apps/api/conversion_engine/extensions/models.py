from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import JSON, Boolean, DateTime, Index, Integer, Select, String, Text, select
from sqlalchemy.orm import Mapped, mapped_column

from conversion_engine.core.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ExtensionFieldDefinition(Base):
    __tablename__ = "extension_field_definition"

    # integer identity keeps creation order stable for schema composition
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    entity_table: Mapped[str] = mapped_column(String(100), nullable=False)
    field_name: Mapped[str] = mapped_column(String(100), nullable=False)
    field_type: Mapped[str] = mapped_column(String(16), nullable=False)
    display_name: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_required: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")
    is_searchable: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")
    is_filterable: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")
    is_sortable: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")
    default_value: Mapped[Any] = mapped_column(JSON, nullable=True)
    validation_rules: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    ui_config: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default="true")
    created_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )


Index(
    "ix_extension_field_definition_tenant_table_active",
    ExtensionFieldDefinition.tenant_id,
    ExtensionFieldDefinition.entity_table,
    ExtensionFieldDefinition.is_active,
)
Index(
    "ix_extension_field_definition_tenant_table_name",
    ExtensionFieldDefinition.tenant_id,
    ExtensionFieldDefinition.entity_table,
    ExtensionFieldDefinition.field_name,
)


def active_definitions_query(tenant_id: str, entity_table: str | None = None) -> Select[tuple[ExtensionFieldDefinition]]:
    stmt = select(ExtensionFieldDefinition).where(
        ExtensionFieldDefinition.tenant_id == tenant_id,
        ExtensionFieldDefinition.is_active.is_(True),
    )
    if entity_table:
        stmt = stmt.where(ExtensionFieldDefinition.entity_table == entity_table)
    return stmt.order_by(ExtensionFieldDefinition.id.asc())
