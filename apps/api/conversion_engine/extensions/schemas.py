from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


ExtensionFieldType = Literal["text", "number", "boolean", "date", "json", "select"]


class ExtensionFieldCreate(BaseModel):
    entity_table: str = Field(min_length=1, max_length=100)
    field_name: str = Field(min_length=1, max_length=100)
    field_type: ExtensionFieldType
    display_name: str = Field(min_length=1)
    description: str | None = None
    is_required: bool = False
    is_searchable: bool = False
    is_filterable: bool = False
    is_sortable: bool = False
    default_value: Any = None
    validation_rules: dict[str, Any] = Field(default_factory=dict)
    ui_config: dict[str, Any] = Field(default_factory=dict)


class ExtensionFieldUpdate(BaseModel):
    field_name: str | None = Field(default=None, min_length=1, max_length=100)
    field_type: ExtensionFieldType | None = None
    display_name: str | None = Field(default=None, min_length=1)
    description: str | None = None
    is_required: bool | None = None
    is_searchable: bool | None = None
    is_filterable: bool | None = None
    is_sortable: bool | None = None
    default_value: Any = None
    validation_rules: dict[str, Any] | None = None
    ui_config: dict[str, Any] | None = None
    is_active: bool | None = None


class ExtensionFieldRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    tenant_id: str
    entity_table: str
    field_name: str
    field_type: ExtensionFieldType
    display_name: str
    description: str | None
    is_required: bool
    is_searchable: bool
    is_filterable: bool
    is_sortable: bool
    default_value: Any
    validation_rules: dict[str, Any]
    ui_config: dict[str, Any]
    is_active: bool
    created_by: str | None
    created_at: datetime
    updated_at: datetime


class ComposedFieldRead(BaseModel):
    name: str
    type: ExtensionFieldType
    required: bool
    source: Literal["base", "extension"]
    display_name: str | None = None


class ComposedSchemaRead(BaseModel):
    tenant_id: str
    entity_table: str
    fields: list[ComposedFieldRead]


class RecordValidationRequest(BaseModel):
    record: dict[str, Any]


class RecordValidationResponse(BaseModel):
    is_valid: bool
    errors: list[str] = Field(default_factory=list)
