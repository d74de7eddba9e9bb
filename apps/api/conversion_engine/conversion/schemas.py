from __future__ import annotations

from datetime import datetime
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


MatchType = Literal["exact", "similar", "unmapped"]
ConversionType = Literal["manual", "automatic"]


class ConversionSettings(BaseModel):
    preserve_source: bool = True
    allow_rollback: bool = False
    copy_activities: bool = False
    copy_watchers: bool = False
    auto_conversion_enabled: bool = True
    manual_conversion_enabled: bool = True
    target_name_field: str | None = None


class ApprovalSettings(BaseModel):
    requires_approval: bool = False
    approval_roles: list[str] = Field(default_factory=list)
    approval_workflow_id: str | None = None


class ConversionRuleCreate(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    description: str | None = None
    is_active: bool = True
    source_entity: str = Field(min_length=1)
    target_entity: str = Field(min_length=1)
    trigger_conditions: dict[str, Any] | None = None
    field_mapping: dict[str, str] = Field(default_factory=dict)
    extension_field_mapping: dict[str, str] = Field(default_factory=dict)
    conversion_settings: ConversionSettings = Field(default_factory=ConversionSettings)
    target_name_template: str | None = None
    default_values: dict[str, Any] = Field(default_factory=dict)
    approval_settings: ApprovalSettings = Field(default_factory=ApprovalSettings)

    @field_validator("name")
    @classmethod
    def _strip_name(cls, value: str) -> str:
        stripped = value.strip()
        if not stripped:
            raise ValueError("name must not be blank")
        return stripped

    @model_validator(mode="after")
    def _validate_entities(self) -> "ConversionRuleCreate":
        if self.source_entity == self.target_entity:
            raise ValueError("source_entity and target_entity must differ")
        return self


class ConversionRuleUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=200)
    description: str | None = None
    is_active: bool | None = None
    source_entity: str | None = None
    target_entity: str | None = None
    trigger_conditions: dict[str, Any] | None = None
    field_mapping: dict[str, str] | None = None
    extension_field_mapping: dict[str, str] | None = None
    conversion_settings: ConversionSettings | None = None
    target_name_template: str | None = None
    default_values: dict[str, Any] | None = None
    approval_settings: ApprovalSettings | None = None


class ConversionRuleRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    tenant_id: str
    name: str
    description: str | None
    is_active: bool
    source_entity: str
    target_entity: str
    trigger_conditions: dict[str, Any] | None
    field_mapping: dict[str, str]
    extension_field_mapping: dict[str, str]
    conversion_settings: ConversionSettings
    target_name_template: str | None
    default_values: dict[str, Any]
    approval_settings: ApprovalSettings
    created_by: str | None
    created_at: datetime
    updated_at: datetime


class ConversionRuleStats(BaseModel):
    rule_id: UUID
    rule_name: str
    total_conversions: int = 0
    successful_conversions: int = 0
    failed_conversions: int = 0
    last_conversion_at: datetime | None = None
    avg_conversion_time_ms: float = 0.0


class FieldMappingSuggestion(BaseModel):
    source_field: str
    target_field: str | None
    confidence: float = Field(ge=0.0, le=1.0)
    match_type: MatchType


class ExtensionFieldMappingSuggestion(FieldMappingSuggestion):
    source_field_type: str | None = None
    target_field_type: str | None = None


class MappingSuggestions(BaseModel):
    source_entity: str
    target_entity: str
    field_suggestions: list[FieldMappingSuggestion] = Field(default_factory=list)
    extension_field_suggestions: list[ExtensionFieldMappingSuggestion] = Field(default_factory=list)
    unmapped_source_fields: list[str] = Field(default_factory=list)
    unmapped_target_fields: list[str] = Field(default_factory=list)
    unmapped_source_extension_fields: list[str] = Field(default_factory=list)
    unmapped_target_extension_fields: list[str] = Field(default_factory=list)
    confidence_score: float = 0.0


class ConversionExecutionResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    success: bool
    source_record_id: str
    target_record_id: str | None = None
    rule_id: UUID
    rule_name: str
    source_entity: str
    target_entity: str
    conversion_type: ConversionType = "manual"
    error_message: str | None = None
    warnings: list[str] = Field(default_factory=list)
    converted_fields: list[str] = Field(default_factory=list)
    skipped_fields: list[str] = Field(default_factory=list)
    converted_extension_fields: list[str] = Field(default_factory=list)
    skipped_extension_fields: list[str] = Field(default_factory=list)
    execution_time_ms: float = 0.0
    created_at: datetime


class ExecuteConversionRequest(BaseModel):
    source_record_id: str = Field(min_length=1)


class CheckAutoTriggersRequest(BaseModel):
    entity_table: str = Field(min_length=1)
    record_id: str = Field(min_length=1)


class TriggerValidationRequest(BaseModel):
    conditions: dict[str, Any]
    source_entity: str = Field(min_length=1)


class TriggerValidationResponse(BaseModel):
    is_valid: bool
    errors: list[str] = Field(default_factory=list)
