from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from threading import Lock
from typing import Any, Protocol


class FieldType(StrEnum):
    TEXT = "text"
    NUMBER = "number"
    BOOLEAN = "boolean"
    DATE = "date"
    JSON = "json"
    SELECT = "select"


class FieldSource(StrEnum):
    BASE = "base"
    EXTENSION = "extension"


@dataclass(frozen=True, slots=True)
class FieldDefinition:
    """One field of a composed schema, base or extension."""

    name: str
    field_type: FieldType
    required: bool = False
    source: FieldSource = FieldSource.BASE
    display_name: str | None = None
    validation_rules: Mapping[str, Any] = field(default_factory=dict)
    ui_config: Mapping[str, Any] = field(default_factory=dict)
    default_value: Any = None
    extension_id: int | None = None

    @property
    def label(self) -> str:
        return self.display_name or self.name


@dataclass(frozen=True, slots=True)
class ComposedSchema:
    tenant_id: str
    entity_table: str
    fields: tuple[FieldDefinition, ...]

    def get(self, name: str) -> FieldDefinition | None:
        for item in self.fields:
            if item.name == name:
                return item
        return None

    def has(self, name: str) -> bool:
        return self.get(name) is not None

    @property
    def names(self) -> list[str]:
        return [item.name for item in self.fields]

    @property
    def base_fields(self) -> tuple[FieldDefinition, ...]:
        return tuple(item for item in self.fields if item.source == FieldSource.BASE)

    @property
    def extension_fields(self) -> tuple[FieldDefinition, ...]:
        return tuple(item for item in self.fields if item.source == FieldSource.EXTENSION)

    def get_extension(self, name: str) -> FieldDefinition | None:
        item = self.get(name)
        if item is None or item.source != FieldSource.EXTENSION:
            return None
        return item

    def get_base(self, name: str) -> FieldDefinition | None:
        item = self.get(name)
        if item is None or item.source != FieldSource.BASE:
            return None
        return item


def _base(name: str, field_type: FieldType, required: bool = False, **kwargs: Any) -> FieldDefinition:
    return FieldDefinition(name=name, field_type=field_type, required=required, source=FieldSource.BASE, **kwargs)


# id, created_at, updated_at and tenant_id are managed by the entity store
DEFAULT_BASE_SCHEMAS: dict[str, tuple[FieldDefinition, ...]] = {
    "leads": (
        _base("name", FieldType.TEXT, True),
        _base("email", FieldType.TEXT, validation_rules={"format": "email"}),
        _base("phone", FieldType.TEXT),
        _base("company_name", FieldType.TEXT),
        _base("status", FieldType.TEXT),
        _base("source", FieldType.TEXT),
        _base("estimated_value", FieldType.NUMBER, validation_rules={"min": 0}),
        _base("owner_user_id", FieldType.TEXT),
        _base("notes", FieldType.TEXT),
    ),
    "clients": (
        _base("name", FieldType.TEXT, True),
        _base("contact_email", FieldType.TEXT, validation_rules={"format": "email"}),
        _base("contact_phone", FieldType.TEXT),
        _base("company_name", FieldType.TEXT),
        _base("status", FieldType.TEXT),
        _base("industry", FieldType.TEXT),
        _base("annual_revenue", FieldType.NUMBER, validation_rules={"min": 0}),
        _base("owner_user_id", FieldType.TEXT),
        _base("notes", FieldType.TEXT),
    ),
    "projects": (
        _base("name", FieldType.TEXT, True),
        _base("client_id", FieldType.TEXT),
        _base("status", FieldType.TEXT),
        _base("budget", FieldType.NUMBER, validation_rules={"min": 0}),
        _base("start_date", FieldType.DATE),
        _base("end_date", FieldType.DATE),
        _base("description", FieldType.TEXT),
    ),
    "activities": (
        _base("subject", FieldType.TEXT, True),
        _base("activity_type", FieldType.TEXT),
        _base("status", FieldType.TEXT),
        _base("due_date", FieldType.DATE),
        _base("related_entity", FieldType.TEXT),
        _base("related_record_id", FieldType.TEXT),
        _base("description", FieldType.TEXT),
    ),
    "employees": (
        _base("first_name", FieldType.TEXT, True),
        _base("last_name", FieldType.TEXT, True),
        _base("email", FieldType.TEXT, validation_rules={"format": "email"}),
        _base("phone", FieldType.TEXT),
        _base("position", FieldType.TEXT),
        _base("department", FieldType.TEXT),
        _base("hire_date", FieldType.DATE),
        _base("is_active", FieldType.BOOLEAN),
    ),
}


class BaseSchemaProvider(Protocol):
    """Source of the fixed, code-defined fields of each entity table."""

    def tables(self) -> list[str]:
        ...

    def get_base_fields(self, entity_table: str) -> tuple[FieldDefinition, ...] | None:
        ...


class StaticBaseSchemaProvider:
    def __init__(self, schemas: Mapping[str, tuple[FieldDefinition, ...]] | None = None) -> None:
        self._lock = Lock()
        self._schemas: dict[str, tuple[FieldDefinition, ...]] = dict(schemas if schemas is not None else DEFAULT_BASE_SCHEMAS)

    def tables(self) -> list[str]:
        with self._lock:
            return list(self._schemas)

    def get_base_fields(self, entity_table: str) -> tuple[FieldDefinition, ...] | None:
        with self._lock:
            return self._schemas.get(entity_table)

    def register_table(self, entity_table: str, fields: tuple[FieldDefinition, ...]) -> None:
        with self._lock:
            self._schemas[entity_table] = tuple(fields)


_BASE_SCHEMA_PROVIDER: BaseSchemaProvider = StaticBaseSchemaProvider()
_PROVIDER_LOCK = Lock()


def get_base_schema_provider() -> BaseSchemaProvider:
    """Get the active base schema provider."""

    return _BASE_SCHEMA_PROVIDER


def set_base_schema_provider(provider: BaseSchemaProvider) -> None:
    """Replace the active base schema provider."""

    global _BASE_SCHEMA_PROVIDER
    with _PROVIDER_LOCK:
        _BASE_SCHEMA_PROVIDER = provider
