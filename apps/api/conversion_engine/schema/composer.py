from __future__ import annotations

import logging
from threading import Lock

from sqlalchemy.orm import Session

from conversion_engine.core.config import get_settings
from conversion_engine.errors import InvalidArgumentError
from conversion_engine.extensions.models import ExtensionFieldDefinition, active_definitions_query
from conversion_engine.metrics import observe_schema_cache_hit, observe_schema_cache_miss
from conversion_engine.schema.base import (
    BaseSchemaProvider,
    ComposedSchema,
    FieldDefinition,
    FieldSource,
    FieldType,
    get_base_schema_provider,
)

logger = logging.getLogger("conversion_engine.schema")


def extension_to_field(definition: ExtensionFieldDefinition) -> FieldDefinition:
    return FieldDefinition(
        name=definition.field_name,
        field_type=FieldType(definition.field_type),
        required=bool(definition.is_required),
        source=FieldSource.EXTENSION,
        display_name=definition.display_name,
        validation_rules=dict(definition.validation_rules or {}),
        ui_config=dict(definition.ui_config or {}),
        default_value=definition.default_value,
        extension_id=definition.id,
    )


class SchemaComposer:
    """Merges an entity's base fields with its active extension fields.

    Results are memoized per ``(tenant_id, entity_table)``; the registry calls
    :meth:`invalidate` on every mutation of that pair. A composition that
    overlaps an invalidation is returned to its caller but never cached.
    """

    def __init__(self, provider: BaseSchemaProvider | None = None) -> None:
        self._provider = provider
        self._lock = Lock()
        self._cache: dict[tuple[str, str], ComposedSchema] = {}
        self._generations: dict[tuple[str, str], int] = {}
        self._epoch = 0

    @property
    def provider(self) -> BaseSchemaProvider:
        return self._provider or get_base_schema_provider()

    def supports(self, entity_table: str) -> bool:
        return self.provider.get_base_fields(entity_table) is not None

    def supported_tables(self) -> list[str]:
        return self.provider.tables()

    def compose(self, session: Session, tenant_id: str, entity_table: str) -> ComposedSchema:
        key = (tenant_id, entity_table)
        cache_enabled = get_settings().schema_cache_enabled
        if cache_enabled:
            with self._lock:
                cached = self._cache.get(key)
                generation = self._generation(key)
            if cached is not None:
                observe_schema_cache_hit()
                return cached
            observe_schema_cache_miss()

        base_fields = self.provider.get_base_fields(entity_table)
        if base_fields is None:
            raise InvalidArgumentError(f"unsupported entity table: {entity_table}")

        fields: list[FieldDefinition] = list(base_fields)
        seen = {item.name for item in fields}
        for definition in self._load_extensions(session, tenant_id, entity_table):
            if definition.field_name in seen:
                logger.warning(
                    "schema.duplicate_field_ignored",
                    extra={"tenant_id": tenant_id, "entity_table": entity_table, "field_name": definition.field_name},
                )
                continue
            seen.add(definition.field_name)
            fields.append(extension_to_field(definition))

        schema = ComposedSchema(tenant_id=tenant_id, entity_table=entity_table, fields=tuple(fields))
        if cache_enabled:
            with self._lock:
                if self._generation(key) == generation:
                    self._cache[key] = schema
                else:
                    logger.info(
                        "schema.stale_composition_discarded",
                        extra={"tenant_id": tenant_id, "entity_table": entity_table},
                    )
        return schema

    def invalidate(self, tenant_id: str, entity_table: str) -> None:
        key = (tenant_id, entity_table)
        with self._lock:
            self._cache.pop(key, None)
            self._generations[key] = self._generations.get(key, 0) + 1

    def clear(self) -> None:
        with self._lock:
            self._cache.clear()
            self._epoch += 1

    def cached_keys(self) -> list[tuple[str, str]]:
        with self._lock:
            return list(self._cache)

    def _generation(self, key: tuple[str, str]) -> tuple[int, int]:
        return self._epoch, self._generations.get(key, 0)

    def _load_extensions(self, session: Session, tenant_id: str, entity_table: str) -> list[ExtensionFieldDefinition]:
        return list(session.scalars(active_definitions_query(tenant_id, entity_table)).all())


schema_composer = SchemaComposer()
