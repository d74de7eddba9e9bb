from conversion_engine.schema.base import (
    ComposedSchema,
    FieldDefinition,
    FieldSource,
    FieldType,
    StaticBaseSchemaProvider,
    get_base_schema_provider,
    set_base_schema_provider,
)
from conversion_engine.schema.composer import SchemaComposer, schema_composer

__all__ = [
    "ComposedSchema",
    "FieldDefinition",
    "FieldSource",
    "FieldType",
    "StaticBaseSchemaProvider",
    "get_base_schema_provider",
    "set_base_schema_provider",
    "SchemaComposer",
    "schema_composer",
]
