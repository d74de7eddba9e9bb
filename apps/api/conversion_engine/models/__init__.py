from conversion_engine.conversion.models import ConversionExecution, EntityConversionRule
from conversion_engine.extensions.models import ExtensionFieldDefinition
from conversion_engine.store.models import StoredEntityRecord

__all__ = [
    "ConversionExecution",
    "EntityConversionRule",
    "ExtensionFieldDefinition",
    "StoredEntityRecord",
]
