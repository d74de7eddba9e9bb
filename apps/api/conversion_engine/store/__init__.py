from conversion_engine.store.base import EntityRecord, EntityStore, InsertedRecord, call_with_timeout
from conversion_engine.store.memory import InMemoryEntityStore
from conversion_engine.store.registry import get_entity_store, set_entity_store

__all__ = [
    "EntityRecord",
    "EntityStore",
    "InsertedRecord",
    "call_with_timeout",
    "InMemoryEntityStore",
    "get_entity_store",
    "set_entity_store",
]
