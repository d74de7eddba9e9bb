from __future__ import annotations

from threading import Lock

from conversion_engine.store.base import EntityStore
from conversion_engine.store.memory import InMemoryEntityStore

_ENTITY_STORE: EntityStore = InMemoryEntityStore()
_STORE_LOCK = Lock()


def get_entity_store() -> EntityStore:
    """Get the active entity store."""

    return _ENTITY_STORE


def set_entity_store(store: EntityStore) -> None:
    """Replace the active entity store."""

    global _ENTITY_STORE
    with _STORE_LOCK:
        _ENTITY_STORE = store
