from __future__ import annotations

import copy
import uuid
from threading import Lock
from typing import Any

from conversion_engine.store.base import EntityRecord, InsertedRecord


class InMemoryEntityStore:
    def __init__(self) -> None:
        self._lock = Lock()
        self._records: dict[tuple[str, str, str], EntityRecord] = {}

    def get_record(self, tenant_id: str, entity_table: str, record_id: str) -> EntityRecord | None:
        with self._lock:
            record = self._records.get((tenant_id, entity_table, record_id))
            return copy.deepcopy(record) if record is not None else None

    def insert_record(
        self,
        tenant_id: str,
        entity_table: str,
        data: dict[str, Any],
        extensions: dict[str, Any],
    ) -> InsertedRecord:
        record_id = str(data.get("id") or uuid.uuid4())
        payload = {key: value for key, value in data.items() if key not in {"id", "extensions"}}
        record = EntityRecord(
            id=record_id,
            entity_table=entity_table,
            data=copy.deepcopy(payload),
            extensions=copy.deepcopy(dict(extensions)),
        )
        with self._lock:
            self._records[(tenant_id, entity_table, record_id)] = record
        return InsertedRecord(id=record_id)

    def list_records(self, tenant_id: str, entity_table: str) -> list[EntityRecord]:
        with self._lock:
            return [
                copy.deepcopy(record)
                for (record_tenant, record_table, _), record in self._records.items()
                if record_tenant == tenant_id and record_table == entity_table
            ]

    def clear(self) -> None:
        with self._lock:
            self._records.clear()
