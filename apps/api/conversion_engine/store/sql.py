from __future__ import annotations

import uuid
from typing import Any

from sqlalchemy import and_, select
from sqlalchemy.orm import Session, sessionmaker

from conversion_engine.core.database import SessionLocal
from conversion_engine.store.base import EntityRecord, InsertedRecord
from conversion_engine.store.models import StoredEntityRecord


class SqlEntityStore:
    """Entity store backed by the ``entity_record`` table.

    Every call opens its own session, so the store is safe to use from the
    executor's worker threads.
    """

    def __init__(self, session_factory: sessionmaker[Session] | None = None) -> None:
        self._session_factory = session_factory or SessionLocal

    def get_record(self, tenant_id: str, entity_table: str, record_id: str) -> EntityRecord | None:
        try:
            parsed_id = uuid.UUID(str(record_id))
        except ValueError:
            return None
        with self._session_factory() as session:
            row = session.scalar(
                select(StoredEntityRecord).where(
                    and_(
                        StoredEntityRecord.id == parsed_id,
                        StoredEntityRecord.tenant_id == tenant_id,
                        StoredEntityRecord.entity_table == entity_table,
                    )
                )
            )
            if row is None:
                return None
            return EntityRecord(
                id=str(row.id),
                entity_table=row.entity_table,
                data=dict(row.data or {}),
                extensions=dict(row.extensions or {}),
            )

    def insert_record(
        self,
        tenant_id: str,
        entity_table: str,
        data: dict[str, Any],
        extensions: dict[str, Any],
    ) -> InsertedRecord:
        payload = {key: value for key, value in data.items() if key not in {"id", "extensions"}}
        row = StoredEntityRecord(
            tenant_id=tenant_id,
            entity_table=entity_table,
            data=payload,
            extensions=dict(extensions),
        )
        with self._session_factory() as session:
            session.add(row)
            session.commit()
            return InsertedRecord(id=str(row.id))
