from __future__ import annotations

import logging
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from functools import partial
from typing import Any, Protocol, TypeVar

from conversion_engine.errors import StorageFailureError, StorageTimeoutError

logger = logging.getLogger("conversion_engine.store")

T = TypeVar("T")


@dataclass(slots=True)
class EntityRecord:
    """A stored record: base field values plus the extension values map."""

    id: str
    entity_table: str
    data: dict[str, Any] = field(default_factory=dict)
    extensions: dict[str, Any] = field(default_factory=dict)

    def as_record(self) -> dict[str, Any]:
        record = dict(self.data)
        record["id"] = self.id
        record["extensions"] = dict(self.extensions)
        return record


@dataclass(slots=True)
class InsertedRecord:
    id: str


class EntityStore(Protocol):
    """Per-tenant record storage consumed by the conversion executor.

    Calls are bounded by ``call_with_timeout``, which cannot interrupt a
    running call. An ``insert_record`` that times out may still commit
    afterwards; the executor has already reported the conversion as failed,
    so a retry can leave a second target record. Late completions are logged
    as ``entity_store.late_completion`` with the inserted record id, and
    backends that can enforce a server-side deadline (such as a statement
    timeout) should do so to keep that window small.
    """

    def get_record(self, tenant_id: str, entity_table: str, record_id: str) -> EntityRecord | None:
        ...

    def insert_record(
        self,
        tenant_id: str,
        entity_table: str,
        data: dict[str, Any],
        extensions: dict[str, Any],
    ) -> InsertedRecord:
        ...


# a timed-out call keeps running in the pool; its result is only logged
_TIMEOUT_POOL = ThreadPoolExecutor(max_workers=16, thread_name_prefix="entity-store")


def call_with_timeout(operation: str, func: Callable[[], T], timeout_seconds: float | None) -> T:
    if timeout_seconds is None or timeout_seconds <= 0:
        return _wrap_failure(operation, func)

    future = _TIMEOUT_POOL.submit(_wrap_failure, operation, func)
    try:
        return future.result(timeout=timeout_seconds)
    except FutureTimeoutError:
        if not future.cancel():
            future.add_done_callback(partial(_log_late_completion, operation))
        raise StorageTimeoutError(operation, timeout_seconds) from None


def _log_late_completion(operation: str, future: Future) -> None:
    error = future.exception()
    if error is not None:
        logger.warning("entity_store.late_failure", extra={"operation": operation, "error": str(error)})
        return
    result = future.result()
    logger.warning(
        "entity_store.late_completion",
        extra={"operation": operation, "target_record_id": getattr(result, "id", None)},
    )


def _wrap_failure(operation: str, func: Callable[[], T]) -> T:
    try:
        return func()
    except StorageFailureError:
        raise
    except Exception as exc:
        raise StorageFailureError(f"entity store {operation} failed: {exc}") from exc
