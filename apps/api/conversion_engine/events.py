from __future__ import annotations

import logging
import uuid
from collections.abc import Callable, Iterable
from datetime import datetime, timezone
from threading import Lock
from typing import Any

from conversion_engine import audit
from conversion_engine.context import get_correlation_id
from conversion_engine.core.events import event_bus
from conversion_engine.metrics import observe_event_emit_failure

logger = logging.getLogger("conversion_engine.events")

published_events: list[dict[str, Any]] = []

EventSink = Callable[[dict[str, Any]], None]


def build_envelope(
    event_type: str,
    *,
    tenant_id: str,
    actor_user_id: str | None,
    payload: dict[str, Any],
    correlation_id: str | None = None,
) -> dict[str, Any]:
    return {
        "event_id": str(uuid.uuid4()),
        "event_type": event_type,
        "occurred_at": datetime.now(timezone.utc).isoformat(),
        "actor_user_id": actor_user_id,
        "tenant_id": tenant_id,
        "version": 1,
        "correlation_id": correlation_id,
        "payload": payload,
    }


def publish(envelope: dict[str, Any]) -> None:
    if envelope.get("correlation_id") is None:
        envelope["correlation_id"] = get_correlation_id()

    published_events.append(envelope)
    event_type = envelope.get("event_type")
    if isinstance(event_type, str) and event_type:
        event_bus.publish(event_type, envelope)


def audit_sink(envelope: dict[str, Any]) -> None:
    payload = envelope.get("payload") or {}
    audit.record(
        actor_user_id=str(envelope.get("actor_user_id") or "system"),
        tenant_id=str(envelope.get("tenant_id") or ""),
        entity_type="conversion.execution",
        entity_id=str(payload.get("source_record_id") or ""),
        action=str(envelope.get("event_type")),
        before=None,
        after=payload,
        correlation_id=envelope.get("correlation_id"),
    )


class OutboundEventChannel:
    """Fire-and-forget fan-out of execution events to external sinks.

    A failing sink is logged and counted; it never propagates into the
    caller, so emission cannot undo or fail the work that produced the event.
    """

    def __init__(self, sinks: Iterable[tuple[str, EventSink]] | None = None) -> None:
        self._lock = Lock()
        self._sinks: dict[str, EventSink] = dict(sinks or [])

    def add_sink(self, name: str, sink: EventSink) -> None:
        with self._lock:
            self._sinks[name] = sink

    def remove_sink(self, name: str) -> None:
        with self._lock:
            self._sinks.pop(name, None)

    def sink_names(self) -> list[str]:
        with self._lock:
            return list(self._sinks)

    def send(self, envelope: dict[str, Any]) -> bool:
        if envelope.get("correlation_id") is None:
            envelope["correlation_id"] = get_correlation_id()
        with self._lock:
            sinks = list(self._sinks.items())

        delivered = True
        for name, sink in sinks:
            try:
                sink(envelope)
            except Exception as exc:
                delivered = False
                observe_event_emit_failure(name)
                logger.exception(
                    "event.emit_failed",
                    extra={"event_type": envelope.get("event_type"), "sink": name, "error": str(exc)},
                )
        return delivered


outbound_channel = OutboundEventChannel([("audit", audit_sink), ("event_bus", publish)])
