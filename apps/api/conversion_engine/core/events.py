from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

SYSTEM_STARTED = "system.started"
RECORD_CREATED = "entity.record.created"
RECORD_UPDATED = "entity.record.updated"
RECORD_LIFECYCLE_EVENTS = (RECORD_CREATED, RECORD_UPDATED)


@dataclass
class InternalEvent:
    name: str
    payload: dict[str, Any]


EventHandler = Callable[[InternalEvent], None]


class InProcessEventBus:
    """Synchronous fan-out used by the record lifecycle hook.

    Handlers run in subscription order on the publishing thread; a handler
    that raises stops delivery to the handlers after it.
    """

    def __init__(self) -> None:
        self._subscribers: dict[str, list[EventHandler]] = defaultdict(list)

    def subscribe(self, event_name: str, handler: EventHandler) -> bool:
        """Register ``handler`` once per event name; returns False when it was already registered."""

        handlers = self._subscribers[event_name]
        if handler in handlers:
            return False
        handlers.append(handler)
        return True

    def unsubscribe(self, event_name: str, handler: EventHandler) -> None:
        handlers = self._subscribers.get(event_name, [])
        if handler in handlers:
            handlers.remove(handler)

    def handlers(self, event_name: str) -> list[EventHandler]:
        return list(self._subscribers.get(event_name, []))

    def publish(self, event_name: str, payload: dict[str, Any]) -> int:
        event = InternalEvent(name=event_name, payload=payload)
        delivered = 0
        for handler in self.handlers(event_name):
            handler(event)
            delivered += 1
        return delivered


event_bus = InProcessEventBus()
