from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    ENGINE_STARTED = "engine_started"
    ENGINE_STOPPED = "engine_stopped"
    WORKFLOW_TYPE_REGISTERED = "workflow_type_registered"
    WORKFLOW_CREATED = "workflow_created"
    STATE_CHANGED = "state_changed"
    CONTEXT_UPDATED = "context_updated"


@dataclass(frozen=True, slots=True)
class WorkflowEvent:
    """A fact the engine announces after it happened.

    Listeners observe; they never veto or alter the operation that emitted it.
    """

    type: EventType
    payload: dict[str, Any]
    timestamp: datetime = field(default_factory=lambda: datetime.now(tz=UTC))


Listener = Callable[[WorkflowEvent], None]


class Subscription:
    """Handle returned by :meth:`EventBus.subscribe`; closing it unsubscribes."""

    def __init__(self, bus: EventBus, listener: Listener) -> None:
        self._bus = bus
        self._listener = listener
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        if not self._closed:
            self._bus.unsubscribe(self._listener)
            self._closed = True

    def __enter__(self) -> Subscription:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()


class EventBus:
    """Observer list owned by one engine."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._listeners: list[tuple[Listener, frozenset[EventType] | None]] = []
        self.failures = 0

    def subscribe(
        self, listener: Listener, types: Iterable[EventType] | None = None
    ) -> Subscription:
        wanted = frozenset(types) if types is not None else None
        with self._lock:
            self._listeners.append((listener, wanted))
        return Subscription(self, listener)

    def unsubscribe(self, listener: Listener) -> bool:
        with self._lock:
            before = len(self._listeners)
            self._listeners = [(fn, t) for fn, t in self._listeners if fn is not listener]
            return len(self._listeners) != before

    def listener_count(self) -> int:
        with self._lock:
            return len(self._listeners)

    def emit(self, event: WorkflowEvent) -> None:
        with self._lock:
            targets = [fn for fn, t in self._listeners if t is None or event.type in t]
        for listener in targets:
            try:
                listener(event)
            except Exception:
                self.failures += 1
                logger.exception("Event listener failed", extra={"event_type": event.type.value})
