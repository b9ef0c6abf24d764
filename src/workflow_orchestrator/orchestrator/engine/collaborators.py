"""Side-channel collaborators: audit and notifications.

Both are best-effort from the engine's point of view. A sink that raises is
logged and counted by the engine; the operation that produced the event has
already succeeded and is never rolled back.
"""

from __future__ import annotations

import logging
import threading
import uuid
from collections import deque
from collections.abc import Mapping, Sequence
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any, Protocol

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

SENSITIVE_KEYS: frozenset[str] = frozenset(
    {"password", "token", "secret", "key", "ssn", "credit_card"}
)
REDACTED = "[REDACTED]"


def redact(data: Any) -> Any:
    """Copy of ``data`` with values under sensitive keys replaced, at any depth."""

    if isinstance(data, Mapping):
        return {
            k: REDACTED if str(k).lower() in SENSITIVE_KEYS else redact(v) for k, v in data.items()
        }
    if isinstance(data, (list, tuple)):
        return [redact(v) for v in data]
    return data


class AuditEventKind(str, Enum):
    WORKFLOW_CREATED = "workflow_created"
    WORKFLOW_TRANSITIONED = "workflow_transitioned"
    CONTEXT_UPDATED = "context_updated"
    PERMISSION_CHECKED = "permission_checked"
    VALIDATION_FAILED = "validation_failed"


class AuditEvent(BaseModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    kind: AuditEventKind
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    actor_id: str | None = None
    organization_id: str | None = None
    workflow_id: str | None = None
    workflow_type: str | None = None
    from_state: str | None = None
    to_state: str | None = None
    success: bool = True
    details: dict[str, Any] = Field(default_factory=dict)


class AuditSink(Protocol):
    def record(self, event: AuditEvent) -> None: ...


class NotificationKind(str, Enum):
    ACTION_REQUIRED = "action_required"
    WORKFLOW_COMPLETED = "workflow_completed"
    WORKFLOW_STATE_CHANGED = "workflow_state_changed"


class Notification(BaseModel):
    recipients: list[str]
    kind: NotificationKind
    data: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class NotificationSink(Protocol):
    """Delivery is the sink's concern, including any bounded retries."""

    def notify(
        self, recipients: Sequence[str], kind: NotificationKind, data: Mapping[str, Any]
    ) -> None: ...


class InMemoryAuditSink:
    """Keeps recent audit events for inspection.

    Events older than ``retention`` (measured from the newest event, or from
    ``now`` in :meth:`cleanup_old_entries`) are dropped, and at most
    ``max_events`` are kept.
    """

    def __init__(
        self,
        *,
        max_events: int | None = 10_000,
        retention: timedelta | None = timedelta(days=365),
    ) -> None:
        self._lock = threading.Lock()
        self._events: deque[AuditEvent] = deque(maxlen=max_events)
        self._retention = retention

    def record(self, event: AuditEvent) -> None:
        with self._lock:
            self._events.append(event)
            if self._retention is not None:
                self._drop_older_than(event.timestamp - self._retention)

    def cleanup_old_entries(self, now: datetime | None = None) -> int:
        """Drop events past the retention period; returns how many went."""

        if self._retention is None:
            return 0
        cutoff = (now or datetime.now(UTC)) - self._retention
        with self._lock:
            return self._drop_older_than(cutoff)

    def _drop_older_than(self, cutoff: datetime) -> int:
        dropped = 0
        while self._events and self._events[0].timestamp < cutoff:
            self._events.popleft()
            dropped += 1
        return dropped

    @property
    def events(self) -> list[AuditEvent]:
        with self._lock:
            return list(self._events)

    def search(
        self,
        *,
        kind: AuditEventKind | None = None,
        workflow_id: str | None = None,
        actor_id: str | None = None,
        success: bool | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
        limit: int | None = None,
    ) -> list[AuditEvent]:
        """Matching events, newest first."""

        with self._lock:
            events = list(self._events)
        matches = [
            e
            for e in reversed(events)
            if (kind is None or e.kind is kind)
            and (workflow_id is None or e.workflow_id == workflow_id)
            and (actor_id is None or e.actor_id == actor_id)
            and (success is None or e.success is success)
            and (since is None or e.timestamp >= since)
            and (until is None or e.timestamp <= until)
        ]
        return matches[:limit] if limit is not None else matches


class LoggingAuditSink:
    """Writes audit events to a logger as structured records."""

    def __init__(self, logger_name: str = "workflow_orchestrator.audit") -> None:
        self._logger = logging.getLogger(logger_name)

    def record(self, event: AuditEvent) -> None:
        self._logger.info(
            "Audit event",
            extra={"audit": event.model_dump(mode="json")},
        )


class InMemoryNotificationSink:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._sent: list[Notification] = []

    def notify(
        self, recipients: Sequence[str], kind: NotificationKind, data: Mapping[str, Any]
    ) -> None:
        with self._lock:
            self._sent.append(Notification(recipients=list(recipients), kind=kind, data=dict(data)))

    @property
    def sent(self) -> list[Notification]:
        with self._lock:
            return list(self._sent)

    def for_recipient(self, recipient: str) -> list[Notification]:
        return [n for n in self.sent if recipient in n.recipients]
