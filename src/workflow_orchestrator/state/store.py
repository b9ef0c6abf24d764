"""Persistence for workflow instance snapshots.

A snapshot is the full serialized instance: state, context, history and
bookkeeping timestamps. Stores are checkpoints for recovery across restarts,
not a coordination point between engines.
"""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Protocol

from pydantic import BaseModel, Field, ValidationError

logger = logging.getLogger(__name__)


class HistoryRecord(BaseModel):
    from_state: str | None
    to_state: str
    action: str
    actor_id: str
    actor_name: str = ""
    timestamp: datetime
    transition_context: dict[str, Any] = Field(default_factory=dict)


class WorkflowSnapshot(BaseModel):
    """Serialized form of a workflow instance."""

    version: str = Field(default="1.0.0", description="Snapshot schema version")
    id: str
    type: str
    current_state: str
    context: dict[str, Any] = Field(default_factory=dict)
    history: list[HistoryRecord] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_by: str
    organization_id: str
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    last_persisted_at: datetime | None = None


def _validate_snapshots(items: list[dict[str, Any]], source: str) -> list[WorkflowSnapshot]:
    """Parse stored items, skipping any that do not form a snapshot."""

    snapshots: list[WorkflowSnapshot] = []
    for item in items:
        try:
            snapshots.append(WorkflowSnapshot.model_validate(item))
        except ValidationError as e:
            logger.warning(
                "Skipping malformed workflow snapshot",
                extra={"source": source, "workflow_id": item.get("id"), "errors": e.error_count()},
            )
    return snapshots


class PersistenceStore(Protocol):
    def save(self, snapshot: WorkflowSnapshot) -> None: ...

    def load_all(self) -> list[WorkflowSnapshot]: ...

    def delete(self, workflow_id: str) -> bool: ...


class InMemoryPersistenceStore:
    """Dictionary-backed store for tests and ephemeral engines."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._snapshots: dict[str, dict[str, Any]] = {}
        self.save_count = 0

    def save(self, snapshot: WorkflowSnapshot) -> None:
        with self._lock:
            self._snapshots[snapshot.id] = snapshot.model_dump(mode="json")
            self.save_count += 1

    def load_all(self) -> list[WorkflowSnapshot]:
        with self._lock:
            raw = list(self._snapshots.values())
        return _validate_snapshots(raw, "memory")

    def delete(self, workflow_id: str) -> bool:
        with self._lock:
            return self._snapshots.pop(workflow_id, None) is not None


@dataclass
class JsonFilePersistenceStore:
    """JSON-file backed store: one list of snapshots, upserted by id."""

    path: Path

    def __post_init__(self) -> None:
        self._lock = threading.Lock()

    def _load_unlocked(self) -> list[dict[str, Any]]:
        if not self.path.exists():
            return []
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            logger.warning(
                "Workflow state file is not valid JSON; treating as empty",
                extra={"path": str(self.path)},
            )
            return []
        if not isinstance(raw, list):
            logger.warning(
                "Workflow state file has unexpected shape; treating as empty",
                extra={"path": str(self.path)},
            )
            return []
        return [item for item in raw if isinstance(item, dict)]

    def _save_unlocked(self, items: list[dict[str, Any]]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp.write_text(json.dumps(items, indent=2, ensure_ascii=False) + "\n", encoding="utf-8")
        tmp.replace(self.path)

    def save(self, snapshot: WorkflowSnapshot) -> None:
        payload = snapshot.model_dump(mode="json")
        with self._lock:
            items = [i for i in self._load_unlocked() if i.get("id") != snapshot.id]
            items.append(payload)
            self._save_unlocked(items)

    def load_all(self) -> list[WorkflowSnapshot]:
        with self._lock:
            items = self._load_unlocked()
        return _validate_snapshots(items, str(self.path))

    def delete(self, workflow_id: str) -> bool:
        with self._lock:
            items = self._load_unlocked()
            kept = [i for i in items if i.get("id") != workflow_id]
            if len(kept) == len(items):
                return False
            self._save_unlocked(kept)
            return True
