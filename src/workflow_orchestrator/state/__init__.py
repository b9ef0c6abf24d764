"""Snapshot persistence for workflow instances."""

from workflow_orchestrator.state.store import (
    InMemoryPersistenceStore,
    JsonFilePersistenceStore,
    PersistenceStore,
    WorkflowSnapshot,
)

__all__ = [
    "InMemoryPersistenceStore",
    "JsonFilePersistenceStore",
    "PersistenceStore",
    "WorkflowSnapshot",
]
