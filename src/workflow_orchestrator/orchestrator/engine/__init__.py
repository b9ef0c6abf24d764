"""The in-process workflow engine and its collaborators."""

from workflow_orchestrator.orchestrator.engine.collaborators import (
    AuditEvent,
    AuditEventKind,
    InMemoryAuditSink,
    InMemoryNotificationSink,
    LoggingAuditSink,
    NotificationKind,
)
from workflow_orchestrator.orchestrator.engine.engine import (
    EngineState,
    EngineStatistics,
    UserWorkflow,
    WorkflowEngine,
    WorkflowFilter,
    WorkflowRegistry,
)
from workflow_orchestrator.orchestrator.engine.locks import InstanceLock, LockManager

__all__ = [
    "AuditEvent",
    "AuditEventKind",
    "EngineState",
    "EngineStatistics",
    "InMemoryAuditSink",
    "InMemoryNotificationSink",
    "InstanceLock",
    "LockManager",
    "LoggingAuditSink",
    "NotificationKind",
    "UserWorkflow",
    "WorkflowEngine",
    "WorkflowFilter",
    "WorkflowRegistry",
]
