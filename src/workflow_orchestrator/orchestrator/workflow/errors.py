"""Error taxonomy for the workflow runtime.

Every failure an engine operation can report is a subclass of
:class:`WorkflowError`. Only :class:`LockConflict` is retryable; the engine
never retries on the caller's behalf.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass


class WorkflowError(Exception):
    """Base class for workflow runtime failures."""

    retryable: bool = False


class GraphDefinitionError(WorkflowError, ValueError):
    """Raised when a state graph is unsound at construction time."""


class UnknownWorkflowType(WorkflowError):
    pass


class DuplicateWorkflowType(WorkflowError):
    pass


class DuplicateWorkflowId(WorkflowError):
    pass


class InstanceNotFound(WorkflowError):
    pass


class EngineNotRunning(WorkflowError):
    pass


class InvalidTransition(WorkflowError, ValueError):
    """No edge leads from the current state to the requested target."""


class GuardNotSatisfied(WorkflowError):
    """An edge exists but none of its guard sets currently passes."""


class WorkflowTerminal(WorkflowError):
    pass


class ProviderUnavailable(WorkflowError):
    """The organizational context provider could not produce a context."""


class PermissionDenied(WorkflowError):
    def __init__(self, message: str, reasons: Sequence[str] = ()) -> None:
        super().__init__(message)
        self.reasons = tuple(reasons)


# Exception dataclasses stay mutable: contextlib reassigns __traceback__ while propagating.
@dataclass(eq=False, slots=True)
class ValidationFailed(WorkflowError):
    """One or more validation predicates rejected the workflow context."""

    state: str
    messages: tuple[str, ...]

    def __str__(self) -> str:
        return f"Validation failed for state {self.state!r}: {'; '.join(self.messages)}"


@dataclass(eq=False, slots=True)
class LockConflict(WorkflowError):
    """The instance is locked by another actor and the lock is still fresh."""

    instance_id: str
    holder_id: str
    retry_after_seconds: float

    retryable = True

    def __str__(self) -> str:
        return (
            f"Workflow {self.instance_id!r} is locked by another user. "
            f"Try again in {max(1, round(self.retry_after_seconds))} seconds."
        )
