"""In-process workflow orchestration.

The engine owns the registry of state graphs and the table of live
instances. Every mutation of an instance happens here, under that instance's
advisory lock, followed by the side channels: persistence, audit,
notifications and events. Side-channel failures are logged and counted but
never undo or fail the operation that caused them.
"""

from __future__ import annotations

import logging
import threading
from collections import Counter
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from workflow_orchestrator.core.config import EngineConfig
from workflow_orchestrator.orchestrator.engine.autosave import AutoSaveRunner
from workflow_orchestrator.orchestrator.engine.collaborators import (
    AuditEvent,
    AuditEventKind,
    AuditSink,
    NotificationKind,
    NotificationSink,
    redact,
)
from workflow_orchestrator.orchestrator.engine.locks import LockManager
from workflow_orchestrator.orchestrator.rbac.conditions import (
    PredicateRegistry,
    WorkflowPermission,
)
from workflow_orchestrator.orchestrator.rbac.context import (
    Clock,
    OrganizationalContextCache,
    OrganizationalContextProvider,
    RecipientDirectory,
    utc_now,
)
from workflow_orchestrator.orchestrator.rbac.models import Actor
from workflow_orchestrator.orchestrator.rbac.resolver import PermissionDecision, PermissionResolver
from workflow_orchestrator.orchestrator.rbac.roles import RoleClassifier, WorkflowRole
from workflow_orchestrator.orchestrator.workflow.errors import (
    DuplicateWorkflowId,
    DuplicateWorkflowType,
    EngineNotRunning,
    InstanceNotFound,
    PermissionDenied,
    UnknownWorkflowType,
    ValidationFailed,
    WorkflowError,
    WorkflowTerminal,
)
from workflow_orchestrator.orchestrator.workflow.events import EventBus, EventType, WorkflowEvent
from workflow_orchestrator.orchestrator.workflow.state_machine import (
    ExecutableTransition,
    HistoryEntry,
    StateGraph,
    WorkflowInstance,
    WorkflowSummary,
)
from workflow_orchestrator.state.store import JsonFilePersistenceStore, PersistenceStore

logger = logging.getLogger(__name__)


class EngineState(str, Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"


class WorkflowRegistry:
    """State graphs by workflow type name."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._graphs: dict[str, StateGraph] = {}

    def register(self, graph: StateGraph) -> None:
        with self._lock:
            if graph.name in self._graphs:
                raise DuplicateWorkflowType(f"Workflow type already registered: {graph.name}")
            self._graphs[graph.name] = graph

    def get(self, workflow_type: str) -> StateGraph:
        with self._lock:
            graph = self._graphs.get(workflow_type)
        if graph is None:
            raise UnknownWorkflowType(f"Unknown workflow type: {workflow_type}")
        return graph

    def __contains__(self, workflow_type: object) -> bool:
        with self._lock:
            return workflow_type in self._graphs

    def types(self) -> list[str]:
        with self._lock:
            return sorted(self._graphs)


@dataclass(frozen=True, slots=True)
class WorkflowFilter:
    """Criteria for :meth:`WorkflowEngine.find_workflows`; unset fields match anything."""

    type: str | None = None
    state: str | None = None
    created_by: str | None = None
    organization_id: str | None = None
    created_after: datetime | None = None
    created_before: datetime | None = None

    def matches(self, instance: WorkflowInstance) -> bool:
        return (
            (self.type is None or instance.type == self.type)
            and (self.state is None or instance.current_state == self.state)
            and (self.created_by is None or instance.created_by == self.created_by)
            and (self.organization_id is None or instance.organization_id == self.organization_id)
            and (self.created_after is None or instance.created_at >= self.created_after)
            and (self.created_before is None or instance.created_at <= self.created_before)
        )


@dataclass(frozen=True, slots=True)
class UserWorkflow:
    summary: WorkflowSummary
    available_transitions: tuple[ExecutableTransition, ...]
    is_creator: bool
    can_act: bool


@dataclass(frozen=True, slots=True)
class EngineStatistics:
    state: EngineState
    total_instances: int
    by_type: dict[str, int]
    by_state: dict[str, dict[str, int]]
    active: int
    completed: int
    held_locks: int
    registered_types: tuple[str, ...]
    side_effect_failures: int
    permission_cache: dict[str, object] = field(default_factory=dict)
    context_cache: dict[str, object] = field(default_factory=dict)


class WorkflowEngine:
    """Registry, live-instance table and the operations over them.

    Only :meth:`start`, :meth:`stop`, :meth:`register_workflow_type` and the
    read-only statistics are available outside the ``RUNNING`` state.
    """

    def __init__(
        self,
        *,
        context_provider: OrganizationalContextProvider,
        config: EngineConfig | None = None,
        persistence: PersistenceStore | None = None,
        audit: AuditSink | None = None,
        notifications: NotificationSink | None = None,
        recipients: RecipientDirectory | None = None,
        registry: WorkflowRegistry | None = None,
        classifier: RoleClassifier | None = None,
        predicates: PredicateRegistry | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self._config = config or EngineConfig()
        if persistence is None and self._config.persistence.enabled:
            persistence = JsonFilePersistenceStore(self._config.persistence.storage_path)
        self._persistence = persistence
        self._audit = audit
        self._notifications = notifications
        self._recipients = recipients
        self._registry = registry or WorkflowRegistry()
        self._clock = clock

        self._contexts = OrganizationalContextCache(
            context_provider, ttl=self._config.org_context_cache_ttl, clock=clock
        )
        self._resolver = PermissionResolver(
            self._contexts,
            classifier=classifier,
            predicates=predicates,
            cache_ttl=self._config.permission_cache_ttl,
            clock=clock,
            on_decision=self._audit_permission,
        )
        self._locks = LockManager(ttl=self._config.lock_ttl, clock=clock)
        self._events = EventBus()
        self._autosave: AutoSaveRunner | None = None

        self._lock = threading.RLock()
        self._state = EngineState.STOPPED
        self._instances: dict[str, WorkflowInstance] = {}
        self._reserved: set[str] = set()
        self._side_effect_failures = 0

    # -- accessors -------------------------------------------------------

    @property
    def state(self) -> EngineState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._state is EngineState.RUNNING

    @property
    def events(self) -> EventBus:
        return self._events

    @property
    def permissions(self) -> PermissionResolver:
        return self._resolver

    @property
    def locks(self) -> LockManager:
        return self._locks

    @property
    def registry(self) -> WorkflowRegistry:
        return self._registry

    # -- lifecycle -------------------------------------------------------

    def start(self) -> None:
        """Load persisted instances and begin accepting operations."""

        with self._lock:
            if self._state is not EngineState.STOPPED:
                logger.warning("Engine start ignored", extra={"state": self._state.value})
                return
            self._state = EngineState.STARTING

        try:
            loaded = self._load_persisted()
        except Exception:
            with self._lock:
                self._state = EngineState.STOPPED
            raise

        interval = self._config.auto_save_interval_seconds
        if self._persistence is not None and interval > 0:
            self._autosave = AutoSaveRunner(self.auto_save, interval_seconds=interval)
            self._autosave.start()

        with self._lock:
            self._state = EngineState.RUNNING
        logger.info("Workflow engine started", extra={"loaded_instances": loaded})
        self._emit(EventType.ENGINE_STARTED, {"loaded_instances": loaded})

    def stop(self) -> None:
        """Stop accepting operations and flush every modified instance."""

        with self._lock:
            if self._state is not EngineState.RUNNING:
                return
            self._state = EngineState.STOPPING

        try:
            if self._autosave is not None:
                self._autosave.stop()
                self._autosave = None
            saved = self.auto_save()
            self._locks.clear()
        finally:
            with self._lock:
                self._state = EngineState.STOPPED
        logger.info("Workflow engine stopped", extra={"saved_instances": saved})
        self._emit(EventType.ENGINE_STOPPED, {"saved_instances": saved})

    def _load_persisted(self) -> int:
        if self._persistence is None:
            return 0
        loaded = 0
        for snapshot in self._persistence.load_all():
            with self._lock:
                if snapshot.id in self._instances:
                    continue
            if snapshot.type not in self._registry:
                logger.warning(
                    "Skipping persisted instance of unregistered type",
                    extra={"workflow_id": snapshot.id, "workflow_type": snapshot.type},
                )
                continue
            try:
                instance = WorkflowInstance.from_snapshot(
                    snapshot, self._registry.get(snapshot.type)
                )
            except ValueError:
                logger.exception(
                    "Skipping unreadable persisted instance", extra={"workflow_id": snapshot.id}
                )
                continue
            with self._lock:
                self._instances[instance.id] = instance
            loaded += 1
        return loaded

    def _require_running(self) -> None:
        if self._state is not EngineState.RUNNING:
            raise EngineNotRunning(f"Engine is {self._state.value}")

    # -- registration ----------------------------------------------------

    def register_workflow_type(self, graph: StateGraph | Callable[[], StateGraph]) -> StateGraph:
        """Register a graph, or a factory producing one.

        Raises:
            DuplicateWorkflowType: a graph with the same name is already registered.
        """

        if not isinstance(graph, StateGraph):
            graph = graph()
        self._registry.register(graph)
        logger.info("Workflow type registered", extra={"workflow_type": graph.name})
        self._emit(EventType.WORKFLOW_TYPE_REGISTERED, {"workflow_type": graph.name})
        return graph

    # -- instance operations ---------------------------------------------

    def create_workflow(
        self,
        workflow_type: str,
        workflow_id: str,
        *,
        actor: Actor,
        organization_id: str,
        initial_context: Mapping[str, Any] | None = None,
        metadata: Mapping[str, Any] | None = None,
    ) -> WorkflowInstance:
        """Create an instance in its initial state and make it visible.

        The actor's organizational context is resolved first, even for an
        unrestricted initial state. The id is reserved while the instance is
        built so a concurrent create with the same id fails, and nothing is
        visible until construction succeeded.

        Raises:
            EngineNotRunning, UnknownWorkflowType, DuplicateWorkflowId,
            ProviderUnavailable, PermissionDenied.
        """

        self._require_running()
        graph = self._registry.get(workflow_type)

        with self._lock:
            if workflow_id in self._instances or workflow_id in self._reserved:
                raise DuplicateWorkflowId(f"Workflow id already exists: {workflow_id}")
            self._reserved.add(workflow_id)

        try:
            self._resolver.organizational_context(actor.id, organization_id)
            instance = WorkflowInstance.create(
                graph,
                workflow_id,
                actor=actor,
                organization_id=organization_id,
                resolver=self._resolver,
                initial_context=initial_context,
                metadata=metadata,
                now=self._clock(),
            )
            with self._lock:
                self._instances[workflow_id] = instance
        except WorkflowError as e:
            self._record(
                AuditEvent(
                    kind=AuditEventKind.WORKFLOW_CREATED,
                    timestamp=self._clock(),
                    actor_id=actor.id,
                    organization_id=organization_id,
                    workflow_id=workflow_id,
                    workflow_type=workflow_type,
                    success=False,
                    details={"error": str(e), "error_type": type(e).__name__},
                )
            )
            raise
        finally:
            with self._lock:
                self._reserved.discard(workflow_id)

        persisted = self._persist(instance)
        self._record(
            AuditEvent(
                kind=AuditEventKind.WORKFLOW_CREATED,
                timestamp=self._clock(),
                actor_id=actor.id,
                organization_id=organization_id,
                workflow_id=workflow_id,
                workflow_type=workflow_type,
                to_state=instance.current_state,
                details={"initial_context": redact(instance.context)},
            )
        )
        logger.info(
            "Workflow created",
            extra={"workflow_id": workflow_id, "workflow_type": workflow_type, "actor": actor.id},
        )
        self._emit(
            EventType.WORKFLOW_CREATED,
            {
                "workflow_id": workflow_id,
                "workflow_type": workflow_type,
                "state": instance.current_state,
                "actor_id": actor.id,
                "persisted": persisted,
            },
        )
        return instance.clone()

    def get_workflow(self, workflow_id: str) -> WorkflowInstance:
        """Detached copy of a live instance."""

        self._require_running()
        return self._live(workflow_id).clone()

    def find_workflows(self, criteria: WorkflowFilter | None = None) -> list[WorkflowInstance]:
        self._require_running()
        criteria = criteria or WorkflowFilter()
        return [i.clone() for i in self._all_instances() if criteria.matches(i)]

    def execute_transition(
        self,
        workflow_id: str,
        target_state: str,
        *,
        actor: Actor,
        organization_id: str | None = None,
        transition_context: Mapping[str, Any] | None = None,
    ) -> WorkflowInstance:
        """Move an instance to ``target_state`` on behalf of ``actor``.

        The actor's organizational context is resolved and the current state's
        validations are re-checked first. The instance lock is held for the
        duration and released on every exit path.

        Raises:
            EngineNotRunning, InstanceNotFound, LockConflict, ProviderUnavailable,
            ValidationFailed, and everything :meth:`WorkflowInstance.transition`
            raises.
        """

        self._require_running()
        instance = self._live(workflow_id)

        with self._locks.hold(workflow_id, actor.id):
            self._resolver.organizational_context(
                actor.id, organization_id or instance.organization_id
            )
            from_state = instance.current_state
            messages = instance.validate()
            try:
                if messages:
                    raise ValidationFailed(state=from_state, messages=tuple(messages))
                entry = instance.transition(
                    target_state,
                    actor=actor,
                    resolver=self._resolver,
                    organization_id=organization_id,
                    transition_context=transition_context,
                    now=self._clock(),
                )
            except ValidationFailed as e:
                self._record_validation_failure(instance, actor, target_state, e)
                raise
            persisted = self._persist(instance)
            result = instance.clone()

        self._after_transition(result, entry, actor, persisted)
        return result

    def update_workflow_context(
        self,
        workflow_id: str,
        updates: Mapping[str, Any],
        *,
        actor: Actor,
        organization_id: str | None = None,
    ) -> WorkflowInstance:
        """Merge ``updates`` into the context without changing state.

        Gated by the current state's node-level permission.

        Raises:
            EngineNotRunning, InstanceNotFound, LockConflict, WorkflowTerminal,
            PermissionDenied, ProviderUnavailable.
        """

        self._require_running()
        instance = self._live(workflow_id)

        with self._locks.hold(workflow_id, actor.id):
            if instance.is_terminal:
                raise WorkflowTerminal(
                    f"Workflow {workflow_id!r} is in terminal state {instance.current_state!r}"
                )
            org = organization_id or instance.organization_id
            self._resolver.organizational_context(actor.id, org)
            node = instance.current_node
            decision = self._resolver.check(
                actor,
                node.node_permission(),
                organization_id=org,
                workflow_context=instance.permission_context(),
                workflow_id=workflow_id,
            )
            if not decision.granted:
                raise PermissionDenied(
                    f"{actor.id} may not update {workflow_id!r} in state {node.name!r}",
                    decision.reasons,
                )
            instance.update_context(updates, now=self._clock())
            persisted = self._persist(instance)
            result = instance.clone()

        self._record(
            AuditEvent(
                kind=AuditEventKind.CONTEXT_UPDATED,
                timestamp=self._clock(),
                actor_id=actor.id,
                organization_id=result.organization_id,
                workflow_id=workflow_id,
                workflow_type=result.type,
                from_state=result.current_state,
                to_state=result.current_state,
                details={"updates": redact(dict(updates)), "keys": sorted(updates)},
            )
        )
        self._emit(
            EventType.CONTEXT_UPDATED,
            {
                "workflow_id": workflow_id,
                "workflow_type": result.type,
                "actor_id": actor.id,
                "keys": sorted(updates),
                "persisted": persisted,
            },
        )
        return result

    def get_user_workflows(
        self,
        actor: Actor,
        *,
        organization_id: str | None = None,
        criteria: WorkflowFilter | None = None,
    ) -> list[UserWorkflow]:
        """Instances ``actor`` created or may act on, most recently updated first."""

        self._require_running()
        criteria = criteria or WorkflowFilter()
        now = self._clock()
        result: list[UserWorkflow] = []
        for instance in self._all_instances():
            if not criteria.matches(instance):
                continue
            is_creator = instance.created_by == actor.id
            can_act = not instance.is_terminal and instance.can_act(
                actor, resolver=self._resolver, organization_id=organization_id
            )
            if not (is_creator or can_act):
                continue
            transitions = (
                instance.available_transitions(
                    actor, resolver=self._resolver, organization_id=organization_id
                )
                if can_act
                else []
            )
            result.append(
                UserWorkflow(
                    summary=instance.summary(now),
                    available_transitions=tuple(transitions),
                    is_creator=is_creator,
                    can_act=can_act,
                )
            )
        result.sort(key=lambda w: w.summary.updated_at, reverse=True)
        return result

    # -- persistence -----------------------------------------------------

    def auto_save(self) -> int:
        """Persist instances modified since their last checkpoint.

        The sweep also drops permission cache entries from past time buckets.
        """

        saved = sum(1 for i in self._all_instances() if i.is_dirty and self._persist(i))
        self._resolver.clear_expired_cache()
        return saved

    def save_all(self) -> int:
        return sum(1 for i in self._all_instances() if self._persist(i))

    def _persist(self, instance: WorkflowInstance) -> bool:
        if self._persistence is None:
            return False
        with instance.save_lock:
            snapshot, revision = instance.checkpoint()
            now = self._clock()
            try:
                self._persistence.save(snapshot.model_copy(update={"last_persisted_at": now}))
            except Exception:
                self._count_failure()
                logger.exception(
                    "Failed to persist workflow instance", extra={"workflow_id": instance.id}
                )
                return False
            # A change committed while saving keeps the instance dirty.
            instance.mark_persisted(now, revision=revision)
        return True

    # -- statistics ------------------------------------------------------

    def get_statistics(self) -> EngineStatistics:
        instances = self._all_instances()
        by_type = Counter(i.type for i in instances)
        by_state: dict[str, dict[str, int]] = {}
        for instance in instances:
            states = by_state.setdefault(instance.type, {})
            states[instance.current_state] = states.get(instance.current_state, 0) + 1
        completed = sum(1 for i in instances if i.is_terminal)
        return EngineStatistics(
            state=self._state,
            total_instances=len(instances),
            by_type=dict(by_type),
            by_state=by_state,
            active=len(instances) - completed,
            completed=completed,
            held_locks=self._locks.held_count(),
            registered_types=tuple(self._registry.types()),
            side_effect_failures=self._side_effect_failures + self._events.failures,
            permission_cache=self._resolver.cache_stats(),
            context_cache=self._contexts.stats(),
        )

    # -- internals -------------------------------------------------------

    def _live(self, workflow_id: str) -> WorkflowInstance:
        with self._lock:
            instance = self._instances.get(workflow_id)
        if instance is None:
            raise InstanceNotFound(f"Workflow not found: {workflow_id}")
        return instance

    def _all_instances(self) -> list[WorkflowInstance]:
        with self._lock:
            return list(self._instances.values())

    def _count_failure(self) -> None:
        with self._lock:
            self._side_effect_failures += 1

    def _emit(self, event_type: EventType, payload: dict[str, Any]) -> None:
        self._events.emit(WorkflowEvent(type=event_type, payload=payload, timestamp=self._clock()))

    def _record(self, event: AuditEvent) -> None:
        if self._audit is None:
            return
        try:
            self._audit.record(event)
        except Exception:
            self._count_failure()
            logger.exception(
                "Audit sink failed",
                extra={"audit_kind": event.kind.value, "workflow_id": event.workflow_id},
            )

    def _audit_permission(
        self,
        actor: Actor,
        required: WorkflowPermission,
        organization_id: str,
        decision: PermissionDecision,
        workflow_id: str | None,
    ) -> None:
        self._record(
            AuditEvent(
                kind=AuditEventKind.PERMISSION_CHECKED,
                timestamp=self._clock(),
                actor_id=actor.id,
                organization_id=organization_id,
                workflow_id=workflow_id,
                success=decision.granted,
                details={
                    "required": required.describe(),
                    "reasons": list(decision.reasons),
                    "cached": decision.cached,
                },
            )
        )

    def _record_validation_failure(
        self, instance: WorkflowInstance, actor: Actor, target_state: str, error: ValidationFailed
    ) -> None:
        self._record(
            AuditEvent(
                kind=AuditEventKind.VALIDATION_FAILED,
                timestamp=self._clock(),
                actor_id=actor.id,
                organization_id=instance.organization_id,
                workflow_id=instance.id,
                workflow_type=instance.type,
                from_state=instance.current_state,
                to_state=target_state,
                success=False,
                details={"state": error.state, "messages": list(error.messages)},
            )
        )

    def _after_transition(
        self, instance: WorkflowInstance, entry: HistoryEntry, actor: Actor, persisted: bool
    ) -> None:
        self._record(
            AuditEvent(
                kind=AuditEventKind.WORKFLOW_TRANSITIONED,
                timestamp=self._clock(),
                actor_id=actor.id,
                organization_id=instance.organization_id,
                workflow_id=instance.id,
                workflow_type=instance.type,
                from_state=entry.from_state,
                to_state=entry.to_state,
                details={
                    "action": entry.action,
                    "transition_context": redact(dict(entry.transition_context)),
                },
            )
        )
        logger.info(
            "Workflow transitioned",
            extra={
                "workflow_id": instance.id,
                "from_state": entry.from_state,
                "to_state": entry.to_state,
                "actor": actor.id,
            },
        )
        self._notify_transition(instance, entry, actor)
        self._emit(
            EventType.STATE_CHANGED,
            {
                "workflow_id": instance.id,
                "workflow_type": instance.type,
                "from_state": entry.from_state,
                "to_state": entry.to_state,
                "action": entry.action,
                "actor_id": actor.id,
                "persisted": persisted,
            },
        )

    def _recipients_for(self, instance: WorkflowInstance) -> list[str]:
        roles = sorted(instance.current_node.node_permission().roles)
        recipients: list[str] = []
        for role in roles:
            if role == WorkflowRole.REQUESTOR.value:
                found = [instance.created_by]
            elif self._recipients is not None:
                found = self._recipients.users_with_role(role, instance.organization_id)
            else:
                found = [f"role:{role}"]
            recipients.extend(r for r in found if r not in recipients)
        return recipients

    def _notify_transition(
        self, instance: WorkflowInstance, entry: HistoryEntry, actor: Actor
    ) -> None:
        if self._notifications is None:
            return
        data = {
            "workflow_id": instance.id,
            "workflow_type": instance.type,
            "from_state": entry.from_state,
            "to_state": entry.to_state,
            "action": entry.action,
            "actor_id": actor.id,
        }
        outgoing: list[tuple[list[str], NotificationKind]] = []
        if instance.is_terminal:
            outgoing.append(([instance.created_by], NotificationKind.WORKFLOW_COMPLETED))
        else:
            try:
                recipients = self._recipients_for(instance)
            except Exception:
                self._count_failure()
                logger.exception(
                    "Failed to resolve notification recipients",
                    extra={"workflow_id": instance.id},
                )
                recipients = []
            if recipients:
                outgoing.append((recipients, NotificationKind.ACTION_REQUIRED))
            if actor.id != instance.created_by:
                outgoing.append(([instance.created_by], NotificationKind.WORKFLOW_STATE_CHANGED))

        for recipients, kind in outgoing:
            try:
                self._notifications.notify(recipients, kind, data)
            except Exception:
                self._count_failure()
                logger.exception(
                    "Notification sink failed",
                    extra={"workflow_id": instance.id, "notification_kind": kind.value},
                )

