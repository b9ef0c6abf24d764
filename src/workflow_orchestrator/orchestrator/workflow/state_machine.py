"""Declarative state graphs and the instances that walk them.

A :class:`StateGraph` is immutable once built and checked for soundness at
construction. A :class:`WorkflowInstance` owns the mutable part: current
state, business context and the append-only history. Authorization is
delegated to a :class:`PermissionResolver`; the instance never looks at
organizational data itself.
"""

from __future__ import annotations

import copy
import threading
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from types import MappingProxyType
from typing import Any

from workflow_orchestrator.orchestrator.rbac.conditions import WorkflowPermission, permission
from workflow_orchestrator.orchestrator.rbac.models import Actor, OrganizationalContext
from workflow_orchestrator.orchestrator.rbac.resolver import PermissionResolver
from workflow_orchestrator.orchestrator.workflow.errors import (
    GraphDefinitionError,
    GuardNotSatisfied,
    InvalidTransition,
    PermissionDenied,
    ValidationFailed,
    WorkflowTerminal,
)
from workflow_orchestrator.orchestrator.workflow.predicates import Predicate, Validation
from workflow_orchestrator.state.store import HistoryRecord, WorkflowSnapshot

CREATE_ACTION = "create"


def _now() -> datetime:
    return datetime.now(tz=UTC)


@dataclass(frozen=True, slots=True)
class HookEvent:
    """What an ``on_enter``/``on_exit`` hook knows about the move in progress.

    ``now`` is the engine's clock reading for the operation; hooks stamp
    times from it rather than from the wall clock.
    """

    actor: Actor
    org_context: OrganizationalContext
    now: datetime
    from_state: str | None
    to_state: str


Hook = Callable[[dict[str, Any], HookEvent], None]


@dataclass(frozen=True, slots=True)
class Transition:
    """An outbound edge of a state."""

    target: str
    action: str
    label: str = ""
    guards: tuple[Predicate, ...] = ()
    required_roles: frozenset[str] = frozenset()
    requires_confirmation: bool = False

    def guards_pass(self, context: Mapping[str, object]) -> bool:
        return all(g.evaluate(context) for g in self.guards)

    def describe(self) -> dict[str, object]:
        return {
            "target": self.target,
            "action": self.action,
            "label": self.label or self.action,
            "guards": [g.describe() for g in self.guards],
            "required_roles": sorted(self.required_roles),
            "requires_confirmation": self.requires_confirmation,
        }


@dataclass(frozen=True, slots=True)
class StateNode:
    name: str
    transitions: tuple[Transition, ...] = ()
    validations: tuple[Validation, ...] = ()
    required_roles: frozenset[str] = frozenset()
    permission: WorkflowPermission | None = None
    on_enter: Hook | None = None
    on_exit: Hook | None = None
    description: str = ""

    @property
    def is_terminal(self) -> bool:
        return not self.transitions

    def node_permission(self) -> WorkflowPermission:
        """Roles declared on the node combined with its permission descriptor."""

        base = self.permission or WorkflowPermission()
        return WorkflowPermission(
            roles=base.roles | self.required_roles,
            groups=base.groups,
            designations=base.designations,
            conditions=base.conditions,
        )

    def edges_to(self, target: str) -> list[Transition]:
        return [t for t in self.transitions if t.target == target]

    def validate(self, context: Mapping[str, object]) -> list[str]:
        messages: list[str] = []
        for validation in self.validations:
            message = validation.validate(context)
            if message:
                messages.append(message)
        return messages


class StateGraph:
    """The legal states and transitions of one workflow type."""

    def __init__(
        self,
        name: str,
        *,
        initial: str,
        states: Iterable[StateNode],
        description: str = "",
    ) -> None:
        nodes: dict[str, StateNode] = {}
        for node in states:
            if node.name in nodes:
                raise GraphDefinitionError(f"{name}: duplicate state {node.name!r}")
            nodes[node.name] = node
        if not nodes:
            raise GraphDefinitionError(f"{name}: a graph needs at least one state")
        if initial not in nodes:
            raise GraphDefinitionError(f"{name}: initial state {initial!r} is not defined")
        for node in nodes.values():
            for edge in node.transitions:
                if edge.target not in nodes:
                    raise GraphDefinitionError(
                        f"{name}: transition {node.name!r} -> {edge.target!r} "
                        f"({edge.action}) targets an undefined state"
                    )

        self.name = name
        self.description = description
        self._initial = initial
        self._states = MappingProxyType(nodes)

    @property
    def initial(self) -> str:
        return self._initial

    @property
    def states(self) -> Mapping[str, StateNode]:
        return self._states

    @property
    def terminal_states(self) -> list[str]:
        return [n.name for n in self._states.values() if n.is_terminal]

    def node(self, name: str) -> StateNode:
        try:
            return self._states[name]
        except KeyError:
            raise InvalidTransition(f"{self.name}: unknown state {name!r}") from None

    def describe(self) -> dict[str, object]:
        return {
            "name": self.name,
            "description": self.description,
            "initial": self._initial,
            "terminal_states": self.terminal_states,
            "states": {
                node.name: {
                    "description": node.description,
                    "permission": node.node_permission().describe(),
                    "validations": [v.describe() for v in node.validations],
                    "transitions": [t.describe() for t in node.transitions],
                }
                for node in self._states.values()
            },
        }


@dataclass(frozen=True, slots=True)
class HistoryEntry:
    from_state: str | None
    to_state: str
    action: str
    actor_id: str
    timestamp: datetime
    actor_name: str = ""
    transition_context: Mapping[str, Any] = field(default_factory=dict)

    def to_record(self) -> HistoryRecord:
        return HistoryRecord(
            from_state=self.from_state,
            to_state=self.to_state,
            action=self.action,
            actor_id=self.actor_id,
            actor_name=self.actor_name,
            timestamp=self.timestamp,
            transition_context=copy.deepcopy(dict(self.transition_context)),
        )

    @staticmethod
    def from_record(record: HistoryRecord) -> HistoryEntry:
        return HistoryEntry(
            from_state=record.from_state,
            to_state=record.to_state,
            action=record.action,
            actor_id=record.actor_id,
            actor_name=record.actor_name,
            timestamp=record.timestamp,
            transition_context=MappingProxyType(copy.deepcopy(record.transition_context)),
        )


@dataclass(frozen=True, slots=True)
class ExecutableTransition:
    """A transition the actor could execute right now."""

    action: str
    target: str
    label: str
    requires_confirmation: bool = False


@dataclass(frozen=True, slots=True)
class WorkflowSummary:
    id: str
    type: str
    current_state: str
    created_by: str
    organization_id: str
    created_at: datetime
    updated_at: datetime
    history_length: int
    time_in_current_state: timedelta
    is_terminal: bool


class WorkflowInstance:
    """One running process of a workflow type.

    The instance is mutated only through :meth:`transition` and
    :meth:`update_context`; callers get copies of the context and history.
    """

    def __init__(
        self,
        graph: StateGraph,
        workflow_id: str,
        *,
        created_by: str,
        organization_id: str,
        context: Mapping[str, Any] | None = None,
        metadata: Mapping[str, Any] | None = None,
        created_at: datetime | None = None,
    ) -> None:
        created_at = created_at or _now()
        self.id = workflow_id
        self.type = graph.name
        self.graph = graph
        self.created_by = created_by
        self.organization_id = organization_id
        self.metadata: dict[str, Any] = dict(metadata or {})
        self.created_at = created_at
        self.updated_at = created_at
        self.last_persisted_at: datetime | None = None
        self._current_state: str | None = None
        self._context: dict[str, Any] = copy.deepcopy(dict(context or {}))
        self._history: list[HistoryEntry] = []
        # Guards commits against snapshot reads from the auto-save thread.
        self._mutex = threading.RLock()
        # Serializes saves so checkpoints reach the store in revision order.
        self._save_lock = threading.Lock()
        self._revision = 0
        self._persisted_revision: int | None = None

    # -- creation --------------------------------------------------------

    @classmethod
    def create(
        cls,
        graph: StateGraph,
        workflow_id: str,
        *,
        actor: Actor,
        organization_id: str,
        resolver: PermissionResolver,
        initial_context: Mapping[str, Any] | None = None,
        metadata: Mapping[str, Any] | None = None,
        now: datetime | None = None,
    ) -> WorkflowInstance:
        """Build an instance already sitting in the graph's initial state.

        Raises:
            PermissionDenied: the actor does not hold the initial state's
                node-level permission.
        """

        now = now or _now()
        instance = cls(
            graph,
            workflow_id,
            created_by=actor.id,
            organization_id=organization_id,
            context=initial_context,
            metadata=metadata,
            created_at=now,
        )
        initial = graph.node(graph.initial)
        decision = resolver.check(
            actor,
            initial.node_permission(),
            organization_id=organization_id,
            workflow_context=instance.permission_context(),
            workflow_id=workflow_id,
        )
        if not decision.granted:
            raise PermissionDenied(
                f"{actor.id} may not start a {graph.name} workflow", decision.reasons
            )

        working = copy.deepcopy(instance._context)
        if initial.on_enter is not None:
            event = HookEvent(
                actor=actor,
                org_context=resolver.organizational_context(actor.id, organization_id),
                now=now,
                from_state=None,
                to_state=initial.name,
            )
            initial.on_enter(working, event)

        instance._context = working
        instance._current_state = initial.name
        instance._history.append(
            HistoryEntry(
                from_state=None,
                to_state=initial.name,
                action=CREATE_ACTION,
                actor_id=actor.id,
                actor_name=actor.name,
                timestamp=now,
            )
        )
        return instance

    # -- read-only views -------------------------------------------------

    @property
    def current_state(self) -> str:
        if self._current_state is None:
            raise InvalidTransition(f"Workflow {self.id!r} has not entered a state yet")
        return self._current_state

    @property
    def current_node(self) -> StateNode:
        return self.graph.node(self.current_state)

    @property
    def context(self) -> dict[str, Any]:
        with self._mutex:
            return copy.deepcopy(self._context)

    @property
    def history(self) -> tuple[HistoryEntry, ...]:
        with self._mutex:
            return tuple(self._history)

    @property
    def is_terminal(self) -> bool:
        return self.current_node.is_terminal

    @property
    def revision(self) -> int:
        """Bumped by every committed change; persistence tracks it to spot dirty instances."""

        return self._revision

    @property
    def save_lock(self) -> threading.Lock:
        """Held by whoever writes this instance to a store."""

        return self._save_lock

    @property
    def is_dirty(self) -> bool:
        return self._persisted_revision != self._revision

    def mark_persisted(self, at: datetime | None = None, *, revision: int | None = None) -> None:
        """Record a checkpoint of ``revision`` (the current one by default)."""

        with self._mutex:
            self.last_persisted_at = at or _now()
            self._persisted_revision = self._revision if revision is None else revision

    def permission_context(self) -> dict[str, Any]:
        """Context seen by permission conditions: stored business data plus identity fields."""

        with self._mutex:
            merged: dict[str, Any] = copy.deepcopy(self._context)
        merged.update(
            {
                "workflow_id": self.id,
                "workflow_type": self.type,
                "created_by": self.created_by,
                "organization_id": self.organization_id,
                "created_at": self.created_at,
            }
        )
        return merged

    def state_entered_at(self) -> datetime:
        for entry in reversed(self._history):
            if entry.to_state == self._current_state:
                return entry.timestamp
        return self.created_at

    def time_in_current_state(self, now: datetime | None = None) -> timedelta:
        return (now or _now()) - self.state_entered_at()

    def summary(self, now: datetime | None = None) -> WorkflowSummary:
        return WorkflowSummary(
            id=self.id,
            type=self.type,
            current_state=self.current_state,
            created_by=self.created_by,
            organization_id=self.organization_id,
            created_at=self.created_at,
            updated_at=self.updated_at,
            history_length=len(self._history),
            time_in_current_state=self.time_in_current_state(now),
            is_terminal=self.is_terminal,
        )

    def validate(self) -> list[str]:
        """Messages from the current state's validations against the stored context."""

        return self.current_node.validate(self._context)

    # -- authorization helpers -------------------------------------------

    def can_act(
        self,
        actor: Actor,
        *,
        resolver: PermissionResolver,
        organization_id: str | None = None,
    ) -> bool:
        """Whether ``actor`` holds the current state's node-level permission.

        ``organization_id`` is the organization the actor acts in; it defaults
        to the workflow's own.
        """

        return resolver.has_permission(
            actor,
            self.current_node.node_permission(),
            organization_id=organization_id or self.organization_id,
            workflow_context=self.permission_context(),
        )

    def available_transitions(
        self,
        actor: Actor,
        *,
        resolver: PermissionResolver,
        organization_id: str | None = None,
    ) -> list[ExecutableTransition]:
        """Transitions whose guards pass now and whose permission ``actor`` holds.

        At most one transition is listed per target: the one that
        :meth:`transition` would select.
        """

        node = self.current_node
        org = organization_id or self.organization_id
        if node.is_terminal or not self.can_act(actor, resolver=resolver, organization_id=org):
            return []

        perm_context = self.permission_context()
        seen: set[str] = set()
        result: list[ExecutableTransition] = []
        for edge in node.transitions:
            if edge.target in seen:
                continue
            if not self._edge_permitted(edge, actor, resolver, org, perm_context, audit=False):
                continue
            if not edge.guards_pass(self._context):
                continue
            seen.add(edge.target)
            result.append(
                ExecutableTransition(
                    action=edge.action,
                    target=edge.target,
                    label=edge.label or edge.action,
                    requires_confirmation=edge.requires_confirmation,
                )
            )
        return result

    def _edge_permitted(
        self,
        edge: Transition,
        actor: Actor,
        resolver: PermissionResolver,
        organization_id: str,
        perm_context: Mapping[str, Any],
        *,
        audit: bool,
    ) -> bool:
        if not edge.required_roles:
            return True
        return resolver.check(
            actor,
            permission(roles=edge.required_roles),
            organization_id=organization_id,
            workflow_context=perm_context,
            workflow_id=self.id,
            audit=audit,
        ).granted

    # -- mutation --------------------------------------------------------

    def transition(
        self,
        target: str,
        *,
        actor: Actor,
        resolver: PermissionResolver,
        organization_id: str | None = None,
        transition_context: Mapping[str, Any] | None = None,
        now: datetime | None = None,
    ) -> HistoryEntry:
        """Move to ``target`` or raise without touching the instance.

        Permissions and guards are decided on the stored context only, so a
        caller cannot supply the facts its own authorization or routing depends
        on. Target validations see the stored context overlaid with
        ``transition_context``; the transition context itself is only recorded
        in the history entry.

        Raises:
            WorkflowTerminal: the current state has no outbound transitions.
            InvalidTransition: no edge leads to ``target``.
            PermissionDenied: the actor fails the source state's permission or
                the required roles of every candidate edge.
            GuardNotSatisfied: no permitted edge has all guards passing.
            ValidationFailed: the target state's validations rejected the context.
            ProviderUnavailable: the actor's organizational context is unavailable.
        """

        now = now or _now()
        org = organization_id or self.organization_id
        node = self.current_node
        if node.is_terminal:
            raise WorkflowTerminal(f"Workflow {self.id!r} is in terminal state {node.name!r}")

        candidates = node.edges_to(target)
        if not candidates:
            raise InvalidTransition(
                f"No transition from {node.name!r} to {target!r} in {self.type}"
            )

        transition_context = copy.deepcopy(dict(transition_context or {}))
        perm_context = self.permission_context()

        decision = resolver.check(
            actor,
            node.node_permission(),
            organization_id=org,
            workflow_context=perm_context,
            workflow_id=self.id,
        )
        if not decision.granted:
            raise PermissionDenied(
                f"{actor.id} may not act on {self.id!r} in state {node.name!r}",
                decision.reasons,
            )

        permitted = [
            e
            for e in candidates
            if self._edge_permitted(e, actor, resolver, org, perm_context, audit=True)
        ]
        if not permitted:
            roles = sorted({r for e in candidates for r in e.required_roles})
            raise PermissionDenied(
                f"{actor.id} may not move {self.id!r} to {target!r}",
                [f"requires one of roles {roles}"],
            )

        selected = next((e for e in permitted if e.guards_pass(self._context)), None)
        if selected is None:
            raise GuardNotSatisfied(
                f"Preconditions for {node.name!r} -> {target!r} are not met: "
                + "; ".join(g.describe() for e in permitted for g in e.guards)
            )

        target_node = self.graph.node(target)
        messages = target_node.validate({**self._context, **transition_context})
        if messages:
            raise ValidationFailed(state=target, messages=tuple(messages))

        working = copy.deepcopy(self._context)
        if node.on_exit is not None or target_node.on_enter is not None:
            event = HookEvent(
                actor=actor,
                org_context=resolver.organizational_context(actor.id, org),
                now=now,
                from_state=node.name,
                to_state=target,
            )
            if node.on_exit is not None:
                node.on_exit(working, event)
            if target_node.on_enter is not None:
                target_node.on_enter(working, event)

        entry = HistoryEntry(
            from_state=node.name,
            to_state=target,
            action=selected.action,
            actor_id=actor.id,
            actor_name=actor.name,
            timestamp=now,
            transition_context=MappingProxyType(transition_context),
        )
        with self._mutex:
            self._context = working
            self._current_state = target
            self._history.append(entry)
            self.updated_at = now
            self._revision += 1
        return entry

    def update_context(self, updates: Mapping[str, Any], *, now: datetime | None = None) -> None:
        """Shallow-merge ``updates`` into the context; the state is unchanged."""

        updates = copy.deepcopy(dict(updates))
        with self._mutex:
            # Swap in a new dict; snapshot readers may hold the old one.
            self._context = {**self._context, **updates}
            self.updated_at = now or _now()
            self._revision += 1

    # -- persistence -----------------------------------------------------

    def clone(self) -> WorkflowInstance:
        """Detached copy; changes to it never reach this instance."""

        with self._mutex:
            snapshot = self.to_snapshot()
            dirty = self.is_dirty
        twin = WorkflowInstance.from_snapshot(snapshot, self.graph)
        if dirty:
            twin._persisted_revision = None
        return twin

    def checkpoint(self) -> tuple[WorkflowSnapshot, int]:
        """A consistent snapshot and the revision it captures."""

        with self._mutex:
            return self.to_snapshot(), self._revision

    def to_snapshot(self) -> WorkflowSnapshot:
        with self._mutex:
            return WorkflowSnapshot(
                id=self.id,
                type=self.type,
                current_state=self.current_state,
                context=copy.deepcopy(self._context),
                history=[e.to_record() for e in self._history],
                metadata=copy.deepcopy(self.metadata),
                created_by=self.created_by,
                organization_id=self.organization_id,
                created_at=self.created_at,
                updated_at=self.updated_at,
                last_persisted_at=self.last_persisted_at,
            )

    @classmethod
    def from_snapshot(cls, snapshot: WorkflowSnapshot, graph: StateGraph) -> WorkflowInstance:
        if snapshot.type != graph.name:
            raise ValueError(f"Snapshot {snapshot.id!r} is a {snapshot.type}, not {graph.name}")
        if snapshot.current_state not in graph.states:
            raise ValueError(
                f"Snapshot {snapshot.id!r} is in unknown state {snapshot.current_state!r}"
            )
        instance = cls(
            graph,
            snapshot.id,
            created_by=snapshot.created_by,
            organization_id=snapshot.organization_id,
            context=snapshot.context,
            metadata=snapshot.metadata,
            created_at=snapshot.created_at,
        )
        instance._current_state = snapshot.current_state
        instance._history = [HistoryEntry.from_record(r) for r in snapshot.history]
        instance.updated_at = snapshot.updated_at
        instance.mark_persisted(snapshot.last_persisted_at or snapshot.updated_at)
        return instance
