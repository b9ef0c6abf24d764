"""Permission descriptors and the contextual conditions they may carry.

A :class:`WorkflowPermission` is declared on a state or an edge of a graph.
Contextual conditions form a closed set of kinds; the one escape hatch,
:class:`CustomPredicate`, refers to a function by name through a
:class:`PredicateRegistry` so descriptors stay serializable.
"""

from __future__ import annotations

import json
import logging
import threading
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from workflow_orchestrator.orchestrator.rbac.models import (
    Actor,
    GroupType,
    OrganizationalContext,
)
from workflow_orchestrator.orchestrator.workflow.predicates import (
    Operator,
    compare,
    get_nested_value,
)

logger = logging.getLogger(__name__)

CustomPredicateFn = Callable[[Actor, OrganizationalContext, Mapping[str, object]], bool]


@dataclass(frozen=True, slots=True)
class Ownership:
    """The actor created the workflow."""

    field: str = "created_by"


@dataclass(frozen=True, slots=True)
class SameOrganization:
    """The workflow belongs to the organization the actor is acting in."""

    field: str = "organization_id"


@dataclass(frozen=True, slots=True)
class FieldComparison:
    path: str
    operator: Operator
    value: object


@dataclass(frozen=True, slots=True)
class TimeWindow:
    """No more than ``duration`` has elapsed since the timestamp at ``path``."""

    path: str
    duration: timedelta


@dataclass(frozen=True, slots=True)
class CustomPredicate:
    name: str


ContextCondition = Ownership | SameOrganization | FieldComparison | TimeWindow | CustomPredicate


@dataclass(frozen=True, slots=True)
class GroupRequirement:
    """Membership in a department or team.

    The group name is either fixed (``name``) or read from the workflow
    context (``context_path``). A requirement without ``type`` matches any
    group with that name.
    """

    name: str | None = None
    type: GroupType | None = None
    context_path: str | None = None

    def resolve_name(self, workflow_context: Mapping[str, object]) -> str | None:
        if self.context_path is not None:
            value = get_nested_value(workflow_context, self.context_path)
            return value if isinstance(value, str) else None
        return self.name


@dataclass(frozen=True, slots=True)
class WorkflowPermission:
    """Who may act: roles AND group AND designation AND context conditions.

    Within each dimension the listed alternatives are OR-ed; an empty dimension
    places no constraint.
    """

    roles: frozenset[str] = frozenset()
    groups: tuple[GroupRequirement, ...] = ()
    designations: frozenset[str] = frozenset()
    conditions: tuple[ContextCondition, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not (self.roles or self.groups or self.designations or self.conditions)

    def cache_key(self) -> str:
        return json.dumps(self.describe(), sort_keys=True, default=str)

    def describe(self) -> dict[str, object]:
        return {
            "roles": sorted(self.roles),
            "groups": [
                {
                    "name": g.name,
                    "type": g.type.value if g.type else None,
                    "context_path": g.context_path,
                }
                for g in self.groups
            ],
            "designations": sorted(self.designations),
            "conditions": [describe_condition(c) for c in self.conditions],
        }


def permission(
    *,
    roles: Iterable[str] = (),
    groups: Iterable[GroupRequirement] = (),
    designations: Iterable[str] = (),
    conditions: Iterable[ContextCondition] = (),
) -> WorkflowPermission:
    """Convenience constructor accepting any iterables (and role enums)."""

    return WorkflowPermission(
        roles=frozenset(str(getattr(r, "value", r)) for r in roles),
        groups=tuple(groups),
        designations=frozenset(designations),
        conditions=tuple(conditions),
    )


def describe_condition(condition: ContextCondition) -> dict[str, object]:
    if isinstance(condition, Ownership):
        return {"kind": "ownership", "field": condition.field}
    if isinstance(condition, SameOrganization):
        return {"kind": "same_organization", "field": condition.field}
    if isinstance(condition, FieldComparison):
        return {
            "kind": "field_comparison",
            "path": condition.path,
            "operator": condition.operator.value,
            "value": condition.value,
        }
    if isinstance(condition, TimeWindow):
        return {
            "kind": "time_window",
            "path": condition.path,
            "seconds": condition.duration.total_seconds(),
        }
    return {"kind": "custom", "name": condition.name}


class PredicateRegistry:
    """Named custom predicate functions referenced by :class:`CustomPredicate`."""

    def __init__(self, predicates: Mapping[str, CustomPredicateFn] | None = None) -> None:
        self._lock = threading.Lock()
        self._predicates: dict[str, CustomPredicateFn] = dict(predicates or {})

    def register(self, name: str, fn: CustomPredicateFn) -> None:
        with self._lock:
            if name in self._predicates:
                raise ValueError(f"Predicate already registered: {name}")
            self._predicates[name] = fn

    def get(self, name: str) -> CustomPredicateFn | None:
        with self._lock:
            return self._predicates.get(name)

    def names(self) -> list[str]:
        with self._lock:
            return sorted(self._predicates)


def _parse_timestamp(value: object) -> datetime | None:
    if isinstance(value, datetime):
        ts = value
    elif isinstance(value, str):
        try:
            ts = datetime.fromisoformat(value)
        except ValueError:
            return None
    else:
        return None
    return ts if ts.tzinfo is not None else ts.replace(tzinfo=UTC)


def evaluate_condition(
    condition: ContextCondition,
    *,
    actor: Actor,
    org_context: OrganizationalContext,
    workflow_context: Mapping[str, object],
    registry: PredicateRegistry,
    now: datetime,
) -> bool:
    if isinstance(condition, Ownership):
        return get_nested_value(workflow_context, condition.field) == actor.id
    if isinstance(condition, SameOrganization):
        return (
            get_nested_value(workflow_context, condition.field) == org_context.organization_id
        )
    if isinstance(condition, FieldComparison):
        return compare(
            get_nested_value(workflow_context, condition.path), condition.operator, condition.value
        )
    if isinstance(condition, TimeWindow):
        ts = _parse_timestamp(get_nested_value(workflow_context, condition.path))
        if ts is None:
            return False
        return now - ts <= condition.duration
    if isinstance(condition, CustomPredicate):
        fn = registry.get(condition.name)
        if fn is None:
            logger.warning(
                "Unknown custom predicate; denying", extra={"predicate": condition.name}
            )
            return False
        try:
            return bool(fn(actor, org_context, workflow_context))
        except Exception:
            logger.exception(
                "Custom predicate failed; denying", extra={"predicate": condition.name}
            )
            return False
    raise TypeError(f"Unsupported condition: {condition!r}")
