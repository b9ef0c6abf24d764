"""Multi-dimensional permission resolution.

A permission is granted when all four checks pass, cheapest first:

1. role       - the actor's derived roles intersect the required roles
2. group      - one of the actor's positions sits in a required department/team
3. designation - one of the actor's positions holds a required designation
4. context    - every contextual condition holds for the workflow context

Checks 1-3 (minus groups resolved from the workflow context) depend only on
the actor's organizational standing. Their outcome is cached per
(user, descriptor, organization, time bucket); contextual checks are
evaluated on every call.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import datetime, timedelta

from workflow_orchestrator.orchestrator.rbac.conditions import (
    GroupRequirement,
    PredicateRegistry,
    WorkflowPermission,
    evaluate_condition,
)
from workflow_orchestrator.orchestrator.rbac.context import (
    Clock,
    OrganizationalContextCache,
    utc_now,
)
from workflow_orchestrator.orchestrator.rbac.models import Actor, OrganizationalContext
from workflow_orchestrator.orchestrator.rbac.roles import (
    KeywordRoleClassifier,
    RoleClassifier,
    derive_roles,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class PermissionDecision:
    granted: bool
    reasons: tuple[str, ...] = ()
    cached: bool = False


DecisionListener = Callable[[Actor, WorkflowPermission, str, PermissionDecision, str | None], None]


@dataclass(frozen=True, slots=True)
class _CacheEntry:
    reasons: tuple[str, ...]
    cached_at: datetime


def _group_matches(
    requirement: GroupRequirement, name: str, org_context: OrganizationalContext
) -> bool:
    for group in org_context.groups():
        if group.name != name:
            continue
        if requirement.type is None or group.type is requirement.type:
            return True
    return False


class PermissionResolver:
    def __init__(
        self,
        contexts: OrganizationalContextCache,
        *,
        classifier: RoleClassifier | None = None,
        predicates: PredicateRegistry | None = None,
        cache_ttl: timedelta = timedelta(minutes=5),
        clock: Clock = utc_now,
        on_decision: DecisionListener | None = None,
    ) -> None:
        self._contexts = contexts
        self._classifier = classifier or KeywordRoleClassifier()
        self._predicates = predicates or PredicateRegistry()
        self._cache_ttl = cache_ttl
        self._clock = clock
        self._on_decision = on_decision
        self._lock = threading.Lock()
        self._cache: dict[tuple[str, str, str, int], _CacheEntry] = {}
        self._last_bucket: int | None = None

    @property
    def predicates(self) -> PredicateRegistry:
        return self._predicates

    @property
    def classifier(self) -> RoleClassifier:
        return self._classifier

    def organizational_context(self, user_id: str, organization_id: str) -> OrganizationalContext:
        return self._contexts.get_context(user_id, organization_id)

    def roles_for(self, org_context: OrganizationalContext) -> frozenset[str]:
        return derive_roles(org_context.positions, self._classifier)

    def has_permission(
        self,
        actor: Actor,
        required: WorkflowPermission,
        *,
        organization_id: str,
        workflow_context: Mapping[str, object] | None = None,
    ) -> bool:
        return self.check(
            actor,
            required,
            organization_id=organization_id,
            workflow_context=workflow_context,
            audit=False,
        ).granted

    def check(
        self,
        actor: Actor,
        required: WorkflowPermission,
        *,
        organization_id: str,
        workflow_context: Mapping[str, object] | None = None,
        workflow_id: str | None = None,
        audit: bool = True,
    ) -> PermissionDecision:
        """Decide whether ``actor`` satisfies ``required``.

        Raises:
            ProviderUnavailable: the actor's organizational context could not be
                resolved. No decision is made without a context.
        """

        if required.is_empty:
            return PermissionDecision(granted=True)

        workflow_context = workflow_context or {}
        now = self._clock()
        key = (actor.id, required.cache_key(), organization_id, self._bucket(now))

        with self._lock:
            entry = self._cache.get(key)

        org_context: OrganizationalContext | None = None
        cached = entry is not None
        if entry is None:
            org_context = self._contexts.get_context(actor.id, organization_id)
            entry = _CacheEntry(reasons=self._static_denials(required, org_context), cached_at=now)
            with self._lock:
                if key[3] != self._last_bucket:
                    self._drop_buckets_before(key[3])
                self._cache[key] = entry

        reasons = list(entry.reasons)
        if not reasons and self._has_contextual_checks(required):
            if org_context is None:
                org_context = self._contexts.get_context(actor.id, organization_id)
            reasons.extend(
                self._contextual_denials(actor, required, org_context, workflow_context, now)
            )

        decision = PermissionDecision(granted=not reasons, reasons=tuple(reasons), cached=cached)
        if audit and self._on_decision is not None:
            try:
                self._on_decision(actor, required, organization_id, decision, workflow_id)
            except Exception:
                logger.exception("Permission decision listener failed")
        return decision

    def _bucket(self, now: datetime) -> int:
        return int(now.timestamp() // self._cache_ttl.total_seconds())

    @staticmethod
    def _has_contextual_checks(required: WorkflowPermission) -> bool:
        return bool(required.conditions) or any(
            g.context_path is not None for g in required.groups
        )

    def _static_denials(
        self, required: WorkflowPermission, org_context: OrganizationalContext
    ) -> tuple[str, ...]:
        if required.roles:
            roles = self.roles_for(org_context)
            if not roles & required.roles:
                return (f"requires one of roles {sorted(required.roles)}",)

        fixed_groups = [g for g in required.groups if g.context_path is None]
        if fixed_groups and not any(
            g.name is not None and _group_matches(g, g.name, org_context) for g in fixed_groups
        ):
            return (f"requires membership in one of {[g.name for g in fixed_groups]}",)

        if required.designations and not (
            org_context.designation_names() & required.designations
        ):
            return (f"requires one of designations {sorted(required.designations)}",)
        return ()

    def _contextual_denials(
        self,
        actor: Actor,
        required: WorkflowPermission,
        org_context: OrganizationalContext,
        workflow_context: Mapping[str, object],
        now: datetime,
    ) -> list[str]:
        dynamic_groups = [g for g in required.groups if g.context_path is not None]
        if dynamic_groups:
            names = [(g, g.resolve_name(workflow_context)) for g in dynamic_groups]
            if not any(
                name is not None and _group_matches(g, name, org_context) for g, name in names
            ):
                return [f"requires membership in {[n for _, n in names]}"]

        for condition in required.conditions:
            ok = evaluate_condition(
                condition,
                actor=actor,
                org_context=org_context,
                workflow_context=workflow_context,
                registry=self._predicates,
                now=now,
            )
            if not ok:
                return [f"condition not met: {type(condition).__name__}"]
        return []

    def clear_cache(self) -> None:
        with self._lock:
            self._cache.clear()

    def clear_expired_cache(self) -> int:
        current = self._bucket(self._clock())
        with self._lock:
            return self._drop_buckets_before(current)

    def _drop_buckets_before(self, bucket: int) -> int:
        # Caller holds self._lock.
        expired = [k for k in self._cache if k[3] < bucket]
        for key in expired:
            del self._cache[key]
        self._last_bucket = bucket
        return len(expired)

    def cache_stats(self) -> dict[str, object]:
        with self._lock:
            return {
                "size": len(self._cache),
                "ttl_seconds": self._cache_ttl.total_seconds(),
            }
