"""Helpers shared by the bundled workflow definitions."""

from __future__ import annotations

import logging
import uuid
from collections.abc import Mapping
from datetime import UTC, datetime

from workflow_orchestrator.orchestrator.rbac.conditions import CustomPredicateFn, PredicateRegistry
from workflow_orchestrator.orchestrator.rbac.models import Actor, GroupType, OrganizationalContext

logger = logging.getLogger(__name__)

MANAGER_OF_REQUESTER_DEPARTMENT = "manager_of_requester_department"
MANAGER_OF_WORKFLOW_DEPARTMENT = "manager_of_workflow_department"


def timestamp(now: datetime) -> str:
    return now.astimezone(UTC).isoformat()


def reference(prefix: str, now: datetime, length: int = 8) -> str:
    """Human-facing reference number such as ``EXP-202610-3F9A1C``."""

    period = now.astimezone(UTC).strftime("%Y%m")
    return f"{prefix}-{period}-{uuid.uuid4().hex[:length].upper()}"


def department_manager(field: str) -> CustomPredicateFn:
    """Holds when the actor is a manager of the department named at ``field``."""

    def _check(
        actor: Actor, org_context: OrganizationalContext, workflow_context: Mapping[str, object]
    ) -> bool:
        department = workflow_context.get(field)
        if not department:
            return False
        return any(
            "manager" in p.designation.name.lower()
            and p.group is not None
            and p.group.type is GroupType.DEPARTMENT
            and p.group.name == department
            for p in org_context.positions
        )

    return _check


def register_builtin_predicates(registry: PredicateRegistry) -> None:
    """Register the custom predicates the bundled definitions refer to by name."""

    for name, fn in (
        (MANAGER_OF_REQUESTER_DEPARTMENT, department_manager("requester_department")),
        (MANAGER_OF_WORKFLOW_DEPARTMENT, department_manager("department")),
    ):
        if registry.get(name) is None:
            registry.register(name, fn)
