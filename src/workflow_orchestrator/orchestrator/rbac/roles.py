"""Mapping organizational positions onto abstract workflow roles.

A workflow graph never names job titles. It names roles (Approver,
FinanceSpecialist, ...) and a classifier decides which roles a position
carries. The default classifier keys on designation and department names.
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Protocol

from workflow_orchestrator.orchestrator.rbac.models import GroupType, Position


class WorkflowRole(str, Enum):
    REQUESTOR = "Requestor"
    ANALYZER = "Analyzer"
    APPROVER = "Approver"
    DESIGNER = "Designer"
    DEVELOPER = "Developer"
    TESTER = "Tester"
    IMPLEMENTOR = "Implementor"
    SUPPORTER = "Supporter"
    HR_SPECIALIST = "HRSpecialist"
    FINANCE_SPECIALIST = "FinanceSpecialist"
    PROCUREMENT_SPECIALIST = "ProcurementSpecialist"


DEFAULT_DESIGNATION_KEYWORDS: dict[WorkflowRole, tuple[str, ...]] = {
    WorkflowRole.APPROVER: (
        "manager",
        "head",
        "director",
        "supervisor",
        "lead",
        "chief",
        "executive",
    ),
    WorkflowRole.ANALYZER: ("analyst", "reviewer", "evaluator", "assessor", "auditor"),
    WorkflowRole.DEVELOPER: ("developer", "engineer", "programmer", "coder", "architect"),
    WorkflowRole.TESTER: ("tester", "qa", "quality", "validation", "verification"),
    WorkflowRole.DESIGNER: ("designer", "architect", "ux", "ui", "creative"),
    WorkflowRole.SUPPORTER: ("support", "maintenance", "operations", "technician"),
    WorkflowRole.IMPLEMENTOR: ("implementor", "deployment", "devops", "infrastructure"),
}

DEFAULT_DEPARTMENT_KEYWORDS: dict[WorkflowRole, tuple[str, ...]] = {
    WorkflowRole.HR_SPECIALIST: ("hr", "human"),
    WorkflowRole.FINANCE_SPECIALIST: ("finance", "accounting"),
    WorkflowRole.PROCUREMENT_SPECIALIST: ("procurement", "purchasing"),
}


def _matches(text: str, keyword: str) -> bool:
    # Short keywords ("qa", "hr", "ui") only match whole words.
    if len(keyword) <= 3:
        return re.search(rf"\b{re.escape(keyword)}\b", text) is not None
    return keyword in text


class RoleClassifier(Protocol):
    def roles_for(self, position: Position) -> set[str]: ...


@dataclass(frozen=True)
class KeywordRoleClassifier:
    """Keyword classification over designation and department names."""

    designation_keywords: Mapping[WorkflowRole, tuple[str, ...]] = field(
        default_factory=lambda: dict(DEFAULT_DESIGNATION_KEYWORDS)
    )
    department_keywords: Mapping[WorkflowRole, tuple[str, ...]] = field(
        default_factory=lambda: dict(DEFAULT_DEPARTMENT_KEYWORDS)
    )

    def roles_for(self, position: Position) -> set[str]:
        roles: set[str] = set()
        designation = position.designation.name.lower()
        for role, keywords in self.designation_keywords.items():
            if any(_matches(designation, k) for k in keywords):
                roles.add(role.value)

        group = position.group
        if group is not None and group.type is GroupType.DEPARTMENT:
            department = group.name.lower()
            for role, keywords in self.department_keywords.items():
                if any(_matches(department, k) for k in keywords):
                    roles.add(role.value)
        return roles


@dataclass(frozen=True)
class MappingRoleClassifier:
    """Explicit designation-name -> roles table, for organizations with fixed titles."""

    designations: Mapping[str, frozenset[str]]

    def roles_for(self, position: Position) -> set[str]:
        return set(self.designations.get(position.designation.name, frozenset()))


def derive_roles(positions: Iterable[Position], classifier: RoleClassifier) -> frozenset[str]:
    """Roles carried by a set of positions.

    Every authenticated actor is a Requestor, with or without positions.
    """

    roles: set[str] = {WorkflowRole.REQUESTOR.value}
    for position in positions:
        roles |= classifier.roles_for(position)
    return frozenset(roles)
