"""Organizational structure as seen by the permission resolver.

These are plain value objects built by an external provider. The runtime only
reads them: a user's positions, the group (department or team) and
designation each position binds, and the summaries derived from them.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum

_LEVEL_DESCRIPTIONS: dict[int, str] = {
    0: "Individual Contributor",
    1: "Senior Individual Contributor",
    2: "Team Lead",
    3: "Manager",
    4: "Senior Manager",
    5: "Director",
    6: "Senior Director",
    7: "Vice President",
    8: "Senior Vice President",
    9: "Executive Vice President",
    10: "C-Level Executive",
}


class GroupType(str, Enum):
    DEPARTMENT = "department"
    TEAM = "team"


@dataclass(frozen=True, slots=True)
class Actor:
    """The authenticated principal invoking an operation."""

    id: str
    username: str = ""
    display_name: str = ""

    @property
    def name(self) -> str:
        return self.display_name or self.username or self.id


@dataclass(frozen=True, slots=True)
class OrganizationGroup:
    name: str
    type: GroupType
    id: str | None = None
    parent: str | None = None

    @property
    def full_path(self) -> str:
        return f"{self.parent} > {self.name}" if self.parent else self.name


@dataclass(frozen=True, slots=True)
class Designation:
    name: str
    level: int = 0
    permissions: frozenset[str] = frozenset()

    def has_permission(self, permission: str) -> bool:
        return permission in self.permissions

    def level_description(self) -> str:
        return _LEVEL_DESCRIPTIONS.get(self.level, f"Level {self.level}")


@dataclass(frozen=True, slots=True)
class Position:
    """Binds a user to a designation within a group of one organization."""

    user_id: str
    organization_id: str
    designation: Designation
    group: OrganizationGroup | None = None
    id: str | None = None
    is_active: bool = True
    start_date: datetime | None = None
    end_date: datetime | None = None

    def is_currently_active(self, now: datetime | None = None) -> bool:
        now = now or datetime.now(tz=UTC)
        if not self.is_active:
            return False
        if self.start_date is not None and self.start_date > now:
            return False
        return self.end_date is None or self.end_date >= now

    @property
    def full_title(self) -> str:
        group_name = self.group.name if self.group else "Unknown Group"
        return f"{self.designation.name} - {group_name}"


@dataclass(frozen=True, slots=True)
class HierarchySummary:
    """Where the user sits in the organization.

    ``level`` is the highest designation level held; ``top_positions`` are the
    positions held at that level and ``other_positions`` the remainder.
    """

    level: int = 0
    top_positions: tuple[Position, ...] = ()
    other_positions: tuple[Position, ...] = ()


@dataclass(frozen=True, slots=True)
class OrganizationalContext:
    """Snapshot of a user's standing within one organization."""

    user_id: str
    organization_id: str
    positions: tuple[Position, ...] = ()
    hierarchy: HierarchySummary = field(default_factory=HierarchySummary)
    permissions: frozenset[str] = frozenset()

    @classmethod
    def build(
        cls,
        user_id: str,
        organization_id: str,
        positions: Iterable[Position],
        *,
        now: datetime | None = None,
    ) -> OrganizationalContext:
        active = tuple(
            p
            for p in positions
            if p.organization_id == organization_id and p.is_currently_active(now)
        )
        level = max((p.designation.level for p in active), default=0)
        hierarchy = HierarchySummary(
            level=level,
            top_positions=tuple(p for p in active if p.designation.level == level),
            other_positions=tuple(p for p in active if p.designation.level != level),
        )
        permissions = frozenset(perm for p in active for perm in p.designation.permissions)
        return cls(
            user_id=user_id,
            organization_id=organization_id,
            positions=active,
            hierarchy=hierarchy,
            permissions=permissions,
        )

    def groups(self) -> list[OrganizationGroup]:
        return [p.group for p in self.positions if p.group is not None]

    def designation_names(self) -> set[str]:
        return {p.designation.name for p in self.positions}
