"""Organizational context resolution and caching."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Protocol

from workflow_orchestrator.orchestrator.rbac.models import OrganizationalContext, Position
from workflow_orchestrator.orchestrator.rbac.roles import (
    KeywordRoleClassifier,
    RoleClassifier,
    derive_roles,
)
from workflow_orchestrator.orchestrator.workflow.errors import ProviderUnavailable

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


class OrganizationalContextProvider(Protocol):
    """External source of a user's positions within an organization.

    Implementations may raise :class:`ProviderUnavailable`.
    """

    def get_context(self, user_id: str, organization_id: str) -> OrganizationalContext: ...


class RecipientDirectory(Protocol):
    """Resolves which users currently hold a workflow role."""

    def users_with_role(self, role: str, organization_id: str) -> list[str]: ...


@dataclass(frozen=True, slots=True)
class _CachedContext:
    context: OrganizationalContext
    cached_at: datetime


class OrganizationalContextCache:
    """Caches provider results per (user, organization) for a fixed expiry.

    Any provider failure is reported as :class:`ProviderUnavailable` so callers
    fail closed.
    """

    def __init__(
        self,
        provider: OrganizationalContextProvider,
        *,
        ttl: timedelta = timedelta(minutes=10),
        clock: Clock = utc_now,
    ) -> None:
        self._provider = provider
        self._ttl = ttl
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: dict[tuple[str, str], _CachedContext] = {}

    def get_context(self, user_id: str, organization_id: str) -> OrganizationalContext:
        key = (user_id, organization_id)
        now = self._clock()
        with self._lock:
            cached = self._entries.get(key)
            if cached is not None and now - cached.cached_at < self._ttl:
                return cached.context
            self._entries.pop(key, None)

        try:
            context = self._provider.get_context(user_id, organization_id)
        except ProviderUnavailable:
            raise
        except Exception as e:
            raise ProviderUnavailable(
                f"Organizational context unavailable for user {user_id!r} "
                f"in organization {organization_id!r}: {e}"
            ) from e

        with self._lock:
            self._entries[key] = _CachedContext(context=context, cached_at=now)
        return context

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def clear_expired(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [k for k, v in self._entries.items() if now - v.cached_at >= self._ttl]
            for key in expired:
                del self._entries[key]
        return len(expired)

    def stats(self) -> dict[str, object]:
        with self._lock:
            return {"size": len(self._entries), "ttl_seconds": self._ttl.total_seconds()}


class InMemoryOrganizationDirectory:
    """In-process organization directory.

    Serves as both the context provider and the recipient directory for
    single-process deployments and tests.
    """

    def __init__(
        self,
        positions: Iterable[Position] = (),
        *,
        classifier: RoleClassifier | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self._lock = threading.Lock()
        self._positions: list[Position] = list(positions)
        self._classifier = classifier or KeywordRoleClassifier()
        self._clock = clock
        self.calls = 0

    def add_position(self, position: Position) -> None:
        with self._lock:
            self._positions.append(position)

    def remove_positions(self, user_id: str, organization_id: str) -> int:
        with self._lock:
            before = len(self._positions)
            self._positions = [
                p
                for p in self._positions
                if not (p.user_id == user_id and p.organization_id == organization_id)
            ]
            return before - len(self._positions)

    def get_context(self, user_id: str, organization_id: str) -> OrganizationalContext:
        with self._lock:
            self.calls += 1
        return self._build(user_id, organization_id)

    def _build(self, user_id: str, organization_id: str) -> OrganizationalContext:
        with self._lock:
            positions = [p for p in self._positions if p.user_id == user_id]
        return OrganizationalContext.build(user_id, organization_id, positions, now=self._clock())

    def users_with_role(self, role: str, organization_id: str) -> list[str]:
        with self._lock:
            user_ids = sorted(
                {p.user_id for p in self._positions if p.organization_id == organization_id}
            )
        users: list[str] = []
        for user_id in user_ids:
            context = self._build(user_id, organization_id)
            if role in derive_roles(context.positions, self._classifier):
                users.append(user_id)
        return users
