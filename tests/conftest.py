"""Test configuration and fixtures."""

from __future__ import annotations

from collections.abc import Iterator
from datetime import UTC, datetime, timedelta

import pytest

from workflow_orchestrator.core.config import EngineConfig, PersistenceConfig
from workflow_orchestrator.orchestrator.engine.collaborators import (
    InMemoryAuditSink,
    InMemoryNotificationSink,
)
from workflow_orchestrator.orchestrator.engine.engine import WorkflowEngine
from workflow_orchestrator.orchestrator.rbac.conditions import PredicateRegistry
from workflow_orchestrator.orchestrator.rbac.context import (
    InMemoryOrganizationDirectory,
    OrganizationalContextCache,
)
from workflow_orchestrator.orchestrator.rbac.models import (
    Actor,
    Designation,
    GroupType,
    OrganizationGroup,
    Position,
)
from workflow_orchestrator.orchestrator.rbac.resolver import PermissionResolver
from workflow_orchestrator.orchestrator.workflow.definitions import (
    build_expense_approval_graph,
    build_hire_graph,
    register_builtin_predicates,
)
from workflow_orchestrator.state.store import InMemoryPersistenceStore

ORG = "acme"


class FakeClock:
    """A clock that only moves when told to."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2025, 1, 1, 9, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


def _position(user_id: str, designation: str, group: str, level: int = 0) -> Position:
    return Position(
        user_id=user_id,
        organization_id=ORG,
        designation=Designation(designation, level=level),
        group=OrganizationGroup(group, GroupType.DEPARTMENT),
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def requester() -> Actor:
    return Actor("alice", username="alice", display_name="Alice Able")


@pytest.fixture
def analyst() -> Actor:
    return Actor("bob", username="bob")


@pytest.fixture
def manager() -> Actor:
    return Actor("carol", username="carol")


@pytest.fixture
def finance_manager() -> Actor:
    return Actor("dave", username="dave")


@pytest.fixture
def hr_specialist() -> Actor:
    return Actor("erin", username="erin")


@pytest.fixture
def outsider() -> Actor:
    return Actor("frank", username="frank")


@pytest.fixture
def directory(clock: FakeClock) -> InMemoryOrganizationDirectory:
    """A small organization: engineering, finance and HR."""
    return InMemoryOrganizationDirectory(
        [
            _position("alice", "Software Engineer", "Engineering"),
            _position("bob", "Business Analyst", "Engineering", level=1),
            _position("carol", "Engineering Manager", "Engineering", level=3),
            _position("dave", "Finance Manager", "Finance", level=3),
            _position("erin", "HR Generalist", "Human Resources", level=1),
            _position("frank", "Intern", "Facilities"),
        ],
        clock=clock,
    )


@pytest.fixture
def predicates() -> PredicateRegistry:
    registry = PredicateRegistry()
    register_builtin_predicates(registry)
    return registry


@pytest.fixture
def resolver(
    directory: InMemoryOrganizationDirectory, predicates: PredicateRegistry, clock: FakeClock
) -> PermissionResolver:
    contexts = OrganizationalContextCache(directory, clock=clock)
    return PermissionResolver(contexts, predicates=predicates, clock=clock)


@pytest.fixture
def engine_config() -> EngineConfig:
    return EngineConfig(
        auto_save_interval_seconds=0,
        persistence=PersistenceConfig(enabled=False),
    )


@pytest.fixture
def store() -> InMemoryPersistenceStore:
    return InMemoryPersistenceStore()


@pytest.fixture
def audit() -> InMemoryAuditSink:
    return InMemoryAuditSink()


@pytest.fixture
def notifications() -> InMemoryNotificationSink:
    return InMemoryNotificationSink()


@pytest.fixture
def engine(
    engine_config: EngineConfig,
    directory: InMemoryOrganizationDirectory,
    predicates: PredicateRegistry,
    store: InMemoryPersistenceStore,
    audit: InMemoryAuditSink,
    notifications: InMemoryNotificationSink,
    clock: FakeClock,
) -> Iterator[WorkflowEngine]:
    """A running engine with both bundled workflow types registered."""
    engine = WorkflowEngine(
        context_provider=directory,
        config=engine_config,
        persistence=store,
        audit=audit,
        notifications=notifications,
        recipients=directory,
        predicates=predicates,
        clock=clock,
    )
    engine.register_workflow_type(build_expense_approval_graph)
    engine.register_workflow_type(build_hire_graph)
    engine.start()
    yield engine
    engine.stop()


@pytest.fixture
def expense_claim() -> dict[str, object]:
    """A complete, small expense claim."""
    return {
        "total_amount": 3000,
        "business_purpose": "Customer onsite visit",
        "requester_department": "Engineering",
        "expense_items": [
            {
                "category": "Travel",
                "amount": 2950,
                "business_purpose": "Flights",
                "receipt_url": "https://receipts.example/1",
            },
            {"category": "Meals", "amount": 50, "receipt_url": "https://receipts.example/2"},
        ],
    }
