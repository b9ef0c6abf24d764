"""Unit tests for the workflow engine."""

from __future__ import annotations

import json
import threading
from collections.abc import Callable
from datetime import timedelta
from pathlib import Path
from typing import Any
from unittest.mock import Mock

import pytest

from conftest import ORG, FakeClock
from workflow_orchestrator.core.config import EngineConfig
from workflow_orchestrator.orchestrator.engine import (
    AuditEventKind,
    EngineState,
    InMemoryAuditSink,
    InMemoryNotificationSink,
    NotificationKind,
    WorkflowEngine,
    WorkflowFilter,
)
from workflow_orchestrator.orchestrator.rbac.conditions import PredicateRegistry
from workflow_orchestrator.orchestrator.rbac.context import InMemoryOrganizationDirectory
from workflow_orchestrator.orchestrator.rbac.models import Actor, OrganizationalContext
from workflow_orchestrator.orchestrator.workflow.definitions import (
    build_expense_approval_graph,
    build_hire_graph,
)
from workflow_orchestrator.orchestrator.workflow.errors import (
    DuplicateWorkflowId,
    DuplicateWorkflowType,
    EngineNotRunning,
    InstanceNotFound,
    LockConflict,
    PermissionDenied,
    ProviderUnavailable,
    UnknownWorkflowType,
    ValidationFailed,
    WorkflowTerminal,
)
from workflow_orchestrator.orchestrator.workflow.events import EventType, WorkflowEvent
from workflow_orchestrator.orchestrator.workflow.state_machine import (
    StateGraph,
    StateNode,
    Transition,
    WorkflowInstance,
)
from workflow_orchestrator.state.store import (
    InMemoryPersistenceStore,
    JsonFilePersistenceStore,
    WorkflowSnapshot,
)

EXPENSE = "ExpenseApprovalWorkflow"
HIRE = "HireWorkflow"


@pytest.fixture
def make_engine(
    engine_config: EngineConfig,
    directory: InMemoryOrganizationDirectory,
    predicates: PredicateRegistry,
    clock: FakeClock,
) -> Callable[..., WorkflowEngine]:
    """Factory for engines with replaced collaborators; the caller starts and stops them."""

    def _make(**overrides: Any) -> WorkflowEngine:
        kwargs: dict[str, Any] = {
            "context_provider": directory,
            "config": engine_config,
            "persistence": InMemoryPersistenceStore(),
            "recipients": directory,
            "predicates": predicates,
            "clock": clock,
        }
        kwargs.update(overrides)
        engine = WorkflowEngine(**kwargs)
        engine.register_workflow_type(build_expense_approval_graph)
        return engine

    return _make


def _submit(
    engine: WorkflowEngine, requester: Actor, claim: dict[str, object], workflow_id: str = "exp-1"
) -> None:
    engine.create_workflow(
        EXPENSE, workflow_id, actor=requester, organization_id=ORG, initial_context=claim
    )
    engine.execute_transition(workflow_id, "submitted", actor=requester)


def test_operations_require_a_running_engine(
    make_engine: Callable[..., WorkflowEngine], requester: Actor
) -> None:
    engine = make_engine()

    assert engine.state is EngineState.STOPPED
    with pytest.raises(EngineNotRunning):
        engine.create_workflow(EXPENSE, "exp-1", actor=requester, organization_id=ORG)

    engine.start()
    assert engine.is_running
    engine.stop()

    with pytest.raises(EngineNotRunning):
        engine.get_workflow("exp-1")
    assert engine.get_statistics().state is EngineState.STOPPED


def test_types_can_be_registered_while_stopped(
    make_engine: Callable[..., WorkflowEngine],
) -> None:
    engine = make_engine()
    engine.register_workflow_type(build_hire_graph())

    assert engine.registry.types() == [EXPENSE, HIRE]
    with pytest.raises(DuplicateWorkflowType):
        engine.register_workflow_type(build_hire_graph)


def test_start_restores_persisted_instances_and_skips_unknown_types(
    engine: WorkflowEngine,
    store: InMemoryPersistenceStore,
    make_engine: Callable[..., WorkflowEngine],
    requester: Actor,
    expense_claim: dict[str, object],
) -> None:
    _submit(engine, requester, expense_claim)
    engine.stop()
    store.save(
        WorkflowSnapshot(
            id="legacy-1",
            type="RetiredWorkflow",
            current_state="open",
            created_by="alice",
            organization_id=ORG,
        )
    )

    restarted = make_engine(persistence=store)
    restarted.start()
    try:
        instance = restarted.get_workflow("exp-1")
        assert instance.current_state == "submitted"
        assert [e.action for e in instance.history] == ["create", "submit_claim"]
        assert restarted.get_statistics().total_instances == 1
        with pytest.raises(InstanceNotFound):
            restarted.get_workflow("legacy-1")
    finally:
        restarted.stop()


def test_create_rejects_duplicate_ids_and_unknown_types(
    engine: WorkflowEngine, requester: Actor, expense_claim: dict[str, object]
) -> None:
    engine.create_workflow(
        EXPENSE, "exp-1", actor=requester, organization_id=ORG, initial_context=expense_claim
    )

    with pytest.raises(DuplicateWorkflowId):
        engine.create_workflow(EXPENSE, "exp-1", actor=requester, organization_id=ORG)
    with pytest.raises(UnknownWorkflowType):
        engine.create_workflow("TravelWorkflow", "t-1", actor=requester, organization_id=ORG)


def test_denied_create_is_audited_and_frees_the_id(
    engine: WorkflowEngine, audit: InMemoryAuditSink, requester: Actor, manager: Actor
) -> None:
    engine.register_workflow_type(
        StateGraph(
            "BudgetWorkflow",
            initial="proposed",
            states=[
                StateNode(
                    "proposed",
                    transitions=(Transition("done", "finish"),),
                    required_roles=frozenset({"Approver"}),
                ),
                StateNode("done"),
            ],
        )
    )

    with pytest.raises(PermissionDenied):
        engine.create_workflow("BudgetWorkflow", "b-1", actor=requester, organization_id=ORG)

    failures = audit.search(kind=AuditEventKind.WORKFLOW_CREATED, success=False)
    assert [e.workflow_id for e in failures] == ["b-1"]
    created = engine.create_workflow("BudgetWorkflow", "b-1", actor=manager, organization_id=ORG)
    assert created.created_by == manager.id


def test_returned_instances_are_detached(
    engine: WorkflowEngine, requester: Actor, expense_claim: dict[str, object]
) -> None:
    created = engine.create_workflow(
        EXPENSE, "exp-1", actor=requester, organization_id=ORG, initial_context=expense_claim
    )
    created.update_context({"total_amount": 1})

    assert engine.get_workflow("exp-1").context["total_amount"] == 3000


def test_current_state_is_revalidated_before_leaving(
    engine: WorkflowEngine,
    audit: InMemoryAuditSink,
    requester: Actor,
    expense_claim: dict[str, object],
) -> None:
    del expense_claim["business_purpose"]
    engine.create_workflow(
        EXPENSE, "exp-1", actor=requester, organization_id=ORG, initial_context=expense_claim
    )

    with pytest.raises(ValidationFailed) as excinfo:
        engine.execute_transition("exp-1", "submitted", actor=requester)

    assert excinfo.value.state == "draft"
    assert "Business purpose is required" in excinfo.value.messages
    assert engine.get_workflow("exp-1").current_state == "draft"
    assert engine.locks.holder("exp-1") is None
    assert audit.search(kind=AuditEventKind.VALIDATION_FAILED, workflow_id="exp-1")


def test_unknown_instance_is_reported(engine: WorkflowEngine, analyst: Actor) -> None:
    with pytest.raises(InstanceNotFound):
        engine.execute_transition("missing", "submitted", actor=analyst)


def test_update_context_is_permission_gated(
    engine: WorkflowEngine,
    requester: Actor,
    analyst: Actor,
    outsider: Actor,
    expense_claim: dict[str, object],
) -> None:
    _submit(engine, requester, expense_claim)

    with pytest.raises(PermissionDenied):
        engine.update_workflow_context("exp-1", {"note": "x"}, actor=outsider)

    updated = engine.update_workflow_context("exp-1", {"triage_note": "routine"}, actor=analyst)
    assert updated.current_state == "submitted"
    assert updated.context["triage_note"] == "routine"


def test_update_context_on_terminal_instance_is_rejected(
    engine: WorkflowEngine, requester: Actor, expense_claim: dict[str, object]
) -> None:
    engine.create_workflow(
        EXPENSE, "exp-1", actor=requester, organization_id=ORG, initial_context=expense_claim
    )
    engine.execute_transition("exp-1", "cancelled", actor=requester)

    with pytest.raises(WorkflowTerminal):
        engine.update_workflow_context("exp-1", {"note": "too late"}, actor=requester)


def test_acting_organization_defaults_to_the_workflow_organization(
    engine: WorkflowEngine, requester: Actor, analyst: Actor, expense_claim: dict[str, object]
) -> None:
    _submit(engine, requester, expense_claim)

    # No position of bob's belongs to "other", so no Analyzer role applies there.
    with pytest.raises(PermissionDenied):
        engine.execute_transition(
            "exp-1", "manager_review", actor=analyst, organization_id="other"
        )
    moved = engine.execute_transition("exp-1", "manager_review", actor=analyst)
    assert moved.current_state == "manager_review"


def test_user_workflows_cover_creators_and_actors(
    engine: WorkflowEngine,
    clock: FakeClock,
    requester: Actor,
    analyst: Actor,
    outsider: Actor,
    expense_claim: dict[str, object],
) -> None:
    _submit(engine, requester, expense_claim, "exp-1")
    clock.advance(minutes=5)
    _submit(engine, requester, expense_claim, "exp-2")

    mine = engine.get_user_workflows(requester)
    assert [w.summary.id for w in mine] == ["exp-2", "exp-1"]
    assert all(w.is_creator and not w.can_act for w in mine)
    assert all(w.available_transitions == () for w in mine)

    theirs = engine.get_user_workflows(analyst)
    assert {w.summary.id for w in theirs} == {"exp-1", "exp-2"}
    assert [t.target for t in theirs[0].available_transitions] == ["manager_review", "draft"]
    assert theirs[1].summary.time_in_current_state.total_seconds() == 300

    assert engine.get_user_workflows(outsider) == []
    only_first = engine.get_user_workflows(
        analyst, criteria=WorkflowFilter(created_before=clock.now - timedelta(minutes=4))
    )
    assert [w.summary.id for w in only_first] == ["exp-1"]


def test_find_workflows_and_statistics(
    engine: WorkflowEngine, requester: Actor, expense_claim: dict[str, object]
) -> None:
    _submit(engine, requester, expense_claim, "exp-1")
    engine.create_workflow(
        EXPENSE, "exp-2", actor=requester, organization_id=ORG, initial_context=expense_claim
    )
    engine.execute_transition("exp-2", "cancelled", actor=requester)
    engine.create_workflow(
        HIRE,
        "hire-1",
        actor=requester,
        organization_id=ORG,
        initial_context={"job_title": "SRE", "department": "Engineering", "position_count": 1},
    )

    submitted = engine.find_workflows(WorkflowFilter(type=EXPENSE, state="submitted"))
    assert [i.id for i in submitted] == ["exp-1"]
    assert len(engine.find_workflows(WorkflowFilter(created_by="nobody"))) == 0

    stats = engine.get_statistics()
    assert stats.total_instances == 3
    assert stats.by_type == {EXPENSE: 2, HIRE: 1}
    assert stats.by_state[EXPENSE] == {"submitted": 1, "cancelled": 1}
    assert (stats.active, stats.completed) == (2, 1)
    assert stats.registered_types == (EXPENSE, HIRE)
    assert stats.held_locks == 0
    assert stats.side_effect_failures == 0


def test_audit_redacts_sensitive_context(
    engine: WorkflowEngine,
    audit: InMemoryAuditSink,
    requester: Actor,
    expense_claim: dict[str, object],
) -> None:
    expense_claim["bank_details"] = {"iban": "DE00", "token": "tok-123"}
    engine.create_workflow(
        EXPENSE, "exp-1", actor=requester, organization_id=ORG, initial_context=expense_claim
    )

    (created,) = audit.search(kind=AuditEventKind.WORKFLOW_CREATED, workflow_id="exp-1")
    assert created.details["initial_context"]["bank_details"] == {
        "iban": "DE00",
        "token": "[REDACTED]",
    }
    assert audit.search(kind=AuditEventKind.PERMISSION_CHECKED, workflow_id="exp-1")
    # The instance itself keeps the real value.
    assert engine.get_workflow("exp-1").context["bank_details"]["token"] == "tok-123"


def test_notifications_go_to_role_holders_and_creator(
    engine: WorkflowEngine,
    notifications: InMemoryNotificationSink,
    requester: Actor,
    analyst: Actor,
    expense_claim: dict[str, object],
) -> None:
    _submit(engine, requester, expense_claim)

    (submitted,) = notifications.sent
    assert submitted.kind is NotificationKind.ACTION_REQUIRED
    assert submitted.recipients == ["bob", "erin"]

    engine.execute_transition("exp-1", "manager_review", actor=analyst)
    kinds = {n.kind: n.recipients for n in notifications.sent[1:]}
    assert kinds == {
        NotificationKind.ACTION_REQUIRED: ["carol", "dave"],
        NotificationKind.WORKFLOW_STATE_CHANGED: ["alice"],
    }


def test_completion_notifies_the_creator(
    engine: WorkflowEngine,
    notifications: InMemoryNotificationSink,
    requester: Actor,
    expense_claim: dict[str, object],
) -> None:
    engine.create_workflow(
        EXPENSE, "exp-1", actor=requester, organization_id=ORG, initial_context=expense_claim
    )
    engine.execute_transition("exp-1", "cancelled", actor=requester)

    (completed,) = notifications.for_recipient("alice")
    assert completed.kind is NotificationKind.WORKFLOW_COMPLETED
    assert completed.data["to_state"] == "cancelled"


def test_events_are_emitted_until_subscription_closes(
    engine: WorkflowEngine, requester: Actor, expense_claim: dict[str, object]
) -> None:
    seen: list[WorkflowEvent] = []
    subscription = engine.events.subscribe(seen.append, types=[EventType.STATE_CHANGED])

    _submit(engine, requester, expense_claim, "exp-1")
    subscription.close()
    _submit(engine, requester, expense_claim, "exp-2")

    assert [e.payload["workflow_id"] for e in seen] == ["exp-1"]
    assert seen[0].payload["to_state"] == "submitted"
    assert seen[0].payload["persisted"] is True
    assert subscription.closed


def test_failing_side_channels_do_not_fail_operations(
    make_engine: Callable[..., WorkflowEngine],
    requester: Actor,
    expense_claim: dict[str, object],
) -> None:
    audit = Mock()
    audit.record.side_effect = RuntimeError("audit store down")
    notifications = Mock()
    notifications.notify.side_effect = RuntimeError("mailer down")
    engine = make_engine(audit=audit, notifications=notifications)
    engine.start()
    engine.events.subscribe(Mock(side_effect=ValueError("bad listener")))
    try:
        _submit(engine, requester, expense_claim)

        assert engine.get_workflow("exp-1").current_state == "submitted"
        assert notifications.notify.called
        assert engine.get_statistics().side_effect_failures >= 3
    finally:
        engine.stop()


def test_persistence_failure_keeps_instance_dirty_until_auto_save(
    make_engine: Callable[..., WorkflowEngine],
    requester: Actor,
    expense_claim: dict[str, object],
) -> None:
    store = Mock()
    store.load_all.return_value = []
    store.save.side_effect = OSError("disk full")
    engine = make_engine(persistence=store)
    engine.start()
    created: list[WorkflowEvent] = []
    engine.events.subscribe(created.append, types=[EventType.WORKFLOW_CREATED])
    try:
        engine.create_workflow(
            EXPENSE, "exp-1", actor=requester, organization_id=ORG, initial_context=expense_claim
        )

        assert created[0].payload["persisted"] is False
        assert engine.get_workflow("exp-1").is_dirty
        assert engine.get_statistics().side_effect_failures == 1

        store.save.side_effect = None
        assert engine.auto_save() == 1
        assert engine.auto_save() == 0
        assert not engine.get_workflow("exp-1").is_dirty
    finally:
        engine.stop()


class _GatedStore(InMemoryPersistenceStore):
    """Blocks the next save after :meth:`arm` until the test opens the gate."""

    def __init__(self) -> None:
        super().__init__()
        self.entered = threading.Event()
        self.gate = threading.Event()
        self._armed = False

    def arm(self) -> None:
        self._armed = True

    def save(self, snapshot: WorkflowSnapshot) -> None:
        if self._armed:
            self._armed = False
            self.entered.set()
            self.gate.wait(timeout=5)
        super().save(snapshot)


class _SwitchableProvider:
    def __init__(self, directory: InMemoryOrganizationDirectory) -> None:
        self._directory = directory
        self.available = True

    def get_context(self, user_id: str, organization_id: str) -> OrganizationalContext:
        if not self.available:
            raise ProviderUnavailable("directory offline")
        return self._directory.get_context(user_id, organization_id)


def _open_graph() -> StateGraph:
    return StateGraph(
        "OpenWorkflow",
        initial="open",
        states=[StateNode("open", transitions=(Transition("done", "finish"),)), StateNode("done")],
    )


def test_malformed_snapshot_does_not_block_start(
    make_engine: Callable[..., WorkflowEngine],
    tmp_path: Path,
    requester: Actor,
    expense_claim: dict[str, object],
) -> None:
    path = tmp_path / "instances.json"
    first = make_engine(persistence=JsonFilePersistenceStore(path))
    first.start()
    _submit(first, requester, expense_claim)
    first.stop()
    items = json.loads(path.read_text(encoding="utf-8"))
    items.append({"id": "broken"})
    path.write_text(json.dumps(items), encoding="utf-8")

    restarted = make_engine(persistence=JsonFilePersistenceStore(path))
    restarted.start()
    try:
        assert restarted.is_running
        assert restarted.get_workflow("exp-1").current_state == "submitted"
        assert restarted.get_statistics().total_instances == 1
    finally:
        restarted.stop()


def test_operations_need_an_organizational_context(
    make_engine: Callable[..., WorkflowEngine],
    directory: InMemoryOrganizationDirectory,
    clock: FakeClock,
    requester: Actor,
) -> None:
    provider = _SwitchableProvider(directory)
    engine = make_engine(context_provider=provider)
    engine.register_workflow_type(_open_graph)
    engine.start()
    try:
        provider.available = False
        with pytest.raises(ProviderUnavailable):
            engine.create_workflow("OpenWorkflow", "open-1", actor=requester, organization_id=ORG)
        with pytest.raises(InstanceNotFound):
            engine.get_workflow("open-1")

        provider.available = True
        engine.create_workflow("OpenWorkflow", "open-1", actor=requester, organization_id=ORG)

        provider.available = False
        clock.advance(minutes=11)
        with pytest.raises(ProviderUnavailable):
            engine.execute_transition("open-1", "done", actor=requester)
        assert engine.get_workflow("open-1").current_state == "open"
        assert engine.locks.holder("open-1") is None
    finally:
        engine.stop()


def test_concurrent_transition_is_refused_while_one_is_in_flight(
    make_engine: Callable[..., WorkflowEngine],
    requester: Actor,
    analyst: Actor,
    hr_specialist: Actor,
    expense_claim: dict[str, object],
) -> None:
    store = _GatedStore()
    engine = make_engine(persistence=store)
    engine.start()
    outcome: list[object] = []
    try:
        _submit(engine, requester, expense_claim)
        store.arm()

        def route() -> None:
            try:
                outcome.append(engine.execute_transition("exp-1", "manager_review", actor=analyst))
            except Exception as e:
                outcome.append(e)

        worker = threading.Thread(target=route)
        worker.start()
        assert store.entered.wait(timeout=5)

        with pytest.raises(LockConflict) as excinfo:
            engine.execute_transition("exp-1", "manager_review", actor=hr_specialist)
        assert excinfo.value.holder_id == analyst.id

        store.gate.set()
        worker.join(timeout=5)
        (result,) = outcome
        assert isinstance(result, WorkflowInstance)
        assert result.current_state == "manager_review"
        assert engine.locks.holder("exp-1") is None
    finally:
        store.gate.set()
        engine.stop()


def test_auto_save_runs_alongside_context_updates(
    make_engine: Callable[..., WorkflowEngine],
    requester: Actor,
    expense_claim: dict[str, object],
) -> None:
    store = InMemoryPersistenceStore()
    engine = make_engine(persistence=store)
    engine.start()
    errors: list[Exception] = []
    try:
        engine.create_workflow(
            EXPENSE, "exp-1", actor=requester, organization_id=ORG, initial_context=expense_claim
        )

        def update() -> None:
            try:
                for n in range(200):
                    engine.update_workflow_context("exp-1", {f"note_{n}": n}, actor=requester)
            except Exception as e:
                errors.append(e)

        def sweep() -> None:
            try:
                for _ in range(200):
                    engine.auto_save()
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=update), threading.Thread(target=sweep)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=30)

        assert errors == []
        engine.auto_save()
        (saved,) = store.load_all()
        live = engine.get_workflow("exp-1")
        assert saved.context == live.context
        assert saved.context["note_199"] == 199
        assert not live.is_dirty
    finally:
        engine.stop()
