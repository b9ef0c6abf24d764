#!/usr/bin/env python3
"""Programmatic expense approval example.

This demonstrates using the engine directly:

* describe a small organization in an in-memory directory
* register the bundled expense approval workflow
* walk one claim from draft to paid, printing each step

Snapshots are written to the path given by `--state-file`.
"""

from __future__ import annotations

import argparse
from collections.abc import Sequence
from pathlib import Path

from workflow_orchestrator.core.config import EngineConfig, PersistenceConfig
from workflow_orchestrator.orchestrator.engine import (
    InMemoryNotificationSink,
    LoggingAuditSink,
    WorkflowEngine,
)
from workflow_orchestrator.orchestrator.rbac.conditions import PredicateRegistry
from workflow_orchestrator.orchestrator.rbac.context import InMemoryOrganizationDirectory
from workflow_orchestrator.orchestrator.rbac.models import (
    Actor,
    Designation,
    GroupType,
    OrganizationGroup,
    Position,
)
from workflow_orchestrator.orchestrator.workflow.definitions import (
    build_expense_approval_graph,
    register_builtin_predicates,
)
from workflow_orchestrator.orchestrator.workflow.errors import WorkflowError

ORG = "example-org"


def _parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run one expense claim end to end.")
    parser.add_argument("--amount", type=float, default=1200.0, help="Claim total")
    parser.add_argument(
        "--state-file",
        type=Path,
        default=Path(".workflow_state/example.json"),
        help="Where instance snapshots are persisted",
    )
    return parser.parse_args(argv)


def _position(user_id: str, title: str, department: str, level: int) -> Position:
    return Position(
        user_id=user_id,
        organization_id=ORG,
        designation=Designation(title, level=level),
        group=OrganizationGroup(department, GroupType.DEPARTMENT),
    )


def main(argv: Sequence[str] | None = None) -> int:
    args = _parse_args(argv)

    config = EngineConfig(
        auto_save_interval_seconds=0,
        persistence=PersistenceConfig(storage_path=args.state_file),
    )
    config.setup_logging()

    directory = InMemoryOrganizationDirectory(
        [
            _position("ana", "Software Engineer", "Engineering", 0),
            _position("ben", "Business Analyst", "Engineering", 1),
            _position("cho", "Engineering Manager", "Engineering", 3),
            _position("dan", "Finance Manager", "Finance", 3),
        ]
    )
    predicates = PredicateRegistry()
    register_builtin_predicates(predicates)

    notifications = InMemoryNotificationSink()
    engine = WorkflowEngine(
        context_provider=directory,
        config=config,
        audit=LoggingAuditSink(),
        notifications=notifications,
        recipients=directory,
        predicates=predicates,
    )
    engine.register_workflow_type(build_expense_approval_graph)
    engine.start()

    requester, analyst, manager, finance = (Actor(u) for u in ("ana", "ben", "cho", "dan"))
    claim_id = "expense-demo-1"
    try:
        engine.create_workflow(
            "ExpenseApprovalWorkflow",
            claim_id,
            actor=requester,
            organization_id=ORG,
            initial_context={
                "total_amount": args.amount,
                "business_purpose": "Conference travel",
                "requester_department": "Engineering",
                "expense_items": [
                    {
                        "category": "Travel",
                        "amount": args.amount,
                        "business_purpose": "Conference travel",
                        "receipt_url": "https://receipts.example/demo",
                    }
                ],
            },
        )
        steps = [
            (requester, "submitted", {}),
            (analyst, "manager_review" if args.amount < 5000 else "finance_review", {}),
        ]
        if args.amount < 5000:
            steps.append(
                (manager, "finance_review", {"manager_approval": True, "manager_comments": "ok"})
            )
        steps += [
            (
                finance,
                "approved",
                {
                    "finance_approval": True,
                    "budget_code": "TRV-01",
                    "cost_center": "ENG",
                    "gl_account": "6100",
                },
            ),
            (finance, "payment_processing", {"payment_method": "check"}),
            (finance, "paid", {}),
        ]
        for actor, target, updates in steps:
            if updates:
                engine.update_workflow_context(claim_id, updates, actor=actor)
            instance = engine.execute_transition(claim_id, target, actor=actor)
            print(f"{actor.id:>4} -> {instance.current_state}")
    except WorkflowError as exc:
        print(f"Stopped: {exc}")
        return 1
    finally:
        engine.stop()

    print(f"Notifications sent: {len(notifications.sent)}")
    print(f"Persisted to: {args.state_file}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
