"""Expense claim approval.

Small claims go to the requester's department manager, large ones straight
to finance. Approved claims are paid by the finance team.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from workflow_orchestrator.orchestrator.rbac.conditions import (
    CustomPredicate,
    GroupRequirement,
    permission,
)
from workflow_orchestrator.orchestrator.rbac.models import GroupType
from workflow_orchestrator.orchestrator.rbac.roles import WorkflowRole
from workflow_orchestrator.orchestrator.workflow.definitions.common import (
    MANAGER_OF_REQUESTER_DEPARTMENT,
    reference,
    timestamp,
)
from workflow_orchestrator.orchestrator.workflow.predicates import (
    AllOf,
    AnyOf,
    FieldCompare,
    FieldPresent,
    Operator,
    Require,
    Rule,
)
from workflow_orchestrator.orchestrator.workflow.state_machine import (
    Hook,
    HookEvent,
    StateGraph,
    StateNode,
    Transition,
)

logger = logging.getLogger(__name__)

WORKFLOW_TYPE = "ExpenseApprovalWorkflow"

# Claims at or above this amount skip the manager and go to finance.
FINANCE_REVIEW_THRESHOLD = 5000
RECEIPT_THRESHOLD = 25
BUDGET_LIMIT = 10000


def _roles(*roles: WorkflowRole) -> frozenset[str]:
    return frozenset(r.value for r in roles)


def _items(context: Mapping[str, object]) -> list[Mapping[str, Any]]:
    items = context.get("expense_items") or []
    return [i for i in items if isinstance(i, Mapping)] if isinstance(items, list) else []


def check_receipts(context: Mapping[str, object]) -> str | None:
    missing = [
        i
        for i in _items(context)
        if i.get("amount", 0) > RECEIPT_THRESHOLD and not i.get("receipt_url")
    ]
    if missing:
        return f"Receipts required for expenses over ${RECEIPT_THRESHOLD}"
    return None


def check_budget(context: Mapping[str, object]) -> str | None:
    total = context.get("total_amount") or 0
    return None if total <= BUDGET_LIMIT else "Amount exceeds available budget"


def check_policy(context: Mapping[str, object]) -> str | None:
    violations: list[str] = []
    for item in _items(context):
        category = item.get("category")
        amount = item.get("amount", 0)
        if category == "Meals" and amount > 100:
            violations.append(f"Meal expense of ${amount} exceeds policy limit of $100")
        if category == "Travel" and not item.get("business_purpose"):
            violations.append("Travel expenses require business purpose")
        if category == "Entertainment" and amount > 500:
            violations.append(f"Entertainment expense of ${amount} requires special approval")
    return "; ".join(violations) or None


def expense_summary(context: Mapping[str, object]) -> dict[str, dict[str, float]]:
    """Item count and total per expense category."""

    summary: dict[str, dict[str, float]] = {}
    for item in _items(context):
        bucket = summary.setdefault(str(item.get("category", "Other")), {"count": 0, "total": 0})
        bucket["count"] += 1
        bucket["total"] += float(item.get("amount", 0))
    return summary


def _stamp(key: str, message: str) -> Hook:
    def _hook(context: dict[str, Any], event: HookEvent) -> None:
        context[key] = timestamp(event.now)
        logger.info(message, extra={"submission_number": context.get("submission_number")})

    return _hook


def _enter_draft(context: dict[str, Any], event: HookEvent) -> None:
    context.setdefault("expense_items", [])


def _enter_submitted(context: dict[str, Any], event: HookEvent) -> None:
    context["submitted_at"] = timestamp(event.now)
    context["submission_number"] = reference("EXP", event.now, 6)
    logger.info(
        "Expense claim submitted", extra={"submission_number": context["submission_number"]}
    )


def _enter_approved(context: dict[str, Any], event: HookEvent) -> None:
    context["approved_at"] = timestamp(event.now)
    context["approval_number"] = reference("APP", event.now)


def _enter_paid(context: dict[str, Any], event: HookEvent) -> None:
    context["paid_at"] = timestamp(event.now)
    context["payment_reference"] = reference("PAY", event.now, 10)
    logger.info("Expense claim paid", extra={"payment_reference": context["payment_reference"]})


def build_expense_approval_graph() -> StateGraph:
    requestor = _roles(WorkflowRole.REQUESTOR)
    finance = _roles(WorkflowRole.FINANCE_SPECIALIST)
    states = [
        StateNode(
            "draft",
            description="Claim being prepared by the requester",
            transitions=(
                Transition("submitted", "submit_claim", "Submit Expense Claim"),
                Transition("cancelled", "cancel", "Cancel Claim"),
            ),
            required_roles=requestor,
            validations=(
                Require(
                    FieldCompare("total_amount", Operator.GREATER_THAN, 0),
                    "Total amount must be greater than 0",
                ),
                Require(FieldPresent("expense_items"), "At least one expense item is required"),
                Require(FieldPresent("business_purpose"), "Business purpose is required"),
                Rule("receipts_attached", check_receipts),
            ),
            on_enter=_enter_draft,
        ),
        StateNode(
            "submitted",
            description="Awaiting routing by an analyst",
            transitions=(
                Transition(
                    "manager_review",
                    "send_to_manager",
                    "Send to Manager Review",
                    guards=(
                        FieldCompare("total_amount", Operator.LESS_THAN, FINANCE_REVIEW_THRESHOLD),
                    ),
                ),
                Transition(
                    "finance_review",
                    "send_to_finance",
                    "Send to Finance Review",
                    guards=(
                        FieldCompare(
                            "total_amount", Operator.GREATER_EQUAL, FINANCE_REVIEW_THRESHOLD
                        ),
                    ),
                ),
                Transition("draft", "return_to_draft", "Return to Draft"),
            ),
            required_roles=_roles(WorkflowRole.ANALYZER, WorkflowRole.HR_SPECIALIST),
            on_enter=_enter_submitted,
        ),
        StateNode(
            "manager_review",
            description="Requester's department manager reviews the claim",
            transitions=(
                Transition(
                    "finance_review",
                    "approve_manager",
                    "Approve (Manager)",
                    guards=(FieldPresent("manager_approval"), FieldPresent("manager_comments")),
                ),
                Transition(
                    "rejected",
                    "reject_manager",
                    "Reject (Manager)",
                    guards=(FieldPresent("rejection_reason"),),
                ),
                Transition("submitted", "return_to_submitted", "Return for Review"),
            ),
            required_roles=_roles(WorkflowRole.APPROVER),
            permission=permission(conditions=[CustomPredicate(MANAGER_OF_REQUESTER_DEPARTMENT)]),
        ),
        StateNode(
            "finance_review",
            description="Finance team checks budget and policy",
            transitions=(
                Transition(
                    "approved",
                    "approve_finance",
                    "Approve (Finance)",
                    guards=(
                        FieldPresent("finance_approval"),
                        AllOf(
                            (
                                FieldPresent("budget_code"),
                                FieldPresent("cost_center"),
                                FieldPresent("gl_account"),
                            )
                        ),
                    ),
                ),
                Transition(
                    "rejected",
                    "reject_finance",
                    "Reject (Finance)",
                    guards=(FieldPresent("rejection_reason"),),
                ),
                Transition("manager_review", "return_to_manager", "Return to Manager"),
            ),
            required_roles=_roles(WorkflowRole.FINANCE_SPECIALIST, WorkflowRole.APPROVER),
            permission=permission(
                groups=[
                    GroupRequirement("Finance", GroupType.DEPARTMENT),
                    GroupRequirement("Accounting", GroupType.DEPARTMENT),
                ],
                designations=["Finance Manager", "Accountant", "Finance Specialist", "CFO"],
            ),
            validations=(
                Rule("budget_available", check_budget),
                Rule("policy_compliance", check_policy),
            ),
        ),
        StateNode(
            "approved",
            description="Approved and waiting for payment",
            transitions=(Transition("payment_processing", "process_payment", "Process Payment"),),
            required_roles=finance,
            on_enter=_enter_approved,
        ),
        StateNode(
            "payment_processing",
            transitions=(
                Transition("paid", "confirm_payment", "Confirm Payment"),
                Transition("payment_failed", "payment_failed", "Payment Failed"),
            ),
            required_roles=finance,
            validations=(
                Require(FieldPresent("payment_method"), "Payment method must be specified"),
                Require(
                    AnyOf(
                        (
                            FieldPresent("bank_details"),
                            FieldCompare("payment_method", Operator.EQUALS, "check"),
                        )
                    ),
                    "Bank details required for electronic payment",
                ),
            ),
            on_enter=_stamp("payment_initiated_at", "Payment processing initiated"),
        ),
        StateNode("paid", description="Payment completed", on_enter=_enter_paid),
        StateNode(
            "payment_failed",
            transitions=(
                Transition("payment_processing", "retry_payment", "Retry Payment"),
                Transition("approved", "update_payment_details", "Update Payment Details"),
            ),
            required_roles=finance,
            on_enter=_stamp("payment_failed_at", "Payment failed"),
        ),
        StateNode(
            "rejected",
            transitions=(Transition("draft", "revise_and_resubmit", "Revise and Resubmit"),),
            required_roles=requestor,
            on_enter=_stamp("rejected_at", "Expense claim rejected"),
        ),
        StateNode(
            "cancelled",
            description="Withdrawn by the requester",
            on_enter=_stamp("cancelled_at", "Expense claim cancelled"),
        ),
    ]
    return StateGraph(
        WORKFLOW_TYPE,
        initial="draft",
        states=states,
        description="Expense claim and reimbursement approval",
    )
