"""Job requisition through to a completed hire."""

from __future__ import annotations

from typing import Any

from workflow_orchestrator.orchestrator.rbac.conditions import (
    CustomPredicate,
    GroupRequirement,
    permission,
)
from workflow_orchestrator.orchestrator.rbac.models import GroupType
from workflow_orchestrator.orchestrator.rbac.roles import WorkflowRole
from workflow_orchestrator.orchestrator.workflow.definitions.common import (
    MANAGER_OF_WORKFLOW_DEPARTMENT,
    reference,
    timestamp,
)
from workflow_orchestrator.orchestrator.workflow.predicates import (
    FieldCompare,
    FieldPresent,
    Operator,
    Require,
)
from workflow_orchestrator.orchestrator.workflow.state_machine import (
    HookEvent,
    StateGraph,
    StateNode,
    Transition,
)

WORKFLOW_TYPE = "HireWorkflow"

ONBOARDING_CHECKLIST = (
    "documents_collected",
    "workspace_assigned",
    "systems_access_granted",
    "orientation_completed",
)

_HIRING_DEPARTMENT = GroupRequirement(type=GroupType.DEPARTMENT, context_path="department")


def _roles(*roles: WorkflowRole) -> frozenset[str]:
    return frozenset(r.value for r in roles)


def _enter_draft(context: dict[str, Any], event: HookEvent) -> None:
    context.setdefault("requisition_number", reference("REQ", event.now, 6))


def _enter_approved(context: dict[str, Any], event: HookEvent) -> None:
    context["approved_at"] = timestamp(event.now)


def _enter_screening(context: dict[str, Any], event: HookEvent) -> None:
    context.setdefault("screened_candidates", [])


def _enter_interviewing(context: dict[str, Any], event: HookEvent) -> None:
    context.setdefault("interview_results", [])


def _enter_offer_sent(context: dict[str, Any], event: HookEvent) -> None:
    context["offer_sent_at"] = timestamp(event.now)


def _enter_offer_accepted(context: dict[str, Any], event: HookEvent) -> None:
    context["offer_accepted_at"] = timestamp(event.now)


def _enter_onboarding(context: dict[str, Any], event: HookEvent) -> None:
    checklist = {item: False for item in ONBOARDING_CHECKLIST}
    checklist["completed"] = False
    context.setdefault("onboarding_checklist", checklist)


def _enter_completed(context: dict[str, Any], event: HookEvent) -> None:
    context["completed_at"] = timestamp(event.now)


def _cancel(label: str = "Cancel") -> Transition:
    return Transition("cancelled", "cancel", label)


def build_hire_graph() -> StateGraph:
    hr = _roles(WorkflowRole.HR_SPECIALIST)
    states = [
        StateNode(
            "draft",
            description="Requisition being drafted",
            transitions=(
                Transition("pending_approval", "submit_for_approval", "Submit for Approval"),
                _cancel("Cancel Requisition"),
            ),
            required_roles=_roles(WorkflowRole.REQUESTOR),
            validations=(
                Require(FieldPresent("job_title"), "Job title is required"),
                Require(FieldPresent("department"), "Department is required"),
                Require(
                    FieldCompare("position_count", Operator.GREATER_THAN, 0),
                    "Position count must be greater than 0",
                ),
            ),
            on_enter=_enter_draft,
        ),
        StateNode(
            "pending_approval",
            description="Hiring department manager approves the requisition",
            transitions=(
                Transition(
                    "approved",
                    "approve_requisition",
                    "Approve Requisition",
                    guards=(FieldPresent("approved_by"), FieldPresent("approval_comments")),
                ),
                Transition(
                    "rejected",
                    "reject_requisition",
                    "Reject Requisition",
                    guards=(FieldPresent("rejection_reason"),),
                ),
                Transition("draft", "return_to_draft", "Return to Draft"),
            ),
            required_roles=_roles(WorkflowRole.APPROVER, WorkflowRole.HR_SPECIALIST),
            permission=permission(
                groups=[_HIRING_DEPARTMENT],
                conditions=[CustomPredicate(MANAGER_OF_WORKFLOW_DEPARTMENT)],
            ),
        ),
        StateNode(
            "approved",
            transitions=(Transition("posted", "post_job", "Post Job"), _cancel()),
            required_roles=hr,
            on_enter=_enter_approved,
        ),
        StateNode(
            "posted",
            transitions=(
                Transition("screening", "start_screening", "Start Screening"),
                _cancel("Cancel Posting"),
            ),
            required_roles=hr,
            validations=(Require(FieldPresent("job_posting_url"), "Job posting URL is required"),),
        ),
        StateNode(
            "screening",
            transitions=(
                Transition(
                    "interviewing",
                    "start_interviews",
                    "Start Interviews",
                    guards=(FieldPresent("screened_candidates"),),
                ),
                Transition("posted", "reopen_posting", "Reopen Posting"),
                _cancel(),
            ),
            required_roles=_roles(WorkflowRole.HR_SPECIALIST, WorkflowRole.ANALYZER),
            on_enter=_enter_screening,
        ),
        StateNode(
            "interviewing",
            transitions=(
                Transition(
                    "selecting",
                    "complete_interviews",
                    "Complete Interviews",
                    guards=(FieldPresent("interview_results"),),
                ),
                Transition("screening", "return_to_screening", "Return to Screening"),
                _cancel(),
            ),
            required_roles=_roles(WorkflowRole.ANALYZER, WorkflowRole.APPROVER),
            permission=permission(groups=[_HIRING_DEPARTMENT]),
            on_enter=_enter_interviewing,
        ),
        StateNode(
            "selecting",
            transitions=(
                Transition(
                    "offer_preparation",
                    "select_candidate",
                    "Select Candidate",
                    guards=(FieldPresent("selected_candidate"),),
                ),
                Transition("interviewing", "continue_interviews", "Continue Interviews"),
                _cancel(),
            ),
            required_roles=_roles(WorkflowRole.APPROVER),
            permission=permission(
                groups=[_HIRING_DEPARTMENT],
                designations=["Manager", "Director", "Head"],
            ),
        ),
        StateNode(
            "offer_preparation",
            transitions=(
                Transition(
                    "offer_sent",
                    "send_offer",
                    "Send Offer",
                    guards=(
                        FieldPresent("offer_details.salary"),
                        FieldPresent("offer_details.start_date"),
                    ),
                ),
                Transition("selecting", "revise_selection", "Revise Selection"),
            ),
            required_roles=_roles(WorkflowRole.HR_SPECIALIST, WorkflowRole.APPROVER),
        ),
        StateNode(
            "offer_sent",
            transitions=(
                Transition("offer_accepted", "accept_offer", "Offer Accepted"),
                Transition("offer_rejected", "reject_offer", "Offer Rejected"),
                Transition("offer_preparation", "revise_offer", "Revise Offer"),
            ),
            required_roles=hr,
            validations=(
                Require(FieldPresent("offer_details.salary"), "Salary must be specified"),
                Require(FieldPresent("offer_details.start_date"), "Start date must be specified"),
            ),
            on_enter=_enter_offer_sent,
        ),
        StateNode(
            "offer_accepted",
            transitions=(Transition("onboarding", "start_onboarding", "Start Onboarding"),),
            required_roles=hr,
            on_enter=_enter_offer_accepted,
        ),
        StateNode(
            "onboarding",
            transitions=(
                Transition(
                    "completed",
                    "complete_onboarding",
                    "Complete Onboarding",
                    guards=(FieldPresent("onboarding_checklist.completed"),),
                ),
            ),
            required_roles=hr,
            on_enter=_enter_onboarding,
        ),
        StateNode("completed", description="Hire completed", on_enter=_enter_completed),
        StateNode(
            "rejected",
            transitions=(Transition("draft", "revise_and_resubmit", "Revise and Resubmit"),),
            required_roles=_roles(WorkflowRole.REQUESTOR),
        ),
        StateNode(
            "offer_rejected",
            transitions=(
                Transition("selecting", "select_alternate", "Select Alternate Candidate"),
                _cancel("Cancel Requisition"),
            ),
            required_roles=_roles(WorkflowRole.HR_SPECIALIST, WorkflowRole.APPROVER),
        ),
        StateNode("cancelled", description="Requisition cancelled"),
    ]
    return StateGraph(
        WORKFLOW_TYPE,
        initial="draft",
        states=states,
        description="Job requisition, recruiting and onboarding",
    )
