"""Bundled workflow definitions."""

from collections.abc import Callable

from workflow_orchestrator.orchestrator.workflow.definitions.common import (
    register_builtin_predicates,
)
from workflow_orchestrator.orchestrator.workflow.definitions.expense_approval import (
    build_expense_approval_graph,
)
from workflow_orchestrator.orchestrator.workflow.definitions.hire import build_hire_graph
from workflow_orchestrator.orchestrator.workflow.state_machine import StateGraph

# Short names used by the CLI.
BUILTIN_GRAPHS: dict[str, Callable[[], StateGraph]] = {
    "expense": build_expense_approval_graph,
    "hire": build_hire_graph,
}

__all__ = [
    "BUILTIN_GRAPHS",
    "build_expense_approval_graph",
    "build_hire_graph",
    "register_builtin_predicates",
]
