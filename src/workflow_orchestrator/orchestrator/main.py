"""CLI entrypoint for inspecting workflow definitions and persisted instances."""

from __future__ import annotations

import argparse
import json
import logging
import sys
from collections import Counter
from pathlib import Path

from pydantic import ValidationError

from workflow_orchestrator import __version__
from workflow_orchestrator.core.config import EngineConfig
from workflow_orchestrator.orchestrator.workflow.definitions import BUILTIN_GRAPHS
from workflow_orchestrator.state.store import JsonFilePersistenceStore, WorkflowSnapshot

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="workflow-orchestrator",
        description="Inspect workflow definitions and persisted workflow instances",
    )
    parser.add_argument(
        "--version", action="version", version=f"workflow-orchestrator {__version__}"
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    describe = subparsers.add_parser(
        "describe-type", help="Print a bundled workflow graph as JSON"
    )
    describe.add_argument("workflow", choices=sorted(BUILTIN_GRAPHS), help="Workflow to describe")

    for name, help_text in (
        ("list-instances", "List persisted workflow instances"),
        ("stats", "Count persisted workflow instances by type and state"),
    ):
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument(
            "--state-file",
            type=Path,
            default=None,
            help="Snapshot file (defaults to WORKFLOW_PERSISTENCE_STORAGE_PATH)",
        )
        if name == "list-instances":
            sub.add_argument("--type", dest="workflow_type", default=None, help="Filter by type")
            sub.add_argument("--state", default=None, help="Filter by current state")

    return parser


def _load(path: Path) -> list[WorkflowSnapshot]:
    return JsonFilePersistenceStore(path).load_all()


def _print_table(snapshots: list[WorkflowSnapshot]) -> None:
    rows = [
        (s.id, s.type, s.current_state, s.created_by, s.updated_at.isoformat(timespec="seconds"))
        for s in sorted(snapshots, key=lambda s: s.updated_at, reverse=True)
    ]
    header = ("ID", "TYPE", "STATE", "CREATED BY", "UPDATED")
    widths = [max(len(str(r[i])) for r in [header, *rows]) for i in range(len(header))]
    for row in [header, *rows]:
        print("  ".join(str(v).ljust(w) for v, w in zip(row, widths, strict=True)).rstrip())


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        config = EngineConfig()
    except ValidationError as e:
        # Logging isn't configured yet; keep it simple and actionable.
        print("Configuration error (check your .env):", file=sys.stderr)
        print(e, file=sys.stderr)
        return 2

    config.setup_logging()

    try:
        if args.command == "describe-type":
            graph = BUILTIN_GRAPHS[args.workflow]()
            print(json.dumps(graph.describe(), indent=2, ensure_ascii=False, default=str))
            return 0

        state_file: Path = args.state_file or config.persistence.storage_path

        if args.command == "list-instances":
            snapshots = [
                s
                for s in _load(state_file)
                if (args.workflow_type is None or s.type == args.workflow_type)
                and (args.state is None or s.current_state == args.state)
            ]
            if not snapshots:
                print(f"No workflow instances in {state_file}")
                return 0
            _print_table(snapshots)
            return 0

        if args.command == "stats":
            snapshots = _load(state_file)
            by_type = Counter(s.type for s in snapshots)
            by_state: dict[str, dict[str, int]] = {}
            for s in snapshots:
                states = by_state.setdefault(s.type, {})
                states[s.current_state] = states.get(s.current_state, 0) + 1
            print(
                json.dumps(
                    {"total": len(snapshots), "by_type": dict(by_type), "by_state": by_state},
                    indent=2,
                    sort_keys=True,
                )
            )
            return 0

        logger.error("Unknown command", extra={"command": args.command})
        return 2

    except ValidationError:
        logger.exception("Persisted workflow state is malformed")
        return 1

    except Exception:
        logger.exception("Command failed")
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
