"""Workflow Orchestrator.

An in-process runtime for long-running business workflows:
- declarative state graphs with guarded, validated transitions
- permissions resolved against a user's organizational positions
- an engine serializing access per instance, with audit, notifications,
  events and snapshot persistence
"""

__version__ = "0.1.0"

from workflow_orchestrator.core.config import EngineConfig

__all__ = ["__version__", "EngineConfig"]
