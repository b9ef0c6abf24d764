"""Core package initialization."""

from workflow_orchestrator.core.config import EngineConfig, PersistenceConfig

__all__ = [
    "EngineConfig",
    "PersistenceConfig",
]
