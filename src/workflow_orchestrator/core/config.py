"""Engine configuration.

Loaded from environment variables and a local ``.env`` file (if present).
Tests construct the objects directly with keyword arguments.
"""

import logging
from datetime import timedelta
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from workflow_orchestrator.orchestrator.logging import configure_logging


class PersistenceConfig(BaseSettings):
    """Configuration for instance snapshot persistence."""

    storage_path: Path = Field(
        default=Path(".workflow_state/instances.json"),
        description="JSON file holding persisted workflow snapshots",
    )
    enabled: bool = Field(
        default=True,
        description="Persist instances at creation, after each change and on auto-save",
    )

    model_config = SettingsConfigDict(
        env_prefix="WORKFLOW_PERSISTENCE_",
        env_file=".env",
        extra="ignore",
    )


class EngineConfig(BaseSettings):
    """Main configuration for a workflow engine."""

    log_level: str = Field(
        default="INFO",
        description="Logging level",
    )
    debug: bool = Field(
        default=False,
        description="Enable debug mode",
    )

    lock_ttl_seconds: float = Field(
        default=30.0,
        gt=0,
        description="Age after which an instance lock is considered abandoned",
    )
    permission_cache_seconds: float = Field(
        default=300.0,
        gt=0,
        description="Width of the permission cache time bucket",
    )
    org_context_cache_seconds: float = Field(
        default=600.0,
        gt=0,
        description="How long a resolved organizational context is reused",
    )
    auto_save_interval_seconds: float = Field(
        default=60.0,
        ge=0,
        description="Interval of the background auto-save sweep (0 disables it)",
    )

    persistence: PersistenceConfig = Field(
        default_factory=PersistenceConfig,
        description="Persistence configuration",
    )

    model_config = SettingsConfigDict(
        env_prefix="WORKFLOW_ENGINE_",
        env_file=".env",
        extra="ignore",
    )

    @property
    def lock_ttl(self) -> timedelta:
        return timedelta(seconds=self.lock_ttl_seconds)

    @property
    def permission_cache_ttl(self) -> timedelta:
        return timedelta(seconds=self.permission_cache_seconds)

    @property
    def org_context_cache_ttl(self) -> timedelta:
        return timedelta(seconds=self.org_context_cache_seconds)

    def setup_logging(self) -> None:
        """Configure structured logging based on settings."""
        configure_logging(self.log_level)

        if self.debug:
            logging.getLogger("workflow_orchestrator").setLevel(logging.DEBUG)
