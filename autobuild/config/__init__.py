"""Configuration models for the autobuild orchestrator."""

from autobuild.config.settings import (
    AgentConfig,
    AutoBuildSettings,
    CoordinatorConfig,
    OrchestratorSettings,
    TrackerConfig,
    VerificationConfig,
    WorkerConfig,
)

__all__ = [
    "AgentConfig",
    "AutoBuildSettings",
    "CoordinatorConfig",
    "OrchestratorSettings",
    "TrackerConfig",
    "VerificationConfig",
    "WorkerConfig",
]
