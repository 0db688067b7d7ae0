"""
Configuration system using Pydantic for type-safe settings management.

This module provides the configuration classes for the orchestrator: the
user-facing ``AutoBuildSettings`` (the knobs persisted with every session
snapshot) and the surrounding ``OrchestratorSettings`` that wires up the lock
service, verification gates, agent CLI and issue tracker.
"""

from __future__ import annotations

import os
import re
from pathlib import Path

import yaml
from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel
from pydantic_settings import BaseSettings, SettingsConfigDict

from autobuild.exceptions import ConfigurationError


class AutoBuildSettings(BaseModel):
    """Per-session orchestration options.

    Serialized with camelCase keys (``autoCommit``, ``maxRetries``...) so the
    session snapshot stays readable by other tools that share the file.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    auto_commit: bool = Field(default=True, description="Commit automatically after a successful gate sequence")
    run_lint: bool = Field(default=True, description="Run the lint gate")
    run_tests: bool = Field(default=True, description="Run the test gate")
    run_build: bool = Field(default=True, description="Run the build gate")
    max_retries: int = Field(default=1, ge=0, le=10, description="Bound on fixing-loop iterations")
    priority_threshold: int = Field(
        default=4, ge=0, le=4, description="Least-urgent priority eligible for automatic selection"
    )
    require_human_review: bool = Field(default=True, description="Force a review checkpoint before commit")
    max_concurrent_issues: int = Field(default=3, ge=1, le=10, description="Worker pool size")
    ignore_unrelated_failures: bool = Field(
        default=True, description="Ignore gate failures that do not mention a modified file"
    )


class CoordinatorConfig(BaseModel):
    """File coordinator lock service configuration."""

    host: str = Field(default="127.0.0.1", description="Interface the lock service binds to")
    port: int = Field(default=7433, ge=1024, le=65535, description="Port the lock service binds to")
    lease_timeout: float = Field(default=300.0, gt=0, description="Seconds before an unrenewed lease expires")
    cleanup_interval: float = Field(default=60.0, gt=0, description="Seconds between expired-lease sweeps")
    request_timeout: float = Field(default=5.0, gt=0, description="Client-side HTTP timeout in seconds")

    @property
    def url(self) -> str:
        """Base URL clients use to reach the service."""
        return f"http://{self.host}:{self.port}"


class VerificationConfig(BaseModel):
    """Shell commands and limits for the verification gates."""

    lint_command: str = Field(default="npm run lint", description="Lint gate command")
    test_command: str = Field(default="npm run test", description="Test gate command")
    build_command: str = Field(default="npm run build", description="Build gate command")
    timeout: float = Field(default=900.0, gt=0, description="Per-gate timeout in seconds")


class AgentConfig(BaseModel):
    """Coding agent CLI configuration."""

    command: str = Field(default="claude", description="Agent executable")
    allowed_tools: list[str] = Field(
        default_factory=lambda: ["Edit", "Write", "Bash", "Read", "Glob", "Grep"],
        description="Tools the agent may use",
    )
    permission_mode: str = Field(default="default", description="Agent permission mode")
    model: str | None = Field(default=None, description="Model override passed to the agent")
    timeout: float = Field(default=3600.0, gt=0, description="Per-invocation timeout in seconds")


class TrackerConfig(BaseModel):
    """Issue tracker (beads CLI) configuration."""

    command: str = Field(default="bd", description="Tracker executable")
    timeout: float = Field(default=60.0, gt=0, description="Per-call timeout in seconds")


class WorkerConfig(BaseModel):
    """Worker pacing configuration."""

    lock_retry_initial: float = Field(default=10.0, gt=0, description="First backoff after a refused lease")
    lock_retry_max: float = Field(default=60.0, gt=0, description="Backoff ceiling for refused leases")
    idle_poll_interval: float = Field(default=2.0, gt=0, description="Seconds an idle worker waits between claims")
    lease_renew_interval: float = Field(default=60.0, gt=0, description="Seconds between lease renewals")
    edit_lock_wait: float = Field(
        default=600.0, gt=0, description="Seconds to wait for a file the agent edits while another worker leases it"
    )

    @model_validator(mode="after")
    def validate_backoff(self) -> WorkerConfig:
        """Keep the backoff ceiling at or above the initial delay."""
        if self.lock_retry_max < self.lock_retry_initial:
            raise ValueError("lock_retry_max must be >= lock_retry_initial")
        return self


class OrchestratorSettings(BaseSettings):
    """Main orchestrator settings.

    This class combines all configuration sections and provides methods
    for loading from YAML files with environment variable interpolation.
    """

    model_config = SettingsConfigDict(
        env_prefix="AUTOBUILD_",
        env_nested_delimiter="__",
        case_sensitive=False,
    )

    project_path: Path = Field(default_factory=Path.cwd, description="Root of the shared working tree")
    autobuild: AutoBuildSettings = Field(default_factory=AutoBuildSettings)
    coordinator: CoordinatorConfig = Field(default_factory=CoordinatorConfig)
    verification: VerificationConfig = Field(default_factory=VerificationConfig)
    agent: AgentConfig = Field(default_factory=AgentConfig)
    tracker: TrackerConfig = Field(default_factory=TrackerConfig)
    worker: WorkerConfig = Field(default_factory=WorkerConfig)

    @property
    def session_path(self) -> Path:
        """Location of the persisted session snapshot."""
        return self.project_path / ".beads" / ".autobuild-session.json"

    @property
    def progress_dir(self) -> Path:
        """Directory holding one progress record per in-flight issue."""
        return self.project_path / "_SILO"

    @classmethod
    def from_yaml(cls, config_path: str) -> OrchestratorSettings:
        """Load settings from YAML file with environment variable interpolation.

        Supports ${VAR_NAME} syntax for environment variable substitution.

        Args:
            config_path: Path to YAML configuration file

        Returns:
            OrchestratorSettings instance

        Raises:
            ConfigurationError: If config file is invalid or missing required fields
        """
        config_file = Path(config_path)
        if not config_file.exists():
            raise ConfigurationError(f"Configuration file not found: {config_path}")

        try:
            with open(config_file) as f:
                yaml_content = f.read()
        except OSError as e:
            raise ConfigurationError(f"Cannot read configuration file: {config_path}") from e

        try:
            yaml_content = cls._interpolate_env_vars(yaml_content)
        except ValueError as e:
            raise ConfigurationError(f"Invalid environment variable reference in config: {e}") from e

        try:
            config_dict = yaml.safe_load(yaml_content)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML syntax in {config_path}: {e}") from e

        if config_dict is None:
            config_dict = {}
        if not isinstance(config_dict, dict):
            raise ConfigurationError("Configuration must be a YAML object, not a list or scalar")

        try:
            return cls(**config_dict)
        except TypeError as e:
            raise ConfigurationError(f"Missing or invalid configuration fields: {e}") from e
        except Exception as e:
            raise ConfigurationError(f"Failed to validate configuration: {e}") from e

    @staticmethod
    def _interpolate_env_vars(content: str) -> str:
        """Interpolate ${VAR_NAME} placeholders with environment variables.

        Supports two syntaxes:
        - ${VAR_NAME} - Required environment variable (raises if not set)
        - ${VAR_NAME:-default} - Optional with default value

        YAML comment lines are left untouched.

        Args:
            content: String content with placeholders

        Returns:
            Content with environment variables substituted

        Raises:
            ValueError: If a required environment variable is not set
        """
        pattern = re.compile(r"\$\{([A-Z_][A-Z0-9_]*)(?::-([^}]*))?\}")

        def replace_var(match: re.Match[str]) -> str:
            var_name = match.group(1)
            default_value = match.group(2)
            value = os.getenv(var_name)

            if value is not None:
                return value
            elif default_value is not None:
                return default_value
            else:
                raise ValueError(f"Environment variable {var_name} is not set")

        def process_line(line: str) -> str:
            if line.lstrip().startswith("#"):
                return line
            return pattern.sub(replace_var, line)

        return "\n".join(process_line(line) for line in content.split("\n"))
