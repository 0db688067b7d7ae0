"""Tests for autobuild/config/settings.py."""

from pathlib import Path

import pytest
from pydantic import ValidationError

from autobuild.config.settings import (
    AutoBuildSettings,
    CoordinatorConfig,
    OrchestratorSettings,
    WorkerConfig,
)
from autobuild.exceptions import ConfigurationError


class TestAutoBuildSettings:
    """Tests for the per-session options."""

    def test_defaults(self):
        settings = AutoBuildSettings()

        assert settings.auto_commit is True
        assert settings.run_lint and settings.run_tests and settings.run_build
        assert settings.max_retries == 1
        assert settings.priority_threshold == 4
        assert settings.require_human_review is True
        assert settings.max_concurrent_issues == 3
        assert settings.ignore_unrelated_failures is True

    def test_accepts_camel_case_and_snake_case(self):
        camel = AutoBuildSettings.model_validate({"maxRetries": 3, "requireHumanReview": False})
        snake = AutoBuildSettings(max_retries=3, require_human_review=False)

        assert camel == snake

    def test_dumps_camel_case(self):
        data = AutoBuildSettings().model_dump(by_alias=True)

        assert "maxConcurrentIssues" in data
        assert "ignoreUnrelatedFailures" in data

    @pytest.mark.parametrize(
        "field,value",
        [
            ("max_concurrent_issues", 0),
            ("max_concurrent_issues", 11),
            ("priority_threshold", 5),
            ("max_retries", -1),
        ],
    )
    def test_bounds(self, field, value):
        with pytest.raises(ValidationError):
            AutoBuildSettings(**{field: value})


class TestSectionConfigs:
    """Tests for the nested configuration sections."""

    def test_coordinator_url(self):
        assert CoordinatorConfig(host="0.0.0.0", port=9000).url == "http://0.0.0.0:9000"

    def test_worker_backoff_ceiling_must_cover_initial(self):
        with pytest.raises(ValidationError, match="lock_retry_max"):
            WorkerConfig(lock_retry_initial=30, lock_retry_max=10)

    def test_edit_lock_wait(self):
        assert WorkerConfig().edit_lock_wait == 600.0
        with pytest.raises(ValidationError, match="edit_lock_wait"):
            WorkerConfig(edit_lock_wait=0)

    def test_derived_paths(self, tmp_path):
        settings = OrchestratorSettings(project_path=tmp_path)

        assert settings.session_path == tmp_path / ".beads" / ".autobuild-session.json"
        assert settings.progress_dir == tmp_path / "_SILO"


class TestFromYaml:
    """Tests for loading settings from YAML."""

    @pytest.fixture
    def config_file(self, tmp_path: Path) -> Path:
        return tmp_path / "autobuild.yaml"

    def test_loads_sections(self, config_file, tmp_path):
        config_file.write_text(
            f"""
project_path: {tmp_path}
autobuild:
  maxConcurrentIssues: 2
  require_human_review: false
verification:
  test_command: pytest -q
coordinator:
  port: 8123
"""
        )

        settings = OrchestratorSettings.from_yaml(str(config_file))

        assert settings.project_path == tmp_path
        assert settings.autobuild.max_concurrent_issues == 2
        assert settings.autobuild.require_human_review is False
        assert settings.verification.test_command == "pytest -q"
        assert settings.verification.lint_command == "npm run lint"
        assert settings.coordinator.url == "http://127.0.0.1:8123"

    def test_empty_file_gives_defaults(self, config_file):
        config_file.write_text("")

        settings = OrchestratorSettings.from_yaml(str(config_file))

        assert settings.autobuild == AutoBuildSettings()

    def test_env_var_interpolation(self, config_file, monkeypatch):
        monkeypatch.setenv("AGENT_MODEL", "sonnet")
        monkeypatch.delenv("AGENT_COMMAND", raising=False)
        config_file.write_text(
            """
agent:
  model: ${AGENT_MODEL}
  command: ${AGENT_COMMAND:-claude-code}
# model: ${NOT_SET_ANYWHERE}
"""
        )

        settings = OrchestratorSettings.from_yaml(str(config_file))

        assert settings.agent.model == "sonnet"
        assert settings.agent.command == "claude-code"

    def test_missing_env_var_raises(self, config_file, monkeypatch):
        monkeypatch.delenv("AUTOBUILD_TEST_MISSING", raising=False)
        config_file.write_text("agent:\n  model: ${AUTOBUILD_TEST_MISSING}\n")

        with pytest.raises(ConfigurationError, match="AUTOBUILD_TEST_MISSING"):
            OrchestratorSettings.from_yaml(str(config_file))

    def test_env_overrides_fill_missing_sections(self, config_file, monkeypatch):
        monkeypatch.setenv("AUTOBUILD_COORDINATOR__PORT", "9100")
        config_file.write_text("tracker:\n  command: bd\n")

        settings = OrchestratorSettings.from_yaml(str(config_file))

        assert settings.coordinator.port == 9100

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigurationError, match="not found"):
            OrchestratorSettings.from_yaml(str(tmp_path / "nope.yaml"))

    def test_invalid_yaml(self, config_file):
        config_file.write_text("autobuild: [unclosed")

        with pytest.raises(ConfigurationError, match="Invalid YAML"):
            OrchestratorSettings.from_yaml(str(config_file))

    def test_non_mapping_yaml(self, config_file):
        config_file.write_text("- just\n- a list\n")

        with pytest.raises(ConfigurationError, match="YAML object"):
            OrchestratorSettings.from_yaml(str(config_file))

    def test_invalid_values(self, config_file):
        config_file.write_text("autobuild:\n  maxConcurrentIssues: 50\n")

        with pytest.raises(ConfigurationError, match="Failed to validate"):
            OrchestratorSettings.from_yaml(str(config_file))
