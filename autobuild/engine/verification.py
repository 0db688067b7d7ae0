"""
Verification gates and failure attribution.

The VerificationRunner runs the enabled gates (lint, tests, build) as shell
commands in the shared working tree and reduces them to a
``VerificationResult``. Gates always run in that order and every enabled gate
runs even after an earlier one fails, so the fixing prompt sees all of the
breakage at once.

Failure Attribution:
    Several workers share one working tree, so a failing gate may be caused
    by somebody else's half-finished change. A ``FailureAttribution`` decides
    whether a failure counts against the worker that ran the gates:

    - ``PathMentionAttribution`` (default): related when the gate output
      mentions one of the worker's modified files, by relative path or by a
      basename no other modified file shares.
    - ``StrictAttribution``: every failure is related.

    Matching output text is a heuristic and can accept a genuine regression
    as unrelated, which is why the strategy is injectable.
"""

from __future__ import annotations

import posixpath
import re
import subprocess
from collections import Counter
from collections.abc import Sequence
from pathlib import Path
from typing import Protocol

import structlog

from autobuild.config.settings import AutoBuildSettings, VerificationConfig
from autobuild.enums import GateName
from autobuild.models.domain import GateResult, VerificationResult
from autobuild.utils.async_subprocess import run_shell_command

log = structlog.get_logger(__name__)


class FailureAttribution(Protocol):
    """Decides whether a gate failure belongs to a worker's changes."""

    def is_related(self, output: str, files_modified: Sequence[str]) -> bool: ...


class StrictAttribution:
    """Every failure counts."""

    def is_related(self, output: str, files_modified: Sequence[str]) -> bool:
        return True


class PathMentionAttribution:
    """A failure counts when its output names a modified file.

    A modified file is matched by its normalized relative path, or by its
    basename when that basename is unique among the modified files. Matches
    must sit on token boundaries so ``a.ts`` does not match ``data.ts``.
    """

    def is_related(self, output: str, files_modified: Sequence[str]) -> bool:
        if not files_modified:
            return True

        text = output.replace("\\", "/")
        paths = [self._normalize(p) for p in files_modified if p.strip()]
        basenames = Counter(posixpath.basename(p) for p in paths)

        for path in paths:
            if self._mentions(text, path):
                return True
            name = posixpath.basename(path)
            if name and basenames[name] == 1 and self._mentions(text, name):
                return True
        return False

    @staticmethod
    def _normalize(path: str) -> str:
        normalized = posixpath.normpath(path.strip().replace("\\", "/"))
        return normalized[2:] if normalized.startswith("./") else normalized

    @staticmethod
    def _mentions(text: str, needle: str) -> bool:
        pattern = r"(?<![\w.-])" + re.escape(needle) + r"(?![\w-])"
        return re.search(pattern, text) is not None


class VerificationRunner:
    """Runs the lint, test and build gates for the shared working tree."""

    def __init__(
        self,
        project_path: Path,
        config: VerificationConfig | None = None,
        attribution: FailureAttribution | None = None,
    ) -> None:
        """Initialize the runner.

        Args:
            project_path: Working tree the gate commands run in.
            config: Gate commands and timeout.
            attribution: Strategy applied when unrelated failures may be
                ignored. Defaults to ``PathMentionAttribution``.
        """
        self.project_path = Path(project_path)
        self.config = config or VerificationConfig()
        self.attribution: FailureAttribution = attribution or PathMentionAttribution()

    def commands(self) -> dict[GateName, str]:
        return {
            GateName.LINT: self.config.lint_command,
            GateName.TESTS: self.config.test_command,
            GateName.BUILD: self.config.build_command,
        }

    async def run(self, files_modified: Sequence[str], settings: AutoBuildSettings) -> VerificationResult:
        """Run every enabled gate and attribute any failures.

        Args:
            files_modified: Paths the worker changed for the current issue.
            settings: Session settings selecting gates and attribution mode.

        Returns:
            The immutable result of this pass.
        """
        enabled = {
            GateName.LINT: settings.run_lint,
            GateName.TESTS: settings.run_tests,
            GateName.BUILD: settings.run_build,
        }
        attribution = self.attribution if settings.ignore_unrelated_failures else StrictAttribution()

        results: dict[GateName, GateResult] = {}
        for name, command in self.commands().items():
            if not enabled[name]:
                results[name] = GateResult(success=True, output="", skipped=True)
                continue

            success, output = await self._run_gate(name, command)
            related = True if success else attribution.is_related(output, files_modified)
            results[name] = GateResult(success=success, output=output, related=related)
            log.info("gate_finished", gate=str(name), success=success, related=related)

        return VerificationResult(
            lint=results[GateName.LINT],
            tests=results[GateName.TESTS],
            build=results[GateName.BUILD],
        )

    async def _run_gate(self, name: GateName, command: str) -> tuple[bool, str]:
        """Run one gate command, folding launch errors and timeouts into failures."""
        log.debug("gate_started", gate=str(name), command=command)
        try:
            stdout, stderr, code = await run_shell_command(
                command,
                cwd=self.project_path,
                check=False,
                timeout=self.config.timeout,
            )
        except TimeoutError:
            return False, f"{name} gate timed out after {self.config.timeout:g}s"
        except (OSError, subprocess.SubprocessError) as e:
            return False, f"Failed to run {name} gate: {e}"
        return code == 0, stdout + stderr
