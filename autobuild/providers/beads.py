"""Issue tracker adapter for the beads (``bd``) CLI.

Issues are read with ``bd export``, which prints one JSON object per line,
and written with ``bd update <id> --status <status>`` and
``bd close <id> --reason <reason>``. Every call runs in the project root and
requires a ``.beads`` directory there.

Issue ids and status values are validated before they reach the command
line; free text (close reasons) has command-substitution and newline
characters replaced.
"""

import json
import re
import subprocess
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import structlog

from autobuild.enums import DependencyType, IssueStatus
from autobuild.exceptions import TrackerConflictError, TrackerError
from autobuild.models.domain import Issue, IssueDependency
from autobuild.providers.base import IssueTracker
from autobuild.utils.async_subprocess import run_command
from autobuild.utils.retry import async_retry

log = structlog.get_logger(__name__)

ISSUE_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,99}$")


def validate_issue_id(issue_id: str) -> str:
    """Reject ids that could smuggle arguments or shell syntax.

    Raises:
        TrackerError: If the id is empty, too long or has forbidden characters.
    """
    if not ISSUE_ID_PATTERN.match(issue_id):
        raise TrackerError(f"Invalid issue id: {issue_id!r}")
    return issue_id


def sanitize_text(text: str) -> str:
    """Replace characters that could break CLI parsing."""
    return re.sub(r"[`$\r\n]", " ", text)


def _parse_datetime(value: Any) -> datetime:
    if not value:
        return datetime.fromtimestamp(0, UTC)
    parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


def _parse_status(value: Any) -> IssueStatus:
    try:
        return IssueStatus(str(value))
    except ValueError:
        # "deferred" and custom statuses are never eligible for selection.
        return IssueStatus.BLOCKED


def parse_issue(data: dict[str, Any]) -> Issue:
    """Convert one ``bd export`` record into an Issue.

    Raises:
        KeyError, ValueError: If required fields are missing or malformed.
    """
    dependencies = []
    for dep in data.get("dependencies") or []:
        try:
            dep_type = DependencyType.parse(dep.get("type", ""))
        except ValueError:
            log.debug("unknown_dependency_type", issue=data.get("id"), type=dep.get("type"))
            continue
        dependencies.append(
            IssueDependency(
                issue_id=dep.get("issue_id", data["id"]),
                depends_on_id=dep["depends_on_id"],
                type=dep_type,
            )
        )

    phase = data.get("phase")
    return Issue(
        id=data["id"],
        title=data.get("title", ""),
        status=_parse_status(data.get("status", "open")),
        priority=int(data.get("priority", 2)),
        issue_type=data.get("issue_type", "task"),
        created_at=_parse_datetime(data.get("created_at")),
        dependencies=dependencies,
        phase=int(phase) if phase is not None else None,
        description=data.get("description") or "",
        labels=list(data.get("labels") or []),
    )


def parse_export(output: str) -> list[Issue]:
    """Parse ``bd export`` JSONL output, skipping unreadable lines."""
    issues = []
    for line in output.splitlines():
        if not line.strip():
            continue
        try:
            issues.append(parse_issue(json.loads(line)))
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
            log.warning("issue_parse_failed", error=str(e), line=line[:200])
    return issues


class BeadsTracker(IssueTracker):
    """IssueTracker backed by the ``bd`` command-line tool."""

    def __init__(self, project_path: Path, command: str = "bd", timeout: float = 60.0) -> None:
        """Initialize the tracker.

        Args:
            project_path: Project root containing ``.beads``.
            command: Beads executable.
            timeout: Per-call timeout in seconds.
        """
        self.project_path = Path(project_path)
        self.command = command
        self.timeout = timeout

    async def _bd(self, *args: str) -> str:
        """Run a bd subcommand and return its stdout.

        Raises:
            TrackerError: If beads is not set up or the command fails.
        """
        if not (self.project_path / ".beads").is_dir():
            raise TrackerError(f"Issue tracking is not set up in {self.project_path}; run 'bd init'")
        try:
            stdout, stderr, code = await run_command(
                self.command, *args, cwd=self.project_path, check=False, timeout=self.timeout
            )
        except FileNotFoundError as e:
            raise TrackerError(f"The '{self.command}' command is not installed") from e
        except (OSError, subprocess.SubprocessError) as e:
            raise TrackerError(f"Failed to run {self.command} {args[0]}: {e}") from e

        if code != 0 and stderr.strip():
            raise TrackerError(f"{self.command} {args[0]} failed: {stderr.strip()}")
        return stdout

    @async_retry(max_attempts=3, backoff_factor=2.0, exceptions=(TimeoutError,))
    async def list_issues(self) -> list[Issue]:
        return parse_export(await self._bd("export"))

    async def get_issue(self, issue_id: str) -> Issue:
        validate_issue_id(issue_id)
        for issue in await self.list_issues():
            if issue.id == issue_id:
                return issue
        raise TrackerError("Issue not found", issue_id=issue_id)

    async def update_status(
        self,
        issue_id: str,
        status: IssueStatus,
        expected: IssueStatus | None = None,
    ) -> None:
        validate_issue_id(issue_id)
        if expected is not None:
            current = await self.get_issue(issue_id)
            if current.status != expected:
                raise TrackerConflictError(
                    f"Expected status {expected} but tracker has {current.status}", issue_id=issue_id
                )
        await self._bd("update", issue_id, "--status", status.value)
        log.info("tracker_status_updated", issue=issue_id, status=status.value)

    async def close_issue(self, issue_id: str, reason: str) -> None:
        validate_issue_id(issue_id)
        await self._bd("close", issue_id, "--reason", sanitize_text(reason))
        log.info("tracker_issue_closed", issue=issue_id)
