"""Commit step backed by the local ``git`` executable.

The working tree is shared by every worker, so a commit stages everything
(``git add -A``). The issue id goes into the commit body, which keeps the
tracker and the history linked without a separate mapping.
"""

import subprocess
from pathlib import Path

import structlog

from autobuild.exceptions import CommitError
from autobuild.providers.base import Committer
from autobuild.utils.async_subprocess import run_command

log = structlog.get_logger(__name__)

NOTHING_TO_COMMIT = ("nothing to commit", "no changes added to commit")


class GitCommitter(Committer):
    """Committer that shells out to git in the project root."""

    def __init__(self, project_path: Path, timeout: float = 120.0) -> None:
        self.project_path = Path(project_path)
        self.timeout = timeout

    async def _git(self, *args: str) -> tuple[str, str, int]:
        try:
            return await run_command("git", *args, cwd=self.project_path, check=False, timeout=self.timeout)
        except FileNotFoundError as e:
            raise CommitError("The 'git' command is not installed") from e
        except TimeoutError as e:
            raise CommitError(f"git {args[0]} timed out after {self.timeout:g}s") from e
        except (OSError, subprocess.SubprocessError) as e:
            raise CommitError(f"Failed to run git {args[0]}: {e}") from e

    async def commit(self, message: str, issue_id: str) -> str | None:
        """Stage all changes and commit them.

        Returns:
            The new HEAD commit id, or None when the tree had no changes.

        Raises:
            CommitError: If staging, committing or reading HEAD fails.
        """
        stdout, stderr, code = await self._git("add", "-A")
        if code != 0:
            raise CommitError("git add failed", output=(stdout + stderr).strip())

        stdout, stderr, code = await self._git("commit", "-m", f"{message}\n\nIssue: {issue_id}")
        if code != 0:
            output = (stdout + stderr).strip()
            if any(marker in output for marker in NOTHING_TO_COMMIT):
                log.info("commit_skipped_no_changes", issue=issue_id)
                return None
            raise CommitError("git commit failed", output=output)

        stdout, stderr, code = await self._git("rev-parse", "HEAD")
        if code != 0:
            raise CommitError("git rev-parse failed", output=stderr.strip())
        commit_id = stdout.strip()
        log.info("commit_created", issue=issue_id, commit=commit_id[:12])
        return commit_id
