"""
Persistence for orchestration state.

Two stores live here:

- ``SessionStore`` keeps the ``AutoBuildSession`` snapshot in one JSON file
  (``.beads/.autobuild-session.json`` by default) so a session can resume
  after a restart.
- ``ProgressStore`` keeps one human-readable markdown record per in-flight
  issue (``_SILO/<issue id>.md``) so an operator can see at a glance what a
  worker has done and what it will do next.

Both write atomically: content goes to a ``.tmp`` sibling first, which is then
renamed over the target. A crash mid-write leaves the previous file intact.

Recovery:
    A snapshot saved while the session was running or paused is restored as
    paused. The operator decides when work continues.

Example:
    >>> store = SessionStore(settings.session_path)
    >>> await store.save(orchestrator.snapshot())
    >>> session = await store.recover()
"""

import asyncio
import json
from pathlib import Path

import aiofiles
import structlog
from pydantic import ValidationError

from autobuild.enums import SessionStatus
from autobuild.exceptions import SessionStateError
from autobuild.models.domain import ProgressRecord
from autobuild.models.session import AutoBuildSession

log = structlog.get_logger(__name__)


async def _write_atomic(path: Path, content: str) -> None:
    """Write text to ``path`` through a temporary file and rename."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(path.name + ".tmp")

    async with aiofiles.open(tmp_path, "w") as f:
        await f.write(content)

    # Atomic rename - safe on POSIX when same filesystem
    tmp_path.replace(path)


class SessionStore:
    """Atomic JSON persistence for the session snapshot.

    Attributes:
        path: Location of the snapshot file.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self._lock = asyncio.Lock()

    async def save(self, session: AutoBuildSession) -> None:
        """Write the snapshot, replacing any previous one.

        Raises:
            OSError: If the file cannot be written.
        """
        payload = session.model_dump_json(by_alias=True, indent=2)
        async with self._lock:
            await _write_atomic(self.path, payload)
        log.debug("session_saved", session=session.session_id, status=str(session.status))

    async def load(self) -> AutoBuildSession | None:
        """Read the snapshot as written.

        Returns:
            The stored session, or None when no snapshot exists.

        Raises:
            SessionStateError: If the file exists but is not a valid snapshot.
        """
        if not self.path.exists():
            return None

        async with self._lock:
            async with aiofiles.open(self.path) as f:
                content = await f.read()

        try:
            return AutoBuildSession.model_validate(json.loads(content))
        except (json.JSONDecodeError, ValidationError) as e:
            raise SessionStateError(f"Corrupt session file {self.path}: {e}") from e

    async def recover(self) -> AutoBuildSession | None:
        """Load a resumable session.

        Returns:
            The stored session with a running status downgraded to paused,
            or None when there is nothing to resume.
        """
        session = await self.load()
        if session is None or not session.is_active:
            return None
        if session.status == SessionStatus.RUNNING:
            session = session.model_copy(update={"status": SessionStatus.PAUSED})
        log.info("session_recovered", session=session.session_id, queued=len(session.queue))
        return session

    async def clear(self) -> bool:
        """Delete the snapshot. Returns True if a file was removed."""
        async with self._lock:
            if not self.path.exists():
                return False
            self.path.unlink()
        log.info("session_cleared", path=str(self.path))
        return True


class ProgressStore:
    """Markdown progress records, one per in-flight issue."""

    def __init__(self, directory: str | Path) -> None:
        self.directory = Path(directory)

    def path_for(self, issue_id: str) -> Path:
        return self.directory / f"{issue_id}.md"

    async def write(self, record: ProgressRecord) -> Path:
        path = self.path_for(record.issue_id)
        await _write_atomic(path, record.to_markdown())
        return path

    async def read(self, issue_id: str) -> str | None:
        path = self.path_for(issue_id)
        if not path.exists():
            return None
        async with aiofiles.open(path) as f:
            return await f.read()

    async def remove(self, issue_id: str) -> bool:
        path = self.path_for(issue_id)
        if not path.exists():
            return False
        path.unlink()
        return True

    def issue_ids(self) -> list[str]:
        if not self.directory.is_dir():
            return []
        return sorted(p.stem for p in self.directory.glob("*.md"))
