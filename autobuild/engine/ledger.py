"""
Session ledger: session lifecycle plus the append-only activity log.

Only the Orchestrator holds a ``SessionLedger``. Everything else (the HTTP
control routes, the CLI status view, tests) receives an ``ActivityLogView``,
which can read entries but has no way to append.

Session Lifecycle:
    idle -> running             start
    running -> paused           pause
    paused -> running           resume
    running/paused -> error     coordinator unavailable
    any -> idle                 stop

Any other status change raises ``SessionStateError``.
"""

from __future__ import annotations

import uuid
from collections import deque
from collections.abc import Iterator
from datetime import UTC, datetime

import structlog

from autobuild.enums import LogEntryType, SessionStatus
from autobuild.exceptions import SessionStateError
from autobuild.models.domain import LogEntry

log = structlog.get_logger(__name__)

DEFAULT_MAX_ENTRIES = 100

SESSION_TRANSITIONS: dict[SessionStatus, frozenset[SessionStatus]] = {
    SessionStatus.IDLE: frozenset({SessionStatus.RUNNING, SessionStatus.IDLE}),
    SessionStatus.RUNNING: frozenset({SessionStatus.PAUSED, SessionStatus.ERROR, SessionStatus.IDLE}),
    SessionStatus.PAUSED: frozenset({SessionStatus.RUNNING, SessionStatus.ERROR, SessionStatus.IDLE}),
    SessionStatus.ERROR: frozenset({SessionStatus.IDLE}),
}

_LEVELS = {
    LogEntryType.INFO: "info",
    LogEntryType.SUCCESS: "info",
    LogEntryType.AGENT: "debug",
    LogEntryType.WARNING: "warning",
    LogEntryType.ERROR: "error",
}


class ActivityLog:
    """Bounded, append-only sequence of immutable log entries.

    The newest ``max_entries`` entries are retained in memory; ``total``
    counts every entry ever appended.
    """

    def __init__(self, max_entries: int = DEFAULT_MAX_ENTRIES) -> None:
        self._entries: deque[LogEntry] = deque(maxlen=max_entries)
        self.total = 0

    def append(
        self,
        entry_type: LogEntryType,
        message: str,
        issue_id: str | None = None,
        worker_id: int | None = None,
    ) -> LogEntry:
        entry = LogEntry(type=entry_type, message=message, issue_id=issue_id, worker_id=worker_id)
        self._entries.append(entry)
        self.total += 1
        getattr(log, _LEVELS[entry_type])(
            "activity", kind=str(entry_type), message=message, issue=issue_id, worker=worker_id
        )
        return entry

    def view(self) -> ActivityLogView:
        return ActivityLogView(self)

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[LogEntry]:
        return iter(tuple(self._entries))


class ActivityLogView:
    """Read-only window onto an ActivityLog."""

    def __init__(self, activity_log: ActivityLog) -> None:
        self._log = activity_log

    def entries(self) -> list[LogEntry]:
        return list(self._log)

    def recent(self, limit: int = 20) -> list[LogEntry]:
        """Return the newest ``limit`` entries, oldest first."""
        if limit <= 0:
            return []
        return list(self._log)[-limit:]

    def for_issue(self, issue_id: str) -> list[LogEntry]:
        return [entry for entry in self._log if entry.issue_id == issue_id]

    @property
    def total(self) -> int:
        return self._log.total

    def __len__(self) -> int:
        return len(self._log)

    def __iter__(self) -> Iterator[LogEntry]:
        return iter(self._log)


class SessionLedger:
    """Session identity, status and activity, owned by the Orchestrator."""

    def __init__(self, max_entries: int = DEFAULT_MAX_ENTRIES) -> None:
        self.session_id = uuid.uuid4().hex
        self.status = SessionStatus.IDLE
        self.started_at = datetime.now(UTC)
        self.last_activity_at = self.started_at
        self.activity = ActivityLog(max_entries)

    @property
    def log_view(self) -> ActivityLogView:
        return self.activity.view()

    def transition(self, target: SessionStatus) -> SessionStatus:
        """Move the session to ``target``.

        Returns:
            The previous status.

        Raises:
            SessionStateError: If the change is not in the lifecycle table.
        """
        source = self.status
        if target not in SESSION_TRANSITIONS[source]:
            raise SessionStateError(f"Cannot move session from {source} to {target}")
        self.status = target
        self.touch()
        log.info("session_status_changed", session=self.session_id, source=str(source), target=str(target))
        return source

    def begin(self, session_id: str | None = None, started_at: datetime | None = None) -> None:
        """Start a fresh session identity, or adopt a restored one."""
        self.session_id = session_id or uuid.uuid4().hex
        self.started_at = started_at or datetime.now(UTC)
        self.touch()

    def touch(self) -> None:
        self.last_activity_at = datetime.now(UTC)

    def record(
        self,
        entry_type: LogEntryType,
        message: str,
        issue_id: str | None = None,
        worker_id: int | None = None,
    ) -> LogEntry:
        self.touch()
        return self.activity.append(entry_type, message, issue_id=issue_id, worker_id=worker_id)
