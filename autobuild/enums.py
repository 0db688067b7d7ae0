"""Enumerations for autobuild session, worker and issue states."""

from enum import Enum


class SessionStatus(str, Enum):
    """Lifecycle status of an AutoBuild session."""

    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    ERROR = "error"

    def __str__(self) -> str:
        return self.value


class WorkerPhase(str, Enum):
    """Phases of the per-worker state machine.

    ``DONE`` is terminal for an issue; ``FAILED`` routes the issue to human
    review. Both fall straight back to ``IDLE`` so the slot can be reused.
    """

    IDLE = "idle"
    SELECTING = "selecting"
    WORKING = "working"
    TESTING = "testing"
    FIXING = "fixing"
    REVIEWING = "reviewing"
    COMMITTING = "committing"
    DONE = "done"
    FAILED = "failed"

    def __str__(self) -> str:
        return self.value

    @property
    def label(self) -> str:
        """Human-readable description used in logs and progress records."""
        return PHASE_LABELS[self]


PHASE_LABELS: dict[WorkerPhase, str] = {
    WorkerPhase.IDLE: "Idle",
    WorkerPhase.SELECTING: "Selecting next issue",
    WorkerPhase.WORKING: "Working on code",
    WorkerPhase.TESTING: "Running verification",
    WorkerPhase.FIXING: "Fixing issues",
    WorkerPhase.REVIEWING: "Awaiting review",
    WorkerPhase.COMMITTING: "Committing changes",
    WorkerPhase.DONE: "Done",
    WorkerPhase.FAILED: "Failed",
}


class IssueStatus(str, Enum):
    """Issue status as reported by the tracker."""

    OPEN = "open"
    IN_PROGRESS = "in_progress"
    BLOCKED = "blocked"
    CLOSED = "closed"

    def __str__(self) -> str:
        return self.value


class DependencyType(str, Enum):
    """Typed dependency edges between issues."""

    PARENT_CHILD = "parent-child"
    BLOCKS = "blocks"
    RELATED = "related"

    def __str__(self) -> str:
        return self.value

    @classmethod
    def parse(cls, value: str) -> "DependencyType":
        """Parse a tracker edge type, accepting ``relates_to`` as ``related``."""
        normalized = value.strip().lower().replace("_", "-")
        if normalized in ("relates-to", "related"):
            return cls.RELATED
        return cls(normalized)


class LogEntryType(str, Enum):
    """Kinds of activity log entries."""

    INFO = "info"
    SUCCESS = "success"
    ERROR = "error"
    WARNING = "warning"
    AGENT = "agent"

    def __str__(self) -> str:
        return self.value


class GateName(str, Enum):
    """Verification gates, in execution order."""

    LINT = "lint"
    TESTS = "tests"
    BUILD = "build"

    def __str__(self) -> str:
        return self.value


class ReviewAction(str, Enum):
    """Operator decision for an issue awaiting human review."""

    APPROVE = "approve"
    REQUEUE = "requeue"
    ABANDON = "abandon"

    def __str__(self) -> str:
        return self.value
