"""
Domain models for the orchestrator.

This module contains the data classes passed between the queue manager,
workers, verification runner and orchestrator. Issues are owned by the
external tracker: the orchestrator only caches enough of each record to
schedule it, and never persists issue content.

Example:
    Building an issue from tracker data::

        issue = Issue(
            id="ab-12",
            title="Add retry to uploader",
            status=IssueStatus.OPEN,
            priority=1,
            issue_type="feature",
            created_at=datetime.now(UTC),
            phase=1,
        )
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from autobuild.enums import DependencyType, GateName, IssueStatus, LogEntryType, WorkerPhase

PATH_LABEL_PREFIX = "path:"


@dataclass(frozen=True)
class IssueDependency:
    """A typed edge from one issue to another.

    ``issue_id`` depends on ``depends_on_id``. For ``BLOCKS`` edges this
    means ``issue_id`` cannot start until ``depends_on_id`` is closed.
    For ``PARENT_CHILD`` edges ``depends_on_id`` is the parent (epic).
    """

    issue_id: str
    depends_on_id: str
    type: DependencyType


@dataclass
class Issue:
    """Cached view of a tracker issue.

    Only ``id`` is authoritative for the orchestrator; the remaining fields
    are a scheduling snapshot refreshed whenever the tracker is re-read.
    """

    id: str
    title: str
    status: IssueStatus
    priority: int
    issue_type: str
    created_at: datetime
    dependencies: list[IssueDependency] = field(default_factory=list)
    phase: int | None = None
    description: str = ""
    labels: list[str] = field(default_factory=list)

    @property
    def blockers(self) -> list[str]:
        """Ids of issues this issue is blocked by."""
        return [d.depends_on_id for d in self.dependencies if d.type == DependencyType.BLOCKS]

    @property
    def parent_ids(self) -> list[str]:
        """Ids of the epics this issue belongs to."""
        return [d.depends_on_id for d in self.dependencies if d.type == DependencyType.PARENT_CHILD]

    @property
    def paths(self) -> list[str]:
        """File paths declared up front through ``path:`` labels."""
        return [label[len(PATH_LABEL_PREFIX) :].strip() for label in self.labels if label.startswith(PATH_LABEL_PREFIX)]


@dataclass(frozen=True)
class GateResult:
    """Outcome of one verification gate.

    Attributes:
        success: True when the gate exited zero (or was skipped).
        output: Combined stdout and stderr.
        skipped: True when the gate is disabled in settings.
        related: Whether a failure was attributed to the worker's own
            changes. Always True for passing gates.
    """

    success: bool
    output: str = ""
    skipped: bool = False
    related: bool = True

    @property
    def blocking(self) -> bool:
        """A gate blocks progress only when it failed for a related reason."""
        return not self.success and self.related


@dataclass(frozen=True)
class VerificationResult:
    """Immutable record of one pass through the gates."""

    lint: GateResult
    tests: GateResult
    build: GateResult

    def gates(self) -> dict[GateName, GateResult]:
        return {GateName.LINT: self.lint, GateName.TESTS: self.tests, GateName.BUILD: self.build}

    @property
    def success(self) -> bool:
        """True when every gate passed outright."""
        return all(gate.success for gate in self.gates().values())

    @property
    def passed(self) -> bool:
        """True when no gate failure is attributable to the worker."""
        return not any(gate.blocking for gate in self.gates().values())

    @property
    def failed_gates(self) -> list[GateName]:
        return [name for name, gate in self.gates().items() if not gate.success]

    @property
    def ignored_gates(self) -> list[GateName]:
        """Gates that failed but were judged unrelated."""
        return [name for name, gate in self.gates().items() if not gate.success and not gate.related]

    def failure_summary(self, max_chars: int = 4000) -> str:
        """Concatenate blocking gate output for the fixing prompt."""
        parts = []
        for name, gate in self.gates().items():
            if gate.blocking:
                parts.append(f"## {name} failed\n{gate.output.strip()}")
        summary = "\n\n".join(parts)
        return summary[-max_chars:] if len(summary) > max_chars else summary


@dataclass
class AgentEvent:
    """Streaming progress reported by the agent while it works."""

    kind: str
    message: str
    tool: str | None = None
    path: str | None = None


@dataclass
class AgentRequest:
    """Everything the agent needs for one invocation.

    Attributes:
        issue: The issue being worked.
        working_dir: Root of the shared working tree.
        worker_id: Pool slot, forwarded so the agent can take leases itself.
        mode: ``"implement"`` for the first pass, ``"fix"`` for remediation.
        feedback: Failure output the fix should address.
        progress: Markdown progress record from earlier passes, if any.
    """

    issue: Issue
    working_dir: str
    worker_id: int
    mode: str = "implement"
    feedback: str = ""
    progress: str | None = None


@dataclass
class AgentResult:
    """Outcome reported by the agent.

    ``success`` False is a transient failure the fixing loop may recover
    from; crashes are raised as ``AgentCrashError`` instead.
    """

    success: bool
    output: str = ""
    files_modified: list[str] = field(default_factory=list)
    error: str | None = None


def _new_entry_id() -> str:
    return uuid.uuid4().hex[:12]


@dataclass(frozen=True)
class LogEntry:
    """One immutable activity log entry."""

    type: LogEntryType
    message: str
    issue_id: str | None = None
    worker_id: int | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))
    id: str = field(default_factory=_new_entry_id)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": self.timestamp.isoformat(),
            "type": self.type.value,
            "message": self.message,
            "issueId": self.issue_id,
            "workerId": self.worker_id,
        }


@dataclass
class ProgressRecord:
    """Human-readable progress note for one in-flight issue."""

    issue_id: str
    issue_title: str
    issue_type: str
    current_step: WorkerPhase
    summary: str = ""
    next_step: str = ""
    files_modified: list[str] = field(default_factory=list)
    notes: str = ""
    last_updated: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_markdown(self) -> str:
        files = "\n".join(f"- `{path}`" for path in self.files_modified) or "- (none yet)"
        lines = [
            f"# {self.issue_id}: {self.issue_title}",
            "",
            f"- **Type:** {self.issue_type}",
            f"- **Current step:** {self.current_step.label}",
            f"- **Last updated:** {self.last_updated.isoformat()}",
            "",
            "## What was done",
            self.summary or "(nothing yet)",
            "",
            "## What's next",
            self.next_step or "(undecided)",
            "",
            "## Files modified",
            files,
        ]
        if self.notes:
            lines += ["", "## Notes", self.notes]
        return "\n".join(lines) + "\n"
