"""
Issue queue with eligibility filtering and phase-grouped ordering.

The IssueQueueManager tracks every issue known to the session in exactly one
of four places: pending, claimed (by a worker slot), completed, or awaiting
human review. ``queue`` in the session snapshot is pending plus claimed, so
the three persisted partitions stay disjoint by construction.

Selection Order:
    Eligible issues are grouped by ``phase`` ascending, phase-less issues
    last. Within a group they sort by priority (0 = critical first), then
    creation time, then id. ``claim`` hands out the head of the first
    non-empty group.

Eligibility:
    An issue is eligible when its status is ``open``, its priority is at or
    below the configured threshold, and every ``blocks`` dependency points at
    an issue that is closed or already completed in this session. Targets the
    session has never seen are treated as resolved.

Concurrency Model:
    All tables are guarded by one ``threading.Lock``; every method is a short
    critical section, so ``claim`` can never hand the same id to two callers.
"""

from __future__ import annotations

import threading
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime

import structlog

from autobuild.enums import DependencyType, IssueStatus
from autobuild.models.domain import Issue

log = structlog.get_logger(__name__)

_NO_PHASE = float("inf")


@dataclass(frozen=True)
class QueueSnapshot:
    """Consistent view of the session partitions."""

    queue: list[str] = field(default_factory=list)
    completed: list[str] = field(default_factory=list)
    human_review: list[str] = field(default_factory=list)
    claimed: dict[str, int] = field(default_factory=dict)


def sort_key(issue: Issue) -> tuple[float, int, datetime, str]:
    """Ordering key: phase group, then priority, then age, then id."""
    phase = issue.phase if issue.phase is not None else _NO_PHASE
    return (phase, issue.priority, issue.created_at, issue.id)


def assign_phases(children: Iterable[Issue]) -> dict[str, int]:
    """Derive scheduling phases for the children of an epic.

    A child without an explicit phase gets ``1 + n`` where ``n`` is the length
    of the longest chain of ``blocks`` edges leading to it from its siblings.
    Children with an explicit phase keep it. Cycles are cut at the point they
    are detected.

    Args:
        children: Sibling issues sharing one parent epic.

    Returns:
        Mapping of issue id to phase for every child.
    """
    siblings = {issue.id: issue for issue in children}
    depth: dict[str, int] = {}
    visiting: set[str] = set()

    def chain_length(issue_id: str) -> int:
        if issue_id in depth:
            return depth[issue_id]
        if issue_id in visiting:
            return 0
        visiting.add(issue_id)
        blockers = [b for b in siblings[issue_id].blockers if b in siblings]
        result = max((chain_length(b) + 1 for b in blockers), default=0)
        visiting.discard(issue_id)
        depth[issue_id] = result
        return result

    phases = {}
    for issue_id, issue in siblings.items():
        phases[issue_id] = issue.phase if issue.phase is not None else 1 + chain_length(issue_id)
    return phases


class IssueQueueManager:
    """Selects and atomically hands out eligible issues.

    Attributes:
        priority_threshold: Least urgent priority eligible for selection.
    """

    def __init__(self, priority_threshold: int = 4) -> None:
        self.priority_threshold = priority_threshold
        self._lock = threading.Lock()
        self._known: dict[str, Issue] = {}
        self._pending: dict[str, None] = {}
        self._claimed: dict[str, int] = {}
        self._completed: dict[str, None] = {}
        self._review: dict[str, None] = {}

    def add(self, issues: Iterable[Issue]) -> list[str]:
        """Register issues with the session and queue the new ones.

        Ids already pending, claimed, completed or under review keep their
        place; only their cached record is refreshed.

        Returns:
            Ids newly placed in the pending pool.
        """
        added = []
        with self._lock:
            for issue in issues:
                self._known[issue.id] = issue
                if issue.id in self._pending or issue.id in self._claimed:
                    continue
                if issue.id in self._completed or issue.id in self._review:
                    continue
                self._pending[issue.id] = None
                added.append(issue.id)
        if added:
            log.info("issues_enqueued", count=len(added), issues=added)
        return added

    def update_known(self, issues: Iterable[Issue]) -> None:
        """Refresh cached records without queueing anything.

        Used to learn the status of blocker targets outside the session.
        """
        with self._lock:
            for issue in issues:
                self._known[issue.id] = issue

    def refresh(self, issue: Issue) -> None:
        self.update_known([issue])

    def get(self, issue_id: str) -> Issue | None:
        with self._lock:
            return self._known.get(issue_id)

    def claim(self, worker_id: int) -> Issue | None:
        """Remove and return the next eligible issue, recording the claimant.

        Returns:
            The claimed issue, or None when nothing is eligible.
        """
        with self._lock:
            candidates = [self._known[i] for i in self._pending if self._is_eligible(self._known[i])]
            if not candidates:
                return None
            issue = min(candidates, key=sort_key)
            del self._pending[issue.id]
            self._claimed[issue.id] = worker_id
        log.info("issue_claimed", issue=issue.id, worker=worker_id, phase=issue.phase, priority=issue.priority)
        return issue

    def release(self, issue_id: str) -> bool:
        """Return a claimed issue to the pending pool.

        Returns:
            True when the issue was claimed and is now pending again.
        """
        with self._lock:
            if issue_id not in self._claimed:
                return False
            del self._claimed[issue_id]
            self._pending[issue_id] = None
        log.info("issue_released", issue=issue_id)
        return True

    def complete(self, issue_id: str) -> None:
        """Move an issue into ``completed`` from wherever it is."""
        with self._lock:
            self._detach(issue_id)
            self._completed[issue_id] = None

    def require_review(self, issue_id: str) -> None:
        """Move an issue into ``human_review`` from wherever it is."""
        with self._lock:
            self._detach(issue_id)
            self._review[issue_id] = None

    def requeue(self, issue_id: str) -> bool:
        """Move an issue from ``human_review`` or a claim back to pending."""
        with self._lock:
            if issue_id not in self._review and issue_id not in self._claimed:
                return False
            self._detach(issue_id)
            self._pending[issue_id] = None
        log.info("issue_requeued", issue=issue_id)
        return True

    def abandon(self, issue_id: str) -> bool:
        """Drop a pending, claimed or in-review issue from the session.

        Completed issues stay completed. Returns False if nothing was dropped.
        """
        with self._lock:
            found = self._detach(issue_id)
        if found:
            log.info("issue_abandoned", issue=issue_id)
        return found

    def enqueue_epic(self, epic_id: str) -> list[str]:
        """Queue the children of an epic, deriving phases where missing.

        Children must already be known through ``update_known``. Closed
        children are skipped.

        Returns:
            Ids newly placed in the pending pool.
        """
        with self._lock:
            children = [i for i in self._known.values() if epic_id in i.parent_ids]
        if not children:
            log.warning("epic_has_no_children", epic=epic_id)
            return []

        phases = assign_phases(children)
        staged = []
        for child in children:
            if child.status == IssueStatus.CLOSED:
                continue
            if child.phase is None:
                child.phase = phases[child.id]
            staged.append(child)
        log.info("epic_expanded", epic=epic_id, children=len(children), phases=phases)
        return self.add(staged)

    def restore(self, completed: Iterable[str], human_review: Iterable[str]) -> None:
        """Seed the terminal partitions from a persisted session."""
        with self._lock:
            for issue_id in completed:
                self._pending.pop(issue_id, None)
                self._completed[issue_id] = None
            for issue_id in human_review:
                if issue_id in self._completed:
                    continue
                self._pending.pop(issue_id, None)
                self._review[issue_id] = None

    def has_eligible(self) -> bool:
        with self._lock:
            return any(self._is_eligible(self._known[i]) for i in self._pending)

    def pending_ids(self) -> list[str]:
        """Pending ids in the order ``claim`` would hand them out if all were eligible."""
        with self._lock:
            return [i.id for i in sorted((self._known[i] for i in self._pending), key=sort_key)]

    def claimed_by(self, issue_id: str) -> int | None:
        with self._lock:
            return self._claimed.get(issue_id)

    def snapshot(self) -> QueueSnapshot:
        with self._lock:
            pending = [i.id for i in sorted((self._known[i] for i in self._pending), key=sort_key)]
            return QueueSnapshot(
                queue=list(self._claimed) + pending,
                completed=list(self._completed),
                human_review=list(self._review),
                claimed=dict(self._claimed),
            )

    def _detach(self, issue_id: str) -> bool:
        """Remove an id from pending, claimed and review. Caller holds the lock."""
        found = False
        for table in (self._pending, self._claimed, self._review):
            if issue_id in table:
                del table[issue_id]
                found = True
        return found

    def _is_eligible(self, issue: Issue) -> bool:
        if issue.status != IssueStatus.OPEN:
            return False
        if issue.priority > self.priority_threshold:
            return False
        for dependency in issue.dependencies:
            if dependency.type != DependencyType.BLOCKS:
                continue
            if not self._is_resolved(dependency.depends_on_id):
                return False
        return True

    def _is_resolved(self, issue_id: str) -> bool:
        if issue_id in self._completed:
            return True
        target = self._known.get(issue_id)
        if target is None:
            return True
        return target.status == IssueStatus.CLOSED
