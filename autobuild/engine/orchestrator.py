"""
Orchestrator: owns the worker pool and the session.

The Orchestrator is the single coordinating actor of a session. Workers run
as asyncio tasks and report every step back through the ``WorkerReporter``
callbacks implemented here; all changes to the queue partitions, the activity
log and the persisted snapshot happen inside those callbacks, between the
workers' own awaits. Operator actions (pause, approve, reject, commit, skip)
are methods on the same object, called from the CLI or the HTTP control
routes running on the same event loop.

Session Lifecycle:
    ``start`` moves an idle session to running and spawns
    ``max_concurrent_issues`` workers. ``pause`` stops new claims and lets
    active workers reach their next resting point. ``stop`` cancels every
    worker, releases their leases, returns in-flight issues to the queue and
    leaves the session idle. ``shutdown`` does the same but keeps the status,
    so the snapshot can be restored later. A lock service outage moves a
    running or paused session to ``error``: no new claims, active workers
    drain.

Orphaned Reviews:
    An issue can sit in ``human_review`` with no worker: it failed, or its
    worker was cancelled while it waited for review or a commit trigger.
    ``approve`` and ``trigger_commit`` commit such an issue here.

Tracker Updates:
    Claiming an issue marks it ``in_progress`` (conditional on it still being
    ``open``); finishing closes it; failing marks it ``blocked``. Tracker
    hiccups on these cosmetic updates are logged and do not fail the issue.
    Only a conditional-update conflict at claim time changes control flow.

Example:
    >>> orchestrator = Orchestrator(settings, tracker, agent, committer, locks)
    >>> await orchestrator.enqueue(["ab-1", "ab-2"])
    >>> await orchestrator.start()
    >>> await orchestrator.wait_until_idle()
    >>> await orchestrator.stop()
"""

from __future__ import annotations

import asyncio
from collections.abc import Sequence

import structlog

from autobuild.config.settings import AutoBuildSettings, OrchestratorSettings
from autobuild.coordinator.client import LockClient
from autobuild.coordinator.file_coordinator import LockResult
from autobuild.engine.ledger import ActivityLogView, SessionLedger
from autobuild.engine.queue_manager import IssueQueueManager
from autobuild.engine.state_manager import ProgressStore, SessionStore
from autobuild.engine.verification import VerificationRunner
from autobuild.engine.worker import Worker, WorkerReporter, WorkerServices
from autobuild.enums import IssueStatus, LogEntryType, ReviewAction, SessionStatus, WorkerPhase
from autobuild.exceptions import (
    AutoBuildError,
    CommitError,
    CoordinatorUnavailableError,
    ReviewError,
    SessionStateError,
    TrackerConflictError,
    TrackerError,
)
from autobuild.models.domain import AgentEvent, AgentResult, Issue, ProgressRecord, VerificationResult
from autobuild.models.session import AutoBuildSession
from autobuild.providers.base import AgentRunner, Committer, IssueTracker

log = structlog.get_logger(__name__)

CLOSE_REASON = "Completed by Auto Build"

NEXT_STEPS: dict[WorkerPhase, str] = {
    WorkerPhase.SELECTING: "Acquire file leases and start work",
    WorkerPhase.WORKING: "Run verification once the agent finishes",
    WorkerPhase.TESTING: "Commit, request review or fix failures",
    WorkerPhase.FIXING: "Re-run verification after the fix",
    WorkerPhase.REVIEWING: "Wait for an operator to approve or reject",
    WorkerPhase.COMMITTING: "Commit the working tree",
    WorkerPhase.DONE: "Close the issue",
    WorkerPhase.FAILED: "Operator decision needed",
}


class Orchestrator(WorkerReporter):
    """Coordinates workers, partitions, tracker and persistence for one session.

    Attributes:
        config: Full orchestrator settings.
        autobuild: Live session settings (pool size, gates, retries...).
        queue: Issue queue and partitions.
        ledger: Session status and activity log.
        workers: Active worker slots by id.
    """

    def __init__(
        self,
        settings: OrchestratorSettings,
        tracker: IssueTracker,
        agent: AgentRunner,
        committer: Committer,
        locks: LockClient,
        verifier: VerificationRunner | None = None,
        session_store: SessionStore | None = None,
        progress_store: ProgressStore | None = None,
    ) -> None:
        """Wire the orchestrator to its collaborators.

        Args:
            settings: Orchestrator settings; ``settings.autobuild`` seeds the
                live session settings.
            tracker: Issue tracker adapter.
            agent: Coding agent adapter.
            committer: Commit adapter.
            locks: Client for the file coordinator.
            verifier: Gate runner. Built from ``settings.verification`` if omitted.
            session_store: Snapshot store. Defaults to ``settings.session_path``.
            progress_store: Progress records. Defaults to ``settings.progress_dir``.
        """
        super().__init__(settings.autobuild)
        self.config = settings
        self.tracker = tracker
        self.agent = agent
        self.committer = committer
        self.locks = locks
        self.verifier = verifier or VerificationRunner(settings.project_path, settings.verification)
        self.session_store = session_store or SessionStore(settings.session_path)
        self.progress_store = progress_store or ProgressStore(settings.progress_dir)
        self.queue = IssueQueueManager(self.autobuild.priority_threshold)
        self.ledger = SessionLedger()
        self.workers: dict[int, Worker] = {}
        self.retry_counts: dict[str, int] = {}
        self._tasks: dict[int, asyncio.Task[None]] = {}
        self._marked_in_progress: set[str] = set()
        self._cancelled: list[str] = []
        self._services = WorkerServices(
            queue=self.queue,
            locks=locks,
            agent=agent,
            verifier=self.verifier,
            committer=committer,
            project_path=settings.project_path,
            config=settings.worker,
        )
        # No claims until the session starts.
        self.halt_event.set()

    @property
    def status(self) -> SessionStatus:
        return self.ledger.status

    @property
    def activity(self) -> ActivityLogView:
        return self.ledger.log_view

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start an idle session and spawn the worker pool.

        Raises:
            SessionStateError: If the session is not idle.
        """
        if self.status is not SessionStatus.IDLE:
            raise SessionStateError(f"Cannot start a session that is {self.status}")
        self.ledger.transition(SessionStatus.RUNNING)
        self.halt_event.clear()
        self._ensure_pool()
        self._record(LogEntryType.INFO, f"Auto Build started with {self.autobuild.max_concurrent_issues} workers")
        await self._persist()

    async def restore(self) -> bool:
        """Adopt a persisted session as paused.

        Returns:
            True when a running or paused snapshot was found and restored.

        Raises:
            SessionStateError: If this session is not idle or the snapshot is corrupt.
        """
        if self.status is not SessionStatus.IDLE:
            raise SessionStateError("Cannot restore into an active session")
        session = await self.session_store.recover()
        if session is None:
            return False

        self.ledger.begin(session.session_id, session.started_at)
        self.ledger.status = SessionStatus.PAUSED
        self.autobuild = session.settings
        self.queue.priority_threshold = session.settings.priority_threshold
        self.retry_counts = dict(session.retry_counts)
        self.queue.restore(session.completed, session.human_review)

        queued = set(session.queue)
        issues = await self.tracker.list_issues()
        self.queue.update_known(issues)
        found = [issue for issue in issues if issue.id in queued]
        missing = queued - {issue.id for issue in found}
        if missing:
            log.warning("restored_issues_missing", issues=sorted(missing))
        self.queue.add(found)

        self._record(LogEntryType.INFO, f"Session restored as paused with {len(found)} queued issues")
        await self._persist()
        return True

    async def pause(self) -> None:
        """Stop new claims; active workers run on to their next resting point.

        Raises:
            SessionStateError: If the session is not running.
        """
        self.ledger.transition(SessionStatus.PAUSED)
        self.halt_event.set()
        self._record(LogEntryType.INFO, "Auto Build paused")
        await self._persist()

    async def resume(self) -> None:
        """Resume a paused session.

        Raises:
            SessionStateError: If the session is not paused.
        """
        if self.status is not SessionStatus.PAUSED:
            raise SessionStateError(f"Cannot resume a session that is {self.status}")
        self.ledger.transition(SessionStatus.RUNNING)
        self.halt_event.clear()
        self._ensure_pool()
        self._record(LogEntryType.INFO, "Auto Build resumed")
        await self._persist()

    async def stop(self) -> None:
        """Cancel all workers, release their leases and go idle.

        An idle snapshot is not resumable; use ``shutdown`` to leave the
        session for a later ``restore``.
        """
        await self._cancel_workers()
        self.ledger.transition(SessionStatus.IDLE)
        self._record(LogEntryType.INFO, "Auto Build stopped")
        await self._persist()

    async def shutdown(self) -> None:
        """Cancel all workers and release their leases, keeping the session resumable.

        In-flight issues go back to the queue, issues in review stay in
        ``human_review``, and the persisted status is left as it is, so a
        running or paused session is restored (as paused) by the next
        ``restore``.
        """
        await self._cancel_workers()
        self._record(LogEntryType.INFO, f"Auto Build shut down while {self.status}")
        await self._persist()

    async def update_settings(self, settings: AutoBuildSettings) -> None:
        """Replace the session settings, resizing a live pool.

        Workers pick up the new settings when they claim their next issue.
        Surplus workers retire once idle.
        """
        self.autobuild = settings
        self.queue.priority_threshold = settings.priority_threshold
        if self.status in (SessionStatus.RUNNING, SessionStatus.PAUSED):
            self._ensure_pool()
        self._record(LogEntryType.INFO, f"Settings updated (pool size {settings.max_concurrent_issues})")
        await self._persist()

    async def wait_until_idle(self, poll_interval: float | None = None) -> None:
        """Wait until there is nothing left to do.

        Returns when no worker is busy and either no eligible issue remains,
        the session fell into ``error``, or it was stopped. A paused session
        keeps waiting.
        """
        interval = poll_interval or self.config.worker.idle_poll_interval
        while not self.is_drained():
            await asyncio.sleep(interval)

    def is_drained(self) -> bool:
        if any(worker.is_busy for worker in self.workers.values()):
            return False
        if self.status in (SessionStatus.IDLE, SessionStatus.ERROR):
            return True
        if self.status is SessionStatus.PAUSED:
            return False
        return not self.queue.has_eligible()

    # ------------------------------------------------------------------
    # Queue management
    # ------------------------------------------------------------------

    async def enqueue(self, issue_ids: Sequence[str] | None = None) -> list[str]:
        """Queue issues from the tracker.

        Args:
            issue_ids: Issues to queue. None queues every open issue.

        Returns:
            Ids newly queued.

        Raises:
            TrackerError: If the tracker cannot be read or an id is unknown.
        """
        issues = await self.tracker.list_issues()
        self.queue.update_known(issues)
        if issue_ids is None:
            targets = [issue for issue in issues if issue.status is IssueStatus.OPEN]
        else:
            by_id = {issue.id: issue for issue in issues}
            targets = []
            for issue_id in issue_ids:
                issue = by_id.get(issue_id)
                targets.append(issue if issue is not None else await self.tracker.get_issue(issue_id))

        added = self.queue.add(targets)
        self._record(LogEntryType.INFO, f"Queued {len(added)} issues")
        await self._persist()
        return added

    async def enqueue_epic(self, epic_id: str) -> list[str]:
        """Queue the open children of an epic, phased by their blocking chains."""
        issues = await self.tracker.list_issues()
        self.queue.update_known(issues)
        added = self.queue.enqueue_epic(epic_id)
        self._record(LogEntryType.INFO, f"Queued {len(added)} issues from epic {epic_id}", issue_id=epic_id)
        await self._persist()
        return added

    async def skip(self, issue_id: str) -> None:
        """Drop a queued or orphaned in-review issue from the session.

        Raises:
            ReviewError: If a worker holds the issue or it is not queued.
        """
        if self._worker_for(issue_id) is not None:
            raise ReviewError(f"Issue {issue_id} is being worked on; reject it once it reaches review")
        if not self.queue.abandon(issue_id):
            raise ReviewError(f"Issue {issue_id} is not queued")
        self._record(LogEntryType.WARNING, "Skipped", issue_id=issue_id)
        await self._persist()

    # ------------------------------------------------------------------
    # Operator decisions
    # ------------------------------------------------------------------

    async def approve(self, issue_id: str) -> None:
        """Approve an issue in review.

        A worker holding the issue in review goes on to commit it. An issue
        left in ``human_review`` with no worker (the session was stopped or
        restarted while it waited) is committed here and completed.

        Raises:
            ReviewError: If the issue is not in review.
            CommitError: If committing an orphaned issue fails.
        """
        worker = self._worker_for(issue_id)
        if worker is not None and worker.decide(ReviewAction.APPROVE):
            self._record(LogEntryType.SUCCESS, "Approved", issue_id=issue_id, worker_id=worker.id)
            return
        if not self._is_orphaned_review(issue_id):
            raise ReviewError(f"Issue {issue_id} is not awaiting review")
        await self._commit_orphan(issue_id, "Approved")

    async def reject(self, issue_id: str, requeue: bool = True) -> None:
        """Reject an issue in review, requeueing or abandoning it.

        Works both for issues a worker holds in review and for failed issues
        waiting in ``human_review`` without a worker.

        Raises:
            ReviewError: If the issue is not in review.
        """
        action = ReviewAction.REQUEUE if requeue else ReviewAction.ABANDON
        worker = self._worker_for(issue_id)
        if worker is not None and worker.decide(action):
            return

        if issue_id not in self.queue.snapshot().human_review:
            raise ReviewError(f"Issue {issue_id} is not awaiting review")
        if requeue:
            self.queue.requeue(issue_id)
            self.retry_counts.pop(issue_id, None)
            await self._set_tracker_status(issue_id, IssueStatus.OPEN)
            self._record(LogEntryType.INFO, "Rejected and requeued", issue_id=issue_id)
        else:
            self.queue.abandon(issue_id)
            self._record(LogEntryType.WARNING, "Rejected and abandoned", issue_id=issue_id)
        await self._persist()

    async def trigger_commit(self, issue_id: str) -> None:
        """Commit an issue held at the commit boundary.

        An orphaned issue in ``human_review`` is committed directly, as with
        ``approve``.

        Raises:
            ReviewError: If nothing is waiting to commit the issue.
            CommitError: If committing an orphaned issue fails.
        """
        worker = self._worker_for(issue_id)
        if worker is not None and worker.trigger_commit():
            self._record(LogEntryType.INFO, "Commit triggered", issue_id=issue_id, worker_id=worker.id)
            return
        if not self._is_orphaned_review(issue_id):
            raise ReviewError(f"Issue {issue_id} is not waiting for a commit")
        await self._commit_orphan(issue_id, "Commit triggered")

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------

    def snapshot(self) -> AutoBuildSession:
        partitions = self.queue.snapshot()
        return AutoBuildSession(
            session_id=self.ledger.session_id,
            status=self.status,
            queue=partitions.queue,
            completed=partitions.completed,
            human_review=partitions.human_review,
            workers=[self.workers[i].snapshot() for i in sorted(self.workers)],
            retry_counts=dict(self.retry_counts),
            started_at=self.ledger.started_at,
            last_activity_at=self.ledger.last_activity_at,
            settings=self.autobuild,
        )

    def awaiting_commit(self) -> list[str]:
        return [w.issue_id for w in self.workers.values() if w.awaiting_commit and w.issue_id]

    # ------------------------------------------------------------------
    # WorkerReporter callbacks
    # ------------------------------------------------------------------

    def can_claim(self, worker: Worker) -> bool:
        return self.status is SessionStatus.RUNNING and not worker.retiring and not self.halt_event.is_set()

    async def on_claimed(self, worker: Worker, issue: Issue) -> None:
        self.retry_counts[issue.id] = 0
        self._record(LogEntryType.INFO, f"Claimed: {issue.title}", issue_id=issue.id, worker_id=worker.id)
        try:
            await self.tracker.update_status(issue.id, IssueStatus.IN_PROGRESS, expected=IssueStatus.OPEN)
            self._marked_in_progress.add(issue.id)
        except TrackerConflictError:
            raise
        except TrackerError as e:
            log.warning("tracker_update_failed", issue=issue.id, error=e.message)
        await self._persist()

    async def on_phase_change(self, worker: Worker, source: WorkerPhase) -> None:
        target = worker.phase
        issue = worker.issue
        if issue is None or target in (WorkerPhase.IDLE, WorkerPhase.SELECTING):
            return
        self.retry_counts[issue.id] = worker.retry_count
        self._record(
            LogEntryType.INFO,
            f"{source.label} -> {target.label}",
            issue_id=issue.id,
            worker_id=worker.id,
        )
        await self._write_progress(worker, issue)
        await self._persist()

    async def on_lock_wait(self, worker: Worker, result: LockResult, delay: float) -> None:
        issue_id = worker.issue_id
        log.info("lock_wait", worker=worker.id, issue=issue_id, holder=result.holder, delay=delay)
        if delay == self.config.worker.lock_retry_initial:
            self._record(
                LogEntryType.WARNING,
                f"Waiting for files held by worker {result.holder}: {', '.join(result.conflicts)}",
                issue_id=issue_id,
                worker_id=worker.id,
            )

    def on_agent_event(self, worker: Worker, event: AgentEvent) -> None:
        message = event.message if len(event.message) <= 200 else event.message[:197] + "..."
        self._record(LogEntryType.AGENT, message, issue_id=worker.issue_id, worker_id=worker.id)

    async def on_agent_result(self, worker: Worker, result: AgentResult, mode: str) -> None:
        if result.success:
            self._record(LogEntryType.SUCCESS, f"Agent finished ({mode})", issue_id=worker.issue_id, worker_id=worker.id)
        else:
            detail = result.error or "no detail"
            self._record(
                LogEntryType.WARNING,
                f"Agent reported failure ({mode}): {detail}",
                issue_id=worker.issue_id,
                worker_id=worker.id,
            )

    async def on_verified(self, worker: Worker, result: VerificationResult) -> None:
        issue_id = worker.issue_id
        for name, gate in result.gates().items():
            if gate.skipped:
                continue
            outcome = "passed" if gate.success else ("failed" if gate.related else "failed (unrelated)")
            entry_type = LogEntryType.SUCCESS if gate.success else LogEntryType.ERROR
            self._record(entry_type, f"{name.value.capitalize()}: {outcome}", issue_id=issue_id, worker_id=worker.id)

        if result.success:
            self._record(LogEntryType.SUCCESS, "Verification passed", issue_id=issue_id, worker_id=worker.id)
        elif result.passed:
            ignored = ", ".join(str(g) for g in result.ignored_gates)
            self._record(
                LogEntryType.WARNING,
                f"Verification passed; ignored unrelated failures in {ignored}",
                issue_id=issue_id,
                worker_id=worker.id,
            )
        else:
            failed = ", ".join(str(g) for g in result.failed_gates)
            self._record(
                LogEntryType.ERROR,
                f"Verification failed ({failed}), retry {worker.retry_count}/{worker.settings.max_retries}",
                issue_id=issue_id,
                worker_id=worker.id,
            )

    async def on_review_required(self, worker: Worker, result: VerificationResult) -> None:
        issue_id = worker.issue_id
        if issue_id is None:
            raise ReviewError(f"Worker {worker.id} requested review without an issue")
        self.queue.require_review(issue_id)
        reason = "review required" if result.passed else f"verification failed after {worker.retry_count} retries"
        self._record(LogEntryType.WARNING, f"Awaiting human review ({reason})", issue_id=issue_id, worker_id=worker.id)
        await self._persist()

    async def on_rejected(self, worker: Worker, issue: Issue, requeue: bool) -> None:
        self.retry_counts.pop(issue.id, None)
        if requeue:
            self.queue.requeue(issue.id)
            await self._set_tracker_status(issue.id, IssueStatus.OPEN)
            self._record(LogEntryType.INFO, "Rejected and requeued", issue_id=issue.id, worker_id=worker.id)
        else:
            self.queue.abandon(issue.id)
            self._record(LogEntryType.WARNING, "Rejected and abandoned", issue_id=issue.id, worker_id=worker.id)
        await self._remove_progress(issue.id)
        await self._persist()

    async def on_commit_pending(self, worker: Worker) -> None:
        self._record(
            LogEntryType.INFO,
            "Waiting for commit trigger",
            issue_id=worker.issue_id,
            worker_id=worker.id,
        )
        await self._persist()

    async def on_commit_failed(self, worker: Worker, error: CommitError) -> None:
        self._record(LogEntryType.ERROR, f"Commit failed: {error.message}", issue_id=worker.issue_id, worker_id=worker.id)

    async def on_done(self, worker: Worker, issue: Issue) -> None:
        self.queue.complete(issue.id)
        self.retry_counts.pop(issue.id, None)
        self._marked_in_progress.discard(issue.id)
        try:
            await self.tracker.close_issue(issue.id, CLOSE_REASON)
        except TrackerError as e:
            log.warning("tracker_close_failed", issue=issue.id, error=e.message)
        self._record(LogEntryType.SUCCESS, f"Completed: {issue.title}", issue_id=issue.id, worker_id=worker.id)
        await self._remove_progress(issue.id)
        await self._persist()

    async def on_failed(self, worker: Worker, issue: Issue, error: BaseException) -> None:
        detail = error.message if isinstance(error, AutoBuildError) else f"{type(error).__name__}: {error}"
        self.queue.require_review(issue.id)
        self._marked_in_progress.discard(issue.id)
        await self._set_tracker_status(issue.id, IssueStatus.BLOCKED)
        self._record(LogEntryType.ERROR, f"Failed: {detail}", issue_id=issue.id, worker_id=worker.id)
        await self._write_progress(worker, issue, notes=detail)
        await self._persist()

    async def on_released(self, worker: Worker, issue: Issue, reason: str) -> None:
        self.queue.release(issue.id)
        if issue.id in self._marked_in_progress:
            await self._set_tracker_status(issue.id, IssueStatus.OPEN)
        self._record(LogEntryType.INFO, f"Returned to queue ({reason})", issue_id=issue.id, worker_id=worker.id)
        await self._persist()

    async def on_tracker_conflict(self, worker: Worker, issue: Issue, error: TrackerConflictError) -> None:
        self._record(
            LogEntryType.WARNING,
            f"Tracker conflict, re-fetching: {error.message}",
            issue_id=issue.id,
            worker_id=worker.id,
        )
        try:
            self.queue.refresh(await self.tracker.get_issue(issue.id))
        except TrackerError as e:
            log.warning("tracker_refetch_failed", issue=issue.id, error=e.message)

    async def on_coordinator_unavailable(self, worker: Worker, error: CoordinatorUnavailableError) -> None:
        if self.status not in (SessionStatus.RUNNING, SessionStatus.PAUSED):
            return
        self.ledger.transition(SessionStatus.ERROR)
        self.halt_event.set()
        self._record(LogEntryType.ERROR, f"Lock service unavailable: {error}", worker_id=worker.id)
        await self._persist()

    def on_cancelled(self, worker: Worker, issue: Issue, phase: WorkerPhase) -> None:
        if self.queue.release(issue.id) and issue.id in self._marked_in_progress:
            self._marked_in_progress.discard(issue.id)
            self._cancelled.append(issue.id)

    async def load_progress(self, issue_id: str) -> str | None:
        try:
            return await self.progress_store.read(issue_id)
        except OSError as e:
            log.warning("progress_read_failed", issue=issue_id, error=str(e))
            return None

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _cancel_workers(self) -> None:
        self.halt_event.set()
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        for worker_id in list(self.workers):
            try:
                await self.locks.release(worker_id)
            except CoordinatorUnavailableError as e:
                log.warning("stop_release_failed", worker=worker_id, error=e.message)
        self.workers.clear()
        self._tasks.clear()

        for issue_id in self._cancelled:
            await self._set_tracker_status(issue_id, IssueStatus.OPEN)
        self._cancelled.clear()

    async def _commit_orphan(self, issue_id: str, action: str) -> None:
        """Commit an issue left in ``human_review`` without a worker and complete it.

        Raises:
            CommitError: If the commit fails; the issue stays in review.
        """
        issue = self.queue.get(issue_id)
        message = f"{issue.issue_type}: {issue.title}" if issue else f"chore: {issue_id}"
        try:
            commit_id = await self.committer.commit(message, issue_id)
        except CommitError as e:
            self._record(LogEntryType.ERROR, f"Commit failed: {e.message}", issue_id=issue_id)
            raise
        self.queue.complete(issue_id)
        self.retry_counts.pop(issue_id, None)
        self._marked_in_progress.discard(issue_id)
        try:
            await self.tracker.close_issue(issue_id, CLOSE_REASON)
        except TrackerError as e:
            log.warning("tracker_close_failed", issue=issue_id, error=e.message)
        detail = f" ({commit_id[:12]})" if commit_id else " (nothing to commit)"
        self._record(LogEntryType.SUCCESS, f"{action} and committed{detail}", issue_id=issue_id)
        await self._remove_progress(issue_id)
        await self._persist()

    def _is_orphaned_review(self, issue_id: str) -> bool:
        return self._worker_for(issue_id) is None and issue_id in self.queue.snapshot().human_review

    def _ensure_pool(self) -> None:
        """Spawn or retire workers so the pool matches the configured size."""
        size = self.autobuild.max_concurrent_issues
        for slot in range(size):
            task = self._tasks.get(slot)
            if task is not None and not task.done():
                self.workers[slot].retiring = False
                continue
            worker = Worker(slot, self._services, self)
            self.workers[slot] = worker
            task = asyncio.create_task(worker.run(), name=f"autobuild-worker-{slot}")
            task.add_done_callback(self._on_worker_exit)
            self._tasks[slot] = task
        for slot, worker in self.workers.items():
            if slot >= size:
                worker.retiring = True

    def _on_worker_exit(self, task: asyncio.Task[None]) -> None:
        slot = next((s for s, t in self._tasks.items() if t is task), None)
        if slot is None or task.cancelled():
            return
        error = task.exception()
        if error is not None:
            log.error("worker_crashed", worker=slot, error=str(error), exc_info=error)
            self._record(LogEntryType.ERROR, f"Worker {slot} crashed: {error}", worker_id=slot)
        self._tasks.pop(slot, None)
        self.workers.pop(slot, None)

    def _worker_for(self, issue_id: str) -> Worker | None:
        return next((w for w in self.workers.values() if w.issue_id == issue_id), None)

    def _record(
        self,
        entry_type: LogEntryType,
        message: str,
        issue_id: str | None = None,
        worker_id: int | None = None,
    ) -> None:
        self.ledger.record(entry_type, message, issue_id=issue_id, worker_id=worker_id)

    async def _set_tracker_status(self, issue_id: str, status: IssueStatus) -> None:
        try:
            await self.tracker.update_status(issue_id, status)
        except TrackerError as e:
            log.warning("tracker_update_failed", issue=issue_id, status=str(status), error=e.message)

    async def _persist(self) -> None:
        try:
            await self.session_store.save(self.snapshot())
        except OSError as e:
            log.error("session_save_failed", error=str(e))

    async def _write_progress(self, worker: Worker, issue: Issue, notes: str = "") -> None:
        steps = ", ".join(phase.label for phase in worker.phase_history) or "(none)"
        record = ProgressRecord(
            issue_id=issue.id,
            issue_title=issue.title,
            issue_type=issue.issue_type,
            current_step=worker.phase,
            summary=f"Steps so far: {steps}. Retries used: {worker.retry_count}.",
            next_step=NEXT_STEPS.get(worker.phase, ""),
            files_modified=list(worker.files_modified),
            notes=notes,
        )
        try:
            await self.progress_store.write(record)
        except OSError as e:
            log.warning("progress_write_failed", issue=issue.id, error=str(e))

    async def _remove_progress(self, issue_id: str) -> None:
        try:
            await self.progress_store.remove(issue_id)
        except OSError as e:
            log.warning("progress_remove_failed", issue=issue_id, error=str(e))
