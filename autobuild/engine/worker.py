"""
Worker: a sequential phase state machine driving one issue at a time.

Each worker is one pool slot. It claims an issue, leases the issue's files,
runs the agent, verifies, loops through fixing while retries remain, waits
for review when required, and commits. Every phase change is checked
against ``TRANSITIONS``; anything outside the table raises
``InvalidTransitionError``.

Phase Flow::

    idle -> selecting -> working -> testing -> committing -> done -> idle
                             |        |  ^
                             v        v  |
                           fixing <-> (retry)
                                      |
                                      v
                                  reviewing -> committing | idle

    any non-terminal phase -> failed -> idle

Leases:
    Paths the issue declares (``path:`` labels) are leased all at once
    before the agent starts. Every file the agent edits is leased as the
    edit event arrives; while another worker holds it the worker waits,
    which stalls the agent's output stream, and after ``edit_lock_wait``
    the issue fails. The agent can also lease files ahead of editing them
    through the lease tool. All leases are held until the issue leaves the
    worker.

Reporting:
    Workers never touch the session partitions. Each significant step is
    reported to a ``WorkerReporter`` (the Orchestrator) which updates the
    ledger, queue partitions, tracker and snapshot. Reporter callbacks run on
    the event loop between the worker's own awaits.

Retry Accounting:
    ``retry_count`` is reset when a new issue is claimed and when a failed
    issue releases the slot. The fixing -> testing edge increments it by one.
    A worker only enters fixing while ``retry_count < max_retries``.

Cancellation:
    Cancelling the worker task (``Orchestrator.stop``) propagates into the
    agent or gate subprocess, which is killed. Leases are released on the
    way out and the in-flight issue is handed back through
    ``WorkerReporter.on_cancelled``.
"""

from __future__ import annotations

import asyncio
import contextlib
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

import structlog

from autobuild.config.settings import AutoBuildSettings, WorkerConfig
from autobuild.coordinator.client import LockClient
from autobuild.coordinator.file_coordinator import LockResult
from autobuild.engine.queue_manager import IssueQueueManager
from autobuild.engine.verification import VerificationRunner
from autobuild.enums import ReviewAction, WorkerPhase
from autobuild.exceptions import (
    AutoBuildError,
    CommitError,
    CoordinatorUnavailableError,
    InvalidTransitionError,
    TrackerConflictError,
    WorkspaceError,
)
from autobuild.models.domain import AgentEvent, AgentRequest, AgentResult, Issue, VerificationResult
from autobuild.models.session import WorkerSnapshot
from autobuild.providers.base import AgentRunner, Committer

log = structlog.get_logger(__name__)

P = WorkerPhase

TRANSITIONS: dict[WorkerPhase, frozenset[WorkerPhase]] = {
    P.IDLE: frozenset({P.SELECTING}),
    P.SELECTING: frozenset({P.WORKING, P.IDLE, P.FAILED}),
    P.WORKING: frozenset({P.TESTING, P.FIXING, P.FAILED}),
    P.TESTING: frozenset({P.COMMITTING, P.REVIEWING, P.FIXING, P.FAILED}),
    P.FIXING: frozenset({P.TESTING, P.FAILED}),
    P.REVIEWING: frozenset({P.COMMITTING, P.IDLE, P.FAILED}),
    P.COMMITTING: frozenset({P.DONE, P.FAILED}),
    P.DONE: frozenset({P.IDLE}),
    P.FAILED: frozenset({P.IDLE}),
}


@dataclass
class WorkerServices:
    """Collaborators shared by every worker in a pool."""

    queue: IssueQueueManager
    locks: LockClient
    agent: AgentRunner
    verifier: VerificationRunner
    committer: Committer
    project_path: Path
    config: WorkerConfig


class WorkerReporter:
    """Receiver for worker progress.

    The base implementation keeps a settings object and a halt flag and
    ignores every report, which is enough to drive a worker in isolation.
    """

    def __init__(self, settings: AutoBuildSettings | None = None) -> None:
        self.autobuild = settings or AutoBuildSettings()
        self.halt_event = asyncio.Event()

    def can_claim(self, worker: Worker) -> bool:
        return not self.halt_event.is_set()

    def is_halted(self) -> bool:
        return self.halt_event.is_set()

    async def on_claimed(self, worker: Worker, issue: Issue) -> None:
        pass

    async def on_phase_change(self, worker: Worker, source: WorkerPhase) -> None:
        pass

    async def on_lock_wait(self, worker: Worker, result: LockResult, delay: float) -> None:
        pass

    def on_agent_event(self, worker: Worker, event: AgentEvent) -> None:
        pass

    async def on_agent_result(self, worker: Worker, result: AgentResult, mode: str) -> None:
        pass

    async def on_verified(self, worker: Worker, result: VerificationResult) -> None:
        pass

    async def on_review_required(self, worker: Worker, result: VerificationResult) -> None:
        pass

    async def on_rejected(self, worker: Worker, issue: Issue, requeue: bool) -> None:
        pass

    async def on_commit_pending(self, worker: Worker) -> None:
        pass

    async def on_commit_failed(self, worker: Worker, error: CommitError) -> None:
        pass

    async def on_done(self, worker: Worker, issue: Issue) -> None:
        pass

    async def on_failed(self, worker: Worker, issue: Issue, error: BaseException) -> None:
        pass

    async def on_released(self, worker: Worker, issue: Issue, reason: str) -> None:
        pass

    async def on_tracker_conflict(self, worker: Worker, issue: Issue, error: TrackerConflictError) -> None:
        pass

    async def on_coordinator_unavailable(self, worker: Worker, error: CoordinatorUnavailableError) -> None:
        pass

    def on_cancelled(self, worker: Worker, issue: Issue, phase: WorkerPhase) -> None:
        pass

    async def load_progress(self, issue_id: str) -> str | None:
        return None


class Worker:
    """One pool slot.

    Attributes:
        id: Pool slot number.
        issue: Issue currently held, None when idle.
        phase: Current phase.
        retry_count: Fixing passes used on the current issue.
        files_modified: Paths the agent reported changing.
        start_time: When the current issue was claimed.
        phase_history: Phases entered for the current issue, in order.
        last_error: Detail of the most recent failure.
        retiring: When set, the worker exits at its next idle point.
    """

    def __init__(self, worker_id: int, services: WorkerServices, reporter: WorkerReporter) -> None:
        self.id = worker_id
        self.services = services
        self.reporter = reporter
        self.issue: Issue | None = None
        self.phase = WorkerPhase.IDLE
        self.retry_count = 0
        self.files_modified: list[str] = []
        self.start_time: datetime | None = None
        self.phase_history: list[WorkerPhase] = []
        self.last_error: str | None = None
        self.last_verification: VerificationResult | None = None
        self.commit_id: str | None = None
        self.retiring = False
        self.settings = reporter.autobuild
        self._leased: set[str] = set()
        self._review_future: asyncio.Future[ReviewAction] | None = None
        self._commit_future: asyncio.Future[None] | None = None
        self._log = log.bind(worker=worker_id)

    @property
    def issue_id(self) -> str | None:
        return self.issue.id if self.issue else None

    @property
    def is_busy(self) -> bool:
        return self.phase is not WorkerPhase.IDLE

    @property
    def awaiting_commit(self) -> bool:
        return self._commit_future is not None and not self._commit_future.done()

    def snapshot(self) -> WorkerSnapshot:
        return WorkerSnapshot(
            id=self.id,
            issue_id=self.issue_id,
            phase=self.phase,
            retry_count=self.retry_count,
            files_modified=list(self.files_modified),
            start_time=self.start_time,
        )

    async def run(self) -> None:
        """Claim and process issues until retired or cancelled."""
        self._log.info("worker_started")
        idle_poll = self.services.config.idle_poll_interval
        while not self.retiring:
            if not self.reporter.can_claim(self):
                await asyncio.sleep(idle_poll)
                continue
            issue = self.services.queue.claim(self.id)
            if issue is None:
                await asyncio.sleep(idle_poll)
                continue
            await self.process(issue)
        self._log.info("worker_retired")

    async def process(self, issue: Issue) -> None:
        """Drive one claimed issue until the slot is idle again."""
        self._begin(issue)
        try:
            await self.reporter.on_phase_change(self, WorkerPhase.IDLE)
            await self.reporter.on_claimed(self, issue)
            if not await self._acquire_locks(issue):
                return
            heartbeat = asyncio.create_task(self._heartbeat(), name=f"lease-heartbeat-{self.id}")
            try:
                await self._drive(issue)
            finally:
                heartbeat.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await heartbeat
                await self._release_locks()
        except asyncio.CancelledError:
            self._log.info("worker_cancelled", issue=issue.id, phase=str(self.phase))
            self.reporter.on_cancelled(self, issue, self.phase)
            self._reset()
            raise
        except TrackerConflictError as e:
            if self.phase is not WorkerPhase.SELECTING:
                await self._fail(issue, e)
                return
            await self._return_to_pool(issue, "tracker conflict")
            await self.reporter.on_tracker_conflict(self, issue, e)
        except CoordinatorUnavailableError as e:
            if self.phase is not WorkerPhase.SELECTING:
                await self._fail(issue, e)
                return
            await self._return_to_pool(issue, "lock service unavailable")
            await self.reporter.on_coordinator_unavailable(self, e)
        except Exception as e:
            await self._fail(issue, e)

    def decide(self, action: ReviewAction) -> bool:
        """Deliver a review decision. Returns False if none is awaited."""
        if self.phase is not WorkerPhase.REVIEWING:
            return False
        if self._review_future is None or self._review_future.done():
            return False
        self._review_future.set_result(action)
        return True

    def trigger_commit(self) -> bool:
        """Release a worker held at the commit boundary."""
        future = self._commit_future
        if self.phase is not WorkerPhase.COMMITTING or future is None or future.done():
            return False
        future.set_result(None)
        return True

    def _begin(self, issue: Issue) -> None:
        self._transition(WorkerPhase.SELECTING)
        self.issue = issue
        self.retry_count = 0
        self.files_modified = []
        self.phase_history = [WorkerPhase.SELECTING]
        self.start_time = datetime.now(UTC)
        self.last_error = None
        self.last_verification = None
        self.commit_id = None
        self.settings = self.reporter.autobuild
        self._leased = set()

    def _transition(self, target: WorkerPhase) -> WorkerPhase:
        """Apply one edge of the transition table.

        Returns:
            The phase being left.

        Raises:
            InvalidTransitionError: If the edge is not in ``TRANSITIONS``.
        """
        source = self.phase
        if target not in TRANSITIONS[source]:
            raise InvalidTransitionError(str(source), str(target))
        if source is WorkerPhase.FIXING and target is WorkerPhase.TESTING:
            self.retry_count += 1
        if source is WorkerPhase.FAILED:
            self.retry_count = 0
        self.phase = target
        if target is WorkerPhase.IDLE:
            self.issue = None
            self.files_modified = []
            self.start_time = None
        elif target is not WorkerPhase.SELECTING:
            self.phase_history.append(target)
        self._log.debug("phase_changed", source=str(source), target=str(target))
        return source

    async def _enter(self, target: WorkerPhase) -> None:
        source = self._transition(target)
        await self.reporter.on_phase_change(self, source)

    def _reset(self) -> None:
        """Force the slot back to idle outside the transition table (stop only)."""
        self.phase = WorkerPhase.IDLE
        self.issue = None
        self.retry_count = 0
        self.files_modified = []
        self.start_time = None
        self._review_future = None
        self._commit_future = None
        self._leased = set()

    async def _return_to_pool(self, issue: Issue, reason: str) -> None:
        await self._enter(WorkerPhase.IDLE)
        await self.reporter.on_released(self, issue, reason)

    async def _acquire_locks(self, issue: Issue) -> bool:
        """Lease the issue's paths, backing off while another worker holds them.

        Returns:
            True once every lease is held; False if the session halted first
            and the issue went back to the pool.
        """
        config = self.services.config
        delay = config.lock_retry_initial
        while True:
            if self.reporter.is_halted():
                await self._return_to_pool(issue, "session halted")
                return False
            result = await self.services.locks.acquire(self.id, issue.paths)
            if result.granted:
                self._leased.update(issue.paths)
                return True
            await self.reporter.on_lock_wait(self, result, delay)
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(self.reporter.halt_event.wait(), timeout=delay)
            delay = min(delay * 2, config.lock_retry_max)

    async def _release_locks(self) -> None:
        self._leased.clear()
        try:
            await self.services.locks.release(self.id)
        except CoordinatorUnavailableError as e:
            # Leases lapse on their own once the service is back.
            self._log.warning("lock_release_failed", error=e.message)
            await self.reporter.on_coordinator_unavailable(self, e)

    async def _heartbeat(self) -> None:
        interval = self.services.config.lease_renew_interval
        while True:
            await asyncio.sleep(interval)
            try:
                await self.services.locks.renew(self.id)
            except CoordinatorUnavailableError as e:
                self._log.warning("lease_renew_failed", error=e.message)
                await self.reporter.on_coordinator_unavailable(self, e)

    async def _drive(self, issue: Issue) -> None:
        """Run the working, testing, fixing, review and commit phases."""
        settings = self.settings
        if not Path(self.services.project_path).is_dir():
            raise WorkspaceError(f"Working tree {self.services.project_path} is missing")
        await self._enter(WorkerPhase.WORKING)
        result = await self._invoke_agent(issue, mode="implement")

        feedback = ""
        if not result.success and self.retry_count < settings.max_retries:
            feedback = result.error or result.output
            await self._enter(WorkerPhase.FIXING)
        else:
            await self._enter(WorkerPhase.TESTING)

        while True:
            if self.phase is WorkerPhase.FIXING:
                await self._invoke_agent(issue, mode="fix", feedback=feedback)
                await self._enter(WorkerPhase.TESTING)

            verification = await self.services.verifier.run(self.files_modified, settings)
            self.last_verification = verification
            await self.reporter.on_verified(self, verification)

            if verification.passed or self.retry_count >= settings.max_retries:
                break
            feedback = verification.failure_summary()
            await self._enter(WorkerPhase.FIXING)

        if settings.require_human_review or not verification.passed:
            action = await self._await_review(verification)
            if action is not ReviewAction.APPROVE:
                await self._enter(WorkerPhase.IDLE)
                await self.reporter.on_rejected(self, issue, requeue=action is ReviewAction.REQUEUE)
                return

        await self._enter(WorkerPhase.COMMITTING)
        await self._commit(issue, settings)
        await self._enter(WorkerPhase.DONE)
        await self.reporter.on_done(self, issue)
        await self._enter(WorkerPhase.IDLE)

    async def _invoke_agent(self, issue: Issue, mode: str, feedback: str = "") -> AgentResult:
        request = AgentRequest(
            issue=issue,
            working_dir=str(self.services.project_path),
            worker_id=self.id,
            mode=mode,
            feedback=feedback,
            progress=await self.reporter.load_progress(issue.id),
        )
        result = await self.services.agent.run(request, on_event=self._on_agent_event)
        for path in result.files_modified:
            self._record_file(path)
        await self.reporter.on_agent_result(self, result, mode)
        return result

    async def _on_agent_event(self, event: AgentEvent) -> None:
        if event.path:
            await self._lease_edited_file(event.path)
            self._record_file(event.path)
        self.reporter.on_agent_event(self, event)

    async def _lease_edited_file(self, path: str) -> None:
        """Hold a lease on a file the agent edits, waiting while another worker has it.

        Issues rarely declare their files up front, so this is where most
        leases come from.

        Raises:
            WorkspaceError: If the file is still leased elsewhere after
                ``edit_lock_wait`` seconds.
        """
        if path in self._leased:
            return
        config = self.services.config
        loop = asyncio.get_running_loop()
        deadline = loop.time() + config.edit_lock_wait
        delay = config.lock_retry_initial
        while True:
            result = await self.services.locks.acquire(self.id, [path])
            if result.granted:
                self._leased.add(path)
                return
            remaining = deadline - loop.time()
            if remaining <= 0:
                raise WorkspaceError(f"{path} is leased by worker {result.holder}")
            await self.reporter.on_lock_wait(self, result, delay)
            await asyncio.sleep(min(delay, remaining))
            delay = min(delay * 2, config.lock_retry_max)

    def _record_file(self, path: str) -> None:
        if path not in self.files_modified:
            self.files_modified.append(path)

    async def _await_review(self, verification: VerificationResult) -> ReviewAction:
        source = self._transition(WorkerPhase.REVIEWING)
        self._review_future = asyncio.get_running_loop().create_future()
        await self.reporter.on_phase_change(self, source)
        await self.reporter.on_review_required(self, verification)
        try:
            return await self._review_future
        finally:
            self._review_future = None

    async def _commit(self, issue: Issue, settings: AutoBuildSettings) -> None:
        """Commit now, or hold at the boundary until an explicit trigger succeeds."""
        message = f"{issue.issue_type}: {issue.title}"
        if settings.auto_commit:
            self.commit_id = await self.services.committer.commit(message, issue.id)
            return

        while True:
            self._commit_future = asyncio.get_running_loop().create_future()
            await self.reporter.on_commit_pending(self)
            try:
                await self._commit_future
            finally:
                self._commit_future = None
            try:
                self.commit_id = await self.services.committer.commit(message, issue.id)
                return
            except CommitError as e:
                await self.reporter.on_commit_failed(self, e)

    async def _fail(self, issue: Issue, error: BaseException) -> None:
        """Route the issue to human review and free the slot."""
        detail = error.message if isinstance(error, AutoBuildError) else f"{type(error).__name__}: {error}"
        self.last_error = detail
        self._log.error(
            "issue_failed",
            issue=issue.id,
            phase=str(self.phase),
            error=detail,
            exc_info=not isinstance(error, AutoBuildError),
        )
        if self.phase is WorkerPhase.DONE:
            await self._enter(WorkerPhase.IDLE)
            return
        if self.phase is not WorkerPhase.IDLE:
            await self._enter(WorkerPhase.FAILED)
        await self.reporter.on_failed(self, issue, error)
        if self.phase is WorkerPhase.FAILED:
            await self._enter(WorkerPhase.IDLE)
