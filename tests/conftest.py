"""Pytest configuration and shared fixtures."""

import asyncio
from collections.abc import Callable, Sequence
from dataclasses import replace
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from autobuild.config.settings import AutoBuildSettings, OrchestratorSettings, WorkerConfig
from autobuild.coordinator.client import InProcessLockClient, LockClient
from autobuild.coordinator.file_coordinator import FileCoordinator
from autobuild.engine.orchestrator import Orchestrator
from autobuild.engine.state_manager import ProgressStore, SessionStore
from autobuild.engine.verification import VerificationRunner
from autobuild.enums import DependencyType, GateName, IssueStatus
from autobuild.exceptions import CommitError, TrackerConflictError, TrackerError
from autobuild.models.domain import AgentEvent, AgentRequest, AgentResult, Issue, IssueDependency
from autobuild.providers.base import AgentEventCallback, AgentRunner, Committer, IssueTracker

BASE_TIME = datetime(2024, 1, 1, tzinfo=UTC)


def build_issue(
    issue_id: str,
    priority: int = 2,
    phase: int | None = None,
    status: IssueStatus = IssueStatus.OPEN,
    blocked_by: Sequence[str] = (),
    parent: str | None = None,
    paths: Sequence[str] = (),
    created_offset: int = 0,
    issue_type: str = "task",
) -> Issue:
    dependencies = [IssueDependency(issue_id, blocker, DependencyType.BLOCKS) for blocker in blocked_by]
    if parent:
        dependencies.append(IssueDependency(issue_id, parent, DependencyType.PARENT_CHILD))
    return Issue(
        id=issue_id,
        title=f"Title of {issue_id}",
        status=status,
        priority=priority,
        issue_type=issue_type,
        created_at=BASE_TIME + timedelta(minutes=created_offset),
        dependencies=dependencies,
        phase=phase,
        labels=[f"path:{p}" for p in paths],
    )


@pytest.fixture
def make_issue() -> Callable[..., Issue]:
    """Factory fixture for creating issues."""
    return build_issue


class FakeTracker(IssueTracker):
    """In-memory tracker. Hands out copies, like a real tracker would."""

    def __init__(self, issues: Sequence[Issue] = ()) -> None:
        self.issues = {issue.id: issue for issue in issues}
        self.updates: list[tuple[str, IssueStatus]] = []
        self.closed: list[tuple[str, str]] = []
        self.fail_updates = False

    async def list_issues(self) -> list[Issue]:
        return [replace(issue) for issue in self.issues.values()]

    async def get_issue(self, issue_id: str) -> Issue:
        if issue_id not in self.issues:
            raise TrackerError("Issue not found", issue_id=issue_id)
        return replace(self.issues[issue_id])

    async def update_status(self, issue_id: str, status: IssueStatus, expected: IssueStatus | None = None) -> None:
        if self.fail_updates:
            raise TrackerError("tracker offline", issue_id=issue_id)
        current = self.issues[issue_id]
        if expected is not None and current.status != expected:
            raise TrackerConflictError(f"{issue_id} is {current.status}", issue_id=issue_id)
        self.issues[issue_id] = replace(current, status=status)
        self.updates.append((issue_id, status))

    async def close_issue(self, issue_id: str, reason: str) -> None:
        self.issues[issue_id] = replace(self.issues[issue_id], status=IssueStatus.CLOSED)
        self.closed.append((issue_id, reason))


class ScriptedAgent(AgentRunner):
    """Agent that reports scripted results and file edits.

    ``results`` is consumed one per call; once exhausted every call succeeds.
    Set ``hold`` to make calls wait until the event is set.
    """

    def __init__(
        self,
        results: Sequence[AgentResult | BaseException] = (),
        files: Sequence[str] = ("src/app.ts",),
    ) -> None:
        self.results = list(results)
        self.files = list(files)
        self.requests: list[AgentRequest] = []
        self.hold: asyncio.Event | None = None
        self.started = asyncio.Event()

    async def run(self, request: AgentRequest, on_event: AgentEventCallback | None = None) -> AgentResult:
        self.requests.append(request)
        self.started.set()
        if self.hold is not None:
            await self.hold.wait()
        if on_event is not None:
            for path in self.files:
                await on_event(AgentEvent(kind="file_modified", message=f"Edit {path}", tool="Edit", path=path))
        outcome = self.results.pop(0) if self.results else AgentResult(success=True, output="done")
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


class ScriptedVerifier(VerificationRunner):
    """VerificationRunner whose gates fail according to a per-pass script.

    Each entry of ``failures`` is the set of gates that fail on that pass;
    passes beyond the script succeed. Failing output names ``failure_path``.
    """

    def __init__(self, failures: Sequence[set[GateName]] = (), failure_path: str = "src/app.ts") -> None:
        super().__init__(Path("."))
        self.failures = list(failures)
        self.failure_path = failure_path
        self.passes = 0
        self._current: set[GateName] = set()

    async def run(self, files_modified, settings):
        self._current = self.failures[self.passes] if self.passes < len(self.failures) else set()
        self.passes += 1
        return await super().run(files_modified, settings)

    async def _run_gate(self, name: GateName, command: str) -> tuple[bool, str]:
        if name in self._current:
            return False, f"error in {self.failure_path}: {name} failed"
        return True, f"{name} ok"


class FakeCommitter(Committer):
    def __init__(self, failures: int = 0) -> None:
        self.failures = failures
        self.commits: list[tuple[str, str]] = []

    async def commit(self, message: str, issue_id: str) -> str | None:
        if self.failures:
            self.failures -= 1
            raise CommitError("commit rejected by hook", output="hook failed")
        self.commits.append((message, issue_id))
        return f"c{len(self.commits):039d}"


@pytest.fixture
def fast_worker_config() -> WorkerConfig:
    """Worker timings short enough for tests."""
    return WorkerConfig(
        lock_retry_initial=0.01,
        lock_retry_max=0.05,
        idle_poll_interval=0.01,
        lease_renew_interval=0.05,
    )


@pytest.fixture
def file_coordinator() -> FileCoordinator:
    return FileCoordinator(lease_timeout=30.0)


@pytest.fixture
def make_orchestrator(tmp_path: Path, fast_worker_config: WorkerConfig, file_coordinator: FileCoordinator):
    """Factory fixture wiring an Orchestrator to in-memory fakes."""

    def factory(
        issues: Sequence[Issue] = (),
        agent: ScriptedAgent | None = None,
        verifier: ScriptedVerifier | None = None,
        committer: FakeCommitter | None = None,
        locks: LockClient | None = None,
        **overrides,
    ) -> Orchestrator:
        options = {"max_concurrent_issues": 1, "require_human_review": False}
        options.update(overrides)
        settings = OrchestratorSettings(
            project_path=tmp_path,
            autobuild=AutoBuildSettings(**options),
            worker=fast_worker_config,
        )
        return Orchestrator(
            settings,
            tracker=FakeTracker(issues),
            agent=agent or ScriptedAgent(),
            committer=committer or FakeCommitter(),
            locks=locks or InProcessLockClient(file_coordinator),
            verifier=verifier or ScriptedVerifier(),
            session_store=SessionStore(tmp_path / "session.json"),
            progress_store=ProgressStore(tmp_path / "_SILO"),
        )

    return factory


async def wait_until(predicate: Callable[[], bool], timeout: float = 3.0) -> None:
    """Poll until ``predicate`` holds, failing the test on timeout."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


@pytest.fixture
def eventually() -> Callable[..., object]:
    """Async helper that waits for a condition to become true."""
    return wait_until


@pytest.fixture
def fakes():
    """Expose the fake classes to test modules without a package import."""

    class Fakes:
        Tracker = FakeTracker
        Agent = ScriptedAgent
        Verifier = ScriptedVerifier
        Committer = FakeCommitter

    return Fakes
