"""Tests for autobuild/engine/orchestrator.py."""

import asyncio
from dataclasses import replace

import pytest

from autobuild.config.settings import AutoBuildSettings
from autobuild.coordinator.client import LockClient
from autobuild.engine.orchestrator import CLOSE_REASON
from autobuild.enums import IssueStatus, LogEntryType, SessionStatus, WorkerPhase
from autobuild.exceptions import (
    AgentCrashError,
    CommitError,
    CoordinatorUnavailableError,
    ReviewError,
    SessionStateError,
)
from autobuild.models.session import AutoBuildSession


class UnreachableLocks(LockClient):
    """Lock client whose service is down."""

    async def acquire(self, worker_id, paths):
        raise CoordinatorUnavailableError("connection refused", url="http://127.0.0.1:7433")

    async def release(self, worker_id):
        raise CoordinatorUnavailableError("connection refused", url="http://127.0.0.1:7433")

    async def renew(self, worker_id):
        raise CoordinatorUnavailableError("connection refused", url="http://127.0.0.1:7433")

    async def check(self, path):
        raise CoordinatorUnavailableError("connection refused", url="http://127.0.0.1:7433")

    async def held(self, worker_id):
        raise CoordinatorUnavailableError("connection refused", url="http://127.0.0.1:7433")


def assert_disjoint(session: AutoBuildSession) -> None:
    queue, completed, review = set(session.queue), set(session.completed), set(session.human_review)
    assert not queue & completed
    assert not queue & review
    assert not completed & review


class TestLifecycle:
    """Tests for session status transitions."""

    @pytest.mark.asyncio
    async def test_start_requires_idle(self, make_orchestrator):
        orchestrator = make_orchestrator()
        await orchestrator.start()
        try:
            with pytest.raises(SessionStateError):
                await orchestrator.start()
            with pytest.raises(SessionStateError):
                await orchestrator.resume()
        finally:
            await orchestrator.stop()

        assert orchestrator.status is SessionStatus.IDLE

    @pytest.mark.asyncio
    async def test_pause_requires_running(self, make_orchestrator):
        orchestrator = make_orchestrator()

        with pytest.raises(SessionStateError):
            await orchestrator.pause()

    @pytest.mark.asyncio
    async def test_processes_queue_to_completion(self, make_orchestrator, make_issue):
        issues = [make_issue("ab-1", priority=0), make_issue("ab-2", priority=1), make_issue("ab-3", priority=2)]
        orchestrator = make_orchestrator(issues, max_concurrent_issues=2)

        assert await orchestrator.enqueue() == ["ab-1", "ab-2", "ab-3"]
        await orchestrator.start()
        assert len(orchestrator.workers) == 2

        observed = []

        async def observe():
            while True:
                snapshot = orchestrator.snapshot()
                assert_disjoint(snapshot)
                held = [w.issue_id for w in snapshot.workers if w.issue_id]
                assert len(held) == len(set(held))
                observed.append(snapshot.status)
                await asyncio.sleep(0.001)

        watcher = asyncio.create_task(observe())
        await orchestrator.wait_until_idle()
        watcher.cancel()
        with pytest.raises(asyncio.CancelledError):
            await watcher

        snapshot = orchestrator.snapshot()
        assert sorted(snapshot.completed) == ["ab-1", "ab-2", "ab-3"]
        assert snapshot.queue == []
        assert snapshot.human_review == []
        assert sorted(orchestrator.tracker.closed) == [(i, CLOSE_REASON) for i in ("ab-1", "ab-2", "ab-3")]
        assert ("ab-1", IssueStatus.IN_PROGRESS) in orchestrator.tracker.updates
        assert observed

        persisted = await orchestrator.session_store.load()
        assert sorted(persisted.completed) == ["ab-1", "ab-2", "ab-3"]
        assert persisted.status is SessionStatus.RUNNING

        await orchestrator.stop()
        assert (await orchestrator.session_store.load()).status is SessionStatus.IDLE

    @pytest.mark.asyncio
    async def test_activity_log_records_each_step(self, make_orchestrator, make_issue):
        orchestrator = make_orchestrator([make_issue("ab-1")])
        await orchestrator.enqueue()
        await orchestrator.start()
        await orchestrator.wait_until_idle()
        await orchestrator.stop()

        messages = [entry.message for entry in orchestrator.activity.for_issue("ab-1")]
        assert messages[0] == "Claimed: Title of ab-1"
        assert "Verification passed" in messages
        assert messages[-1] == "Completed: Title of ab-1"
        types = {entry.type for entry in orchestrator.activity.entries()}
        assert {LogEntryType.INFO, LogEntryType.SUCCESS, LogEntryType.AGENT} <= types

    @pytest.mark.asyncio
    async def test_pause_stops_new_claims(self, make_orchestrator, make_issue, fakes, eventually):
        agent = fakes.Agent()
        agent.hold = asyncio.Event()
        orchestrator = make_orchestrator([make_issue("first", priority=0), make_issue("second", priority=1)], agent=agent)
        await orchestrator.enqueue()
        await orchestrator.start()
        await agent.started.wait()

        await orchestrator.pause()
        assert orchestrator.status is SessionStatus.PAUSED
        agent.hold.set()
        await eventually(lambda: orchestrator.snapshot().completed == ["first"])
        await asyncio.sleep(0.05)

        assert orchestrator.snapshot().queue == ["second"]
        assert not orchestrator.is_drained()

        await orchestrator.resume()
        await orchestrator.wait_until_idle()
        assert orchestrator.snapshot().completed == ["first", "second"]
        await orchestrator.stop()

    @pytest.mark.asyncio
    async def test_stop_cancels_and_requeues(self, make_orchestrator, make_issue, fakes, file_coordinator):
        agent = fakes.Agent()
        agent.hold = asyncio.Event()
        orchestrator = make_orchestrator([make_issue("ab-1", paths=["src/a.ts"])], agent=agent)
        await orchestrator.enqueue()
        await orchestrator.start()
        await agent.started.wait()
        assert len(file_coordinator.all_locks()) == 1

        await orchestrator.stop()

        snapshot = orchestrator.snapshot()
        assert orchestrator.status is SessionStatus.IDLE
        assert snapshot.queue == ["ab-1"]
        assert snapshot.workers == []
        assert file_coordinator.all_locks() == []
        assert orchestrator.tracker.updates[-1] == ("ab-1", IssueStatus.OPEN)
        assert orchestrator.tracker.issues["ab-1"].status is IssueStatus.OPEN

    @pytest.mark.asyncio
    async def test_shutdown_keeps_session_resumable(self, make_orchestrator, make_issue, fakes, file_coordinator):
        agent = fakes.Agent()
        agent.hold = asyncio.Event()
        orchestrator = make_orchestrator([make_issue("ab-1")], agent=agent)
        await orchestrator.enqueue()
        await orchestrator.start()
        await agent.started.wait()

        await orchestrator.shutdown()

        assert orchestrator.status is SessionStatus.RUNNING
        assert orchestrator.workers == {}
        assert file_coordinator.all_locks() == []
        assert orchestrator.tracker.issues["ab-1"].status is IssueStatus.OPEN
        recovered = await orchestrator.session_store.recover()
        assert recovered is not None
        assert recovered.status is SessionStatus.PAUSED
        assert recovered.queue == ["ab-1"]
        await orchestrator.stop()
        assert await orchestrator.session_store.recover() is None

    @pytest.mark.asyncio
    async def test_update_settings_resizes_pool(self, make_orchestrator, eventually):
        orchestrator = make_orchestrator()
        await orchestrator.start()

        await orchestrator.update_settings(AutoBuildSettings(max_concurrent_issues=3))
        assert sorted(orchestrator.workers) == [0, 1, 2]

        await orchestrator.update_settings(AutoBuildSettings(max_concurrent_issues=1))
        await eventually(lambda: sorted(orchestrator.workers) == [0])
        assert orchestrator.snapshot().settings.max_concurrent_issues == 1
        await orchestrator.stop()


class TestReview:
    """Tests for review decisions and human_review routing."""

    @pytest.mark.asyncio
    async def test_approve_completes_issue(self, make_orchestrator, make_issue, eventually):
        orchestrator = make_orchestrator([make_issue("ab-1")], require_human_review=True)
        await orchestrator.enqueue()
        await orchestrator.start()
        await eventually(lambda: orchestrator.snapshot().human_review == ["ab-1"])

        assert orchestrator.snapshot().completed == []
        await orchestrator.approve("ab-1")
        await orchestrator.wait_until_idle()

        snapshot = orchestrator.snapshot()
        assert snapshot.completed == ["ab-1"]
        assert snapshot.human_review == []
        await orchestrator.stop()

    @pytest.mark.asyncio
    async def test_reject_and_abandon(self, make_orchestrator, make_issue, eventually):
        orchestrator = make_orchestrator([make_issue("ab-1")], require_human_review=True)
        await orchestrator.enqueue()
        await orchestrator.start()
        await eventually(lambda: orchestrator.snapshot().human_review == ["ab-1"])

        await orchestrator.reject("ab-1", requeue=False)
        await orchestrator.wait_until_idle()

        snapshot = orchestrator.snapshot()
        assert snapshot.queue == snapshot.completed == snapshot.human_review == []
        assert orchestrator.committer.commits == []
        assert not orchestrator.progress_store.path_for("ab-1").exists()
        await orchestrator.stop()

    @pytest.mark.asyncio
    async def test_reject_and_requeue_while_paused(self, make_orchestrator, make_issue, eventually):
        orchestrator = make_orchestrator([make_issue("ab-1")], require_human_review=True)
        await orchestrator.enqueue()
        await orchestrator.start()
        await eventually(lambda: orchestrator.snapshot().human_review == ["ab-1"])
        await orchestrator.pause()

        await orchestrator.reject("ab-1", requeue=True)
        await eventually(lambda: orchestrator.workers[0].phase is WorkerPhase.IDLE)

        snapshot = orchestrator.snapshot()
        assert snapshot.queue == ["ab-1"]
        assert snapshot.human_review == []
        assert orchestrator.tracker.issues["ab-1"].status is IssueStatus.OPEN
        await orchestrator.stop()

    @pytest.mark.asyncio
    async def test_approve_after_stop_commits_directly(self, make_orchestrator, make_issue, fakes, eventually):
        committer = fakes.Committer()
        orchestrator = make_orchestrator([make_issue("ab-1")], committer=committer, require_human_review=True)
        await orchestrator.enqueue()
        await orchestrator.start()
        await eventually(lambda: orchestrator.snapshot().human_review == ["ab-1"])
        await orchestrator.stop()
        assert orchestrator.workers == {}

        await orchestrator.approve("ab-1")

        snapshot = orchestrator.snapshot()
        assert snapshot.completed == ["ab-1"]
        assert snapshot.human_review == []
        assert committer.commits == [("task: Title of ab-1", "ab-1")]
        assert orchestrator.tracker.closed == [("ab-1", CLOSE_REASON)]
        with pytest.raises(ReviewError):
            await orchestrator.approve("ab-1")

    @pytest.mark.asyncio
    async def test_commit_trigger_after_stop_commits_directly(self, make_orchestrator, make_issue, fakes, eventually):
        committer = fakes.Committer()
        orchestrator = make_orchestrator(
            [make_issue("ab-1")], committer=committer, require_human_review=True, auto_commit=False
        )
        await orchestrator.enqueue()
        await orchestrator.start()
        await eventually(lambda: orchestrator.snapshot().human_review == ["ab-1"])
        await orchestrator.approve("ab-1")
        await eventually(lambda: orchestrator.awaiting_commit() == ["ab-1"])
        await orchestrator.stop()
        assert orchestrator.snapshot().human_review == ["ab-1"]

        await orchestrator.trigger_commit("ab-1")

        assert orchestrator.snapshot().completed == ["ab-1"]
        assert committer.commits == [("task: Title of ab-1", "ab-1")]

    @pytest.mark.asyncio
    async def test_approve_after_shutdown_and_restore(self, make_orchestrator, make_issue, fakes, eventually):
        orchestrator = make_orchestrator([make_issue("ab-1")], require_human_review=True)
        await orchestrator.enqueue()
        await orchestrator.start()
        await eventually(lambda: orchestrator.snapshot().human_review == ["ab-1"])
        await orchestrator.shutdown()

        committer = fakes.Committer()
        restarted = make_orchestrator([make_issue("ab-1")], committer=committer, require_human_review=True)
        assert await restarted.restore() is True
        assert restarted.snapshot().human_review == ["ab-1"]

        await restarted.approve("ab-1")

        assert restarted.snapshot().completed == ["ab-1"]
        assert committer.commits == [("task: Title of ab-1", "ab-1")]
        assert restarted.status is SessionStatus.PAUSED
        await restarted.stop()

    @pytest.mark.asyncio
    async def test_failed_orphan_commit_stays_in_review(self, make_orchestrator, make_issue, fakes, eventually):
        committer = fakes.Committer(failures=1)
        orchestrator = make_orchestrator([make_issue("ab-1")], committer=committer, require_human_review=True)
        await orchestrator.enqueue()
        await orchestrator.start()
        await eventually(lambda: orchestrator.snapshot().human_review == ["ab-1"])
        await orchestrator.stop()

        with pytest.raises(CommitError):
            await orchestrator.approve("ab-1")

        assert orchestrator.snapshot().human_review == ["ab-1"]
        assert orchestrator.snapshot().completed == []

    @pytest.mark.asyncio
    async def test_decisions_for_unknown_issue_raise(self, make_orchestrator):
        orchestrator = make_orchestrator()

        with pytest.raises(ReviewError):
            await orchestrator.approve("nope")
        with pytest.raises(ReviewError):
            await orchestrator.reject("nope")
        with pytest.raises(ReviewError):
            await orchestrator.trigger_commit("nope")

    @pytest.mark.asyncio
    async def test_manual_commit_trigger(self, make_orchestrator, make_issue, eventually):
        orchestrator = make_orchestrator([make_issue("ab-1")], auto_commit=False)
        await orchestrator.enqueue()
        await orchestrator.start()
        await eventually(lambda: orchestrator.awaiting_commit() == ["ab-1"])

        assert orchestrator.snapshot().completed == []
        await orchestrator.trigger_commit("ab-1")
        await orchestrator.wait_until_idle()

        assert orchestrator.snapshot().completed == ["ab-1"]
        await orchestrator.stop()


class TestFailureHandling:
    """Tests for failures, tracker conflicts and lock service outages."""

    @pytest.mark.asyncio
    async def test_failed_issue_goes_to_review_and_can_be_requeued(self, make_orchestrator, make_issue, fakes):
        agent = fakes.Agent(results=[AgentCrashError("agent exited", issue_id="ab-1")])
        orchestrator = make_orchestrator([make_issue("ab-1")], agent=agent)
        await orchestrator.enqueue()
        await orchestrator.start()
        await orchestrator.wait_until_idle()

        snapshot = orchestrator.snapshot()
        assert snapshot.human_review == ["ab-1"]
        assert orchestrator.tracker.issues["ab-1"].status is IssueStatus.BLOCKED
        progress = await orchestrator.progress_store.read("ab-1")
        assert "agent exited" in progress
        errors = [e.message for e in orchestrator.activity.for_issue("ab-1") if e.type is LogEntryType.ERROR]
        assert errors == ["Failed: agent exited"]

        await orchestrator.reject("ab-1", requeue=True)
        await orchestrator.wait_until_idle()

        assert orchestrator.snapshot().completed == ["ab-1"]
        await orchestrator.stop()

    @pytest.mark.asyncio
    async def test_issues_editing_the_same_file_are_serialized(
        self, make_orchestrator, make_issue, fakes, file_coordinator, eventually
    ):
        committer = fakes.Committer()
        orchestrator = make_orchestrator(
            [make_issue("first"), make_issue("second", created_offset=1)],
            agent=fakes.Agent(files=("src/shared.ts",)),
            committer=committer,
            max_concurrent_issues=2,
            require_human_review=True,
        )
        await orchestrator.enqueue()
        await orchestrator.start()
        await eventually(lambda: len(orchestrator.snapshot().human_review) == 1)

        (reviewed,) = orchestrator.snapshot().human_review
        (waiting,) = {"first", "second"} - {reviewed}
        owner = next(w for w in orchestrator.workers.values() if w.issue_id == reviewed)
        blocked = next(w for w in orchestrator.workers.values() if w.issue_id == waiting)
        assert blocked.phase is WorkerPhase.WORKING
        assert [(lease.path, lease.worker_id) for lease in file_coordinator.all_locks()] == [
            ("src/shared.ts", owner.id)
        ]

        await orchestrator.approve(reviewed)
        await eventually(lambda: orchestrator.snapshot().human_review == [waiting])
        assert [(lease.path, lease.worker_id) for lease in file_coordinator.all_locks()] == [
            ("src/shared.ts", blocked.id)
        ]

        await orchestrator.approve(waiting)
        await orchestrator.wait_until_idle()

        assert sorted(orchestrator.snapshot().completed) == ["first", "second"]
        assert [issue_id for _, issue_id in committer.commits] == [reviewed, waiting]
        assert file_coordinator.all_locks() == []
        await orchestrator.stop()

    @pytest.mark.asyncio
    async def test_tracker_hiccups_do_not_fail_issue(self, make_orchestrator, make_issue):
        orchestrator = make_orchestrator([make_issue("ab-1")])
        await orchestrator.enqueue()
        orchestrator.tracker.fail_updates = True
        await orchestrator.start()
        await orchestrator.wait_until_idle()

        assert orchestrator.snapshot().completed == ["ab-1"]
        await orchestrator.stop()

    @pytest.mark.asyncio
    async def test_tracker_conflict_requeues_and_refetches(self, make_orchestrator, make_issue):
        orchestrator = make_orchestrator([make_issue("ab-1")])
        await orchestrator.enqueue()
        tracker = orchestrator.tracker
        tracker.issues["ab-1"] = replace(tracker.issues["ab-1"], status=IssueStatus.IN_PROGRESS)

        await orchestrator.start()
        await orchestrator.wait_until_idle()

        snapshot = orchestrator.snapshot()
        assert snapshot.queue == ["ab-1"]
        assert snapshot.completed == []
        assert orchestrator.queue.get("ab-1").status is IssueStatus.IN_PROGRESS
        assert orchestrator.status is SessionStatus.RUNNING
        await orchestrator.stop()

    @pytest.mark.asyncio
    async def test_coordinator_outage_moves_session_to_error(self, make_orchestrator, make_issue):
        orchestrator = make_orchestrator([make_issue("ab-1")], locks=UnreachableLocks())
        await orchestrator.enqueue()
        await orchestrator.start()
        await orchestrator.wait_until_idle()

        assert orchestrator.status is SessionStatus.ERROR
        assert orchestrator.snapshot().queue == ["ab-1"]
        assert orchestrator.tracker.issues["ab-1"].status is IssueStatus.OPEN
        with pytest.raises(SessionStateError):
            await orchestrator.resume()

        await orchestrator.stop()
        assert orchestrator.status is SessionStatus.IDLE


class TestQueueOperations:
    """Tests for enqueue, epics, skip and restore."""

    @pytest.mark.asyncio
    async def test_enqueue_specific_ids(self, make_orchestrator, make_issue):
        orchestrator = make_orchestrator([make_issue("a"), make_issue("b")])

        assert await orchestrator.enqueue(["b"]) == ["b"]
        assert orchestrator.snapshot().queue == ["b"]

    @pytest.mark.asyncio
    async def test_enqueue_all_skips_closed(self, make_orchestrator, make_issue):
        orchestrator = make_orchestrator([make_issue("a"), make_issue("b", status=IssueStatus.CLOSED)])

        assert await orchestrator.enqueue() == ["a"]

    @pytest.mark.asyncio
    async def test_enqueue_epic_orders_by_phase(self, make_orchestrator, make_issue):
        orchestrator = make_orchestrator(
            [
                make_issue("epic", issue_type="epic"),
                make_issue("two", parent="epic", priority=0, blocked_by=["one"]),
                make_issue("one", parent="epic", priority=3),
            ]
        )

        await orchestrator.enqueue_epic("epic")
        await orchestrator.start()
        await orchestrator.wait_until_idle()

        assert orchestrator.snapshot().completed == ["one", "two"]
        await orchestrator.stop()

    @pytest.mark.asyncio
    async def test_skip_queued_issue(self, make_orchestrator, make_issue):
        orchestrator = make_orchestrator([make_issue("a"), make_issue("b")])
        await orchestrator.enqueue()

        await orchestrator.skip("a")

        assert orchestrator.snapshot().queue == ["b"]
        with pytest.raises(ReviewError):
            await orchestrator.skip("a")

    @pytest.mark.asyncio
    async def test_restore_resumes_as_paused(self, make_orchestrator, make_issue):
        orchestrator = make_orchestrator([make_issue("a"), make_issue("b"), make_issue("c")])
        await orchestrator.session_store.save(
            AutoBuildSession(
                session_id="previous",
                status=SessionStatus.RUNNING,
                queue=["a"],
                completed=["b"],
                human_review=["c"],
                retry_counts={"a": 1},
                settings=AutoBuildSettings(max_concurrent_issues=1, require_human_review=False),
            )
        )

        assert await orchestrator.restore() is True

        snapshot = orchestrator.snapshot()
        assert orchestrator.status is SessionStatus.PAUSED
        assert snapshot.session_id == "previous"
        assert snapshot.queue == ["a"]
        assert snapshot.completed == ["b"]
        assert snapshot.human_review == ["c"]

        await orchestrator.resume()
        await orchestrator.wait_until_idle()
        assert orchestrator.snapshot().completed == ["b", "a"]
        await orchestrator.stop()

    @pytest.mark.asyncio
    async def test_restore_without_snapshot(self, make_orchestrator):
        orchestrator = make_orchestrator()

        assert await orchestrator.restore() is False
        assert orchestrator.status is SessionStatus.IDLE
