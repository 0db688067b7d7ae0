"""Tests for autobuild/engine/ledger.py."""

import pytest

from autobuild.engine.ledger import ActivityLog, SessionLedger
from autobuild.enums import LogEntryType, SessionStatus
from autobuild.exceptions import SessionStateError


class TestSessionLifecycle:
    """Tests for session status transitions."""

    @pytest.mark.parametrize(
        "path",
        [
            [SessionStatus.RUNNING, SessionStatus.PAUSED, SessionStatus.RUNNING, SessionStatus.IDLE],
            [SessionStatus.RUNNING, SessionStatus.ERROR, SessionStatus.IDLE],
            [SessionStatus.RUNNING, SessionStatus.PAUSED, SessionStatus.ERROR, SessionStatus.IDLE],
            [SessionStatus.IDLE, SessionStatus.RUNNING, SessionStatus.PAUSED, SessionStatus.IDLE],
        ],
    )
    def test_allowed_paths(self, path):
        ledger = SessionLedger()
        for target in path:
            ledger.transition(target)

        assert ledger.status is path[-1]

    @pytest.mark.parametrize(
        "setup,target",
        [
            ([], SessionStatus.PAUSED),
            ([], SessionStatus.ERROR),
            ([SessionStatus.RUNNING], SessionStatus.RUNNING),
            ([SessionStatus.RUNNING, SessionStatus.ERROR], SessionStatus.RUNNING),
            ([SessionStatus.RUNNING, SessionStatus.ERROR], SessionStatus.PAUSED),
        ],
    )
    def test_rejected_transitions(self, setup, target):
        ledger = SessionLedger()
        for step in setup:
            ledger.transition(step)

        with pytest.raises(SessionStateError, match="Cannot move session"):
            ledger.transition(target)

    def test_transition_returns_previous_and_touches(self):
        ledger = SessionLedger()
        before = ledger.last_activity_at

        assert ledger.transition(SessionStatus.RUNNING) is SessionStatus.IDLE
        assert ledger.last_activity_at >= before

    def test_begin_adopts_restored_identity(self):
        ledger = SessionLedger()
        fresh = ledger.session_id

        ledger.begin("restored-id")
        assert ledger.session_id == "restored-id"

        ledger.begin()
        assert ledger.session_id not in (fresh, "restored-id")


class TestActivityLog:
    """Tests for the bounded activity log and its read-only view."""

    def test_entries_are_bounded(self):
        activity = ActivityLog(max_entries=3)
        for n in range(5):
            activity.append(LogEntryType.INFO, f"entry {n}")

        assert [e.message for e in activity] == ["entry 2", "entry 3", "entry 4"]
        assert len(activity) == 3
        assert activity.total == 5

    def test_view_filters_and_limits(self):
        ledger = SessionLedger()
        ledger.record(LogEntryType.INFO, "one", issue_id="ab-1", worker_id=0)
        ledger.record(LogEntryType.AGENT, "two", issue_id="ab-2", worker_id=1)
        ledger.record(LogEntryType.ERROR, "three", issue_id="ab-1", worker_id=0)
        view = ledger.log_view

        assert [e.message for e in view.for_issue("ab-1")] == ["one", "three"]
        assert [e.message for e in view.recent(2)] == ["two", "three"]
        assert view.recent(0) == []
        assert view.total == 3
        assert len(view) == 3

    def test_view_cannot_append(self):
        view = SessionLedger().log_view

        assert not hasattr(view, "append")
        assert not hasattr(view, "record")

    def test_entry_to_dict(self):
        ledger = SessionLedger()
        entry = ledger.record(LogEntryType.WARNING, "Waiting for files", issue_id="ab-1", worker_id=2)

        data = entry.to_dict()

        assert data["type"] == "warning"
        assert data["message"] == "Waiting for files"
        assert data["issueId"] == "ab-1"
        assert data["workerId"] == 2
        assert data["id"] and data["timestamp"]

    def test_entry_ids_are_unique(self):
        ledger = SessionLedger()
        entries = [ledger.record(LogEntryType.INFO, "x") for _ in range(20)]

        assert len({e.id for e in entries}) == 20
