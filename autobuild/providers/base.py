"""
Abstract base classes for providers.

This module defines the interfaces the orchestrator consumes: the issue
tracker, the coding agent and the commit step. Each has one concrete adapter
in this package; tests substitute in-memory fakes.
"""

from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable

from autobuild.enums import IssueStatus
from autobuild.models.domain import AgentEvent, AgentRequest, AgentResult, Issue

AgentEventCallback = Callable[[AgentEvent], Awaitable[None]]


class IssueTracker(ABC):
    """Abstract base class for issue tracker implementations.

    The tracker owns issue content. The orchestrator reads issues to schedule
    them and writes back only status changes.
    """

    @abstractmethod
    async def list_issues(self) -> list[Issue]:
        """Retrieve every issue the tracker knows about.

        Returns:
            All issues, in any status.

        Raises:
            TrackerError: If the tracker cannot be read.
        """
        pass

    @abstractmethod
    async def get_issue(self, issue_id: str) -> Issue:
        """Get a single issue by id.

        Raises:
            TrackerError: If the issue does not exist or cannot be read.
        """
        pass

    @abstractmethod
    async def update_status(
        self,
        issue_id: str,
        status: IssueStatus,
        expected: IssueStatus | None = None,
    ) -> None:
        """Change the status of an issue.

        Args:
            issue_id: Issue to update.
            status: New status.
            expected: When given, the update only applies if the issue is
                currently in this status.

        Raises:
            TrackerConflictError: If ``expected`` does not match the
                tracker's current status.
            TrackerError: If the update fails.
        """
        pass

    @abstractmethod
    async def close_issue(self, issue_id: str, reason: str) -> None:
        """Close an issue with a human-readable reason.

        Raises:
            TrackerError: If the update fails.
        """
        pass


class AgentRunner(ABC):
    """Abstract base class for coding agent implementations.

    An agent run is an opaque, cancellable task: cancelling the awaiting
    coroutine must terminate the underlying work.
    """

    @abstractmethod
    async def run(self, request: AgentRequest, on_event: AgentEventCallback | None = None) -> AgentResult:
        """Perform the work described by ``request``.

        Args:
            request: Issue, working directory and mode for this invocation.
            on_event: Awaited with each streaming progress event. The agent
                should not run ahead of the callback: a worker may be waiting
                there for a lease on the file the event names.

        Returns:
            AgentResult. ``success`` False is a recoverable outcome.

        Raises:
            AgentCrashError: If the agent could not run or died.
        """
        pass


class Committer(ABC):
    """Abstract base class for the version-control commit step."""

    @abstractmethod
    async def commit(self, message: str, issue_id: str) -> str | None:
        """Stage and commit the working tree.

        Args:
            message: Commit subject line.
            issue_id: Issue referenced in the commit body.

        Returns:
            The new commit id, or None when there was nothing to commit.

        Raises:
            CommitError: If staging or committing failed.
        """
        pass
