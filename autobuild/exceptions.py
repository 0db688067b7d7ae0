"""Custom exception hierarchy for the autobuild orchestrator.

This module defines a structured exception hierarchy that lets each layer
decide what it absorbs and what it escalates. Lock contention is deliberately
absent: a refused lease is an ordinary return value, never an exception.

Exception Hierarchy:
    AutoBuildError (base)
    ├── ConfigurationError
    ├── TrackerError
    │   └── TrackerConflictError
    ├── AgentError
    │   └── AgentCrashError
    ├── WorkspaceError
    ├── CommitError
    ├── CoordinatorUnavailableError
    ├── SessionStateError
    ├── InvalidTransitionError
    └── ReviewError

Example Usage:
    >>> from autobuild.exceptions import ConfigurationError
    >>> try:
    ...     load_config(path)
    ... except FileNotFoundError as e:
    ...     raise ConfigurationError(f"Config file not found: {path}") from e
"""


class AutoBuildError(Exception):
    """Base exception for all autobuild errors.

    All custom exceptions inherit from this base class, allowing callers to
    catch every orchestrator-specific error with a single except clause.

    Attributes:
        message: Human-readable error description
    """

    def __init__(self, message: str) -> None:
        """Initialize exception.

        Args:
            message: Error message
        """
        self.message = message
        super().__init__(message)


class ConfigurationError(AutoBuildError):
    """Configuration-related errors.

    Raised when configuration files are invalid, missing, or contain
    incompatible settings.

    Examples:
        - Configuration file not found
        - Invalid YAML syntax
        - Out-of-range worker pool size
    """

    pass


class TrackerError(AutoBuildError):
    """Issue tracker read or update failed.

    Attributes:
        message: Human-readable error description
        issue_id: Issue the failing call referenced, if any
    """

    def __init__(self, message: str, issue_id: str | None = None) -> None:
        """Initialize exception.

        Args:
            message: Error message
            issue_id: Issue the failing call referenced
        """
        self.issue_id = issue_id
        full_message = f"{message} (issue: {issue_id})" if issue_id else message
        super().__init__(full_message)
        self.message = message


class TrackerConflictError(TrackerError):
    """Issue was modified externally between read and update.

    The orchestrator reacts by releasing the claim and re-fetching the issue.
    """

    pass


class AgentError(AutoBuildError):
    """Base exception for coding-agent execution errors.

    Attributes:
        message: Human-readable error description
        issue_id: Issue the agent was working on
    """

    def __init__(self, message: str, issue_id: str | None = None) -> None:
        """Initialize exception.

        Args:
            message: Error message
            issue_id: Issue the agent was working on
        """
        self.issue_id = issue_id
        full_message = f"{message} (issue: {issue_id})" if issue_id else message
        super().__init__(full_message)
        self.message = message


class AgentCrashError(AgentError):
    """The agent process died or could not be started.

    Unlike an agent reporting an unsuccessful outcome, a crash is not
    recoverable through the fixing loop and routes the issue to human review.
    """

    pass


class WorkspaceError(AutoBuildError):
    """The shared working tree is unusable (missing, corrupted, unreadable)."""

    pass


class CommitError(AutoBuildError):
    """Staging or committing the working tree failed.

    Attributes:
        message: Human-readable error description
        output: Captured stderr of the failing git command
    """

    def __init__(self, message: str, output: str | None = None) -> None:
        """Initialize exception.

        Args:
            message: Error message
            output: Captured stderr of the failing command
        """
        self.output = output
        super().__init__(message)


class CoordinatorUnavailableError(AutoBuildError):
    """The file coordinator lock service could not be reached.

    This is an infrastructure fault: it halts new claims session-wide and
    moves the session to the ``error`` status.

    Attributes:
        message: Human-readable error description
        url: Base URL of the unreachable service
    """

    def __init__(self, message: str, url: str | None = None) -> None:
        """Initialize exception.

        Args:
            message: Error message
            url: Base URL of the unreachable service
        """
        self.url = url
        full_message = f"{message} (url: {url})" if url else message
        super().__init__(full_message)
        self.message = message


class SessionStateError(AutoBuildError):
    """A session operation is not allowed in the current session status."""

    pass


class InvalidTransitionError(AutoBuildError):
    """A worker attempted a phase transition outside its transition table.

    Attributes:
        source: Phase the worker was in
        target: Phase the worker tried to enter
    """

    def __init__(self, source: str, target: str) -> None:
        """Initialize exception.

        Args:
            source: Phase the worker was in
            target: Phase the worker tried to enter
        """
        self.source = source
        self.target = target
        super().__init__(f"Invalid worker transition: {source} -> {target}")


class ReviewError(AutoBuildError):
    """An approval, rejection or commit trigger referenced no waiting worker."""

    pass
