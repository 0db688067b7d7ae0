"""Adapters for the issue tracker, coding agent and version control.

Key Components:
    - IssueTracker: Abstract base for issue trackers
    - AgentRunner: Abstract base for coding agents
    - Committer: Abstract base for the commit step
    - BeadsTracker: ``bd`` CLI implementation
    - ClaudeCodeRunner: Claude Code CLI implementation
    - GitCommitter: Local git implementation

Example:
    >>> from autobuild.providers import BeadsTracker, ClaudeCodeRunner
    >>> tracker = BeadsTracker(project_path=Path("."))
    >>> agent = ClaudeCodeRunner(coordinator_url="http://127.0.0.1:7433")
"""

from autobuild.providers.base import AgentRunner, Committer, IssueTracker
from autobuild.providers.beads import BeadsTracker
from autobuild.providers.external_agent import ClaudeCodeRunner
from autobuild.providers.git_commit import GitCommitter

__all__ = [
    "AgentRunner",
    "BeadsTracker",
    "ClaudeCodeRunner",
    "Committer",
    "GitCommitter",
    "IssueTracker",
]
