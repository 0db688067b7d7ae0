"""Core domain models for the orchestrator.

This package defines the issue, verification, agent and ledger records passed
between components, plus the persisted session aggregate.
"""

from autobuild.models.domain import (
    AgentEvent,
    AgentRequest,
    AgentResult,
    GateResult,
    Issue,
    IssueDependency,
    LogEntry,
    ProgressRecord,
    VerificationResult,
)
from autobuild.models.session import AutoBuildSession, WorkerSnapshot

__all__ = [
    "AgentEvent",
    "AgentRequest",
    "AgentResult",
    "AutoBuildSession",
    "GateResult",
    "Issue",
    "IssueDependency",
    "LogEntry",
    "ProgressRecord",
    "VerificationResult",
    "WorkerSnapshot",
]
