"""Orchestration engine.

Key Components:
    - IssueQueueManager: Priority/phase ordered queue with atomic claims
    - Worker: Per-slot phase state machine driving one issue at a time
    - VerificationRunner: Lint, test and build gates with failure attribution
    - SessionLedger: Session status and bounded activity log
    - SessionStore / ProgressStore: Snapshot and progress persistence
    - Orchestrator: Owns the pool, the partitions and the session

Example:
    >>> from autobuild.engine import Orchestrator
    >>> orchestrator = Orchestrator(settings, tracker, agent, committer, locks)
    >>> await orchestrator.enqueue()
    >>> await orchestrator.start()
"""

from autobuild.engine.orchestrator import Orchestrator

__all__ = ["Orchestrator"]
