"""Persisted session aggregate.

The snapshot is the only orchestration state written to disk. It references
issues by id and never stores issue content.
"""

from __future__ import annotations

from datetime import UTC, datetime

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

from autobuild.config.settings import AutoBuildSettings
from autobuild.enums import SessionStatus, WorkerPhase


def _now() -> datetime:
    return datetime.now(UTC)


class WorkerSnapshot(BaseModel):
    """Point-in-time view of one worker slot."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: int
    issue_id: str | None = None
    phase: WorkerPhase = WorkerPhase.IDLE
    retry_count: int = 0
    files_modified: list[str] = Field(default_factory=list)
    start_time: datetime | None = None


class AutoBuildSession(BaseModel):
    """The orchestration aggregate.

    ``queue``, ``completed`` and ``human_review`` partition every issue known
    to the session; the validator rejects any snapshot where they overlap.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    session_id: str
    status: SessionStatus = SessionStatus.IDLE
    queue: list[str] = Field(default_factory=list)
    completed: list[str] = Field(default_factory=list)
    human_review: list[str] = Field(default_factory=list)
    workers: list[WorkerSnapshot] = Field(default_factory=list)
    retry_counts: dict[str, int] = Field(default_factory=dict)
    started_at: datetime = Field(default_factory=_now)
    last_activity_at: datetime = Field(default_factory=_now)
    settings: AutoBuildSettings = Field(default_factory=AutoBuildSettings)

    @model_validator(mode="after")
    def validate_partitions(self) -> AutoBuildSession:
        """Enforce pairwise-disjoint queue/completed/humanReview partitions."""
        queue, completed, review = set(self.queue), set(self.completed), set(self.human_review)
        overlap = (queue & completed) | (queue & review) | (completed & review)
        if overlap:
            raise ValueError(f"Session partitions overlap: {sorted(overlap)}")
        return self

    @property
    def is_active(self) -> bool:
        return self.status in (SessionStatus.RUNNING, SessionStatus.PAUSED)
