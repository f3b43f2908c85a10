"""Domain models for the job queue."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class JobStatus(str, Enum):
    """Durable job lifecycle states."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    PAUSED = "paused"
    FAILED = "failed"


class JobType(str, Enum):
    """Closed set of stage kinds a job can execute."""

    GENERATE = "generate_chapter"
    STRUCTURAL_REVIEW = "structural_review"
    REVISION = "revision"
    LINE_REVIEW = "line_review"
    CONSISTENCY_REVIEW = "consistency_review"
    CORRECTNESS_REVIEW = "correctness_review"
    FINAL_CHECK = "final_check"
    SENSITIVITY_REVIEW = "sensitivity_review"
    RESEARCH_REVIEW = "research_review"
    AUDIENCE_REVIEW = "audience_review"
    OPENING_REVIEW = "opening_review"
    SUMMARY = "generate_summary"
    STATE_PROPAGATION = "update_states"


class FailureClass(str, Enum):
    """Normalized failure classes used by the worker outcome policy."""

    RATE_LIMITED = "rate_limited"
    UNKNOWN_STAGE = "unknown_stage"
    MISSING_UPSTREAM = "missing_upstream"
    STAGE_FAILURE = "stage_failure"


@dataclass(slots=True)
class JobView:
    """Readable job view for CLI, worker and orchestrator logic."""

    id: str
    type: str
    target_id: str
    status: JobStatus
    attempts: int
    error: str | None
    checkpoint: str | None
    resume_after: datetime | None
    created_at: datetime
    started_at: datetime | None
    completed_at: datetime | None
    updated_at: datetime
    heartbeat_at: datetime | None = None


@dataclass(slots=True)
class QueueStats:
    """Job counts by status."""

    pending: int = 0
    running: int = 0
    completed: int = 0
    paused: int = 0
    failed: int = 0

    @property
    def total(self) -> int:
        return self.pending + self.running + self.completed + self.paused + self.failed

    def as_dict(self) -> dict[str, int]:
        return {
            "pending": self.pending,
            "running": self.running,
            "completed": self.completed,
            "paused": self.paused,
            "failed": self.failed,
            "total": self.total,
        }


@dataclass(slots=True)
class CheckpointView:
    """One progress marker written by a running job."""

    job_id: str
    step: str
    data: dict[str, Any]
    created_at: datetime


@dataclass(slots=True)
class CheckpointRestore:
    """Progress left behind by an interrupted attempt."""

    resume_from_step: str
    data: dict[str, Any]
    completed_steps: list[str] = field(default_factory=list)

    def has_step(self, step: str) -> bool:
        return step in self.completed_steps


@dataclass(slots=True)
class RetryOutcome:
    """Result of applying the retry policy to a failed attempt."""

    attempts: int
    status: JobStatus

    @property
    def failed(self) -> bool:
        return self.status == JobStatus.FAILED

    @property
    def retried(self) -> bool:
        return self.status == JobStatus.PENDING
