"""Persistent job store backed by SQLModel + SQLite."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy import delete as sa_delete
from sqlalchemy import func, or_
from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from novel_pipeline.errors import JobNotFoundError
from novel_pipeline.queue.models import JobStatus, JobType, JobView, QueueStats, RetryOutcome
from novel_pipeline.storage.alembic_runner import upgrade_head
from novel_pipeline.storage.common import (
    DEFAULT_BUSY_TIMEOUT_MS,
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from novel_pipeline.storage.sqlmodel_models import Chapter, Job, JobCheckpoint

logger = logging.getLogger(__name__)

_ORDERING_STEP = timedelta(microseconds=1)
_STATUS_VALUES = frozenset(status.value for status in JobStatus)


class JobRepository:
    """Queue persistence facade: creation, atomic claim and status transitions."""

    def __init__(
        self,
        db_path: Path,
        *,
        sqlite_busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS,
    ) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    def create_job(self, job_type: JobType | str, target_id: str) -> JobView:
        """Create a pending job stamped after every job already in the store."""

        job_type = _coerce_job_type(job_type)
        with Session(self.engine) as session:
            row = self._insert_pending(session, job_type=job_type, target_id=target_id)
            session.commit()
            session.refresh(row)
            logger.debug("Created job %s type=%s target=%s", row.id, row.type, row.target_id)
            return _to_job_view(row)

    def create_jobs(self, job_types: list[JobType], target_id: str) -> list[JobView]:
        """Create several jobs for one target in the given order."""

        with Session(self.engine) as session:
            rows = [
                self._insert_pending(session, job_type=job_type, target_id=target_id)
                for job_type in job_types
            ]
            session.commit()
            for row in rows:
                session.refresh(row)
            return [_to_job_view(row) for row in rows]

    def insert_follow_up(
        self,
        *,
        job_type: JobType | str,
        target_id: str,
        after_job_id: str,
    ) -> JobView:
        """Insert a job behind everything already queued, on behalf of a running job.

        The new job gets a fresh ordering key, so it is claimed after jobs that
        were pending when it was inserted and before any job created later.
        """

        job_type = _coerce_job_type(job_type)
        with Session(self.engine) as session:
            parent = session.get(Job, after_job_id)
            if parent is None:
                raise JobNotFoundError(f"Job not found: {after_job_id}")
            row = self._insert_pending(session, job_type=job_type, target_id=target_id)
            session.commit()
            session.refresh(row)
        logger.info(
            "Inserted follow-up job %s (%s) after %s for target %s",
            row.id,
            row.type,
            after_job_id,
            target_id,
        )
        return _to_job_view(row)

    def claim_next(self) -> JobView | None:
        """Atomically move the oldest claimable pending job to running.

        Returns None when nothing is pending or when another claimer won the
        race for the selected candidate.
        """

        now = to_db_datetime(utc_now())
        locked_targets = select(Chapter.id).where(col(Chapter.is_locked).is_(True))
        with Session(self.engine) as session:
            candidate = session.exec(
                select(Job)
                .where(
                    Job.status == JobStatus.PENDING.value,
                    col(Job.target_id).not_in(locked_targets),
                )
                .order_by(col(Job.created_at).asc())
                .limit(1),
            ).one_or_none()
            if candidate is None:
                return None

            result = session.exec(
                sa_update(Job)
                .where(
                    col(Job.id) == candidate.id,
                    col(Job.status) == JobStatus.PENDING.value,
                )
                .values(
                    status=JobStatus.RUNNING.value,
                    started_at=now,
                    heartbeat_at=now,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                logger.debug("Lost claim race for job %s", candidate.id)
                return None
            session.commit()
            session.refresh(candidate)
            return _to_job_view(candidate)

    def complete_job(self, job_id: str) -> bool:
        """Mark a running job completed and drop its checkpoint entries."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Job)
                .where(
                    col(Job.id) == job_id,
                    col(Job.status) == JobStatus.RUNNING.value,
                )
                .values(
                    status=JobStatus.COMPLETED.value,
                    completed_at=now,
                    error=None,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.exec(sa_delete(JobCheckpoint).where(col(JobCheckpoint.job_id) == job_id))
            session.commit()
            return True

    def touch_job(self, job_id: str) -> bool:
        """Refresh the heartbeat of a running job; False when it is no longer running."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Job)
                .where(
                    col(Job.id) == job_id,
                    col(Job.status) == JobStatus.RUNNING.value,
                )
                .values(heartbeat_at=now),
            )
            session.commit()
            return result.rowcount == 1

    def record_failure(
        self,
        *,
        job_id: str,
        error: str,
        max_attempts: int,
        heartbeat_before: datetime | None = None,
    ) -> RetryOutcome | None:
        """Count a failed attempt; requeue below the bound, fail permanently at it.

        With ``heartbeat_before`` the failure is recorded only while the job's
        last heartbeat is still older than that instant, so a live attempt
        that heartbeats in the meantime is left alone.
        """

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            row = session.exec(
                select(Job).where(
                    Job.id == job_id,
                    Job.status == JobStatus.RUNNING.value,
                ),
            ).one_or_none()
            if row is None:
                return None
            conditions = [
                col(Job.id) == job_id,
                col(Job.status) == JobStatus.RUNNING.value,
                col(Job.attempts) == row.attempts,
            ]
            if heartbeat_before is not None:
                conditions.append(
                    func.coalesce(Job.heartbeat_at, Job.started_at, Job.updated_at)
                    < to_db_datetime(heartbeat_before),
                )

            attempts = row.attempts + 1
            status = JobStatus.FAILED if attempts >= max_attempts else JobStatus.PENDING
            values: dict[str, Any] = {
                "status": status.value,
                "attempts": attempts,
                "error": error,
                "updated_at": now,
            }
            if status == JobStatus.PENDING:
                values["started_at"] = None
                values["heartbeat_at"] = None
            result = session.exec(sa_update(Job).where(*conditions).values(**values))
            if result.rowcount != 1:
                session.rollback()
                return None
            session.commit()
            return RetryOutcome(attempts=attempts, status=status)

    def pause_job(self, *, job_id: str, resume_after: datetime, error: str | None = None) -> bool:
        """Move a running job to paused without touching its attempt count."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Job)
                .where(
                    col(Job.id) == job_id,
                    col(Job.status) == JobStatus.RUNNING.value,
                )
                .values(
                    status=JobStatus.PAUSED.value,
                    resume_after=to_db_datetime(resume_after),
                    error=error,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def resume_paused_jobs(self, *, now: datetime | None = None) -> int:
        """Return paused jobs whose cool-down has elapsed to pending."""

        db_now = to_db_datetime(now or utc_now())
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Job)
                .where(
                    col(Job.status) == JobStatus.PAUSED.value,
                    or_(col(Job.resume_after).is_(None), col(Job.resume_after) <= db_now),
                )
                .values(
                    status=JobStatus.PENDING.value,
                    resume_after=None,
                    started_at=None,
                    heartbeat_at=None,
                    updated_at=db_now,
                ),
            )
            session.commit()
            return int(result.rowcount or 0)

    def next_resume_at(self, *, now: datetime | None = None) -> datetime | None:
        """Latest future resume instant among paused jobs, if any."""

        db_now = to_db_datetime(now or utc_now())
        with Session(self.engine) as session:
            value = session.exec(
                select(func.max(Job.resume_after)).where(
                    Job.status == JobStatus.PAUSED.value,
                    col(Job.resume_after) > db_now,
                ),
            ).one_or_none()
        if value is None:
            return None
        return to_utc_aware_datetime(value)

    def count_jobs(self, status: JobStatus) -> int:
        with Session(self.engine) as session:
            value = session.exec(
                select(func.count()).select_from(Job).where(Job.status == status.value),
            ).one()
        return int(value or 0)

    def get_queue_stats(self) -> QueueStats:
        """Count jobs grouped by status."""

        stats = QueueStats()
        with Session(self.engine) as session:
            rows = session.exec(
                select(Job.status, func.count()).group_by(Job.status),
            ).all()
        for status, count in rows:
            if status in _STATUS_VALUES:
                setattr(stats, status, int(count))
        return stats

    def get_job(self, job_id: str) -> JobView | None:
        with Session(self.engine) as session:
            row = session.get(Job, job_id)
            if row is None:
                return None
            return _to_job_view(row)

    def list_jobs(self, *, status: JobStatus | None = None, limit: int = 50) -> list[JobView]:
        """List jobs newest first."""

        with Session(self.engine) as session:
            stmt = select(Job)
            if status is not None:
                stmt = stmt.where(Job.status == status.value)
            rows = session.exec(
                stmt.order_by(col(Job.created_at).desc()).limit(limit),
            ).all()
            return [_to_job_view(row) for row in rows]

    def list_jobs_for_target(self, target_id: str) -> list[JobView]:
        """Full job history for a target, most recent first."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(Job)
                .where(Job.target_id == target_id)
                .order_by(col(Job.created_at).desc()),
            ).all()
            return [_to_job_view(row) for row in rows]

    def list_stale_running_jobs(self, *, stale_after: timedelta) -> list[JobView]:
        """Running jobs whose last heartbeat is older than ``stale_after``."""

        if stale_after.total_seconds() <= 0:
            raise ValueError("stale_after must be > 0")
        cutoff = to_db_datetime(utc_now() - stale_after)
        with Session(self.engine) as session:
            rows = session.exec(
                select(Job)
                .where(
                    Job.status == JobStatus.RUNNING.value,
                    func.coalesce(Job.heartbeat_at, Job.started_at, Job.updated_at) < cutoff,
                )
                .order_by(col(Job.created_at).asc()),
            ).all()
            return [_to_job_view(row) for row in rows]

    def latest_job_for_target(self, *, target_id: str, job_type: JobType | str) -> JobView | None:
        """Most recent job of the given type for the target."""

        job_type = _coerce_job_type(job_type)
        with Session(self.engine) as session:
            row = session.exec(
                select(Job)
                .where(Job.target_id == target_id, Job.type == job_type.value)
                .order_by(col(Job.created_at).desc())
                .limit(1),
            ).one_or_none()
            if row is None:
                return None
            return _to_job_view(row)

    def count_failed_jobs_for_targets(self, target_ids: list[str]) -> int:
        if not target_ids:
            return 0
        with Session(self.engine) as session:
            value = session.exec(
                select(func.count())
                .select_from(Job)
                .where(
                    Job.status == JobStatus.FAILED.value,
                    col(Job.target_id).in_(target_ids),
                ),
            ).one()
        return int(value or 0)

    def set_handoff(self, *, job_id: str, payload: dict[str, Any]) -> None:
        """Store a handoff payload on the job for a dependent downstream job."""

        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Job)
                .where(col(Job.id) == job_id)
                .values(
                    checkpoint=json.dumps(payload, ensure_ascii=False),
                    updated_at=to_db_datetime(utc_now()),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                raise JobNotFoundError(f"Job not found: {job_id}")
            session.commit()

    def retry_job(self, job_id: str) -> JobView:
        """Manual operator retry for a failed job; resets the attempt budget."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            row = session.get(Job, job_id)
            if row is None:
                raise JobNotFoundError(f"Job not found: {job_id}")
            if row.status != JobStatus.FAILED.value:
                raise RuntimeError(f"Only failed jobs can be retried manually, got {row.status}.")
            result = session.exec(
                sa_update(Job)
                .where(
                    col(Job.id) == job_id,
                    col(Job.status) == JobStatus.FAILED.value,
                )
                .values(
                    status=JobStatus.PENDING.value,
                    attempts=0,
                    error=None,
                    started_at=None,
                    completed_at=None,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                raise RuntimeError(f"Job state changed concurrently: {job_id}")
            session.commit()
            session.refresh(row)
            return _to_job_view(row)

    def _insert_pending(self, session: Session, *, job_type: JobType, target_id: str) -> Job:
        created_at = self._next_created_at(session)
        row = Job(
            id=str(uuid4()),
            type=job_type.value,
            target_id=target_id,
            status=JobStatus.PENDING.value,
            attempts=0,
            created_at=created_at,
            updated_at=created_at,
        )
        session.add(row)
        session.flush()
        return row

    def _next_created_at(self, session: Session) -> datetime:
        now = to_db_datetime(utc_now())
        latest = session.exec(select(func.max(Job.created_at))).one_or_none()
        if latest is not None and now <= latest:
            return latest + _ORDERING_STEP
        return now


def _coerce_job_type(value: JobType | str) -> JobType:
    if isinstance(value, JobType):
        return value
    try:
        return JobType(value)
    except ValueError as error:
        raise ValueError(f"Unsupported job type: {value!r}") from error


def _to_job_view(row: Job) -> JobView:
    return JobView(
        id=row.id,
        type=row.type,
        target_id=row.target_id,
        status=JobStatus(row.status),
        attempts=row.attempts,
        error=row.error,
        checkpoint=row.checkpoint,
        resume_after=(
            to_utc_aware_datetime(row.resume_after) if row.resume_after is not None else None
        ),
        created_at=to_utc_aware_datetime(row.created_at),
        started_at=to_utc_aware_datetime(row.started_at) if row.started_at is not None else None,
        completed_at=(
            to_utc_aware_datetime(row.completed_at) if row.completed_at is not None else None
        ),
        updated_at=to_utc_aware_datetime(row.updated_at),
        heartbeat_at=(
            to_utc_aware_datetime(row.heartbeat_at) if row.heartbeat_at is not None else None
        ),
    )
