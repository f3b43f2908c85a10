"""Per-job progress markers written while a job executes."""

from __future__ import annotations

import json
import logging
from typing import Any

from sqlalchemy import delete as sa_delete
from sqlalchemy.engine import Engine
from sqlmodel import Session, col, select

from novel_pipeline.queue.models import CheckpointRestore, CheckpointView
from novel_pipeline.storage.common import to_db_datetime, to_utc_aware_datetime, utc_now
from novel_pipeline.storage.sqlmodel_models import JobCheckpoint

logger = logging.getLogger(__name__)


class CheckpointLedger:
    """Append-only step ledger scoped to a job's current attempt.

    Entries exist so an interrupted attempt can be diagnosed (and a stage can
    skip work it already persisted). They are deleted when the job completes
    and reset when a new attempt starts, so this is not an audit log.
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def save(self, job_id: str, step: str, payload: dict[str, Any] | None = None) -> None:
        with Session(self.engine) as session:
            session.add(
                JobCheckpoint(
                    job_id=job_id,
                    step=step,
                    payload=json.dumps(payload or {}, ensure_ascii=False),
                    created_at=to_db_datetime(utc_now()),
                ),
            )
            session.commit()
        logger.debug("Checkpoint %s for job %s", step, job_id)

    def get(self, job_id: str) -> CheckpointView | None:
        """Latest checkpoint for the job."""

        with Session(self.engine) as session:
            row = session.exec(
                select(JobCheckpoint)
                .where(JobCheckpoint.job_id == job_id)
                .order_by(col(JobCheckpoint.id).desc())
                .limit(1),
            ).one_or_none()
            if row is None:
                return None
            return _to_checkpoint_view(row)

    def steps(self, job_id: str) -> list[str]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(JobCheckpoint.step)
                .where(JobCheckpoint.job_id == job_id)
                .order_by(col(JobCheckpoint.id).asc()),
            ).all()
        return list(rows)

    def clear(self, job_id: str) -> int:
        with Session(self.engine) as session:
            result = session.exec(
                sa_delete(JobCheckpoint).where(col(JobCheckpoint.job_id) == job_id),
            )
            session.commit()
            return int(result.rowcount or 0)

    def restore(self, job_id: str) -> CheckpointRestore | None:
        """Summarize what an earlier attempt of the job got through."""

        latest = self.get(job_id)
        if latest is None:
            return None
        return CheckpointRestore(
            resume_from_step=latest.step,
            data=latest.data,
            completed_steps=self.steps(job_id),
        )


def _to_checkpoint_view(row: JobCheckpoint) -> CheckpointView:
    data: dict[str, Any] = {}
    if row.payload:
        try:
            parsed = json.loads(row.payload)
        except json.JSONDecodeError:
            logger.warning("Unreadable checkpoint payload for job %s step %s", row.job_id, row.step)
        else:
            if isinstance(parsed, dict):
                data = parsed
    return CheckpointView(
        job_id=row.job_id,
        step=row.step,
        data=data,
        created_at=to_utc_aware_datetime(row.created_at),
    )
