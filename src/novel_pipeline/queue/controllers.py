"""Controllers for queue and worker CLI commands."""

from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path

from novel_pipeline.completion import (
    AnthropicCompletionClient,
    CompletionService,
    EchoCompletionClient,
)
from novel_pipeline.config import Settings
from novel_pipeline.pipeline.stages import StageRuntime, build_job_handlers
from novel_pipeline.queue.checkpoint import CheckpointLedger
from novel_pipeline.queue.models import JobStatus, JobView
from novel_pipeline.queue.rate_limit import RateLimitHandler
from novel_pipeline.queue.repository import JobRepository
from novel_pipeline.queue.session import SessionTracker, UsageWindowTracker
from novel_pipeline.queue.worker import QueueWorker
from novel_pipeline.units.repository import UnitRepository


@dataclass(slots=True)
class QueueStatsCommand:
    """CLI input for queue counts."""

    db_path: Path | None


@dataclass(slots=True)
class ListJobsCommand:
    """CLI input for job listing."""

    db_path: Path | None
    status: str | None
    limit: int


@dataclass(slots=True)
class InspectJobCommand:
    """CLI input for job inspection."""

    db_path: Path | None
    job_id: str


@dataclass(slots=True)
class EnqueueJobCommand:
    """CLI input for enqueuing a single stage job."""

    db_path: Path | None
    job_type: str
    target_id: str


@dataclass(slots=True)
class WorkerCommand:
    """CLI input for worker execution."""

    db_path: Path | None
    once: bool
    max_jobs: int | None
    max_idle_polls: int | None
    backend: str | None = None


class QueueCliController:
    """Runs queue inspection commands and the worker."""

    def stats(self, command: QueueStatsCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            stats = repository.get_queue_stats()
        return [
            "Queue: "
            + " ".join(f"{name}={count}" for name, count in stats.as_dict().items()),
        ]

    def list_jobs(self, command: ListJobsCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        status = JobStatus(command.status.lower()) if command.status else None
        with _repository(settings) as repository:
            jobs = repository.list_jobs(status=status, limit=command.limit)
        if not jobs:
            return ["No jobs found."]
        return [format_job_line(job) for job in jobs]

    def inspect_job(self, command: InspectJobCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            job = repository.get_job(command.job_id)
            if job is None:
                raise RuntimeError(f"Job not found: {command.job_id}")
            ledger = CheckpointLedger(repository.engine)
            steps = ledger.steps(job.id)

        lines = [
            f"Job: {job.id}",
            f"Type: {job.type}",
            f"Target: {job.target_id}",
            f"Status: {job.status.value}",
            f"Attempts: {job.attempts}",
            f"Created: {job.created_at.isoformat()}",
            f"Started: {job.started_at.isoformat() if job.started_at else '-'}",
            f"Completed: {job.completed_at.isoformat() if job.completed_at else '-'}",
        ]
        if job.heartbeat_at is not None:
            lines.append(f"Heartbeat: {job.heartbeat_at.isoformat()}")
        if job.resume_after is not None:
            lines.append(f"Resume after: {job.resume_after.isoformat()}")
        if job.error:
            lines.append(f"Error: {job.error}")
        if job.checkpoint:
            lines.append(f"Handoff: {job.checkpoint}")
        lines.append(f"Checkpoint steps: {', '.join(steps) if steps else '-'}")
        return lines

    def retry_job(self, command: InspectJobCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            job = repository.retry_job(command.job_id)
        return [f"Job re-queued: {job.id} ({job.type})"]

    def enqueue(self, command: EnqueueJobCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            job = repository.create_job(command.job_type, command.target_id)
        return [f"Job enqueued: {job.id} ({job.type}) target={job.target_id}"]

    def run_worker(self, command: WorkerCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        if command.backend:
            settings.completion.backend = command.backend.lower()
        settings.validate_for_worker()

        tracker = UsageWindowTracker(
            window=timedelta(seconds=settings.queue.session_window_seconds),
        )
        completion = build_completion_client(settings, session_tracker=tracker)
        try:
            with _repository(settings) as repository:
                worker = build_worker(
                    settings=settings,
                    repository=repository,
                    completion=completion,
                    session_tracker=tracker,
                )
                summary = (
                    worker.run_once()
                    if command.once
                    else worker.run_loop(
                        max_jobs=command.max_jobs,
                        max_idle_polls=command.max_idle_polls,
                    )
                )
        finally:
            if isinstance(completion, AnthropicCompletionClient):
                completion.close()

        return [
            "Worker summary: "
            f"processed={summary.processed} completed={summary.completed} "
            f"retried={summary.retried} failed={summary.failed} "
            f"paused={summary.paused} idle_polls={summary.idle_polls}",
        ]


def build_completion_client(
    settings: Settings,
    *,
    session_tracker: SessionTracker | None = None,
) -> CompletionService:
    if settings.completion.backend == "echo":
        return EchoCompletionClient()
    return AnthropicCompletionClient(
        api_key=settings.completion.api_key,
        model=settings.completion.model,
        base_url=settings.completion.base_url,
        timeout_seconds=settings.completion.request_timeout_seconds,
        max_retries=settings.completion.max_retries,
        session_tracker=session_tracker,
    )


def build_worker(
    *,
    settings: Settings,
    repository: JobRepository,
    completion: CompletionService,
    session_tracker: SessionTracker | None = None,
) -> QueueWorker:
    """Wire a worker with the stage handlers and rate-limit policy from settings."""

    ledger = CheckpointLedger(repository.engine)
    runtime = StageRuntime(
        jobs=repository,
        units=UnitRepository(repository.engine),
        ledger=ledger,
        completion=completion,
        default_target_words=settings.pipeline.default_target_words,
    )
    return QueueWorker(
        repository=repository,
        ledger=ledger,
        rate_limit_handler=RateLimitHandler(
            repository=repository,
            session_tracker=session_tracker,
            fallback_cool_down=timedelta(seconds=settings.queue.rate_limit_fallback_seconds),
        ),
        handlers=build_job_handlers(runtime),
        poll_interval_seconds=settings.queue.poll_interval_seconds,
        max_attempts=settings.queue.max_attempts,
        graceful_shutdown_seconds=settings.queue.graceful_shutdown_seconds,
        stale_after_seconds=settings.queue.stale_after_seconds,
    )


def format_job_line(job: JobView) -> str:
    error = f" error={json.dumps(job.error[:80])}" if job.error else ""
    return (
        f"{job.id} {job.type} status={job.status.value} attempts={job.attempts} "
        f"target={job.target_id} created={job.created_at.isoformat()}{error}"
    )


@contextmanager
def _repository(settings: Settings) -> Iterator[JobRepository]:
    repository = JobRepository(
        db_path=settings.db_path,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()
