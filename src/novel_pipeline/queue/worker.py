"""Single queue worker: claim, dispatch to a stage handler, record the outcome."""

from __future__ import annotations

import logging
import signal
import threading
from collections.abc import Callable, Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta

from novel_pipeline.errors import UnknownStageError
from novel_pipeline.queue.checkpoint import CheckpointLedger
from novel_pipeline.queue.models import CheckpointRestore, JobView
from novel_pipeline.queue.rate_limit import RateLimitHandler, classify_failure
from novel_pipeline.queue.repository import JobRepository
from novel_pipeline.storage.common import utc_now

logger = logging.getLogger(__name__)

JobHandler = Callable[[JobView, CheckpointRestore | None], None]

_MAX_ERROR_CHARS = 2000
_HEARTBEAT_FRACTION = 5
_MAX_HEARTBEAT_INTERVAL_SECONDS = 60.0


@dataclass(slots=True)
class WorkerRunSummary:
    """Aggregate worker counters for CLI reporting."""

    processed: int = 0
    completed: int = 0
    retried: int = 0
    failed: int = 0
    paused: int = 0
    idle_polls: int = 0

    def add(self, other: WorkerRunSummary) -> None:
        self.processed += other.processed
        self.completed += other.completed
        self.retried += other.retried
        self.failed += other.failed
        self.paused += other.paused
        self.idle_polls += other.idle_polls


class QueueWorker:
    """Consumes pending jobs one at a time, oldest first.

    Exactly one job is in flight at a time. ``start()`` runs the loop in a
    daemon thread; ``run_loop()`` runs it in the calling thread with signal
    handlers, for the CLI. ``stop()`` never abandons a job mid-step: it waits
    for the in-flight job up to the shutdown ceiling.

    While a job runs, a heartbeat thread refreshes its ``heartbeat_at``. Only
    running jobs whose heartbeat is older than ``stale_after_seconds`` are
    treated as interrupted, so a second worker never requeues a live attempt.
    A non-positive ``stale_after_seconds`` disables recovery.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: JobRepository,
        ledger: CheckpointLedger,
        rate_limit_handler: RateLimitHandler,
        handlers: Mapping[str, JobHandler],
        poll_interval_seconds: float = 1.0,
        max_attempts: int = 3,
        graceful_shutdown_seconds: float = 60.0,
        stale_after_seconds: float = 300.0,
    ) -> None:
        self.repository = repository
        self.ledger = ledger
        self.rate_limit_handler = rate_limit_handler
        self.handlers = dict(handlers)
        self.poll_interval_seconds = poll_interval_seconds
        self.max_attempts = max_attempts
        self.graceful_shutdown_seconds = graceful_shutdown_seconds
        self.stale_after_seconds = stale_after_seconds
        self._stop_requested = threading.Event()
        self._idle = threading.Event()
        self._idle.set()
        self._thread: threading.Thread | None = None
        self._current_job_id: str | None = None

    @property
    def current_job_id(self) -> str | None:
        return self._current_job_id

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """Run the worker loop in a background daemon thread."""

        if self.is_running:
            return
        self._stop_requested.clear()
        self._thread = threading.Thread(target=self._loop, name="queue-worker", daemon=True)
        self._thread.start()
        logger.info("Queue worker started")

    def stop(self, timeout: float | None = None) -> bool:
        """Disable the loop and wait for the in-flight job, up to ``timeout``.

        Returns True when the worker went idle within the wait.
        """

        wait_seconds = self.graceful_shutdown_seconds if timeout is None else timeout
        self._stop_requested.set()
        finished = self._idle.wait(wait_seconds)
        if not finished:
            logger.warning(
                "Job %s still running after %.1fs shutdown wait; returning control",
                self._current_job_id,
                wait_seconds,
            )
        if self._thread is not None and finished:
            self._thread.join(timeout=max(1.0, self.poll_interval_seconds))
            if not self._thread.is_alive():
                self._thread = None
        logger.info("Queue worker stopped")
        return finished

    def run_once(self) -> WorkerRunSummary:
        """Process at most one job from the queue."""

        summary = WorkerRunSummary()
        self._idle.clear()
        try:
            if self._stop_requested.is_set():
                summary.idle_polls = 1
                return summary

            self._recover_stale_jobs()
            self.rate_limit_handler.resume_due_jobs()
            if self.rate_limit_handler.cooling_down():
                logger.debug(
                    "Queue cooling down; paused jobs=%d",
                    self.rate_limit_handler.paused_jobs_count(),
                )
                summary.idle_polls = 1
                return summary

            job = self.claim_next()
            if job is None:
                summary.idle_polls = 1
                return summary

            summary.processed = 1
            self._current_job_id = job.id
            logger.info("Claimed job %s (%s) for %s", job.id, job.type, job.target_id)
            restore = self._begin_attempt(job)
            try:
                with self._heartbeat(job.id):
                    self.execute(job, restore)
            except Exception as error:  # noqa: BLE001
                self._handle_failure(job=job, error=error, summary=summary)
            else:
                if self.repository.complete_job(job.id):
                    summary.completed = 1
                    logger.info("Job %s (%s) completed", job.id, job.type)
                else:
                    logger.warning("Job %s was no longer running at completion", job.id)
            return summary
        finally:
            self._current_job_id = None
            self._idle.set()

    def run_loop(
        self,
        *,
        max_jobs: int | None = None,
        max_idle_polls: int | None = None,
    ) -> WorkerRunSummary:
        """Run the loop in the calling thread.

        Args:
            max_jobs: Stop after processing this many jobs (None = unlimited).
            max_idle_polls: Stop after this many consecutive empty polls
                (None = keep polling until stopped).
        """

        aggregate = WorkerRunSummary()
        consecutive_idle = 0
        self._stop_requested.clear()
        with self._signal_handlers():
            while not self._stop_requested.is_set():
                if max_jobs is not None and aggregate.processed >= max_jobs:
                    break
                try:
                    summary = self.run_once()
                except Exception:
                    logger.exception("Queue worker loop error")
                    summary = WorkerRunSummary(idle_polls=1)
                aggregate.add(summary)

                if summary.paused:
                    consecutive_idle = 0
                    self._sleep_with_stop(self.poll_interval_seconds)
                    continue
                if summary.processed:
                    consecutive_idle = 0
                    continue
                consecutive_idle += 1
                if max_idle_polls is not None and consecutive_idle >= max_idle_polls:
                    break
                self._sleep_with_stop(self.poll_interval_seconds)
        return aggregate

    def claim_next(self) -> JobView | None:
        return self.repository.claim_next()

    def execute(self, job: JobView, restore: CheckpointRestore | None = None) -> None:
        """Dispatch the job to the handler registered for its type."""

        handler = self.handlers.get(job.type)
        if handler is None:
            raise UnknownStageError(job.type)
        handler(job, restore)

    def _loop(self) -> None:
        while not self._stop_requested.is_set():
            try:
                summary = self.run_once()
            except Exception:
                logger.exception("Queue worker loop error")
                summary = None
            if summary is None or summary.paused or not summary.processed:
                self._sleep_with_stop(self.poll_interval_seconds)

    def _begin_attempt(self, job: JobView) -> CheckpointRestore | None:
        restore = self.ledger.restore(job.id)
        if restore is None:
            return None
        logger.info(
            "Job %s resumes after interrupted attempt; last step=%s steps=%s",
            job.id,
            restore.resume_from_step,
            restore.completed_steps,
        )
        self.ledger.clear(job.id)
        return restore

    def _handle_failure(
        self,
        *,
        job: JobView,
        error: Exception,
        summary: WorkerRunSummary,
    ) -> None:
        classification = classify_failure(error)
        if classification.is_rate_limit:
            resume_after = self.rate_limit_handler.handle_rate_limit(job, error)
            summary.paused = 1
            logger.info("Job %s paused until %s", job.id, resume_after.isoformat())
            return

        logger.warning(
            "Job %s (%s) attempt failed: %s %s",
            job.id,
            job.type,
            error,
            classification.to_log_details(),
        )
        outcome = self.repository.record_failure(
            job_id=job.id,
            error=_error_summary(error),
            max_attempts=self.max_attempts,
        )
        if outcome is None:
            logger.warning("Job %s was no longer running when recording failure", job.id)
            return
        if outcome.failed:
            summary.failed = 1
            logger.error(
                "Job %s (%s) failed permanently after %d attempts",
                job.id,
                job.type,
                outcome.attempts,
            )
        else:
            summary.retried = 1

    def _recover_stale_jobs(self) -> None:
        if self.stale_after_seconds <= 0:
            return
        stale_after = timedelta(seconds=self.stale_after_seconds)
        for job in self.repository.list_stale_running_jobs(stale_after=stale_after):
            steps = self.ledger.steps(job.id)
            last_step = steps[-1] if steps else "none"
            outcome = self.repository.record_failure(
                job_id=job.id,
                error=f"Interrupted after step {last_step!r}; worker exited before the job finished",
                max_attempts=self.max_attempts,
                heartbeat_before=utc_now() - stale_after,
            )
            if outcome is None:
                logger.info("Job %s heartbeat resumed; leaving it running", job.id)
                continue
            logger.warning(
                "Recovered interrupted job %s (%s) after step %s -> %s",
                job.id,
                job.type,
                last_step,
                outcome.status.value,
            )

    @contextmanager
    def _heartbeat(self, job_id: str) -> Iterator[None]:
        if self.stale_after_seconds <= 0:
            yield
            return
        interval = min(
            self.stale_after_seconds / _HEARTBEAT_FRACTION,
            _MAX_HEARTBEAT_INTERVAL_SECONDS,
        )
        finished = threading.Event()

        def _beat() -> None:
            while not finished.wait(interval):
                try:
                    if not self.repository.touch_job(job_id):
                        return
                except Exception:
                    logger.exception("Heartbeat update failed for job %s", job_id)

        thread = threading.Thread(target=_beat, name=f"heartbeat-{job_id}", daemon=True)
        thread.start()
        try:
            yield
        finally:
            finished.set()
            thread.join(timeout=max(1.0, interval))

    def _sleep_with_stop(self, seconds: float) -> None:
        if seconds > 0:
            self._stop_requested.wait(seconds)

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if not hasattr(signal, "SIGINT"):
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            self._request_stop(signal_name=name)

        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
        except ValueError:
            # Signal handlers can only be installed in main thread.
            yield
            return
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)

    def _request_stop(self, *, signal_name: str) -> None:
        self._stop_requested.set()
        logger.info(
            "Received %s; finishing job %s before exit",
            signal_name,
            self._current_job_id or "-",
        )


def _error_summary(error: BaseException) -> str:
    text = f"{type(error).__name__}: {error}"
    return text[:_MAX_ERROR_CHARS]
