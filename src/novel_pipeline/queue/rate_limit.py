"""Rate-limit classification and pause/resume backpressure."""

from __future__ import annotations

import logging
import math
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

import httpx

from novel_pipeline.errors import MissingUpstreamDataError, UnknownStageError
from novel_pipeline.queue.models import FailureClass, JobStatus, JobView
from novel_pipeline.queue.repository import JobRepository
from novel_pipeline.queue.session import SessionTracker
from novel_pipeline.storage.common import to_utc_aware_datetime, utc_now

logger = logging.getLogger(__name__)

FAILURE_CLASSIFIER_VERSION = 1
RATE_LIMIT_STATUS_CODE = 429
RATE_LIMIT_ERROR_TYPE = "rate_limit_error"

_RATE_LIMIT_PATTERNS: tuple[str, ...] = (
    "rate limit",
    "rate_limit",
    "ratelimit",
    "too many requests",
)


class RateLimitError(Exception):
    """The completion service asked us to back off."""

    def __init__(
        self,
        message: str = "Rate limit exceeded",
        *,
        reset_at: datetime | None = None,
        retry_after_seconds: float | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = RATE_LIMIT_STATUS_CODE
        self.reset_at = to_utc_aware_datetime(reset_at) if reset_at is not None else None
        self.retry_after_seconds = retry_after_seconds

    def cool_down(self, *, now: datetime) -> timedelta | None:
        if self.retry_after_seconds is not None:
            return timedelta(seconds=max(0.0, self.retry_after_seconds))
        if self.reset_at is not None:
            return max(self.reset_at - now, timedelta(0))
        return None


@dataclass(slots=True)
class FailureClassification:
    """Normalized failure classification result."""

    failure_class: FailureClass
    reason_code: str
    matched_rule: str
    matched_pattern: str | None

    @property
    def is_rate_limit(self) -> bool:
        return self.failure_class == FailureClass.RATE_LIMITED

    def to_log_details(self) -> dict[str, object]:
        return {
            "classifier_version": FAILURE_CLASSIFIER_VERSION,
            "failure_class": self.failure_class.value,
            "reason_code": self.reason_code,
            "matched_rule": self.matched_rule,
            "matched_pattern": self.matched_pattern,
        }


def classify_failure(error: BaseException | None) -> FailureClassification:
    """Classify an exception raised by a stage handler."""

    if isinstance(error, RateLimitError):
        return FailureClassification(
            failure_class=FailureClass.RATE_LIMITED,
            reason_code="rate_limit_error",
            matched_rule="exception_type",
            matched_pattern=None,
        )
    if isinstance(error, UnknownStageError):
        return FailureClassification(
            failure_class=FailureClass.UNKNOWN_STAGE,
            reason_code="unknown_stage",
            matched_rule="exception_type",
            matched_pattern=error.job_type,
        )
    if isinstance(error, MissingUpstreamDataError):
        return FailureClassification(
            failure_class=FailureClass.MISSING_UPSTREAM,
            reason_code="missing_upstream",
            matched_rule="exception_type",
            matched_pattern=None,
        )
    if error is not None:
        if _status_code(error) == RATE_LIMIT_STATUS_CODE:
            return FailureClassification(
                failure_class=FailureClass.RATE_LIMITED,
                reason_code="http_429",
                matched_rule="status_code",
                matched_pattern=str(RATE_LIMIT_STATUS_CODE),
            )
        if _error_type(error) == RATE_LIMIT_ERROR_TYPE:
            return FailureClassification(
                failure_class=FailureClass.RATE_LIMITED,
                reason_code="rate_limit_error",
                matched_rule="error_type",
                matched_pattern=RATE_LIMIT_ERROR_TYPE,
            )
        matched = _first_match(str(error).lower(), _RATE_LIMIT_PATTERNS)
        if matched is not None:
            return FailureClassification(
                failure_class=FailureClass.RATE_LIMITED,
                reason_code="rate_limit_message",
                matched_rule="message",
                matched_pattern=matched,
            )
    return FailureClassification(
        failure_class=FailureClass.STAGE_FAILURE,
        reason_code="stage_failure",
        matched_rule="default",
        matched_pattern=None,
    )


class RateLimitHandler:
    """Pauses throttled jobs and returns them to the queue after a cool-down."""

    def __init__(
        self,
        *,
        repository: JobRepository,
        session_tracker: SessionTracker | None = None,
        fallback_cool_down: timedelta = timedelta(minutes=30),
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.repository = repository
        self.session_tracker = session_tracker
        self.fallback_cool_down = fallback_cool_down
        self._clock = clock

    @staticmethod
    def is_rate_limit_error(error: BaseException | None) -> bool:
        """True when the error signals throttling rather than a task failure."""

        if error is None:
            return False
        return classify_failure(error).is_rate_limit

    def handle_rate_limit(self, job: JobView, error: BaseException | None = None) -> datetime:
        """Pause the job until the quota resets; returns the resume instant."""

        now = self._clock()
        cool_down = self._cool_down(error=error, now=now)
        resume_after = now + cool_down
        paused = self.repository.pause_job(
            job_id=job.id,
            resume_after=resume_after,
            error=str(error) if error is not None else "Rate limited",
        )
        if not paused:
            logger.warning("Job %s was not running when pausing for rate limit", job.id)
            return resume_after

        if cool_down > timedelta(0):
            logger.warning(
                "Pausing queue until session reset: job=%s wait_minutes=%d resume_at=%s",
                job.id,
                math.ceil(cool_down.total_seconds() / 60),
                resume_after.isoformat(),
            )
        else:
            self.resume_due_jobs()
        return resume_after

    def resume_due_jobs(self) -> int:
        """Return paused jobs whose cool-down elapsed to pending."""

        resumed = self.repository.resume_paused_jobs(now=self._clock())
        if resumed:
            if self.session_tracker is not None:
                self.session_tracker.clear_session()
            logger.info("Paused jobs resumed: count=%d", resumed)
        return resumed

    def paused_jobs_count(self) -> int:
        return self.repository.count_jobs(JobStatus.PAUSED)

    def cooling_down(self) -> bool:
        """True while any paused job is still inside its cool-down window."""

        return self.repository.next_resume_at(now=self._clock()) is not None

    def _cool_down(self, *, error: BaseException | None, now: datetime) -> timedelta:
        if isinstance(error, RateLimitError):
            indicated = error.cool_down(now=now)
            if indicated is not None:
                return indicated
        if self.session_tracker is not None:
            remaining = self.session_tracker.time_until_reset()
            if remaining is not None:
                return remaining
        return self.fallback_cool_down


def _status_code(error: BaseException) -> int | None:
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code
    for attr in ("status_code", "status"):
        value = getattr(error, attr, None)
        if isinstance(value, int):
            return value
    return None


def _error_type(error: BaseException) -> str | None:
    for attr in ("body", "error"):
        payload: Any = getattr(error, attr, None)
        if not isinstance(payload, dict):
            continue
        nested = payload.get("error", payload)
        if isinstance(nested, dict) and isinstance(nested.get("type"), str):
            return nested["type"]
    return None


def _first_match(text: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in text:
            return pattern
    return None
