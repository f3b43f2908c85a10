"""Expands chapters into ordered stage jobs and reports on their progress."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from novel_pipeline.config import PipelineSettings
from novel_pipeline.errors import UnitNotFoundError
from novel_pipeline.pipeline.validation import (
    CompletionValidation,
    DeviationWarning,
    Severity,
    preflight_warnings,
    validate_completed_chapter,
)
from novel_pipeline.queue.models import JobType, JobView
from novel_pipeline.queue.repository import JobRepository
from novel_pipeline.units.models import ChapterStatus
from novel_pipeline.units.repository import UnitRepository

logger = logging.getLogger(__name__)

# Revision is absent: structural review inserts it only when rework is needed.
PIPELINE_STAGES: tuple[JobType, ...] = (
    JobType.GENERATE,
    JobType.STRUCTURAL_REVIEW,
    JobType.LINE_REVIEW,
    JobType.CONSISTENCY_REVIEW,
    JobType.CORRECTNESS_REVIEW,
    JobType.FINAL_CHECK,
    JobType.SENSITIVITY_REVIEW,
    JobType.RESEARCH_REVIEW,
    JobType.AUDIENCE_REVIEW,
    JobType.OPENING_REVIEW,
    JobType.SUMMARY,
    JobType.STATE_PROPAGATION,
)


@dataclass(slots=True)
class BookQueueOptions:
    """Pre-flight behaviour for queueing a whole book."""

    validate_structure: bool = True
    stop_on_high_severity: bool | None = None


@dataclass(slots=True)
class BookQueueResult:
    units_queued: int = 0
    jobs_created: int = 0
    job_ids: dict[str, list[str]] = field(default_factory=dict)
    warnings: list[DeviationWarning] = field(default_factory=list)
    stopped: bool = False


@dataclass(slots=True)
class WorkflowStatus:
    """Chapter status plus its job history, newest first."""

    chapter_id: str
    chapter_number: int
    chapter_status: ChapterStatus
    jobs: list[JobView]
    input_tokens: int = 0
    output_tokens: int = 0


@dataclass(slots=True)
class GenerationStats:
    book_id: str
    total_chapters: int
    chapters_by_status: dict[str, int]
    failed_jobs: int
    input_tokens: int = 0
    output_tokens: int = 0


class PipelineOrchestrator:
    """Creates the fixed-order stage jobs for chapters and inspects them."""

    def __init__(
        self,
        *,
        jobs: JobRepository,
        units: UnitRepository,
        settings: PipelineSettings | None = None,
    ) -> None:
        self.jobs = jobs
        self.units = units
        self.settings = settings or PipelineSettings()

    def queue_unit_workflow(self, target_id: str) -> list[str]:
        """Create every stage job for one chapter, in pipeline order.

        Not idempotent: callers must not queue a chapter whose workflow is
        still in flight.
        """

        self.units.require_chapter(target_id)
        created = self.jobs.create_jobs(list(PIPELINE_STAGES), target_id)
        logger.info("Queued %d jobs for chapter %s", len(created), target_id)
        return [job.id for job in created]

    def queue_all_pending_units(
        self,
        collection_id: str,
        options: BookQueueOptions | None = None,
    ) -> BookQueueResult:
        """Queue every not-yet-started chapter of a book, by chapter number."""

        self.units.get_book(collection_id)
        pending = self.units.list_chapters(collection_id, status=ChapterStatus.PENDING)
        result = BookQueueResult()

        if options is not None and options.validate_structure:
            result.warnings = preflight_warnings(pending)
            stop_on_high = (
                options.stop_on_high_severity
                if options.stop_on_high_severity is not None
                else self.settings.stop_on_high_severity
            )
            high = [w for w in result.warnings if w.severity == Severity.HIGH]
            if high:
                logger.warning(
                    "Pre-flight found %d high-severity issues in book %s",
                    len(high),
                    collection_id,
                )
            if high and stop_on_high:
                result.stopped = True
                return result

        for chapter in pending:
            job_ids = self.queue_unit_workflow(chapter.id)
            result.job_ids[chapter.id] = job_ids
            result.units_queued += 1
            result.jobs_created += len(job_ids)
        logger.info(
            "Queued book %s: chapters=%d jobs=%d",
            collection_id,
            result.units_queued,
            result.jobs_created,
        )
        return result

    def regenerate_unit(self, target_id: str) -> list[str]:
        """Reset a chapter's derived content and queue its workflow again."""

        self.units.require_chapter(target_id)
        self.units.reset_chapter(target_id)
        logger.info("Reset chapter %s for regeneration", target_id)
        return self.queue_unit_workflow(target_id)

    def get_workflow_status(self, target_id: str) -> WorkflowStatus:
        chapter = self.units.get_chapter(target_id)
        if chapter is None:
            raise UnitNotFoundError(f"Chapter not found: {target_id}")
        return WorkflowStatus(
            chapter_id=chapter.id,
            chapter_number=chapter.chapter_number,
            chapter_status=chapter.status,
            jobs=self.jobs.list_jobs_for_target(target_id),
            input_tokens=chapter.input_tokens,
            output_tokens=chapter.output_tokens,
        )

    def preflight_warnings(self, collection_id: str) -> list[DeviationWarning]:
        self.units.get_book(collection_id)
        return preflight_warnings(
            self.units.list_chapters(collection_id, status=ChapterStatus.PENDING),
        )

    def validate_completed_unit(self, target_id: str) -> CompletionValidation:
        """Advisory length/beat/pacing check; never touches job state."""

        chapter = self.units.require_chapter(target_id)
        validation = validate_completed_chapter(
            chapter,
            default_target_words=self.settings.default_target_words,
            tolerance_percent=self.settings.word_count_tolerance_percent,
            high_severity_percent=self.settings.word_count_high_severity_percent,
        )
        logger.info(
            "Validated chapter %s: valid=%s warnings=%d deviation=%.1f%%",
            target_id,
            validation.is_valid,
            len(validation.warnings),
            validation.word_count_deviation,
        )
        return validation

    def generation_stats(self, collection_id: str) -> GenerationStats:
        self.units.get_book(collection_id)
        chapters = self.units.list_chapters(collection_id)
        input_tokens, output_tokens = self.units.token_usage_for_book(collection_id)
        return GenerationStats(
            book_id=collection_id,
            total_chapters=len(chapters),
            chapters_by_status=self.units.count_chapters_by_status(collection_id),
            failed_jobs=self.jobs.count_failed_jobs_for_targets([c.id for c in chapters]),
            input_tokens=input_tokens,
            output_tokens=output_tokens,
        )
