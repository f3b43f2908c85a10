from __future__ import annotations

import allure
import pytest

from novel_pipeline.config import PipelineSettings
from novel_pipeline.errors import UnitNotFoundError
from novel_pipeline.pipeline.orchestrator import (
    PIPELINE_STAGES,
    BookQueueOptions,
    PipelineOrchestrator,
)
from novel_pipeline.pipeline.validation import Severity, WarningType
from novel_pipeline.queue.models import JobStatus, JobType
from novel_pipeline.queue.repository import JobRepository
from novel_pipeline.units.models import ChapterBrief, ChapterStatus, ChapterView, CommercialBeat
from novel_pipeline.units.repository import UnitRepository

pytestmark = [
    allure.epic("Chapter Pipeline"),
    allure.feature("Workflow Orchestration"),
]


@pytest.fixture()
def orchestrator(jobs: JobRepository, units: UnitRepository) -> PipelineOrchestrator:
    return PipelineOrchestrator(jobs=jobs, units=units)


def test_pipeline_order_has_twelve_stages_without_revision() -> None:
    assert len(PIPELINE_STAGES) == 12
    assert JobType.REVISION not in PIPELINE_STAGES
    assert PIPELINE_STAGES[0] == JobType.GENERATE
    assert PIPELINE_STAGES[-2:] == (JobType.SUMMARY, JobType.STATE_PROPAGATION)


def test_queue_unit_workflow_creates_jobs_in_pipeline_order(
    orchestrator: PipelineOrchestrator,
    jobs: JobRepository,
    chapter: ChapterView,
) -> None:
    job_ids = orchestrator.queue_unit_workflow(chapter.id)

    assert len(job_ids) == 12
    claimed = [jobs.claim_next() for _ in range(12)]
    assert [job.type for job in claimed if job is not None] == [
        stage.value for stage in PIPELINE_STAGES
    ]
    assert [job.id for job in claimed if job is not None] == job_ids


def test_queue_unit_workflow_requires_existing_chapter(
    orchestrator: PipelineOrchestrator,
) -> None:
    with pytest.raises(UnitNotFoundError):
        orchestrator.queue_unit_workflow("missing-chapter")


def test_queue_all_pending_units_queues_in_chapter_order(
    orchestrator: PipelineOrchestrator,
    jobs: JobRepository,
    units: UnitRepository,
    book_id: str,
) -> None:
    third = units.create_chapter(book_id=book_id, chapter_number=3, outline="Escape")
    first = units.create_chapter(book_id=book_id, chapter_number=1, outline="Storm")
    second = units.create_chapter(book_id=book_id, chapter_number=2, outline="Visitor")
    units.set_status(second.id, ChapterStatus.COMPLETED)

    result = orchestrator.queue_all_pending_units(book_id)

    assert result.units_queued == 2
    assert result.jobs_created == 24
    assert list(result.job_ids) == [first.id, third.id]
    assert result.warnings == []
    claimed = jobs.claim_next()
    assert claimed is not None
    assert claimed.target_id == first.id


def test_preflight_stop_on_high_severity_queues_nothing(
    orchestrator: PipelineOrchestrator,
    jobs: JobRepository,
    units: UnitRepository,
    book_id: str,
) -> None:
    units.create_chapter(book_id=book_id, chapter_number=1, outline="Storm")
    units.create_chapter(book_id=book_id, chapter_number=2)

    result = orchestrator.queue_all_pending_units(
        book_id,
        BookQueueOptions(validate_structure=True, stop_on_high_severity=True),
    )

    assert result.stopped is True
    assert result.units_queued == 0
    assert [w.warning_type for w in result.warnings] == [WarningType.STRUCTURE]
    assert result.warnings[0].severity == Severity.HIGH
    assert jobs.get_queue_stats().total == 0


def test_preflight_warnings_do_not_block_by_default(
    orchestrator: PipelineOrchestrator,
    units: UnitRepository,
    book_id: str,
) -> None:
    units.create_chapter(book_id=book_id, chapter_number=1)

    result = orchestrator.queue_all_pending_units(book_id, BookQueueOptions())

    assert result.stopped is False
    assert result.units_queued == 1
    assert len(result.warnings) == 1


def test_preflight_flags_missing_anchor_beats(
    orchestrator: PipelineOrchestrator,
    units: UnitRepository,
    book_id: str,
) -> None:
    units.create_chapter(
        book_id=book_id,
        chapter_number=1,
        outline="Storm",
        brief=ChapterBrief(
            word_count_target=50_000,
            commercial_beats=[CommercialBeat(name="Inciting Incident")],
        ),
    )

    warnings = orchestrator.preflight_warnings(book_id)

    messages = [warning.message for warning in warnings]
    assert "Opening chapter does not plan an Opening Hook" in messages
    assert "No Climax planned in the final quarter of the book" in messages
    assert any(warning.warning_type == WarningType.WORD_COUNT for warning in warnings)


def test_regenerate_resets_chapter_and_requeues(
    orchestrator: PipelineOrchestrator,
    jobs: JobRepository,
    units: UnitRepository,
    chapter: ChapterView,
) -> None:
    units.save_content(chapter.id, "Old draft text")
    units.save_summary(chapter.id, "Old summary")
    units.append_flags(chapter.id, ["line_review: tighten"])
    units.set_status(chapter.id, ChapterStatus.COMPLETED)

    job_ids = orchestrator.regenerate_unit(chapter.id)

    reset = units.require_chapter(chapter.id)
    assert reset.status == ChapterStatus.PENDING
    assert reset.content is None
    assert reset.summary is None
    assert reset.word_count == 0
    assert reset.flags == []
    assert len(job_ids) == 12
    assert jobs.get_queue_stats().pending == 12


def test_workflow_status_lists_jobs_newest_first(
    orchestrator: PipelineOrchestrator,
    chapter: ChapterView,
) -> None:
    job_ids = orchestrator.queue_unit_workflow(chapter.id)

    status = orchestrator.get_workflow_status(chapter.id)

    assert status.chapter_status == ChapterStatus.PENDING
    assert status.chapter_number == 1
    assert [job.id for job in status.jobs] == list(reversed(job_ids))
    assert all(job.status == JobStatus.PENDING for job in status.jobs)


def test_workflow_status_for_missing_chapter(orchestrator: PipelineOrchestrator) -> None:
    with pytest.raises(UnitNotFoundError, match="Chapter not found"):
        orchestrator.get_workflow_status("missing")


def test_validate_completed_unit_reports_word_count_and_beats(
    jobs: JobRepository,
    units: UnitRepository,
    chapter: ChapterView,
) -> None:
    orchestrator = PipelineOrchestrator(
        jobs=jobs,
        units=units,
        settings=PipelineSettings(word_count_tolerance_percent=10, word_count_high_severity_percent=20),
    )
    units.save_content(chapter.id, " ".join(["word"] * 200))
    units.save_summary(chapter.id, "A gripping night of tension ends with a knock.")

    validation = orchestrator.validate_completed_unit(chapter.id)

    assert validation.target_word_count == 300
    assert validation.word_count == 200
    assert validation.word_count_deviation == pytest.approx(33.3)
    assert validation.beats_hit == ["Opening Hook"]
    assert validation.beats_missed == []
    assert validation.is_valid is False
    assert validation.warnings[0].severity == Severity.HIGH
    assert jobs.get_queue_stats().total == 0


def test_validate_completed_unit_within_tolerance(
    orchestrator: PipelineOrchestrator,
    units: UnitRepository,
    chapter: ChapterView,
) -> None:
    units.save_content(chapter.id, " ".join(["word"] * 310))
    units.save_summary(chapter.id, "Nothing much happens.")

    validation = orchestrator.validate_completed_unit(chapter.id)

    assert validation.is_valid is True
    assert validation.beats_missed == ["Opening Hook"]
    assert [w.warning_type for w in validation.warnings] == [WarningType.BEAT_MISSING]


def test_generation_stats_counts_chapters_and_failed_jobs(
    orchestrator: PipelineOrchestrator,
    jobs: JobRepository,
    units: UnitRepository,
    book_id: str,
    chapter: ChapterView,
) -> None:
    units.create_chapter(book_id=book_id, chapter_number=2, outline="Visitor")
    job = jobs.create_job(JobType.GENERATE, chapter.id)
    jobs.claim_next()
    jobs.record_failure(job_id=job.id, error="boom", max_attempts=1)

    stats = orchestrator.generation_stats(book_id)

    assert stats.total_chapters == 2
    assert stats.chapters_by_status["pending"] == 2
    assert stats.failed_jobs == 1
