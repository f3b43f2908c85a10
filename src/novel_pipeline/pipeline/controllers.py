"""Controllers for chapter workflow CLI commands."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from novel_pipeline.config import Settings
from novel_pipeline.pipeline.orchestrator import BookQueueOptions, PipelineOrchestrator
from novel_pipeline.pipeline.validation import DeviationWarning
from novel_pipeline.queue.controllers import format_job_line
from novel_pipeline.queue.repository import JobRepository
from novel_pipeline.units.repository import UnitRepository


@dataclass(slots=True)
class ChapterCommand:
    """CLI input addressing one chapter."""

    db_path: Path | None
    chapter_id: str


@dataclass(slots=True)
class BookQueueCommand:
    """CLI input for queueing every pending chapter of a book."""

    db_path: Path | None
    book_id: str
    validate_structure: bool = True
    stop_on_high_severity: bool | None = None


@dataclass(slots=True)
class BookCommand:
    """CLI input addressing one book."""

    db_path: Path | None
    book_id: str


class PipelineCliController:
    """Queues chapter workflows and reports on their progress."""

    def queue_chapter(self, command: ChapterCommand) -> list[str]:
        with _orchestrator(command.db_path) as orchestrator:
            job_ids = orchestrator.queue_unit_workflow(command.chapter_id)
        return [f"Queued {len(job_ids)} jobs for chapter {command.chapter_id}", *job_ids]

    def queue_book(self, command: BookQueueCommand) -> list[str]:
        with _orchestrator(command.db_path) as orchestrator:
            result = orchestrator.queue_all_pending_units(
                command.book_id,
                BookQueueOptions(
                    validate_structure=command.validate_structure,
                    stop_on_high_severity=command.stop_on_high_severity,
                ),
            )
        lines = [_format_warning(warning) for warning in result.warnings]
        if result.stopped:
            lines.append("Stopped: pre-flight found high-severity issues; nothing was queued.")
            return lines
        lines.append(
            f"Queued book {command.book_id}: chapters={result.units_queued} "
            f"jobs={result.jobs_created}",
        )
        return lines

    def regenerate(self, command: ChapterCommand) -> list[str]:
        with _orchestrator(command.db_path) as orchestrator:
            job_ids = orchestrator.regenerate_unit(command.chapter_id)
        return [f"Chapter {command.chapter_id} reset; queued {len(job_ids)} jobs"]

    def status(self, command: ChapterCommand) -> list[str]:
        with _orchestrator(command.db_path) as orchestrator:
            status = orchestrator.get_workflow_status(command.chapter_id)
        lines = [
            f"Chapter {status.chapter_number} ({status.chapter_id}): "
            f"status={status.chapter_status.value} "
            f"tokens={status.input_tokens}/{status.output_tokens}",
        ]
        if not status.jobs:
            lines.append("No jobs found.")
        lines.extend(format_job_line(job) for job in status.jobs)
        return lines

    def validate(self, command: ChapterCommand) -> list[str]:
        with _orchestrator(command.db_path) as orchestrator:
            validation = orchestrator.validate_completed_unit(command.chapter_id)
        lines = [
            f"Chapter {validation.chapter_number}: valid={validation.is_valid} "
            f"words={validation.word_count}/{validation.target_word_count} "
            f"deviation={validation.word_count_deviation}%",
        ]
        if validation.beats_hit:
            lines.append(f"Beats hit: {', '.join(validation.beats_hit)}")
        if validation.beats_missed:
            lines.append(f"Beats missed: {', '.join(validation.beats_missed)}")
        lines.extend(_format_warning(warning) for warning in validation.warnings)
        return lines

    def book_stats(self, command: BookCommand) -> list[str]:
        with _orchestrator(command.db_path) as orchestrator:
            stats = orchestrator.generation_stats(command.book_id)
        by_status = " ".join(
            f"{name}={count}" for name, count in stats.chapters_by_status.items()
        )
        return [
            f"Book {stats.book_id}: chapters={stats.total_chapters} {by_status} "
            f"failed_jobs={stats.failed_jobs} "
            f"input_tokens={stats.input_tokens} output_tokens={stats.output_tokens}",
        ]


def _format_warning(warning: DeviationWarning) -> str:
    return (
        f"[{warning.severity.value}] chapter {warning.chapter_number} "
        f"{warning.warning_type.value}: {warning.message} ({warning.recommendation})"
    )


@contextmanager
def _orchestrator(db_path: Path | None) -> Iterator[PipelineOrchestrator]:
    settings = Settings.from_env(db_path=db_path)
    settings.validate_for_pipeline()
    jobs = JobRepository(
        db_path=settings.db_path,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    jobs.init_schema()
    try:
        yield PipelineOrchestrator(
            jobs=jobs,
            units=UnitRepository(jobs.engine),
            settings=settings.pipeline,
        )
    finally:
        jobs.close()
