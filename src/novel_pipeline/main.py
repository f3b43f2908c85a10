"""CLI entrypoint for novel-pipeline."""

import logging
from collections.abc import Callable
from pathlib import Path
from typing import TypeVar

import rich_click as click

from novel_pipeline import __version__
from novel_pipeline.config import Settings
from novel_pipeline.pipeline.controllers import (
    BookCommand,
    BookQueueCommand,
    ChapterCommand,
    PipelineCliController,
)
from novel_pipeline.queue.controllers import (
    EnqueueJobCommand,
    InspectJobCommand,
    ListJobsCommand,
    QueueCliController,
    QueueStatsCommand,
    WorkerCommand,
)
from novel_pipeline.queue.models import JobStatus, JobType

click.rich_click.USE_MARKDOWN = True
PIPELINE_CONTROLLER = PipelineCliController()
QUEUE_CONTROLLER = QueueCliController()

CommandT = TypeVar("CommandT")


@click.group()
@click.version_option(version=__version__, prog_name="novel-pipeline")
def novel_pipeline() -> None:
    """Chapter production pipeline on a durable SQLite job queue."""


@novel_pipeline.group()
def workflow() -> None:
    """Chapter workflow commands."""


@workflow.command("queue")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--chapter-id", required=True, help="Chapter id.")
def workflow_queue(db_path: Path | None, chapter_id: str) -> None:
    """Queue every pipeline stage for one chapter."""

    _run(PIPELINE_CONTROLLER.queue_chapter, ChapterCommand(db_path=db_path, chapter_id=chapter_id))


@workflow.command("queue-book")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--book-id", required=True, help="Book id.")
@click.option(
    "--validate/--no-validate",
    "validate_structure",
    default=True,
    show_default=True,
    help="Run the structural pre-flight check before queueing.",
)
@click.option(
    "--stop-on-high/--no-stop-on-high",
    "stop_on_high_severity",
    default=None,
    help="Queue nothing when pre-flight finds high-severity issues. "
    "Defaults to NOVEL_PIPELINE_STOP_ON_HIGH_SEVERITY.",
)
def workflow_queue_book(
    db_path: Path | None,
    book_id: str,
    validate_structure: bool,
    stop_on_high_severity: bool | None,
) -> None:
    """Queue every pending chapter of a book in chapter order."""

    _run(
        PIPELINE_CONTROLLER.queue_book,
        BookQueueCommand(
            db_path=db_path,
            book_id=book_id,
            validate_structure=validate_structure,
            stop_on_high_severity=stop_on_high_severity,
        ),
    )


@workflow.command("regenerate")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--chapter-id", required=True, help="Chapter id.")
def workflow_regenerate(db_path: Path | None, chapter_id: str) -> None:
    """Reset a chapter and queue its workflow again."""

    _run(PIPELINE_CONTROLLER.regenerate, ChapterCommand(db_path=db_path, chapter_id=chapter_id))


@workflow.command("status")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--chapter-id", required=True, help="Chapter id.")
def workflow_status(db_path: Path | None, chapter_id: str) -> None:
    """Show chapter status and its job history, newest first."""

    _run(PIPELINE_CONTROLLER.status, ChapterCommand(db_path=db_path, chapter_id=chapter_id))


@workflow.command("validate")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--chapter-id", required=True, help="Chapter id.")
def workflow_validate(db_path: Path | None, chapter_id: str) -> None:
    """Check a finished chapter against its word target, beats and pacing."""

    _run(PIPELINE_CONTROLLER.validate, ChapterCommand(db_path=db_path, chapter_id=chapter_id))


@workflow.command("book-stats")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--book-id", required=True, help="Book id.")
def workflow_book_stats(db_path: Path | None, book_id: str) -> None:
    """Chapter counts by status and failed jobs for a book."""

    _run(PIPELINE_CONTROLLER.book_stats, BookCommand(db_path=db_path, book_id=book_id))


@novel_pipeline.group()
def queue() -> None:
    """Job queue inspection commands."""


@queue.command("stats")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def queue_stats(db_path: Path | None) -> None:
    """Count jobs by status."""

    _run(QUEUE_CONTROLLER.stats, QueueStatsCommand(db_path=db_path))


@queue.command("jobs")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--status",
    type=click.Choice([status.value for status in JobStatus], case_sensitive=False),
    default=None,
    help="Optional status filter.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
    help="Max jobs to print.",
)
def queue_jobs(db_path: Path | None, status: str | None, limit: int) -> None:
    """List jobs, newest first."""

    _run(
        QUEUE_CONTROLLER.list_jobs,
        ListJobsCommand(db_path=db_path, status=status, limit=limit),
    )


@queue.command("inspect")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--job-id", required=True, help="Job id.")
def queue_inspect(db_path: Path | None, job_id: str) -> None:
    """Inspect one job and its checkpoint steps."""

    _run(QUEUE_CONTROLLER.inspect_job, InspectJobCommand(db_path=db_path, job_id=job_id))


@queue.command("retry")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--job-id", required=True, help="Job id.")
def queue_retry(db_path: Path | None, job_id: str) -> None:
    """Manually re-queue a failed job with a fresh attempt budget."""

    _run(QUEUE_CONTROLLER.retry_job, InspectJobCommand(db_path=db_path, job_id=job_id))


@queue.command("enqueue")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--type",
    "job_type",
    type=click.Choice([job_type.value for job_type in JobType], case_sensitive=False),
    required=True,
    help="Stage to run.",
)
@click.option("--target-id", required=True, help="Chapter id the stage acts on.")
def queue_enqueue(db_path: Path | None, job_type: str, target_id: str) -> None:
    """Enqueue a single stage job."""

    _run(
        QUEUE_CONTROLLER.enqueue,
        EnqueueJobCommand(db_path=db_path, job_type=job_type.lower(), target_id=target_id),
    )


@novel_pipeline.command("worker")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--once/--loop",
    default=True,
    show_default=True,
    help="Run one claim-execute cycle or loop until stopped.",
)
@click.option(
    "--max-jobs",
    type=click.IntRange(min=1),
    default=None,
    help="Optional cap for processed jobs in loop mode.",
)
@click.option(
    "--max-idle-polls",
    type=click.IntRange(min=1),
    default=None,
    help="Exit the loop after this many consecutive empty polls.",
)
@click.option(
    "--backend",
    type=click.Choice(["anthropic", "echo"], case_sensitive=False),
    default=None,
    help="Completion backend override. Defaults to NOVEL_PIPELINE_COMPLETION_BACKEND.",
)
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default=None,
    help="Log level. Defaults to NOVEL_PIPELINE_LOG_LEVEL.",
)
def worker(  # noqa: PLR0913
    db_path: Path | None,
    once: bool,
    max_jobs: int | None,
    max_idle_polls: int | None,
    backend: str | None,
    log_level: str | None,
) -> None:
    """Run the queue worker."""

    _configure_logging(log_level)
    _run(
        QUEUE_CONTROLLER.run_worker,
        WorkerCommand(
            db_path=db_path,
            once=once,
            max_jobs=max_jobs,
            max_idle_polls=max_idle_polls,
            backend=backend,
        ),
    )


def _configure_logging(log_level: str | None) -> None:
    level = (log_level or Settings.from_env().log_level).upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _run(handler: Callable[[CommandT], list[str]], command: CommandT) -> None:
    try:
        lines = handler(command)
    except (ValueError, RuntimeError) as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    novel_pipeline()
