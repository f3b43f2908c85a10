from __future__ import annotations

import json

import allure
import pytest

from novel_pipeline.completion import (
    CompletionError,
    CompletionService,
    CompletionUsage,
    EchoCompletionClient,
)
from novel_pipeline.errors import MissingUpstreamDataError, StageOutputError
from novel_pipeline.pipeline.orchestrator import PIPELINE_STAGES, PipelineOrchestrator
from novel_pipeline.pipeline.stages import (
    StageContext,
    StageRuntime,
    build_job_handlers,
    extract_json_object,
    generate_chapter,
    merge_character_states,
    revision,
)
from novel_pipeline.queue.checkpoint import CheckpointLedger
from novel_pipeline.queue.models import CheckpointRestore, JobStatus, JobType
from novel_pipeline.queue.rate_limit import RateLimitHandler
from novel_pipeline.queue.repository import JobRepository
from novel_pipeline.queue.worker import QueueWorker
from novel_pipeline.units.models import ChapterStatus, ChapterView
from novel_pipeline.units.repository import UnitRepository

pytestmark = [
    allure.epic("Chapter Pipeline"),
    allure.feature("Stage Handlers"),
]


class _ScriptedCompletion:
    def __init__(self, *replies: str | Exception, usage: CompletionUsage | None = None) -> None:
        self.replies = list(replies)
        self.calls = 0
        self.usage = usage or CompletionUsage()
        self.last_usage = CompletionUsage()

    def complete(
        self,
        *,
        system_prompt: str,
        user_prompt: str,
        max_tokens: int,
        temperature: float,
    ) -> str:
        self.calls += 1
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        self.last_usage = self.usage
        return reply


def _runtime(
    jobs: JobRepository,
    units: UnitRepository,
    ledger: CheckpointLedger,
    completion: CompletionService,
) -> StageRuntime:
    return StageRuntime(jobs=jobs, units=units, ledger=ledger, completion=completion)


def _worker(runtime: StageRuntime) -> QueueWorker:
    return QueueWorker(
        repository=runtime.jobs,
        ledger=runtime.ledger,
        rate_limit_handler=RateLimitHandler(repository=runtime.jobs),
        handlers=build_job_handlers(runtime),
        poll_interval_seconds=0,
    )


def test_build_job_handlers_covers_every_stage(
    jobs: JobRepository,
    units: UnitRepository,
    ledger: CheckpointLedger,
) -> None:
    handlers = build_job_handlers(_runtime(jobs, units, ledger, EchoCompletionClient()))
    assert set(handlers) == {job_type.value for job_type in JobType}


def test_full_workflow_completes_chapter(
    jobs: JobRepository,
    units: UnitRepository,
    ledger: CheckpointLedger,
    chapter: ChapterView,
) -> None:
    completion = EchoCompletionClient(words=300)
    runtime = _runtime(jobs, units, ledger, completion)
    PipelineOrchestrator(jobs=jobs, units=units).queue_unit_workflow(chapter.id)

    summary = _worker(runtime).run_loop(max_idle_polls=1)

    assert summary.processed == 12
    assert summary.completed == 12
    assert completion.calls == [stage.value for stage in PIPELINE_STAGES]
    assert jobs.get_queue_stats().completed == 12

    done = units.require_chapter(chapter.id)
    assert done.status == ChapterStatus.COMPLETED
    assert done.word_count == 300
    assert done.summary == "Mara waits out the storm and confronts the visitor she feared."

    project = units.project_for_chapter(done)
    characters = {item["name"]: item for item in project.story_bible["characters"]}
    assert characters["Mara"]["current_state"]["location"] == "cottage"
    assert characters["Tomas"]["role"] == "visitor"
    assert done.output_tokens >= 300
    assert done.input_tokens > 0


def test_rejected_structural_review_queues_revision_behind_pending_stages(
    jobs: JobRepository,
    units: UnitRepository,
    ledger: CheckpointLedger,
    chapter: ChapterView,
) -> None:
    completion = EchoCompletionClient(approve_reviews=False)
    runtime = _runtime(jobs, units, ledger, completion)
    PipelineOrchestrator(jobs=jobs, units=units).queue_unit_workflow(chapter.id)

    summary = _worker(runtime).run_loop(max_idle_polls=1)

    assert summary.completed == 13
    assert completion.calls[:2] == ["generate_chapter", "structural_review"]
    assert completion.calls[-1] == "revision"
    assert completion.calls.count("revision") == 1

    review = jobs.latest_job_for_target(target_id=chapter.id, job_type=JobType.STRUCTURAL_REVIEW)
    assert review is not None
    handoff = json.loads(review.checkpoint or "{}")
    assert handoff["review_result"]["approved"] is False
    assert handoff["review_result"]["issues"] == ["Midpoint lacks stakes"]


def test_revision_without_review_feedback_raises(
    jobs: JobRepository,
    units: UnitRepository,
    ledger: CheckpointLedger,
    chapter: ChapterView,
) -> None:
    units.save_content(chapter.id, "Draft text")
    job = jobs.create_job(JobType.REVISION, chapter.id)
    ctx = StageContext(runtime=_runtime(jobs, units, ledger, EchoCompletionClient()), job=job)

    with pytest.raises(MissingUpstreamDataError, match="No structural review feedback"):
        revision(ctx)


def test_stage_without_content_is_missing_upstream(
    jobs: JobRepository,
    units: UnitRepository,
    ledger: CheckpointLedger,
    chapter: ChapterView,
) -> None:
    jobs.create_job(JobType.LINE_REVIEW, chapter.id)
    runtime = _runtime(jobs, units, ledger, EchoCompletionClient())

    summary = _worker(runtime).run_once()

    assert summary.retried == 1
    stored = jobs.list_jobs_for_target(chapter.id)[0]
    assert stored.status == JobStatus.PENDING
    assert stored.error is not None
    assert stored.error.startswith("MissingUpstreamDataError")


def test_generation_failure_resets_chapter_to_pending(
    jobs: JobRepository,
    units: UnitRepository,
    ledger: CheckpointLedger,
    chapter: ChapterView,
) -> None:
    completion = _ScriptedCompletion(CompletionError("upstream exploded", status_code=500))
    jobs.create_job(JobType.GENERATE, chapter.id)

    summary = _worker(_runtime(jobs, units, ledger, completion)).run_once()

    assert summary.retried == 1
    assert units.require_chapter(chapter.id).status == ChapterStatus.PENDING
    assert units.require_chapter(chapter.id).input_tokens == 0


def test_token_usage_accumulates_on_the_chapter(
    jobs: JobRepository,
    units: UnitRepository,
    ledger: CheckpointLedger,
    chapter: ChapterView,
) -> None:
    units.save_content(chapter.id, "She walked slowly to the door.")
    completion = _ScriptedCompletion(
        json.dumps({"content": "She crossed to the door.", "flags": []}),
        json.dumps({"content": "She crossed to the door.", "flags": []}),
        usage=CompletionUsage(input_tokens=120, output_tokens=30),
    )
    jobs.create_job(JobType.LINE_REVIEW, chapter.id)
    jobs.create_job(JobType.CONSISTENCY_REVIEW, chapter.id)

    summary = _worker(_runtime(jobs, units, ledger, completion)).run_loop(max_idle_polls=1)

    assert summary.completed == 2
    stored = units.require_chapter(chapter.id)
    assert stored.input_tokens == 240
    assert stored.output_tokens == 60
    assert units.token_usage_for_book(chapter.book_id) == (240, 60)

    status = PipelineOrchestrator(jobs=jobs, units=units).get_workflow_status(chapter.id)
    assert (status.input_tokens, status.output_tokens) == (240, 60)


def test_generation_resumes_after_content_was_saved(
    jobs: JobRepository,
    units: UnitRepository,
    ledger: CheckpointLedger,
    chapter: ChapterView,
) -> None:
    units.save_content(chapter.id, "Already written prose.")
    job = jobs.create_job(JobType.GENERATE, chapter.id)
    completion = _ScriptedCompletion()
    ctx = StageContext(
        runtime=_runtime(jobs, units, ledger, completion),
        job=job,
        restore=CheckpointRestore(
            resume_from_step="content_saved",
            data={"word_count": 3},
            completed_steps=["started", "status_updated", "content_saved"],
        ),
    )

    generate_chapter(ctx)

    assert completion.calls == 0
    assert units.require_chapter(chapter.id).status == ChapterStatus.EDITING
    assert ledger.steps(job.id) == ["started", "completed"]


def test_editorial_pass_saves_edit_and_flags(
    jobs: JobRepository,
    units: UnitRepository,
    ledger: CheckpointLedger,
    chapter: ChapterView,
) -> None:
    units.save_content(chapter.id, "She walked slowly to the door.")
    completion = _ScriptedCompletion(
        json.dumps({"content": "She crossed to the door.", "flags": ["weak verb"]}),
    )
    jobs.create_job(JobType.LINE_REVIEW, chapter.id)

    summary = _worker(_runtime(jobs, units, ledger, completion)).run_once()

    assert summary.completed == 1
    edited = units.require_chapter(chapter.id)
    assert edited.content == "She crossed to the door."
    assert edited.word_count == 5
    assert edited.flags == ["line_review: weak verb"]


def test_opening_review_only_acts_on_first_chapter(
    jobs: JobRepository,
    units: UnitRepository,
    ledger: CheckpointLedger,
    book_id: str,
) -> None:
    second = units.create_chapter(book_id=book_id, chapter_number=2, outline="Visitor")
    units.save_content(second.id, "Tomas sat by the fire.")
    completion = EchoCompletionClient()
    jobs.create_job(JobType.OPENING_REVIEW, second.id)

    summary = _worker(_runtime(jobs, units, ledger, completion)).run_once()

    assert summary.completed == 1
    assert completion.calls == []


def test_unparseable_states_still_complete_chapter(
    jobs: JobRepository,
    units: UnitRepository,
    ledger: CheckpointLedger,
    chapter: ChapterView,
) -> None:
    units.save_content(chapter.id, "Mara opened the door.")
    completion = _ScriptedCompletion("I could not determine any states.")
    jobs.create_job(JobType.STATE_PROPAGATION, chapter.id)

    summary = _worker(_runtime(jobs, units, ledger, completion)).run_once()

    assert summary.completed == 1
    done = units.require_chapter(chapter.id)
    assert done.status == ChapterStatus.COMPLETED
    bible = units.project_for_chapter(done).story_bible
    assert all("current_state" not in item for item in bible["characters"])


def test_merge_character_states_updates_and_adds_characters() -> None:
    bible = {"characters": [{"name": "Mara", "role": "protagonist"}], "setting": "valley"}

    merged = merge_character_states(
        bible,
        {"mara": {"location": "attic"}, "Iris": {"location": "road"}},
    )

    assert merged["setting"] == "valley"
    assert merged["characters"] == [
        {"name": "Mara", "role": "protagonist", "current_state": {"location": "attic"}},
        {"name": "Iris", "current_state": {"location": "road"}},
    ]
    assert "current_state" not in bible["characters"][0]


def test_extract_json_object_accepts_fenced_output() -> None:
    assert extract_json_object('```json\n{"approved": true}\n```') == {"approved": True}
    with pytest.raises(StageOutputError):
        extract_json_object("no json here")
    with pytest.raises(StageOutputError):
        extract_json_object("{not valid}")
