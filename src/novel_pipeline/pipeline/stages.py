"""Stage handlers, one per job type, and the registry the worker dispatches on."""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from novel_pipeline.analysis import analyze
from novel_pipeline.completion.base import CompletionService
from novel_pipeline.errors import MissingUpstreamDataError, StageOutputError
from novel_pipeline.pipeline import prompts
from novel_pipeline.queue.checkpoint import CheckpointLedger
from novel_pipeline.queue.models import CheckpointRestore, JobType, JobView
from novel_pipeline.queue.repository import JobRepository
from novel_pipeline.queue.worker import JobHandler
from novel_pipeline.units.models import ChapterStatus, ChapterView
from novel_pipeline.units.repository import UnitRepository

logger = logging.getLogger(__name__)

_JSON_OBJECT = re.compile(r"\{[\s\S]*\}")

EDIT_MAX_TOKENS = 8192
EDIT_TEMPERATURE = 0.3


@dataclass(slots=True)
class StageRuntime:
    """Collaborators shared by every stage handler."""

    jobs: JobRepository
    units: UnitRepository
    ledger: CheckpointLedger
    completion: CompletionService
    default_target_words: int = 2_200


@dataclass(slots=True)
class StageContext:
    """Everything one handler invocation needs."""

    runtime: StageRuntime
    job: JobView
    restore: CheckpointRestore | None = None

    @property
    def chapter_id(self) -> str:
        return self.job.target_id

    def checkpoint(self, step: str, **data: Any) -> None:
        self.runtime.ledger.save(self.job.id, step, data)

    def complete(
        self,
        *,
        system_prompt: str,
        user_prompt: str,
        max_tokens: int,
        temperature: float,
    ) -> str:
        completion = self.runtime.completion
        text = completion.complete(
            system_prompt=system_prompt,
            user_prompt=user_prompt,
            max_tokens=max_tokens,
            temperature=temperature,
        )
        usage = completion.last_usage
        self.runtime.units.add_token_usage(
            self.chapter_id,
            input_tokens=usage.input_tokens,
            output_tokens=usage.output_tokens,
        )
        return text


Stage = Callable[[StageContext], None]


def generate_chapter(ctx: StageContext) -> None:
    units = ctx.runtime.units
    chapter = units.require_chapter(ctx.chapter_id)
    ctx.checkpoint("started", chapter_number=chapter.chapter_number)

    if ctx.restore is not None and ctx.restore.has_step("content_saved") and chapter.content:
        logger.info("Chapter %s content already saved by earlier attempt", chapter.id)
        units.set_status(chapter.id, ChapterStatus.EDITING)
        ctx.checkpoint("completed", resumed=True)
        return

    try:
        units.set_status(chapter.id, ChapterStatus.WRITING)
        ctx.checkpoint("status_updated")

        project = units.project_for_chapter(chapter)
        brief = chapter.brief
        target_words = (
            brief.word_count_target
            if brief is not None and brief.word_count_target
            else ctx.runtime.default_target_words
        )
        user_prompt = prompts.build_generation_prompt(
            chapter_number=chapter.chapter_number,
            title=chapter.title,
            outline=chapter.outline,
            scene_cards=brief.scene_cards if brief is not None else [],
            target_words=target_words,
            previous_summaries=units.previous_summaries(chapter),
            story_bible=project.story_bible,
        )
        ctx.checkpoint("context_assembled", prompt_chars=len(user_prompt))

        text = ctx.complete(
            system_prompt=prompts.AUTHOR_SYSTEM_PROMPT,
            user_prompt=user_prompt,
            max_tokens=4096,
            temperature=1.0,
        )
        ctx.checkpoint("content_generated", chars=len(text))

        words = units.save_content(chapter.id, text.strip())
        ctx.checkpoint("content_saved", word_count=words)
        units.set_status(chapter.id, ChapterStatus.EDITING)
    except Exception:
        units.set_status(chapter.id, ChapterStatus.PENDING)
        raise

    logger.info("Generated chapter %s: %d words", chapter.id, words)
    ctx.checkpoint("completed")


def structural_review(ctx: StageContext) -> None:
    chapter = _chapter_with_content(ctx)
    ctx.checkpoint("started")
    raw = ctx.complete(
        system_prompt=prompts.STRUCTURAL_REVIEW_SYSTEM_PROMPT,
        user_prompt=prompts.build_chapter_prompt(
            JobType.STRUCTURAL_REVIEW,
            chapter_number=chapter.chapter_number,
            content=chapter.content or "",
            extra=f"Outline:\n{chapter.outline}" if chapter.outline else "",
        ),
        max_tokens=2000,
        temperature=EDIT_TEMPERATURE,
    )
    parsed = extract_json_object(raw)
    review = {
        "approved": bool(parsed.get("approved", False)),
        "issues": _string_list(parsed.get("issues")),
        "suggestions": _string_list(parsed.get("suggestions")),
    }
    ctx.runtime.jobs.set_handoff(job_id=ctx.job.id, payload={"review_result": review})
    ctx.checkpoint("review_complete", approved=review["approved"])

    if review["approved"]:
        logger.info("Structural review approved chapter %s", chapter.id)
    else:
        revision = ctx.runtime.jobs.insert_follow_up(
            job_type=JobType.REVISION,
            target_id=chapter.id,
            after_job_id=ctx.job.id,
        )
        ctx.checkpoint("revision_queued", revision_job_id=revision.id)
        logger.info(
            "Structural review requested revision for chapter %s: %d issues",
            chapter.id,
            len(review["issues"]),
        )
    ctx.checkpoint("completed")


def revision(ctx: StageContext) -> None:
    chapter = _chapter_with_content(ctx)
    review = load_review_result(ctx.runtime.jobs, chapter.id)
    ctx.checkpoint("feedback_loaded", issues=len(review.get("issues", [])))

    text = ctx.complete(
        system_prompt=prompts.REVISION_SYSTEM_PROMPT,
        user_prompt=prompts.build_revision_prompt(
            chapter_number=chapter.chapter_number,
            content=chapter.content or "",
            review=review,
        ),
        max_tokens=EDIT_MAX_TOKENS,
        temperature=0.8,
    )
    words = ctx.runtime.units.save_content(chapter.id, text.strip())
    ctx.checkpoint("content_revised", word_count=words)
    ctx.checkpoint("completed")


def load_review_result(jobs: JobRepository, chapter_id: str) -> dict[str, Any]:
    """Structured feedback left by the latest structural review of the chapter."""

    review_job = jobs.latest_job_for_target(
        target_id=chapter_id,
        job_type=JobType.STRUCTURAL_REVIEW,
    )
    if review_job is None or not review_job.checkpoint:
        raise MissingUpstreamDataError(f"No structural review feedback for chapter {chapter_id}")
    try:
        payload = json.loads(review_job.checkpoint)
    except json.JSONDecodeError as error:
        raise MissingUpstreamDataError(
            f"Unreadable structural review feedback for chapter {chapter_id}",
        ) from error
    review = payload.get("review_result") if isinstance(payload, dict) else None
    if not isinstance(review, dict):
        raise MissingUpstreamDataError(f"No structural review feedback for chapter {chapter_id}")
    return review


def editorial_pass(job_type: JobType) -> Stage:
    """Build a handler that sends the chapter to one editor persona."""

    def _run(ctx: StageContext) -> None:
        chapter = _chapter_with_content(ctx)
        if job_type == JobType.OPENING_REVIEW and chapter.chapter_number != 1:
            ctx.checkpoint("skipped", reason="not the opening chapter")
            return
        ctx.checkpoint("started")
        _apply_edit(ctx, chapter, job_type, extra=_edit_context(ctx, chapter, job_type))
        ctx.checkpoint("completed")

    _run.__name__ = job_type.value
    return _run


def final_check(ctx: StageContext) -> None:
    chapter = _chapter_with_content(ctx)
    ctx.checkpoint("started")
    _apply_edit(ctx, chapter, JobType.FINAL_CHECK)
    ctx.checkpoint("proofread_complete")

    units = ctx.runtime.units
    content = units.require_chapter(chapter.id).content or ""
    report = analyze(content)
    units.append_flags(chapter.id, [f"final_check: {warning}" for warning in report.warnings])
    words = units.refresh_word_count(chapter.id)
    ctx.checkpoint(
        "analysis_complete",
        word_count=words,
        flesch_reading_ease=report.flesch_reading_ease,
        passive_sentence_ratio=report.passive_sentence_ratio,
        adverb_density=report.adverb_density,
    )
    ctx.checkpoint("completed")


def generate_summary(ctx: StageContext) -> None:
    chapter = _chapter_with_content(ctx)
    ctx.checkpoint("started")
    summary = ctx.complete(
        system_prompt=prompts.SUMMARY_SYSTEM_PROMPT,
        user_prompt=prompts.build_chapter_prompt(
            JobType.SUMMARY,
            chapter_number=chapter.chapter_number,
            content=chapter.content or "",
        ),
        max_tokens=500,
        temperature=0.7,
    )
    ctx.runtime.units.save_summary(chapter.id, summary.strip())
    ctx.checkpoint("completed", summary_chars=len(summary))


def update_states(ctx: StageContext) -> None:
    units = ctx.runtime.units
    chapter = _chapter_with_content(ctx)
    project = units.project_for_chapter(chapter)
    ctx.checkpoint("started")

    raw = ctx.complete(
        system_prompt=prompts.STATE_SYSTEM_PROMPT,
        user_prompt=prompts.build_chapter_prompt(
            JobType.STATE_PROPAGATION,
            chapter_number=chapter.chapter_number,
            content=chapter.content or "",
            extra=f"Summary: {chapter.summary}" if chapter.summary else "",
        ),
        max_tokens=1000,
        temperature=0.5,
    )
    try:
        states = extract_json_object(raw)
    except StageOutputError:
        logger.warning("Could not parse character states for chapter %s; skipping", chapter.id)
        ctx.checkpoint("states_skipped")
    else:
        bible = merge_character_states(project.story_bible, states)
        units.update_story_bible(project.id, bible)
        ctx.checkpoint("states_updated", characters=len(states))

    units.set_status(chapter.id, ChapterStatus.COMPLETED)
    logger.info("Chapter %s marked as completed", chapter.id)
    ctx.checkpoint("completed")


def merge_character_states(
    story_bible: dict[str, Any],
    states: dict[str, Any],
) -> dict[str, Any]:
    """Copy of the story bible with each character's current state replaced."""

    bible = dict(story_bible)
    characters = [dict(item) for item in bible.get("characters", []) if isinstance(item, dict)]
    by_name = {str(item.get("name", "")).lower(): item for item in characters}
    for name, state in states.items():
        existing = by_name.get(name.lower())
        if existing is None:
            existing = {"name": name}
            characters.append(existing)
            by_name[name.lower()] = existing
        existing["current_state"] = state
    bible["characters"] = characters
    return bible


def extract_json_object(text: str) -> dict[str, Any]:
    """Parse the outermost ``{...}`` block of a completion."""

    match = _JSON_OBJECT.search(text)
    if match is None:
        raise StageOutputError("Completion did not contain a JSON object")
    try:
        payload = json.loads(match.group(0))
    except json.JSONDecodeError as error:
        raise StageOutputError(f"Completion JSON is invalid: {error}") from error
    if not isinstance(payload, dict):
        raise StageOutputError("Completion JSON is not an object")
    return payload


STAGES: dict[JobType, Stage] = {
    JobType.GENERATE: generate_chapter,
    JobType.STRUCTURAL_REVIEW: structural_review,
    JobType.REVISION: revision,
    JobType.LINE_REVIEW: editorial_pass(JobType.LINE_REVIEW),
    JobType.CONSISTENCY_REVIEW: editorial_pass(JobType.CONSISTENCY_REVIEW),
    JobType.CORRECTNESS_REVIEW: editorial_pass(JobType.CORRECTNESS_REVIEW),
    JobType.FINAL_CHECK: final_check,
    JobType.SENSITIVITY_REVIEW: editorial_pass(JobType.SENSITIVITY_REVIEW),
    JobType.RESEARCH_REVIEW: editorial_pass(JobType.RESEARCH_REVIEW),
    JobType.AUDIENCE_REVIEW: editorial_pass(JobType.AUDIENCE_REVIEW),
    JobType.OPENING_REVIEW: editorial_pass(JobType.OPENING_REVIEW),
    JobType.SUMMARY: generate_summary,
    JobType.STATE_PROPAGATION: update_states,
}


def build_job_handlers(
    runtime: StageRuntime,
    stages: dict[JobType, Stage] | None = None,
) -> dict[str, JobHandler]:
    """Bind stage functions to the runtime, keyed by job type value."""

    return {
        job_type.value: _bind(runtime, stage)
        for job_type, stage in (stages if stages is not None else STAGES).items()
    }


def _bind(runtime: StageRuntime, stage: Stage) -> JobHandler:
    def _handler(job: JobView, restore: CheckpointRestore | None) -> None:
        stage(StageContext(runtime=runtime, job=job, restore=restore))

    return _handler


def _chapter_with_content(ctx: StageContext) -> ChapterView:
    chapter = ctx.runtime.units.require_chapter(ctx.chapter_id)
    if not chapter.content:
        raise MissingUpstreamDataError(f"Chapter {chapter.id} has no content yet")
    return chapter


def _edit_context(ctx: StageContext, chapter: ChapterView, job_type: JobType) -> str:
    if job_type != JobType.CONSISTENCY_REVIEW:
        return ""
    units = ctx.runtime.units
    project = units.project_for_chapter(chapter)
    lines = ["Story bible:", json.dumps(project.story_bible, ensure_ascii=False, indent=2)]
    summaries = units.previous_summaries(chapter)
    if summaries:
        lines.append("Earlier chapters:")
        lines.extend(f"- Chapter {number}: {summary}" for number, summary in summaries)
    return "\n".join(lines)


def _apply_edit(
    ctx: StageContext,
    chapter: ChapterView,
    job_type: JobType,
    *,
    extra: str = "",
) -> None:
    raw = ctx.complete(
        system_prompt=prompts.EDIT_SYSTEM_PROMPTS[job_type] + "\n" + prompts.EDIT_JSON_SHAPE,
        user_prompt=prompts.build_chapter_prompt(
            job_type,
            chapter_number=chapter.chapter_number,
            content=chapter.content or "",
            extra=extra,
        ),
        max_tokens=EDIT_MAX_TOKENS,
        temperature=EDIT_TEMPERATURE,
    )
    result = extract_json_object(raw)
    units = ctx.runtime.units
    content = result.get("content")
    if isinstance(content, str) and content.strip() and content.strip() != chapter.content:
        words = units.save_content(chapter.id, content.strip())
        ctx.checkpoint("content_edited", word_count=words)
    flags = [f"{job_type.value}: {flag}" for flag in _string_list(result.get("flags"))]
    units.append_flags(chapter.id, flags)
    ctx.checkpoint("edit_applied", flags=len(flags))


def _string_list(value: object) -> list[str]:
    if not isinstance(value, list):
        return []
    return [str(item) for item in value if item]
