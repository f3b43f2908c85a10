"""Prompt templates for each chapter stage."""

from __future__ import annotations

import json
from typing import Any

from novel_pipeline.queue.models import JobType

_JSON_ONLY = """
Respond with a single JSON object and nothing else. Do not wrap it in markdown.
"""

AUTHOR_SYSTEM_PROMPT = """\
You are a commercial fiction author writing one chapter of a novel.
Write vivid, concrete prose in the established voice. Keep continuity with the
story bible and the summaries of earlier chapters. Output only the chapter text,
with no headings, notes or commentary.
"""

STRUCTURAL_REVIEW_SYSTEM_PROMPT = (
    """\
You are a developmental editor. Judge the chapter's structure: scene goals,
conflict, stakes, pacing across scenes and whether it delivers what its outline
promises. Approve only if no structural rework is needed.

JSON shape: {"approved": true|false, "issues": [string], "suggestions": [string]}
"""
    + _JSON_ONLY
)

REVISION_SYSTEM_PROMPT = """\
You are the chapter's author revising it after a developmental edit. Address
every issue and suggestion while preserving what already works. Output only the
full revised chapter text.
"""

EDIT_SYSTEM_PROMPTS: dict[JobType, str] = {
    JobType.LINE_REVIEW: """\
You are a line editor. Tighten sentences, sharpen word choice and fix rhythm
without changing plot or voice.
""",
    JobType.CONSISTENCY_REVIEW: """\
You are a continuity editor. Compare the chapter against the story bible and
earlier summaries. Fix contradictions in names, timeline, places and character
knowledge.
""",
    JobType.CORRECTNESS_REVIEW: """\
You are a copy editor. Fix grammar, punctuation, spelling and house-style
inconsistencies. Do not rewrite for style.
""",
    JobType.FINAL_CHECK: """\
You are a proofreader doing the last pass before typesetting. Fix typos,
doubled words and broken punctuation only.
""",
    JobType.SENSITIVITY_REVIEW: """\
You are a sensitivity reader. Identify harmful stereotypes or careless
portrayals and propose respectful alternatives.
""",
    JobType.RESEARCH_REVIEW: """\
You are a research reviewer. Flag factual, historical or technical claims that
are implausible or wrong for the setting.
""",
    JobType.AUDIENCE_REVIEW: """\
You are a beta reader from the book's target audience. Report where you were
bored, confused or pulled out of the story.
""",
    JobType.OPENING_REVIEW: """\
You are an acquisitions editor judging the opening of a novel. Assess whether
the first lines and first scene hook the reader, and tighten them if not.
""",
}

EDIT_JSON_SHAPE = """\
JSON shape: {"content": "full revised chapter text, or null when unchanged",
"flags": ["short description of each problem left for the author"]}
"""

SUMMARY_SYSTEM_PROMPT = """\
You summarise novel chapters for the author's continuity notes. Write about 200
words covering plot events, character decisions and open threads. Output only
the summary.
"""

STATE_SYSTEM_PROMPT = (
    """\
You track character state across a novel. For each character who appears in the
chapter, report where they are, their emotional state and what they now know.

JSON shape: {"<character name>": {"location": string, "emotional_state": string,
"knowledge": [string]}}
"""
    + _JSON_ONLY
)


def stage_header(job_type: JobType) -> str:
    return f"STAGE: {job_type.value}\n"


def build_generation_prompt(  # noqa: PLR0913
    *,
    chapter_number: int,
    title: str | None,
    outline: str | None,
    scene_cards: list[str],
    target_words: int,
    previous_summaries: list[tuple[int, str]],
    story_bible: dict[str, Any],
) -> str:
    lines = [stage_header(JobType.GENERATE)]
    lines.append(f"Chapter {chapter_number}" + (f": {title}" if title else ""))
    lines.append(f"Target length: about {target_words} words.")
    if story_bible:
        lines.append("\nStory bible:\n" + json.dumps(story_bible, ensure_ascii=False, indent=2))
    if previous_summaries:
        lines.append("\nEarlier chapters:")
        lines.extend(f"- Chapter {number}: {summary}" for number, summary in previous_summaries)
    if outline:
        lines.append("\nOutline:\n" + outline)
    if scene_cards:
        lines.append("\nScenes:")
        lines.extend(f"{index}. {card}" for index, card in enumerate(scene_cards, start=1))
    lines.append("\nWrite the chapter now.")
    return "\n".join(lines)


def build_chapter_prompt(
    job_type: JobType,
    *,
    chapter_number: int,
    content: str,
    extra: str = "",
) -> str:
    parts = [stage_header(job_type), f"Chapter {chapter_number}"]
    if extra:
        parts.append(extra)
    parts.append("\nChapter text:\n" + content)
    return "\n".join(parts)


def build_revision_prompt(*, chapter_number: int, content: str, review: dict[str, Any]) -> str:
    feedback = ["Developmental edit feedback:"]
    feedback.extend(f"- Issue: {issue}" for issue in review.get("issues", []))
    feedback.extend(f"- Suggestion: {item}" for item in review.get("suggestions", []))
    return build_chapter_prompt(
        JobType.REVISION,
        chapter_number=chapter_number,
        content=content,
        extra="\n".join(feedback),
    )
