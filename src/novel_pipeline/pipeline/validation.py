"""Advisory checks run before queueing a book and after a chapter completes."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

from novel_pipeline.analysis import dialogue_ratio
from novel_pipeline.units.models import ChapterView

MIN_PLAUSIBLE_TARGET_WORDS = 500
MAX_PLAUSIBLE_TARGET_WORDS = 10_000
FAST_PACING_MIN_DIALOGUE = 0.3
SLOW_PACING_MAX_DIALOGUE = 0.6

BEAT_INDICATORS: dict[str, tuple[str, ...]] = {
    "Opening Hook": ("gripping", "hook", "intriguing", "tension", "mystery"),
    "Inciting Incident": ("discovers", "learns", "changes", "disrupts", "revelation"),
    "First Plot Point": ("decides", "commits", "embarks", "journey", "no turning back"),
    "Midpoint Twist": ("twist", "revelation", "truth", "discovers", "reversal"),
    "Dark Moment / All Is Lost": ("despair", "hopeless", "lost", "fails", "lowest"),
    "Climax": ("confronts", "battle", "final", "showdown", "climax"),
    "Resolution": ("resolves", "peace", "conclusion", "aftermath", "new beginning"),
}


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class WarningType(str, Enum):
    WORD_COUNT = "word_count"
    PACING = "pacing"
    BEAT_MISSING = "beat_missing"
    STRUCTURE = "structure"


@dataclass(slots=True)
class DeviationWarning:
    """One advisory finding about a chapter."""

    chapter_id: str
    chapter_number: int
    warning_type: WarningType
    severity: Severity
    message: str
    recommendation: str
    expected: str | int | None = None
    actual: str | int | None = None


@dataclass(slots=True)
class CompletionValidation:
    """Post-hoc validation of a finished chapter."""

    chapter_id: str
    chapter_number: int
    word_count: int
    target_word_count: int
    word_count_deviation: float
    beats_hit: list[str] = field(default_factory=list)
    beats_missed: list[str] = field(default_factory=list)
    warnings: list[DeviationWarning] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not any(warning.severity == Severity.HIGH for warning in self.warnings)


def validate_completed_chapter(
    chapter: ChapterView,
    *,
    default_target_words: int,
    tolerance_percent: float,
    high_severity_percent: float,
) -> CompletionValidation:
    brief = chapter.brief
    target = (
        brief.word_count_target
        if brief is not None and brief.word_count_target
        else default_target_words
    )
    actual = chapter.word_count
    deviation = abs(actual - target) / target * 100 if target else 0.0
    result = CompletionValidation(
        chapter_id=chapter.id,
        chapter_number=chapter.chapter_number,
        word_count=actual,
        target_word_count=target,
        word_count_deviation=round(deviation, 1),
    )

    if deviation > tolerance_percent:
        over = actual > target
        result.warnings.append(
            DeviationWarning(
                chapter_id=chapter.id,
                chapter_number=chapter.chapter_number,
                warning_type=WarningType.WORD_COUNT,
                severity=Severity.HIGH if deviation > high_severity_percent else Severity.MEDIUM,
                message=(
                    f"Chapter is {'over' if over else 'under'} word count target "
                    f"by {deviation:.1f}%"
                ),
                recommendation=(
                    "Consider trimming unnecessary exposition or descriptions"
                    if over
                    else "Consider expanding key scenes or adding more detail"
                ),
                expected=target,
                actual=actual,
            ),
        )

    if brief is not None:
        summary = (chapter.summary or "").lower()
        for beat in brief.commercial_beats:
            indicators = BEAT_INDICATORS.get(beat.name, ())
            if any(indicator in summary for indicator in indicators):
                result.beats_hit.append(beat.name)
                continue
            result.beats_missed.append(beat.name)
            result.warnings.append(
                DeviationWarning(
                    chapter_id=chapter.id,
                    chapter_number=chapter.chapter_number,
                    warning_type=WarningType.BEAT_MISSING,
                    severity=Severity.MEDIUM,
                    message=f'Expected commercial beat "{beat.name}" may not be present',
                    recommendation=beat.description or f"Make the {beat.name} explicit",
                ),
            )
        pacing = _pacing_warning(chapter)
        if pacing is not None:
            result.warnings.append(pacing)
    return result


def preflight_warnings(chapters: list[ChapterView]) -> list[DeviationWarning]:
    """Structural check over planned chapters before any job is created."""

    warnings: list[DeviationWarning] = []
    for chapter in chapters:
        brief = chapter.brief
        has_scenes = brief is not None and bool(brief.scene_cards)
        if not (chapter.outline or "").strip() and not has_scenes:
            warnings.append(
                DeviationWarning(
                    chapter_id=chapter.id,
                    chapter_number=chapter.chapter_number,
                    warning_type=WarningType.STRUCTURE,
                    severity=Severity.HIGH,
                    message=f"Chapter {chapter.chapter_number} has no outline or scene cards",
                    recommendation="Plan the chapter before generating it",
                ),
            )
        target = brief.word_count_target if brief is not None else None
        if target is not None and not (
            MIN_PLAUSIBLE_TARGET_WORDS <= target <= MAX_PLAUSIBLE_TARGET_WORDS
        ):
            warnings.append(
                DeviationWarning(
                    chapter_id=chapter.id,
                    chapter_number=chapter.chapter_number,
                    warning_type=WarningType.WORD_COUNT,
                    severity=Severity.MEDIUM,
                    message=f"Word count target {target} is outside the plausible range",
                    recommendation=(
                        f"Use a target between {MIN_PLAUSIBLE_TARGET_WORDS} "
                        f"and {MAX_PLAUSIBLE_TARGET_WORDS} words"
                    ),
                    expected=f"{MIN_PLAUSIBLE_TARGET_WORDS}-{MAX_PLAUSIBLE_TARGET_WORDS}",
                    actual=target,
                ),
            )
    warnings.extend(_missing_anchor_beats(chapters))
    return warnings


def _missing_anchor_beats(chapters: list[ChapterView]) -> list[DeviationWarning]:
    if not any(chapter.brief is not None and chapter.brief.commercial_beats for chapter in chapters):
        return []

    def beats_of(chapter: ChapterView) -> set[str]:
        return {beat.name for beat in chapter.brief.commercial_beats} if chapter.brief else set()

    warnings: list[DeviationWarning] = []
    first = chapters[0]
    if first.chapter_number == 1 and "Opening Hook" not in beats_of(first):
        warnings.append(
            DeviationWarning(
                chapter_id=first.id,
                chapter_number=first.chapter_number,
                warning_type=WarningType.BEAT_MISSING,
                severity=Severity.MEDIUM,
                message="Opening chapter does not plan an Opening Hook",
                recommendation="Open on a question, threat or striking image",
            ),
        )
    final_quarter = chapters[-max(1, len(chapters) // 4) :]
    if not any("Climax" in beats_of(chapter) for chapter in final_quarter):
        last = chapters[-1]
        warnings.append(
            DeviationWarning(
                chapter_id=last.id,
                chapter_number=last.chapter_number,
                warning_type=WarningType.BEAT_MISSING,
                severity=Severity.MEDIUM,
                message="No Climax planned in the final quarter of the book",
                recommendation="Place the climax in the last quarter of the chapters",
            ),
        )
    return warnings


def _pacing_warning(chapter: ChapterView) -> DeviationWarning | None:
    guidance = chapter.brief.pacing_guidance if chapter.brief is not None else None
    if guidance not in {"fast", "slow"}:
        return None
    ratio = dialogue_ratio(chapter.content or "")
    if guidance == "fast" and ratio < FAST_PACING_MIN_DIALOGUE:
        message = "Chapter may have slower pacing than recommended"
        recommendation = "Consider adding more dialogue or action to increase pace"
    elif guidance == "slow" and ratio > SLOW_PACING_MAX_DIALOGUE:
        message = "Chapter may have faster pacing than recommended"
        recommendation = "Consider adding more introspection or description to slow the pace"
    else:
        return None
    return DeviationWarning(
        chapter_id=chapter.id,
        chapter_number=chapter.chapter_number,
        warning_type=WarningType.PACING,
        severity=Severity.LOW,
        message=message,
        recommendation=recommendation,
        expected=guidance,
        actual=f"dialogue ratio: {ratio * 100:.1f}%",
    )
