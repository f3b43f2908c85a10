"""Stateless prose metrics used by the final-check stage."""

from __future__ import annotations

import re
import statistics
from dataclasses import dataclass, field

_SENTENCE_SPLIT = re.compile(r"(?<=[.!?])\s+")
_WORD = re.compile(r"[A-Za-z']+")
_VOWEL_GROUPS = re.compile(r"[aeiouy]+")
_PASSIVE = re.compile(
    r"\b(?:am|is|are|was|were|be|been|being)\s+(?:\w+ly\s+)?(\w+ed|\w+en)\b",
    re.IGNORECASE,
)
_DIALOGUE = re.compile(r"[\"“][^\"“”]+[\"”]")
_NOT_ADVERBS = frozenset({"only", "family", "early", "likely", "reply", "holy", "ugly", "july"})

PASSIVE_WARNING_RATIO = 0.1
ADVERB_WARNING_DENSITY = 0.03
LOW_VARIETY_STDEV = 3.0


@dataclass(slots=True)
class TextReport:
    """Readability and style metrics for one piece of prose."""

    word_count: int
    sentence_count: int
    flesch_reading_ease: float
    average_sentence_length: float
    sentence_length_stdev: float
    passive_sentence_ratio: float
    adverb_density: float
    dialogue_ratio: float
    warnings: list[str] = field(default_factory=list)


def analyze(text: str) -> TextReport:
    words = _WORD.findall(text)
    sentences = split_sentences(text)
    lengths = [len(_WORD.findall(sentence)) for sentence in sentences]
    word_count = len(words)
    sentence_count = len(sentences)

    avg_length = word_count / sentence_count if sentence_count else 0.0
    stdev = statistics.pstdev(lengths) if len(lengths) > 1 else 0.0
    passive = sum(1 for sentence in sentences if _PASSIVE.search(sentence))
    passive_ratio = passive / sentence_count if sentence_count else 0.0
    adverbs = sum(1 for word in words if _is_adverb(word))
    adverb_density = adverbs / word_count if word_count else 0.0

    report = TextReport(
        word_count=word_count,
        sentence_count=sentence_count,
        flesch_reading_ease=flesch_reading_ease(words, sentence_count),
        average_sentence_length=round(avg_length, 2),
        sentence_length_stdev=round(stdev, 2),
        passive_sentence_ratio=round(passive_ratio, 3),
        adverb_density=round(adverb_density, 3),
        dialogue_ratio=round(dialogue_ratio(text), 3),
    )
    if passive_ratio > PASSIVE_WARNING_RATIO:
        report.warnings.append(f"Passive voice in {passive_ratio:.0%} of sentences")
    if adverb_density > ADVERB_WARNING_DENSITY:
        report.warnings.append(f"High adverb density ({adverb_density:.1%})")
    if sentence_count > 5 and stdev < LOW_VARIETY_STDEV:
        report.warnings.append("Low sentence length variety")
    return report


def split_sentences(text: str) -> list[str]:
    return [part.strip() for part in _SENTENCE_SPLIT.split(text.strip()) if part.strip()]


def flesch_reading_ease(words: list[str], sentence_count: int) -> float:
    if not words or not sentence_count:
        return 0.0
    syllables = sum(count_syllables(word) for word in words)
    score = 206.835 - 1.015 * (len(words) / sentence_count) - 84.6 * (syllables / len(words))
    return round(score, 1)


def count_syllables(word: str) -> int:
    lowered = word.lower().strip("'")
    if not lowered:
        return 0
    groups = len(_VOWEL_GROUPS.findall(lowered))
    if lowered.endswith("e") and not lowered.endswith("le") and groups > 1:
        groups -= 1
    return max(1, groups)


def dialogue_ratio(text: str) -> float:
    """Share of characters that sit inside quotation marks."""

    if not text:
        return 0.0
    quoted = sum(len(match) for match in _DIALOGUE.findall(text))
    return quoted / len(text)


def _is_adverb(word: str) -> bool:
    lowered = word.lower()
    return len(lowered) > 4 and lowered.endswith("ly") and lowered not in _NOT_ADVERBS
