from __future__ import annotations

import allure
import pytest

from novel_pipeline.errors import UnitNotFoundError
from novel_pipeline.units.models import ChapterBrief, ChapterStatus, ChapterView, CommercialBeat
from novel_pipeline.units.repository import UnitRepository, count_words

pytestmark = [
    allure.epic("Chapter Pipeline"),
    allure.feature("Unit Store"),
]


def test_brief_round_trips_through_storage(units: UnitRepository, chapter: ChapterView) -> None:
    stored = units.require_chapter(chapter.id)
    assert stored.brief == ChapterBrief(
        word_count_target=300,
        commercial_beats=[CommercialBeat(name="Opening Hook", description="The knock")],
        scene_cards=["Mara alone with the rain", "The knock at the door"],
    )
    assert stored.status == ChapterStatus.PENDING
    assert stored.flags == []


def test_previous_summaries_are_the_latest_three_oldest_first(
    units: UnitRepository,
    book_id: str,
) -> None:
    chapters = [
        units.create_chapter(book_id=book_id, chapter_number=number) for number in range(1, 6)
    ]
    for chapter in chapters[:4]:
        units.save_summary(chapter.id, f"summary {chapter.chapter_number}")

    assert units.previous_summaries(chapters[4]) == [
        (2, "summary 2"),
        (3, "summary 3"),
        (4, "summary 4"),
    ]
    assert units.previous_summaries(chapters[0]) == []


def test_save_content_counts_words(units: UnitRepository, chapter: ChapterView) -> None:
    assert units.save_content(chapter.id, "One two  three\nfour") == 4
    assert units.require_chapter(chapter.id).word_count == 4
    assert count_words("") == 0


def test_append_flags_accumulates(units: UnitRepository, chapter: ChapterView) -> None:
    units.append_flags(chapter.id, ["line_review: a"])
    units.append_flags(chapter.id, [])
    units.append_flags(chapter.id, ["final_check: b"])
    assert units.require_chapter(chapter.id).flags == ["line_review: a", "final_check: b"]


def test_missing_entities_raise(units: UnitRepository) -> None:
    with pytest.raises(UnitNotFoundError):
        units.require_chapter("missing")
    with pytest.raises(UnitNotFoundError):
        units.set_status("missing", ChapterStatus.WRITING)
    with pytest.raises(UnitNotFoundError):
        units.get_book("missing")
    with pytest.raises(UnitNotFoundError):
        units.update_story_bible("missing", {})
