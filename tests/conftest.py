"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path

import pytest

from novel_pipeline.queue.checkpoint import CheckpointLedger
from novel_pipeline.queue.repository import JobRepository
from novel_pipeline.units.models import ChapterBrief, ChapterView, CommercialBeat
from novel_pipeline.units.repository import UnitRepository

STORY_BIBLE = {
    "characters": [
        {"name": "Mara", "role": "protagonist"},
        {"name": "Tomas", "role": "visitor"},
    ],
    "setting": "A cottage on the edge of a flooded valley.",
}


@pytest.fixture()
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "pipeline.db"


@pytest.fixture()
def jobs(db_path: Path) -> Iterator[JobRepository]:
    repository = JobRepository(db_path)
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()


@pytest.fixture()
def units(jobs: JobRepository) -> UnitRepository:
    return UnitRepository(jobs.engine)


@pytest.fixture()
def ledger(jobs: JobRepository) -> CheckpointLedger:
    return CheckpointLedger(jobs.engine)


@pytest.fixture()
def book_id(units: UnitRepository) -> str:
    project = units.create_project(title="Flood Season", genre="thriller", story_bible=STORY_BIBLE)
    book = units.create_book(project_id=project.id, title="Flood Season")
    return book.id


@pytest.fixture()
def chapter(units: UnitRepository, book_id: str) -> ChapterView:
    return units.create_chapter(
        book_id=book_id,
        chapter_number=1,
        title="The Knock",
        outline="Mara waits out the storm until a stranger knocks.",
        brief=ChapterBrief(
            word_count_target=300,
            commercial_beats=[CommercialBeat(name="Opening Hook", description="The knock")],
            scene_cards=["Mara alone with the rain", "The knock at the door"],
        ),
    )
