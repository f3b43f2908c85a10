"""Chapter, book and project persistence used by the pipeline stages."""

from __future__ import annotations

import json
import logging
from typing import Any
from uuid import uuid4

from sqlalchemy import func
from sqlalchemy import update as sa_update
from sqlalchemy.engine import Engine
from sqlmodel import Session, col, select

from novel_pipeline.errors import UnitNotFoundError
from novel_pipeline.storage.common import to_db_datetime, to_utc_aware_datetime, utc_now
from novel_pipeline.storage.sqlmodel_models import Book, Chapter, Project
from novel_pipeline.units.models import (
    BookView,
    ChapterBrief,
    ChapterStatus,
    ChapterView,
    ProjectView,
)

logger = logging.getLogger(__name__)


class UnitRepository:
    """Facade over the business-entity tables the pipeline reads and writes."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def create_project(
        self,
        *,
        title: str,
        genre: str | None = None,
        story_bible: dict[str, Any] | None = None,
        project_id: str | None = None,
    ) -> ProjectView:
        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            row = Project(
                id=project_id or str(uuid4()),
                title=title,
                genre=genre,
                story_bible=json.dumps(story_bible or {}, ensure_ascii=False),
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_project_view(row)

    def create_book(
        self,
        *,
        project_id: str,
        title: str,
        book_number: int = 1,
        book_id: str | None = None,
    ) -> BookView:
        with Session(self.engine) as session:
            row = Book(
                id=book_id or str(uuid4()),
                project_id=project_id,
                title=title,
                book_number=book_number,
                created_at=to_db_datetime(utc_now()),
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return BookView(
                id=row.id,
                project_id=row.project_id,
                title=row.title,
                book_number=row.book_number,
            )

    def create_chapter(  # noqa: PLR0913
        self,
        *,
        book_id: str,
        chapter_number: int,
        title: str | None = None,
        outline: str | None = None,
        brief: ChapterBrief | None = None,
        chapter_id: str | None = None,
    ) -> ChapterView:
        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            row = Chapter(
                id=chapter_id or str(uuid4()),
                book_id=book_id,
                chapter_number=chapter_number,
                title=title,
                status=ChapterStatus.PENDING.value,
                outline=outline,
                brief=brief.to_json() if brief is not None else None,
                flags="[]",
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_chapter_view(row)

    def get_chapter(self, chapter_id: str) -> ChapterView | None:
        with Session(self.engine) as session:
            row = session.get(Chapter, chapter_id)
            if row is None:
                return None
            return _to_chapter_view(row)

    def require_chapter(self, chapter_id: str) -> ChapterView:
        chapter = self.get_chapter(chapter_id)
        if chapter is None:
            raise UnitNotFoundError(f"Chapter not found: {chapter_id}")
        return chapter

    def list_chapters(
        self,
        book_id: str,
        *,
        status: ChapterStatus | None = None,
    ) -> list[ChapterView]:
        """Chapters of a book ordered by chapter number."""

        with Session(self.engine) as session:
            stmt = select(Chapter).where(Chapter.book_id == book_id)
            if status is not None:
                stmt = stmt.where(Chapter.status == status.value)
            rows = session.exec(stmt.order_by(col(Chapter.chapter_number).asc())).all()
            return [_to_chapter_view(row) for row in rows]

    def count_chapters_by_status(self, book_id: str) -> dict[str, int]:
        counts = {status.value: 0 for status in ChapterStatus}
        with Session(self.engine) as session:
            rows = session.exec(
                select(Chapter.status, func.count())
                .where(Chapter.book_id == book_id)
                .group_by(Chapter.status),
            ).all()
        for status, count in rows:
            counts[status] = int(count)
        return counts

    def previous_summaries(self, chapter: ChapterView, *, limit: int = 3) -> list[tuple[int, str]]:
        """Summaries of the chapters right before this one, oldest first."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(Chapter)
                .where(
                    Chapter.book_id == chapter.book_id,
                    col(Chapter.chapter_number) < chapter.chapter_number,
                    col(Chapter.summary).is_not(None),
                )
                .order_by(col(Chapter.chapter_number).desc())
                .limit(limit),
            ).all()
            return [(row.chapter_number, row.summary or "") for row in reversed(rows)]

    def set_status(self, chapter_id: str, status: ChapterStatus) -> None:
        self._update_chapter(chapter_id, status=status.value)
        logger.debug("Chapter %s status -> %s", chapter_id, status.value)

    def save_content(self, chapter_id: str, content: str) -> int:
        """Store chapter prose and its word count; returns the word count."""

        words = count_words(content)
        self._update_chapter(chapter_id, content=content, word_count=words)
        return words

    def refresh_word_count(self, chapter_id: str) -> int:
        chapter = self.require_chapter(chapter_id)
        words = count_words(chapter.content or "")
        self._update_chapter(chapter_id, word_count=words)
        return words

    def save_summary(self, chapter_id: str, summary: str) -> None:
        self._update_chapter(chapter_id, summary=summary)

    def append_flags(self, chapter_id: str, flags: list[str]) -> None:
        if not flags:
            return
        chapter = self.require_chapter(chapter_id)
        merged = [*chapter.flags, *flags]
        self._update_chapter(chapter_id, flags=json.dumps(merged, ensure_ascii=False))

    def add_token_usage(self, chapter_id: str, *, input_tokens: int, output_tokens: int) -> None:
        """Accumulate completion token usage spent on the chapter."""

        if input_tokens <= 0 and output_tokens <= 0:
            return
        self._update_chapter(
            chapter_id,
            input_tokens=col(Chapter.input_tokens) + max(input_tokens, 0),
            output_tokens=col(Chapter.output_tokens) + max(output_tokens, 0),
        )

    def token_usage_for_book(self, book_id: str) -> tuple[int, int]:
        """Total (input, output) tokens spent on the book's chapters."""

        with Session(self.engine) as session:
            row = session.exec(
                select(
                    func.coalesce(func.sum(Chapter.input_tokens), 0),
                    func.coalesce(func.sum(Chapter.output_tokens), 0),
                ).where(Chapter.book_id == book_id),
            ).one()
        return int(row[0]), int(row[1])

    def set_locked(self, chapter_id: str, *, locked: bool) -> None:
        self._update_chapter(chapter_id, is_locked=locked)

    def reset_chapter(self, chapter_id: str) -> None:
        """Clear derived content so the chapter can be produced from scratch."""

        self._update_chapter(
            chapter_id,
            status=ChapterStatus.PENDING.value,
            content=None,
            summary=None,
            word_count=0,
            flags="[]",
        )

    def get_project(self, project_id: str) -> ProjectView:
        with Session(self.engine) as session:
            row = session.get(Project, project_id)
            if row is None:
                raise UnitNotFoundError(f"Project not found: {project_id}")
            return _to_project_view(row)

    def get_book(self, book_id: str) -> BookView:
        with Session(self.engine) as session:
            row = session.get(Book, book_id)
            if row is None:
                raise UnitNotFoundError(f"Book not found: {book_id}")
            return BookView(
                id=row.id,
                project_id=row.project_id,
                title=row.title,
                book_number=row.book_number,
            )

    def project_for_chapter(self, chapter: ChapterView) -> ProjectView:
        return self.get_project(self.get_book(chapter.book_id).project_id)

    def update_story_bible(self, project_id: str, story_bible: dict[str, Any]) -> None:
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Project)
                .where(col(Project.id) == project_id)
                .values(
                    story_bible=json.dumps(story_bible, ensure_ascii=False),
                    updated_at=to_db_datetime(utc_now()),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                raise UnitNotFoundError(f"Project not found: {project_id}")
            session.commit()

    def _update_chapter(self, chapter_id: str, **values: Any) -> None:
        values["updated_at"] = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Chapter).where(col(Chapter.id) == chapter_id).values(**values),
            )
            if result.rowcount != 1:
                session.rollback()
                raise UnitNotFoundError(f"Chapter not found: {chapter_id}")
            session.commit()


def count_words(text: str) -> int:
    return len(text.split())


def _load_json(raw: str | None, default: Any) -> Any:
    if not raw:
        return default
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("Ignoring unreadable JSON column value")
        return default


def _to_project_view(row: Project) -> ProjectView:
    bible = _load_json(row.story_bible, {})
    return ProjectView(
        id=row.id,
        title=row.title,
        genre=row.genre,
        story_bible=bible if isinstance(bible, dict) else {},
    )


def _to_chapter_view(row: Chapter) -> ChapterView:
    flags = _load_json(row.flags, [])
    return ChapterView(
        id=row.id,
        book_id=row.book_id,
        chapter_number=row.chapter_number,
        title=row.title,
        status=ChapterStatus(row.status),
        outline=row.outline,
        brief=ChapterBrief.from_json(row.brief),
        content=row.content,
        summary=row.summary,
        word_count=row.word_count,
        input_tokens=row.input_tokens,
        output_tokens=row.output_tokens,
        flags=[str(flag) for flag in flags] if isinstance(flags, list) else [],
        is_locked=row.is_locked,
        updated_at=to_utc_aware_datetime(row.updated_at),
    )
