"""SQLModel ORM tables for the pipeline database."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Index, Text, UniqueConstraint
from sqlmodel import Field, SQLModel


class Project(SQLModel, table=True):
    __tablename__ = "projects"  # type: ignore[bad-override]

    id: str = Field(primary_key=True)
    title: str
    genre: str | None = None
    story_bible: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class Book(SQLModel, table=True):
    __tablename__ = "books"  # type: ignore[bad-override]

    id: str = Field(primary_key=True)
    project_id: str = Field(
        sa_column=Column(
            ForeignKey("projects.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    title: str
    book_number: int = Field(default=1)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class Chapter(SQLModel, table=True):
    __tablename__ = "chapters"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint("book_id", "chapter_number", name="uq_chapters_book_number"),
    )

    id: str = Field(primary_key=True)
    book_id: str = Field(
        sa_column=Column(
            ForeignKey("books.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    chapter_number: int
    title: str | None = None
    status: str = Field(default="pending", index=True)
    outline: str | None = Field(default=None, sa_column=Column(Text))
    brief: str | None = Field(default=None, sa_column=Column(Text))
    content: str | None = Field(default=None, sa_column=Column(Text))
    summary: str | None = Field(default=None, sa_column=Column(Text))
    word_count: int = Field(default=0)
    input_tokens: int = Field(default=0)
    output_tokens: int = Field(default=0)
    flags: str | None = Field(default=None, sa_column=Column(Text))
    is_locked: bool = Field(default=False, sa_column=Column(Boolean, nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class Job(SQLModel, table=True):
    __tablename__ = "jobs"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_jobs_claim", "status", "created_at"),
        Index("idx_jobs_target_type", "target_id", "type", "created_at"),
    )

    id: str = Field(primary_key=True)
    type: str
    target_id: str
    status: str
    attempts: int = Field(default=0)
    error: str | None = Field(default=None, sa_column=Column(Text))
    checkpoint: str | None = Field(default=None, sa_column=Column(Text))
    resume_after: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    heartbeat_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    completed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class JobCheckpoint(SQLModel, table=True):
    __tablename__ = "job_checkpoints"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_job_checkpoints_job", "job_id", "id"),)

    id: int | None = Field(default=None, primary_key=True)
    job_id: str = Field(
        sa_column=Column(
            ForeignKey("jobs.id", ondelete="CASCADE"),
            nullable=False,
        ),
    )
    step: str
    payload: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
