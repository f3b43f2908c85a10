"""Minimal business-entity views read and written by stage handlers."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)


class ChapterStatus(str, Enum):
    """Chapter lifecycle as seen by the pipeline."""

    PENDING = "pending"
    WRITING = "writing"
    EDITING = "editing"
    COMPLETED = "completed"


@dataclass(slots=True)
class CommercialBeat:
    name: str
    description: str = ""


@dataclass(slots=True)
class ChapterBrief:
    """Planning data for one chapter."""

    word_count_target: int | None = None
    commercial_beats: list[CommercialBeat] = field(default_factory=list)
    pacing_guidance: str | None = None
    scene_cards: list[str] = field(default_factory=list)

    @classmethod
    def from_json(cls, raw: str | None) -> ChapterBrief | None:
        if not raw:
            return None
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Ignoring unreadable chapter brief")
            return None
        if not isinstance(payload, dict):
            return None
        beats = [
            CommercialBeat(name=str(item.get("name", "")), description=str(item.get("description", "")))
            for item in payload.get("commercial_beats", [])
            if isinstance(item, dict) and item.get("name")
        ]
        target = payload.get("word_count_target")
        return cls(
            word_count_target=int(target) if isinstance(target, int | float) else None,
            commercial_beats=beats,
            pacing_guidance=payload.get("pacing_guidance"),
            scene_cards=[str(card) for card in payload.get("scene_cards", [])],
        )

    def to_json(self) -> str:
        return json.dumps(
            {
                "word_count_target": self.word_count_target,
                "commercial_beats": [
                    {"name": beat.name, "description": beat.description}
                    for beat in self.commercial_beats
                ],
                "pacing_guidance": self.pacing_guidance,
                "scene_cards": self.scene_cards,
            },
            ensure_ascii=False,
        )


@dataclass(slots=True)
class ProjectView:
    id: str
    title: str
    genre: str | None
    story_bible: dict[str, Any]


@dataclass(slots=True)
class BookView:
    id: str
    project_id: str
    title: str
    book_number: int


@dataclass(slots=True)
class ChapterView:
    """Chapter fields used by stage handlers and validation."""

    id: str
    book_id: str
    chapter_number: int
    title: str | None
    status: ChapterStatus
    outline: str | None
    brief: ChapterBrief | None
    content: str | None
    summary: str | None
    word_count: int
    flags: list[str]
    is_locked: bool
    updated_at: datetime
    input_tokens: int = 0
    output_tokens: int = 0
