from pathlib import Path

import allure
from sqlalchemy import text

from novel_pipeline.queue.repository import JobRepository

pytestmark = [
    allure.epic("Job Queue"),
    allure.feature("Queue Persistence"),
]


def test_alembic_schema_is_initialized_to_head(tmp_path: Path) -> None:
    repository = JobRepository(tmp_path / "migrations.db")
    repository.init_schema()
    repository.init_schema()

    with repository.engine.connect() as connection:
        version = connection.execute(
            text("SELECT version_num FROM alembic_version LIMIT 1"),
        ).scalar_one()
        tables = connection.execute(
            text(
                """
                SELECT name
                FROM sqlite_master
                WHERE type = 'table' AND name != 'alembic_version'
                ORDER BY name
                """,
            ),
        ).scalars().all()
        journal_mode = connection.execute(text("PRAGMA journal_mode")).scalar_one()

    assert version == "20261019_0003"
    assert list(tables) == ["books", "chapters", "job_checkpoints", "jobs", "projects"]
    assert str(journal_mode).lower() == "wal"
    repository.close()
