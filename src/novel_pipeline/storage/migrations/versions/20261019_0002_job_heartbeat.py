"""Add job heartbeat for stale-attempt recovery."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261019_0002"
down_revision = "20261019_0001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.add_column(
        "jobs",
        sa.Column(
            "heartbeat_at",
            sa.DateTime(timezone=True),
            nullable=True,
        ),
    )
    op.execute(
        sa.text(
            """
            UPDATE jobs
            SET heartbeat_at = COALESCE(heartbeat_at, started_at)
            WHERE status = 'running'
            """,
        ),
    )


def downgrade() -> None:
    op.drop_column("jobs", "heartbeat_at")
