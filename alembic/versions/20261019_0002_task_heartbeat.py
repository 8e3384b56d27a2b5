"""Add task lease heartbeat for stale-lease reclamation."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261019_0002"
down_revision = "20261019_0001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.add_column(
        "tasks",
        sa.Column(
            "last_ping_at",
            sa.DateTime(timezone=True),
            nullable=True,
        ),
    )
    op.execute(
        sa.text(
            """
            UPDATE tasks
            SET last_ping_at = COALESCE(last_ping_at, updated_at, created_at)
            WHERE status = 'in_progress'
            """,
        ),
    )


def downgrade() -> None:
    with op.batch_alter_table("tasks") as batch_op:
        batch_op.drop_column("last_ping_at")
