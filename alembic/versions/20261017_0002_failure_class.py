"""Store the provider failure class on failed tasks and team runs."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261017_0002"
down_revision = "20261017_0001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.add_column("tasks", sa.Column("failure_class", sa.String(), nullable=True))
    op.add_column("team_runs", sa.Column("failure_class", sa.String(), nullable=True))


def downgrade() -> None:
    op.drop_column("team_runs", "failure_class")
    op.drop_column("tasks", "failure_class")
