"""Add task progress reporting and dead-letter replay lineage."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261018_0002"
down_revision = "20261018_0001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.add_column("tasks", sa.Column("progress_percent", sa.Integer(), nullable=True))
    op.add_column("tasks", sa.Column("progress_message", sa.String(), nullable=True))
    op.add_column("tasks", sa.Column("replay_of", sa.String(), nullable=True))
    op.add_column("dead_letters", sa.Column("replay_of", sa.String(), nullable=True))


def downgrade() -> None:
    with op.batch_alter_table("dead_letters") as batch_op:
        batch_op.drop_column("replay_of")
    with op.batch_alter_table("tasks") as batch_op:
        batch_op.drop_column("replay_of")
        batch_op.drop_column("progress_message")
        batch_op.drop_column("progress_percent")
