"""Track batch completion so batch TTL and cleanup follow item lifetimes."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261019_0002"
down_revision = "20261019_0001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    with op.batch_alter_table("job_batches") as batch_op:
        batch_op.add_column(
            sa.Column(
                "completed_at",
                sa.DateTime(timezone=True),
                nullable=True,
            ),
        )


def downgrade() -> None:
    with op.batch_alter_table("job_batches") as batch_op:
        batch_op.drop_column("completed_at")
