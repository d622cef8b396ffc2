"""Delayed queue delivery and shared per-engine request windows."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261019_0003"
down_revision = "20261019_0002"
branch_labels = None
depends_on = None


def upgrade() -> None:
    with op.batch_alter_table("job_queue_items") as batch_op:
        batch_op.add_column(
            sa.Column(
                "available_at",
                sa.DateTime(timezone=True),
                nullable=True,
            ),
        )

    op.create_table(
        "rate_limit_windows",
        sa.Column("limit_key", sa.String(), nullable=False),
        sa.Column("window_started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("request_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.PrimaryKeyConstraint("limit_key"),
    )


def downgrade() -> None:
    op.drop_table("rate_limit_windows")
    with op.batch_alter_table("job_queue_items") as batch_op:
        batch_op.drop_column("available_at")
