"""Create job status, batch and queue item tables."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "job_statuses",
        sa.Column("job_id", sa.String(), nullable=False),
        sa.Column("kind", sa.String(), nullable=False),
        sa.Column("state", sa.String(), nullable=False),
        sa.Column("progress", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("metadata_json", sa.Text(), nullable=False, server_default="{}"),
        sa.Column("result_json", sa.Text(), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("queued_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.PrimaryKeyConstraint("job_id"),
    )
    op.create_index(
        "idx_job_statuses_kind_queued",
        "job_statuses",
        ["kind", "queued_at"],
        unique=False,
    )
    op.create_index("idx_job_statuses_state", "job_statuses", ["state"], unique=False)
    op.create_index(
        "ix_job_statuses_expires_at",
        "job_statuses",
        ["expires_at"],
        unique=False,
    )

    op.create_table(
        "job_batches",
        sa.Column("batch_id", sa.String(), nullable=False),
        sa.Column("item_job_ids_json", sa.Text(), nullable=False),
        sa.Column("stop_on_error", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.Column("total", sa.Integer(), nullable=False),
        sa.Column("callback_url", sa.String(), nullable=True),
        sa.Column("user_id", sa.String(), nullable=True),
        sa.Column("queue_name", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("batch_id"),
    )
    op.create_index(
        "ix_job_batches_created_at",
        "job_batches",
        ["created_at"],
        unique=False,
    )

    op.create_table(
        "job_queue_items",
        sa.Column("item_id", sa.String(), nullable=False),
        sa.Column("queue_name", sa.String(), nullable=False),
        sa.Column("item_kind", sa.String(), nullable=False),
        sa.Column("target_id", sa.String(), nullable=False),
        sa.Column("payload_json", sa.Text(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("delivery_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("worker_id", sa.String(), nullable=True),
        sa.Column("enqueued_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("acked_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("item_id"),
    )
    op.create_index(
        "idx_job_queue_items_claim",
        "job_queue_items",
        ["queue_name", "status", "enqueued_at"],
        unique=False,
    )
    op.create_index(
        "ix_job_queue_items_target_id",
        "job_queue_items",
        ["target_id"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("ix_job_queue_items_target_id", table_name="job_queue_items")
    op.drop_index("idx_job_queue_items_claim", table_name="job_queue_items")
    op.drop_table("job_queue_items")
    op.drop_index("ix_job_batches_created_at", table_name="job_batches")
    op.drop_table("job_batches")
    op.drop_index("ix_job_statuses_expires_at", table_name="job_statuses")
    op.drop_index("idx_job_statuses_state", table_name="job_statuses")
    op.drop_index("idx_job_statuses_kind_queued", table_name="job_statuses")
    op.drop_table("job_statuses")
