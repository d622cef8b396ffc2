"""SQLModel ORM tables for job orchestration storage."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, Index, Text
from sqlmodel import Field, SQLModel


class JobStatusRecord(SQLModel, table=True):
    __tablename__ = "job_statuses"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_job_statuses_kind_queued", "kind", "queued_at"),
        Index("idx_job_statuses_state", "state"),
    )

    job_id: str = Field(primary_key=True)
    kind: str
    state: str
    progress: int = Field(default=0)
    metadata_json: str = Field(default="{}", sa_column=Column(Text, nullable=False))
    result_json: str | None = Field(default=None, sa_column=Column(Text))
    error: str | None = Field(default=None, sa_column=Column(Text))
    queued_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    completed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    expires_at: datetime = Field(
        sa_column=Column(DateTime(timezone=True), nullable=False, index=True),
    )
    version: int = Field(default=1)


class JobBatchRecord(SQLModel, table=True):
    __tablename__ = "job_batches"  # type: ignore[bad-override]

    batch_id: str = Field(primary_key=True)
    item_job_ids_json: str = Field(sa_column=Column(Text, nullable=False))
    stop_on_error: bool = Field(default=False)
    total: int
    callback_url: str | None = None
    user_id: str | None = None
    queue_name: str | None = None
    created_at: datetime = Field(
        sa_column=Column(DateTime(timezone=True), nullable=False, index=True),
    )
    completed_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
    expires_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class JobQueueItem(SQLModel, table=True):
    __tablename__ = "job_queue_items"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_job_queue_items_claim", "queue_name", "status", "enqueued_at"),
    )

    item_id: str = Field(primary_key=True)
    queue_name: str
    item_kind: str
    target_id: str = Field(index=True)
    payload_json: str = Field(sa_column=Column(Text, nullable=False))
    status: str
    delivery_count: int = Field(default=0)
    worker_id: str | None = None
    enqueued_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    available_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    claimed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    acked_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))


class RateLimitWindow(SQLModel, table=True):
    __tablename__ = "rate_limit_windows"  # type: ignore[bad-override]

    limit_key: str = Field(primary_key=True)
    window_started_at: datetime = Field(
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )
    request_count: int = Field(default=0)
    version: int = Field(default=1)
