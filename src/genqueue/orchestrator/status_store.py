"""Persistent job status store with TTL expiry and monotonic transitions."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable, Mapping
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

from sqlalchemy import delete as sa_delete
from sqlalchemy import func
from sqlalchemy import update as sa_update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from genqueue.orchestrator.models import (
    BatchDescriptor,
    JobKind,
    JobState,
    JobStatistics,
    JobStatus,
    TransitionOutcome,
)
from genqueue.orchestrator.runtime import ClockSource, SystemClock
from genqueue.storage.alembic_runner import upgrade_head
from genqueue.storage.common import build_sqlite_engine, to_db_datetime, to_utc_aware_datetime
from genqueue.storage.sqlmodel_models import JobBatchRecord, JobQueueItem, JobStatusRecord

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 86_400
MAX_CAS_ATTEMPTS = 64
_BULK_CHUNK = 500


class StatusStore:
    """Job status persistence facade backed by SQLModel + SQLite.

    Every write goes through a versioned compare-and-set: the row is read,
    the transition is checked against the state machine, and the update is
    applied only if the row version is unchanged. A lost race re-reads and
    re-checks, so concurrent writers to one key can neither lose metadata nor
    move a job backwards.
    """

    def __init__(
        self,
        db_path: Path,
        *,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
        clock: ClockSource | None = None,
        busy_timeout_ms: int = 5_000,
    ) -> None:
        self.db_path = db_path
        self.ttl = timedelta(seconds=ttl_seconds)
        self.clock = clock or SystemClock()
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    def create(self, status: JobStatus) -> None:
        """Insert the initial status of a new job."""

        self.create_many([status])

    def create_many(self, statuses: Iterable[JobStatus]) -> None:
        """Insert initial statuses in one transaction; fails as a whole on a duplicate id."""

        now = self.clock.now()
        pending = list(statuses)
        with Session(self.engine) as session:
            for status in pending:
                session.add(
                    JobStatusRecord(
                        job_id=status.job_id,
                        kind=status.kind.value,
                        state=status.state.value,
                        progress=_clamp_progress(status.progress),
                        metadata_json=_dump_json(status.metadata),
                        result_json=(
                            _dump_json(status.result) if status.result is not None else None
                        ),
                        error=status.error,
                        queued_at=to_db_datetime(status.queued_at),
                        started_at=_optional_db_datetime(status.started_at),
                        completed_at=_optional_db_datetime(status.completed_at),
                        updated_at=to_db_datetime(now),
                        expires_at=to_db_datetime(now + self.ttl),
                        version=1,
                    ),
                )
            try:
                session.commit()
            except IntegrityError as error:
                session.rollback()
                job_ids = ", ".join(status.job_id for status in pending)
                raise ValueError(f"Duplicate job id in status store: {job_ids}") from error

    def update_status(  # noqa: PLR0913
        self,
        job_id: str,
        state: JobState,
        metadata_delta: Mapping[str, Any] | None = None,
        *,
        progress: int | None = None,
        result: Mapping[str, Any] | None = None,
        error: str | None = None,
    ) -> TransitionOutcome:
        """Merge metadata and move the job to ``state`` if that is not a step back."""

        for _ in range(MAX_CAS_ATTEMPTS):
            now = self.clock.now()
            with Session(self.engine) as session:
                row = self._live_row(session=session, job_id=job_id, now=now)
                if row is None:
                    return TransitionOutcome.NOT_FOUND

                current = JobState(row.state)
                if not current.can_transition_to(state):
                    logger.warning(
                        "Rejected status transition for %s: %s -> %s",
                        job_id,
                        current.value,
                        state.value,
                    )
                    return TransitionOutcome.REJECTED
                if current == state and current.is_terminal:
                    return TransitionOutcome.UNCHANGED

                values: dict[str, Any] = {
                    "state": state.value,
                    "metadata_json": _merge_metadata(row.metadata_json, metadata_delta),
                    "updated_at": to_db_datetime(now),
                    "expires_at": to_db_datetime(now + self.ttl),
                    "version": row.version + 1,
                }
                if progress is not None:
                    values["progress"] = _clamp_progress(progress)
                if state == JobState.PROCESSING and row.started_at is None:
                    values["started_at"] = to_db_datetime(now)
                if state.is_terminal:
                    values["completed_at"] = to_db_datetime(now)
                    if state == JobState.COMPLETED and progress is None:
                        values["progress"] = 100
                if result is not None:
                    values["result_json"] = _dump_json(result)
                if error is not None:
                    values["error"] = error

                applied = session.exec(
                    sa_update(JobStatusRecord)
                    .where(
                        col(JobStatusRecord.job_id) == job_id,
                        col(JobStatusRecord.version) == row.version,
                    )
                    .values(**values),
                )
                if applied.rowcount != 1:
                    session.rollback()
                    continue
                session.commit()
                return TransitionOutcome.APPLIED

        raise RuntimeError(
            f"Status of {job_id} kept changing concurrently; gave up after "
            f"{MAX_CAS_ATTEMPTS} attempts.",
        )

    def update_progress(self, job_id: str, percentage: int, message: str = "") -> TransitionOutcome:
        """Record progress for a job that has not finished yet."""

        current = self.get_status(job_id)
        if current is None:
            return TransitionOutcome.NOT_FOUND
        if current.is_terminal:
            return TransitionOutcome.REJECTED
        clamped = _clamp_progress(percentage)
        return self.update_status(
            job_id,
            current.state,
            {
                "progress_percentage": clamped,
                "progress_message": message,
                "progress_updated_at": self.clock.now().isoformat(),
            },
            progress=clamped,
        )

    def get_status(self, job_id: str) -> JobStatus | None:
        """Return job status, or None when unknown or expired."""

        with Session(self.engine) as session:
            row = self._live_row(session=session, job_id=job_id, now=self.clock.now())
        if row is None:
            return None
        return _to_status(row)

    def get_multiple_statuses(self, job_ids: Iterable[str]) -> dict[str, JobStatus]:
        """Bulk lookup; unknown and expired ids are omitted."""

        wanted = list(dict.fromkeys(job_ids))
        if not wanted:
            return {}
        now = to_db_datetime(self.clock.now())
        found: dict[str, JobStatus] = {}
        with Session(self.engine) as session:
            for start in range(0, len(wanted), _BULK_CHUNK):
                chunk = wanted[start : start + _BULK_CHUNK]
                rows = session.exec(
                    select(JobStatusRecord).where(
                        col(JobStatusRecord.job_id).in_(chunk),
                        col(JobStatusRecord.expires_at) > now,
                    ),
                ).all()
                for row in rows:
                    found[row.job_id] = _to_status(row)
        return {job_id: found[job_id] for job_id in wanted if job_id in found}

    def is_completed(self, job_id: str) -> bool:
        status = self.get_status(job_id)
        return status is not None and status.is_terminal

    def is_running(self, job_id: str) -> bool:
        status = self.get_status(job_id)
        return status is not None and status.state in {JobState.QUEUED, JobState.PROCESSING}

    def get_progress(self, job_id: str) -> int:
        status = self.get_status(job_id)
        return status.progress if status is not None else 0

    def get_statistics(self, window_hours: int = 24) -> JobStatistics:
        """Count live jobs by state whose queued_at falls within the window."""

        now = self.clock.now()
        since = to_db_datetime(now - timedelta(hours=window_hours))
        with Session(self.engine) as session:
            rows = session.exec(
                select(JobStatusRecord).where(
                    col(JobStatusRecord.queued_at) >= since,
                    col(JobStatusRecord.expires_at) > to_db_datetime(now),
                ),
            ).all()

        stats = JobStatistics(window_hours=window_hours, total=len(rows))
        durations: list[float] = []
        for row in rows:
            state = JobState(row.state)
            setattr(stats, state.value, getattr(stats, state.value) + 1)
            if state.is_terminal and row.started_at is not None and row.completed_at is not None:
                durations.append((row.completed_at - row.started_at).total_seconds())
        if durations:
            stats.average_duration_seconds = sum(durations) / len(durations)
        return stats

    def cleanup(self, older_than_hours: int = 24) -> int:
        """Delete statuses whose terminal time (or queued_at) is before the cutoff."""

        cutoff = to_db_datetime(self.clock.now() - timedelta(hours=older_than_hours))
        reference_time = func.coalesce(
            col(JobStatusRecord.completed_at),
            col(JobStatusRecord.queued_at),
        )
        with Session(self.engine) as session:
            removed = session.exec(
                sa_delete(JobStatusRecord).where(reference_time < cutoff),
            ).rowcount
            batch_reference_time = func.coalesce(
                col(JobBatchRecord.completed_at),
                col(JobBatchRecord.created_at),
            )
            session.exec(sa_delete(JobBatchRecord).where(batch_reference_time < cutoff))
            session.exec(
                sa_delete(JobQueueItem).where(
                    col(JobQueueItem.acked_at).is_not(None),
                    col(JobQueueItem.acked_at) < cutoff,
                ),
            )
            session.commit()
        if removed:
            logger.info("Cleaned up %d job statuses older than %dh", removed, older_than_hours)
        return int(removed or 0)

    def save_batch(self, batch: BatchDescriptor) -> None:
        """Persist a batch descriptor."""

        now = self.clock.now()
        with Session(self.engine) as session:
            session.add(
                JobBatchRecord(
                    batch_id=batch.batch_id,
                    item_job_ids_json=json.dumps(list(batch.item_job_ids)),
                    stop_on_error=batch.stop_on_error,
                    total=batch.total,
                    callback_url=batch.callback_url,
                    user_id=batch.user_id,
                    queue_name=batch.queue_name,
                    created_at=to_db_datetime(batch.created_at),
                    expires_at=to_db_datetime(now + self.ttl),
                ),
            )
            try:
                session.commit()
            except IntegrityError as error:
                session.rollback()
                raise ValueError(f"Duplicate batch id: {batch.batch_id}") from error

    def touch_batch(self, batch_id: str, *, completed: bool = False) -> bool:
        """Extend a live batch's TTL; ``completed`` also stamps its completion time."""

        now = self.clock.now()
        values: dict[str, Any] = {"expires_at": to_db_datetime(now + self.ttl)}
        if completed:
            values["completed_at"] = to_db_datetime(now)
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(JobBatchRecord)
                .where(
                    col(JobBatchRecord.batch_id) == batch_id,
                    col(JobBatchRecord.expires_at) > to_db_datetime(now),
                )
                .values(**values),
            )
            session.commit()
        return bool(result.rowcount)

    def get_batch(self, batch_id: str) -> BatchDescriptor | None:
        """Return a live batch descriptor."""

        with Session(self.engine) as session:
            row = session.exec(
                select(JobBatchRecord).where(
                    JobBatchRecord.batch_id == batch_id,
                    col(JobBatchRecord.expires_at) > to_db_datetime(self.clock.now()),
                ),
            ).one_or_none()
        if row is None:
            return None
        return BatchDescriptor(
            batch_id=row.batch_id,
            item_job_ids=tuple(json.loads(row.item_job_ids_json)),
            stop_on_error=row.stop_on_error,
            created_at=to_utc_aware_datetime(row.created_at),
            callback_url=row.callback_url,
            user_id=row.user_id,
            queue_name=row.queue_name,
        )

    def _live_row(self, *, session: Session, job_id: str, now: datetime) -> JobStatusRecord | None:
        return session.exec(
            select(JobStatusRecord).where(
                JobStatusRecord.job_id == job_id,
                col(JobStatusRecord.expires_at) > to_db_datetime(now),
            ),
        ).one_or_none()


def _merge_metadata(existing_json: str, delta: Mapping[str, Any] | None) -> str:
    merged = json.loads(existing_json) if existing_json else {}
    if not isinstance(merged, dict):
        merged = {}
    if delta:
        merged.update(delta)
    return _dump_json(merged)


def _dump_json(value: Mapping[str, Any]) -> str:
    return json.dumps(value, ensure_ascii=False, sort_keys=True, default=str)


def _clamp_progress(value: int) -> int:
    return max(0, min(100, int(value)))


def _optional_db_datetime(value: datetime | None) -> datetime | None:
    return to_db_datetime(value) if value is not None else None


def _to_status(row: JobStatusRecord) -> JobStatus:
    metadata = json.loads(row.metadata_json) if row.metadata_json else {}
    result = json.loads(row.result_json) if row.result_json else None
    return JobStatus(
        job_id=row.job_id,
        kind=JobKind(row.kind),
        state=JobState(row.state),
        queued_at=to_utc_aware_datetime(row.queued_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
        progress=row.progress,
        metadata=metadata if isinstance(metadata, dict) else {},
        result=result if isinstance(result, dict) else None,
        error=row.error,
        started_at=to_utc_aware_datetime(row.started_at) if row.started_at is not None else None,
        completed_at=(
            to_utc_aware_datetime(row.completed_at) if row.completed_at is not None else None
        ),
    )
