"""Named work queues with atomic claims and at-least-once redelivery."""

from __future__ import annotations

import json
import logging
from collections.abc import Sequence
from datetime import timedelta
from pathlib import Path
from typing import Any, Protocol

from sqlalchemy import func, or_
from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from genqueue.orchestrator.models import WorkItem, WorkItemKind
from genqueue.orchestrator.routing import DEFAULT_QUEUE
from genqueue.orchestrator.runtime import ClockSource, IdGenerator, SystemClock, UuidIdGenerator
from genqueue.storage.common import build_sqlite_engine, to_db_datetime
from genqueue.storage.sqlmodel_models import JobQueueItem

logger = logging.getLogger(__name__)

_PENDING = "pending"
_CLAIMED = "claimed"
_DONE = "done"


class WorkQueue(Protocol):
    """Queue contract consumed by the dispatcher and the worker."""

    def enqueue(
        self,
        *,
        kind: WorkItemKind,
        target_id: str,
        payload: dict[str, Any],
        queue_name: str | None = None,
        delay_seconds: float = 0.0,
    ) -> str:
        """Add one work item and return its id."""

    def claim(self, *, queue_names: Sequence[str], worker_id: str) -> WorkItem | None:
        """Claim the oldest pending item from any of the queues."""

    def ack(self, item_id: str) -> None:
        """Mark a claimed item as done."""

    def release(self, item_id: str) -> None:
        """Return a claimed item to the queue for redelivery."""

    def defer(self, item_id: str, *, delay_seconds: float) -> None:
        """Return a claimed item unprocessed, claimable again after a delay."""


class SQLiteWorkQueue:
    """Queue persistence backed by SQLModel + SQLite."""

    def __init__(
        self,
        db_path: Path,
        *,
        default_queue: str = DEFAULT_QUEUE,
        clock: ClockSource | None = None,
        id_generator: IdGenerator | None = None,
        busy_timeout_ms: int = 5_000,
    ) -> None:
        self.db_path = db_path
        self.default_queue = default_queue
        self.clock = clock or SystemClock()
        self.id_generator = id_generator or UuidIdGenerator()
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def close(self) -> None:
        self.engine.dispose()

    def enqueue(
        self,
        *,
        kind: WorkItemKind,
        target_id: str,
        payload: dict[str, Any],
        queue_name: str | None = None,
        delay_seconds: float = 0.0,
    ) -> str:
        item_id = self.id_generator.new_id("wi_")
        queue = queue_name or self.default_queue
        now = self.clock.now()
        with Session(self.engine) as session:
            session.add(
                JobQueueItem(
                    item_id=item_id,
                    queue_name=queue,
                    item_kind=kind.value,
                    target_id=target_id,
                    payload_json=json.dumps(payload, ensure_ascii=False, sort_keys=True),
                    status=_PENDING,
                    enqueued_at=to_db_datetime(now),
                    available_at=(
                        to_db_datetime(now + timedelta(seconds=delay_seconds))
                        if delay_seconds > 0
                        else None
                    ),
                ),
            )
            session.commit()
        logger.debug("Enqueued %s %s on queue %s as %s", kind.value, target_id, queue, item_id)
        return item_id

    def claim(self, *, queue_names: Sequence[str], worker_id: str) -> WorkItem | None:
        """Atomically claim one pending item."""

        names = list(queue_names) or [self.default_queue]
        while True:
            now = to_db_datetime(self.clock.now())
            with Session(self.engine) as session:
                candidate = session.exec(
                    select(JobQueueItem)
                    .where(
                        col(JobQueueItem.queue_name).in_(names),
                        JobQueueItem.status == _PENDING,
                        or_(
                            col(JobQueueItem.available_at).is_(None),
                            col(JobQueueItem.available_at) <= now,
                        ),
                    )
                    .order_by(
                        col(JobQueueItem.enqueued_at).asc(),
                        col(JobQueueItem.item_id).asc(),
                    )
                    .limit(1),
                ).one_or_none()
                if candidate is None:
                    return None

                # The ORM update syncs onto candidate, so capture the row first.
                item_id = candidate.item_id
                delivery_count = candidate.delivery_count + 1
                item = WorkItem(
                    item_id=item_id,
                    queue_name=candidate.queue_name,
                    kind=WorkItemKind(candidate.item_kind),
                    target_id=candidate.target_id,
                    payload=json.loads(candidate.payload_json),
                    delivery_count=delivery_count,
                )
                result = session.exec(
                    sa_update(JobQueueItem)
                    .where(
                        col(JobQueueItem.item_id) == item_id,
                        col(JobQueueItem.status) == _PENDING,
                    )
                    .values(
                        status=_CLAIMED,
                        worker_id=worker_id,
                        claimed_at=now,
                        delivery_count=delivery_count,
                    ),
                )
                if result.rowcount != 1:
                    session.rollback()
                    continue
                session.commit()
                return item

    def ack(self, item_id: str) -> None:
        with Session(self.engine) as session:
            session.exec(
                sa_update(JobQueueItem)
                .where(
                    col(JobQueueItem.item_id) == item_id,
                    col(JobQueueItem.status) == _CLAIMED,
                )
                .values(status=_DONE, acked_at=to_db_datetime(self.clock.now())),
            )
            session.commit()

    def release(self, item_id: str) -> None:
        with Session(self.engine) as session:
            session.exec(
                sa_update(JobQueueItem)
                .where(
                    col(JobQueueItem.item_id) == item_id,
                    col(JobQueueItem.status) == _CLAIMED,
                )
                .values(status=_PENDING, worker_id=None, claimed_at=None),
            )
            session.commit()

    def defer(self, item_id: str, *, delay_seconds: float) -> None:
        """Hand a claimed item back untouched; the claim is not counted as a delivery."""

        available_at = self.clock.now() + timedelta(seconds=max(0.0, delay_seconds))
        with Session(self.engine) as session:
            session.exec(
                sa_update(JobQueueItem)
                .where(
                    col(JobQueueItem.item_id) == item_id,
                    col(JobQueueItem.status) == _CLAIMED,
                )
                .values(
                    status=_PENDING,
                    worker_id=None,
                    claimed_at=None,
                    available_at=to_db_datetime(available_at),
                    delivery_count=func.max(col(JobQueueItem.delivery_count) - 1, 0),
                ),
            )
            session.commit()
        logger.debug("Deferred work item %s for %.1fs", item_id, delay_seconds)

    def requeue_stale_claims(self, *, stale_after: timedelta) -> int:
        """Redeliver claimed items whose worker went quiet."""

        cutoff = to_db_datetime(self.clock.now() - stale_after)
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(JobQueueItem)
                .where(
                    col(JobQueueItem.status) == _CLAIMED,
                    col(JobQueueItem.claimed_at) < cutoff,
                )
                .values(status=_PENDING, worker_id=None, claimed_at=None),
            )
            session.commit()
        recovered = int(result.rowcount or 0)
        if recovered:
            logger.warning("Requeued %d stale work item claims", recovered)
        return recovered

    def pending_count(self, queue_name: str | None = None) -> int:
        with Session(self.engine) as session:
            statement = select(func.count()).select_from(JobQueueItem).where(
                JobQueueItem.status == _PENDING,
            )
            if queue_name is not None:
                statement = statement.where(JobQueueItem.queue_name == queue_name)
            return int(session.exec(statement).one())

    def total_count(self) -> int:
        with Session(self.engine) as session:
            return int(session.exec(select(func.count()).select_from(JobQueueItem)).one())
