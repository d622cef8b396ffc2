"""Public facade over dispatcher, status store, worker and batches."""

from __future__ import annotations

import time
from collections.abc import Callable, Iterable, Sequence
from typing import Any

from genqueue.config import Settings
from genqueue.orchestrator.batch import BatchCoordinator, estimate_total_cost
from genqueue.orchestrator.callbacks import CallbackNotifier
from genqueue.orchestrator.dispatcher import Dispatcher
from genqueue.orchestrator.engine import AIEngine, EchoEngine
from genqueue.orchestrator.events import EventChannel, JobEventListener
from genqueue.orchestrator.models import AIRequest, BatchResult, JobStatistics, JobStatus
from genqueue.orchestrator.pricing import PricingTable
from genqueue.orchestrator.rate_limit import RateLimiter, parse_rate_limits
from genqueue.orchestrator.runtime import ClockSource, IdGenerator, SystemClock, UuidIdGenerator
from genqueue.orchestrator.status_store import StatusStore
from genqueue.orchestrator.work_queue import SQLiteWorkQueue
from genqueue.orchestrator.worker import JobRunner, JobWorker


class JobOrchestrator:
    """Entry point for queueing AI work and reading its status."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        settings: Settings,
        store: StatusStore,
        queue: SQLiteWorkQueue,
        engine: AIEngine,
        notifier: CallbackNotifier | None = None,
        events: EventChannel | None = None,
        clock: ClockSource | None = None,
        id_generator: IdGenerator | None = None,
        rate_limiter: RateLimiter | None = None,
        sleep: Callable[[float], None] | None = None,
    ) -> None:
        self.settings = settings
        self.store = store
        self.queue = queue
        self.notifier = notifier
        self.rate_limiter = rate_limiter
        self.events = events or EventChannel()
        self.clock = clock or SystemClock()
        self.pricing = PricingTable.from_string(settings.pricing)
        self.dispatcher = Dispatcher(
            store=store,
            queue=queue,
            id_generator=id_generator or UuidIdGenerator(),
            clock=self.clock,
            default_queue=settings.worker.default_queue,
        )
        self.runner = JobRunner(
            store=store,
            engine=engine,
            notifier=notifier,
            events=self.events,
            clock=self.clock,
            worker_id=settings.worker.worker_id,
            provider_timeout_seconds=settings.worker.provider_timeout_seconds,
            long_running_timeout_seconds=settings.worker.long_running_timeout_seconds,
            max_attempts=settings.worker.provider_max_attempts,
            retry_backoff_seconds=settings.worker.provider_retry_backoff_seconds,
            long_running_max_attempts=settings.worker.long_running_max_attempts,
            long_running_retry_backoff_seconds=settings.worker.long_running_retry_backoff_seconds,
            sleep=sleep or time.sleep,
        )
        self.coordinator = BatchCoordinator(
            store=store,
            runner=self.runner,
            notifier=notifier,
            max_parallel=settings.worker.batch_max_parallel,
            rate_limiter=rate_limiter,
        )

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        engine: AIEngine | None = None,
        notifier: CallbackNotifier | None = None,
        clock: ClockSource | None = None,
        id_generator: IdGenerator | None = None,
        sleep: Callable[[float], None] | None = None,
    ) -> JobOrchestrator:
        """Build the full object graph on the configured SQLite database."""

        settings.validate()
        clock = clock or SystemClock()
        id_generator = id_generator or UuidIdGenerator()
        store = StatusStore(
            settings.db_path,
            ttl_seconds=settings.store.status_ttl_seconds,
            clock=clock,
            busy_timeout_ms=settings.store.sqlite_busy_timeout_ms,
        )
        store.init_schema()
        queue = SQLiteWorkQueue(
            settings.db_path,
            default_queue=settings.worker.default_queue,
            clock=clock,
            id_generator=id_generator,
            busy_timeout_ms=settings.store.sqlite_busy_timeout_ms,
        )
        rate_limiter = None
        if settings.rate_limits.enabled:
            rate_limiter = RateLimiter(
                settings.db_path,
                limits=parse_rate_limits(settings.rate_limits.limits),
                clock=clock,
                busy_timeout_ms=settings.store.sqlite_busy_timeout_ms,
                jitter_seconds=settings.rate_limits.jitter_seconds,
                max_delay_seconds=settings.rate_limits.max_delay_seconds,
            )
        if notifier is None and settings.callbacks.enabled:
            notifier = CallbackNotifier(
                timeout_seconds=settings.callbacks.timeout_seconds,
                max_attempts=settings.callbacks.max_attempts,
                backoff_seconds=settings.callbacks.backoff_seconds,
                user_agent=settings.callbacks.user_agent,
                clock=clock,
                id_generator=id_generator,
            )
        return cls(
            settings=settings,
            store=store,
            queue=queue,
            engine=engine or EchoEngine(),
            notifier=notifier,
            clock=clock,
            id_generator=id_generator,
            rate_limiter=rate_limiter,
            sleep=sleep,
        )

    def close(self) -> None:
        if self.notifier is not None:
            self.notifier.close()
        if self.rate_limiter is not None:
            self.rate_limiter.close()
        self.queue.close()
        self.store.close()

    def __enter__(self) -> JobOrchestrator:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()

    def queue_request(
        self,
        request: AIRequest,
        callback_url: str | None = None,
        queue_name: str | None = None,
        user_id: str | None = None,
    ) -> str:
        return self.dispatcher.queue_request(
            request,
            callback_url=callback_url,
            queue_name=queue_name,
            user_id=user_id,
        )

    def queue_long_running_task(  # noqa: PLR0913
        self,
        request: AIRequest,
        task_type: str,
        callback_url: str | None = None,
        progress_callback_urls: Sequence[str] = (),
        queue_name: str | None = None,
        user_id: str | None = None,
    ) -> str:
        return self.dispatcher.queue_long_running_task(
            request,
            task_type,
            callback_url=callback_url,
            progress_callback_urls=progress_callback_urls,
            queue_name=queue_name,
            user_id=user_id,
        )

    def queue_batch(
        self,
        requests: Sequence[AIRequest],
        stop_on_error: bool = False,
        callback_url: str | None = None,
        user_id: str | None = None,
        queue_name: str | None = None,
    ) -> str:
        return self.dispatcher.queue_batch(
            requests,
            stop_on_error=stop_on_error,
            callback_url=callback_url,
            user_id=user_id,
            queue_name=queue_name,
        )

    def queue_multiple_requests(
        self,
        requests: Sequence[AIRequest],
        callback_url: str | None = None,
        queue_name: str | None = None,
        user_id: str | None = None,
    ) -> list[str]:
        return self.dispatcher.queue_multiple_requests(
            requests,
            callback_url=callback_url,
            queue_name=queue_name,
            user_id=user_id,
        )

    def get_job_status(self, job_id: str) -> JobStatus | None:
        return self.store.get_status(job_id)

    def get_job_statuses(self, job_ids: Iterable[str]) -> dict[str, JobStatus]:
        return self.store.get_multiple_statuses(job_ids)

    def is_job_completed(self, job_id: str) -> bool:
        return self.store.is_completed(job_id)

    def is_job_running(self, job_id: str) -> bool:
        return self.store.is_running(job_id)

    def get_job_progress(self, job_id: str) -> int:
        return self.store.get_progress(job_id)

    def get_batch_result(self, batch_id: str) -> BatchResult | None:
        return self.coordinator.get_batch_result(batch_id)

    def get_statistics(self, window_hours: int = 24) -> JobStatistics:
        return self.store.get_statistics(window_hours)

    def cleanup(self, older_than_hours: int = 24) -> int:
        return self.store.cleanup(older_than_hours)

    def estimate_total_cost(self, requests: Sequence[AIRequest]) -> float:
        return estimate_total_cost(requests, self.pricing)

    def subscribe(
        self,
        listener: JobEventListener,
        *,
        job_id: str | None = None,
    ) -> Callable[[], None]:
        """Receive progress and terminal events; returns an unsubscribe callable."""

        return self.events.subscribe(listener, job_id=job_id)

    def build_worker(self, queue_names: Sequence[str] | None = None, **overrides: Any) -> JobWorker:
        """Worker consuming ``queue_names`` (configured queues by default)."""

        options: dict[str, Any] = {
            "worker_id": self.settings.worker.worker_id,
            "poll_interval_seconds": self.settings.worker.poll_interval_seconds,
            "stale_claim_seconds": self.settings.worker.stale_claim_seconds,
            "max_deliveries": self.settings.worker.max_deliveries,
            "rate_limiter": self.rate_limiter,
        }
        options.update(overrides)
        return JobWorker(
            queue=self.queue,
            runner=self.runner,
            coordinator=self.coordinator,
            queue_names=tuple(queue_names or self.settings.worker.queue_names),
            **options,
        )
