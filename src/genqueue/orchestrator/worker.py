"""Queue worker that executes AI jobs and batch coordination runs."""

from __future__ import annotations

import logging
import signal
import time
from collections.abc import Callable, Iterator, Sequence
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta
from typing import TYPE_CHECKING, Any

from genqueue.orchestrator.callbacks import CallbackNotifier
from genqueue.orchestrator.engine import AIEngine
from genqueue.orchestrator.errors import ProviderError, RateLimitExceeded
from genqueue.orchestrator.events import EventChannel, JobEvent, JobEventType
from genqueue.orchestrator.models import (
    AIResponse,
    JobDescriptor,
    JobKind,
    JobState,
    JobStatus,
    TransitionOutcome,
    WorkItem,
    WorkItemKind,
)
from genqueue.orchestrator.runtime import ClockSource, SystemClock
from genqueue.orchestrator.status_store import StatusStore
from genqueue.orchestrator.work_queue import WorkQueue

if TYPE_CHECKING:
    from genqueue.orchestrator.batch import BatchCoordinator
    from genqueue.orchestrator.rate_limit import RateLimiter

logger = logging.getLogger(__name__)

DEFAULT_PROVIDER_TIMEOUT_SECONDS = 300.0
DEFAULT_LONG_RUNNING_TIMEOUT_SECONDS = 3600.0
DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_RETRY_BACKOFF_SECONDS = 30.0
DEFAULT_LONG_RUNNING_MAX_ATTEMPTS = 2
DEFAULT_LONG_RUNNING_RETRY_BACKOFF_SECONDS = 300.0

_TERMINAL_EVENTS = {
    JobState.COMPLETED: JobEventType.COMPLETED,
    JobState.FAILED: JobEventType.FAILED,
    JobState.CANCELLED: JobEventType.CANCELLED,
}


@dataclass(slots=True)
class WorkerRunSummary:
    """Aggregate worker counters for CLI reporting."""

    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    cancelled: int = 0
    released: int = 0
    delayed: int = 0
    idle_polls: int = 0

    def add(self, other: WorkerRunSummary) -> None:
        self.processed += other.processed
        self.succeeded += other.succeeded
        self.failed += other.failed
        self.cancelled += other.cancelled
        self.released += other.released
        self.delayed += other.delayed
        self.idle_polls += other.idle_polls


class JobRunner:
    """Drives one job from queued to a terminal state.

    Every fault on the provider path ends as a ``failed`` status; nothing
    raised by the engine escapes ``execute``. A retryable ``ProviderError``
    is attempted again after a fixed backoff until the attempts for the job
    kind run out. Callback delivery happens only after the terminal status
    is stored and cannot change it.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        store: StatusStore,
        engine: AIEngine,
        notifier: CallbackNotifier | None = None,
        events: EventChannel | None = None,
        clock: ClockSource | None = None,
        worker_id: str = "worker",
        provider_timeout_seconds: float = DEFAULT_PROVIDER_TIMEOUT_SECONDS,
        long_running_timeout_seconds: float = DEFAULT_LONG_RUNNING_TIMEOUT_SECONDS,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        retry_backoff_seconds: float = DEFAULT_RETRY_BACKOFF_SECONDS,
        long_running_max_attempts: int = DEFAULT_LONG_RUNNING_MAX_ATTEMPTS,
        long_running_retry_backoff_seconds: float = DEFAULT_LONG_RUNNING_RETRY_BACKOFF_SECONDS,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.store = store
        self.engine = engine
        self.notifier = notifier
        self.events = events or EventChannel()
        self.clock = clock or SystemClock()
        self.worker_id = worker_id
        self.provider_timeout_seconds = provider_timeout_seconds
        self.long_running_timeout_seconds = long_running_timeout_seconds
        self.max_attempts = max(1, max_attempts)
        self.retry_backoff_seconds = retry_backoff_seconds
        self.long_running_max_attempts = max(1, long_running_max_attempts)
        self.long_running_retry_backoff_seconds = long_running_retry_backoff_seconds
        self.sleep = sleep

    def execute(self, descriptor: JobDescriptor) -> JobStatus | None:
        """Run the job once; a job that already finished is left untouched."""

        job_id = descriptor.job_id
        outcome = self.store.update_status(
            job_id,
            JobState.PROCESSING,
            {
                "worker_id": self.worker_id,
                "processing_started_at": self.clock.now().isoformat(),
            },
        )
        if outcome in {TransitionOutcome.REJECTED, TransitionOutcome.NOT_FOUND}:
            logger.info("Skipping job %s: status update %s", job_id, outcome.value)
            return self.store.get_status(job_id)

        self._publish(descriptor, JobEventType.STARTED, JobState.PROCESSING)
        if descriptor.kind == JobKind.LONG_RUNNING:
            self._report_progress(descriptor, 25, "Starting task processing")
            self._report_progress(descriptor, 50, "Processing AI request")

        self._run_attempts(descriptor, started=time.monotonic())

        final = self.store.get_status(job_id)
        if final is not None and final.is_terminal:
            self._publish(descriptor, _TERMINAL_EVENTS[final.state], final.state, status=final)
            self._deliver_callback(descriptor, final)
        return final

    def cancel(self, descriptor: JobDescriptor, *, reason: str) -> TransitionOutcome:
        """Cancel a job that has not started yet."""

        outcome = self.store.update_status(
            descriptor.job_id,
            JobState.CANCELLED,
            {"cancelled_reason": reason},
            error=reason,
        )
        if outcome == TransitionOutcome.APPLIED:
            self._publish(descriptor, JobEventType.CANCELLED, JobState.CANCELLED, message=reason)
        return outcome

    def note_rate_limited(self, descriptor: JobDescriptor, error: RateLimitExceeded) -> None:
        """Record on a waiting job that it was held back by a rate limit."""

        current = self.store.get_status(descriptor.job_id)
        if current is None or current.is_terminal:
            return
        self.store.update_status(
            descriptor.job_id,
            current.state,
            {
                "rate_limited_at": self.clock.now().isoformat(),
                "rate_limit_error": str(error),
                "rate_limit_retry_after_seconds": round(error.retry_after_seconds, 3),
            },
        )

    def _run_attempts(self, descriptor: JobDescriptor, *, started: float) -> None:
        """Call the engine, retrying retryable provider errors; always ends terminal."""

        max_attempts, backoff = self._retry_policy_for(descriptor)
        attempt = 0
        while True:
            attempt += 1
            try:
                response = self._call_engine(descriptor)
            except ProviderError as error:
                if error.retryable and attempt < max_attempts:
                    self._note_retry(descriptor, error, attempt=attempt, backoff=backoff)
                    self.sleep(backoff)
                    continue
                message = f"Provider error: {error}"
                if attempt > 1:
                    message = f"Provider error after {attempt} attempts: {error}"
                self._finish_failed(descriptor, message, started=started, attempts=attempt)
            except TimeoutError:
                self._finish_failed(
                    descriptor,
                    f"Provider call timed out after {self._timeout_for(descriptor):g}s",
                    started=started,
                    attempts=attempt,
                )
            except Exception as error:  # noqa: BLE001
                logger.exception("Unexpected engine failure for job %s", descriptor.job_id)
                self._finish_failed(
                    descriptor,
                    f"{type(error).__name__}: {error}",
                    started=started,
                    attempts=attempt,
                )
            else:
                self._finish_response(descriptor, response, started=started, attempts=attempt)
            return

    def _finish_response(
        self,
        descriptor: JobDescriptor,
        response: AIResponse,
        *,
        started: float,
        attempts: int,
    ) -> None:
        long_running = descriptor.kind == JobKind.LONG_RUNNING
        if not isinstance(response, AIResponse):
            self._finish_failed(
                descriptor,
                f"Engine returned {type(response).__name__}, expected AIResponse",
                started=started,
                attempts=attempts,
            )
        elif not response.success:
            self._finish_failed(
                descriptor,
                response.error or "Engine reported an unsuccessful response",
                started=started,
                attempts=attempts,
            )
        else:
            if long_running:
                self._report_progress(descriptor, 90, "Finalizing results")
            self._finish_completed(descriptor, response, started=started, attempts=attempts)

    def _note_retry(
        self,
        descriptor: JobDescriptor,
        error: ProviderError,
        *,
        attempt: int,
        backoff: float,
    ) -> None:
        logger.warning(
            "Job %s attempt %d hit a retryable provider error: %s; retrying in %gs",
            descriptor.job_id,
            attempt,
            error,
            backoff,
        )
        self.store.update_status(
            descriptor.job_id,
            JobState.PROCESSING,
            {"attempts": attempt, "last_retryable_error": str(error)},
        )

    def _retry_policy_for(self, descriptor: JobDescriptor) -> tuple[int, float]:
        if descriptor.kind == JobKind.LONG_RUNNING:
            return self.long_running_max_attempts, self.long_running_retry_backoff_seconds
        return self.max_attempts, self.retry_backoff_seconds

    def _call_engine(self, descriptor: JobDescriptor) -> AIResponse:
        timeout = self._timeout_for(descriptor)
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="genqueue-engine")
        try:
            future = executor.submit(self.engine.process, descriptor.request)
            return future.result(timeout=timeout if timeout > 0 else None)
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

    def _timeout_for(self, descriptor: JobDescriptor) -> float:
        if descriptor.kind == JobKind.LONG_RUNNING:
            return self.long_running_timeout_seconds
        return self.provider_timeout_seconds

    def _finish_completed(
        self,
        descriptor: JobDescriptor,
        response: AIResponse,
        *,
        started: float,
        attempts: int = 1,
    ) -> None:
        self.store.update_status(
            descriptor.job_id,
            JobState.COMPLETED,
            {
                "processing_time_ms": _elapsed_ms(started),
                "attempts": attempts,
                "tokens_used": response.tokens_used,
                "credits_used": response.credits_used,
                "response_engine": response.engine,
                "response_model": response.model,
            },
            result=response.to_payload(),
        )
        logger.info("Job %s completed in %dms", descriptor.job_id, _elapsed_ms(started))

    def _finish_failed(
        self,
        descriptor: JobDescriptor,
        message: str,
        *,
        started: float,
        attempts: int = 1,
    ) -> None:
        self.store.update_status(
            descriptor.job_id,
            JobState.FAILED,
            {"processing_time_ms": _elapsed_ms(started), "attempts": attempts},
            error=message,
        )
        logger.warning("Job %s failed: %s", descriptor.job_id, message)

    def _report_progress(self, descriptor: JobDescriptor, percentage: int, message: str) -> None:
        self.store.update_progress(descriptor.job_id, percentage, message)
        self._publish(
            descriptor,
            JobEventType.PROGRESS,
            JobState.PROCESSING,
            progress=percentage,
            message=message,
        )
        if self.notifier is None:
            return
        for url in descriptor.progress_callback_urls:
            self._safe_notify(
                url,
                {
                    "job_id": descriptor.job_id,
                    "progress": percentage,
                    "message": message,
                    "timestamp": self.clock.now().isoformat(),
                },
                event="job.progress",
                max_attempts=1,
            )

    def _deliver_callback(self, descriptor: JobDescriptor, status: JobStatus) -> None:
        if self.notifier is None or descriptor.callback_url is None:
            return
        self._safe_notify(
            descriptor.callback_url,
            _job_callback_payload(status),
            event=f"job.{status.state.value}",
        )

    def _safe_notify(self, url: str, payload: dict[str, Any], **kwargs: Any) -> None:
        if self.notifier is None:
            return
        try:
            self.notifier.notify(url, payload, **kwargs)
        except Exception:  # noqa: BLE001
            logger.exception("Callback notifier crashed for %s", url)

    def _publish(  # noqa: PLR0913
        self,
        descriptor: JobDescriptor,
        event_type: JobEventType,
        state: JobState,
        *,
        progress: int | None = None,
        message: str = "",
        status: JobStatus | None = None,
    ) -> None:
        details: dict[str, Any] = {"kind": descriptor.kind.value}
        if descriptor.batch_id is not None:
            details["batch_id"] = descriptor.batch_id
            details["batch_index"] = descriptor.batch_index
        if status is not None and status.error:
            details["error"] = status.error
        self.events.publish(
            JobEvent(
                event_type=event_type,
                job_id=descriptor.job_id,
                state=state,
                occurred_at=self.clock.now(),
                progress=progress if progress is not None else (status.progress if status else 0),
                message=message,
                details=details,
            ),
        )


class JobWorker:
    """Consumes work items from named queues.

    With a rate limiter, a job whose engine window is full is deferred on
    the queue instead of run, and a batch defers whatever items it could not
    start.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        queue: WorkQueue,
        runner: JobRunner,
        coordinator: BatchCoordinator,
        worker_id: str,
        queue_names: Sequence[str],
        poll_interval_seconds: float = 2.0,
        stale_claim_seconds: int = 1800,
        max_deliveries: int = 5,
        rate_limiter: RateLimiter | None = None,
    ) -> None:
        self.queue = queue
        self.runner = runner
        self.coordinator = coordinator
        self.worker_id = worker_id
        self.queue_names = tuple(queue_names)
        self.poll_interval_seconds = poll_interval_seconds
        self.stale_claim_seconds = stale_claim_seconds
        self.max_deliveries = max_deliveries
        self.rate_limiter = rate_limiter
        self._stop_requested = False
        self._stop_signal_name: str | None = None

    def run_once(self) -> WorkerRunSummary:
        """Process at most one work item."""

        summary = WorkerRunSummary()
        if self._stop_requested:
            summary.idle_polls = 1
            return summary

        item = self._claim_item()
        if item is None:
            summary.idle_polls = 1
            return summary

        summary.processed = 1
        try:
            if item.kind == WorkItemKind.BATCH:
                finished = self._run_batch(item=item, summary=summary)
            else:
                finished = self._run_job(item=item, summary=summary)
        except Exception:  # noqa: BLE001
            if item.delivery_count >= self.max_deliveries:
                logger.exception(
                    "Work item %s (%s %s) crashed on delivery %d; dropping it",
                    item.item_id,
                    item.kind.value,
                    item.target_id,
                    item.delivery_count,
                )
                self.queue.ack(item.item_id)
                summary.failed += 1
                return summary
            logger.exception(
                "Work item %s (%s %s) crashed; releasing for redelivery",
                item.item_id,
                item.kind.value,
                item.target_id,
            )
            self.queue.release(item.item_id)
            summary.released = 1
            return summary

        if finished:
            self.queue.ack(item.item_id)
        return summary

    def run_loop(
        self,
        *,
        max_jobs: int | None = None,
        max_idle_polls: int = 1,
    ) -> WorkerRunSummary:
        """Run worker loop until queue is idle or max_jobs reached.

        Args:
            max_jobs: Stop after processing this many work items (None = unlimited).
            max_idle_polls: How many consecutive empty polls before exiting.
        """

        aggregate = WorkerRunSummary()
        consecutive_idle = 0
        with self._signal_handlers():
            while True:
                if self._stop_requested:
                    logger.info(
                        "Worker %s stopped (%s): %s",
                        self.worker_id,
                        self._stop_signal_name or "requested",
                        aggregate,
                    )
                    return aggregate
                if max_jobs is not None and aggregate.processed >= max_jobs:
                    return aggregate

                summary = self.run_once()
                aggregate.add(summary)

                if summary.processed == 0:
                    consecutive_idle += 1
                    if consecutive_idle >= max_idle_polls:
                        return aggregate
                    self._sleep_with_stop(self.poll_interval_seconds)
                    continue

                consecutive_idle = 0

    @property
    def stop_signal(self) -> str | None:
        """Name of the signal that stopped the loop, if one did."""

        return self._stop_signal_name

    def request_stop(self) -> None:
        self._stop_requested = True

    def _run_job(self, *, item: WorkItem, summary: WorkerRunSummary) -> bool:
        descriptor = JobDescriptor.from_payload(item.payload["job"])
        if self.rate_limiter is not None:
            try:
                self.rate_limiter.acquire(
                    descriptor.request.engine,
                    descriptor.user_id or descriptor.request.user_id,
                )
            except RateLimitExceeded as error:
                self.runner.note_rate_limited(descriptor, error)
                self._defer(item, error.retry_after_seconds, summary=summary)
                return False
        status = self.runner.execute(descriptor)
        _count_state(summary, status.state if status is not None else None)
        return True

    def _run_batch(self, *, item: WorkItem, summary: WorkerRunSummary) -> bool:
        batch = self.runner.store.get_batch(item.target_id)
        if batch is None:
            logger.warning("Batch %s is unknown or expired; dropping work item", item.target_id)
            return True
        descriptors = [JobDescriptor.from_payload(entry) for entry in item.payload["items"]]
        result = self.coordinator.process(batch, descriptors)
        if result.retry_after_seconds is not None:
            self._defer(item, result.retry_after_seconds, summary=summary)
            return False
        _count_state(summary, result.state)
        return True

    def _defer(self, item: WorkItem, delay_seconds: float, *, summary: WorkerRunSummary) -> None:
        logger.info(
            "Rate limited %s %s; deferring work item %s for %.1fs",
            item.kind.value,
            item.target_id,
            item.item_id,
            delay_seconds,
        )
        self.queue.defer(item.item_id, delay_seconds=delay_seconds)
        summary.delayed += 1

    def _claim_item(self) -> WorkItem | None:
        self._recover_stale_claims()
        if self._stop_requested:
            return None
        return self.queue.claim(queue_names=self.queue_names, worker_id=self.worker_id)

    def _recover_stale_claims(self) -> None:
        requeue = getattr(self.queue, "requeue_stale_claims", None)
        if self.stale_claim_seconds <= 0 or requeue is None:
            return
        requeue(stale_after=timedelta(seconds=self.stale_claim_seconds))

    def _sleep_with_stop(self, seconds: float) -> None:
        deadline = time.monotonic() + seconds
        while not self._stop_requested and time.monotonic() < deadline:
            time.sleep(min(0.1, max(0.0, deadline - time.monotonic())))

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if not hasattr(signal, "SIGINT"):
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            self._stop_signal_name = name
            self._stop_requested = True
            logger.info("Worker %s received %s; stopping after current item", self.worker_id, name)

        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
            installed = True
        except ValueError:
            # Signal handlers can only be installed in main thread.
            installed = False
        try:
            yield
        finally:
            if installed:
                signal.signal(signal.SIGINT, original_sigint)
                signal.signal(signal.SIGTERM, original_sigterm)


def _count_state(summary: WorkerRunSummary, state: JobState | None) -> None:
    if state == JobState.COMPLETED:
        summary.succeeded += 1
    elif state == JobState.FAILED:
        summary.failed += 1
    elif state == JobState.CANCELLED:
        summary.cancelled += 1


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


def _job_callback_payload(status: JobStatus) -> dict[str, Any]:
    return {
        "job_id": status.job_id,
        "status": status.state.value,
        "success": status.state == JobState.COMPLETED,
        "result": status.result,
        "error": status.error,
        "metadata": status.metadata,
        "completed_at": status.completed_at.isoformat() if status.completed_at else None,
    }
