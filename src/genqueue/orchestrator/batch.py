"""Batch execution with stop-on-error policy and index-stable results."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from concurrent.futures import ThreadPoolExecutor
from typing import Any

from genqueue.orchestrator.callbacks import CallbackNotifier
from genqueue.orchestrator.dispatcher import validate_requests
from genqueue.orchestrator.errors import RateLimitExceeded
from genqueue.orchestrator.models import (
    AIRequest,
    BatchDescriptor,
    BatchItemOutcome,
    BatchResult,
    JobDescriptor,
    JobState,
    batch_aggregate_state,
)
from genqueue.orchestrator.pricing import PricingTable
from genqueue.orchestrator.rate_limit import RateLimiter
from genqueue.orchestrator.status_store import StatusStore
from genqueue.orchestrator.worker import JobRunner

logger = logging.getLogger(__name__)

DEFAULT_MAX_PARALLEL = 4


def estimate_total_cost(requests: Sequence[AIRequest], pricing: PricingTable) -> float:
    """Sum of per-request unit cost; touches no store or queue."""

    validated = validate_requests(requests)
    return sum(
        pricing.unit_cost(request.engine, request.model) * request.cost_units
        for request in validated
    )


class BatchCoordinator:
    """Runs the items of one batch and reports the aggregate outcome.

    With ``stop_on_error`` items run one at a time in input order; after the
    first failure every item that has not started is cancelled. Without it,
    items run on a bounded thread pool and all of them reach a terminal state.

    Items that already finished are skipped, so a redelivered batch resumes
    where it stopped. With a rate limiter, items whose engine window is full
    stay queued and the result names them with a retry delay; the callback
    and completion stamp wait for the run that finishes the batch.
    """

    def __init__(
        self,
        *,
        store: StatusStore,
        runner: JobRunner,
        notifier: CallbackNotifier | None = None,
        max_parallel: int = DEFAULT_MAX_PARALLEL,
        rate_limiter: RateLimiter | None = None,
    ) -> None:
        self.store = store
        self.runner = runner
        self.notifier = notifier
        self.max_parallel = max(1, max_parallel)
        self.rate_limiter = rate_limiter

    def process(self, batch: BatchDescriptor, descriptors: Sequence[JobDescriptor]) -> BatchResult:
        ordered = _ordered_items(batch, descriptors)
        logger.info(
            "Processing batch %s: %d items (stop_on_error=%s)",
            batch.batch_id,
            len(ordered),
            batch.stop_on_error,
        )
        self.store.touch_batch(batch.batch_id)
        if batch.stop_on_error:
            delayed, retry_after = self._run_sequential(ordered)
        else:
            delayed, retry_after = self._run_parallel(ordered)

        result = self.get_batch_result(batch.batch_id) or _result_from_descriptors(
            batch,
            self.store,
        )
        if delayed:
            result.delayed_job_ids = [descriptor.job_id for descriptor in delayed]
            result.retry_after_seconds = retry_after
            logger.info(
                "Batch %s held back %d of %d items by rate limit; retry in %.1fs",
                batch.batch_id,
                len(delayed),
                len(ordered),
                retry_after or 0.0,
            )
            return result

        self.store.touch_batch(batch.batch_id, completed=True)
        logger.info(
            "Batch %s finished as %s: %s",
            batch.batch_id,
            result.state.value,
            result.summary(),
        )
        self._deliver_callback(batch, result)
        return result

    def get_batch_result(self, batch_id: str) -> BatchResult | None:
        """Derive the batch outcome from its descriptor and current item statuses."""

        batch = self.store.get_batch(batch_id)
        if batch is None:
            return None
        return _result_from_descriptors(batch, self.store)

    def _run_sequential(
        self,
        ordered: list[JobDescriptor],
    ) -> tuple[list[JobDescriptor], float | None]:
        for position, descriptor in enumerate(ordered):
            status = self.store.get_status(descriptor.job_id)
            if status is not None and not status.is_terminal:
                try:
                    self._acquire(descriptor)
                except RateLimitExceeded as error:
                    held = ordered[position:]
                    for waiting in held:
                        self.runner.note_rate_limited(waiting, error)
                    return held, error.retry_after_seconds
                status = self.runner.execute(descriptor)
            if status is not None and status.state == JobState.FAILED:
                reason = f"Batch stopped after failure at index {descriptor.batch_index}"
                for remaining in ordered[position + 1 :]:
                    self.runner.cancel(remaining, reason=reason)
                break
        return [], None

    def _run_parallel(
        self,
        ordered: list[JobDescriptor],
    ) -> tuple[list[JobDescriptor], float | None]:
        statuses = self.store.get_multiple_statuses(
            descriptor.job_id for descriptor in ordered
        )
        runnable: list[JobDescriptor] = []
        held: list[JobDescriptor] = []
        retry_after: float | None = None
        for descriptor in ordered:
            status = statuses.get(descriptor.job_id)
            if status is None or status.is_terminal:
                continue
            try:
                self._acquire(descriptor)
            except RateLimitExceeded as error:
                self.runner.note_rate_limited(descriptor, error)
                held.append(descriptor)
                if retry_after is None or error.retry_after_seconds < retry_after:
                    retry_after = error.retry_after_seconds
                continue
            runnable.append(descriptor)

        if runnable:
            workers = min(self.max_parallel, len(runnable))
            with ThreadPoolExecutor(
                max_workers=workers,
                thread_name_prefix="genqueue-batch",
            ) as pool:
                # Consume results so a store error surfaces to the worker.
                list(pool.map(self.runner.execute, runnable))
        return held, retry_after

    def _acquire(self, descriptor: JobDescriptor) -> None:
        if self.rate_limiter is None:
            return
        self.rate_limiter.acquire(
            descriptor.request.engine,
            descriptor.user_id or descriptor.request.user_id,
        )

    def _deliver_callback(self, batch: BatchDescriptor, result: BatchResult) -> None:
        if self.notifier is None or batch.callback_url is None:
            return
        try:
            self.notifier.notify(
                batch.callback_url,
                _batch_callback_payload(batch, result),
                event=f"batch.{result.state.value}",
            )
        except Exception:  # noqa: BLE001
            logger.exception("Batch callback notifier crashed for %s", batch.batch_id)


def _ordered_items(
    batch: BatchDescriptor,
    descriptors: Sequence[JobDescriptor],
) -> list[JobDescriptor]:
    by_id = {descriptor.job_id: descriptor for descriptor in descriptors}
    missing = [job_id for job_id in batch.item_job_ids if job_id not in by_id]
    if missing:
        raise ValueError(f"Batch {batch.batch_id} is missing item descriptors: {missing}")
    return [by_id[job_id] for job_id in batch.item_job_ids]


def _result_from_descriptors(batch: BatchDescriptor, store: StatusStore) -> BatchResult:
    statuses = store.get_multiple_statuses(batch.item_job_ids)
    items: list[BatchItemOutcome] = []
    for index, job_id in enumerate(batch.item_job_ids):
        status = statuses.get(job_id)
        items.append(
            BatchItemOutcome(
                index=index,
                job_id=job_id,
                state=status.state if status is not None else None,
                result=status.result if status is not None else None,
                error=status.error if status is not None else None,
            ),
        )
    return BatchResult(
        batch_id=batch.batch_id,
        state=batch_aggregate_state(
            stop_on_error=batch.stop_on_error,
            item_states=[item.state for item in items],
        ),
        stop_on_error=batch.stop_on_error,
        items=items,
    )


def _batch_callback_payload(batch: BatchDescriptor, result: BatchResult) -> dict[str, Any]:
    return {
        "batch_id": batch.batch_id,
        "status": result.state.value,
        "stop_on_error": batch.stop_on_error,
        "summary": result.summary(),
        "results": [
            {
                "index": item.index,
                "job_id": item.job_id,
                "status": item.state.value if item.state is not None else None,
                "result": item.result,
                "error": item.error,
            }
            for item in result.items
        ],
    }
