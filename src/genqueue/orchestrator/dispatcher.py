"""Request validation, id allocation and enqueueing."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Any

from genqueue.orchestrator.errors import InvalidBatch, InvalidRequest, InvalidRequestAtIndex
from genqueue.orchestrator.models import (
    AIRequest,
    BatchDescriptor,
    JobDescriptor,
    JobKind,
    JobState,
    JobStatus,
    WorkItemKind,
)
from genqueue.orchestrator.routing import (
    DEFAULT_QUEUE,
    estimated_duration_minutes,
    queue_for_task_type,
)
from genqueue.orchestrator.runtime import ClockSource, IdGenerator, SystemClock, UuidIdGenerator
from genqueue.orchestrator.status_store import StatusStore
from genqueue.orchestrator.work_queue import WorkQueue

logger = logging.getLogger(__name__)

JOB_ID_PREFIX = "job_"
LONG_TASK_ID_PREFIX = "long_task_"
BATCH_ID_PREFIX = "batch_"


def request_problem(request: object) -> str | None:
    """Describe why ``request`` cannot be queued, or return None."""

    if not isinstance(request, AIRequest):
        return f"expected AIRequest, got {type(request).__name__}"
    if not isinstance(request.prompt, str) or not request.prompt.strip():
        return "prompt must be a non-empty string"
    if not request.engine.strip():
        return "engine must be set"
    if not request.model.strip():
        return "model must be set"
    if request.cost_units < 0:
        return "cost_units must be >= 0"
    if request.max_tokens is not None and request.max_tokens <= 0:
        return "max_tokens must be > 0"
    return None


def validate_request(request: object) -> AIRequest:
    problem = request_problem(request)
    if problem is not None:
        raise InvalidRequest(f"Invalid AIRequest: {problem}")
    return request  # type: ignore[return-value]


def validate_requests(requests: Sequence[object]) -> list[AIRequest]:
    """Check every element before anything is enqueued."""

    for index, request in enumerate(requests):
        problem = request_problem(request)
        if problem is not None:
            raise InvalidRequestAtIndex(index, problem)
    return list(requests)  # type: ignore[arg-type]


def _validate_callback_url(url: str | None) -> None:
    if url is None:
        return
    if not url.startswith(("http://", "https://")):
        raise InvalidRequest(f"Callback URL must be http(s): {url!r}")


class Dispatcher:
    """Accepts work, records its initial status and hands it to the queue.

    The ``queued`` status is persisted before the work item is enqueued, so a
    returned id always reads back immediately.
    """

    def __init__(
        self,
        *,
        store: StatusStore,
        queue: WorkQueue,
        id_generator: IdGenerator | None = None,
        clock: ClockSource | None = None,
        default_queue: str = DEFAULT_QUEUE,
    ) -> None:
        self.store = store
        self.queue = queue
        self.id_generator = id_generator or UuidIdGenerator()
        self.clock = clock or SystemClock()
        self.default_queue = default_queue

    def queue_request(
        self,
        request: AIRequest,
        callback_url: str | None = None,
        queue_name: str | None = None,
        user_id: str | None = None,
    ) -> str:
        """Queue one request as an independent job and return its id."""

        validate_request(request)
        _validate_callback_url(callback_url)
        descriptor = JobDescriptor(
            job_id=self.id_generator.new_id(JOB_ID_PREFIX),
            kind=JobKind.SINGLE,
            request=request,
            created_at=self.clock.now(),
            callback_url=callback_url,
            queue_name=queue_name or self.default_queue,
            user_id=user_id or request.user_id,
        )
        self._submit(descriptor)
        return descriptor.job_id

    def queue_long_running_task(  # noqa: PLR0913
        self,
        request: AIRequest,
        task_type: str,
        callback_url: str | None = None,
        progress_callback_urls: Sequence[str] = (),
        queue_name: str | None = None,
        user_id: str | None = None,
    ) -> str:
        """Queue a long task; the queue defaults to the one routed for ``task_type``."""

        validate_request(request)
        if not task_type or not task_type.strip():
            raise InvalidRequest("task_type must be a non-empty string")
        _validate_callback_url(callback_url)
        for url in progress_callback_urls:
            _validate_callback_url(url)

        descriptor = JobDescriptor(
            job_id=self.id_generator.new_id(LONG_TASK_ID_PREFIX),
            kind=JobKind.LONG_RUNNING,
            request=request,
            created_at=self.clock.now(),
            callback_url=callback_url,
            queue_name=queue_name or queue_for_task_type(task_type),
            user_id=user_id or request.user_id,
            task_type=task_type,
            progress_callback_urls=tuple(progress_callback_urls),
        )
        self._submit(
            descriptor,
            extra_metadata={
                "task_type": task_type,
                "estimated_duration_minutes": estimated_duration_minutes(task_type),
            },
        )
        return descriptor.job_id

    def queue_batch(
        self,
        requests: Sequence[AIRequest],
        stop_on_error: bool = False,
        callback_url: str | None = None,
        user_id: str | None = None,
        queue_name: str | None = None,
    ) -> str:
        """Queue an ordered batch and return the batch id.

        Item statuses and the batch descriptor are stored before a single
        coordinating work item is enqueued.
        """

        if not requests:
            raise InvalidBatch("Batch must contain at least one request")
        validated = validate_requests(requests)
        _validate_callback_url(callback_url)

        now = self.clock.now()
        batch_id = self.id_generator.new_id(BATCH_ID_PREFIX)
        queue = queue_name or self.default_queue
        descriptors = [
            JobDescriptor(
                job_id=self.id_generator.new_id(JOB_ID_PREFIX),
                kind=JobKind.BATCH_ITEM,
                request=request,
                created_at=now,
                queue_name=queue,
                user_id=user_id or request.user_id,
                batch_id=batch_id,
                batch_index=index,
            )
            for index, request in enumerate(validated)
        ]
        batch = BatchDescriptor(
            batch_id=batch_id,
            item_job_ids=tuple(descriptor.job_id for descriptor in descriptors),
            stop_on_error=stop_on_error,
            created_at=now,
            callback_url=callback_url,
            user_id=user_id,
            queue_name=queue,
        )

        self.store.create_many(self._initial_status(descriptor) for descriptor in descriptors)
        self.store.save_batch(batch)
        try:
            self.queue.enqueue(
                kind=WorkItemKind.BATCH,
                target_id=batch_id,
                payload={
                    "batch_id": batch_id,
                    "items": [descriptor.to_payload() for descriptor in descriptors],
                },
                queue_name=queue,
            )
        except Exception as error:
            self._cancel_enqueued(batch.item_job_ids, error)
            raise
        logger.info(
            "Queued batch %s with %d items on %s (stop_on_error=%s)",
            batch_id,
            batch.total,
            queue,
            stop_on_error,
        )
        return batch_id

    def queue_multiple_requests(
        self,
        requests: Sequence[AIRequest],
        callback_url: str | None = None,
        queue_name: str | None = None,
        user_id: str | None = None,
    ) -> list[str]:
        """Queue each request as an independent job, after validating all of them.

        If an enqueue fails partway, the jobs queued so far are cancelled before
        the error propagates, so no job runs whose id the caller never received.
        """

        validated = validate_requests(requests)
        _validate_callback_url(callback_url)
        job_ids: list[str] = []
        for request in validated:
            try:
                job_ids.append(
                    self.queue_request(
                        request,
                        callback_url=callback_url,
                        queue_name=queue_name,
                        user_id=user_id,
                    ),
                )
            except Exception as error:
                self._cancel_enqueued(job_ids, error)
                raise
        return job_ids

    def _submit(
        self,
        descriptor: JobDescriptor,
        *,
        extra_metadata: dict[str, Any] | None = None,
    ) -> None:
        self.store.create(self._initial_status(descriptor, extra_metadata=extra_metadata))
        try:
            self.queue.enqueue(
                kind=WorkItemKind.JOB,
                target_id=descriptor.job_id,
                payload={"job": descriptor.to_payload()},
                queue_name=descriptor.queue_name,
            )
        except Exception as error:
            self._cancel_enqueued([descriptor.job_id], error)
            raise
        logger.info(
            "Queued %s job %s on %s",
            descriptor.kind.value,
            descriptor.job_id,
            descriptor.queue_name,
        )

    def _cancel_enqueued(self, job_ids: Sequence[str], error: Exception) -> None:
        for job_id in job_ids:
            self.store.update_status(
                job_id,
                JobState.CANCELLED,
                {"cancelled_reason": "enqueue_failed"},
                error=f"Enqueue failed: {error}",
            )
        logger.warning("Enqueue failed; cancelled %d job(s): %s", len(job_ids), error)

    def _initial_status(
        self,
        descriptor: JobDescriptor,
        *,
        extra_metadata: dict[str, Any] | None = None,
    ) -> JobStatus:
        metadata: dict[str, Any] = {
            "engine": descriptor.request.engine,
            "model": descriptor.request.model,
            "user_id": descriptor.user_id,
            "queue": descriptor.queue_name,
        }
        if descriptor.callback_url is not None:
            metadata["callback_url"] = descriptor.callback_url
        if descriptor.batch_id is not None:
            metadata["batch_id"] = descriptor.batch_id
            metadata["batch_index"] = descriptor.batch_index
        if extra_metadata:
            metadata.update(extra_metadata)
        return JobStatus(
            job_id=descriptor.job_id,
            kind=descriptor.kind,
            state=JobState.QUEUED,
            queued_at=descriptor.created_at,
            updated_at=descriptor.created_at,
            metadata=metadata,
        )
