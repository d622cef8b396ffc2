from __future__ import annotations

from typing import Any

import allure
import pytest

from genqueue.orchestrator.dispatcher import Dispatcher
from genqueue.orchestrator.errors import (
    InvalidBatch,
    InvalidRequest,
    InvalidRequestAtIndex,
    ValidationError,
)
from genqueue.orchestrator.models import AIRequest, JobKind, JobState, WorkItemKind
from genqueue.orchestrator.runtime import FrozenClock, SequentialIdGenerator
from genqueue.orchestrator.status_store import StatusStore
from genqueue.orchestrator.work_queue import SQLiteWorkQueue

pytestmark = [
    allure.epic("Job Orchestration"),
    allure.feature("Dispatcher"),
]


class _BrokenQueue:
    def enqueue(self, **_: Any) -> str:
        raise RuntimeError("broker unavailable")


class _FailsAfterQueue:
    def __init__(self, inner: SQLiteWorkQueue, *, accepted: int) -> None:
        self.inner = inner
        self.accepted = accepted

    def enqueue(self, **kwargs: Any) -> str:
        if self.accepted <= 0:
            raise RuntimeError("broker unavailable")
        self.accepted -= 1
        return self.inner.enqueue(**kwargs)


@pytest.fixture()
def dispatcher(
    store: StatusStore,
    queue: SQLiteWorkQueue,
    ids: SequentialIdGenerator,
    clock: FrozenClock,
) -> Dispatcher:
    return Dispatcher(store=store, queue=queue, id_generator=ids, clock=clock)


def test_queue_request_is_immediately_queued(
    dispatcher: Dispatcher,
    store: StatusStore,
    queue: SQLiteWorkQueue,
) -> None:
    job_id = dispatcher.queue_request(
        AIRequest(prompt="Write a haiku", model="gpt-test"),
        callback_url="https://example.com/hook",
        user_id="user-7",
    )

    status = store.get_status(job_id)
    assert job_id.startswith("job_")
    assert status is not None
    assert status.state == JobState.QUEUED
    assert status.kind == JobKind.SINGLE
    assert status.metadata["engine"] == "openai"
    assert status.metadata["model"] == "gpt-test"
    assert status.metadata["user_id"] == "user-7"
    assert status.metadata["queue"] == "default"
    assert status.metadata["callback_url"] == "https://example.com/hook"

    item = queue.claim(queue_names=["default"], worker_id="w1")
    assert item is not None
    assert item.kind == WorkItemKind.JOB
    assert item.target_id == job_id
    assert item.payload["job"]["request"]["prompt"] == "Write a haiku"


def test_every_returned_id_is_unique(dispatcher: Dispatcher) -> None:
    job_ids = [dispatcher.queue_request(AIRequest(prompt=f"p{index}")) for index in range(20)]

    assert len(set(job_ids)) == 20


@pytest.mark.parametrize(
    "request_obj",
    [
        AIRequest(prompt="   "),
        AIRequest(prompt="ok", engine=""),
        AIRequest(prompt="ok", cost_units=-1),
        AIRequest(prompt="ok", max_tokens=0),
    ],
)
def test_queue_request_rejects_invalid_requests(
    dispatcher: Dispatcher,
    queue: SQLiteWorkQueue,
    request_obj: AIRequest,
) -> None:
    with pytest.raises(InvalidRequest):
        dispatcher.queue_request(request_obj)

    assert queue.total_count() == 0


def test_queue_request_rejects_non_http_callback(
    dispatcher: Dispatcher,
    queue: SQLiteWorkQueue,
) -> None:
    with pytest.raises(ValidationError, match="Callback URL"):
        dispatcher.queue_request(AIRequest(prompt="ok"), callback_url="ftp://example.com")

    assert queue.total_count() == 0


@pytest.mark.parametrize(
    ("task_type", "expected_queue", "expected_minutes"),
    [
        ("video_generation", "video-processing", 30),
        ("large_batch_images", "image-processing", 15),
        ("document_processing", "document-processing", 10),
        ("audio_mastering", "long-running", 20),
    ],
)
def test_long_running_task_routes_by_task_type(
    dispatcher: Dispatcher,
    store: StatusStore,
    queue: SQLiteWorkQueue,
    task_type: str,
    expected_queue: str,
    expected_minutes: int,
) -> None:
    job_id = dispatcher.queue_long_running_task(AIRequest(prompt="Render"), task_type)

    status = store.get_status(job_id)
    assert job_id.startswith("long_task_")
    assert status is not None
    assert status.kind == JobKind.LONG_RUNNING
    assert status.metadata["task_type"] == task_type
    assert status.metadata["estimated_duration_minutes"] == expected_minutes
    assert status.metadata["queue"] == expected_queue
    assert queue.pending_count(expected_queue) == 1


def test_long_running_task_honours_explicit_queue(
    dispatcher: Dispatcher,
    queue: SQLiteWorkQueue,
) -> None:
    dispatcher.queue_long_running_task(
        AIRequest(prompt="Render"),
        "video_generation",
        progress_callback_urls=["https://example.com/progress"],
        queue_name="gpu",
    )

    item = queue.claim(queue_names=["gpu"], worker_id="w1")
    assert item is not None
    assert item.payload["job"]["progress_callback_urls"] == ["https://example.com/progress"]


def test_empty_batch_is_rejected_before_enqueue(
    dispatcher: Dispatcher,
    store: StatusStore,
    queue: SQLiteWorkQueue,
) -> None:
    with pytest.raises(ValidationError):
        dispatcher.queue_batch([])
    with pytest.raises(InvalidBatch):
        dispatcher.queue_batch([], stop_on_error=True)

    assert queue.total_count() == 0
    assert store.get_statistics().total == 0


def test_batch_with_invalid_element_enqueues_nothing(
    dispatcher: Dispatcher,
    store: StatusStore,
    queue: SQLiteWorkQueue,
) -> None:
    with pytest.raises(InvalidRequestAtIndex) as excinfo:
        dispatcher.queue_batch([AIRequest(prompt="ok"), "not a request"])  # type: ignore[list-item]

    assert excinfo.value.index == 1
    assert "index 1" in str(excinfo.value)
    assert queue.total_count() == 0
    assert store.get_statistics().total == 0


def test_queue_batch_persists_items_and_one_work_item(
    dispatcher: Dispatcher,
    store: StatusStore,
    queue: SQLiteWorkQueue,
) -> None:
    batch_id = dispatcher.queue_batch(
        [AIRequest(prompt="a"), AIRequest(prompt="b"), AIRequest(prompt="c")],
        stop_on_error=True,
        callback_url="https://example.com/batch",
    )

    batch = store.get_batch(batch_id)
    assert batch_id.startswith("batch_")
    assert batch is not None
    assert batch.total == 3
    assert batch.stop_on_error is True
    assert batch.callback_url == "https://example.com/batch"

    statuses = store.get_multiple_statuses(batch.item_job_ids)
    assert [status.state for status in statuses.values()] == [JobState.QUEUED] * 3
    assert [status.metadata["batch_index"] for status in statuses.values()] == [0, 1, 2]
    assert all(status.kind == JobKind.BATCH_ITEM for status in statuses.values())

    assert queue.total_count() == 1
    item = queue.claim(queue_names=["default"], worker_id="w1")
    assert item is not None
    assert item.kind == WorkItemKind.BATCH
    assert item.target_id == batch_id
    assert [entry["request"]["prompt"] for entry in item.payload["items"]] == ["a", "b", "c"]


def test_queue_multiple_requests_validates_all_first(
    dispatcher: Dispatcher,
    queue: SQLiteWorkQueue,
) -> None:
    requests = [AIRequest(prompt="a"), AIRequest(prompt="b"), AIRequest(prompt="")]

    with pytest.raises(InvalidRequestAtIndex) as excinfo:
        dispatcher.queue_multiple_requests(requests)

    assert excinfo.value.index == 2
    assert queue.total_count() == 0


def test_queue_multiple_requests_returns_ids_in_input_order(
    dispatcher: Dispatcher,
    store: StatusStore,
    queue: SQLiteWorkQueue,
) -> None:
    job_ids = dispatcher.queue_multiple_requests(
        [AIRequest(prompt="a"), AIRequest(prompt="b"), AIRequest(prompt="c")],
        queue_name="bulk",
    )

    assert len(job_ids) == 3
    assert all(store.get_status(job_id) is not None for job_id in job_ids)
    assert queue.pending_count("bulk") == 3
    prompts = []
    for _ in job_ids:
        item = queue.claim(queue_names=["bulk"], worker_id="w1")
        assert item is not None
        prompts.append(item.payload["job"]["request"]["prompt"])
    assert prompts == ["a", "b", "c"]


def test_enqueue_failure_cancels_the_job_and_propagates(
    store: StatusStore,
    ids: SequentialIdGenerator,
    clock: FrozenClock,
) -> None:
    dispatcher = Dispatcher(store=store, queue=_BrokenQueue(), id_generator=ids, clock=clock)

    with pytest.raises(RuntimeError, match="broker unavailable"):
        dispatcher.queue_request(AIRequest(prompt="a"))

    status = store.get_status("job_1")
    assert status is not None
    assert status.state == JobState.CANCELLED
    assert status.error == "Enqueue failed: broker unavailable"


def test_batch_enqueue_failure_cancels_every_item(
    store: StatusStore,
    ids: SequentialIdGenerator,
    clock: FrozenClock,
) -> None:
    dispatcher = Dispatcher(store=store, queue=_BrokenQueue(), id_generator=ids, clock=clock)

    with pytest.raises(RuntimeError, match="broker unavailable"):
        dispatcher.queue_batch([AIRequest(prompt="a"), AIRequest(prompt="b")])

    stats = store.get_statistics(1)
    assert stats.queued == 0
    assert stats.cancelled == 2
    statuses = store.get_multiple_statuses(["job_2", "job_3"])
    assert [status.error for status in statuses.values()] == [
        "Enqueue failed: broker unavailable",
        "Enqueue failed: broker unavailable",
    ]
    assert not store.is_running("job_2")


def test_partial_multiple_request_failure_cancels_already_queued_jobs(
    store: StatusStore,
    queue: SQLiteWorkQueue,
    ids: SequentialIdGenerator,
    clock: FrozenClock,
) -> None:
    dispatcher = Dispatcher(
        store=store,
        queue=_FailsAfterQueue(queue, accepted=2),
        id_generator=ids,
        clock=clock,
    )

    with pytest.raises(RuntimeError, match="broker unavailable"):
        dispatcher.queue_multiple_requests(
            [AIRequest(prompt="a"), AIRequest(prompt="b"), AIRequest(prompt="c")],
        )

    stats = store.get_statistics(1)
    assert stats.total == 3
    assert stats.cancelled == 3
    assert queue.pending_count() == 2
