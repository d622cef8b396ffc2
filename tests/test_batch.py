from __future__ import annotations

import json
from datetime import timedelta

import allure
import httpx
import pytest

from genqueue.config import Settings
from genqueue.orchestrator.batch import estimate_total_cost
from genqueue.orchestrator.callbacks import CallbackNotifier
from genqueue.orchestrator.errors import InvalidRequestAtIndex
from genqueue.orchestrator.events import JobEventType
from genqueue.orchestrator.models import (
    AIRequest,
    JobDescriptor,
    JobState,
    batch_aggregate_state,
)
from genqueue.orchestrator.pricing import PricingTable
from genqueue.orchestrator.runtime import FrozenClock, SequentialIdGenerator
from genqueue.orchestrator.services import JobOrchestrator

pytestmark = [
    allure.epic("Job Orchestration"),
    allure.feature("Batches"),
]


def _ok_fail_ok() -> list[AIRequest]:
    return [
        AIRequest(prompt="first"),
        AIRequest(prompt="second", parameters={"simulate_error": "bad input"}),
        AIRequest(prompt="third"),
    ]


def test_stop_on_error_cancels_remaining_items(orchestrator: JobOrchestrator, recorder) -> None:
    listener = recorder
    orchestrator.subscribe(listener)
    batch_id = orchestrator.queue_batch(_ok_fail_ok(), stop_on_error=True)

    summary = orchestrator.build_worker().run_once()
    result = orchestrator.get_batch_result(batch_id)

    assert summary.processed == 1
    assert summary.failed == 1
    assert result is not None
    assert result.states == [JobState.COMPLETED, JobState.FAILED, JobState.CANCELLED]
    assert result.state == JobState.FAILED
    assert result.items[1].error == "Provider error: bad input"
    assert result.items[2].error == "Batch stopped after failure at index 1"
    cancelled = [event for event in listener.events if event.event_type == JobEventType.CANCELLED]
    assert [event.job_id for event in cancelled] == [result.items[2].job_id]


def test_without_stop_on_error_every_item_runs(orchestrator: JobOrchestrator) -> None:
    batch_id = orchestrator.queue_batch(_ok_fail_ok(), stop_on_error=False)

    summary = orchestrator.build_worker().run_once()
    result = orchestrator.get_batch_result(batch_id)

    assert summary.succeeded == 1
    assert result is not None
    assert result.states == [JobState.COMPLETED, JobState.FAILED, JobState.COMPLETED]
    assert result.state == JobState.COMPLETED
    assert result.summary() == {
        "total_requests": 3,
        "processed_requests": 3,
        "successful_requests": 2,
        "failed_requests": 1,
        "cancelled_requests": 0,
        "progress_percentage": 100.0,
    }


def test_results_keep_input_order_when_items_finish_out_of_order(
    orchestrator: JobOrchestrator,
) -> None:
    requests = [
        AIRequest(prompt=f"item {index}", parameters={"simulate_delay_seconds": delay})
        for index, delay in enumerate([0.3, 0.2, 0.1, 0.0])
    ]
    batch_id = orchestrator.queue_batch(requests)

    orchestrator.build_worker().run_once()
    result = orchestrator.get_batch_result(batch_id)

    assert result is not None
    assert [item.index for item in result.items] == [0, 1, 2, 3]
    assert [item.result["content"] for item in result.items if item.result] == [
        f"[openai/gpt-4o-mini] item {index}" for index in range(4)
    ]


def test_batch_result_before_processing_is_queued(orchestrator: JobOrchestrator) -> None:
    batch_id = orchestrator.queue_batch([AIRequest(prompt="a"), AIRequest(prompt="b")])

    result = orchestrator.get_batch_result(batch_id)

    assert result is not None
    assert result.state == JobState.QUEUED
    assert result.summary()["processed_requests"] == 0


def test_unknown_batch_result_is_none(orchestrator: JobOrchestrator) -> None:
    assert orchestrator.get_batch_result("batch_missing") is None


def test_batch_callback_carries_summary_and_indexed_results(
    settings: Settings,
    clock: FrozenClock,
    ids: SequentialIdGenerator,
) -> None:
    received: list[httpx.Request] = []

    def _handler(request: httpx.Request) -> httpx.Response:
        received.append(request)
        return httpx.Response(202)

    notifier = CallbackNotifier(client=httpx.Client(transport=httpx.MockTransport(_handler)))
    with JobOrchestrator.from_settings(
        settings,
        clock=clock,
        id_generator=ids,
        notifier=notifier,
    ) as orchestrator:
        batch_id = orchestrator.queue_batch(
            _ok_fail_ok(),
            stop_on_error=True,
            callback_url="https://example.com/batch",
        )
        orchestrator.build_worker().run_once()

    assert len(received) == 1
    assert received[0].headers["X-Webhook-Event"] == "batch.failed"
    body = json.loads(received[0].content)
    assert body["batch_id"] == batch_id
    assert body["status"] == "failed"
    assert body["summary"]["successful_requests"] == 1
    assert body["summary"]["failed_requests"] == 1
    assert body["summary"]["cancelled_requests"] == 1
    assert [entry["status"] for entry in body["results"]] == ["completed", "failed", "cancelled"]
    assert [entry["index"] for entry in body["results"]] == [0, 1, 2]


def test_redelivered_stop_on_error_batch_is_stable(orchestrator: JobOrchestrator) -> None:
    batch_id = orchestrator.queue_batch(_ok_fail_ok(), stop_on_error=True)
    item = orchestrator.queue.claim(queue_names=["default"], worker_id="w1")
    assert item is not None
    batch = orchestrator.store.get_batch(batch_id)
    assert batch is not None
    descriptors = [JobDescriptor.from_payload(entry) for entry in item.payload["items"]]
    first = orchestrator.coordinator.process(batch, descriptors)
    second = orchestrator.coordinator.process(batch, descriptors)

    assert first.states == second.states
    assert second.states == [JobState.COMPLETED, JobState.FAILED, JobState.CANCELLED]


@pytest.mark.parametrize(
    ("stop_on_error", "states", "expected"),
    [
        (True, [JobState.COMPLETED, JobState.FAILED, JobState.CANCELLED], JobState.FAILED),
        (True, [JobState.FAILED, JobState.QUEUED], JobState.FAILED),
        (False, [JobState.COMPLETED, JobState.FAILED], JobState.COMPLETED),
        (False, [JobState.QUEUED, JobState.QUEUED], JobState.QUEUED),
        (False, [JobState.COMPLETED, JobState.QUEUED], JobState.PROCESSING),
        (False, [JobState.COMPLETED, None], JobState.COMPLETED),
    ],
)
def test_batch_aggregate_state(
    stop_on_error: bool,
    states: list[JobState | None],
    expected: JobState,
) -> None:
    assert batch_aggregate_state(stop_on_error=stop_on_error, item_states=states) == expected


def test_estimate_total_cost_is_pure(orchestrator: JobOrchestrator) -> None:
    pricing = PricingTable.from_string("openai:gpt-4o-mini:0.5,anthropic:*:2.0")
    requests = [
        AIRequest(prompt="a"),
        AIRequest(prompt="b", cost_units=3),
        AIRequest(prompt="c", engine="anthropic", model="claude-x"),
        AIRequest(prompt="d", engine="other", model="m"),
    ]

    assert estimate_total_cost(requests, pricing) == pytest.approx(0.5 + 1.5 + 2.0 + 1.0)
    assert estimate_total_cost([], pricing) == 0
    assert orchestrator.queue.total_count() == 0


def test_estimate_total_cost_rejects_invalid_element() -> None:
    with pytest.raises(InvalidRequestAtIndex):
        estimate_total_cost(
            [AIRequest(prompt="a"), None],  # type: ignore[list-item]
            PricingTable(),
        )


def test_batch_processed_late_stays_readable_with_its_items(
    orchestrator: JobOrchestrator,
    clock: FrozenClock,
) -> None:
    batch_id = orchestrator.queue_batch([AIRequest(prompt="a"), AIRequest(prompt="b")])
    clock.advance(timedelta(hours=23))
    orchestrator.build_worker().run_once()
    clock.advance(timedelta(hours=2))

    result = orchestrator.get_batch_result(batch_id)

    assert result is not None
    assert result.states == [JobState.COMPLETED, JobState.COMPLETED]
    assert set(orchestrator.get_job_statuses(item.job_id for item in result.items)) == {
        item.job_id for item in result.items
    }
