from __future__ import annotations

import json

import allure
import httpx

from genqueue.orchestrator.callbacks import CallbackNotifier
from genqueue.orchestrator.runtime import FrozenClock, SequentialIdGenerator

pytestmark = [
    allure.epic("Job Orchestration"),
    allure.feature("Callbacks"),
]


def _notifier(handler, *, sleeps: list[float] | None = None, **kwargs) -> CallbackNotifier:
    recorded = sleeps if sleeps is not None else []
    return CallbackNotifier(
        client=httpx.Client(transport=httpx.MockTransport(handler)),
        sleep=recorded.append,
        **kwargs,
    )


def test_successful_delivery_sends_json_and_webhook_headers(clock: FrozenClock) -> None:
    received: list[httpx.Request] = []

    def _handler(request: httpx.Request) -> httpx.Response:
        received.append(request)
        return httpx.Response(200)

    notifier = _notifier(_handler, clock=clock, id_generator=SequentialIdGenerator())
    result = notifier.notify(
        "https://example.com/hook",
        {"job_id": "job_1", "status": "completed"},
        event="job.completed",
    )

    assert result.delivered is True
    assert result.attempts == 1
    assert result.status_code == 200
    assert result.delivery_id == "delivery_1"
    request = received[0]
    assert request.method == "POST"
    assert json.loads(request.content) == {"job_id": "job_1", "status": "completed"}
    assert request.headers["Content-Type"] == "application/json"
    assert request.headers["User-Agent"] == "genqueue-webhooks/1.0"
    assert request.headers["X-Webhook-Event"] == "job.completed"
    assert request.headers["X-Webhook-Delivery"] == "delivery_1"
    assert request.headers["X-Webhook-Timestamp"] == clock.now().isoformat()


def test_client_errors_are_not_retried() -> None:
    calls: list[httpx.Request] = []

    def _handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(404)

    sleeps: list[float] = []
    result = _notifier(_handler, sleeps=sleeps).notify("https://example.com/x", {}, event="e")

    assert result.delivered is False
    assert result.attempts == 1
    assert result.status_code == 404
    assert result.error == "HTTP 404"
    assert len(calls) == 1
    assert sleeps == []


def test_server_errors_are_retried_with_backoff() -> None:
    calls: list[httpx.Request] = []

    def _handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(500)

    sleeps: list[float] = []
    result = _notifier(_handler, sleeps=sleeps).notify("https://example.com/x", {}, event="e")

    assert result.delivered is False
    assert result.attempts == 3
    assert result.status_code == 500
    assert len(calls) == 3
    assert sleeps == [1.0, 5.0]
    assert len({request.headers["X-Webhook-Delivery"] for request in calls}) == 1


def test_retry_succeeds_after_transient_failure() -> None:
    responses = iter([httpx.Response(502), httpx.Response(204)])

    def _handler(request: httpx.Request) -> httpx.Response:
        return next(responses)

    result = _notifier(_handler).notify("https://example.com/x", {}, event="e")

    assert result.delivered is True
    assert result.attempts == 2
    assert result.status_code == 204


def test_transport_errors_are_retried_and_reported() -> None:
    def _handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    result = _notifier(_handler, max_attempts=2).notify("https://example.com/x", {}, event="e")

    assert result.delivered is False
    assert result.attempts == 2
    assert result.status_code is None
    assert result.error == "connection refused"


def test_per_call_attempt_override() -> None:
    calls: list[httpx.Request] = []

    def _handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(503)

    result = _notifier(_handler).notify("https://example.com/x", {}, event="e", max_attempts=1)

    assert result.attempts == 1
    assert len(calls) == 1
