from __future__ import annotations

import allure

from genqueue.orchestrator.events import EventChannel, JobEvent, JobEventType
from genqueue.orchestrator.models import JobState
from genqueue.orchestrator.runtime import FrozenClock

pytestmark = [
    allure.epic("Job Orchestration"),
    allure.feature("Events"),
]


class _ExplodingListener:
    def on_job_event(self, event: JobEvent) -> None:
        raise RuntimeError("listener bug")


def _event(job_id: str, clock: FrozenClock) -> JobEvent:
    return JobEvent(
        event_type=JobEventType.PROGRESS,
        job_id=job_id,
        state=JobState.PROCESSING,
        occurred_at=clock.now(),
        progress=50,
        message="half way",
    )


def test_job_filter_limits_delivery(clock: FrozenClock, make_recorder) -> None:
    channel = EventChannel()
    everything = make_recorder()
    only_a = make_recorder()
    channel.subscribe(everything)
    channel.subscribe(only_a, job_id="job-a")

    channel.publish(_event("job-a", clock))
    channel.publish(_event("job-b", clock))

    assert [event.job_id for event in everything.events] == ["job-a", "job-b"]
    assert [event.job_id for event in only_a.events] == ["job-a"]


def test_failing_listener_does_not_block_others(clock: FrozenClock, recorder) -> None:
    channel = EventChannel()
    channel.subscribe(_ExplodingListener())
    channel.subscribe(recorder)

    channel.publish(_event("job-a", clock))

    assert len(recorder.events) == 1
    assert recorder.events[0].message == "half way"


def test_unsubscribe_is_idempotent(clock: FrozenClock, recorder) -> None:
    channel = EventChannel()
    unsubscribe = channel.subscribe(recorder)

    unsubscribe()
    unsubscribe()
    channel.publish(_event("job-a", clock))

    assert recorder.events == []
