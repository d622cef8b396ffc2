"""Shared test fixtures."""

from __future__ import annotations

import threading
from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path

import pytest

from genqueue.config import CallbackSettings, Settings, WorkerSettings
from genqueue.orchestrator.events import JobEvent
from genqueue.orchestrator.models import AIRequest, AIResponse
from genqueue.orchestrator.runtime import FrozenClock, SequentialIdGenerator
from genqueue.orchestrator.services import JobOrchestrator
from genqueue.orchestrator.status_store import StatusStore
from genqueue.orchestrator.work_queue import SQLiteWorkQueue

START = datetime(2026, 10, 19, 12, 0, tzinfo=UTC)


class BlockingEngine:
    """Engine that blocks until released, for timeout scenarios."""

    def __init__(self) -> None:
        self.release = threading.Event()
        self.calls = 0

    def process(self, request: AIRequest) -> AIResponse:
        self.calls += 1
        self.release.wait(timeout=30)
        return AIResponse(content="late", engine=request.engine, model=request.model)


class RecordingListener:
    """Keeps every received event in memory."""

    def __init__(self) -> None:
        self.events: list[JobEvent] = []
        self._lock = threading.Lock()

    def on_job_event(self, event: JobEvent) -> None:
        with self._lock:
            self.events.append(event)

    def for_job(self, job_id: str) -> list[JobEvent]:
        with self._lock:
            return [event for event in self.events if event.job_id == job_id]

@pytest.fixture()
def clock() -> FrozenClock:
    return FrozenClock(START)


@pytest.fixture()
def ids() -> SequentialIdGenerator:
    return SequentialIdGenerator()


@pytest.fixture()
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "genqueue.db"


@pytest.fixture()
def store(db_path: Path, clock: FrozenClock):
    status_store = StatusStore(db_path, clock=clock)
    status_store.init_schema()
    yield status_store
    status_store.close()


@pytest.fixture()
def queue(db_path: Path, clock: FrozenClock, ids: SequentialIdGenerator, store: StatusStore):
    work_queue = SQLiteWorkQueue(db_path, clock=clock, id_generator=ids)
    yield work_queue
    work_queue.close()


@pytest.fixture()
def settings(db_path: Path) -> Settings:
    return Settings(
        db_path=db_path,
        worker=WorkerSettings(
            worker_id="test-worker",
            poll_interval_seconds=0.0,
            stale_claim_seconds=0,
        ),
        callbacks=CallbackSettings(enabled=False),
    )


@pytest.fixture()
def orchestrator(settings: Settings, clock: FrozenClock, ids: SequentialIdGenerator):
    instance = JobOrchestrator.from_settings(settings, clock=clock, id_generator=ids)
    yield instance
    instance.close()


@pytest.fixture()
def blocking_engine():
    engine = BlockingEngine()
    yield engine
    engine.release.set()


@pytest.fixture()
def recorder() -> RecordingListener:
    return RecordingListener()


@pytest.fixture()
def make_recorder() -> Callable[[], RecordingListener]:
    return RecordingListener
