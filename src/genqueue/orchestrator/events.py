"""Typed job event channel for progress and terminal notifications."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Protocol

from genqueue.orchestrator.models import JobState

logger = logging.getLogger(__name__)


class JobEventType(str, Enum):
    STARTED = "started"
    PROGRESS = "progress"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True, slots=True)
class JobEvent:
    """One lifecycle event published by the job runner."""

    event_type: JobEventType
    job_id: str
    state: JobState
    occurred_at: datetime
    progress: int = 0
    message: str = ""
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal


class JobEventListener(Protocol):
    def on_job_event(self, event: JobEvent) -> None:
        """Handle one event; exceptions are logged by the channel."""


class EventChannel:
    """Fan-out of job events to subscribed listeners."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscriptions: list[tuple[JobEventListener, str | None]] = []

    def subscribe(
        self,
        listener: JobEventListener,
        *,
        job_id: str | None = None,
    ) -> Callable[[], None]:
        """Register a listener for all jobs or one job; returns an unsubscribe callable."""

        entry = (listener, job_id)
        with self._lock:
            self._subscriptions.append(entry)

        def _unsubscribe() -> None:
            with self._lock:
                if entry in self._subscriptions:
                    self._subscriptions.remove(entry)

        return _unsubscribe

    def publish(self, event: JobEvent) -> None:
        with self._lock:
            targets = [
                listener
                for listener, job_id in self._subscriptions
                if job_id is None or job_id == event.job_id
            ]
        for listener in targets:
            try:
                listener.on_job_event(event)
            except Exception:  # noqa: BLE001
                logger.exception(
                    "Job event listener failed for %s (%s)",
                    event.job_id,
                    event.event_type.value,
                )
