"""Domain models for job queueing, status tracking and batches."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class JobKind(str, Enum):
    """What kind of work one job carries."""

    SINGLE = "single"
    LONG_RUNNING = "long_running"
    BATCH_ITEM = "batch_item"


class JobState(str, Enum):
    """Job lifecycle states."""

    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_STATES

    def can_transition_to(self, target: JobState) -> bool:
        """True when ``target`` is this state or a forward successor of it."""

        if target == self:
            return True
        return target in _FORWARD_TRANSITIONS[self]


_TERMINAL_STATES = frozenset({JobState.COMPLETED, JobState.FAILED, JobState.CANCELLED})
_FORWARD_TRANSITIONS: dict[JobState, frozenset[JobState]] = {
    JobState.QUEUED: frozenset({JobState.PROCESSING, JobState.CANCELLED}),
    JobState.PROCESSING: frozenset({JobState.COMPLETED, JobState.FAILED}),
    JobState.COMPLETED: frozenset(),
    JobState.FAILED: frozenset(),
    JobState.CANCELLED: frozenset(),
}


class TransitionOutcome(str, Enum):
    """Result of one status update attempt."""

    APPLIED = "applied"
    UNCHANGED = "unchanged"
    REJECTED = "rejected"
    NOT_FOUND = "not_found"


class WorkItemKind(str, Enum):
    """Queue entry kinds understood by the worker."""

    JOB = "job"
    BATCH = "batch"


@dataclass(slots=True)
class AIRequest:
    """One generation request handed to an AI engine."""

    prompt: str
    engine: str = "openai"
    model: str = "gpt-4o-mini"
    parameters: dict[str, Any] = field(default_factory=dict)
    user_id: str | None = None
    system_prompt: str | None = None
    max_tokens: int | None = None
    cost_units: float = 1.0
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_payload(self) -> dict[str, Any]:
        return {
            "prompt": self.prompt,
            "engine": self.engine,
            "model": self.model,
            "parameters": dict(self.parameters),
            "user_id": self.user_id,
            "system_prompt": self.system_prompt,
            "max_tokens": self.max_tokens,
            "cost_units": self.cost_units,
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> AIRequest:
        return cls(
            prompt=str(payload["prompt"]),
            engine=str(payload.get("engine", "openai")),
            model=str(payload.get("model", "gpt-4o-mini")),
            parameters=dict(payload.get("parameters") or {}),
            user_id=payload.get("user_id"),
            system_prompt=payload.get("system_prompt"),
            max_tokens=payload.get("max_tokens"),
            cost_units=float(payload.get("cost_units", 1.0)),
            metadata=dict(payload.get("metadata") or {}),
        )


@dataclass(slots=True)
class AIResponse:
    """Engine output for one request."""

    content: str
    engine: str
    model: str
    success: bool = True
    error: str | None = None
    tokens_used: int | None = None
    credits_used: float | None = None
    files: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_payload(self) -> dict[str, Any]:
        return {
            "content": self.content,
            "engine": self.engine,
            "model": self.model,
            "success": self.success,
            "error": self.error,
            "tokens_used": self.tokens_used,
            "credits_used": self.credits_used,
            "files": list(self.files),
            "metadata": dict(self.metadata),
        }


@dataclass(frozen=True, slots=True)
class JobDescriptor:
    """Immutable description of one queued job."""

    job_id: str
    kind: JobKind
    request: AIRequest
    created_at: datetime
    callback_url: str | None = None
    queue_name: str | None = None
    user_id: str | None = None
    task_type: str | None = None
    batch_id: str | None = None
    batch_index: int | None = None
    progress_callback_urls: tuple[str, ...] = ()

    def to_payload(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "kind": self.kind.value,
            "request": self.request.to_payload(),
            "created_at": self.created_at.isoformat(),
            "callback_url": self.callback_url,
            "queue_name": self.queue_name,
            "user_id": self.user_id,
            "task_type": self.task_type,
            "batch_id": self.batch_id,
            "batch_index": self.batch_index,
            "progress_callback_urls": list(self.progress_callback_urls),
        }

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> JobDescriptor:
        return cls(
            job_id=str(payload["job_id"]),
            kind=JobKind(payload["kind"]),
            request=AIRequest.from_payload(payload["request"]),
            created_at=datetime.fromisoformat(str(payload["created_at"])),
            callback_url=payload.get("callback_url"),
            queue_name=payload.get("queue_name"),
            user_id=payload.get("user_id"),
            task_type=payload.get("task_type"),
            batch_id=payload.get("batch_id"),
            batch_index=payload.get("batch_index"),
            progress_callback_urls=tuple(payload.get("progress_callback_urls") or ()),
        )


@dataclass(slots=True)
class JobStatus:
    """Stored status of one job: fixed fields plus open metadata."""

    job_id: str
    kind: JobKind
    state: JobState
    queued_at: datetime
    updated_at: datetime
    progress: int = 0
    metadata: dict[str, Any] = field(default_factory=dict)
    result: dict[str, Any] | None = None
    error: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    @property
    def duration_seconds(self) -> float | None:
        if self.started_at is None or self.completed_at is None:
            return None
        return (self.completed_at - self.started_at).total_seconds()


@dataclass(frozen=True, slots=True)
class BatchDescriptor:
    """Ordered batch of item jobs sharing one stop-on-error policy."""

    batch_id: str
    item_job_ids: tuple[str, ...]
    stop_on_error: bool
    created_at: datetime
    callback_url: str | None = None
    user_id: str | None = None
    queue_name: str | None = None

    @property
    def total(self) -> int:
        return len(self.item_job_ids)


@dataclass(slots=True)
class BatchItemOutcome:
    """Outcome of one batch item, keyed by its input index."""

    index: int
    job_id: str
    state: JobState | None
    result: dict[str, Any] | None = None
    error: str | None = None


@dataclass(slots=True)
class BatchResult:
    """Index-stable batch outcome with derived aggregate state."""

    batch_id: str
    state: JobState
    stop_on_error: bool
    items: list[BatchItemOutcome]
    delayed_job_ids: list[str] = field(default_factory=list)
    retry_after_seconds: float | None = None

    @property
    def total(self) -> int:
        return len(self.items)

    @property
    def states(self) -> list[JobState | None]:
        return [item.state for item in self.items]

    def count(self, state: JobState) -> int:
        return sum(1 for item in self.items if item.state == state)

    def summary(self) -> dict[str, Any]:
        processed = sum(
            1 for item in self.items if item.state is not None and item.state.is_terminal
        )
        return {
            "total_requests": self.total,
            "processed_requests": processed,
            "successful_requests": self.count(JobState.COMPLETED),
            "failed_requests": self.count(JobState.FAILED),
            "cancelled_requests": self.count(JobState.CANCELLED),
            "progress_percentage": round(processed / self.total * 100, 2) if self.total else 0.0,
        }


def batch_aggregate_state(
    *,
    stop_on_error: bool,
    item_states: list[JobState | None],
) -> JobState:
    """Derive the batch state from item states; missing items count as unknown."""

    if stop_on_error and JobState.FAILED in item_states:
        return JobState.FAILED
    known = [state for state in item_states if state is not None]
    if known and all(state.is_terminal for state in known):
        return JobState.COMPLETED
    if all(state == JobState.QUEUED for state in known):
        return JobState.QUEUED
    return JobState.PROCESSING


@dataclass(slots=True)
class JobStatistics:
    """Job counts and timings over a queued_at window."""

    window_hours: int
    total: int = 0
    queued: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0
    cancelled: int = 0
    average_duration_seconds: float | None = None

    @property
    def success_rate(self) -> float:
        if self.total == 0:
            return 0.0
        return round(self.completed / self.total * 100, 2)

    def counts(self) -> dict[str, int]:
        return {
            JobState.QUEUED.value: self.queued,
            JobState.PROCESSING.value: self.processing,
            JobState.COMPLETED.value: self.completed,
            JobState.FAILED.value: self.failed,
            JobState.CANCELLED.value: self.cancelled,
        }


@dataclass(slots=True)
class WorkItem:
    """One claimed queue entry."""

    item_id: str
    queue_name: str
    kind: WorkItemKind
    target_id: str
    payload: dict[str, Any]
    delivery_count: int
