"""Controllers for orchestrator CLI commands."""

from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from genqueue.config import Settings
from genqueue.orchestrator.metrics import (
    render_batch_lines,
    render_stats_lines,
    render_status_lines,
)
from genqueue.orchestrator.models import AIRequest
from genqueue.orchestrator.services import JobOrchestrator


@dataclass(slots=True)
class RequestOptions:
    """Request fields shared by the enqueue commands."""

    engine: str = "openai"
    model: str = "gpt-4o-mini"
    params: tuple[str, ...] = ()
    system_prompt: str | None = None
    max_tokens: int | None = None
    cost_units: float = 1.0

    def build(self, prompt: str, *, user_id: str | None) -> AIRequest:
        return AIRequest(
            prompt=prompt,
            engine=self.engine,
            model=self.model,
            parameters=parse_params(self.params),
            user_id=user_id,
            system_prompt=self.system_prompt,
            max_tokens=self.max_tokens,
            cost_units=self.cost_units,
        )


@dataclass(slots=True)
class EnqueueCommand:
    """CLI input for a single request."""

    db_path: Path | None
    prompt: str
    options: RequestOptions = field(default_factory=RequestOptions)
    callback_url: str | None = None
    queue_name: str | None = None
    user_id: str | None = None


@dataclass(slots=True)
class EnqueueLongCommand:
    """CLI input for a long-running task."""

    db_path: Path | None
    prompt: str
    task_type: str
    options: RequestOptions = field(default_factory=RequestOptions)
    callback_url: str | None = None
    progress_callback_urls: tuple[str, ...] = ()
    queue_name: str | None = None
    user_id: str | None = None


@dataclass(slots=True)
class BatchCommand:
    """CLI input for batch enqueue."""

    db_path: Path | None
    prompts: tuple[str, ...]
    stop_on_error: bool = False
    options: RequestOptions = field(default_factory=RequestOptions)
    callback_url: str | None = None
    queue_name: str | None = None
    user_id: str | None = None
    independent: bool = False


@dataclass(slots=True)
class WorkerCommand:
    """CLI input for worker execution."""

    db_path: Path | None
    once: bool
    max_jobs: int | None
    max_idle_polls: int = 1
    queue_names: tuple[str, ...] = ()


@dataclass(slots=True)
class StatusCommand:
    """CLI input for job status lookup."""

    db_path: Path | None
    job_ids: tuple[str, ...]


@dataclass(slots=True)
class BatchStatusCommand:
    """CLI input for batch result lookup."""

    db_path: Path | None
    batch_id: str


@dataclass(slots=True)
class StatsCommand:
    """CLI input for job statistics."""

    db_path: Path | None
    hours: int


@dataclass(slots=True)
class CleanupCommand:
    """CLI input for status history cleanup."""

    db_path: Path | None
    older_than_hours: int


@dataclass(slots=True)
class EstimateCostCommand:
    """CLI input for batch cost estimation."""

    db_path: Path | None
    prompts: tuple[str, ...]
    options: RequestOptions = field(default_factory=RequestOptions)


@dataclass(slots=True)
class LookupResult:
    """Rendered lines plus whether every requested entity was found."""

    lines: list[str]
    success: bool


class OrchestratorCliController:
    """Coordinates enqueue, worker, and inspection CLI operations."""

    def enqueue(self, command: EnqueueCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _orchestrator(settings) as orchestrator:
            job_id = orchestrator.queue_request(
                command.options.build(command.prompt, user_id=command.user_id),
                callback_url=command.callback_url,
                queue_name=command.queue_name,
                user_id=command.user_id,
            )
            status = orchestrator.get_job_status(job_id)

        queue = status.metadata.get("queue") if status is not None else "-"
        state = status.state.value if status is not None else "unknown"
        return [f"Job queued: job_id={job_id} status={state} queue={queue}"]

    def enqueue_long(self, command: EnqueueLongCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _orchestrator(settings) as orchestrator:
            job_id = orchestrator.queue_long_running_task(
                command.options.build(command.prompt, user_id=command.user_id),
                command.task_type,
                callback_url=command.callback_url,
                progress_callback_urls=command.progress_callback_urls,
                queue_name=command.queue_name,
                user_id=command.user_id,
            )
            status = orchestrator.get_job_status(job_id)

        metadata = status.metadata if status is not None else {}
        return [
            "Long-running task queued: "
            f"job_id={job_id} task_type={command.task_type} queue={metadata.get('queue', '-')}",
            f"Estimated duration: {metadata.get('estimated_duration_minutes', '-')} minutes",
        ]

    def batch(self, command: BatchCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        requests = [
            command.options.build(prompt, user_id=command.user_id) for prompt in command.prompts
        ]
        with _orchestrator(settings) as orchestrator:
            if command.independent:
                job_ids = orchestrator.queue_multiple_requests(
                    requests,
                    callback_url=command.callback_url,
                    queue_name=command.queue_name,
                    user_id=command.user_id,
                )
                return [f"Queued {len(job_ids)} independent jobs:"] + [
                    f"  [{index}] {job_id}" for index, job_id in enumerate(job_ids)
                ]
            batch_id = orchestrator.queue_batch(
                requests,
                stop_on_error=command.stop_on_error,
                callback_url=command.callback_url,
                user_id=command.user_id,
                queue_name=command.queue_name,
            )
            result = orchestrator.get_batch_result(batch_id)

        lines = [
            "Batch queued: "
            f"batch_id={batch_id} total={len(requests)} stop_on_error={command.stop_on_error}",
        ]
        if result is not None:
            lines.extend(f"  [{item.index}] {item.job_id}" for item in result.items)
        return lines

    def run_worker(self, command: WorkerCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _orchestrator(settings) as orchestrator:
            worker = orchestrator.build_worker(queue_names=command.queue_names or None)
            summary = (
                worker.run_once()
                if command.once
                else worker.run_loop(
                    max_jobs=command.max_jobs,
                    max_idle_polls=command.max_idle_polls,
                )
            )

        return [
            "Worker summary: "
            f"processed={summary.processed} succeeded={summary.succeeded} "
            f"failed={summary.failed} cancelled={summary.cancelled} "
            f"released={summary.released} delayed={summary.delayed} "
            f"idle_polls={summary.idle_polls}",
        ]

    def status(self, command: StatusCommand) -> LookupResult:
        settings = Settings.from_env(db_path=command.db_path)
        with _orchestrator(settings) as orchestrator:
            statuses = orchestrator.get_job_statuses(command.job_ids)

        lines: list[str] = []
        for job_id in command.job_ids:
            if lines:
                lines.append("")
            status = statuses.get(job_id)
            if status is None:
                lines.append(f"Job not found: {job_id}")
                continue
            lines.extend(render_status_lines(status))
        return LookupResult(
            lines=lines,
            success=all(job_id in statuses for job_id in command.job_ids),
        )

    def batch_status(self, command: BatchStatusCommand) -> LookupResult:
        settings = Settings.from_env(db_path=command.db_path)
        with _orchestrator(settings) as orchestrator:
            result = orchestrator.get_batch_result(command.batch_id)
        if result is None:
            return LookupResult(lines=[f"Batch not found: {command.batch_id}"], success=False)
        return LookupResult(lines=render_batch_lines(result), success=True)

    def stats(self, command: StatsCommand) -> list[str]:
        """Show job counts and timings for the window."""

        settings = Settings.from_env(db_path=command.db_path)
        with _orchestrator(settings) as orchestrator:
            stats = orchestrator.get_statistics(command.hours)
        return render_stats_lines(stats=stats)

    def cleanup(self, command: CleanupCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _orchestrator(settings) as orchestrator:
            removed = orchestrator.cleanup(command.older_than_hours)
        return [
            f"Cleanup completed: removed={removed} older_than_hours={command.older_than_hours}",
        ]

    def estimate_cost(self, command: EstimateCostCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        requests = [command.options.build(prompt, user_id=None) for prompt in command.prompts]
        with _orchestrator(settings) as orchestrator:
            total = orchestrator.estimate_total_cost(requests)
            unit = orchestrator.pricing.unit_cost(command.options.engine, command.options.model)
        return [
            f"Requests: {len(requests)}",
            f"Unit cost ({command.options.engine}/{command.options.model}): {unit:g}",
            f"Estimated total cost: {total:.4f}",
        ]


def parse_params(values: tuple[str, ...]) -> dict[str, Any]:
    """Parse ``key=value`` pairs; values are decoded as JSON when possible."""

    params: dict[str, Any] = {}
    for raw in values:
        if "=" not in raw:
            raise ValueError(f"Invalid parameter {raw!r}. Expected format 'key=value'.")
        key, value = raw.split("=", 1)
        key = key.strip()
        if not key:
            raise ValueError(f"Invalid parameter {raw!r}: empty key.")
        try:
            params[key] = json.loads(value)
        except json.JSONDecodeError:
            params[key] = value
    return params


@contextmanager
def _orchestrator(settings: Settings) -> Iterator[JobOrchestrator]:
    orchestrator = JobOrchestrator.from_settings(settings)
    try:
        yield orchestrator
    finally:
        orchestrator.close()
