"""CLI entrypoint for genqueue."""

import logging
import os
from collections.abc import Callable
from pathlib import Path
from typing import TypeVar

import rich_click as click

from genqueue import __version__
from genqueue.orchestrator.controllers import (
    BatchCommand,
    BatchStatusCommand,
    CleanupCommand,
    EnqueueCommand,
    EnqueueLongCommand,
    EstimateCostCommand,
    OrchestratorCliController,
    RequestOptions,
    StatsCommand,
    StatusCommand,
    WorkerCommand,
)

click.rich_click.USE_MARKDOWN = True
ORCHESTRATOR_CONTROLLER = OrchestratorCliController()

T = TypeVar("T")


def _request_options(func: Callable[..., None]) -> Callable[..., None]:
    """Options shared by every command that builds AI requests."""

    decorators = [
        click.option("--engine", default="openai", show_default=True, help="AI engine name."),
        click.option("--model", default="gpt-4o-mini", show_default=True, help="Model name."),
        click.option(
            "--param",
            "params",
            multiple=True,
            help="Engine parameter as key=value (JSON values allowed). Can be repeated.",
        ),
        click.option("--system-prompt", default=None, help="Optional system prompt."),
        click.option("--max-tokens", type=click.IntRange(min=1), default=None),
        click.option(
            "--cost-units",
            type=click.FloatRange(min=0),
            default=1.0,
            show_default=True,
            help="Cost multiplier used by cost estimates.",
        ),
    ]
    for decorator in reversed(decorators):
        func = decorator(func)
    return func


@click.group()
@click.version_option(version=__version__, prog_name="genqueue")
def genqueue() -> None:
    """Queue AI generation jobs, run workers and inspect job status."""

    level = os.getenv("GENQUEUE_LOG_LEVEL", "WARNING").strip().upper() or "WARNING"
    logging.basicConfig(
        level=getattr(logging, level, logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@genqueue.command("enqueue")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--prompt", required=True, help="Prompt text.")
@_request_options
@click.option("--callback-url", default=None, help="Webhook URL notified on completion.")
@click.option("--queue", "queue_name", default=None, help="Target queue name.")
@click.option("--user-id", default=None, help="Owning user id.")
def enqueue(  # noqa: PLR0913
    db_path: Path | None,
    prompt: str,
    engine: str,
    model: str,
    params: tuple[str, ...],
    system_prompt: str | None,
    max_tokens: int | None,
    cost_units: float,
    callback_url: str | None,
    queue_name: str | None,
    user_id: str | None,
) -> None:
    """Queue one AI request as an independent job."""

    _emit_lines(
        _guarded(
            lambda: ORCHESTRATOR_CONTROLLER.enqueue(
                EnqueueCommand(
                    db_path=db_path,
                    prompt=prompt,
                    options=RequestOptions(
                        engine=engine,
                        model=model,
                        params=params,
                        system_prompt=system_prompt,
                        max_tokens=max_tokens,
                        cost_units=cost_units,
                    ),
                    callback_url=callback_url,
                    queue_name=queue_name,
                    user_id=user_id,
                ),
            ),
        ),
    )


@genqueue.command("enqueue-long")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--prompt", required=True, help="Prompt text.")
@click.option(
    "--task-type",
    required=True,
    help="Task type, for example video_generation or document_processing.",
)
@_request_options
@click.option("--callback-url", default=None, help="Webhook URL notified on completion.")
@click.option(
    "--progress-callback-url",
    "progress_callback_urls",
    multiple=True,
    help="Webhook URL notified on progress. Can be repeated.",
)
@click.option("--queue", "queue_name", default=None, help="Override the task-type queue.")
@click.option("--user-id", default=None, help="Owning user id.")
def enqueue_long(  # noqa: PLR0913
    db_path: Path | None,
    prompt: str,
    task_type: str,
    engine: str,
    model: str,
    params: tuple[str, ...],
    system_prompt: str | None,
    max_tokens: int | None,
    cost_units: float,
    callback_url: str | None,
    progress_callback_urls: tuple[str, ...],
    queue_name: str | None,
    user_id: str | None,
) -> None:
    """Queue a long-running task routed by task type."""

    _emit_lines(
        _guarded(
            lambda: ORCHESTRATOR_CONTROLLER.enqueue_long(
                EnqueueLongCommand(
                    db_path=db_path,
                    prompt=prompt,
                    task_type=task_type,
                    options=RequestOptions(
                        engine=engine,
                        model=model,
                        params=params,
                        system_prompt=system_prompt,
                        max_tokens=max_tokens,
                        cost_units=cost_units,
                    ),
                    callback_url=callback_url,
                    progress_callback_urls=progress_callback_urls,
                    queue_name=queue_name,
                    user_id=user_id,
                ),
            ),
        ),
    )


@genqueue.command("batch")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--prompt", "prompts", multiple=True, help="Prompt text. Repeat for each item.")
@click.option(
    "--stop-on-error/--no-stop-on-error",
    default=False,
    show_default=True,
    help="Cancel remaining items after the first failure.",
)
@click.option(
    "--independent/--no-independent",
    default=False,
    show_default=True,
    help="Queue each prompt as an independent job instead of one batch.",
)
@_request_options
@click.option("--callback-url", default=None, help="Webhook URL notified with the batch result.")
@click.option("--queue", "queue_name", default=None, help="Target queue name.")
@click.option("--user-id", default=None, help="Owning user id.")
def batch(  # noqa: PLR0913
    db_path: Path | None,
    prompts: tuple[str, ...],
    stop_on_error: bool,
    independent: bool,
    engine: str,
    model: str,
    params: tuple[str, ...],
    system_prompt: str | None,
    max_tokens: int | None,
    cost_units: float,
    callback_url: str | None,
    queue_name: str | None,
    user_id: str | None,
) -> None:
    """Queue an ordered batch of prompts."""

    _emit_lines(
        _guarded(
            lambda: ORCHESTRATOR_CONTROLLER.batch(
                BatchCommand(
                    db_path=db_path,
                    prompts=prompts,
                    stop_on_error=stop_on_error,
                    options=RequestOptions(
                        engine=engine,
                        model=model,
                        params=params,
                        system_prompt=system_prompt,
                        max_tokens=max_tokens,
                        cost_units=cost_units,
                    ),
                    callback_url=callback_url,
                    queue_name=queue_name,
                    user_id=user_id,
                    independent=independent,
                ),
            ),
        ),
    )


@genqueue.command("worker")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--once", is_flag=True, default=False, help="Process at most one work item.")
@click.option(
    "--max-jobs",
    type=click.IntRange(min=1),
    default=None,
    help="Stop after processing this many work items.",
)
@click.option(
    "--max-idle-polls",
    type=click.IntRange(min=1),
    default=1,
    show_default=True,
    help="Consecutive empty polls before the worker exits.",
)
@click.option(
    "--queue",
    "queue_names",
    multiple=True,
    help="Queue to consume. Can be repeated. Defaults to GENQUEUE_WORKER_QUEUES.",
)
def worker(
    db_path: Path | None,
    once: bool,
    max_jobs: int | None,
    max_idle_polls: int,
    queue_names: tuple[str, ...],
) -> None:
    """Run the queue worker."""

    _emit_lines(
        _guarded(
            lambda: ORCHESTRATOR_CONTROLLER.run_worker(
                WorkerCommand(
                    db_path=db_path,
                    once=once,
                    max_jobs=max_jobs,
                    max_idle_polls=max_idle_polls,
                    queue_names=queue_names,
                ),
            ),
        ),
    )


@genqueue.command("status")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("job_ids", nargs=-1, required=True)
def status(db_path: Path | None, job_ids: tuple[str, ...]) -> None:
    """Show status of one or more jobs."""

    result = _guarded(
        lambda: ORCHESTRATOR_CONTROLLER.status(StatusCommand(db_path=db_path, job_ids=job_ids)),
    )
    _emit_lines(result.lines)
    if not result.success:
        raise click.ClickException("Some jobs were not found.")


@genqueue.command("batch-status")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("batch_id")
def batch_status(db_path: Path | None, batch_id: str) -> None:
    """Show the per-item result of a batch."""

    result = _guarded(
        lambda: ORCHESTRATOR_CONTROLLER.batch_status(
            BatchStatusCommand(db_path=db_path, batch_id=batch_id),
        ),
    )
    _emit_lines(result.lines)
    if not result.success:
        raise click.ClickException("Batch not found.")


@genqueue.command("stats")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--hours",
    type=click.IntRange(min=1),
    default=24,
    show_default=True,
    help="Time window for aggregation.",
)
def stats(db_path: Path | None, hours: int) -> None:
    """Show job counts by status for the time window."""

    _emit_lines(
        _guarded(lambda: ORCHESTRATOR_CONTROLLER.stats(StatsCommand(db_path=db_path, hours=hours))),
    )


@genqueue.command("cleanup")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--older-than-hours",
    type=click.IntRange(min=0),
    default=24,
    show_default=True,
    help="Delete job history finished (or queued) before this many hours ago.",
)
def cleanup(db_path: Path | None, older_than_hours: int) -> None:
    """Delete old job statuses."""

    _emit_lines(
        _guarded(
            lambda: ORCHESTRATOR_CONTROLLER.cleanup(
                CleanupCommand(db_path=db_path, older_than_hours=older_than_hours),
            ),
        ),
    )


@genqueue.command("estimate-cost")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--prompt", "prompts", multiple=True, help="Prompt text. Repeat for each item.")
@_request_options
def estimate_cost(  # noqa: PLR0913
    db_path: Path | None,
    prompts: tuple[str, ...],
    engine: str,
    model: str,
    params: tuple[str, ...],
    system_prompt: str | None,
    max_tokens: int | None,
    cost_units: float,
) -> None:
    """Estimate total cost of a batch from GENQUEUE_PRICING."""

    _emit_lines(
        _guarded(
            lambda: ORCHESTRATOR_CONTROLLER.estimate_cost(
                EstimateCostCommand(
                    db_path=db_path,
                    prompts=prompts,
                    options=RequestOptions(
                        engine=engine,
                        model=model,
                        params=params,
                        system_prompt=system_prompt,
                        max_tokens=max_tokens,
                        cost_units=cost_units,
                    ),
                ),
            ),
        ),
    )


def _guarded(action: Callable[[], T]) -> T:
    try:
        return action()
    except ValueError as error:
        raise click.ClickException(str(error)) from error


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    genqueue()
