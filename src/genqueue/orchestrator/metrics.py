"""Operator-facing rendering of job statistics."""

from __future__ import annotations

from genqueue.orchestrator.models import BatchResult, JobStatistics, JobStatus


def render_stats_lines(*, stats: JobStatistics) -> list[str]:
    """Render statistics lines for CLI output."""

    return [
        f"Job statistics (window={stats.window_hours}h)",
        f"Total jobs: {stats.total}",
        "Status: " + _fmt_key_value(stats.counts()),
        f"Success rate: {stats.success_rate:.2f}%",
        f"Average duration: {_fmt_seconds(stats.average_duration_seconds)}",
    ]


def render_status_lines(status: JobStatus) -> list[str]:
    lines = [
        f"Job: {status.job_id}",
        f"Kind: {status.kind.value}",
        f"Status: {status.state.value}",
        f"Progress: {status.progress}%",
        f"Queued at: {status.queued_at.isoformat()}",
        f"Started at: {status.started_at.isoformat() if status.started_at else '-'}",
        f"Completed at: {status.completed_at.isoformat() if status.completed_at else '-'}",
        f"Duration: {_fmt_seconds(status.duration_seconds)}",
    ]
    if status.error:
        lines.append(f"Error: {status.error}")
    if status.metadata:
        lines.append(
            "Metadata: "
            + " ".join(f"{key}={status.metadata[key]}" for key in sorted(status.metadata)),
        )
    if status.result is not None and status.result.get("content"):
        lines.append(f"Content: {status.result['content']}")
    return lines


def render_batch_lines(result: BatchResult) -> list[str]:
    summary = result.summary()
    lines = [
        f"Batch: {result.batch_id}",
        f"Status: {result.state.value} (stop_on_error={result.stop_on_error})",
        (
            "Progress: "
            f"processed={summary['processed_requests']}/{summary['total_requests']} "
            f"successful={summary['successful_requests']} "
            f"failed={summary['failed_requests']} "
            f"cancelled={summary['cancelled_requests']} "
            f"({summary['progress_percentage']}%)"
        ),
    ]
    for item in result.items:
        state = item.state.value if item.state is not None else "missing"
        suffix = f" error={item.error}" if item.error else ""
        lines.append(f"  [{item.index}] {item.job_id} {state}{suffix}")
    return lines


def _fmt_key_value(values: dict[str, int]) -> str:
    return " ".join(f"{key}={values[key]}" for key in sorted(values))


def _fmt_seconds(value: float | None) -> str:
    if value is None:
        return "n/a"
    return f"{value:.2f}s"
