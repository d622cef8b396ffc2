"""Queue routing for long-running task types."""

from __future__ import annotations

DEFAULT_QUEUE = "default"
DEFAULT_LONG_RUNNING_QUEUE = "long-running"
DEFAULT_TASK_DURATION_MINUTES = 20
TASK_DURATION_MINUTES: dict[str, int] = {
    "video_generation": 30,
    "large_batch_images": 15,
    "document_processing": 10,
}
TASK_QUEUES: dict[str, str] = {
    "video_generation": "video-processing",
    "large_batch_images": "image-processing",
    "document_processing": "document-processing",
}


def estimated_duration_minutes(task_type: str) -> int:
    return TASK_DURATION_MINUTES.get(task_type, DEFAULT_TASK_DURATION_MINUTES)


def queue_for_task_type(task_type: str) -> str:
    return TASK_QUEUES.get(task_type, DEFAULT_LONG_RUNNING_QUEUE)


def default_worker_queues(default_queue: str = DEFAULT_QUEUE) -> tuple[str, ...]:
    """The default queue followed by every queue long-running tasks are routed to."""

    names = [default_queue, *TASK_QUEUES.values(), DEFAULT_LONG_RUNNING_QUEUE]
    return tuple(dict.fromkeys(names))
