"""Error taxonomy for job orchestration."""

from __future__ import annotations


class GenQueueError(Exception):
    """Base class for genqueue errors."""


class ValidationError(GenQueueError, ValueError):
    """Rejected input, raised synchronously before anything is enqueued."""


class InvalidRequest(ValidationError):
    """A single request is not a usable AIRequest."""


class InvalidBatch(ValidationError):
    """A batch cannot be accepted as a whole, for example because it is empty."""


class InvalidRequestAtIndex(ValidationError):
    """One element of a request list is not a usable AIRequest."""

    def __init__(self, index: int, reason: str = "not an AIRequest") -> None:
        self.index = index
        self.reason = reason
        super().__init__(f"Invalid AIRequest at index {index}: {reason}")


class ProviderError(GenQueueError):
    """AI provider failure, captured by the worker as a failed job.

    A ``retryable`` error is attempted again, with backoff, until the runner
    runs out of attempts for the job kind.
    """

    def __init__(self, message: str, *, retryable: bool = False) -> None:
        super().__init__(message)
        self.retryable = retryable


class NotificationError(GenQueueError):
    """Callback delivery failure; logged and never propagated to job state."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class RateLimitExceeded(GenQueueError):
    """An engine's request window is full for this caller."""

    def __init__(self, message: str, *, key: str, retry_after_seconds: float) -> None:
        super().__init__(message)
        self.key = key
        self.retry_after_seconds = retry_after_seconds
