"""Runtime configuration for job orchestration."""

from __future__ import annotations

import os
import socket
from dataclasses import dataclass, field
from pathlib import Path

from genqueue.orchestrator.rate_limit import parse_rate_limits
from genqueue.orchestrator.routing import DEFAULT_QUEUE, default_worker_queues


@dataclass(slots=True)
class StoreSettings:
    """Status store settings."""

    status_ttl_seconds: int = 86_400
    sqlite_busy_timeout_ms: int = 5_000


@dataclass(slots=True)
class WorkerSettings:
    """Queue worker settings."""

    worker_id: str = "worker"
    default_queue: str = DEFAULT_QUEUE
    queue_names: tuple[str, ...] = ()
    poll_interval_seconds: float = 2.0
    stale_claim_seconds: int = 1_800
    max_deliveries: int = 5
    provider_timeout_seconds: float = 300.0
    long_running_timeout_seconds: float = 3_600.0
    provider_max_attempts: int = 3
    provider_retry_backoff_seconds: float = 30.0
    long_running_max_attempts: int = 2
    long_running_retry_backoff_seconds: float = 300.0
    batch_max_parallel: int = 4

    def __post_init__(self) -> None:
        if not self.queue_names:
            self.queue_names = default_worker_queues(self.default_queue)


@dataclass(slots=True)
class RateLimitSettings:
    """Per-engine request limits applied before each provider call."""

    enabled: bool = True
    limits: str = ""
    jitter_seconds: float = 30.0
    max_delay_seconds: float = 300.0


@dataclass(slots=True)
class CallbackSettings:
    """Webhook delivery settings."""

    enabled: bool = True
    timeout_seconds: float = 10.0
    max_attempts: int = 3
    backoff_seconds: tuple[float, ...] = (1.0, 5.0, 15.0)
    user_agent: str = "genqueue-webhooks/1.0"


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    db_path: Path = Path(".genqueue.db")
    store: StoreSettings = field(default_factory=StoreSettings)
    worker: WorkerSettings = field(default_factory=WorkerSettings)
    callbacks: CallbackSettings = field(default_factory=CallbackSettings)
    rate_limits: RateLimitSettings = field(default_factory=RateLimitSettings)
    pricing: str = ""
    log_level: str = "WARNING"

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        default_queue = os.getenv("GENQUEUE_DEFAULT_QUEUE", "default").strip() or "default"
        return cls(
            db_path=db_path or Path(os.getenv("GENQUEUE_DB_PATH", ".genqueue.db")),
            store=StoreSettings(
                status_ttl_seconds=int(os.getenv("GENQUEUE_STATUS_TTL_SECONDS", "86400")),
                sqlite_busy_timeout_ms=int(os.getenv("GENQUEUE_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            ),
            worker=WorkerSettings(
                worker_id=os.getenv("GENQUEUE_WORKER_ID", f"{socket.gethostname()}:{os.getpid()}"),
                default_queue=default_queue,
                queue_names=_csv_tuple(os.getenv("GENQUEUE_WORKER_QUEUES", "")),
                poll_interval_seconds=float(os.getenv("GENQUEUE_POLL_INTERVAL_SECONDS", "2.0")),
                stale_claim_seconds=int(os.getenv("GENQUEUE_STALE_CLAIM_SECONDS", "1800")),
                max_deliveries=int(os.getenv("GENQUEUE_MAX_DELIVERIES", "5")),
                provider_timeout_seconds=float(
                    os.getenv("GENQUEUE_PROVIDER_TIMEOUT_SECONDS", "300"),
                ),
                long_running_timeout_seconds=float(
                    os.getenv("GENQUEUE_LONG_RUNNING_TIMEOUT_SECONDS", "3600"),
                ),
                provider_max_attempts=int(os.getenv("GENQUEUE_PROVIDER_MAX_ATTEMPTS", "3")),
                provider_retry_backoff_seconds=float(
                    os.getenv("GENQUEUE_PROVIDER_RETRY_BACKOFF_SECONDS", "30"),
                ),
                long_running_max_attempts=int(
                    os.getenv("GENQUEUE_LONG_RUNNING_MAX_ATTEMPTS", "2"),
                ),
                long_running_retry_backoff_seconds=float(
                    os.getenv("GENQUEUE_LONG_RUNNING_RETRY_BACKOFF_SECONDS", "300"),
                ),
                batch_max_parallel=int(os.getenv("GENQUEUE_BATCH_MAX_PARALLEL", "4")),
            ),
            callbacks=CallbackSettings(
                enabled=_env_bool("GENQUEUE_CALLBACKS_ENABLED", default=True),
                timeout_seconds=float(os.getenv("GENQUEUE_CALLBACK_TIMEOUT_SECONDS", "10")),
                max_attempts=int(os.getenv("GENQUEUE_CALLBACK_MAX_ATTEMPTS", "3")),
                backoff_seconds=_float_tuple(
                    "GENQUEUE_CALLBACK_BACKOFF_SECONDS",
                    os.getenv("GENQUEUE_CALLBACK_BACKOFF_SECONDS", "1,5,15"),
                ),
                user_agent=os.getenv("GENQUEUE_CALLBACK_USER_AGENT", "genqueue-webhooks/1.0"),
            ),
            rate_limits=RateLimitSettings(
                enabled=_env_bool("GENQUEUE_RATE_LIMITING_ENABLED", default=True),
                limits=os.getenv("GENQUEUE_RATE_LIMITS", ""),
                jitter_seconds=float(os.getenv("GENQUEUE_RATE_LIMIT_JITTER_SECONDS", "30")),
                max_delay_seconds=float(
                    os.getenv("GENQUEUE_RATE_LIMIT_MAX_DELAY_SECONDS", "300"),
                ),
            ),
            pricing=os.getenv("GENQUEUE_PRICING", ""),
            log_level=os.getenv("GENQUEUE_LOG_LEVEL", "WARNING").strip().upper() or "WARNING",
        )

    def validate(self) -> None:
        """Raise configuration error for out-of-range values."""

        if self.store.status_ttl_seconds <= 0:
            raise ValueError("GENQUEUE_STATUS_TTL_SECONDS must be > 0.")
        if self.store.sqlite_busy_timeout_ms < 0:
            raise ValueError("GENQUEUE_SQLITE_BUSY_TIMEOUT_MS must be >= 0.")
        if self.worker.poll_interval_seconds < 0:
            raise ValueError("GENQUEUE_POLL_INTERVAL_SECONDS must be >= 0.")
        if self.worker.stale_claim_seconds < 0:
            raise ValueError("GENQUEUE_STALE_CLAIM_SECONDS must be >= 0.")
        if self.worker.max_deliveries <= 0:
            raise ValueError("GENQUEUE_MAX_DELIVERIES must be > 0.")
        if self.worker.provider_timeout_seconds <= 0:
            raise ValueError("GENQUEUE_PROVIDER_TIMEOUT_SECONDS must be > 0.")
        if self.worker.long_running_timeout_seconds <= 0:
            raise ValueError("GENQUEUE_LONG_RUNNING_TIMEOUT_SECONDS must be > 0.")
        if self.worker.provider_max_attempts <= 0:
            raise ValueError("GENQUEUE_PROVIDER_MAX_ATTEMPTS must be > 0.")
        if self.worker.provider_retry_backoff_seconds < 0:
            raise ValueError("GENQUEUE_PROVIDER_RETRY_BACKOFF_SECONDS must be >= 0.")
        if self.worker.long_running_max_attempts <= 0:
            raise ValueError("GENQUEUE_LONG_RUNNING_MAX_ATTEMPTS must be > 0.")
        if self.worker.long_running_retry_backoff_seconds < 0:
            raise ValueError("GENQUEUE_LONG_RUNNING_RETRY_BACKOFF_SECONDS must be >= 0.")
        if self.worker.batch_max_parallel <= 0:
            raise ValueError("GENQUEUE_BATCH_MAX_PARALLEL must be > 0.")
        if self.callbacks.timeout_seconds <= 0:
            raise ValueError("GENQUEUE_CALLBACK_TIMEOUT_SECONDS must be > 0.")
        if self.callbacks.max_attempts <= 0:
            raise ValueError("GENQUEUE_CALLBACK_MAX_ATTEMPTS must be > 0.")
        if any(value < 0 for value in self.callbacks.backoff_seconds):
            raise ValueError("GENQUEUE_CALLBACK_BACKOFF_SECONDS values must be >= 0.")
        if self.rate_limits.jitter_seconds < 0:
            raise ValueError("GENQUEUE_RATE_LIMIT_JITTER_SECONDS must be >= 0.")
        if self.rate_limits.max_delay_seconds <= 0:
            raise ValueError("GENQUEUE_RATE_LIMIT_MAX_DELAY_SECONDS must be > 0.")
        try:
            parse_rate_limits(self.rate_limits.limits)
        except ValueError as error:
            raise ValueError(f"Invalid GENQUEUE_RATE_LIMITS: {error}") from error
        if self.log_level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Invalid GENQUEUE_LOG_LEVEL: {self.log_level!r}")


def _csv_tuple(raw: str) -> tuple[str, ...]:
    values: list[str] = []
    for part in raw.split(","):
        value = part.strip()
        if value and value not in values:
            values.append(value)
    return tuple(values)


def _float_tuple(name: str, raw: str) -> tuple[float, ...]:
    try:
        return tuple(float(part) for part in raw.split(",") if part.strip())
    except ValueError as error:
        raise ValueError(f"Invalid float list for {name}: {raw!r}") from error


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
