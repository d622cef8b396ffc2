from __future__ import annotations

from pathlib import Path

import allure
import pytest

from genqueue.config import (
    CallbackSettings,
    RateLimitSettings,
    Settings,
    StoreSettings,
    WorkerSettings,
)

pytestmark = [
    allure.epic("Job Orchestration"),
    allure.feature("Configuration"),
]


def test_from_env_defaults(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in (
        "GENQUEUE_DB_PATH",
        "GENQUEUE_DEFAULT_QUEUE",
        "GENQUEUE_WORKER_QUEUES",
        "GENQUEUE_CALLBACKS_ENABLED",
        "GENQUEUE_PROVIDER_MAX_ATTEMPTS",
        "GENQUEUE_RATE_LIMITING_ENABLED",
        "GENQUEUE_RATE_LIMITS",
    ):
        monkeypatch.delenv(name, raising=False)

    settings = Settings.from_env()

    assert settings.db_path == Path(".genqueue.db")
    assert settings.store.status_ttl_seconds == 86_400
    assert settings.worker.queue_names == (
        "default",
        "video-processing",
        "image-processing",
        "document-processing",
        "long-running",
    )
    assert settings.callbacks.enabled is True
    assert settings.callbacks.backoff_seconds == (1.0, 5.0, 15.0)
    assert settings.worker.provider_max_attempts == 3
    assert settings.worker.provider_retry_backoff_seconds == 30.0
    assert settings.worker.long_running_max_attempts == 2
    assert settings.worker.long_running_retry_backoff_seconds == 300.0
    assert settings.rate_limits.enabled is True
    assert settings.rate_limits.limits == ""
    settings.validate()


def test_from_env_overrides(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("GENQUEUE_DB_PATH", str(tmp_path / "jobs.db"))
    monkeypatch.setenv("GENQUEUE_DEFAULT_QUEUE", "fast")
    monkeypatch.setenv("GENQUEUE_WORKER_QUEUES", "fast, video-processing,fast")
    monkeypatch.setenv("GENQUEUE_WORKER_ID", "node-7")
    monkeypatch.setenv("GENQUEUE_CALLBACKS_ENABLED", "off")
    monkeypatch.setenv("GENQUEUE_CALLBACK_BACKOFF_SECONDS", "0.5,2")
    monkeypatch.setenv("GENQUEUE_LOG_LEVEL", "debug")
    monkeypatch.setenv("GENQUEUE_PROVIDER_MAX_ATTEMPTS", "5")
    monkeypatch.setenv("GENQUEUE_RATE_LIMITING_ENABLED", "no")
    monkeypatch.setenv("GENQUEUE_RATE_LIMITS", "openai=10/30")

    settings = Settings.from_env()

    assert settings.db_path == tmp_path / "jobs.db"
    assert settings.worker.default_queue == "fast"
    assert settings.worker.queue_names == ("fast", "video-processing")
    assert settings.worker.worker_id == "node-7"
    assert settings.callbacks.enabled is False
    assert settings.callbacks.backoff_seconds == (0.5, 2.0)
    assert settings.log_level == "DEBUG"
    assert settings.worker.provider_max_attempts == 5
    assert settings.rate_limits.enabled is False
    assert settings.rate_limits.limits == "openai=10/30"


def test_worker_queues_fall_back_to_default_and_routed_queues(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("GENQUEUE_DEFAULT_QUEUE", "gpu")
    monkeypatch.delenv("GENQUEUE_WORKER_QUEUES", raising=False)

    queue_names = Settings.from_env().worker.queue_names

    assert queue_names[0] == "gpu"
    assert "video-processing" in queue_names
    assert "long-running" in queue_names
    assert "default" not in queue_names


def test_explicit_db_path_wins_over_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("GENQUEUE_DB_PATH", "/nowhere/else.db")

    assert Settings.from_env(db_path=tmp_path / "cli.db").db_path == tmp_path / "cli.db"


def test_invalid_boolean_is_rejected(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("GENQUEUE_CALLBACKS_ENABLED", "maybe")

    with pytest.raises(ValueError, match="GENQUEUE_CALLBACKS_ENABLED"):
        Settings.from_env()


def test_invalid_backoff_list_is_rejected(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("GENQUEUE_CALLBACK_BACKOFF_SECONDS", "1,soon")

    with pytest.raises(ValueError, match="GENQUEUE_CALLBACK_BACKOFF_SECONDS"):
        Settings.from_env()


@pytest.mark.parametrize(
    ("settings", "variable"),
    [
        (Settings(store=StoreSettings(status_ttl_seconds=0)), "GENQUEUE_STATUS_TTL_SECONDS"),
        (Settings(worker=WorkerSettings(max_deliveries=0)), "GENQUEUE_MAX_DELIVERIES"),
        (
            Settings(worker=WorkerSettings(provider_timeout_seconds=0)),
            "GENQUEUE_PROVIDER_TIMEOUT_SECONDS",
        ),
        (Settings(worker=WorkerSettings(batch_max_parallel=0)), "GENQUEUE_BATCH_MAX_PARALLEL"),
        (Settings(callbacks=CallbackSettings(max_attempts=0)), "GENQUEUE_CALLBACK_MAX_ATTEMPTS"),
        (
            Settings(callbacks=CallbackSettings(backoff_seconds=(1.0, -1.0))),
            "GENQUEUE_CALLBACK_BACKOFF_SECONDS",
        ),
        (
            Settings(worker=WorkerSettings(provider_max_attempts=0)),
            "GENQUEUE_PROVIDER_MAX_ATTEMPTS",
        ),
        (
            Settings(worker=WorkerSettings(long_running_retry_backoff_seconds=-1)),
            "GENQUEUE_LONG_RUNNING_RETRY_BACKOFF_SECONDS",
        ),
        (
            Settings(rate_limits=RateLimitSettings(limits="openai=many")),
            "GENQUEUE_RATE_LIMITS",
        ),
        (
            Settings(rate_limits=RateLimitSettings(max_delay_seconds=0)),
            "GENQUEUE_RATE_LIMIT_MAX_DELAY_SECONDS",
        ),
        (Settings(log_level="CHATTY"), "GENQUEUE_LOG_LEVEL"),
    ],
)
def test_validate_names_the_offending_variable(settings: Settings, variable: str) -> None:
    with pytest.raises(ValueError, match=variable):
        settings.validate()
