"""Per-engine request windows shared by every worker on one database."""

from __future__ import annotations

import logging
import random
import sys
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path

from sqlalchemy import update as sa_update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from genqueue.orchestrator.errors import RateLimitExceeded
from genqueue.orchestrator.runtime import ClockSource, SystemClock
from genqueue.storage.common import build_sqlite_engine, to_db_datetime, to_utc_aware_datetime
from genqueue.storage.sqlmodel_models import RateLimitWindow

logger = logging.getLogger(__name__)

DEFAULT_DELAY_SECONDS = 60.0
DEFAULT_JITTER_SECONDS = 30.0
DEFAULT_MAX_DELAY_SECONDS = 300.0
MAX_CAS_ATTEMPTS = 64


@dataclass(frozen=True, slots=True)
class RateLimitRule:
    """At most ``requests`` calls per ``window_seconds``."""

    requests: int
    window_seconds: int = 60


DEFAULT_ENGINE_LIMITS: dict[str, RateLimitRule] = {
    "openai": RateLimitRule(requests=100),
    "anthropic": RateLimitRule(requests=50),
    "gemini": RateLimitRule(requests=60),
    "stable_diffusion": RateLimitRule(requests=20),
    "openrouter": RateLimitRule(requests=200),
}


def parse_rate_limits(raw: str) -> dict[str, RateLimitRule]:
    """Parse ``GENQUEUE_RATE_LIMITS``.

    Format:
    - `engine=requests` (60 second window) or `engine=requests/window_seconds`
    - multiple entries separated by `,`

    An empty string selects the built-in per-engine limits.
    """

    if not raw.strip():
        return dict(DEFAULT_ENGINE_LIMITS)

    parsed: dict[str, RateLimitRule] = {}
    for entry in raw.split(","):
        value = entry.strip()
        if not value:
            continue
        engine, separator, limit = value.partition("=")
        if not separator or not engine.strip():
            raise ValueError(f"Invalid rate limit entry: {value!r}")
        requests, _, window = limit.partition("/")
        try:
            rule = RateLimitRule(
                requests=int(requests),
                window_seconds=int(window) if window.strip() else 60,
            )
        except ValueError as error:
            raise ValueError(f"Invalid rate limit entry: {value!r}") from error
        if rule.requests <= 0 or rule.window_seconds <= 0:
            raise ValueError(f"Rate limit values must be > 0: {value!r}")
        parsed[engine.strip().lower()] = rule
    return parsed


def rate_limit_key(engine: str, user_id: str | None = None) -> str:
    base = f"rate_limit:{engine.strip().lower()}"
    return f"{base}:user:{user_id}" if user_id else f"{base}:global"


class RateLimiter:
    """Fixed-window request counters persisted in SQLite.

    Each (engine, user) pair owns one window row. ``acquire`` counts a call
    or raises ``RateLimitExceeded`` once the window is full; the window
    restarts on the first call after it lapses. Engines without a rule are
    never limited. Updates are versioned compare-and-set, so workers in
    several processes share one budget.
    """

    def __init__(  # noqa: PLR0913
        self,
        db_path: Path,
        *,
        limits: Mapping[str, RateLimitRule],
        clock: ClockSource | None = None,
        busy_timeout_ms: int = 5_000,
        jitter_seconds: float = DEFAULT_JITTER_SECONDS,
        max_delay_seconds: float = DEFAULT_MAX_DELAY_SECONDS,
        jitter: Callable[[float, float], float] = random.uniform,
    ) -> None:
        self.db_path = db_path
        self.limits = {engine.lower(): rule for engine, rule in limits.items()}
        self.clock = clock or SystemClock()
        self.jitter_seconds = jitter_seconds
        self.max_delay_seconds = max_delay_seconds
        self._jitter = jitter
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def close(self) -> None:
        self.engine.dispose()

    def rule_for(self, engine: str) -> RateLimitRule | None:
        return self.limits.get(engine.strip().lower())

    def acquire(self, engine: str, user_id: str | None = None) -> None:
        """Count one call against the window, or raise when it is full."""

        rule = self.rule_for(engine)
        if rule is None:
            return
        key = rate_limit_key(engine, user_id)

        for _ in range(MAX_CAS_ATTEMPTS):
            now = self.clock.now()
            with Session(self.engine) as session:
                row = session.exec(
                    select(RateLimitWindow).where(RateLimitWindow.limit_key == key),
                ).one_or_none()
                if row is None:
                    session.add(
                        RateLimitWindow(
                            limit_key=key,
                            window_started_at=to_db_datetime(now),
                            request_count=1,
                        ),
                    )
                    try:
                        session.commit()
                    except IntegrityError:
                        session.rollback()
                        continue
                    return

                lapsed = _window_lapsed(row, rule, now=now)
                if not lapsed and row.request_count >= rule.requests:
                    logger.info("Rate limit window %s is full (%d)", key, rule.requests)
                    raise RateLimitExceeded(
                        f"Rate limit exceeded for engine {engine}. "
                        f"Limit: {rule.requests} requests per {rule.window_seconds}s",
                        key=key,
                        retry_after_seconds=self.retry_delay(engine),
                    )

                values = (
                    {"window_started_at": to_db_datetime(now), "request_count": 1}
                    if lapsed
                    else {"request_count": row.request_count + 1}
                )
                applied = session.exec(
                    sa_update(RateLimitWindow)
                    .where(
                        col(RateLimitWindow.limit_key) == key,
                        col(RateLimitWindow.version) == row.version,
                    )
                    .values(version=row.version + 1, **values),
                )
                if applied.rowcount != 1:
                    session.rollback()
                    continue
                session.commit()
                return

        raise RuntimeError(
            f"Rate limit window {key} kept changing concurrently; gave up after "
            f"{MAX_CAS_ATTEMPTS} attempts.",
        )

    def remaining(self, engine: str, user_id: str | None = None) -> int:
        """Calls left in the current window; ``sys.maxsize`` for unlimited engines."""

        rule = self.rule_for(engine)
        if rule is None:
            return sys.maxsize
        with Session(self.engine) as session:
            row = session.exec(
                select(RateLimitWindow).where(
                    RateLimitWindow.limit_key == rate_limit_key(engine, user_id),
                ),
            ).one_or_none()
        if row is None or _window_lapsed(row, rule, now=self.clock.now()):
            return rule.requests
        return max(0, rule.requests - row.request_count)

    def reset(self, engine: str, user_id: str | None = None) -> None:
        with Session(self.engine) as session:
            row = session.exec(
                select(RateLimitWindow).where(
                    RateLimitWindow.limit_key == rate_limit_key(engine, user_id),
                ),
            ).one_or_none()
            if row is not None:
                session.delete(row)
                session.commit()

    def retry_delay(self, engine: str) -> float:
        """Seconds to hold back a limited call: the window plus jitter, capped."""

        rule = self.rule_for(engine)
        base = float(rule.window_seconds) if rule is not None else DEFAULT_DELAY_SECONDS
        jitter = self._jitter(0.0, self.jitter_seconds) if self.jitter_seconds > 0 else 0.0
        return min(base + jitter, self.max_delay_seconds)


def _window_lapsed(row: RateLimitWindow, rule: RateLimitRule, *, now: datetime) -> bool:
    started = to_utc_aware_datetime(row.window_started_at)
    return now - started >= timedelta(seconds=rule.window_seconds)
