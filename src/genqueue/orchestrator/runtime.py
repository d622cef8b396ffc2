"""Injectable clock and id generator used across the orchestrator."""

from __future__ import annotations

import itertools
import threading
from datetime import datetime, timedelta
from typing import Protocol
from uuid import uuid4

from genqueue.storage.common import utc_now


class ClockSource(Protocol):
    def now(self) -> datetime:
        """Current timezone-aware UTC time."""


class IdGenerator(Protocol):
    def new_id(self, prefix: str) -> str:
        """Return a fresh, globally unique id starting with ``prefix``."""


class SystemClock:
    def now(self) -> datetime:
        return utc_now()


class FrozenClock:
    """Manually advanced clock for deterministic runs."""

    def __init__(self, start: datetime) -> None:
        self._now = start
        self._lock = threading.Lock()

    def now(self) -> datetime:
        with self._lock:
            return self._now

    def advance(self, delta: timedelta) -> None:
        with self._lock:
            self._now = self._now + delta

    def set(self, value: datetime) -> None:
        with self._lock:
            self._now = value


class UuidIdGenerator:
    def new_id(self, prefix: str) -> str:
        return f"{prefix}{uuid4().hex}"


class SequentialIdGenerator:
    """Deterministic ids: ``<prefix><n>`` with one counter shared by all prefixes."""

    def __init__(self, start: int = 1) -> None:
        self._counter = itertools.count(start)
        self._lock = threading.Lock()

    def new_id(self, prefix: str) -> str:
        with self._lock:
            return f"{prefix}{next(self._counter)}"
