"""Best-effort webhook delivery for job and batch notifications."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import httpx

from genqueue.orchestrator.errors import NotificationError
from genqueue.orchestrator.runtime import ClockSource, IdGenerator, SystemClock, UuidIdGenerator

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 10.0
DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BACKOFF_SECONDS = (1.0, 5.0, 15.0)
DEFAULT_USER_AGENT = "genqueue-webhooks/1.0"


@dataclass(slots=True)
class DeliveryResult:
    """Outcome of one webhook delivery, including retries."""

    url: str
    event: str
    delivery_id: str
    delivered: bool
    attempts: int
    status_code: int | None = None
    error: str | None = None


class CallbackNotifier:
    """Posts JSON notifications to caller-supplied URLs.

    Client errors (4xx) are final. Server errors and transport failures are
    retried up to ``max_attempts`` with the configured backoff. Nothing is
    raised to the caller: the outcome comes back as a ``DeliveryResult``.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        client: httpx.Client | None = None,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        backoff_seconds: tuple[float, ...] = DEFAULT_BACKOFF_SECONDS,
        user_agent: str = DEFAULT_USER_AGENT,
        clock: ClockSource | None = None,
        id_generator: IdGenerator | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._owns_client = client is None
        self._client = client or httpx.Client(
            timeout=httpx.Timeout(timeout_seconds, connect=min(timeout_seconds, 10.0)),
        )
        self._user_agent = user_agent
        self.max_attempts = max(1, max_attempts)
        self.backoff_seconds = backoff_seconds
        self._clock = clock or SystemClock()
        self._ids = id_generator or UuidIdGenerator()
        self._sleep = sleep

    def notify(
        self,
        url: str,
        payload: dict[str, Any],
        *,
        event: str,
        headers: dict[str, str] | None = None,
        max_attempts: int | None = None,
    ) -> DeliveryResult:
        """Deliver ``payload`` to ``url``."""

        delivery_id = self._ids.new_id("delivery_")
        attempts_allowed = max(1, max_attempts or self.max_attempts)
        last_error: NotificationError | None = None
        for attempt in range(1, attempts_allowed + 1):
            try:
                status_code = self._post(
                    url,
                    payload,
                    headers=self._headers(event=event, delivery_id=delivery_id, extra=headers),
                )
            except NotificationError as error:
                last_error = error
                client_error = error.status_code is not None and 400 <= error.status_code < 500
                logger.warning(
                    "Webhook delivery failed: url=%s event=%s status=%s attempt=%d error=%s",
                    url,
                    event,
                    error.status_code,
                    attempt,
                    error,
                )
                if client_error or attempt >= attempts_allowed:
                    break
                self._sleep(self._backoff_for(attempt))
                continue

            logger.info(
                "Webhook delivered: url=%s event=%s status=%d attempt=%d",
                url,
                event,
                status_code,
                attempt,
            )
            return DeliveryResult(
                url=url,
                event=event,
                delivery_id=delivery_id,
                delivered=True,
                attempts=attempt,
                status_code=status_code,
            )

        logger.error("Webhook delivery permanently failed: url=%s event=%s", url, event)
        return DeliveryResult(
            url=url,
            event=event,
            delivery_id=delivery_id,
            delivered=False,
            attempts=attempt,
            status_code=last_error.status_code if last_error is not None else None,
            error=str(last_error) if last_error is not None else None,
        )

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def __enter__(self) -> CallbackNotifier:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()

    def _post(self, url: str, payload: dict[str, Any], *, headers: dict[str, str]) -> int:
        try:
            response = self._client.post(url, json=payload, headers=headers)
        except httpx.TimeoutException as error:
            raise NotificationError(f"timeout: {error}") from error
        except httpx.HTTPError as error:
            raise NotificationError(str(error)) from error
        if not response.is_success:
            raise NotificationError(
                f"HTTP {response.status_code}",
                status_code=response.status_code,
            )
        return response.status_code

    def _headers(
        self,
        *,
        event: str,
        delivery_id: str,
        extra: dict[str, str] | None,
    ) -> dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "User-Agent": self._user_agent,
            "X-Webhook-Event": event,
            "X-Webhook-Delivery": delivery_id,
            "X-Webhook-Timestamp": self._clock.now().isoformat(),
        }
        if extra:
            headers.update(extra)
        return headers

    def _backoff_for(self, attempt: int) -> float:
        if not self.backoff_seconds:
            return 0.0
        index = min(attempt - 1, len(self.backoff_seconds) - 1)
        return max(0.0, self.backoff_seconds[index])
