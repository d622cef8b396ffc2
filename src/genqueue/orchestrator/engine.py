"""AI engine contract and a deterministic local engine."""

from __future__ import annotations

import time
from typing import Protocol

from genqueue.orchestrator.errors import ProviderError
from genqueue.orchestrator.models import AIRequest, AIResponse


class AIEngine(Protocol):
    """Provider call boundary used by the job runner."""

    def process(self, request: AIRequest) -> AIResponse:
        """Run one request; raise ``ProviderError`` on provider failure."""


class EchoEngine:
    """Local engine that echoes the prompt back.

    Request parameters steer its behaviour for demos and tests:

    - ``simulate_error``: raise ``ProviderError`` with this message.
    - ``simulate_delay_seconds``: sleep before answering.
    - ``simulate_unsuccessful``: return ``success=False``.
    """

    def __init__(self, *, credits_per_token: float = 0.001) -> None:
        self.credits_per_token = credits_per_token

    def process(self, request: AIRequest) -> AIResponse:
        params = request.parameters
        delay = float(params.get("simulate_delay_seconds", 0) or 0)
        if delay > 0:
            time.sleep(delay)

        error = params.get("simulate_error")
        if error:
            raise ProviderError(str(error), retryable=bool(params.get("retryable", False)))

        content = f"[{request.engine}/{request.model}] {request.prompt}"
        if request.max_tokens is not None:
            content = content[: max(0, request.max_tokens)]
        tokens_used = len(request.prompt.split())

        if params.get("simulate_unsuccessful"):
            return AIResponse(
                content="",
                engine=request.engine,
                model=request.model,
                success=False,
                error=str(params["simulate_unsuccessful"]),
            )

        return AIResponse(
            content=content,
            engine=request.engine,
            model=request.model,
            tokens_used=tokens_used,
            credits_used=round(tokens_used * self.credits_per_token * request.cost_units, 6),
        )
