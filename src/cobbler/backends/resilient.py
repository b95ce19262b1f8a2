from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass
from typing import Any

from cobbler.backends.base import AgentBackend, AgentTimeoutError, BackendExecutionError

BackendEventHook = Callable[[dict[str, Any]], None]

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class RetryPolicy:
    max_retries: int = 1
    backoff_seconds: float = 0.5
    timeout_seconds: float = 600.0

    def delay(self, attempt: int) -> float:
        """Exponential backoff before retry ``attempt`` (1-based)."""
        return self.backoff_seconds * (2 ** (attempt - 1))


@dataclass(slots=True)
class AttemptFailure:
    backend: str
    attempt: int
    error: str
    retriable: bool
    timed_out: bool = False

    def describe(self) -> str:
        return f"{self.backend}[{self.attempt}]: {self.error}"


class ResilientBackend(AgentBackend):
    """Runs an agent call on the primary backend, then the fallback.

    Every backend gets ``max_retries`` extra attempts with exponential backoff
    unless it fails with a non-retriable error. Each attempt is bounded by
    ``timeout_seconds`` and buffers its whole response, so output from a failed
    attempt is never yielded.
    """

    def __init__(
        self,
        primary_name: str,
        primary_backend: AgentBackend,
        fallback_name: str,
        fallback_backend: AgentBackend,
        retry_policy: RetryPolicy,
        event_hook: BackendEventHook | None = None,
        sleep: Callable[[float], Any] = asyncio.sleep,
    ) -> None:
        self.primary_name = primary_name
        self.primary_backend = primary_backend
        self.fallback_name = fallback_name
        self.fallback_backend = fallback_backend
        self.retry_policy = retry_policy
        self.event_hook = event_hook
        self._sleep = sleep

    def _backends(self) -> list[tuple[str, AgentBackend]]:
        if self.fallback_name == self.primary_name:
            return [(self.primary_name, self.primary_backend)]
        return [
            (self.primary_name, self.primary_backend),
            (self.fallback_name, self.fallback_backend),
        ]

    def _emit(self, event: str, backend: str, attempt: int, **details: Any) -> None:
        payload: dict[str, Any] = {"event": event, "backend": backend, "attempt": attempt}
        payload.update(details)
        if event == "backend_attempt_failed":
            logger.warning("%s attempt %s failed: %s", backend, attempt, details.get("error"))
        else:
            logger.info("%s on %s (attempt %s)", event, backend, attempt)
        if self.event_hook:
            self.event_hook(payload)

    async def _attempt(
        self,
        backend: AgentBackend,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
        tools: list[str] | None,
    ) -> list[str]:
        async def _drain() -> list[str]:
            return [
                chunk
                async for chunk in backend.execute(system_prompt, user_prompt, context, tools)
            ]

        timeout = self.retry_policy.timeout_seconds
        try:
            return await asyncio.wait_for(_drain(), timeout=timeout)
        except TimeoutError as exc:
            raise AgentTimeoutError(
                f"Agent request timed out after {timeout:.1f}s", retriable=True
            ) from exc

    async def _run_with_failover(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
        tools: list[str] | None,
    ) -> list[str]:
        failures: list[AttemptFailure] = []
        for name, backend in self._backends():
            for attempt in range(self.retry_policy.max_retries + 1):
                if attempt:
                    delay = self.retry_policy.delay(attempt)
                    self._emit("backend_retry", name, attempt, delay_seconds=delay)
                    await self._sleep(delay)
                try:
                    chunks = await self._attempt(
                        backend, system_prompt, user_prompt, context, tools
                    )
                except BackendExecutionError as exc:
                    failure = AttemptFailure(
                        backend=name,
                        attempt=attempt,
                        error=str(exc),
                        retriable=exc.retriable,
                        timed_out=isinstance(exc, AgentTimeoutError),
                    )
                except OSError as exc:
                    failure = AttemptFailure(
                        backend=name, attempt=attempt, error=str(exc), retriable=True
                    )
                else:
                    if name != self.primary_name:
                        self._emit("backend_fallback_success", name, attempt)
                    return chunks

                failures.append(failure)
                self._emit(
                    "backend_attempt_failed",
                    name,
                    attempt,
                    error=failure.error,
                    retriable=failure.retriable,
                )
                if not failure.retriable:
                    break

        summary = "; ".join(failure.describe() for failure in failures[-6:])
        error_type = (
            AgentTimeoutError if failures and failures[-1].timed_out else BackendExecutionError
        )
        raise error_type(f"All backend attempts failed. {summary}", retriable=False)

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
        tools: list[str] | None = None,
    ) -> AsyncIterator[str]:
        for chunk in await self._run_with_failover(system_prompt, user_prompt, context, tools):
            yield chunk
