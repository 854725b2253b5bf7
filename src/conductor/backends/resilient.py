from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any, TypeVar

from conductor.backends.base import (
    AgentBackend,
    AgentEvent,
    AgentResult,
    AgentRun,
    BackendExecutionError,
    BackendTimeoutError,
)

BackendEventHook = Callable[[dict[str, Any]], None]
T = TypeVar("T")


@dataclass(slots=True)
class RetryPolicy:
    max_retries: int = 1
    backoff_seconds: float = 0.5
    timeout_seconds: float = 1800.0


class ResilientBackend(AgentBackend):
    """Wraps primary/fallback backends with timeout, retry, and failover."""

    name = "resilient"

    def __init__(
        self,
        primary_name: str,
        primary_backend: AgentBackend,
        fallback_name: str,
        fallback_backend: AgentBackend,
        retry_policy: RetryPolicy,
        event_hook: BackendEventHook | None = None,
    ) -> None:
        self.primary_name = primary_name
        self.primary_backend = primary_backend
        self.fallback_name = fallback_name
        self.fallback_backend = fallback_backend
        self.retry_policy = retry_policy
        self.event_hook = event_hook

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    async def _with_timeout(self, call: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(call, timeout=self.retry_policy.timeout_seconds)
        except TimeoutError as exc:
            raise BackendTimeoutError(
                f"Backend request timed out after {self.retry_policy.timeout_seconds:.1f}s",
                retriable=True,
            ) from exc

    async def _execute_attempts(
        self,
        call_name: str,
        call: Callable[[AgentBackend], Awaitable[T]],
    ) -> T:
        attempts: list[tuple[str, AgentBackend]] = [(self.primary_name, self.primary_backend)]
        if self.fallback_name != self.primary_name:
            attempts.append((self.fallback_name, self.fallback_backend))

        errors: list[str] = []
        for index, (backend_name, backend) in enumerate(attempts):
            if index > 0:
                self._emit(
                    {
                        "event": "backend_failover_start",
                        "backend": backend_name,
                        "call": call_name,
                    }
                )
            for attempt in range(self.retry_policy.max_retries + 1):
                if attempt > 0:
                    delay = self.retry_policy.backoff_seconds * (2 ** (attempt - 1))
                    self._emit(
                        {
                            "event": "backend_retry",
                            "backend": backend_name,
                            "attempt": attempt,
                            "delay_seconds": delay,
                            "call": call_name,
                        }
                    )
                    await asyncio.sleep(delay)
                try:
                    outcome = await self._with_timeout(call(backend))
                    if backend_name != self.primary_name:
                        self._emit(
                            {
                                "event": "backend_fallback_success",
                                "backend": backend_name,
                                "attempt": attempt,
                                "call": call_name,
                            }
                        )
                    return outcome
                except BackendExecutionError as exc:
                    errors.append(f"{backend_name}[{attempt}]: {exc}")
                    self._emit(
                        {
                            "event": "backend_attempt_failed",
                            "backend": backend_name,
                            "attempt": attempt,
                            "call": call_name,
                            "error": str(exc),
                            "retriable": exc.retriable,
                        }
                    )
                    if not exc.retriable:
                        break

        summary = "; ".join(errors[-6:])
        raise BackendExecutionError(
            f"All backend attempts failed for {call_name}. {summary}",
            retriable=False,
        )

    async def deliver(self, prompt: str, handle: AgentRun, *, cwd: Path | None = None) -> AgentResult:
        return await self._execute_attempts(
            "deliver",
            lambda backend: backend.deliver(prompt, handle, cwd=cwd),
        )

    async def stream(self, prompt: str, *, cwd: Path | None = None) -> AsyncIterator[AgentEvent]:
        async def _collect(backend: AgentBackend) -> list[AgentEvent]:
            return [event async for event in backend.stream(prompt, cwd=cwd)]

        events = await self._execute_attempts("stream", _collect)
        for event in events:
            yield event
