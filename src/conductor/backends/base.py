from __future__ import annotations

import asyncio
import time
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal

EventKind = Literal["progress", "tool", "result"]


class BackendExecutionError(RuntimeError):
    """Raised when a backend process execution fails."""

    def __init__(
        self,
        message: str,
        *,
        backend: str | None = None,
        exit_code: int | None = None,
        retriable: bool = True,
    ) -> None:
        super().__init__(message)
        self.backend = backend
        self.exit_code = exit_code
        self.retriable = retriable


class BackendTimeoutError(BackendExecutionError):
    """Raised when backend execution exceeds configured timeout."""


class BackendProcessError(BackendExecutionError):
    """Raised when backend process lifecycle fails."""


@dataclass(slots=True)
class AgentEvent:
    kind: EventKind
    text: str = ""
    data: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class AgentResult:
    ok: bool
    duration_seconds: float = 0.0
    cost_usd: float | None = None
    summary: str = ""
    error: str | None = None
    created_files: list[str] = field(default_factory=list)
    modified_files: list[str] = field(default_factory=list)


class AgentRun:
    """Handle for one delegation.

    ``events()`` yields progress events as they arrive (finite, consumable
    once). ``result()`` resolves to the terminal ``AgentResult`` or raises the
    backend error. Events are buffered, so awaiting the result never depends on
    anyone draining the stream.
    """

    def __init__(
        self,
        task_id: str,
        deliver: Callable[[AgentRun], Awaitable[AgentResult]],
    ) -> None:
        self.task_id = task_id
        self._queue: asyncio.Queue[AgentEvent | None] = asyncio.Queue()
        self._consumed = False
        self._future: asyncio.Task[AgentResult] = asyncio.create_task(self._drive(deliver))

    async def _drive(self, deliver: Callable[[AgentRun], Awaitable[AgentResult]]) -> AgentResult:
        try:
            return await deliver(self)
        finally:
            self._queue.put_nowait(None)

    def emit(self, event: AgentEvent) -> None:
        self._queue.put_nowait(event)

    async def events(self) -> AsyncIterator[AgentEvent]:
        if self._consumed:
            raise RuntimeError(f"Event stream for {self.task_id} was already consumed.")
        self._consumed = True
        while True:
            event = await self._queue.get()
            if event is None:
                return
            yield event

    async def result(self) -> AgentResult:
        return await self._future

    def done(self) -> bool:
        return self._future.done()


class AgentBackend(ABC):
    name: str = "agent"

    @abstractmethod
    def stream(self, prompt: str, *, cwd: Path | None = None) -> AsyncIterator[AgentEvent]:
        """Run the agent on ``prompt`` and stream its events."""

    def start(self, prompt: str, *, task_id: str, cwd: Path | None = None) -> AgentRun:
        """Launch a delegation; must be called from a running event loop."""
        return AgentRun(task_id, lambda handle: self.deliver(prompt, handle, cwd=cwd))

    async def deliver(self, prompt: str, handle: AgentRun, *, cwd: Path | None = None) -> AgentResult:
        started = time.monotonic()
        created: list[str] = []
        modified: list[str] = []
        terminal: AgentEvent | None = None
        async for event in self.stream(prompt, cwd=cwd):
            handle.emit(event)
            for path in event.data.get("created", []):
                if path not in created:
                    created.append(path)
            for path in event.data.get("modified", []):
                if path not in modified and path not in created:
                    modified.append(path)
            if event.kind == "result":
                terminal = event
        return build_result(terminal, time.monotonic() - started, created, modified)


def build_result(
    terminal: AgentEvent | None,
    elapsed_seconds: float,
    created: list[str],
    modified: list[str],
) -> AgentResult:
    if terminal is None:
        return AgentResult(
            ok=True,
            duration_seconds=elapsed_seconds,
            created_files=created,
            modified_files=modified,
        )
    data = terminal.data
    duration = data.get("duration_seconds")
    cost = data.get("cost_usd")
    return AgentResult(
        ok=bool(data.get("ok", True)),
        duration_seconds=float(duration) if isinstance(duration, int | float) else elapsed_seconds,
        cost_usd=float(cost) if isinstance(cost, int | float) else None,
        summary=terminal.text,
        error=data.get("error") if isinstance(data.get("error"), str) else None,
        created_files=created,
        modified_files=modified,
    )
