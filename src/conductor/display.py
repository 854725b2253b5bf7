from __future__ import annotations

import asyncio
from collections.abc import Callable

from conductor.backends.base import AgentRun
from conductor.context import RunContext
from conductor.registry import TaskRuntimeState

Writer = Callable[[str], None]


def format_state(state: TaskRuntimeState) -> str:
    line = f"[{state.task_id}] {state.status}"
    if state.phase:
        line += f" | {state.phase}"
    if state.message:
        line += f" | {state.message}"
    return line


class WatchDisplay:
    """Plain-text live view: registry changes plus streamed agent events."""

    def __init__(self, context: RunContext, writer: Writer) -> None:
        self.context = context
        self.writer = writer
        self._drains: list[asyncio.Task[None]] = []

    def __enter__(self) -> WatchDisplay:
        self.context.registry.attach_display()
        self.context.registry.add_listener(self._on_state)
        self.context.run_listeners.append(self._on_run)
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.context.registry.detach_display()
        self.context.registry.remove_listener(self._on_state)
        if self._on_run in self.context.run_listeners:
            self.context.run_listeners.remove(self._on_run)

    def _on_state(self, state: TaskRuntimeState) -> None:
        self.writer(format_state(state))

    def _on_run(self, run: AgentRun) -> None:
        self._drains.append(asyncio.create_task(self._drain(run)))

    async def _drain(self, run: AgentRun) -> None:
        async for event in run.events():
            if event.kind == "result" or not event.text:
                continue
            self.writer(f"  {run.task_id} > {event.text.strip()[:160]}")

    async def flush(self) -> None:
        """Wait for every event stream to reach its end."""
        if self._drains:
            await asyncio.gather(*self._drains)
            self._drains.clear()
