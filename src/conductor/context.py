from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from conductor.backends import (
    AgentBackend,
    AgentRun,
    ClaudeCodeBackend,
    CodexBackend,
    CodexSDKBackend,
    ResilientBackend,
    RetryPolicy,
)
from conductor.config import BackendName, ConductorConfig
from conductor.registry import TaskStateRegistry

logger = logging.getLogger(__name__)

EventHook = Callable[[dict[str, Any]], None]


def _build_single_backend(
    backend_name: BackendName,
    repo_root: Path,
    model: str | None,
    event_hook: EventHook | None = None,
) -> AgentBackend:
    if backend_name == "codex":
        return CodexBackend(working_directory=repo_root, model=model, event_hook=event_hook)
    if backend_name == "codex_sdk":
        if model:
            return CodexSDKBackend(model=model, working_directory=repo_root)
        return CodexSDKBackend(working_directory=repo_root)
    return ClaudeCodeBackend(working_directory=repo_root, model=model)


def build_backend(
    config: ConductorConfig,
    repo_root: Path,
    event_hook: EventHook | None = None,
) -> ResilientBackend:
    model = config.backend.model or None
    policy = RetryPolicy(
        max_retries=max(0, int(config.backend.max_retries)),
        backoff_seconds=max(0.0, float(config.backend.retry_backoff_seconds)),
        timeout_seconds=max(5.0, float(config.backend.timeout_seconds)),
    )
    return ResilientBackend(
        primary_name=config.backend.primary,
        primary_backend=_build_single_backend(config.backend.primary, repo_root, model, event_hook),
        fallback_name=config.backend.fallback,
        fallback_backend=_build_single_backend(config.backend.fallback, repo_root, model, event_hook),
        retry_policy=policy,
        event_hook=event_hook,
    )


@dataclass(slots=True)
class RunContext:
    """Everything one orchestration run shares, passed explicitly.

    Several contexts may coexist in a process; nothing here is global.
    """

    root: Path
    config: ConductorConfig
    backend: AgentBackend
    registry: TaskStateRegistry = field(default_factory=TaskStateRegistry)
    event_hook: EventHook | None = None
    run_listeners: list[Callable[[AgentRun], None]] = field(default_factory=list)

    @classmethod
    def from_config(
        cls,
        root: Path,
        config: ConductorConfig,
        *,
        backend: AgentBackend | None = None,
        registry: TaskStateRegistry | None = None,
        event_hook: EventHook | None = None,
    ) -> RunContext:
        root = root.resolve()
        return cls(
            root=root,
            config=config,
            backend=backend if backend is not None else build_backend(config, root, event_hook),
            registry=registry if registry is not None else TaskStateRegistry(),
            event_hook=event_hook,
        )

    @property
    def workspace(self) -> Path:
        return self.root / self.config.project.workspace_dir

    def task_dir(self, task_id: str) -> Path:
        return self.workspace / task_id

    def emit(self, payload: dict[str, Any]) -> None:
        if self.event_hook is not None:
            self.event_hook(payload)

    @property
    def quiet(self) -> bool:
        return self.registry.display_attached

    def announce_run(self, run: AgentRun) -> None:
        """Hand a fresh delegation to observers that stream its events."""
        for listener in list(self.run_listeners):
            listener(run)
