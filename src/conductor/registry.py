from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from typing import Literal

logger = logging.getLogger(__name__)

TaskStatus = Literal["pending", "running", "completed", "failed"]
TASK_STATUSES = ("pending", "running", "completed", "failed")
MESSAGE_LIMIT = 100

StateListener = Callable[["TaskRuntimeState"], None]


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


def truncate_message(message: str | None, limit: int = MESSAGE_LIMIT) -> str | None:
    if message is None:
        return None
    text = " ".join(str(message).split())
    if len(text) > limit:
        return text[:limit] + "..."
    return text


@dataclass(slots=True)
class TaskRuntimeState:
    task_id: str
    status: TaskStatus = "pending"
    phase: str | None = None
    message: str | None = None
    updated_at: str = field(default_factory=_utcnow_iso)

    def to_dict(self) -> dict[str, str | None]:
        return {
            "task_id": self.task_id,
            "status": self.status,
            "phase": self.phase,
            "message": self.message,
            "updated_at": self.updated_at,
        }


class TaskStateRegistry:
    """In-process store of per-task runtime state.

    Every entry has a single writer (the pipeline running that task); readers
    get copies. All access happens on the event loop thread, so no locking is
    needed.
    """

    def __init__(self) -> None:
        self._states: dict[str, TaskRuntimeState] = {}
        self._display_attached = False
        self._listeners: list[StateListener] = []

    def initialize(self, task_ids: Iterable[str], completed: Iterable[str] = ()) -> None:
        done = set(completed)
        self._states = {
            task_id: TaskRuntimeState(
                task_id=task_id,
                status="completed" if task_id in done else "pending",
            )
            for task_id in task_ids
        }

    def register(self, task_id: str, status: TaskStatus = "pending") -> TaskRuntimeState:
        self._validate_status(status)
        state = self._states.get(task_id)
        if state is None:
            state = TaskRuntimeState(task_id=task_id, status=status)
            self._states[task_id] = state
            self._notify(state)
        return replace(state)

    @staticmethod
    def _validate_status(status: str) -> None:
        if status not in TASK_STATUSES:
            raise ValueError(f"Unsupported task status: {status}")

    def _entry(self, task_id: str) -> TaskRuntimeState | None:
        state = self._states.get(task_id)
        if state is None:
            logger.warning("Ignoring update for unknown task %s", task_id)
        return state

    def _notify(self, state: TaskRuntimeState) -> None:
        for listener in list(self._listeners):
            listener(replace(state))

    def update_status(self, task_id: str, status: TaskStatus, message: str | None = None) -> None:
        self._validate_status(status)
        state = self._entry(task_id)
        if state is None:
            return
        state.status = status
        if status in {"completed", "failed"}:
            state.phase = None
        if message is not None:
            state.message = truncate_message(message)
        state.updated_at = _utcnow_iso()
        self._notify(state)

    def update_phase(self, task_id: str, phase: str | None) -> None:
        state = self._entry(task_id)
        if state is None:
            return
        state.phase = phase
        state.updated_at = _utcnow_iso()
        self._notify(state)

    def update_message(self, task_id: str, message: str | None) -> None:
        state = self._entry(task_id)
        if state is None:
            return
        state.message = truncate_message(message)
        state.updated_at = _utcnow_iso()
        self._notify(state)

    def get(self, task_id: str) -> TaskRuntimeState | None:
        state = self._states.get(task_id)
        return replace(state) if state is not None else None

    def snapshot(self) -> list[TaskRuntimeState]:
        return [replace(state) for state in self._states.values()]

    def ids_with_status(self, status: TaskStatus) -> list[str]:
        return [task_id for task_id, state in self._states.items() if state.status == status]

    def running_count(self) -> int:
        return len(self.ids_with_status("running"))

    def counts(self) -> dict[str, int]:
        totals = {status: 0 for status in TASK_STATUSES}
        for state in self._states.values():
            totals[state.status] += 1
        return totals

    def add_listener(self, listener: StateListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: StateListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def attach_display(self) -> None:
        self._display_attached = True

    def detach_display(self) -> None:
        self._display_attached = False

    @property
    def display_attached(self) -> bool:
        return self._display_attached

    def __contains__(self, task_id: object) -> bool:
        return task_id in self._states

    def __len__(self) -> int:
        return len(self._states)
