"""Plain-text approval markers that mark a task as done."""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from pathlib import Path

DECLARATION_PATTERN = re.compile(r"fully implemented:\s*yes", re.IGNORECASE)
DECLARATION_SCAN_LINES = 10


@dataclass(slots=True)
class CompletionProbe:
    completed: bool
    confidence: float
    reason: str


def is_fully_implemented(todo_path: Path) -> bool:
    """True when one of the first lines declares ``Fully implemented: YES``.

    Bullet lines (``- Fully implemented: YES``) are checklist items, not the
    declaration, and are ignored.
    """
    if not todo_path.is_file():
        return False
    lines = todo_path.read_text(encoding="utf-8", errors="replace").splitlines()
    for line in lines[:DECLARATION_SCAN_LINES]:
        stripped = line.strip()
        if stripped.startswith("-"):
            continue
        if DECLARATION_PATTERN.search(stripped):
            return True
    return False


def has_approved_code_review(review_path: Path) -> bool:
    if not review_path.is_file():
        return False
    lines = review_path.read_text(encoding="utf-8", errors="replace").splitlines()
    status_index = next(
        (index for index, line in enumerate(lines) if line.strip().lower() == "## status"),
        None,
    )
    if status_index is None:
        return False
    for line in lines[status_index + 1 :]:
        value = line.strip()
        if not value:
            continue
        return "approved" in value.lower()
    return False


def is_completed_from_execution(execution_path: Path) -> CompletionProbe:
    if not execution_path.is_file():
        return CompletionProbe(False, 1.0, "execution.json not found")
    try:
        execution = json.loads(execution_path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        return CompletionProbe(False, 0.5, f"Failed to parse execution.json: {exc}")
    if not isinstance(execution, dict):
        return CompletionProbe(False, 0.5, "execution.json is not an object")

    completion = execution.get("completion")
    if isinstance(completion, dict) and completion.get("status") == "completed":
        return CompletionProbe(True, 1.0, "completion.status is completed")
    if execution.get("status") == "completed":
        return CompletionProbe(True, 0.9, "status is completed")
    if execution.get("status") == "blocked":
        return CompletionProbe(False, 1.0, "status is blocked")
    phases = execution.get("phases") or []
    if phases and all(isinstance(p, dict) and p.get("status") == "completed" for p in phases):
        return CompletionProbe(True, 0.85, "all phases completed")
    return CompletionProbe(False, 0.8, "task still in progress")


def is_implemented(task_dir: Path) -> bool:
    """Implementation half of approval: the TODO declaration, or for tasks
    planned with a blueprint and no TODO.md, a completed execution record."""
    todo_path = task_dir / "TODO.md"
    if todo_path.exists():
        return is_fully_implemented(todo_path)
    if (task_dir / "BLUEPRINT.md").exists():
        probe = is_completed_from_execution(task_dir / "execution.json")
        return probe.completed and probe.confidence >= 0.9
    return False


def is_task_approved(task_dir: Path) -> bool:
    if not task_dir.is_dir():
        return False
    if not is_implemented(task_dir):
        return False
    return has_approved_code_review(task_dir / "CODE_REVIEW.md")
