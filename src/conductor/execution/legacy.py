"""Execution of tasks planned with a single TODO.md instead of a blueprint."""

from __future__ import annotations

import json
import logging
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from conductor.agents import ExecutorRole
from conductor.backends.base import AgentResult
from conductor.context import RunContext
from conductor.errors import AgentRunError, ExecutionRecordError
from conductor.execution.record import truncated_stack

logger = logging.getLogger(__name__)

NOT_IMPLEMENTED_LINE = "Fully implemented: NO"
IMPLEMENTED_LINE = "Fully implemented: YES"


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


def load_info(path: Path) -> dict[str, Any] | None:
    if not path.exists():
        return None
    try:
        info = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise ExecutionRecordError(f"Failed to parse {path}: {exc}") from exc
    if not isinstance(info, dict):
        raise ExecutionRecordError(f"{path} must contain a JSON object")
    return info


def save_info(path: Path, info: dict[str, Any]) -> None:
    path.write_text(json.dumps(info, ensure_ascii=False, indent=2) + "\n", encoding="utf-8")


def start_attempt(info: dict[str, Any] | None, *, re_researched: bool) -> dict[str, Any]:
    now = _utcnow_iso()
    if info is None:
        return {
            "firstRun": now,
            "lastRun": now,
            "attempts": 1,
            "lastError": None,
            "reResearched": False,
            "history": [{"timestamp": now, "attempt": 1, "reResearched": False}],
        }
    info["attempts"] = int(info.get("attempts") or 0) + 1
    info["lastError"] = None
    info["lastRun"] = now
    info["reResearched"] = re_researched or bool(info.get("reResearched"))
    info.setdefault("history", []).append(
        {"timestamp": now, "attempt": info["attempts"], "reResearched": re_researched}
    )
    return info


def escalation_messages(info: dict[str, Any] | None, limit: int) -> list[str]:
    if not info or limit <= 0:
        return []
    history = info.get("errorHistory") or []
    return [str(entry.get("message")) for entry in history[-limit:] if isinstance(entry, dict)]


def _set_declaration(todo_path: Path, line: str) -> None:
    if not todo_path.exists():
        return
    lines = todo_path.read_text(encoding="utf-8").split("\n")
    lines[0] = line
    todo_path.write_text("\n".join(lines), encoding="utf-8")


def mark_not_implemented(todo_path: Path) -> None:
    _set_declaration(todo_path, NOT_IMPLEMENTED_LINE)


def mark_implemented(todo_path: Path) -> None:
    _set_declaration(todo_path, IMPLEMENTED_LINE)


class LegacyExecutor:
    """Retries a TODO.md task with escalating context instead of phase gates."""

    def __init__(self, context: RunContext) -> None:
        self.context = context
        self.role = ExecutorRole(context.backend)

    async def run(self, task_id: str) -> AgentResult:
        context = self.context
        settings = context.config.execution
        task_dir = context.task_dir(task_id)
        info_path = task_dir / "info.json"
        todo_path = task_dir / "TODO.md"
        research_path = task_dir / "RESEARCH.md"

        previous = load_info(info_path)
        re_research = bool(
            previous
            and int(previous.get("attempts") or 0) >= settings.research_after_failures
            and previous.get("lastError")
        )
        if re_research:
            logger.warning(
                "%s has failed %s times, re-analyzing the approach", task_id, previous["attempts"]
            )
            if research_path.exists():
                research_path.replace(task_dir / "RESEARCH.old.md")

        review_path = task_dir / "CODE_REVIEW.md"
        if review_path.exists():
            review_path.unlink()

        escalation = escalation_messages(previous, settings.escalation_history)
        info = start_attempt(previous, re_researched=re_research)
        save_info(info_path, info)

        research = research_path.read_text(encoding="utf-8") if research_path.exists() else None
        context.registry.update_phase(task_id, "Executing TODO")
        try:
            run = self.role.start(
                self.role.legacy_instruction(task_id, todo_path, research, escalation),
                task_id=task_id,
                cwd=context.root,
            )
            context.announce_run(run)
            result = await run.result()
            if not result.ok:
                raise AgentRunError(result.error or f"Agent run for {task_id} reported failure")
        except Exception as exc:
            self._record_failure(info_path, todo_path, exc)
            raise
        if not context.quiet:
            logger.info("%s: legacy attempt %d finished", task_id, info["attempts"])
        return result

    def _record_failure(self, info_path: Path, todo_path: Path, exc: Exception) -> None:
        info = load_info(info_path) or {}
        now = _utcnow_iso()
        attempt = info.get("attempts")
        info["lastError"] = {"message": str(exc), "timestamp": now, "attempt": attempt}
        info.setdefault("errorHistory", []).append(
            {
                "timestamp": now,
                "attempt": attempt,
                "message": str(exc),
                "stack": truncated_stack(exc),
            }
        )
        save_info(info_path, info)
        mark_not_implemented(todo_path)
