from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from conductor.agents import PlannerRole, ReviewerRole
from conductor.backends.base import BackendExecutionError
from conductor.context import RunContext
from conductor.errors import (
    AgentRunError,
    ConductorError,
    PreconditionFailedError,
    TaskAttemptsExhausted,
    TaskBlockedError,
    ValidationFailedError,
)
from conductor.execution import LegacyExecutor, TaskExecutor, load_execution, save_execution
from conductor.execution.legacy import mark_implemented, mark_not_implemented
from conductor.graph import DependencyGraph, natural_key
from conductor.validation import is_fully_implemented, is_task_approved

logger = logging.getLogger(__name__)

RETRIABLE_ERRORS = (ConductorError, BackendExecutionError, OSError)
REVIEW_REJECTED_NOTE = "Code review requested changes; read CODE_REVIEW.md and address every point."


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


@dataclass(slots=True)
class StalledTask:
    task_id: str
    unmet: list[str]
    missing: list[str] = field(default_factory=list)

    def describe(self) -> str:
        parts = [
            f"{dep} (does not exist in graph)" if dep in self.missing else dep for dep in self.unmet
        ]
        return f"{self.task_id} waiting on {', '.join(parts) or 'nothing'}"

    def to_dict(self) -> dict[str, Any]:
        return {"task_id": self.task_id, "unmet": list(self.unmet), "missing": list(self.missing)}


@dataclass(slots=True)
class RunSummary:
    started_at: str
    ended_at: str
    completed: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    pending: list[str] = field(default_factory=list)
    stalled: list[StalledTask] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed and not self.pending

    def to_dict(self) -> dict[str, Any]:
        return {
            "started_at": self.started_at,
            "ended_at": self.ended_at,
            "completed": list(self.completed),
            "failed": list(self.failed),
            "pending": list(self.pending),
            "stalled": [task.to_dict() for task in self.stalled],
        }


class TaskPipeline:
    """Plan, implement and review one task until it is approved."""

    def __init__(self, context: RunContext) -> None:
        self.context = context
        self.executor = TaskExecutor(context)
        self.legacy = LegacyExecutor(context)
        self.planner = PlannerRole(context.backend)
        self.reviewer = ReviewerRole(context.backend)

    @staticmethod
    def is_implemented(task_dir: Path) -> bool:
        if (task_dir / "BLUEPRINT.md").exists():
            execution_path = task_dir / "execution.json"
            if not execution_path.exists():
                return False
            return load_execution(execution_path)["status"] == "completed"
        return is_fully_implemented(task_dir / "TODO.md")

    @staticmethod
    def has_plan(task_dir: Path) -> bool:
        return (task_dir / "BLUEPRINT.md").exists() or (task_dir / "TODO.md").exists()

    async def _delegate(self, role: PlannerRole | ReviewerRole, instruction: str, task_id: str) -> None:
        run = role.start(instruction, task_id=task_id, cwd=self.context.root)
        self.context.announce_run(run)
        result = await run.result()
        if not result.ok:
            raise AgentRunError(result.error or f"{role.role} run for {task_id} reported failure")

    async def plan(self, task_id: str, task_dir: Path) -> None:
        self.context.registry.update_phase(task_id, "Planning")
        definition = (task_dir / "TASK.md").read_text(encoding="utf-8")
        await self._delegate(self.planner, self.planner.instruction(task_id, definition, task_dir), task_id)
        if not self.has_plan(task_dir):
            raise ConductorError(f"Planning for {task_id} produced neither BLUEPRINT.md nor TODO.md")

    async def implement(self, task_id: str, task_dir: Path) -> None:
        if (task_dir / "BLUEPRINT.md").exists():
            outcome = await self.executor.run(task_id)
            if not outcome.completed:
                raise ValidationFailedError(
                    f"Validation pending for {task_id}: " + ", ".join(outcome.remediation),
                    category=outcome.remediation[0] if outcome.remediation else "completion_rules",
                )
            mark_implemented(task_dir / "TODO.md")
        else:
            await self.legacy.run(task_id)

    async def review(self, task_id: str, task_dir: Path) -> None:
        self.context.registry.update_phase(task_id, "Reviewing")
        await self._delegate(self.reviewer, self.reviewer.instruction(task_id, task_dir), task_id)

    def reopen(self, task_dir: Path) -> None:
        """Send a rejected task back to implementation."""
        execution_path = task_dir / "execution.json"
        if (task_dir / "BLUEPRINT.md").exists() and execution_path.exists():
            record = load_execution(execution_path)
            record["status"] = "in_progress"
            completion = record.setdefault("completion", {})
            completion["status"] = "pending_validation"
            completion["validationNotes"] = [REVIEW_REJECTED_NOTE]
            save_execution(execution_path, record)
        mark_not_implemented(task_dir / "TODO.md")

    async def run(self, task_id: str) -> None:
        context = self.context
        settings = context.config.scheduler
        task_dir = context.task_dir(task_id)
        if is_task_approved(task_dir):
            return

        ceiling = None if settings.no_limit else max(1, settings.max_attempts_per_task)
        attempt = 0
        last_error: str | None = None
        while ceiling is None or attempt < ceiling:
            attempt += 1
            try:
                if not self.has_plan(task_dir):
                    await self.plan(task_id, task_dir)
                if not self.is_implemented(task_dir):
                    await self.implement(task_id, task_dir)
                    if not self.is_implemented(task_dir):
                        last_error = "implementation not complete"
                        continue
                if not is_task_approved(task_dir):
                    await self.review(task_id, task_dir)
                if is_task_approved(task_dir):
                    return
                last_error = "code review did not approve the task"
                self.reopen(task_dir)
            except TaskBlockedError:
                raise
            except PreconditionFailedError as exc:
                if exc.blocked:
                    raise
                last_error = str(exc)
                self._retrying(task_id, attempt, exc)
            except RETRIABLE_ERRORS as exc:
                last_error = str(exc)
                self._retrying(task_id, attempt, exc)
            else:
                continue
            if settings.retry_delay_seconds > 0:
                await asyncio.sleep(settings.retry_delay_seconds)

        raise TaskAttemptsExhausted(task_id, attempt, last_error)

    def _retrying(self, task_id: str, attempt: int, exc: Exception) -> None:
        logger.warning("%s attempt %d failed: %s", task_id, attempt, exc)
        self.context.registry.update_message(task_id, f"Attempt {attempt} failed: {exc}")
        self.context.emit(
            {"event": "task_retry", "task_id": task_id, "attempt": attempt, "error": str(exc)}
        )


class DagScheduler:
    """Runs task pipelines in dependency order under a concurrency bound."""

    def __init__(
        self,
        context: RunContext,
        graph: DependencyGraph,
        *,
        max_concurrent: int | None = None,
        pipeline: TaskPipeline | None = None,
    ) -> None:
        self.context = context
        self.graph = graph
        if max_concurrent is None and not context.config.scheduler.unlimited_concurrency:
            max_concurrent = context.config.scheduler.max_concurrent
        if max_concurrent is not None and max_concurrent < 1:
            raise ValueError("max_concurrent must be >= 1, or None for no limit")
        self.max_concurrent = max_concurrent
        self.pipeline = pipeline if pipeline is not None else TaskPipeline(context)

    def _slots(self, running: int, ready: int) -> int:
        if self.max_concurrent is None:
            return ready
        return max(0, self.max_concurrent - running)

    def stall_report(self, approved: set[str], failed: set[str]) -> list[StalledTask]:
        known = set(self.graph.roster)
        stalled: list[StalledTask] = []
        for node in self.graph.nodes:
            if node.task_id in approved or node.task_id in failed:
                continue
            unmet = sorted((dep for dep in node.dependencies if dep not in approved), key=natural_key)
            stalled.append(
                StalledTask(node.task_id, unmet, [dep for dep in unmet if dep not in known])
            )
        return stalled

    async def run(self) -> RunSummary:
        context = self.context
        registry = context.registry
        started_at = _utcnow_iso()
        approved = set(self.graph.approved_ids())
        failed: set[str] = set()
        registry.initialize(self.graph.roster, completed=approved)
        running: dict[asyncio.Task[None], str] = {}

        while True:
            ready = self.graph.ready(approved, exclude=set(running.values()) | failed)
            for task_id in ready[: self._slots(len(running), len(ready))]:
                registry.update_status(task_id, "running", "Starting")
                context.emit({"event": "task_started", "task_id": task_id})
                if not context.quiet:
                    logger.info("Starting %s", task_id)
                running[asyncio.create_task(self.pipeline.run(task_id))] = task_id

            if not running:
                break

            done, _ = await asyncio.wait(running, return_when=asyncio.FIRST_COMPLETED)
            for finished in done:
                task_id = running.pop(finished)
                error = finished.exception()
                if error is None:
                    approved.add(task_id)
                    registry.update_status(task_id, "completed", "Approved")
                    context.emit({"event": "task_completed", "task_id": task_id})
                    if not context.quiet:
                        logger.info("%s completed", task_id)
                else:
                    failed.add(task_id)
                    registry.update_status(task_id, "failed", str(error))
                    context.emit({"event": "task_failed", "task_id": task_id, "error": str(error)})
                    logger.error("%s failed: %s", task_id, error, exc_info=error)

        stalled = self.stall_report(approved, failed)
        if stalled:
            for task in stalled:
                logger.warning("Stalled: %s", task.describe())
            context.emit(
                {"event": "stall_detected", "tasks": [task.to_dict() for task in stalled]}
            )

        roster = self.graph.roster
        return RunSummary(
            started_at=started_at,
            ended_at=_utcnow_iso(),
            completed=[task_id for task_id in roster if task_id in approved],
            failed=[task_id for task_id in roster if task_id in failed],
            pending=[task.task_id for task in stalled],
            stalled=stalled,
        )
