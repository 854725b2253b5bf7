import asyncio
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

import pytest

from conductor.backends.base import AgentBackend, AgentEvent
from conductor.config import ConductorConfig
from conductor.context import RunContext
from conductor.errors import ConductorError, PreconditionFailedError, TaskAttemptsExhausted
from conductor.execution import ExecutionOutcome
from conductor.graph import build_graph
from conductor.scheduler import DagScheduler, StalledTask, TaskPipeline

APPROVED_REVIEW = "# Review\n\n## Status\n\nAPPROVED\n"


class IdleBackend(AgentBackend):
    async def stream(self, prompt: str, *, cwd: Path | None = None) -> AsyncIterator[AgentEvent]:
        _ = prompt, cwd
        yield AgentEvent(kind="result", data={"ok": True})


class TrackingPipeline:
    """Counts how many tasks are in flight at once."""

    def __init__(self, fail: set[str] | None = None, delay: float = 0.01) -> None:
        self.fail = fail or set()
        self.delay = delay
        self.active = 0
        self.peak = 0
        self.started: list[str] = []
        self.finished: list[str] = []

    async def run(self, task_id: str) -> None:
        self.started.append(task_id)
        self.active += 1
        self.peak = max(self.peak, self.active)
        try:
            await asyncio.sleep(self.delay)
            if task_id in self.fail:
                raise ConductorError(f"{task_id} exploded")
        finally:
            self.active -= 1
        self.finished.append(task_id)


def _context(tmp_path: Path, events: list[dict[str, Any]] | None = None, **scheduler: Any) -> RunContext:
    config = ConductorConfig.default()
    config.scheduler.retry_delay_seconds = 0.0
    for key, value in scheduler.items():
        setattr(config.scheduler, key, value)
    return RunContext.from_config(
        tmp_path,
        config,
        backend=IdleBackend(),
        event_hook=events.append if events is not None else None,
    )


def _independent(count: int) -> dict[str, str]:
    return {f"TASK{index}": "" for index in range(1, count + 1)}


@pytest.mark.parametrize("bound", [1, 2, 3])
def test_concurrency_never_exceeds_the_bound(tmp_path: Path, bound: int) -> None:
    pipeline = TrackingPipeline()
    scheduler = DagScheduler(
        _context(tmp_path), build_graph(_independent(6)), max_concurrent=bound, pipeline=pipeline
    )

    summary = asyncio.run(scheduler.run())

    assert pipeline.peak == bound
    assert summary.ok is True
    assert summary.completed == [f"TASK{index}" for index in range(1, 7)]


def test_unlimited_concurrency_launches_every_ready_task(tmp_path: Path) -> None:
    pipeline = TrackingPipeline()
    context = _context(tmp_path, unlimited_concurrency=True)
    scheduler = DagScheduler(context, build_graph(_independent(5)), pipeline=pipeline)

    asyncio.run(scheduler.run())

    assert scheduler.max_concurrent is None
    assert pipeline.peak == 5


def test_config_bound_is_used_by_default(tmp_path: Path) -> None:
    scheduler = DagScheduler(
        _context(tmp_path, max_concurrent=3), build_graph(_independent(2)), pipeline=TrackingPipeline()
    )

    assert scheduler.max_concurrent == 3
    with pytest.raises(ValueError):
        DagScheduler(_context(tmp_path), build_graph(_independent(1)), max_concurrent=0)


def test_dependents_start_only_after_dependencies_finish(tmp_path: Path) -> None:
    pipeline = TrackingPipeline()
    graph = build_graph(
        {
            "TASK1": "",
            "TASK2": "@dependencies [TASK1]",
            "TASK3": "@dependencies [TASK1, TASK2]",
        }
    )

    summary = asyncio.run(DagScheduler(_context(tmp_path), graph, max_concurrent=4, pipeline=pipeline).run())

    assert pipeline.started == ["TASK1", "TASK2", "TASK3"]
    assert pipeline.finished == ["TASK1", "TASK2", "TASK3"]
    assert summary.completed == ["TASK1", "TASK2", "TASK3"]


def test_approved_tasks_are_not_relaunched(tmp_path: Path) -> None:
    pipeline = TrackingPipeline()
    graph = build_graph({"TASK1": "", "TASK2": "@dependencies [TASK1]"}, approved=["TASK1"])
    context = _context(tmp_path)

    summary = asyncio.run(DagScheduler(context, graph, pipeline=pipeline).run())

    assert pipeline.started == ["TASK2"]
    assert summary.completed == ["TASK1", "TASK2"]
    assert context.registry.get("TASK1").status == "completed"


def test_failures_stall_dependents_and_are_reported(tmp_path: Path) -> None:
    events: list[dict[str, Any]] = []
    pipeline = TrackingPipeline(fail={"TASK1"})
    context = _context(tmp_path, events)
    graph = build_graph(
        {
            "TASK1": "",
            "TASK2": "@dependencies [TASK1]",
            "TASK3": "",
        }
    )

    summary = asyncio.run(DagScheduler(context, graph, pipeline=pipeline).run())

    assert summary.ok is False
    assert summary.failed == ["TASK1"]
    assert summary.completed == ["TASK3"]
    assert summary.pending == ["TASK2"]
    assert summary.stalled[0].describe() == "TASK2 waiting on TASK1"
    assert context.registry.get("TASK1").status == "failed"
    assert context.registry.get("TASK2").status == "pending"
    names = [event["event"] for event in events]
    assert names.count("task_started") == 2
    assert "task_failed" in names
    assert names[-1] == "stall_detected"
    assert summary.to_dict()["stalled"] == [{"task_id": "TASK2", "unmet": ["TASK1"], "missing": []}]


def test_unknown_dependencies_are_named_in_the_stall_report(tmp_path: Path) -> None:
    graph = build_graph({"TASK1": "@dependencies [TASK9, TASK2]", "TASK2": ""})

    summary = asyncio.run(DagScheduler(_context(tmp_path), graph, pipeline=TrackingPipeline()).run())

    assert summary.completed == ["TASK2"]
    assert summary.stalled[0].describe() == "TASK1 waiting on TASK9 (does not exist in graph)"


def test_stalled_task_description() -> None:
    stalled = StalledTask("TASK4", ["TASK2", "TASK10"], ["TASK10"])

    assert stalled.describe() == "TASK4 waiting on TASK2, TASK10 (does not exist in graph)"


class ScriptedPipeline(TaskPipeline):
    def __init__(self, context: RunContext, failures: list[Exception], reviews: list[str]) -> None:
        super().__init__(context)
        self.failures = failures
        self.reviews = reviews
        self.implement_calls = 0
        self.review_calls = 0

    async def plan(self, task_id: str, task_dir: Path) -> None:
        (task_dir / "TODO.md").write_text("Fully implemented: NO\n- [ ] work\n", encoding="utf-8")

    async def implement(self, task_id: str, task_dir: Path) -> None:
        self.implement_calls += 1
        if self.failures:
            raise self.failures.pop(0)
        (task_dir / "TODO.md").write_text("Fully implemented: YES\n- [x] work\n", encoding="utf-8")

    async def review(self, task_id: str, task_dir: Path) -> None:
        self.review_calls += 1
        verdict = self.reviews.pop(0) if self.reviews else "APPROVED"
        (task_dir / "CODE_REVIEW.md").write_text(f"## Status\n\n{verdict}\n", encoding="utf-8")


def _task_dir(context: RunContext) -> Path:
    task_dir = context.task_dir("TASK1")
    task_dir.mkdir(parents=True)
    (task_dir / "TASK.md").write_text("# Greeting\n", encoding="utf-8")
    return task_dir


def test_pipeline_retries_errors_until_approved(tmp_path: Path) -> None:
    events: list[dict[str, Any]] = []
    context = _context(tmp_path, events)
    context.registry.initialize(["TASK1"])
    _task_dir(context)
    pipeline = ScriptedPipeline(context, [ConductorError("flaky"), OSError("disk")], [])

    asyncio.run(pipeline.run("TASK1"))

    assert pipeline.implement_calls == 3
    assert pipeline.review_calls == 1
    assert [event["attempt"] for event in events if event["event"] == "task_retry"] == [1, 2]
    assert context.registry.get("TASK1").message == "Attempt 2 failed: disk"


def test_rejected_review_reopens_the_task(tmp_path: Path) -> None:
    context = _context(tmp_path)
    task_dir = _task_dir(context)
    pipeline = ScriptedPipeline(context, [], ["REJECTED: missing tests"])

    asyncio.run(pipeline.run("TASK1"))

    assert pipeline.implement_calls == 2
    assert pipeline.review_calls == 2
    assert (task_dir / "CODE_REVIEW.md").read_text(encoding="utf-8").endswith("APPROVED\n")


def test_pipeline_gives_up_after_the_attempt_ceiling(tmp_path: Path) -> None:
    context = _context(tmp_path, max_attempts_per_task=3)
    _task_dir(context)
    pipeline = ScriptedPipeline(context, [ConductorError(f"boom {index}") for index in range(10)], [])

    with pytest.raises(TaskAttemptsExhausted) as excinfo:
        asyncio.run(pipeline.run("TASK1"))

    assert pipeline.implement_calls == 3
    assert excinfo.value.attempts == 3
    assert excinfo.value.last_error == "boom 2"


def test_no_limit_keeps_retrying_past_the_ceiling(tmp_path: Path) -> None:
    context = _context(tmp_path, max_attempts_per_task=2, no_limit=True)
    _task_dir(context)
    pipeline = ScriptedPipeline(context, [ConductorError(f"boom {index}") for index in range(5)], [])

    asyncio.run(pipeline.run("TASK1"))

    assert pipeline.implement_calls == 6


def test_blocked_preconditions_are_not_retried(tmp_path: Path) -> None:
    context = _context(tmp_path)
    _task_dir(context)
    pipeline = ScriptedPipeline(context, [PreconditionFailedError("rm -rf rejected", blocked=True)], [])

    with pytest.raises(PreconditionFailedError):
        asyncio.run(pipeline.run("TASK1"))

    assert pipeline.implement_calls == 1


def test_approved_task_pipeline_is_a_no_op(tmp_path: Path) -> None:
    context = _context(tmp_path)
    task_dir = _task_dir(context)
    (task_dir / "TODO.md").write_text("Fully implemented: YES\n", encoding="utf-8")
    (task_dir / "CODE_REVIEW.md").write_text(APPROVED_REVIEW, encoding="utf-8")
    pipeline = ScriptedPipeline(context, [], [])

    asyncio.run(pipeline.run("TASK1"))

    assert pipeline.implement_calls == 0
    assert pipeline.review_calls == 0


def test_incomplete_blueprint_execution_is_retried_as_a_validation_failure(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    events: list[dict[str, Any]] = []
    context = _context(tmp_path, events, max_attempts_per_task=2)
    task_dir = _task_dir(context)
    (task_dir / "BLUEPRINT.md").write_text("# Blueprint\n", encoding="utf-8")
    pipeline = TaskPipeline(context)
    calls: list[str] = []

    async def fake_run(task_id: str) -> ExecutionOutcome:
        calls.append(task_id)
        return ExecutionOutcome(task_id, "in_progress", remediation=["artifacts", "strategy"])

    monkeypatch.setattr(pipeline.executor, "run", fake_run)

    with pytest.raises(TaskAttemptsExhausted) as excinfo:
        asyncio.run(pipeline.run("TASK1"))

    assert calls == ["TASK1", "TASK1"]
    assert excinfo.value.last_error == "Validation pending for TASK1: artifacts, strategy"
    assert [event["attempt"] for event in events if event["event"] == "task_retry"] == [1, 2]
    assert not (task_dir / "TODO.md").exists()
