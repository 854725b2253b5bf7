"""Phase-gated execution of one task against its blueprint."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from conductor.agents import ExecutorRole
from conductor.backends.base import AgentResult
from conductor.context import RunContext
from conductor.errors import (
    AgentRunError,
    ExecutionRecordError,
    PreconditionFailedError,
    TaskBlockedError,
)
from conductor.execution.artifacts import recover_from_hallucination, verify_artifacts_exist
from conductor.execution.completion import CompletionReport, validate_completion
from conductor.execution.phases import (
    enforce_phase_gate,
    register_reported_uncertainties,
    track_artifacts,
)
from conductor.execution.preconditions import verify_preconditions
from conductor.execution.record import (
    append_error,
    load_execution,
    new_execution,
    save_execution,
    truncated_stack,
)
from conductor.validation import (
    check_implementation_strategy,
    check_review_checklist,
    reconcile_changes,
    run_success_criteria,
)

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ExecutionOutcome:
    task_id: str
    status: str
    completion: CompletionReport = field(default_factory=CompletionReport)
    remediation: list[str] = field(default_factory=list)
    result: AgentResult | None = None

    @property
    def completed(self) -> bool:
        return self.status == "completed"


def _note_deviation(completion: dict[str, Any], text: str) -> None:
    deviations = completion.setdefault("deviations", [])
    if text not in deviations:
        deviations.append(text)


def _relative(path: str, root: Path) -> str:
    candidate = Path(path)
    if candidate.is_absolute():
        try:
            return candidate.resolve().relative_to(root.resolve()).as_posix()
        except ValueError:
            return path
    return path


class TaskExecutor:
    """Runs one attempt of a task through the execution state machine.

    The record is persisted after every transition so a restart resumes
    from the last saved state.
    """

    def __init__(self, context: RunContext) -> None:
        self.context = context
        self.role = ExecutorRole(context.backend)

    def _phase(self, task_id: str, label: str) -> None:
        self.context.registry.update_phase(task_id, label)

    def _info(self, message: str, *args: Any) -> None:
        if not self.context.quiet:
            logger.info(message, *args)

    async def run(self, task_id: str) -> ExecutionOutcome:
        task_dir = self.context.task_dir(task_id)
        execution_path = task_dir / "execution.json"
        try:
            return await self._run(task_id, task_dir, execution_path)
        except TaskBlockedError:
            raise
        except Exception as exc:
            self._record_failure(execution_path, exc)
            raise

    def _record_failure(self, execution_path: Path, exc: Exception) -> None:
        if not execution_path.exists():
            return
        try:
            record = json.loads(execution_path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as read_exc:
            logger.warning("Could not record failure in %s: %s", execution_path, read_exc)
            return
        if not isinstance(record, dict):
            logger.warning("Could not record failure in %s: not an object", execution_path)
            return
        append_error(record, str(exc), stack=truncated_stack(exc))
        try:
            save_execution(execution_path, record)
        except ExecutionRecordError as save_exc:
            logger.warning("Could not record failure in %s: %s", execution_path, save_exc)

    async def _run(self, task_id: str, task_dir: Path, execution_path: Path) -> ExecutionOutcome:
        context = self.context
        blueprint_path = task_dir / "BLUEPRINT.md"
        if not blueprint_path.is_file():
            raise ExecutionRecordError(f"BLUEPRINT.md not found for {task_id}")
        blueprint = blueprint_path.read_text(encoding="utf-8")
        if not blueprint.strip():
            raise ExecutionRecordError(f"BLUEPRINT.md is empty for {task_id}")

        self._phase(task_id, "Loading")
        if execution_path.exists():
            record = load_execution(execution_path)
        else:
            record = new_execution(task_id)
            self._info("%s: no execution.json yet, starting a fresh record", task_id)

        if record["status"] == "blocked":
            raise TaskBlockedError(
                f"{task_id} is blocked: a pre-condition command was rejected as dangerous"
            )

        attempts = record.get("attempts")
        record["attempts"] = (attempts if isinstance(attempts, int) else 0) + 1
        attempts_before = record["attempts"]
        self._info("%s: attempt %d, status %s", task_id, attempts_before, record["status"])

        self._phase(task_id, "Pre-conditions")
        outcome = await verify_preconditions(
            record,
            cwd=context.root,
            timeout_seconds=context.config.execution.precondition_timeout_seconds,
            quiet=context.quiet,
        )
        if not outcome.passed:
            save_execution(execution_path, record)
            raise PreconditionFailedError(
                f"Pre-condition failed for {task_id}: {outcome.check}. Evidence: {outcome.evidence}",
                blocked=outcome.dangerous,
            )

        enforce_phase_gate(record)

        record["status"] = "in_progress"
        save_execution(execution_path, record)

        self._phase(task_id, "Delegating")
        context.registry.update_message(task_id, "Agent working")
        run = self.role.start(
            self.role.instruction(task_id, blueprint, record, execution_path),
            task_id=task_id,
            cwd=context.root,
        )
        context.announce_run(run)
        result = await run.result()
        if not result.ok:
            raise AgentRunError(result.error or f"Agent run for {task_id} reported failure")
        context.registry.update_message(task_id, result.summary or "Agent finished")

        self._phase(task_id, "Bookkeeping")
        record = load_execution(execution_path) if execution_path.exists() else record
        stored = record.get("attempts")
        record["attempts"] = max(stored if isinstance(stored, int) else 0, attempts_before)
        track_artifacts(
            record,
            created=[_relative(path, context.root) for path in result.created_files],
            modified=[_relative(path, context.root) for path in result.modified_files],
        )
        try:
            register_reported_uncertainties(record)
        except ValueError as exc:
            raise ExecutionRecordError(f"Invalid uncertainty reported for {task_id}: {exc}") from exc
        save_execution(execution_path, record)

        self._phase(task_id, "Validating")
        remediation, notes = await self._validation_layers(task_id, task_dir, blueprint, record)

        check = verify_artifacts_exist(record, context.root)
        if not check.valid:
            recover_from_hallucination(record, check.missing)
            save_execution(execution_path, record)
            remediation.append("artifacts")
            notes.append("Missing files: " + ", ".join(check.missing))

        report = validate_completion(record)
        completion = record.setdefault("completion", {"status": "pending_validation"})
        if report.passed and not remediation:
            record["status"] = "completed"
            completion["status"] = "completed"
            completion.pop("pendingRemediation", None)
            completion.pop("validationNotes", None)
            self._info("%s: task completed successfully", task_id)
        else:
            if not report.passed:
                remediation.append("completion_rules")
                notes.extend(reason.detail for reason in report.reasons)
            record["status"] = "in_progress"
            if completion.get("status") != "pending_recovery":
                completion["status"] = "pending_validation"
            completion["pendingRemediation"] = list(dict.fromkeys(remediation))
            completion["validationNotes"] = notes
            logger.warning("%s: validation pending (%s)", task_id, ", ".join(remediation))

        save_execution(execution_path, record)
        self._info("%s: saved execution.json with status %s", task_id, record["status"])
        return ExecutionOutcome(task_id, record["status"], report, remediation, result)

    async def _validation_layers(
        self,
        task_id: str,
        task_dir: Path,
        blueprint: str,
        record: dict[str, Any],
    ) -> tuple[list[str], list[str]]:
        """Run the checkers and fold their verdicts into the record."""
        settings = self.context.config.validation
        remediation: list[str] = []
        notes: list[str] = []

        strategy = check_implementation_strategy(blueprint, record)
        if not strategy.valid:
            remediation.append("implementation_strategy")
            notes.extend(f"Phase {issue['phaseId']}: {issue['reason']}" for issue in strategy.missing)

        criteria = await run_success_criteria(
            blueprint,
            cwd=self.context.root,
            timeout_seconds=settings.criteria_timeout_seconds,
            evidence_limit=settings.evidence_limit,
        )
        if not criteria.skipped:
            record["successCriteria"] = [result.to_dict() for result in criteria.results]
        if not criteria.passed:
            remediation.append("success_criteria")
            for result in criteria.failed():
                if result.error_type:
                    notes.append(
                        f"Criterion {result.error_type}: {result.criterion} ({result.evidence})"
                    )
                else:
                    notes.append(f"Criterion failed: {result.criterion}")

        workspace_prefix = self.context.config.project.workspace_dir.strip("/") + "/"
        changes = await reconcile_changes(
            record, self.context.root, ignore_prefixes=(workspace_prefix,)
        )
        completion = record.setdefault("completion", {"status": "pending_validation"})
        if changes.undeclared:
            _note_deviation(completion, "Undeclared changes in git: " + ", ".join(changes.undeclared))
            if settings.fail_on_undeclared_changes:
                remediation.append("artifacts")
                notes.append("Declare every changed file: " + ", ".join(changes.undeclared))
        if changes.missing and changes.actual:
            _note_deviation(
                completion, "Declared in artifacts but not modified: " + ", ".join(changes.missing)
            )

        if settings.require_review_checklist:
            checklist = check_review_checklist(task_dir / "review-checklist.json", record)
            if not checklist.valid:
                remediation.append("review_checklist")
                notes.extend(f"{issue['artifact']}: {issue['reason']}" for issue in checklist.missing)
                notes.extend(checklist.format_issues)

        if remediation:
            logger.warning("%s: validation layers failed: %s", task_id, ", ".join(remediation))
        return remediation, notes
