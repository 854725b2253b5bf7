from __future__ import annotations

import json
import os
import tempfile
import traceback
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from conductor.errors import ExecutionRecordError

EXECUTION_STATUSES = ("pending", "in_progress", "completed", "blocked")
PHASE_STATUSES = ("pending", "in_progress", "completed")
ARTIFACT_TYPES = ("created", "modified", "deleted")
COMPLETION_STATUSES = ("pending_validation", "completed", "pending_recovery")
CONFIDENCE_LEVELS = ("LOW", "MEDIUM", "HIGH")
REQUIRED_FIELDS = ("status", "phases", "artifacts", "completion")
SCHEMA_ID = "execution-schema-v1"
STACK_LINES = 3


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


def new_execution(task_id: str, title: str = "") -> dict[str, Any]:
    return {
        "$schema": SCHEMA_ID,
        "version": "1.0",
        "task": task_id,
        "title": title or task_id,
        "status": "pending",
        "started": _utcnow_iso(),
        "attempts": 0,
        "phases": [],
        "artifacts": [],
        "completion": {"status": "pending_validation"},
    }


def _validate_phase(index: int, phase: Any) -> list[str]:
    label = f"phases[{index}]"
    if not isinstance(phase, dict):
        return [f"{label} must be an object"]
    errors: list[str] = []
    phase_id = phase.get("id")
    if not isinstance(phase_id, int) or isinstance(phase_id, bool):
        errors.append(f"{label}.id must be an integer")
    if not isinstance(phase.get("name"), str):
        errors.append(f"{label}.name must be a string")
    if phase.get("status") not in PHASE_STATUSES:
        errors.append(
            f"{label}.status must be one of {', '.join(PHASE_STATUSES)} (got {phase.get('status')!r})"
        )
    for key in ("preConditions", "items"):
        if key in phase and not isinstance(phase[key], list):
            errors.append(f"{label}.{key} must be a list")
    return errors


def _validate_artifact(index: int, artifact: Any) -> list[str]:
    label = f"artifacts[{index}]"
    if not isinstance(artifact, dict):
        return [f"{label} must be an object"]
    errors: list[str] = []
    if not isinstance(artifact.get("path"), str) or not artifact.get("path"):
        errors.append(f"{label}.path must be a non-empty string")
    if artifact.get("type") not in ARTIFACT_TYPES:
        errors.append(
            f"{label}.type must be one of {', '.join(ARTIFACT_TYPES)} (got {artifact.get('type')!r})"
        )
    return errors


def validate_execution(record: Any) -> list[str]:
    """Return every structural problem in ``record``; empty when valid."""
    if not isinstance(record, dict):
        return ["execution record must be a JSON object"]
    errors = [f"missing required field: {key}" for key in REQUIRED_FIELDS if key not in record]
    if errors:
        return errors

    if record["status"] not in EXECUTION_STATUSES:
        errors.append(
            f"status must be one of {', '.join(EXECUTION_STATUSES)} (got {record['status']!r})"
        )
    if not isinstance(record["phases"], list):
        errors.append("phases must be a list")
    else:
        for index, phase in enumerate(record["phases"]):
            errors.extend(_validate_phase(index, phase))
    if not isinstance(record["artifacts"], list):
        errors.append("artifacts must be a list")
    else:
        for index, artifact in enumerate(record["artifacts"]):
            errors.extend(_validate_artifact(index, artifact))

    completion = record["completion"]
    if not isinstance(completion, dict):
        errors.append("completion must be an object")
    elif completion.get("status") not in COMPLETION_STATUSES:
        errors.append(
            "completion.status must be one of "
            f"{', '.join(COMPLETION_STATUSES)} (got {completion.get('status')!r})"
        )

    uncertainties = record.get("uncertainties")
    if uncertainties is not None:
        if not isinstance(uncertainties, list):
            errors.append("uncertainties must be a list")
        else:
            for index, entry in enumerate(uncertainties):
                confidence = entry.get("confidence") if isinstance(entry, dict) else None
                if confidence is not None and confidence not in CONFIDENCE_LEVELS:
                    errors.append(f"uncertainties[{index}].confidence must be LOW, MEDIUM or HIGH")

    history = record.get("errorHistory")
    if history is not None:
        if not isinstance(history, list):
            errors.append("errorHistory must be a list")
        else:
            for index, entry in enumerate(history):
                if not isinstance(entry, dict) or not isinstance(entry.get("message"), str):
                    errors.append(f"errorHistory[{index}].message must be a string")
    return errors


def load_execution(path: Path) -> dict[str, Any]:
    if not path.exists():
        raise ExecutionRecordError(f"execution.json not found at {path}")
    try:
        record = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise ExecutionRecordError(f"Failed to parse execution.json: {exc}") from exc
    errors = validate_execution(record)
    if errors:
        raise ExecutionRecordError(f"Invalid execution.json: {'; '.join(errors)}")
    return record


def save_execution(path: Path, record: dict[str, Any]) -> None:
    errors = validate_execution(record)
    if errors:
        raise ExecutionRecordError(f"Cannot save execution.json: {'; '.join(errors)}")
    serialized = json.dumps(record, ensure_ascii=False, indent=2) + "\n"
    path.parent.mkdir(parents=True, exist_ok=True)
    with tempfile.NamedTemporaryFile(
        "w",
        encoding="utf-8",
        dir=path.parent,
        prefix=".execution-",
        suffix=".tmp",
        delete=False,
    ) as handle:
        handle.write(serialized)
        temp_name = handle.name
    os.replace(temp_name, path)


def append_error(
    record: dict[str, Any],
    message: str,
    *,
    stack: str | None = None,
    phase: str | None = None,
    severity: str | None = None,
) -> dict[str, Any]:
    entry: dict[str, Any] = {"timestamp": _utcnow_iso(), "message": message}
    if stack is not None:
        entry["stack"] = stack
    if phase is not None:
        entry["phase"] = phase
    if severity is not None:
        entry["severity"] = severity
    record.setdefault("errorHistory", []).append(entry)
    return entry


def truncated_stack(exc: BaseException, limit: int = STACK_LINES) -> str:
    lines = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__)).splitlines()
    return "\n".join(lines[:limit])
