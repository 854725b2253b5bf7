"""Filesystem checks for declared artifacts and hallucination rollback."""

from __future__ import annotations

import logging
import posixpath
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from conductor.execution.record import append_error

logger = logging.getLogger(__name__)

CHECKED_KINDS = {"created", "modified"}


@dataclass(slots=True)
class ArtifactCheck:
    missing: list[str] = field(default_factory=list)
    existing: list[str] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.missing


@dataclass(slots=True)
class RecoveryReport:
    marked_for_recreation: list[str] = field(default_factory=list)
    reset_phases: list[int] = field(default_factory=list)
    reset_items: int = 0


def _artifact_kind(artifact: dict[str, Any]) -> str | None:
    kind = artifact.get("type") or artifact.get("action")
    return kind if isinstance(kind, str) else None


def resolve_artifact_path(root: Path, artifact_path: str) -> Path:
    candidate = Path(artifact_path)
    return candidate if candidate.is_absolute() else root / candidate


def verify_artifacts_exist(record: dict[str, Any], root: Path) -> ArtifactCheck:
    """Confirm created/modified artifacts on disk; existing ones become verified."""
    check = ArtifactCheck()
    for artifact in record.get("artifacts") or []:
        if _artifact_kind(artifact) not in CHECKED_KINDS:
            continue
        path = str(artifact.get("path") or "")
        if path and resolve_artifact_path(root, path).exists():
            artifact["verified"] = True
            check.existing.append(path)
        else:
            artifact["verified"] = False
            check.missing.append(path)
            logger.warning("Declared artifact not found on disk: %s", path)
    if check.missing:
        logger.error(
            "%d of %d declared files are missing from the filesystem",
            len(check.missing),
            len(check.missing) + len(check.existing),
        )
    return check


def _mentions(text: str, path: str) -> bool:
    return bool(text) and (path in text or posixpath.basename(path.replace("\\", "/")) in text)


def recover_from_hallucination(record: dict[str, Any], missing: list[str]) -> RecoveryReport:
    """Roll back everything that depended on files the agent never wrote."""
    report = RecoveryReport()
    if not missing:
        return report

    missing_set = set(missing)
    for artifact in record.get("artifacts") or []:
        if artifact.get("path") in missing_set:
            artifact["verified"] = False
            artifact["needsCreation"] = True
            artifact["hallucinationDetected"] = True
            report.marked_for_recreation.append(artifact["path"])

    for phase in record.get("phases") or []:
        phase_reset = False
        for item in phase.get("items") or []:
            evidence = str(item.get("evidence") or "")
            description = str(item.get("description") or "")
            for path in missing:
                if not (_mentions(evidence, path) or _mentions(description, path)):
                    continue
                if item.get("completed") is True:
                    item["completed"] = False
                    item["hallucinationDetected"] = True
                    item["resetReason"] = f"File {path} was not actually created"
                    phase_reset = True
                    report.reset_items += 1
                break
        if phase_reset and phase.get("status") == "completed":
            phase["status"] = "in_progress"
            phase["hallucinationRecovery"] = True
            report.reset_phases.append(phase.get("id"))
            logger.info("Reset phase %s (%s) to in_progress", phase.get("id"), phase.get("name"))

    completion = record.setdefault("completion", {"status": "pending_validation"})
    completion["status"] = "pending_recovery"
    completion["hallucinationDetected"] = True
    completion["missingArtifacts"] = list(missing)
    record["status"] = "in_progress"

    append_error(
        record,
        f"Hallucination detected: {len(missing)} files claimed but not created: {', '.join(missing)}",
        phase="artifact-validation",
        severity="CRITICAL",
    )
    return report
