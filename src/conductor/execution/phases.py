from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import Any

from conductor.errors import PhaseGateError

logger = logging.getLogger(__name__)

GATED_STATUSES = {"in_progress", "completed"}
CONFIDENCE_LEVELS = ("LOW", "MEDIUM", "HIGH")


def find_phase(record: dict[str, Any], phase_id: int) -> dict[str, Any] | None:
    for phase in record.get("phases") or []:
        if phase.get("id") == phase_id:
            return phase
    return None


def current_phase_id(record: dict[str, Any]) -> int | None:
    current = record.get("currentPhase")
    if isinstance(current, dict) and isinstance(current.get("id"), int):
        return current["id"]
    return None


def check_phase_gate(record: dict[str, Any], phase_id: int | None) -> None:
    """Raise PhaseGateError unless phase ``phase_id - 1`` is completed.

    Phase 1, a missing phase id, or a missing predecessor (single-phase or
    non-sequential plans) pass.
    """
    if phase_id is None or phase_id <= 1:
        return
    previous = find_phase(record, phase_id - 1)
    if previous is None:
        return
    if previous.get("status") != "completed":
        raise PhaseGateError(
            f"Phase {phase_id - 1} must be completed before Phase {phase_id}"
        )


def enforce_phase_gate(record: dict[str, Any]) -> None:
    phase_id = current_phase_id(record)
    if phase_id is not None and phase_id > 1:
        previous = find_phase(record, phase_id - 1)
        if previous is not None:
            logger.info(
                "Phase gate check: Phase %d status is %s", phase_id - 1, previous.get("status")
            )
    check_phase_gate(record, phase_id)


def update_phase_progress(record: dict[str, Any], phase_id: int, status: str) -> None:
    if status in GATED_STATUSES:
        check_phase_gate(record, phase_id)
    phase = find_phase(record, phase_id)
    if phase is not None:
        phase["status"] = status

    current = record.get("currentPhase")
    if not isinstance(current, dict):
        record["currentPhase"] = {
            "id": phase_id,
            "name": phase.get("name") if phase else f"Phase {phase_id}",
        }
    elif isinstance(current.get("id"), int) and current["id"] < phase_id:
        current["id"] = phase_id
        current["name"] = phase.get("name") if phase else f"Phase {phase_id}"


def track_artifacts(
    record: dict[str, Any],
    created: Iterable[str] = (),
    modified: Iterable[str] = (),
) -> list[dict[str, Any]]:
    """Append unverified artifacts, skipping paths already declared with the same kind."""
    artifacts = record.setdefault("artifacts", [])
    known = {(artifact.get("path"), artifact.get("type")) for artifact in artifacts}
    added: list[dict[str, Any]] = []
    for kind, paths in (("created", created), ("modified", modified)):
        for path in paths:
            if (path, kind) in known:
                continue
            artifact = {"type": kind, "path": path, "verified": False}
            artifacts.append(artifact)
            known.add((path, kind))
            added.append(artifact)
            logger.debug("Tracked artifact: %s %s", kind, path)
    return added


def track_uncertainty(
    record: dict[str, Any],
    topic: str,
    assumption: str,
    confidence: str,
) -> dict[str, Any]:
    if confidence not in CONFIDENCE_LEVELS:
        raise ValueError(f"confidence must be one of {', '.join(CONFIDENCE_LEVELS)}")
    uncertainties = record.setdefault("uncertainties", [])
    taken = {item.get("id") for item in uncertainties}
    number = len(uncertainties) + 1
    while f"U{number}" in taken:
        number += 1
    entry = {
        "id": f"U{number}",
        "topic": topic,
        "assumption": assumption,
        "confidence": confidence,
        "resolution": None,
        "resolvedConfidence": None,
    }
    uncertainties.append(entry)
    logger.info("Tracked uncertainty: %s - %s (%s confidence)", entry["id"], topic, confidence)
    return entry


def resolve_uncertainty(
    record: dict[str, Any],
    uncertainty_id: str,
    resolution: str,
    resolved_confidence: str,
) -> dict[str, Any]:
    if resolved_confidence not in CONFIDENCE_LEVELS:
        raise ValueError(f"confidence must be one of {', '.join(CONFIDENCE_LEVELS)}")
    for entry in record.get("uncertainties") or []:
        if entry.get("id") == uncertainty_id:
            entry["resolution"] = resolution
            entry["resolvedConfidence"] = resolved_confidence
            return entry
    raise KeyError(uncertainty_id)


def register_reported_uncertainties(record: dict[str, Any]) -> list[dict[str, Any]]:
    """Number the uncertainties an agent appended and apply its resolutions.

    Returns the newly registered entries.
    """
    if "uncertainties" not in record:
        return []
    reported = record.get("uncertainties") or []
    record["uncertainties"] = [
        entry for entry in reported if isinstance(entry, dict) and entry.get("id")
    ]
    added: list[dict[str, Any]] = []
    for entry in reported:
        if not isinstance(entry, dict):
            raise ValueError("uncertainty entries must be objects")
        tracked = entry
        if not entry.get("id"):
            tracked = track_uncertainty(
                record,
                str(entry.get("topic") or ""),
                str(entry.get("assumption") or ""),
                str(entry.get("confidence") or "").upper(),
            )
            added.append(tracked)
        resolution = entry.get("resolution")
        resolved_confidence = entry.get("resolvedConfidence")
        if resolution and resolved_confidence:
            resolve_uncertainty(
                record, tracked["id"], str(resolution), str(resolved_confidence).upper()
            )
    return added
