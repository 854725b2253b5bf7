"""Per-artifact review checklist validation."""

from __future__ import annotations

import json
import logging
from collections import Counter
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

SCHEMA_V2 = "review-checklist-schema-v2"
MIN_CONTEXT_LENGTH = 5
MIN_DESCRIPTION_LENGTH = 20
RECOMMENDED_ITEMS_PER_FILE = 2


@dataclass(slots=True)
class ChecklistReport:
    missing: list[dict[str, str]] = field(default_factory=list)
    format_issues: list[str] = field(default_factory=list)
    schema_version: str | None = None
    skipped: bool = False

    @property
    def valid(self) -> bool:
        return not self.missing and not self.format_issues


def _reviewable(record: dict[str, Any]) -> list[str]:
    return [
        str(artifact.get("path"))
        for artifact in record.get("artifacts") or []
        if artifact.get("type") != "deleted"
    ]


def validate_item_format(item: dict[str, Any]) -> list[str]:
    item_id = item.get("id")
    issues: list[str] = []
    context = item.get("context")
    if not isinstance(context, dict):
        issues.append(f"Item {item_id} missing context object")
    else:
        for key in ("action", "why"):
            value = context.get(key)
            if not isinstance(value, str) or len(value) < MIN_CONTEXT_LENGTH:
                issues.append(
                    f"Item {item_id} missing or too short context.{key} (min {MIN_CONTEXT_LENGTH} chars)"
                )

    description = item.get("description")
    if isinstance(description, str) and "`" in description:
        issues.append(f"Item {item_id} contains inline code (backticks), use file:line references only")
    lines = item.get("lines")
    if not isinstance(lines, list) or not lines:
        issues.append(f"Item {item_id} missing line number references (lines array empty or missing)")
    if not isinstance(description, str) or len(description) < MIN_DESCRIPTION_LENGTH:
        issues.append(f"Item {item_id} description too short (min {MIN_DESCRIPTION_LENGTH} chars)")
    return issues


def check_review_checklist(checklist_path: Path, record: dict[str, Any]) -> ChecklistReport:
    paths = _reviewable(record)
    if not paths:
        logger.info("No artifacts to review, checklist validation skipped")
        return ChecklistReport(skipped=True)

    if not checklist_path.is_file():
        logger.warning("review-checklist.json not found but %d artifacts exist", len(paths))
        return ChecklistReport(
            missing=[
                {"artifact": path, "reason": "No review checklist entry for this artifact"}
                for path in paths
            ]
        )

    try:
        checklist = json.loads(checklist_path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        logger.error("review-checklist.json is invalid JSON: %s", exc)
        return ChecklistReport(
            missing=[{"artifact": "review-checklist.json", "reason": "Invalid JSON format"}]
        )
    if not isinstance(checklist, dict):
        return ChecklistReport(
            missing=[{"artifact": "review-checklist.json", "reason": "Invalid JSON format"}]
        )

    items = [item for item in checklist.get("items") or [] if isinstance(item, dict)]
    is_v2 = checklist.get("$schema") == SCHEMA_V2
    report = ChecklistReport(schema_version="v2" if is_v2 else "v1")

    if is_v2:
        for item in items:
            report.format_issues.extend(validate_item_format(item))
        by_file = {item.get("file"): item for item in items}
    else:
        by_file = {item.get("artifact"): item for item in items}

    for path in paths:
        entry = by_file.get(path)
        if entry is None:
            report.missing.append({"artifact": path, "reason": "Missing from review-checklist.json"})
        elif not is_v2 and not entry.get("questions"):
            report.missing.append({"artifact": path, "reason": "No review questions defined"})

    if is_v2:
        counts = Counter(item.get("file") for item in items)
        for path in paths:
            if 0 < counts[path] < RECOMMENDED_ITEMS_PER_FILE:
                logger.warning("Artifact %s has only %d review item(s), recommend 2-5", path, counts[path])

    for issue in report.missing:
        logger.error("Review checklist: %s: %s", issue["artifact"], issue["reason"])
    for issue in report.format_issues:
        logger.warning("Review checklist format: %s", issue)
    return report
