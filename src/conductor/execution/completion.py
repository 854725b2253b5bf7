from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)

CLEANUP_FLAGS = ("debugLogsRemoved", "formattingConsistent", "deadCodeRemoved")


@dataclass(slots=True)
class CompletionReason:
    category: str
    detail: str

    def to_dict(self) -> dict[str, str]:
        return {"category": self.category, "detail": self.detail}


@dataclass(slots=True)
class CompletionReport:
    reasons: list[CompletionReason] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        return not self.reasons

    def categories(self) -> list[str]:
        return [reason.category for reason in self.reasons]


def validate_completion(record: dict[str, Any]) -> CompletionReport:
    """Every phase, item, precondition, artifact, success criterion and cleanup
    flag must pass; all failing conditions are reported."""
    report = CompletionReport()
    for phase in record.get("phases") or []:
        label = f"Phase {phase.get('id')} ({phase.get('name')})"
        if phase.get("status") != "completed":
            report.reasons.append(
                CompletionReason("phase", f"{label} not completed (status: {phase.get('status')})")
            )
        for item in phase.get("items") or []:
            if item.get("completed") is not True:
                report.reasons.append(
                    CompletionReason("item", f"{label} item not completed: {item.get('description')}")
                )
        for precondition in phase.get("preConditions") or []:
            if precondition.get("passed") is not True:
                report.reasons.append(
                    CompletionReason(
                        "precondition",
                        f"{label} pre-condition not passed: {precondition.get('check')}",
                    )
                )

    for artifact in record.get("artifacts") or []:
        if artifact.get("verified") is not True:
            report.reasons.append(
                CompletionReason("artifact", f"artifact not verified: {artifact.get('path')}")
            )

    for criterion in record.get("successCriteria") or []:
        if criterion.get("testType") == "MANUAL" and criterion.get("passed") is None:
            continue
        if criterion.get("passed") is not True:
            report.reasons.append(
                CompletionReason(
                    "success_criterion",
                    f"success criterion not passed: {criterion.get('criterion')}",
                )
            )

    basics = record.get("beyondTheBasics")
    cleanup = basics.get("cleanup") if isinstance(basics, dict) else None
    if isinstance(cleanup, dict):
        for flag in CLEANUP_FLAGS:
            if cleanup.get(flag) is False:
                report.reasons.append(CompletionReason("cleanup", f"cleanup incomplete: {flag}"))

    for reason in report.reasons:
        logger.info("Completion validation: failed - %s", reason.detail)
    return report
