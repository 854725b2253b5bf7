"""Compare the blueprint's implementation outline with the execution record."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any

from conductor.validation.matchers import (
    Matcher,
    all_matches_matcher,
    first_match,
    section_matcher,
)

logger = logging.getLogger(__name__)

MIN_STEP_LENGTH = 15
INCOMPLETE_RATIO_LIMIT = 0.5

STRATEGY_SECTION_MATCHERS: list[Matcher[str]] = [
    section_matcher(
        "numbered_upper",
        r"##\s*4\.\s*IMPLEMENTATION STRATEGY[^\n]*\n([\s\S]*?)(?=\n##\s*\d+\.|\Z)",
    ),
    section_matcher(
        "numbered_title",
        r"##\s*4[.)]\s*Implementation\s+Strategy[^\n]*\n([\s\S]*?)(?=\n##\s*\d+\.|\Z)",
    ),
    section_matcher(
        "unnumbered",
        r"##\s*Implementation\s+Strategy\s*\n([\s\S]*?)(?=\n##\s*\d+\.|\Z)",
    ),
    section_matcher(
        "top_level",
        r"#\s*4\.\s*IMPLEMENTATION[^\n]*\n([\s\S]*?)(?=\n#\s*\d+\.|\Z)",
    ),
]

PHASE_HEADING_MATCHERS: list[Matcher[list[re.Match[str]]]] = [
    all_matches_matcher("h3_phase", r"###\s*Phase\s*(\d+):\s*(.+?)$"),
    all_matches_matcher("h2_phase", r"##\s*Phase\s*(\d+):\s*(.+?)$"),
    all_matches_matcher("h3_phase_dash", r"###\s*Phase\s*(\d+)\s*[:\-–]\s*(.+?)$"),
    all_matches_matcher("bold_phase", r"\*\*Phase\s*(\d+):\s*(.+?)\*\*"),
    all_matches_matcher("h3_numbered", r"###\s*(\d+)\.\s*(.+?)$"),
    all_matches_matcher("h2_numbered", r"##\s*(\d+)\.\s*(.+?)$"),
]

SKIPPED_LINE_PREFIXES = (
    "**Gate:**",
    "**Note:**",
    "**Warning:**",
    "**CRITICAL:**",
    "**Important:**",
)
CHECKBOX_PATTERN = re.compile(r"^-\s*\[[ x]\]", re.IGNORECASE)
SUBSECTION_PATTERN = re.compile(r"^\*\*Step\s+[\d.]+:\s*(.+?)\*\*$", re.IGNORECASE)
NUMBERED_STEP_PATTERN = re.compile(r"^(\d+)\.\s+(.+)$")
LINK_PATTERN = re.compile(r"\[([^\]]+)\]\([^)]+\)")

DOCUMENTATION_PATTERNS = [
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"^if\s+",
        r"^when\s+",
        r"^note:",
        r"^warning:",
        r"^example:",
        r"^e\.g\.",
        r"^for example",
        r"^this\s+(is|will|should)",
        r"^you\s+(can|should|must|will)",
        r"^see\s+",
        r"^refer\s+to",
        r"^\(optional\)",
    )
]


@dataclass(slots=True)
class PlannedStep:
    description: str
    phase_id: int
    phase_name: str
    subsection: str | None = None


@dataclass(slots=True)
class PlannedPhase:
    id: int
    name: str
    steps: list[PlannedStep] = field(default_factory=list)


@dataclass(slots=True)
class StrategyReport:
    missing: list[dict[str, Any]] = field(default_factory=list)
    warnings: list[dict[str, Any]] = field(default_factory=list)
    expected_phases: int = 0
    skipped: bool = False

    @property
    def valid(self) -> bool:
        return not self.missing


def clean_description(text: str) -> str:
    text = text.replace("`", "").replace("**", "").replace("*", "")
    return LINK_PATTERN.sub(r"\1", text).strip()


def is_documentation_item(description: str) -> bool:
    return any(pattern.search(description) for pattern in DOCUMENTATION_PATTERNS)


def _is_skipped_line(line: str) -> bool:
    if line.startswith(SKIPPED_LINE_PREFIXES):
        return True
    lowered = line.lower()
    if lowered.startswith("example:") or lowered.startswith("**example"):
        return True
    return bool(CHECKBOX_PATTERN.match(line))


def extract_steps(content: str, phase_id: int, phase_name: str) -> list[PlannedStep]:
    steps: list[PlannedStep] = []
    in_code_block = False
    subsection: str | None = None
    for raw in content.splitlines():
        line = raw.strip()
        if not line:
            continue
        if line.startswith("```"):
            in_code_block = not in_code_block
            continue
        if in_code_block or _is_skipped_line(line):
            continue
        heading = SUBSECTION_PATTERN.match(line)
        if heading:
            subsection = heading.group(1).strip()
            continue
        numbered = NUMBERED_STEP_PATTERN.match(line)
        if not numbered:
            continue
        description = clean_description(numbered.group(2))
        if len(description) > MIN_STEP_LENGTH and not is_documentation_item(description):
            steps.append(PlannedStep(description, phase_id, phase_name, subsection))
    return steps


def parse_implementation_strategy(blueprint: str) -> list[PlannedPhase]:
    section = first_match(STRATEGY_SECTION_MATCHERS, blueprint)
    if section is None:
        return []
    content = section.value
    headings = first_match(PHASE_HEADING_MATCHERS, content)
    if headings is None:
        return []

    phases: list[PlannedPhase] = []
    matches = headings.value
    for index, match in enumerate(matches):
        phase_id = int(match.group(1))
        name = match.group(2).strip()
        end = matches[index + 1].start() if index + 1 < len(matches) else len(content)
        body = content[match.end() : end]
        phases.append(PlannedPhase(phase_id, name, extract_steps(body, phase_id, name)))
    return phases


def check_implementation_strategy(
    blueprint: str | None, record: dict[str, Any]
) -> StrategyReport:
    """Every planned phase must be tracked in the record and mostly done.

    Completed phases are trusted; the agent may consolidate or split steps,
    so items are not matched one-to-one against the outline.
    """
    if blueprint is None:
        logger.warning("BLUEPRINT.md not found, skipping implementation strategy validation")
        return StrategyReport(skipped=True)

    planned = parse_implementation_strategy(blueprint)
    if not planned:
        logger.warning("No implementation strategy found in BLUEPRINT.md")
        return StrategyReport(skipped=True)

    report = StrategyReport(expected_phases=len(planned))
    recorded = {
        phase.get("id"): phase for phase in record.get("phases") or [] if isinstance(phase, dict)
    }
    for expected in planned:
        phase = recorded.get(expected.id)
        if phase is None:
            report.missing.append(
                {
                    "phaseId": expected.id,
                    "phaseName": expected.name,
                    "reason": "Phase missing from execution.json",
                    "expectedSteps": len(expected.steps),
                }
            )
            continue
        status = phase.get("status")
        if status == "completed":
            continue
        items = phase.get("items") or []
        if not items:
            if expected.steps:
                report.missing.append(
                    {
                        "phaseId": expected.id,
                        "phaseName": expected.name,
                        "reason": f'Phase has no items tracked and status is "{status}"',
                        "expectedSteps": len(expected.steps),
                        "actualItems": 0,
                    }
                )
            continue
        incomplete = [item for item in items if item.get("completed") is not True]
        if not incomplete:
            continue
        entry = {
            "phaseId": expected.id,
            "phaseName": expected.name,
            "incompleteCount": len(incomplete),
            "totalCount": len(items),
        }
        if len(incomplete) / len(items) > INCOMPLETE_RATIO_LIMIT:
            entry["reason"] = f"{len(incomplete)}/{len(items)} items not completed"
            report.missing.append(entry)
        else:
            entry["reason"] = f"{len(incomplete)}/{len(items)} items pending"
            report.warnings.append(entry)

    for issue in report.missing:
        logger.error("Implementation strategy: Phase %s: %s", issue["phaseId"], issue["reason"])
    return report
