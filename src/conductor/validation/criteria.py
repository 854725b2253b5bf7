"""Parse and run the blueprint's success-criteria table."""

from __future__ import annotations

import logging
import re
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal

from conductor.commands import CommandResult, run_command
from conductor.validation.matchers import (
    Matcher,
    first_match,
    predicate_matcher,
    section_matcher,
)

logger = logging.getLogger(__name__)

CommandRunner = Callable[..., Awaitable[CommandResult]]
TestType = Literal["AUTO", "MANUAL", "BOTH"]

DEFAULT_SOURCE = "BLUEPRINT.md §3.2"
TESTABLE_VALUES = {"AUTO", "MANUAL", "BOTH"}

CRITERIA_SECTION_MATCHERS: list[Matcher[str]] = [
    section_matcher("h3_numbered", r"###\s*3\.2\s+Success Criteria[^\n]*\n([\s\S]*?)(?=\n###|\n##|\Z)"),
    section_matcher("h2_numbered", r"##\s*3\.2\s+Success Criteria[^\n]*\n([\s\S]*?)(?=\n##|\Z)"),
    section_matcher("h3", r"###\s*Success Criteria[^\n]*\n([\s\S]*?)(?=\n###|\n##|\Z)"),
    section_matcher("h2", r"##\s*Success Criteria[^\n]*\n([\s\S]*?)(?=\n##|\Z)"),
    section_matcher("bold", r"\*\*Success Criteria\*\*[^\n]*\n([\s\S]*?)(?=\n##|\n\*\*|\Z)"),
    section_matcher("plain_numbered", r"3\.2[.)]\s*Success Criteria[^\n]*\n([\s\S]*?)(?=\n##|\n###|\Z)"),
]


@dataclass(slots=True)
class TableMatch:
    rows: list[str]
    columns: int


def _table_matcher(name: str, pattern: str, columns: int) -> Matcher[TableMatch]:
    compiled = re.compile(pattern, re.IGNORECASE)

    def _apply(text: str) -> TableMatch | None:
        match = compiled.search(text)
        if match is None or not match.group(1):
            return None
        rows = [row for row in match.group(1).strip().split("\n") if row.strip()]
        return TableMatch(rows, columns)

    return Matcher(name, _apply)


def _separator(columns: int) -> str:
    return r"\n" + r"\|[\s:-]+" * columns + r"\|\s*\n"


def _row(columns: int) -> str:
    return r"((?:" + r"\|.*" * columns + r"\|\s*\n?)+)"


CRITERIA_TABLE_MATCHERS: list[Matcher[TableMatch]] = [
    _table_matcher("five_columns", r"\|\s*Criterion\s*\|[\s\S]*?" + _separator(5) + _row(5), 5),
    _table_matcher("four_columns", r"\|\s*Criterion\s*\|[\s\S]*?" + _separator(4) + _row(4), 4),
    _table_matcher("three_columns", r"\|\s*Criterion\s*\|[\s\S]*?" + _separator(3) + _row(3), 3),
    _table_matcher("two_columns", r"\|.*Criterion.*\|.*" + _separator(2) + _row(2), 2),
    _table_matcher(
        "generic",
        r"\|[^|\n]+\|[^|\n]*\|\s*\n\|[\s:-]+\|[\s:-]+\|\s*\n((?:\|[^|\n]+\|[^|\n]*\|\s*\n?)+)",
        0,
    ),
]

COMMAND_PREFIX_PATTERN = re.compile(
    r"^(grep|find|test|npm|yarn|python|php|node|go|java|cargo|ruby|bash|sh|cat|echo|awk|sed"
    r"|curl|wget|mysql|psql|pytest|make|\./|/)",
    re.IGNORECASE,
)
RUNNER_PREFIX_PATTERN = re.compile(
    r"^(grep|find|test|npm|yarn|python|php|node|go|java|cargo|pytest)", re.IGNORECASE
)
SHELL_OPERATOR_PATTERN = re.compile(r"[|&><;]")
UNESCAPED_PIPE_PATTERN = re.compile(r"(?<!\\)\|")
NON_EXECUTABLE = "non_executable"

NON_EXECUTABLE_MATCHERS: list[Matcher[str]] = [
    predicate_matcher(
        "action_verb",
        re.compile(r"^(review|check|verify|ensure|confirm|validate)\s", re.IGNORECASE).search,
        "Starts with human action verb (review/check/verify)",
    ),
    predicate_matcher(
        "database_query",
        re.compile(r"^database query:", re.IGNORECASE).search,
        'Starts with "Database query:" instead of actual DB CLI command',
    ),
    predicate_matcher(
        "manual",
        re.compile(r"^manual", re.IGNORECASE).search,
        "Marked as manual verification",
    ),
    predicate_matcher(
        "validation_note",
        re.compile(r"\(.*validation.*\)", re.IGNORECASE).search,
        "Contains parenthetical notes instead of being executable",
    ),
    predicate_matcher(
        "search_for",
        re.compile(r"^search for", re.IGNORECASE).search,
        'Starts with "search for" instead of grep/find command',
    ),
]


def _grep_output(output: str) -> bool:
    return bool(output)


def _lint_output(output: str) -> bool:
    if "no" in output and "error" in output:
        return True
    return not ("error:" in output or "fatal" in output)


def _existence_output(output: str) -> bool:
    return True


def _test_runner_output(output: str) -> bool:
    return "failed" not in output and "error" not in output


def _awk_pass_output(output: str) -> bool:
    return "pass" in output


OUTPUT_EVALUATORS: list[Matcher[Callable[[str], bool]]] = [
    predicate_matcher("grep", lambda command: "grep" in command, _grep_output),
    predicate_matcher(
        "syntax_check",
        lambda command: "-l" in command or "--check" in command or "lint" in command,
        _lint_output,
    ),
    predicate_matcher(
        "file_exists",
        lambda command: command.startswith(("test -f", "test -d")),
        _existence_output,
    ),
    predicate_matcher("test_runner", lambda command: "test" in command, _test_runner_output),
    predicate_matcher(
        "awk_pass",
        lambda command: "awk" in command and "PASS" in command,
        _awk_pass_output,
    ),
]


@dataclass(slots=True)
class SuccessCriterion:
    criterion: str
    command: str | None
    source: str = DEFAULT_SOURCE
    test_type: TestType = "AUTO"
    manual_check: str | None = None


@dataclass(slots=True)
class CriterionResult:
    criterion: str
    command: str | None
    source: str
    expected: str
    passed: bool | None
    evidence: str
    test_type: TestType
    manual_check: str | None = None
    error_type: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "criterion": self.criterion,
            "command": self.command,
            "source": self.source,
            "expected": self.expected,
            "passed": self.passed,
            "evidence": self.evidence,
            "testType": self.test_type,
        }
        if self.manual_check:
            payload["manualCheck"] = self.manual_check
        if self.error_type:
            payload["errorType"] = self.error_type
        return payload


@dataclass(slots=True)
class CriteriaReport:
    results: list[CriterionResult] = field(default_factory=list)
    skipped: bool = False

    @property
    def passed(self) -> bool:
        return all(result.passed is not False for result in self.results)

    def failed(self) -> list[CriterionResult]:
        return [result for result in self.results if result.passed is False]


def non_executable_reason(command: str) -> str | None:
    match = first_match(NON_EXECUTABLE_MATCHERS, command)
    return match.value if match else None


def looks_like_command(text: str) -> bool:
    return bool(COMMAND_PREFIX_PATTERN.match(text) or SHELL_OPERATOR_PATTERN.search(text))


def _unwrap(cell: str | None) -> str:
    return (cell or "").replace("`", "").strip()


def _command_cell(cell: str | None) -> str | None:
    cleaned = _unwrap(cell)
    if not cleaned or cleaned == "-":
        return None
    return cleaned


def _testable_row(
    criterion: str,
    testable: str,
    command_cell: str | None,
    manual_cell: str | None,
    source: str,
) -> SuccessCriterion | None:
    testable = (testable or "AUTO").upper()
    is_auto = testable in {"AUTO", "BOTH"}
    is_manual = testable in {"MANUAL", "BOTH"}
    command = _command_cell(command_cell)
    manual = (manual_cell or "").strip()
    if manual == "-":
        manual = ""
    if is_auto and command:
        return SuccessCriterion(
            criterion,
            command,
            source,
            "BOTH" if is_manual else "AUTO",
            manual if is_manual and manual else None,
        )
    if is_manual and manual:
        return SuccessCriterion(criterion, None, source, "MANUAL", manual)
    return None


def _cells(row: str) -> list[str]:
    cells = (cell.replace("\\|", "|").strip() for cell in UNESCAPED_PIPE_PATTERN.split(row))
    return [cell for cell in cells if cell]


def _parse_row(cells: list[str], columns: int) -> SuccessCriterion | None:
    criterion = cells[0]
    if columns == 5 and len(cells) >= 5:
        _, source, testable, command, manual = cells[:5]
        return _testable_row(criterion, testable, command, manual, source or DEFAULT_SOURCE)

    if columns == 4 and len(cells) >= 4:
        _, second, third, fourth = cells[:4]
        if second.upper() in TESTABLE_VALUES:
            return _testable_row(criterion, second, third, fourth, DEFAULT_SOURCE)
        command = _command_cell(third)
        if command is None:
            return None
        return SuccessCriterion(criterion, command, second or DEFAULT_SOURCE)

    if columns == 3 and len(cells) >= 3:
        second, third = _command_cell(cells[1]), _command_cell(cells[2])
        if third and RUNNER_PREFIX_PATTERN.match(third):
            command = third
        elif second and looks_like_command(second):
            command = second
        elif third and looks_like_command(third):
            command = third
        else:
            command = second or third
        if command is None:
            return None
        return SuccessCriterion(criterion, command)

    if len(cells) >= 2:
        command = _command_cell(cells[1])
        if command is None:
            return None
        return SuccessCriterion(criterion, command)
    return None


def parse_success_criteria(blueprint: str) -> list[SuccessCriterion]:
    section = first_match(CRITERIA_SECTION_MATCHERS, blueprint)
    if section is None:
        return []
    table = first_match(CRITERIA_TABLE_MATCHERS, section.value)
    if table is None:
        return []

    criteria: list[SuccessCriterion] = []
    for row in table.value.rows:
        cells = _cells(row)
        if not cells or re.fullmatch(r"[-:]+", cells[0]):
            continue
        parsed = _parse_row(cells, table.value.columns)
        if parsed is not None:
            criteria.append(parsed)
    return criteria


def evaluate_output(output: str, command: str) -> bool:
    """Judge a successful command's output by the shape of the command."""
    normalized = output.lower().strip()
    evaluator = first_match(OUTPUT_EVALUATORS, command)
    if evaluator is None:
        return bool(normalized)
    return evaluator.value(normalized)


async def run_success_criteria(
    blueprint: str | None,
    *,
    cwd: Path | None,
    timeout_seconds: float = 30.0,
    evidence_limit: int = 500,
    runner: CommandRunner = run_command,
) -> CriteriaReport:
    if blueprint is None:
        logger.warning("BLUEPRINT.md not found, skipping success criteria validation")
        return CriteriaReport(skipped=True)
    criteria = parse_success_criteria(blueprint)
    if not criteria:
        logger.info("No success criteria found in BLUEPRINT.md")
        return CriteriaReport(skipped=True)

    logger.info("Found %d success criteria to validate", len(criteria))
    report = CriteriaReport()
    for criterion in criteria:
        if criterion.test_type == "MANUAL" or criterion.command is None:
            logger.info("Manual check: %s (%s)", criterion.criterion, criterion.manual_check)
            report.results.append(
                CriterionResult(
                    criterion.criterion,
                    None,
                    criterion.source,
                    "Manual verification required",
                    None,
                    f"MANUAL: {criterion.manual_check}",
                    "MANUAL",
                    criterion.manual_check,
                )
            )
            continue

        reason = non_executable_reason(criterion.command)
        if reason:
            logger.warning(
                "Success criterion is not executable: %s (command %r): %s",
                criterion.criterion,
                criterion.command,
                reason,
            )
            report.results.append(
                CriterionResult(
                    criterion.criterion,
                    criterion.command,
                    criterion.source,
                    "Command should succeed",
                    False,
                    f"Not an executable command: {reason}",
                    criterion.test_type,
                    criterion.manual_check,
                    NON_EXECUTABLE,
                )
            )
            continue

        result = await runner(criterion.command, cwd=cwd, timeout_seconds=timeout_seconds)
        if result.timed_out:
            passed = False
            evidence = f"Command timed out after {int(timeout_seconds * 1000)}ms"
        elif result.exit_code != 0:
            passed = False
            evidence = result.stdout.strip() or result.stderr.strip() or f"exit code {result.exit_code}"
        else:
            output = result.stdout or result.stderr
            passed = evaluate_output(output, criterion.command)
            evidence = output.strip()

        report.results.append(
            CriterionResult(
                criterion.criterion,
                criterion.command,
                criterion.source,
                "Command should succeed",
                passed,
                evidence[:evidence_limit],
                criterion.test_type,
                criterion.manual_check,
            )
        )
        if passed:
            logger.info("Success criterion passed: %s", criterion.criterion)
        else:
            logger.error(
                "Success criterion FAILED: %s (command %s): %s",
                criterion.criterion,
                criterion.command,
                evidence[:200],
            )

    manual = sum(1 for result in report.results if result.passed is None)
    logger.info(
        "Success criteria results: %d passed, %d failed, %d manual",
        sum(1 for result in report.results if result.passed is True),
        len(report.failed()),
        manual,
    )
    return report
