import asyncio
from pathlib import Path

import pytest

from conductor.commands import CommandResult
from conductor.validation.criteria import (
    CRITERIA_SECTION_MATCHERS,
    CRITERIA_TABLE_MATCHERS,
    OUTPUT_EVALUATORS,
    evaluate_output,
    looks_like_command,
    non_executable_reason,
    parse_success_criteria,
    run_success_criteria,
)
from conductor.validation.matchers import first_match

TWO_COLUMNS = """| Criterion | Command |
|-----------|---------|
| Tests pass | `pytest -q` |
"""

THREE_COLUMNS = """| Criterion | Verification | Command |
|-----------|--------------|---------|
| Tests pass | Run the suite | `pytest -q` |
"""

FOUR_COLUMNS_SOURCE = """| Criterion | Source | Command | Notes |
|-----------|--------|---------|-------|
| Tests pass | BLUEPRINT.md §3.2 | `pytest -q` | all green |
"""

FOUR_COLUMNS_TESTABLE = """| Criterion | Testable | Command | Manual Check |
|-----------|----------|---------|--------------|
| Tests pass | AUTO | `pytest -q` | - |
"""

FIVE_COLUMNS = """| Criterion | Source | Testable | Command | Manual Check |
|-----------|--------|----------|---------|--------------|
| Tests pass | BLUEPRINT.md §3.2 | AUTO | `pytest -q` | - |
"""

GENERIC = """| Check | How |
|-------|-----|
| Tests pass | `pytest -q` |
"""

ALIGNED_TWO_COLUMNS = """| Criterion | Command |
|:----------|--------:|
| Tests pass | `pytest -q` |
"""

ALIGNED_THREE_COLUMNS = """| Criterion | Verification | Command |
|:---------|:---|:---|
| Tests pass | Run the suite | `pytest -q` |
"""

ALIGNED_FIVE_COLUMNS = """| Criterion | Source | Testable | Command | Manual Check |
|:---|:---:|:---:|:---|---:|
| Tests pass | BLUEPRINT.md §3.2 | AUTO | `pytest -q` | - |
"""


def _blueprint(table: str, heading: str = "### 3.2 Success Criteria") -> str:
    return f"# Blueprint\n\n## 3. Design\n\n{heading}\n\n{table}\n## 4. Implementation Strategy\n"


class FakeRunner:
    def __init__(self, results: dict[str, CommandResult]) -> None:
        self.results = results
        self.commands: list[str] = []

    async def __call__(self, command: str, *, cwd: Path | None, timeout_seconds: float) -> CommandResult:
        _ = cwd, timeout_seconds
        self.commands.append(command)
        return self.results[command]


@pytest.mark.parametrize(
    "heading, expected",
    [
        ("### 3.2 Success Criteria", "h3_numbered"),
        ("## 3.2 Success Criteria", "h2_numbered"),
        ("### Success Criteria", "h3"),
        ("## Success Criteria", "h2"),
        ("**Success Criteria**", "bold"),
        ("3.2. Success Criteria", "plain_numbered"),
    ],
)
def test_each_criteria_heading_form_is_recognized(heading: str, expected: str) -> None:
    text = f"# Blueprint\n\n{heading}\n{TWO_COLUMNS}"

    result = first_match(CRITERIA_SECTION_MATCHERS, text)

    assert result is not None
    assert result.matcher == expected
    assert "pytest -q" in result.value


@pytest.mark.parametrize(
    "table, expected",
    [
        (FIVE_COLUMNS, "five_columns"),
        (FOUR_COLUMNS_TESTABLE, "four_columns"),
        (THREE_COLUMNS, "three_columns"),
        (TWO_COLUMNS, "two_columns"),
        (GENERIC, "generic"),
        (ALIGNED_FIVE_COLUMNS, "five_columns"),
        (ALIGNED_THREE_COLUMNS, "three_columns"),
        (ALIGNED_TWO_COLUMNS, "two_columns"),
    ],
)
def test_each_table_shape_is_recognized(table: str, expected: str) -> None:
    result = first_match(CRITERIA_TABLE_MATCHERS, table)

    assert result is not None
    assert result.matcher == expected
    assert len(result.value.rows) == 1


@pytest.mark.parametrize(
    "table",
    [
        TWO_COLUMNS,
        THREE_COLUMNS,
        FOUR_COLUMNS_SOURCE,
        FOUR_COLUMNS_TESTABLE,
        FIVE_COLUMNS,
        GENERIC,
        ALIGNED_TWO_COLUMNS,
        ALIGNED_THREE_COLUMNS,
        ALIGNED_FIVE_COLUMNS,
    ],
)
def test_table_shapes_parse_to_the_same_criterion(table: str) -> None:
    (criterion,) = parse_success_criteria(_blueprint(table))

    assert criterion.criterion == "Tests pass"
    assert criterion.command == "pytest -q"
    assert criterion.source == "BLUEPRINT.md §3.2"
    assert criterion.test_type == "AUTO"


def test_three_columns_prefer_runner_then_command_like_cells() -> None:
    table = """| Criterion | Command | Expected |
|-----------|---------|----------|
| Tests pass | `cat results.txt` | `pytest -q` |
| Config valid | `python -m app.check` | see output |
| Docs built | Build the docs | `make docs` |
| Lint clean | `ruff check src` | no output |
"""

    criteria = parse_success_criteria(_blueprint(table))

    assert [criterion.command for criterion in criteria] == [
        "pytest -q",
        "python -m app.check",
        "make docs",
        "ruff check src",
    ]


def test_five_column_rows_carry_manual_and_both_types() -> None:
    table = """| Criterion | Source | Testable | Command | Manual Check |
|-----------|--------|----------|---------|--------------|
| UI renders | §2.1 | MANUAL | - | Open the dashboard |
| API works | §3.2 | BOTH | `curl -s localhost:8000/health` | Check the response body |
| Skipped | §3.2 | AUTO | - | - |
"""

    manual, both = parse_success_criteria(_blueprint(table))

    assert (manual.test_type, manual.command, manual.manual_check) == ("MANUAL", None, "Open the dashboard")
    assert manual.source == "§2.1"
    assert (both.test_type, both.command, both.manual_check) == (
        "BOTH",
        "curl -s localhost:8000/health",
        "Check the response body",
    )


def test_blueprint_without_criteria_parses_to_nothing() -> None:
    assert parse_success_criteria("# Blueprint\n\n## 1. Overview\n") == []
    assert parse_success_criteria("### Success Criteria\n\nJust prose.\n") == []


@pytest.mark.parametrize(
    "command, reason",
    [
        ("Verify the output manually", "human action verb"),
        ("Database query: SELECT 1", "Database query"),
        ("Manually inspect logs", "manual verification"),
        ("run it (after validation)", "parenthetical"),
        ("Search for TODO markers", "search for"),
    ],
)
def test_descriptive_commands_are_flagged(command: str, reason: str) -> None:
    flagged = non_executable_reason(command)

    assert flagged is not None and reason in flagged


def test_executable_commands_are_not_flagged() -> None:
    assert non_executable_reason("pytest -q") is None
    assert looks_like_command("pytest -q") is True
    assert looks_like_command("./scripts/check.sh") is True
    assert looks_like_command("ls src && ls tests") is True
    assert looks_like_command("Run the suite") is False


@pytest.mark.parametrize(
    "command, output, expected_matcher, expected",
    [
        ("grep -r handler src", "src/app.py: handler", "grep", True),
        ("grep -r handler src", "", "grep", False),
        ("php -l index.php", "No syntax errors detected", "syntax_check", True),
        ("npm run lint", "error: unused variable", "syntax_check", False),
        ("test -f README.md", "", "file_exists", True),
        ("pytest -q", "12 passed", "test_runner", True),
        ("pytest -q", "1 failed, 11 passed", "test_runner", False),
        ("awk '{print \"PASS\"}' results.txt", "PASS", "awk_pass", True),
        ("awk '{print \"PASS\"}' results.txt", "nothing", "awk_pass", False),
    ],
)
def test_output_evaluators(command: str, output: str, expected_matcher: str, expected: bool) -> None:
    match = first_match(OUTPUT_EVALUATORS, command)

    assert match is not None and match.matcher == expected_matcher
    assert evaluate_output(output, command) is expected


def test_default_evaluation_requires_some_output() -> None:
    assert first_match(OUTPUT_EVALUATORS, "make build") is None
    assert evaluate_output("built", "make build") is True
    assert evaluate_output("  ", "make build") is False


def test_run_success_criteria_records_each_outcome() -> None:
    table = """| Criterion | Source | Testable | Command | Manual Check |
|-----------|--------|----------|---------|--------------|
| Tests pass | §3.2 | AUTO | `pytest -q` | - |
| Build works | §3.2 | AUTO | `make build` | - |
| Server starts | §3.2 | AUTO | `make serve` | - |
| UI renders | §3.2 | MANUAL | - | Open the dashboard |
"""
    runner = FakeRunner(
        {
            "pytest -q": CommandResult("pytest -q", 0, "3 passed\n", "", False),
            "make build": CommandResult("make build", 2, "", "missing target\n", False),
            "make serve": CommandResult("make serve", None, "", "", False, timed_out=True),
        }
    )

    report = asyncio.run(
        run_success_criteria(_blueprint(table), cwd=None, timeout_seconds=2.0, evidence_limit=5, runner=runner)
    )

    assert runner.commands == ["pytest -q", "make build", "make serve"]
    outcomes = [(result.criterion, result.passed) for result in report.results]
    assert outcomes == [
        ("Tests pass", True),
        ("Build works", False),
        ("Server starts", False),
        ("UI renders", None),
    ]
    assert report.results[0].evidence == "3 pas"
    assert report.results[1].evidence == "missi"
    assert report.results[3].evidence == "MANUAL: Open the dashboard"
    assert report.passed is False
    assert [result.criterion for result in report.failed()] == ["Build works", "Server starts"]
    assert report.results[3].to_dict()["testType"] == "MANUAL"
    assert report.results[3].to_dict()["manualCheck"] == "Open the dashboard"


def test_run_success_criteria_reports_timeouts_in_milliseconds() -> None:
    runner = FakeRunner({"pytest -q": CommandResult("pytest -q", None, "", "", False, timed_out=True)})

    report = asyncio.run(run_success_criteria(_blueprint(TWO_COLUMNS), cwd=None, timeout_seconds=2.0, runner=runner))

    assert report.results[0].evidence == "Command timed out after 2000ms"


def test_run_success_criteria_skips_without_blueprint_or_table() -> None:
    assert asyncio.run(run_success_criteria(None, cwd=None)).skipped is True
    assert asyncio.run(run_success_criteria("# Blueprint\n", cwd=None)).skipped is True


def test_escaped_pipes_stay_inside_the_command_cell() -> None:
    table = """| Criterion | Command |
|-----------|---------|
| Greeting is defined once | `grep -c greet src/app.py \\| grep 1` |
"""

    (criterion,) = parse_success_criteria(_blueprint(table))

    assert criterion.criterion == "Greeting is defined once"
    assert criterion.command == "grep -c greet src/app.py | grep 1"


def test_aligned_table_criteria_are_executed() -> None:
    runner = FakeRunner({"pytest -q": CommandResult("pytest -q", 0, "3 passed\n", "", False)})

    report = asyncio.run(run_success_criteria(_blueprint(ALIGNED_THREE_COLUMNS), cwd=None, runner=runner))

    assert report.skipped is False
    assert runner.commands == ["pytest -q"]
    assert [(result.criterion, result.passed) for result in report.results] == [("Tests pass", True)]


def test_descriptive_commands_are_reported_without_running() -> None:
    table = """| Criterion | Command |
|-----------|---------|
| Wording is friendly | Review the greeting wording |
| Tests pass | `pytest -q` |
"""
    runner = FakeRunner({"pytest -q": CommandResult("pytest -q", 0, "3 passed\n", "", False)})

    report = asyncio.run(run_success_criteria(_blueprint(table), cwd=None, runner=runner))

    assert runner.commands == ["pytest -q"]
    descriptive, tests = report.results
    assert descriptive.passed is False
    assert descriptive.error_type == "non_executable"
    assert "human action verb" in descriptive.evidence
    payload = descriptive.to_dict()
    assert payload["errorType"] == "non_executable"
    assert "errorType" not in tests.to_dict()
    assert [result.criterion for result in report.failed()] == ["Wording is friendly"]
