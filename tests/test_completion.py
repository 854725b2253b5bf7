from pathlib import Path

import pytest

from conductor.execution.artifacts import recover_from_hallucination, verify_artifacts_exist
from conductor.execution.completion import validate_completion


def _complete_record() -> dict:
    return {
        "status": "in_progress",
        "phases": [
            {
                "id": 1,
                "name": "Setup",
                "status": "completed",
                "preConditions": [{"check": "git", "command": "git --version", "passed": True}],
                "items": [
                    {"description": "Create src/app.py", "completed": True, "evidence": "src/app.py written"},
                ],
            },
            {
                "id": 2,
                "name": "Tests",
                "status": "completed",
                "items": [{"description": "Add tests", "completed": True, "evidence": "tests/test_app.py"}],
            },
        ],
        "artifacts": [
            {"type": "created", "path": "src/app.py", "verified": True},
            {"type": "created", "path": "tests/test_app.py", "verified": True},
        ],
        "successCriteria": [
            {"criterion": "Tests pass", "command": "pytest", "passed": True, "testType": "AUTOMATED"},
            {"criterion": "Looks right", "command": "MANUAL", "passed": None, "testType": "MANUAL"},
        ],
        "beyondTheBasics": {
            "cleanup": {"debugLogsRemoved": True, "formattingConsistent": True, "deadCodeRemoved": True}
        },
        "completion": {"status": "pending_validation"},
    }


def test_fully_satisfied_record_passes() -> None:
    report = validate_completion(_complete_record())

    assert report.passed is True
    assert report.reasons == []


@pytest.mark.parametrize(
    "mutate, category",
    [
        (lambda r: r["phases"][1].update(status="in_progress"), "phase"),
        (lambda r: r["phases"][0]["items"][0].update(completed=False), "item"),
        (lambda r: r["phases"][0]["preConditions"][0].update(passed=False), "precondition"),
        (lambda r: r["artifacts"][1].update(verified=False), "artifact"),
        (lambda r: r["successCriteria"][0].update(passed=False), "success_criterion"),
        (lambda r: r["successCriteria"][1].update(testType="AUTOMATED"), "success_criterion"),
        (lambda r: r["beyondTheBasics"]["cleanup"].update(deadCodeRemoved=False), "cleanup"),
    ],
)
def test_each_single_failure_yields_exactly_one_reason(mutate, category: str) -> None:
    record = _complete_record()
    mutate(record)

    report = validate_completion(record)

    assert report.passed is False
    assert report.categories() == [category]


def test_every_failing_condition_is_reported() -> None:
    record = _complete_record()
    record["phases"][0]["status"] = "pending"
    record["phases"][1]["items"][0]["completed"] = False
    record["artifacts"][0]["verified"] = False

    report = validate_completion(record)

    assert report.categories() == ["phase", "item", "artifact"]


def test_missing_cleanup_block_is_not_a_failure() -> None:
    record = _complete_record()
    del record["beyondTheBasics"]

    assert validate_completion(record).passed is True


def test_verify_artifacts_marks_existing_and_missing(tmp_path: Path) -> None:
    (tmp_path / "src").mkdir()
    (tmp_path / "src" / "app.py").write_text("print('hi')\n", encoding="utf-8")
    record = _complete_record()
    record["artifacts"].append({"type": "deleted", "path": "old.py", "verified": False})

    check = verify_artifacts_exist(record, tmp_path)

    assert check.existing == ["src/app.py"]
    assert check.missing == ["tests/test_app.py"]
    assert check.valid is False
    assert record["artifacts"][0]["verified"] is True
    assert record["artifacts"][1]["verified"] is False
    assert record["artifacts"][2]["verified"] is False


def test_hallucination_rollback_resets_dependent_work() -> None:
    record = _complete_record()
    record["status"] = "completed"

    report = recover_from_hallucination(record, ["tests/test_app.py"])

    assert report.marked_for_recreation == ["tests/test_app.py"]
    assert report.reset_phases == [2]
    assert report.reset_items == 1
    assert record["status"] == "in_progress"
    assert record["phases"][0]["status"] == "completed"
    assert record["phases"][1]["status"] == "in_progress"
    item = record["phases"][1]["items"][0]
    assert item["completed"] is False
    assert item["hallucinationDetected"] is True
    assert record["artifacts"][1]["needsCreation"] is True
    assert record["completion"]["status"] == "pending_recovery"
    assert record["completion"]["missingArtifacts"] == ["tests/test_app.py"]
    critical = [entry for entry in record["errorHistory"] if entry.get("severity") == "CRITICAL"]
    assert len(record["errorHistory"]) == 1
    assert len(critical) == 1
    assert "tests/test_app.py" in critical[0]["message"]


def test_rollback_leaves_no_completed_item_pointing_at_missing_files() -> None:
    record = _complete_record()
    missing = ["src/app.py", "tests/test_app.py"]

    recover_from_hallucination(record, missing)

    for phase in record["phases"]:
        for item in phase["items"]:
            if item["completed"]:
                assert not any(path in item["evidence"] for path in missing)
        if any(not item["completed"] for item in phase["items"]):
            assert phase["status"] != "completed"
    assert validate_completion(record).passed is False


def test_rollback_matches_by_basename() -> None:
    record = _complete_record()
    record["phases"][0]["items"][0]["evidence"] = "wrote app.py"

    report = recover_from_hallucination(record, ["src/app.py"])

    assert report.reset_items == 1
    assert record["phases"][0]["items"][0]["completed"] is False


def test_rollback_without_missing_files_is_a_no_op() -> None:
    record = _complete_record()

    report = recover_from_hallucination(record, [])

    assert report.reset_items == 0
    assert record["completion"]["status"] == "pending_validation"
