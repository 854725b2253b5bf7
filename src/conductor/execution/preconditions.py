from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from conductor.commands import CommandResult, run_command
from conductor.execution.security import is_dangerous_command

logger = logging.getLogger(__name__)

CommandRunner = Callable[..., Awaitable[CommandResult]]

AUTO_PASS_EVIDENCE = "No command specified - auto-passed"
INFORMATIONAL_EVIDENCE = "Informational check - auto-passed"
REJECTED_EVIDENCE = "Command rejected: contains dangerous patterns"


@dataclass(slots=True)
class PreconditionOutcome:
    passed: bool
    blocked: bool
    check: str | None = None
    evidence: str | None = None
    dangerous: bool = False


def _is_informational(command: str) -> bool:
    return command == "true" or command.lower().startswith('echo "no command')


def _evaluate(result: CommandResult, expected: str, timeout_seconds: float) -> tuple[bool, str]:
    if result.timed_out:
        return False, f"Command timed out after {int(timeout_seconds * 1000)}ms"
    if result.exit_code != 0:
        detail = result.stderr.strip() or result.stdout.strip()
        return False, f"Command failed with exit code {result.exit_code}: {detail}".strip()
    stdout = result.stdout
    return (not expected or expected in stdout), stdout.strip()


async def verify_preconditions(
    record: dict[str, Any],
    *,
    cwd: Path | None,
    timeout_seconds: float = 5.0,
    runner: CommandRunner = run_command,
    quiet: bool = False,
) -> PreconditionOutcome:
    """Check every phase's preconditions in order, stopping at the first failure.

    Results are written onto the precondition entries. A denylisted command is
    rejected without running and moves the record to ``blocked``; any other
    failure leaves it ``in_progress`` for the next attempt.
    """
    for phase in record.get("phases") or []:
        for precondition in phase.get("preConditions") or []:
            check = str(precondition.get("check") or "unnamed check")
            command = str(precondition.get("command") or "").strip()
            expected = str(precondition.get("expected") or "")

            if not command:
                precondition["passed"] = True
                precondition["evidence"] = AUTO_PASS_EVIDENCE
                continue
            if _is_informational(command):
                precondition["passed"] = True
                precondition["evidence"] = INFORMATIONAL_EVIDENCE
                continue

            if is_dangerous_command(command):
                precondition["passed"] = False
                precondition["evidence"] = REJECTED_EVIDENCE
                record["status"] = "blocked"
                logger.warning("Pre-condition rejected: %s (%s)", check, command)
                return PreconditionOutcome(
                    passed=False,
                    blocked=True,
                    check=check,
                    evidence=REJECTED_EVIDENCE,
                    dangerous=True,
                )

            if not quiet:
                logger.info("Checking pre-condition %s: %s", check, command)
            result = await runner(command, cwd=cwd, timeout_seconds=timeout_seconds)
            passed, evidence = _evaluate(result, expected, timeout_seconds)
            precondition["passed"] = passed
            precondition["evidence"] = evidence
            if not passed:
                record["status"] = "in_progress"
                logger.warning("Pre-condition FAILED: %s. Evidence: %s", check, evidence[:200])
                return PreconditionOutcome(passed=False, blocked=False, check=check, evidence=evidence)

    if not quiet:
        logger.info("All pre-conditions passed")
    return PreconditionOutcome(passed=True, blocked=False)
