"""Reconcile declared artifacts with what git reports as changed."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ChangeReport:
    actual: list[str] = field(default_factory=list)
    declared: list[str] = field(default_factory=list)
    undeclared: list[str] = field(default_factory=list)
    missing: list[str] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.undeclared and not self.missing


def normalize_path(path: str) -> str:
    normalized = path.replace("\\", "/").strip()
    if normalized.startswith("./"):
        normalized = normalized[2:]
    return normalized


async def _run_git(args: list[str], cwd: Path) -> tuple[int | None, str, str]:
    process = await asyncio.create_subprocess_exec(
        "git",
        "--no-pager",
        *args,
        cwd=cwd,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    stdout, stderr = await process.communicate()
    return (
        process.returncode,
        stdout.decode("utf-8", errors="replace"),
        stderr.decode("utf-8", errors="replace"),
    )


async def git_changed_files(cwd: Path) -> list[str]:
    """Staged plus unstaged paths; empty when git is unavailable or fails."""
    files: list[str] = []
    for args in (["diff", "--name-only", "--cached"], ["diff", "--name-only"]):
        try:
            returncode, stdout, stderr = await _run_git(args, cwd)
        except FileNotFoundError:
            logger.warning("git executable not found, skipping change reconciliation")
            return []
        if returncode != 0:
            logger.debug("git %s failed: %s", " ".join(args), stderr.strip())
            return []
        for line in stdout.splitlines():
            path = normalize_path(line)
            if path and path not in files:
                files.append(path)
    return files


async def reconcile_changes(
    record: dict[str, Any],
    cwd: Path,
    *,
    ignore_prefixes: tuple[str, ...] = (),
) -> ChangeReport:
    """Report both directions of mismatch; callers decide whether it matters."""
    actual = [
        path for path in await git_changed_files(cwd) if not path.startswith(ignore_prefixes)
    ]
    declared = [
        normalize_path(str(artifact.get("path") or ""))
        for artifact in record.get("artifacts") or []
        if artifact.get("type") in {"created", "modified"}
    ]
    report = ChangeReport(
        actual=actual,
        declared=declared,
        undeclared=[path for path in actual if path not in declared],
        missing=[path for path in declared if path not in actual],
    )
    logger.info(
        "Git shows %d changed files; execution.json declares %d artifacts",
        len(actual),
        len(declared),
    )
    for path in report.undeclared:
        logger.warning("Changed but not declared in artifacts: %s", path)
    for path in report.missing:
        logger.warning("Declared in artifacts but not changed: %s", path)
    return report
