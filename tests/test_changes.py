import asyncio
import subprocess
from pathlib import Path

import pytest

from conductor.validation import changes
from conductor.validation.changes import git_changed_files, normalize_path, reconcile_changes


def _run(cmd: list[str], cwd: Path) -> None:
    subprocess.run(cmd, cwd=cwd, check=True, text=True, capture_output=True)


def _init_git_repo(repo_path: Path) -> None:
    _run(["git", "init"], cwd=repo_path)
    _run(["git", "config", "user.email", "test@example.com"], cwd=repo_path)
    _run(["git", "config", "user.name", "Test User"], cwd=repo_path)
    (repo_path / "seed.txt").write_text("seed\n", encoding="utf-8")
    (repo_path / "app.py").write_text("print('v1')\n", encoding="utf-8")
    _run(["git", "add", "seed.txt", "app.py"], cwd=repo_path)
    _run(["git", "commit", "-m", "seed"], cwd=repo_path)


def _record(*artifacts: tuple[str, str]) -> dict:
    return {"artifacts": [{"type": kind, "path": path} for kind, path in artifacts]}


def test_normalize_path() -> None:
    assert normalize_path("./src\\app.py ") == "src/app.py"
    assert normalize_path("src/app.py") == "src/app.py"


def test_git_changed_files_merges_staged_and_unstaged(tmp_path: Path) -> None:
    _init_git_repo(tmp_path)
    (tmp_path / "seed.txt").write_text("changed\n", encoding="utf-8")
    (tmp_path / "app.py").write_text("print('v2')\n", encoding="utf-8")
    _run(["git", "add", "app.py"], cwd=tmp_path)

    assert asyncio.run(git_changed_files(tmp_path)) == ["app.py", "seed.txt"]


def test_git_changed_files_outside_a_repository_is_empty(tmp_path: Path) -> None:
    assert asyncio.run(git_changed_files(tmp_path)) == []


def test_git_changed_files_without_git_binary(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    async def _missing(args: list[str], cwd: Path) -> tuple[int | None, str, str]:
        raise FileNotFoundError("git")

    monkeypatch.setattr(changes, "_run_git", _missing)

    assert asyncio.run(git_changed_files(tmp_path)) == []


def test_reconcile_changes_reports_both_directions(tmp_path: Path) -> None:
    _init_git_repo(tmp_path)
    (tmp_path / "seed.txt").write_text("changed\n", encoding="utf-8")
    (tmp_path / "app.py").write_text("print('v2')\n", encoding="utf-8")
    workspace = tmp_path / ".conductor"
    workspace.mkdir()
    (workspace / "notes.md").write_text("x\n", encoding="utf-8")
    _run(["git", "add", "-f", ".conductor/notes.md"], cwd=tmp_path)

    report = asyncio.run(
        reconcile_changes(
            _record(("modified", "./app.py"), ("created", "lib/new.py"), ("deleted", "gone.py")),
            tmp_path,
            ignore_prefixes=(".conductor/",),
        )
    )

    assert report.actual == ["app.py", "seed.txt"]
    assert report.declared == ["app.py", "lib/new.py"]
    assert report.undeclared == ["seed.txt"]
    assert report.missing == ["lib/new.py"]
    assert report.valid is False


def test_reconcile_changes_matches_when_declared(tmp_path: Path) -> None:
    _init_git_repo(tmp_path)
    (tmp_path / "app.py").write_text("print('v2')\n", encoding="utf-8")

    report = asyncio.run(reconcile_changes(_record(("modified", "app.py")), tmp_path))

    assert report.valid is True


def test_git_runs_as_an_asyncio_subprocess(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    calls: list[tuple[str, ...]] = []

    class FakeGit:
        returncode = 0

        def __init__(self, output: bytes) -> None:
            self.output = output

        async def communicate(self) -> tuple[bytes, bytes]:
            await asyncio.sleep(0)
            return self.output, b""

    async def fake_create_subprocess_exec(*args: str, **kwargs: object) -> FakeGit:
        calls.append(args)
        return FakeGit(b"src/app.py\n" if "--cached" in args else b"README.md\nsrc/app.py\n")

    monkeypatch.setattr(asyncio, "create_subprocess_exec", fake_create_subprocess_exec)

    async def _with_ticker() -> tuple[list[str], int]:
        ticks = 0

        async def _tick() -> None:
            nonlocal ticks
            while True:
                ticks += 1
                await asyncio.sleep(0)

        ticker = asyncio.create_task(_tick())
        files = await git_changed_files(tmp_path)
        ticker.cancel()
        return files, ticks

    files, ticks = asyncio.run(_with_ticker())

    assert files == ["src/app.py", "README.md"]
    assert calls[0][:2] == ("git", "--no-pager")
    assert len(calls) == 2
    assert ticks > 0
