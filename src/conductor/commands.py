from __future__ import annotations

import asyncio
import re
import shlex
from dataclasses import dataclass
from pathlib import Path

SHELL_REQUIRED_PATTERN = re.compile(r"(?:\|\||&&|[|;<>`*?~]|[$]\()")


@dataclass(slots=True)
class CommandResult:
    command: str
    exit_code: int | None
    stdout: str
    stderr: str
    used_shell: bool
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return not self.timed_out and self.exit_code == 0


async def run_command(command: str, *, cwd: Path | None, timeout_seconds: float) -> CommandResult:
    """Run ``command`` and hard-kill it once ``timeout_seconds`` elapse."""
    command_text = command.strip()
    if not command_text:
        return CommandResult(command, 1, "", "Command is empty.", used_shell=False)

    used_shell = bool(SHELL_REQUIRED_PATTERN.search(command_text))
    argv: list[str] = []
    if not used_shell:
        try:
            argv = shlex.split(command_text)
        except ValueError:
            used_shell = True

    try:
        if used_shell:
            process = await asyncio.create_subprocess_shell(
                command_text,
                cwd=str(cwd) if cwd else None,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        else:
            process = await asyncio.create_subprocess_exec(
                *argv,
                cwd=str(cwd) if cwd else None,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
    except FileNotFoundError as exc:
        return CommandResult(command, 127, "", str(exc), used_shell=used_shell)

    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout_seconds)
    except TimeoutError:
        process.kill()
        await process.wait()
        return CommandResult(command, None, "", "", used_shell=used_shell, timed_out=True)

    return CommandResult(
        command,
        process.returncode,
        stdout.decode("utf-8", errors="replace"),
        stderr.decode("utf-8", errors="replace"),
        used_shell=used_shell,
    )
