from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

from conductor.backends.base import (
    AgentBackend,
    AgentEvent,
    BackendExecutionError,
    BackendProcessError,
)

CREATE_TOOLS = {"Write"}
MODIFY_TOOLS = {"Edit", "MultiEdit", "NotebookEdit"}


class ClaudeCodeBackend(AgentBackend):
    name = "claude"

    def __init__(
        self,
        binary: str = "claude",
        working_directory: Path | None = None,
        model: str | None = None,
    ) -> None:
        self.binary = binary
        self.working_directory = working_directory
        self.model = model

    def build_command(self, prompt: str) -> list[str]:
        command = [
            self.binary,
            "--dangerously-skip-permissions",
            "-p",
            prompt,
            "--output-format",
            "stream-json",
            "--verbose",
        ]
        if self.model:
            command.extend(["--model", self.model])
        return command

    @staticmethod
    def _appears_partial_json(raw: str) -> bool:
        return raw.count("{") > raw.count("}") or raw.count("[") > raw.count("]")

    @staticmethod
    def _tool_event(block: dict[str, Any]) -> AgentEvent:
        tool_name = str(block.get("name") or "")
        tool_input = block.get("input") if isinstance(block.get("input"), dict) else {}
        file_path = tool_input.get("file_path") or tool_input.get("notebook_path")
        data: dict[str, Any] = {"tool": tool_name}
        description = tool_name
        if isinstance(file_path, str) and file_path:
            description = f"{tool_name}: {file_path}"
            if tool_name in CREATE_TOOLS:
                data["created"] = [file_path]
            elif tool_name in MODIFY_TOOLS:
                data["modified"] = [file_path]
        elif isinstance(tool_input.get("command"), str):
            description = f"{tool_name}: {tool_input['command'][:120]}"
        return AgentEvent(kind="tool", text=description, data=data)

    @classmethod
    def parse_event(cls, event: dict[str, Any]) -> list[AgentEvent]:
        event_type = event.get("type")
        if event_type == "system":
            if event.get("subtype") == "init":
                return [AgentEvent(kind="progress", text="Starting Claude...")]
            return []
        if event_type == "assistant":
            message = event.get("message")
            if not isinstance(message, dict) or not isinstance(message.get("content"), list):
                return []
            parsed: list[AgentEvent] = []
            for block in message["content"]:
                if not isinstance(block, dict):
                    continue
                if block.get("type") == "text" and block.get("text"):
                    parsed.append(AgentEvent(kind="progress", text=str(block["text"])))
                elif block.get("type") == "tool_use":
                    parsed.append(cls._tool_event(block))
            return parsed
        if event_type == "result":
            ok = event.get("subtype") == "success" and not event.get("is_error", False)
            duration_ms = event.get("duration_ms") or 0
            data: dict[str, Any] = {
                "ok": ok,
                "duration_seconds": float(duration_ms) / 1000.0,
                "cost_usd": event.get("total_cost_usd"),
            }
            if not ok:
                data["error"] = str(event.get("error") or event.get("result") or "Unknown error")
            summary = event.get("result")
            return [
                AgentEvent(
                    kind="result",
                    text=summary if isinstance(summary, str) else "",
                    data=data,
                )
            ]
        return []

    async def stream(self, prompt: str, *, cwd: Path | None = None) -> AsyncIterator[AgentEvent]:
        run_cwd = cwd or self.working_directory
        command = self.build_command(prompt)
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(run_cwd) if run_cwd else None,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise BackendProcessError(
                f"Claude binary not found: {self.binary}",
                backend="claude",
                retriable=False,
            ) from exc

        if process.stdout is None:
            raise BackendProcessError(
                "Claude backend did not expose stdout.", backend="claude", retriable=False
            )

        parse_buffer = ""
        async for raw_line in process.stdout:
            line = raw_line.decode("utf-8", errors="replace").strip()
            if not line:
                continue
            candidate = f"{parse_buffer}{line}" if parse_buffer else line
            try:
                event = json.loads(candidate)
                parse_buffer = ""
            except json.JSONDecodeError:
                if self._appears_partial_json(candidate):
                    parse_buffer = candidate
                    continue
                parse_buffer = ""
                yield AgentEvent(kind="progress", text=line)
                continue

            if not isinstance(event, dict):
                continue
            for parsed in self.parse_event(event):
                yield parsed

        return_code = await process.wait()
        stderr_output = ""
        if process.stderr is not None:
            stderr_output = (await process.stderr.read()).decode("utf-8", errors="replace").strip()
        if return_code != 0:
            raise BackendExecutionError(
                f"Claude backend failed with exit code {return_code}: {stderr_output}",
                backend="claude",
                exit_code=return_code,
                retriable=True,
            )
