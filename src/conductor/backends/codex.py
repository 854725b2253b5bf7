from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator, Callable
from pathlib import Path
from typing import Any

from conductor.backends.base import (
    AgentBackend,
    AgentEvent,
    BackendExecutionError,
    BackendProcessError,
)


class CodexBackend(AgentBackend):
    name = "codex"

    def __init__(
        self,
        binary: str = "codex",
        working_directory: Path | None = None,
        model: str | None = None,
        event_hook: Callable[[dict[str, Any]], None] | None = None,
    ) -> None:
        self.binary = binary
        self.working_directory = working_directory
        self.model = model
        self.event_hook = event_hook

    def _emit(self, payload: dict[str, Any]) -> None:
        if self.event_hook is not None:
            self.event_hook(payload)

    def build_command(self, prompt: str) -> list[str]:
        command = [
            self.binary,
            "exec",
            "--json",
            "--full-auto",
            "--sandbox",
            "danger-full-access",
        ]
        if self.model and self.model.strip():
            command.extend(["-m", self.model.strip()])
        command.append(prompt)
        return command

    @staticmethod
    def _extract_content(event: dict[str, Any]) -> str:
        content = event.get("content")
        if isinstance(content, str):
            return content
        if isinstance(content, list):
            parts: list[str] = []
            for item in content:
                if isinstance(item, dict):
                    text = item.get("text")
                    if isinstance(text, str):
                        parts.append(text)
            return "".join(parts)

        delta = event.get("delta")
        if isinstance(delta, str):
            return delta

        message = event.get("message")
        if isinstance(message, str):
            return message
        if isinstance(message, dict):
            msg_content = message.get("content")
            if isinstance(msg_content, str):
                return msg_content

        return ""

    @staticmethod
    def _file_change_event(item: dict[str, Any]) -> AgentEvent:
        created: list[str] = []
        modified: list[str] = []
        for change in item.get("changes") or []:
            if not isinstance(change, dict) or not isinstance(change.get("path"), str):
                continue
            if change.get("kind") == "add":
                created.append(change["path"])
            elif change.get("kind") == "update":
                modified.append(change["path"])
        touched = ", ".join(created + modified) or "files"
        return AgentEvent(
            kind="tool",
            text=f"Patch: {touched}",
            data={"tool": "file_change", "created": created, "modified": modified},
        )

    @classmethod
    def parse_event(cls, event: dict[str, Any]) -> list[AgentEvent]:
        event_type = str(event.get("type", ""))
        item = event.get("item")
        if event_type == "item.completed" and isinstance(item, dict):
            item_type = item.get("type")
            if item_type == "agent_message" and isinstance(item.get("text"), str):
                return [AgentEvent(kind="progress", text=item["text"])]
            if item_type == "command_execution":
                return [
                    AgentEvent(
                        kind="tool",
                        text=f"Bash: {str(item.get('command', ''))[:120]}",
                        data={"tool": "command_execution"},
                    )
                ]
            if item_type == "file_change":
                return [cls._file_change_event(item)]
            return []
        if event_type == "turn.failed":
            error = event.get("error")
            message = error.get("message") if isinstance(error, dict) else str(error or "")
            return [AgentEvent(kind="result", text="", data={"ok": False, "error": message})]
        if event_type == "turn.completed":
            return [AgentEvent(kind="result", text="", data={"ok": True})]

        content = cls._extract_content(event)
        if content:
            return [AgentEvent(kind="progress", text=content)]
        return []

    @staticmethod
    def _appears_partial_json(raw: str) -> bool:
        return raw.count("{") > raw.count("}") or raw.count("[") > raw.count("]")

    async def stream(self, prompt: str, *, cwd: Path | None = None) -> AsyncIterator[AgentEvent]:
        command = self.build_command(prompt)
        run_cwd = cwd or self.working_directory
        self._emit(
            {
                "event": "codex_cli_start",
                "command": command[:4],
                "model": self.model,
            }
        )
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(run_cwd) if run_cwd else None,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise BackendProcessError(
                f"Codex binary not found: {self.binary}",
                backend="codex",
                retriable=False,
            ) from exc

        if process.stdout is None:
            raise BackendProcessError(
                "Codex backend did not expose stdout.", backend="codex", retriable=False
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
                    self._emit({"event": "codex_json_partial", "bytes": len(candidate)})
                    continue
                parse_buffer = ""
                self._emit({"event": "codex_json_parse_fallback", "line": line[:200]})
                continue

            if not isinstance(event, dict):
                continue
            parsed = self.parse_event(event)
            self._emit(
                {
                    "event": "codex_json_event",
                    "type": str(event.get("type", "")),
                    "has_content": bool(parsed),
                }
            )
            for agent_event in parsed:
                yield agent_event

        if parse_buffer:
            self._emit({"event": "codex_json_buffer_flush", "bytes": len(parse_buffer)})

        return_code = await process.wait()
        stderr_output = ""
        if process.stderr is not None:
            stderr_output = (await process.stderr.read()).decode("utf-8", errors="replace").strip()
        if return_code != 0:
            self._emit(
                {
                    "event": "codex_cli_exit",
                    "exit_code": return_code,
                    "stderr": stderr_output[:400],
                }
            )
            raise BackendExecutionError(
                f"Codex backend failed with exit code {return_code}: {stderr_output}",
                backend="codex",
                exit_code=return_code,
                retriable=True,
            )
        self._emit({"event": "codex_cli_exit", "exit_code": 0})
