from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

from openai import OpenAI, OpenAIError

from conductor.backends.base import AgentBackend, AgentEvent, BackendExecutionError
from conductor.backends.codex import CodexBackend

logger = logging.getLogger(__name__)

SDK_INSTRUCTIONS = (
    "You are an autonomous software engineer working inside a task orchestration run. "
    "Follow the task instructions exactly and report what you changed."
)


class CodexSDKBackend(AgentBackend):
    """Optional SDK backend with automatic fallback to Codex CLI."""

    name = "codex_sdk"

    def __init__(
        self,
        *,
        model: str = "gpt-5-codex",
        working_directory: Path | None = None,
    ) -> None:
        self.model = model
        self.working_directory = working_directory
        self.cli_fallback = CodexBackend(working_directory=working_directory, model=model)
        self._client: Any | None = None
        try:
            self._client = OpenAI()
        except OpenAIError as exc:
            logger.warning("OpenAI client unavailable, using Codex CLI: %s", exc)
            self._client = None

    @staticmethod
    def _extract_text(payload: Any) -> str:
        if payload is None:
            return ""
        output_text = getattr(payload, "output_text", None)
        if isinstance(output_text, str):
            return output_text
        if isinstance(payload, dict):
            value = payload.get("output_text")
            if isinstance(value, str):
                return value
        return str(output_text or "")

    async def stream(self, prompt: str, *, cwd: Path | None = None) -> AsyncIterator[AgentEvent]:
        if self._client is None:
            async for event in self.cli_fallback.stream(prompt, cwd=cwd):
                yield event
            return

        def _request() -> Any:
            return self._client.responses.create(
                model=self.model,
                input=[
                    {"role": "system", "content": SDK_INSTRUCTIONS},
                    {"role": "user", "content": prompt},
                ],
            )

        try:
            payload = await asyncio.to_thread(_request)
        except OpenAIError as exc:
            raise BackendExecutionError(
                f"Codex SDK execution failed: {exc}",
                backend="codex_sdk",
                retriable=True,
            ) from exc

        content = self._extract_text(payload).strip()
        if content:
            yield AgentEvent(kind="progress", text=content)
        yield AgentEvent(kind="result", text=content[:500], data={"ok": True})
