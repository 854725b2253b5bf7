from __future__ import annotations

from importlib import resources
from pathlib import Path

from conductor.backends.base import AgentBackend, AgentRun


class AgentRole:
    """A prompt persona delegated to the execution agent."""

    role: str = "agent"
    prompt_file: str | None = None
    fallback_prompt: str = "You are a software engineer working inside an existing repository."

    def __init__(self, backend: AgentBackend) -> None:
        self.backend = backend
        self.system_prompt = self._load_system_prompt()

    def _load_system_prompt(self) -> str:
        if not self.prompt_file:
            return self.fallback_prompt.strip()
        try:
            prompt_path = resources.files("conductor.prompts").joinpath(self.prompt_file)
            return prompt_path.read_text(encoding="utf-8").strip()
        except (FileNotFoundError, ModuleNotFoundError):
            return self.fallback_prompt.strip()

    def compose(self, instruction: str) -> str:
        return f"{self.system_prompt}\n\n---\n\n{instruction.strip()}\n"

    def start(self, instruction: str, *, task_id: str, cwd: Path | None = None) -> AgentRun:
        return self.backend.start(self.compose(instruction), task_id=task_id, cwd=cwd)
