from __future__ import annotations

from pathlib import Path

from conductor.agents.base import AgentRole


class PlannerRole(AgentRole):
    role = "planner"
    prompt_file = "planner.md"
    fallback_prompt = """
You are the planner. Turn a task definition into an implementation blueprint.
You produce plans, not code.
""".strip()

    def instruction(self, task_id: str, task_definition: str, task_dir: Path) -> str:
        return (
            f"# Task {task_id}\n\n"
            f"{task_definition.strip()}\n\n"
            f"Write the blueprint to {task_dir / 'BLUEPRINT.md'} and the initial "
            f"execution record to {task_dir / 'execution.json'}."
        )
