from __future__ import annotations

from pathlib import Path

from conductor.agents.base import AgentRole


class ReviewerRole(AgentRole):
    role = "reviewer"
    prompt_file = "reviewer.md"
    fallback_prompt = """
You are the code reviewer. Check the implementation against its plan
and write a verdict. You do not change code.
""".strip()

    def instruction(self, task_id: str, task_dir: Path) -> str:
        documents = [
            name
            for name in ("TASK.md", "BLUEPRINT.md", "TODO.md", "execution.json", "review-checklist.json")
            if (task_dir / name).exists()
        ]
        listing = "\n".join(f"- {task_dir / name}" for name in documents)
        return (
            f"# Review {task_id}\n\n"
            f"Planning and tracking documents:\n{listing}\n\n"
            f"Write {task_dir / 'CODE_REVIEW.md'} with a '## Status' heading "
            "followed by APPROVED or REJECTED on the next line."
        )
