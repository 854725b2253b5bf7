from __future__ import annotations

from pathlib import Path
from typing import Any

from conductor.agents.base import AgentRole


def describe_phase(record: dict[str, Any]) -> str:
    """Plain-text framing of the phase the agent should work on next."""
    phases = record.get("phases") or []
    current = record.get("currentPhase")
    phase_id = current.get("id") if isinstance(current, dict) else None
    phase = next((p for p in phases if p.get("id") == phase_id), None)
    if phase is None:
        phase = next((p for p in phases if p.get("status") != "completed"), None)
    if phase is None:
        return "All recorded phases are completed. Verify the work and finish the cleanup."

    lines = [f"Current phase: Phase {phase.get('id')} ({phase.get('name')}), status {phase.get('status')}."]
    open_items = [item for item in phase.get("items") or [] if item.get("completed") is not True]
    if open_items:
        lines.append("Open items:")
        lines.extend(f"- {item.get('description')}" for item in open_items)
    return "\n".join(lines)


class ExecutorRole(AgentRole):
    role = "executor"
    prompt_file = "executor.md"
    fallback_prompt = """
You are the implementer. Implement exactly what the blueprint plans,
phase by phase, and keep execution.json accurate as you go.
""".strip()

    def instruction(
        self,
        task_id: str,
        blueprint: str,
        record: dict[str, Any],
        execution_path: Path,
    ) -> str:
        sections = [
            f"# Execute {task_id}",
            f"Execution record: {execution_path}",
            describe_phase(record),
        ]
        completion = record.get("completion") or {}
        remediation = completion.get("pendingRemediation") or []
        notes = completion.get("validationNotes") or []
        if remediation or notes:
            block = ["The previous attempt did not pass validation."]
            if remediation:
                block.append("Failed checks: " + ", ".join(remediation) + ".")
            block.extend(f"- {note}" for note in notes)
            sections.append("\n".join(block))
        missing = completion.get("missingArtifacts") or []
        if missing:
            sections.append(
                "These files were claimed but never written; create them: " + ", ".join(missing)
            )
        sections.append("## BLUEPRINT.md\n\n" + blueprint.strip())
        return "\n\n".join(sections)

    def legacy_instruction(
        self,
        task_id: str,
        todo_path: Path,
        research: str | None,
        escalation: list[str],
    ) -> str:
        sections = [
            f"# Execute {task_id}",
            f"Follow the plan in {todo_path}. When every item is done, set its first line to "
            "'Fully implemented: YES'.",
        ]
        if research:
            sections.append("## Research notes\n\n" + research.strip())
        else:
            sections.append(
                f"Before changing code, study the files this task touches and write your "
                f"findings to {todo_path.parent / 'RESEARCH.md'}."
            )
        if escalation:
            sections.append(
                "## Previous attempts failed\n\n" + "\n".join(f"- {message}" for message in escalation)
            )
        return "\n\n".join(sections)
