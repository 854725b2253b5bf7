from __future__ import annotations

import logging
import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from conductor.errors import GraphError
from conductor.validation.approval import is_task_approved

logger = logging.getLogger(__name__)

TASK_DIR_PATTERN = re.compile(r"^TASK\d+")
TASK_ID_PATTERN = re.compile(r"^TASK\d+(?:\.\d+)*$", re.IGNORECASE)
DEPENDENCY_TAG_PATTERN = re.compile(
    r"^\s*@dependencies\s*(?:\[(.*?)\]|(.+))\s*$",
    re.IGNORECASE | re.MULTILINE,
)
SUBTASK_SUFFIX_PATTERN = re.compile(r"^\d+(?:\.\d+)*$")


def natural_key(name: str) -> list[Any]:
    """Sort key that orders TASK2 before TASK10 and TASK2 before TASK2.1."""
    return [int(part) if part.isdigit() else part.lower() for part in re.split(r"(\d+)", name)]


@dataclass(frozen=True, slots=True)
class TaskNode:
    task_id: str
    dependencies: frozenset[str]
    approved: bool = False

    @property
    def approval(self) -> str:
        return "approved" if self.approved else "pending"


@dataclass(frozen=True, slots=True)
class DependencyGraph:
    nodes: tuple[TaskNode, ...]

    @property
    def roster(self) -> list[str]:
        return [node.task_id for node in self.nodes]

    def node(self, task_id: str) -> TaskNode:
        for node in self.nodes:
            if node.task_id == task_id:
                return node
        raise KeyError(task_id)

    def __contains__(self, task_id: object) -> bool:
        return any(node.task_id == task_id for node in self.nodes)

    def __len__(self) -> int:
        return len(self.nodes)

    def approved_ids(self) -> set[str]:
        return {node.task_id for node in self.nodes if node.approved}

    def unresolved(self) -> dict[str, list[str]]:
        known = set(self.roster)
        missing: dict[str, list[str]] = {}
        for node in self.nodes:
            unknown = sorted((dep for dep in node.dependencies if dep not in known), key=natural_key)
            if unknown:
                missing[node.task_id] = unknown
        return missing

    def ready(self, approved: set[str], exclude: Iterable[str] = ()) -> list[str]:
        """Tasks, in roster order, whose dependencies are all approved."""
        skip = set(exclude) | approved
        return [
            node.task_id
            for node in self.nodes
            if node.task_id not in skip and node.dependencies <= approved
        ]

    def to_dict(self) -> dict[str, dict[str, Any]]:
        return {
            node.task_id: {
                "deps": sorted(node.dependencies, key=natural_key),
                "status": node.approval,
            }
            for node in self.nodes
        }


def parse_dependency_declaration(text: str) -> list[str] | None:
    """Raw tokens of the first ``@dependencies`` line, or None without a tag."""
    match = DEPENDENCY_TAG_PATTERN.search(text)
    if match is None:
        return None
    raw = (match.group(1) if match.group(1) is not None else match.group(2) or "").strip()
    if not raw:
        return []
    return [token.strip() for token in raw.split(",") if token.strip()]


def find_subtasks(task_id: str, roster: Iterable[str]) -> list[str]:
    prefix = f"{task_id}."
    return [
        candidate
        for candidate in roster
        if candidate.startswith(prefix) and SUBTASK_SUFFIX_PATTERN.match(candidate[len(prefix) :])
    ]


def normalize_dependencies(task_id: str, tokens: Iterable[str], roster: Iterable[str]) -> frozenset[str]:
    known = list(roster)
    seen: list[str] = []
    for token in tokens:
        cleaned = token.strip().strip("`'\"")
        if not cleaned or cleaned.lower() == "none":
            continue
        if not TASK_ID_PATTERN.match(cleaned):
            logger.debug("Dropping unrecognized dependency token %r for %s", cleaned, task_id)
            continue
        dep = cleaned.upper()
        if dep not in seen:
            seen.append(dep)

    expanded: set[str] = set()
    for dep in seen:
        expanded.add(dep)
        expanded.update(find_subtasks(dep, known))
    expanded.discard(task_id)
    return frozenset(expanded)


def build_graph(
    declarations: Mapping[str, str | None],
    *,
    approved: Iterable[str] = (),
    unknown_dependencies: str = "keep",
) -> DependencyGraph:
    """Build a graph from each task's definition text (None means no text).

    Pure: depends only on the declaration texts and the roster they imply.
    """
    if not declarations:
        raise GraphError("No tasks found to build a dependency graph.")
    roster = sorted(declarations, key=natural_key)
    missing_definitions = [task_id for task_id in roster if declarations[task_id] is None]
    if missing_definitions:
        raise GraphError(
            "Cannot build dependency graph; missing TASK.md for: " + ", ".join(missing_definitions)
        )

    approved_ids = set(approved)
    nodes: list[TaskNode] = []
    for task_id in roster:
        tokens = parse_dependency_declaration(declarations[task_id] or "")
        dependencies = normalize_dependencies(task_id, tokens or [], roster)
        nodes.append(
            TaskNode(task_id=task_id, dependencies=dependencies, approved=task_id in approved_ids)
        )

    graph = DependencyGraph(nodes=tuple(nodes))
    unresolved = graph.unresolved()
    if unresolved:
        details = "; ".join(f"{task_id} -> {', '.join(deps)}" for task_id, deps in unresolved.items())
        if unknown_dependencies == "error":
            raise GraphError(f"Dependencies reference unknown tasks: {details}")
        logger.warning("Unresolved dependencies kept in graph: %s", details)
    return graph


def discover_tasks(workspace: Path) -> list[str]:
    if not workspace.is_dir():
        return []
    return sorted(
        (
            entry.name
            for entry in workspace.iterdir()
            if entry.is_dir() and TASK_DIR_PATTERN.match(entry.name)
        ),
        key=natural_key,
    )


def load_graph(workspace: Path, *, unknown_dependencies: str = "keep") -> DependencyGraph:
    declarations: dict[str, str | None] = {}
    approved: list[str] = []
    for task_id in discover_tasks(workspace):
        task_dir = workspace / task_id
        definition = task_dir / "TASK.md"
        declarations[task_id] = (
            definition.read_text(encoding="utf-8", errors="replace") if definition.is_file() else None
        )
        if is_task_approved(task_dir):
            approved.append(task_id)
    if not declarations:
        raise GraphError(f"No task folders found in {workspace}")
    return build_graph(declarations, approved=approved, unknown_dependencies=unknown_dependencies)
