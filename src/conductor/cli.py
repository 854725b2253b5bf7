from __future__ import annotations

import asyncio
import json
import logging
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import click

from conductor.config import BACKEND_NAMES, ConductorConfig, load_config, save_config
from conductor.context import RunContext
from conductor.display import WatchDisplay
from conductor.errors import ConductorError
from conductor.execution.record import load_execution
from conductor.graph import DependencyGraph, discover_tasks, load_graph
from conductor.scheduler import DagScheduler, RunSummary
from conductor.validation import is_completed_from_execution, is_task_approved

DEFAULT_CONFIG = "conductor.toml"


def _resolve_config_path(repo_root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = repo_root / config_path
    return config_path.resolve()


def _load(config_value: str) -> tuple[Path, ConductorConfig]:
    repo_root = Path.cwd().resolve()
    try:
        config = load_config(_resolve_config_path(repo_root, config_value))
    except ConductorError as exc:
        raise click.ClickException(str(exc)) from exc
    return repo_root, config


def _configure_logging(config: ConductorConfig, verbose: bool) -> None:
    level = logging.DEBUG if verbose else getattr(logging, config.logging.level.upper())
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")


def _load_graph(repo_root: Path, config: ConductorConfig) -> DependencyGraph:
    try:
        return load_graph(
            repo_root / config.project.workspace_dir,
            unknown_dependencies=config.scheduler.unknown_dependencies,
        )
    except ConductorError as exc:
        raise click.ClickException(str(exc)) from exc


def _record_event(events_path: Path, event: dict[str, Any]) -> None:
    payload = dict(event)
    payload["at"] = datetime.now(UTC).replace(microsecond=0).isoformat()
    with events_path.open("a", encoding="utf-8") as handle:
        handle.write(json.dumps(payload, ensure_ascii=False) + "\n")


async def _run_scheduler(
    context: RunContext, graph: DependencyGraph, max_concurrent: int | None, watch: bool
) -> RunSummary:
    scheduler = DagScheduler(context, graph, max_concurrent=max_concurrent)
    if not watch:
        return await scheduler.run()
    with WatchDisplay(context, click.echo) as display:
        summary = await scheduler.run()
        await display.flush()
    return summary


@click.group()
def cli() -> None:
    """Conductor CLI."""


@cli.command("init")
@click.option("--backend", type=click.Choice(BACKEND_NAMES), default=None)
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def init_command(backend: str | None, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    config_path = _resolve_config_path(repo_root, config_value)
    _, config = _load(config_value)
    if backend:
        config.backend.primary = backend  # type: ignore[assignment]
    save_config(config_path, config)

    workspace = repo_root / config.project.workspace_dir
    workspace.mkdir(parents=True, exist_ok=True)

    click.echo(f"Initialized Conductor in {repo_root}")
    click.echo(f"Config: {config_path}")
    click.echo(f"Workspace: {workspace}")
    click.echo(f"Backend: {config.backend.primary}")


@cli.command("run")
@click.option("--max-concurrent", type=click.IntRange(min=1), default=None)
@click.option("--unlimited", is_flag=True, default=False, help="Run every ready task at once.")
@click.option("--limit", "attempt_limit", type=click.IntRange(min=1), default=None)
@click.option("--no-limit", is_flag=True, default=False, help="Retry tasks without a ceiling.")
@click.option("--watch", is_flag=True, default=False)
@click.option("--verbose", is_flag=True, default=False)
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def run_command(
    max_concurrent: int | None,
    unlimited: bool,
    attempt_limit: int | None,
    no_limit: bool,
    watch: bool,
    verbose: bool,
    config_value: str,
) -> None:
    if unlimited and max_concurrent is not None:
        raise click.UsageError("--max-concurrent and --unlimited are mutually exclusive")
    if no_limit and attempt_limit is not None:
        raise click.UsageError("--limit and --no-limit are mutually exclusive")

    repo_root, config = _load(config_value)
    if unlimited:
        config.scheduler.unlimited_concurrency = True
    elif max_concurrent is not None:
        config.scheduler.unlimited_concurrency = False
        config.scheduler.max_concurrent = max_concurrent
    if no_limit:
        config.scheduler.no_limit = True
    elif attempt_limit is not None:
        config.scheduler.no_limit = False
        config.scheduler.max_attempts_per_task = attempt_limit
    _configure_logging(config, verbose)

    graph = _load_graph(repo_root, config)
    workspace = repo_root / config.project.workspace_dir
    context = RunContext.from_config(
        repo_root,
        config,
        event_hook=lambda event: _record_event(workspace / "events.jsonl", event),
    )
    bound = None if config.scheduler.unlimited_concurrency else config.scheduler.max_concurrent
    summary = asyncio.run(_run_scheduler(context, graph, bound, watch))

    click.echo(f"Completed: {len(summary.completed)}/{len(graph)}")
    if summary.failed:
        click.echo("Failed: " + ", ".join(summary.failed))
    for task in summary.stalled:
        click.echo(f"Stalled: {task.describe()}")
    if not summary.ok:
        raise SystemExit(1)


@cli.command("graph")
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def graph_command(config_value: str) -> None:
    repo_root, config = _load(config_value)
    graph = _load_graph(repo_root, config)
    payload = {"tasks": graph.to_dict(), "unresolved": graph.unresolved()}
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))


def _task_status(task_dir: Path) -> dict[str, Any]:
    execution_path = task_dir / "execution.json"
    entry: dict[str, Any] = {
        "approved": is_task_approved(task_dir),
        "mode": "blueprint" if (task_dir / "BLUEPRINT.md").exists() else "todo",
    }
    if execution_path.exists():
        try:
            record = load_execution(execution_path)
        except ConductorError as exc:
            entry["error"] = str(exc)
        else:
            entry["status"] = record["status"]
            entry["attempts"] = record.get("attempts", 0)
            entry["completion"] = record["completion"].get("status")
            entry["pendingRemediation"] = record["completion"].get("pendingRemediation", [])
        probe = is_completed_from_execution(execution_path)
        entry["confidence"] = probe.confidence
    return entry


@cli.command("status")
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def status_command(config_value: str) -> None:
    repo_root, config = _load(config_value)
    workspace = repo_root / config.project.workspace_dir
    payload = {task_id: _task_status(workspace / task_id) for task_id in discover_tasks(workspace)}
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))


@cli.command("backend")
@click.argument("backend_name", type=click.Choice(BACKEND_NAMES))
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def backend_command(backend_name: str, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    config_path = _resolve_config_path(repo_root, config_value)
    _, config = _load(config_value)
    config.backend.primary = backend_name  # type: ignore[assignment]
    try:
        config.validate()
    except ConductorError as exc:
        raise click.ClickException(str(exc)) from exc
    save_config(config_path, config)
    click.echo(f"Primary backend set to {backend_name}")
