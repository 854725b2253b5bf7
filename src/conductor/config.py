from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

from conductor.errors import ConfigError

BackendName = Literal["codex", "claude", "codex_sdk"]
UnknownDependencyPolicy = Literal["keep", "error"]

BACKEND_NAMES = ("claude", "codex", "codex_sdk")
UNKNOWN_DEPENDENCY_POLICIES = ("keep", "error")
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")


@dataclass(slots=True)
class ProjectConfig:
    name: str = "my-project"
    workspace_dir: str = ".conductor"


@dataclass(slots=True)
class BackendConfig:
    primary: BackendName = "claude"
    fallback: BackendName = "codex"
    max_retries: int = 1
    retry_backoff_seconds: float = 0.5
    timeout_seconds: float = 1800.0
    model: str = ""


@dataclass(slots=True)
class SchedulerConfig:
    max_concurrent: int = 4
    unlimited_concurrency: bool = False
    max_attempts_per_task: int = 20
    no_limit: bool = False
    retry_delay_seconds: float = 1.0
    unknown_dependencies: UnknownDependencyPolicy = "keep"


@dataclass(slots=True)
class ExecutionConfig:
    precondition_timeout_seconds: float = 5.0
    escalation_history: int = 3
    research_after_failures: int = 3


@dataclass(slots=True)
class ValidationConfig:
    criteria_timeout_seconds: float = 30.0
    require_review_checklist: bool = True
    fail_on_undeclared_changes: bool = False
    evidence_limit: int = 500


@dataclass(slots=True)
class LoggingConfig:
    level: str = "INFO"


@dataclass(slots=True)
class ConductorConfig:
    project: ProjectConfig = field(default_factory=ProjectConfig)
    backend: BackendConfig = field(default_factory=BackendConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    execution: ExecutionConfig = field(default_factory=ExecutionConfig)
    validation: ValidationConfig = field(default_factory=ValidationConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def default(cls) -> ConductorConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> ConductorConfig:
        try:
            config = cls(
                project=ProjectConfig(**data.get("project", {})),
                backend=BackendConfig(**data.get("backend", {})),
                scheduler=SchedulerConfig(**data.get("scheduler", {})),
                execution=ExecutionConfig(**data.get("execution", {})),
                validation=ValidationConfig(**data.get("validation", {})),
                logging=LoggingConfig(**data.get("logging", {})),
            )
        except TypeError as exc:
            raise ConfigError(f"Unknown configuration key: {exc}") from exc
        config.validate()
        return config

    def validate(self) -> None:
        if self.backend.primary not in BACKEND_NAMES:
            raise ConfigError(f"Unsupported backend: {self.backend.primary}")
        if self.backend.fallback not in BACKEND_NAMES:
            raise ConfigError(f"Unsupported fallback backend: {self.backend.fallback}")
        if self.scheduler.unknown_dependencies not in UNKNOWN_DEPENDENCY_POLICIES:
            raise ConfigError(
                "scheduler.unknown_dependencies must be one of "
                + ", ".join(UNKNOWN_DEPENDENCY_POLICIES)
            )
        if self.scheduler.max_concurrent < 1 and not self.scheduler.unlimited_concurrency:
            raise ConfigError("scheduler.max_concurrent must be a positive integer")
        if self.scheduler.max_attempts_per_task < 1:
            raise ConfigError("scheduler.max_attempts_per_task must be a positive integer")
        if self.backend.max_retries < 0:
            raise ConfigError("backend.max_retries must not be negative")
        if self.logging.level.upper() not in LOG_LEVELS:
            raise ConfigError(f"Unsupported log level: {self.logging.level}")

    def to_dict(self) -> dict:
        return {
            "project": {
                "name": self.project.name,
                "workspace_dir": self.project.workspace_dir,
            },
            "backend": {
                "primary": self.backend.primary,
                "fallback": self.backend.fallback,
                "max_retries": self.backend.max_retries,
                "retry_backoff_seconds": self.backend.retry_backoff_seconds,
                "timeout_seconds": self.backend.timeout_seconds,
                "model": self.backend.model,
            },
            "scheduler": {
                "max_concurrent": self.scheduler.max_concurrent,
                "unlimited_concurrency": self.scheduler.unlimited_concurrency,
                "max_attempts_per_task": self.scheduler.max_attempts_per_task,
                "no_limit": self.scheduler.no_limit,
                "retry_delay_seconds": self.scheduler.retry_delay_seconds,
                "unknown_dependencies": self.scheduler.unknown_dependencies,
            },
            "execution": {
                "precondition_timeout_seconds": self.execution.precondition_timeout_seconds,
                "escalation_history": self.execution.escalation_history,
                "research_after_failures": self.execution.research_after_failures,
            },
            "validation": {
                "criteria_timeout_seconds": self.validation.criteria_timeout_seconds,
                "require_review_checklist": self.validation.require_review_checklist,
                "fail_on_undeclared_changes": self.validation.fail_on_undeclared_changes,
                "evidence_limit": self.validation.evidence_limit,
            },
            "logging": {
                "level": self.logging.level,
            },
        }


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0").rstrip(".")
        if not rendered:
            return "0.0"
        return rendered if "." in rendered else f"{rendered}.0"
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: ConductorConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    section_order = ["project", "backend", "scheduler", "execution", "validation", "logging"]
    for section in section_order:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> ConductorConfig:
    if not path.exists():
        return ConductorConfig.default()
    try:
        payload = tomllib.loads(path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {path}: {exc}") from exc
    return ConductorConfig.from_dict(payload)


def save_config(path: Path, config: ConductorConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
