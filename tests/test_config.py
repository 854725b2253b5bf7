import tomllib
from pathlib import Path

import pytest

from conductor import __version__
from conductor.config import ConductorConfig, dumps_toml, load_config, save_config
from conductor.errors import ConfigError


def test_config_roundtrip(tmp_path: Path) -> None:
    config_path = tmp_path / "conductor.toml"
    config = ConductorConfig.default()
    config.project.name = "conductor-test"
    config.project.workspace_dir = "tasks"
    config.backend.primary = "codex"
    config.backend.max_retries = 3
    config.scheduler.max_concurrent = 2
    config.scheduler.no_limit = True
    config.scheduler.unknown_dependencies = "error"
    config.execution.escalation_history = 5
    config.validation.fail_on_undeclared_changes = True
    config.logging.level = "DEBUG"

    save_config(config_path, config)
    loaded = load_config(config_path)

    assert loaded.project.name == "conductor-test"
    assert loaded.project.workspace_dir == "tasks"
    assert loaded.backend.primary == "codex"
    assert loaded.backend.max_retries == 3
    assert loaded.scheduler.max_concurrent == 2
    assert loaded.scheduler.no_limit is True
    assert loaded.scheduler.unknown_dependencies == "error"
    assert loaded.scheduler.max_attempts_per_task == 20
    assert loaded.execution.escalation_history == 5
    assert loaded.validation.fail_on_undeclared_changes is True
    assert loaded.logging.level == "DEBUG"


def test_missing_config_file_yields_defaults(tmp_path: Path) -> None:
    loaded = load_config(tmp_path / "absent.toml")

    assert loaded.scheduler.max_concurrent == 4
    assert loaded.backend.primary == "claude"
    assert loaded.project.workspace_dir == ".conductor"


def test_toml_dump_contains_every_section() -> None:
    rendered = dumps_toml(ConductorConfig.default())

    for section in ("[project]", "[backend]", "[scheduler]", "[execution]", "[validation]", "[logging]"):
        assert section in rendered
    assert "max_retries" in rendered
    assert "retry_backoff_seconds" in rendered
    assert "max_attempts_per_task" in rendered
    assert "unknown_dependencies" in rendered


def test_invalid_toml_raises_config_error(tmp_path: Path) -> None:
    config_path = tmp_path / "conductor.toml"
    config_path.write_text("[scheduler\nmax_concurrent = 1\n", encoding="utf-8")

    with pytest.raises(ConfigError, match="Invalid TOML"):
        load_config(config_path)


def test_unknown_key_raises_config_error(tmp_path: Path) -> None:
    config_path = tmp_path / "conductor.toml"
    config_path.write_text("[scheduler]\nparallelism = 3\n", encoding="utf-8")

    with pytest.raises(ConfigError, match="Unknown configuration key"):
        load_config(config_path)


@pytest.mark.parametrize(
    "payload, message",
    [
        ({"backend": {"primary": "gemini"}}, "Unsupported backend"),
        ({"scheduler": {"max_concurrent": 0}}, "max_concurrent"),
        ({"scheduler": {"max_attempts_per_task": 0}}, "max_attempts_per_task"),
        ({"scheduler": {"unknown_dependencies": "drop"}}, "unknown_dependencies"),
        ({"logging": {"level": "LOUD"}}, "Unsupported log level"),
    ],
)
def test_invalid_values_are_rejected(payload: dict, message: str) -> None:
    with pytest.raises(ConfigError, match=message):
        ConductorConfig.from_dict(payload)


def test_unlimited_concurrency_allows_zero_bound() -> None:
    config = ConductorConfig.from_dict({"scheduler": {"max_concurrent": 0, "unlimited_concurrency": True}})

    assert config.scheduler.unlimited_concurrency is True


def test_package_version_constant_matches_pyproject() -> None:
    project_root = Path(__file__).resolve().parents[1]
    pyproject = tomllib.loads((project_root / "pyproject.toml").read_text(encoding="utf-8"))

    assert __version__ == pyproject["project"]["version"]
