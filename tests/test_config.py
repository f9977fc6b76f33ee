from __future__ import annotations

from pathlib import Path

import allure
import pytest

from chadgi.config import ConfigError, Settings, resolve_config_chain

pytestmark = [
    allure.epic("Configuration"),
    allure.feature("Config Resolution"),
]


def _write(path: Path, text: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")
    return path


def test_child_config_overrides_inherited_values(tmp_path: Path) -> None:
    _write(
        tmp_path / "shared" / "base.yaml",
        "github:\n  repo: acme/widgets\n  project_number: 4\n"
        "iteration:\n  max_iterations: 7\n  task_timeout: 45\n",
    )
    child = _write(
        tmp_path / "project" / "chadgi-config.yaml",
        "extends: ../shared/base.yaml\niteration:\n  max_iterations: 3\n",
    )

    settings = Settings.load(child)

    assert settings.github.repo == "acme/widgets"
    assert settings.github.project_number == 4
    assert settings.iteration.max_iterations == 3
    assert settings.iteration.task_timeout == 45
    assert settings.chadgi_dir == child.parent
    assert settings.progress_path == child.parent / "chadgi-progress.json"


def test_base_config_key_is_an_alias_for_extends(tmp_path: Path) -> None:
    _write(tmp_path / "base.yaml", "poll_interval: 30\n")
    child = _write(tmp_path / "child.yaml", "base_config: base.yaml\n")

    assert resolve_config_chain(child)["poll_interval"] == 30


def test_circular_inheritance_is_rejected(tmp_path: Path) -> None:
    _write(tmp_path / "a.yaml", "extends: b.yaml\n")
    _write(tmp_path / "b.yaml", "extends: a.yaml\n")

    with pytest.raises(ConfigError, match="Circular config inheritance"):
        resolve_config_chain(tmp_path / "a.yaml")


def test_missing_and_invalid_files_raise_config_error(tmp_path: Path) -> None:
    with pytest.raises(ConfigError, match="not found"):
        Settings.load(tmp_path / "absent.yaml")

    broken = _write(tmp_path / "broken.yaml", "iteration: [unclosed\n")
    with pytest.raises(ConfigError, match="Failed to parse YAML"):
        Settings.load(broken)


def test_scalar_values_are_coerced_to_setting_types(tmp_path: Path) -> None:
    path = _write(
        tmp_path / "chadgi-config.yaml",
        "iteration:\n  gigachad_mode: 'yes'\n  max_iterations: '4'\n"
        "budget:\n  per_task_limit: 2\nunknown_section:\n  ignored: true\n",
    )

    settings = Settings.load(path)

    assert settings.iteration.gigachad_mode is True
    assert settings.iteration.max_iterations == 4
    assert settings.budget.per_task_limit == 2.0


def test_environment_overrides_logging_settings(tmp_path: Path, monkeypatch) -> None:
    path = _write(tmp_path / "chadgi-config.yaml", "output:\n  log_level: INFO\n")
    monkeypatch.setenv("CHADGI_LOG_LEVEL", "debug")
    monkeypatch.setenv("CHADGI_NO_MASK", "true")

    settings = Settings.load(path)

    assert settings.output.log_level == "DEBUG"
    assert settings.output.mask_secrets is False


def test_invalid_boolean_environment_value_is_rejected(tmp_path: Path, monkeypatch) -> None:
    path = _write(tmp_path / "chadgi-config.yaml", "")
    monkeypatch.setenv("CHADGI_NO_MASK", "maybe")

    with pytest.raises(ConfigError, match="CHADGI_NO_MASK"):
        Settings.load(path)


def test_chadgi_dir_environment_locates_default_config(tmp_path: Path, monkeypatch) -> None:
    _write(tmp_path / "state" / "chadgi-config.yaml", "on_empty_queue: wait\n")
    monkeypatch.setenv("CHADGI_DIR", str(tmp_path / "state"))

    settings = Settings.load()

    assert settings.on_empty_queue == "wait"
    assert settings.pause_lock_path == tmp_path / "state" / "pause.lock"


def test_validate_rejects_out_of_range_values() -> None:
    settings = Settings()
    settings.iteration.max_iterations = 0
    with pytest.raises(ValueError, match="max_iterations"):
        settings.validate()

    settings = Settings()
    settings.iteration.retry_backoff = "random"
    with pytest.raises(ValueError, match="retry_backoff"):
        settings.validate()

    settings = Settings()
    settings.budget.on_session_exceeded = "explode"
    with pytest.raises(ValueError, match="on_session_exceeded"):
        settings.validate()


def test_session_validation_requires_repository_and_project() -> None:
    settings = Settings()
    with pytest.raises(ValueError, match="github.repo"):
        settings.validate_for_session()

    settings.github.repo = "acme/widgets"
    with pytest.raises(ValueError, match="project_number"):
        settings.validate_for_session()

    settings.github.project_number = 1
    settings.validate_for_session()


def test_hooks_section_configures_lifecycle_scripts(tmp_path: Path) -> None:
    config = _write(
        tmp_path / "chadgi-config.yaml",
        "hooks:\n"
        "  pre_task:\n    script: hooks/pre-task.sh\n    can_abort: 'yes'\n    timeout: 5\n"
        "  post_merge:\n    script: /opt/hooks/deploy.sh\n    enabled: false\n",
    )

    settings = Settings.load(config)

    assert settings.hooks.pre_task.script == "hooks/pre-task.sh"
    assert settings.hooks.pre_task.can_abort is True
    assert settings.hooks.pre_task.timeout == 5
    assert settings.hooks.post_merge.enabled is False
    assert settings.hooks.on_budget_warning.timeout == 10

    settings.hooks.pre_pr.timeout = 0
    with pytest.raises(ConfigError, match=r"hooks\.pre_pr\.timeout"):
        settings.validate()
