from __future__ import annotations

from pathlib import Path

import allure

from chadgi.config import Settings
from chadgi.orchestrator.hooks import HookContext, HookRunner

pytestmark = [
    allure.epic("Task Execution"),
    allure.feature("Lifecycle Hooks"),
]


def _settings(tmp_path: Path) -> Settings:
    settings = Settings(chadgi_dir=tmp_path / ".chadgi")
    settings.github.repo = "acme/widgets"
    settings.chadgi_dir.mkdir(parents=True)
    return settings


def _script(settings: Settings, name: str, body: str, *, executable: bool = True) -> str:
    path = settings.chadgi_dir / name
    path.write_text(f"#!/bin/sh\n{body}\n", "utf-8")
    if executable:
        path.chmod(0o755)
    return name


def _context() -> HookContext:
    return HookContext(
        issue_number=7,
        title="Add search",
        url="https://github.com/acme/widgets/issues/7",
        branch="feature/issue-7-add-search",
        cost=0.5,
        session_cost=1.25,
        iteration=2,
    )


def test_hook_receives_task_environment(tmp_path: Path) -> None:
    settings = _settings(tmp_path)
    settings.hooks.post_implementation.script = _script(
        settings,
        "post-impl.sh",
        'echo "$CHADGI_HOOK_NAME|$CHADGI_ISSUE_NUMBER|$CHADGI_BRANCH|$CHADGI_COST|'
        '$CHADGI_SESSION_COST|$CHADGI_ITERATION|$CHADGI_REPO"',
    )

    result = HookRunner(settings, cwd=tmp_path).run("post_implementation", _context())

    assert result.ran is True
    assert result.succeeded is True
    assert result.output.strip().split("|") == [
        "post_implementation",
        "7",
        "feature/issue-7-add-search",
        "0.5000",
        "1.2500",
        "2",
        "acme/widgets",
    ]


def test_unconfigured_disabled_and_missing_hooks_are_skipped(tmp_path: Path) -> None:
    settings = _settings(tmp_path)
    runner = HookRunner(settings, cwd=tmp_path)

    assert runner.run("pre_task", _context()).ran is False

    settings.hooks.pre_task.script = _script(settings, "pre.sh", "exit 1")
    settings.hooks.pre_task.enabled = False
    settings.hooks.pre_task.can_abort = True
    assert runner.run("pre_task", _context()).aborts is False

    settings.hooks.pre_pr.script = "does-not-exist.sh"
    assert runner.run("pre_pr", _context()).ran is False

    settings.hooks.post_pr.script = _script(settings, "plain.sh", "exit 1", executable=False)
    assert runner.run("post_pr", _context()).ran is False


def test_failing_hook_aborts_only_when_allowed(tmp_path: Path) -> None:
    settings = _settings(tmp_path)
    settings.hooks.pre_pr.script = _script(settings, "lint.sh", "echo 'lint failed'; exit 4")
    runner = HookRunner(settings, cwd=tmp_path)

    advisory = runner.run("pre_pr", _context())
    settings.hooks.pre_pr.can_abort = True
    blocking = runner.run("pre_pr", _context())

    assert advisory.exit_code == 4
    assert advisory.succeeded is False
    assert advisory.aborts is False
    assert blocking.aborts is True
    assert "lint failed" in blocking.output


def test_hung_hook_is_stopped_at_its_timeout(tmp_path: Path) -> None:
    settings = _settings(tmp_path)
    settings.hooks.pre_task.script = _script(settings, "slow.sh", "sleep 10")
    settings.hooks.pre_task.timeout = 1
    settings.hooks.pre_task.can_abort = True

    result = HookRunner(settings, cwd=tmp_path).run("pre_task", _context())

    assert result.timed_out is True
    assert result.exit_code == 124
    assert result.aborts is True
