from __future__ import annotations

from datetime import UTC, datetime
from pathlib import Path

import allure

from chadgi.config import Settings
from chadgi.orchestrator.diagnostics import (
    BUNDLE_FILES,
    FailureContext,
    collect_diagnostics,
    render_error_report,
    tail_lines,
)
from chadgi.orchestrator.models import ErrorKind, Task, TaskRun

pytestmark = [
    allure.epic("Task Execution"),
    allure.feature("Failure Diagnostics"),
]

WHEN = datetime(2026, 5, 4, 9, 15, 30, tzinfo=UTC)


class FakeGit:
    def diff(self) -> str:
        return "=== Uncommitted changes (git diff HEAD) ===\n+print('hi')\n"

    def current_branch(self) -> str:
        return "feature/issue-12-fix-login"

    def status_short(self) -> str:
        return " M app.py\n"

    def recent_log(self, count: int = 5) -> str:
        return "abc123 Start work\n"


class BrokenGit(FakeGit):
    def diff(self) -> str:
        raise RuntimeError("git diff exploded")


def _fixture(tmp_path: Path) -> tuple[Task, TaskRun, Settings]:
    settings = Settings(chadgi_dir=tmp_path / ".chadgi")
    settings.github.repo = "acme/widgets"
    task = Task(number=12, title="Fix login", category="bug")
    run = TaskRun(issue_number=12, started_at=WHEN, branch="feature/issue-12-fix-login")
    return task, run, settings


def test_bundle_contains_all_artifacts(tmp_path: Path) -> None:
    task, run, settings = _fixture(tmp_path)
    output = "\n".join(f"line {index}" for index in range(200))

    bundle = collect_diagnostics(
        task,
        run,
        settings,
        FailureContext(ErrorKind.BUILD_FAILURE, "tests failed", output, exit_code=1),
        git=FakeGit(),
        now=WHEN,
    )

    assert bundle == settings.diagnostics_dir / "12-20260504-091530"
    assert sorted(path.name for path in bundle.iterdir()) == sorted(BUNDLE_FILES)
    build_output = (bundle / "build-output.txt").read_text("utf-8")
    assert "line 199" in build_output
    assert "line 149\n" not in build_output
    summary = (bundle / "error-summary.txt").read_text("utf-8")
    assert "Error type: build_failure" in summary
    assert "Exit code: 1" in summary
    assert "test/build commands failed" in summary
    assert "Branch: feature/issue-12-fix-login" in (bundle / "system-state.txt").read_text("utf-8")


def test_disabled_diagnostics_write_nothing(tmp_path: Path) -> None:
    task, run, settings = _fixture(tmp_path)
    settings.error_diagnostics = False

    bundle = collect_diagnostics(
        task,
        run,
        settings,
        FailureContext(ErrorKind.EXECUTION_ERROR, "boom", ""),
        git=FakeGit(),
        now=WHEN,
    )

    assert bundle is None
    assert not settings.diagnostics_dir.exists()


def test_partial_capture_failure_keeps_other_artifacts(tmp_path: Path) -> None:
    task, run, settings = _fixture(tmp_path)

    bundle = collect_diagnostics(
        task,
        run,
        settings,
        FailureContext(ErrorKind.GIT_ERROR, "push rejected", "fatal: rejected"),
        git=BrokenGit(),
        now=WHEN,
    )

    assert bundle is not None
    assert not (bundle / "git-diff.txt").exists()
    summary = (bundle / "error-summary.txt").read_text("utf-8")
    assert "build-output.txt" in summary
    assert "git-diff.txt" not in summary


def test_captured_output_is_masked(tmp_path: Path) -> None:
    task, run, settings = _fixture(tmp_path)
    token = "ghp_" + "z" * 40

    bundle = collect_diagnostics(
        task,
        run,
        settings,
        FailureContext(ErrorKind.EXECUTION_ERROR, "boom", f"GITHUB token {token}"),
        git=None,
        now=WHEN,
    )

    assert bundle is not None
    text = (bundle / "build-output.txt").read_text("utf-8")
    assert token not in text
    assert "(git unavailable)" in (bundle / "git-diff.txt").read_text("utf-8")


def test_error_report_names_kind_and_bundle(tmp_path: Path) -> None:
    task = Task(number=5, title="Slow task")

    lines = render_error_report(
        task,
        FailureContext(ErrorKind.TIMEOUT_FAILURE, "timed out after 30m", ""),
        tmp_path / "5-20260101-000000",
    )

    assert lines[0] == "[TIMEOUT] Task #5 failed: timeout_failure"
    assert any("Diagnostics:" in line for line in lines)
    assert any("task_timeout" in line for line in lines)


def test_tail_lines_keeps_the_end() -> None:
    assert tail_lines("a\nb\nc\nd", 2) == "c\nd"
    assert tail_lines("a\nb", 0) == ""
