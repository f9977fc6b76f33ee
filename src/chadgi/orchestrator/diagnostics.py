"""Failure diagnostics bundles and user-facing error reports."""

from __future__ import annotations

import logging
import os
import platform
import sys
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Protocol

from chadgi.config import Settings
from chadgi.orchestrator.models import ErrorKind, Task, TaskRun
from chadgi.secrets import mask_secrets
from chadgi.storage import isoformat, utc_now

logger = logging.getLogger(__name__)

DEFAULT_OUTPUT_LINES = 50

QUICK_REFERENCE: dict[ErrorKind, str] = {
    ErrorKind.BUILD_FAILURE: (
        "This error indicates test/build commands failed. Check build-output.txt for the "
        "failing tests or compiler errors, fix them locally, then replay the task."
    ),
    ErrorKind.TIMEOUT_FAILURE: (
        "The task exceeded the time limit. Consider increasing task_timeout in the config, "
        "or splitting the issue into smaller tasks. Partial work was saved in a [WIP] commit."
    ),
    ErrorKind.GIT_ERROR: (
        "Version control operations failed. Common causes: merge conflicts, permission "
        "issues, or branch problems."
    ),
    ErrorKind.API_ERROR: (
        "GitHub API or external service failure. Common causes: rate limits, "
        "authentication issues, or network problems."
    ),
    ErrorKind.EXECUTION_ERROR: (
        "Agent execution issue. Check system-state.txt and build-output.txt for details "
        "on what the agent was doing when it stopped."
    ),
}

REPORT_ICONS: dict[ErrorKind, str] = {
    ErrorKind.BUILD_FAILURE: "[BUILD]",
    ErrorKind.TIMEOUT_FAILURE: "[TIMEOUT]",
    ErrorKind.GIT_ERROR: "[GIT]",
    ErrorKind.API_ERROR: "[API]",
    ErrorKind.EXECUTION_ERROR: "[EXEC]",
}

BUNDLE_FILES = ("git-diff.txt", "build-output.txt", "system-state.txt", "error-summary.txt")


class DiffSource(Protocol):
    def diff(self) -> str: ...

    def current_branch(self) -> str: ...

    def status_short(self) -> str: ...

    def recent_log(self, count: int = 5) -> str: ...


@dataclass(slots=True)
class FailureContext:
    """What the executor knows at the moment a task fails."""

    error_kind: ErrorKind
    details: str
    output: str
    exit_code: int | None = None


def tail_lines(text: str, count: int) -> str:
    lines = text.splitlines()
    return "\n".join(lines[-count:]) if count > 0 else ""


def bundle_name(issue_number: int, when: datetime) -> str:
    return f"{issue_number}-{when.strftime('%Y%m%d-%H%M%S')}"


def collect_diagnostics(  # noqa: PLR0913
    task: Task,
    run: TaskRun,
    settings: Settings,
    failure: FailureContext,
    *,
    git: DiffSource | None,
    now: datetime | None = None,
) -> Path | None:
    """Write a diagnostics bundle for a failed run; ``None`` when disabled.

    Each artifact is captured independently; a failure to produce one is
    logged and the rest are still written.
    """

    if not settings.error_diagnostics:
        return None

    when = now or utc_now()
    bundle = settings.diagnostics_dir / bundle_name(task.number, when)
    try:
        bundle.mkdir(parents=True, exist_ok=True)
    except OSError as error:
        logger.warning("Cannot create diagnostics directory %s: %s", bundle, error)
        return None

    mask = settings.output.mask_secrets
    line_count = settings.diagnostics.output_lines or DEFAULT_OUTPUT_LINES
    written: list[str] = []

    artifacts = (
        ("git-diff.txt", lambda: _git_diff(git)),
        ("build-output.txt", lambda: _build_output(failure.output, line_count)),
        ("system-state.txt", lambda: _system_state(task, run, settings, git)),
        ("error-summary.txt", lambda: _error_summary(task, run, failure, written, when)),
    )
    for name, render in artifacts:
        try:
            content = render()
            (bundle / name).write_text(mask_secrets(content) if mask else content, "utf-8")
            written.append(name)
        except (OSError, RuntimeError) as error:
            logger.warning(
                "Diagnostics: could not capture %s for #%s: %s",
                name,
                task.number,
                error,
            )

    logger.info("Diagnostics saved to %s", bundle)
    return bundle


def _git_diff(git: DiffSource | None) -> str:
    if git is None:
        return "(git unavailable)\n"
    return git.diff()


def _build_output(output: str, line_count: int) -> str:
    body = tail_lines(output, line_count)
    return f"=== Last {line_count} lines of captured output ===\n{body or '(no output captured)'}\n"


def _system_state(task: Task, run: TaskRun, settings: Settings, git: DiffSource | None) -> str:
    lines = ["=== Git ==="]
    if git is not None:
        lines.append(f"Branch: {git.current_branch()}")
        lines.append("Status:")
        lines.append(git.status_short().rstrip() or "(clean)")
        lines.append("Recent commits:")
        lines.append(git.recent_log(5).rstrip() or "(none)")
    else:
        lines.append("(git unavailable)")
    lines += [
        "",
        "=== Task ===",
        f"Issue: #{task.number} {task.title}",
        f"Category: {task.category or 'unknown'}",
        f"Branch: {run.branch}",
        f"Iterations: {run.iterations}/{settings.iteration.max_iterations}",
        f"Phase: {run.phase.value}",
        f"Cost so far: ${run.cost_usd:.4f}",
        "",
        "=== Config ===",
        f"Repository: {settings.github.repo}",
        f"Base branch: {settings.branch.base}",
        f"Task timeout: {settings.iteration.task_timeout}m",
        f"Retry backoff: {settings.iteration.retry_backoff}",
        f"GigaChad mode: {settings.iteration.gigachad_mode}",
        "",
        "=== Environment ===",
        f"Python: {sys.version.split()[0]}",
        f"Platform: {platform.platform()}",
        f"Working directory: {os.getcwd()}",
    ]
    return "\n".join(lines) + "\n"


def _error_summary(
    task: Task,
    run: TaskRun,
    failure: FailureContext,
    written: list[str],
    when: datetime,
) -> str:
    files = [*written, "error-summary.txt"]
    return (
        f"Error summary for issue #{task.number}: {task.title}\n"
        f"Captured at: {isoformat(when)}\n"
        f"\n"
        f"Error type: {failure.error_kind.value}\n"
        f"Exit code: {failure.exit_code if failure.exit_code is not None else 'n/a'}\n"
        f"Failure phase: {run.failure_phase or run.phase.value}\n"
        f"Details: {failure.details}\n"
        f"\n"
        f"Files in this bundle:\n"
        + "".join(f"  - {name}\n" for name in files)
        + f"\nQuick reference:\n{QUICK_REFERENCE[failure.error_kind]}\n"
    )


def render_error_report(
    task: Task,
    failure: FailureContext,
    diagnostics_path: Path | None,
) -> list[str]:
    """Lines shown to the user for a failed task."""

    icon = REPORT_ICONS[failure.error_kind]
    lines = [
        f"{icon} Task #{task.number} failed: {failure.error_kind.value}",
        f"  {failure.details}",
    ]
    if diagnostics_path is not None:
        lines.append(f"  Diagnostics: {diagnostics_path}")
    lines.append(f"  Hint: {QUICK_REFERENCE[failure.error_kind]}")
    return lines
