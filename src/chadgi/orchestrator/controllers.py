"""Controllers for session and control-plane CLI commands."""

from __future__ import annotations

import json
import logging
import os
import shutil
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

from chadgi.config import CONFIG_FILE_NAME, DEFAULT_CHADGI_DIR, Settings
from chadgi.logging_setup import configure_logging
from chadgi.orchestrator.backend import CliAgentBackend
from chadgi.orchestrator.budget import BudgetGuard
from chadgi.orchestrator.doctor import run_doctor_checks
from chadgi.orchestrator.executor import TaskExecutor
from chadgi.orchestrator.git_ops import GitError, GitWorkspace
from chadgi.orchestrator.metrics import MetricsStore, SessionStatsStore
from chadgi.orchestrator.models import SessionStatus, Task, TaskRun
from chadgi.orchestrator.notifications import NotificationDispatcher
from chadgi.orchestrator.progress import (
    PauseCoordinator,
    PauseLock,
    ProgressSnapshot,
    ProgressStore,
    parse_duration,
)
from chadgi.orchestrator.session import SessionLoop, StopController
from chadgi.orchestrator.task_source import GithubProjectTaskSource, TaskSourceError
from chadgi.storage import isoformat, utc_now

logger = logging.getLogger(__name__)

ConfirmFn = Callable[[str], bool]


@dataclass(slots=True)
class StartCommand:
    """CLI input for a task-processing session."""

    config_path: Path | None
    repo_dir: Path
    dry_run: bool = False
    max_tasks: int | None = None


@dataclass(slots=True)
class PauseCommand:
    """CLI input for pause."""

    config_path: Path | None
    duration: str | None = None
    reason: str | None = None


@dataclass(slots=True)
class ResumeCommand:
    """CLI input for resume."""

    config_path: Path | None
    restart: bool = False


@dataclass(slots=True)
class StatusCommand:
    config_path: Path | None
    as_json: bool = False


@dataclass(slots=True)
class ReplayCommand:
    """CLI input for replaying failed tasks."""

    config_path: Path | None
    repo_dir: Path
    issue: int | None = None
    last: bool = False
    all_failed: bool = False
    fresh: bool = False
    dry_run: bool = False
    as_json: bool = False
    confirm: ConfirmFn | None = None


@dataclass(slots=True)
class QueueCommand:
    config_path: Path | None
    as_json: bool = False


@dataclass(slots=True)
class HistoryCommand:
    config_path: Path | None
    limit: int = 20
    as_json: bool = False


@dataclass(slots=True)
class DoctorCommand:
    config_path: Path | None
    repo_dir: Path
    as_json: bool = False


@dataclass(slots=True)
class CleanupCommand:
    config_path: Path | None
    days: int = 30
    dry_run: bool = False


@dataclass(slots=True)
class CommandResult:
    """Lines to render plus the process exit code."""

    lines: list[str]
    exit_code: int = 0
    restart_session: bool = False


TaskSourceFactory = Callable[[Settings], GithubProjectTaskSource]
GitFactory = Callable[[Path], GitWorkspace]


def default_task_source(settings: Settings) -> GithubProjectTaskSource:
    return GithubProjectTaskSource(
        github=settings.github,
        category=settings.category,
        priority=settings.priority,
        check_dependencies=settings.dependencies.enabled,
    )


class ControlPlaneController:
    """Coordinates the session and the short-lived control commands.

    Control commands communicate with a running session only through the
    files under the state directory (pause lock, progress and metrics).
    """

    def __init__(
        self,
        *,
        task_source_factory: TaskSourceFactory = default_task_source,
        git_factory: GitFactory = GitWorkspace,
        now: Callable[[], datetime] = utc_now,
    ) -> None:
        self._task_source_factory = task_source_factory
        self._git_factory = git_factory
        self._now = now

    # -- session ----------------------------------------------------------

    def start(self, command: StartCommand) -> CommandResult:
        """Run one session until a stop condition and report its summary."""

        settings = Settings.load(command.config_path)
        settings.validate_for_session()
        if command.max_tasks is not None:
            settings.iteration.max_tasks = command.max_tasks
        settings.chadgi_dir.mkdir(parents=True, exist_ok=True)
        configure_logging(settings.output, log_path=settings.log_path)

        lines: list[str] = []
        stop = StopController()
        task_source = self._task_source_factory(settings)
        progress = ProgressStore(settings.progress_path)
        budget = BudgetGuard(settings.budget)
        dispatcher = NotificationDispatcher(settings.notifications, repo=settings.github.repo)
        with dispatcher:
            executor = TaskExecutor(
                settings=settings,
                task_source=task_source,
                git=self._git_factory(command.repo_dir),
                backend=CliAgentBackend(),
                dispatcher=dispatcher,
                metrics=MetricsStore(
                    settings.metrics_path,
                    retention_days=settings.metrics.retention_days,
                ),
                progress=progress,
                budget=budget,
                sleep=stop.sleep,
                now=self._now,
                shutdown_requested=stop.is_requested,
            )
            loop = SessionLoop(
                settings=settings,
                task_source=task_source,
                executor=executor,
                dispatcher=dispatcher,
                progress=progress,
                pause=PauseCoordinator(
                    lock=PauseLock(settings.pause_lock_path),
                    progress=progress,
                    sleep=stop.sleep,
                    now=self._now,
                    should_stop=stop.is_requested,
                ),
                stats=SessionStatsStore(settings.stats_path),
                budget=budget,
                dry_run=command.dry_run,
                now=self._now,
                report=lines.extend,
                stop=stop,
            )
            try:
                state = loop.run()
            except TaskSourceError as error:
                lines.append(f"Task source unreachable: {error}")
                return CommandResult(lines=lines, exit_code=1)
        return CommandResult(lines=lines, exit_code=state.exit_code)

    # -- pause / resume / status -----------------------------------------

    def pause(self, command: PauseCommand) -> list[str]:
        settings = _control_settings(command.config_path)
        duration_seconds = parse_duration(command.duration) if command.duration else None
        info, created = PauseLock(settings.pause_lock_path).create(
            reason=command.reason,
            duration_seconds=duration_seconds,
            now=self._now(),
        )
        if not created:
            logger.warning("Session is already paused since %s", isoformat(info.paused_at))
            return [f"Already paused since {isoformat(info.paused_at)}."]

        lines = ["Pause requested. The session stops before its next task."]
        if info.reason:
            lines.append(f"Reason: {info.reason}")
        if info.expires_at is not None:
            lines.append(f"Auto-resume at {isoformat(info.expires_at)}")
        return lines

    def resume(self, command: ResumeCommand) -> CommandResult:
        settings = _control_settings(command.config_path)
        removed = PauseLock(settings.pause_lock_path).remove()
        lines = ["Resumed."] if removed else ["Session is not paused."]
        restart = False
        if command.restart:
            snapshot = ProgressStore(settings.progress_path).read()
            if _session_alive(snapshot):
                lines.append("A session is already running; not starting another one.")
            else:
                restart = True
                lines.append("Starting a new session.")
        return CommandResult(lines=lines, restart_session=restart)

    def status(self, command: StatusCommand) -> list[str]:
        settings = _control_settings(command.config_path)
        snapshot = ProgressStore(settings.progress_path).read()
        pause_info = PauseLock(settings.pause_lock_path).read()
        alive = _session_alive(snapshot)

        if command.as_json:
            payload: dict[str, Any] = {
                "progress": snapshot.to_json() if snapshot else None,
                "paused": pause_info is not None,
                "pause": pause_info.to_json() if pause_info else None,
                "sessionAlive": alive,
            }
            return [json.dumps(payload, indent=2)]

        if snapshot is None:
            lines = ["No session has run yet."]
        else:
            lines = [
                f"Status: {snapshot.status.value}" + ("" if alive else " (no live session)"),
                f"Tasks completed: {snapshot.tasks_completed}",
                f"Elapsed: {_format_seconds(snapshot.elapsed_seconds)}",
                f"Last updated: {isoformat(snapshot.last_updated)}",
            ]
            task = snapshot.current_task
            if task:
                title = task.get("title", "")
                lines.append(f"Current task: #{task.get('number')} {title}".rstrip())
                lines.append(
                    f"Phase: {snapshot.phase or '-'} "
                    f"(iteration {snapshot.iteration}/{snapshot.max_iterations})",
                )
        if pause_info is not None:
            line = f"Paused since {isoformat(pause_info.paused_at)}"
            if pause_info.reason:
                line += f": {pause_info.reason}"
            if pause_info.expires_at is not None:
                line += f" (until {isoformat(pause_info.expires_at)})"
            lines.append(line)
        return lines

    # -- replay -----------------------------------------------------------

    def replay(self, command: ReplayCommand) -> CommandResult:  # noqa: C901, PLR0912
        """List failed tasks, or move selected ones back to Ready."""

        settings = _control_settings(command.config_path)
        metrics = MetricsStore(
            settings.metrics_path,
            retention_days=settings.metrics.retention_days,
        )
        failed = metrics.failed_tasks()
        selecting = command.issue is not None or command.last or command.all_failed

        if not selecting:
            if command.as_json:
                records = [run.to_record() for run in failed]
                return CommandResult(lines=[json.dumps(records, indent=2)])
            if not failed:
                return CommandResult(lines=["No failed tasks recorded."])
            return CommandResult(
                lines=["Failed tasks (most recent first):", *(_run_line(run) for run in failed)],
            )

        if command.issue is not None:
            targets = [run for run in failed if run.issue_number == command.issue]
            if not targets:
                return CommandResult(
                    lines=[f"No failed run recorded for issue #{command.issue}."],
                    exit_code=1,
                )
        elif command.last:
            targets = failed[:1]
        else:
            targets = failed
        if not targets:
            return CommandResult(lines=["No failed tasks to replay."])

        mode = "fresh" if command.fresh else "continue"
        if command.dry_run:
            lines = [f"Dry run: would replay {len(targets)} task(s) ({mode}):"]
            lines.extend(_run_line(run) for run in targets)
            return CommandResult(lines=lines)

        if command.confirm is not None:
            numbers = ", ".join(f"#{run.issue_number}" for run in targets)
            if not command.confirm(f"Replay {numbers} ({mode})?"):
                return CommandResult(lines=["Replay cancelled."])

        settings.validate_for_session()
        task_source = self._task_source_factory(settings)
        git = self._git_factory(command.repo_dir) if command.fresh else None
        replayed: list[dict[str, Any]] = []
        exit_code = 0
        for run in targets:
            if git is not None and run.branch:
                try:
                    git.delete_local_branch(run.branch)
                    git.delete_remote_branch(run.branch)
                except GitError as error:
                    logger.warning("Could not delete branch %s: %s", run.branch, error)
            task = Task(number=run.issue_number, title="")
            try:
                task_source.move_task(task, settings.github.ready_column)
            except TaskSourceError as error:
                logger.error("Could not move #%s to Ready: %s", run.issue_number, error)
                exit_code = 1
                replayed.append({"issue": run.issue_number, "moved": False, "error": str(error)})
                continue
            retry_count = metrics.increment_retry_count(run.issue_number)
            replayed.append({"issue": run.issue_number, "moved": True, "retry_count": retry_count})

        if command.as_json:
            return CommandResult(lines=[json.dumps(replayed, indent=2)], exit_code=exit_code)
        lines = []
        for entry in replayed:
            if entry["moved"]:
                lines.append(
                    f"#{entry['issue']} moved to {settings.github.ready_column} "
                    f"({mode}, retry {entry['retry_count']})",
                )
            else:
                lines.append(f"#{entry['issue']} not replayed: {entry['error']}")
        return CommandResult(lines=lines, exit_code=exit_code)

    # -- read-only reports ------------------------------------------------

    def queue(self, command: QueueCommand) -> list[str]:
        settings = Settings.load(command.config_path)
        settings.validate_for_session()
        source = self._task_source_factory(settings)
        tasks = source.list_ready_tasks()
        if command.as_json:
            payload = [
                {
                    "number": task.number,
                    "title": task.title,
                    "category": task.category,
                    "priority": task.priority,
                    "blockedBy": source.open_dependencies(task)
                    if settings.dependencies.enabled
                    else [],
                }
                for task in tasks
            ]
            return [json.dumps(payload, indent=2)]
        if not tasks:
            return [f"No tasks in {settings.github.ready_column}."]
        lines = [f"{len(tasks)} task(s) in {settings.github.ready_column}:"]
        for position, task in enumerate(tasks, start=1):
            blockers = source.open_dependencies(task) if settings.dependencies.enabled else []
            blocked = (
                " blocked by " + ", ".join(f"#{number}" for number in blockers) if blockers else ""
            )
            lines.append(
                f"{position:>3}. #{task.number} [{task.priority}] "
                f"{task.category or '-'}: {task.title}{blocked}",
            )
        return lines

    def history(self, command: HistoryCommand) -> list[str]:
        settings = _control_settings(command.config_path)
        runs = MetricsStore(
            settings.metrics_path,
            retention_days=settings.metrics.retention_days,
        ).tasks()
        recent = sorted(runs, key=lambda run: run.started_at, reverse=True)[: command.limit]
        if command.as_json:
            return [json.dumps([run.to_record() for run in recent], indent=2)]
        if not recent:
            return ["No task history recorded."]
        return [_run_line(run) for run in recent]

    def doctor(self, command: DoctorCommand) -> CommandResult:
        config_path = command.config_path
        chadgi_dir = config_path.parent if config_path else _state_dir()
        results = run_doctor_checks(
            chadgi_dir=chadgi_dir,
            config_path=config_path,
            repo_dir=command.repo_dir,
        )
        healthy = all(result.ok for result in results if result.required)
        exit_code = 0 if healthy else 1
        if command.as_json:
            payload = {"healthy": healthy, "checks": [result.to_json() for result in results]}
            return CommandResult(lines=[json.dumps(payload, indent=2)], exit_code=exit_code)
        lines = [
            f"[{'ok' if result.ok else 'FAIL'}] {result.name}: {result.detail}"
            for result in results
        ]
        lines.append("All checks passed." if healthy else "Some checks failed.")
        return CommandResult(lines=lines, exit_code=exit_code)

    def cleanup(self, command: CleanupCommand) -> list[str]:
        """Delete diagnostics bundles older than ``days``."""

        settings = _control_settings(command.config_path)
        root = settings.diagnostics_dir
        if not root.is_dir():
            return ["No diagnostics to clean up."]
        cutoff = self._now() - timedelta(days=command.days)
        stale = [
            bundle
            for bundle in sorted(root.iterdir())
            if bundle.is_dir() and _bundle_time(bundle) < cutoff
        ]
        if not stale:
            return [f"No diagnostics bundles older than {command.days} day(s)."]
        verb = "Would remove" if command.dry_run else "Removed"
        lines: list[str] = []
        for bundle in stale:
            if not command.dry_run:
                shutil.rmtree(bundle)
            lines.append(f"{verb} {bundle.name}")
        lines.append(f"{verb} {len(stale)} diagnostics bundle(s).")
        return lines


def _state_dir() -> Path:
    return Path(os.getenv("CHADGI_DIR", str(DEFAULT_CHADGI_DIR)))


def _control_settings(config_path: Path | None) -> Settings:
    """Settings for commands that only touch state files; a missing config means defaults."""

    path = config_path or _state_dir() / CONFIG_FILE_NAME
    if path.is_file():
        return Settings.load(path)
    return Settings(chadgi_dir=path.parent)


def _session_alive(snapshot: ProgressSnapshot | None) -> bool:
    if snapshot is None or snapshot.status == SessionStatus.IDLE or snapshot.pid is None:
        return False
    try:
        os.kill(snapshot.pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def _bundle_time(bundle: Path) -> datetime:
    """Timestamp from the ``<issue>-<YYYYmmdd>-<HHMMSS>`` name, else the mtime."""

    stamp = "-".join(bundle.name.split("-")[-2:])
    try:
        return datetime.strptime(stamp, "%Y%m%d-%H%M%S").replace(tzinfo=UTC)
    except ValueError:
        return datetime.fromtimestamp(bundle.stat().st_mtime, tz=UTC)


def _format_seconds(seconds: float) -> str:
    minutes, secs = divmod(int(seconds), 60)
    hours, minutes = divmod(minutes, 60)
    return f"{hours}h {minutes}m {secs}s" if hours else f"{minutes}m {secs}s"


def _run_line(run: TaskRun) -> str:
    outcome = run.outcome.value if run.outcome else "unknown"
    line = (
        f"#{run.issue_number} {outcome} at {isoformat(run.started_at)} "
        f"iterations={run.iterations} cost=${run.cost_usd:.2f}"
    )
    if run.failure_reason:
        line += f" reason={run.failure_reason}"
    if run.retry_count:
        line += f" retries={run.retry_count}"
    if run.pr_url:
        line += f" pr={run.pr_url}"
    return line
