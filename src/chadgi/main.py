"""CLI entrypoint for chadgi."""

from collections.abc import Callable
from pathlib import Path
from typing import TypeVar

import rich_click as click

from chadgi import __version__
from chadgi.config import ConfigError
from chadgi.orchestrator.controllers import (
    CleanupCommand,
    CommandResult,
    ControlPlaneController,
    DoctorCommand,
    HistoryCommand,
    PauseCommand,
    QueueCommand,
    ReplayCommand,
    ResumeCommand,
    StartCommand,
    StatusCommand,
)
from chadgi.orchestrator.task_source import TaskSourceError

click.rich_click.USE_MARKDOWN = True
T = TypeVar("T")
CONTROLLER = ControlPlaneController()

config_option = click.option(
    "--config",
    "config_path",
    type=click.Path(path_type=Path, dir_okay=False),
    default=None,
    help="Config file. Defaults to `$CHADGI_DIR/chadgi-config.yaml` (`.chadgi/`).",
)
repo_option = click.option(
    "--repo-dir",
    type=click.Path(path_type=Path, file_okay=False, exists=True),
    default=Path(),
    show_default=True,
    help="Working copy the agent operates on.",
)
json_option = click.option("--json", "as_json", is_flag=True, help="Machine-readable output.")


@click.group()
@click.version_option(version=__version__, prog_name="chadgi")
def chadgi() -> None:
    """Autonomous task loop: GitHub project board issues to pull requests."""


@chadgi.command("start")
@config_option
@repo_option
@click.option(
    "--dry-run",
    is_flag=True,
    help="Explore the next ready task without touching git or the board.",
)
@click.option(
    "--max-tasks",
    type=click.IntRange(min=1),
    default=None,
    help="Stop after this many tasks (overrides `iteration.max_tasks`).",
)
def start(config_path: Path | None, repo_dir: Path, dry_run: bool, max_tasks: int | None) -> None:
    """Process Ready tasks until the queue empties or a limit is hit."""

    _run_session(
        StartCommand(
            config_path=config_path,
            repo_dir=repo_dir,
            dry_run=dry_run,
            max_tasks=max_tasks,
        ),
    )


@chadgi.command("pause")
@config_option
@click.option(
    "--for",
    "duration",
    default=None,
    help="Auto-resume after a duration such as `30m` or `1h30m`.",
)
@click.option("--reason", default=None, help="Reason shown by `status`.")
def pause(config_path: Path | None, duration: str | None, reason: str | None) -> None:
    """Pause the running session before its next task."""

    try:
        lines = CONTROLLER.pause(
            PauseCommand(config_path=config_path, duration=duration, reason=reason),
        )
    except ConfigError as error:
        raise click.ClickException(f"Invalid configuration: {error}") from error
    except ValueError as error:
        raise click.BadParameter(str(error), param_hint="--for") from error
    _emit_lines(lines)


@chadgi.command("resume")
@config_option
@repo_option
@click.option("--restart", is_flag=True, help="Start a new session if none is running.")
def resume(config_path: Path | None, repo_dir: Path, restart: bool) -> None:
    """Remove the pause lock."""

    result = _guarded(
        lambda: CONTROLLER.resume(ResumeCommand(config_path=config_path, restart=restart)),
    )
    _emit_lines(result.lines)
    if result.restart_session:
        _run_session(StartCommand(config_path=config_path, repo_dir=repo_dir))


@chadgi.command("status")
@config_option
@json_option
def status(config_path: Path | None, as_json: bool) -> None:
    """Show session progress and pause state."""

    _emit_lines(
        _guarded(
            lambda: CONTROLLER.status(StatusCommand(config_path=config_path, as_json=as_json)),
        ),
    )


@chadgi.command("replay")
@config_option
@repo_option
@click.argument("issue", type=click.IntRange(min=1), required=False)
@click.option("--last", is_flag=True, help="Replay the most recent failure.")
@click.option("--all-failed", is_flag=True, help="Replay every failed task.")
@click.option("--fresh", "mode", flag_value="fresh", help="Delete the task branch and start over.")
@click.option(
    "--continue",
    "mode",
    flag_value="continue",
    help="Keep the task branch and continue from it (default).",
)
@click.option("--dry-run", is_flag=True, help="Show what would be replayed.")
@click.option("--yes", "-y", is_flag=True, help="Do not ask for confirmation.")
@json_option
def replay(  # noqa: PLR0913
    config_path: Path | None,
    repo_dir: Path,
    issue: int | None,
    last: bool,
    all_failed: bool,
    mode: str | None,
    dry_run: bool,
    yes: bool,
    as_json: bool,
) -> None:
    """List failed tasks, or move them back to Ready for another attempt."""

    if sum((issue is not None, last, all_failed)) > 1:
        raise click.UsageError("Use only one of ISSUE, --last, --all-failed.")
    result = _guarded(
        lambda: CONTROLLER.replay(
            ReplayCommand(
                config_path=config_path,
                repo_dir=repo_dir,
                issue=issue,
                last=last,
                all_failed=all_failed,
                fresh=mode == "fresh",
                dry_run=dry_run,
                as_json=as_json,
                confirm=None if yes or as_json else _confirm,
            ),
        ),
    )
    _finish(result)


@chadgi.command("queue")
@config_option
@json_option
def queue(config_path: Path | None, as_json: bool) -> None:
    """List Ready tasks in processing order."""

    _emit_lines(
        _guarded(
            lambda: CONTROLLER.queue(QueueCommand(config_path=config_path, as_json=as_json)),
        ),
    )


@chadgi.command("history")
@config_option
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=20,
    show_default=True,
    help="Max records to print.",
)
@json_option
def history(config_path: Path | None, limit: int, as_json: bool) -> None:
    """Show recent task runs from the metrics file."""

    _emit_lines(
        _guarded(
            lambda: CONTROLLER.history(
                HistoryCommand(config_path=config_path, limit=limit, as_json=as_json),
            ),
        ),
    )


@chadgi.command("doctor")
@config_option
@repo_option
@json_option
def doctor(config_path: Path | None, repo_dir: Path, as_json: bool) -> None:
    """Check git, gh, the agent CLI, configuration and the state directory."""

    _finish(
        CONTROLLER.doctor(
            DoctorCommand(config_path=config_path, repo_dir=repo_dir, as_json=as_json),
        ),
    )


@chadgi.command("cleanup")
@config_option
@click.option(
    "--days",
    type=click.IntRange(min=0),
    default=30,
    show_default=True,
    help="Remove diagnostics bundles older than this many days.",
)
@click.option("--dry-run", is_flag=True, help="Only list what would be removed.")
def cleanup(config_path: Path | None, days: int, dry_run: bool) -> None:
    """Delete old diagnostics bundles."""

    _emit_lines(
        _guarded(
            lambda: CONTROLLER.cleanup(
                CleanupCommand(config_path=config_path, days=days, dry_run=dry_run),
            ),
        ),
    )


def _run_session(command: StartCommand) -> None:
    _finish(_guarded(lambda: CONTROLLER.start(command)))


def _guarded(action: Callable[[], T]) -> T:
    """Turn configuration and task source errors into CLI errors."""

    try:
        return action()
    except ConfigError as error:
        raise click.ClickException(f"Invalid configuration: {error}") from error
    except TaskSourceError as error:
        raise click.ClickException(f"Task source error: {error}") from error


def _confirm(message: str) -> bool:
    return click.confirm(message, default=False)


def _finish(result: CommandResult) -> None:
    _emit_lines(result.lines)
    if result.exit_code:
        click.get_current_context().exit(result.exit_code)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    chadgi()
