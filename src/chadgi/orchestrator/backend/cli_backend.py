"""Subprocess-based backend runner for the agent CLI."""

from __future__ import annotations

import os
import shlex
import subprocess
from pathlib import Path

from chadgi.orchestrator.backend.base import AgentRunRequest, AgentRunResult
from chadgi.orchestrator.backend.watchdog import TimeoutWatchdog
from chadgi.orchestrator.failure_classifier import TIMEOUT_EXIT_CODE


class BackendRunError(RuntimeError):
    """Backend execution error with retryability hint."""

    def __init__(self, message: str, *, transient: bool) -> None:
        super().__init__(message)
        self.transient = transient


class AgentProcess:
    """Cancellation handle for a spawned agent subprocess."""

    def __init__(self, process: subprocess.Popen[bytes]) -> None:
        self._process = process

    def is_alive(self) -> bool:
        return self._process.poll() is None

    def request_graceful_stop(self) -> None:
        """Send SIGTERM."""

        if not self.is_alive():
            return
        try:
            self._process.terminate()
        except OSError:
            return

    def force_kill(self) -> None:
        """Send SIGKILL."""

        if not self.is_alive():
            return
        try:
            self._process.kill()
        except OSError:
            return

    def wait_for_exit(self, timeout: float) -> bool:
        try:
            self._process.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            return False
        return True

    def wait(self) -> int:
        return self._process.wait()


class CliAgentBackend:
    """Run the configured agent command with the prompt on stdin."""

    def __init__(self, *, poll_interval: float = 0.5) -> None:
        self.poll_interval = poll_interval

    def run(self, request: AgentRunRequest) -> AgentRunResult:
        request.output_dir.mkdir(parents=True, exist_ok=True)
        prompt_path = request.output_dir / f"{request.label}.prompt.txt"
        stdout_path = request.output_dir / f"{request.label}.stdout.log"
        stderr_path = request.output_dir / f"{request.label}.stderr.log"
        prompt_path.write_text(request.prompt, "utf-8")

        run_args = _build_run_args(request.command)
        env = os.environ.copy()
        env["CHADGI_RUN_LABEL"] = request.label

        try:
            with (
                prompt_path.open("rb") as stdin_handle,
                stdout_path.open("wb") as stdout_handle,
                stderr_path.open("wb") as stderr_handle,
            ):
                process = subprocess.Popen(  # noqa: S603
                    run_args,
                    cwd=request.cwd,
                    env=env,
                    stdin=stdin_handle,
                    stdout=stdout_handle,
                    stderr=stderr_handle,
                )
                handle = AgentProcess(process)
                watchdog = TimeoutWatchdog(
                    process=handle,
                    clock=request.clock,
                    grace_seconds=request.graceful_stop_seconds,
                    poll_interval=self.poll_interval,
                    shutdown_requested=request.shutdown_requested,
                )
                watchdog.start()
                try:
                    returncode = handle.wait()
                finally:
                    watchdog.cancel()
        except FileNotFoundError as error:
            raise BackendRunError(
                f"Agent command not found: {run_args[0]}",
                transient=False,
            ) from error
        except OSError as error:
            raise BackendRunError(f"Agent failed to start: {error}", transient=True) from error

        return AgentRunResult(
            exit_code=TIMEOUT_EXIT_CODE if watchdog.timed_out else returncode,
            timed_out=watchdog.timed_out,
            stdout_path=stdout_path,
            stderr_path=stderr_path,
        )


def _build_run_args(command: str) -> list[str]:
    stripped = command.strip()
    if not stripped:
        raise BackendRunError("Agent command is empty.", transient=False)
    argv = shlex.split(stripped)
    if not argv:
        raise BackendRunError("Agent command rendered empty.", transient=False)
    return argv


def output_dir_for(chadgi_dir: Path, issue_number: int) -> Path:
    return chadgi_dir / "runs" / f"issue-{issue_number}"
