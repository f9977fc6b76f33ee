"""Backend interface for agent invocation."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from chadgi.orchestrator.backend.watchdog import TaskClock


@dataclass(slots=True)
class AgentRunRequest:
    """Inputs required to run the agent once."""

    prompt: str
    command: str
    cwd: Path
    output_dir: Path
    label: str
    clock: TaskClock | None = None
    graceful_stop_seconds: int = 10
    shutdown_requested: Callable[[], bool] | None = None


@dataclass(slots=True)
class AgentRunResult:
    """Execution outcome from the agent process."""

    exit_code: int
    timed_out: bool
    stdout_path: Path
    stderr_path: Path

    def read_stdout(self) -> str:
        return _read_text(self.stdout_path)

    def read_stderr(self) -> str:
        return _read_text(self.stderr_path)


class AgentBackend(Protocol):
    """Protocol implemented by agent runners."""

    def run(self, request: AgentRunRequest) -> AgentRunResult:
        """Run the agent and return execution metadata."""


def _read_text(path: Path) -> str:
    try:
        return path.read_text("utf-8", errors="replace")
    except FileNotFoundError:
        return ""
