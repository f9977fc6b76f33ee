from __future__ import annotations

import shlex
import sys
from pathlib import Path

import allure
import pytest

from chadgi.orchestrator.backend import (
    AgentRunRequest,
    BackendRunError,
    CliAgentBackend,
    TaskClock,
    TimeoutWatchdog,
)
from chadgi.orchestrator.backend.cli_backend import _build_run_args, output_dir_for
from chadgi.orchestrator.failure_classifier import TIMEOUT_EXIT_CODE
from chadgi.orchestrator.usage import parse_stream_output

pytestmark = [
    allure.epic("Agent Runtime"),
    allure.feature("Agent Subprocess and Timeout"),
]

FAKE_AGENT = """\
import json
import sys

prompt = sys.stdin.read()
message = {"content": [{"type": "text", "text": prompt}]}
print(json.dumps({"type": "assistant", "message": message}))
result = {"type": "result", "result": "<promise>COMPLETE</promise>", "total_cost_usd": 0.05}
print(json.dumps(result))
sys.exit(int(sys.argv[1]) if len(sys.argv) > 1 else 0)
"""


def _agent_command(tmp_path: Path, *args: str) -> str:
    script = tmp_path / "fake_agent.py"
    script.write_text(FAKE_AGENT, "utf-8")
    return shlex.join([sys.executable, str(script), *args])


def _request(tmp_path: Path, command: str, **overrides) -> AgentRunRequest:
    values = {
        "prompt": "Implement issue #7",
        "command": command,
        "cwd": tmp_path,
        "output_dir": output_dir_for(tmp_path / ".chadgi", 7),
        "label": "iteration-1",
    }
    values.update(overrides)
    return AgentRunRequest(**values)


class FakeProcess:
    def __init__(self, *, exits_on_term: bool) -> None:
        self.exits_on_term = exits_on_term
        self.alive = True
        self.terminated = False
        self.killed = False

    def is_alive(self) -> bool:
        return self.alive

    def request_graceful_stop(self) -> None:
        self.terminated = True
        if self.exits_on_term:
            self.alive = False

    def force_kill(self) -> None:
        self.killed = True
        self.alive = False

    def wait_for_exit(self, timeout: float) -> bool:
        return not self.alive


def test_agent_receives_prompt_on_stdin_and_output_is_captured(tmp_path: Path) -> None:
    result = CliAgentBackend().run(_request(tmp_path, _agent_command(tmp_path)))

    assert result.exit_code == 0
    assert result.timed_out is False
    usage = parse_stream_output(result.read_stdout())
    assert "Implement issue #7" in usage.text
    assert "<promise>COMPLETE</promise>" in usage.text
    assert usage.cost_usd == 0.05
    prompt_file = tmp_path / ".chadgi" / "runs" / "issue-7" / "iteration-1.prompt.txt"
    assert prompt_file.read_text("utf-8") == "Implement issue #7"


def test_non_zero_exit_code_is_reported(tmp_path: Path) -> None:
    result = CliAgentBackend().run(_request(tmp_path, _agent_command(tmp_path, "3")))

    assert result.exit_code == 3
    assert result.timed_out is False


@pytest.mark.skipif(sys.platform == "win32", reason="POSIX signals")
def test_expired_clock_stops_agent_with_timeout_exit_code(tmp_path: Path) -> None:
    readings = iter([0.0])

    def fake_now() -> float:
        return next(readings, 10_000.0)

    clock = TaskClock(issue_number=7, timeout_minutes=1, now=fake_now)
    command = shlex.join([sys.executable, "-c", "import time; time.sleep(30)"])

    result = CliAgentBackend(poll_interval=0.05).run(
        _request(tmp_path, command, clock=clock, graceful_stop_seconds=5),
    )

    assert result.timed_out is True
    assert result.exit_code == TIMEOUT_EXIT_CODE


def test_missing_agent_binary_is_a_permanent_backend_error(tmp_path: Path) -> None:
    with pytest.raises(BackendRunError) as error:
        CliAgentBackend().run(_request(tmp_path, "definitely-not-an-agent-binary --print"))

    assert error.value.transient is False


def test_empty_command_is_rejected() -> None:
    with pytest.raises(BackendRunError, match="empty"):
        _build_run_args("   ")


def test_build_run_args_splits_shell_words() -> None:
    assert _build_run_args("claude --print --output-format 'stream-json'") == [
        "claude",
        "--print",
        "--output-format",
        "stream-json",
    ]


def test_task_clock_warns_once_per_threshold() -> None:
    now = [0.0]
    clock = TaskClock(issue_number=3, timeout_minutes=10, now=lambda: now[0])

    now[0] = 300.0
    assert clock.pending_warnings() == []
    now[0] = 450.0
    first = clock.pending_warnings()
    now[0] = 460.0
    repeated = clock.pending_warnings()
    now[0] = 545.0
    second = clock.pending_warnings()

    assert len(first) == 1
    assert "75%" in first[0]
    assert repeated == []
    assert len(second) == 1
    assert "90%" in second[0]
    assert clock.remaining() == 55.0
    assert not clock.expired()


def test_disabled_clock_never_expires() -> None:
    clock = TaskClock(issue_number=3, timeout_minutes=0, now=lambda: 1e9)

    assert clock.expired() is False
    assert clock.remaining() is None
    assert clock.pending_warnings() == []


def test_watchdog_escalates_to_kill_when_agent_ignores_sigterm() -> None:
    now = [0.0]
    process = FakeProcess(exits_on_term=False)
    warnings: list[str] = []
    watchdog = TimeoutWatchdog(
        process=process,
        clock=TaskClock(issue_number=9, timeout_minutes=1, now=lambda: now[0]),
        grace_seconds=0,
        on_warning=warnings.append,
    )

    assert watchdog.check() is False
    now[0] = 60.0
    assert watchdog.check() is True

    assert watchdog.timed_out is True
    assert process.terminated is True
    assert process.killed is True
    assert watchdog.force_killed is True
    assert len(warnings) == 2


def test_watchdog_graceful_stop_without_kill() -> None:
    now = [0.0]
    process = FakeProcess(exits_on_term=True)
    watchdog = TimeoutWatchdog(
        process=process,
        clock=TaskClock(issue_number=9, timeout_minutes=1, now=lambda: now[0]),
        grace_seconds=1,
    )
    now[0] = 61.0

    assert watchdog.check() is True
    assert process.terminated is True
    assert process.killed is False


def test_watchdog_forwards_shutdown_request() -> None:
    process = FakeProcess(exits_on_term=True)
    watchdog = TimeoutWatchdog(
        process=process,
        clock=None,
        grace_seconds=1,
        shutdown_requested=lambda: True,
    )

    assert watchdog.check() is True
    assert watchdog.shutdown_forwarded is True
    assert watchdog.timed_out is False
    assert process.terminated is True
