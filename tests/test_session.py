from __future__ import annotations

from collections.abc import Callable
from datetime import timedelta
from pathlib import Path
from typing import Any

import allure
import pytest

from chadgi.config import Settings
from chadgi.orchestrator.budget import BudgetGuard
from chadgi.orchestrator.metrics import SessionStatsStore
from chadgi.orchestrator.models import SessionState, SessionStatus, Task, TaskOutcome, TaskRun
from chadgi.orchestrator.progress import PauseCoordinator, PauseLock, ProgressStore
from chadgi.orchestrator.session import SessionLoop, StopController, render_session_summary
from chadgi.orchestrator.task_source import TaskSourceError
from chadgi.storage import utc_now

pytestmark = [
    allure.epic("Session"),
    allure.feature("Session Loop"),
]


class QueueSource:
    def __init__(self, numbers: list[int] | None = None, *, endless: bool = False) -> None:
        self.numbers = list(numbers or [])
        self.endless = endless
        self.polls = 0

    def get_next_task(self) -> Task | None:
        self.polls += 1
        if self.endless:
            return Task(number=100 + self.polls, title="Flaky task")
        if not self.numbers:
            return None
        number = self.numbers.pop(0)
        return Task(number=number, title=f"Task {number}")

    def move_task(self, task: Task, column: str) -> None:
        task.column = column

    def assign_task(self, task: Task) -> None:
        pass

    def get_category(self, task: Task) -> str | None:
        return None


class FailingSource(QueueSource):
    def get_next_task(self) -> Task | None:
        raise TaskSourceError("gh project item-list failed: HTTP 502")


class FakeExecutor:
    def __init__(
        self,
        outcome: TaskOutcome = TaskOutcome.COMPLETED,
        *,
        cost: float = 0.0,
        on_run: Callable[[SessionState], None] | None = None,
    ) -> None:
        self.outcome = outcome
        self.cost = cost
        self.on_run = on_run
        self.ran: list[int] = []
        self.explored: list[int] = []

    def run_task(self, task: Task, session: SessionState) -> TaskRun:
        self.ran.append(task.number)
        if self.on_run is not None:
            self.on_run(session)
        return TaskRun(
            issue_number=task.number,
            started_at=utc_now(),
            outcome=self.outcome,
            cost_usd=self.cost,
            failure_reason=None if self.outcome == TaskOutcome.COMPLETED else "agent_error",
        )

    def explore(self, task: Task) -> str:
        self.explored.append(task.number)
        return "1. Read the code\n2. Change it"


class RecordingDispatcher:
    def __init__(self) -> None:
        self.events: list[str] = []

    def notify_event(self, kind: str, **_: Any) -> bool:
        self.events.append(kind)
        return True


def _settings(tmp_path: Path) -> Settings:
    settings = Settings(chadgi_dir=tmp_path / ".chadgi")
    settings.github.repo = "acme/widgets"
    settings.github.project_number = 5
    settings.poll_interval = 0
    return settings


def _loop(  # noqa: PLR0913
    settings: Settings,
    source: QueueSource,
    executor: FakeExecutor,
    *,
    dry_run: bool = False,
    stop: StopController | None = None,
    report: list[str] | None = None,
    dispatcher: RecordingDispatcher | None = None,
    pause_sleep: Callable[[float], None] | None = None,
) -> SessionLoop:
    progress = ProgressStore(settings.progress_path)
    return SessionLoop(
        settings=settings,
        task_source=source,
        executor=executor,
        dispatcher=dispatcher or RecordingDispatcher(),
        progress=progress,
        pause=PauseCoordinator(
            lock=PauseLock(settings.pause_lock_path),
            progress=progress,
            sleep=pause_sleep or (lambda _: None),
        ),
        stats=SessionStatsStore(settings.stats_path),
        budget=BudgetGuard(settings.budget),
        dry_run=dry_run,
        report=report.extend if report is not None else None,
        stop=stop,
    )


def test_processes_queue_then_exits_when_empty(tmp_path: Path) -> None:
    settings = _settings(tmp_path)
    source = QueueSource([3, 8])
    executor = FakeExecutor(cost=0.25)
    dispatcher = RecordingDispatcher()
    report: list[str] = []

    state = _loop(settings, source, executor, report=report, dispatcher=dispatcher).run()

    assert executor.ran == [3, 8]
    assert state.tasks_completed == 2
    assert state.completed_tasks == [3, 8]
    assert state.total_cost_usd == 0.5
    assert state.stop_reason == "queue_empty"
    assert state.exit_code == 0
    assert source.polls == 4
    assert report[0].endswith("finished: queue_empty")
    assert dispatcher.events == ["session_ended"]
    sessions = SessionStatsStore(settings.stats_path).load()
    assert len(sessions) == 1
    assert sessions[0]["tasks_completed"] == 2
    progress = ProgressStore(settings.progress_path).read()
    assert progress is not None
    assert progress.status == SessionStatus.IDLE


def test_consecutive_failures_stop_the_session(tmp_path: Path) -> None:
    settings = _settings(tmp_path)
    settings.iteration.max_consecutive_failures = 2
    executor = FakeExecutor(TaskOutcome.FAILED)

    state = _loop(settings, QueueSource(endless=True), executor).run()

    assert len(executor.ran) == 2
    assert state.stop_reason == "consecutive_failures"
    assert state.exit_code == 1
    assert [failed["reason"] for failed in state.failed_tasks] == ["agent_error", "agent_error"]
    progress = ProgressStore(settings.progress_path).read()
    assert progress is not None
    assert progress.status == SessionStatus.ERROR


def test_max_tasks_limit(tmp_path: Path) -> None:
    settings = _settings(tmp_path)
    settings.iteration.max_tasks = 1
    executor = FakeExecutor()

    state = _loop(settings, QueueSource([1, 2, 3]), executor).run()

    assert executor.ran == [1]
    assert state.stop_reason == "max_tasks"


def test_budget_stop_from_executor_ends_session(tmp_path: Path) -> None:
    settings = _settings(tmp_path)

    def exceed(session: SessionState) -> None:
        session.stop_reason = "session_budget_exceeded"
        session.exit_code = 125

    executor = FakeExecutor(on_run=exceed)

    state = _loop(settings, QueueSource([1, 2]), executor).run()

    assert executor.ran == [1]
    assert state.stop_reason == "session_budget_exceeded"
    assert state.exit_code == 125
    progress = ProgressStore(settings.progress_path).read()
    assert progress is not None
    assert progress.status == SessionStatus.ERROR


def test_exhausted_session_budget_blocks_next_task(tmp_path: Path) -> None:
    settings = _settings(tmp_path)
    settings.budget.per_session_limit = 1.0
    executor = FakeExecutor(cost=1.5)

    state = _loop(settings, QueueSource([1, 2]), executor).run()

    assert executor.ran == [1]
    assert state.exit_code == 125


def test_stop_request_ends_before_next_task(tmp_path: Path) -> None:
    stop = StopController()
    stop.request(signal_name="SIGTERM")
    executor = FakeExecutor()

    state = _loop(_settings(tmp_path), QueueSource([1]), executor, stop=stop).run()

    assert executor.ran == []
    assert state.stop_reason == "signal:SIGTERM"


def test_dry_run_explores_first_task_only(tmp_path: Path) -> None:
    executor = FakeExecutor()
    report: list[str] = []

    state = _loop(
        _settings(tmp_path),
        QueueSource([4, 5]),
        executor,
        dry_run=True,
        report=report,
    ).run()

    assert executor.explored == [4]
    assert executor.ran == []
    assert state.stop_reason == "dry_run"
    assert "Dry run plan for #4: Task 4" in report


def test_unreachable_task_source_on_first_poll_is_fatal(tmp_path: Path) -> None:
    settings = _settings(tmp_path)

    with pytest.raises(TaskSourceError):
        _loop(settings, FailingSource(), FakeExecutor()).run()

    progress = ProgressStore(settings.progress_path).read()
    assert progress is not None
    assert progress.status == SessionStatus.ERROR
    sessions = SessionStatsStore(settings.stats_path).load()
    assert sessions[-1]["stop_reason"] == "task_source_unreachable"


def test_summary_lists_failed_tasks() -> None:
    started = utc_now()
    state = SessionState(session_id="abc", started_at=started, stop_reason="completed")
    state.failed_tasks.append({"issue": 9, "reason": "timeout"})

    lines = render_session_summary(state, ended_at=started)

    assert lines[0] == "Session abc finished: completed"
    assert "  - #9: timeout" in lines


def test_pause_lock_holds_the_queue_until_resumed(tmp_path: Path) -> None:
    settings = _settings(tmp_path)
    lock = PauseLock(settings.pause_lock_path)
    lock.create(reason="deploy freeze")
    source = QueueSource([1])
    executor = FakeExecutor()
    observed: list[tuple[SessionStatus | None, list[int], int]] = []

    def resume(_: float) -> None:
        snapshot = ProgressStore(settings.progress_path).read()
        observed.append((snapshot.status if snapshot else None, list(executor.ran), source.polls))
        lock.remove()

    state = _loop(settings, source, executor, pause_sleep=resume).run()

    assert observed == [(SessionStatus.PAUSED, [], 0)]
    assert executor.ran == [1]
    assert state.stop_reason == "queue_empty"


def test_expired_pause_lock_is_removed_and_session_continues(tmp_path: Path) -> None:
    settings = _settings(tmp_path)
    lock = PauseLock(settings.pause_lock_path)
    lock.create(duration_seconds=60, now=utc_now() - timedelta(minutes=5))
    executor = FakeExecutor()

    _loop(settings, QueueSource([2]), executor).run()

    assert not lock.exists()
    assert executor.ran == [2]
