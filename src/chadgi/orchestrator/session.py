"""Session loop: pull tasks and drive the executor until a stop condition."""

from __future__ import annotations

import logging
import os
import signal
import time
import uuid
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import datetime

from chadgi.config import Settings
from chadgi.orchestrator.budget import SESSION_BUDGET_EXIT_CODE, BudgetGuard
from chadgi.orchestrator.executor import TaskExecutor
from chadgi.orchestrator.metrics import SessionStatsStore
from chadgi.orchestrator.models import SessionState, SessionStatus, Task
from chadgi.orchestrator.notifications import NotificationDispatcher
from chadgi.orchestrator.progress import PauseCoordinator, ProgressSnapshot, ProgressStore
from chadgi.orchestrator.task_source import TaskSource, TaskSourceError
from chadgi.storage import utc_now

logger = logging.getLogger(__name__)


class StopController:
    """Stop flag set by SIGINT/SIGTERM, shared by the loop, executor and watchdog."""

    def __init__(self) -> None:
        self.requested = False
        self.signal_name: str | None = None

    def is_requested(self) -> bool:
        return self.requested

    def request(self, *, signal_name: str) -> None:
        if not self.requested:
            logger.warning("%s received; finishing current step and stopping", signal_name)
        self.requested = True
        self.signal_name = signal_name

    def sleep(self, seconds: float) -> None:
        deadline = time.monotonic() + seconds
        while not self.requested and time.monotonic() < deadline:
            time.sleep(min(0.1, max(0.0, deadline - time.monotonic())))

    @contextmanager
    def signal_handlers(self) -> Iterator[None]:
        if not hasattr(signal, "SIGINT"):
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            self.request(signal_name=name)

        installed = True
        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
        except ValueError:
            # Signal handlers can only be installed in main thread.
            installed = False
        try:
            yield
        finally:
            if installed:
                signal.signal(signal.SIGINT, original_sigint)
                signal.signal(signal.SIGTERM, original_sigterm)


class SessionLoop:
    """Single-threaded loop over the Ready column."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        settings: Settings,
        task_source: TaskSource,
        executor: TaskExecutor,
        dispatcher: NotificationDispatcher,
        progress: ProgressStore,
        pause: PauseCoordinator,
        stats: SessionStatsStore,
        budget: BudgetGuard,
        dry_run: bool = False,
        now: Callable[[], datetime] = utc_now,
        report: Callable[[list[str]], None] | None = None,
        stop: StopController | None = None,
    ) -> None:
        self.settings = settings
        self.task_source = task_source
        self.executor = executor
        self.dispatcher = dispatcher
        self.progress = progress
        self.pause = pause
        self.stats = stats
        self.budget = budget
        self.dry_run = dry_run
        self._now = now
        self._report = report or _log_lines
        self.stop = stop or StopController()

    def run(self) -> SessionState:
        """Process tasks until the queue empties or a limit is reached."""

        state = SessionState(session_id=uuid.uuid4().hex[:12], started_at=self._now())
        logger.info("Session %s started (repo %s)", state.session_id, self.settings.github.repo)
        self._write_progress(state, SessionStatus.RUNNING)
        polled = False
        try:
            with self.stop.signal_handlers():
                while self._next_step(state, first_poll=not polled):
                    polled = True
        except TaskSourceError:
            state.stop_reason = "task_source_unreachable"
            state.exit_code = 1
            self._write_progress(state, SessionStatus.ERROR)
            raise
        finally:
            self._finish(state)
        return state

    def _next_step(self, state: SessionState, *, first_poll: bool) -> bool:  # noqa: C901, PLR0911
        """Run one loop tick; ``False`` ends the session."""

        if self.stop.requested:
            state.stop_reason = state.stop_reason or f"signal:{self.stop.signal_name}"
            return False
        self.pause.check_pause_lock()
        if self.stop.requested:
            state.stop_reason = f"signal:{self.stop.signal_name}"
            return False

        max_tasks = self.settings.iteration.max_tasks
        if max_tasks and state.tasks_attempted >= max_tasks:
            state.stop_reason = "max_tasks"
            return False
        if state.stop_reason:
            return False
        if self.budget.session_exhausted(state.total_cost_usd):
            if self.settings.budget.on_session_exceeded == "stop":
                state.stop_reason = "session_budget_exceeded"
                state.exit_code = SESSION_BUDGET_EXIT_CODE
                return False
            logger.warning("Session budget exceeded; continuing (on_session_exceeded=warn)")

        try:
            task = self.task_source.get_next_task()
        except TaskSourceError:
            if first_poll:
                raise
            logger.exception("Task source query failed; retrying after poll interval")
            self._write_progress(state, SessionStatus.ERROR)
            self.stop.sleep(self.settings.poll_interval)
            return True

        if task is None:
            return self._handle_empty_queue(state)
        state.consecutive_empty = 0

        if self.dry_run:
            self._explore(task)
            state.stop_reason = "dry_run"
            return False

        run = self.executor.run_task(task, state)
        state.record(run)
        self._write_progress(state, SessionStatus.RUNNING)
        if state.stop_reason:
            return False

        failure_limit = self.settings.iteration.max_consecutive_failures
        if failure_limit and state.consecutive_failures >= failure_limit:
            logger.error("Stopping after %d consecutive failures", state.consecutive_failures)
            state.stop_reason = "consecutive_failures"
            state.exit_code = 1
            return False
        return True

    def _handle_empty_queue(self, state: SessionState) -> bool:
        state.consecutive_empty += 1
        self._write_progress(state, SessionStatus.IDLE)
        threshold = self.settings.consecutive_empty_threshold
        if state.consecutive_empty < threshold:
            logger.info("No ready tasks; checking again in %ss", self.settings.poll_interval)
            self.stop.sleep(self.settings.poll_interval)
            return True

        policy = self.settings.on_empty_queue
        if policy == "exit":
            logger.info("Queue empty after %d checks; ending session", state.consecutive_empty)
            state.stop_reason = "queue_empty"
            return False
        if policy == "generate":
            logger.info("Queue empty; task generation is not available, waiting for new tasks")
        self.stop.sleep(self.settings.poll_interval)
        return True

    def _explore(self, task: Task) -> None:
        logger.info("Dry run: exploring #%s without making changes", task.number)
        plan = self.executor.explore(task)
        self._report([f"Dry run plan for #{task.number}: {task.title}", "", plan])

    def _finish(self, state: SessionState) -> None:
        ended_at = self._now()
        if state.stop_reason is None:
            state.stop_reason = "completed"
        self._write_progress(
            state,
            SessionStatus.IDLE if state.exit_code == 0 else SessionStatus.ERROR,
        )
        self.stats.append(state.to_record(ended_at=ended_at))
        summary = render_session_summary(state, ended_at=ended_at)
        self.dispatcher.notify_event(
            "session_ended",
            title="Session ended",
            message=f"Stop reason: {state.stop_reason}",
            fields={
                "Completed": state.tasks_completed,
                "Failed": state.tasks_failed,
                "Cost": f"${state.total_cost_usd:.2f}",
            },
        )
        self._report(summary)

    def _write_progress(self, state: SessionState, status: SessionStatus) -> None:
        now = self._now()
        task = state.current_task
        self.progress.write(
            ProgressSnapshot(
                status=status,
                session_started_at=state.started_at,
                current_task={"number": task.number, "title": task.title} if task else None,
                phase=None,
                iteration=0,
                max_iterations=self.settings.iteration.max_iterations,
                tasks_completed=state.tasks_completed,
                elapsed_seconds=(now - state.started_at).total_seconds(),
                pid=os.getpid(),
            ),
        )


def render_session_summary(state: SessionState, *, ended_at: datetime) -> list[str]:
    duration = max(0.0, (ended_at - state.started_at).total_seconds())
    minutes, seconds = divmod(int(duration), 60)
    lines = [
        f"Session {state.session_id} finished: {state.stop_reason}",
        f"  Duration:   {minutes}m {seconds}s",
        f"  Attempted:  {state.tasks_attempted}",
        f"  Completed:  {state.tasks_completed}",
        f"  Failed:     {state.tasks_failed}",
        f"  Skipped:    {state.tasks_skipped}",
        f"  Total cost: ${state.total_cost_usd:.2f}",
    ]
    for failed in state.failed_tasks:
        lines.append(f"  - #{failed['issue']}: {failed['reason']}")
    return lines


def _log_lines(lines: list[str]) -> None:
    for line in lines:
        logger.info(line)
