"""Per-task execution engine: branch, iterate the agent, verify, ship."""

from __future__ import annotations

import logging
import os
import random
import subprocess
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from chadgi.config import Settings
from chadgi.orchestrator.backend import (
    AgentBackend,
    AgentRunRequest,
    BackendRunError,
    TaskClock,
)
from chadgi.orchestrator.backend.cli_backend import output_dir_for
from chadgi.orchestrator.budget import (
    SESSION_BUDGET_EXIT_CODE,
    TASK_BUDGET_EXIT_CODE,
    BudgetGuard,
    BudgetStatus,
)
from chadgi.orchestrator.diagnostics import (
    FailureContext,
    collect_diagnostics,
    render_error_report,
)
from chadgi.orchestrator.failure_classifier import TIMEOUT_EXIT_CODE, explain_error
from chadgi.orchestrator.git_ops import GitError, GitWorkspace, branch_name
from chadgi.orchestrator.hooks import HOOK_ABORT_EXIT_CODE, HookContext, HookResult, HookRunner
from chadgi.orchestrator.metrics import MetricsStore
from chadgi.orchestrator.models import (
    AgentSignal,
    ErrorKind,
    RunPhase,
    SessionState,
    SessionStatus,
    Task,
    TaskOutcome,
    TaskRun,
)
from chadgi.orchestrator.notifications import NotificationDispatcher
from chadgi.orchestrator.progress import ProgressSnapshot, ProgressStore
from chadgi.orchestrator.prompts import (
    load_task_template,
    render_explore_prompt,
    render_task_prompt,
    verification_feedback,
)
from chadgi.orchestrator.retry import RetryPolicy, delay_for
from chadgi.orchestrator.task_source import TaskSource, TaskSourceError
from chadgi.orchestrator.usage import detect_signal, parse_stream_output
from chadgi.storage import utc_now

logger = logging.getLogger(__name__)

NO_SIGNAL_FEEDBACK = (
    "Previous iteration ended without a completion promise. Continue the implementation "
    "and print the promise once the work is done.\n"
)


@dataclass(slots=True)
class VerificationResult:
    passed: bool
    output: str
    exit_code: int = 0
    timed_out: bool = False


class ShellVerifier:
    """Run configured test and build commands; passes when none are configured.

    ``timeout`` bounds all commands together, so a hung test suite cannot
    outlive the task budget.
    """

    def __init__(self, *, test_command: str, build_command: str, cwd: Path) -> None:
        self.commands = [command for command in (test_command, build_command) if command.strip()]
        self.cwd = cwd

    def run(self, *, timeout: float | None = None) -> VerificationResult:
        outputs: list[str] = []
        deadline = None if timeout is None else time.monotonic() + timeout
        for command in self.commands:
            logger.info("Verification: %s", command)
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            try:
                result = subprocess.run(  # noqa: S602
                    command,
                    shell=True,
                    cwd=self.cwd,
                    capture_output=True,
                    text=True,
                    encoding="utf-8",
                    errors="replace",
                    timeout=remaining,
                )
            except subprocess.TimeoutExpired as error:
                outputs.append(f"$ {command}\n{_decode(error.stdout)}{_decode(error.stderr)}")
                outputs.append(f"Verification timed out after {timeout:.0f}s")
                return VerificationResult(
                    passed=False,
                    output="\n".join(outputs),
                    exit_code=TIMEOUT_EXIT_CODE,
                    timed_out=True,
                )
            outputs.append(f"$ {command}\n{result.stdout}{result.stderr}")
            if result.returncode != 0:
                return VerificationResult(
                    passed=False,
                    output="\n".join(outputs),
                    exit_code=result.returncode,
                )
        return VerificationResult(passed=True, output="\n".join(outputs))


@dataclass(slots=True)
class _Failure:
    """Terminal failure raised inside the iteration loop."""

    reason: str
    context: FailureContext
    outcome: TaskOutcome = TaskOutcome.FAILED
    policy: str = "ready"


class TaskExecutor:
    """Runs one task end to end and persists exactly one TaskRun."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        settings: Settings,
        task_source: TaskSource,
        git: GitWorkspace,
        backend: AgentBackend,
        dispatcher: NotificationDispatcher,
        metrics: MetricsStore,
        progress: ProgressStore,
        budget: BudgetGuard,
        verifier: ShellVerifier | None = None,
        sleep: Callable[[float], None] = time.sleep,
        now: Callable[[], datetime] = utc_now,
        clock_factory: Callable[..., TaskClock] = TaskClock,
        shutdown_requested: Callable[[], bool] | None = None,
        report: Callable[[list[str]], None] | None = None,
        hooks: HookRunner | None = None,
    ) -> None:
        self.settings = settings
        self.task_source = task_source
        self.git = git
        self.backend = backend
        self.dispatcher = dispatcher
        self.metrics = metrics
        self.progress = progress
        self.budget = budget
        self.verifier = verifier or ShellVerifier(
            test_command=settings.iteration.test_command,
            build_command=settings.iteration.build_command,
            cwd=git.repo_dir,
        )
        self.hooks = hooks or HookRunner(settings, cwd=git.repo_dir)
        self.retry_policy = RetryPolicy.from_settings(settings.iteration)
        self._sleep = sleep
        self._now = now
        self._clock_factory = clock_factory
        self._shutdown_requested = shutdown_requested
        self._report = report or _log_lines
        self._random = random.Random()  # noqa: S311
        self._persisted = False

    # -- public -----------------------------------------------------------

    def run_task(self, task: Task, session: SessionState) -> TaskRun:
        """Execute ``task``; per-task errors are recovered here and never propagate."""

        run = TaskRun(
            issue_number=task.number,
            started_at=self._now(),
            category=task.category,
            retry_count=self._carried_retry_count(task),
        )
        self._persisted = False
        self.budget.start_task()
        session.current_task = task
        logger.info("Starting task #%s: %s", task.number, task.title)
        self._notify(
            "task_started",
            title=f"Task started: #{task.number}",
            message=task.title,
            fields={"Issue": f"#{task.number}", "Category": task.category or "unspecified"},
        )
        self._safe_move(task, self.settings.github.in_progress_column)
        self._safe_assign(task)

        merged = False
        try:
            failure = self._hook_gate("pre_task", task, run, session)
            if failure is None:
                failure = self._execute(task, run, session)
            if failure is None:
                self._run_hook("post_implementation", task, run, session)
                failure = self._hook_gate("pre_pr", task, run, session)
            if failure is None:
                merged = self._ship(task, run, session)
        except (GitError, TaskSourceError, BackendRunError, OSError) as error:
            failure = self._failure_from_exception(run, error)
        except Exception as error:  # noqa: BLE001
            logger.exception("Unexpected error while running task #%s", task.number)
            failure = self._failure_from_exception(run, error)

        try:
            if failure is None:
                self._complete(task, run, session, merged=merged)
            else:
                self._fail(task, run, session, failure)
        except Exception:  # noqa: BLE001
            logger.exception("Could not finalize task #%s", task.number)
            if run.outcome is None:
                run.outcome = TaskOutcome.FAILED
                run.failure_reason = run.failure_reason or "execution_error"
            if not self._persisted:
                self._persist(run)
        session.current_task = None
        return run

    def explore(self, task: Task) -> str:
        """Dry-run: ask the agent for a plan without mutating anything."""

        clock = self._clock_factory(
            issue_number=task.number,
            timeout_minutes=self.settings.iteration.task_timeout,
        )
        result = self.backend.run(
            AgentRunRequest(
                prompt=render_explore_prompt(task=task, settings=self.settings),
                command=self.settings.agent.explore_command,
                cwd=self.git.repo_dir,
                output_dir=output_dir_for(self.settings.chadgi_dir, task.number),
                label="explore",
                clock=clock,
                graceful_stop_seconds=self.settings.agent.graceful_stop_seconds,
                shutdown_requested=self._shutdown_requested,
            ),
        )
        return parse_stream_output(result.read_stdout()).text

    # -- state machine ----------------------------------------------------

    def _execute(  # noqa: C901, PLR0912
        self,
        task: Task,
        run: TaskRun,
        session: SessionState,
    ) -> _Failure | None:
        iteration = self.settings.iteration

        run.phase = RunPhase.BRANCH_SETUP
        self._tick(task, run, session)
        run.branch = branch_name(self.settings.branch.prefix, task.number, task.title)
        git_started = time.monotonic()
        reused = self.git.prepare_branch(run.branch, self.settings.branch.base)
        run.git_operations_secs += time.monotonic() - git_started
        logger.info("%s branch %s", "Reusing" if reused else "Created", run.branch)

        template = load_task_template(self.settings)
        clock = self._clock_factory(
            issue_number=task.number,
            timeout_minutes=iteration.task_timeout,
        )
        feedback = ""
        last_output = ""

        for number in range(1, iteration.max_iterations + 1):
            if clock.expired():
                return self._timeout_failure(run, last_output)

            run.iterations = number
            run.phase = RunPhase.IMPLEMENTATION
            self._tick(task, run, session)
            logger.info("Task #%s iteration %d/%d", task.number, number, iteration.max_iterations)

            started = self._now()
            run.implementation_started_at = run.implementation_started_at or started
            result = self.backend.run(
                AgentRunRequest(
                    prompt=render_task_prompt(
                        template,
                        task=task,
                        settings=self.settings,
                        branch=run.branch,
                        iteration=number,
                        feedback=feedback,
                    ),
                    command=self.settings.agent.command,
                    cwd=self.git.repo_dir,
                    output_dir=output_dir_for(self.settings.chadgi_dir, task.number),
                    label=f"iteration-{number}",
                    clock=clock,
                    graceful_stop_seconds=self.settings.agent.graceful_stop_seconds,
                    shutdown_requested=self._shutdown_requested,
                ),
            )
            ended = self._now()
            run.implementation_ended_at = ended
            run.implementation_secs += (ended - started).total_seconds()

            stdout = result.read_stdout()
            stderr = result.read_stderr()
            usage = parse_stream_output(stdout)
            run.cost_usd += usage.cost_usd
            run.input_tokens += usage.input_tokens
            run.output_tokens += usage.output_tokens
            last_output = f"{stdout}\n{stderr}".strip()

            if result.timed_out:
                return self._timeout_failure(run, last_output)

            signal = detect_signal(
                exit_code=result.exit_code,
                text=usage.text,
                completion_promise=iteration.completion_promise,
                ready_promise=iteration.ready_promise,
            )
            if signal == AgentSignal.HARD_FAILURE:
                interrupted = self._shutdown_requested is not None and self._shutdown_requested()
                return self._classified_failure(
                    run,
                    reason="interrupted" if interrupted else "agent_error",
                    exit_code=result.exit_code,
                    output=last_output,
                    details=f"Agent exited with code {result.exit_code}",
                )

            passed = False
            if signal == AgentSignal.NEEDS_MORE_WORK:
                feedback = NO_SIGNAL_FEEDBACK
            else:
                run.phase = RunPhase.VERIFICATION
                self._tick(task, run, session)
                verify_started = self._now()
                run.verification_started_at = run.verification_started_at or verify_started
                verification = self.verifier.run(timeout=clock.remaining())
                verify_ended = self._now()
                run.verification_ended_at = verify_ended
                run.verification_secs += (verify_ended - verify_started).total_seconds()
                if verification.timed_out:
                    return self._timeout_failure(run, verification.output)
                passed = verification.passed
                if not passed:
                    run.retry_count += 1
                    last_output = verification.output
                    feedback = verification_feedback(verification.output)
                    logger.warning(
                        "Task #%s verification failed (iteration %d)",
                        task.number,
                        number,
                    )

            budget_failure = self._check_budget(task, run, session, iteration_passed=passed)
            if passed:
                return None
            if budget_failure is not None:
                return budget_failure

            if number < iteration.max_iterations:
                delay = delay_for(number, self.retry_policy, rng=self._random)
                logger.info("Retrying task #%s in %.1fs", task.number, delay)
                self._sleep(delay)

        failure = self._classified_failure(
            run,
            reason="max_iterations",
            exit_code=None,
            output=last_output,
            details=f"Not verified after {iteration.max_iterations} iteration(s)",
        )
        failure.policy = iteration.on_max_iterations
        return failure

    def _check_budget(
        self,
        task: Task,
        run: TaskRun,
        session: SessionState,
        *,
        iteration_passed: bool,
    ) -> _Failure | None:
        status = self.budget.check(
            task_cost=run.cost_usd,
            session_cost=session.total_cost_usd + run.cost_usd,
        )
        for warning in status.warnings:
            logger.warning(warning)
            self._notify(
                "budget_warning",
                title="Budget warning",
                message=warning,
                fields={"Issue": f"#{task.number}"},
            )
            self._run_hook("on_budget_warning", task, run, session)
        for action, message in status.overruns:
            logger.warning(message)
            self._notify(
                "budget_exceeded",
                title="Budget exceeded",
                message=message,
                fields={"Issue": f"#{task.number}", "Action": action},
            )
        if not status.exceeded:
            return None
        if status.stops_session:
            session.stop_reason = "session_budget_exceeded"
            session.exit_code = SESSION_BUDGET_EXIT_CODE
        if iteration_passed:
            return None
        return self._budget_failure(status)

    def _budget_failure(self, status: BudgetStatus) -> _Failure | None:
        """Task-level result of a binding limit; a task overrun never ends the session."""

        if status.stops_session:
            reason = "session_budget_exceeded"
            outcome = TaskOutcome.FAILED
            exit_code = SESSION_BUDGET_EXIT_CODE
        elif status.stops_task:
            reason = "task_budget_exceeded"
            outcome = TaskOutcome.SKIPPED if status.action == "skip" else TaskOutcome.FAILED
            exit_code = TASK_BUDGET_EXIT_CODE
        else:
            return None
        return _Failure(
            reason=reason,
            outcome=outcome,
            policy="skip" if outcome == TaskOutcome.SKIPPED else "ready",
            context=FailureContext(
                error_kind=ErrorKind.EXECUTION_ERROR,
                details=status.message,
                output="",
                exit_code=exit_code,
            ),
        )

    # -- terminal transitions ---------------------------------------------

    def _ship(self, task: Task, run: TaskRun, session: SessionState) -> bool:
        """Commit, push and open the PR; in GigaChad mode also merge it.

        Returns ``True`` when the pull request was merged.
        """

        run.phase = RunPhase.COMMIT
        self._tick(task, run, session)
        git_started = time.monotonic()
        try:
            merged = self._publish(task, run)
        finally:
            run.git_operations_secs += time.monotonic() - git_started
        self._run_hook("post_pr", task, run, session)
        if merged:
            self._run_hook("post_merge", task, run, session)
        return merged

    def _publish(self, task: Task, run: TaskRun) -> bool:
        iteration = self.settings.iteration
        self.git.commit_all(f"feat: {task.title} (#{task.number})")
        run.files_modified, run.lines_changed = self.git.diff_stats(self.settings.branch.base)
        self.git.push(run.branch)
        run.pr_url = self.git.open_pull_request(
            branch=run.branch,
            base=self.settings.branch.base,
            title=f"{task.title} (#{task.number})",
            body=f"Closes #{task.number}\n\nImplemented in {run.iterations} iteration(s).",
        )
        logger.info("Pull request for #%s: %s", task.number, run.pr_url)
        if not iteration.gigachad_mode:
            return False

        merge = self.git.merge_pull_request(
            run.pr_url or run.branch,
            subject=f"{iteration.gigachad_commit_prefix} {task.title} (#{task.number})",
        )
        if not merge.merged:
            logger.warning("Auto-merge failed for #%s; leaving PR for review", task.number)
            return False
        self.git.checkout_base(self.settings.branch.base)
        self._notify(
            "gigachad_merge",
            title=f"Merged: #{task.number}",
            message=task.title,
            fields={"Strategy": merge.strategy, "Pull request": run.pr_url or "n/a"},
        )
        return True

    def _complete(self, task: Task, run: TaskRun, session: SessionState, *, merged: bool) -> None:
        run.phase = RunPhase.COMPLETED
        run.outcome = TaskOutcome.COMPLETED
        run.completed_at = self._now()
        self._persist(run)
        logger.info(
            "Task #%s completed in %d iteration(s), $%.4f",
            task.number,
            run.iterations,
            run.cost_usd,
        )
        self._notify(
            "task_completed",
            title=f"Task completed: #{task.number}",
            message=task.title,
            fields={
                "Iterations": run.iterations,
                "Cost": f"${run.cost_usd:.2f}",
                "Pull request": run.pr_url or "n/a",
            },
        )
        column = self.settings.github.done_column if merged else self.settings.github.review_column
        self._safe_move(task, column)

    def _fail(self, task: Task, run: TaskRun, session: SessionState, failure: _Failure) -> None:
        recovery_started = time.monotonic()
        failed_phase = run.phase
        run.phase = RunPhase.ERROR_RECOVERY
        run.outcome = failure.outcome
        run.failure_reason = failure.reason
        run.failure_phase = failed_phase.value
        run.error_kind = failure.context.error_kind

        diagnostics_path = None
        if failure.outcome == TaskOutcome.FAILED:
            diagnostics_path = collect_diagnostics(
                task,
                run,
                self.settings,
                failure.context,
                git=self.git,
                now=self._now(),
            )
        run.diagnostics_path = str(diagnostics_path) if diagnostics_path else None
        self._report(render_error_report(task, failure.context, diagnostics_path))

        run.phase = RunPhase.SKIPPED if failure.outcome == TaskOutcome.SKIPPED else RunPhase.FAILED
        run.completed_at = self._now()
        run.error_recovery_secs = round(time.monotonic() - recovery_started, 3)
        self._persist(run)

        self._notify(
            "task_failed",
            title=f"Task {failure.outcome.value}: #{task.number}",
            message=task.title,
            fields={
                "Reason": failure.reason,
                "Error type": failure.context.error_kind.value,
                "Iterations": run.iterations,
                "Cost": f"${run.cost_usd:.2f}",
            },
        )
        self._run_hook("on_failure", task, run, session)
        self._apply_failure_policy(task, run, failure.policy)

    def _persist(self, run: TaskRun) -> None:
        """Write the TaskRun once; a storage error is logged, not raised."""

        self._persisted = True
        try:
            self.metrics.append(run)
        except OSError:
            logger.exception("Could not record metrics for task #%s", run.issue_number)

    def _apply_failure_policy(self, task: Task, run: TaskRun, policy: str) -> None:
        """Return to the base branch and park the issue according to ``policy``.

        ``rollback`` discards the task branch and re-queues the issue.
        ``retry-later`` and ``ready`` keep the branch and re-queue the issue.
        ``skip`` keeps the branch and leaves the issue where it is.
        """

        base = self.settings.branch.base
        if policy == "rollback" and run.branch:
            try:
                self.git.rollback(run.branch, base)
            except GitError as error:
                logger.warning("Rollback of %s failed: %s", run.branch, error)
        elif run.branch:
            try:
                self.git.checkout_base(base, pull=False)
            except GitError as error:
                logger.warning("Could not return to %s: %s", base, error)

        if policy == "skip":
            logger.info("Skipping #%s; leaving it in %s", task.number, task.column or "its column")
            return
        self._safe_move(task, self.settings.github.ready_column)

    # -- failure helpers --------------------------------------------------

    def _timeout_failure(self, run: TaskRun, output: str) -> _Failure:
        self._save_partial_work(run)
        failure = self._classified_failure(
            run,
            reason="timeout",
            exit_code=TIMEOUT_EXIT_CODE,
            output=output,
            details=f"Task exceeded {self.settings.iteration.task_timeout} minute timeout",
        )
        failure.policy = self.settings.iteration.on_max_iterations
        return failure

    def _save_partial_work(self, run: TaskRun) -> None:
        if not run.branch:
            return
        try:
            if self.git.commit_all(f"[WIP] Partial work before timeout - task #{run.issue_number}"):
                logger.info("Saved partial work for #%s in a [WIP] commit", run.issue_number)
                self.git.push(run.branch)
        except GitError as error:
            logger.warning("Could not save partial work for #%s: %s", run.issue_number, error)

    def _classified_failure(
        self,
        run: TaskRun,
        *,
        reason: str,
        exit_code: int | None,
        output: str,
        details: str,
    ) -> _Failure:
        classification = explain_error(exit_code, output)
        logger.error(
            "Task #%s failed (%s, %s): %s",
            run.issue_number,
            reason,
            classification.kind.value,
            details,
        )
        return _Failure(
            reason=reason,
            context=FailureContext(
                error_kind=classification.kind,
                details=details,
                output=output,
                exit_code=exit_code,
            ),
        )

    def _failure_from_exception(self, run: TaskRun, error: Exception) -> _Failure:
        if isinstance(error, GitError):
            reason = "git_error"
        elif isinstance(error, TaskSourceError):
            reason = "api_error"
        elif isinstance(error, (BackendRunError, OSError)):
            reason = "agent_error"
        else:
            reason = "execution_error"
        return self._classified_failure(
            run,
            reason=reason,
            exit_code=None,
            output=str(error),
            details=str(error),
        )

    # -- side effects -----------------------------------------------------

    def _tick(self, task: Task, run: TaskRun, session: SessionState) -> None:
        now = self._now()
        self.progress.write(
            ProgressSnapshot(
                status=SessionStatus.RUNNING,
                session_started_at=session.started_at,
                current_task={"number": task.number, "title": task.title, "branch": run.branch},
                phase=run.phase.value,
                iteration=run.iterations,
                max_iterations=self.settings.iteration.max_iterations,
                tasks_completed=session.tasks_completed,
                elapsed_seconds=(now - session.started_at).total_seconds(),
                pid=os.getpid(),
            ),
        )

    def _carried_retry_count(self, task: Task) -> int:
        try:
            return self.metrics.retry_count_for(task.number)
        except OSError as error:
            logger.warning("Could not read retry count for #%s: %s", task.number, error)
            return 0

    def _run_hook(self, name: str, task: Task, run: TaskRun, session: SessionState) -> HookResult:
        return self.hooks.run(
            name,
            HookContext(
                issue_number=task.number,
                title=task.title,
                url=task.url,
                branch=run.branch,
                pr_url=run.pr_url or "",
                cost=run.cost_usd,
                session_cost=session.total_cost_usd + run.cost_usd,
                iteration=max(run.iterations, 1),
            ),
        )

    def _hook_gate(
        self,
        name: str,
        task: Task,
        run: TaskRun,
        session: SessionState,
    ) -> _Failure | None:
        """Run an abort-capable hook; a failing ``can_abort`` hook ends the task."""

        result = self._run_hook(name, task, run, session)
        if not result.aborts:
            return None
        details = (
            f"{name} hook timed out"
            if result.timed_out
            else f"{name} hook exited with code {result.exit_code}"
        )
        logger.error("Task #%s aborted: %s", task.number, details)
        return _Failure(
            reason="hook_aborted",
            context=FailureContext(
                error_kind=ErrorKind.EXECUTION_ERROR,
                details=details,
                output=result.output,
                exit_code=HOOK_ABORT_EXIT_CODE,
            ),
        )

    def _notify(self, kind: str, *, title: str, message: str, fields: dict[str, object]) -> None:
        self.dispatcher.notify_event(kind, title=title, message=message, fields=fields)

    def _safe_move(self, task: Task, column: str) -> None:
        try:
            self.task_source.move_task(task, column)
        except TaskSourceError as error:
            logger.warning("Could not move #%s to %s: %s", task.number, column, error)

    def _safe_assign(self, task: Task) -> None:
        try:
            self.task_source.assign_task(task)
        except TaskSourceError as error:
            logger.warning("Could not assign #%s: %s", task.number, error)


def _log_lines(lines: list[str]) -> None:
    for line in lines:
        logger.error(line)


def _decode(value: str | bytes | None) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value
