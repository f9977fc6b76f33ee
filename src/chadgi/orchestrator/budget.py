"""Per-task and per-session cost limits."""

from __future__ import annotations

from dataclasses import dataclass, field

from chadgi.config import BudgetSettings

SESSION_BUDGET_EXIT_CODE = 125
TASK_BUDGET_EXIT_CODE = 126


@dataclass(slots=True)
class BudgetStatus:
    """Result of one budget check.

    ``scope`` is ``"session"`` or ``"task"`` when a limit is reached, and
    ``action`` carries the configured reaction for that scope. ``overruns``
    holds ``(action, message)`` pairs for limits crossed for the first time.
    """

    scope: str | None = None
    action: str | None = None
    message: str = ""
    warnings: list[str] = field(default_factory=list)
    overruns: list[tuple[str, str]] = field(default_factory=list)

    @property
    def exceeded(self) -> bool:
        return self.scope is not None

    @property
    def stops_session(self) -> bool:
        return self.scope == "session" and self.action == "stop"

    @property
    def stops_task(self) -> bool:
        return self.scope == "task" and self.action in {"skip", "fail"}


class BudgetGuard:
    """Evaluates spend against limits.

    The session limit is checked first. A session limit in ``warn`` mode does not
    hide the per-task limit, and every limit is reported once per scope.
    """

    def __init__(self, settings: BudgetSettings) -> None:
        self.settings = settings
        self._task_warned = False
        self._session_warned = False
        self._task_reported = False
        self._session_reported = False

    def start_task(self) -> None:
        self._task_warned = False
        self._task_reported = False

    def session_exhausted(self, session_cost: float) -> bool:
        limit = self.settings.per_session_limit
        return limit is not None and session_cost >= limit

    def check(self, *, task_cost: float, session_cost: float) -> BudgetStatus:
        status = BudgetStatus()
        session_limit = self.settings.per_session_limit
        task_limit = self.settings.per_task_limit
        threshold = self.settings.warning_threshold / 100

        if session_limit is not None and session_cost >= session_limit:
            action = self.settings.on_session_exceeded
            message = f"Session budget exceeded: ${session_cost:.2f} of ${session_limit:.2f}"
            if not self._session_reported:
                self._session_reported = True
                status.overruns.append((action, message))
            if action == "stop":
                status.scope, status.action, status.message = "session", action, message
                return status
        elif (
            session_limit is not None
            and not self._session_warned
            and session_cost >= session_limit * threshold
        ):
            self._session_warned = True
            status.warnings.append(
                f"Session spend ${session_cost:.2f} reached {self.settings.warning_threshold}% "
                f"of ${session_limit:.2f} budget",
            )

        if task_limit is not None and task_cost >= task_limit:
            action = self.settings.on_task_exceeded
            message = f"Task budget exceeded: ${task_cost:.2f} of ${task_limit:.2f}"
            if not self._task_reported:
                self._task_reported = True
                status.overruns.append((action, message))
            status.scope, status.action, status.message = "task", action, message
        elif (
            task_limit is not None
            and not self._task_warned
            and task_cost >= task_limit * threshold
        ):
            self._task_warned = True
            status.warnings.append(
                f"Task spend ${task_cost:.2f} reached {self.settings.warning_threshold}% "
                f"of ${task_limit:.2f} budget",
            )
        return status
