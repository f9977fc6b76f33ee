"""Domain models for task execution, sessions and persisted records."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from chadgi.storage import isoformat, parse_timestamp


class ErrorKind(str, Enum):
    """Failure taxonomy used by diagnostics and reports."""

    TIMEOUT_FAILURE = "timeout_failure"
    GIT_ERROR = "git_error"
    API_ERROR = "api_error"
    BUILD_FAILURE = "build_failure"
    EXECUTION_ERROR = "execution_error"


class TaskOutcome(str, Enum):
    """Terminal outcome of one task attempt."""

    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class RunPhase(str, Enum):
    """States of the per-task state machine."""

    NOT_STARTED = "not_started"
    BRANCH_SETUP = "branch_setup"
    IMPLEMENTATION = "implementation"
    VERIFICATION = "verification"
    COMMIT = "commit"
    ERROR_RECOVERY = "error_recovery"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class SessionStatus(str, Enum):
    """Status values exposed through the progress snapshot."""

    RUNNING = "running"
    PAUSED = "paused"
    IDLE = "idle"
    ERROR = "error"


class AgentSignal(str, Enum):
    """Structured completion signal parsed from agent output."""

    COMPLETE = "complete"
    READY_FOR_PR = "ready_for_pr"
    NEEDS_MORE_WORK = "needs_more_work"
    HARD_FAILURE = "hard_failure"


@dataclass(slots=True)
class Task:
    """Issue picked from the project board."""

    number: int
    title: str
    body: str = ""
    labels: tuple[str, ...] = ()
    column: str | None = None
    category: str | None = None
    priority: str = "normal"
    url: str = ""
    item_id: str | None = None


@dataclass(slots=True)
class TaskRun:
    """Record of one task attempt, flushed to the metrics store at its end."""

    issue_number: int
    started_at: datetime
    branch: str = ""
    completed_at: datetime | None = None
    iterations: int = 0
    outcome: TaskOutcome | None = None
    failure_reason: str | None = None
    failure_phase: str | None = None
    error_kind: ErrorKind | None = None
    cost_usd: float = 0.0
    input_tokens: int = 0
    output_tokens: int = 0
    retry_count: int = 0
    category: str | None = None
    implementation_started_at: datetime | None = None
    implementation_ended_at: datetime | None = None
    verification_started_at: datetime | None = None
    verification_ended_at: datetime | None = None
    implementation_secs: float = 0.0
    verification_secs: float = 0.0
    git_operations_secs: float = 0.0
    error_recovery_secs: float | None = None
    files_modified: int = 0
    lines_changed: int = 0
    pr_url: str | None = None
    diagnostics_path: str | None = None
    phase: RunPhase = RunPhase.NOT_STARTED

    @property
    def duration_secs(self) -> float:
        if self.completed_at is None:
            return 0.0
        return max(0.0, (self.completed_at - self.started_at).total_seconds())

    def to_record(self) -> dict[str, Any]:
        """Serialize to the metrics-file task entry shape."""

        return {
            "issue_number": self.issue_number,
            "started_at": isoformat(self.started_at),
            "completed_at": isoformat(self.completed_at) if self.completed_at else None,
            "duration_secs": round(self.duration_secs, 3),
            "status": self.outcome.value if self.outcome else None,
            "iterations": self.iterations,
            "cost_usd": round(self.cost_usd, 6),
            "tokens": {"input": self.input_tokens, "output": self.output_tokens},
            "phases": {
                "implementation": round(self.implementation_secs, 3),
                "verification": round(self.verification_secs, 3),
                "git_operations": round(self.git_operations_secs, 3),
            },
            "timestamps": {
                "implementation_started_at": _iso_or_none(self.implementation_started_at),
                "implementation_ended_at": _iso_or_none(self.implementation_ended_at),
                "verification_started_at": _iso_or_none(self.verification_started_at),
                "verification_ended_at": _iso_or_none(self.verification_ended_at),
            },
            "failure_reason": self.failure_reason,
            "failure_phase": self.failure_phase,
            "error_kind": self.error_kind.value if self.error_kind else None,
            "error_recovery_time_secs": self.error_recovery_secs,
            "files_modified": self.files_modified,
            "lines_changed": self.lines_changed,
            "retry_count": self.retry_count,
            "category": self.category,
            "branch": self.branch,
            "pr_url": self.pr_url,
            "diagnostics_path": self.diagnostics_path,
        }

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> TaskRun:
        started_at = parse_timestamp(record.get("started_at"))
        if started_at is None:
            raise ValueError(f"Task record without started_at: {record!r}")
        phases = record.get("phases") or {}
        tokens = record.get("tokens") or {}
        timestamps = record.get("timestamps") or {}
        status = record.get("status")
        error_kind = record.get("error_kind")
        return cls(
            issue_number=int(record["issue_number"]),
            started_at=started_at,
            completed_at=parse_timestamp(record.get("completed_at")),
            branch=record.get("branch") or "",
            iterations=int(record.get("iterations") or 0),
            outcome=TaskOutcome(status) if status else None,
            failure_reason=record.get("failure_reason"),
            failure_phase=record.get("failure_phase"),
            error_kind=ErrorKind(error_kind) if error_kind else None,
            cost_usd=float(record.get("cost_usd") or 0.0),
            input_tokens=int(tokens.get("input") or 0),
            output_tokens=int(tokens.get("output") or 0),
            retry_count=int(record.get("retry_count") or 0),
            category=record.get("category"),
            implementation_started_at=parse_timestamp(timestamps.get("implementation_started_at")),
            implementation_ended_at=parse_timestamp(timestamps.get("implementation_ended_at")),
            verification_started_at=parse_timestamp(timestamps.get("verification_started_at")),
            verification_ended_at=parse_timestamp(timestamps.get("verification_ended_at")),
            implementation_secs=float(phases.get("implementation") or 0.0),
            verification_secs=float(phases.get("verification") or 0.0),
            git_operations_secs=float(phases.get("git_operations") or 0.0),
            error_recovery_secs=record.get("error_recovery_time_secs"),
            files_modified=int(record.get("files_modified") or 0),
            lines_changed=int(record.get("lines_changed") or 0),
            pr_url=record.get("pr_url"),
            diagnostics_path=record.get("diagnostics_path"),
        )


@dataclass(slots=True)
class SessionState:
    """Mutable per-session counters threaded through the session loop."""

    session_id: str
    started_at: datetime
    tasks_attempted: int = 0
    tasks_completed: int = 0
    tasks_failed: int = 0
    tasks_skipped: int = 0
    consecutive_failures: int = 0
    consecutive_empty: int = 0
    total_cost_usd: float = 0.0
    failed_tasks: list[dict[str, Any]] = field(default_factory=list)
    completed_tasks: list[int] = field(default_factory=list)
    current_task: Task | None = None
    stop_reason: str | None = None
    exit_code: int = 0
    budget_warning_sent: bool = False

    def record(self, run: TaskRun) -> None:
        self.tasks_attempted += 1
        self.total_cost_usd += run.cost_usd
        if run.outcome == TaskOutcome.COMPLETED:
            self.tasks_completed += 1
            self.consecutive_failures = 0
            self.completed_tasks.append(run.issue_number)
        elif run.outcome == TaskOutcome.SKIPPED:
            self.tasks_skipped += 1
        else:
            self.tasks_failed += 1
            self.consecutive_failures += 1
            self.failed_tasks.append({"issue": run.issue_number, "reason": run.failure_reason})

    def to_record(self, *, ended_at: datetime) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "started_at": isoformat(self.started_at),
            "ended_at": isoformat(ended_at),
            "duration_secs": round(max(0.0, (ended_at - self.started_at).total_seconds()), 3),
            "tasks_attempted": self.tasks_attempted,
            "tasks_completed": self.tasks_completed,
            "tasks_failed": self.tasks_failed,
            "tasks_skipped": self.tasks_skipped,
            "completed_tasks": list(self.completed_tasks),
            "failed_tasks": list(self.failed_tasks),
            "total_cost_usd": round(self.total_cost_usd, 6),
            "stop_reason": self.stop_reason,
        }


def _iso_or_none(value: datetime | None) -> str | None:
    return isoformat(value) if value is not None else None
