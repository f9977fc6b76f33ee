"""Progress snapshot and pause lock shared between the session and control commands."""

from __future__ import annotations

import logging
import re
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

from chadgi.orchestrator.models import SessionStatus
from chadgi.storage import atomic_write_json, isoformat, parse_timestamp, read_json, utc_now

logger = logging.getLogger(__name__)

PAUSE_POLL_SECONDS = 5.0

_DURATION_PART = re.compile(r"(\d+)\s*([hms])", re.IGNORECASE)
_DURATION_FULL = re.compile(r"^\s*(?:\d+\s*[hms]\s*)+$", re.IGNORECASE)
_UNIT_SECONDS = {"h": 3600, "m": 60, "s": 1}


def parse_duration(value: str) -> int:
    """Parse ``30m``, ``2h``, ``1h30m``, ``45s`` or bare minutes into seconds."""

    text = value.strip().lower()
    if text.isdigit():
        seconds = int(text) * 60
    elif _DURATION_FULL.match(text):
        seconds = sum(
            int(amount) * _UNIT_SECONDS[unit] for amount, unit in _DURATION_PART.findall(text)
        )
    else:
        raise ValueError(f"Invalid duration {value!r}; use forms like 30m, 2h or 1h30m.")
    if seconds <= 0:
        raise ValueError(f"Duration must be positive: {value!r}")
    return seconds


@dataclass(slots=True)
class ProgressSnapshot:
    """Most recent session loop tick, as read by ``status``."""

    status: SessionStatus
    session_started_at: datetime | None = None
    current_task: dict[str, Any] | None = None
    phase: str | None = None
    iteration: int = 0
    max_iterations: int = 0
    tasks_completed: int = 0
    elapsed_seconds: float = 0.0
    last_updated: datetime = field(default_factory=utc_now)
    pid: int | None = None

    def to_json(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "sessionStartedAt": (
                isoformat(self.session_started_at) if self.session_started_at else None
            ),
            "currentTask": self.current_task,
            "phase": self.phase,
            "iteration": self.iteration,
            "maxIterations": self.max_iterations,
            "tasksCompleted": self.tasks_completed,
            "elapsedSeconds": round(self.elapsed_seconds, 1),
            "lastUpdated": isoformat(self.last_updated),
            "pid": self.pid,
        }

    @classmethod
    def from_json(cls, payload: dict[str, Any]) -> ProgressSnapshot:
        try:
            status = SessionStatus(payload.get("status", SessionStatus.IDLE.value))
        except ValueError:
            status = SessionStatus.ERROR
        return cls(
            status=status,
            session_started_at=parse_timestamp(payload.get("sessionStartedAt")),
            current_task=payload.get("currentTask"),
            phase=payload.get("phase"),
            iteration=int(payload.get("iteration") or 0),
            max_iterations=int(payload.get("maxIterations") or 0),
            tasks_completed=int(payload.get("tasksCompleted") or 0),
            elapsed_seconds=float(payload.get("elapsedSeconds") or 0.0),
            last_updated=parse_timestamp(payload.get("lastUpdated")) or utc_now(),
            pid=payload.get("pid"),
        )


class ProgressStore:
    """Single overwritten-in-place progress document."""

    def __init__(self, path: Path) -> None:
        self.path = path

    def read(self) -> ProgressSnapshot | None:
        payload = read_json(self.path)
        if not isinstance(payload, dict):
            return None
        return ProgressSnapshot.from_json(payload)

    def write(self, snapshot: ProgressSnapshot) -> None:
        snapshot.last_updated = utc_now()
        atomic_write_json(self.path, snapshot.to_json())

    def set_status(self, status: SessionStatus) -> ProgressSnapshot:
        snapshot = self.read() or ProgressSnapshot(status=status)
        snapshot.status = status
        self.write(snapshot)
        return snapshot


@dataclass(slots=True)
class PauseInfo:
    paused_at: datetime
    reason: str | None = None
    expires_at: datetime | None = None

    def expired(self, now: datetime) -> bool:
        return self.expires_at is not None and now >= self.expires_at

    def to_json(self) -> dict[str, Any]:
        return {
            "pausedAt": isoformat(self.paused_at),
            "reason": self.reason,
            "expiresAt": isoformat(self.expires_at) if self.expires_at else None,
        }


class PauseLock:
    """Presence of the lock file means "paused"."""

    def __init__(self, path: Path) -> None:
        self.path = path

    def exists(self) -> bool:
        return self.path.exists()

    def read(self) -> PauseInfo | None:
        if not self.path.exists():
            return None
        payload = read_json(self.path, default={})
        if not isinstance(payload, dict):
            payload = {}
        return PauseInfo(
            paused_at=parse_timestamp(payload.get("pausedAt")) or utc_now(),
            reason=payload.get("reason"),
            expires_at=parse_timestamp(payload.get("expiresAt")),
        )

    def create(
        self,
        *,
        reason: str | None = None,
        duration_seconds: int | None = None,
        now: datetime | None = None,
    ) -> tuple[PauseInfo, bool]:
        """Create the lock; return ``(info, created)``.

        ``created`` is False when a pause was already in effect. An expired
        lock is replaced.
        """

        paused_at = now or utc_now()
        existing = self.read()
        if existing is not None:
            if not existing.expired(paused_at):
                return existing, False
            logger.info("Replacing expired pause lock from %s", isoformat(existing.paused_at))
        info = PauseInfo(
            paused_at=paused_at,
            reason=reason,
            expires_at=(
                paused_at + timedelta(seconds=duration_seconds) if duration_seconds else None
            ),
        )
        atomic_write_json(self.path, info.to_json())
        return info, True

    def remove(self) -> bool:
        try:
            self.path.unlink()
        except FileNotFoundError:
            return False
        return True


class PauseCoordinator:
    """Blocks the session loop while the pause lock is present."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        lock: PauseLock,
        progress: ProgressStore,
        poll_interval: float = PAUSE_POLL_SECONDS,
        sleep: Callable[[float], None] = time.sleep,
        now: Callable[[], datetime] = utc_now,
        should_stop: Callable[[], bool] | None = None,
    ) -> None:
        self.lock = lock
        self.progress = progress
        self.poll_interval = poll_interval
        self._sleep = sleep
        self._now = now
        self._should_stop = should_stop

    def check_pause_lock(self) -> bool:
        """Wait until resumed or expired. Returns ``True`` if the loop was paused."""

        info = self.lock.read()
        if info is None:
            return False

        previous = self.progress.read()
        previous_status = previous.status if previous is not None else SessionStatus.RUNNING
        self.progress.set_status(SessionStatus.PAUSED)
        until = f" until {isoformat(info.expires_at)}" if info.expires_at else ""
        reason = f" ({info.reason})" if info.reason else ""
        logger.info("Session paused%s%s; waiting for resume.", reason, until)

        while info is not None:
            if info.expired(self._now()):
                self.lock.remove()
                logger.info("Pause expired; resuming automatically.")
                break
            if self._should_stop is not None and self._should_stop():
                break
            self._sleep(self.poll_interval)
            info = self.lock.read()

        restored = (
            previous_status if previous_status != SessionStatus.PAUSED else SessionStatus.RUNNING
        )
        self.progress.set_status(restored)
        logger.info("Session resumed.")
        return True
