"""Task-level timeout tracking and the watchdog that enforces it on the agent process."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from typing import Protocol

logger = logging.getLogger(__name__)

WARNING_THRESHOLDS: tuple[tuple[float, str], ...] = (
    (0.75, "Task #{issue} has used 75% of its {minutes}m time budget ({elapsed}s elapsed)."),
    (0.90, "Task #{issue} has used 90% of its {minutes}m time budget; timeout is imminent."),
)


class StoppableProcess(Protocol):
    def is_alive(self) -> bool: ...

    def request_graceful_stop(self) -> None: ...

    def force_kill(self) -> None: ...

    def wait_for_exit(self, timeout: float) -> bool: ...


class TaskClock:
    """Wall-clock budget for one task, shared by all its iterations.

    ``timeout_minutes == 0`` disables the budget; warnings are emitted at most
    once per threshold for the whole task.
    """

    def __init__(
        self,
        *,
        issue_number: int,
        timeout_minutes: int,
        now: Callable[[], float] = time.monotonic,
    ) -> None:
        self.issue_number = issue_number
        self.timeout_minutes = timeout_minutes
        self.timeout_seconds = timeout_minutes * 60
        self._now = now
        self._started = now()
        self._warned: set[float] = set()

    @property
    def enabled(self) -> bool:
        return self.timeout_seconds > 0

    def elapsed(self) -> float:
        return max(0.0, self._now() - self._started)

    def remaining(self) -> float | None:
        if not self.enabled:
            return None
        return max(0.0, self.timeout_seconds - self.elapsed())

    def expired(self) -> bool:
        return self.enabled and self.elapsed() >= self.timeout_seconds

    def pending_warnings(self) -> list[str]:
        """Return warning messages for thresholds crossed since the last call."""

        if not self.enabled:
            return []
        fraction = self.elapsed() / self.timeout_seconds
        messages: list[str] = []
        for threshold, template in WARNING_THRESHOLDS:
            if fraction >= threshold and threshold not in self._warned:
                self._warned.add(threshold)
                messages.append(
                    template.format(
                        issue=self.issue_number,
                        minutes=self.timeout_minutes,
                        elapsed=int(self.elapsed()),
                    ),
                )
        return messages


class TimeoutWatchdog:
    """Background timer that stops the agent when the task clock runs out.

    On expiry it requests a graceful stop (SIGTERM), waits ``grace_seconds``
    and force-kills (SIGKILL) a process that is still alive. It also forwards
    an external shutdown request as a graceful stop.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        process: StoppableProcess,
        clock: TaskClock | None,
        grace_seconds: float,
        poll_interval: float = 0.5,
        shutdown_requested: Callable[[], bool] | None = None,
        on_warning: Callable[[str], None] | None = None,
    ) -> None:
        self._process = process
        self._clock = clock
        self._grace_seconds = max(0.0, grace_seconds)
        self._poll_interval = poll_interval
        self._shutdown_requested = shutdown_requested
        self._on_warning = on_warning or logger.warning
        self._cancelled = threading.Event()
        self._thread = threading.Thread(target=self._run, name="chadgi-watchdog", daemon=True)
        self.timed_out = False
        self.force_killed = False
        self.shutdown_forwarded = False

    def start(self) -> None:
        self._thread.start()

    def cancel(self) -> None:
        self._cancelled.set()
        if self._thread.is_alive() and threading.current_thread() is not self._thread:
            self._thread.join()

    def check(self) -> bool:
        """Run one watchdog tick; return ``True`` when the process was stopped."""

        if self._clock is not None:
            for message in self._clock.pending_warnings():
                self._on_warning(message)
            if self._clock.expired():
                self.timed_out = True
                logger.error(
                    "Task #%s exceeded its %sm timeout; stopping agent.",
                    self._clock.issue_number,
                    self._clock.timeout_minutes,
                )
                self._stop_process()
                return True
        if self._shutdown_requested is not None and self._shutdown_requested():
            self.shutdown_forwarded = True
            logger.warning("Shutdown requested; stopping agent gracefully.")
            self._stop_process()
            return True
        return False

    def _run(self) -> None:
        while not self._cancelled.is_set():
            if not self._process.is_alive():
                return
            if self.check():
                return
            self._cancelled.wait(self._poll_interval)

    def _stop_process(self) -> None:
        self._process.request_graceful_stop()
        if self._process.wait_for_exit(self._grace_seconds):
            return
        logger.warning("Agent still running after %ss grace period; killing.", self._grace_seconds)
        self.force_killed = True
        self._process.force_kill()
        self._process.wait_for_exit(2)
