"""Metrics store (per-task records) and session statistics store."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

from chadgi.orchestrator.models import TaskOutcome, TaskRun
from chadgi.storage import atomic_write_json, isoformat, parse_timestamp, read_json, utc_now

logger = logging.getLogger(__name__)

METRICS_SCHEMA_VERSION = "1.0.0"
DEFAULT_RETENTION_DAYS = 30


class MetricsStore:
    """Append-only task records with a retention window.

    Records whose ``started_at`` falls more than ``retention_days`` before the
    newest known timestamp are dropped on every append.
    """

    def __init__(self, path: Path, *, retention_days: int = DEFAULT_RETENTION_DAYS) -> None:
        self.path = path
        self.retention_days = retention_days

    def load(self) -> dict[str, Any]:
        payload = read_json(self.path)
        if not isinstance(payload, dict) or not isinstance(payload.get("tasks"), list):
            return self._empty()
        return payload

    def _empty(self) -> dict[str, Any]:
        return {
            "version": METRICS_SCHEMA_VERSION,
            "last_updated": None,
            "retention_days": self.retention_days,
            "tasks": [],
        }

    def tasks(self) -> list[TaskRun]:
        runs: list[TaskRun] = []
        for record in self.load()["tasks"]:
            try:
                runs.append(TaskRun.from_record(record))
            except (KeyError, TypeError, ValueError) as error:
                logger.warning("Skipping malformed metrics record: %s", error)
        return runs

    def append(self, run: TaskRun, *, now: datetime | None = None) -> None:
        payload = self.load()
        records = [*payload["tasks"], run.to_record()]
        reference = max([now or utc_now(), *_started_times(records)])
        kept = self._prune(records, reference=reference)
        pruned = len(records) - len(kept)
        if pruned:
            logger.debug(
                "Pruned %d metrics record(s) older than %d days",
                pruned,
                self.retention_days,
            )
        self._write(payload, kept, now=now)

    def _prune(self, records: list[dict[str, Any]], *, reference: datetime) -> list[dict[str, Any]]:
        cutoff = reference - timedelta(days=self.retention_days)
        kept: list[dict[str, Any]] = []
        for record in records:
            started_at = parse_timestamp(record.get("started_at"))
            if started_at is not None and started_at < cutoff:
                continue
            kept.append(record)
        return kept

    def _write(
        self,
        payload: dict[str, Any],
        records: list[dict[str, Any]],
        *,
        now: datetime | None = None,
    ) -> None:
        payload = {
            **payload,
            "version": METRICS_SCHEMA_VERSION,
            "last_updated": isoformat(now or utc_now()),
            "retention_days": self.retention_days,
            "tasks": records,
        }
        atomic_write_json(self.path, payload)

    def failed_tasks(self) -> list[TaskRun]:
        """Most recent failed record per issue, newest first."""

        latest: dict[int, TaskRun] = {}
        for run in self.tasks():
            if run.outcome != TaskOutcome.FAILED:
                continue
            current = latest.get(run.issue_number)
            if current is None or run.started_at > current.started_at:
                latest[run.issue_number] = run
        return sorted(latest.values(), key=lambda run: run.started_at, reverse=True)

    def increment_retry_count(self, issue_number: int) -> int:
        """Bump ``retry_count`` on the newest failed record of ``issue_number``.

        Returns the new count, or 0 when the issue has no failed record.
        """

        payload = self.load()
        newest: dict[str, Any] | None = None
        newest_started: datetime | None = None
        for record in payload["tasks"]:
            if record.get("issue_number") != issue_number or record.get("status") != "failed":
                continue
            started_at = parse_timestamp(record.get("started_at"))
            if newest is None or (
                started_at is not None
                and (newest_started is None or started_at >= newest_started)
            ):
                newest, newest_started = record, started_at
        if newest is None:
            return 0
        newest["retry_count"] = int(newest.get("retry_count") or 0) + 1
        self._write(payload, payload["tasks"])
        return newest["retry_count"]

    def retry_count_for(self, issue_number: int) -> int:
        """Retry count carried by the newest record of ``issue_number``."""

        runs = [run for run in self.tasks() if run.issue_number == issue_number]
        if not runs:
            return 0
        return max(runs, key=lambda run: run.started_at).retry_count


class SessionStatsStore:
    """List of finished sessions."""

    def __init__(self, path: Path) -> None:
        self.path = path

    def load(self) -> list[dict[str, Any]]:
        payload = read_json(self.path, default=[])
        return payload if isinstance(payload, list) else []

    def append(self, record: dict[str, Any]) -> None:
        atomic_write_json(self.path, [*self.load(), record])

    def last(self) -> dict[str, Any] | None:
        sessions = self.load()
        return sessions[-1] if sessions else None


def _started_times(records: list[dict[str, Any]]) -> list[datetime]:
    times: list[datetime] = []
    for record in records:
        started_at = parse_timestamp(record.get("started_at"))
        if started_at is not None:
            times.append(started_at)
    return times
