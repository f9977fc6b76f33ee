"""Flat-file persistence helpers shared by the session loop and control commands.

The session process and the short-lived control commands talk through JSON
documents on disk. Writers replace files atomically (temp file in the same
directory, then ``os.replace``); readers tolerate a missing or half-written
file and retry briefly before giving up.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import time
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

READ_RETRIES = 3
READ_RETRY_DELAY_SECONDS = 0.05


def utc_now() -> datetime:
    """Current UTC timestamp."""

    return datetime.now(tz=UTC)


def isoformat(value: datetime) -> str:
    """Serialize timestamp as ISO-8601 with a trailing ``Z``."""

    return value.astimezone(UTC).isoformat().replace("+00:00", "Z")


def parse_timestamp(value: str | None) -> datetime | None:
    """Parse ISO-8601 timestamp written by :func:`isoformat` (or a naive one, read as UTC)."""

    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed


def atomic_write_json(path: Path, payload: Any) -> None:
    """Write JSON so readers never observe a truncated document."""

    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            json.dump(payload, handle, indent=2, ensure_ascii=False)
            handle.write("\n")
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


def read_json(path: Path, *, default: Any = None) -> Any:
    """Read JSON document, returning ``default`` when absent or unreadable."""

    for attempt in range(READ_RETRIES):
        try:
            return json.loads(path.read_text("utf-8"))
        except FileNotFoundError:
            return default
        except (json.JSONDecodeError, UnicodeDecodeError) as error:
            if attempt == READ_RETRIES - 1:
                logger.warning("Ignoring unreadable JSON file %s: %s", path, error)
                return default
            time.sleep(READ_RETRY_DELAY_SECONDS)
    return default
