"""Rate-limited webhook notifications (Slack, Discord, generic JSON)."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import httpx

from chadgi import __version__
from chadgi.config import NotificationSettings, WebhookTarget
from chadgi.secrets import mask_object, mask_secrets
from chadgi.storage import isoformat, utc_now

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 10.0
SOURCE_NAME = "ChadGI"
FOOTER_TAGLINE = "autonomous task worker"

# event -> (slack hex color, discord decimal color)
EVENT_COLORS: dict[str, tuple[str, int]] = {
    "task_started": ("#3498db", 3447003),
    "task_completed": ("#2ecc71", 3066993),
    "task_failed": ("#e74c3c", 15158332),
    "gigachad_merge": ("#9b59b6", 10181046),
    "session_ended": ("#95a5a6", 10070709),
    "budget_warning": ("#f39c12", 15844367),
    "budget_exceeded": ("#e74c3c", 15158332),
}
_DEFAULT_COLOR = ("#95a5a6", 10070709)


@dataclass(slots=True)
class NotificationEvent:
    """One lifecycle event to fan out."""

    kind: str
    title: str
    message: str
    fields: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utc_now)

    def masked(self) -> NotificationEvent:
        return NotificationEvent(
            kind=self.kind,
            title=mask_secrets(self.title),
            message=mask_secrets(self.message),
            fields=mask_object(self.fields),
            timestamp=self.timestamp,
        )


class RateLimiter:
    """Minimum spacing plus a burst cap per rolling window. Process-local."""

    def __init__(
        self,
        *,
        min_interval: float,
        burst_limit: int,
        burst_window: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.min_interval = min_interval
        self.burst_limit = burst_limit
        self.burst_window = burst_window
        self._clock = clock
        self.last_sent: float | None = None
        self.burst_count = 0
        self.burst_window_start: float | None = None

    def allow(self, now: float | None = None) -> bool:
        current = self._clock() if now is None else now
        if self.last_sent is not None and current - self.last_sent < self.min_interval:
            return False
        if (
            self.burst_window_start is not None
            and current - self.burst_window_start > self.burst_window
        ):
            self.burst_count = 0
            self.burst_window_start = None
        return self.burst_count < self.burst_limit

    def record_sent(self, now: float | None = None) -> None:
        current = self._clock() if now is None else now
        if self.burst_window_start is None:
            self.burst_window_start = current
        self.burst_count += 1
        self.last_sent = current


def slack_payload(event: NotificationEvent, *, repo: str) -> dict[str, Any]:
    color, _ = EVENT_COLORS.get(event.kind, _DEFAULT_COLOR)
    return {
        "attachments": [
            {
                "color": color,
                "title": event.title,
                "text": event.message,
                "fields": [
                    {"title": str(name), "value": str(value), "short": True}
                    for name, value in {"Repository": repo, **event.fields}.items()
                ],
                "footer": f"{SOURCE_NAME} v{__version__} | {FOOTER_TAGLINE}",
                "ts": int(event.timestamp.timestamp()),
            },
        ],
    }


def discord_payload(event: NotificationEvent, *, repo: str) -> dict[str, Any]:
    _, color = EVENT_COLORS.get(event.kind, _DEFAULT_COLOR)
    return {
        "embeds": [
            {
                "title": event.title,
                "description": event.message,
                "color": color,
                "fields": [
                    {"name": str(name), "value": str(value), "inline": True}
                    for name, value in {"Repository": repo, **event.fields}.items()
                ],
                "footer": {"text": f"{SOURCE_NAME} v{__version__} | {FOOTER_TAGLINE}"},
                "timestamp": isoformat(event.timestamp),
            },
        ],
    }


def generic_payload(event: NotificationEvent, *, repo: str) -> dict[str, Any]:
    return {
        "event": event.kind,
        "timestamp": isoformat(event.timestamp),
        "repo": repo,
        "source": SOURCE_NAME.lower(),
        "data": {"title": event.title, "message": event.message, **event.fields},
    }


_PAYLOAD_BUILDERS: dict[str, Callable[..., dict[str, Any]]] = {
    "slack": slack_payload,
    "discord": discord_payload,
    "generic": generic_payload,
}


class NotificationDispatcher:
    """Gate events by config and rate limit, then POST to every interested target."""

    def __init__(
        self,
        settings: NotificationSettings,
        *,
        repo: str,
        client: httpx.Client | None = None,
        rate_limiter: RateLimiter | None = None,
    ) -> None:
        self.settings = settings
        self.repo = repo
        self._client = client
        self._rate_limiter = rate_limiter or RateLimiter(
            min_interval=settings.rate_limit.min_interval,
            burst_limit=settings.rate_limit.burst_limit,
            burst_window=settings.rate_limit.burst_window,
        )
        self.sent: list[tuple[str, str]] = []

    def _targets(self) -> dict[str, WebhookTarget]:
        return {
            "slack": self.settings.slack,
            "discord": self.settings.discord,
            "generic": self.settings.generic,
        }

    def _http(self) -> httpx.Client:
        if self._client is None:
            self._client = httpx.Client(timeout=httpx.Timeout(DEFAULT_TIMEOUT_SECONDS))
        return self._client

    def notify_event(
        self,
        kind: str,
        *,
        title: str,
        message: str,
        fields: dict[str, Any] | None = None,
    ) -> bool:
        """Send ``kind`` to all enabled targets; ``True`` if at least one POST succeeded."""

        if not self.settings.enabled:
            return False
        targets = {name: target for name, target in self._targets().items() if target.wants(kind)}
        if not targets:
            return False
        if not self._rate_limiter.allow():
            logger.info("Notification %s suppressed by rate limit", kind)
            return False

        event = NotificationEvent(
            kind=kind,
            title=title,
            message=message,
            fields=fields or {},
        ).masked()
        delivered = False
        for name, target in targets.items():
            payload = _PAYLOAD_BUILDERS[name](event, repo=self.repo)
            if self._post(name, target.webhook_url, payload):
                delivered = True
                self.sent.append((name, kind))
        self._rate_limiter.record_sent()
        return delivered

    def _post(self, name: str, url: str, payload: dict[str, Any]) -> bool:
        try:
            response = self._http().post(url, json=payload)
        except httpx.TimeoutException:
            logger.warning("Timeout sending %s notification", name)
            return False
        except httpx.HTTPError as exc:
            logger.warning("HTTP error sending %s notification: %s", name, mask_secrets(str(exc)))
            return False
        if not response.is_success:
            logger.warning("%s webhook returned HTTP %s", name, response.status_code)
            return False
        return True

    def close(self) -> None:
        if self._client is not None:
            self._client.close()

    def __enter__(self) -> NotificationDispatcher:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()
