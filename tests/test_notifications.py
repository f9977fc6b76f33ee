from __future__ import annotations

import json

import allure
import httpx

from chadgi.config import NotificationSettings, WebhookTarget
from chadgi.orchestrator.notifications import NotificationDispatcher, RateLimiter

pytestmark = [
    allure.epic("Notifications"),
    allure.feature("Webhook Dispatch"),
]

SLACK_URL = "https://hooks.slack.com/services/T1/B2/secret"
GENERIC_URL = "https://example.com/hooks/chadgi"


def _recording_client(requests: list[httpx.Request], status_code: int = 200) -> httpx.Client:
    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(status_code, json={"ok": True})

    return httpx.Client(transport=httpx.MockTransport(handler))


def _settings(**targets: WebhookTarget) -> NotificationSettings:
    settings = NotificationSettings(enabled=True)
    for name, target in targets.items():
        setattr(settings, name, target)
    return settings


def _open_limiter() -> RateLimiter:
    return RateLimiter(min_interval=0, burst_limit=100, burst_window=60)


def test_disabled_notifications_send_nothing() -> None:
    requests: list[httpx.Request] = []
    settings = _settings(slack=WebhookTarget(enabled=True, webhook_url=SLACK_URL))
    settings.enabled = False
    dispatcher = NotificationDispatcher(
        settings,
        repo="acme/widgets",
        client=_recording_client(requests),
    )

    assert dispatcher.notify_event("task_started", title="t", message="m") is False
    assert requests == []


def test_event_is_fanned_out_to_every_enabled_target() -> None:
    requests: list[httpx.Request] = []
    dispatcher = NotificationDispatcher(
        _settings(
            slack=WebhookTarget(enabled=True, webhook_url=SLACK_URL),
            generic=WebhookTarget(enabled=True, webhook_url=GENERIC_URL),
        ),
        repo="acme/widgets",
        client=_recording_client(requests),
        rate_limiter=_open_limiter(),
    )

    delivered = dispatcher.notify_event(
        "task_completed",
        title="Task completed: #7",
        message="Add login page",
        fields={"Issue": "#7", "Cost": "$0.40"},
    )

    assert delivered is True
    assert dispatcher.sent == [("slack", "task_completed"), ("generic", "task_completed")]
    slack_body = json.loads(requests[0].content)
    attachment = slack_body["attachments"][0]
    assert attachment["title"] == "Task completed: #7"
    assert attachment["color"] == "#2ecc71"
    assert {"title": "Repository", "value": "acme/widgets", "short": True} in attachment["fields"]
    generic_body = json.loads(requests[1].content)
    assert generic_body["event"] == "task_completed"
    assert generic_body["repo"] == "acme/widgets"
    assert generic_body["data"]["Issue"] == "#7"


def test_discord_payload_uses_embeds() -> None:
    requests: list[httpx.Request] = []
    dispatcher = NotificationDispatcher(
        _settings(
            discord=WebhookTarget(
                enabled=True,
                webhook_url="https://discord.com/api/webhooks/1/abc",
            ),
        ),
        repo="acme/widgets",
        client=_recording_client(requests),
        rate_limiter=_open_limiter(),
    )

    dispatcher.notify_event("task_failed", title="Task failed: #3", message="timeout")

    embed = json.loads(requests[0].content)["embeds"][0]
    assert embed["title"] == "Task failed: #3"
    assert embed["color"] == 15158332
    assert embed["timestamp"].endswith("Z")


def test_secrets_are_masked_before_delivery() -> None:
    requests: list[httpx.Request] = []
    token = "ghp_" + "x" * 40
    dispatcher = NotificationDispatcher(
        _settings(generic=WebhookTarget(enabled=True, webhook_url=GENERIC_URL)),
        repo="acme/widgets",
        client=_recording_client(requests),
        rate_limiter=_open_limiter(),
    )

    dispatcher.notify_event("task_failed", title="failed", message=f"push used {token}")

    assert token not in requests[0].content.decode()
    assert "[REDACTED]" in requests[0].content.decode()


def test_per_event_filter_skips_unwanted_events() -> None:
    requests: list[httpx.Request] = []
    target = WebhookTarget(enabled=True, webhook_url=GENERIC_URL)
    target.events["task_started"] = False
    dispatcher = NotificationDispatcher(
        _settings(generic=target),
        repo="acme/widgets",
        client=_recording_client(requests),
        rate_limiter=_open_limiter(),
    )

    assert dispatcher.notify_event("task_started", title="t", message="m") is False
    assert requests == []


def test_http_errors_are_logged_not_raised() -> None:
    def failing(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    dispatcher = NotificationDispatcher(
        _settings(generic=WebhookTarget(enabled=True, webhook_url=GENERIC_URL)),
        repo="acme/widgets",
        client=httpx.Client(transport=httpx.MockTransport(failing)),
        rate_limiter=_open_limiter(),
    )

    assert dispatcher.notify_event("task_failed", title="t", message="m") is False
    assert dispatcher.sent == []


def test_non_success_status_counts_as_undelivered() -> None:
    requests: list[httpx.Request] = []
    dispatcher = NotificationDispatcher(
        _settings(generic=WebhookTarget(enabled=True, webhook_url=GENERIC_URL)),
        repo="acme/widgets",
        client=_recording_client(requests, status_code=500),
        rate_limiter=_open_limiter(),
    )

    assert dispatcher.notify_event("task_failed", title="t", message="m") is False
    assert len(requests) == 1


def test_default_rate_limit_suppresses_rapid_second_event() -> None:
    requests: list[httpx.Request] = []
    dispatcher = NotificationDispatcher(
        _settings(generic=WebhookTarget(enabled=True, webhook_url=GENERIC_URL)),
        repo="acme/widgets",
        client=_recording_client(requests),
    )

    assert dispatcher.notify_event("task_started", title="first", message="m") is True
    assert dispatcher.notify_event("task_completed", title="second", message="m") is False
    assert len(requests) == 1


def test_rate_limiter_enforces_minimum_spacing() -> None:
    limiter = RateLimiter(min_interval=10, burst_limit=5, burst_window=60)

    assert limiter.allow(now=0.0) is True
    limiter.record_sent(now=0.0)
    assert limiter.allow(now=5.0) is False
    assert limiter.allow(now=10.0) is True


def test_rate_limiter_caps_bursts_per_window() -> None:
    limiter = RateLimiter(min_interval=0, burst_limit=2, burst_window=60)

    for moment in (0.0, 1.0):
        assert limiter.allow(now=moment) is True
        limiter.record_sent(now=moment)

    assert limiter.allow(now=2.0) is False
    assert limiter.allow(now=61.0) is True


def test_rate_limiter_window_rolls_over_only_after_it_has_fully_elapsed() -> None:
    limiter = RateLimiter(min_interval=0, burst_limit=1, burst_window=60)

    assert limiter.allow(now=0.0) is True
    limiter.record_sent(now=0.0)

    assert limiter.allow(now=60.0) is False
    assert limiter.allow(now=60.5) is True
