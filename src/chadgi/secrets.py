"""Credential redaction for logs, notifications, and diagnostics."""

from __future__ import annotations

import logging
import re
from typing import Any

REDACTED = "[REDACTED]"

_ENV_SECRET_NAMES = (
    "API_KEY",
    "API_SECRET",
    "SECRET_KEY",
    "SECRET_TOKEN",
    "AUTH_TOKEN",
    "ACCESS_TOKEN",
    "PRIVATE_KEY",
    "PASSWORD",
    "WEBHOOK_URL",
    "SLACK_WEBHOOK",
    "DISCORD_WEBHOOK",
)

# (name, pattern, replacement). Replacements keep the non-secret prefix where one exists.
_SECRET_RULES: tuple[tuple[str, re.Pattern[str], str], ...] = (
    (
        "slack_webhook",
        re.compile(r"https://hooks\.slack\.com/services/[A-Za-z0-9/_-]+"),
        REDACTED,
    ),
    (
        "discord_webhook",
        re.compile(r"https://(?:discord|discordapp)\.com/api/webhooks/[A-Za-z0-9/_-]+"),
        REDACTED,
    ),
    ("github_token", re.compile(r"gh[pousr]_[A-Za-z0-9_]{36,}"), REDACTED),
    ("github_pat", re.compile(r"github_pat_[A-Za-z0-9_]{22,}"), REDACTED),
    (
        "bearer_token",
        re.compile(r"(Bearer\s+)[A-Za-z0-9\-._~+/]+=*", re.IGNORECASE),
        rf"\g<1>{REDACTED}",
    ),
    (
        "authorization_header",
        re.compile(r"(Authorization:\s*)(?!Bearer\s)\S+", re.IGNORECASE),
        rf"\g<1>{REDACTED}",
    ),
    (
        "api_key_assignment",
        re.compile(
            r"((?:api[_-]?key|secret|access[_-]?token|secret[_-]?key)"
            r"[\"']?\s*[:=]\s*[\"']?)[A-Za-z0-9\-_./+]{16,}",
            re.IGNORECASE,
        ),
        rf"\g<1>{REDACTED}",
    ),
    (
        "env_assignment",
        re.compile(
            r"\b((?:[A-Z0-9]+_)*(?:"
            + "|".join(_ENV_SECRET_NAMES)
            + r")\s*=\s*)[\"']?[^\s\"']+[\"']?",
        ),
        rf"\g<1>{REDACTED}",
    ),
    ("npm_token", re.compile(r"npm_[A-Za-z0-9]{36,}"), REDACTED),
    ("aws_access_key", re.compile(r"\b(?:AKIA|ASIA)[A-Z0-9]{16}\b"), REDACTED),
    (
        "aws_secret_key",
        re.compile(
            r"(aws_secret_access_key[\"']?\s*[:=]\s*[\"']?)[A-Za-z0-9/+=]{40}",
            re.IGNORECASE,
        ),
        rf"\g<1>{REDACTED}",
    ),
)


def mask_secrets(text: str) -> str:
    """Return ``text`` with every known credential pattern replaced."""

    if not text:
        return text
    masked = text
    for _, pattern, replacement in _SECRET_RULES:
        masked = pattern.sub(replacement, masked)
    return masked


def mask_object(value: Any) -> Any:
    """Recursively mask strings inside dicts, lists and tuples."""

    if isinstance(value, str):
        return mask_secrets(value)
    if isinstance(value, dict):
        return {key: mask_object(item) for key, item in value.items()}
    if isinstance(value, list):
        return [mask_object(item) for item in value]
    if isinstance(value, tuple):
        return tuple(mask_object(item) for item in value)
    return value


class SecretMaskingFilter(logging.Filter):
    """Logging filter that redacts credentials from formatted messages."""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        masked = mask_secrets(message)
        if masked != message:
            record.msg = masked
            record.args = None
        return True
