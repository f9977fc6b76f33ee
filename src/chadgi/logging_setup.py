"""Logging configuration for session and control commands."""

from __future__ import annotations

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

from chadgi.config import OutputSettings
from chadgi.secrets import SecretMaskingFilter

LOGGER_NAME = "chadgi"
_FILE_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
_CONSOLE_FORMAT = "[%(levelname)s] %(message)s"


def resolve_level(name: str) -> int:
    normalized = name.strip().upper()
    if normalized == "WARN":
        normalized = "WARNING"
    level = logging.getLevelName(normalized)
    if not isinstance(level, int):
        raise ValueError(f"Unknown log level: {name!r}")
    return level


def configure_logging(
    output: OutputSettings,
    *,
    log_path: Path | None,
    console: bool = True,
) -> logging.Logger:
    """Attach rotating file and stderr handlers to the package logger.

    Calling it again replaces previously installed handlers, so tests and
    repeated CLI invocations in one process do not duplicate output.
    """

    logger = logging.getLogger(LOGGER_NAME)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    logger.setLevel(resolve_level(output.log_level))
    logger.propagate = False
    masking = SecretMaskingFilter() if output.mask_secrets else None

    if log_path is not None:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            log_path,
            maxBytes=max(1, output.max_log_size_mb) * 1024 * 1024,
            backupCount=max(0, output.max_log_files),
            encoding="utf-8",
        )
        file_handler.setFormatter(logging.Formatter(_FILE_FORMAT))
        if masking is not None:
            file_handler.addFilter(masking)
        logger.addHandler(file_handler)

    if console:
        stream_handler = logging.StreamHandler(sys.stderr)
        stream_handler.setFormatter(logging.Formatter(_CONSOLE_FORMAT))
        if masking is not None:
            stream_handler.addFilter(masking)
        logger.addHandler(stream_handler)

    return logger
