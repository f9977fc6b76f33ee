"""Shared test fixtures."""

from __future__ import annotations

import pytest

_ENV_OVERRIDES = ("CHADGI_DIR", "CHADGI_LOG_LEVEL", "CHADGI_NO_MASK")


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch):
    """Keep developer shell overrides out of config resolution."""
    for name in _ENV_OVERRIDES:
        monkeypatch.delenv(name, raising=False)
