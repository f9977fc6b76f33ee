"""Environment health checks for the external CLIs and the state directory."""

from __future__ import annotations

import os
import shlex
import shutil
import subprocess
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from chadgi.config import CONFIG_FILE_NAME, ConfigError, Settings

PROBE_TIMEOUT_SECONDS = 15


@dataclass(slots=True)
class DoctorCheckResult:
    """One health check outcome."""

    name: str
    ok: bool
    detail: str
    required: bool = True

    def to_json(self) -> dict[str, object]:
        return {"name": self.name, "ok": self.ok, "detail": self.detail, "required": self.required}


Probe = Callable[[list[str], Path], tuple[int, str]]


def run_probe(argv: list[str], cwd: Path) -> tuple[int, str]:
    try:
        completed = subprocess.run(  # noqa: S603
            argv,
            cwd=cwd,
            capture_output=True,
            text=True,
            timeout=PROBE_TIMEOUT_SECONDS,
        )
    except subprocess.TimeoutExpired:
        return 124, f"{argv[0]} timed out after {PROBE_TIMEOUT_SECONDS}s"
    except OSError as error:
        return 127, str(error)
    return completed.returncode, (completed.stdout or completed.stderr).strip()


def run_doctor_checks(
    *,
    chadgi_dir: Path,
    config_path: Path | None,
    repo_dir: Path,
    which: Callable[[str], str | None] = shutil.which,
    probe: Probe = run_probe,
) -> list[DoctorCheckResult]:
    """Check tools, authentication, configuration and state directory."""

    results: list[DoctorCheckResult] = []
    settings: Settings | None = None
    path = config_path or chadgi_dir / CONFIG_FILE_NAME

    try:
        settings = Settings.load(path)
        settings.validate_for_session()
        results.append(DoctorCheckResult("config", True, f"{path} is valid"))
    except ConfigError as error:
        results.append(DoctorCheckResult("config", False, str(error)))

    for tool in ("git", "gh"):
        resolved = which(tool)
        if resolved is None:
            results.append(DoctorCheckResult(tool, False, f"{tool} not found in PATH"))
            continue
        code, output = probe([resolved, "--version"], repo_dir)
        first_line = output.splitlines()[0] if output else ""
        results.append(DoctorCheckResult(tool, code == 0, first_line or f"exit code {code}"))

    agent_command = settings.agent.command if settings is not None else Settings().agent.command
    agent_executable = shlex.split(agent_command)[0] if agent_command.strip() else ""
    resolved_agent = which(agent_executable) if agent_executable else None
    results.append(
        DoctorCheckResult(
            "agent",
            resolved_agent is not None,
            resolved_agent or f"{agent_executable or '(empty)'} not found in PATH",
        ),
    )

    if which("gh") is not None:
        code, output = probe(["gh", "auth", "status"], repo_dir)
        results.append(
            DoctorCheckResult("gh-auth", code == 0, "authenticated" if code == 0 else output),
        )

    if which("git") is not None:
        code, _ = probe(["git", "rev-parse", "--is-inside-work-tree"], repo_dir)
        results.append(
            DoctorCheckResult(
                "git-repo",
                code == 0,
                str(repo_dir) if code == 0 else f"{repo_dir} is not a git repository",
            ),
        )

    writable = chadgi_dir.is_dir() and os.access(chadgi_dir, os.W_OK)
    results.append(
        DoctorCheckResult(
            "state-dir",
            writable,
            f"{chadgi_dir} is writable" if writable else f"{chadgi_dir} missing or not writable",
        ),
    )
    return results
