"""Lifecycle hooks: user scripts run at task state transitions."""

from __future__ import annotations

import logging
import os
import subprocess
from dataclasses import dataclass
from pathlib import Path

from chadgi.config import HookSettings, Settings
from chadgi.orchestrator.failure_classifier import TIMEOUT_EXIT_CODE
from chadgi.secrets import mask_secrets

logger = logging.getLogger(__name__)

HOOK_NAMES = (
    "pre_task",
    "post_implementation",
    "pre_pr",
    "post_pr",
    "post_merge",
    "on_failure",
    "on_budget_warning",
)
HOOK_ABORT_EXIT_CODE = 128
OUTPUT_PREVIEW_LINES = 10


@dataclass(slots=True)
class HookContext:
    """Task state exported to hook scripts as ``CHADGI_*`` variables."""

    issue_number: int
    title: str = ""
    url: str = ""
    branch: str = ""
    pr_url: str = ""
    cost: float = 0.0
    session_cost: float = 0.0
    iteration: int = 1


@dataclass(slots=True)
class HookResult:
    name: str
    ran: bool = False
    exit_code: int | None = None
    timed_out: bool = False
    output: str = ""
    aborts: bool = False

    @property
    def succeeded(self) -> bool:
        return not self.ran or self.exit_code == 0


class HookRunner:
    """Runs configured hook scripts with a per-hook timeout.

    A missing, disabled or non-executable hook is a no-op. A failing or timed
    out hook only aborts the task when its ``can_abort`` flag is set.
    """

    def __init__(self, settings: Settings, *, cwd: Path) -> None:
        self.settings = settings
        self.cwd = cwd

    def run(self, name: str, context: HookContext) -> HookResult:
        hook: HookSettings = getattr(self.settings.hooks, name)
        if not hook.script.strip():
            return HookResult(name=name)
        if not hook.enabled:
            logger.debug("Hook %s is disabled", name)
            return HookResult(name=name)

        script = self.resolve(hook.script)
        if not script.is_file():
            logger.warning("Hook %s: script not found: %s", name, script)
            return HookResult(name=name)
        if not os.access(script, os.X_OK):
            logger.warning("Hook %s: script not executable: %s (chmod +x it)", name, script)
            return HookResult(name=name)

        logger.info("Running hook %s", name)
        try:
            completed = subprocess.run(  # noqa: S603
                [str(script)],
                cwd=self.cwd,
                env={**os.environ, **self.environment(name, context)},
                check=False,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                encoding="utf-8",
                errors="replace",
                timeout=hook.timeout,
            )
        except subprocess.TimeoutExpired:
            logger.warning("Hook %s timed out after %ss", name, hook.timeout)
            return HookResult(
                name=name,
                ran=True,
                exit_code=TIMEOUT_EXIT_CODE,
                timed_out=True,
                aborts=hook.can_abort,
            )
        except OSError as error:
            logger.warning("Hook %s failed to start: %s", name, error)
            return HookResult(name=name)

        output = mask_secrets(completed.stdout or "")
        if completed.returncode == 0:
            logger.info("Hook %s completed", name)
            if output.strip():
                logger.debug(
                    "Hook %s output:\n%s",
                    name,
                    "\n".join(output.splitlines()[:OUTPUT_PREVIEW_LINES]),
                )
            return HookResult(name=name, ran=True, exit_code=0, output=output)

        logger.warning("Hook %s failed with exit code %s", name, completed.returncode)
        return HookResult(
            name=name,
            ran=True,
            exit_code=completed.returncode,
            output=output,
            aborts=hook.can_abort,
        )

    def resolve(self, script: str) -> Path:
        path = Path(script).expanduser()
        return path if path.is_absolute() else self.settings.chadgi_dir / path

    def environment(self, name: str, context: HookContext) -> dict[str, str]:
        iteration = self.settings.iteration
        return {
            "CHADGI_HOOK_NAME": name,
            "CHADGI_PHASE": name,
            "CHADGI_ISSUE_NUMBER": str(context.issue_number),
            "CHADGI_ISSUE_TITLE": context.title,
            "CHADGI_ISSUE_URL": context.url,
            "CHADGI_BRANCH": context.branch,
            "CHADGI_BASE_BRANCH": self.settings.branch.base,
            "CHADGI_PR_URL": context.pr_url,
            "CHADGI_COST": f"{context.cost:.4f}",
            "CHADGI_SESSION_COST": f"{context.session_cost:.4f}",
            "CHADGI_REPO": self.settings.github.repo,
            "CHADGI_ITERATION": str(context.iteration),
            "CHADGI_MAX_ITERATIONS": str(iteration.max_iterations),
        }
