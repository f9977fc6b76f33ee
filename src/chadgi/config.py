"""Runtime configuration: YAML chain with inheritance resolved into typed settings."""

from __future__ import annotations

import os
from dataclasses import dataclass, field, fields, is_dataclass
from pathlib import Path
from typing import Any

import yaml

DEFAULT_CHADGI_DIR = Path(".chadgi")
CONFIG_FILE_NAME = "chadgi-config.yaml"

DEFAULT_AGENT_COMMAND = (
    "claude --dangerously-skip-permissions --print --verbose --output-format stream-json"
)
DEFAULT_EXPLORE_COMMAND = "claude --print"

BACKOFF_KINDS = ("fixed", "linear", "exponential")
ON_MAX_ITERATIONS_POLICIES = ("skip", "rollback", "retry-later")
ON_EMPTY_QUEUE_POLICIES = ("generate", "exit", "wait")
ON_TASK_BUDGET_POLICIES = ("skip", "fail", "warn")
ON_SESSION_BUDGET_POLICIES = ("stop", "warn")
LOG_LEVELS = ("ERROR", "WARN", "WARNING", "INFO", "DEBUG")

NOTIFICATION_EVENTS = (
    "task_started",
    "task_completed",
    "task_failed",
    "gigachad_merge",
    "session_ended",
    "budget_warning",
    "budget_exceeded",
)


class ConfigError(ValueError):
    """Configuration file missing, unparsable, circular or invalid."""


@dataclass(slots=True)
class GithubSettings:
    """Task source (GitHub project board) settings."""

    repo: str = ""
    project_number: int = 0
    ready_column: str = "Ready"
    in_progress_column: str = "In Progress"
    review_column: str = "In Review"
    done_column: str = "Done"


@dataclass(slots=True)
class BranchSettings:
    base: str = "main"
    prefix: str = "feature/issue-"


@dataclass(slots=True)
class AgentSettings:
    """Agent CLI invocation."""

    command: str = DEFAULT_AGENT_COMMAND
    explore_command: str = DEFAULT_EXPLORE_COMMAND
    template: str | None = None
    graceful_stop_seconds: int = 10


@dataclass(slots=True)
class IterationSettings:
    """Per-task iteration, timeout and retry policy."""

    max_iterations: int = 5
    task_timeout: int = 30
    retry_delay: int = 5
    retry_backoff: str = "exponential"
    retry_max_delay: int = 60
    retry_jitter: bool = False
    completion_promise: str = "COMPLETE"
    ready_promise: str = "READY_FOR_PR"
    test_command: str = ""
    build_command: str = ""
    on_max_iterations: str = "skip"
    gigachad_mode: bool = False
    gigachad_commit_prefix: str = "[GIGACHAD]"
    max_tasks: int = 0
    max_consecutive_failures: int = 3


@dataclass(slots=True)
class BudgetSettings:
    """Cost limits in USD. ``None`` disables a limit."""

    per_task_limit: float | None = None
    per_session_limit: float | None = None
    warning_threshold: int = 80
    on_task_exceeded: str = "skip"
    on_session_exceeded: str = "stop"


@dataclass(slots=True)
class RateLimitSettings:
    min_interval: int = 10
    burst_limit: int = 5
    burst_window: int = 60


@dataclass(slots=True)
class WebhookTarget:
    """One notification target with its per-event filter."""

    enabled: bool = False
    webhook_url: str = ""
    events: dict[str, bool] = field(
        default_factory=lambda: dict.fromkeys(NOTIFICATION_EVENTS, True),
    )

    def wants(self, event: str) -> bool:
        return self.enabled and bool(self.webhook_url) and self.events.get(event, False)


@dataclass(slots=True)
class NotificationSettings:
    enabled: bool = False
    rate_limit: RateLimitSettings = field(default_factory=RateLimitSettings)
    slack: WebhookTarget = field(default_factory=WebhookTarget)
    discord: WebhookTarget = field(default_factory=WebhookTarget)
    generic: WebhookTarget = field(default_factory=WebhookTarget)


@dataclass(slots=True)
class CategorySettings:
    """Label to category mapping, evaluated in insertion order."""

    mappings: dict[str, list[str]] = field(
        default_factory=lambda: {
            "bug": ["bug", "bugfix", "fix", "hotfix"],
            "feature": ["feature", "enhancement", "new-feature"],
            "refactor": ["refactor", "refactoring", "cleanup", "tech-debt"],
            "docs": ["docs", "documentation"],
            "test": ["test", "testing", "tests"],
            "chore": ["chore", "maintenance", "ci", "build"],
        },
    )


@dataclass(slots=True)
class PrioritySettings:
    enabled: bool = True
    labels: dict[str, list[str]] = field(
        default_factory=lambda: {
            "critical": ["priority:critical", "critical", "P0"],
            "high": ["priority:high", "high-priority", "P1"],
            "normal": ["priority:normal", "P2"],
            "low": ["priority:low", "low-priority", "P3"],
        },
    )


@dataclass(slots=True)
class DependencySettings:
    enabled: bool = True


@dataclass(slots=True)
class OutputSettings:
    """Logging output settings."""

    log_level: str = "INFO"
    log_file: str = "chadgi.log"
    max_log_size_mb: int = 10
    max_log_files: int = 5
    mask_secrets: bool = True


@dataclass(slots=True)
class HookSettings:
    """One lifecycle hook script; a relative ``script`` resolves against ``chadgi_dir``."""

    script: str = ""
    timeout: int = 30
    can_abort: bool = False
    enabled: bool = True


@dataclass(slots=True)
class HooksSettings:
    pre_task: HookSettings = field(default_factory=HookSettings)
    post_implementation: HookSettings = field(default_factory=HookSettings)
    pre_pr: HookSettings = field(default_factory=HookSettings)
    post_pr: HookSettings = field(default_factory=HookSettings)
    post_merge: HookSettings = field(default_factory=HookSettings)
    on_failure: HookSettings = field(default_factory=HookSettings)
    on_budget_warning: HookSettings = field(default_factory=lambda: HookSettings(timeout=10))


@dataclass(slots=True)
class DiagnosticsSettings:
    output_lines: int = 50


@dataclass(slots=True)
class MetricsSettings:
    retention_days: int = 30


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    chadgi_dir: Path = DEFAULT_CHADGI_DIR
    github: GithubSettings = field(default_factory=GithubSettings)
    branch: BranchSettings = field(default_factory=BranchSettings)
    agent: AgentSettings = field(default_factory=AgentSettings)
    iteration: IterationSettings = field(default_factory=IterationSettings)
    budget: BudgetSettings = field(default_factory=BudgetSettings)
    notifications: NotificationSettings = field(default_factory=NotificationSettings)
    category: CategorySettings = field(default_factory=CategorySettings)
    priority: PrioritySettings = field(default_factory=PrioritySettings)
    dependencies: DependencySettings = field(default_factory=DependencySettings)
    output: OutputSettings = field(default_factory=OutputSettings)
    diagnostics: DiagnosticsSettings = field(default_factory=DiagnosticsSettings)
    metrics: MetricsSettings = field(default_factory=MetricsSettings)
    hooks: HooksSettings = field(default_factory=HooksSettings)
    error_diagnostics: bool = True
    poll_interval: int = 10
    consecutive_empty_threshold: int = 2
    on_empty_queue: str = "exit"
    config_path: Path | None = None

    @classmethod
    def load(cls, config_path: Path | None = None) -> Settings:
        """Resolve the config chain and apply environment overrides."""

        chadgi_dir = Path(os.getenv("CHADGI_DIR", str(DEFAULT_CHADGI_DIR)))
        path = config_path or chadgi_dir / CONFIG_FILE_NAME
        if config_path is not None:
            chadgi_dir = path.parent
        raw = resolve_config_chain(path)
        settings = cls.from_mapping(raw, chadgi_dir=chadgi_dir)
        settings.config_path = path

        log_level = os.getenv("CHADGI_LOG_LEVEL")
        if log_level:
            settings.output.log_level = log_level.strip().upper()
        if _env_bool("CHADGI_NO_MASK", default=False):
            settings.output.mask_secrets = False
        return settings

    @classmethod
    def from_mapping(
        cls,
        raw: dict[str, Any],
        *,
        chadgi_dir: Path = DEFAULT_CHADGI_DIR,
    ) -> Settings:
        """Build typed settings from an already merged mapping."""

        settings = cls(chadgi_dir=chadgi_dir)
        top_level = {
            key: value
            for key, value in raw.items()
            if key not in {"extends", "base_config", "chadgi_dir", "config_path"}
        }
        _apply(settings, top_level, path="")
        return settings

    @property
    def progress_path(self) -> Path:
        return self.chadgi_dir / "chadgi-progress.json"

    @property
    def metrics_path(self) -> Path:
        return self.chadgi_dir / "chadgi-metrics.json"

    @property
    def stats_path(self) -> Path:
        return self.chadgi_dir / "chadgi-stats.json"

    @property
    def pause_lock_path(self) -> Path:
        return self.chadgi_dir / "pause.lock"

    @property
    def diagnostics_dir(self) -> Path:
        return self.chadgi_dir / "diagnostics"

    @property
    def log_path(self) -> Path:
        log_file = Path(self.output.log_file)
        return log_file if log_file.is_absolute() else self.chadgi_dir / log_file

    def validate(self) -> None:  # noqa: C901
        """Raise configuration error for out-of-range or unknown values."""

        iteration = self.iteration
        if iteration.max_iterations < 1:
            raise ConfigError("iteration.max_iterations must be >= 1.")
        if iteration.task_timeout < 0:
            raise ConfigError("iteration.task_timeout must be >= 0 (0 disables the timeout).")
        if iteration.retry_delay < 0 or iteration.retry_max_delay < 0:
            raise ConfigError("iteration.retry_delay and retry_max_delay must be >= 0.")
        if iteration.retry_backoff not in BACKOFF_KINDS:
            raise ConfigError(
                f"iteration.retry_backoff must be one of {', '.join(BACKOFF_KINDS)}: "
                f"{iteration.retry_backoff!r}",
            )
        if iteration.on_max_iterations not in ON_MAX_ITERATIONS_POLICIES:
            raise ConfigError(
                f"iteration.on_max_iterations must be one of "
                f"{', '.join(ON_MAX_ITERATIONS_POLICIES)}: {iteration.on_max_iterations!r}",
            )
        if self.on_empty_queue not in ON_EMPTY_QUEUE_POLICIES:
            raise ConfigError(
                f"on_empty_queue must be one of {', '.join(ON_EMPTY_QUEUE_POLICIES)}: "
                f"{self.on_empty_queue!r}",
            )
        if self.budget.on_task_exceeded not in ON_TASK_BUDGET_POLICIES:
            raise ConfigError(
                f"budget.on_task_exceeded is invalid: {self.budget.on_task_exceeded!r}",
            )
        if self.budget.on_session_exceeded not in ON_SESSION_BUDGET_POLICIES:
            raise ConfigError(
                f"budget.on_session_exceeded is invalid: {self.budget.on_session_exceeded!r}",
            )
        if not 0 < self.budget.warning_threshold <= 100:  # noqa: PLR2004
            raise ConfigError("budget.warning_threshold must be within 1..100.")
        for name in ("per_task_limit", "per_session_limit"):
            limit = getattr(self.budget, name)
            if limit is not None and limit <= 0:
                raise ConfigError(f"budget.{name} must be > 0 when set.")
        rate = self.notifications.rate_limit
        if rate.min_interval < 0 or rate.burst_limit < 1 or rate.burst_window < 1:
            raise ConfigError("notifications.rate_limit values are out of range.")
        if self.output.log_level.upper() not in LOG_LEVELS:
            raise ConfigError(f"output.log_level is invalid: {self.output.log_level!r}")
        if self.metrics.retention_days < 1:
            raise ConfigError("metrics.retention_days must be >= 1.")
        for item in fields(self.hooks):
            if getattr(self.hooks, item.name).timeout < 1:
                raise ConfigError(f"hooks.{item.name}.timeout must be >= 1 second.")

    def validate_for_session(self) -> None:
        """Validation needed before a session touches the task source."""

        self.validate()
        if not self.github.repo or "/" not in self.github.repo:
            raise ConfigError("github.repo must be set as 'owner/name'.")
        if self.github.project_number <= 0:
            raise ConfigError("github.project_number must be a positive integer.")


def resolve_config_chain(path: Path) -> dict[str, Any]:
    """Load ``path`` and every ancestor named by ``extends``/``base_config``.

    Parents are merged first so children override them. A file appearing
    twice in the chain raises :class:`ConfigError`.
    """

    chain: list[dict[str, Any]] = []
    seen: list[Path] = []
    current: Path | None = path
    while current is not None:
        resolved = current.resolve()
        if resolved in seen:
            cycle = " -> ".join(str(item) for item in [*seen, resolved])
            raise ConfigError(f"Circular config inheritance detected: {cycle}")
        seen.append(resolved)
        document = _load_yaml(resolved)
        chain.append(document)
        parent = document.get("extends") or document.get("base_config")
        if parent is None:
            current = None
            continue
        if not isinstance(parent, str) or not parent.strip():
            raise ConfigError(f"Invalid extends/base_config value in {resolved}: {parent!r}")
        parent_path = Path(parent).expanduser()
        current = parent_path if parent_path.is_absolute() else resolved.parent / parent_path

    merged: dict[str, Any] = {}
    for document in reversed(chain):
        merged = deep_merge(merged, document)
    return merged


def deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _load_yaml(path: Path) -> dict[str, Any]:
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError as error:
        raise ConfigError(f"Config file not found: {path}") from error
    except OSError as error:
        raise ConfigError(f"Cannot read config file {path}: {error}") from error
    try:
        document = yaml.safe_load(text)
    except yaml.YAMLError as error:
        raise ConfigError(f"Failed to parse YAML in {path}: {error}") from error
    if document is None:
        return {}
    if not isinstance(document, dict):
        raise ConfigError(f"Config root must be a mapping: {path}")
    return document


def _apply(target: Any, values: dict[str, Any], *, path: str) -> None:
    known = {item.name: item for item in fields(target)}
    for key, value in values.items():
        dotted = f"{path}{key}"
        if key not in known:
            continue
        current = getattr(target, key)
        if is_dataclass(current) and not isinstance(current, type):
            if value is None:
                continue
            if not isinstance(value, dict):
                raise ConfigError(f"Config section {dotted!r} must be a mapping.")
            _apply(current, value, path=f"{dotted}.")
            continue
        setattr(target, key, _coerce(current, value, dotted))


def _coerce(current: Any, value: Any, dotted: str) -> Any:  # noqa: PLR0911
    if value is None:
        return None
    if isinstance(current, bool):
        if isinstance(value, bool):
            return value
        if isinstance(value, str):
            return _parse_bool(value, dotted)
        raise ConfigError(f"Expected boolean for {dotted!r}: {value!r}")
    if isinstance(current, int):
        try:
            return int(value)
        except (TypeError, ValueError) as error:
            raise ConfigError(f"Expected integer for {dotted!r}: {value!r}") from error
    if isinstance(current, float) or dotted.endswith("_limit"):
        try:
            return float(value)
        except (TypeError, ValueError) as error:
            raise ConfigError(f"Expected number for {dotted!r}: {value!r}") from error
    if isinstance(current, dict):
        if not isinstance(value, dict):
            raise ConfigError(f"Expected mapping for {dotted!r}.")
        merged = dict(current)
        for key, item in value.items():
            merged[str(key)] = [str(part) for part in item] if isinstance(item, list) else item
        return merged
    if isinstance(current, Path):
        return Path(str(value))
    return str(value)


def _parse_bool(value: str, name: str) -> bool:
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ConfigError(f"Invalid boolean value for {name}: {value!r}")


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return _parse_bool(value, name)
