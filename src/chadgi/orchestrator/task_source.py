"""GitHub project board task source backed by the ``gh`` CLI."""

from __future__ import annotations

import json
import logging
import re
import subprocess
from collections.abc import Callable, Iterable
from typing import Any, Protocol

from chadgi.config import CategorySettings, GithubSettings, PrioritySettings
from chadgi.orchestrator.models import Task

logger = logging.getLogger(__name__)

PRIORITY_ORDER = ("critical", "high", "normal", "low")
DEFAULT_PRIORITY = "normal"
ITEM_LIST_LIMIT = 200

_DEPENDENCY_PATTERN = re.compile(
    r"(?:depends\s+on|blocked\s+by|requires)\s*:?\s*((?:#\d+[\s,]*(?:and\s+)?)+)",
    re.IGNORECASE,
)
_ISSUE_REF = re.compile(r"#(\d+)")

GhRunner = Callable[[list[str]], str]


class TaskSourceError(RuntimeError):
    """Task source query or mutation failed."""


class TaskSource(Protocol):
    """Operations the executor and session loop consume."""

    def get_next_task(self) -> Task | None: ...

    def move_task(self, task: Task, column: str) -> None: ...

    def assign_task(self, task: Task) -> None: ...

    def get_category(self, task: Task) -> str | None: ...


def run_gh(args: list[str]) -> str:
    try:
        result = subprocess.run(  # noqa: S603
            ["gh", *args],
            check=True,
            capture_output=True,
            text=True,
        )
    except subprocess.CalledProcessError as e:
        raise TaskSourceError(f"gh {' '.join(args[:2])} failed: {e.stderr.strip()}") from None
    except FileNotFoundError:
        raise TaskSourceError("gh CLI is not installed") from None
    return result.stdout


def category_for_labels(labels: Iterable[str], mappings: dict[str, list[str]]) -> str | None:
    """First category (in mapping order) whose label list intersects ``labels``."""

    normalized = {label.lower() for label in labels}
    for category, category_labels in mappings.items():
        if normalized.intersection(label.lower() for label in category_labels):
            return category
    return None


def priority_for_labels(labels: Iterable[str], priority_labels: dict[str, list[str]]) -> str:
    normalized = {label.lower() for label in labels}
    for level in PRIORITY_ORDER:
        if normalized.intersection(label.lower() for label in priority_labels.get(level, [])):
            return level
    return DEFAULT_PRIORITY


def parse_dependencies(body: str) -> list[int]:
    """Issue numbers referenced by ``depends on``/``blocked by``/``requires`` phrases."""

    found: list[int] = []
    for match in _DEPENDENCY_PATTERN.finditer(body or ""):
        for number in _ISSUE_REF.findall(match.group(1)):
            value = int(number)
            if value not in found:
                found.append(value)
    return found


def sort_by_priority(tasks: list[Task]) -> list[Task]:
    rank = {level: index for index, level in enumerate(PRIORITY_ORDER)}
    return sorted(tasks, key=lambda task: (rank.get(task.priority, 2), task.number))


class GithubProjectTaskSource:
    """Reads the Ready column and moves issues between Status options."""

    def __init__(
        self,
        *,
        github: GithubSettings,
        category: CategorySettings,
        priority: PrioritySettings,
        check_dependencies: bool = True,
        runner: GhRunner = run_gh,
    ) -> None:
        self.github = github
        self.category = category
        self.priority = priority
        self.check_dependencies = check_dependencies
        self._runner = runner
        self._project_meta: dict[str, Any] | None = None

    @property
    def owner(self) -> str:
        return self.github.repo.split("/", 1)[0]

    def _gh_json(self, args: list[str]) -> Any:
        output = self._runner(args)
        try:
            return json.loads(output or "null")
        except json.JSONDecodeError as error:
            raise TaskSourceError(f"gh {' '.join(args[:2])} returned invalid JSON") from error

    def _items(self) -> list[dict[str, Any]]:
        payload = self._gh_json(
            [
                "project",
                "item-list",
                str(self.github.project_number),
                "--owner",
                self.owner,
                "--format",
                "json",
                "--limit",
                str(ITEM_LIST_LIMIT),
            ],
        )
        items = (payload or {}).get("items") or []
        return [item for item in items if (item.get("content") or {}).get("type") == "Issue"]

    def _task_from_item(self, item: dict[str, Any]) -> Task:
        content = item.get("content") or {}
        labels = tuple(str(label) for label in item.get("labels") or content.get("labels") or ())
        task = Task(
            number=int(content["number"]),
            title=str(content.get("title") or ""),
            body=str(content.get("body") or ""),
            labels=labels,
            column=item.get("status"),
            url=str(content.get("url") or ""),
            item_id=item.get("id"),
        )
        task.category = self.get_category(task)
        task.priority = (
            priority_for_labels(labels, self.priority.labels)
            if self.priority.enabled
            else DEFAULT_PRIORITY
        )
        return task

    def list_ready_tasks(self) -> list[Task]:
        """Ready-column tasks in processing order."""

        ready = [
            self._task_from_item(item)
            for item in self._items()
            if item.get("status") == self.github.ready_column
        ]
        if self.priority.enabled:
            return sort_by_priority(ready)
        return sorted(ready, key=lambda task: task.number)

    def get_next_task(self) -> Task | None:
        for task in self.list_ready_tasks():
            blockers = self.open_dependencies(task) if self.check_dependencies else []
            if blockers:
                logger.info(
                    "Skipping #%s: blocked by open issue(s) %s",
                    task.number,
                    ", ".join(f"#{number}" for number in blockers),
                )
                continue
            return task
        return None

    def open_dependencies(self, task: Task) -> list[int]:
        open_numbers: list[int] = []
        for number in parse_dependencies(task.body):
            if number == task.number:
                continue
            state = self.issue_state(number)
            if state is None or state.upper() == "OPEN":
                open_numbers.append(number)
        return open_numbers

    def issue_state(self, number: int) -> str | None:
        try:
            payload = self._gh_json(
                ["issue", "view", str(number), "--repo", self.github.repo, "--json", "state"],
            )
        except TaskSourceError:
            return None
        return (payload or {}).get("state")

    def get_category(self, task: Task) -> str | None:
        return category_for_labels(task.labels, self.category.mappings)

    def assign_task(self, task: Task) -> None:
        self._runner(
            [
                "issue",
                "edit",
                str(task.number),
                "--repo",
                self.github.repo,
                "--add-assignee",
                "@me",
            ],
        )

    def _metadata(self) -> dict[str, Any]:
        if self._project_meta is not None:
            return self._project_meta
        projects = self._gh_json(["project", "list", "--owner", self.owner, "--format", "json"])
        project = next(
            (
                entry
                for entry in (projects or {}).get("projects") or []
                if int(entry.get("number", -1)) == self.github.project_number
            ),
            None,
        )
        if project is None:
            raise TaskSourceError(
                f"Project #{self.github.project_number} not found for {self.owner}",
            )
        fields = self._gh_json(
            [
                "project",
                "field-list",
                str(self.github.project_number),
                "--owner",
                self.owner,
                "--format",
                "json",
            ],
        )
        status_field = next(
            (
                entry
                for entry in (fields or {}).get("fields") or []
                if entry.get("name") == "Status"
            ),
            None,
        )
        if status_field is None:
            raise TaskSourceError("Project has no Status field")
        self._project_meta = {
            "project_id": project["id"],
            "field_id": status_field["id"],
            "options": {
                option["name"]: option["id"] for option in status_field.get("options") or []
            },
        }
        return self._project_meta

    def _item_id(self, task: Task) -> str:
        if task.item_id:
            return task.item_id
        for item in self._items():
            if int((item.get("content") or {}).get("number", -1)) == task.number:
                task.item_id = item["id"]
                return item["id"]
        issue_url = task.url or f"https://github.com/{self.github.repo}/issues/{task.number}"
        added = self._gh_json(
            [
                "project",
                "item-add",
                str(self.github.project_number),
                "--owner",
                self.owner,
                "--url",
                issue_url,
                "--format",
                "json",
            ],
        )
        item_id = (added or {}).get("id")
        if not item_id:
            raise TaskSourceError(f"Issue #{task.number} is not on project board")
        task.item_id = item_id
        return item_id

    def move_task(self, task: Task, column: str) -> None:
        meta = self._metadata()
        option_id = meta["options"].get(column)
        if option_id is None:
            raise TaskSourceError(f"Status option {column!r} not found on project board")
        self._runner(
            [
                "project",
                "item-edit",
                "--project-id",
                meta["project_id"],
                "--id",
                self._item_id(task),
                "--field-id",
                meta["field_id"],
                "--single-select-option-id",
                option_id,
            ],
        )
        task.column = column
        logger.info("Moved #%s to %s", task.number, column)
