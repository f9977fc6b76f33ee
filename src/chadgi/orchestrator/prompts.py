"""Task prompt templates for implementation and exploration runs."""

from __future__ import annotations

import string
from pathlib import Path

from chadgi.config import Settings
from chadgi.orchestrator.models import Task

TEMPLATE_FILE_NAME = "chadgi-task.md"

DEFAULT_TASK_TEMPLATE = """\
You are working on GitHub issue #$issue_number in $repo.

Title: $issue_title
Category: $category
Branch: $branch (based on $base_branch)
Iteration: $iteration of $max_iterations

Issue description:
$issue_body

$feedback
Instructions:
1. Implement the change described in the issue on the current branch.
2. Keep the change focused; run the project's tests and build locally.
3. Commit your work with clear messages. Do not push and do not open a pull request.
4. When the implementation is ready for review, print <promise>$ready_promise</promise>.
5. When the implementation is complete and verified, print <promise>$completion_promise</promise>.
"""

EXPLORE_TEMPLATE = """\
Dry run for GitHub issue #$issue_number in $repo: $issue_title

$issue_body

Do not modify any files. Explore the repository and describe the plan you would follow
to implement this issue: files to change, tests to add, and risks.
"""


def load_task_template(settings: Settings) -> str:
    """Template from ``agent.template`` or ``.chadgi/chadgi-task.md``, else the built-in one."""

    candidates: list[Path] = []
    if settings.agent.template:
        template_path = Path(settings.agent.template)
        if not template_path.is_absolute():
            template_path = settings.chadgi_dir / template_path
        candidates.append(template_path)
    candidates.append(settings.chadgi_dir / TEMPLATE_FILE_NAME)
    for candidate in candidates:
        if candidate.is_file():
            return candidate.read_text("utf-8")
    return DEFAULT_TASK_TEMPLATE


def render_task_prompt(  # noqa: PLR0913
    template: str,
    *,
    task: Task,
    settings: Settings,
    branch: str,
    iteration: int,
    feedback: str = "",
) -> str:
    """Substitute ``$name`` / ``${name}`` placeholders; unknown ones are left untouched."""

    values = {
        "issue_number": str(task.number),
        "issue_title": task.title,
        "issue_body": task.body or "(no description)",
        "issue_url": task.url,
        "category": task.category or "unspecified",
        "repo": settings.github.repo,
        "branch": branch,
        "base_branch": settings.branch.base,
        "iteration": str(iteration),
        "max_iterations": str(settings.iteration.max_iterations),
        "completion_promise": settings.iteration.completion_promise,
        "ready_promise": settings.iteration.ready_promise,
        "feedback": feedback,
    }
    return string.Template(template).safe_substitute(values)


def render_explore_prompt(*, task: Task, settings: Settings) -> str:
    return render_task_prompt(
        EXPLORE_TEMPLATE,
        task=task,
        settings=settings,
        branch="",
        iteration=0,
    )


def verification_feedback(output: str, *, max_chars: int = 4000) -> str:
    """Feedback block fed into the next iteration after failed verification."""

    trimmed = output[-max_chars:] if len(output) > max_chars else output
    return (
        "Previous iteration failed verification. Fix these errors before continuing:\n"
        f"```\n{trimmed.strip()}\n```\n"
    )
