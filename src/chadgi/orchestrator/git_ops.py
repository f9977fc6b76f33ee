"""Git and pull-request operations used by the task executor and replay.

Methods raise :class:`GitError` on failure (not ClickException), so they can
be used from both the session loop and control commands.
"""

from __future__ import annotations

import json
import logging
import re
import subprocess
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)


class GitError(RuntimeError):
    """Git or gh command failed; message carries the command stderr."""


def slugify(text: str, max_len: int = 30) -> str:
    """Turn a title into a branch-safe slug."""
    slug = re.sub(r"[^a-z0-9]+", "-", text.lower()).strip("-")
    return slug[:max_len].rstrip("-")


def branch_name(prefix: str, issue_number: int, title: str) -> str:
    slug = slugify(title)
    return f"{prefix}{issue_number}-{slug}" if slug else f"{prefix}{issue_number}"


@dataclass(slots=True)
class MergeResult:
    merged: bool
    strategy: str | None
    output: str


class GitWorkspace:
    """Git working copy plus the gh pull-request commands that act on it."""

    def __init__(self, repo_dir: Path, *, remote: str = "origin") -> None:
        self.repo_dir = repo_dir
        self.remote = remote

    def run(self, *args: str, check: bool = True) -> subprocess.CompletedProcess[str]:
        return self._run(["git", *args], check=check)

    def gh(self, *args: str, check: bool = True) -> subprocess.CompletedProcess[str]:
        return self._run(["gh", *args], check=check)

    def _run(self, argv: list[str], *, check: bool) -> subprocess.CompletedProcess[str]:
        logger.debug("Running %s", " ".join(argv))
        try:
            return subprocess.run(  # noqa: S603
                argv,
                cwd=self.repo_dir,
                check=check,
                capture_output=True,
                text=True,
            )
        except subprocess.CalledProcessError as e:
            output = (e.stderr or e.stdout or "").strip()
            raise GitError(f"{argv[0]} {argv[1]} failed: {output}") from None
        except FileNotFoundError:
            raise GitError(f"{argv[0]} is not installed") from None

    # -- branches ---------------------------------------------------------

    def current_branch(self) -> str:
        return self.run("rev-parse", "--abbrev-ref", "HEAD").stdout.strip()

    def local_branch_exists(self, branch: str) -> bool:
        result = self.run("rev-parse", "--verify", "--quiet", f"refs/heads/{branch}", check=False)
        return result.returncode == 0

    def remote_branch_exists(self, branch: str) -> bool:
        result = self.run("ls-remote", "--heads", self.remote, branch, check=False)
        return result.returncode == 0 and bool(result.stdout.strip())

    def list_branches(self, pattern: str) -> list[str]:
        output = self.run("branch", "--list", pattern, "--format=%(refname:short)").stdout
        return [line.strip() for line in output.splitlines() if line.strip()]

    def prepare_branch(self, branch: str, base: str) -> bool:
        """Check out ``branch``; create it from the freshest ``base`` when missing.

        Returns ``True`` when an existing branch was reused.
        """

        if self.local_branch_exists(branch):
            self.run("checkout", branch)
            return True
        fetched = self.run("fetch", self.remote, base, check=False).returncode == 0
        start_point = f"{self.remote}/{base}" if fetched else base
        self.run("checkout", "-B", branch, start_point)
        return False

    def checkout_base(self, base: str, *, pull: bool = True) -> None:
        self.run("checkout", base)
        if pull:
            result = self.run("pull", "--ff-only", self.remote, base, check=False)
            if result.returncode != 0:
                logger.warning("Could not pull %s: %s", base, result.stderr.strip())

    def delete_local_branch(self, branch: str) -> bool:
        result = self.run("branch", "-D", branch, check=False)
        if result.returncode != 0:
            logger.warning("Failed to delete branch %s: %s", branch, result.stderr.strip())
        return result.returncode == 0

    def delete_remote_branch(self, branch: str) -> bool:
        result = self.run("push", self.remote, "--delete", branch, check=False)
        if result.returncode != 0:
            logger.warning("Failed to delete remote branch %s: %s", branch, result.stderr.strip())
        return result.returncode == 0

    def rollback(self, branch: str, base: str) -> None:
        """Discard task work: reset the tree, return to ``base`` and drop ``branch``."""

        self.run("reset", "--hard", check=False)
        self.run("clean", "-fd", check=False)
        self.run("checkout", base)
        self.delete_local_branch(branch)

    # -- working tree -----------------------------------------------------

    def has_changes(self) -> bool:
        return bool(self.run("status", "--porcelain").stdout.strip())

    def status_short(self) -> str:
        return self.run("status", "--short", check=False).stdout

    def recent_log(self, count: int = 5) -> str:
        return self.run("log", "--oneline", f"-{count}", check=False).stdout

    def diff(self) -> str:
        """Unstaged plus staged changes against HEAD."""

        unstaged = self.run("diff", "HEAD", check=False).stdout
        staged = self.run("diff", "--cached", check=False).stdout
        return (
            "=== Uncommitted changes (git diff HEAD) ===\n"
            f"{unstaged or '(none)'}\n"
            "=== Staged changes (git diff --cached) ===\n"
            f"{staged or '(none)'}\n"
        )

    def diff_stats(self, base: str) -> tuple[int, int]:
        """Return (files modified, lines changed) between ``base`` and HEAD."""

        result = self.run("diff", "--numstat", f"{base}...HEAD", check=False)
        if result.returncode != 0:
            return 0, 0
        files = 0
        lines = 0
        for line in result.stdout.splitlines():
            parts = line.split("\t")
            if len(parts) < 3:  # noqa: PLR2004
                continue
            files += 1
            for value in parts[:2]:
                if value.isdigit():
                    lines += int(value)
        return files, lines

    def commit_all(self, message: str) -> bool:
        """Stage everything and commit; ``False`` when there was nothing to commit."""

        self.run("add", "-A")
        if not self.run("diff", "--cached", "--quiet", check=False).returncode:
            return False
        self.run("commit", "-m", message)
        return True

    def push(self, branch: str) -> None:
        self.run("push", "-u", self.remote, branch)

    # -- pull requests ----------------------------------------------------

    def find_pull_request(self, branch: str) -> str | None:
        result = self.gh("pr", "view", branch, "--json", "url", check=False)
        if result.returncode != 0:
            return None
        try:
            return json.loads(result.stdout).get("url")
        except json.JSONDecodeError:
            return None

    def open_pull_request(self, *, branch: str, base: str, title: str, body: str) -> str:
        """Create a PR for ``branch`` or return the URL of the one already open."""

        existing = self.find_pull_request(branch)
        if existing:
            return existing
        result = self.gh(
            "pr",
            "create",
            "--head",
            branch,
            "--base",
            base,
            "--title",
            title,
            "--body",
            body,
        )
        return result.stdout.strip().splitlines()[-1] if result.stdout.strip() else ""

    def merge_pull_request(self, pr: str, *, subject: str) -> MergeResult:
        """Squash-merge ``pr``; fall back to a regular merge commit."""

        squash = self.gh(
            "pr",
            "merge",
            pr,
            "--squash",
            "--delete-branch",
            "--subject",
            subject,
            check=False,
        )
        if squash.returncode == 0:
            return MergeResult(merged=True, strategy="squash", output=squash.stdout)
        logger.warning("Squash merge failed for %s, trying regular merge: %s", pr, squash.stderr)
        regular = self.gh("pr", "merge", pr, "--merge", "--delete-branch", check=False)
        if regular.returncode == 0:
            return MergeResult(merged=True, strategy="merge", output=regular.stdout)
        return MergeResult(merged=False, strategy=None, output=f"{squash.stderr}\n{regular.stderr}")
