"""Branch-per-task and pull request helpers.

Every git failure here is a ``GitOperationWarning``: it is logged and the
operation is bypassed, never allowed to fail the task.
"""

from __future__ import annotations

import logging
import os
import re
import shutil
import subprocess
from pathlib import Path

from .console import log_success
from .errors import GitOperationWarning

logger = logging.getLogger(__name__)

BRANCH_NAMESPACE = "ralph"
SLUG_MAX_LENGTH = 50
AUTOSTASH_MESSAGE = "ralph-autostash"
DEFAULT_BASE_BRANCH = "main"
DEFAULT_PR_BODY = "Automated implementation by Ralph"


def slugify(text: str, max_length: int = SLUG_MAX_LENGTH) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", text.lower()).strip("-")
    return slug[:max_length].strip("-")


def branch_name_for(task_text: str) -> str:
    """Deterministic branch name for a task: ``ralph/<slug>``."""
    return f"{BRANCH_NAMESPACE}/{slugify(task_text) or 'task'}"


def _run(argv: list[str], cwd: Path | None = None) -> subprocess.CompletedProcess[str]:
    env = os.environ.copy()
    env.setdefault("GIT_TERMINAL_PROMPT", "0")
    try:
        return subprocess.run(
            argv,
            cwd=str(cwd) if cwd else None,
            check=False,
            capture_output=True,
            text=True,
            env=env,
        )
    except FileNotFoundError as err:
        return subprocess.CompletedProcess(argv, returncode=127, stdout="", stderr=f"command not found: {err.filename}")


def run_git(repo: Path, *args: str) -> subprocess.CompletedProcess[str]:
    return _run(["git", *args], cwd=repo)


def merged_output(cp: subprocess.CompletedProcess[str]) -> str:
    return ((cp.stdout or "") + "\n" + (cp.stderr or "")).strip()


def detect_head_branch(root: Path) -> str:
    cp = run_git(root, "rev-parse", "--abbrev-ref", "HEAD")
    if cp.returncode != 0:
        raise GitOperationWarning(f"Unable to detect current branch: {merged_output(cp)}")
    branch = cp.stdout.strip()
    if not branch:
        raise GitOperationWarning("Current branch is empty.")
    return branch


def _extract_url(text: str) -> str:
    match = re.search(r"https://github\.com/[^\s]+", text)
    if not match:
        # GitHub Enterprise hosts print their own domain.
        match = re.search(r"https?://[^\s]+/pull/\d+", text) or re.search(r"https?://[^\s]+", text)
    if not match:
        raise GitOperationWarning("Unable to parse GitHub URL from command output.")
    return match.group(0).rstrip(")")


def _gh_available() -> bool:
    return shutil.which("gh") is not None


def is_dirty(path: Path) -> bool:
    cp = run_git(path, "status", "--porcelain")
    return cp.returncode == 0 and bool(cp.stdout.strip())


class BranchManager:
    """Creates one branch per task and optionally opens a PR for it."""

    def __init__(
        self,
        repo: Path,
        *,
        enabled: bool = False,
        base_branch: str = "",
        create_pr: bool = False,
        draft_pr: bool = False,
    ) -> None:
        self.repo = Path(repo)
        self.enabled = enabled
        self.base_branch = base_branch
        self.create_pr = create_pr
        self.draft_pr = draft_pr

    def resolve_base_branch(self) -> str:
        if not self.base_branch:
            try:
                self.base_branch = detect_head_branch(self.repo)
            except GitOperationWarning as warn:
                logger.debug("%s; falling back to %s", warn, DEFAULT_BASE_BRANCH)
                self.base_branch = DEFAULT_BASE_BRANCH
            logger.debug("Using base branch: %s", self.base_branch)
        return self.base_branch

    def _stash_top(self) -> str:
        cp = run_git(self.repo, "stash", "list", "-1", "--format=%gd %s")
        return cp.stdout.strip() if cp.returncode == 0 else ""

    def _stash(self) -> bool:
        before = self._stash_top()
        run_git(self.repo, "stash", "push", "-m", AUTOSTASH_MESSAGE)
        after = self._stash_top()
        return bool(after) and after != before and AUTOSTASH_MESSAGE in after

    def create_task_branch(self, task_text: str) -> str:
        """Stash, sync base, create-or-switch the task branch, restore the stash.

        Each step is best effort: an unreachable remote or an existing
        branch does not stop the sequence.
        """
        branch = branch_name_for(task_text)
        base = self.resolve_base_branch()
        logger.debug("Creating branch: %s from %s", branch, base)

        stashed = self._stash()
        for args in (("checkout", base), ("pull", "origin", base)):
            cp = run_git(self.repo, *args)
            if cp.returncode != 0:
                logger.debug("git %s failed (ignored): %s", " ".join(args), merged_output(cp))
        created = run_git(self.repo, "checkout", "-b", branch)
        if created.returncode != 0:
            switched = run_git(self.repo, "checkout", branch)
            if switched.returncode != 0:
                logger.warning("Unable to switch to branch %s: %s", branch, merged_output(switched))
        if stashed:
            popped = run_git(self.repo, "stash", "pop")
            if popped.returncode != 0:
                logger.warning("Could not restore autostash on %s: %s", branch, merged_output(popped))
        return branch

    def push_branch(self, branch: str) -> None:
        cp = run_git(self.repo, "push", "-u", "origin", branch)
        if cp.returncode != 0:
            raise GitOperationWarning(f"Failed to push branch {branch}: {merged_output(cp)}")

    def open_pr(self, branch: str, title: str, body: str) -> str:
        argv = [
            "gh",
            "pr",
            "create",
            "--base",
            self.resolve_base_branch(),
            "--head",
            branch,
            "--title",
            title,
            "--body",
            body,
        ]
        if self.draft_pr:
            argv.append("--draft")
        cp = _run(argv, cwd=self.repo)
        if cp.returncode != 0:
            raise GitOperationWarning(f"Failed to create PR for {branch}: {merged_output(cp)}")
        return _extract_url(cp.stdout)

    def create_pull_request(self, branch: str, task_text: str, body: str = DEFAULT_PR_BODY) -> str | None:
        """Push then open a PR; returns the URL, or None after logging a warning."""
        logger.info("Creating pull request for %s...", branch)
        try:
            self.push_branch(branch)
            url = self.open_pr(branch, task_text, body)
        except GitOperationWarning as warn:
            logger.warning("%s", warn)
            return None
        log_success(logger, "PR created: %s", url)
        return url

    def return_to_base(self) -> None:
        if not self.enabled:
            return
        cp = run_git(self.repo, "checkout", self.resolve_base_branch())
        if cp.returncode != 0:
            logger.warning("Unable to return to %s: %s", self.base_branch, merged_output(cp))
