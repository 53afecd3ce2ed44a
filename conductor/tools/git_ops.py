"""Git operations for Conductor workspaces.

Provides clone, branch, diff inspection, commit and push on a task's
checkout. Every call is list-form so commit messages and branch names are
never interpreted by a shell.
"""

from __future__ import annotations

import logging
from typing import Optional

from conductor.core.exceptions import GitOperationError
from conductor.security.policy import SecurityPolicy
from conductor.tools.shell import ShellResult, run_command

logger = logging.getLogger("conductor.tools.git_ops")


def _git(
    repo_path: str,
    *args: str,
    security_policy: Optional[SecurityPolicy] = None,
    timeout: Optional[float] = None,
) -> ShellResult:
    return run_command(["git", *args], cwd=repo_path, timeout=timeout, security_policy=security_policy)


def clone(repo_url: str, dest: str, cwd: str, security_policy: Optional[SecurityPolicy] = None) -> None:
    """Shallow-clone ``repo_url`` into ``dest``.

    Raises:
        GitOperationError: If the clone fails.
    """
    result = run_command(
        ["git", "clone", "--origin", "origin", "--depth", "1", "--no-tags", repo_url, dest],
        cwd=cwd,
        timeout=600,
        security_policy=security_policy,
    )
    if not result.success:
        raise GitOperationError(f"git clone failed: {result.stderr.strip()}")
    logger.info("Cloned %s into %s", repo_url, dest)


def is_git_repo(path: str, security_policy: Optional[SecurityPolicy] = None) -> bool:
    """Check if the given path is inside a git repository."""
    result = _git(path, "rev-parse", "--is-inside-work-tree", security_policy=security_policy)
    return result.success and result.stdout.strip() == "true"


def get_diff(repo_path: str, base: str = "HEAD", security_policy: Optional[SecurityPolicy] = None) -> str:
    """Working tree (staged and unstaged) against ``base``."""
    result = _git(repo_path, "diff", base, security_policy=security_policy)
    if not result.success and base != "HEAD":
        logger.debug("git diff %s failed in %s; diffing against HEAD", base, repo_path)
        result = _git(repo_path, "diff", "HEAD", security_policy=security_policy)
    if not result.success:
        # No commits yet: fall back to the index-vs-worktree diff
        result = _git(repo_path, "diff", security_policy=security_policy)
    return result.stdout


def get_diff_stat(repo_path: str, security_policy: Optional[SecurityPolicy] = None) -> str:
    """``git diff --stat`` of the working tree, trimmed."""
    result = _git(repo_path, "diff", "--stat", security_policy=security_policy)
    return result.stdout.strip()


def changed_files(repo_path: str, security_policy: Optional[SecurityPolicy] = None) -> list[str]:
    """Paths changed relative to HEAD plus untracked files, repo-relative.

    Uses porcelain status so staged, unstaged and untracked edits are all
    reported; renames report both the old and the new path.
    """
    result = _git(
        repo_path, "status", "--porcelain", "--untracked-files=all",
        security_policy=security_policy,
    )
    if not result.success:
        raise GitOperationError(f"git status failed: {result.stderr.strip()}")

    paths: list[str] = []
    for line in result.stdout.splitlines():
        if len(line) < 4:
            continue
        entry = line[3:]
        for part in entry.split(" -> "):
            path = part.strip().strip('"')
            if path and path not in paths:
                paths.append(path)
    return paths


def current_branch(repo_path: str, security_policy: Optional[SecurityPolicy] = None) -> str:
    result = _git(repo_path, "rev-parse", "--abbrev-ref", "HEAD", security_policy=security_policy)
    if not result.success:
        raise GitOperationError(f"git rev-parse failed: {result.stderr.strip()}")
    return result.stdout.strip()


def create_branch(repo_path: str, branch_name: str, security_policy: Optional[SecurityPolicy] = None) -> str:
    """Create and switch to ``branch_name``; reuse it if it already exists."""
    result = _git(repo_path, "switch", "-c", branch_name, security_policy=security_policy)
    if not result.success:
        if "already exists" in result.stderr:
            result = _git(repo_path, "switch", branch_name, security_policy=security_policy)
        if not result.success:
            raise GitOperationError(f"git switch -c {branch_name} failed: {result.stderr.strip()}")
    logger.info("On branch %s", branch_name)
    return branch_name


def commit_all(
    repo_path: str,
    message: str,
    security_policy: Optional[SecurityPolicy] = None,
    author: Optional[tuple[str, str]] = None,
) -> Optional[str]:
    """Stage everything and commit.

    Returns:
        Short commit hash, or None when there was nothing to commit.

    Raises:
        GitOperationError: If staging or committing fails.
    """
    message = message.strip()
    if not message:
        raise GitOperationError("Commit message must not be empty")

    result = _git(repo_path, "add", "-A", security_policy=security_policy)
    if not result.success:
        raise GitOperationError(f"git add -A failed: {result.stderr.strip()}")

    status = _git(repo_path, "status", "--porcelain", security_policy=security_policy)
    if not status.stdout.strip():
        logger.info("Nothing to commit in %s", repo_path)
        return None

    identity: list[str] = []
    if author:
        identity = ["-c", f"user.name={author[0]}", "-c", f"user.email={author[1]}"]
    result = _git(repo_path, *identity, "commit", "-m", message, security_policy=security_policy)
    if not result.success:
        raise GitOperationError(f"git commit failed: {result.stderr.strip() or result.stdout.strip()}")

    hash_result = _git(repo_path, "rev-parse", "--short", "HEAD", security_policy=security_policy)
    commit_hash = hash_result.stdout.strip()
    logger.info("Committed: %s", commit_hash)
    return commit_hash


def push_branch(repo_path: str, security_policy: Optional[SecurityPolicy] = None) -> str:
    """Push the current branch to origin with upstream tracking.

    Raises:
        GitOperationError: On detached HEAD or push failure.
    """
    branch = current_branch(repo_path, security_policy=security_policy)
    if not branch or branch == "HEAD":
        raise GitOperationError("Cannot push detached HEAD. Create a branch first.")
    result = _git(
        repo_path, "push", "--set-upstream", "origin", branch,
        security_policy=security_policy, timeout=300,
    )
    if not result.success:
        raise GitOperationError(f"git push failed: {result.stderr.strip()}")
    logger.info("Pushed %s", branch)
    return branch


def remote_url(repo_path: str, remote: str = "origin", security_policy: Optional[SecurityPolicy] = None) -> str:
    result = _git(repo_path, "remote", "get-url", remote, security_policy=security_policy)
    if not result.success:
        raise GitOperationError(f"git remote get-url {remote} failed: {result.stderr.strip()}")
    return result.stdout.strip()
