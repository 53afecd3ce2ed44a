"""Per-task workspace gateway.

Each task owns one checkout under the workspaces root. The manager
materializes it, runs allow-listed commands inside it, and exposes the
diff views the control loops need (changed files, a stable fingerprint,
the full diff) plus branch/commit/push for finalization.
"""

from __future__ import annotations

import logging
import re
from datetime import UTC, datetime
from pathlib import Path
from typing import Callable, Optional

from conductor.core.config import WorkspaceConfig
from conductor.core.exceptions import WorkspaceError
from conductor.security.policy import SecurityPolicy
from conductor.tools import git_ops
from conductor.tools.shell import ShellResult, run_command

logger = logging.getLogger("conductor.tools.workspace")

_TASK_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,127}$")
_SLUG_RE = re.compile(r"[^a-z0-9]+")


def slugify(text: str, max_length: int = 40) -> str:
    slug = _SLUG_RE.sub("-", text.lower()).strip("-")
    return slug[:max_length].strip("-") or "task"


def branch_name_for(task_id: str, prefix: str = "ai/", now: Optional[datetime] = None) -> str:
    """``ai/<UTC yyyymmddHHMMSS>-<slug of task id, 40 chars>``."""
    stamp = (now or datetime.now(UTC)).strftime("%Y%m%d%H%M%S")
    return f"{prefix}{stamp}-{slugify(task_id)}"


class WorkspaceManager:
    """Workspace gateway backed by git checkouts on local disk."""

    def __init__(
        self,
        config: Optional[WorkspaceConfig] = None,
        security_policy: Optional[SecurityPolicy] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ):
        self.config = config or WorkspaceConfig()
        self.root = Path(self.config.root).resolve()
        self.security_policy = security_policy
        self.clock = clock

    # -------------------------------------------------------------------
    # Materialization
    # -------------------------------------------------------------------

    def workspace_path(self, task_id: str) -> Path:
        if not _TASK_ID_RE.match(task_id):
            raise WorkspaceError(f"Unsafe task id for a workspace path: {task_id!r}")
        return self.root / task_id

    def create_workspace(self, task_id: str) -> str:
        """Return the task's checkout, cloning it on first use.

        An existing non-empty directory is reused only when it is a git
        checkout.
        """
        path = self.workspace_path(task_id)
        self.root.mkdir(parents=True, exist_ok=True)

        if path.exists():
            if not path.is_dir():
                raise WorkspaceError(f"Workspace path is not a directory: {path}")
            if any(path.iterdir()):
                if not (path / ".git").exists():
                    raise WorkspaceError(
                        f"Workspace path already exists and is not a git checkout: {path}"
                    )
                return str(path)

        if not self.config.repo_url:
            raise WorkspaceError("workspace.repo_url is not configured; cannot clone")
        git_ops.clone(self.config.repo_url, str(path), cwd=str(self.root), security_policy=self.security_policy)
        return str(path)

    # -------------------------------------------------------------------
    # Commands
    # -------------------------------------------------------------------

    def run(
        self,
        task_id: str,
        argv: list[str],
        allow_nonzero: bool = True,
        timeout: Optional[float] = None,
    ) -> ShellResult:
        """Run ``argv`` inside the task checkout.

        A command that exceeds its timeout is killed and returned with
        ``timed_out`` set instead of raising.

        Raises:
            WorkspaceError: If ``allow_nonzero`` is False and the command fails.
        """
        cwd = str(self.workspace_path(task_id))
        result = run_command(
            argv,
            cwd=cwd,
            timeout=timeout or self.config.command_timeout_seconds,
            security_policy=self.security_policy,
            raise_on_timeout=False,
        )
        if not allow_nonzero and not result.success:
            raise WorkspaceError(
                f"Command failed in {task_id} (rc={result.return_code}): {result.command}\n"
                f"{result.stderr.strip()}"
            )
        return result

    # -------------------------------------------------------------------
    # Diff views
    # -------------------------------------------------------------------

    def changed_files(self, task_id: str) -> list[str]:
        return git_ops.changed_files(str(self.workspace_path(task_id)), security_policy=self.security_policy)

    def diff_stat(self, task_id: str) -> str:
        return git_ops.get_diff_stat(str(self.workspace_path(task_id)), security_policy=self.security_policy)

    def diff_fingerprint(self, task_id: str) -> str:
        """Stable summary of the current diff: stat plus every changed path.

        Untracked files never show up in ``git diff --stat``, so the path
        list keeps new-file-only edits from looking like no progress.
        """
        stat = self.diff_stat(task_id)
        paths = sorted(self.changed_files(task_id))
        return "\n".join([stat, "--", *paths])

    def diff(self, task_id: str, base: str = "HEAD") -> str:
        return git_ops.get_diff(str(self.workspace_path(task_id)), base=base, security_policy=self.security_policy)

    def branch_diff(self, task_id: str) -> str:
        """Everything the task changed relative to the base branch, committed or not."""
        return self.diff(task_id, base=f"origin/{self.config.base_branch}")

    # -------------------------------------------------------------------
    # Finalization
    # -------------------------------------------------------------------

    def create_branch(self, task_id: str, branch_name: Optional[str] = None) -> str:
        name = branch_name or branch_name_for(task_id, self.config.branch_prefix, self.clock())
        return git_ops.create_branch(str(self.workspace_path(task_id)), name, security_policy=self.security_policy)

    def commit_all(self, task_id: str, message: str) -> Optional[str]:
        return git_ops.commit_all(
            str(self.workspace_path(task_id)),
            message,
            security_policy=self.security_policy,
            author=(self.config.git_user_name, self.config.git_user_email),
        )

    def current_branch(self, task_id: str) -> str:
        return git_ops.current_branch(str(self.workspace_path(task_id)), security_policy=self.security_policy)

    def push_branch(self, task_id: str) -> str:
        return git_ops.push_branch(str(self.workspace_path(task_id)), security_policy=self.security_policy)

    def origin_url(self, task_id: str) -> str:
        return git_ops.remote_url(str(self.workspace_path(task_id)), security_policy=self.security_policy)
