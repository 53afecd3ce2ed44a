"""Tests for conductor/tools/workspace.py and git_ops.py against real git repositories."""

import shutil
import subprocess
from datetime import UTC, datetime

import pytest

from conductor.core.config import WorkspaceConfig
from conductor.core.exceptions import GitOperationError, WorkspaceError
from conductor.security.policy import SecurityPolicy
from conductor.tools import git_ops
from conductor.tools.workspace import WorkspaceManager, branch_name_for, slugify

pytestmark = pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")

FIXED_NOW = datetime(2026, 1, 2, 3, 4, 5, tzinfo=UTC)


def _git(cwd, *args):
    subprocess.run(
        ["git", "-c", "user.name=Seed", "-c", "user.email=seed@example.com", *args],
        cwd=cwd, check=True, capture_output=True, text=True,
    )


@pytest.fixture
def origin(tmp_path):
    """Bare repository with one commit on main."""
    seed = tmp_path / "seed"
    seed.mkdir()
    _git(seed, "init", "-b", "main")
    (seed / "app.txt").write_text("hello\n", encoding="utf-8")
    _git(seed, "add", "-A")
    _git(seed, "commit", "-m", "initial")
    bare = tmp_path / "origin.git"
    _git(tmp_path, "clone", "--bare", str(seed), str(bare))
    return bare


@pytest.fixture
def manager(tmp_path, origin):
    root = tmp_path / "workspaces"
    config = WorkspaceConfig(root=str(root), repo_url=f"file://{origin}")
    policy = SecurityPolicy(workspace_dir=root.resolve())
    return WorkspaceManager(config, security_policy=policy, clock=lambda: FIXED_NOW)


class TestNaming:
    def test_slugify(self):
        assert slugify("Add a Health endpoint!") == "add-a-health-endpoint"
        assert slugify("***") == "task"
        assert len(slugify("x" * 100)) == 40

    def test_branch_name(self):
        assert branch_name_for("My Task", now=FIXED_NOW) == "ai/20260102030405-my-task"
        assert branch_name_for("t1", prefix="bot/", now=FIXED_NOW) == "bot/20260102030405-t1"


class TestMaterialization:
    def test_clone_and_reuse(self, manager):
        path = manager.create_workspace("t1")
        assert (manager.root / "t1" / "app.txt").read_text(encoding="utf-8") == "hello\n"
        assert manager.create_workspace("t1") == path

    def test_unsafe_task_id(self, manager):
        with pytest.raises(WorkspaceError, match="Unsafe task id"):
            manager.workspace_path("../escape")

    def test_existing_non_git_directory(self, manager):
        stray = manager.root / "t1"
        stray.mkdir(parents=True)
        (stray / "notes.txt").write_text("x", encoding="utf-8")
        with pytest.raises(WorkspaceError, match="not a git checkout"):
            manager.create_workspace("t1")

    def test_missing_repo_url(self, tmp_path):
        with pytest.raises(WorkspaceError, match="repo_url"):
            WorkspaceManager(WorkspaceConfig(root=str(tmp_path / "ws"))).create_workspace("t1")


class TestDiffViews:
    def test_changed_files_and_fingerprint(self, manager):
        manager.create_workspace("t1")
        assert manager.changed_files("t1") == []
        before = manager.diff_fingerprint("t1")

        checkout = manager.workspace_path("t1")
        (checkout / "app.txt").write_text("hello\nworld\n", encoding="utf-8")
        (checkout / "new.txt").write_text("new\n", encoding="utf-8")

        assert sorted(manager.changed_files("t1")) == ["app.txt", "new.txt"]
        assert manager.diff_fingerprint("t1") != before
        assert "+world" in manager.diff("t1")
        assert "app.txt" in manager.diff_stat("t1")

    def test_untracked_file_changes_fingerprint(self, manager):
        manager.create_workspace("t1")
        before = manager.diff_fingerprint("t1")
        (manager.workspace_path("t1") / "only-new.txt").write_text("x\n", encoding="utf-8")
        assert manager.diff_fingerprint("t1") != before

    def test_run_inside_checkout(self, manager):
        manager.create_workspace("t1")
        result = manager.run("t1", ["git", "rev-parse", "--show-toplevel"])
        assert result.success
        assert result.stdout.strip().endswith("t1")

    def test_run_failure_raises_when_required(self, manager):
        manager.create_workspace("t1")
        with pytest.raises(WorkspaceError, match="Command failed in t1"):
            manager.run("t1", ["git", "checkout", "no-such-branch"], allow_nonzero=False)


class TestFinalization:
    def test_branch_commit_push(self, manager, origin):
        manager.create_workspace("t1")
        branch = manager.create_branch("t1")
        assert branch == "ai/20260102030405-t1"
        assert manager.current_branch("t1") == branch

        (manager.workspace_path("t1") / "feature.txt").write_text("feature\n", encoding="utf-8")
        commit_hash = manager.commit_all("t1", "feat: add feature")
        assert commit_hash
        assert manager.commit_all("t1", "feat: nothing") is None

        assert manager.push_branch("t1") == branch
        remote_branches = subprocess.run(
            ["git", "branch", "--list", branch], cwd=origin, capture_output=True, text=True, check=True,
        ).stdout
        assert branch in remote_branches

        assert "+feature" in manager.branch_diff("t1")
        assert manager.origin_url("t1") == f"file://{origin}"

    def test_existing_branch_is_reused(self, manager):
        manager.create_workspace("t1")
        manager.create_branch("t1", "ai/reuse")
        git_ops.create_branch(str(manager.workspace_path("t1")), "scratch")
        assert manager.create_branch("t1", "ai/reuse") == "ai/reuse"
        assert manager.current_branch("t1") == "ai/reuse"

    def test_empty_commit_message(self, manager):
        manager.create_workspace("t1")
        with pytest.raises(GitOperationError):
            manager.commit_all("t1", "  ")

    def test_push_detached_head(self, manager):
        manager.create_workspace("t1")
        checkout = str(manager.workspace_path("t1"))
        subprocess.run(["git", "checkout", "--detach"], cwd=checkout, check=True, capture_output=True)
        with pytest.raises(GitOperationError, match="detached HEAD"):
            manager.push_branch("t1")

    def test_is_git_repo(self, manager, tmp_path):
        manager.create_workspace("t1")
        assert git_ops.is_git_repo(str(manager.workspace_path("t1")))
        plain = tmp_path / "plain"
        plain.mkdir()
        assert not git_ops.is_git_repo(str(plain))
