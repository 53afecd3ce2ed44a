"""Shared fixtures for Conductor tests.

Collaborators at the process boundary (agent runtime, git checkout,
GitHub) are replaced by small scripted fakes; everything above them is
the real wiring from ComponentFactory.
"""

from __future__ import annotations

from collections import deque
from pathlib import Path
from typing import Callable, Optional

import pytest

from conductor.agents.base import AgentSession, TurnCompletion, TurnHandle, TurnPolicy
from conductor.core.config import AppConfig
from conductor.core.exceptions import PullRequestError, TurnTimeoutError
from conductor.core.factory import ComponentBundle, ComponentFactory
from conductor.orchestrator.task_registry import TaskRegistry
from conductor.tools.shell import ShellResult


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------

FAILING_VERIFY_OUTPUT = "src/app.ts(3,7): error TS2322: Type 'string' is not assignable to type 'number'."

SAMPLE_DIFF = """\
diff --git a/src/app.ts b/src/app.ts
--- a/src/app.ts
+++ b/src/app.ts
@@ -1,2 +1,3 @@
 export const a = 1;
+export const health = () => ({ ok: true });
 export const b = 2;
diff --git a/src/app.test.ts b/src/app.test.ts
--- /dev/null
+++ b/src/app.test.ts
@@ -0,0 +1,2 @@
+import { health } from "./app";
+test("health", () => expect(health().ok).toBe(true));
"""


class FakeWorkspace:
    """In-memory workspace gateway.

    ``green`` decides the outcome of every command run in a task (the
    verify command included); agent fakes flip it to model a fix landing.
    """

    def __init__(self, root: Path, base_branch: str = "main"):
        self.root = root
        self.base_branch = base_branch
        self.green = True
        self.changed: list[str] = ["src/app.ts", "src/app.test.ts"]
        self.fingerprint = "fp-0"
        self.diff_text = SAMPLE_DIFF
        self.branches: dict[str, str] = {}
        self.commits: list[str] = []
        self.pushed: list[str] = []
        self.commands: list[list[str]] = []

    def workspace_path(self, task_id: str) -> Path:
        return self.root / task_id

    def create_workspace(self, task_id: str) -> str:
        path = self.workspace_path(task_id)
        path.mkdir(parents=True, exist_ok=True)
        return str(path)

    def create_branch(self, task_id: str, branch_name: Optional[str] = None) -> str:
        name = branch_name or f"ai/20260101000000-{task_id}"
        self.branches[task_id] = name
        return name

    def current_branch(self, task_id: str) -> str:
        return self.branches.get(task_id, self.base_branch)

    def run(self, task_id, argv, allow_nonzero=True, timeout=None) -> ShellResult:
        self.commands.append(list(argv))
        if self.green:
            return ShellResult(command=" ".join(argv), return_code=0, stdout="all checks passed\n", stderr="")
        return ShellResult(command=" ".join(argv), return_code=1, stdout=FAILING_VERIFY_OUTPUT + "\n", stderr="")

    def changed_files(self, task_id: str) -> list[str]:
        return list(self.changed)

    def diff_stat(self, task_id: str) -> str:
        return f" {len(self.changed)} files changed ({self.fingerprint})"

    def diff_fingerprint(self, task_id: str) -> str:
        return self.fingerprint

    def diff(self, task_id: str, base: str = "HEAD") -> str:
        return self.diff_text

    def branch_diff(self, task_id: str) -> str:
        return self.diff_text

    def commit_all(self, task_id: str, message: str) -> Optional[str]:
        if not self.changed:
            return None
        self.commits.append(message)
        return f"abc{len(self.commits):04d}"

    def push_branch(self, task_id: str) -> str:
        self.pushed.append(task_id)
        return self.current_branch(task_id)

    def origin_url(self, task_id: str) -> str:
        return "git@github.com:acme/widgets.git"


class FakeSession(AgentSession):
    """Scripted agent runtime.

    ``statuses`` are consumed one per turn ("completed", "failed", or
    "timeout" to raise TurnTimeoutError); once empty every turn completes.
    ``on_turn(n, prompt)`` runs when turn ``n`` (1-based) is submitted.
    """

    def __init__(
        self,
        statuses: Optional[list[str]] = None,
        on_turn: Optional[Callable[[int, str], None]] = None,
    ):
        self.statuses = deque(statuses or [])
        self.on_turn = on_turn
        self.prompts: list[str] = []
        self.threads = 0
        self.stopped = 0
        self.interrupted: list[str] = []

    def start_thread(self, cwd: str, policy: TurnPolicy) -> str:
        self.threads += 1
        return f"thread-{self.threads}"

    def submit_turn(self, thread_id, prompt, policy, cwd=None) -> TurnHandle:
        self.prompts.append(prompt)
        number = len(self.prompts)
        if self.on_turn is not None:
            self.on_turn(number, prompt)
        return TurnHandle(thread_id=thread_id, turn_id=f"turn-{number}")

    def await_completion(self, handle: TurnHandle, timeout_seconds: float) -> TurnCompletion:
        status = self.statuses.popleft() if self.statuses else "completed"
        if status == "timeout":
            raise TurnTimeoutError(f"Timed out waiting for notification: turn/completed ({handle.turn_id})")
        return TurnCompletion(
            thread_id=handle.thread_id,
            turn_id=handle.turn_id,
            status=status,
            error_message="agent gave up" if status == "failed" else None,
        )

    def interrupt_turn(self, handle: TurnHandle) -> None:
        self.interrupted.append(handle.turn_id)

    def stop(self) -> None:
        self.stopped += 1

    @property
    def turns(self) -> int:
        return len(self.prompts)


class FakeGitHub:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.requests: list[dict] = []

    def create_pull_request(self, origin_url: str, head: str, base: str, title: str, body: str) -> str:
        if self.fail:
            raise PullRequestError("GitHub PR creation failed (422): Validation Failed")
        self.requests.append({"origin": origin_url, "head": head, "base": base, "title": title, "body": body})
        return f"https://github.com/acme/widgets/pull/{len(self.requests)}"

    def close(self) -> None:
        pass


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def app_config(tmp_path) -> AppConfig:
    config = AppConfig()
    config.workspace.root = str(tmp_path / "workspaces")
    config.state.state_dir = str(tmp_path / "state")
    return config


@pytest.fixture
def fake_workspace(tmp_path) -> FakeWorkspace:
    return FakeWorkspace(tmp_path / "workspaces")


@pytest.fixture
def fake_session() -> FakeSession:
    return FakeSession()


@pytest.fixture
def fake_github() -> FakeGitHub:
    return FakeGitHub()


@pytest.fixture
def registry(tmp_path) -> TaskRegistry:
    return TaskRegistry(tmp_path / "state" / "tasks.json")


@pytest.fixture
def make_bundle(app_config, fake_workspace, fake_github):
    """Build a fully wired bundle around the fakes; closes every bundle afterwards."""
    bundles: list[ComponentBundle] = []

    def _make(session: Optional[FakeSession] = None, config: Optional[AppConfig] = None) -> ComponentBundle:
        bundle = ComponentFactory.create(
            config=config or app_config,
            agent_session=session or FakeSession(),
            workspace=fake_workspace,
            github=fake_github,
        )
        bundles.append(bundle)
        return bundle

    yield _make
    for bundle in bundles:
        ComponentFactory.close(bundle)
