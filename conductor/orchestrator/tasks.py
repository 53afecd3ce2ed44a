"""Task service: the single facade the CLI and the autonomous runner use.

Wraps the registry, workspace, agent turns and the control loops behind
task-level operations: provision a task, verify it, fix it, review it,
score it, commit and open a pull request. ``run_mutation`` chains all of
them for a one-shot feature request; ``run_parallel`` fans several out.
"""

from __future__ import annotations

import logging
import re
from concurrent.futures import ThreadPoolExecutor
from typing import Optional

from conductor.core.config import AppConfig
from conductor.core.exceptions import ConductorError, DuplicateTaskError, PullRequestError, TurnError
from conductor.core.models import (
    Checkpoint,
    FixLoopResult,
    MutationRequest,
    MutationResult,
    ParallelRunResult,
    ParallelTaskResult,
    QualityScore,
    ReviewLoopResult,
    ReviewResult,
    Task,
    TaskStatus,
    VerifyResult,
)
from conductor.memory.checkpoints import CheckpointStore
from conductor.memory.learnings import FIX_PATTERN, REVIEW_PATTERN, LearningStore
from conductor.orchestrator.cancellation import CancellationToken
from conductor.orchestrator.fix_loop import FixLoop
from conductor.orchestrator.review import DiffReviewer, ReviewLoop
from conductor.orchestrator.task_registry import TaskRegistry
from conductor.orchestrator.turns import TurnRunner
from conductor.orchestrator.verify import Verifier
from conductor.quality.gate import QualityGate
from conductor.tools.github import GitHubClient

logger = logging.getLogger("conductor.orchestrator.tasks")

_WHITESPACE_RE = re.compile(r"\s+")


def summarize_line(text: str, max_length: int) -> str:
    """Collapse whitespace and cut to ``max_length`` with a trailing ellipsis."""
    one_line = _WHITESPACE_RE.sub(" ", text).strip()
    if len(one_line) <= max_length:
        return one_line
    return f"{one_line[: max(1, max_length - 3)].rstrip()}..."


def commit_message_for(objective: str) -> str:
    return f"feat: {summarize_line(objective, 60)}"


def pr_title_for(objective: str) -> str:
    return f"feat: {summarize_line(objective, 72)}"


class TaskService:
    """Task-level operations over the wired components.

    Injected dependencies:
        registry: Task state machine.
        workspace: Per-task checkouts and git operations.
        turns: Agent turn runner (turn budget, guardrail).
        verifier: Verify command runner.
        fix_loop: Verify-fix loop.
        reviewer: Static diff reviewer.
        review_loop: Review-then-fix loop.
        quality_gate: Weighted quality score.
        checkpoints: Checkpoint store.
        learnings: Learning memory.
        github: Pull request client.
        config: Application configuration.
    """

    def __init__(
        self,
        registry: TaskRegistry,
        workspace,
        turns: TurnRunner,
        verifier: Verifier,
        fix_loop: FixLoop,
        reviewer: DiffReviewer,
        review_loop: ReviewLoop,
        quality_gate: QualityGate,
        checkpoints: CheckpointStore,
        learnings: Optional[LearningStore],
        github: GitHubClient,
        config: AppConfig,
    ):
        self.registry = registry
        self.workspace = workspace
        self.turns = turns
        self.verifier = verifier
        self.fix_loop = fix_loop
        self.reviewer = reviewer
        self.review_loop = review_loop
        self.quality_gate = quality_gate
        self.checkpoints = checkpoints
        self.learnings = learnings
        self.github = github
        self.config = config

    # -------------------------------------------------------------------
    # Task CRUD
    # -------------------------------------------------------------------

    def create_task(self, task_id: str, branch_name: Optional[str] = None) -> Task:
        """Provision workspace, feature branch and agent thread for a new task.

        Raises:
            DuplicateTaskError: If the task id is already registered.
        """
        if self.registry.get(task_id) is not None:
            raise DuplicateTaskError(f"Task already exists: {task_id}")
        workspace_path = self.workspace.create_workspace(task_id)
        branch = self.workspace.create_branch(task_id, branch_name)
        self.registry.create_task(branch, task_id=task_id, workspace_path=workspace_path)
        self.turns.ensure_thread(task_id)
        return self.registry.require(task_id)

    def get_task(self, task_id: str) -> Optional[Task]:
        return self.registry.get(task_id)

    def list_tasks(self) -> list[Task]:
        return self.registry.list_tasks()

    def transition_task(self, task_id: str, status: TaskStatus, reason: Optional[str] = None) -> Task:
        return self.registry.transition(task_id, status, reason=reason)

    # -------------------------------------------------------------------
    # Loops
    # -------------------------------------------------------------------

    def run_verify(self, task_id: str) -> VerifyResult:
        self.registry.require(task_id)
        return self.verifier.run(task_id)

    def fix_until_green(
        self,
        task_id: str,
        max_iterations: Optional[int] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> FixLoopResult:
        return self.fix_loop.fix_until_green(task_id, max_iterations=max_iterations, cancel_token=cancel_token)

    def review(self, task_id: str) -> ReviewResult:
        self.registry.require(task_id)
        return self.reviewer.review(task_id)

    def run_review_loop(self, task_id: str, max_rounds: Optional[int] = None) -> ReviewLoopResult:
        self.registry.require(task_id)
        return self.review_loop.run_review_loop(task_id, max_rounds=max_rounds)

    def quality_score(self, task_id: str) -> QualityScore:
        self.registry.require(task_id)
        return self.quality_gate.score(task_id)

    # -------------------------------------------------------------------
    # Checkpoints
    # -------------------------------------------------------------------

    def checkpoint_task(self, task_id: str, description: str) -> Checkpoint:
        task = self.registry.require(task_id)
        return self.checkpoints.checkpoint(task_id, task.thread_id, description)

    def list_checkpoints(self, task_id: str) -> list[Checkpoint]:
        return self.checkpoints.list_checkpoints(task_id)

    # -------------------------------------------------------------------
    # Finalization
    # -------------------------------------------------------------------

    def commit_all(self, task_id: str, message: str) -> Optional[str]:
        """Commit every change in the workspace; None when nothing changed."""
        self.registry.require(task_id)
        return self.workspace.commit_all(task_id, message)

    def open_pull_request(self, task_id: str, title: str, body: str) -> str:
        """Push the task branch and open a PR against the base branch.

        Raises:
            PullRequestError: Branch is the base branch, or GitHub refused.
            GitOperationError: Push failed.
        """
        self.registry.require(task_id)
        base = self.config.workspace.base_branch
        branch = self.workspace.current_branch(task_id)
        if branch == base:
            raise PullRequestError(
                f"Refusing to open pull request from {base} to {base}. Create a feature branch first."
            )
        head = self.workspace.push_branch(task_id)
        return self.github.create_pull_request(
            self.workspace.origin_url(task_id),
            head=head,
            base=base,
            title=title,
            body=body,
        )

    # -------------------------------------------------------------------
    # One-shot mutations
    # -------------------------------------------------------------------

    def build_mutation_prompt(self, feature_description: str) -> str:
        description = feature_description.strip()
        if not description:
            raise ValueError("feature_description must be non-empty")

        sections = [
            "Task: implement the requested feature with minimal, correct changes.",
            "",
            "Repository rules (must follow):",
            "1. Follow the existing package structure and workspace boundaries.",
            "2. Keep strict type correctness; do not introduce type holes.",
            "3. Do not edit the protected root files "
            f"({', '.join(self.config.guardrails.protected_paths)}).",
            "4. Run the verify command after changes and fix until green before finishing.",
            "5. Keep edits minimal and deterministic.",
        ]
        if self.learnings is not None:
            memory = self.learnings.build_memory_context([FIX_PATTERN, REVIEW_PATTERN])
            if memory:
                sections += ["", memory]
        sections += ["", "Feature request:", description]
        return "\n".join(sections)

    def run_mutation(self, task_id: str, feature_description: str) -> MutationResult:
        """Create a task, implement the feature, get it green, commit and open a PR.

        Any failure after the task exists marks it failed before re-raising.
        """
        prompt = self.build_mutation_prompt(feature_description)
        task: Optional[Task] = None
        try:
            task = self.create_task(task_id)
            self.registry.transition(task_id, TaskStatus.MUTATING, reason="mutation turn")
            turn = self.turns.run_turn(task_id, prompt)
            if not turn.ok:
                raise TurnError(f"Mutation turn failed for {task_id}: {turn.error_message}")

            fix = self.fix_loop.fix_until_green(task_id)
            if not fix.success:
                raise ConductorError(
                    f"Verification did not pass for {task_id}: {fix.reason or fix.outcome.value}"
                )

            score = self.quality_gate.score(task_id)
            self.registry.transition(task_id, TaskStatus.READY, reason="verification green")

            commit_hash = self.workspace.commit_all(task_id, commit_message_for(feature_description))
            if commit_hash is None:
                raise ConductorError(f"Mutation for {task_id} finished with no file changes to commit")

            body = "\n".join([
                f"Task ID: {task_id}",
                "",
                "Requested feature:",
                feature_description.strip(),
                "",
                f"Verification fix iterations: {fix.iterations}",
                f"Quality score: {score.overall:.2f}",
            ])
            pr_url = self.open_pull_request(task_id, pr_title_for(feature_description), body)
            self.registry.transition(task_id, TaskStatus.PR_OPENED, reason=pr_url)
            return MutationResult(
                task_id=task_id,
                branch=task.branch_name,
                pr_url=pr_url,
                commit_hash=commit_hash,
                iterations=fix.iterations,
                quality_score=score.overall,
            )
        except Exception as e:
            if task is not None:
                self.registry.mark_failed(task_id, f"Mutation failed: {e}")
            raise

    def run_parallel(self, requests: list[MutationRequest]) -> ParallelRunResult:
        """Run mutations with at most ``max_parallel_tasks`` in flight."""
        if not requests:
            return ParallelRunResult()

        workers = min(len(requests), self.config.concurrency.max_parallel_tasks)
        logger.info("Running %d mutation(s) with %d worker(s)", len(requests), workers)
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="conductor-task") as pool:
            futures = [
                (req, pool.submit(self.run_mutation, req.task_id, req.feature_description))
                for req in requests
            ]
            results: list[ParallelTaskResult] = []
            for req, future in futures:
                try:
                    results.append(ParallelTaskResult(task_id=req.task_id, success=True, result=future.result()))
                except Exception as e:
                    logger.warning("Mutation %s failed: %s", req.task_id, e)
                    results.append(ParallelTaskResult(task_id=req.task_id, success=False, error=str(e)))

        succeeded = sum(1 for r in results if r.success)
        return ParallelRunResult(
            total_tasks=len(requests),
            succeeded=succeeded,
            failed=len(requests) - succeeded,
            results=results,
        )
