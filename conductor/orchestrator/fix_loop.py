"""Verify-fix loop for Conductor.

Runs verification, and while it fails asks the agent for a minimal fix:
  verify → (fingerprint → prompt → fix turn → learn → verify) × N

The loop stops on a green verification, when the iteration budget is
spent, or when the workspace diff stops changing between iterations
(stuck). Both failure outcomes leave the task failed with a reason.
"""

from __future__ import annotations

import logging
from typing import Optional

from conductor.core.config import FixLoopConfig, PromptLoader
from conductor.core.exceptions import ConductorError
from conductor.core.models import (
    FailureKind,
    FixLoopOutcome,
    FixLoopResult,
    TaskStatus,
    VerifyResult,
)
from conductor.memory.learnings import FIX_PATTERN, LearningStore
from conductor.orchestrator.cancellation import CancellationToken
from conductor.orchestrator.task_registry import TaskRegistry
from conductor.orchestrator.turns import TurnRunner
from conductor.orchestrator.verify import Verifier, prioritize_failures

logger = logging.getLogger("conductor.orchestrator.fix_loop")

MAX_PROMPT_FAILURES = 30

DEFAULT_FIX_CONSTRAINTS = """\
1. Apply minimal changes only to make verification pass.
2. Do not edit package.json, tsconfig.json, eslint.config.mjs, or coordinator.ts at the repository root.
3. Keep edits inside the current workspace.
4. Prefer fixing the root cause over silencing the check."""


class FixLoop:
    """Drives a task from failing verification to green, within a budget.

    Injected dependencies:
        registry: Task state machine.
        verifier: Runs the verify command for a task.
        turns: Submits fix turns (turn budget and guardrail live there).
        workspace: Source of diff fingerprints, stats and fix diffs.
        learnings: Optional learning memory fed into fix prompts.
        config: Iteration budget and stuck threshold.
        prompt_loader: Optional override for the fix constraints text.
    """

    def __init__(
        self,
        registry: TaskRegistry,
        verifier: Verifier,
        turns: TurnRunner,
        workspace,
        learnings: Optional[LearningStore] = None,
        config: Optional[FixLoopConfig] = None,
        prompt_loader: Optional[PromptLoader] = None,
    ):
        self.registry = registry
        self.verifier = verifier
        self.turns = turns
        self.workspace = workspace
        self.learnings = learnings
        self.config = config or FixLoopConfig()
        self.prompt_loader = prompt_loader

    def fix_until_green(
        self,
        task_id: str,
        max_iterations: Optional[int] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> FixLoopResult:
        """Verify, then repair until verification passes or the loop gives up.

        Raises:
            GuardrailViolationError: A fix turn touched protected paths.
            TurnBudgetExceededError: The task ran out of lifetime turns.
            InvalidTransitionError: The task cannot be brought to verifying.
        """
        budget = max_iterations if max_iterations is not None else self.config.max_iterations
        if budget <= 0:
            raise ValueError(f"max_iterations must be positive, got {budget}")

        self.registry.advance(task_id, TaskStatus.VERIFYING, reason="fix loop start")
        last = self.verifier.run(task_id)
        if last.success:
            logger.info("Task %s already green, no fix needed", task_id)
            return FixLoopResult(
                task_id=task_id, success=True, iterations=0,
                outcome=FixLoopOutcome.SUCCESS, last_verify=last,
            )

        previous_fingerprint: Optional[str] = None
        streak = 0
        for iteration in range(1, budget + 1):
            if cancel_token is not None and cancel_token.is_cancelled():
                reason = cancel_token.reason or "Cancelled"
                logger.info("Task %s fix loop cancelled before iteration %d", task_id, iteration)
                return FixLoopResult(
                    task_id=task_id, success=False, iterations=iteration - 1,
                    outcome=FixLoopOutcome.CANCELLED, last_verify=last, reason=reason,
                )

            fingerprint = self.workspace.diff_fingerprint(task_id)
            streak = streak + 1 if fingerprint == previous_fingerprint else 1
            previous_fingerprint = fingerprint
            if streak >= self.config.stuck_threshold:
                reason = (
                    f"Stuck: workspace diff unchanged for {streak} consecutive "
                    f"iterations while verification keeps failing"
                )
                logger.warning("Task %s: %s", task_id, reason)
                self.registry.mark_failed(task_id, reason, kind=FailureKind.STUCK)
                return FixLoopResult(
                    task_id=task_id, success=False, iterations=iteration - 1,
                    outcome=FixLoopOutcome.STUCK, last_verify=last, reason=reason,
                )

            prompt = self.build_fix_prompt(task_id, last, iteration, budget)
            self.registry.transition(task_id, TaskStatus.FIXING, reason=f"fix iteration {iteration}")
            turn = self.turns.run_turn(task_id, prompt)
            if not turn.ok:
                logger.warning(
                    "Task %s fix iteration %d turn %s: %s",
                    task_id, iteration, turn.status.value, turn.error_message,
                )

            self._record_learning(task_id, last)

            self.registry.transition(task_id, TaskStatus.VERIFYING, reason=f"verify after fix {iteration}")
            last = self.verifier.run(task_id)
            if last.success:
                logger.info("Task %s green after %d fix iteration(s)", task_id, iteration)
                return FixLoopResult(
                    task_id=task_id, success=True, iterations=iteration,
                    outcome=FixLoopOutcome.SUCCESS, last_verify=last,
                )

        reason = f"Verification still failing after {budget} fix iteration(s)"
        logger.warning("Task %s: %s", task_id, reason)
        self.registry.mark_failed(task_id, reason, kind=FailureKind.BUDGET)
        return FixLoopResult(
            task_id=task_id, success=False, iterations=budget,
            outcome=FixLoopOutcome.BUDGET_EXHAUSTED, last_verify=last, reason=reason,
        )

    def build_fix_prompt(
        self,
        task_id: str,
        verify: VerifyResult,
        iteration: int,
        max_iterations: int,
    ) -> str:
        constraints = DEFAULT_FIX_CONSTRAINTS
        if self.prompt_loader is not None:
            constraints = self.prompt_loader.load("fix_constraints.txt", DEFAULT_FIX_CONSTRAINTS)

        failures = prioritize_failures(verify.failures)[:MAX_PROMPT_FAILURES]
        if failures:
            failure_lines = "\n".join(
                f"{i}. [{f.category.value}] {f.file + ': ' if f.file else ''}{f.message}"
                for i, f in enumerate(failures, 1)
            )
        else:
            failure_lines = "(no individual failures parsed; see output tail)"

        sections = [
            f"Task: make the verification command pass in workspace task_id={task_id}.",
            f"Fix iteration {iteration}/{max_iterations}.",
            "",
            "Constraints (must follow):",
            constraints,
            "",
            "Failures, highest priority first (compile, lint, test, other):",
            failure_lines,
        ]

        if self.learnings is not None:
            memory = self.learnings.build_memory_context([FIX_PATTERN])
            if memory:
                sections += ["", memory]

        sections += [
            "",
            "git diff --stat:",
            self.workspace.diff_stat(task_id) or "(no changes)",
            "",
            "Failing output tail:",
            verify.combined_tail or "(empty)",
            "",
            "Now produce and apply the smallest valid fix.",
        ]
        return "\n".join(sections)

    def _record_learning(self, task_id: str, verify: VerifyResult) -> None:
        if self.learnings is None:
            return
        try:
            error_output = "\n".join(f.message for f in verify.failures) or verify.combined_tail
            self.learnings.extract_from_fix_loop(task_id, error_output, self.workspace.diff(task_id))
        except ConductorError as e:
            logger.warning("Could not record learning for %s: %s", task_id, e)
