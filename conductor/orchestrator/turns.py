"""Single entry point for running an agent turn against a task.

Every loop (fix, review, autonomous phases) submits turns through
``TurnRunner.run_turn`` so the lifetime turn budget, the turn timeout and
the post-turn guardrail are applied the same way everywhere.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Optional

from conductor.agents.base import AgentSession, TurnPolicy
from conductor.core.config import AgentConfig, FixLoopConfig
from conductor.core.exceptions import AgentError, TurnBudgetExceededError, TurnTimeoutError
from conductor.core.models import FailureKind, TurnResult, TurnStatus
from conductor.orchestrator.guardrails import GuardrailEnforcer
from conductor.orchestrator.task_registry import TaskRegistry

logger = logging.getLogger("conductor.orchestrator.turns")


class TurnRunner:
    """Runs one turn at a time per task and classifies the outcome."""

    def __init__(
        self,
        registry: TaskRegistry,
        session: AgentSession,
        guardrails: GuardrailEnforcer,
        agent_config: Optional[AgentConfig] = None,
        fix_loop_config: Optional[FixLoopConfig] = None,
    ):
        self.registry = registry
        self.session = session
        self.guardrails = guardrails
        self.agent_config = agent_config or AgentConfig()
        self.max_turns_per_task = (fix_loop_config or FixLoopConfig()).max_turns_per_task
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    @property
    def policy(self) -> TurnPolicy:
        return TurnPolicy(
            approval_policy=self.agent_config.approval_policy,
            sandbox_policy=self.agent_config.sandbox_policy,
            model=self.agent_config.model,
        )

    def task_lock(self, task_id: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(task_id, threading.Lock())

    def ensure_thread(self, task_id: str) -> str:
        """Return the task's agent thread, starting one on first use."""
        task = self.registry.require(task_id)
        if task.thread_id:
            return task.thread_id
        thread_id = self.session.start_thread(task.workspace_path, self.policy)
        self.registry.attach_thread(task_id, thread_id)
        return thread_id

    def run_turn(
        self,
        task_id: str,
        prompt: str,
        allow_coordinator_edit: Optional[bool] = None,
    ) -> TurnResult:
        """Submit ``prompt`` as a turn, wait for it, then enforce the guardrail.

        Turn errors and timeouts come back as a TurnResult; they are loop
        outcomes, not exceptions. A timed-out turn is interrupted on its own;
        turns of other tasks on the same runtime keep running.

        Raises:
            TurnBudgetExceededError: Task already used its lifetime turns
                (the task is failed first).
            GuardrailViolationError: The turn touched protected paths.
        """
        with self.task_lock(task_id):
            task = self.registry.require(task_id)
            if task.turn_count >= self.max_turns_per_task:
                reason = f"Turn budget exhausted ({task.turn_count}/{self.max_turns_per_task})"
                self.registry.mark_failed(task_id, reason, kind=FailureKind.BUDGET)
                raise TurnBudgetExceededError(task_id, task.turn_count, self.max_turns_per_task)
            turn_number = self.registry.record_turn(task_id)

            start = time.monotonic()
            thread_id = task.thread_id
            handle = None
            try:
                thread_id = self.ensure_thread(task_id)
                handle = self.session.submit_turn(thread_id, prompt, self.policy, cwd=task.workspace_path or None)
                completion = self.session.await_completion(handle, self.agent_config.turn_timeout_seconds)
            except TurnTimeoutError as e:
                logger.warning("Task %s turn %d timed out: %s", task_id, turn_number, e)
                if handle is not None:
                    self.session.interrupt_turn(handle)
                else:
                    self.session.stop()
                result = TurnResult(
                    status=TurnStatus.TIMEOUT,
                    thread_id=thread_id,
                    error_message=(
                        f"Turn exceeded {self.agent_config.turn_timeout_seconds:.0f}s and was terminated"
                    ),
                )
            except AgentError as e:
                logger.warning("Task %s turn %d errored: %s", task_id, turn_number, e)
                result = TurnResult(status=TurnStatus.ERROR, thread_id=thread_id, error_message=str(e))
            else:
                if completion.succeeded:
                    result = TurnResult(status=TurnStatus.OK, thread_id=thread_id, turn_id=completion.turn_id)
                else:
                    result = TurnResult(
                        status=TurnStatus.ERROR,
                        thread_id=thread_id,
                        turn_id=completion.turn_id,
                        error_message=(
                            f"Turn {completion.status}: "
                            f"{completion.error_message or 'No error message from server'}"
                        ),
                    )
            result.duration_seconds = time.monotonic() - start
            logger.info(
                "Task %s turn %d: %s (%.1fs)",
                task_id, turn_number, result.status.value, result.duration_seconds,
            )

            self.guardrails.enforce(task_id, allow_coordinator_edit=allow_coordinator_edit)
            return result
