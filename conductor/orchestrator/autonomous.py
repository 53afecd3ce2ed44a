"""Autonomous runs: objective in, pull request out.

A run walks one task through a fixed four-phase plan:
  planning → executing (phase × 4) → validating → committing → reviewing → completed

Each phase is a turn followed by a bounded verify-fix loop. Partial
success is committed; a run where every phase fails is not. Cancellation
is cooperative and only observed between steps, never during a turn.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import UTC, datetime
from pathlib import Path
from typing import Optional

from conductor.core.config import AutonomousConfig, ConcurrencyConfig
from conductor.core.exceptions import ConductorError, GuardrailViolationError, TurnBudgetExceededError
from conductor.core.models import (
    AutonomousRun,
    FixLoopOutcome,
    PhaseResult,
    PhaseStatus,
    PlanPhase,
    RunOptions,
    RunStatus,
    TaskStatus,
)
from conductor.db.store import JsonStore, bounded_append
from conductor.orchestrator.cancellation import CancellationToken
from conductor.orchestrator.execution_plan import ExecutionPlanManager
from conductor.orchestrator.tasks import TaskService, commit_message_for, pr_title_for

logger = logging.getLogger("conductor.orchestrator.autonomous")

# Task states a phase turn can start from without a transition
_EDITING_STATES = {TaskStatus.MUTATING, TaskStatus.FIXING}

_BUDGET_ERROR = "Turn budget exhausted"


class _RunAborted(Exception):
    """Internal: stop the run and record where it stopped."""

    def __init__(self, message: str, phase_index: Optional[int] = None, phase_name: Optional[str] = None):
        super().__init__(message)
        self.phase_index = phase_index
        self.phase_name = phase_name


class AutonomousOrchestrator:
    """Starts, tracks and cancels autonomous runs.

    Runs execute on a bounded thread pool; ``start`` returns as soon as the
    run is persisted. Run records live in a JSON store so ``get`` and
    ``list_runs`` can be polled from any thread.

    Injected dependencies:
        tasks: Task service (provisioning, loops, commit and PR).
        plans: Execution plan manager.
        store_path: JSON file holding run records.
        config: Autonomous run defaults and circuit breaker settings.
        concurrency: Worker pool size.
    """

    def __init__(
        self,
        tasks: TaskService,
        plans: ExecutionPlanManager,
        store_path: str | Path,
        config: Optional[AutonomousConfig] = None,
        concurrency: Optional[ConcurrencyConfig] = None,
    ):
        self.tasks = tasks
        self.plans = plans
        self.config = config or AutonomousConfig()
        self.store = JsonStore(store_path, default=lambda: {"runs": []})
        workers = (concurrency or ConcurrencyConfig()).max_parallel_tasks
        self._executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="conductor-run")
        self._tokens: dict[str, CancellationToken] = {}
        self._futures: dict[str, Future] = {}
        self._lock = threading.RLock()

    # -------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------

    def default_options(self) -> RunOptions:
        return RunOptions(
            max_phase_fixes=self.config.max_phase_fixes,
            circuit_breaker_threshold=self.config.circuit_breaker_threshold,
            quality_threshold=self.config.quality_threshold,
            auto_commit=self.config.auto_commit,
            auto_pr=self.config.auto_pr,
            auto_review=self.config.auto_review,
            review_rounds=self.config.review_rounds,
        )

    def start(self, objective: str, options: Optional[RunOptions] = None) -> str:
        """Persist a new run and schedule it. Returns the run id immediately."""
        if not objective.strip():
            raise ValueError("objective must be non-empty")
        run = AutonomousRun(objective=objective.strip(), options=options or self.default_options())
        run.task_id = f"auto-{run.run_id}"
        token = CancellationToken()

        with self._lock:
            self._tokens[run.run_id] = token
            self._save(run)
            self._futures[run.run_id] = self._executor.submit(self.execute, run, token)
        logger.info("Run %s started for task %s: %s", run.run_id, run.task_id, run.objective[:80])
        return run.run_id

    def get(self, run_id: str) -> Optional[AutonomousRun]:
        for record in self.store.read().get("runs", []):
            if record.get("run_id") == run_id:
                return AutonomousRun.model_validate(record)
        return None

    def list_runs(self, limit: int = 20) -> list[AutonomousRun]:
        runs = [AutonomousRun.model_validate(r) for r in self.store.read().get("runs", [])]
        runs.sort(key=lambda r: r.started_at, reverse=True)
        return runs[:limit]

    def cancel(self, run_id: str, reason: str = "Cancelled by request") -> bool:
        """Request cancellation. False for unknown or already-finished runs.

        Runs owned by another process are flagged in the store; their owner
        picks the flag up at its next step boundary.
        """
        run = self.get(run_id)
        if run is None or run.is_terminal:
            return False
        with self._lock:
            token = self._tokens.get(run_id)
        if token is not None:
            token.cancel(reason)

        def _flag(doc: dict) -> None:
            for record in doc.get("runs", []):
                if record.get("run_id") == run_id:
                    record["cancel_requested"] = True
                    record["updated_at"] = datetime.now(UTC).isoformat()

        self.store.update(_flag)
        logger.info("Run %s: cancellation requested (%s)", run_id, reason)
        return True

    def wait(self, run_id: str, timeout: Optional[float] = None) -> Optional[AutonomousRun]:
        """Block until the run finishes (or ``timeout``), then return it."""
        with self._lock:
            future = self._futures.get(run_id)
        if future is not None:
            future.result(timeout=timeout)
        return self.get(run_id)

    def shutdown(self, wait: bool = True, cancel_running: bool = False) -> None:
        if cancel_running:
            with self._lock:
                tokens = list(self._tokens.values())
            for token in tokens:
                token.cancel("Orchestrator shutting down")
        self._executor.shutdown(wait=wait)

    # -------------------------------------------------------------------
    # Run execution
    # -------------------------------------------------------------------

    def execute(self, run: AutonomousRun, token: CancellationToken) -> AutonomousRun:
        """Run every stage; all failures end up in the run record."""
        try:
            self._execute(run, token)
        except _RunAborted as e:
            self._fail(run, str(e), e.phase_index, e.phase_name)
        except GuardrailViolationError as e:
            phase_index, phase_name = self._current_phase(run)
            self._fail(run, str(e), phase_index, phase_name)
        except Exception as e:
            logger.exception("Run %s crashed", run.run_id)
            phase_index, phase_name = self._current_phase(run)
            self._fail(run, f"{type(e).__name__}: {e}", phase_index, phase_name)
        finally:
            with self._lock:
                self._tokens.pop(run.run_id, None)
        return run

    def _execute(self, run: AutonomousRun, token: CancellationToken) -> None:
        opts = run.options

        # Planning
        self._set_status(run, RunStatus.PLANNING)
        self.tasks.create_task(run.task_id)
        plan = self.plans.create_plan(run.task_id, run.objective)

        # Executing
        self._set_status(run, RunStatus.EXECUTING)
        consecutive_failures = 0
        any_completed = False
        for index, phase in enumerate(plan.phases):
            if self._cancelled(run, token):
                return
            result = self._run_phase(run, index, phase, len(plan.phases), token)
            run.phases.append(result)
            self._save(run)
            # A phase cut short by cancellation is not a failure.
            if self._cancelled(run, token):
                return

            if result.status == PhaseStatus.COMPLETED:
                consecutive_failures = 0
                any_completed = True
                continue

            consecutive_failures += 1
            if result.error and result.error.startswith(_BUDGET_ERROR):
                logger.warning("Run %s: turn budget spent at phase %d; no further phases", run.run_id, index)
                break
            if not any_completed and consecutive_failures >= opts.circuit_breaker_threshold:
                logger.warning(
                    "Run %s: circuit breaker tripped after %d consecutive phase failures",
                    run.run_id, consecutive_failures,
                )
                raise _RunAborted(
                    f"Circuit breaker tripped after {consecutive_failures} consecutive phase failures: "
                    f"{result.error}",
                    index, phase.name,
                )

        if not any_completed:
            last = run.phases[-1] if run.phases else None
            raise _RunAborted(
                "All phases failed; no changes to commit",
                last.phase_index if last else None,
                last.phase_name if last else None,
            )

        # Validating
        if self._cancelled(run, token):
            return
        self._set_status(run, RunStatus.VALIDATING)
        self._validate(run, token)

        # Committing
        if self._cancelled(run, token):
            return
        if opts.auto_commit:
            self._set_status(run, RunStatus.COMMITTING)
            run.commit_hash = self.tasks.commit_all(run.task_id, commit_message_for(run.objective))
            if run.commit_hash is None:
                logger.info("Run %s: nothing to commit", run.run_id)
            self._save(run)

        # Reviewing
        if opts.auto_pr and run.commit_hash:
            if self._cancelled(run, token):
                return
            self._set_status(run, RunStatus.REVIEWING)
            self._open_pr_and_review(run)

        run.status = RunStatus.COMPLETED
        run.completed_at = datetime.now(UTC)
        self._save(run)
        logger.info("Run %s completed (commit=%s, pr=%s)", run.run_id, run.commit_hash, run.pr_url)

    def _run_phase(
        self,
        run: AutonomousRun,
        index: int,
        phase: PlanPhase,
        total: int,
        token: CancellationToken,
    ) -> PhaseResult:
        task_id = run.task_id
        result = PhaseResult(phase_index=index, phase_name=phase.name, status=PhaseStatus.IN_PROGRESS)
        started = time.monotonic()
        self.plans.update_phase_status(task_id, index, PhaseStatus.IN_PROGRESS)
        logger.info("Run %s phase %d/%d: %s", run.run_id, index + 1, total, phase.name)

        try:
            self._enter_editing(task_id)
            prompt = self.build_phase_prompt(run, phase, index, total)
            turn = self.tasks.turns.run_turn(task_id, prompt)
            result.turn_id = turn.turn_id
            if not turn.ok:
                result.error = f"Turn {turn.status.value}: {turn.error_message}"
            else:
                fix = self.tasks.fix_until_green(
                    task_id, max_iterations=run.options.max_phase_fixes, cancel_token=token,
                )
                result.fix_iterations = fix.iterations
                result.verify_passed = fix.success
                self.plans.record_fix_iterations(task_id, index, fix.iterations)
                if not fix.success:
                    if fix.outcome == FixLoopOutcome.CANCELLED:
                        result.error = "Cancelled before verification passed"
                    else:
                        result.error = (
                            f"Verification did not pass after {fix.iterations} fix iteration(s): {fix.reason}"
                        )
        except GuardrailViolationError as e:
            result.status = PhaseStatus.FAILED
            result.error = str(e)
            self._finish_phase(run, result, started)
            run.phases.append(result)
            raise
        except TurnBudgetExceededError as e:
            result.error = f"{_BUDGET_ERROR}: {e}"
        except ConductorError as e:
            logger.warning("Run %s phase %d error: %s", run.run_id, index, e)
            result.error = str(e)

        result.status = PhaseStatus.FAILED if result.error else PhaseStatus.COMPLETED
        self._finish_phase(run, result, started)
        if result.status == PhaseStatus.COMPLETED:
            self.tasks.checkpoint_task(task_id, f"Phase {index}: {phase.name} completed")
        return result

    def _finish_phase(self, run: AutonomousRun, result: PhaseResult, started: float) -> None:
        result.duration_seconds = time.monotonic() - started
        self.plans.update_phase_status(run.task_id, result.phase_index, result.status)
        if result.status == PhaseStatus.FAILED:
            logger.warning("Run %s phase %d failed: %s", run.run_id, result.phase_index, result.error)

    def _enter_editing(self, task_id: str) -> None:
        """Bring the task to a state an agent turn may start from."""
        registry = self.tasks.registry
        task = registry.require(task_id)
        if task.status in _EDITING_STATES:
            return
        if task.status == TaskStatus.VERIFYING:
            registry.transition(task_id, TaskStatus.FIXING, reason="next phase")
        else:
            # created, or failed by a previous phase (explicit recovery)
            registry.transition(task_id, TaskStatus.MUTATING, reason="phase turn")

    def _validate(self, run: AutonomousRun, token: CancellationToken) -> None:
        registry = self.tasks.registry
        task = registry.require(run.task_id)
        if task.status == TaskStatus.FAILED:
            registry.transition(run.task_id, TaskStatus.MUTATING, reason="recover for validation")
        registry.advance(run.task_id, TaskStatus.VERIFYING, reason="validation")

        score = self.tasks.quality_score(run.task_id)
        run.quality_score = score.overall
        self._save(run)

        threshold = run.options.quality_threshold
        if threshold > 0 and score.overall < threshold:
            logger.info(
                "Run %s: quality %.2f below %.2f; one more fix pass",
                run.run_id, score.overall, threshold,
            )
            try:
                self.tasks.fix_until_green(
                    run.task_id, max_iterations=self.config.quality_fix_iterations, cancel_token=token,
                )
            except TurnBudgetExceededError as e:
                logger.warning("Run %s: quality fix pass skipped: %s", run.run_id, e)
            run.quality_score = self.tasks.quality_score(run.task_id).overall
            self._save(run)

        registry.advance(run.task_id, TaskStatus.READY, reason="validated")

    def _open_pr_and_review(self, run: AutonomousRun) -> None:
        try:
            run.pr_url = self.tasks.open_pull_request(run.task_id, pr_title_for(run.objective), self.build_pr_body(run))
        except ConductorError as e:
            run.error = f"PR creation failed: {e}"
            logger.warning("Run %s: %s", run.run_id, run.error)
            self._save(run)
            return
        self._save(run)

        if run.options.auto_review:
            try:
                review = self.tasks.run_review_loop(run.task_id, max_rounds=run.options.review_rounds)
                run.review_passed = review.approved
                if review.rounds > 0:
                    follow_up = self.tasks.commit_all(run.task_id, "fix: address review findings")
                    if follow_up:
                        run.commit_hash = follow_up
                        self.tasks.workspace.push_branch(run.task_id)
            except GuardrailViolationError:
                raise
            except ConductorError as e:
                run.review_passed = False
                logger.warning("Run %s: review loop failed: %s", run.run_id, e)
            self._save(run)

        registry = self.tasks.registry
        if registry.require(run.task_id).status == TaskStatus.FAILED:
            # The PR already exists; a failed review round does not undo it.
            registry.transition(run.task_id, TaskStatus.READY, reason="review failure is non-fatal")
        registry.transition(run.task_id, TaskStatus.PR_OPENED, reason=run.pr_url)

    # -------------------------------------------------------------------
    # Prompts
    # -------------------------------------------------------------------

    def build_phase_prompt(self, run: AutonomousRun, phase: PlanPhase, index: int, total: int) -> str:
        sections = [
            self.tasks.build_mutation_prompt(run.objective),
            "",
            f"--- AUTONOMOUS PHASE {index + 1}/{total}: {phase.name} ---",
            "",
            f"Phase goal: {phase.description}",
            "",
        ]
        if run.phases:
            sections.append("Previous phase results:")
            for prev in run.phases:
                marker = "[OK]" if prev.status == PhaseStatus.COMPLETED else "[FAIL]"
                line = f"  {marker} Phase {prev.phase_index + 1} ({prev.phase_name}): {prev.status.value}"
                if prev.error:
                    line += f" ({prev.error})"
                sections.append(line)
            sections.append("")
        sections += [
            "Phase instructions:",
            f'1. Focus only on the "{phase.name}" phase described above.',
            "2. Build on the work completed in previous phases.",
            "3. Make minimal, correct changes.",
            "4. Make sure the verify command passes.",
            "5. Follow existing code conventions and architecture.",
        ]
        return "\n".join(sections)

    def build_pr_body(self, run: AutonomousRun) -> str:
        lines = [
            f"## Autonomous Run: {run.run_id}",
            "",
            f"**Objective:** {run.objective}",
            "",
            "### Phase Results",
            "",
        ]
        for phase in run.phases:
            marker = "PASS" if phase.status == PhaseStatus.COMPLETED else "FAIL"
            lines.append(
                f"- [{marker}] **{phase.phase_name}**: {phase.status.value} "
                f"({phase.fix_iterations} fix iterations, {round(phase.duration_seconds)}s)"
            )
            if phase.error:
                lines.append(f"  > {phase.error}")
        if run.quality_score is not None:
            lines += ["", f"**Quality Score:** {run.quality_score:.2f}"]
        return "\n".join(lines)

    # -------------------------------------------------------------------
    # Record keeping
    # -------------------------------------------------------------------

    def _cancelled(self, run: AutonomousRun, token: CancellationToken) -> bool:
        if not token.is_cancelled():
            persisted = self.get(run.run_id)
            if persisted is None or not persisted.cancel_requested:
                return False
            token.cancel("Cancelled by request")
        run.status = RunStatus.CANCELLED
        run.cancel_requested = True
        run.error = token.reason
        run.completed_at = datetime.now(UTC)
        self._save(run)
        logger.info("Run %s cancelled: %s", run.run_id, token.reason)
        return True

    def _set_status(self, run: AutonomousRun, status: RunStatus) -> None:
        run.status = status
        self._save(run)
        logger.info("Run %s: %s", run.run_id, status.value)

    def _fail(
        self,
        run: AutonomousRun,
        error: str,
        phase_index: Optional[int],
        phase_name: Optional[str],
    ) -> None:
        run.status = RunStatus.FAILED
        run.error = error
        run.failed_phase_index = phase_index
        run.failed_phase_name = phase_name
        run.completed_at = datetime.now(UTC)
        self._save(run)
        if run.task_id and self.tasks.registry.get(run.task_id) is not None:
            self.tasks.registry.mark_failed(run.task_id, f"Autonomous run {run.run_id} failed: {error}")
        logger.warning("Run %s failed: %s", run.run_id, error)

    @staticmethod
    def _current_phase(run: AutonomousRun) -> tuple[Optional[int], Optional[str]]:
        if run.status != RunStatus.EXECUTING or not run.phases:
            return None, None
        last = run.phases[-1]
        return last.phase_index, last.phase_name

    def _save(self, run: AutonomousRun) -> None:
        run.updated_at = datetime.now(UTC)
        with self._lock:
            token = self._tokens.get(run.run_id)
        if token is not None and token.is_cancelled():
            run.cancel_requested = True
        record = run.model_dump(mode="json")

        def _upsert(doc: dict) -> None:
            runs = doc.setdefault("runs", [])
            for i, existing in enumerate(runs):
                if existing.get("run_id") == run.run_id:
                    if existing.get("cancel_requested"):
                        record["cancel_requested"] = True
                    runs[i] = record
                    return
            bounded_append(runs, record, self.config.run_history_limit)

        self.store.update(_upsert)
