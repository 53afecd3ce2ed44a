"""Execution plans: a fixed four-phase breakdown of an objective.

Analysis → Implementation → Testing → Verification, each phase depending
on the one before it. Phase status only moves forward
(pending → in_progress → completed | failed); ``reset_phase`` is the
explicit way back.
"""

from __future__ import annotations

import logging
import math
from datetime import UTC, datetime
from pathlib import Path

from conductor.core.exceptions import PlanError
from conductor.core.models import ExecutionPlan, PhaseStatus, PlanPhase
from conductor.db.store import JsonStore

logger = logging.getLogger("conductor.orchestrator.execution_plan")

_PHASE_TRANSITIONS: dict[PhaseStatus, set[PhaseStatus]] = {
    PhaseStatus.PENDING: {PhaseStatus.IN_PROGRESS},
    PhaseStatus.IN_PROGRESS: {PhaseStatus.COMPLETED, PhaseStatus.FAILED},
    PhaseStatus.COMPLETED: set(),
    PhaseStatus.FAILED: set(),
}


def estimate_complexity(description: str) -> int:
    """Rough 2-5 complexity from word count (one point per 15 words)."""
    words = len(description.split())
    return min(5, max(2, math.ceil(words / 15)))


def generate_phases(description: str) -> list[PlanPhase]:
    complexity = estimate_complexity(description)
    return [
        PlanPhase(
            name="Analysis",
            description="Analyze requirements and identify affected files",
        ),
        PlanPhase(
            name="Implementation",
            description="Write the core implementation",
            estimated_loc=complexity * 50,
            dependencies=[0],
        ),
        PlanPhase(
            name="Testing",
            description="Add or update tests for the changes",
            estimated_loc=complexity * 30,
            dependencies=[1],
        ),
        PlanPhase(
            name="Verification",
            description="Run full verification suite",
            dependencies=[2],
        ),
    ]


class ExecutionPlanManager:
    """Persists one execution plan per task."""

    def __init__(self, store_path: str | Path):
        self.store = JsonStore(store_path)

    def create_plan(self, task_id: str, description: str) -> ExecutionPlan:
        if not description.strip():
            raise PlanError("Plan description must be non-empty")
        plan = ExecutionPlan(
            task_id=task_id,
            description=description.strip(),
            phases=generate_phases(description),
        )

        def _insert(plans: dict) -> None:
            if task_id in plans:
                raise PlanError(f"Execution plan already exists for task {task_id}")
            plans[task_id] = plan.model_dump(mode="json")

        self.store.update(_insert)
        logger.info("Plan for %s: %d phases", task_id, len(plan.phases))
        return plan

    def get_plan(self, task_id: str) -> ExecutionPlan | None:
        record = self.store.read().get(task_id)
        return ExecutionPlan.model_validate(record) if record is not None else None

    def list_plans(self) -> list[ExecutionPlan]:
        return [ExecutionPlan.model_validate(r) for r in self.store.read().values()]

    def update_phase_status(self, task_id: str, phase_index: int, status: PhaseStatus) -> ExecutionPlan:
        """Move a phase forward.

        Raises:
            PlanError: Unknown plan, bad index, or a backwards/illegal move.
        """
        def _apply(phase: PlanPhase, now: datetime) -> None:
            if status not in _PHASE_TRANSITIONS[phase.status]:
                raise PlanError(
                    f"Phase {phase_index} ({phase.name}) cannot move "
                    f"{phase.status.value} -> {status.value}"
                )
            if status == PhaseStatus.IN_PROGRESS and phase.started_at is None:
                phase.started_at = now
            if status in (PhaseStatus.COMPLETED, PhaseStatus.FAILED):
                phase.completed_at = now
            phase.status = status

        plan = self._mutate_phase(task_id, phase_index, _apply)
        logger.debug("Plan %s phase %d -> %s", task_id, phase_index, status.value)
        return plan

    def record_fix_iterations(self, task_id: str, phase_index: int, iterations: int) -> ExecutionPlan:
        def _apply(phase: PlanPhase, now: datetime) -> None:
            phase.fix_iterations += max(0, iterations)

        return self._mutate_phase(task_id, phase_index, _apply)

    def reset_phase(self, task_id: str, phase_index: int) -> ExecutionPlan:
        """Put a phase back to pending, clearing its timestamps."""
        def _apply(phase: PlanPhase, now: datetime) -> None:
            phase.status = PhaseStatus.PENDING
            phase.started_at = None
            phase.completed_at = None
            phase.fix_iterations = 0

        plan = self._mutate_phase(task_id, phase_index, _apply)
        logger.info("Plan %s phase %d reset to pending", task_id, phase_index)
        return plan

    def validate_plan(self, task_id: str) -> tuple[bool, list[str]]:
        plan = self.get_plan(task_id)
        if plan is None:
            return False, [f"No plan found for task {task_id}"]

        errors: list[str] = []
        for i, phase in enumerate(plan.phases):
            for dep in phase.dependencies:
                if dep < 0 or dep >= len(plan.phases):
                    errors.append(f'Phase {i} ("{phase.name}") has invalid dependency index: {dep}')
                    continue
                if dep >= i:
                    errors.append(f'Phase {i} ("{phase.name}") depends on phase {dep} which comes later')
                dep_phase = plan.phases[dep]
                if phase.status == PhaseStatus.IN_PROGRESS and dep_phase.status != PhaseStatus.COMPLETED:
                    errors.append(
                        f'Phase {i} ("{phase.name}") is in_progress but dependency phase {dep} '
                        f'("{dep_phase.name}") is {dep_phase.status.value}'
                    )
        return not errors, errors

    def _mutate_phase(self, task_id: str, phase_index: int, apply) -> ExecutionPlan:
        def _update(plans: dict) -> ExecutionPlan:
            record = plans.get(task_id)
            if record is None:
                raise PlanError(f"No execution plan found for task {task_id}")
            plan = ExecutionPlan.model_validate(record)
            if not 0 <= phase_index < len(plan.phases):
                raise PlanError(
                    f"Phase index {phase_index} out of range (0-{len(plan.phases) - 1})"
                )
            now = datetime.now(UTC)
            apply(plan.phases[phase_index], now)
            plan.updated_at = now
            plans[task_id] = plan.model_dump(mode="json")
            return plan

        return self.store.update(_update)
