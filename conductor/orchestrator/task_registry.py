"""Task state machine for Conductor.

Manages legal status transitions for tasks and enforces the state graph.
Tasks flow: created -> mutating -> verifying <-> fixing -> ready -> pr_opened,
with ``failed`` reachable from every live state. ``failed`` is not terminal:
a multi-phase run may recover a task to ready, mutating or created.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from datetime import UTC, datetime
from pathlib import Path
from typing import Optional

from conductor.core.exceptions import (
    DuplicateBranchError,
    DuplicateTaskError,
    InvalidTransitionError,
    TaskNotFoundError,
)
from conductor.core.models import FailureKind, Task, TaskStatus, new_id
from conductor.db.store import JsonStore

logger = logging.getLogger("conductor.orchestrator.task_registry")

# Legal state transitions; each key maps to the set of states it can move to
VALID_TRANSITIONS: dict[TaskStatus, set[TaskStatus]] = {
    TaskStatus.CREATED: {TaskStatus.MUTATING, TaskStatus.FAILED},
    TaskStatus.MUTATING: {TaskStatus.VERIFYING, TaskStatus.FAILED},
    TaskStatus.VERIFYING: {TaskStatus.FIXING, TaskStatus.READY, TaskStatus.FAILED},
    TaskStatus.FIXING: {TaskStatus.VERIFYING, TaskStatus.READY, TaskStatus.FAILED},
    TaskStatus.READY: {TaskStatus.PR_OPENED, TaskStatus.FAILED},
    TaskStatus.FAILED: {TaskStatus.READY, TaskStatus.MUTATING, TaskStatus.CREATED},
    TaskStatus.PR_OPENED: set(),  # Terminal
}


class TaskRegistry:
    """Owns every task record and all status changes.

    All status changes go through ``transition`` so the state graph is
    enforced in one place. The whole task set is rewritten atomically on
    every mutation; transitions for one task are serialized by the store's
    write lock.
    """

    def __init__(self, store_path: str | Path, allow_guardrail_recovery: bool = False):
        self.store = JsonStore(store_path)
        self.allow_guardrail_recovery = allow_guardrail_recovery
        self._create_lock = threading.Lock()

    # -------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------

    def get(self, task_id: str) -> Optional[Task]:
        record = self.store.read().get(task_id)
        if record is None:
            return None
        return Task.model_validate(record)

    def require(self, task_id: str) -> Task:
        task = self.get(task_id)
        if task is None:
            raise TaskNotFoundError(f"Unknown task: {task_id}")
        return task

    def list_tasks(self) -> list[Task]:
        records = self.store.read()
        tasks = [Task.model_validate(r) for r in records.values()]
        return sorted(tasks, key=lambda t: (t.created_at, t.task_id))

    def can_transition(self, from_status: TaskStatus, to_status: TaskStatus) -> bool:
        """Check if a transition is legal."""
        return to_status in VALID_TRANSITIONS.get(from_status, set())

    # -------------------------------------------------------------------
    # Mutations
    # -------------------------------------------------------------------

    def create_task(
        self,
        branch_hint: str,
        task_id: Optional[str] = None,
        workspace_path: str = "",
        thread_id: str = "",
    ) -> Task:
        """Allocate a task in ``created`` status.

        Raises:
            DuplicateTaskError: If ``task_id`` is already registered.
            DuplicateBranchError: If the branch name was ever used by any
                task, whatever that task's status.
        """
        task = Task(
            task_id=task_id or new_id("task"),
            branch_name=branch_hint.strip(),
            workspace_path=workspace_path,
            thread_id=thread_id,
        )
        if not task.branch_name:
            raise ValueError("branch_hint must be non-empty")

        def _insert(records: dict) -> None:
            if task.task_id in records:
                raise DuplicateTaskError(f"Task already exists: {task.task_id}")
            for other_id, other in records.items():
                if other.get("branch_name") == task.branch_name:
                    raise DuplicateBranchError(task.branch_name, other_id)
            records[task.task_id] = task.model_dump(mode="json")

        with self._create_lock:
            self.store.update(_insert)
        logger.info("Task %s created on branch %s", task.task_id, task.branch_name)
        return task

    def transition(
        self,
        task_id: str,
        new_status: TaskStatus,
        reason: Optional[str] = None,
        failure_kind: Optional[FailureKind] = None,
    ) -> Task:
        """Move a task to a new status and persist it.

        Entering ``failed`` records the reason and failure kind; leaving it
        clears them. A guardrail failure can only be left when the registry
        allows guardrail recovery.

        Raises:
            TaskNotFoundError: If the task does not exist.
            InvalidTransitionError: If the edge is not in VALID_TRANSITIONS.
        """
        def _apply(records: dict) -> Task:
            record = records.get(task_id)
            if record is None:
                raise TaskNotFoundError(f"Unknown task: {task_id}")
            task = Task.model_validate(record)
            old_status = task.status
            if not self.can_transition(old_status, new_status):
                raise InvalidTransitionError(task_id, old_status.value, new_status.value)
            if (
                old_status == TaskStatus.FAILED
                and task.failure_kind == FailureKind.GUARDRAIL
                and not self.allow_guardrail_recovery
            ):
                raise InvalidTransitionError(
                    task_id, old_status.value, new_status.value,
                    message=(
                        f"Task {task_id} failed on a guardrail violation and cannot be "
                        f"recovered to {new_status.value}"
                    ),
                )

            task.status = new_status
            task.updated_at = datetime.now(UTC)
            if new_status == TaskStatus.FAILED:
                task.failure_reason = reason or "unspecified failure"
                task.failure_kind = failure_kind or FailureKind.ERROR
            elif old_status == TaskStatus.FAILED:
                task.failure_reason = None
                task.failure_kind = None
            records[task_id] = task.model_dump(mode="json")
            return task

        task = self.store.update(_apply)
        if reason:
            logger.info("Task %s: %s (%s)", task_id, task.status.value, reason)
        else:
            logger.info("Task %s: -> %s", task_id, task.status.value)
        return task

    def advance(self, task_id: str, target: TaskStatus, reason: Optional[str] = None) -> Task:
        """Walk the shortest legal path from the current status to ``target``.

        The walk never passes through ``failed`` or ``pr_opened``; leaving
        ``failed`` is allowed only as the first step. Returns the task
        unchanged when it is already at ``target``.
        """
        task = self.require(task_id)
        path = _shortest_path(task.status, target)
        if path is None:
            raise InvalidTransitionError(task_id, task.status.value, target.value)
        for status in path:
            task = self.transition(task_id, status, reason=reason)
        return task

    def mark_failed(
        self,
        task_id: str,
        reason: str,
        kind: FailureKind = FailureKind.ERROR,
    ) -> Optional[Task]:
        """Fail a task if it is in a state that can fail; otherwise no-op."""
        task = self.get(task_id)
        if task is None:
            return None
        if task.status == TaskStatus.FAILED:
            if kind == FailureKind.GUARDRAIL and task.failure_kind != FailureKind.GUARDRAIL:
                return self._set_failure(task_id, reason, kind)
            return task
        if not self.can_transition(task.status, TaskStatus.FAILED):
            logger.warning("Task %s is %s; not marking failed (%s)", task_id, task.status.value, reason)
            return task
        return self.transition(task_id, TaskStatus.FAILED, reason=reason, failure_kind=kind)

    def record_turn(self, task_id: str) -> int:
        """Increment and persist the task's lifetime turn counter."""
        def _bump(records: dict) -> int:
            record = records.get(task_id)
            if record is None:
                raise TaskNotFoundError(f"Unknown task: {task_id}")
            record["turn_count"] = int(record.get("turn_count", 0)) + 1
            record["updated_at"] = datetime.now(UTC).isoformat()
            return record["turn_count"]

        count = self.store.update(_bump)
        logger.debug("Task %s: turn count -> %d", task_id, count)
        return count

    def attach_thread(self, task_id: str, thread_id: str) -> Task:
        return self._patch(task_id, thread_id=thread_id)

    def _set_failure(self, task_id: str, reason: str, kind: FailureKind) -> Task:
        return self._patch(task_id, failure_reason=reason, failure_kind=kind.value)

    def _patch(self, task_id: str, **fields) -> Task:
        def _apply(records: dict) -> Task:
            record = records.get(task_id)
            if record is None:
                raise TaskNotFoundError(f"Unknown task: {task_id}")
            record.update(fields)
            record["updated_at"] = datetime.now(UTC).isoformat()
            return Task.model_validate(record)

        return self.store.update(_apply)


def _shortest_path(start: TaskStatus, target: TaskStatus) -> Optional[list[TaskStatus]]:
    if start == target:
        return []
    blocked = {TaskStatus.FAILED, TaskStatus.PR_OPENED}
    queue: deque[tuple[TaskStatus, list[TaskStatus]]] = deque([(start, [])])
    seen = {start}
    while queue:
        status, path = queue.popleft()
        for nxt in sorted(VALID_TRANSITIONS[status], key=lambda s: s.value):
            if nxt in seen:
                continue
            step = path + [nxt]
            if nxt == target:
                return step
            if nxt in blocked:
                continue
            seen.add(nxt)
            queue.append((nxt, step))
    return None
