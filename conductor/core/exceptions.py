"""Custom exception hierarchy for Conductor.

All exceptions inherit from ConductorError so callers can catch broadly
or narrowly as needed.
"""

from __future__ import annotations

from typing import Optional


class ConductorError(Exception):
    """Base exception for all Conductor errors."""


# ---------------------------------------------------------------------------
# Task registry
# ---------------------------------------------------------------------------

class RegistryError(ConductorError):
    """Failed task registry operation."""


class InvalidTransitionError(RegistryError):
    """Requested status change is not in the transition table."""

    def __init__(self, task_id: str, from_status: str, to_status: str, message: Optional[str] = None):
        self.task_id = task_id
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(
            message or f"Invalid transition: {from_status} -> {to_status} for task {task_id}"
        )


class DuplicateBranchError(RegistryError):
    """Branch name already belongs to another task."""

    def __init__(self, branch_name: str, owner_task_id: str):
        self.branch_name = branch_name
        self.owner_task_id = owner_task_id
        super().__init__(f"Branch '{branch_name}' is already used by task {owner_task_id}")


class DuplicateTaskError(RegistryError):
    """Task id already exists."""


class TaskNotFoundError(RegistryError):
    """No task with the given id."""


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------

class StoreError(ConductorError):
    """Persisted collection is unreadable or corrupt."""


# ---------------------------------------------------------------------------
# Agent runtime
# ---------------------------------------------------------------------------

class AgentError(ConductorError):
    """Agent session failure."""


class AppServerError(AgentError):
    """JSON-RPC transport or protocol failure talking to the app server."""


class TurnError(AgentError):
    """A turn finished as failed or interrupted."""


class TurnTimeoutError(AgentError):
    """A turn did not complete within its timeout."""


class TurnBudgetExceededError(AgentError):
    """Task consumed its lifetime turn budget."""

    def __init__(self, task_id: str, turn_count: int, max_turns: int):
        self.task_id = task_id
        self.turn_count = turn_count
        self.max_turns = max_turns
        super().__init__(
            f"Task {task_id} exceeded turn budget ({turn_count}/{max_turns})"
        )


# ---------------------------------------------------------------------------
# Guardrails
# ---------------------------------------------------------------------------

class GuardrailViolationError(ConductorError):
    """Agent turn touched protected paths; the task has been failed."""

    def __init__(self, task_id: str, paths: list[str]):
        self.task_id = task_id
        self.paths = list(paths)
        super().__init__(
            f"Blocked edit in task {task_id}: protected paths changed: {', '.join(self.paths)}"
        )


BlockedEditViolation = GuardrailViolationError


# ---------------------------------------------------------------------------
# Plans
# ---------------------------------------------------------------------------

class PlanError(ConductorError):
    """Invalid execution plan operation."""


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------

class ToolError(ConductorError):
    """Tool execution failure."""


class ShellTimeoutError(ToolError):
    """Shell command exceeded timeout."""


class CommandNotAllowedError(ToolError):
    """Command rejected by the security policy."""


class WorkspaceError(ToolError):
    """Workspace could not be created or used."""


class GitOperationError(ToolError):
    """Git operation failed."""


class PullRequestError(ToolError):
    """GitHub pull request creation failed."""


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

class ConfigError(ConductorError):
    """Invalid or missing configuration."""
