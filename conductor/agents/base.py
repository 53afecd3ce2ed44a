"""Abstract agent session for Conductor.

The coding agent is a black box behind a few calls: start a thread for a
workspace, submit a turn, await its terminal notification, interrupt a
turn that overran, stop. Loops never cancel a turn for any other reason.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class TurnPolicy:
    """Sandbox/approval policy sent with threads and turns."""
    approval_policy: str = "never"
    sandbox_policy: str = "workspaceWrite"
    model: Optional[str] = None


@dataclass(frozen=True)
class TurnHandle:
    thread_id: str
    turn_id: str


@dataclass(frozen=True)
class TurnCompletion:
    """Terminal notification for one turn.

    ``status`` is the agent runtime's own value: "completed", "failed"
    or "interrupted".
    """
    thread_id: str
    turn_id: str
    status: str
    error_message: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status not in ("failed", "interrupted")


class AgentSession(ABC):
    """Interface every agent runtime adapter implements.

    Implementations correlate completions by thread id and turn id. At most
    one turn per thread is in flight; callers serialize turns per task.
    """

    @abstractmethod
    def start_thread(self, cwd: str, policy: TurnPolicy) -> str:
        """Begin a conversation rooted at ``cwd`` and return its thread id."""

    @abstractmethod
    def submit_turn(self, thread_id: str, prompt: str, policy: TurnPolicy, cwd: Optional[str] = None) -> TurnHandle:
        """Dispatch one prompt; returns as soon as the runtime accepts it."""

    @abstractmethod
    def await_completion(self, handle: TurnHandle, timeout_seconds: float) -> TurnCompletion:
        """Block until the turn's terminal notification arrives.

        Raises:
            TurnTimeoutError: If nothing arrives within ``timeout_seconds``.
            AppServerError: If the runtime dies while waiting.
        """

    def interrupt_turn(self, handle: TurnHandle) -> None:
        """Abandon one in-flight turn, leaving other threads running.

        Runtimes without a per-turn interrupt restart instead.
        """
        self.stop()

    @abstractmethod
    def stop(self) -> None:
        """Stop the runtime. The next call restarts it."""
