"""Gate for every command Conductor runs inside a task workspace.

Commands are argv lists, so only the binary name is checked against the
allow-list; there is no shell string to parse. The working directory must
stay under the workspaces root, child processes get a reduced environment,
and a rolling one-hour window caps how many commands may run.
"""

from __future__ import annotations

import os
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional

from conductor.core.config import SecurityConfig
from conductor.core.exceptions import CommandNotAllowedError


@dataclass
class ActionTracker:
    """Timestamps of recent commands inside a rolling window."""

    window_seconds: float = 3600.0
    clock: Callable[[], float] = time.monotonic
    _stamps: deque[float] = field(default_factory=deque, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def _expire(self, now: float) -> None:
        horizon = now - self.window_seconds
        while self._stamps and self._stamps[0] <= horizon:
            self._stamps.popleft()

    def try_acquire(self, limit: int) -> bool:
        """Record one action unless ``limit`` actions are already in the window."""
        with self._lock:
            now = self.clock()
            self._expire(now)
            if len(self._stamps) >= limit:
                return False
            self._stamps.append(now)
            return True

    def in_window(self) -> int:
        with self._lock:
            self._expire(self.clock())
            return len(self._stamps)


@dataclass
class SecurityPolicy:
    """Allow-list, workspace scoping, env reduction and rate limit for commands."""

    workspace_dir: Path = field(default_factory=lambda: Path(".").resolve())
    workspace_only: bool = True
    allowed_commands: list[str] = field(default_factory=lambda: list(SecurityConfig().allowed_commands))
    max_actions_per_hour: int = 2000
    sanitize_env: bool = True
    safe_env_vars: list[str] = field(default_factory=lambda: list(SecurityConfig().safe_env_vars))
    tracker: ActionTracker = field(default_factory=ActionTracker)

    @classmethod
    def from_config(cls, config: SecurityConfig, workspace_dir: Path) -> "SecurityPolicy":
        return cls(
            workspace_dir=Path(workspace_dir).resolve(),
            workspace_only=config.workspace_only,
            allowed_commands=list(config.allowed_commands),
            max_actions_per_hour=config.max_actions_per_hour,
            sanitize_env=config.sanitize_env,
            safe_env_vars=list(config.safe_env_vars),
        )

    def allows_binary(self, argv: list[str]) -> bool:
        return bool(argv) and Path(argv[0]).name in self.allowed_commands

    def contains(self, path: Path) -> bool:
        """True when ``path`` resolves to the workspaces root or below it."""
        return Path(path).resolve().is_relative_to(self.workspace_dir.resolve())

    def check(self, argv: list[str], cwd: Optional[str] = None) -> None:
        """Admit one command or raise CommandNotAllowedError.

        The action is counted against the hourly limit only once every
        other check has passed.
        """
        if not self.allows_binary(argv):
            name = Path(argv[0]).name if argv else "<empty>"
            raise CommandNotAllowedError(f"Command not allowed by security policy: {name}")
        if cwd and self.workspace_only and not self.contains(Path(cwd)):
            raise CommandNotAllowedError(f"Working directory escapes workspace: {Path(cwd).resolve()}")
        if not self.tracker.try_acquire(self.max_actions_per_hour):
            raise CommandNotAllowedError(
                f"Security policy rate limit exceeded ({self.max_actions_per_hour} commands/hour)"
            )

    def child_env(self, extra: Optional[dict[str, str]] = None) -> dict[str, str]:
        if self.sanitize_env:
            env = {name: os.environ[name] for name in self.safe_env_vars if name in os.environ}
        else:
            env = dict(os.environ)
        env.update(extra or {})
        return env
