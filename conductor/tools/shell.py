"""Subprocess runner for verify commands, quality checks and git.

Commands are argv lists and never go through a shell. Each call gets a
timeout (default 120 s, never more than 600 s); a command that overruns is
killed and either raised as ShellTimeoutError or returned as a timed-out
ShellResult so the caller can report the tail of its output.
"""

from __future__ import annotations

import logging
import os
import subprocess
from dataclasses import dataclass
from typing import Optional

from conductor.core.exceptions import ShellTimeoutError, ToolError
from conductor.security.policy import SecurityPolicy

logger = logging.getLogger("conductor.tools.shell")

DEFAULT_TIMEOUT = 120  # seconds
MAX_TIMEOUT = 600
OUTPUT_LIMIT_BYTES = 1_048_576
KILLED_RETURN_CODE = -9


@dataclass
class ShellResult:
    """Captured outcome of one command."""
    command: str
    return_code: int
    stdout: str
    stderr: str
    timed_out: bool = False

    @property
    def success(self) -> bool:
        return self.return_code == 0 and not self.timed_out

    @property
    def killed(self) -> bool:
        return self.timed_out


def clamp_timeout(timeout: Optional[float]) -> float:
    if timeout is None or timeout <= 0:
        return DEFAULT_TIMEOUT
    return min(timeout, MAX_TIMEOUT)


def run_command(
    argv: list[str],
    cwd: Optional[str] = None,
    timeout: Optional[float] = DEFAULT_TIMEOUT,
    env: Optional[dict[str, str]] = None,
    security_policy: Optional[SecurityPolicy] = None,
    raise_on_timeout: bool = True,
) -> ShellResult:
    """Run ``argv`` to completion and capture its output.

    Args:
        argv: Binary and arguments.
        cwd: Working directory.
        timeout: Seconds before the process is killed (clamped to 600).
        env: Variables layered over the inherited (or policy-reduced) env.
        security_policy: When given, the command must pass ``policy.check``.
        raise_on_timeout: When False, a killed command comes back as a
            ShellResult with ``timed_out=True`` instead of raising.

    Raises:
        CommandNotAllowedError: The policy rejected the command.
        ShellTimeoutError: Timed out with ``raise_on_timeout`` set.
        ToolError: Empty argv, or the binary could not be started.
    """
    if not argv:
        raise ToolError("Empty command")
    display = " ".join(argv)
    limit = clamp_timeout(timeout)

    if security_policy is not None:
        security_policy.check(argv, cwd)
        child_env: Optional[dict[str, str]] = security_policy.child_env(env)
    elif env:
        child_env = {**os.environ, **env}
    else:
        child_env = None

    logger.debug("exec %s (cwd=%s, timeout=%ss)", display, cwd, limit)
    try:
        proc = subprocess.Popen(
            argv,
            cwd=cwd,
            env=child_env,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            errors="replace",
        )
    except FileNotFoundError as e:
        raise ToolError(f"Command not found: {argv[0]}") from e
    except OSError as e:
        raise ToolError(f"Failed to run command {display}: {e}") from e

    try:
        out, err = proc.communicate(timeout=limit)
    except subprocess.TimeoutExpired as e:
        proc.kill()
        out, err = proc.communicate()
        logger.warning("Killed after %ss: %s", limit, display)
        if raise_on_timeout:
            raise ShellTimeoutError(f"Command timed out after {limit}s: {display}") from e
        return ShellResult(display, KILLED_RETURN_CODE, _clip(out), _clip(err), timed_out=True)

    logger.debug("exit %d: %s", proc.returncode, display)
    return ShellResult(display, proc.returncode, _clip(out), _clip(err))


def _clip(text: Optional[str]) -> str:
    """Bound captured output to OUTPUT_LIMIT_BYTES of UTF-8."""
    if not text:
        return ""
    raw = text.encode("utf-8")
    if len(raw) <= OUTPUT_LIMIT_BYTES:
        return text
    return raw[:OUTPUT_LIMIT_BYTES].decode("utf-8", errors="ignore") + "\n... [output truncated]"
