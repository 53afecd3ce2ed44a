"""Protected-path guardrail.

Runs after every agent turn. If the turn touched a protected root-level
file (package manifest, type-check config, lint config, coordination file)
the task is failed on the spot and the violation is raised. There is no
retry: the attempt is over.
"""

from __future__ import annotations

import logging
from typing import Iterable, Optional, Protocol

from conductor.core.config import GuardrailConfig
from conductor.core.exceptions import GuardrailViolationError
from conductor.core.models import FailureKind

logger = logging.getLogger("conductor.orchestrator.guardrails")


class ChangedFilesSource(Protocol):
    def changed_files(self, task_id: str) -> list[str]: ...


class GuardrailEnforcer:
    """Fails a task whose changed-file set intersects the protected set."""

    def __init__(self, workspace: ChangedFilesSource, registry, config: Optional[GuardrailConfig] = None):
        self.workspace = workspace
        self.registry = registry
        self.config = config or GuardrailConfig()
        self._protected = frozenset(_normalize(p) for p in self.config.protected_paths)

    def find_violations(self, paths: Iterable[str], allow_coordinator_edit: Optional[bool] = None) -> list[str]:
        """Return the protected paths present in ``paths``.

        Only root-level entries count: ``package.json`` is protected,
        ``apps/web/package.json`` is not.
        """
        allow_coordinator = (
            self.config.allow_coordinator_edit if allow_coordinator_edit is None else allow_coordinator_edit
        )
        offending: list[str] = []
        for path in paths:
            normalized = _normalize(path)
            if "/" in normalized or normalized not in self._protected:
                continue
            if allow_coordinator and normalized == self.config.coordination_file:
                continue
            if normalized not in offending:
                offending.append(normalized)
        return offending

    def enforce(self, task_id: str, allow_coordinator_edit: Optional[bool] = None) -> None:
        """Check the task's workspace; fail the task and raise on a violation.

        Raises:
            GuardrailViolationError: Listing every offending path.
        """
        changed = self.workspace.changed_files(task_id)
        offending = self.find_violations(changed, allow_coordinator_edit=allow_coordinator_edit)
        if not offending:
            return

        reason = f"Blocked edit: protected paths changed: {', '.join(offending)}"
        logger.warning("Guardrail tripped for task %s: %s", task_id, ", ".join(offending))
        self.registry.mark_failed(task_id, reason, kind=FailureKind.GUARDRAIL)
        raise GuardrailViolationError(task_id, offending)


def _normalize(path: str) -> str:
    normalized = path.strip().replace("\\", "/")
    while normalized.startswith("./"):
        normalized = normalized[2:]
    return normalized
