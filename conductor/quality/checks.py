"""Quality sub-checks, one per scored dimension.

A check returns a CheckResult (0-100 score plus pass/fail) or None when it
has nothing to measure. Checks are registered by dimension name at startup
so the gate never needs to know which concrete checks exist.
"""

from __future__ import annotations

import abc
import logging
from typing import Optional

from conductor.core.models import CheckResult, ReviewSeverity
from conductor.orchestrator.review import DiffReviewer, is_test_file
from conductor.orchestrator.verify import Verifier, parse_failures_from_output, tail_lines

logger = logging.getLogger("conductor.quality.checks")

_SOURCE_SUFFIXES = (".ts", ".tsx", ".js", ".jsx", ".mjs", ".cjs", ".py")


class QualityCheck(abc.ABC):
    """One quality dimension."""

    name: str = "check"

    @abc.abstractmethod
    def run(self, task_id: str) -> Optional[CheckResult]:
        """Score the task, or return None when there is no data."""


class CheckRegistry:
    """Dimension name -> check."""

    def __init__(self) -> None:
        self._checks: dict[str, QualityCheck] = {}

    def register(self, dimension: str, check: QualityCheck) -> None:
        if dimension in self._checks:
            logger.debug("Replacing quality check for %s", dimension)
        self._checks[dimension] = check

    def unregister(self, dimension: str) -> None:
        self._checks.pop(dimension, None)

    def get(self, dimension: str) -> Optional[QualityCheck]:
        return self._checks.get(dimension)

    def names(self) -> list[str]:
        return sorted(self._checks)


class CommandCheck(QualityCheck):
    """Runs a configured command; exit 0 passes with 100.

    A failing command scores 60 minus 10 per parsed failure line, floored
    at 0. A timeout scores 0.
    """

    def __init__(self, name: str, workspace, argv: list[str]):
        if not argv:
            raise ValueError(f"Command check {name} needs a command")
        self.name = name
        self.workspace = workspace
        self.argv = list(argv)

    def run(self, task_id: str) -> Optional[CheckResult]:
        result = self.workspace.run(task_id, self.argv, allow_nonzero=True)
        output = f"{result.stdout}\n{result.stderr}"
        detail = {
            "command": result.command,
            "exit_code": result.return_code,
            "output_tail": tail_lines(output, 20),
        }
        if result.timed_out:
            return CheckResult(passed=False, score=0.0, detail=detail)
        if result.return_code == 0:
            return CheckResult(passed=True, score=100.0, detail=detail)
        failures = parse_failures_from_output(output)
        detail["failures"] = len(failures)
        return CheckResult(passed=False, score=max(0.0, 60.0 - 10.0 * len(failures)), detail=detail)


class DiffSizeCheck(QualityCheck):
    """Smaller diffs score higher; anything over ``max_lines`` scores 0."""

    name = "diff_size"

    def __init__(self, workspace, max_lines: int = 800):
        self.workspace = workspace
        self.max_lines = max_lines

    def run(self, task_id: str) -> Optional[CheckResult]:
        diff = self.workspace.branch_diff(task_id)
        changed = sum(
            1 for line in diff.splitlines()
            if line[:1] in ("+", "-") and not line.startswith(("+++", "---"))
        )
        if changed == 0:
            return None
        score = max(0.0, 100.0 * (1 - changed / self.max_lines))
        return CheckResult(
            passed=changed <= self.max_lines,
            score=round(score, 2),
            detail={"changed_lines": changed, "max_lines": self.max_lines},
        )


class EvalCheck(QualityCheck):
    """Heuristic evaluation of the change itself.

    60 points for a green verification, 20 for touching tests alongside
    sources (or not touching sources at all), 20 scaled by diff size.
    Passes only when verification passes.
    """

    name = "eval"

    def __init__(self, workspace, verifier: Verifier, diff_size: Optional[DiffSizeCheck] = None):
        self.workspace = workspace
        self.verifier = verifier
        self.diff_size = diff_size or DiffSizeCheck(workspace)

    def run(self, task_id: str) -> Optional[CheckResult]:
        size = self.diff_size.run(task_id)
        if size is None:
            return None

        verify = self.verifier.run(task_id)
        files = self.workspace.changed_files(task_id)
        sources = [f for f in files if f.endswith(_SOURCE_SUFFIXES) and not is_test_file(f)]
        tests = [f for f in files if is_test_file(f)]
        tests_ok = bool(tests) or not sources

        score = (60.0 if verify.success else 0.0) + (20.0 if tests_ok else 0.0) + 0.2 * size.score
        return CheckResult(
            passed=verify.success,
            score=round(min(100.0, score), 2),
            detail={
                "verify_passed": verify.success,
                "failures": len(verify.failures),
                "source_files": len(sources),
                "test_files": len(tests),
                "diff_size": size.detail,
            },
        )


class ReviewCheck(QualityCheck):
    """Architecture dimension from the static diff review."""

    name = "architecture"

    def __init__(self, reviewer: DiffReviewer):
        self.reviewer = reviewer

    def run(self, task_id: str) -> Optional[CheckResult]:
        review = self.reviewer.review(task_id)
        if review.files_reviewed == 0:
            return None
        score = 100.0 - 15.0 * review.error_count - 5.0 * review.warning_count - 1.0 * review.suggestion_count
        return CheckResult(
            passed=review.approved,
            score=max(0.0, score),
            detail={
                "errors": review.error_count,
                "warnings": review.warning_count,
                "suggestions": review.suggestion_count,
                "rules": sorted({f.rule for f in review.findings if f.severity == ReviewSeverity.ERROR}),
            },
        )
