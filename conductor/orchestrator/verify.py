"""Verification runner and failure parsing.

Runs the target project's verify command in the task workspace and turns
its output into a VerifyResult. A ``.agent-verify.json`` report written by
the command wins over scraping stdout: its ``failures``/``errors``/``issues``
arrays become the failure list and its ``success``/``ok``/``passed`` flag
overrides the exit code.
"""

from __future__ import annotations

import json
import logging
import re
from pathlib import Path
from typing import Any, Optional

from conductor.core.config import WorkspaceConfig
from conductor.core.exceptions import ToolError
from conductor.core.models import FailureCategory, VerifyFailure, VerifyResult

logger = logging.getLogger("conductor.orchestrator.verify")

MAX_STDOUT_FAILURES = 20

_FAILURE_LINE_RE = re.compile(r"(error|fail|failing|failed|✖|×)", re.IGNORECASE)
_ZERO_COUNT_RE = re.compile(r"\b0 (errors?|failures?|failed|failing)\b", re.IGNORECASE)

_COMPILE_RE = re.compile(
    r"(error TS\d+|\bTS\d{4}\b|SyntaxError|\btsc\b|type ?check|is not assignable|"
    r"cannot find (module|name)|has no exported member|compil|mypy|"
    r"ModuleNotFoundError|ImportError|NameError|build failed)",
    re.IGNORECASE,
)
_LINT_RE = re.compile(
    r"(eslint|\blint\b|prettier|ruff|flake8|pylint|no-unused-vars|no-explicit-any|"
    r"\([a-z-]+/[a-z-]+\)|\b[EWF]\d{3}\b)",
    re.IGNORECASE,
)
_TEST_RE = re.compile(
    r"(\btests?\b|\.test\.|\.spec\.|vitest|jest|pytest|expect(ed)?|assert|✖|×|FAIL\b)",
    re.IGNORECASE,
)
_FILE_RE = re.compile(
    r"(?P<file>(?:[\w@.-]+/)*[\w@.-]+\.(?:tsx?|jsx?|mjs|cjs|py|json|prisma|css|scss|md))"
    r"(?:[:(]\d+)?"
)

CATEGORY_PRIORITY = {
    FailureCategory.COMPILE: 0,
    FailureCategory.LINT: 1,
    FailureCategory.TEST: 2,
    FailureCategory.OTHER: 3,
}

_CATEGORY_ALIASES = {
    "compile": FailureCategory.COMPILE,
    "compilation": FailureCategory.COMPILE,
    "type": FailureCategory.COMPILE,
    "typecheck": FailureCategory.COMPILE,
    "types": FailureCategory.COMPILE,
    "build": FailureCategory.COMPILE,
    "lint": FailureCategory.LINT,
    "eslint": FailureCategory.LINT,
    "style": FailureCategory.LINT,
    "test": FailureCategory.TEST,
    "tests": FailureCategory.TEST,
    "unit": FailureCategory.TEST,
}


def classify_failure(message: str) -> FailureCategory:
    """Bucket a failure line: compile/type, lint, test, or other."""
    if _COMPILE_RE.search(message):
        return FailureCategory.COMPILE
    if _LINT_RE.search(message):
        return FailureCategory.LINT
    if _TEST_RE.search(message):
        return FailureCategory.TEST
    return FailureCategory.OTHER


def prioritize_failures(failures: list[VerifyFailure]) -> list[VerifyFailure]:
    """Stable sort: compile first, then lint, then test, then the rest."""
    return sorted(failures, key=lambda f: CATEGORY_PRIORITY[f.category])


def parse_failures_from_json(report: Any) -> list[VerifyFailure]:
    if not isinstance(report, dict):
        return []
    failures: list[VerifyFailure] = []
    for key in ("failures", "errors", "issues"):
        items = report.get(key)
        if not isinstance(items, list):
            continue
        for item in items:
            if isinstance(item, str):
                failures.append(_failure_from_text(item))
            elif isinstance(item, dict) and isinstance(item.get("message"), str):
                failure = _failure_from_text(item["message"])
                file = item.get("file") or item.get("path")
                if isinstance(file, str) and file:
                    failure.file = file
                hint = item.get("category") or item.get("type") or item.get("kind")
                if isinstance(hint, str) and hint.lower() in _CATEGORY_ALIASES:
                    failure.category = _CATEGORY_ALIASES[hint.lower()]
                failures.append(failure)
    return failures


def parse_failures_from_output(output: str) -> list[VerifyFailure]:
    lines = [line.strip() for line in output.splitlines()]
    matches = [
        line for line in lines
        if line and _FAILURE_LINE_RE.search(line) and not _ZERO_COUNT_RE.search(line)
    ]
    return [_failure_from_text(line) for line in matches[-MAX_STDOUT_FAILURES:]]


def resolve_success(exit_code: int, report: Any, failures: list[VerifyFailure]) -> bool:
    if isinstance(report, dict):
        for key in ("success", "ok", "passed"):
            if isinstance(report.get(key), bool):
                return report[key]
    if exit_code != 0:
        return False
    return not failures


def tail_lines(text: str, count: int) -> str:
    return "\n".join(text.splitlines()[-count:]).strip()


def _failure_from_text(message: str) -> VerifyFailure:
    match = _FILE_RE.search(message)
    return VerifyFailure(
        message=message.strip(),
        file=match.group("file") if match else None,
        category=classify_failure(message),
    )


class Verifier:
    """Runs the verify command for a task and parses the outcome."""

    def __init__(self, workspace, config: Optional[WorkspaceConfig] = None):
        self.workspace = workspace
        self.config = config or WorkspaceConfig()

    def run(self, task_id: str) -> VerifyResult:
        report_path = Path(self.workspace.workspace_path(task_id)) / self.config.verify_json_filename
        report_path.unlink(missing_ok=True)

        try:
            result = self.workspace.run(task_id, list(self.config.verify_command), allow_nonzero=True)
        except ToolError as e:
            logger.error("Verify command could not run for %s: %s", task_id, e)
            return VerifyResult(
                task_id=task_id,
                exit_code=-1,
                success=False,
                failures=[VerifyFailure(message=f"Verification command could not run: {e}")],
                combined_tail=str(e),
            )
        report = self._read_report(report_path)
        combined = f"{result.stdout}\n{result.stderr}"

        if report is None:
            failures = parse_failures_from_output(combined)
        else:
            failures = parse_failures_from_json(report)

        if result.timed_out:
            success = False
            failures.append(VerifyFailure(
                message=f"Verification command timed out and was killed: {result.command}",
                category=FailureCategory.OTHER,
            ))
        else:
            success = resolve_success(result.return_code, report, failures)
        if success:
            failures = []

        verify = VerifyResult(
            task_id=task_id,
            exit_code=result.return_code,
            success=success,
            failures=failures,
            verification_json=report,
            stdout_tail=tail_lines(result.stdout, self.config.output_tail_lines),
            stderr_tail=tail_lines(result.stderr, self.config.output_tail_lines),
            combined_tail=tail_lines(combined, self.config.output_tail_lines),
            timed_out=result.timed_out,
        )
        logger.info(
            "Verify %s: success=%s exit=%d failures=%d",
            task_id, verify.success, verify.exit_code, len(verify.failures),
        )
        return verify

    def _read_report(self, path: Path) -> Any:
        if not path.exists():
            return None
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("Ignoring unreadable %s: %s", path.name, e)
            return None
