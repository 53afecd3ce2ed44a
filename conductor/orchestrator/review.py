"""Static diff review and the review-then-fix loop.

``DiffReviewer`` scans the added lines of a task's diff against a small
rule table. ``ReviewLoop`` sends the error findings back to the agent as a
fix turn and re-reviews until the diff is approved or the rounds run out.
"""

from __future__ import annotations

import logging
import re
from typing import Optional

from conductor.core.config import ReviewConfig
from conductor.core.models import ReviewFinding, ReviewLoopResult, ReviewResult, ReviewSeverity
from conductor.memory.learnings import REVIEW_PATTERN, LearningStore
from conductor.orchestrator.turns import TurnRunner

logger = logging.getLogger("conductor.orchestrator.review")

_HUNK_RE = re.compile(r"^@@ -\d+(?:,\d+)? \+(?P<start>\d+)(?:,\d+)? @@")
_FILE_RE = re.compile(r"^\+\+\+ (?:b/)?(?P<path>.+)$")

_TS_SUFFIXES = (".ts", ".tsx", ".mts", ".cts")
_TEST_MARKERS = (".test.", ".spec.", "/tests/", "/test/", "__tests__/")


# ---------------------------------------------------------------------------
# Rule table
# ---------------------------------------------------------------------------

SECRET_PATTERNS = [
    re.compile(r"""(?:password|passwd|secret|api[_-]?key|access[_-]?key|token)\s*[:=]\s*["'][^"']{8,}["']""", re.IGNORECASE),
    re.compile(r"\bAKIA[0-9A-Z]{16}\b"),
    re.compile(r"-----BEGIN (?:RSA |EC |OPENSSH |DSA )?PRIVATE KEY-----"),
    re.compile(r"\bgh[pousr]_[A-Za-z0-9]{36,}\b"),
]
CONFLICT_MARKER = re.compile(r"^(?:<{7}|={7}|>{7})(?:\s|$)")
DEBUGGER_PATTERNS = [
    re.compile(r"^\s*debugger\s*;?\s*$"),
    re.compile(r"\bbreakpoint\(\s*\)"),
    re.compile(r"\bpdb\.set_trace\(\s*\)"),
    re.compile(r"^\s*import\s+i?pdb\b"),
]
SUPPRESSION_PATTERNS = [
    re.compile(r"@ts-ignore"),
    re.compile(r"@ts-expect-error\s*$"),
    re.compile(r"#\s*type:\s*ignore(?!\[)"),
]
TS_ANY = re.compile(r"(?::\s*any\b|<any>|\bas\s+any\b|\bany\[\])")
CONSOLE_LOG = re.compile(r"\bconsole\.log\(")
PY_PRINT = re.compile(r"^\s*print\(")
TODO_MARKER = re.compile(r"\b(?:TODO|FIXME|HACK)\b")


def is_test_file(path: str) -> bool:
    normalized = "/" + path.replace("\\", "/")
    name = normalized.rsplit("/", 1)[-1]
    return any(marker in normalized for marker in _TEST_MARKERS) or name.startswith("test_")


def review_line(path: str, line_no: Optional[int], content: str) -> list[ReviewFinding]:
    """Apply every rule to one added line."""
    findings: list[ReviewFinding] = []

    def add(severity: ReviewSeverity, message: str, rule: str) -> None:
        findings.append(ReviewFinding(file=path, line=line_no, severity=severity, message=message, rule=rule))

    if any(p.search(content) for p in SECRET_PATTERNS):
        add(ReviewSeverity.ERROR, "Possible hardcoded secret; read it from the environment instead.", "no-secrets")
    if CONFLICT_MARKER.search(content):
        add(ReviewSeverity.ERROR, "Unresolved merge-conflict marker.", "no-conflict-markers")
    if any(p.search(content) for p in DEBUGGER_PATTERNS):
        add(ReviewSeverity.ERROR, "Debugger statement left in code.", "no-debugger")
    if any(p.search(content) for p in SUPPRESSION_PATTERNS):
        add(
            ReviewSeverity.ERROR,
            "Type-check suppression without explanation; fix the type or use a scoped, explained suppression.",
            "type-safety",
        )
    if path.endswith(_TS_SUFFIXES) and TS_ANY.search(content) and "allow-any" not in content:
        add(ReviewSeverity.ERROR, "Avoid `any`; use a specific type or `unknown`.", "no-explicit-any")
    if not is_test_file(path):
        if CONSOLE_LOG.search(content) or (path.endswith(".py") and PY_PRINT.search(content)):
            add(ReviewSeverity.WARNING, "Remove debug output; use structured logging instead.", "no-console")
    if TODO_MARKER.search(content):
        add(ReviewSeverity.SUGGESTION, "Address TODO/FIXME/HACK before merging.", "no-todo")
    return findings


def analyze_diff(diff: str) -> tuple[list[ReviewFinding], int]:
    """Review every added line of a unified diff. Returns (findings, files)."""
    findings: list[ReviewFinding] = []
    files: set[str] = set()
    current = ""
    line_no: Optional[int] = None

    for raw in diff.splitlines():
        file_match = _FILE_RE.match(raw)
        if file_match:
            current = file_match.group("path").strip()
            if current != "/dev/null":
                files.add(current)
            line_no = None
            continue
        hunk = _HUNK_RE.match(raw)
        if hunk:
            line_no = int(hunk.group("start"))
            continue
        if raw.startswith("+") and not raw.startswith("+++"):
            findings.extend(review_line(current, line_no, raw[1:]))
            if line_no is not None:
                line_no += 1
        elif raw.startswith(" ") and line_no is not None:
            line_no += 1

    return findings, len(files)


def _format_finding(f: ReviewFinding) -> str:
    location = f"{f.file}:{f.line}" if f.line else f.file
    return f"  - [{f.rule}] {location}: {f.message}"


# ---------------------------------------------------------------------------
# Reviewer
# ---------------------------------------------------------------------------

class DiffReviewer:
    """Rule-based reviewer over the task's branch diff."""

    def __init__(self, workspace, config: Optional[ReviewConfig] = None):
        self.workspace = workspace
        self.config = config or ReviewConfig()

    def review(self, task_id: str) -> ReviewResult:
        findings, files = analyze_diff(self.workspace.branch_diff(task_id))
        result = ReviewResult(task_id=task_id, findings=findings, files_reviewed=files)
        logger.info(
            "Review %s: %d error(s), %d warning(s), %d suggestion(s) across %d file(s)",
            task_id, result.error_count, result.warning_count, result.suggestion_count, files,
        )
        return result

    def build_review_prompt(self, task_id: str) -> str:
        diff = self.workspace.branch_diff(task_id)
        return "\n".join([
            "Task: review the following code changes for quality, correctness, and adherence to project conventions.",
            "",
            "Review criteria:",
            "1. Type safety: no `any`, no unexplained suppressions, no unsafe casts.",
            "2. Security: no hardcoded secrets or credentials.",
            "3. Error handling: failures are handled or propagated, never silently dropped.",
            "4. Tests: source changes come with matching test changes.",
            "5. Minimal diff: only the changes the feature needs.",
            "",
            "git diff --stat:",
            self.workspace.diff_stat(task_id) or "(no uncommitted changes)",
            "",
            "git diff:",
            diff[: self.config.max_diff_chars],
            "",
            "Respond with a structured JSON review:",
            '{ "findings": [{ "file": "...", "line": N, "severity": "error|warning|suggestion", '
            '"message": "...", "rule": "..." }], "approved": true/false }',
        ])


# ---------------------------------------------------------------------------
# Review loop
# ---------------------------------------------------------------------------

class ReviewLoop:
    """Review, send blocking findings back as a fix turn, re-review."""

    def __init__(
        self,
        reviewer: DiffReviewer,
        turns: TurnRunner,
        config: Optional[ReviewConfig] = None,
        learnings: Optional[LearningStore] = None,
    ):
        self.reviewer = reviewer
        self.turns = turns
        self.config = config or ReviewConfig()
        self.learnings = learnings

    def run_review_loop(self, task_id: str, max_rounds: Optional[int] = None) -> ReviewLoopResult:
        """Raises GuardrailViolationError if a fix turn touches protected paths."""
        limit = max_rounds if max_rounds is not None else self.config.max_rounds
        if limit < 0:
            raise ValueError(f"max_rounds must be >= 0, got {limit}")

        review = self.reviewer.review(task_id)
        rounds = 0
        while not review.approved and rounds < limit:
            rounds += 1
            prompt = self.build_fix_prompt(task_id, review, rounds, limit)
            turn = self.turns.run_turn(task_id, prompt)
            if not turn.ok:
                logger.warning("Task %s review round %d turn %s: %s",
                               task_id, rounds, turn.status.value, turn.error_message)
            previous = review
            review = self.reviewer.review(task_id)
            self._record_resolved(task_id, previous, review, rounds)

        if review.approved:
            reason = None
        else:
            reason = f"{review.error_count} blocking finding(s) remain after {rounds} review round(s)"
            logger.warning("Task %s: %s", task_id, reason)
        return ReviewLoopResult(
            task_id=task_id,
            rounds=rounds,
            approved=review.approved,
            exhausted=not review.approved,
            final_review=review,
            reason=reason,
        )

    def build_fix_prompt(self, task_id: str, review: ReviewResult, round_no: int, max_rounds: int) -> str:
        errors = [f for f in review.findings if f.severity == ReviewSeverity.ERROR]
        return "\n".join([
            f"Task: fix code review findings for task_id={task_id} (round {round_no}/{max_rounds}).",
            "",
            f"Errors ({len(errors)}):",
            *(_format_finding(f) for f in errors),
            "",
            "Fix every error with minimal changes. Do not touch unrelated code.",
        ])

    def _record_resolved(self, task_id: str, before: ReviewResult, after: ReviewResult, round_no: int) -> None:
        if self.learnings is None:
            return
        remaining = {(f.rule, f.file) for f in after.findings if f.severity == ReviewSeverity.ERROR}
        for f in before.findings:
            if f.severity == ReviewSeverity.ERROR and (f.rule, f.file) not in remaining:
                self.learnings.record(
                    REVIEW_PATTERN,
                    trigger=f"[{f.rule}] {f.message}",
                    resolution=f"Resolved in review round {round_no} ({f.file})",
                    task_id=task_id,
                )
