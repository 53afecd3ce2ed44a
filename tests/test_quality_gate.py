"""Tests for conductor/quality: weighted gate and the built-in checks."""

from typing import Optional

import pytest

from conductor.core.config import QualityConfig
from conductor.core.models import CheckResult, VerifyResult
from conductor.quality.checks import (
    CheckRegistry,
    CommandCheck,
    DiffSizeCheck,
    EvalCheck,
    QualityCheck,
    ReviewCheck,
)
from conductor.quality.gate import QualityGate
from conductor.orchestrator.review import DiffReviewer
from conductor.tools.shell import ShellResult

DIMENSIONS = ("eval", "ci", "lint", "architecture", "docs")


class FixedCheck(QualityCheck):
    def __init__(self, score: float, passed: bool = True):
        self.score = score
        self.passed = passed

    def run(self, task_id: str) -> Optional[CheckResult]:
        return CheckResult(passed=self.passed, score=self.score)


class NoDataCheck(QualityCheck):
    def run(self, task_id: str) -> Optional[CheckResult]:
        return None


class ExplodingCheck(QualityCheck):
    def run(self, task_id: str) -> Optional[CheckResult]:
        raise RuntimeError("linter crashed")


def _gate(tmp_path, checks: dict[str, QualityCheck], **config) -> QualityGate:
    registry = CheckRegistry()
    for name, check in checks.items():
        registry.register(name, check)
    return QualityGate(registry, tmp_path / "quality.json", QualityConfig(**config))


class TestQualityGate:
    def test_weighted_sum(self, tmp_path):
        scores = {"eval": 100, "ci": 80, "lint": 60, "architecture": 40, "docs": 0}
        gate = _gate(tmp_path, {d: FixedCheck(s) for d, s in scores.items()})

        result = gate.score("t1")

        expected = 0.30 * 100 + 0.25 * 80 + 0.20 * 60 + 0.15 * 40 + 0.10 * 0
        assert result.overall == pytest.approx(expected)
        assert result.breakdown == {d: float(s) for d, s in scores.items()}
        assert not result.passed

    def test_no_checks_is_neutral(self, tmp_path):
        result = _gate(tmp_path, {}).score("t1")
        assert result.overall == pytest.approx(50.0)
        assert all(v == 50.0 for v in result.breakdown.values())
        assert not result.passed
        assert result.threshold == pytest.approx(70.0)

    def test_no_data_is_neutral_and_non_blocking(self, tmp_path):
        checks = {d: FixedCheck(100) for d in DIMENSIONS}
        checks["docs"] = NoDataCheck()
        result = _gate(tmp_path, checks).score("t1")
        assert result.overall == pytest.approx(0.9 * 100 + 0.1 * 50)
        assert result.checks["docs"] is None
        assert result.passed

    def test_failing_check_blocks_high_score(self, tmp_path):
        checks = {d: FixedCheck(95) for d in DIMENSIONS}
        checks["lint"] = FixedCheck(95, passed=False)
        result = _gate(tmp_path, checks).score("t1")
        assert result.overall == pytest.approx(95.0)
        assert not result.passed

    def test_raising_check_scores_neutral_and_fails(self, tmp_path):
        checks = {d: FixedCheck(100) for d in DIMENSIONS}
        checks["ci"] = ExplodingCheck()
        result = _gate(tmp_path, checks).score("t1")
        assert result.breakdown["ci"] == 50.0
        assert result.checks["ci"].detail == {"error": "linter crashed"}
        assert not result.passed

    def test_threshold_from_config(self, tmp_path):
        checks = {d: FixedCheck(65) for d in DIMENSIONS}
        assert not _gate(tmp_path, checks).score("t1").passed
        assert _gate(tmp_path, checks, pass_threshold=0.6).score("t2").passed

    def test_history_is_bounded(self, tmp_path):
        gate = _gate(tmp_path, {}, history_limit=3)
        for i in range(5):
            gate.score(f"t{i}")
        history = gate.history(limit=10)
        assert [s.task_id for s in history] == ["t2", "t3", "t4"]
        assert [s.task_id for s in gate.history(limit=1)] == ["t4"]

    def test_weights_must_sum_to_one(self):
        with pytest.raises(ValueError, match="sum to 1.0"):
            QualityConfig(weights={"eval": 0.5, "ci": 0.2})


class TestCheckRegistry:
    def test_register_and_replace(self):
        registry = CheckRegistry()
        first, second = FixedCheck(1), FixedCheck(2)
        registry.register("ci", first)
        registry.register("ci", second)
        assert registry.get("ci") is second
        registry.unregister("ci")
        assert registry.get("ci") is None
        assert registry.names() == []


class TestCommandCheck:
    class Workspace:
        def __init__(self, result):
            self.result = result

        def run(self, task_id, argv, allow_nonzero=True, timeout=None):
            return self.result

    def test_exit_zero_is_perfect(self):
        check = CommandCheck("lint", self.Workspace(ShellResult("ruff check", 0, "", "")), ["ruff", "check"])
        result = check.run("t1")
        assert result.passed and result.score == 100.0

    def test_failures_reduce_score(self):
        output = "a.py:1:1: E501 error\nb.py:2:1: F401 error\n"
        check = CommandCheck("lint", self.Workspace(ShellResult("ruff check", 1, output, "")), ["ruff", "check"])
        result = check.run("t1")
        assert not result.passed
        assert result.score == 40.0
        assert result.detail["failures"] == 2

    def test_timeout_scores_zero(self):
        check = CommandCheck("ci", self.Workspace(ShellResult("pnpm ci", -9, "", "", timed_out=True)), ["pnpm", "ci"])
        assert check.run("t1").score == 0.0

    def test_requires_command(self):
        with pytest.raises(ValueError):
            CommandCheck("docs", self.Workspace(None), [])


class TestDiffChecks:
    def test_diff_size_scales(self, fake_workspace):
        result = DiffSizeCheck(fake_workspace, max_lines=100).run("t1")
        # SAMPLE_DIFF adds three lines
        assert result.detail["changed_lines"] == 3
        assert result.score == pytest.approx(97.0)
        assert result.passed

    def test_no_diff_no_data(self, fake_workspace):
        fake_workspace.diff_text = ""
        assert DiffSizeCheck(fake_workspace).run("t1") is None

    def test_eval_check_green_with_tests(self, fake_workspace):
        class GreenVerifier:
            def run(self, task_id):
                return VerifyResult(task_id=task_id, exit_code=0, success=True)

        check = EvalCheck(fake_workspace, GreenVerifier(), DiffSizeCheck(fake_workspace, max_lines=100))
        result = check.run("t1")
        assert result.passed
        assert result.score == pytest.approx(60 + 20 + 0.2 * 97.0)
        assert result.detail["test_files"] == 1

    def test_eval_check_red_without_tests(self, fake_workspace):
        fake_workspace.changed = ["src/app.ts"]

        class RedVerifier:
            def run(self, task_id):
                return VerifyResult(task_id=task_id, exit_code=1, success=False)

        result = EvalCheck(fake_workspace, RedVerifier(), DiffSizeCheck(fake_workspace, max_lines=100)).run("t1")
        assert not result.passed
        assert result.score == pytest.approx(0.2 * 97.0)

    def test_review_check(self, fake_workspace):
        result = ReviewCheck(DiffReviewer(fake_workspace)).run("t1")
        assert result.passed
        assert result.score == 100.0

    def test_review_check_no_files(self, fake_workspace):
        fake_workspace.diff_text = ""
        assert ReviewCheck(DiffReviewer(fake_workspace)).run("t1") is None
