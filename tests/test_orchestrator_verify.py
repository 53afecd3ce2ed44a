"""Tests for conductor/orchestrator/verify.py: verify runner and failure parsing."""

import json

import pytest

from conductor.core.config import WorkspaceConfig
from conductor.core.exceptions import CommandNotAllowedError
from conductor.core.models import FailureCategory, VerifyFailure
from conductor.orchestrator.verify import (
    Verifier,
    classify_failure,
    parse_failures_from_json,
    parse_failures_from_output,
    prioritize_failures,
    resolve_success,
    tail_lines,
)
from conductor.tools.shell import ShellResult


class ScriptedWorkspace:
    """Returns one canned command result and optionally writes a JSON report."""

    def __init__(self, root, result=None, report=None, error=None):
        self.root = root
        self.result = result or ShellResult(command="pnpm verify", return_code=0, stdout="", stderr="")
        self.report = report
        self.error = error
        self.calls = []

    def workspace_path(self, task_id):
        return self.root

    def run(self, task_id, argv, allow_nonzero=True, timeout=None):
        self.calls.append(argv)
        if self.error is not None:
            raise self.error
        if self.report is not None:
            (self.root / ".agent-verify.json").write_text(json.dumps(self.report), encoding="utf-8")
        return self.result


class TestClassify:
    @pytest.mark.parametrize("line,category", [
        ("src/a.ts(3,7): error TS2322: Type 'string' is not assignable", FailureCategory.COMPILE),
        ("ModuleNotFoundError: No module named 'widgets'", FailureCategory.COMPILE),
        ("src/a.ts:4:1  error  'x' is defined but never used  no-unused-vars", FailureCategory.LINT),
        ("app.py:3:1: E501 line too long", FailureCategory.LINT),
        ("FAIL src/a.test.ts > health > returns ok", FailureCategory.TEST),
        ("something odd happened: failed", FailureCategory.OTHER),
    ])
    def test_categories(self, line, category):
        assert classify_failure(line) == category

    def test_prioritize_is_stable(self):
        failures = [
            VerifyFailure(message="t1", category=FailureCategory.TEST),
            VerifyFailure(message="o1", category=FailureCategory.OTHER),
            VerifyFailure(message="c1", category=FailureCategory.COMPILE),
            VerifyFailure(message="l1", category=FailureCategory.LINT),
            VerifyFailure(message="c2", category=FailureCategory.COMPILE),
        ]
        assert [f.message for f in prioritize_failures(failures)] == ["c1", "c2", "l1", "t1", "o1"]


class TestParsing:
    def test_output_lines_matching_failures(self):
        output = "\n".join([
            "> verify",
            "src/a.ts(3,7): error TS2322: bad type",
            "Tests: 0 failed, 12 passed",
            "FAIL src/a.test.ts",
        ])
        failures = parse_failures_from_output(output)
        assert [f.message for f in failures] == ["src/a.ts(3,7): error TS2322: bad type", "FAIL src/a.test.ts"]
        assert failures[0].file == "src/a.ts"

    def test_output_keeps_last_twenty(self):
        output = "\n".join(f"error {i}" for i in range(30))
        failures = parse_failures_from_output(output)
        assert len(failures) == 20
        assert failures[-1].message == "error 29"

    def test_json_report_shapes(self):
        report = {
            "failures": ["src/a.ts: error TS1005"],
            "errors": [{"message": "lint broke", "path": "src/b.ts", "category": "eslint"}],
            "issues": [{"no_message": True}, 42],
        }
        failures = parse_failures_from_json(report)
        assert len(failures) == 2
        assert failures[1].file == "src/b.ts"
        assert failures[1].category == FailureCategory.LINT

    def test_json_report_not_a_dict(self):
        assert parse_failures_from_json(["x"]) == []

    def test_resolve_success_report_flag_wins(self):
        assert resolve_success(1, {"success": True}, []) is True
        assert resolve_success(0, {"ok": False}, []) is False

    def test_resolve_success_exit_code(self):
        assert resolve_success(0, None, []) is True
        assert resolve_success(2, None, []) is False

    def test_tail_lines(self):
        assert tail_lines("a\nb\nc\n", 2) == "b\nc"


class TestVerifier:
    def test_green(self, tmp_path):
        verify = Verifier(ScriptedWorkspace(tmp_path), WorkspaceConfig()).run("t1")
        assert verify.success
        assert verify.failures == []
        assert verify.exit_code == 0

    def test_red_from_stdout(self, tmp_path):
        result = ShellResult("pnpm verify", 1, "src/a.ts(1,1): error TS2304: Cannot find name 'x'\n", "")
        verify = Verifier(ScriptedWorkspace(tmp_path, result), WorkspaceConfig()).run("t1")
        assert not verify.success
        assert verify.failures[0].category == FailureCategory.COMPILE
        assert "TS2304" in verify.combined_tail

    def test_report_overrides_exit_code(self, tmp_path):
        result = ShellResult("pnpm verify", 0, "done\n", "")
        report = {"success": False, "failures": [{"message": "expected 1 to be 2", "type": "test"}]}
        verify = Verifier(ScriptedWorkspace(tmp_path, result, report), WorkspaceConfig()).run("t1")
        assert not verify.success
        assert verify.verification_json == report
        assert verify.failures[0].category == FailureCategory.TEST

    def test_stale_report_removed_before_run(self, tmp_path):
        (tmp_path / ".agent-verify.json").write_text(json.dumps({"success": False}), encoding="utf-8")
        verify = Verifier(ScriptedWorkspace(tmp_path), WorkspaceConfig()).run("t1")
        assert verify.success
        assert verify.verification_json is None

    def test_unreadable_report_ignored(self, tmp_path):
        class BadReport(ScriptedWorkspace):
            def run(self, task_id, argv, allow_nonzero=True, timeout=None):
                (self.root / ".agent-verify.json").write_text("{oops", encoding="utf-8")
                return self.result

        verify = Verifier(BadReport(tmp_path), WorkspaceConfig()).run("t1")
        assert verify.success
        assert verify.verification_json is None

    def test_timeout_is_a_failure(self, tmp_path):
        result = ShellResult("pnpm verify", -9, "", "", timed_out=True)
        verify = Verifier(ScriptedWorkspace(tmp_path, result), WorkspaceConfig()).run("t1")
        assert not verify.success
        assert verify.timed_out
        assert "timed out" in verify.failures[-1].message

    def test_command_that_cannot_run(self, tmp_path):
        workspace = ScriptedWorkspace(tmp_path, error=CommandNotAllowedError("Command not allowed: pnpm"))
        verify = Verifier(workspace, WorkspaceConfig()).run("t1")
        assert not verify.success
        assert verify.exit_code == -1
        assert "could not run" in verify.failures[0].message

    def test_runs_configured_command(self, tmp_path):
        workspace = ScriptedWorkspace(tmp_path)
        Verifier(workspace, WorkspaceConfig(verify_command=["npm", "run", "check"])).run("t1")
        assert workspace.calls == [["npm", "run", "check"]]
