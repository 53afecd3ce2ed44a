"""Tests for conductor/cli.py: commands that need no agent runtime or remote."""

import json
import logging

import pytest
import yaml
from click.testing import CliRunner

from conductor.cli import cli
from conductor.core.models import AutonomousRun, RunStatus, Task


@pytest.fixture
def config_dir(tmp_path):
    directory = tmp_path / "config"
    directory.mkdir()
    data = {
        "workspace": {"root": str(tmp_path / "workspaces")},
        "state": {"state_dir": str(tmp_path / "state")},
    }
    (directory / "default.yaml").write_text(yaml.safe_dump(data), encoding="utf-8")
    return directory


@pytest.fixture
def state_dir(tmp_path):
    path = tmp_path / "state"
    path.mkdir()
    return path


def _invoke(config_dir, *args):
    return CliRunner().invoke(cli, [*args, "--config-dir", str(config_dir)])


class TestReadCommands:
    def test_task_get_empty(self, config_dir):
        result = _invoke(config_dir, "task-get")
        assert result.exit_code == 0, result.output
        assert json.loads(result.output) == []

    def test_task_get_one(self, config_dir, state_dir):
        task = Task(task_id="t1", branch_name="ai/t1")
        (state_dir / "tasks.json").write_text(json.dumps({"t1": task.model_dump(mode="json")}), encoding="utf-8")

        result = _invoke(config_dir, "task-get", "--task-id", "t1")

        assert result.exit_code == 0, result.output
        assert json.loads(result.output)["branch_name"] == "ai/t1"

    def test_task_get_unknown(self, config_dir):
        result = _invoke(config_dir, "task-get", "--task-id", "nope")
        assert result.exit_code == 1
        assert "Task not found: nope" in result.output

    def test_auto_list_empty(self, config_dir):
        result = _invoke(config_dir, "auto-list")
        assert result.exit_code == 0, result.output
        assert json.loads(result.output) == []

    def test_auto_get_unknown(self, config_dir):
        result = _invoke(config_dir, "auto-get", "--run-id", "run-missing")
        assert result.exit_code == 1
        assert "Run not found" in result.output

    def test_checkpoints_empty(self, config_dir):
        result = _invoke(config_dir, "checkpoints", "--task-id", "t1")
        assert result.exit_code == 0, result.output
        assert json.loads(result.output) == []


class TestWriteCommands:
    def test_transition_unknown_task(self, config_dir):
        result = _invoke(config_dir, "task-transition", "--task-id", "nope", "--status", "failed")
        assert result.exit_code == 1
        assert "Unknown task: nope" in result.output

    def test_transition_rejects_unknown_status(self, config_dir):
        result = _invoke(config_dir, "task-transition", "--task-id", "t1", "--status", "done")
        assert result.exit_code == 2

    def test_transition_illegal_edge(self, config_dir, state_dir):
        task = Task(task_id="t1", branch_name="ai/t1")
        (state_dir / "tasks.json").write_text(json.dumps({"t1": task.model_dump(mode="json")}), encoding="utf-8")

        result = _invoke(config_dir, "task-transition", "--task-id", "t1", "--status", "ready")

        assert result.exit_code == 1
        assert "created" in result.output and "ready" in result.output

    def test_auto_cancel_unknown(self, config_dir):
        result = _invoke(config_dir, "auto-cancel", "--run-id", "run-missing")
        assert result.exit_code == 0, result.output
        assert json.loads(result.output) == {"run_id": "run-missing", "cancelled": False}

    def test_auto_cancel_flags_run_owned_elsewhere(self, config_dir, state_dir):
        run = AutonomousRun(objective="Add a health endpoint", task_id="auto-x", status=RunStatus.EXECUTING)
        store = state_dir / "autonomous_runs.json"
        store.write_text(json.dumps({"runs": [run.model_dump(mode="json")]}), encoding="utf-8")

        result = _invoke(config_dir, "auto-cancel", "--run-id", run.run_id, "--reason", "operator stop")

        assert result.exit_code == 0, result.output
        assert json.loads(result.output)["cancelled"] is True
        persisted = json.loads(store.read_text(encoding="utf-8"))["runs"][0]
        assert persisted["cancel_requested"] is True
        assert persisted["status"] == "executing"

    def test_mutate_batch_requires_list(self, config_dir, tmp_path):
        requests = tmp_path / "requests.json"
        requests.write_text(json.dumps({"task_id": "t1"}), encoding="utf-8")
        result = _invoke(config_dir, "mutate-batch", "--requests", str(requests))
        assert result.exit_code == 1
        assert "JSON list" in result.output

    def test_mutate_batch_invalid_json(self, config_dir, tmp_path):
        requests = tmp_path / "requests.json"
        requests.write_text("[{", encoding="utf-8")
        result = _invoke(config_dir, "mutate-batch", "--requests", str(requests))
        assert result.exit_code == 1
        assert "Invalid JSON" in result.output

    def test_bad_config_is_reported(self, tmp_path):
        directory = tmp_path / "broken"
        directory.mkdir()
        (directory / "default.yaml").write_text("fix_loop: {max_iterations: 0}\n", encoding="utf-8")
        result = _invoke(directory, "task-get")
        assert result.exit_code == 1
        assert "Invalid configuration" in result.output


class TestLogging:
    @pytest.fixture
    def basic_config(self, monkeypatch):
        calls = []
        monkeypatch.setattr("logging.basicConfig", lambda **kwargs: calls.append(kwargs))
        return calls

    def test_level_and_format_come_from_selected_config(self, config_dir, basic_config):
        (config_dir / "quiet.yaml").write_text(
            yaml.safe_dump({"logging": {"level": "warning", "format": "%(levelname)s %(message)s"}}),
            encoding="utf-8",
        )

        result = CliRunner().invoke(cli, ["task-get", "--config-dir", str(config_dir), "--env", "quiet"])

        assert result.exit_code == 0, result.output
        assert len(basic_config) == 1
        assert basic_config[0]["level"] == logging.WARNING
        assert basic_config[0]["format"] == "%(levelname)s %(message)s"

    def test_verbose_forces_debug(self, config_dir, basic_config):
        result = CliRunner().invoke(cli, ["--verbose", "task-get", "--config-dir", str(config_dir)])

        assert result.exit_code == 0, result.output
        assert basic_config[0]["level"] == logging.DEBUG
