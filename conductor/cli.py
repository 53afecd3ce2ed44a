"""CLI entrypoint for Conductor."""

from __future__ import annotations

import json
import logging
import sys
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator, Optional

import click
from pydantic import BaseModel

from conductor.core.config import LoggingConfig, load_config
from conductor.core.exceptions import ConductorError
from conductor.core.models import MutationRequest, RunOptions, TaskStatus


def _setup_logging(config: LoggingConfig, verbose: bool = False) -> None:
    """Apply the logging section of the selected config."""
    level = logging.DEBUG if verbose else getattr(logging, config.level.upper(), logging.INFO)
    logging.basicConfig(level=level, format=config.format, stream=sys.stderr)


_config_dir_option = click.option(
    "--config-dir",
    required=False,
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Config directory (default: <project>/config).",
)
_env_option = click.option(
    "--env",
    required=False,
    default=None,
    help="Config overlay name, e.g. 'test' loads config/test.yaml.",
)


@contextmanager
def _open_bundle(config_dir: Optional[Path], env: Optional[str]) -> Iterator[Any]:
    from conductor.core.factory import ComponentFactory

    try:
        config = load_config(config_dir=config_dir, env=env)
    except ConductorError as e:
        raise click.ClickException(str(e)) from e
    verbose = bool((click.get_current_context().find_root().obj or {}).get("verbose"))
    _setup_logging(config.logging, verbose=verbose)

    try:
        bundle = ComponentFactory.create(config=config, config_dir=config_dir)
    except ConductorError as e:
        raise click.ClickException(str(e)) from e
    try:
        yield bundle
    except ConductorError as e:
        raise click.ClickException(str(e)) from e
    finally:
        ComponentFactory.close(bundle)


def _echo_model(model: BaseModel) -> None:
    click.echo(model.model_dump_json(indent=2))


def _echo_json(payload: Any) -> None:
    click.echo(json.dumps(payload, indent=2, ensure_ascii=True, default=str))


@click.group()
@click.option("--verbose", is_flag=True, default=False, help="Enable verbose (DEBUG) logging.")
@click.pass_context
def cli(ctx: click.Context, verbose: bool) -> None:
    """Conductor command line interface."""
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose


# ---------------------------------------------------------------------------
# Tasks
# ---------------------------------------------------------------------------

@cli.command("task-create")
@click.option("--task-id", required=True, help="Task identifier (also the workspace directory name).")
@click.option("--branch", "branch_name", required=False, default=None, help="Explicit feature branch name.")
@_config_dir_option
@_env_option
def task_create(task_id: str, branch_name: Optional[str], config_dir: Optional[Path], env: Optional[str]) -> None:
    """Provision a workspace, feature branch and agent thread for a task."""
    with _open_bundle(config_dir, env) as bundle:
        _echo_model(bundle.tasks.create_task(task_id, branch_name))


@cli.command("task-get")
@click.option("--task-id", required=False, default=None, help="Task to show; omit to list every task.")
@_config_dir_option
@_env_option
def task_get(task_id: Optional[str], config_dir: Optional[Path], env: Optional[str]) -> None:
    """Show one task, or all tasks."""
    with _open_bundle(config_dir, env) as bundle:
        if task_id is None:
            _echo_json([t.model_dump(mode="json") for t in bundle.tasks.list_tasks()])
            return
        task = bundle.tasks.get_task(task_id)
        if task is None:
            raise click.ClickException(f"Task not found: {task_id}")
        _echo_model(task)


@cli.command("task-transition")
@click.option("--task-id", required=True, help="Task to transition.")
@click.option(
    "--status",
    required=True,
    type=click.Choice([s.value for s in TaskStatus]),
    help="Target status.",
)
@click.option("--reason", required=False, default=None, help="Reason recorded with failed transitions.")
@_config_dir_option
@_env_option
def task_transition(
    task_id: str,
    status: str,
    reason: Optional[str],
    config_dir: Optional[Path],
    env: Optional[str],
) -> None:
    """Move a task to another status, subject to the transition table."""
    with _open_bundle(config_dir, env) as bundle:
        _echo_model(bundle.tasks.transition_task(task_id, TaskStatus(status), reason=reason))


@cli.command("mutate")
@click.option("--task-id", required=True, help="New task identifier.")
@click.option("--feature", required=True, help="Feature description handed to the agent.")
@_config_dir_option
@_env_option
def mutate(task_id: str, feature: str, config_dir: Optional[Path], env: Optional[str]) -> None:
    """Implement a feature end-to-end: edit, verify, commit and open a PR."""
    with _open_bundle(config_dir, env) as bundle:
        _echo_model(bundle.tasks.run_mutation(task_id, feature))


@cli.command("mutate-batch")
@click.option(
    "--requests",
    "requests_path",
    required=True,
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="JSON file with a list of {task_id, feature_description} objects.",
)
@_config_dir_option
@_env_option
def mutate_batch(requests_path: Path, config_dir: Optional[Path], env: Optional[str]) -> None:
    """Run several mutations concurrently (bounded by max_parallel_tasks)."""
    try:
        payload = json.loads(requests_path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise click.ClickException(f"Invalid JSON in {requests_path}: {e}") from e
    if not isinstance(payload, list):
        raise click.ClickException("Requests file must contain a JSON list.")
    requests = [MutationRequest.model_validate(item) for item in payload]
    with _open_bundle(config_dir, env) as bundle:
        _echo_model(bundle.tasks.run_parallel(requests))


# ---------------------------------------------------------------------------
# Loops
# ---------------------------------------------------------------------------

@cli.command("verify")
@click.option("--task-id", required=True, help="Task to verify.")
@_config_dir_option
@_env_option
def verify(task_id: str, config_dir: Optional[Path], env: Optional[str]) -> None:
    """Run the verify command in the task workspace."""
    with _open_bundle(config_dir, env) as bundle:
        _echo_model(bundle.tasks.run_verify(task_id))


@cli.command("fix")
@click.option("--task-id", required=True, help="Task to repair.")
@click.option("--max-iterations", required=False, type=int, default=None, help="Fix turn budget.")
@_config_dir_option
@_env_option
def fix(task_id: str, max_iterations: Optional[int], config_dir: Optional[Path], env: Optional[str]) -> None:
    """Run the verify-fix loop until green, stuck or out of budget."""
    with _open_bundle(config_dir, env) as bundle:
        try:
            result = bundle.tasks.fix_until_green(task_id, max_iterations=max_iterations)
        except ValueError as e:
            raise click.ClickException(str(e)) from e
        _echo_model(result)


@cli.command("review")
@click.option("--task-id", required=True, help="Task to review.")
@click.option("--loop", "run_loop", is_flag=True, default=False, help="Fix findings and re-review until approved.")
@click.option("--max-rounds", required=False, type=int, default=None, help="Review-fix rounds when --loop is set.")
@_config_dir_option
@_env_option
def review(
    task_id: str,
    run_loop: bool,
    max_rounds: Optional[int],
    config_dir: Optional[Path],
    env: Optional[str],
) -> None:
    """Review the task diff, optionally looping on error findings."""
    with _open_bundle(config_dir, env) as bundle:
        if run_loop:
            _echo_model(bundle.tasks.run_review_loop(task_id, max_rounds=max_rounds))
        else:
            _echo_model(bundle.tasks.review(task_id))


@cli.command("quality")
@click.option("--task-id", required=True, help="Task to score.")
@_config_dir_option
@_env_option
def quality(task_id: str, config_dir: Optional[Path], env: Optional[str]) -> None:
    """Compute the weighted quality score for a task."""
    with _open_bundle(config_dir, env) as bundle:
        _echo_model(bundle.tasks.quality_score(task_id))


@cli.command("checkpoints")
@click.option("--task-id", required=True, help="Task whose checkpoints to list.")
@click.option("--add", "description", required=False, default=None, help="Record a new checkpoint first.")
@_config_dir_option
@_env_option
def checkpoints(task_id: str, description: Optional[str], config_dir: Optional[Path], env: Optional[str]) -> None:
    """List (and optionally add) checkpoints for a task."""
    with _open_bundle(config_dir, env) as bundle:
        if description:
            bundle.tasks.checkpoint_task(task_id, description)
        _echo_json([c.model_dump(mode="json") for c in bundle.tasks.list_checkpoints(task_id)])


# ---------------------------------------------------------------------------
# Autonomous runs
# ---------------------------------------------------------------------------

@cli.command("auto-start")
@click.option("--objective", required=True, help="What the run should accomplish.")
@click.option("--max-phase-fixes", required=False, type=int, default=None, help="Fix iterations per phase.")
@click.option("--quality-threshold", required=False, type=float, default=None, help="0-100; 0 skips the gate.")
@click.option("--no-commit", is_flag=True, default=False, help="Skip commit, PR and review.")
@click.option("--no-pr", is_flag=True, default=False, help="Commit but do not open a pull request.")
@click.option("--no-review", is_flag=True, default=False, help="Open the PR without the review loop.")
@click.option("--wait", "wait_for", is_flag=True, default=False, help="Block until the run finishes.")
@_config_dir_option
@_env_option
def auto_start(
    objective: str,
    max_phase_fixes: Optional[int],
    quality_threshold: Optional[float],
    no_commit: bool,
    no_pr: bool,
    no_review: bool,
    wait_for: bool,
    config_dir: Optional[Path],
    env: Optional[str],
) -> None:
    """Start an autonomous plan-execute-validate-commit-review run."""
    with _open_bundle(config_dir, env) as bundle:
        defaults = bundle.autonomous.default_options()
        overrides: dict[str, Any] = {}
        if max_phase_fixes is not None:
            overrides["max_phase_fixes"] = max_phase_fixes
        if quality_threshold is not None:
            overrides["quality_threshold"] = quality_threshold
        if no_commit:
            overrides["auto_commit"] = False
        if no_pr:
            overrides["auto_pr"] = False
        if no_review:
            overrides["auto_review"] = False
        try:
            options = RunOptions.model_validate({**defaults.model_dump(), **overrides})
            run_id = bundle.autonomous.start(objective, options)
        except ValueError as e:
            raise click.ClickException(str(e)) from e

        if not wait_for:
            _echo_json({"run_id": run_id})
            return
        run = bundle.autonomous.wait(run_id)
        if run is None:
            raise click.ClickException(f"Run not found: {run_id}")
        _echo_model(run)


@cli.command("auto-get")
@click.option("--run-id", required=True, help="Run to show.")
@_config_dir_option
@_env_option
def auto_get(run_id: str, config_dir: Optional[Path], env: Optional[str]) -> None:
    """Show an autonomous run."""
    with _open_bundle(config_dir, env) as bundle:
        run = bundle.autonomous.get(run_id)
        if run is None:
            raise click.ClickException(f"Run not found: {run_id}")
        _echo_model(run)


@cli.command("auto-list")
@click.option("--limit", required=False, type=int, default=20, show_default=True, help="Maximum runs to show.")
@_config_dir_option
@_env_option
def auto_list(limit: int, config_dir: Optional[Path], env: Optional[str]) -> None:
    """List autonomous runs, newest first."""
    with _open_bundle(config_dir, env) as bundle:
        _echo_json([r.model_dump(mode="json") for r in bundle.autonomous.list_runs(limit)])


@cli.command("auto-cancel")
@click.option("--run-id", required=True, help="Run to cancel.")
@click.option("--reason", required=False, default="Cancelled by request", show_default=True)
@_config_dir_option
@_env_option
def auto_cancel(run_id: str, reason: str, config_dir: Optional[Path], env: Optional[str]) -> None:
    """Request cooperative cancellation of a running autonomous run."""
    with _open_bundle(config_dir, env) as bundle:
        _echo_json({"run_id": run_id, "cancelled": bundle.autonomous.cancel(run_id, reason)})


def main() -> None:
    """Entry point used by `conductor` console script."""
    from dotenv import load_dotenv
    load_dotenv(Path(__file__).parent.parent / ".env", override=True)
    cli()


if __name__ == "__main__":
    main()
