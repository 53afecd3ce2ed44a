"""Configuration loader for Conductor.

Loads config from a YAML cascade: config/default.yaml is always loaded,
then environment-specific overrides, then environment variables.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

from conductor.core.exceptions import ConfigError

MAX_COMMAND_TIMEOUT_SECONDS = 600

QUALITY_DIMENSIONS = ("eval", "ci", "lint", "architecture", "docs")


# ---------------------------------------------------------------------------
# Config schema
# ---------------------------------------------------------------------------

class AgentConfig(BaseModel):
    command: str = "codex"
    args: list[str] = Field(default_factory=lambda: ["app-server"])
    model: Optional[str] = None
    approval_policy: str = "never"
    sandbox_policy: str = "workspaceWrite"
    request_timeout_seconds: float = 30.0
    turn_timeout_seconds: float = 1200.0
    stop_timeout_seconds: float = 3.0
    auto_approve_requests: bool = True
    client_name: str = "conductor"


class WorkspaceConfig(BaseModel):
    root: str = "workspaces"
    repo_url: Optional[str] = None
    verify_command: list[str] = Field(default_factory=lambda: ["pnpm", "verify"])
    verify_json_filename: str = ".agent-verify.json"
    output_tail_lines: int = 120
    command_timeout_seconds: int = 120
    base_branch: str = "main"
    branch_prefix: str = "ai/"
    git_user_name: str = "conductor"
    git_user_email: str = "conductor@users.noreply.github.com"

    @field_validator("command_timeout_seconds")
    @classmethod
    def _cap_timeout(cls, value: int) -> int:
        if value <= 0 or value > MAX_COMMAND_TIMEOUT_SECONDS:
            raise ValueError(
                f"command_timeout_seconds must be in 1..{MAX_COMMAND_TIMEOUT_SECONDS}, got {value}"
            )
        return value


class SecurityConfig(BaseModel):
    workspace_only: bool = True
    allowed_commands: list[str] = Field(
        default_factory=lambda: [
            "git",
            "pnpm",
            "npm",
            "npx",
            "node",
            "python",
            "python3",
            "pytest",
            "ruff",
            "mypy",
        ]
    )
    max_actions_per_hour: int = 2000
    sanitize_env: bool = True
    safe_env_vars: list[str] = Field(
        default_factory=lambda: [
            "PATH",
            "HOME",
            "TERM",
            "LANG",
            "LC_ALL",
            "LC_CTYPE",
            "USER",
            "SHELL",
            "TMPDIR",
            "VIRTUAL_ENV",
            "PYTHONPATH",
            "NODE_OPTIONS",
            "PNPM_HOME",
        ]
    )


class StateConfig(BaseModel):
    state_dir: str = "state"


class FixLoopConfig(BaseModel):
    max_iterations: int = 5
    stuck_threshold: int = 3
    max_turns_per_task: int = 12

    @field_validator("max_iterations", "stuck_threshold", "max_turns_per_task")
    @classmethod
    def _positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError(f"must be a positive integer, got {value}")
        return value


class GuardrailConfig(BaseModel):
    protected_paths: list[str] = Field(
        default_factory=lambda: [
            "package.json",
            "tsconfig.json",
            "eslint.config.mjs",
            "coordinator.ts",
        ]
    )
    coordination_file: str = "coordinator.ts"
    allow_coordinator_edit: bool = False
    allow_guardrail_recovery: bool = False


class QualityConfig(BaseModel):
    weights: dict[str, float] = Field(
        default_factory=lambda: {
            "eval": 0.30,
            "ci": 0.25,
            "lint": 0.20,
            "architecture": 0.15,
            "docs": 0.10,
        }
    )
    neutral_score: float = 50.0
    pass_threshold: float = 0.7
    history_limit: int = 200
    commands: dict[str, list[str]] = Field(default_factory=dict)
    max_diff_lines: int = 800

    @model_validator(mode="after")
    def _check_weights(self) -> "QualityConfig":
        total = sum(self.weights.values())
        if abs(total - 1.0) > 1e-6:
            raise ValueError(f"quality weights must sum to 1.0, got {total:.4f}")
        unknown = sorted((set(self.weights) | set(self.commands)) - set(QUALITY_DIMENSIONS))
        if unknown:
            raise ValueError(f"unknown quality dimensions: {', '.join(unknown)}")
        if not 0.0 <= self.pass_threshold <= 1.0:
            raise ValueError("pass_threshold is a 0-1 fraction")
        return self


class ReviewConfig(BaseModel):
    max_rounds: int = 3
    max_diff_chars: int = 8000


class AutonomousConfig(BaseModel):
    max_phase_fixes: int = 3
    circuit_breaker_threshold: int = 2
    quality_threshold: float = 0.0
    quality_fix_iterations: int = 2
    auto_commit: bool = True
    auto_pr: bool = True
    auto_review: bool = True
    review_rounds: int = 2
    run_history_limit: int = 200


class ConcurrencyConfig(BaseModel):
    max_parallel_tasks: int = 3


class MemoryConfig(BaseModel):
    max_entries: int = 500
    min_confidence_for_prompt: float = 0.6
    max_prompt_entries: int = 10


class CheckpointConfig(BaseModel):
    max_per_task: int = 20


class GitHubConfig(BaseModel):
    api_url: str = "https://api.github.com"
    token_env: str = "GITHUB_TOKEN"
    timeout_seconds: float = 30.0
    user_agent: str = "conductor"


class LoggingConfig(BaseModel):
    level: str = "INFO"
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class AppConfig(BaseModel):
    agent: AgentConfig = Field(default_factory=AgentConfig)
    workspace: WorkspaceConfig = Field(default_factory=WorkspaceConfig)
    security: SecurityConfig = Field(default_factory=SecurityConfig)
    state: StateConfig = Field(default_factory=StateConfig)
    fix_loop: FixLoopConfig = Field(default_factory=FixLoopConfig)
    guardrails: GuardrailConfig = Field(default_factory=GuardrailConfig)
    quality: QualityConfig = Field(default_factory=QualityConfig)
    review: ReviewConfig = Field(default_factory=ReviewConfig)
    autonomous: AutonomousConfig = Field(default_factory=AutonomousConfig)
    concurrency: ConcurrencyConfig = Field(default_factory=ConcurrencyConfig)
    memory: MemoryConfig = Field(default_factory=MemoryConfig)
    checkpoints: CheckpointConfig = Field(default_factory=CheckpointConfig)
    github: GitHubConfig = Field(default_factory=GitHubConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


# ---------------------------------------------------------------------------
# Loader
# ---------------------------------------------------------------------------

def _deep_merge(base: dict, override: dict) -> dict:
    """Recursively merge override into base, returning a new dict."""
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _load_yaml(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    try:
        with open(path) as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e
    return data if isinstance(data, dict) else {}


def default_config_dir() -> Path:
    return Path(__file__).parent.parent.parent / "config"


def load_config(
    config_dir: Optional[Path] = None,
    env: Optional[str] = None,
) -> AppConfig:
    """Load application config from YAML cascade.

    Order: default.yaml -> {env}.yaml -> env vars
    (CONDUCTOR_WORKSPACES_ROOT, CONDUCTOR_STATE_DIR, CONDUCTOR_REPO_URL).
    """
    if config_dir is None:
        config_dir = default_config_dir()

    merged = _load_yaml(config_dir / "default.yaml")

    if env:
        overlay = _load_yaml(config_dir / f"{env}.yaml")
        merged = _deep_merge(merged, overlay)

    env_overrides = {
        "CONDUCTOR_WORKSPACES_ROOT": ("workspace", "root"),
        "CONDUCTOR_REPO_URL": ("workspace", "repo_url"),
        "CONDUCTOR_STATE_DIR": ("state", "state_dir"),
    }
    for var, (section, key) in env_overrides.items():
        value = os.getenv(var)
        if value:
            merged.setdefault(section, {})
            merged[section][key] = value

    try:
        return AppConfig(**merged)
    except ValueError as e:
        raise ConfigError(f"Invalid configuration: {e}") from e


# ---------------------------------------------------------------------------
# Prompt loader
# ---------------------------------------------------------------------------

class PromptLoader:
    """Loads prompt templates from config/prompts/.

    Falls back to the built-in text when the file doesn't exist, so
    prompt wording can be tuned per deployment without code changes.
    """

    def __init__(self, prompts_dir: Optional[Path] = None):
        if prompts_dir is None:
            prompts_dir = default_config_dir() / "prompts"
        self.prompts_dir = prompts_dir

    def load(self, name: str, default: str = "") -> str:
        """Load a prompt template by filename (e.g. "fix_constraints.txt")."""
        path = self.prompts_dir / name
        if path.exists():
            return path.read_text(encoding="utf-8").strip()
        return default
