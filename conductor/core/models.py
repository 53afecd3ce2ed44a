"""All Pydantic data models for Conductor.

Defines the data contracts shared by the task registry, the control
loops, the quality gate and the autonomous orchestrator. Every persisted
record and every loop outcome has a model here.
"""

from __future__ import annotations

import enum
import secrets
from datetime import UTC, datetime
from typing import Any, Optional

from pydantic import BaseModel, Field, computed_field, model_validator


def _now() -> datetime:
    return datetime.now(UTC)


def new_id(prefix: str, nbytes: int = 8) -> str:
    """Random identifier such as ``run_3f9a0c1d2b4e5f60``."""
    return f"{prefix}_{secrets.token_hex(nbytes)}"


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class TaskStatus(str, enum.Enum):
    CREATED = "created"
    MUTATING = "mutating"
    VERIFYING = "verifying"
    FIXING = "fixing"
    READY = "ready"
    PR_OPENED = "pr_opened"
    FAILED = "failed"


class FailureKind(str, enum.Enum):
    GUARDRAIL = "guardrail"
    STUCK = "stuck"
    BUDGET = "budget"
    TURN = "turn"
    ERROR = "error"


class TurnStatus(str, enum.Enum):
    OK = "ok"
    ERROR = "error"
    TIMEOUT = "timeout"


class FailureCategory(str, enum.Enum):
    COMPILE = "compile"
    LINT = "lint"
    TEST = "test"
    OTHER = "other"


class FixLoopOutcome(str, enum.Enum):
    SUCCESS = "success"
    BUDGET_EXHAUSTED = "budget_exhausted"
    STUCK = "stuck"
    CANCELLED = "cancelled"


class PhaseStatus(str, enum.Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class RunStatus(str, enum.Enum):
    PLANNING = "planning"
    EXECUTING = "executing"
    VALIDATING = "validating"
    COMMITTING = "committing"
    REVIEWING = "reviewing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_RUN_STATUSES = frozenset({RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.CANCELLED})


class ReviewSeverity(str, enum.Enum):
    ERROR = "error"
    WARNING = "warning"
    SUGGESTION = "suggestion"


# ---------------------------------------------------------------------------
# Tasks and turns
# ---------------------------------------------------------------------------

class Task(BaseModel):
    task_id: str
    branch_name: str
    workspace_path: str = ""
    thread_id: str = ""
    status: TaskStatus = TaskStatus.CREATED
    turn_count: int = 0
    failure_reason: Optional[str] = None
    failure_kind: Optional[FailureKind] = None
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)


class TurnResult(BaseModel):
    """Outcome of one agent turn. Transient, never persisted."""
    status: TurnStatus
    thread_id: str = ""
    turn_id: Optional[str] = None
    error_message: Optional[str] = None
    duration_seconds: float = 0.0

    @property
    def ok(self) -> bool:
        return self.status == TurnStatus.OK


# ---------------------------------------------------------------------------
# Verification and repair
# ---------------------------------------------------------------------------

class VerifyFailure(BaseModel):
    message: str
    file: Optional[str] = None
    category: FailureCategory = FailureCategory.OTHER


class VerifyResult(BaseModel):
    task_id: str
    exit_code: int
    success: bool
    failures: list[VerifyFailure] = Field(default_factory=list)
    verification_json: Optional[Any] = None
    stdout_tail: str = ""
    stderr_tail: str = ""
    combined_tail: str = ""
    timed_out: bool = False

    @model_validator(mode="after")
    def _success_has_no_failures(self) -> "VerifyResult":
        if self.success and self.failures:
            raise ValueError("a successful verification cannot carry failures")
        return self


class FixLoopResult(BaseModel):
    task_id: str
    success: bool
    iterations: int
    outcome: FixLoopOutcome
    last_verify: Optional[VerifyResult] = None
    reason: Optional[str] = None


# ---------------------------------------------------------------------------
# Execution plans
# ---------------------------------------------------------------------------

class PlanPhase(BaseModel):
    name: str
    description: str
    status: PhaseStatus = PhaseStatus.PENDING
    estimated_loc: int = 0
    dependencies: list[int] = Field(default_factory=list)
    fix_iterations: int = 0
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class ExecutionPlan(BaseModel):
    task_id: str
    description: str
    phases: list[PlanPhase] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)


class Checkpoint(BaseModel):
    checkpoint_id: str = Field(default_factory=lambda: new_id("ckpt"))
    task_id: str
    thread_id: str = ""
    description: str
    timestamp: datetime = Field(default_factory=_now)


class LearningEntry(BaseModel):
    entry_id: str = Field(default_factory=lambda: new_id("mem"))
    task_id: Optional[str] = None
    category: str
    trigger: str
    resolution: str
    confidence: float = 0.5
    applied_count: int = 0
    timestamp: datetime = Field(default_factory=_now)


# ---------------------------------------------------------------------------
# Quality
# ---------------------------------------------------------------------------

class CheckResult(BaseModel):
    """Result of one quality sub-check."""
    passed: bool
    score: float = Field(ge=0.0, le=100.0)
    detail: Any = None


class QualityScore(BaseModel):
    task_id: str
    overall: float
    breakdown: dict[str, float] = Field(default_factory=dict)
    checks: dict[str, Optional[CheckResult]] = Field(default_factory=dict)
    passed: bool = False
    threshold: float = 70.0
    timestamp: datetime = Field(default_factory=_now)


# ---------------------------------------------------------------------------
# Review
# ---------------------------------------------------------------------------

class ReviewFinding(BaseModel):
    file: str
    line: Optional[int] = None
    severity: ReviewSeverity
    message: str
    rule: str = ""


class ReviewResult(BaseModel):
    task_id: str
    findings: list[ReviewFinding] = Field(default_factory=list)
    files_reviewed: int = 0
    timestamp: datetime = Field(default_factory=_now)

    @computed_field
    @property
    def error_count(self) -> int:
        return sum(1 for f in self.findings if f.severity == ReviewSeverity.ERROR)

    @computed_field
    @property
    def warning_count(self) -> int:
        return sum(1 for f in self.findings if f.severity == ReviewSeverity.WARNING)

    @computed_field
    @property
    def suggestion_count(self) -> int:
        return sum(1 for f in self.findings if f.severity == ReviewSeverity.SUGGESTION)

    @computed_field
    @property
    def approved(self) -> bool:
        return self.error_count == 0


class ReviewLoopResult(BaseModel):
    task_id: str
    rounds: int
    approved: bool
    exhausted: bool = False
    final_review: Optional[ReviewResult] = None
    reason: Optional[str] = None


# ---------------------------------------------------------------------------
# Autonomous runs
# ---------------------------------------------------------------------------

class RunOptions(BaseModel):
    max_phase_fixes: int = Field(default=3, ge=1)
    circuit_breaker_threshold: int = Field(default=2, ge=1)
    quality_threshold: float = Field(default=0.0, ge=0.0, le=100.0)
    auto_commit: bool = True
    auto_pr: bool = True
    auto_review: bool = True
    review_rounds: int = Field(default=2, ge=0)


class PhaseResult(BaseModel):
    phase_index: int
    phase_name: str
    status: PhaseStatus = PhaseStatus.PENDING
    turn_id: Optional[str] = None
    verify_passed: bool = False
    fix_iterations: int = 0
    duration_seconds: float = 0.0
    error: Optional[str] = None


class AutonomousRun(BaseModel):
    run_id: str = Field(default_factory=lambda: new_id("run"))
    task_id: str = ""
    objective: str
    status: RunStatus = RunStatus.PLANNING
    options: RunOptions = Field(default_factory=RunOptions)
    phases: list[PhaseResult] = Field(default_factory=list)
    quality_score: Optional[float] = None
    commit_hash: Optional[str] = None
    pr_url: Optional[str] = None
    review_passed: Optional[bool] = None
    error: Optional[str] = None
    failed_phase_index: Optional[int] = None
    failed_phase_name: Optional[str] = None
    cancel_requested: bool = False
    started_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)
    completed_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_RUN_STATUSES


# ---------------------------------------------------------------------------
# One-shot mutations
# ---------------------------------------------------------------------------

class MutationRequest(BaseModel):
    task_id: str
    feature_description: str


class MutationResult(BaseModel):
    task_id: str
    branch: str
    pr_url: Optional[str] = None
    commit_hash: Optional[str] = None
    iterations: int = 0
    quality_score: Optional[float] = None
    success: bool = True


class ParallelTaskResult(BaseModel):
    task_id: str
    success: bool
    result: Optional[MutationResult] = None
    error: Optional[str] = None


class ParallelRunResult(BaseModel):
    total_tasks: int = 0
    succeeded: int = 0
    failed: int = 0
    results: list[ParallelTaskResult] = Field(default_factory=list)
