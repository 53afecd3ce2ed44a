"""Component factory for Conductor.

Creates and wires every component once (stores, workspace gateway, agent
session, control loops, quality gate, autonomous orchestrator) so callers
receive fully-initialized dependencies instead of reaching for globals.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from conductor.agents.app_server import AppServerSession
from conductor.agents.base import AgentSession
from conductor.core.config import AppConfig, PromptLoader, default_config_dir, load_config
from conductor.memory.checkpoints import CheckpointStore
from conductor.memory.learnings import LearningStore
from conductor.orchestrator.autonomous import AutonomousOrchestrator
from conductor.orchestrator.execution_plan import ExecutionPlanManager
from conductor.orchestrator.fix_loop import FixLoop
from conductor.orchestrator.guardrails import GuardrailEnforcer
from conductor.orchestrator.review import DiffReviewer, ReviewLoop
from conductor.orchestrator.task_registry import TaskRegistry
from conductor.orchestrator.tasks import TaskService
from conductor.orchestrator.turns import TurnRunner
from conductor.orchestrator.verify import Verifier
from conductor.quality.checks import CheckRegistry, CommandCheck, DiffSizeCheck, EvalCheck, ReviewCheck
from conductor.quality.gate import QualityGate
from conductor.security.policy import SecurityPolicy
from conductor.tools.github import GitHubClient
from conductor.tools.workspace import WorkspaceManager

logger = logging.getLogger("conductor.factory")

# Dimensions backed by a configured shell command when one is set
_COMMAND_DIMENSIONS = ("ci", "lint", "docs")


@dataclass
class ComponentBundle:
    """Container for all initialized components.

    The factory builds the bundle once; the CLI and tests pull the pieces
    they need from it.
    """

    config: AppConfig
    security_policy: SecurityPolicy
    workspace: WorkspaceManager
    agent_session: AgentSession
    registry: TaskRegistry
    turns: TurnRunner
    verifier: Verifier
    fix_loop: FixLoop
    reviewer: DiffReviewer
    review_loop: ReviewLoop
    checks: CheckRegistry
    quality_gate: QualityGate
    checkpoints: CheckpointStore
    learnings: LearningStore
    plans: ExecutionPlanManager
    github: GitHubClient
    tasks: TaskService
    autonomous: AutonomousOrchestrator


class ComponentFactory:
    """Factory for creating and wiring all Conductor components.

    Usage:
        bundle = ComponentFactory.create(config_dir=Path("config"))
        run_id = bundle.autonomous.start("Add a health endpoint")
    """

    @staticmethod
    def create(
        config: Optional[AppConfig] = None,
        config_dir: Optional[Path] = None,
        env: Optional[str] = None,
        agent_session: Optional[AgentSession] = None,
        workspace: Optional[WorkspaceManager] = None,
        github: Optional[GitHubClient] = None,
    ) -> ComponentBundle:
        """Create and wire all components.

        Args:
            config: Ready-made config. Loaded from ``config_dir``/``env`` when None.
            config_dir: Path to config/ directory. Default: project root/config.
            env: Environment name for config overlay (e.g. "test").
            agent_session: Agent runtime. Default: app-server over stdio.
            workspace: Workspace gateway. Default: git checkouts under workspace.root.
            github: Pull request client. Default: GitHub REST API.
        """
        logger.info("Initializing components...")

        # --- Config ---
        if config is None:
            config = load_config(config_dir=config_dir, env=env)
        state_dir = Path(config.state.state_dir)
        state_dir.mkdir(parents=True, exist_ok=True)

        # --- Security policy ---
        workspaces_root = Path(config.workspace.root).resolve()
        security_policy = SecurityPolicy.from_config(config.security, workspaces_root)

        # --- Collaborators ---
        if workspace is None:
            workspace = WorkspaceManager(config.workspace, security_policy=security_policy)
        if agent_session is None:
            agent_session = AppServerSession(config.agent)
        if github is None:
            github = GitHubClient(config.github)

        # --- State ---
        registry = TaskRegistry(
            state_dir / "tasks.json",
            allow_guardrail_recovery=config.guardrails.allow_guardrail_recovery,
        )
        checkpoints = CheckpointStore(state_dir / "checkpoints.json", config.checkpoints)
        learnings = LearningStore(state_dir / "memory.json", config.memory)
        plans = ExecutionPlanManager(state_dir / "plans.json")
        prompt_loader = PromptLoader((config_dir or default_config_dir()) / "prompts")

        # --- Loops ---
        guardrails = GuardrailEnforcer(workspace, registry, config.guardrails)
        turns = TurnRunner(registry, agent_session, guardrails, config.agent, config.fix_loop)
        verifier = Verifier(workspace, config.workspace)
        fix_loop = FixLoop(
            registry,
            verifier,
            turns,
            workspace,
            learnings=learnings,
            config=config.fix_loop,
            prompt_loader=prompt_loader,
        )
        reviewer = DiffReviewer(workspace, config.review)
        review_loop = ReviewLoop(reviewer, turns, config.review, learnings=learnings)

        # --- Quality ---
        checks = CheckRegistry()
        checks.register(
            "eval",
            EvalCheck(workspace, verifier, DiffSizeCheck(workspace, config.quality.max_diff_lines)),
        )
        checks.register("architecture", ReviewCheck(reviewer))
        for dimension in _COMMAND_DIMENSIONS:
            argv = config.quality.commands.get(dimension)
            if argv:
                checks.register(dimension, CommandCheck(dimension, workspace, argv))
        quality_gate = QualityGate(checks, state_dir / "quality_history.json", config.quality)
        logger.info("Quality checks registered: %s", ", ".join(checks.names()))

        # --- Facades ---
        tasks = TaskService(
            registry=registry,
            workspace=workspace,
            turns=turns,
            verifier=verifier,
            fix_loop=fix_loop,
            reviewer=reviewer,
            review_loop=review_loop,
            quality_gate=quality_gate,
            checkpoints=checkpoints,
            learnings=learnings,
            github=github,
            config=config,
        )
        autonomous = AutonomousOrchestrator(
            tasks,
            plans,
            state_dir / "autonomous_runs.json",
            config=config.autonomous,
            concurrency=config.concurrency,
        )

        logger.info("All components initialized (state_dir=%s)", state_dir)
        return ComponentBundle(
            config=config,
            security_policy=security_policy,
            workspace=workspace,
            agent_session=agent_session,
            registry=registry,
            turns=turns,
            verifier=verifier,
            fix_loop=fix_loop,
            reviewer=reviewer,
            review_loop=review_loop,
            checks=checks,
            quality_gate=quality_gate,
            checkpoints=checkpoints,
            learnings=learnings,
            plans=plans,
            github=github,
            tasks=tasks,
            autonomous=autonomous,
        )

    @staticmethod
    def close(bundle: ComponentBundle) -> None:
        """Cleanly shut down all components."""
        bundle.autonomous.shutdown(wait=True)
        bundle.agent_session.stop()
        bundle.github.close()
        logger.info("All components shut down")
