"""Weighted quality gate.

overall = Σ weight[d] × score[d] over the configured dimensions. A
dimension with no registered check, or whose check has no data, scores
the neutral 50 and does not block. A check that raises also scores 50 but
counts as a failed check.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

from conductor.core.config import QualityConfig
from conductor.core.models import CheckResult, QualityScore
from conductor.db.store import JsonStore, bounded_append
from conductor.quality.checks import CheckRegistry

logger = logging.getLogger("conductor.quality.gate")


class QualityGate:
    def __init__(
        self,
        checks: CheckRegistry,
        history_path: str | Path,
        config: Optional[QualityConfig] = None,
    ):
        self.checks = checks
        self.config = config or QualityConfig()
        self.history_store = JsonStore(history_path, default=lambda: {"scores": []})

    @property
    def threshold(self) -> float:
        return self.config.pass_threshold * 100.0

    def score(self, task_id: str) -> QualityScore:
        breakdown: dict[str, float] = {}
        results: dict[str, Optional[CheckResult]] = {}
        all_passed = True

        for dimension in self.config.weights:
            result = self._run_check(dimension, task_id)
            results[dimension] = result
            if result is None:
                breakdown[dimension] = self.config.neutral_score
                continue
            breakdown[dimension] = result.score
            if not result.passed:
                all_passed = False

        overall = sum(self.config.weights[d] * breakdown[d] for d in self.config.weights)
        score = QualityScore(
            task_id=task_id,
            overall=overall,
            breakdown=breakdown,
            checks=results,
            passed=all_passed and overall >= self.threshold,
            threshold=self.threshold,
        )
        self._persist(score)
        logger.info("Quality %s: %.2f (passed=%s)", task_id, overall, score.passed)
        return score

    def history(self, limit: int = 20) -> list[QualityScore]:
        scores = self.history_store.read().get("scores", [])
        return [QualityScore.model_validate(s) for s in scores[-limit:]] if limit > 0 else []

    def _run_check(self, dimension: str, task_id: str) -> Optional[CheckResult]:
        check = self.checks.get(dimension)
        if check is None:
            return None
        try:
            return check.run(task_id)
        except Exception as e:
            logger.warning("Quality check %s failed for %s: %s", dimension, task_id, e)
            return CheckResult(
                passed=False,
                score=self.config.neutral_score,
                detail={"error": str(e)},
            )

    def _persist(self, score: QualityScore) -> None:
        def _append(doc: dict) -> None:
            bounded_append(doc.setdefault("scores", []), score.model_dump(mode="json"), self.config.history_limit)

        self.history_store.update(_append)
