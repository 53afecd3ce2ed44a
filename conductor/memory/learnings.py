"""Learning memory: error signatures paired with the fixes that followed.

Every fix-loop iteration records what failed and what the agent changed,
whether or not the fix worked. Repeated triggers raise confidence; entries
at or above the prompt threshold are fed back into later fix prompts.
"""

from __future__ import annotations

import logging
import re
from datetime import UTC, datetime
from pathlib import Path
from typing import Optional

from conductor.core.config import MemoryConfig
from conductor.core.models import LearningEntry
from conductor.db.store import JsonStore, bounded_append

logger = logging.getLogger("conductor.memory.learnings")

FIX_PATTERN = "fix-pattern"
REVIEW_PATTERN = "review-pattern"

_ERROR_LINE_RE = re.compile(r"(error|Error|ERROR|TS\d{4}|✖)")
MAX_TRIGGER_CHARS = 200


def extract_error_signature(output: str) -> Optional[str]:
    """First error-looking line of ``output``, trimmed to 200 chars."""
    for line in output.splitlines():
        if line.strip() and _ERROR_LINE_RE.search(line):
            return line.strip()[:MAX_TRIGGER_CHARS]
    return None


def summarize_fix(diff: str) -> Optional[str]:
    added = [
        line[1:].strip()
        for line in diff.splitlines()
        if line.startswith("+") and not line.startswith("+++")
    ]
    added = [line for line in added if line]
    if not added:
        return None
    return f"Added {len(added)} line(s): {'; '.join(added[:3])[:200]}"


class LearningStore:
    """Bounded (FIFO) store of LearningEntry records."""

    def __init__(self, store_path: str | Path, config: Optional[MemoryConfig] = None):
        self.store = JsonStore(store_path, default=lambda: {"entries": []})
        self.config = config or MemoryConfig()

    def record(
        self,
        category: str,
        trigger: str,
        resolution: str,
        task_id: Optional[str] = None,
        confidence: float = 0.5,
    ) -> LearningEntry:
        """Add a learning, or reinforce the existing one with the same trigger."""
        def _apply(doc: dict) -> LearningEntry:
            entries = doc.setdefault("entries", [])
            for raw in entries:
                if raw.get("category") == category and raw.get("trigger") == trigger:
                    entry = LearningEntry.model_validate(raw)
                    entry.resolution = resolution
                    entry.confidence = min(1.0, round(entry.confidence + 0.1, 4))
                    entry.applied_count += 1
                    entry.timestamp = datetime.now(UTC)
                    raw.clear()
                    raw.update(entry.model_dump(mode="json"))
                    return entry
            entry = LearningEntry(
                task_id=task_id,
                category=category,
                trigger=trigger,
                resolution=resolution,
                confidence=confidence,
            )
            bounded_append(entries, entry.model_dump(mode="json"), self.config.max_entries)
            return entry

        entry = self.store.update(_apply)
        logger.debug("Learning %s: [%s] %s", entry.entry_id, category, trigger)
        return entry

    def entries(self) -> list[LearningEntry]:
        return [LearningEntry.model_validate(e) for e in self.store.read().get("entries", [])]

    def relevant(self, category: Optional[str] = None, limit: int = 10) -> list[LearningEntry]:
        """Entries above the prompt confidence floor, most confident first."""
        candidates = [
            e for e in self.entries()
            if (category is None or e.category == category)
            and e.confidence >= self.config.min_confidence_for_prompt
        ]
        candidates.sort(key=lambda e: (e.confidence, e.applied_count), reverse=True)
        return candidates[:limit]

    def build_memory_context(self, categories: Optional[list[str]] = None) -> str:
        if categories:
            selected: list[LearningEntry] = []
            for category in categories:
                selected.extend(self.relevant(category, limit=5))
        else:
            selected = self.relevant(limit=self.config.max_prompt_entries)

        unique = list({e.entry_id: e for e in selected}.values())
        if not unique:
            return ""
        lines = [
            f'- [{e.category}] When: "{e.trigger}" -> Fix: "{e.resolution}" '
            f"(confidence: {e.confidence:.2f})"
            for e in unique
        ]
        return "Learnings from previous tasks:\n" + "\n".join(lines)

    def extract_from_fix_loop(self, task_id: str, error_output: str, fix_diff: str) -> Optional[LearningEntry]:
        trigger = extract_error_signature(error_output)
        if not trigger:
            return None
        resolution = summarize_fix(fix_diff)
        if not resolution:
            return None
        return self.record(FIX_PATTERN, trigger, resolution, task_id=task_id)
