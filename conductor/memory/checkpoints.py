"""Task checkpoints: point-in-time (task, thread, description) references.

Kept per task, newest last, capped at ``max_per_task`` with the oldest
evicted first.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

from conductor.core.config import CheckpointConfig
from conductor.core.models import Checkpoint
from conductor.db.store import JsonStore, bounded_append

logger = logging.getLogger("conductor.memory.checkpoints")


class CheckpointStore:
    def __init__(self, store_path: str | Path, config: Optional[CheckpointConfig] = None):
        self.store = JsonStore(store_path)
        self.config = config or CheckpointConfig()

    def checkpoint(self, task_id: str, thread_id: str, description: str) -> Checkpoint:
        ckpt = Checkpoint(task_id=task_id, thread_id=thread_id, description=description)

        def _apply(doc: dict) -> None:
            bounded_append(doc.setdefault(task_id, []), ckpt.model_dump(mode="json"), self.config.max_per_task)

        self.store.update(_apply)
        logger.info("Checkpoint %s for task %s: %s", ckpt.checkpoint_id, task_id, description)
        return ckpt

    def list_checkpoints(self, task_id: str) -> list[Checkpoint]:
        return [Checkpoint.model_validate(c) for c in self.store.read().get(task_id, [])]

    def latest(self, task_id: str) -> Optional[Checkpoint]:
        checkpoints = self.list_checkpoints(task_id)
        return checkpoints[-1] if checkpoints else None

    def get(self, task_id: str, checkpoint_id: str) -> Optional[Checkpoint]:
        for ckpt in self.list_checkpoints(task_id):
            if ckpt.checkpoint_id == checkpoint_id:
                return ckpt
        return None
