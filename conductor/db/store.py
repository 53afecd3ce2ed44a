"""File-backed persistence for Conductor.

Every durable record set (tasks, runs, plans, checkpoints, learnings,
quality history) lives in one JSON document under the state directory.
A read-modify-write cycle holds an in-process lock plus an exclusive
``flock`` on a sidecar ``<name>.lock`` file, so writers in other processes
(a CLI ``auto-cancel`` next to a running worker) are serialized too. The
canonical file is replaced atomically, so a crash mid-write leaves either
the old or the new document, never a torn one.
"""

from __future__ import annotations

import contextlib
import fcntl
import json
import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Any, Callable, Iterator, TypeVar

from conductor.core.exceptions import StoreError

logger = logging.getLogger("conductor.db.store")

T = TypeVar("T")


def bounded_append(items: list[T], item: T, limit: int) -> list[T]:
    """Append ``item`` and evict the oldest entries beyond ``limit`` (FIFO)."""
    if limit <= 0:
        raise ValueError(f"limit must be positive, got {limit}")
    items.append(item)
    overflow = len(items) - limit
    if overflow > 0:
        del items[:overflow]
    return items


class JsonStore:
    """One JSON document on disk with serialized, atomic updates."""

    def __init__(self, path: str | Path, default: Callable[[], Any] = dict):
        self.path = Path(path)
        self._default = default
        self._lock = threading.RLock()
        self._depth = 0

    @property
    def lock_path(self) -> Path:
        return self.path.with_name(self.path.name + ".lock")

    @contextlib.contextmanager
    def exclusive(self) -> Iterator[None]:
        """Hold the store against every other writer, in any process.

        Re-entrant within one thread; only the outermost entry takes the
        file lock.
        """
        with self._lock:
            if self._depth:
                self._depth += 1
                try:
                    yield
                finally:
                    self._depth -= 1
                return
            self.lock_path.parent.mkdir(parents=True, exist_ok=True)
            fd = os.open(self.lock_path, os.O_CREAT | os.O_RDWR, 0o644)
            try:
                fcntl.flock(fd, fcntl.LOCK_EX)
                self._depth = 1
                try:
                    yield
                finally:
                    self._depth = 0
                    fcntl.flock(fd, fcntl.LOCK_UN)
            finally:
                os.close(fd)

    def read(self) -> Any:
        """Return the parsed document, or a fresh default when missing."""
        with self._lock:
            return self._read_unlocked()

    def write(self, document: Any) -> None:
        with self.exclusive():
            self._write_unlocked(document)

    def update(self, mutate: Callable[[Any], T]) -> T:
        """Read, apply ``mutate`` in place, and atomically persist.

        Returns whatever ``mutate`` returns. Nothing is written when
        ``mutate`` raises.
        """
        with self.exclusive():
            document = self._read_unlocked()
            result = mutate(document)
            self._write_unlocked(document)
            return result

    def _read_unlocked(self) -> Any:
        if not self.path.exists():
            return self._default()
        try:
            raw = self.path.read_text(encoding="utf-8")
        except OSError as e:
            raise StoreError(f"Cannot read {self.path}: {e}") from e
        if not raw.strip():
            return self._default()
        try:
            return json.loads(raw)
        except json.JSONDecodeError as e:
            raise StoreError(f"Corrupt state file {self.path}: {e}") from e

    def _write_unlocked(self, document: Any) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = json.dumps(document, indent=2, sort_keys=True, default=str) + "\n"
        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{self.path.name}.", suffix=".tmp", dir=self.path.parent,
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(payload)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, self.path)
        except OSError as e:
            Path(tmp_name).unlink(missing_ok=True)
            raise StoreError(f"Cannot write {self.path}: {e}") from e
        logger.debug("Persisted %s (%d bytes)", self.path.name, len(payload))
