"""Cooperative cancellation token.

Loops poll ``is_cancelled()`` at their own boundaries (between phases,
before a fix iteration). Nothing is ever interrupted mid-turn.
"""

from __future__ import annotations

import logging
import threading
from typing import Optional

logger = logging.getLogger("conductor.orchestrator.cancellation")


class CancellationToken:
    """Thread-safe cancellation flag with a reason."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._reason: Optional[str] = None

    def cancel(self, reason: str = "Cancelled by request") -> None:
        with self._lock:
            if self._event.is_set():
                return
            self._reason = reason
            self._event.set()
        logger.debug("Cancellation requested: %s", reason)

    def is_cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> Optional[str]:
        with self._lock:
            return self._reason
