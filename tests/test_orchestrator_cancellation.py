"""Tests for conductor/orchestrator/cancellation.py."""

import threading

from conductor.orchestrator.cancellation import CancellationToken


class TestCancellationToken:
    def test_starts_live(self):
        token = CancellationToken()
        assert not token.is_cancelled()
        assert token.reason is None

    def test_first_reason_wins(self):
        token = CancellationToken()
        token.cancel("operator stop")
        token.cancel("shutdown")
        assert token.is_cancelled()
        assert token.reason == "operator stop"

    def test_visible_across_threads(self):
        token = CancellationToken()
        worker = threading.Thread(target=token.cancel)
        worker.start()
        worker.join()
        assert token.is_cancelled()
        assert token.reason == "Cancelled by request"
