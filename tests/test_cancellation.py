"""Tests for cancellation tokens."""

import threading
import time

from stackrecon.utils.cancellation import CancellationToken


class TestCancellationToken:
    """Test cancellation and deadlines."""

    def test_not_cancelled_by_default(self):
        token = CancellationToken()

        assert not token.cancelled
        assert token.remaining() is None

    def test_cancel_records_reason(self):
        token = CancellationToken()
        token.cancel("shutdown")

        assert token.cancelled
        assert token.reason == "shutdown"

    def test_wait_returns_early_on_cancel(self):
        token = CancellationToken()
        threading.Timer(0.05, token.cancel).start()

        started = time.monotonic()
        assert token.wait(10)
        assert time.monotonic() - started < 5

    def test_deadline_cancels(self):
        token = CancellationToken(timeout=0)

        assert token.cancelled
        assert token.reason == "deadline exceeded"
        assert token.remaining() == 0.0

    def test_wait_is_capped_by_deadline(self):
        token = CancellationToken(timeout=0.05)

        started = time.monotonic()
        assert token.wait(10)
        assert time.monotonic() - started < 5

    def test_wait_without_cancel(self):
        assert not CancellationToken().wait(0.01)
