#!/usr/bin/env python3
"""
Unit tests for bounded retry
"""

import sys
import pytest
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent.parent / "src"))

from ham.retry import RetryPolicy, retry


class Flaky:
    """Fails ``failures`` times, then returns ``value``."""

    def __init__(self, failures, value="ok", error=ConnectionError):
        self.failures = failures
        self.value = value
        self.error = error
        self.calls = 0

    def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error(f"failure {self.calls}")
        return self.value


class TestRetryPolicy:

    def test_rejects_zero_attempts(self):
        with pytest.raises(ValueError):
            RetryPolicy(attempts=0, interval=1)

    def test_rejects_negative_interval(self):
        with pytest.raises(ValueError):
            RetryPolicy(attempts=1, interval=-1)


class TestRetry:

    def test_first_try_success_no_sleep(self, sleep):
        action = Flaky(0)
        assert retry(action, RetryPolicy(3, 5), sleep=sleep) == "ok"
        assert action.calls == 1
        assert sleep.calls == []

    def test_succeeds_after_failures(self, sleep):
        action = Flaky(2)
        assert retry(action, RetryPolicy(3, 5), sleep=sleep) == "ok"
        assert action.calls == 3
        assert sleep.calls == [5, 5]

    def test_exhausted_reraises_last_error(self, sleep):
        action = Flaky(10)
        with pytest.raises(ConnectionError, match="failure 4"):
            retry(action, RetryPolicy(4, 2), sleep=sleep)
        assert action.calls == 4
        assert sleep.calls == [2, 2, 2]

    def test_total_sleep_bounded(self, sleep):
        policy = RetryPolicy(20, 3)
        with pytest.raises(ConnectionError):
            retry(Flaky(100), policy, sleep=sleep)
        assert sleep.total == (policy.attempts - 1) * policy.interval

    def test_unlisted_errors_propagate_immediately(self, sleep):
        action = Flaky(5, error=KeyError)
        with pytest.raises(KeyError):
            retry(action, RetryPolicy(5, 1), retry_on=(ConnectionError,), sleep=sleep)
        assert action.calls == 1
        assert sleep.calls == []

    def test_on_retry_callback(self, sleep):
        seen = []
        retry(Flaky(2), RetryPolicy(3, 0), sleep=sleep,
              on_retry=lambda attempt, e: seen.append(attempt))
        assert seen == [1, 2]
