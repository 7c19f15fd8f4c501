"""Tests for storage/retry.py - bounded retry and wait."""

import itertools

import pytest

from zramroot.storage.retry import RetryPolicy, retry_call, wait_until


class Flaky:
    def __init__(self, failures, error=OSError):
        self.failures = failures
        self.error = error
        self.calls = []

    def __call__(self, attempt):
        self.calls.append(attempt)
        if len(self.calls) <= self.failures:
            raise self.error(f"failure {attempt}")
        return f"ok on {attempt}"


class TestRetryPolicy:
    @pytest.mark.parametrize("attempts,delay", [(0, 1.0), (1, -1.0)])
    def test_invalid(self, attempts, delay):
        with pytest.raises(ValueError):
            RetryPolicy(attempts, delay)


class TestRetryCall:
    """Tests for retry_call()."""

    def test_first_attempt_succeeds(self):
        sleeps = []
        func = Flaky(0)

        assert retry_call(func, RetryPolicy(3, 1.0), sleep=sleeps.append) == "ok on 0"
        assert sleeps == []

    def test_retries_with_pause_between_attempts(self):
        sleeps = []
        retries = []
        func = Flaky(2)

        result = retry_call(
            func,
            RetryPolicy(3, 1.0),
            retry_on=(OSError,),
            on_retry=lambda attempt, error: retries.append(attempt),
            sleep=sleeps.append,
        )

        assert result == "ok on 2"
        assert func.calls == [0, 1, 2]
        assert retries == [0, 1]
        assert sleeps == [1.0, 1.0]

    def test_exhausted_raises_last_error_without_final_pause(self):
        sleeps = []
        func = Flaky(5)

        with pytest.raises(OSError, match="failure 2"):
            retry_call(func, RetryPolicy(3, 0.5), retry_on=(OSError,), sleep=sleeps.append)

        assert sleeps == [0.5, 0.5]

    def test_other_errors_propagate_immediately(self):
        func = Flaky(1, error=KeyError)

        with pytest.raises(KeyError):
            retry_call(func, RetryPolicy(3, 0), retry_on=(OSError,))

        assert func.calls == [0]


class TestWaitUntil:
    """Tests for wait_until()."""

    def test_immediate(self):
        assert wait_until(lambda: True, 0, sleep=lambda s: pytest.fail("slept")) is True

    def test_becomes_true(self):
        values = iter([False, False, True])
        counter = itertools.count()
        assert wait_until(lambda: next(values), 10, clock=lambda: next(counter), sleep=lambda s: None)

    def test_timeout(self):
        counter = itertools.count()
        sleeps = []

        assert wait_until(lambda: False, 3, interval=0.5, clock=lambda: next(counter), sleep=sleeps.append) is False
        assert sleeps and all(s == 0.5 for s in sleeps)

    def test_checked_once_more_after_deadline(self):
        results = iter([False, True])
        counter = itertools.count(0, 100)
        assert wait_until(lambda: next(results), 1, clock=lambda: next(counter), sleep=lambda s: None)
