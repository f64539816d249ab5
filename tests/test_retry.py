"""Tests for prebuilt/retry.py module."""

import pytest
from tenacity import Retrying

from fleetpack.prebuilt.retry import RetryExhaustedError, RetryPolicy


class Flaky(Exception):
    pass


class Fatal(Exception):
    pass


def always_fail(attempt):
    raise Flaky(f"attempt {attempt}")


class TestRetryPolicyValues:
    """Tests for policy construction."""

    def test_defaults(self):
        """Default policy allows three attempts."""
        policy = RetryPolicy()
        assert policy.max_attempts == 3
        assert isinstance(policy.retrying(lambda e: True), Retrying)

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"max_attempts": 0},
            {"initial_backoff": -1.0},
            {"max_backoff": -1.0},
            {"multiplier": 0.5},
        ],
    )
    def test_invalid_values(self, kwargs):
        """Invalid policies are rejected."""
        with pytest.raises(ValueError):
            RetryPolicy(**kwargs)


class TestRetryPolicyCall:
    """Tests for RetryPolicy.call."""

    def test_success_first_attempt(self):
        """A successful first attempt does not sleep."""
        sleeps = []
        result = RetryPolicy().call(lambda n: n, retry_on=(Flaky,), sleep=sleeps.append)
        assert result == 1
        assert sleeps == []

    def test_retries_then_succeeds(self):
        """Retryable failures are retried with backoff."""
        sleeps = []
        attempts = []

        def fn(attempt):
            attempts.append(attempt)
            if attempt < 3:
                raise Flaky("try again")
            return "ok"

        policy = RetryPolicy(max_attempts=3, initial_backoff=0.5, multiplier=2.0)
        assert policy.call(fn, retry_on=(Flaky,), sleep=sleeps.append) == "ok"
        assert attempts == [1, 2, 3]
        assert sleeps == [0.5, 1.0]

    def test_backoff_is_capped(self):
        """Delays grow by the multiplier and stop at max_backoff."""
        sleeps = []
        policy = RetryPolicy(
            max_attempts=6, initial_backoff=1.0, multiplier=3.0, max_backoff=10.0
        )

        with pytest.raises(RetryExhaustedError):
            policy.call(always_fail, retry_on=(Flaky,), sleep=sleeps.append)

        assert sleeps == [1.0, 3.0, 9.0, 10.0, 10.0]

    def test_single_attempt_never_sleeps(self):
        """One attempt fails without sleeping."""
        sleeps = []
        with pytest.raises(RetryExhaustedError) as exc_info:
            RetryPolicy(max_attempts=1).call(
                always_fail, retry_on=(Flaky,), sleep=sleeps.append
            )
        assert exc_info.value.attempts == 1
        assert sleeps == []

    def test_exhausted(self):
        """Every attempt failing raises RetryExhaustedError."""
        sleeps = []

        with pytest.raises(RetryExhaustedError) as exc_info:
            RetryPolicy(max_attempts=4).call(
                always_fail, retry_on=(Flaky,), sleep=sleeps.append
            )

        assert exc_info.value.attempts == 4
        assert exc_info.value.code == "retry_exhausted"
        assert str(exc_info.value.last_error) == "attempt 4"
        assert exc_info.value.__cause__ is exc_info.value.last_error
        assert len(sleeps) == 3

    def test_other_exceptions_propagate(self):
        """Exceptions outside retry_on are not retried."""
        calls = []

        def fn(attempt):
            calls.append(attempt)
            raise Fatal("boom")

        with pytest.raises(Fatal):
            RetryPolicy().call(fn, retry_on=(Flaky,), sleep=lambda _: None)
        assert calls == [1]

    def test_retryable_predicate(self):
        """A rejected error is re-raised immediately."""
        calls = []

        def fn(attempt):
            calls.append(attempt)
            raise Flaky("permanent")

        with pytest.raises(Flaky):
            RetryPolicy().call(
                fn,
                retry_on=(Flaky,),
                retryable=lambda e: False,
                sleep=lambda _: None,
            )
        assert calls == [1]
