"""Tests for the shared retry policy."""

import pytest

from practice_migrate.errors import SchemaMismatch, SourceUnavailable
from practice_migrate.models.migration import RetryConfig
from practice_migrate.services.retry import RetryPolicy


class Flaky:
    """Callable failing ``failures`` times before returning ``value``."""

    def __init__(self, failures, error, value="ok"):
        self.failures = failures
        self.error = error
        self.value = value
        self.calls = 0

    def __call__(self, *args, **kwargs):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return self.value


def make_policy(**kwargs):
    delays = []
    policy = RetryPolicy(sleep=delays.append, **kwargs)
    return policy, delays


def test_retries_retryable_errors_until_success():
    policy, delays = make_policy(max_attempts=3, base_delay=0.5, backoff_factor=2.0)
    func = Flaky(2, SourceUnavailable("connection reset"))

    assert policy.call(func) == "ok"
    assert func.calls == 3
    assert delays == [0.5, 1.0]


def test_non_retryable_error_propagates_immediately():
    policy, delays = make_policy(max_attempts=5)
    func = Flaky(1, SchemaMismatch("column dropped", table="auth_user"))

    with pytest.raises(SchemaMismatch):
        policy.call(func)
    assert func.calls == 1
    assert delays == []


def test_exhausted_attempts_raise_last_error():
    policy, delays = make_policy(max_attempts=3)
    func = Flaky(10, SourceUnavailable("down"))

    with pytest.raises(SourceUnavailable):
        policy.call(func)
    assert func.calls == 3
    assert len(delays) == 2


def test_retry_on_covers_foreign_exceptions():
    policy, _ = make_policy(max_attempts=2, retry_on=(ConnectionError,))
    func = Flaky(1, ConnectionError("reset by peer"))

    assert policy.call(func) == "ok"


def test_plain_exceptions_are_not_retried_by_default():
    policy, _ = make_policy(max_attempts=3)
    func = Flaky(1, ValueError("bad"))

    with pytest.raises(ValueError):
        policy.call(func)
    assert func.calls == 1


def test_delay_is_capped():
    policy = RetryPolicy(base_delay=1.0, backoff_factor=10.0, max_delay=5.0)

    assert policy.delay_for(1) == 1.0
    assert policy.delay_for(2) == 5.0
    assert policy.delay_for(6) == 5.0


def test_from_config_with_overrides():
    config = RetryConfig(max_attempts=7, base_delay=0.1, backoff_factor=3.0, max_delay=2.0)

    policy = RetryPolicy.from_config(config, max_attempts=1)

    assert policy.max_attempts == 1
    assert policy.base_delay == 0.1
    assert policy.backoff_factor == 3.0
    assert policy.max_delay == 2.0


def test_arguments_are_passed_through():
    policy, _ = make_policy()

    assert policy.call(lambda a, b=0: a + b, 2, b=3, description="add") == 5
