"""Tests for utils/retry.py - exponential backoff."""

import pytest
from botocore.exceptions import ClientError

from stratus_deploy.utils.errors import ProviderError
from stratus_deploy.utils.retry import RetryStrategy


def _client_error(code):
    return ClientError({'Error': {'Code': code, 'Message': code}}, 'DescribeVpcs')


def _make_strategy(**kwargs):
    sleeps = []
    strategy = RetryStrategy(jitter=False, sleep=sleeps.append, **kwargs)
    return strategy, sleeps


class TestRetryStrategy:
    """Test retry decisions and delays."""

    def test_retries_transient_errors_until_success(self):
        """Should retry throttling and return the eventual result."""
        strategy, sleeps = _make_strategy(base_delay=1.0)
        attempts = []

        def flaky():
            attempts.append(1)
            if len(attempts) < 3:
                raise _client_error('Throttling')
            return 'ok'

        assert strategy.execute_with_retry(flaky) == 'ok'
        assert sleeps == [1.0, 2.0]

    def test_gives_up_after_max_retries(self):
        """Should re-raise once retries are exhausted."""
        strategy, sleeps = _make_strategy(max_retries=2)

        def always_fails():
            raise ConnectionError('reset')

        with pytest.raises(ConnectionError):
            strategy.execute_with_retry(always_fails)
        assert len(sleeps) == 2

    def test_does_not_retry_permanent_errors(self):
        """Should raise non-retryable errors immediately."""
        strategy, sleeps = _make_strategy()

        def denied():
            raise _client_error('AccessDenied')

        with pytest.raises(ClientError):
            strategy.execute_with_retry(denied)
        assert sleeps == []

    def test_delay_is_capped(self):
        """Should never wait longer than max_delay."""
        strategy, _ = _make_strategy(base_delay=1.0, max_delay=5.0)
        assert strategy.get_delay(0) == 1.0
        assert strategy.get_delay(2) == 4.0
        assert strategy.get_delay(10) == 5.0

    def test_jitter_adds_at_most_ten_percent(self):
        """Jittered delays should stay within 10% above the base."""
        strategy = RetryStrategy(base_delay=2.0, jitter=True)
        for _ in range(20):
            assert 2.0 <= strategy.get_delay(0) <= 2.2

    def test_passes_arguments(self):
        """Should forward positional and keyword arguments."""
        strategy, _ = _make_strategy()
        assert strategy.execute_with_retry(lambda a, b=0: a + b, 1, b=2) == 3

    def test_retries_settling_resources(self):
        """Should retry eventual-consistency errors such as DependencyViolation."""
        strategy, sleeps = _make_strategy(max_retries=3)
        outcomes = [_client_error('DependencyViolation'), None]

        def delete_vpc():
            outcome = outcomes.pop(0)
            if outcome:
                raise outcome
            return 'deleted'

        assert strategy.execute_with_retry(delete_vpc) == 'deleted'
        assert sleeps == [1.0]

    def test_retryable_deployment_errors(self):
        """Should honor the retryable flag of engine errors."""
        strategy = RetryStrategy()
        assert strategy.is_transient(ProviderError('busy', retryable=True))
        assert not strategy.is_transient(ProviderError('denied'))
