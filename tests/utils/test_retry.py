"""
Tests for retry with backoff.
"""

import pytest

from twophaseledger.errors import PreconditionFailed, RecordStoreUnavailable
from twophaseledger.utils.retry import (
    RetryConfig,
    RetryManager,
    is_retryable_error,
)


class TestRetryManager:
    """Test RetryManager."""

    @pytest.fixture
    def sleeps(self):
        return []

    @pytest.fixture
    def manager(self, sleeps):
        config = RetryConfig(
            max_retries=3,
            retry_backoff_ms=10,
            retry_backoff_max_ms=25,
            retry_jitter_ms=0,
        )
        return RetryManager(config, sleep=sleeps.append)

    def test_success_without_retry(self, manager, sleeps):
        assert manager.execute_with_retry(lambda: 42) == 42
        assert sleeps == []

    def test_retries_store_unavailable(self, manager, sleeps):
        attempts = []

        def flaky():
            attempts.append(1)
            if len(attempts) < 3:
                raise RecordStoreUnavailable("database is locked")
            return "ok"

        assert manager.execute_with_retry(flaky, "flaky") == "ok"
        assert len(attempts) == 3
        assert sleeps == [0.01, 0.02]

    def test_backoff_capped(self, manager):
        assert manager._calculate_backoff(0) == 10
        assert manager._calculate_backoff(1) == 20
        assert manager._calculate_backoff(5) == 25

    def test_exhausted_retries_raise(self, manager, sleeps):
        def always_down():
            raise RecordStoreUnavailable("down")

        with pytest.raises(RecordStoreUnavailable):
            manager.execute_with_retry(always_down)

        assert len(sleeps) == 3

    def test_domain_errors_not_retried(self, manager, sleeps):
        attempts = []

        def precondition():
            attempts.append(1)
            raise PreconditionFailed("T1", ["pending"], "done", step="commit")

        with pytest.raises(PreconditionFailed):
            manager.execute_with_retry(precondition)

        assert len(attempts) == 1
        assert sleeps == []


class TestRetryConfig:
    """Test RetryConfig."""

    def test_from_dict_ignores_unknown_keys(self):
        config = RetryConfig.from_dict({"max_retries": 9, "bogus": True})

        assert config.max_retries == 9
        assert config.retry_backoff_ms == RetryConfig().retry_backoff_ms

    def test_from_none(self):
        assert RetryConfig.from_dict(None) == RetryConfig()


def test_is_retryable_error():
    assert is_retryable_error(RecordStoreUnavailable("x"))
    assert is_retryable_error(Exception("database is locked"))
    assert is_retryable_error(Exception("Connection reset by peer"))
    assert not is_retryable_error(Exception("no such table: accounts"))
