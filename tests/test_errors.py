"""Tests for the error taxonomy and retry decorator."""

from __future__ import annotations

import pytest

from ghostmail.core.errors import (
    AuthError,
    NetworkError,
    ProviderError,
    RateLimited,
    RetryConfig,
    SyncError,
    is_transient,
    retry_with_backoff,
)


def _config(delays: list[float], attempts: int = 3) -> RetryConfig:
    return RetryConfig(
        max_attempts=attempts, base_delay=1.0, jitter=0.0, sleep=delays.append
    )


def test_retries_transient_errors_until_success() -> None:
    delays: list[float] = []
    calls = {"count": 0}

    @retry_with_backoff(_config(delays))
    def flaky() -> str:
        calls["count"] += 1
        if calls["count"] < 3:
            raise NetworkError("connection reset")
        return "ok"

    assert flaky() == "ok"
    assert calls["count"] == 3
    assert delays == [1.0, 2.0]


def test_gives_up_after_max_attempts() -> None:
    delays: list[float] = []

    @retry_with_backoff(_config(delays, attempts=2))
    def always_failing() -> None:
        raise NetworkError("down")

    with pytest.raises(NetworkError):
        always_failing()
    assert len(delays) == 1


def test_non_transient_errors_are_not_retried() -> None:
    delays: list[float] = []
    calls = {"count": 0}

    @retry_with_backoff(_config(delays))
    def unauthorized() -> None:
        calls["count"] += 1
        raise AuthError("bad token")

    with pytest.raises(AuthError):
        unauthorized()
    assert calls["count"] == 1
    assert delays == []


def test_retry_after_is_honoured_and_capped() -> None:
    delays: list[float] = []
    config = _config(delays)
    config.max_delay = 5.0
    calls = {"count": 0}

    @retry_with_backoff(config)
    def throttled() -> str:
        calls["count"] += 1
        if calls["count"] == 1:
            raise RateLimited("slow down", retry_after=3)
        if calls["count"] == 2:
            raise RateLimited("slow down", retry_after=60)
        return "done"

    assert throttled() == "done"
    assert delays == [3.0, 5.0]


def test_method_uses_instance_retry_config() -> None:
    delays: list[float] = []

    class Client:
        def __init__(self) -> None:
            self.retry_config = _config(delays, attempts=4)
            self.calls = 0

        @retry_with_backoff()
        def fetch(self) -> int:
            self.calls += 1
            raise RateLimited("busy")

    client = Client()
    with pytest.raises(RateLimited):
        client.fetch()
    assert client.calls == 4
    assert len(delays) == 3


def test_error_context_and_transience() -> None:
    error = ProviderError("boom", status_code=500, code=1000, zone_id="zone-1")
    assert str(error) == "boom (zone zone-1)"
    assert error.to_dict()["type"] == "ProviderError"
    assert is_transient(RateLimited("x"))
    assert is_transient(NetworkError("x"))
    assert not is_transient(error)
    sync_error = SyncError("all failed", failures={"zone-1": error})
    assert sync_error.failures == {"zone-1": error}
