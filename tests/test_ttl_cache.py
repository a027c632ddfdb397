"""Tests for the TTL cache."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

from ghostmail.cache.ttl import TTLCache


class Clock:
    def __init__(self) -> None:
        self.now = datetime(2025, 1, 1, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now


def test_entries_expire_after_ttl() -> None:
    clock = Clock()
    cache = TTLCache(default_ttl_seconds=300, clock=clock)
    cache.set("key", {"a@example.com"})
    assert cache.get("key") == {"a@example.com"}

    clock.now += timedelta(seconds=301)
    assert cache.get("key") is None
    assert len(cache) == 0


def test_invalidate_by_prefix_and_keys_hide_secrets() -> None:
    cache = TTLCache()
    first = TTLCache.make_key("forwarding", "acct", "secret-token")
    cache.set(first, 1)
    cache.set("other:1", 2)
    assert "secret-token" not in first
    assert first.startswith("forwarding:")

    assert cache.invalidate("forwarding:") == 1
    assert cache.get(first) is None
    assert cache.get("other:1") == 2


def test_zero_ttl_disables_caching() -> None:
    cache = TTLCache(default_ttl_seconds=0)
    cache.set("key", 1)
    assert cache.get("key") is None
