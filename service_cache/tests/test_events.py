"""
Unit tests for the cache event channel.
"""

import pytest

from service_cache.app.caching.events import CacheEvent, EventChannel


class TestEventChannel:
    """Test cases for listener registration and delivery."""

    @pytest.fixture
    def events(self):
        return EventChannel()

    @pytest.mark.asyncio
    async def test_sync_and_async_listeners(self, events):
        received = []

        def sync_listener(tag, fingerprint):
            received.append(("sync", tag, fingerprint))

        async def async_listener(tag, fingerprint):
            received.append(("async", tag, fingerprint))

        events.on(CacheEvent.INVALIDATED, sync_listener)
        events.on("invalidated", async_listener)
        await events.emit(CacheEvent.INVALIDATED, "prices", "fp")

        assert received == [("sync", "prices", "fp"), ("async", "prices", "fp")]

    @pytest.mark.asyncio
    async def test_off(self, events):
        received = []
        listener = events.on(CacheEvent.CACHE_HIT, received.append)

        assert events.off(CacheEvent.CACHE_HIT, listener) is True
        assert events.off(CacheEvent.CACHE_HIT, listener) is False
        await events.emit(CacheEvent.CACHE_HIT, "request")

        assert received == []
        assert events.listeners(CacheEvent.CACHE_HIT) == []

    @pytest.mark.asyncio
    async def test_failing_listener_does_not_stop_others(self, events):
        received = []

        def broken(*args):
            raise RuntimeError("listener bug")

        events.on(CacheEvent.CACHE_FRESH, broken)
        events.on(CacheEvent.CACHE_FRESH, lambda request, info: received.append(info))
        await events.emit(CacheEvent.CACHE_FRESH, "request", {"fingerprint": "fp"})

        assert received == [{"fingerprint": "fp"}]

    def test_unknown_event_rejected(self, events):
        with pytest.raises(ValueError):
            events.on("cache_explosion", print)
