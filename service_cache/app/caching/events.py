"""
Lifecycle notifications emitted by the cache engine.

Listeners are registered explicitly on an EventChannel owned by the engine
handle. A listener may be a plain function or a coroutine function.
"""

import inspect
from collections import defaultdict
from enum import Enum
from typing import Any, Callable, DefaultDict, List

from shared.logging import get_logger


class CacheEvent(str, Enum):
    """Names of the notifications produced by the engine."""

    CACHE_HIT = "cache_hit"
    HASH_ERROR = "hash_error"
    READ_ERROR = "read_error"
    ETAG_MATCH = "etag_match"
    CACHE_SERVED = "cache_served"
    CACHE_FRESH = "cache_fresh"
    CACHE_SKIPPED = "cache_skipped"
    WRITE_ERROR = "write_error"
    INVALIDATE_REQUESTED = "invalidate_requested"
    INVALIDATED = "invalidated"


class EventChannel:
    """Explicit subscriber registry for cache lifecycle events."""

    def __init__(self):
        self.logger = get_logger("route_cache.events")
        self._listeners: DefaultDict[CacheEvent, List[Callable[..., Any]]] = defaultdict(list)

    def on(self, event: CacheEvent, listener: Callable[..., Any]) -> Callable[..., Any]:
        """Register a listener. Returns it so this can be used as a decorator."""
        self._listeners[CacheEvent(event)].append(listener)
        return listener

    def off(self, event: CacheEvent, listener: Callable[..., Any]) -> bool:
        """Remove a listener, returning False when it was not registered."""
        listeners = self._listeners.get(CacheEvent(event), [])
        if listener in listeners:
            listeners.remove(listener)
            return True
        return False

    def listeners(self, event: CacheEvent) -> List[Callable[..., Any]]:
        return list(self._listeners.get(CacheEvent(event), []))

    async def emit(self, event: CacheEvent, *args: Any) -> None:
        """Deliver an event to every listener, in registration order."""
        event = CacheEvent(event)
        for listener in list(self._listeners.get(event, [])):
            try:
                result = listener(*args)
                if inspect.isawaitable(result):
                    await result
            except Exception as exc:
                # Observers never get to fail a request
                self.logger.warning(
                    "Cache event listener failed",
                    cache_event=event.value,
                    error=str(exc),
                )
