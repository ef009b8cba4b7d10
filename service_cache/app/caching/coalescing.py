"""
Single-flight coalescing of concurrent misses on one fingerprint.
"""

import asyncio
from typing import Awaitable, Callable, Dict, Generic, Tuple, TypeVar

T = TypeVar("T")


class InFlightCoalescer(Generic[T]):
    """Let one leader compute a result while identical callers wait for it."""

    def __init__(self) -> None:
        self._tasks: Dict[str, "asyncio.Task[T]"] = {}

    def in_flight(self, key: str) -> bool:
        return key in self._tasks

    async def run(self, key: str, factory: Callable[[], Awaitable[T]]) -> Tuple[T, bool]:
        """Return (result, is_leader). Followers share the leader's outcome."""
        existing = self._tasks.get(key)
        if existing is not None:
            return await asyncio.shield(existing), False

        task: "asyncio.Task[T]" = asyncio.ensure_future(factory())
        self._tasks[key] = task
        task.add_done_callback(lambda done: self._forget(key, done))
        # Cancelling the leader must not cancel the work its followers wait on
        return await asyncio.shield(task), True

    def _forget(self, key: str, task: "asyncio.Task[T]") -> None:
        if self._tasks.get(key) is task:
            del self._tasks[key]
