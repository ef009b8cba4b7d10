"""
Tag index for bulk invalidation.

Each tag maps to the list of fingerprints written under it, stored through the
same gateway as the entries under "<prefix>-<tag>". Appends are a plain
read-modify-write and are not atomic: two writers appending under one tag at
the same moment can lose one of the appends.
"""

import asyncio
from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence, Union

from shared.errors import InvalidationError
from shared.logging import get_logger
from .events import CacheEvent, EventChannel
from .gateway import CacheGateway


@dataclass
class InvalidationResult:
    """Outcome of an invalidation; partial counts survive failures."""

    cleared: int = 0
    error: Optional[InvalidationError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def __iter__(self):
        # Allows ``error, cleared = await index.invalidate(...)``
        yield self.error
        yield self.cleared


def as_tag_list(tags: Union[None, str, Iterable[str]]) -> List[str]:
    if tags is None:
        return []
    if isinstance(tags, str):
        return [tags]
    return [str(tag) for tag in tags]


class TagIndex:
    """Tag to fingerprint associations kept in a cache gateway."""

    def __init__(self, cache: CacheGateway, prefix: str, events: Optional[EventChannel] = None):
        self.cache = cache
        self.prefix = prefix
        self.events = events or EventChannel()
        self.logger = get_logger("route_cache.tag_index")

    def tag_key(self, tag: str) -> str:
        return f"{self.prefix}-{tag}"

    async def fingerprints(self, tag: str) -> List[str]:
        """Fingerprints currently indexed under tag (empty when absent)."""
        stored = await self.cache.get(self.tag_key(tag), None)
        return list(stored) if stored else []

    async def append(self, tag: str, fingerprint: str) -> bool:
        """Index fingerprint under tag. Returns False when it was already there."""
        fingerprints = await self.fingerprints(tag)
        if fingerprint in fingerprints:
            return False
        fingerprints.append(fingerprint)
        await self.cache.set(self.tag_key(tag), fingerprints)
        return True

    async def invalidate(self, tags: Union[str, Sequence[str]]) -> InvalidationResult:
        """Delete every fingerprint indexed under the given tag(s).

        Tags are processed concurrently and the call returns once all of them
        finish. Never raises; failures come back on the result together with
        the count of fingerprints cleared before they happened.
        """
        tag_list = as_tag_list(tags)
        outcomes = await asyncio.gather(*(self._invalidate_tag(tag) for tag in tag_list))

        cleared = sum(count for count, _ in outcomes)
        failures = {tag: str(error) for tag, (_, error) in zip(tag_list, outcomes) if error is not None}

        if failures:
            self.logger.error("Tag invalidation failed", tags=tag_list, cleared=cleared, failures=failures)
            return InvalidationResult(
                cleared=cleared,
                error=InvalidationError(details={"failures": failures, "cleared": cleared}),
            )

        self.logger.info("Invalidated tags", tags=tag_list, cleared=cleared)
        return InvalidationResult(cleared=cleared)

    async def _invalidate_tag(self, tag: str):
        try:
            fingerprints = await self.fingerprints(tag)
        except Exception as exc:
            return 0, exc

        results = await asyncio.gather(
            *(self._delete(tag, fingerprint) for fingerprint in fingerprints),
            return_exceptions=True,
        )
        errors = [result for result in results if isinstance(result, Exception)]
        cleared = len(results) - len(errors)
        if errors:
            # Keep the index so a later invalidation can retry the leftovers
            return cleared, errors[0]

        try:
            await self.cache.delete(self.tag_key(tag))
        except Exception as exc:
            return cleared, exc
        return cleared, None

    async def _delete(self, tag: str, fingerprint: str) -> None:
        await self.cache.delete(fingerprint)
        await self.events.emit(CacheEvent.INVALIDATED, tag, fingerprint)
