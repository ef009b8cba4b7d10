"""
Cache gateways consumed by the engine.

The engine only relies on the CacheGateway protocol: get/set/delete against a
backing store plus a deterministic hash primitive. Two adapters ship with the
package, a process-local store and a Redis store.
"""

import hashlib
import json
import time
from datetime import datetime
from typing import Any, Callable, Dict, Mapping, Optional, Protocol, Tuple, Union, runtime_checkable

import redis.asyncio as redis

from shared.errors import ConfigurationError
from shared.logging import get_logger


def _canonical_default(value: Any) -> Any:
    if isinstance(value, (set, frozenset)):
        return sorted(value, key=repr)
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).hex()
    raise TypeError(f"Object of type {type(value).__name__} is not hashable as a cache key")


def canonical_json(value: Any) -> str:
    """Serialize value so that equal structures always give equal text."""
    return json.dumps(
        value,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=True,
        default=_canonical_default,
    )


def hash_value(value: Any) -> str:
    """sha256 over the canonical JSON form of value."""
    return hashlib.sha256(canonical_json(value).encode("utf-8")).hexdigest()


@runtime_checkable
class CacheGateway(Protocol):
    """Backing store contract used by the engine."""

    async def get(self, key: str, fallback: Any = None) -> Any: ...

    async def set(self, key: str, value: Any, expires_at: Optional[datetime] = None) -> None: ...

    async def delete(self, key: str) -> None: ...

    def hash(self, value: Any) -> str: ...


class InMemoryCacheGateway:
    """Process-local gateway suitable for development and tests."""

    backend_id = "memory"

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._rows: Dict[str, Tuple[Any, Optional[float]]] = {}

    async def get(self, key: str, fallback: Any = None) -> Any:
        row = self._rows.get(key)
        if row is None:
            return fallback
        value, expires_at = row
        if expires_at is not None and expires_at <= self._clock():
            self._rows.pop(key, None)
            return fallback
        return value

    async def set(self, key: str, value: Any, expires_at: Optional[datetime] = None) -> None:
        self._rows[key] = (value, expires_at.timestamp() if expires_at is not None else None)

    async def delete(self, key: str) -> None:
        self._rows.pop(key, None)

    def hash(self, value: Any) -> str:
        return hash_value(value)

    def __len__(self) -> int:
        return len(self._rows)


class RedisCacheGateway:
    """Redis-backed gateway for multi-process deployments."""

    backend_id = "redis"

    def __init__(self, redis_url: str, key_prefix: str = "route-cache"):
        self.redis_url = redis_url
        self.key_prefix = key_prefix
        self.logger = get_logger("route_cache.gateway.redis")
        self._redis: Optional[redis.Redis] = None

    async def _get_redis(self) -> redis.Redis:
        """Get Redis connection."""
        if self._redis is None:
            self._redis = redis.from_url(self.redis_url)
        return self._redis

    def _make_key(self, key: str) -> str:
        return f"{self.key_prefix}:{key}" if self.key_prefix else key

    async def get(self, key: str, fallback: Any = None) -> Any:
        redis_client = await self._get_redis()
        blob = await redis_client.get(self._make_key(key))
        if blob is None:
            return fallback
        if isinstance(blob, bytes):
            blob = blob.decode("utf-8")
        return json.loads(blob)

    async def set(self, key: str, value: Any, expires_at: Optional[datetime] = None) -> None:
        redis_client = await self._get_redis()
        payload = json.dumps(value, ensure_ascii=True)
        if expires_at is None:
            await redis_client.set(self._make_key(key), payload)
        else:
            await redis_client.set(self._make_key(key), payload, pxat=int(expires_at.timestamp() * 1000))

    async def delete(self, key: str) -> None:
        redis_client = await self._get_redis()
        await redis_client.delete(self._make_key(key))

    def hash(self, value: Any) -> str:
        return hash_value(value)

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
            self.logger.debug("Closed Redis connection", redis_url=self.redis_url)


GatewaySpec = Union[CacheGateway, Mapping[str, Any], str, None]


def create_cache_gateway(spec: GatewaySpec = None) -> CacheGateway:
    """Resolve a gateway from an instance, a backend name or a backend mapping."""
    if spec is None:
        return InMemoryCacheGateway()

    if isinstance(spec, str):
        spec = {"backend": spec}

    if isinstance(spec, Mapping):
        backend = str(spec.get("backend", "memory")).strip().lower()
        if backend == "memory":
            return InMemoryCacheGateway()
        if backend == "redis":
            url = spec.get("url") or spec.get("redis_url")
            if not url:
                raise ConfigurationError("Redis cache backend requires a url", details={"backend": backend})
            return RedisCacheGateway(url, key_prefix=spec.get("key_prefix", "route-cache"))
        raise ConfigurationError(f"Unknown cache backend '{backend}'", details={"backend": backend})

    if isinstance(spec, CacheGateway):
        return spec

    raise ConfigurationError(
        "cache must be a gateway, a backend name or a backend mapping",
        details={"type": type(spec).__name__},
    )
