"""
Route caching package.

Decides per request whether to serve a stored response, answer 304 Not
Modified, or let the request proceed and capture its response. Cached
responses can be grouped under tags and invalidated in bulk.

Typical wiring::

    cache = setup()
    one_second = cache.create("1s", tag="prices")

    @app.get("/prices")
    @one_second.route
    async def prices(request: Request): ...

    await cache.invalidate("prices")
"""

from .engine import CacheBinding, RouteCache, setup
from .events import CacheEvent, EventChannel
from .gateway import CacheGateway, InMemoryCacheGateway, RedisCacheGateway, create_cache_gateway
from .interceptor import CacheEntry, InterceptState, ResponseInterceptor, ResponseMeta
from .settings import CACHE_MISS, CacheSettings, resolve_settings
from .tag_index import InvalidationResult, TagIndex

__all__ = [
    "setup",
    "RouteCache",
    "CacheBinding",
    "CacheSettings",
    "resolve_settings",
    "CACHE_MISS",
    "CacheGateway",
    "InMemoryCacheGateway",
    "RedisCacheGateway",
    "create_cache_gateway",
    "CacheEntry",
    "ResponseMeta",
    "ResponseInterceptor",
    "InterceptState",
    "TagIndex",
    "InvalidationResult",
    "CacheEvent",
    "EventChannel",
]
