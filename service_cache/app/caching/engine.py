"""
Route cache engine.

``setup()`` returns a ready RouteCache handle. Each ``RouteCache.create()``
call binds caching for one route and returns a CacheBinding, which decides
per request whether to serve a stored response, answer 304, or let the
request proceed through a ResponseInterceptor.
"""

import asyncio
import inspect
import typing
from contextlib import nullcontext
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple, Union

from fastapi.encoders import jsonable_encoder
from starlette.concurrency import run_in_threadpool
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from shared.config import RouteCacheConfig, get_config
from shared.errors import BackendReadError, ConfigurationError, FingerprintError, RouteCacheException
from shared.logging import get_logger, set_fingerprint
from .coalescing import InFlightCoalescer
from .etag import is_not_modified, not_modified_response
from .events import CacheEvent, EventChannel
from .fingerprint import fingerprint
from .gateway import CacheGateway, create_cache_gateway
from .interceptor import CacheEntry, ResponseInterceptor
from .settings import CacheSettings, resolve_settings
from .tag_index import InvalidationResult, TagIndex

if typing.TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from shared.metrics import CacheMetrics

Proceed = Callable[[], Awaitable[Response]]


def error_response(exc: RouteCacheException) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=exc.to_response().model_dump())


def copy_response(response: Response) -> Response:
    """Independent copy of a buffered response, without background tasks.

    Unbuffered responses (FileResponse) re-read their source on every send
    and are shared as is.
    """
    if not isinstance(getattr(response, "body", None), (bytes, bytearray)):
        return response
    duplicate = Response(content=response.body, status_code=response.status_code)
    duplicate.raw_headers = list(response.raw_headers)
    return duplicate


def _resolved_signature(endpoint: Callable[..., Any]) -> inspect.Signature:
    """Endpoint signature with string annotations evaluated in its own module."""
    try:
        hints = typing.get_type_hints(endpoint, include_extras=True)
    except (NameError, TypeError):
        hints = {}

    signature = inspect.signature(endpoint)
    return signature.replace(parameters=[
        parameter.replace(annotation=hints.get(name, parameter.annotation))
        for name, parameter in signature.parameters.items()
    ])


def _request_parameter(endpoint: Callable[..., Any]) -> Optional[str]:
    for name, parameter in _resolved_signature(endpoint).parameters.items():
        annotation = parameter.annotation
        if inspect.isclass(annotation) and issubclass(annotation, Request):
            return name
    return None


class CacheBinding:
    """Caching decision for one bound route."""

    def __init__(self, settings: CacheSettings, events: EventChannel):
        self.settings = settings
        self.events = events
        self.tag_index = TagIndex(settings.cache, settings.tag_store_prefix, events)
        self.logger = get_logger("route_cache.binding")
        self._coalescer: Optional[InFlightCoalescer[Response]] = (
            InFlightCoalescer() if settings.single_flight else None
        )

    async def __call__(self, request: Request, proceed: Proceed) -> Response:
        """Serve from cache, answer 304, or proceed and capture the response."""
        await self.events.emit(CacheEvent.CACHE_HIT, request)

        try:
            key = await fingerprint(request, self.settings)
        except FingerprintError as exc:
            self.logger.error("Error while computing fingerprint", path=request.url.path, error=str(exc))
            await self.events.emit(CacheEvent.HASH_ERROR, exc, request)
            return error_response(exc)

        set_fingerprint(key)

        try:
            entry = await self.lookup(key)
        except BackendReadError as exc:
            self.logger.error("Cache lookup failed", path=request.url.path, error=str(exc))
            await self.events.emit(CacheEvent.READ_ERROR, exc, request)
            return error_response(exc)

        if entry is not None:
            return await self._serve(request, key, entry)

        self.logger.debug("Cache miss", path=request.url.path)
        interceptor = ResponseInterceptor(request, key, self.settings, self.tag_index, self.events)
        emit = interceptor.wrap(proceed)

        if self._coalescer is None:
            return await emit()

        response, leader = await self._coalescer.run(key, emit)
        return response if leader else copy_response(response)

    async def lookup(self, key: str) -> Optional[CacheEntry]:
        """Stored entry for a fingerprint, or None on a miss."""
        fallback = self.settings.cache_fallback
        try:
            stored = await self.settings.cache.get(key, fallback)
            if stored is fallback:
                return None
            return CacheEntry.from_dict(stored)
        except Exception as exc:
            raise BackendReadError(details={"error": str(exc), "fingerprint": key}) from exc

    async def _serve(self, request: Request, key: str, entry: CacheEntry) -> Response:
        if self.settings.etag and is_not_modified(request, entry.etag):
            self.logger.debug("Etag matched, not modified", path=request.url.path)
            await self.events.emit(CacheEvent.ETAG_MATCH, request, {"fingerprint": key})
            return not_modified_response(entry.etag)

        self.logger.debug("Serving cached response", path=request.url.path)
        await self.events.emit(CacheEvent.CACHE_SERVED, request, {"fingerprint": key})
        return entry.to_response(entry.etag if self.settings.etag else None)

    def route(self, endpoint: Callable[..., Any]) -> Callable[..., Awaitable[Response]]:
        """Decorate a FastAPI endpoint so its responses go through this binding.

        The endpoint must declare a ``Request`` parameter. Return values that
        are not responses are rendered as JSON.
        """
        request_parameter = _request_parameter(endpoint)
        if request_parameter is None:
            raise ConfigurationError(
                "Cached endpoints must accept a starlette Request parameter",
                details={"endpoint": getattr(endpoint, "__name__", repr(endpoint))},
            )
        is_async = asyncio.iscoroutinefunction(endpoint)

        async def cached_endpoint(*args: Any, **kwargs: Any) -> Response:
            request = kwargs[request_parameter]

            async def proceed() -> Response:
                if is_async:
                    result = await endpoint(*args, **kwargs)
                else:
                    result = await run_in_threadpool(endpoint, *args, **kwargs)
                if isinstance(result, Response):
                    return result
                return JSONResponse(content=jsonable_encoder(result))

            return await self(request, proceed)

        # No __wrapped__: FastAPI must see the async wrapper, with the endpoint's signature
        cached_endpoint.__name__ = getattr(endpoint, "__name__", "cached_endpoint")
        cached_endpoint.__qualname__ = getattr(endpoint, "__qualname__", cached_endpoint.__name__)
        cached_endpoint.__doc__ = endpoint.__doc__
        cached_endpoint.__module__ = endpoint.__module__
        cached_endpoint.__signature__ = _resolved_signature(endpoint)
        return cached_endpoint

    async def invalidate(self, tags: Union[str, Sequence[str]]) -> InvalidationResult:
        """Invalidate tags in this binding's own tag index."""
        return await self.tag_index.invalidate(tags)


class RouteCache:
    """Ready engine handle: owns the default gateway, events and subscribers."""

    def __init__(
        self,
        config: RouteCacheConfig,
        cache: CacheGateway,
        events: EventChannel,
        metrics: Optional["CacheMetrics"] = None,
    ):
        self.config = config
        self.cache = cache
        self.events = events
        self.metrics = metrics
        self.logger = get_logger("route_cache.engine")
        self._subscribers: List[CacheBinding] = []

    def create(self, *args: Any, **options: Any) -> CacheBinding:
        """Bind caching: create(), create("1h"), create({...}) or create("1h", {...}).

        Keyword options are merged into whichever shape is used.
        """
        settings = resolve_settings(args, options, self.config, self.cache)
        binding = CacheBinding(settings, self.events)
        if settings.subscribe:
            self._subscribers.append(binding)

        self.logger.debug(
            "Bound route cache",
            duration=settings.duration,
            etag=settings.etag,
            subscribed=settings.subscribe,
        )
        return binding

    def unsubscribe(self, binding: CacheBinding) -> bool:
        if binding in self._subscribers:
            self._subscribers.remove(binding)
            return True
        return False

    @property
    def subscribers(self) -> List[CacheBinding]:
        return list(self._subscribers)

    def _tag_indexes(self) -> List[TagIndex]:
        indexes: Dict[Tuple[int, str], TagIndex] = {
            (id(self.cache), self.config.tag_store_prefix): TagIndex(
                self.cache, self.config.tag_store_prefix, self.events
            ),
        }
        for binding in self._subscribers:
            key = (id(binding.settings.cache), binding.settings.tag_store_prefix)
            indexes.setdefault(key, binding.tag_index)
        return list(indexes.values())

    async def invalidate(self, tags: Union[str, Sequence[str]]) -> InvalidationResult:
        """Invalidate tags for every subscribed binding.

        Bindings sharing a gateway and tag prefix share one index, which is
        processed once.
        """
        await self.events.emit(CacheEvent.INVALIDATE_REQUESTED, tags)

        timer = self.metrics.time_invalidation() if self.metrics is not None else nullcontext()
        with timer:
            results = await asyncio.gather(*(index.invalidate(tags) for index in self._tag_indexes()))
        cleared = sum(result.cleared for result in results)
        errors = [result.error for result in results if result.error is not None]

        if errors:
            # Keep the first failure, but report the total that did get cleared
            error = errors[0]
            error.details["cleared"] = cleared
            return InvalidationResult(cleared=cleared, error=error)
        return InvalidationResult(cleared=cleared)

    async def close(self) -> None:
        close = getattr(self.cache, "close", None)
        if close is not None:
            await close()


def setup(
    config: Optional[RouteCacheConfig] = None,
    *,
    cache: Any = None,
    events: Optional[EventChannel] = None,
    metrics: Optional["CacheMetrics"] = None,
) -> RouteCache:
    """Explicit initializer returning a ready engine handle."""
    config = config or get_config()
    gateway = create_cache_gateway(cache if cache is not None else config.backend_spec())
    events = events or EventChannel()
    if metrics is not None:
        metrics.attach(events)

    engine = RouteCache(config, gateway, events, metrics)
    engine.logger.info(
        "Route cache ready",
        backend=getattr(gateway, "backend_id", type(gateway).__name__),
        default_duration=config.default_duration,
    )
    return engine
