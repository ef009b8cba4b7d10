"""
Write-through response capture.

On a cache miss the downstream emission is wrapped once per request:

    PASSTHROUGH -> STORE_AND_DELIVER   predicate accepted, entry persisted
                -> DELIVER_ONLY        predicate rejected, hook or write failed,
                                       or the body cannot be buffered

The request that triggers a write is always served the response it computed,
never the entry it is about to create. A failing write never costs the caller
its response; the failure goes to the log and the write_error event instead,
as a BackendWriteError for the store or a CachePolicyError for a failing
predicate, tag or etag hook.
"""

import inspect
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Tuple

from starlette.requests import Request
from starlette.responses import Response

from shared.errors import BackendWriteError, CachePolicyError, RouteCacheException
from shared.logging import get_logger
from .etag import generate_etag
from .events import CacheEvent, EventChannel
from .tag_index import TagIndex, as_tag_list

Emit = Callable[[], Awaitable[Response]]


class InterceptState(str, Enum):
    PASSTHROUGH = "passthrough"
    STORE_AND_DELIVER = "store_and_deliver"
    DELIVER_ONLY = "deliver_only"


@dataclass
class ResponseMeta:
    """Response metadata handed to the caching predicate."""

    status_code: int
    headers: Dict[str, str] = field(default_factory=dict)
    media_type: Optional[str] = None


@dataclass
class CacheEntry:
    """Stored response. Persisted as a plain dict so any backend can keep it."""

    content: str
    etag: Optional[str] = None
    status_code: int = 200
    media_type: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        if self.etag is None:
            data.pop("etag")
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "CacheEntry":
        if not isinstance(data, Mapping) or "content" not in data:
            raise ValueError(f"Malformed cache entry: {data!r}")
        return cls(
            content=data["content"],
            etag=data.get("etag"),
            status_code=int(data.get("status_code", 200)),
            media_type=data.get("media_type"),
        )

    def to_response(self, etag: Optional[str] = None) -> Response:
        response = Response(
            content=self.content,
            status_code=self.status_code,
            media_type=self.media_type,
        )
        if etag:
            response.headers["etag"] = etag
        return response


async def materialize(response: Response) -> Tuple[Response, Optional[bytes]]:
    """Return a response whose body is fully buffered, plus that body.

    Responses that send their own body (FileResponse) come back unchanged
    with a None body.
    """
    body = getattr(response, "body", None)
    if isinstance(body, (bytes, bytearray)):
        return response, bytes(body)
    if not hasattr(response, "body_iterator"):
        return response, None

    chunks: List[bytes] = []
    async for chunk in response.body_iterator:
        chunks.append(chunk if isinstance(chunk, bytes) else chunk.encode(response.charset))
    body = b"".join(chunks)

    buffered = Response(content=body, status_code=response.status_code, background=response.background)
    buffered.raw_headers = [
        (name, value) for name, value in response.raw_headers if name.lower() != b"content-length"
    ] + [(b"content-length", str(len(body)).encode("latin-1"))]
    return buffered, body


class ResponseInterceptor:
    """Captures one downstream response and persists it when it qualifies."""

    def __init__(
        self,
        request: Request,
        fingerprint: str,
        settings: Any,
        tag_index: TagIndex,
        events: EventChannel,
    ):
        self.request = request
        self.fingerprint = fingerprint
        self.settings = settings
        self.tag_index = tag_index
        self.events = events
        self.state = InterceptState.PASSTHROUGH
        self.logger = get_logger("route_cache.interceptor")
        self._emitted = False

    def wrap(self, emit: Emit) -> Emit:
        """Compose an intercepting emitter around the original one."""

        async def intercepting_emit() -> Response:
            if self._emitted:
                raise RuntimeError("Response for this request was already intercepted")
            self._emitted = True

            response, body = await materialize(await emit())
            if body is None:
                self.logger.debug("Unbuffered response delivered without caching", status_code=response.status_code)
                self.state = InterceptState.DELIVER_ONLY
                return response

            meta = ResponseMeta(
                status_code=response.status_code,
                headers=dict(response.headers),
                media_type=response.headers.get("content-type"),
            )

            try:
                content = body.decode("utf-8")
            except UnicodeDecodeError:
                self.logger.debug("Binary response delivered without caching", status_code=meta.status_code)
                self.state = InterceptState.DELIVER_ONLY
                return response

            try:
                accepted = await self._accepts(meta, content)
                if accepted:
                    tags = await self.resolve_tags()
                    etag = await generate_etag(self.fingerprint, self.settings) if self.settings.etag else None
            except Exception as exc:
                self.logger.error("Cache policy hook failed, delivering uncached response", error=str(exc))
                error = CachePolicyError(details={"error": str(exc), "fingerprint": self.fingerprint})
                return await self._deliver_uncached(response, error)

            if not accepted:
                self.state = InterceptState.DELIVER_ONLY
                await self.events.emit(
                    CacheEvent.CACHE_SKIPPED,
                    self.request,
                    {"fingerprint": self.fingerprint, "status_code": meta.status_code},
                )
                return response

            try:
                await self._store(content, meta, tags, etag)
            except Exception as exc:
                self.logger.error("Cache write failed, delivering uncached response", error=str(exc))
                error = BackendWriteError(details={"error": str(exc), "fingerprint": self.fingerprint})
                return await self._deliver_uncached(response, error)

            self.state = InterceptState.STORE_AND_DELIVER
            if etag:
                response.headers["etag"] = etag
            await self.events.emit(CacheEvent.CACHE_FRESH, self.request, {"fingerprint": self.fingerprint})
            return response

        return intercepting_emit

    async def _deliver_uncached(self, response: Response, error: RouteCacheException) -> Response:
        self.state = InterceptState.DELIVER_ONLY
        await self.events.emit(CacheEvent.WRITE_ERROR, error, self.request)
        return response

    async def _accepts(self, meta: ResponseMeta, content: str) -> bool:
        verdict = self.settings.cache_query(self.request, meta, content)
        if inspect.isawaitable(verdict):
            verdict = await verdict
        return bool(verdict)

    async def resolve_tags(self) -> List[str]:
        tags = self.settings.tags
        if callable(tags):
            tags = tags(self.request)
            if inspect.isawaitable(tags):
                tags = await tags
        return as_tag_list(tags)

    async def _store(self, content: str, meta: ResponseMeta, tags: List[str], etag: Optional[str]) -> None:
        for tag in tags:
            await self.tag_index.append(tag, self.fingerprint)

        entry = CacheEntry(
            content=content,
            etag=etag,
            status_code=meta.status_code,
            media_type=meta.media_type,
        )
        expires_at = datetime.now(timezone.utc) + self.settings.ttl
        await self.settings.cache.set(self.fingerprint, entry.to_dict(), expires_at)

        self.logger.info(
            "Stored fresh response",
            status_code=meta.status_code,
            ttl_ms=self.settings.duration_ms,
        )
