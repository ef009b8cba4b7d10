"""
Conditional freshness negotiation.
"""

import inspect
import time
from typing import TYPE_CHECKING, Optional

from starlette.requests import Request
from starlette.responses import Response

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from .settings import CacheSettings


def default_generate_etag(fingerprint: str, settings: "CacheSettings") -> str:
    """Strong etag from the fingerprint and the write time.

    Two identical payloads written at different times get different etags.
    """
    return '"%s"' % settings.cache.hash(f"{fingerprint}-{time.time()}")


async def generate_etag(fingerprint: str, settings: "CacheSettings") -> str:
    etag = settings.generate_etag(fingerprint, settings)
    if inspect.isawaitable(etag):
        etag = await etag
    return str(etag)


def client_etag(request: Request) -> Optional[str]:
    """Conditional identifier supplied by the client, if any."""
    return request.headers.get("if-none-match") or request.headers.get("etag")


def is_not_modified(request: Request, stored_etag: Optional[str]) -> bool:
    """True only when the client identifier exactly equals the stored etag."""
    if not stored_etag:
        return False
    supplied = client_etag(request)
    return supplied is not None and supplied == stored_etag


def not_modified_response(etag: str) -> Response:
    """304 with no body and no entity headers beyond the validator."""
    return Response(status_code=304, headers={"etag": etag})
