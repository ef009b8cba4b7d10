"""
Request fingerprinting.

A request is projected to a plain object (method, path, query and body by
default) and hashed through the gateway's hash primitive. The canonical form
sorts keys, so the result never depends on insertion order.
"""

import inspect
import json
from typing import TYPE_CHECKING, Any, Dict, List

from starlette.requests import Request

from shared.errors import FingerprintError

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from .settings import CacheSettings


def _query_params(request: Request) -> Dict[str, List[str]]:
    params: Dict[str, List[str]] = {}
    for key, value in request.query_params.multi_items():
        params.setdefault(key, []).append(value)
    return params


async def _body(request: Request) -> Any:
    raw = await request.body()
    if not raw:
        return None
    try:
        return json.loads(raw)
    except (UnicodeDecodeError, json.JSONDecodeError):
        return raw.decode("utf-8", errors="replace")


async def default_hash_object(request: Request) -> Dict[str, Any]:
    """Project the request to the fields that identify its response."""
    return {
        "method": request.method,
        "path": request.url.path,
        "query": _query_params(request),
        "body": await _body(request),
    }


async def fingerprint(request: Request, settings: "CacheSettings") -> str:
    """Derive the cache key for a request under the given settings."""
    try:
        projection = settings.hash_object(request)
        if inspect.isawaitable(projection):
            projection = await projection
        return settings.cache.hash(projection)
    except Exception as exc:
        raise FingerprintError(
            "Unable to fingerprint request",
            details={"error": str(exc), "path": request.url.path},
        ) from exc
