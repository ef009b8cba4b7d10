"""
Unit tests for request fingerprinting.
"""

import pytest

from service_cache.app.caching.fingerprint import default_hash_object, fingerprint
from service_cache.app.caching.gateway import InMemoryCacheGateway, canonical_json
from service_cache.app.caching.settings import CacheSettings
from shared.config import RouteCacheConfig
from shared.errors import FingerprintError
from shared.test_helpers import make_request


def _settings(**options):
    return CacheSettings.from_options(options, RouteCacheConfig(), InMemoryCacheGateway())


class TestDefaultProjection:
    """Default projection covers method, path, query and body."""

    @pytest.mark.asyncio
    async def test_projection_fields(self):
        request = make_request(
            "POST",
            "/prices",
            query=[("symbol", "BRN"), ("symbol", "WTI")],
            body=b'{"window": "1d"}',
        )

        projection = await default_hash_object(request)

        assert projection == {
            "method": "POST",
            "path": "/prices",
            "query": {"symbol": ["BRN", "WTI"]},
            "body": {"window": "1d"},
        }

    @pytest.mark.asyncio
    async def test_empty_and_text_bodies(self):
        assert (await default_hash_object(make_request()))["body"] is None
        assert (await default_hash_object(make_request("POST", body=b"plain text")))["body"] == "plain text"


class TestFingerprint:
    """Deterministic keys."""

    @pytest.mark.asyncio
    async def test_query_order_does_not_matter(self):
        settings = _settings()
        first = make_request(query=[("a", "1"), ("b", "2")])
        second = make_request(query=[("b", "2"), ("a", "1")])

        assert await fingerprint(first, settings) == await fingerprint(second, settings)

    @pytest.mark.asyncio
    async def test_body_key_order_does_not_matter(self):
        settings = _settings()
        first = make_request("POST", body=b'{"a": 1, "b": {"c": 2, "d": 3}}')
        second = make_request("POST", body=b'{"b": {"d": 3, "c": 2}, "a": 1}')

        assert await fingerprint(first, settings) == await fingerprint(second, settings)

    @pytest.mark.asyncio
    async def test_different_paths_differ(self):
        settings = _settings()
        assert await fingerprint(make_request(path="/a"), settings) != await fingerprint(make_request(path="/b"), settings)

    @pytest.mark.asyncio
    async def test_headers_ignored_by_default(self):
        settings = _settings()
        first = make_request(headers={"X-Trace": "1"})
        second = make_request(headers={"X-Trace": "2"})

        assert await fingerprint(first, settings) == await fingerprint(second, settings)

    @pytest.mark.asyncio
    async def test_custom_projection(self):
        settings = _settings(hash_object=lambda request: {"tenant": request.headers.get("x-tenant")})
        first = make_request(path="/a", headers={"X-Tenant": "t1"})
        second = make_request(path="/b", headers={"X-Tenant": "t1"})
        third = make_request(path="/a", headers={"X-Tenant": "t2"})

        assert await fingerprint(first, settings) == await fingerprint(second, settings)
        assert await fingerprint(first, settings) != await fingerprint(third, settings)

    @pytest.mark.asyncio
    async def test_async_projection(self):
        async def projection(request):
            return {"path": request.url.path}

        settings = _settings(hash_object=projection)
        key = await fingerprint(make_request(path="/a"), settings)

        assert key == settings.cache.hash({"path": "/a"})

    @pytest.mark.asyncio
    async def test_projection_failure(self):
        def projection(request):
            raise KeyError("tenant")

        with pytest.raises(FingerprintError):
            await fingerprint(make_request(), _settings(hash_object=projection))

    @pytest.mark.asyncio
    async def test_unhashable_projection(self):
        settings = _settings(hash_object=lambda request: {"value": object()})

        with pytest.raises(FingerprintError):
            await fingerprint(make_request(), settings)


class TestCanonicalJson:
    """Canonical serialization used by the hash primitive."""

    def test_sets_and_bytes(self):
        assert canonical_json({"b": {3, 1, 2}, "a": b"\x01"}) == '{"a":"01","b":[1,2,3]}'
