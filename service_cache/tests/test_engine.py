"""
Unit tests for the route cache engine.
"""

import asyncio
import json

import pytest
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from service_cache.app.caching import CacheEvent, setup
from service_cache.app.caching.coalescing import InFlightCoalescer
from service_cache.app.caching.gateway import InMemoryCacheGateway
from shared.config import RouteCacheConfig
from shared.errors import ConfigurationError
from shared.metrics import CacheMetrics
from shared.test_helpers import EventRecorder, FailingGateway, FakeClock, make_request


class Downstream:
    """Route handler stand-in that counts how often it runs."""

    def __init__(self, body="payload", status_code=200):
        self.body = body
        self.status_code = status_code
        self.calls = 0

    async def __call__(self) -> Response:
        self.calls += 1
        return Response(f"{self.body}-{self.calls}", status_code=self.status_code, media_type="text/plain")


class TestCacheBinding:
    """Test cases for the per-request caching decision."""

    @pytest.fixture
    def clock(self):
        return FakeClock()

    @pytest.fixture
    def cache(self, clock):
        return InMemoryCacheGateway(clock=clock)

    @pytest.fixture
    def engine(self, cache):
        return setup(RouteCacheConfig(), cache=cache)

    @pytest.fixture
    def recorder(self, engine):
        return EventRecorder(engine.events)

    @pytest.mark.asyncio
    async def test_miss_then_hit(self, engine, recorder):
        binding = engine.create("1h")
        downstream = Downstream()

        first = await binding(make_request(path="/prices"), downstream)
        second = await binding(make_request(path="/prices"), downstream)

        assert downstream.calls == 1
        assert first.body == second.body == b"payload-1"
        assert second.headers["etag"] == first.headers["etag"]
        assert second.headers["content-type"].startswith("text/plain")
        assert recorder.count(CacheEvent.CACHE_HIT) == 2
        assert recorder.count(CacheEvent.CACHE_FRESH) == 1
        assert recorder.count(CacheEvent.CACHE_SERVED) == 1

    @pytest.mark.asyncio
    async def test_distinct_requests_do_not_share_entries(self, engine):
        binding = engine.create("1h")
        downstream = Downstream()

        await binding(make_request(path="/prices", query=[("symbol", "BRN")]), downstream)
        response = await binding(make_request(path="/prices", query=[("symbol", "WTI")]), downstream)

        assert downstream.calls == 2
        assert response.body == b"payload-2"

    @pytest.mark.asyncio
    async def test_expired_entry_recomputed(self, engine, clock):
        binding = engine.create("1s")
        downstream = Downstream()

        await binding(make_request(), downstream)
        clock.advance(0.5)
        await binding(make_request(), downstream)
        clock.advance(1.0)
        response = await binding(make_request(), downstream)

        assert downstream.calls == 2
        assert response.body == b"payload-2"

    @pytest.mark.asyncio
    async def test_etag_match_returns_304(self, engine, recorder):
        binding = engine.create("1h")
        downstream = Downstream()
        etag = (await binding(make_request(), downstream)).headers["etag"]

        response = await binding(make_request(headers={"If-None-Match": etag}), downstream)

        assert response.status_code == 304
        assert response.body == b""
        assert response.headers["etag"] == etag
        assert downstream.calls == 1
        assert recorder.count(CacheEvent.ETAG_MATCH) == 1
        assert recorder.count(CacheEvent.CACHE_SERVED) == 0

    @pytest.mark.asyncio
    async def test_etag_mismatch_serves_entry(self, engine):
        binding = engine.create("1h")
        downstream = Downstream()
        etag = (await binding(make_request(), downstream)).headers["etag"]

        response = await binding(make_request(headers={"If-None-Match": '"stale"'}), downstream)

        assert response.status_code == 200
        assert response.body == b"payload-1"
        assert response.headers["etag"] == etag

    @pytest.mark.asyncio
    async def test_etag_disabled_never_304(self, engine):
        binding = engine.create("1h", etag=False)
        downstream = Downstream()
        await binding(make_request(), downstream)

        response = await binding(make_request(headers={"If-None-Match": '"anything"'}), downstream)

        assert response.status_code == 200
        assert "etag" not in response.headers

    @pytest.mark.asyncio
    async def test_empty_body_is_a_hit(self, engine):
        binding = engine.create("1h")
        calls = []

        async def downstream():
            calls.append(1)
            return Response("")

        await binding(make_request(), downstream)
        response = await binding(make_request(), downstream)

        assert len(calls) == 1
        assert response.status_code == 200
        assert response.body == b""

    @pytest.mark.asyncio
    async def test_cached_status_replayed(self, engine):
        binding = engine.create("1h")
        downstream = Downstream(status_code=201)

        await binding(make_request(), downstream)
        response = await binding(make_request(), downstream)

        assert downstream.calls == 1
        assert response.status_code == 201

    @pytest.mark.asyncio
    async def test_non_success_not_cached(self, engine, recorder):
        binding = engine.create("1h")
        downstream = Downstream(status_code=500)

        await binding(make_request(), downstream)
        await binding(make_request(), downstream)

        assert downstream.calls == 2
        assert recorder.count(CacheEvent.CACHE_SKIPPED) == 2

    @pytest.mark.asyncio
    async def test_fingerprint_error_returns_500(self, engine, recorder):
        def projection(request):
            raise ValueError("boom")

        binding = engine.create("1h", hash_object=projection)
        downstream = Downstream()

        response = await binding(make_request(), downstream)

        assert response.status_code == 500
        assert json.loads(response.body)["code"] == "FINGERPRINT_ERROR"
        assert downstream.calls == 0
        assert recorder.count(CacheEvent.HASH_ERROR) == 1

    @pytest.mark.asyncio
    async def test_read_error_returns_500(self):
        engine = setup(RouteCacheConfig(), cache=FailingGateway(fail_on={"get"}))
        recorder = EventRecorder(engine.events)
        binding = engine.create("1h")
        downstream = Downstream()

        response = await binding(make_request(), downstream)

        assert response.status_code == 500
        assert json.loads(response.body)["code"] == "BACKEND_READ_ERROR"
        assert downstream.calls == 0
        assert recorder.count(CacheEvent.READ_ERROR) == 1

    @pytest.mark.asyncio
    async def test_malformed_entry_is_read_error(self, engine, cache):
        binding = engine.create("1h")
        request = make_request()
        await cache.set(cache.hash(await binding.settings.hash_object(request)), {"unexpected": True})

        response = await binding(make_request(), Downstream())

        assert response.status_code == 500

    @pytest.mark.asyncio
    async def test_custom_fallback(self, engine, cache):
        binding = engine.create("1h", cache_fallback="nothing-here")
        downstream = Downstream()

        await binding(make_request(), downstream)
        await binding(make_request(), downstream)

        assert downstream.calls == 1

    @pytest.mark.asyncio
    async def test_write_error_still_serves(self):
        engine = setup(RouteCacheConfig(), cache=FailingGateway(fail_on={"set"}))
        recorder = EventRecorder(engine.events)
        binding = engine.create("1h")
        downstream = Downstream()

        first = await binding(make_request(), downstream)
        second = await binding(make_request(), downstream)

        assert first.status_code == second.status_code == 200
        assert downstream.calls == 2
        assert recorder.count(CacheEvent.WRITE_ERROR) == 2

    @pytest.mark.asyncio
    async def test_listener_failure_does_not_fail_request(self, engine):
        def listener(*args):
            raise RuntimeError("listener bug")

        engine.events.on(CacheEvent.CACHE_HIT, listener)
        response = await engine.create("1h")(make_request(), Downstream())

        assert response.status_code == 200


class TestSingleFlight:
    """Concurrent misses on one fingerprint."""

    @staticmethod
    def _gated_downstream():
        gate = asyncio.Event()
        calls = []

        async def downstream():
            calls.append(1)
            await gate.wait()
            return JSONResponse({"calls": len(calls)})

        return gate, calls, downstream

    @pytest.mark.asyncio
    async def test_single_flight_coalesces(self):
        engine = setup(RouteCacheConfig(), cache=InMemoryCacheGateway())
        binding = engine.create("1h", single_flight=True)
        gate, calls, downstream = self._gated_downstream()

        tasks = [asyncio.ensure_future(binding(make_request(), downstream)) for _ in range(3)]
        await asyncio.sleep(0.01)
        gate.set()
        responses = await asyncio.gather(*tasks)

        assert len(calls) == 1
        assert {response.body for response in responses} == {b'{"calls":1}'}
        assert len({id(response) for response in responses}) == 3

    @pytest.mark.asyncio
    async def test_without_single_flight_each_miss_computes(self):
        engine = setup(RouteCacheConfig(), cache=InMemoryCacheGateway())
        binding = engine.create("1h")
        gate, calls, downstream = self._gated_downstream()

        tasks = [asyncio.ensure_future(binding(make_request(), downstream)) for _ in range(3)]
        await asyncio.sleep(0.01)
        gate.set()
        await asyncio.gather(*tasks)

        assert len(calls) == 3

    @pytest.mark.asyncio
    async def test_coalescer_shares_failure(self):
        coalescer = InFlightCoalescer()
        gate = asyncio.Event()

        async def failing():
            await gate.wait()
            raise ValueError("downstream failed")

        leader = asyncio.ensure_future(coalescer.run("key", failing))
        await asyncio.sleep(0)
        follower = asyncio.ensure_future(coalescer.run("key", failing))
        await asyncio.sleep(0)
        assert coalescer.in_flight("key")

        gate.set()
        with pytest.raises(ValueError):
            await leader
        with pytest.raises(ValueError):
            await follower
        assert not coalescer.in_flight("key")

    @pytest.mark.asyncio
    async def test_cancelled_leader_does_not_cancel_followers(self):
        coalescer = InFlightCoalescer()
        gate = asyncio.Event()
        calls = []

        async def compute():
            calls.append(1)
            await gate.wait()
            return "value"

        leader = asyncio.ensure_future(coalescer.run("key", compute))
        await asyncio.sleep(0)
        follower = asyncio.ensure_future(coalescer.run("key", compute))
        await asyncio.sleep(0)

        leader.cancel()
        await asyncio.sleep(0)
        assert coalescer.in_flight("key")

        gate.set()
        assert await follower == ("value", False)
        with pytest.raises(asyncio.CancelledError):
            await leader
        assert calls == [1]
        assert not coalescer.in_flight("key")


class TestRouteCache:
    """Test cases for the engine handle."""

    @pytest.fixture
    def cache(self):
        return InMemoryCacheGateway()

    @pytest.fixture
    def engine(self, cache):
        return setup(RouteCacheConfig(), cache=cache)

    @pytest.mark.asyncio
    async def test_invalidate_across_bindings(self, engine):
        prices = engine.create("1h", tag="shared")
        curves = engine.create("1h", tags=["shared", "curves"], tag_store_prefix="curve-tags")
        downstream = Downstream()

        await prices(make_request(path="/prices"), downstream)
        await curves(make_request(path="/curves"), downstream)

        result = await engine.invalidate("shared")

        assert result.ok
        assert result.cleared == 2
        await prices(make_request(path="/prices"), downstream)
        await curves(make_request(path="/curves"), downstream)
        assert downstream.calls == 4

    @pytest.mark.asyncio
    async def test_shared_index_processed_once(self, engine):
        first = engine.create("1h", tag="shared")
        second = engine.create("2h", tag="shared")
        downstream = Downstream()

        await first(make_request(path="/a"), downstream)
        await second(make_request(path="/b"), downstream)

        assert (await engine.invalidate("shared")).cleared == 2

    @pytest.mark.asyncio
    async def test_unsubscribed_binding_not_invalidated(self, engine):
        private = engine.create("1h", tag="shared", tag_store_prefix="private", subscribe=False)
        downstream = Downstream()
        await private(make_request(), downstream)

        assert private not in engine.subscribers
        assert (await engine.invalidate("shared")).cleared == 0
        assert (await private.invalidate("shared")).cleared == 1

    @pytest.mark.asyncio
    async def test_unsubscribe(self, engine):
        binding = engine.create("1h")

        assert engine.unsubscribe(binding) is True
        assert engine.unsubscribe(binding) is False
        assert engine.subscribers == []

    @pytest.mark.asyncio
    async def test_invalidate_events(self, engine):
        recorder = EventRecorder(engine.events)
        binding = engine.create("1h", tag="shared")
        await binding(make_request(), Downstream())

        await engine.invalidate(["shared", "unused"])

        assert recorder.received[CacheEvent.INVALIDATE_REQUESTED] == [(["shared", "unused"],)]
        assert recorder.count(CacheEvent.INVALIDATED) == 1

    @pytest.mark.asyncio
    async def test_invalidate_reports_partial_failure(self):
        cache = FailingGateway(fail_on={"delete"})
        engine = setup(RouteCacheConfig(), cache=cache)
        binding = engine.create("1h", tag="shared")
        await binding(make_request(), Downstream())

        result = await engine.invalidate("shared")

        assert not result.ok
        assert result.cleared == 0
        assert result.error.code == "INVALIDATION_ERROR"

    def test_create_rejects_bad_arguments(self, engine):
        with pytest.raises(ConfigurationError):
            engine.create(1000)
        with pytest.raises(ConfigurationError):
            engine.create("1h", {"unknown": True})

    def test_route_requires_request_parameter(self, engine):
        binding = engine.create("1h")

        async def endpoint(symbol: str):
            return {"symbol": symbol}

        with pytest.raises(ConfigurationError):
            binding.route(endpoint)

    @pytest.mark.asyncio
    async def test_route_wraps_endpoint(self, engine):
        binding = engine.create("1h")
        calls = []

        def endpoint(request: Request, symbol: str):
            calls.append(symbol)
            return {"symbol": symbol}

        wrapped = binding.route(endpoint)
        first = await wrapped(request=make_request(path="/prices"), symbol="BRN")
        second = await wrapped(request=make_request(path="/prices"), symbol="BRN")

        assert calls == ["BRN"]
        assert json.loads(first.body) == json.loads(second.body) == {"symbol": "BRN"}
        assert list(wrapped.__signature__.parameters) == ["request", "symbol"]

    @pytest.mark.asyncio
    async def test_metrics_follow_events(self, cache):
        metrics = CacheMetrics("route-cache-test")
        engine = setup(RouteCacheConfig(), cache=cache, metrics=metrics)
        binding = engine.create("1h", tag="shared")
        downstream = Downstream()

        etag = (await binding(make_request(), downstream)).headers["etag"]
        await binding(make_request(), downstream)
        await binding(make_request(headers={"If-None-Match": etag}), downstream)
        await engine.invalidate("shared")

        assert metrics.value("route_cache_requests_total", outcome="stored") == 1
        assert metrics.value("route_cache_requests_total", outcome="served") == 1
        assert metrics.value("route_cache_requests_total", outcome="not_modified") == 1
        assert metrics.value("route_cache_invalidated_total", tag="shared") == 1
        assert metrics.value("route_cache_invalidation_duration_seconds_count") == 1

    @pytest.mark.asyncio
    async def test_setup_from_config(self):
        engine = setup(RouteCacheConfig(backend="memory", default_duration="5m"))

        assert isinstance(engine.cache, InMemoryCacheGateway)
        assert engine.create().settings.duration_ms == 5 * 60 * 1000
        await engine.close()
