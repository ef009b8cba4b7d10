"""
Shared metrics configuration for the route cache.
"""

from typing import Any, Dict, Optional, TYPE_CHECKING
import time
from contextlib import contextmanager

from prometheus_client import CollectorRegistry, Counter, Histogram, generate_latest

from shared.errors import CachePolicyError

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from service_cache.app.caching.events import EventChannel


def _write_stage(error: Exception) -> str:
    """write_error carries either a backend failure or a failing policy hook."""
    return "policy" if isinstance(error, CachePolicyError) else "write"


class CacheMetrics:
    """Prometheus counters for cache decisions, fed from the event channel."""

    def __init__(self, service_name: str = "route-cache", registry: Optional[CollectorRegistry] = None):
        self.service_name = service_name
        # A private registry keeps several engines in one process from colliding
        self.registry = registry if registry is not None else CollectorRegistry()
        self._metrics: Dict[str, Any] = {}
        self._setup_metrics()

    def _setup_metrics(self):
        """Set up cache metrics."""
        self._metrics["requests_total"] = Counter(
            "route_cache_requests_total",
            "Cache decisions by outcome",
            ["service", "outcome"],
            registry=self.registry
        )

        self._metrics["errors_total"] = Counter(
            "route_cache_errors_total",
            "Cache failures by stage",
            ["service", "stage"],
            registry=self.registry
        )

        self._metrics["invalidated_total"] = Counter(
            "route_cache_invalidated_total",
            "Fingerprints cleared through tag invalidation",
            ["service", "tag"],
            registry=self.registry
        )

        self._metrics["invalidation_duration_seconds"] = Histogram(
            "route_cache_invalidation_duration_seconds",
            "Duration of invalidation calls",
            ["service"],
            registry=self.registry
        )

    def record_outcome(self, outcome: str):
        self._metrics["requests_total"].labels(service=self.service_name, outcome=outcome).inc()

    def record_error(self, stage: str):
        self._metrics["errors_total"].labels(service=self.service_name, stage=stage).inc()

    def record_invalidated(self, tag: str):
        self._metrics["invalidated_total"].labels(service=self.service_name, tag=tag).inc()

    @contextmanager
    def time_invalidation(self):
        """Context manager to time an invalidation."""
        start_time = time.time()
        try:
            yield
        finally:
            self._metrics["invalidation_duration_seconds"].labels(
                service=self.service_name
            ).observe(time.time() - start_time)

    def value(self, metric: str, **labels) -> float:
        """Current sample value, 0.0 when the series does not exist yet."""
        sample = self.registry.get_sample_value(metric, {"service": self.service_name, **labels})
        return sample or 0.0

    def render(self) -> bytes:
        """Exposition format for a /metrics endpoint."""
        return generate_latest(self.registry)

    def attach(self, events: "EventChannel") -> None:
        """Subscribe the counters to an engine's event channel."""
        from service_cache.app.caching.events import CacheEvent

        events.on(CacheEvent.CACHE_SERVED, lambda request, info: self.record_outcome("served"))
        events.on(CacheEvent.ETAG_MATCH, lambda request, info: self.record_outcome("not_modified"))
        events.on(CacheEvent.CACHE_FRESH, lambda request, info: self.record_outcome("stored"))
        events.on(CacheEvent.CACHE_SKIPPED, lambda request, info: self.record_outcome("skipped"))
        events.on(CacheEvent.HASH_ERROR, lambda error, request: self.record_error("fingerprint"))
        events.on(CacheEvent.READ_ERROR, lambda error, request: self.record_error("read"))
        events.on(CacheEvent.WRITE_ERROR, lambda error, request: self.record_error(_write_stage(error)))
        events.on(CacheEvent.INVALIDATED, lambda tag, fingerprint: self.record_invalidated(tag))


def get_cache_metrics(service_name: str = "route-cache", registry: Optional[CollectorRegistry] = None) -> CacheMetrics:
    """Get a metrics collector for a service."""
    return CacheMetrics(service_name, registry)
