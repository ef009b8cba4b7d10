"""
Demo service for the route cache.

Mirrors the routes used to exercise the engine end to end: fixed TTL routes,
dynamically tagged routes, selectively cached routes, and an invalidation
endpoint.
"""

import random
import time
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse

from shared.config import RouteCacheConfig, get_config
from shared.errors import RouteCacheException
from shared.logging import clear_context, configure_logging, get_logger, set_request_id
from shared.metrics import CacheMetrics, get_cache_metrics
from .caching import RouteCache, setup


class CacheService:
    """Demo service wiring cached routes onto a FastAPI app."""

    def __init__(self, config: Optional[RouteCacheConfig] = None, cache: Any = None):
        self._start_time = time.time()
        self.config = config or get_config()
        self.logger = get_logger("route_cache.service")
        configure_logging(
            self.config.service_name,
            self.config.log_level,
            json_logs=self.config.env != "local",
        )

        self.metrics: CacheMetrics = get_cache_metrics(self.config.service_name)
        self.engine: RouteCache = setup(self.config, cache=cache, metrics=self.metrics)

        self.app = self._create_app()
        self._setup_middleware()
        self._setup_routes()

    def _create_app(self) -> FastAPI:
        """Create FastAPI application."""
        return FastAPI(
            title="Route Cache Service",
            description="Response caching with etag negotiation and tag invalidation",
            version="1.0.0",
            docs_url="/docs" if self.config.env == "local" else None,
            redoc_url="/redoc" if self.config.env == "local" else None,
        )

    def _setup_middleware(self):
        """Set up middleware."""

        @self.app.middleware("http")
        async def add_request_timing(request: Request, call_next):
            set_request_id(request.headers.get("X-Request-ID"))
            start_time = time.time()
            try:
                response = await call_next(request)
                duration = time.time() - start_time

                self.logger.info(
                    "HTTP request",
                    method=request.method,
                    path=request.url.path,
                    status_code=response.status_code,
                    duration_ms=round(duration * 1000, 2)
                )
                return response
            finally:
                clear_context()

    def _setup_routes(self):
        """Set up routes."""
        engine = self.engine
        app = self.app

        one_second = engine.create("1s")
        two_seconds = engine.create("2 seconds")
        three_thousand_ms = engine.create("3000ms")
        custom_tag = engine.create("1h", tag=lambda request: request.path_params["tag"])
        selective = engine.create(
            "1h",
            tag="selective",
            cache_query=lambda request, meta, content: meta.status_code == 200,
        )

        @app.get("/cache/1s")
        @one_second.route
        async def cache_one_second(request: Request):
            return {"random": random.randint(0, 99999999)}

        @app.get("/cache/2s")
        @two_seconds.route
        async def cache_two_seconds(request: Request):
            return {"random": random.randint(0, 99999999)}

        @app.get("/cache/3000ms")
        @three_thousand_ms.route
        async def cache_three_thousand_ms(request: Request):
            return {"random": random.randint(0, 99999999)}

        @app.get("/cache/custom-tag/{tag}")
        @custom_tag.route
        async def cache_custom_tag(request: Request, tag: str):
            return {"tag": tag, "random": random.randint(0, 99999999)}

        @app.get("/cache/selective/{code}")
        @selective.route
        async def cache_selective(request: Request, code: int):
            return JSONResponse(
                status_code=code,
                content={"code": code, "random": random.randint(0, 99999999)},
            )

        @app.get("/cache/invalidate/{tag}")
        async def invalidate_tag(tag: str):
            """Invalidate every cached route indexed under tag."""
            result = await engine.invalidate(tag)
            body: Dict[str, Any] = {"tag": tag, "cleared": result.cleared, "error": None}
            if result.error is not None:
                body["error"] = result.error.to_response().model_dump()
                return JSONResponse(status_code=result.error.status_code, content=body)
            return body

        @app.get("/health")
        async def health_check():
            """Health check endpoint."""
            return {
                "service": self.config.service_name,
                "status": "ok",
                "backend": self.config.backend,
                "uptime_seconds": self._get_uptime(),
                "version": "1.0.0",
            }

        @app.get("/metrics")
        async def metrics_endpoint():
            """Prometheus metrics endpoint."""
            from prometheus_client import CONTENT_TYPE_LATEST
            return Response(content=self.metrics.render(), media_type=CONTENT_TYPE_LATEST)

        @app.exception_handler(RouteCacheException)
        async def route_cache_exception_handler(request: Request, exc: RouteCacheException):
            """Handle RouteCacheException."""
            self.logger.error(
                "Route cache error",
                code=exc.code,
                message=exc.message,
                details=exc.details
            )
            return JSONResponse(
                status_code=exc.status_code,
                content=exc.to_response().model_dump()
            )

        @app.on_event("shutdown")
        async def close_cache():
            await engine.close()

    def _get_uptime(self) -> float:
        """Get service uptime in seconds."""
        return time.time() - self._start_time

    def run(self):
        """Run the service."""
        import uvicorn
        uvicorn.run(
            self.app,
            host=self.config.host,
            port=self.config.port,
            log_level=self.config.log_level.lower()
        )


def create_app(config: Optional[RouteCacheConfig] = None, cache: Any = None) -> FastAPI:
    """Create FastAPI app instance."""
    return CacheService(config, cache=cache).app


if __name__ == "__main__":
    CacheService().run()
