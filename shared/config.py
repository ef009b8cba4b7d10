"""
Shared configuration management for the route cache.
"""

from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class RouteCacheConfig(BaseSettings):
    """Engine-wide defaults, overridable through ROUTE_CACHE_* variables."""

    model_config = SettingsConfigDict(
        env_prefix="ROUTE_CACHE_",
        env_file=".env",
        case_sensitive=False,
        extra="allow"
    )

    # Environment
    env: str = Field(default="local")
    log_level: str = Field(default="info")

    # Binding defaults
    default_duration: str = Field(default="1h")
    etag: bool = Field(default=True)
    subscribe: bool = Field(default=True)
    tag_store_prefix: str = Field(default="route-cache-tagstore")

    # Backend
    backend: str = Field(default="memory")
    redis_url: str = Field(default="redis://localhost:6379/0")
    key_prefix: str = Field(default="route-cache")

    # Demo service
    service_name: str = Field(default="route-cache")
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8181)

    def backend_spec(self) -> dict:
        """Describe the configured backend for create_cache_gateway()."""
        return {
            "backend": self.backend,
            "url": self.redis_url,
            "key_prefix": self.key_prefix,
        }


def get_config(**overrides: Optional[object]) -> RouteCacheConfig:
    """Get configuration, letting explicit keyword overrides win over env."""
    values = {key: value for key, value in overrides.items() if value is not None}
    return RouteCacheConfig(**values)
