"""
Per-binding cache settings.

A CacheSettings record is resolved once when a route binds caching and is
read-only afterwards. Construction accepts exactly four shapes: nothing, a
duration, an options mapping, or a duration plus options. Anything else is a
programming error and raises ConfigurationError at bind time.
"""

from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Callable, Mapping, Optional, Sequence, Tuple, Union

from humanfriendly import InvalidTimespan, parse_timespan

from shared.config import RouteCacheConfig
from shared.errors import ConfigurationError
from .etag import default_generate_etag
from .fingerprint import default_hash_object
from .gateway import CacheGateway, create_cache_gateway


class _CacheMiss:
    """Placeholder returned by gateway reads when nothing is stored."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "<CACHE_MISS>"


CACHE_MISS = _CacheMiss()

TagSpec = Union[None, str, Tuple[str, ...], Callable[[Any], Union[str, Sequence[str]]]]

OPTION_NAMES = frozenset({
    "duration",
    "cache",
    "hash_object",
    "cache_fallback",
    "etag",
    "cache_query",
    "generate_etag",
    "tag",
    "tags",
    "tag_store_prefix",
    "subscribe",
    "single_flight",
})


def default_cache_query(request: Any, meta: Any, content: Any) -> bool:
    """Cache successful responses only."""
    return 200 <= meta.status_code < 300


def parse_duration(duration: Any) -> int:
    """Convert a human duration ("1h", "2 seconds", "3000ms") to milliseconds."""
    if not isinstance(duration, str) or not duration.strip():
        raise ConfigurationError(
            "Cache duration must be a non-empty string",
            details={"duration": repr(duration)},
        )
    try:
        seconds = parse_timespan(duration.strip())
    except InvalidTimespan as exc:
        raise ConfigurationError(
            f"Unable to parse cache duration '{duration}'",
            details={"duration": duration, "error": str(exc)},
        ) from exc

    duration_ms = int(round(seconds * 1000))
    if duration_ms <= 0:
        raise ConfigurationError("Cache duration must be positive", details={"duration": duration})
    return duration_ms


def _normalize_tags(options: Mapping[str, Any]) -> TagSpec:
    if "tag" in options and "tags" in options:
        raise ConfigurationError("Use either 'tag' or 'tags', not both")

    tags = options.get("tag", options.get("tags"))
    if tags is None or callable(tags):
        return tags
    if isinstance(tags, str):
        return tags
    if isinstance(tags, (list, tuple)) and all(isinstance(tag, str) for tag in tags):
        return tuple(tags)

    raise ConfigurationError(
        "Cache tags must be a string, a list of strings or a callable",
        details={"tags": repr(tags)},
    )


@dataclass(frozen=True)
class CacheSettings:
    """Resolved, immutable caching settings for one route binding."""

    duration: str
    duration_ms: int
    cache: CacheGateway
    tags: TagSpec = None
    hash_object: Callable[[Any], Any] = default_hash_object
    cache_fallback: Any = CACHE_MISS
    etag: bool = True
    cache_query: Callable[[Any, Any, Any], Any] = default_cache_query
    generate_etag: Callable[[str, "CacheSettings"], Any] = default_generate_etag
    tag_store_prefix: str = "route-cache-tagstore"
    subscribe: bool = True
    single_flight: bool = False

    @property
    def ttl(self) -> timedelta:
        return timedelta(milliseconds=self.duration_ms)

    @classmethod
    def from_duration(
        cls,
        duration: str,
        config: Optional[RouteCacheConfig] = None,
        cache: Optional[CacheGateway] = None,
    ) -> "CacheSettings":
        return cls._build({"duration": duration}, config, cache)

    @classmethod
    def from_options(
        cls,
        options: Mapping[str, Any],
        config: Optional[RouteCacheConfig] = None,
        cache: Optional[CacheGateway] = None,
    ) -> "CacheSettings":
        return cls._build(dict(options), config, cache)

    @classmethod
    def from_both(
        cls,
        duration: str,
        options: Mapping[str, Any],
        config: Optional[RouteCacheConfig] = None,
        cache: Optional[CacheGateway] = None,
    ) -> "CacheSettings":
        # The positional duration wins over options["duration"]
        return cls._build({**options, "duration": duration}, config, cache)

    @classmethod
    def _build(
        cls,
        options: Mapping[str, Any],
        config: Optional[RouteCacheConfig],
        cache: Optional[CacheGateway],
    ) -> "CacheSettings":
        config = config or RouteCacheConfig()

        unknown = sorted(set(options) - OPTION_NAMES)
        if unknown:
            raise ConfigurationError("Unknown cache options", details={"options": unknown})

        duration = options["duration"] if options.get("duration") is not None else config.default_duration
        gateway = create_cache_gateway(options["cache"]) if options.get("cache") is not None else cache
        if gateway is None:
            gateway = create_cache_gateway(config.backend_spec())

        for name in ("hash_object", "cache_query", "generate_etag"):
            if name in options and not callable(options[name]):
                raise ConfigurationError(f"Cache option '{name}' must be callable")

        values = {
            "duration": duration,
            "duration_ms": parse_duration(duration),
            "cache": gateway,
            "tags": _normalize_tags(options),
            "etag": bool(options.get("etag", config.etag)),
            "subscribe": bool(options.get("subscribe", config.subscribe)),
            "tag_store_prefix": options.get("tag_store_prefix", config.tag_store_prefix),
            "single_flight": bool(options.get("single_flight", False)),
        }
        for name in ("hash_object", "cache_fallback", "cache_query", "generate_etag"):
            if name in options:
                values[name] = options[name]

        return cls(**values)


def resolve_settings(
    args: Sequence[Any],
    options: Optional[Mapping[str, Any]] = None,
    config: Optional[RouteCacheConfig] = None,
    cache: Optional[CacheGateway] = None,
) -> CacheSettings:
    """Dispatch a create() call to the matching named constructor."""
    args = tuple(args)
    keyword_options = dict(options or {})

    if len(args) == 0:
        return CacheSettings.from_options(keyword_options, config, cache)

    if len(args) == 1 and isinstance(args[0], str):
        if keyword_options:
            return CacheSettings.from_both(args[0], keyword_options, config, cache)
        return CacheSettings.from_duration(args[0], config, cache)

    if len(args) == 1 and isinstance(args[0], Mapping):
        return CacheSettings.from_options({**args[0], **keyword_options}, config, cache)

    if len(args) == 2 and isinstance(args[0], str) and isinstance(args[1], Mapping):
        return CacheSettings.from_both(args[0], {**args[1], **keyword_options}, config, cache)

    raise ConfigurationError(
        "Cache binding accepts (), (duration), (options) or (duration, options)",
        details={"arguments": [type(arg).__name__ for arg in args]},
    )
