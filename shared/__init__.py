"""
Shared utilities for the route cache.

This package aggregates common building blocks:

- config: Engine configuration via pydantic-settings
- logging: Structured logging with request correlation
- metrics: Prometheus counters for cache decisions
- errors: Canonical error types and responses
- test_helpers: Request factories and fake backends for tests
"""
