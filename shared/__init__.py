"""
Shared utilities for the SWR cache.

This package aggregates common building blocks consumed by the cache engine:

- config: Cache configuration via pydantic-settings
- logging: Structured logging with cache-key correlation
- metrics: Prometheus metrics helpers
- errors: Canonical error types and error records
- retry: Retry policies and backoff curves

Do not import from swr_cache into shared/.
"""
