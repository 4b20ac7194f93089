"""
Shared utilities for the cacher package.

This package aggregates the ambient building blocks used by the coordinators:

- config: Coordinator and store configuration via pydantic-settings
- logging: Structured logging with correlation context
- metrics: Prometheus metrics helpers
- errors: Canonical error types and responses

Do not import from cacher into shared/.
"""
