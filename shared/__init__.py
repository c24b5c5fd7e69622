"""
Shared utilities for the entitlement reconciliation engine.

This package aggregates common building blocks consumed by the services:

- config: Service configuration via pydantic-settings
- logging: Structured logging with request/user correlation
- metrics: Prometheus metrics helpers
- errors: Canonical error types and responses
- retry: Retry helper for idempotent backend calls
- circuit_breaker: Resilient external call protection
- base_service: FastAPI service skeleton with health and metrics routes

Do not import from service packages into shared/.
"""
