"""
Shared utilities for the Member Entitlements service.

This package aggregates common building blocks consumed by the service:

- config: Service configuration via pydantic-settings
- logging: Structured logging with trace and organization correlation
- metrics: Prometheus metrics helpers
- errors: Canonical error types and responses
- retry: Retry with backoff for storage calls
- base_service: FastAPI service base with health, metrics and error handlers

Any cross-cutting logic should live here to avoid import cycles. Do not
import from service packages into shared/.
"""
