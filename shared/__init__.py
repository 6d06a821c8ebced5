"""
Shared utilities for the Gantz tool gateway.

This package aggregates common building blocks consumed by the services:

- config: Service configuration via pydantic-settings
- logging: Structured logging with trace correlation
- metrics: Prometheus metrics helpers
- tracing: OpenTelemetry tracing config
- errors: Canonical error taxonomy and responses
- base_service: FastAPI service scaffold

Do not import from service packages into shared/ (test_helpers excepted).
"""
