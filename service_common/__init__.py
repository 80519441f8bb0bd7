"""
Shared runtime for backend services.

This package gives every service the same request-handling contract:

- config: Service configuration via pydantic-settings
- logging: Structured logging with request and trace correlation
- errors: Canonical error types and responses
- metrics: Prometheus metrics for the runtime
- filters: Pagination and sort helpers for list endpoints
- persistence: Generic repository with optimistic concurrency
- auth: Bearer token authentication and permission checks
- background: Tracked background work awaited on shutdown
- retry: Backoff for startup calls to external services
- server: Base service wiring and graceful shutdown
- testing: In-memory repository and token helpers for tests

Services import from here; nothing in this package imports from a service.
"""

__version__ = "1.0.0"
