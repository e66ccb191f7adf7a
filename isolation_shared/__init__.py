"""
Shared utilities for the Tenancy Isolation Layer.

This package aggregates the ambient building blocks used by the engine:

- config: Engine configuration via pydantic-settings
- logging: Structured logging with request and hierarchy correlation
- metrics: Prometheus metrics helpers
- errors: Error kinds, the shared error payload and responses

Do not import from service_isolation into isolation_shared.
"""
