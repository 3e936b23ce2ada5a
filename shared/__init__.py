"""
Shared utilities for the calorie tracker session client.

This package aggregates common building blocks consumed by the client and
the mock API:

- config: Client configuration via pydantic-settings
- logging: Structured logging with correlation context
- metrics: Prometheus metrics helpers
- errors: Session error taxonomy (ErrorKind + typed exceptions)
- retry: Exponential backoff with jitter

Do not import from session_client into shared/.
"""
