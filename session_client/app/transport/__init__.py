"""
Transport package for the session client.

- http: httpx transport and the HTTPS policy
- executor: RequestExecutor, the credentialed request path
  (import from ``transport.executor``; it sits above refresh and housekeeping)
"""

from .http import HttpxTransport, Transport, TransportPolicy

__all__ = ["HttpxTransport", "Transport", "TransportPolicy"]
