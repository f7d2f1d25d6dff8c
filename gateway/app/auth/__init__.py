"""
Authentication Package

This package gates every inbound request on a shared secret carried in a
configured request header.

Modules:
- middleware: ASGI middleware comparing the header against the expected value

Requests without a matching header are answered with 401 and the body
"unauthorized request"; they never reach the upstream origin.
"""

from .middleware import HeaderAuthMiddleware

__all__ = [
    "HeaderAuthMiddleware",
]
