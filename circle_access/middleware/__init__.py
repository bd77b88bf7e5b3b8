"""
Middleware Package
==================

FastAPI middleware for response hardening.
"""

from .security import SecurityHeadersMiddleware

__all__ = [
    "SecurityHeadersMiddleware",
]
