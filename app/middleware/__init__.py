"""
Middleware package for security and request processing
"""
from .security import SecurityHeadersMiddleware

__all__ = [
    "SecurityHeadersMiddleware",
]
