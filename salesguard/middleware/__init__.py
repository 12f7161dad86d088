"""
Middleware package for the salesguard application.

Contains security headers, CORS, identity resolution, rate limiting, and
request monitoring components.
"""

from .security import (
    SecurityHeaders,
    security_middleware,
    rate_limited,
    require_auth,
    resolve_identity,
    get_client_ip,
)
from .monitoring import setup_monitoring_middleware

__all__ = [
    'SecurityHeaders',
    'security_middleware',
    'rate_limited',
    'require_auth',
    'resolve_identity',
    'get_client_ip',
    'setup_monitoring_middleware',
]
