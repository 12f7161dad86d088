"""
Security middleware for the API.

Resolves the caller identity, answers CORS preflights, enforces per-route
rate limits, and stamps security, CORS and rate-limit headers on every
response.
"""

import logging
from functools import wraps
from typing import Dict, Optional

import jwt
from sanic import Request, Sanic
from sanic.response import HTTPResponse, empty
from sanic.response import json as sanic_json

from salesguard.config import settings
from salesguard.errors import RateLimitExceeded
from salesguard.services.rate_limiter import RateLimitConfig, get_rate_limiter, rate_limit_headers
from salesguard.services.security_monitor import get_security_monitor, SecurityEventType, SecuritySeverity

logger = logging.getLogger(__name__)


class SecurityHeaders:
    """Security and CORS headers applied to every response"""

    DEFAULT_HEADERS = {
        'X-Content-Type-Options': 'nosniff',
        'X-Frame-Options': 'DENY',
        'X-XSS-Protection': '1; mode=block',
        'Strict-Transport-Security': 'max-age=31536000; includeSubDomains',
        'Referrer-Policy': 'strict-origin-when-cross-origin',
        'Permissions-Policy': 'geolocation=(), microphone=(), camera=()',
        'Content-Security-Policy': (
            "default-src 'self'; "
            "script-src 'self'; "
            "style-src 'self' 'unsafe-inline'; "
            "img-src 'self' data: https:; "
            "frame-ancestors 'none';"
        ),
    }

    CORS_HEADERS = {
        'Access-Control-Allow-Headers': (
            'authorization, x-client-info, apikey, content-type, '
            'x-request-timestamp, x-request-signature'
        ),
        'Access-Control-Allow-Methods': 'GET, POST, OPTIONS',
        'Access-Control-Expose-Headers': (
            'x-ratelimit-limit, x-ratelimit-remaining, x-ratelimit-reset, retry-after'
        ),
    }

    @staticmethod
    def cors_headers() -> Dict[str, str]:
        headers = {'Access-Control-Allow-Origin': settings.cors_allow_origins}
        headers.update(SecurityHeaders.CORS_HEADERS)
        return headers

    @staticmethod
    def add_security_headers(request: Request, response: HTTPResponse) -> None:
        """Add security, CORS and rate-limit headers to response"""
        for header, value in SecurityHeaders.DEFAULT_HEADERS.items():
            response.headers[header] = value

        for header, value in SecurityHeaders.cors_headers().items():
            response.headers[header] = value

        limit_headers = getattr(request.ctx, 'rate_limit_headers', None)
        if limit_headers:
            for header, value in limit_headers.items():
                response.headers[header] = value

        response.headers.pop('X-Powered-By', None)
        response.headers.pop('Server-Version', None)


def get_client_ip(request: Request) -> str:
    """Client address, honouring proxy headers only when configured to"""
    if settings.trust_proxy_headers:
        forwarded_for = request.headers.get('x-forwarded-for')
        if forwarded_for:
            return forwarded_for.split(',')[0].strip()

        real_ip = request.headers.get('x-real-ip')
        if real_ip:
            return real_ip.strip()

    return getattr(request, 'remote_addr', None) or getattr(request, 'ip', None) or 'unknown'


def decode_identity_token(token: str) -> Optional[dict]:
    """Verify and decode a bearer JWT; None if it is not valid"""
    options = {} if settings.auth_jwt_audience else {'verify_aud': False}
    try:
        return jwt.decode(
            token,
            settings.auth_jwt_secret,
            algorithms=["HS256"],
            audience=settings.auth_jwt_audience,
            options=options,
        )
    except jwt.InvalidTokenError:
        return None


def resolve_identity(request: Request) -> str:
    """
    Identity used for rate limiting and audit.

    The bearer token subject when a valid token is present, otherwise the
    client IP.
    """
    auth_header = request.headers.get('Authorization', '')
    if auth_header.startswith('Bearer '):
        payload = decode_identity_token(auth_header[7:])
        if payload and payload.get('sub'):
            request.ctx.user = {
                'username': payload['sub'],
                'token_payload': payload,
            }
            return f"user:{payload['sub']}"
    return f"ip:{get_client_ip(request)}"


def security_middleware(app: Sanic):
    """Register security middleware"""

    @app.middleware('request')
    async def security_request_middleware(request: Request):
        """Resolve identity and answer CORS preflights"""
        request.ctx.client_ip = get_client_ip(request)
        request.ctx.identity = resolve_identity(request)

        if request.method == 'OPTIONS':
            return empty(status=204, headers=SecurityHeaders.cors_headers())

    @app.middleware('response')
    async def security_response_middleware(request: Request, response: HTTPResponse):
        """Stamp headers on outgoing responses"""
        # Must return None; a returned response ends the response middleware chain
        SecurityHeaders.add_security_headers(request, response)


def require_auth(f):
    """Decorator to require a valid bearer token."""
    @wraps(f)
    async def decorated_function(request: Request, *args, **kwargs):
        if not getattr(request.ctx, 'user', None):
            if not request.headers.get('Authorization'):
                return sanic_json({"error": "Authorization header required"}, status=401)
            return sanic_json({"error": "Invalid or expired token"}, status=401)
        return await f(request, *args, **kwargs)
    return decorated_function


def rate_limited(preset: str, endpoint: Optional[str] = None):
    """
    Decorator charging one request against the caller's budget for preset.

    The charge happens before the handler runs and is not refunded if the
    handler fails.
    """
    def decorator(f):
        @wraps(f)
        async def decorated_function(request: Request, *args, **kwargs):
            config = RateLimitConfig.from_preset(preset)
            identity = getattr(request.ctx, 'identity', None) or resolve_identity(request)
            route_key = endpoint or request.path

            result = get_rate_limiter().check_identity(identity, route_key, config)
            headers = rate_limit_headers(result, config)
            request.ctx.rate_limit_headers = headers

            monitor = await get_security_monitor()
            if not result.allowed:
                logger.warning(f"Rate limit exceeded for {identity} on {route_key}")
                await monitor.log_event(
                    SecurityEventType.RATE_LIMIT_EXCEEDED,
                    SecuritySeverity.MEDIUM,
                    description=f"Rate limit exceeded on {route_key}",
                    identity=identity,
                    ip_address=getattr(request.ctx, 'client_ip', None),
                    metadata={'endpoint': route_key, 'preset': preset},
                )
                raise RateLimitExceeded(
                    retry_after=result.retry_after_seconds,
                    rate_limit_headers=headers,
                )

            await monitor.detect_unusual_activity(identity, route_key)
            return await f(request, *args, **kwargs)
        return decorated_function
    return decorator


__all__ = [
    'SecurityHeaders',
    'security_middleware',
    'rate_limited',
    'require_auth',
    'resolve_identity',
    'get_client_ip',
    'decode_identity_token',
]
