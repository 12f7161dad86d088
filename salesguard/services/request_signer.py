"""
Request signing service for inbound and outbound API calls.
Provides HMAC-SHA256 request signatures with timestamp freshness checks.
"""

import hmac
import hashlib
import json
import time
import logging
from functools import wraps
from typing import Any, Dict, Optional

from sanic import Request

from salesguard.config import settings
from salesguard.errors import SignatureInvalid, TimestampExpired

logger = logging.getLogger(__name__)

TIMESTAMP_HEADER = 'X-Request-Timestamp'
SIGNATURE_HEADER = 'X-Request-Signature'

# Maximum distance between the request timestamp and now, in milliseconds
MAX_TIMESTAMP_SKEW_MS = 5 * 60 * 1000


def now_ms() -> int:
    """Current time as epoch milliseconds"""
    return int(time.time() * 1000)


def canonical_message(payload: Any, timestamp: int) -> bytes:
    """
    Encode the signed message with a stable key order.

    Any two logically equal payloads produce the same bytes regardless of
    how their keys were ordered when serialized by the caller.
    """
    return json.dumps(
        {'payload': payload, 'timestamp': timestamp},
        sort_keys=True,
        separators=(',', ':'),
        ensure_ascii=False,
        allow_nan=False,
    ).encode('utf-8')


def sign(payload: Any, timestamp: int, secret: str) -> str:
    """Compute the hex HMAC-SHA256 signature for a payload and timestamp"""
    key = secret.encode('utf-8') if isinstance(secret, str) else secret
    return hmac.new(key, canonical_message(payload, timestamp), hashlib.sha256).hexdigest()


def verify(payload: Any, timestamp: int, signature: str, secret: str) -> bool:
    """Check a signature in constant time. Never raises."""
    try:
        if not isinstance(signature, str) or not signature:
            return False
        expected = sign(payload, timestamp, secret)
        return hmac.compare_digest(expected.encode('ascii'), signature.encode('utf-8'))
    except (TypeError, ValueError, AttributeError) as e:
        logger.debug(f"Signature verification failed on malformed input: {type(e).__name__}")
        return False


def is_timestamp_valid(timestamp: Any, now: Optional[int] = None,
                       max_skew_ms: int = MAX_TIMESTAMP_SKEW_MS) -> bool:
    """True iff the timestamp lies strictly within the skew window around now"""
    if isinstance(timestamp, bool):
        return False
    try:
        ts = int(timestamp)
    except (TypeError, ValueError, OverflowError):
        return False
    current = now_ms() if now is None else now
    return abs(current - ts) < max_skew_ms


class RequestSigner:
    """
    Signs and verifies API requests with a shared secret.

    Integrity failures always surface with the same public message, whichever
    check rejected the request.
    """

    def __init__(self, secret_key: Optional[str] = None, max_skew_ms: Optional[int] = None):
        self.secret_key = secret_key or settings.request_signing_secret
        self.max_skew_ms = max_skew_ms or settings.signature_max_skew_seconds * 1000

    def sign(self, payload: Any, timestamp: int) -> str:
        return sign(payload, timestamp, self.secret_key)

    def verify(self, payload: Any, timestamp: int, signature: str) -> bool:
        return verify(payload, timestamp, signature, self.secret_key)

    def is_timestamp_valid(self, timestamp: Any, now: Optional[int] = None) -> bool:
        return is_timestamp_valid(timestamp, now=now, max_skew_ms=self.max_skew_ms)

    def verify_request(self, payload: Any, timestamp: Any, signature: Optional[str],
                       now: Optional[int] = None) -> None:
        """Raise an integrity error unless the request is fresh and correctly signed"""
        if not self.is_timestamp_valid(timestamp, now=now):
            raise TimestampExpired()
        if not self.verify(payload, int(timestamp), signature):
            raise SignatureInvalid()

    def signed_headers(self, payload: Any, timestamp: Optional[int] = None) -> Dict[str, str]:
        """Headers to attach to an outbound signed request"""
        ts = timestamp if timestamp is not None else now_ms()
        return {
            TIMESTAMP_HEADER: str(ts),
            SIGNATURE_HEADER: self.sign(payload, ts),
        }


def _read_json_body(request: Request) -> Any:
    try:
        return request.json
    except Exception:
        return None


def require_signed_request(f):
    """
    Decorator to verify X-Request-Timestamp / X-Request-Signature on a route.

    Unsigned requests pass through unless request_signing_required is set;
    a signature that is present is always verified.
    """
    @wraps(f)
    async def decorated_function(request: Request, *args, **kwargs):
        timestamp = request.headers.get(TIMESTAMP_HEADER)
        signature = request.headers.get(SIGNATURE_HEADER)

        if not signature and not timestamp and not settings.request_signing_required:
            request.ctx.signature_verified = False
            return await f(request, *args, **kwargs)

        signer = get_request_signer()
        try:
            signer.verify_request(_read_json_body(request), timestamp, signature)
        except (SignatureInvalid, TimestampExpired) as e:
            from salesguard.services.security_monitor import (
                get_security_monitor, SecurityEventType, SecuritySeverity
            )
            monitor = await get_security_monitor()
            await monitor.log_event(
                SecurityEventType.BLOCKED_REQUEST,
                SecuritySeverity.MEDIUM,
                description='Request failed integrity check',
                identity=getattr(request.ctx, 'identity', None),
                ip_address=getattr(request.ctx, 'client_ip', None),
                metadata={'endpoint': request.path, 'check': type(e).__name__},
            )
            raise

        request.ctx.signature_verified = True
        return await f(request, *args, **kwargs)

    return decorated_function


# Global instance
_request_signer: Optional[RequestSigner] = None


def get_request_signer() -> RequestSigner:
    """Get or create the global request signer instance."""
    global _request_signer
    if _request_signer is None:
        _request_signer = RequestSigner()
    return _request_signer


def reset_request_signer():
    """Drop the global request signer (used on shutdown and in tests)."""
    global _request_signer
    _request_signer = None
