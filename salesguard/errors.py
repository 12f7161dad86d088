"""
Error taxonomy for the security middleware layer.

Every error raised by the layer is a SanicException subclass so that handlers
can simply raise and the app-level exception handler turns it into a
structured JSON response with the right status code.
"""

from dataclasses import dataclass
from typing import Dict, Optional

from sanic.exceptions import SanicException


class SecurityLayerError(SanicException):
    """Base class for errors surfaced by the security layer"""
    status_code = 500
    quiet = True
    retryable = False
    severity = "error"
    public_message = "An error occurred"

    def __init__(self, message: Optional[str] = None, **kwargs):
        super().__init__(message or self.public_message, **kwargs)

    @property
    def public_detail(self) -> str:
        """Message that is safe to return to the caller"""
        return str(self)


class ValidationError(SecurityLayerError):
    """Request body or upstream payload failed schema validation"""
    status_code = 400
    severity = "warning"
    public_message = "Invalid request data"

    def __init__(self, message: Optional[str] = None, field: Optional[str] = None,
                 index: Optional[int] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.field = field
        self.index = index


class RateLimitExceeded(SecurityLayerError):
    """Caller exhausted its request budget for the current window"""
    status_code = 429
    retryable = True
    severity = "warning"
    public_message = "Too many requests. Please wait a moment before trying again."

    def __init__(self, message: Optional[str] = None, retry_after: int = 0,
                 rate_limit_headers: Optional[Dict[str, str]] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.retry_after = retry_after
        self.rate_limit_headers = rate_limit_headers or {}


class EgressBlocked(SecurityLayerError):
    """Outbound request rejected by the egress guard"""
    status_code = 403
    severity = "info"
    public_message = "Access restricted"

    def __init__(self, message: Optional[str] = None, hostname: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.hostname = hostname

    @property
    def public_detail(self) -> str:
        return self.public_message


class IntegrityError(SecurityLayerError):
    """
    Request integrity check failed.

    Subclasses share one public message so callers cannot tell which check
    rejected the request.
    """
    status_code = 401
    severity = "warning"
    public_message = "Invalid request"

    @property
    def public_detail(self) -> str:
        return IntegrityError.public_message


class SignatureInvalid(IntegrityError):
    """Signature missing, malformed, or not matching the payload"""


class TimestampExpired(IntegrityError):
    """Request timestamp outside the accepted skew window"""


class UpstreamTimeout(SecurityLayerError):
    """Outbound call exceeded its deadline and was cancelled"""
    status_code = 504
    retryable = True
    severity = "warning"
    public_message = "Upstream service timed out"


class UpstreamError(SecurityLayerError):
    """Outbound call failed or returned an error status"""
    status_code = 502
    retryable = True
    severity = "warning"
    public_message = "Upstream service temporarily unavailable"

    def __init__(self, message: Optional[str] = None, upstream_status: Optional[int] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.upstream_status = upstream_status

    @property
    def public_detail(self) -> str:
        return self.public_message


class InternalError(SecurityLayerError):
    """Unexpected failure inside the service"""
    status_code = 500
    public_message = "An error occurred"

    @property
    def public_detail(self) -> str:
        return self.public_message


@dataclass
class ErrorState:
    """User-facing description of a failure"""
    message: str
    severity: str  # info, warning, error
    can_retry: bool

    def to_dict(self) -> Dict[str, object]:
        return {
            'message': self.message,
            'severity': self.severity,
            'can_retry': self.can_retry,
        }


def describe_error(error: BaseException) -> ErrorState:
    """Map any exception onto a user-facing error state"""
    if isinstance(error, RateLimitExceeded):
        return ErrorState(RateLimitExceeded.public_message, 'warning', True)

    if isinstance(error, (UpstreamTimeout, UpstreamError)):
        upstream_status = getattr(error, 'upstream_status', None)
        if upstream_status is not None and upstream_status >= 500:
            return ErrorState('Service temporarily unavailable. Please try again.', 'error', True)
        return ErrorState('Connection issue detected. Please try again.', 'warning', True)

    if isinstance(error, EgressBlocked):
        return ErrorState('Access restricted. Using alternative data sources.', 'info', False)

    if isinstance(error, SecurityLayerError):
        return ErrorState(error.public_detail, error.severity, error.retryable)

    return ErrorState('An unexpected error occurred.', 'error', False)


__all__ = [
    'SecurityLayerError',
    'ValidationError',
    'RateLimitExceeded',
    'EgressBlocked',
    'IntegrityError',
    'SignatureInvalid',
    'TimestampExpired',
    'UpstreamTimeout',
    'UpstreamError',
    'InternalError',
    'ErrorState',
    'describe_error',
]
