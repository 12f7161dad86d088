"""
Request/response logging middleware and the app-level error handler.

Provides request tracking, response time measurement, API access logging
for the security monitor, and the mapping of the error taxonomy onto JSON
error responses.
"""

import logging
import time
import uuid
from datetime import datetime, timezone
from typing import Dict, Any

from sanic import Request, HTTPResponse
from sanic.exceptions import SanicException
from sanic.response import JSONResponse

from salesguard.config import settings
from salesguard.errors import SecurityLayerError, ValidationError, RateLimitExceeded
from salesguard.middleware.security import get_client_ip
from salesguard.services.security_monitor import get_security_monitor, sanitize_for_logging

logger = logging.getLogger(__name__)

# Not recorded in the API access log
UNTRACKED_PATHS = ('/health',)


class RequestTracker:
    """Tracks request context and timing"""

    def __init__(self, request: Request):
        self.request = request
        self.request_id = str(uuid.uuid4())[:8]  # Short request ID
        self.start_time = time.time()
        self.start_datetime = datetime.now(timezone.utc)
        self.method = request.method
        self.path = request.path
        self.user_agent = request.headers.get('user-agent', 'unknown')
        self.remote_addr = get_client_ip(request)
        self.content_length = request.headers.get('content-length', 0)

    def elapsed_ms(self) -> float:
        return round((time.time() - self.start_time) * 1000, 2)

    def finish(self, response: HTTPResponse) -> Dict[str, Any]:
        """Finish tracking and return log data"""
        return {
            'request_id': self.request_id,
            'timestamp': self.start_datetime.isoformat(),
            'method': self.method,
            'path': self.path,
            'identity': getattr(self.request.ctx, 'identity', None),
            'status_code': response.status,
            'duration_ms': self.elapsed_ms(),
            'remote_addr': self.remote_addr,
            'user_agent': self.user_agent,
            'content_length': self.content_length,
            'response_size': len(response.body) if hasattr(response, 'body') and response.body else 0
        }


def _log_level_for(status_code: int, duration_ms: float) -> int:
    if status_code >= 500:
        return logging.ERROR
    if status_code >= 400:
        return logging.WARNING
    if duration_ms > settings.slow_request_threshold_ms * 5:
        return logging.WARNING
    if duration_ms > settings.slow_request_threshold_ms:
        return logging.INFO
    return logging.DEBUG


def error_body(exception: Exception, request_id: str) -> Dict[str, Any]:
    """JSON body for an error response; never includes internal details"""
    if isinstance(exception, SecurityLayerError):
        body: Dict[str, Any] = {
            'error': exception.public_detail,
            'retryable': exception.retryable,
            'request_id': request_id,
        }
        if isinstance(exception, ValidationError):
            if exception.field is not None:
                body['field'] = exception.field
            if exception.index is not None:
                body['index'] = exception.index
        if isinstance(exception, RateLimitExceeded):
            body['retry_after'] = exception.retry_after
        return body

    if isinstance(exception, SanicException) and exception.status_code < 500:
        return {'error': str(exception), 'retryable': False, 'request_id': request_id}

    return {'error': 'An error occurred', 'retryable': False, 'request_id': request_id}


def setup_monitoring_middleware(app):
    """Setup request/response monitoring middleware for the Sanic app"""

    @app.middleware('request')
    async def before_request(request: Request):
        """Before request middleware - start tracking"""
        tracker = RequestTracker(request)
        request.ctx.tracker = tracker

        logger.debug(f"Request {tracker.request_id}: {tracker.method} {tracker.path} from {tracker.remote_addr}")

    @app.middleware('response')
    async def after_request(request: Request, response: HTTPResponse):
        """After request middleware - finish tracking and log"""
        if not hasattr(request.ctx, 'tracker'):
            return

        tracker = request.ctx.tracker
        log_data = tracker.finish(response)

        duration_ms = log_data['duration_ms']
        status_code = log_data['status_code']

        message = (
            f"Request {log_data['request_id']}: "
            f"{log_data['method']} {log_data['path']} -> "
            f"{status_code} ({duration_ms}ms)"
        )

        logger.log(_log_level_for(status_code, duration_ms), message, extra={
            'request_data': sanitize_for_logging(log_data),
            'request_id': log_data['request_id']
        })

        response.headers['X-Request-ID'] = tracker.request_id

        if request.method != 'OPTIONS' and request.path not in UNTRACKED_PATHS:
            monitor = await get_security_monitor()
            await monitor.log_api_access(
                identity=log_data['identity'],
                endpoint=request.path,
                method=request.method,
                ip_address=tracker.remote_addr,
                status_code=status_code,
                response_time_ms=duration_ms,
            )

    @app.exception(Exception)
    async def exception_handler(request: Request, exception: Exception):
        """Map errors onto structured JSON responses"""
        request_id = "unknown"
        if hasattr(request.ctx, 'tracker'):
            request_id = request.ctx.tracker.request_id

        status = exception.status_code if isinstance(exception, SanicException) else 500
        headers: Dict[str, str] = {}

        if isinstance(exception, RateLimitExceeded):
            headers.update(exception.rate_limit_headers)
            if exception.retry_after and 'Retry-After' not in headers:
                headers['Retry-After'] = str(exception.retry_after)

        if status >= 500 and not isinstance(exception, SecurityLayerError):
            logger.error(
                f"Request {request_id}: Unhandled {type(exception).__name__} in {request.method} {request.path}",
                exc_info=exception if settings.log_level == 'DEBUG' else None,
                extra={
                    'request_id': request_id,
                    'endpoint': request.path,
                    'method': request.method,
                    'exception_type': type(exception).__name__
                }
            )
        else:
            logger.warning(
                f"Request {request_id}: {type(exception).__name__} ({status}) in {request.method} {request.path}"
            )

        return JSONResponse(error_body(exception, request_id), status=status, headers=headers)

