"""
Security routes: authentication attempt reporting and the security event feed.
"""

import logging
from typing import Optional

from pydantic import BaseModel, Field
from sanic import Blueprint, Request, HTTPResponse
from sanic.response import json as sanic_json

from salesguard.errors import ValidationError
from salesguard.middleware.security import rate_limited, require_auth
from salesguard.services.response_validator import validate_body
from salesguard.services.security_monitor import (
    SecuritySeverity, get_security_monitor, sanitize_for_logging
)

logger = logging.getLogger(__name__)

security_bp = Blueprint("security", url_prefix="/v1")

MAX_EVENTS_PAGE = 200


class AuthAttemptReport(BaseModel):
    """Outcome of a sign-in handled by the external auth provider."""
    identity: str = Field(..., min_length=1, max_length=255, description="Account identifier", json_schema_extra={"example": "rep@example.com"})
    success: bool = Field(..., description="Whether the sign-in succeeded")
    failure_reason: Optional[str] = Field(default=None, max_length=500, description="Why the sign-in failed")


@security_bp.post("/auth/attempts", name="record_auth_attempt")
@validate_body(AuthAttemptReport)
@rate_limited('STANDARD')
async def record_auth_attempt(request: Request) -> HTTPResponse:
    """
    Record a sign-in attempt.

    Refuses to record anything for a locked account and reports whether the
    account can currently be used. Failed attempts also feed the failed-login
    flood detector for the caller's IP.

    Responses:
    - 200: `{ "account_usable": bool }`
    - 400: invalid body; 429: rate limited
    """
    report: AuthAttemptReport = request.ctx.validated
    monitor = await get_security_monitor()

    usable = await monitor.record_auth_attempt(
        identity=report.identity,
        success=report.success,
        ip_address=request.ctx.client_ip,
        user_agent=request.headers.get('user-agent'),
        failure_reason=report.failure_reason,
    )

    if not report.success:
        await monitor.monitor_failed_logins(request.ctx.client_ip)

    return sanic_json({'account_usable': usable})


@security_bp.get("/security/events", name="security_events")
@require_auth
@rate_limited('DATA_FETCH')
async def security_events(request: Request) -> HTTPResponse:
    """
    Recent security events, newest first.

    Query Parameters:
    - limit: 1-200 (default 50)
    - severity: low | medium | high | critical

    Responses:
    - 200: `{ "events": [...], "count": int }`
    - 400: bad query parameter; 401: missing or invalid bearer token
    """
    try:
        limit = int(request.args.get('limit', 50))
    except ValueError:
        raise ValidationError("limit must be an integer", field='limit')
    if not 1 <= limit <= MAX_EVENTS_PAGE:
        raise ValidationError(f"limit must be between 1 and {MAX_EVENTS_PAGE}", field='limit')

    severity = None
    severity_param = request.args.get('severity')
    if severity_param:
        try:
            severity = SecuritySeverity(severity_param.lower())
        except ValueError:
            raise ValidationError("Unknown severity", field='severity')

    monitor = await get_security_monitor()
    events = await monitor.get_recent_security_events(limit=limit, severity=severity)

    return sanic_json({
        'events': sanitize_for_logging(events),
        'count': len(events),
    })
