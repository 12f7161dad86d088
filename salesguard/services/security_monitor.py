"""
Security monitoring and alerting.

Provides an append-only security event log, authentication attempt tracking
with account lockout, anomaly detectors for API bursts and failed-login
floods, and redaction of sensitive fields before anything is logged.
"""

import asyncio
import inspect
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Protocol

from salesguard.config import settings

logger = logging.getLogger(__name__)

# Operator-visible channel for high and critical events
alert_logger = logging.getLogger('salesguard.security.alerts')

REDACTED = '[REDACTED]'

SENSITIVE_KEYS = (
    'password', 'token', 'secret', 'authorization', 'auth',
    'api_key', 'apikey', 'access_token', 'refresh_token',
    'credit_card', 'ssn', 'email_content', 'body', 'content',
)


class SecurityEventType(str, Enum):
    """Kinds of security-relevant occurrences"""
    FAILED_LOGIN = "failed_login"
    ACCOUNT_LOCKED = "account_locked"
    UNUSUAL_ACTIVITY = "unusual_activity"
    RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"
    BLOCKED_REQUEST = "blocked_request"
    SUSPICIOUS_API_USAGE = "suspicious_api_usage"
    DATA_ACCESS_ANOMALY = "data_access_anomaly"


class SecuritySeverity(str, Enum):
    """Severity levels for security events"""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


ALERT_SEVERITIES = frozenset({SecuritySeverity.HIGH, SecuritySeverity.CRITICAL})


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class SecurityEvent:
    """Immutable record of a security-relevant occurrence"""
    event_type: SecurityEventType
    severity: SecuritySeverity
    description: str
    identity: Optional[str] = None
    ip_address: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization"""
        return {
            'event_type': self.event_type.value,
            'severity': self.severity.value,
            'identity': self.identity,
            'ip_address': self.ip_address,
            'description': self.description,
            'metadata': self.metadata,
            'timestamp': self.timestamp.isoformat(),
        }


@dataclass(frozen=True)
class AuthAttempt:
    """A single sign-in attempt"""
    identity: str
    success: bool
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    failure_reason: Optional[str] = None
    timestamp: datetime = field(default_factory=_utcnow)


@dataclass(frozen=True)
class ApiAccessRecord:
    """One row of the API access log"""
    identity: Optional[str]
    endpoint: str
    method: str
    ip_address: Optional[str] = None
    status_code: Optional[int] = None
    response_time_ms: Optional[float] = None
    timestamp: datetime = field(default_factory=_utcnow)


class SecurityStore(Protocol):
    """Durable storage the monitor writes to and counts from"""

    async def insert_security_event(self, event: SecurityEvent) -> bool: ...

    async def insert_auth_attempt(self, attempt: AuthAttempt) -> bool: ...

    async def insert_api_access(self, record: ApiAccessRecord) -> bool: ...

    async def count_api_access(self, identity: str, endpoint: str, since: datetime) -> int: ...

    async def count_failed_auth_attempts(self, since: datetime, ip_address: Optional[str] = None,
                                         identity: Optional[str] = None) -> int: ...

    async def recent_security_events(self, limit: int = 50,
                                     severity: Optional[str] = None) -> List[Dict[str, Any]]: ...

    async def cleanup_old_data(self, older_than: datetime) -> Dict[str, int]: ...


def _is_sensitive(key: Any) -> bool:
    lowered = str(key).lower()
    return any(sensitive in lowered for sensitive in SENSITIVE_KEYS)


def sanitize_for_logging(data: Any) -> Any:
    """
    Return a copy of data with sensitive values redacted.

    Any mapping key whose lowercase name contains a sensitive fragment has its
    value replaced by the redaction marker; lists and tuples are walked, and
    everything else passes through unchanged. The input is never mutated.
    """
    if isinstance(data, dict):
        sanitized = {}
        for key, value in data.items():
            if _is_sensitive(key):
                sanitized[key] = REDACTED
            else:
                sanitized[key] = sanitize_for_logging(value)
        return sanitized

    if isinstance(data, list):
        return [sanitize_for_logging(item) for item in data]

    if isinstance(data, tuple):
        return tuple(sanitize_for_logging(item) for item in data)

    return data


class LockoutOracle(ABC):
    """Answers whether an account is currently locked"""

    @abstractmethod
    async def is_locked(self, identity: str) -> bool:
        ...


class FailedAttemptLockoutOracle(LockoutOracle):
    """Locks an identity after too many recent failed sign-ins"""

    def __init__(self, store: SecurityStore, max_failures: Optional[int] = None,
                 window_minutes: Optional[int] = None,
                 clock: Optional[Callable[[], datetime]] = None):
        self.store = store
        self.max_failures = max_failures or settings.lockout_max_failures
        self.window = timedelta(minutes=window_minutes or settings.lockout_window_minutes)
        self._clock = clock or _utcnow

    async def is_locked(self, identity: str) -> bool:
        since = self._clock() - self.window
        failures = await self.store.count_failed_auth_attempts(since, identity=identity)
        return failures >= self.max_failures


AlertHandler = Callable[[SecurityEvent], Any]


class SecurityMonitor:
    """
    Records security events and watches for abusive patterns.

    Storage failures are logged and never propagate into the request path.
    """

    def __init__(self,
                 store: SecurityStore,
                 lockout_oracle: Optional[LockoutOracle] = None,
                 alert_handlers: Optional[List[AlertHandler]] = None,
                 clock: Optional[Callable[[], datetime]] = None):
        config = settings.get_monitor_config()
        self.store = store
        self._clock = clock or _utcnow
        self.lockout_oracle = lockout_oracle or FailedAttemptLockoutOracle(store, clock=self._clock)
        self.alert_handlers: List[AlertHandler] = list(alert_handlers or [])

        self.unusual_activity_threshold = config['unusual_activity_threshold']
        self.unusual_activity_window = timedelta(minutes=config['unusual_activity_window_minutes'])
        self.failed_login_threshold = config['failed_login_threshold']
        self.failed_login_window = timedelta(minutes=config['failed_login_window_minutes'])
        self.retention = timedelta(days=config['retention_days'])

    def add_alert_handler(self, handler: AlertHandler):
        """Register an extra alert sink for high and critical events"""
        self.alert_handlers.append(handler)

    async def log_security_event(self, event: SecurityEvent) -> SecurityEvent:
        """Persist an event (redacted) and raise an alert if it is severe"""
        stored = replace(event, metadata=sanitize_for_logging(dict(event.metadata or {})))

        try:
            if not await self.store.insert_security_event(stored):
                logger.error(f"Failed to log security event: {stored.event_type.value}")
        except Exception as e:
            logger.error(f"Failed to log security event: {e}")

        if stored.severity in ALERT_SEVERITIES:
            await self._alert(stored)

        return stored

    async def log_event(self,
                        event_type: SecurityEventType,
                        severity: SecuritySeverity,
                        description: str,
                        identity: Optional[str] = None,
                        ip_address: Optional[str] = None,
                        metadata: Optional[Dict[str, Any]] = None) -> SecurityEvent:
        """Build and log an event in one call"""
        event = SecurityEvent(
            event_type=event_type,
            severity=severity,
            description=description,
            identity=identity,
            ip_address=ip_address,
            metadata=dict(metadata or {}),
            timestamp=self._clock(),
        )
        return await self.log_security_event(event)

    async def record_auth_attempt(self,
                                  identity: str,
                                  success: bool,
                                  ip_address: Optional[str] = None,
                                  user_agent: Optional[str] = None,
                                  failure_reason: Optional[str] = None) -> bool:
        """
        Record a sign-in attempt.

        Returns False without recording anything when the account is locked,
        True otherwise.
        """
        if await self.lockout_oracle.is_locked(identity):
            await self.log_event(
                SecurityEventType.ACCOUNT_LOCKED,
                SecuritySeverity.HIGH,
                description='Login attempt on locked account',
                identity=identity,
                ip_address=ip_address,
                metadata={'user_agent': user_agent},
            )
            return False

        attempt = AuthAttempt(
            identity=identity,
            success=success,
            ip_address=ip_address,
            user_agent=user_agent,
            failure_reason=failure_reason,
            timestamp=self._clock(),
        )
        try:
            if not await self.store.insert_auth_attempt(attempt):
                logger.error("Failed to record auth attempt")
        except Exception as e:
            logger.error(f"Failed to record auth attempt: {e}")

        if not success:
            await self.log_event(
                SecurityEventType.FAILED_LOGIN,
                SecuritySeverity.MEDIUM,
                description=failure_reason or 'Failed login attempt',
                identity=identity,
                ip_address=ip_address,
                metadata={'user_agent': user_agent},
            )

        return True

    async def log_api_access(self,
                             identity: Optional[str],
                             endpoint: str,
                             method: str,
                             ip_address: Optional[str] = None,
                             status_code: Optional[int] = None,
                             response_time_ms: Optional[float] = None):
        """Append to the API access log used by the burst detector"""
        record = ApiAccessRecord(
            identity=identity,
            endpoint=endpoint,
            method=method,
            ip_address=ip_address,
            status_code=status_code,
            response_time_ms=response_time_ms,
            timestamp=self._clock(),
        )
        try:
            await self.store.insert_api_access(record)
        except Exception as e:
            logger.error(f"Failed to log API access: {e}")

    async def detect_unusual_activity(self, identity: str, endpoint: str) -> bool:
        """Flag an identity hammering one endpoint in the trailing window"""
        since = self._clock() - self.unusual_activity_window
        try:
            count = await self.store.count_api_access(identity, endpoint, since)
        except Exception as e:
            logger.error(f"Failed to check activity: {e}")
            return False

        if count > self.unusual_activity_threshold:
            minutes = int(self.unusual_activity_window.total_seconds() // 60)
            await self.log_event(
                SecurityEventType.SUSPICIOUS_API_USAGE,
                SecuritySeverity.HIGH,
                description=f"Unusual API activity detected: {count} requests to {endpoint} in {minutes} minutes",
                identity=identity,
                metadata={'endpoint': endpoint, 'request_count': count},
            )
            return True

        return False

    async def monitor_failed_logins(self, ip_address: str) -> bool:
        """Flag an IP producing a flood of failed sign-ins"""
        since = self._clock() - self.failed_login_window
        try:
            count = await self.store.count_failed_auth_attempts(since, ip_address=ip_address)
        except Exception as e:
            logger.error(f"Failed to monitor logins: {e}")
            return False

        if count > self.failed_login_threshold:
            minutes = int(self.failed_login_window.total_seconds() // 60)
            await self.log_event(
                SecurityEventType.UNUSUAL_ACTIVITY,
                SecuritySeverity.CRITICAL,
                description=f"Multiple failed login attempts detected from IP: {count} failures in {minutes} minutes",
                ip_address=ip_address,
                metadata={'failed_attempts': count},
            )
            return True

        return False

    async def get_recent_security_events(self, limit: int = 50,
                                         severity: Optional[SecuritySeverity] = None) -> List[Dict[str, Any]]:
        """Recent events for the admin view, newest first"""
        severity_value = severity.value if isinstance(severity, SecuritySeverity) else severity
        try:
            return await self.store.recent_security_events(limit=limit, severity=severity_value)
        except Exception as e:
            logger.error(f"Failed to fetch security events: {e}")
            return []

    async def cleanup_old_data(self) -> Dict[str, int]:
        """Drop audit rows older than the retention period"""
        cutoff = self._clock() - self.retention
        removed = await self.store.cleanup_old_data(cutoff)
        if removed and any(removed.values()):
            logger.info(f"Security data cleanup completed: {removed}")
        return removed

    async def _alert(self, event: SecurityEvent):
        alert_logger.warning(
            f"SECURITY ALERT: {event.event_type.value} ({event.severity.value}) {event.description}",
            extra={'security_event': event.to_dict()}
        )
        for handler in self.alert_handlers:
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    await result
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Alert handler {getattr(handler, '__name__', handler)} failed: {e}")


# Global security monitor instance
_security_monitor: Optional[SecurityMonitor] = None


async def get_security_monitor() -> SecurityMonitor:
    """Get or create the global security monitor"""
    global _security_monitor
    if _security_monitor is None:
        from salesguard.db.sqlite import get_database
        _security_monitor = SecurityMonitor(await get_database())
    return _security_monitor


async def initialize_security_monitor():
    """Initialize the security monitor"""
    await get_security_monitor()
    logger.info("Security monitor initialized")


async def shutdown_security_monitor():
    """Shutdown the security monitor"""
    global _security_monitor
    if _security_monitor:
        logger.info("Security monitor shutdown")
        _security_monitor = None
