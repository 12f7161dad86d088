"""
SQLite storage for security events, authentication attempts and API access logs.
Durable, append-only audit store backing the security monitor.
"""

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Any, TYPE_CHECKING

import aiosqlite

from salesguard.config import settings

if TYPE_CHECKING:
    from salesguard.services.security_monitor import SecurityEvent, AuthAttempt, ApiAccessRecord

logger = logging.getLogger(__name__)


def _ts(value: datetime) -> str:
    """Fixed-width UTC timestamp so string comparison orders correctly"""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec='microseconds')


class Database:
    """SQLite database manager for the security audit trail"""

    def __init__(self, db_path: str = None):
        self.db_path = db_path or settings.sqlite_path
        self._initialized = False

        # Ensure database directory exists
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

    async def initialize(self) -> None:
        """Initialize database schema if not already done"""
        if self._initialized:
            return

        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("""
                CREATE TABLE IF NOT EXISTS security_events (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    event_type TEXT NOT NULL,
                    severity TEXT NOT NULL,
                    identity TEXT,
                    ip_address TEXT,
                    description TEXT NOT NULL,
                    metadata TEXT DEFAULT '{}',
                    created_at TEXT NOT NULL
                )
            """)

            await db.execute("""
                CREATE TABLE IF NOT EXISTS auth_attempts (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    identity TEXT NOT NULL,
                    ip_address TEXT,
                    user_agent TEXT,
                    success INTEGER NOT NULL,
                    failure_reason TEXT,
                    attempted_at TEXT NOT NULL
                )
            """)

            await db.execute("""
                CREATE TABLE IF NOT EXISTS api_access_log (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    identity TEXT,
                    endpoint TEXT NOT NULL,
                    method TEXT NOT NULL,
                    ip_address TEXT,
                    status_code INTEGER,
                    response_time_ms REAL,
                    accessed_at TEXT NOT NULL
                )
            """)

            # Indexes for the count-by-filter queries
            await db.execute("CREATE INDEX IF NOT EXISTS idx_events_created_at ON security_events(created_at)")
            await db.execute("CREATE INDEX IF NOT EXISTS idx_events_severity ON security_events(severity)")
            await db.execute("CREATE INDEX IF NOT EXISTS idx_auth_ip ON auth_attempts(ip_address, success, attempted_at)")
            await db.execute("CREATE INDEX IF NOT EXISTS idx_auth_identity ON auth_attempts(identity, success, attempted_at)")
            await db.execute("CREATE INDEX IF NOT EXISTS idx_access_identity ON api_access_log(identity, endpoint, accessed_at)")

            await db.commit()

        self._initialized = True
        logger.info(f"Database initialized at {self.db_path}")

    async def insert_security_event(self, event: 'SecurityEvent') -> bool:
        """Append a security event"""
        try:
            async with aiosqlite.connect(self.db_path) as db:
                await db.execute("""
                    INSERT INTO security_events
                    (event_type, severity, identity, ip_address, description, metadata, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                """, (
                    event.event_type.value, event.severity.value, event.identity,
                    event.ip_address, event.description, json.dumps(event.metadata, default=str),
                    _ts(event.timestamp)
                ))
                await db.commit()
                return True
        except Exception as e:
            logger.error(f"Database error inserting security event: {e}")
            return False

    async def insert_auth_attempt(self, attempt: 'AuthAttempt') -> bool:
        """Append an authentication attempt"""
        try:
            async with aiosqlite.connect(self.db_path) as db:
                await db.execute("""
                    INSERT INTO auth_attempts
                    (identity, ip_address, user_agent, success, failure_reason, attempted_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                """, (
                    attempt.identity, attempt.ip_address, attempt.user_agent,
                    1 if attempt.success else 0, attempt.failure_reason, _ts(attempt.timestamp)
                ))
                await db.commit()
                return True
        except Exception as e:
            logger.error(f"Database error recording auth attempt: {e}")
            return False

    async def insert_api_access(self, record: 'ApiAccessRecord') -> bool:
        """Append an API access log row"""
        try:
            async with aiosqlite.connect(self.db_path) as db:
                await db.execute("""
                    INSERT INTO api_access_log
                    (identity, endpoint, method, ip_address, status_code, response_time_ms, accessed_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                """, (
                    record.identity, record.endpoint, record.method, record.ip_address,
                    record.status_code, record.response_time_ms, _ts(record.timestamp)
                ))
                await db.commit()
                return True
        except Exception as e:
            logger.error(f"Database error logging API access: {e}")
            return False

    async def count_api_access(self, identity: str, endpoint: str, since: datetime) -> int:
        """Count access-log rows for identity/endpoint at or after since"""
        try:
            async with aiosqlite.connect(self.db_path) as db:
                async with db.execute("""
                    SELECT COUNT(*) FROM api_access_log
                    WHERE identity = ? AND endpoint = ? AND accessed_at >= ?
                """, (identity, endpoint, _ts(since))) as cursor:
                    row = await cursor.fetchone()
                    return row[0] if row else 0
        except Exception as e:
            logger.error(f"Database error counting API access: {e}")
            return 0

    async def count_failed_auth_attempts(self, since: datetime, ip_address: Optional[str] = None,
                                         identity: Optional[str] = None) -> int:
        """Count failed authentication attempts by IP and/or identity at or after since"""
        conditions = ["success = 0", "attempted_at >= ?"]
        params: List[Any] = [_ts(since)]
        if ip_address is not None:
            conditions.append("ip_address = ?")
            params.append(ip_address)
        if identity is not None:
            conditions.append("identity = ?")
            params.append(identity)

        try:
            async with aiosqlite.connect(self.db_path) as db:
                async with db.execute(
                    f"SELECT COUNT(*) FROM auth_attempts WHERE {' AND '.join(conditions)}",
                    params
                ) as cursor:
                    row = await cursor.fetchone()
                    return row[0] if row else 0
        except Exception as e:
            logger.error(f"Database error counting failed logins: {e}")
            return 0

    async def recent_security_events(self, limit: int = 50, severity: Optional[str] = None) -> List[Dict[str, Any]]:
        """Most recent security events, newest first"""
        query = "SELECT * FROM security_events"
        params: List[Any] = []
        if severity:
            query += " WHERE severity = ?"
            params.append(severity)
        query += " ORDER BY created_at DESC, id DESC LIMIT ?"
        params.append(limit)

        try:
            async with aiosqlite.connect(self.db_path) as db:
                db.row_factory = aiosqlite.Row
                async with db.execute(query, params) as cursor:
                    rows = await cursor.fetchall()
                    return [self._row_to_event_dict(row) for row in rows]
        except Exception as e:
            logger.error(f"Database error fetching security events: {e}")
            return []

    async def cleanup_old_data(self, older_than: datetime) -> Dict[str, int]:
        """Delete audit rows recorded before older_than"""
        cutoff = _ts(older_than)
        removed: Dict[str, int] = {}
        try:
            async with aiosqlite.connect(self.db_path) as db:
                for table, column in (
                    ('security_events', 'created_at'),
                    ('auth_attempts', 'attempted_at'),
                    ('api_access_log', 'accessed_at'),
                ):
                    cursor = await db.execute(f"DELETE FROM {table} WHERE {column} < ?", (cutoff,))
                    removed[table] = cursor.rowcount
                await db.commit()
        except Exception as e:
            logger.error(f"Database error cleaning up old data: {e}")
        return removed

    def _row_to_event_dict(self, row: aiosqlite.Row) -> Dict[str, Any]:
        """Convert database row to a security event dict"""
        try:
            metadata = json.loads(row['metadata'] or '{}')
        except json.JSONDecodeError:
            metadata = {}
        return {
            'id': row['id'],
            'event_type': row['event_type'],
            'severity': row['severity'],
            'identity': row['identity'],
            'ip_address': row['ip_address'],
            'description': row['description'],
            'metadata': metadata,
            'timestamp': row['created_at'],
        }


# Global database instance
_database: Optional[Database] = None


async def get_database() -> Database:
    """Get or create the global database instance"""
    global _database
    if _database is None:
        _database = Database()
        await _database.initialize()
    return _database


async def initialize_database():
    """Initialize the database on startup"""
    await get_database()


async def shutdown_database():
    """Release the global database instance"""
    global _database
    _database = None
