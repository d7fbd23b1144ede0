#!/usr/bin/env python3
"""
Telemetry database
sqlite persistence for audit logs, security events, login attempts and users
"""

import os
import json
import asyncio
import hashlib
import sqlite3
import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from ..core.exceptions import PersistenceError
from ..core.models import (
    AuditLogEntry,
    AuditLogQuery,
    LoginAttempt,
    LoginAttemptQuery,
    SecurityEvent,
    SecurityEventQuery,
    User,
)

logger = logging.getLogger(__name__)

AUDIT_JSON_FIELDS = (
    "changes", "old_values", "new_values", "request_info", "location",
    "error_details", "security_flags", "compliance_flags", "resource_usage",
)

AUDIT_COLUMNS = (
    "action", "entity", "entity_id", "description", "user_id", "user_role",
    "changes", "old_values", "new_values", "request_info", "session_id",
    "ip_address", "user_agent", "location", "result", "error_details",
    "risk_level", "security_flags", "compliance_flags", "correlation_id",
    "parent_log_id", "execution_time", "resource_usage", "is_encrypted",
    "system_generated", "integrity_hash", "created_at",
)

AUDIT_GROUP_COLUMNS = {"action", "entity", "user_id", "risk_level", "result", "ip_address"}
EVENT_GROUP_COLUMNS = {"event_type", "severity", "user_id", "ip_address", "is_blocked"}
ATTEMPT_GROUP_COLUMNS = {"username", "ip_address", "success"}


def _ts(value: datetime) -> str:
    return value.isoformat(timespec="microseconds")


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _dumps(value: Any) -> str:
    return json.dumps(value, default=str)


def _loads(value: Optional[str]) -> Any:
    if value is None:
        return None
    try:
        return json.loads(value)
    except (TypeError, ValueError):
        return value


def _in_clause(column: str, values: Sequence[Any]) -> Tuple[str, List[Any]]:
    placeholders = ",".join("?" for _ in values)
    return f"{column} IN ({placeholders})", list(values)


class TelemetryDatabase:
    """
    Relational store behind the telemetry pipeline.

    Every public method is a coroutine; the blocking sqlite work runs in a
    worker thread with its own short-lived connection.
    """

    def __init__(self, db_path: str = "security/telemetry.db", integrity_key: Optional[str] = None):
        self.db_path = db_path
        self.integrity_key = integrity_key or ""
        directory = os.path.dirname(db_path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        self._init_database()

    def _init_database(self):
        """Create tables and indexes"""
        with self._get_connection() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS audit_logs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    action TEXT NOT NULL,
                    entity TEXT NOT NULL,
                    entity_id TEXT,
                    description TEXT,
                    user_id INTEGER,
                    user_role TEXT,
                    changes TEXT,
                    old_values TEXT,
                    new_values TEXT,
                    request_info TEXT,
                    session_id TEXT,
                    ip_address TEXT,
                    user_agent TEXT,
                    location TEXT,
                    result TEXT NOT NULL DEFAULT 'success',
                    error_details TEXT,
                    risk_level TEXT NOT NULL DEFAULT 'low',
                    security_flags TEXT NOT NULL DEFAULT '[]',
                    compliance_flags TEXT NOT NULL DEFAULT '[]',
                    correlation_id TEXT,
                    parent_log_id INTEGER,
                    execution_time REAL,
                    resource_usage TEXT,
                    is_encrypted INTEGER NOT NULL DEFAULT 0,
                    system_generated INTEGER NOT NULL DEFAULT 0,
                    integrity_hash TEXT,
                    created_at TEXT NOT NULL
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS security_events (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    event_type TEXT NOT NULL,
                    severity TEXT NOT NULL,
                    event_data TEXT,
                    context_data TEXT,
                    ip_address TEXT,
                    user_id INTEGER,
                    user_agent TEXT,
                    risk_score REAL NOT NULL DEFAULT 0,
                    is_blocked INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS login_attempts (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    username TEXT NOT NULL,
                    ip_address TEXT NOT NULL,
                    success INTEGER NOT NULL,
                    user_agent TEXT,
                    device_fingerprint TEXT,
                    location TEXT,
                    created_at TEXT NOT NULL
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS users (
                    id INTEGER PRIMARY KEY,
                    username TEXT UNIQUE NOT NULL,
                    real_name TEXT,
                    role TEXT NOT NULL
                )
            """)

            conn.execute("CREATE INDEX IF NOT EXISTS idx_audit_created ON audit_logs(created_at)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_audit_user ON audit_logs(user_id)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_audit_entity ON audit_logs(entity, action)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_audit_risk ON audit_logs(risk_level)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_events_created ON security_events(created_at)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_events_type ON security_events(event_type)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_attempts_created ON login_attempts(created_at)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_attempts_ip ON login_attempts(ip_address)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_attempts_user ON login_attempts(username)")

    @contextmanager
    def _get_connection(self):
        """Get database connection with proper cleanup"""
        try:
            conn = sqlite3.connect(self.db_path, timeout=10)
        except sqlite3.Error as e:
            raise PersistenceError(f"Cannot open telemetry database {self.db_path}: {e}") from e
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise PersistenceError(str(e)) from e
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    async def _run(self, func, *args):
        return await asyncio.to_thread(func, *args)

    # ------------------------------------------------------------------
    # Integrity protection
    # ------------------------------------------------------------------

    def calculate_integrity_hash(self, entry: AuditLogEntry) -> str:
        """Calculate integrity hash for an audit entry"""
        created = _ts(entry.created_at) if entry.created_at else ""
        data = f"{entry.action}|{entry.entity}|{entry.entity_id}|{entry.user_id}|{created}"
        return hashlib.sha256(f"{data}{self.integrity_key}".encode()).hexdigest()

    def verify_integrity(self, entry: AuditLogEntry) -> bool:
        if not entry.id or not entry.action or not entry.entity or not entry.created_at:
            return False
        if entry.integrity_hash:
            return self.calculate_integrity_hash(entry) == entry.integrity_hash
        return True

    # ------------------------------------------------------------------
    # audit_logs
    # ------------------------------------------------------------------

    def _audit_values(self, entry: AuditLogEntry) -> Tuple[Any, ...]:
        if entry.created_at is None:
            entry.created_at = datetime.now()
        entry.integrity_hash = self.calculate_integrity_hash(entry)
        values = []
        for column in AUDIT_COLUMNS:
            value = getattr(entry, column)
            if column in AUDIT_JSON_FIELDS:
                value = _dumps(value)
            elif column == "created_at":
                value = _ts(value)
            elif column in ("is_encrypted", "system_generated"):
                value = int(bool(value))
            values.append(value)
        return tuple(values)

    def _insert_audit_logs_sync(self, entries: List[AuditLogEntry]) -> List[int]:
        columns = ", ".join(AUDIT_COLUMNS)
        placeholders = ", ".join("?" for _ in AUDIT_COLUMNS)
        sql = f"INSERT INTO audit_logs ({columns}) VALUES ({placeholders})"

        ids = []
        with self._get_connection() as conn:
            for entry in entries:
                cursor = conn.execute(sql, self._audit_values(entry))
                ids.append(cursor.lastrowid)
        return ids

    async def create_audit_log(self, entry: AuditLogEntry) -> int:
        """Insert one audit entry and return its id"""
        ids = await self._run(self._insert_audit_logs_sync, [entry])
        entry.id = ids[0]
        return entry.id

    async def create_audit_logs(self, entries: List[AuditLogEntry]) -> int:
        """Insert several audit entries in one transaction"""
        if not entries:
            return 0
        ids = await self._run(self._insert_audit_logs_sync, list(entries))
        for entry, entry_id in zip(entries, ids):
            entry.id = entry_id
        return len(ids)

    def _audit_where(self, query: AuditLogQuery) -> Tuple[str, List[Any]]:
        clauses = []
        params: List[Any] = []

        if query.keyword:
            like = f"%{query.keyword}%"
            clauses.append("(description LIKE ? OR action LIKE ? OR entity LIKE ?)")
            params.extend([like, like, like])
        if query.user_id is not None:
            clauses.append("user_id = ?")
            params.append(int(query.user_id))
        if query.action:
            clauses.append("action = ?")
            params.append(query.action)
        if query.actions:
            sql, values = _in_clause("action", query.actions)
            clauses.append(sql)
            params.extend(values)
        if query.entity:
            clauses.append("entity = ?")
            params.append(query.entity)
        if query.entities:
            sql, values = _in_clause("entity", query.entities)
            clauses.append(sql)
            params.extend(values)
        if query.risk_level:
            clauses.append("risk_level = ?")
            params.append(query.risk_level)
        if query.risk_levels:
            sql, values = _in_clause("risk_level", query.risk_levels)
            clauses.append(sql)
            params.extend(values)
        if query.result:
            clauses.append("result = ?")
            params.append(query.result)
        if query.ip_address:
            clauses.append("ip_address = ?")
            params.append(query.ip_address)
        if query.has_user:
            clauses.append("user_id IS NOT NULL")
        if query.security_relevant:
            clauses.append("(risk_level IN ('high', 'critical') OR security_flags != '[]')")
        if query.start_date:
            clauses.append("created_at >= ?")
            params.append(_ts(query.start_date))
        if query.end_date:
            clauses.append("created_at <= ?")
            params.append(_ts(query.end_date))

        where = " WHERE " + " AND ".join(clauses) if clauses else ""
        return where, params

    def _row_to_entry(self, row: sqlite3.Row) -> AuditLogEntry:
        data = dict(row)
        for name in AUDIT_JSON_FIELDS:
            data[name] = _loads(data[name])
        data["is_encrypted"] = bool(data["is_encrypted"])
        data["system_generated"] = bool(data["system_generated"])
        data["created_at"] = _parse_ts(data["created_at"])
        return AuditLogEntry(**data)

    def _find_audit_logs_sync(self, query: AuditLogQuery) -> List[AuditLogEntry]:
        where, params = self._audit_where(query)
        sql = f"SELECT * FROM audit_logs{where} ORDER BY created_at DESC, id DESC"
        if query.limit is not None:
            sql += " LIMIT ? OFFSET ?"
            params.extend([query.limit, query.offset])

        with self._get_connection() as conn:
            return [self._row_to_entry(row) for row in conn.execute(sql, params).fetchall()]

    def _count_audit_logs_sync(self, query: AuditLogQuery) -> int:
        where, params = self._audit_where(query)
        with self._get_connection() as conn:
            return conn.execute(f"SELECT COUNT(*) FROM audit_logs{where}", params).fetchone()[0]

    async def find_audit_logs(self, query: AuditLogQuery) -> List[AuditLogEntry]:
        return await self._run(self._find_audit_logs_sync, query)

    async def count_audit_logs(self, query: AuditLogQuery) -> int:
        return await self._run(self._count_audit_logs_sync, query)

    async def get_audit_log(self, log_id: int) -> Optional[AuditLogEntry]:
        def _get():
            with self._get_connection() as conn:
                row = conn.execute("SELECT * FROM audit_logs WHERE id = ?", (int(log_id),)).fetchone()
                return self._row_to_entry(row) if row else None
        return await self._run(_get)

    def _group_audit_logs_sync(self, by: Sequence[str], query: AuditLogQuery,
                               having_min: Optional[int]) -> List[Dict[str, Any]]:
        unknown = set(by) - AUDIT_GROUP_COLUMNS
        if unknown:
            raise ValueError(f"Cannot group audit logs by {sorted(unknown)}")

        columns = ", ".join(by)
        where, params = self._audit_where(query)
        sql = f"SELECT {columns}, COUNT(*) AS count FROM audit_logs{where} GROUP BY {columns}"
        if having_min is not None:
            sql += " HAVING COUNT(*) > ?"
            params.append(having_min)
        sql += " ORDER BY count DESC"

        with self._get_connection() as conn:
            return [dict(row) for row in conn.execute(sql, params).fetchall()]

    async def group_audit_logs(self, by: Sequence[str], query: Optional[AuditLogQuery] = None,
                               having_min: Optional[int] = None) -> List[Dict[str, Any]]:
        """Grouped counts; `having_min` keeps groups with more than that many rows"""
        return await self._run(self._group_audit_logs_sync, list(by), query or AuditLogQuery(), having_min)

    def _delete_audit_logs_sync(self, cutoff: datetime, exclude_levels: Sequence[str],
                                risk_level: Optional[str]) -> int:
        sql = "DELETE FROM audit_logs WHERE created_at < ?"
        params: List[Any] = [_ts(cutoff)]
        if exclude_levels:
            placeholders = ",".join("?" for _ in exclude_levels)
            sql += f" AND risk_level NOT IN ({placeholders})"
            params.extend(exclude_levels)
        if risk_level:
            sql += " AND risk_level = ?"
            params.append(risk_level)

        with self._get_connection() as conn:
            return conn.execute(sql, params).rowcount

    async def delete_audit_logs_before(self, cutoff: datetime, exclude_levels: Sequence[str] = (),
                                       risk_level: Optional[str] = None) -> int:
        """Bulk-delete audit entries created before `cutoff`"""
        return await self._run(self._delete_audit_logs_sync, cutoff, list(exclude_levels), risk_level)

    # ------------------------------------------------------------------
    # security_events
    # ------------------------------------------------------------------

    def _row_to_event(self, row: sqlite3.Row) -> SecurityEvent:
        data = dict(row)
        data["event_data"] = _loads(data["event_data"]) or {}
        data["context_data"] = _loads(data["context_data"]) or {}
        data["is_blocked"] = bool(data["is_blocked"])
        data["created_at"] = _parse_ts(data["created_at"])
        return SecurityEvent(**data)

    async def create_security_event(self, event: SecurityEvent) -> int:
        def _insert():
            with self._get_connection() as conn:
                cursor = conn.execute("""
                    INSERT INTO security_events
                    (event_type, severity, event_data, context_data, ip_address,
                     user_id, user_agent, risk_score, is_blocked, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """, (
                    event.event_type,
                    event.severity,
                    _dumps(event.event_data),
                    _dumps(event.context_data),
                    event.ip_address,
                    event.user_id,
                    event.user_agent,
                    event.risk_score,
                    int(bool(event.is_blocked)),
                    _ts(event.created_at),
                ))
                return cursor.lastrowid

        event.id = await self._run(_insert)
        return event.id

    async def get_security_event(self, event_id: int) -> Optional[SecurityEvent]:
        def _get():
            with self._get_connection() as conn:
                row = conn.execute("SELECT * FROM security_events WHERE id = ?", (int(event_id),)).fetchone()
                return self._row_to_event(row) if row else None
        return await self._run(_get)

    def _event_where(self, query: SecurityEventQuery) -> Tuple[str, List[Any]]:
        clauses = []
        params: List[Any] = []

        if query.keyword:
            like = f"%{query.keyword}%"
            clauses.append("(event_type LIKE ? OR event_data LIKE ?)")
            params.extend([like, like])
        if query.event_type:
            clauses.append("event_type = ?")
            params.append(query.event_type)
        if query.severity:
            clauses.append("severity = ?")
            params.append(query.severity)
        if query.severities:
            sql, values = _in_clause("severity", query.severities)
            clauses.append(sql)
            params.extend(values)
        if query.user_id is not None:
            clauses.append("user_id = ?")
            params.append(int(query.user_id))
        if query.ip_address:
            clauses.append("ip_address = ?")
            params.append(query.ip_address)
        if query.start_date:
            clauses.append("created_at >= ?")
            params.append(_ts(query.start_date))
        if query.end_date:
            clauses.append("created_at <= ?")
            params.append(_ts(query.end_date))

        where = " WHERE " + " AND ".join(clauses) if clauses else ""
        return where, params

    async def find_security_events(self, query: SecurityEventQuery) -> List[SecurityEvent]:
        def _find():
            where, params = self._event_where(query)
            sql = f"SELECT * FROM security_events{where} ORDER BY created_at DESC, id DESC"
            if query.limit is not None:
                sql += " LIMIT ? OFFSET ?"
                params.extend([query.limit, query.offset])
            with self._get_connection() as conn:
                return [self._row_to_event(row) for row in conn.execute(sql, params).fetchall()]
        return await self._run(_find)

    async def count_security_events(self, query: SecurityEventQuery) -> int:
        def _count():
            where, params = self._event_where(query)
            with self._get_connection() as conn:
                return conn.execute(f"SELECT COUNT(*) FROM security_events{where}", params).fetchone()[0]
        return await self._run(_count)

    async def group_security_events(self, by: Sequence[str],
                                    query: Optional[SecurityEventQuery] = None) -> List[Dict[str, Any]]:
        unknown = set(by) - EVENT_GROUP_COLUMNS
        if unknown:
            raise ValueError(f"Cannot group security events by {sorted(unknown)}")

        def _group():
            columns = ", ".join(by)
            where, params = self._event_where(query or SecurityEventQuery())
            sql = (f"SELECT {columns}, COUNT(*) AS count FROM security_events{where} "
                   f"GROUP BY {columns} ORDER BY count DESC")
            with self._get_connection() as conn:
                return [dict(row) for row in conn.execute(sql, params).fetchall()]
        return await self._run(_group)

    # ------------------------------------------------------------------
    # login_attempts
    # ------------------------------------------------------------------

    def _row_to_attempt(self, row: sqlite3.Row) -> LoginAttempt:
        data = dict(row)
        data["success"] = bool(data["success"])
        data["location"] = _loads(data["location"])
        data["created_at"] = _parse_ts(data["created_at"])
        return LoginAttempt(**data)

    async def create_login_attempt(self, attempt: LoginAttempt) -> int:
        """Record a login attempt (written by the authentication flow)"""
        if attempt.created_at is None:
            attempt.created_at = datetime.now()

        def _insert():
            with self._get_connection() as conn:
                cursor = conn.execute("""
                    INSERT INTO login_attempts
                    (username, ip_address, success, user_agent, device_fingerprint, location, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                """, (
                    attempt.username,
                    attempt.ip_address,
                    int(bool(attempt.success)),
                    attempt.user_agent,
                    attempt.device_fingerprint,
                    _dumps(attempt.location) if attempt.location else None,
                    _ts(attempt.created_at),
                ))
                return cursor.lastrowid

        attempt.id = await self._run(_insert)
        return attempt.id

    def _attempt_where(self, query: LoginAttemptQuery) -> Tuple[str, List[Any]]:
        clauses = []
        params: List[Any] = []

        if query.keyword:
            like = f"%{query.keyword}%"
            clauses.append("(username LIKE ? OR ip_address LIKE ? OR user_agent LIKE ?)")
            params.extend([like, like, like])
        if query.username:
            clauses.append("username = ?")
            params.append(query.username)
        if query.ip_address:
            clauses.append("ip_address = ?")
            params.append(query.ip_address)
        if query.success is not None:
            clauses.append("success = ?")
            params.append(int(bool(query.success)))
        if query.start_date:
            clauses.append("created_at >= ?")
            params.append(_ts(query.start_date))
        if query.end_date:
            clauses.append("created_at <= ?")
            params.append(_ts(query.end_date))

        where = " WHERE " + " AND ".join(clauses) if clauses else ""
        return where, params

    async def find_login_attempts(self, query: LoginAttemptQuery) -> List[LoginAttempt]:
        def _find():
            where, params = self._attempt_where(query)
            sql = f"SELECT * FROM login_attempts{where} ORDER BY created_at DESC, id DESC"
            if query.limit is not None:
                sql += " LIMIT ? OFFSET ?"
                params.extend([query.limit, query.offset])
            with self._get_connection() as conn:
                return [self._row_to_attempt(row) for row in conn.execute(sql, params).fetchall()]
        return await self._run(_find)

    async def count_login_attempts(self, query: LoginAttemptQuery) -> int:
        def _count():
            where, params = self._attempt_where(query)
            with self._get_connection() as conn:
                return conn.execute(f"SELECT COUNT(*) FROM login_attempts{where}", params).fetchone()[0]
        return await self._run(_count)

    async def group_login_attempts(self, by: Sequence[str], query: Optional[LoginAttemptQuery] = None,
                                   limit: Optional[int] = None) -> List[Dict[str, Any]]:
        unknown = set(by) - ATTEMPT_GROUP_COLUMNS
        if unknown:
            raise ValueError(f"Cannot group login attempts by {sorted(unknown)}")

        def _group():
            columns = ", ".join(by)
            where, params = self._attempt_where(query or LoginAttemptQuery())
            sql = (f"SELECT {columns}, COUNT(*) AS count FROM login_attempts{where} "
                   f"GROUP BY {columns} ORDER BY count DESC")
            if limit is not None:
                sql += " LIMIT ?"
                params.append(limit)
            with self._get_connection() as conn:
                return [dict(row) for row in conn.execute(sql, params).fetchall()]
        return await self._run(_group)

    async def failed_logins_by_username(self, since: datetime, min_distinct_ips: int) -> List[Dict[str, Any]]:
        """Usernames with failed logins from more than `min_distinct_ips` distinct IPs"""
        def _query():
            with self._get_connection() as conn:
                rows = conn.execute("""
                    SELECT username, COUNT(DISTINCT ip_address) AS ip_count, COUNT(*) AS attempts
                    FROM login_attempts
                    WHERE success = 0 AND created_at >= ?
                    GROUP BY username
                    HAVING COUNT(DISTINCT ip_address) > ?
                    ORDER BY ip_count DESC
                """, (_ts(since), min_distinct_ips)).fetchall()
                return [dict(row) for row in rows]
        return await self._run(_query)

    async def login_history(self, username: str, since: datetime, before: Optional[datetime] = None,
                            success: Optional[bool] = None, with_location: bool = False,
                            with_fingerprint: bool = False) -> List[LoginAttempt]:
        """Login attempts for a username, newest first"""
        def _query():
            sql = "SELECT * FROM login_attempts WHERE username = ? AND created_at >= ?"
            params: List[Any] = [username, _ts(since)]
            if before is not None:
                sql += " AND created_at < ?"
                params.append(_ts(before))
            if success is not None:
                sql += " AND success = ?"
                params.append(int(success))
            if with_location:
                sql += " AND location IS NOT NULL"
            if with_fingerprint:
                sql += " AND device_fingerprint IS NOT NULL"
            sql += " ORDER BY created_at DESC, id DESC"
            with self._get_connection() as conn:
                return [self._row_to_attempt(row) for row in conn.execute(sql, params).fetchall()]
        return await self._run(_query)

    # ------------------------------------------------------------------
    # users (read-only for the pipeline)
    # ------------------------------------------------------------------

    async def create_user(self, user: User) -> int:
        def _insert():
            with self._get_connection() as conn:
                conn.execute(
                    "INSERT INTO users (id, username, real_name, role) VALUES (?, ?, ?, ?)",
                    (user.id, user.username, user.real_name, user.role),
                )
                return user.id
        return await self._run(_insert)

    async def get_user(self, user_id: Any) -> Optional[User]:
        try:
            user_key = int(user_id)
        except (TypeError, ValueError):
            return None

        def _get():
            with self._get_connection() as conn:
                row = conn.execute("SELECT * FROM users WHERE id = ?", (user_key,)).fetchone()
                return User(**dict(row)) if row else None
        return await self._run(_get)

    async def get_users(self, user_ids: Iterable[Any]) -> Dict[int, User]:
        ids = sorted({int(u) for u in user_ids if u is not None})
        if not ids:
            return {}

        def _get():
            sql, params = _in_clause("id", ids)
            with self._get_connection() as conn:
                rows = conn.execute(f"SELECT * FROM users WHERE {sql}", params).fetchall()
                return {row["id"]: User(**dict(row)) for row in rows}
        return await self._run(_get)
