#!/usr/bin/env python3
"""
Query and reporting layer
Searches, statistics, trends and compliance reports over persisted telemetry
"""

import uuid
import logging
from contextvars import ContextVar
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from .audit.cipher import SensitiveFieldCipher
from .core.models import (
    AuditLogEntry,
    AuditLogQuery,
    LogOptions,
    LoginAttemptQuery,
    SecurityEventQuery,
    Severity,
)
from .core.scheduler import SystemClock
from .storage.database import TelemetryDatabase

logger = logging.getLogger(__name__)

INTEGRITY_CHECK_LIMIT = 1000

# Set while a report is writing its own audit entry
_report_self_logging: ContextVar[bool] = ContextVar('report_self_logging', default=False)


def compliance_query(report_type: str, since: datetime) -> AuditLogQuery:
    """Preset filter per compliance report type; unknown types are unfiltered"""
    query = AuditLogQuery(start_date=since, limit=None)
    if report_type == 'security':
        query.security_relevant = True
    elif report_type == 'user_activity':
        query.has_user = True
    elif report_type == 'system_changes':
        query.entities = ['System', 'Configuration', 'Permission']
    elif report_type == 'data_access':
        query.actions = ['read', 'export', 'download']
    return query


def _day_bounds(now: datetime, days_ago: int):
    start = now - timedelta(days=days_ago + 1)
    end = now - timedelta(days=days_ago) - timedelta(microseconds=1)
    return start, end


class TelemetryReporter:
    """Read side of the pipeline; only reports write their own audit entries"""

    def __init__(self, db: TelemetryDatabase, audit_logger, cipher: Optional[SensitiveFieldCipher] = None,
                 clock=None):
        self.db = db
        self.audit_logger = audit_logger
        self.cipher = cipher or SensitiveFieldCipher()
        self.clock = clock or SystemClock()

    async def _with_users(self, rows: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        users = await self.db.get_users(row.get('user_id') for row in rows)
        for row in rows:
            user = users.get(row.get('user_id'))
            row['user'] = {'id': user.id, 'username': user.username, 'real_name': user.real_name,
                           'role': user.role} if user else None
        return rows

    def _decrypt_entry(self, entry: AuditLogEntry) -> None:
        if entry.is_encrypted:
            entry.changes = self.cipher.decrypt(entry.changes)
            entry.old_values = self.cipher.decrypt(entry.old_values)
            entry.new_values = self.cipher.decrypt(entry.new_values)

    # ------------------------------------------------------------------
    # Searches
    # ------------------------------------------------------------------

    async def search_logs(self, query: Optional[AuditLogQuery] = None) -> Dict[str, Any]:
        """Paginated audit log search, newest first"""
        query = query or AuditLogQuery()
        try:
            entries = await self.db.find_audit_logs(query)
            count = await self.db.count_audit_logs(query)

            if query.include_decrypted and self.cipher.enabled:
                for entry in entries:
                    self._decrypt_entry(entry)

            rows = await self._with_users([entry.to_dict() for entry in entries])
            return {'rows': rows, 'count': count}

        except Exception as e:
            logger.error(f"Audit log search failed: {e}")
            return {'rows': [], 'count': 0}

    async def get_user_history(self, user_id: int, actions: Optional[List[str]] = None,
                               entities: Optional[List[str]] = None,
                               start_date: Optional[datetime] = None, end_date: Optional[datetime] = None,
                               limit: int = 20, offset: int = 0) -> Dict[str, Any]:
        query = AuditLogQuery(
            user_id=user_id,
            actions=list(actions or []),
            entities=list(entities or []),
            start_date=start_date,
            end_date=end_date,
            limit=limit,
            offset=offset
        )
        try:
            entries = await self.db.find_audit_logs(query)
            count = await self.db.count_audit_logs(query)
            return {'rows': [entry.to_dict() for entry in entries], 'count': count}
        except Exception as e:
            logger.error(f"User history lookup failed for {user_id}: {e}")
            return {'rows': [], 'count': 0}

    async def search_events(self, query: Optional[SecurityEventQuery] = None) -> Dict[str, Any]:
        query = query or SecurityEventQuery()
        try:
            events = await self.db.find_security_events(query)
            count = await self.db.count_security_events(query)
            rows = await self._with_users([event.to_dict() for event in events])
            return {'rows': rows, 'count': count}
        except Exception as e:
            logger.error(f"Security event search failed: {e}")
            return {'rows': [], 'count': 0}

    async def search_attempts(self, query: Optional[LoginAttemptQuery] = None) -> Dict[str, Any]:
        query = query or LoginAttemptQuery()
        try:
            attempts = await self.db.find_login_attempts(query)
            count = await self.db.count_login_attempts(query)
            return {'rows': [attempt.to_dict() for attempt in attempts], 'count': count}
        except Exception as e:
            logger.error(f"Login attempt search failed: {e}")
            return {'rows': [], 'count': 0}

    async def get_high_priority_events(self, limit: int = 10) -> List[Dict[str, Any]]:
        try:
            events = await self.db.find_security_events(SecurityEventQuery(
                severities=[Severity.CRITICAL.value, Severity.HIGH.value], limit=limit
            ))
            return await self._with_users([event.to_dict() for event in events])
        except Exception as e:
            logger.error(f"High priority event lookup failed: {e}")
            return []

    async def get_security_event(self, event_id: int) -> Optional[Dict[str, Any]]:
        try:
            event = await self.db.get_security_event(event_id)
            if event is None:
                return None
            return (await self._with_users([event.to_dict()]))[0]
        except Exception as e:
            logger.error(f"Security event lookup failed for {event_id}: {e}")
            return None

    # ------------------------------------------------------------------
    # Statistics and trends
    # ------------------------------------------------------------------

    async def get_security_statistics(self, hours: int = 24) -> Dict[str, Any]:
        """Grouped counts of audit entries, security events and logins"""
        since = self.clock.now() - timedelta(hours=hours)
        try:
            audit = {'by_risk_level': {}, 'by_result': {}, 'total': 0}
            for row in await self.db.group_audit_logs(['risk_level', 'result'], AuditLogQuery(start_date=since)):
                audit['by_risk_level'][row['risk_level']] = audit['by_risk_level'].get(row['risk_level'], 0) + row['count']
                audit['by_result'][row['result']] = audit['by_result'].get(row['result'], 0) + row['count']
                audit['total'] += row['count']

            security = {'by_type': {}, 'by_severity': {}, 'total': 0}
            for row in await self.db.group_security_events(['event_type', 'severity'],
                                                           SecurityEventQuery(start_date=since)):
                security['by_type'][row['event_type']] = security['by_type'].get(row['event_type'], 0) + row['count']
                security['by_severity'][row['severity']] = security['by_severity'].get(row['severity'], 0) + row['count']
                security['total'] += row['count']

            authentication = {'successful': 0, 'failed': 0, 'total': 0}
            for row in await self.db.group_login_attempts(['success'], LoginAttemptQuery(start_date=since)):
                key = 'successful' if row['success'] else 'failed'
                authentication[key] = row['count']
                authentication['total'] += row['count']

            return {
                'audit': audit,
                'security': security,
                'authentication': authentication,
                'period': f"{hours} hours",
                'generated_at': self.clock.now().isoformat()
            }

        except Exception as e:
            logger.error(f"Security statistics failed: {e}")
            return {
                'audit': {'by_risk_level': {}, 'by_result': {}, 'total': 0},
                'security': {'by_type': {}, 'by_severity': {}, 'total': 0},
                'authentication': {'successful': 0, 'failed': 0, 'total': 0},
                'period': f"{hours} hours",
                'error': str(e)
            }

    async def get_threat_trends(self, days: int = 7) -> List[Dict[str, Any]]:
        """Security event count per day, oldest first"""
        now = self.clock.now()
        trends = []
        try:
            for i in range(days):
                start, end = _day_bounds(now, i)
                count = await self.db.count_security_events(SecurityEventQuery(start_date=start, end_date=end))
                trends.append({'date': start.date().isoformat(), 'count': count})
        except Exception as e:
            logger.error(f"Threat trend query failed: {e}")
            return []
        trends.reverse()
        return trends

    async def get_operation_trends(self, days: int = 7) -> List[Dict[str, Any]]:
        """Audit entry count per action per day, oldest first"""
        now = self.clock.now()
        trends = []
        try:
            for i in range(days):
                start, end = _day_bounds(now, i)
                rows = await self.db.group_audit_logs(['action'], AuditLogQuery(start_date=start, end_date=end))
                trends.append({
                    'date': start.date().isoformat(),
                    'operations': {row['action']: row['count'] for row in rows}
                })
        except Exception as e:
            logger.error(f"Operation trend query failed: {e}")
            return []
        trends.reverse()
        return trends

    async def get_suspicious_ips(self, hours: int = 24, limit: int = 10) -> List[Dict[str, Any]]:
        """Top IPs by failed login count"""
        try:
            rows = await self.db.group_login_attempts(
                ['ip_address'],
                LoginAttemptQuery(success=False, start_date=self.clock.now() - timedelta(hours=hours)),
                limit=limit
            )
            return [{'ip_address': row['ip_address'], 'failed_attempts': row['count']} for row in rows]
        except Exception as e:
            logger.error(f"Suspicious IP query failed: {e}")
            return []

    # ------------------------------------------------------------------
    # Compliance
    # ------------------------------------------------------------------

    async def generate_compliance_report(self, report_type: str, range_days: int = 30) -> Dict[str, Any]:
        """
        Build a compliance report over the trailing `range_days`

        Args:
            report_type: security, user_activity, system_changes, data_access or anything else for all entries
            range_days: Size of the window in days

        Returns:
            {'metadata': ..., 'data': [...]}
        """
        metadata = {
            'report_type': report_type,
            'time_range': range_days,
            'generated_at': self.clock.now().isoformat(),
            'generated_by': 'system',
            'report_id': f"report_{int(self.clock.now().timestamp() * 1000)}_{uuid.uuid4().hex[:9]}"
        }
        try:
            since = self.clock.now() - timedelta(days=range_days)
            entries = await self.db.find_audit_logs(compliance_query(report_type, since))
            data = await self._with_users([entry.to_dict() for entry in entries])
            metadata['total_records'] = len(data)

            if _report_self_logging.get():
                logger.debug(f"Skipping self-log for nested {report_type} compliance report")
            else:
                token = _report_self_logging.set(True)
                try:
                    await self.audit_logger.log_system_event(
                        'compliance_report_generated',
                        'ComplianceReport',
                        f"Generated compliance report: {report_type}",
                        LogOptions(changes=dict(metadata), compliance_flags=['compliance_report'])
                    )
                finally:
                    _report_self_logging.reset(token)

            return {'metadata': metadata, 'data': data}

        except Exception as e:
            logger.error(f"Compliance report generation failed: {e}")
            metadata.update({'total_records': 0, 'error': str(e)})
            return {'metadata': metadata, 'data': []}

    async def verify_data_integrity(self, log_id: Optional[int] = None) -> Dict[str, Any]:
        """Check stored entries against their integrity hash"""
        results = {
            'total_checked': 0,
            'integrity_valid': 0,
            'integrity_invalid': 0,
            'invalid_logs': []
        }
        try:
            if log_id is not None:
                entry = await self.db.get_audit_log(log_id)
                entries = [entry] if entry else []
            else:
                entries = await self.db.find_audit_logs(AuditLogQuery(limit=INTEGRITY_CHECK_LIMIT))

            results['total_checked'] = len(entries)
            for entry in entries:
                if self.db.verify_integrity(entry):
                    results['integrity_valid'] += 1
                else:
                    results['integrity_invalid'] += 1
                    results['invalid_logs'].append({
                        'id': entry.id,
                        'created_at': entry.created_at.isoformat() if entry.created_at else None,
                        'action': entry.action,
                        'entity': entry.entity
                    })

            if results['integrity_invalid']:
                logger.warning(f"{results['integrity_invalid']} audit entries failed integrity verification")

            await self.audit_logger.log_system_event(
                'integrity_verification',
                'AuditLog',
                "Audit data integrity verification completed",
                LogOptions(
                    changes=dict(results),
                    risk_level='high' if results['integrity_invalid'] else 'low'
                )
            )
            return results

        except Exception as e:
            logger.error(f"Data integrity verification failed: {e}")
            return {**results, 'error': str(e)}
