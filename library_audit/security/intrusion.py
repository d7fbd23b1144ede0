"""
Periodic composite intrusion scan
"""

import logging
from datetime import timedelta
from typing import Any, Dict, List

from ..core.models import AuditLogQuery, SecurityEventQuery, Severity
from ..core.scheduler import SystemClock
from ..storage.database import TelemetryDatabase

logger = logging.getLogger(__name__)

DISTRIBUTED_MIN_IPS = 5
MAX_ESCALATIONS_PER_HOUR = 5
BULK_ACCESS_THRESHOLD = 100
BULK_ACCESS_ACTIONS = ['view', 'read', 'export']
CONFIG_ENTITIES = ['SystemConfig', 'Permission', 'Role']
CONFIG_ACTIONS = ['create', 'update', 'delete']
RECENT_CONFIG_CHANGES = 10

INTRUSION_THRESHOLD = 50
CRITICAL_INTRUSION_THRESHOLD = 100


def empty_indicators() -> Dict[str, Any]:
    return {
        'suspicious_processes': [],
        'unauthorized_access': [],
        'config_changes': [],
        'anomalous_traffic': [],
        'intrusion_score': 0
    }


class IntrusionAggregator:
    """Combines several trailing-window signals into one intrusion score"""

    def __init__(self, db: TelemetryDatabase, recorder, clock=None):
        self.db = db
        self.recorder = recorder
        self.clock = clock or SystemClock()

    async def analyze_system_intrusion(self) -> Dict[str, Any]:
        try:
            now = self.clock.now()
            hour_ago = now - timedelta(hours=1)
            indicators = empty_indicators()

            distributed = await self.detect_suspicious_login_patterns(hour_ago)
            if distributed:
                indicators['unauthorized_access'].extend(distributed)
                indicators['intrusion_score'] += len(distributed) * 10

            escalations = await self.db.count_security_events(SecurityEventQuery(
                event_type='privilege_escalation', start_date=hour_ago
            ))
            if escalations > MAX_ESCALATIONS_PER_HOUR:
                indicators['unauthorized_access'].append({
                    'type': 'privilege_escalation_attempts',
                    'count': escalations
                })
                indicators['intrusion_score'] += 30

            bulk_access = await self.detect_anomalous_access_patterns(hour_ago)
            if bulk_access:
                indicators['anomalous_traffic'].extend(bulk_access)
                indicators['intrusion_score'] += len(bulk_access) * 15

            config_changes = await self.db.find_audit_logs(AuditLogQuery(
                entities=CONFIG_ENTITIES,
                actions=CONFIG_ACTIONS,
                start_date=now - timedelta(hours=24),
                limit=RECENT_CONFIG_CHANGES
            ))
            if config_changes:
                indicators['config_changes'].extend({
                    'id': change.id,
                    'action': change.action,
                    'entity': change.entity,
                    'entity_id': change.entity_id,
                    'user_id': change.user_id,
                    'created_at': change.created_at.isoformat() if change.created_at else None
                } for change in config_changes)
                indicators['intrusion_score'] += len(config_changes) * 20

            if indicators['intrusion_score'] > INTRUSION_THRESHOLD:
                severity = (Severity.CRITICAL.value
                            if indicators['intrusion_score'] > CRITICAL_INTRUSION_THRESHOLD
                            else Severity.HIGH.value)
                logger.warning(f"System intrusion indicators, score {indicators['intrusion_score']} ({severity})")
                await self.recorder.create_security_event(
                    'system_intrusion_detected',
                    {**indicators, 'risk_score': indicators['intrusion_score']},
                    {'severity': severity},
                    severity=severity
                )

            return indicators

        except Exception as e:
            logger.error(f"System intrusion analysis failed: {e}")
            return empty_indicators()

    async def detect_suspicious_login_patterns(self, since) -> List[Dict[str, Any]]:
        rows = await self.db.failed_logins_by_username(since, DISTRIBUTED_MIN_IPS)
        return [{
            'type': 'distributed_brute_force',
            'username': row['username'],
            'ip_count': row['ip_count'],
            'attempts': row['attempts']
        } for row in rows]

    async def detect_anomalous_access_patterns(self, since) -> List[Dict[str, Any]]:
        groups = await self.db.group_audit_logs(
            ['user_id', 'entity'],
            AuditLogQuery(actions=BULK_ACCESS_ACTIONS, start_date=since, limit=None),
            having_min=BULK_ACCESS_THRESHOLD
        )
        return [{
            'type': 'bulk_data_access',
            'user_id': group['user_id'],
            'entity': group['entity'],
            'count': group['count']
        } for group in groups]
