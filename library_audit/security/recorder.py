"""
Single creation path for security events
"""

import logging
from typing import Any, Dict, Optional

from ..core.events import CRITICAL_THREAT, EventBus
from ..core.models import SecurityEvent, Severity
from ..core.scheduler import SystemClock
from ..storage.database import TelemetryDatabase

logger = logging.getLogger(__name__)

EVENT_SEVERITY = {
    'system_intrusion_detected': Severity.CRITICAL.value,
    'sql_injection_attempt': Severity.CRITICAL.value,
    'privilege_escalation': Severity.HIGH.value,
    'brute_force_attack': Severity.HIGH.value,
    'xss_attempt': Severity.HIGH.value,
    'data_access_violation': Severity.MEDIUM.value,
    'suspicious_login': Severity.MEDIUM.value,
    'geo_location_anomaly': Severity.LOW.value,
}

ALERT_SEVERITIES = (Severity.HIGH.value, Severity.CRITICAL.value)


class SecurityEventRecorder:
    """Persists security events and raises critical_threat for severe ones"""

    def __init__(self, db: TelemetryDatabase, bus: EventBus, clock=None):
        self.db = db
        self.bus = bus
        self.clock = clock or SystemClock()

    def calculate_severity(self, event_type: str) -> str:
        return EVENT_SEVERITY.get(event_type, Severity.LOW.value)

    async def create_security_event(self, event_type: str, event_data: Dict[str, Any],
                                    context: Optional[Dict[str, Any]] = None,
                                    severity: Optional[str] = None) -> SecurityEvent:
        """
        Persist a security event

        Args:
            event_type: Event type, also selects the default severity
            event_data: Analysis payload; `risk_score` and `should_block` are lifted into columns
            context: Request context (ip_address, user_id, user_agent)
            severity: Explicit severity, overrides the per-type default

        Raises:
            PersistenceError: if the event cannot be stored
        """
        context = context or {}
        event = SecurityEvent(
            event_type=event_type,
            severity=severity or self.calculate_severity(event_type),
            event_data=event_data,
            context_data=context,
            ip_address=context.get('ip_address'),
            user_id=context.get('user_id'),
            user_agent=context.get('user_agent'),
            risk_score=event_data.get('risk_score', 0) or 0,
            is_blocked=bool(event_data.get('should_block', False)),
            created_at=self.clock.now()
        )

        await self.db.create_security_event(event)
        logger.info(f"Security event recorded: {event_type} ({event.severity}, id {event.id})")

        if event.severity in ALERT_SEVERITIES:
            self.bus.emit(CRITICAL_THREAT, event)

        return event
